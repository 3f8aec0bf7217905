"""Synthesis backend protocol and requests-based HTTP implementation.

Responsibilities:
- Define the backend contract used by `SynthesisClient`.
- Send timestamped text-to-speech requests to an ElevenLabs-compatible API.
- Classify HTTP and transport failures into retryable and terminal kinds.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass
import json
import re
import socket
from typing import Any, Mapping, Protocol

import requests

from ..errors import SynthesisProviderError
from .voices import VoiceSettings

MIN_TIMEOUT_SECONDS = 30.0
MAX_TIMEOUT_SECONDS = 180.0
TIMEOUT_MS_PER_CHAR = 60.0


def request_timeout_seconds(text_length: int) -> float:
    """Return the per-call timeout: 60 ms per character clamped to 30..180 s."""

    scaled = text_length * TIMEOUT_MS_PER_CHAR / 1000.0
    return min(MAX_TIMEOUT_SECONDS, max(MIN_TIMEOUT_SECONDS, scaled))


@dataclass(frozen=True, slots=True)
class SynthesisRequest:
    """One backend call for one chunk of segment text."""

    text: str
    voice_id: str
    model_id: str
    voice_settings: VoiceSettings
    output_format: str = "mp3_44100_128"
    timeout_seconds: float = MIN_TIMEOUT_SECONDS

    def as_payload(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "model_id": self.model_id,
            "voice_settings": self.voice_settings.as_payload(),
            "output_format": self.output_format,
        }


@dataclass(frozen=True, slots=True)
class BackendResponse:
    """Decoded backend response: audio bytes and optional character alignment."""

    audio: bytes
    alignment: Mapping[str, Any] | None = None


class SynthesisBackend(Protocol):
    """Protocol for speech synthesis backends with character timestamps."""

    name: str

    async def synthesize(self, request: SynthesisRequest) -> BackendResponse:
        """Synthesize one request; raise `SynthesisProviderError` on failure."""


class HTTPSynthesisBackend:
    """Requests-based client for the `/text-to-speech/{voice}/with-timestamps` endpoint."""

    _MAX_PROVIDER_MESSAGE_CHARS = 180

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str = "https://api.elevenlabs.io/v1",
        session: requests.Session | None = None,
        name: str = "elevenlabs",
    ) -> None:
        """Initialize HTTP client settings."""

        self.api_key = api_key.strip() if isinstance(api_key, str) else ""
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.name = name

    async def synthesize(self, request: SynthesisRequest) -> BackendResponse:
        """Run the blocking HTTP call in a worker thread."""

        return await asyncio.to_thread(self.synthesize_blocking, request)

    def synthesize_blocking(self, request: SynthesisRequest) -> BackendResponse:
        """Execute one timestamped synthesis request and decode the response."""

        self._require_api_key()
        endpoint = f"{self.base_url}/text-to-speech/{request.voice_id}/with-timestamps"
        headers = {
            "xi-api-key": self.api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            response = self.session.post(
                endpoint,
                headers=headers,
                json=request.as_payload(),
                timeout=request.timeout_seconds,
            )
            response.raise_for_status()
            body = bytes(response.content)
        except requests.HTTPError as exc:
            raise self._http_error_to_provider_error(exc) from exc
        except requests.RequestException as exc:
            failure_kind = self._classify_transport_failure(exc)
            if failure_kind == "timeout":
                detail = f"Synthesis request timed out after {request.timeout_seconds:.0f}s."
            else:
                detail = f"Synthesis request transport error: {self._short_message(str(exc))}"
            raise SynthesisProviderError(detail, failure_kind=failure_kind) from exc

        return self._decode_response(body)

    def _require_api_key(self) -> None:
        """Require API key presence before issuing requests."""

        if not self.api_key:
            raise SynthesisProviderError(
                "Missing synthesis API key. Set `ELEVENLABS_API_KEY` or `api_key` in config.",
                failure_kind="auth",
            )

    @staticmethod
    def _decode_response(body: bytes) -> BackendResponse:
        """Decode `audio_base64` and pick the alignment object from a JSON body."""

        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise SynthesisProviderError(
                "Synthesis backend returned invalid JSON payload.",
                failure_kind="malformed_response",
            ) from exc
        if not isinstance(payload, dict):
            raise SynthesisProviderError(
                "Synthesis backend response is not a JSON object.",
                failure_kind="malformed_response",
            )

        encoded = payload.get("audio_base64")
        if not isinstance(encoded, str) or not encoded:
            raise SynthesisProviderError(
                "Synthesis backend response is missing `audio_base64`.",
                failure_kind="malformed_response",
            )
        try:
            audio = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise SynthesisProviderError(
                "Synthesis backend returned undecodable `audio_base64`.",
                failure_kind="malformed_response",
            ) from exc
        if not audio:
            raise SynthesisProviderError(
                "Synthesis backend returned empty audio.",
                failure_kind="malformed_response",
            )

        alignment = payload.get("alignment") or payload.get("normalized_alignment")
        if not isinstance(alignment, Mapping):
            alignment = None
        return BackendResponse(audio=audio, alignment=alignment)

    @staticmethod
    def _decode_error_body(exc: requests.HTTPError) -> str:
        """Decode an HTTP error body into a best-effort UTF-8 payload string."""

        response = exc.response
        if response is None:
            return ""
        return bytes(response.content or b"").decode("utf-8", errors="replace").strip()

    @classmethod
    def _redact_sensitive_tokens(cls, text: str) -> str:
        """Redact API-key-like tokens from provider error content."""

        return re.sub(r"\b(sk_|xi-)[A-Za-z0-9_-]{8,}\b", "[redacted-key]", text)

    @classmethod
    def _short_message(cls, text: str) -> str:
        """Normalize and cap user-facing provider message length."""

        compact = " ".join(text.split())
        if len(compact) <= cls._MAX_PROVIDER_MESSAGE_CHARS:
            return compact
        return f"{compact[: cls._MAX_PROVIDER_MESSAGE_CHARS - 1]}..."

    @classmethod
    def _extract_provider_message(cls, body: str) -> tuple[str, str | None]:
        """Extract a concise provider message and optional provider status code.

        Error bodies look like `{"detail": {"status": "...", "message": "..."}}`
        or `{"detail": "..."}`.
        """

        if not body:
            return "", None
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            return cls._short_message(cls._redact_sensitive_tokens(body)), None

        provider_code: str | None = None
        message: str | None = None
        detail = payload.get("detail") if isinstance(payload, dict) else None
        if isinstance(detail, dict):
            status_value = detail.get("status") or detail.get("code")
            if isinstance(status_value, str) and status_value.strip():
                provider_code = status_value.strip()
            message_value = detail.get("message")
            if isinstance(message_value, str) and message_value.strip():
                message = message_value.strip()
        elif isinstance(detail, str) and detail.strip():
            message = detail.strip()

        if message is None:
            message = body
        return cls._short_message(cls._redact_sensitive_tokens(message)), provider_code

    @staticmethod
    def _classify_http_failure(
        status_code: int,
        provider_message: str,
        provider_code: str | None,
    ) -> str:
        """Classify HTTP errors into retryable and terminal failure kinds."""

        message_lower = provider_message.lower()
        code_lower = provider_code.lower() if provider_code is not None else ""

        if status_code in {401, 403} or "api key" in message_lower or "api_key" in code_lower:
            return "auth"
        if "quota" in code_lower or "quota" in message_lower:
            return "quota"
        if status_code == 429:
            return "rate_limited"
        if status_code in {408, 504} or "timed out" in message_lower:
            return "timeout"
        if status_code >= 500:
            return "server_error"
        if "policy" in message_lower or "moderation" in code_lower or "policy" in code_lower:
            return "content_policy"
        if status_code in {400, 404, 422}:
            return "validation"
        return "http_error"

    @staticmethod
    def _classify_transport_failure(reason: object) -> str:
        """Classify network-layer failures; resets and refusals are transient."""

        if isinstance(reason, (TimeoutError, socket.timeout, requests.Timeout)):
            return "timeout"
        return "transport"

    @classmethod
    def _http_error_to_provider_error(cls, exc: requests.HTTPError) -> SynthesisProviderError:
        """Convert HTTP errors into normalized provider exceptions with metadata."""

        status_code = exc.response.status_code if exc.response is not None else 0
        provider_message, provider_code = cls._extract_provider_message(
            cls._decode_error_body(exc)
        )
        failure_kind = cls._classify_http_failure(status_code, provider_message, provider_code)

        headline = {
            "auth": "Synthesis authentication failed",
            "quota": "Synthesis quota is exhausted",
            "rate_limited": "Synthesis backend rate limit exceeded",
            "timeout": "Synthesis request timed out",
            "server_error": "Synthesis backend server error",
            "content_policy": "Synthesis request rejected by content policy",
            "validation": "Synthesis backend rejected the request",
        }.get(failure_kind, "Synthesis request failed")

        if provider_message:
            detail = f"{headline} (HTTP {status_code}): {provider_message}"
        else:
            detail = f"{headline} (HTTP {status_code})."

        return SynthesisProviderError(
            detail,
            failure_kind=failure_kind,
            status_code=status_code,
            provider_code=provider_code,
        )
