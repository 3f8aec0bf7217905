"""Per-segment synthesis with caching, chunking, retry, and circuit breaking.

Responsibilities:
- Resolve directives, stability, and voice settings for one segment.
- Serve repeated requests from the audio cache.
- Split oversize text, synthesize chunks, and stitch audio and word timings.
- Record per-segment failures in the result instead of raising.
"""

from __future__ import annotations

import asyncio
import base64
import json
import random
from typing import Awaitable, Callable, Sequence

from loguru import logger

from ..audio.engine import estimate_duration_ms
from ..config import RetryPolicy, SynthesisSettings
from ..errors import AudioEngineError, SynthesisError, SynthesisProviderError
from ..models.datatypes import AssembledAudio, AssemblyClip, Segment, SynthesisResult, WordTiming
from ..providers.cache import AudioCache, make_cache_key
from ..providers.retry import CircuitBreakerRegistry, call_with_retry
from .alignment import group_character_alignment
from .chunking import split_for_backend
from .client import (
    BackendResponse,
    SynthesisBackend,
    SynthesisRequest,
    request_timeout_seconds,
)
from .directives import Directive, build_directives, strip_directives, wrap_with_directives
from .stability import stability_for_segment
from .voices import (
    ModelCapabilities,
    VoiceSettings,
    build_voice_settings,
    capabilities_for,
    preset_for_emotion,
)

ChunkJoiner = Callable[[Sequence[AssemblyClip]], Awaitable[AssembledAudio]]


class SynthesisClient:
    """Synthesize one segment at a time against a `SynthesisBackend`."""

    def __init__(
        self,
        backend: SynthesisBackend,
        *,
        settings: SynthesisSettings | None = None,
        retry_policy: RetryPolicy | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        cache: AudioCache | None = None,
        cache_ttl_seconds: float | None = None,
        chunk_joiner: ChunkJoiner | None = None,
        sleeper: Callable[[float], Awaitable[object]] = asyncio.sleep,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        self.backend = backend
        self.settings = settings or SynthesisSettings()
        self.retry_policy = retry_policy or RetryPolicy()
        self.breakers = breakers or CircuitBreakerRegistry()
        self.cache = cache
        self.cache_ttl_seconds = cache_ttl_seconds
        self.chunk_joiner = chunk_joiner
        self._sleeper = sleeper
        self._random_fn = random_fn
        self.backend_calls = 0
        self.retry_attempts = 0

    async def synthesize(
        self, segment: Segment, settings: SynthesisSettings | None = None
    ) -> SynthesisResult:
        """Synthesize one segment; failures are returned, never raised.

        Only the `SynthesisError` family is converted into a failed result;
        programming errors propagate.
        """

        active = settings or self.settings
        try:
            return await self._synthesize(segment, active)
        except SynthesisError as exc:
            logger.warning(
                "[synthesis] segment {} failed ({}): {}",
                segment.index,
                exc.failure_kind,
                exc,
            )
            return SynthesisResult.failed(segment, exc, exc.failure_kind)
        except AudioEngineError as exc:
            logger.warning("[synthesis] segment {} chunk join failed: {}", segment.index, exc)
            return SynthesisResult.failed(segment, exc, "audio_engine")

    async def _synthesize(self, segment: Segment, settings: SynthesisSettings) -> SynthesisResult:
        capabilities = capabilities_for(settings.model_id)
        directives = build_directives(segment.emotion_tag, segment.delivery_directive)
        voice_settings = self._voice_settings(segment, settings, capabilities, directives)

        body = segment.text if capabilities.supports_directives else strip_directives(segment.text)
        prefix = wrap_with_directives(
            "", directives, supports_directives=capabilities.supports_directives
        )
        processed_text = f"{prefix}{body}"

        fingerprint = voice_settings.fingerprint(settings.model_id, settings.output_format)
        cache_key = make_cache_key(processed_text, segment.voice_id, fingerprint)
        cached = self._cache_lookup(cache_key, segment)
        if cached is not None:
            return cached

        chunk_limit = max(1, settings.max_chunk_chars - len(prefix))
        chunks = [f"{prefix}{chunk}" for chunk in split_for_backend(body, chunk_limit)]

        audios: list[bytes] = []
        durations: list[float] = []
        words: list[WordTiming] = []
        offset_ms = 0.0
        for chunk_text in chunks:
            request = SynthesisRequest(
                text=chunk_text,
                voice_id=segment.voice_id,
                model_id=settings.model_id,
                voice_settings=voice_settings,
                output_format=settings.output_format,
                timeout_seconds=request_timeout_seconds(len(chunk_text)),
            )
            audio, chunk_words, chunk_duration = await self._synthesize_chunk(request, segment)
            words.extend(word.shifted(offset_ms) for word in chunk_words)
            audios.append(audio)
            durations.append(chunk_duration)
            offset_ms += chunk_duration

        if len(audios) == 1:
            audio = audios[0]
        else:
            audio = await self._join_chunks(segment, audios, durations)
        result = SynthesisResult(
            segment_index=segment.index,
            audio_bytes=audio,
            word_timings=tuple(words),
            duration_ms=offset_ms,
            success=True,
            chunk_count=len(chunks),
            speaker=segment.speaker,
            role=segment.resolved_role,
            speed_modifier=segment.speed_modifier,
        )
        self._cache_store(cache_key, result)
        return result

    def _voice_settings(
        self,
        segment: Segment,
        settings: SynthesisSettings,
        capabilities: ModelCapabilities,
        directives: tuple[Directive, ...],
    ) -> VoiceSettings:
        stability = stability_for_segment(
            segment.resolved_role, directives, segment.stability_hint
        )
        preset = preset_for_emotion(segment.emotion_tag)
        similarity = settings.similarity_boost if preset is None else preset.similarity_boost
        style = settings.style if preset is None else preset.style
        if segment.style_hint is not None:
            style = segment.style_hint
        return build_voice_settings(
            capabilities,
            stability=stability,
            similarity_boost=similarity,
            style=style,
            use_speaker_boost=settings.use_speaker_boost,
            speed=None if preset is None else preset.speed,
        )

    async def _synthesize_chunk(
        self, request: SynthesisRequest, segment: Segment
    ) -> tuple[bytes, tuple[WordTiming, ...], float]:
        breaker = self.breakers.get(self.backend.name)
        response = await call_with_retry(
            lambda: self._call_backend(request),
            policy=self.retry_policy,
            breaker=breaker,
            sleeper=self._sleeper,
            random_fn=self._random_fn,
            on_retry=self._on_retry,
        )

        try:
            grouped = group_character_alignment(
                response.alignment, segment_index=segment.index, speaker=segment.speaker
            )
        except ValueError as exc:
            raise SynthesisProviderError(
                f"Malformed alignment for segment {segment.index}: {exc}",
                failure_kind="malformed_response",
            ) from exc

        if grouped is None:
            logger.warning("[synthesis] segment {} returned no alignment", segment.index)
            return response.audio, (), estimate_duration_ms(len(response.audio))
        words, total_ms = grouped
        duration = float(total_ms) if total_ms > 0 else estimate_duration_ms(len(response.audio))
        return response.audio, words, duration

    async def _call_backend(self, request: SynthesisRequest) -> BackendResponse:
        self.backend_calls += 1
        try:
            return await asyncio.wait_for(
                self.backend.synthesize(request), timeout=request.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise SynthesisProviderError(
                f"Synthesis call exceeded {request.timeout_seconds:.0f}s timeout.",
                failure_kind="timeout",
            ) from exc

    def _on_retry(self, attempt: int, error: SynthesisProviderError, delay: float) -> None:
        self.retry_attempts += 1

    async def _join_chunks(
        self, segment: Segment, audios: list[bytes], durations: list[float]
    ) -> bytes:
        if self.chunk_joiner is None:
            raise SynthesisProviderError(
                f"Segment {segment.index} needs {len(audios)} chunks but no chunk joiner is set.",
                failure_kind="chunking",
            )
        clips = [
            AssemblyClip(
                audio=audio,
                speaker=segment.speaker,
                role=segment.resolved_role,
                duration_ms=duration,
                segment_index=segment.index,
            )
            for audio, duration in zip(audios, durations)
        ]
        assembled = await self.chunk_joiner(clips)
        return assembled.audio

    def _cache_lookup(self, cache_key: str, segment: Segment) -> SynthesisResult | None:
        if self.cache is None:
            return None
        raw = self.cache.get(cache_key)
        if raw is None:
            return None
        payload = json.loads(raw.decode("utf-8"))
        words = tuple(
            WordTiming(
                text=item["text"],
                clean_text=item["clean_text"],
                start_ms=int(item["start_ms"]),
                end_ms=int(item["end_ms"]),
                segment_index=segment.index,
                speaker=segment.speaker,
            )
            for item in payload["words"]
        )
        logger.debug("[synthesis] cache hit for segment {}", segment.index)
        return SynthesisResult(
            segment_index=segment.index,
            audio_bytes=base64.b64decode(payload["audio_base64"]),
            word_timings=words,
            duration_ms=float(payload["duration_ms"]),
            success=True,
            cached=True,
            chunk_count=int(payload.get("chunk_count", 1)),
            speaker=segment.speaker,
            role=segment.resolved_role,
            speed_modifier=segment.speed_modifier,
        )

    def _cache_store(self, cache_key: str, result: SynthesisResult) -> None:
        if self.cache is None:
            return
        payload = {
            "audio_base64": base64.b64encode(result.audio_bytes).decode("ascii"),
            "words": [word.as_dict() for word in result.word_timings],
            "duration_ms": result.duration_ms,
            "chunk_count": result.chunk_count,
        }
        self.cache.set(
            cache_key,
            json.dumps(payload, separators=(",", ":")).encode("utf-8"),
            self.cache_ttl_seconds,
        )

