"""Domain exceptions for synthesis, assembly, and timing diagnostics."""

from __future__ import annotations


class PipelineStageError(RuntimeError):
    """Raised when a specific pipeline stage fails."""

    def __init__(
        self,
        *,
        stage: str,
        detail: str,
        hint: str | None = None,
        segment_indices: tuple[int, ...] = (),
    ) -> None:
        """Initialize a stage-scoped pipeline error."""

        super().__init__(detail)
        self.stage = stage
        self.detail = detail
        self.hint = hint
        self.segment_indices = tuple(segment_indices)


class SynthesisError(RuntimeError):
    """Base class for failures recorded against a single segment."""

    failure_kind = "unknown"


class SynthesisProviderError(SynthesisError):
    """Raised when a synthesis backend request fails or returns malformed output."""

    RETRYABLE_KINDS = frozenset({"rate_limited", "server_error", "transport", "timeout"})

    def __init__(
        self,
        message: str,
        *,
        failure_kind: str = "unknown",
        status_code: int | None = None,
        provider_code: str | None = None,
    ) -> None:
        """Initialize provider error metadata for retry and diagnostics."""

        super().__init__(message)
        self.failure_kind = failure_kind
        self.status_code = status_code
        self.provider_code = provider_code

    @property
    def retryable(self) -> bool:
        """Return whether the failure is transient and may be retried."""

        return self.failure_kind in self.RETRYABLE_KINDS


class CircuitOpenError(SynthesisProviderError):
    """Raised without a network call while a backend circuit breaker is open."""

    def __init__(self, backend: str, remaining_seconds: float) -> None:
        super().__init__(
            f"{backend} circuit open; retry in {remaining_seconds:.1f}s.",
            failure_kind="circuit_open",
        )
        self.backend = backend
        self.remaining_seconds = remaining_seconds


class UnknownEmotionError(SynthesisError, ValueError):
    """Raised when an emotion tag has no entry in the directive table."""

    failure_kind = "unknown_emotion"

    def __init__(self, emotion: str) -> None:
        super().__init__(f"Unknown emotion tag `{emotion}`.")
        self.emotion = emotion


class AudioEngineError(RuntimeError):
    """Raised when the external audio engine fails to render or probe."""

    def __init__(self, message: str, *, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class AudioEngineUnavailableError(AudioEngineError):
    """Raised when ffmpeg is required but cannot be executed."""


class AudioEngineTimeoutError(AudioEngineError):
    """Raised when an engine subprocess exceeds its timeout and is killed."""


class TimingValidationError(ValueError):
    """Raised when merged word timings violate timeline invariants."""
