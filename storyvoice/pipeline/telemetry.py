"""Stage telemetry helper methods for the synthesis pipeline.

Responsibilities:
- Forward `(phase, current, total)` progress to a caller-supplied sink.
- Emit stage start/complete/warning/failure events.
- Wrap stage actions with consistent telemetry hooks.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

from loguru import logger

from ..telemetry.logger import RunLogger

_StageResult = TypeVar("_StageResult")

PhaseProgress = Callable[[str, int, int], None]


class PipelineTelemetryMixin:
    """Provide stage-telemetry helper methods."""

    _PHASE_SEQUENCE = (
        "synthesize",
        "merge",
        "assemble",
        "overlay",
        "rescale",
        "validate",
    )

    _run_logger: RunLogger | None
    _progress: PhaseProgress | None

    def _stage_position(self, stage_name: str) -> tuple[int, int] | None:
        """Return 1-based stage index and total stage count for known stages."""

        try:
            index = self._PHASE_SEQUENCE.index(stage_name) + 1
        except ValueError:
            return None
        return index, len(self._PHASE_SEQUENCE)

    def _emit_progress(self, phase: str, current: int, total: int) -> None:
        """Forward progress to the caller; a failing sink is logged and ignored."""

        if self._progress is None:
            return
        try:
            self._progress(phase, current, total)
        except Exception as exc:
            logger.debug("[pipeline] progress sink raised {}: {}", type(exc).__name__, exc)

    def _on_stage_start(self, stage_name: str) -> None:
        """Emit a stage-start event with its position in the phase sequence."""

        if self._run_logger is None:
            return
        position = self._stage_position(stage_name)
        if position is None:
            self._run_logger.log_stage_start(stage_name)
        else:
            self._run_logger.log_stage_start(stage_name, step=f"{position[0]}/{position[1]}")

    def _on_stage_complete(self, stage_name: str, **context: object) -> None:
        """Emit stage-complete event to the structured logger."""

        if self._run_logger is not None:
            self._run_logger.log_stage_complete(stage_name, **context)
        if stage_name != "synthesize":
            self._emit_progress(stage_name, 1, 1)

    def _on_stage_warning(self, stage_name: str, reason: str, **context: object) -> None:
        if self._run_logger is not None:
            self._run_logger.log_stage_warning(stage_name, reason, **context)

    def _on_stage_failure(self, stage_name: str, exc: Exception) -> None:
        """Emit stage-failure event with sanitized exception metadata."""

        if self._run_logger is not None:
            self._run_logger.log_stage_failure(stage_name, type(exc).__name__)

    def _run_stage(
        self,
        stage_name: str,
        action: Callable[[], _StageResult],
    ) -> _StageResult:
        """Run one named synchronous stage with start/complete/failure telemetry."""

        self._on_stage_start(stage_name)
        try:
            result = action()
        except Exception as exc:
            self._on_stage_failure(stage_name, exc)
            raise
        self._on_stage_complete(stage_name)
        return result

    async def _run_async_stage(
        self,
        stage_name: str,
        action: Callable[[], Awaitable[_StageResult]],
    ) -> _StageResult:
        """Run one named coroutine stage with start/complete/failure telemetry."""

        self._on_stage_start(stage_name)
        try:
            result = await action()
        except Exception as exc:
            self._on_stage_failure(stage_name, exc)
            raise
        self._on_stage_complete(stage_name)
        return result
