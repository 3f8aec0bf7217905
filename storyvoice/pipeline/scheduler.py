"""Windowed concurrent synthesis scheduling.

Segments are dispatched in fixed-size windows. Every call in a window runs
concurrently and the next window starts only after the whole window has
finished. Results are returned sorted by segment index, independent of the
order in which calls completed.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Sequence

from loguru import logger

from ..models.datatypes import Segment, SynthesisResult

SegmentSynthesizer = Callable[[Segment], Awaitable[SynthesisResult]]
ProgressSink = Callable[[int, int], None]


class BatchScheduler:
    """Run a per-segment synthesizer over many segments with bounded parallelism."""

    def __init__(
        self,
        synthesize: SegmentSynthesizer,
        *,
        concurrency: int = 5,
        window_pause_ms: float = 50.0,
        sleeper: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("`concurrency` must be a positive integer.")
        self._synthesize = synthesize
        self.concurrency = concurrency
        self.window_pause_ms = window_pause_ms
        self._sleeper = sleeper

    async def run(
        self,
        segments: Sequence[Segment],
        concurrency: int | None = None,
        on_progress: ProgressSink | None = None,
    ) -> list[SynthesisResult]:
        """Synthesize all segments and return results ordered by segment index."""

        size = concurrency or self.concurrency
        if size <= 0:
            raise ValueError("`concurrency` must be a positive integer.")

        total = len(segments)
        results: list[SynthesisResult] = []
        for start in range(0, total, size):
            window = segments[start : start + size]
            results.extend(await asyncio.gather(*(self._synthesize(s) for s in window)))
            completed = start + len(window)
            logger.debug("[scheduler] window done {}/{}", completed, total)
            self._report(on_progress, completed, total)
            if completed < total and self.window_pause_ms > 0:
                await self._sleeper(self.window_pause_ms / 1000.0)

        return sorted(results, key=lambda result: result.segment_index)

    @staticmethod
    def _report(on_progress: ProgressSink | None, current: int, total: int) -> None:
        if on_progress is None:
            return
        try:
            on_progress(current, total)
        except Exception as exc:
            logger.debug("[scheduler] progress sink raised {}: {}", type(exc).__name__, exc)
