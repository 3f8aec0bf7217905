"""Absolute word timeline reconstruction, rescaling, and validation.

Responsibilities:
- Merge per-segment relative word timings into one absolute timeline.
- Rescale the timeline when assembly changed the total duration.
- Validate timeline invariants; violations are errors, never patched.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from loguru import logger

from ..config import TimingPolicy
from ..errors import TimingValidationError
from ..models.datatypes import SynthesisResult, WordTiming


class TimingReconstructor:
    """Merge, rescale, and validate word timings under a `TimingPolicy`."""

    def __init__(self, policy: TimingPolicy | None = None, *, tempo_tolerance: float = 0.05):
        self.policy = policy or TimingPolicy()
        self.tempo_tolerance = tempo_tolerance

    def merge_timings(
        self, results: Iterable[SynthesisResult]
    ) -> tuple[tuple[WordTiming, ...], float]:
        """Offset each successful result by the running duration of its predecessors.

        Results are processed in segment index order; failed results are
        skipped. A segment advances the timeline by its authoritative
        `duration_ms`, else by its last word's end. Segments whose tempo is
        changed during assembly are scaled by the same factor.

        Returns:
            `(words, naive_total_ms)`.
        """

        merged: list[WordTiming] = []
        cumulative = 0.0
        for result in sorted(results, key=lambda item: item.segment_index):
            if not result.success:
                continue
            words = result.word_timings
            duration = result.duration_ms
            if duration <= 0 and words:
                duration = float(words[-1].end_ms)

            tempo = self._effective_tempo(result.speed_modifier)
            if tempo != 1.0:
                words = tuple(word.scaled(1.0 / tempo) for word in words)
                duration = duration / tempo

            merged.extend(word.shifted(cumulative) for word in words)
            cumulative += duration
        return tuple(merged), cumulative

    def rescale(
        self,
        words: Sequence[WordTiming],
        naive_ms: float,
        actual_ms: float,
    ) -> tuple[tuple[WordTiming, ...], float]:
        """Scale timings to the assembled duration when drift exceeds the threshold.

        Within the threshold the words and `naive_ms` are returned unchanged so
        the final word still closes the timeline; beyond it the words are scaled
        and the assembled `actual_ms` becomes the total.
        """

        if naive_ms <= 0 or actual_ms <= 0:
            return tuple(words), actual_ms
        scale = actual_ms / naive_ms
        if abs(scale - 1.0) <= self.policy.rescale_threshold:
            return tuple(words), naive_ms
        logger.info(
            "[timing] rescaling {} words by {:.4f} (naive={}ms actual={}ms)",
            len(words),
            scale,
            round(naive_ms),
            round(actual_ms),
        )
        return tuple(word.scaled(scale) for word in words), actual_ms

    def validate(self, words: Sequence[WordTiming], total_ms: float) -> None:
        """Check timeline invariants.

        Raises:
            TimingValidationError: On an empty list, an out-of-range total, an
                excessive lead-in, end drift beyond tolerance, decreasing start
                times, or a word ending before it starts.
        """

        policy = self.policy
        if not words:
            raise TimingValidationError("Word timeline is empty.")
        if not 0 < total_ms <= policy.max_total_ms:
            raise TimingValidationError(
                f"Total duration {total_ms:.0f}ms is outside (0, {policy.max_total_ms:.0f}]ms."
            )

        first_start = words[0].start_ms
        if first_start > policy.lead_in_max_ms:
            raise TimingValidationError(
                f"First word starts at {first_start}ms "
                f"(limit {policy.lead_in_max_ms:.0f}ms)."
            )
        if first_start > policy.lead_in_warn_ms:
            logger.warning("[timing] first word starts late at {}ms", first_start)

        last_end = words[-1].end_ms
        if abs(total_ms - last_end) > policy.end_drift_ms:
            raise TimingValidationError(
                f"Last word ends at {last_end}ms but total is {total_ms:.0f}ms "
                f"(tolerance {policy.end_drift_ms:.0f}ms)."
            )

        previous_start = words[0].start_ms
        for position, word in enumerate(words):
            if word.end_ms < word.start_ms:
                raise TimingValidationError(
                    f"Word {position} `{word.text}` ends before it starts "
                    f"({word.start_ms}ms > {word.end_ms}ms)."
                )
            if word.start_ms < previous_start:
                raise TimingValidationError(
                    f"Word {position} `{word.text}` starts at {word.start_ms}ms, "
                    f"before the previous word ({previous_start}ms)."
                )
            previous_start = word.start_ms

    def _effective_tempo(self, speed_modifier: float) -> float:
        if abs(speed_modifier - 1.0) <= self.tempo_tolerance:
            return 1.0
        return min(2.0, max(0.5, speed_modifier))
