"""Unit tests for windowed scheduling and word timeline reconstruction."""

from __future__ import annotations

import asyncio

import pytest

from storyvoice.config import TimingPolicy
from storyvoice.errors import TimingValidationError
from storyvoice.models.datatypes import Segment, SynthesisResult, WordTiming
from storyvoice.pipeline import BatchScheduler, TimingReconstructor
from tests.fakes import RecordingSleeper


def _segments(count: int) -> list[Segment]:
    return [
        Segment(index=i, speaker="narrator", text=f"Line {i}.", voice_id="voice-a")
        for i in range(count)
    ]


def _word(text: str, start: int, end: int, index: int = 0) -> WordTiming:
    return WordTiming(text=text, clean_text=text, start_ms=start, end_ms=end, segment_index=index)


def _result(
    index: int, words: list[WordTiming], duration: float, **extra: object
) -> SynthesisResult:
    return SynthesisResult(
        segment_index=index,
        audio_bytes=b"x",
        word_timings=tuple(words),
        duration_ms=duration,
        success=True,
        **extra,
    )


def test_scheduler_runs_fixed_windows_and_reports_progress() -> None:
    """Calls run at most `concurrency` at a time, windows pause between each other."""

    active = 0
    peak = 0
    progress: list[tuple[int, int]] = []
    sleeper = RecordingSleeper()

    async def _synthesize(segment: Segment) -> SynthesisResult:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0)
        active -= 1
        return SynthesisResult(segment_index=segment.index, success=True)

    scheduler = BatchScheduler(_synthesize, concurrency=3, window_pause_ms=50, sleeper=sleeper)

    results = asyncio.run(
        scheduler.run(_segments(7), on_progress=lambda done, total: progress.append((done, total)))
    )

    assert [result.segment_index for result in results] == list(range(7))
    assert peak == 3
    assert progress == [(3, 7), (6, 7), (7, 7)]
    assert sleeper.delays == [0.05, 0.05]


def test_scheduler_orders_results_regardless_of_completion_order() -> None:
    completion: list[int] = []

    async def _synthesize(segment: Segment) -> SynthesisResult:
        await asyncio.sleep(0.01 * (5 - segment.index))
        completion.append(segment.index)
        return SynthesisResult(segment_index=segment.index, success=True)

    scheduler = BatchScheduler(_synthesize, concurrency=5, window_pause_ms=0)

    results = asyncio.run(scheduler.run(list(reversed(_segments(5)))))

    assert completion == [4, 3, 2, 1, 0]
    assert [result.segment_index for result in results] == [0, 1, 2, 3, 4]


def test_scheduler_ignores_failing_progress_sink() -> None:
    async def _synthesize(segment: Segment) -> SynthesisResult:
        return SynthesisResult(segment_index=segment.index, success=True)

    def _broken_sink(done: int, total: int) -> None:
        raise RuntimeError("sink closed")

    results = asyncio.run(
        BatchScheduler(_synthesize, window_pause_ms=0).run(_segments(2), on_progress=_broken_sink)
    )

    assert len(results) == 2


def test_scheduler_rejects_non_positive_concurrency() -> None:
    async def _synthesize(segment: Segment) -> SynthesisResult:
        return SynthesisResult(segment_index=segment.index)

    with pytest.raises(ValueError):
        BatchScheduler(_synthesize, concurrency=0)


def test_merge_offsets_segments_in_index_order_and_skips_failures() -> None:
    """Each segment starts where its predecessors' durations end."""

    results = [
        _result(2, [_word("c", 0, 100, 2)], 300),
        _result(0, [_word("a", 0, 400)], 500),
        SynthesisResult(segment_index=1, success=False, error_kind="auth"),
        _result(3, [_word("d", 10, 90, 3)], 0),
    ]

    words, naive = TimingReconstructor().merge_timings(results)

    assert [(word.text, word.start_ms, word.end_ms) for word in words] == [
        ("a", 0, 400),
        ("c", 500, 600),
        ("d", 810, 890),
    ]
    assert naive == 500 + 300 + 90


def test_merge_scales_segments_with_tempo_change() -> None:
    results = [
        _result(0, [_word("fast", 0, 1000)], 1000, speed_modifier=1.25),
        _result(1, [_word("slow", 0, 500, 1)], 500, speed_modifier=1.02),
    ]

    words, naive = TimingReconstructor().merge_timings(results)

    assert (words[0].start_ms, words[0].end_ms) == (0, 800)
    assert (words[1].start_ms, words[1].end_ms) == (800, 1300)
    assert naive == 1300


def test_rescale_only_beyond_threshold() -> None:
    reconstructor = TimingReconstructor()
    words = (_word("a", 0, 500), _word("b", 600, 1000))

    same, total_same = reconstructor.rescale(words, 1000, 1005)
    scaled, total_scaled = reconstructor.rescale(words, 1000, 1200)

    assert same == words
    assert total_same == 1000
    assert [(word.start_ms, word.end_ms) for word in scaled] == [(0, 600), (720, 1200)]
    assert total_scaled == 1200


def test_sub_threshold_drift_keeps_a_valid_timeline() -> None:
    """Under-threshold drift larger than the end tolerance must still validate."""

    reconstructor = TimingReconstructor()
    words = (_word("first", 0, 50_000), _word("last", 50_000, 100_000))

    kept, total = reconstructor.rescale(words, 100_000, 100_900)

    assert kept == words
    assert total == 100_000
    reconstructor.validate(kept, total)


def test_validate_accepts_well_formed_timeline() -> None:
    TimingReconstructor().validate([_word("a", 100, 400), _word("b", 400, 900)], 1200)


@pytest.mark.parametrize(
    ("words", "total"),
    [
        ([], 1000),
        ([_word("a", 0, 100)], 0),
        ([_word("a", 0, 100)], 31 * 60 * 1000),
        ([_word("a", 1200, 1300)], 1500),
        ([_word("a", 0, 100)], 1000),
        ([_word("a", 300, 400), _word("b", 200, 500)], 600),
        ([_word("a", 0, 400), _word("b", 500, 450)], 600),
    ],
)
def test_validate_rejects_broken_timelines(words: list[WordTiming], total: float) -> None:
    """Empty, out-of-range, late, drifting, unordered, or inverted timelines fail."""

    with pytest.raises(TimingValidationError):
        TimingReconstructor().validate(words, total)


def test_validate_uses_configured_tolerances() -> None:
    relaxed = TimingReconstructor(TimingPolicy(end_drift_ms=2000.0))

    relaxed.validate([_word("a", 0, 100)], 1500)
