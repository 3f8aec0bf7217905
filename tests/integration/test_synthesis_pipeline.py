"""End-to-end pipeline tests against the fake backend and fake audio engine."""

from __future__ import annotations

import asyncio
import io

import pytest

from storyvoice.config import StoryvoiceConfig
from storyvoice.errors import PipelineStageError, SynthesisProviderError
from storyvoice.models.datatypes import OverlayTrack, Segment
from storyvoice.pipeline import SynthesisPipeline
from storyvoice.telemetry.logger import RunLogger
from tests.fakes import (
    FakeAudioEngine,
    FakeSynthesisBackend,
    fake_audio,
    no_sleep,
    parse_fake_audio,
)


def _pipeline(
    backend: FakeSynthesisBackend | None = None,
    engine: FakeAudioEngine | None = None,
    config: StoryvoiceConfig | None = None,
    **kwargs: object,
) -> SynthesisPipeline:
    return SynthesisPipeline(
        config or StoryvoiceConfig(),
        backend=backend or FakeSynthesisBackend(),
        engine=engine or FakeAudioEngine(),
        sleeper=no_sleep,
        **kwargs,
    )


def _story() -> list[Segment]:
    return [
        Segment(index=0, speaker="narrator", text="Once upon a time.", voice_id="voice-a"),
        Segment(
            index=1,
            speaker="hero",
            text="Hello!",
            voice_id="voice-b",
            emotion_tag="excited",
            role="character",
        ),
        Segment(index=2, speaker="narrator", text="The end.", voice_id="voice-a"),
    ]


def _dialogue(count: int) -> list[Segment]:
    speakers = ("narrator", "mira", "mira", "tomas")
    return [
        Segment(
            index=i,
            speaker=speakers[i % len(speakers)],
            text=f"Line number {i} is spoken.",
            voice_id=f"voice-{speakers[i % len(speakers)]}",
        )
        for i in range(count)
    ]


def test_three_segment_story_crossfades_and_aligns_words() -> None:
    """Three calls, a crossfade chain with 100 ms overlaps, and 7 ordered words."""

    backend = FakeSynthesisBackend(ms_per_char=50)
    engine = FakeAudioEngine()
    progress: list[tuple[str, int, int]] = []

    result = asyncio.run(
        _pipeline(backend, engine).synthesize_and_assemble(
            _story(), on_progress=lambda *event: progress.append(event)
        )
    )

    assert backend.call_count == 3
    assert result.assembly_strategy == "crossfade_chain"
    assert engine.graphs[0].render().count("acrossfade=d=0.1:") == 2
    segment_durations = [850, 750, 400]
    pads = 3 * 50
    assert result.duration_ms == sum(segment_durations) + pads - 2 * 100
    assert parse_fake_audio(result.audio)[1] == "Once upon a time.|Hello!|The end."

    words = result.word_timings
    assert [word.clean_text for word in words] == [
        "Once", "upon", "a", "time", "Hello", "The", "end",
    ]
    starts = [word.start_ms for word in words]
    assert all(later > earlier for earlier, later in zip(starts, starts[1:]))
    assert abs(words[-1].end_ms - result.duration_ms) <= 500
    assert [word.segment_index for word in words] == [0, 0, 0, 0, 1, 2, 2]
    assert result.failures == ()
    assert progress == [
        ("synthesize", 3, 3),
        ("merge", 1, 1),
        ("assemble", 1, 1),
        ("rescale", 1, 1),
        ("validate", 1, 1),
    ]


def test_sixty_segments_are_batched_in_order() -> None:
    backend = FakeSynthesisBackend(ms_per_char=20)
    engine = FakeAudioEngine()
    segments = _dialogue(60)

    result = asyncio.run(_pipeline(backend, engine).synthesize_and_assemble(segments))

    assert result.assembly_strategy == "batch_crossfade"
    assert engine.input_counts == [25, 25, 10, 3]
    assert parse_fake_audio(result.audio)[1] == "|".join(segment.text for segment in segments)
    indices = [word.segment_index for word in result.word_timings]
    assert indices == sorted(indices)
    assert set(indices) == set(range(60))
    assert abs(result.word_timings[-1].end_ms - result.duration_ms) <= 500


def test_out_of_order_completion_keeps_index_order() -> None:
    """Early segments finishing last must not change audio or word order."""

    segments = _dialogue(5)
    backend = FakeSynthesisBackend(
        delays={segment.text: 0.01 * (5 - segment.index) for segment in segments}
    )
    engine = FakeAudioEngine()

    result = asyncio.run(_pipeline(backend, engine).synthesize_and_assemble(segments))

    assert backend.completion_order == [segment.text for segment in reversed(segments)]
    assert parse_fake_audio(result.audio)[1] == "|".join(segment.text for segment in segments)
    indices = [word.segment_index for word in result.word_timings]
    assert indices == sorted(indices)


def test_shuffled_input_is_assembled_by_index() -> None:
    segments = _story()

    result = asyncio.run(_pipeline().synthesize_and_assemble(list(reversed(segments))))

    assert parse_fake_audio(result.audio)[1] == "Once upon a time.|Hello!|The end."


def test_failed_segment_is_reported_and_omitted() -> None:
    segments = _story()
    backend = FakeSynthesisBackend(
        always_fail={"Hello!": SynthesisProviderError("policy", failure_kind="content_policy")}
    )

    result = asyncio.run(_pipeline(backend).synthesize_and_assemble(segments))

    assert result.failed_indices == (1,)
    assert result.failures[0].error_kind == "content_policy"
    assert result.failures[0].speaker == "hero"
    assert parse_fake_audio(result.audio)[1] == "Once upon a time.|The end."
    assert {word.segment_index for word in result.word_timings} == {0, 2}


def test_all_failed_segments_raise_synthesis_stage_error() -> None:
    error = SynthesisProviderError("bad key", failure_kind="auth")
    segments = _story()
    backend = FakeSynthesisBackend(always_fail={segment.text: error for segment in segments})

    with pytest.raises(PipelineStageError) as exc_info:
        asyncio.run(_pipeline(backend).synthesize_and_assemble(segments))

    assert exc_info.value.stage == "synthesis"
    assert exc_info.value.segment_indices == (0, 1, 2)
    assert "auth" in exc_info.value.detail


def test_cache_serves_repeated_requests() -> None:
    backend = FakeSynthesisBackend()
    pipeline = _pipeline(backend)

    first = asyncio.run(pipeline.synthesize_and_assemble(_story()))
    second = asyncio.run(pipeline.synthesize_and_assemble(_story()))

    assert backend.call_count == 3
    assert first.cache_hits == 0
    assert pipeline.client.backend_calls == 3
    assert second.cache_hits == 3
    assert second.audio == first.audio
    assert second.word_timings == first.word_timings


def test_unavailable_engine_fails_multi_segment_assembly() -> None:
    with pytest.raises(PipelineStageError) as exc_info:
        asyncio.run(
            _pipeline(engine=FakeAudioEngine(available=False)).synthesize_and_assemble(_story())
        )

    assert exc_info.value.stage == "assembly"
    assert exc_info.value.hint is not None and "ffmpeg" in exc_info.value.hint


def test_unavailable_engine_passes_single_segment_through() -> None:
    backend = FakeSynthesisBackend(ms_per_char=50)

    result = asyncio.run(
        _pipeline(backend, FakeAudioEngine(available=False)).synthesize_and_assemble(
            _story()[:1]
        )
    )

    assert result.assembly_strategy == "passthrough"
    assert result.duration_ms == 850
    assert len(result.word_timings) == 4


def test_render_failure_raises_assembly_stage_error() -> None:
    with pytest.raises(PipelineStageError) as exc_info:
        asyncio.run(
            _pipeline(engine=FakeAudioEngine(fail_render=True)).synthesize_and_assemble(_story())
        )

    assert exc_info.value.stage == "assembly"
    assert exc_info.value.segment_indices == (0, 1, 2)


def test_excessive_lead_in_raises_timing_stage_error() -> None:
    segment = Segment(index=0, speaker="narrator", text=" " * 30 + "Hi.", voice_id="voice-a")

    with pytest.raises(PipelineStageError) as exc_info:
        asyncio.run(
            _pipeline(FakeSynthesisBackend(ms_per_char=50)).synthesize_and_assemble([segment])
        )

    assert exc_info.value.stage == "timing"


@pytest.mark.parametrize(
    "segments",
    [
        [],
        [
            Segment(index=1, speaker="narrator", text="A.", voice_id="voice-a"),
            Segment(index=1, speaker="narrator", text="B.", voice_id="voice-a"),
        ],
    ],
)
def test_invalid_input_raises_input_stage_error(segments: list[Segment]) -> None:
    backend = FakeSynthesisBackend()

    with pytest.raises(PipelineStageError) as exc_info:
        asyncio.run(_pipeline(backend).synthesize_and_assemble(segments))

    assert exc_info.value.stage == "input"
    assert backend.call_count == 0


def test_overlays_are_mixed_without_changing_duration() -> None:
    engine = FakeAudioEngine()
    overlays = [OverlayTrack(audio=fake_audio(10_000, "rain"), start_ms=200, volume=0.3)]
    progress: list[str] = []

    result = asyncio.run(
        _pipeline(engine=engine).synthesize_and_assemble(
            _story(), on_progress=lambda phase, *_: progress.append(phase), overlays=overlays
        )
    )

    assert "overlay" in progress
    assert len(engine.graphs) == 2
    assert result.assembly_strategy == "crossfade_chain"
    assert result.overlay_count == 1
    assert parse_fake_audio(result.audio)[1] == "Once upon a time.|Hello!|The end."


def test_failing_progress_sink_does_not_break_the_run() -> None:
    def _broken(phase: str, current: int, total: int) -> None:
        raise RuntimeError("ui went away")

    result = asyncio.run(_pipeline().synthesize_and_assemble(_story(), on_progress=_broken))

    assert len(result.word_timings) == 7


def test_run_logger_records_stage_sequence() -> None:
    sink = io.StringIO()
    run_logger = RunLogger(sink)
    try:
        asyncio.run(_pipeline(run_logger=run_logger).synthesize_and_assemble(_story()))
    finally:
        run_logger.close()

    lines = sink.getvalue().splitlines()
    assert lines[0] == "[phase] level=INFO stage=synthesize event=start step=1/6"
    assert "[phase] level=INFO stage=validate event=complete" in lines
    assert not any("overlay" in line for line in lines)


def test_normalize_override_is_applied_per_request() -> None:
    engine = FakeAudioEngine()

    asyncio.run(_pipeline(engine=engine).synthesize_and_assemble(_story(), normalize=False))

    assert "loudnorm" not in engine.graphs[0].render()


def test_small_gap_drift_keeps_unscaled_timeline() -> None:
    """Gap padding below the rescale threshold must not fail end-drift validation."""

    text = " ".join(["story"] * 100)
    segments = [
        Segment(
            index=i,
            speaker=("mira", "tomas")[i % 2],
            text=text,
            voice_id=("voice-mira", "voice-tomas")[i % 2],
        )
        for i in range(12)
    ]
    engine = FakeAudioEngine()

    result = asyncio.run(
        _pipeline(FakeSynthesisBackend(ms_per_char=50), engine).synthesize_and_assemble(
            segments
        )
    )

    assert result.assembly_strategy == "gap_concat"
    assembled_ms = parse_fake_audio(result.audio)[0]
    assert assembled_ms == 12 * 29_950 + 11 * 250 + 50
    assert result.duration_ms == 12 * 29_950
    assert result.word_timings[-1].end_ms == result.duration_ms
    assert len(result.word_timings) == 1200


def test_omitted_segments_are_logged_as_stage_warnings() -> None:
    sink = io.StringIO()
    run_logger = RunLogger(sink)
    backend = FakeSynthesisBackend(
        always_fail={"Hello!": SynthesisProviderError("policy", failure_kind="content_policy")}
    )
    try:
        asyncio.run(
            _pipeline(backend, run_logger=run_logger).synthesize_and_assemble(_story())
        )
    finally:
        run_logger.close()

    assert (
        "[phase] level=WARNING stage=synthesize event=warning error_kind=content_policy "
        "reason=segment_omitted segment=1"
    ) in sink.getvalue().splitlines()
