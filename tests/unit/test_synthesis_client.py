"""Unit tests for per-segment synthesis: directives, chunking, cache, and failures."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from storyvoice.audio.assembler import AudioAssembler
from storyvoice.config import (
    AssemblyPolicy,
    CircuitBreakerPolicy,
    RetryPolicy,
    SynthesisSettings,
)
from storyvoice.errors import SynthesisProviderError
from storyvoice.models.datatypes import Segment
from storyvoice.providers import AudioCache, CircuitBreakerRegistry
from storyvoice.tts.synthesizer import SynthesisClient
from tests.fakes import FakeAudioEngine, FakeSynthesisBackend, no_sleep, parse_fake_audio


def _segment(text: str, **overrides: object) -> Segment:
    values: dict[str, object] = {
        "index": 0,
        "speaker": "narrator",
        "text": text,
        "voice_id": "voice-a",
    }
    values.update(overrides)
    return Segment(**values)


def _client(backend: FakeSynthesisBackend, **overrides: object) -> SynthesisClient:
    options: dict[str, object] = {"sleeper": no_sleep, "random_fn": lambda: 0.0}
    options.update(overrides)
    return SynthesisClient(backend, **options)


def test_synthesize_prefixes_directives_and_quantizes_stability() -> None:
    """Directive-capable models get tag prefixes; words exclude tag markup."""

    backend = FakeSynthesisBackend(ms_per_char=10)
    segment = _segment("Hello!", speaker="hero", emotion_tag="excited", voice_id="voice-b")

    result = asyncio.run(_client(backend).synthesize(segment))

    assert result.success
    request = backend.requests[0]
    assert request.text == "[excited]Hello!"
    assert request.voice_settings.stability == 0.0
    assert request.voice_settings.use_speaker_boost is None
    assert [word.text for word in result.word_timings] == ["Hello!"]
    assert result.duration_ms == 150
    assert result.role == "character"
    assert result.speaker == "hero"


def test_plain_model_strips_markup_and_sends_speaker_boost() -> None:
    backend = FakeSynthesisBackend(ms_per_char=10)
    segment = _segment("[sighs] Once upon a time.", emotion_tag="sad")
    settings = SynthesisSettings(model_id="eleven_multilingual_v2")

    result = asyncio.run(_client(backend, settings=settings).synthesize(segment))

    request = backend.requests[0]
    assert request.text == "Once upon a time."
    assert request.voice_settings.stability == 0.5
    assert request.voice_settings.use_speaker_boost is True
    assert len(result.word_timings) == 4


def test_missing_alignment_estimates_duration_from_size() -> None:
    backend = FakeSynthesisBackend(with_alignment=False)

    result = asyncio.run(_client(backend).synthesize(_segment("No timings here.")))

    assert result.success
    assert result.word_timings == ()
    assert result.duration_ms == len(result.audio_bytes) / 16000 * 1000


def test_oversize_text_is_chunked_and_stitched(tmp_path: Path) -> None:
    """Chunk durations add up; word offsets continue across chunk boundaries."""

    backend = FakeSynthesisBackend(ms_per_char=10)
    assembler = AudioAssembler(FakeAudioEngine(), AssemblyPolicy(), temp_root=tmp_path)
    text = " ".join(f"Sentence number {i} is here." for i in range(8))
    settings = SynthesisSettings(max_chunk_chars=60)
    client = _client(backend, settings=settings, chunk_joiner=assembler.join_chunks)

    result = asyncio.run(client.synthesize(_segment(text)))

    assert result.success
    assert result.chunk_count == backend.call_count > 1
    assert all(len(request.text) <= 60 for request in backend.requests)
    assert result.duration_ms == sum(len(request.text) * 10 for request in backend.requests)
    starts = [word.start_ms for word in result.word_timings]
    assert starts == sorted(starts)
    assert len(result.word_timings) == len(text.split())
    assert parse_fake_audio(result.audio_bytes)[1] == "|".join(
        backend.label_for(request) for request in backend.requests
    )


def test_oversize_text_without_joiner_fails_segment() -> None:
    backend = FakeSynthesisBackend()
    client = _client(backend, settings=SynthesisSettings(max_chunk_chars=20))

    result = asyncio.run(client.synthesize(_segment("First part here. Second part here.")))

    assert not result.success
    assert result.error_kind == "chunking"


def test_cache_round_trip_makes_one_backend_call() -> None:
    """Identical text, voice, and settings twice should hit the cache."""

    backend = FakeSynthesisBackend()
    cache = AudioCache()
    client = _client(backend, cache=cache)

    first = asyncio.run(client.synthesize(_segment("The end.")))
    second = asyncio.run(client.synthesize(_segment("The  end.", index=7, speaker="narrator")))

    assert backend.call_count == 1
    assert second.cached and not first.cached
    assert second.audio_bytes == first.audio_bytes
    assert second.duration_ms == first.duration_ms
    assert second.segment_index == 7
    assert {word.segment_index for word in second.word_timings} == {7}
    assert cache.hits == 1


def test_cache_separates_voices_and_settings() -> None:
    backend = FakeSynthesisBackend()
    client = _client(backend, cache=AudioCache())

    asyncio.run(client.synthesize(_segment("The end.")))
    asyncio.run(client.synthesize(_segment("The end.", voice_id="voice-b")))
    asyncio.run(client.synthesize(_segment("The end.", emotion_tag="sad")))

    assert backend.call_count == 3


def test_cache_separates_output_formats() -> None:
    backend = FakeSynthesisBackend()
    client = _client(backend, cache=AudioCache())

    asyncio.run(client.synthesize(_segment("The end.")))
    pcm = SynthesisSettings(output_format="pcm_24000")
    asyncio.run(client.synthesize(_segment("The end."), pcm))
    asyncio.run(client.synthesize(_segment("The end."), pcm))

    assert backend.call_count == 2
    assert client.backend_calls == 2
    assert [request.output_format for request in backend.requests] == [
        "mp3_44100_128",
        "pcm_24000",
    ]


def test_emotion_preset_shapes_voice_settings() -> None:
    """Emotion presets supply similarity, style, and speed to the request."""

    backend = FakeSynthesisBackend()
    segment = _segment("Hello!", speaker="hero", emotion_tag="excited")

    asyncio.run(_client(backend).synthesize(segment))

    payload = backend.requests[0].voice_settings.as_payload()
    assert payload == {
        "stability": 0.0,
        "similarity_boost": 0.8,
        "style": 0.75,
        "speed": 1.2,
    }


def test_style_hint_overrides_the_emotion_preset() -> None:
    backend = FakeSynthesisBackend()
    segment = _segment("Hush now.", emotion_tag="tender", style_hint=0.6)

    asyncio.run(_client(backend).synthesize(segment))

    voice_settings = backend.requests[0].voice_settings
    assert voice_settings.style == 0.6
    assert voice_settings.similarity_boost == 0.85
    assert voice_settings.speed == 0.85
    assert voice_settings.stability == 0.5


def test_segments_without_emotion_use_configured_settings() -> None:
    backend = FakeSynthesisBackend()
    settings = SynthesisSettings(similarity_boost=0.6, style=0.2)

    asyncio.run(_client(backend, settings=settings).synthesize(_segment("Plain words.")))

    voice_settings = backend.requests[0].voice_settings
    assert (voice_settings.similarity_boost, voice_settings.style) == (0.6, 0.2)
    assert voice_settings.speed is None


def test_retryable_failure_recovers_and_counts_retries() -> None:
    backend = FakeSynthesisBackend(
        errors={
            "Hello.": [
                SynthesisProviderError("busy", failure_kind="rate_limited", status_code=429),
                SynthesisProviderError("busy", failure_kind="rate_limited", status_code=429),
            ]
        }
    )
    client = _client(backend)

    result = asyncio.run(client.synthesize(_segment("Hello.")))

    assert result.success
    assert backend.call_count == 3
    assert client.retry_attempts == 2


def test_terminal_failures_are_returned_not_raised() -> None:
    backend = FakeSynthesisBackend(
        always_fail={"Hello.": SynthesisProviderError("bad key", failure_kind="auth")}
    )

    result = asyncio.run(_client(backend).synthesize(_segment("Hello.")))
    unknown = asyncio.run(_client(backend).synthesize(_segment("Hi.", emotion_tag="hangry")))

    assert not result.success
    assert result.error_kind == "auth"
    assert result.audio_bytes == b""
    assert unknown.error_kind == "unknown_emotion"


def test_open_breaker_short_circuits_without_backend_call() -> None:
    backend = FakeSynthesisBackend(
        always_fail={"Hello.": SynthesisProviderError("bad key", failure_kind="auth")}
    )
    breakers = CircuitBreakerRegistry(CircuitBreakerPolicy(failure_threshold=5, cooldown_s=60.0))
    client = _client(backend, breakers=breakers)

    results = [asyncio.run(client.synthesize(_segment("Hello."))) for _ in range(6)]

    assert [result.error_kind for result in results] == ["auth"] * 5 + ["circuit_open"]
    assert backend.call_count == 5


def test_slow_backend_call_times_out_as_timeout_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    """A call exceeding its timeout is classified as `timeout` after retries."""

    monkeypatch.setattr(
        "storyvoice.tts.synthesizer.request_timeout_seconds", lambda _length: 0.01
    )
    backend = FakeSynthesisBackend(delays={"Hello.": 0.5})
    client = _client(backend, retry_policy=RetryPolicy(max_attempts=2))

    result = asyncio.run(client.synthesize(_segment("Hello.")))

    assert not result.success
    assert result.error_kind == "timeout"
    assert backend.call_count == 2
