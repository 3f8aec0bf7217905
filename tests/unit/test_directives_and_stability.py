"""Unit tests for emotion directives and stability quantization."""

from __future__ import annotations

import math

import pytest

from storyvoice.errors import UnknownEmotionError
from storyvoice.tts.directives import (
    EMOTION_DIRECTIVES,
    Directive,
    build_directives,
    directives_for_emotion,
    parse_delivery,
    strip_directives,
    wrap_with_directives,
)
from storyvoice.tts.stability import (
    ALLOWED_STABILITY_VALUES,
    quantize_stability,
    stability_for_segment,
    stability_preference,
)


def test_emotion_table_maps_only_onto_whitelisted_directives() -> None:
    """Every table entry should resolve to at most two known directives."""

    for emotion, directives in EMOTION_DIRECTIVES.items():
        assert len(directives) <= 2, emotion
        assert all(isinstance(directive, Directive) for directive in directives)


def test_directives_for_emotion_is_case_insensitive_and_rejects_unknown() -> None:
    """Known emotions resolve regardless of case; unknown keys raise."""

    assert directives_for_emotion("Menacing") == (Directive.ANGRY, Directive.WHISPER)
    assert directives_for_emotion("neutral") == ()
    assert directives_for_emotion(None) == ()
    assert directives_for_emotion("  ") == ()
    with pytest.raises(UnknownEmotionError) as exc_info:
        directives_for_emotion("hangry")
    assert exc_info.value.failure_kind == "unknown_emotion"
    assert isinstance(exc_info.value, ValueError)


def test_parse_delivery_keeps_whitelisted_tags_only() -> None:
    """Bracketed delivery yields one directive per valid tag; others are dropped."""

    assert parse_delivery("[whisper][sad]") == (Directive.WHISPER, Directive.SAD)
    assert parse_delivery("[giggles][calm]") == (Directive.CALM,)
    assert parse_delivery("Shouting") == (Directive.SHOUTING,)
    assert parse_delivery("softly, as if to a child") == ()


def test_build_directives_puts_emotion_first_and_dedupes() -> None:
    """Emotion directives lead, delivery directives follow, duplicates vanish."""

    directives = build_directives("menacing", "[whisper][fearful]")

    assert directives == (Directive.ANGRY, Directive.WHISPER, Directive.FEARFUL)


def test_wrap_with_directives_prefixes_or_strips_by_model_support() -> None:
    """Directive-capable models get tag prefixes; plain models get clean text."""

    directives = (Directive.EXCITED, Directive.EXCITED)

    assert wrap_with_directives("Hello!", directives) == "[excited]Hello!"
    assert wrap_with_directives("Hello!", ()) == "Hello!"
    assert (
        wrap_with_directives("[sighs] Hello  there", directives, supports_directives=False)
        == "Hello there"
    )
    assert strip_directives("[calm]Once [pause] upon") == "Once upon"


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (0.0, 0.0),
        (0.25, 0.0),
        (0.2500001, 0.5),
        (0.5, 0.5),
        (0.75, 0.5),
        (0.76, 1.0),
        (1.0, 1.0),
        (-3, 0.0),
        (7, 1.0),
        (math.nan, 0.5),
        (math.inf, 0.5),
        ("0.9", 0.5),
        (None, 0.5),
        (True, 0.5),
    ],
)
def test_quantize_stability_is_total(value: object, expected: float) -> None:
    """Any input maps onto one of the three allowed values."""

    result = quantize_stability(value)

    assert result == expected
    assert result in ALLOWED_STABILITY_VALUES


def test_stability_preference_by_role_and_intensity() -> None:
    """High intensity forces 0.0, hints replace defaults, medium lowers them."""

    assert stability_preference("narrator") == 0.8
    assert stability_preference("character") == 0.5
    assert stability_preference("narrator", (Directive.SAD,)) == 0.35
    assert stability_preference("character", (Directive.SURPRISED,)) == 0.3
    assert stability_preference("narrator", (Directive.WHISPER,), 0.9) == 0.0
    assert stability_preference("character", (Directive.CALM,), 0.9) == 0.9


def test_stability_for_segment_returns_quantized_value() -> None:
    """Defaults quantize to 1.0 for narrators and 0.5 for characters."""

    assert stability_for_segment("narrator") == 1.0
    assert stability_for_segment("character") == 0.5
    assert stability_for_segment("narrator", (Directive.SAD,)) == 0.5
    assert stability_for_segment("character", (Directive.SURPRISED,)) == 0.5
    assert stability_for_segment("character", (Directive.ANGRY,)) == 0.0


def test_calm_delivery_lowers_stability_slightly() -> None:
    """Calm directives sit between the role default and the medium tier."""

    assert stability_preference("narrator", (Directive.CALM,)) == 0.5
    assert stability_preference("character", (Directive.CALM,)) == 0.4
    assert stability_preference("narrator", (Directive.CALM, Directive.SAD)) == 0.35
    assert stability_preference("narrator", (Directive.CALM, Directive.WHISPER)) == 0.0
    assert stability_for_segment("narrator", (Directive.CALM,)) == 0.5
    assert stability_for_segment("narrator") == 1.0
