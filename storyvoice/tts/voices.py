"""Model capabilities and per-request voice settings.

Responsibilities:
- Describe which request features each backend model accepts.
- Map emotion tags onto similarity, style, and speed presets.
- Build the `voice_settings` payload for one segment.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger


@dataclass(frozen=True, slots=True)
class ModelCapabilities:
    """Request features supported by one backend model.

    Attributes:
        model_id: Backend model identifier.
        supports_directives: Whether inline `[directive]` tags are honoured.
        supports_style: Whether `style` is accepted in voice settings.
        supports_speaker_boost: Whether `use_speaker_boost` is accepted.
    """

    model_id: str
    supports_directives: bool = False
    supports_style: bool = True
    supports_speaker_boost: bool = True


MODEL_CAPABILITIES: dict[str, ModelCapabilities] = {
    "eleven_v3": ModelCapabilities(
        "eleven_v3",
        supports_directives=True,
        supports_style=True,
        supports_speaker_boost=False,
    ),
    "eleven_multilingual_v2": ModelCapabilities(
        "eleven_multilingual_v2",
        supports_directives=False,
        supports_style=True,
        supports_speaker_boost=True,
    ),
    "eleven_turbo_v2_5": ModelCapabilities(
        "eleven_turbo_v2_5",
        supports_directives=False,
        supports_style=True,
        supports_speaker_boost=True,
    ),
    "eleven_flash_v2_5": ModelCapabilities(
        "eleven_flash_v2_5",
        supports_directives=False,
        supports_style=False,
        supports_speaker_boost=True,
    ),
}


def capabilities_for(model_id: str) -> ModelCapabilities:
    """Return capabilities for a model, defaulting to a plain-text profile."""

    capabilities = MODEL_CAPABILITIES.get(model_id)
    if capabilities is None:
        logger.warning("[voices] unknown model `{}`; assuming no directive support", model_id)
        return ModelCapabilities(model_id)
    return capabilities


@dataclass(frozen=True, slots=True)
class EmotionVoicePreset:
    """Voice shaping applied when a segment carries a known emotion tag.

    Stability is not part of a preset; it comes from the intensity tiers in
    `stability`.
    """

    similarity_boost: float
    style: float
    speed: float = 1.0


_P = EmotionVoicePreset

EMOTION_VOICE_PRESETS: dict[str, EmotionVoicePreset] = {
    "neutral": _P(0.75, 0.4, 1.0),
    "excited": _P(0.8, 0.75, 1.2),
    "angry": _P(0.9, 0.9, 1.15),
    "furious": _P(0.9, 0.95, 1.2),
    "fearful": _P(0.85, 0.5, 1.1),
    "terrified": _P(0.85, 0.7, 1.2),
    "nervous": _P(0.8, 0.45, 1.05),
    "sad": _P(0.8, 0.4, 0.8),
    "grieving": _P(0.85, 0.35, 0.75),
    "melancholy": _P(0.8, 0.3, 0.85),
    "joyful": _P(0.8, 0.65, 1.15),
    "triumphant": _P(0.85, 0.8, 1.1),
    "tender": _P(0.85, 0.25, 0.85),
    "loving": _P(0.85, 0.2, 0.9),
    "comforting": _P(0.8, 0.3, 0.9),
    "threatening": _P(0.9, 0.7, 0.85),
    "menacing": _P(0.9, 0.75, 0.8),
    "sinister": _P(0.9, 0.65, 0.85),
    "sarcastic": _P(0.75, 0.6, 1.0),
    "mocking": _P(0.75, 0.65, 1.05),
    "dry": _P(0.75, 0.5, 0.95),
    "whispered": _P(0.85, 0.15, 0.85),
    "hushed": _P(0.85, 0.2, 0.9),
    "murmured": _P(0.8, 0.25, 0.9),
    "shouted": _P(0.9, 0.95, 1.15),
    "yelled": _P(0.9, 1.0, 1.2),
    "bellowed": _P(0.9, 0.9, 1.0),
    "questioning": _P(0.75, 0.45, 1.0),
    "uncertain": _P(0.75, 0.4, 0.95),
    "confused": _P(0.75, 0.5, 0.95),
    "desperate": _P(0.85, 0.8, 1.2),
    "resigned": _P(0.8, 0.3, 0.8),
    "exhausted": _P(0.8, 0.2, 0.75),
    "relieved": _P(0.8, 0.4, 0.95),
    "bitter": _P(0.85, 0.6, 0.9),
    "playful": _P(0.7, 0.5, 1.15),
    "mysterious": _P(0.8, 0.4, 0.9),
    "dramatic": _P(0.85, 0.7, 1.0),
    "action": _P(0.9, 0.8, 1.2),
    "horror": _P(0.85, 0.6, 0.8),
}

# Speeds the backend accepts.
MIN_SPEED = 0.7
MAX_SPEED = 1.2


def preset_for_emotion(emotion: str | None) -> EmotionVoicePreset | None:
    """Return the preset for an emotion tag, or `None` when it has none."""

    if emotion is None:
        return None
    return EMOTION_VOICE_PRESETS.get(emotion.strip().lower())


@dataclass(frozen=True, slots=True)
class VoiceSettings:
    """Resolved voice settings for one backend request."""

    stability: float
    similarity_boost: float
    style: float | None = None
    use_speaker_boost: bool | None = None
    speed: float | None = None

    def as_payload(self) -> dict[str, float | bool]:
        """Return the JSON `voice_settings` object, omitting unsupported fields."""

        payload: dict[str, float | bool] = {
            "stability": self.stability,
            "similarity_boost": self.similarity_boost,
        }
        if self.style is not None:
            payload["style"] = self.style
        if self.use_speaker_boost is not None:
            payload["use_speaker_boost"] = self.use_speaker_boost
        if self.speed is not None:
            payload["speed"] = self.speed
        return payload

    def fingerprint(self, model_id: str, output_format: str) -> str:
        """Return a stable identity string used in cache keys."""

        optional = (
            "-" if self.style is None else f"{self.style:.2f}",
            "-" if self.use_speaker_boost is None else str(int(self.use_speaker_boost)),
            "-" if self.speed is None else f"{self.speed:.2f}",
        )
        return "|".join(
            (
                model_id,
                output_format,
                f"{self.stability:.2f}",
                f"{self.similarity_boost:.2f}",
                *optional,
            )
        )


def build_voice_settings(
    capabilities: ModelCapabilities,
    *,
    stability: float,
    similarity_boost: float,
    style: float,
    use_speaker_boost: bool,
    speed: float | None = None,
) -> VoiceSettings:
    """Build settings honouring the model's accepted fields."""

    return VoiceSettings(
        stability=stability,
        similarity_boost=similarity_boost,
        style=min(1.0, max(0.0, style)) if capabilities.supports_style else None,
        use_speaker_boost=use_speaker_boost if capabilities.supports_speaker_boost else None,
        speed=None if speed is None else min(MAX_SPEED, max(MIN_SPEED, speed)),
    )
