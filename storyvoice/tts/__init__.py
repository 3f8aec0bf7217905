"""Speech synthesis backend abstractions.

This package contains the backend HTTP client, emotion directives, stability
quantization, emotion voice presets, text chunking, alignment grouping, and the
per-segment `SynthesisClient`.
"""

from .client import HTTPSynthesisBackend, SynthesisBackend, SynthesisRequest
from .synthesizer import SynthesisClient
from .voices import EmotionVoicePreset, ModelCapabilities, VoiceSettings

__all__ = [
    "EmotionVoicePreset",
    "HTTPSynthesisBackend",
    "ModelCapabilities",
    "SynthesisBackend",
    "SynthesisClient",
    "SynthesisRequest",
    "VoiceSettings",
]
