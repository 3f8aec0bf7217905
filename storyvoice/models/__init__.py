"""Shared typed data models for Storyvoice.

This package contains dataclasses used across synthesis, timing, and assembly
modules to avoid cross-module coupling and circular imports.
"""

from .datatypes import (
    AssembledAudio,
    AssemblyClip,
    NarrationResult,
    OverlayTrack,
    Segment,
    SegmentFailure,
    SynthesisResult,
    WordTiming,
)

__all__ = [
    "AssembledAudio",
    "AssemblyClip",
    "NarrationResult",
    "OverlayTrack",
    "Segment",
    "SegmentFailure",
    "SynthesisResult",
    "WordTiming",
]
