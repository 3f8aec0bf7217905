"""Top-level package for Storyvoice.

This package turns ordered, speaker-attributed story segments into one
narrated audio track with word-level timings. The main orchestration entry
point is `SynthesisPipeline`.
"""

from .pipeline import SynthesisPipeline

__all__ = ["SynthesisPipeline", "__version__"]

__version__ = "0.1.0"
