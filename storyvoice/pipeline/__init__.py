"""Storyvoice pipeline package.

This package contains orchestration, windowed scheduling, and word timeline
reconstruction for the synthesis pipeline.
"""

from .orchestrator import SynthesisPipeline
from .scheduler import BatchScheduler
from .timing import TimingReconstructor

__all__ = ["SynthesisPipeline", "BatchScheduler", "TimingReconstructor"]
