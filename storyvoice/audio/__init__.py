"""Audio assembly components.

This package contains the filter graph builder, the ffmpeg/ffprobe engine
wrapper, and the strategy-selecting `AudioAssembler`.
"""

from .assembler import AssemblyStrategy, AudioAssembler
from .engine import AudioEngine
from .filtergraph import FilterGraph

__all__ = ["AssemblyStrategy", "AudioAssembler", "AudioEngine", "FilterGraph"]
