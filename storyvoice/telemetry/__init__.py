"""Telemetry helpers.

This package emits structured per-phase run events.
"""

from .logger import RunLogger

__all__ = ["RunLogger"]
