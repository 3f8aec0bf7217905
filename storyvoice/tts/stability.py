"""Stability selection and quantization for the timestamped endpoint.

The timestamped endpoint accepts only three stability values (0.0, 0.5, 1.0);
any continuous preference is snapped onto that set before a request is built.
"""

from __future__ import annotations

import math
from typing import Iterable

from loguru import logger

from ..models.datatypes import NARRATOR_ROLE
from .directives import (
    HIGH_INTENSITY_DIRECTIVES,
    LOW_INTENSITY_DIRECTIVES,
    MEDIUM_INTENSITY_DIRECTIVES,
    Directive,
)

ALLOWED_STABILITY_VALUES = (0.0, 0.5, 1.0)

_ROLE_DEFAULT = {NARRATOR_ROLE: 0.8}
_ROLE_MEDIUM_INTENSITY = {NARRATOR_ROLE: 0.35}
_ROLE_LOW_INTENSITY = {NARRATOR_ROLE: 0.5}
_CHARACTER_DEFAULT = 0.5
_CHARACTER_MEDIUM_INTENSITY = 0.3
_CHARACTER_LOW_INTENSITY = 0.4


def quantize_stability(value: object) -> float:
    """Snap a stability preference onto the endpoint's allowed values.

    Non-numeric and non-finite input falls back to 0.5 with a warning; numeric
    input is clamped to [0, 1] and bucketed at 0.25 / 0.75.
    """

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        logger.warning("[stability] non-numeric stability {!r}; using 0.5", value)
        return 0.5
    numeric = float(value)
    if not math.isfinite(numeric):
        logger.warning("[stability] non-finite stability {!r}; using 0.5", value)
        return 0.5

    clamped = min(1.0, max(0.0, numeric))
    if clamped <= 0.25:
        return 0.0
    if clamped <= 0.75:
        return 0.5
    return 1.0


def stability_preference(
    role: str,
    directives: Iterable[Directive] = (),
    stability_hint: float | None = None,
) -> float:
    """Return the continuous stability preference before quantization.

    High-intensity directives force 0.0 regardless of role or hint. A hint
    replaces the role default; otherwise medium-intensity directives lower it
    furthest and low-intensity (calm) directives lower it slightly.
    """

    active = frozenset(directives)
    if active & HIGH_INTENSITY_DIRECTIVES:
        return 0.0
    if stability_hint is not None:
        return stability_hint
    if active & MEDIUM_INTENSITY_DIRECTIVES:
        return _ROLE_MEDIUM_INTENSITY.get(role, _CHARACTER_MEDIUM_INTENSITY)
    if active & LOW_INTENSITY_DIRECTIVES:
        return _ROLE_LOW_INTENSITY.get(role, _CHARACTER_LOW_INTENSITY)
    return _ROLE_DEFAULT.get(role, _CHARACTER_DEFAULT)


def stability_for_segment(
    role: str,
    directives: Iterable[Directive] = (),
    stability_hint: float | None = None,
) -> float:
    """Return the quantized stability sent to the backend for one segment."""

    preference = stability_preference(role, directives, stability_hint)
    quantized = quantize_stability(preference)
    logger.debug(
        "[stability] role={} raw={} quantized={}",
        role,
        preference,
        quantized,
    )
    return quantized
