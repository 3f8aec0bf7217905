"""Split oversize segment text into backend-sized chunks.

Split points are searched in preference order: the last sentence end before
the limit, then the last clause boundary, then the last whitespace run. Text
with no usable boundary is hard-cut at the limit.
"""

from __future__ import annotations

import re

from loguru import logger

DEFAULT_MAX_CHUNK_CHARS = 4800

_BOUNDARY_PATTERNS = (
    re.compile(r"[.!?]\s+"),
    re.compile(r"[,;:]\s+"),
    re.compile(r"\s+"),
)


def _split_point(text: str, limit: int) -> int:
    """Return the end offset of the preferred boundary within `limit` characters."""

    for pattern in _BOUNDARY_PATTERNS:
        best = -1
        for match in pattern.finditer(text):
            if match.end() > limit:
                break
            best = match.end()
        if best > 0:
            return best
    return limit


def split_for_backend(text: str, max_chars: int = DEFAULT_MAX_CHUNK_CHARS) -> list[str]:
    """Split text into stripped chunks no longer than `max_chars`.

    Text within the limit is returned unchanged as a single chunk.
    """

    if max_chars <= 0:
        raise ValueError("`max_chars` must be a positive integer.")
    if len(text) <= max_chars:
        return [text]

    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= max_chars:
            chunks.append(remaining.strip())
            break
        point = _split_point(remaining, max_chars)
        chunk = remaining[:point].strip()
        if chunk:
            chunks.append(chunk)
        remaining = remaining[point:].strip()

    logger.info("[chunking] split {} chars into {} chunks", len(text), len(chunks))
    return [chunk for chunk in chunks if chunk]
