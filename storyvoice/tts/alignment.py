"""Character-to-word alignment grouping.

The backend reports one start/end time per character (in seconds). Words are
grouped at spaces, newlines, and tabs; bracketed directive markup is skipped
so tags never surface as spoken words.
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Sequence

from ..models.datatypes import WordTiming

_WORD_BOUNDARIES = frozenset({" ", "\n", "\t"})
_EDGE_PUNCTUATION_RE = re.compile(r"^[^A-Za-z0-9]+|[^A-Za-z0-9]+$")


def clean_word(text: str) -> str:
    """Strip leading/trailing non-alphanumerics, keeping the raw word if nothing remains."""

    cleaned = _EDGE_PUNCTUATION_RE.sub("", text)
    return cleaned or text


def _seconds_to_ms(values: Sequence[Any]) -> list[int]:
    return [int(round(float(value) * 1000)) for value in values]


def group_character_alignment(
    alignment: Mapping[str, Any] | None,
    *,
    segment_index: int = 0,
    speaker: str | None = None,
) -> tuple[tuple[WordTiming, ...], int] | None:
    """Group character alignment into word timings.

    Args:
        alignment: Mapping with `characters`, `character_start_times_seconds`,
            and `character_end_times_seconds`.
        segment_index: Index stamped on every produced word.
        speaker: Speaker stamped on every produced word.

    Returns:
        `(words, total_ms)` where `total_ms` is the last character's end, or
        `None` when no alignment is present.

    Raises:
        ValueError: If the alignment arrays are malformed.
    """

    if not alignment:
        return None
    characters = alignment.get("characters")
    starts_raw = alignment.get("character_start_times_seconds")
    ends_raw = alignment.get("character_end_times_seconds")
    if characters is None or starts_raw is None or ends_raw is None:
        return None
    if not (len(characters) == len(starts_raw) == len(ends_raw)):
        raise ValueError(
            "Alignment arrays differ in length: "
            f"{len(characters)} characters, {len(starts_raw)} starts, {len(ends_raw)} ends."
        )
    if not characters:
        return (), 0

    starts = _seconds_to_ms(starts_raw)
    ends = _seconds_to_ms(ends_raw)

    words: list[WordTiming] = []
    buffer: list[str] = []
    word_start = 0
    word_end = 0
    bracket_depth = 0

    def flush() -> None:
        text = "".join(buffer).strip()
        buffer.clear()
        if not text:
            return
        words.append(
            WordTiming(
                text=text,
                clean_text=clean_word(text),
                start_ms=word_start,
                end_ms=max(word_end, word_start),
                segment_index=segment_index,
                speaker=speaker,
            )
        )

    for position, character in enumerate(characters):
        if character == "[":
            if bracket_depth == 0 and buffer:
                word_end = starts[position]
                flush()
            bracket_depth += 1
            continue
        if character == "]":
            bracket_depth = max(0, bracket_depth - 1)
            continue
        if bracket_depth > 0:
            continue

        if character in _WORD_BOUNDARIES:
            flush()
            continue
        if not buffer:
            word_start = starts[position]
        buffer.append(character)
        word_end = ends[position]

    flush()
    return tuple(words), ends[-1]
