"""Inline delivery directives for expressive synthesis models.

Responsibilities:
- Define the fixed whitelist of inline `[directive]` tags the backend honours.
- Map emotion tags onto directive combinations through a static table.
- Render, de-duplicate, and strip directive prefixes.
"""

from __future__ import annotations

from enum import Enum
import re
from typing import Iterable

from loguru import logger

from ..errors import UnknownEmotionError


class Directive(str, Enum):
    """Inline delivery directives accepted by directive-capable models."""

    EXCITED = "excited"
    SAD = "sad"
    ANGRY = "angry"
    CALM = "calm"
    FEARFUL = "fearful"
    SURPRISED = "surprised"
    WHISPER = "whisper"
    SHOUTING = "shouting"

    @property
    def tag(self) -> str:
        return f"[{self.value}]"

    @classmethod
    def lookup(cls, name: str) -> Directive | None:
        """Return the directive for a case-insensitive name, or `None`."""

        try:
            return cls(name.strip().lower())
        except ValueError:
            return None


_D = Directive

HIGH_INTENSITY_DIRECTIVES = frozenset(
    {_D.FEARFUL, _D.ANGRY, _D.EXCITED, _D.WHISPER, _D.SHOUTING}
)
MEDIUM_INTENSITY_DIRECTIVES = frozenset({_D.SAD, _D.SURPRISED})
LOW_INTENSITY_DIRECTIVES = frozenset({_D.CALM})

EMOTION_DIRECTIVES: dict[str, tuple[Directive, ...]] = {
    "neutral": (),
    "excited": (_D.EXCITED,),
    "sad": (_D.SAD,),
    "angry": (_D.ANGRY,),
    "calm": (_D.CALM,),
    "fearful": (_D.FEARFUL,),
    "surprised": (_D.SURPRISED,),
    "whisper": (_D.WHISPER,),
    "shouting": (_D.SHOUTING,),
    # volume and delivery words
    "whispered": (_D.WHISPER,),
    "hushed": (_D.WHISPER,),
    "murmured": (_D.WHISPER,),
    "shouted": (_D.SHOUTING,),
    "yelled": (_D.SHOUTING,),
    "bellowed": (_D.SHOUTING,),
    "commanding": (_D.SHOUTING,),
    # fear
    "terrified": (_D.FEARFUL,),
    "nervous": (_D.FEARFUL,),
    "anxious": (_D.FEARFUL,),
    "panicked": (_D.FEARFUL,),
    "uncertain": (_D.FEARFUL,),
    # anger
    "furious": (_D.ANGRY,),
    "enraged": (_D.ANGRY,),
    "irritated": (_D.ANGRY,),
    "defiant": (_D.ANGRY,),
    # sadness
    "grieving": (_D.SAD,),
    "melancholy": (_D.SAD,),
    "mournful": (_D.SAD,),
    "devastated": (_D.SAD,),
    "resigned": (_D.SAD,),
    "yearning": (_D.SAD,),
    # joy
    "joyful": (_D.EXCITED,),
    "triumphant": (_D.EXCITED,),
    "happy": (_D.EXCITED,),
    "elated": (_D.EXCITED,),
    "ecstatic": (_D.EXCITED,),
    "playful": (_D.EXCITED,),
    "mocking": (_D.EXCITED,),
    "dramatic": (_D.EXCITED,),
    # calm
    "tender": (_D.CALM,),
    "loving": (_D.CALM,),
    "comforting": (_D.CALM,),
    "peaceful": (_D.CALM,),
    "gentle": (_D.CALM,),
    "warm": (_D.CALM,),
    "soothing": (_D.CALM,),
    "relieved": (_D.CALM,),
    "sarcastic": (_D.CALM,),
    "dry": (_D.CALM,),
    # surprise
    "questioning": (_D.SURPRISED,),
    "confused": (_D.SURPRISED,),
    "awestruck": (_D.SURPRISED,),
    # combinations
    "threatening": (_D.ANGRY, _D.WHISPER),
    "menacing": (_D.ANGRY, _D.WHISPER),
    "bitter": (_D.ANGRY, _D.WHISPER),
    "sinister": (_D.FEARFUL, _D.WHISPER),
    "chilling": (_D.FEARFUL, _D.WHISPER),
    "mysterious": (_D.WHISPER, _D.FEARFUL),
    "horror": (_D.FEARFUL, _D.WHISPER),
    "agonized": (_D.FEARFUL, _D.SHOUTING),
    "desperate": (_D.FEARFUL, _D.SHOUTING),
    "tormented": (_D.SAD, _D.FEARFUL),
    "pleading": (_D.SAD, _D.FEARFUL),
    "exhausted": (_D.SAD, _D.WHISPER),
    "wistful": (_D.SAD, _D.CALM),
    "intimate": (_D.CALM, _D.WHISPER),
    "reverent": (_D.CALM, _D.WHISPER),
    "unhinged": (_D.EXCITED, _D.ANGRY),
    "action": (_D.EXCITED, _D.SHOUTING),
}

_BRACKET_TAG_RE = re.compile(r"\[([^\[\]]+)\]")
_STRIP_TAG_RE = re.compile(r"\[[^\[\]]*\]")


def directives_for_emotion(emotion: str | None) -> tuple[Directive, ...]:
    """Resolve an emotion tag into directives.

    Raises:
        UnknownEmotionError: If the emotion is not present in the table.
    """

    if emotion is None or not emotion.strip():
        return ()
    key = emotion.strip().lower()
    if key not in EMOTION_DIRECTIVES:
        raise UnknownEmotionError(emotion)
    return EMOTION_DIRECTIVES[key]


def parse_delivery(delivery: str | None) -> tuple[Directive, ...]:
    """Parse a delivery direction into whitelisted directives.

    Bracketed input (`[whisper][sad]`) yields one candidate per tag; plain
    text is treated as a single direction. Candidates outside the whitelist
    are dropped.
    """

    if delivery is None or not delivery.strip():
        return ()
    candidates = _BRACKET_TAG_RE.findall(delivery) or [delivery]
    parsed: list[Directive] = []
    for candidate in candidates:
        directive = Directive.lookup(candidate)
        if directive is None:
            logger.debug("[directives] dropped non-whitelisted delivery `{}`", candidate.strip())
            continue
        parsed.append(directive)
    return tuple(parsed)


def dedupe(directives: Iterable[Directive]) -> tuple[Directive, ...]:
    """Drop repeated directives, keeping first-seen order."""

    seen: set[Directive] = set()
    ordered: list[Directive] = []
    for directive in directives:
        if directive in seen:
            continue
        seen.add(directive)
        ordered.append(directive)
    return tuple(ordered)


def build_directives(emotion: str | None, delivery: str | None) -> tuple[Directive, ...]:
    """Combine emotion and delivery directives, emotion first."""

    return dedupe((*directives_for_emotion(emotion), *parse_delivery(delivery)))


def strip_directives(text: str) -> str:
    """Remove inline bracketed markup and collapse the whitespace it leaves."""

    stripped = _STRIP_TAG_RE.sub(" ", text)
    return " ".join(stripped.split())


def wrap_with_directives(
    text: str,
    directives: Iterable[Directive],
    *,
    supports_directives: bool = True,
) -> str:
    """Prefix text with directive tags, or strip all markup for plain models."""

    if not supports_directives:
        return strip_directives(text)
    prefix = "".join(directive.tag for directive in dedupe(directives))
    return f"{prefix}{text}" if prefix else text
