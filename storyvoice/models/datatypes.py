"""Core datatypes shared across Storyvoice modules.

Responsibilities:
- Represent immutable records exchanged between synthesis, timing, and assembly.
- Provide explicit typing for ordering and serialization.

Key types:
- `Segment`, `WordTiming`, `SynthesisResult`, `SegmentFailure`,
  `AssemblyClip`, `AssembledAudio`, `OverlayTrack`, and `NarrationResult`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping

NARRATOR_ROLE = "narrator"
CHARACTER_ROLE = "character"


@dataclass(frozen=True, slots=True)
class Segment:
    """One attributed unit of narration or dialogue text.

    Attributes:
        index: Playback position; output order always follows this value.
        speaker: Speaker identifier (`narrator` or a character name).
        text: Text to synthesize, without directive markup.
        voice_id: Backend voice identifier.
        emotion_tag: Optional emotion key resolved through the directive table.
        delivery_directive: Optional free-form or bracketed delivery direction.
        stability_hint: Optional continuous stability preference in [0, 1].
        style_hint: Optional style exaggeration in [0, 1].
        role: Optional explicit role; derived from `speaker` when omitted.
        speed_modifier: Post-synthesis tempo multiplier applied during assembly.
    """

    index: int
    speaker: str
    text: str
    voice_id: str
    emotion_tag: str | None = None
    delivery_directive: str | None = None
    stability_hint: float | None = None
    style_hint: float | None = None
    role: str | None = None
    speed_modifier: float = 1.0

    @property
    def resolved_role(self) -> str:
        """Return `narrator` or `character` for this segment."""

        if self.role:
            return self.role.strip().lower()
        if self.speaker.strip().lower() == NARRATOR_ROLE:
            return NARRATOR_ROLE
        return CHARACTER_ROLE

    @property
    def is_narrator(self) -> bool:
        return self.resolved_role == NARRATOR_ROLE

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any], *, default_index: int) -> Segment:
        """Build a segment from a JSON-like mapping using snake or camel case keys."""

        def _pick(*keys: str) -> Any:
            for key in keys:
                if key in payload and payload[key] is not None:
                    return payload[key]
            return None

        text = _pick("text")
        voice_id = _pick("voice_id", "voiceId")
        if not isinstance(text, str) or not text.strip():
            raise ValueError(f"Segment {default_index} is missing non-empty `text`.")
        if not isinstance(voice_id, str) or not voice_id.strip():
            raise ValueError(f"Segment {default_index} is missing `voice_id`.")

        index = _pick("index")
        stability = _pick("stability_hint", "stabilityHint")
        style = _pick("style_hint", "styleHint")
        speed = _pick("speed_modifier", "speedModifier")
        return cls(
            index=int(index) if index is not None else default_index,
            speaker=str(_pick("speaker") or "narrator"),
            text=text,
            voice_id=voice_id.strip(),
            emotion_tag=_pick("emotion_tag", "emotionTag", "emotion"),
            delivery_directive=_pick("delivery_directive", "deliveryDirective", "delivery"),
            stability_hint=float(stability) if stability is not None else None,
            style_hint=float(style) if style is not None else None,
            role=_pick("role", "type"),
            speed_modifier=float(speed) if speed is not None else 1.0,
        )


@dataclass(frozen=True, slots=True)
class WordTiming:
    """Start/end offset of one spoken word.

    Attributes:
        text: Word as spoken, including attached punctuation.
        clean_text: Word stripped of leading/trailing punctuation.
        start_ms: Start offset in milliseconds.
        end_ms: End offset in milliseconds.
        segment_index: Index of the segment the word belongs to.
        speaker: Speaker of the owning segment, when known.
    """

    text: str
    clean_text: str
    start_ms: int
    end_ms: int
    segment_index: int = 0
    speaker: str | None = None

    def shifted(self, offset_ms: float) -> WordTiming:
        """Return a copy offset by `offset_ms`."""

        return replace(
            self,
            start_ms=int(round(self.start_ms + offset_ms)),
            end_ms=int(round(self.end_ms + offset_ms)),
        )

    def scaled(self, factor: float) -> WordTiming:
        """Return a copy with both offsets multiplied by `factor`."""

        return replace(
            self,
            start_ms=int(round(self.start_ms * factor)),
            end_ms=int(round(self.end_ms * factor)),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "clean_text": self.clean_text,
            "start_ms": self.start_ms,
            "end_ms": self.end_ms,
            "segment_index": self.segment_index,
            "speaker": self.speaker,
        }


@dataclass(frozen=True, slots=True)
class SynthesisResult:
    """Outcome of synthesizing one segment.

    Attributes:
        segment_index: Index of the source segment.
        audio_bytes: Encoded audio payload, empty on failure.
        word_timings: Segment-relative word timings.
        duration_ms: Authoritative clip duration in milliseconds.
        success: Whether synthesis produced usable audio.
        error: Human-readable failure detail.
        error_kind: Machine-readable failure classification.
        cached: Whether the payload came from the audio cache.
        chunk_count: Number of backend calls stitched into this result.
        speaker: Speaker of the source segment.
        role: Resolved role of the source segment.
        speed_modifier: Tempo multiplier carried through to assembly.
    """

    segment_index: int
    audio_bytes: bytes = b""
    word_timings: tuple[WordTiming, ...] = field(default_factory=tuple)
    duration_ms: float = 0.0
    success: bool = False
    error: str | None = None
    error_kind: str | None = None
    cached: bool = False
    chunk_count: int = 1
    speaker: str | None = None
    role: str | None = None
    speed_modifier: float = 1.0

    @classmethod
    def failed(cls, segment: Segment, error: Exception, kind: str) -> SynthesisResult:
        return cls(
            segment_index=segment.index,
            success=False,
            error=str(error),
            error_kind=kind,
            speaker=segment.speaker,
            role=segment.resolved_role,
        )


@dataclass(frozen=True, slots=True)
class SegmentFailure:
    """Failure summary for one segment reported to the caller."""

    index: int
    speaker: str | None
    error_kind: str
    detail: str


@dataclass(frozen=True, slots=True)
class AssemblyClip:
    """One ordered input to the audio assembler.

    Attributes:
        audio: Encoded audio payload.
        speaker: Speaker identifier used for transition rules.
        role: `narrator` or `character`.
        duration_ms: Known clip duration, or 0 when unknown.
        speed_modifier: Tempo multiplier applied in the filter graph.
        segment_index: Source segment index for diagnostics.
    """

    audio: bytes
    speaker: str | None = None
    role: str = CHARACTER_ROLE
    duration_ms: float = 0.0
    speed_modifier: float = 1.0
    segment_index: int = 0

    @classmethod
    def from_result(cls, result: SynthesisResult) -> AssemblyClip:
        return cls(
            audio=result.audio_bytes,
            speaker=result.speaker,
            role=result.role or CHARACTER_ROLE,
            duration_ms=result.duration_ms,
            speed_modifier=result.speed_modifier,
            segment_index=result.segment_index,
        )


@dataclass(frozen=True, slots=True)
class AssembledAudio:
    """Output of one assembly request.

    Attributes:
        audio: Encoded output audio.
        duration_ms: Output duration in milliseconds.
        strategy: Tag naming the assembly code path that ran.
        duration_source: `probe`, `estimate`, or `input`.
        clip_count: Number of input clips.
        batch_count: Number of hierarchical batches, 0 when not batched.
        overlay_count: Number of overlay tracks mixed under the output.
    """

    audio: bytes
    duration_ms: float
    strategy: str
    duration_source: str = "probe"
    clip_count: int = 1
    batch_count: int = 0
    overlay_count: int = 0


@dataclass(frozen=True, slots=True)
class OverlayTrack:
    """Overlay clip mixed over narration at a fixed offset."""

    audio: bytes
    start_ms: int = 0
    volume: float = 0.5


@dataclass(frozen=True, slots=True)
class NarrationResult:
    """Caller-facing result of `synthesize_and_assemble`.

    Attributes:
        audio: Final assembled audio.
        word_timings: Validated absolute word timings.
        duration_ms: Timeline total; the assembled duration whenever drift
            forced a rescale.
        assembly_strategy: Strategy tag reported by the assembler.
        failures: Segments that failed synthesis and were left out.
        cache_hits: Segments served from cache.
        overlay_count: Overlay tracks mixed under the narration.
    """

    audio: bytes
    word_timings: tuple[WordTiming, ...]
    duration_ms: float
    assembly_strategy: str
    failures: tuple[SegmentFailure, ...] = field(default_factory=tuple)
    cache_hits: int = 0
    overlay_count: int = 0

    @property
    def failed_indices(self) -> tuple[int, ...]:
        return tuple(failure.index for failure in self.failures)
