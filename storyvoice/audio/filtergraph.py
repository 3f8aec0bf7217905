"""Audio filter graph model rendered to ffmpeg `-filter_complex` syntax.

Responsibilities:
- Represent assembly operations as a small tree of typed filter nodes.
- Render the tree into labelled ffmpeg filter statements, merging unary
  chains with commas.
- Compute the planned output duration from known input durations.

Key types:
- Leaf: `Input`.
- Unary: `HighPass`, `Pad`, `Fade`, `Tempo`, `LoudnessNormalize`, `Delay`, `Volume`.
- Multi-input: `Crossfade`, `Concat`, `Mix`.
- Root: `Output`, wrapped by `FilterGraph`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence


def _seconds(milliseconds: float) -> str:
    """Format milliseconds as compact ffmpeg seconds (`0.05`, `0.1`, `1`)."""

    text = f"{milliseconds / 1000.0:.3f}".rstrip("0").rstrip(".")
    return text or "0"


class FilterNode:
    """Base class for graph nodes."""

    def planned_ms(self, input_durations: Sequence[float]) -> float:
        raise NotImplementedError


class UnaryFilter(FilterNode):
    """Node with exactly one upstream source."""

    source: FilterNode

    def expression(self) -> str:
        raise NotImplementedError


class MultiInputFilter(FilterNode):
    """Node that consumes several labelled upstream streams."""

    def sources(self) -> tuple[FilterNode, ...]:
        raise NotImplementedError

    def expression(self) -> str:
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class Input(FilterNode):
    """Audio stream of the N-th ffmpeg input file."""

    index: int

    @property
    def label(self) -> str:
        return f"[{self.index}:a]"

    def planned_ms(self, input_durations: Sequence[float]) -> float:
        return float(input_durations[self.index])


@dataclass(frozen=True, slots=True)
class HighPass(UnaryFilter):
    """DC-offset removal."""

    source: FilterNode
    frequency_hz: int = 30
    poles: int = 2

    def expression(self) -> str:
        return f"highpass=f={self.frequency_hz}:poles={self.poles}"

    def planned_ms(self, input_durations: Sequence[float]) -> float:
        return self.source.planned_ms(input_durations)


@dataclass(frozen=True, slots=True)
class Pad(UnaryFilter):
    """Trailing silence."""

    source: FilterNode
    pad_ms: float

    def expression(self) -> str:
        return f"apad=pad_dur={_seconds(self.pad_ms)}"

    def planned_ms(self, input_durations: Sequence[float]) -> float:
        return self.source.planned_ms(input_durations) + self.pad_ms


@dataclass(frozen=True, slots=True)
class Fade(UnaryFilter):
    """Fade-in and fade-out without knowing the clip length.

    The fade-out is applied as a fade-in on the reversed stream.
    """

    source: FilterNode
    fade_in_ms: float = 15.0
    fade_out_ms: float = 30.0

    def expression(self) -> str:
        return (
            f"afade=t=in:d={_seconds(self.fade_in_ms)},areverse,"
            f"afade=t=in:d={_seconds(self.fade_out_ms)},areverse"
        )

    def planned_ms(self, input_durations: Sequence[float]) -> float:
        return self.source.planned_ms(input_durations)


@dataclass(frozen=True, slots=True)
class Tempo(UnaryFilter):
    """Tempo change without pitch shift; factor is clamped to 0.5..2.0."""

    source: FilterNode
    factor: float

    @property
    def effective_factor(self) -> float:
        return min(2.0, max(0.5, self.factor))

    def expression(self) -> str:
        return f"atempo={self.effective_factor:.3f}"

    def planned_ms(self, input_durations: Sequence[float]) -> float:
        return self.source.planned_ms(input_durations) / self.effective_factor


@dataclass(frozen=True, slots=True)
class LoudnessNormalize(UnaryFilter):
    """EBU R128 loudness normalization."""

    source: FilterNode
    integrated: float = -16.0
    true_peak: float = -1.5
    loudness_range: float = 11.0

    def expression(self) -> str:
        return (
            f"loudnorm=I={self.integrated:g}:TP={self.true_peak:g}:LRA={self.loudness_range:g}"
        )

    def planned_ms(self, input_durations: Sequence[float]) -> float:
        return self.source.planned_ms(input_durations)


@dataclass(frozen=True, slots=True)
class Delay(UnaryFilter):
    """Leading silence on all channels."""

    source: FilterNode
    delay_ms: float

    def expression(self) -> str:
        return f"adelay=delays={int(round(self.delay_ms))}:all=1"

    def planned_ms(self, input_durations: Sequence[float]) -> float:
        return self.source.planned_ms(input_durations) + self.delay_ms


@dataclass(frozen=True, slots=True)
class Volume(UnaryFilter):
    source: FilterNode
    volume: float

    def expression(self) -> str:
        return f"volume={self.volume:g}"

    def planned_ms(self, input_durations: Sequence[float]) -> float:
        return self.source.planned_ms(input_durations)


@dataclass(frozen=True, slots=True)
class Crossfade(MultiInputFilter):
    """Triangular crossfade between two streams; overlaps them by `duration_ms`."""

    first: FilterNode
    second: FilterNode
    duration_ms: float

    def sources(self) -> tuple[FilterNode, ...]:
        return (self.first, self.second)

    def expression(self) -> str:
        return f"acrossfade=d={_seconds(self.duration_ms)}:c1=tri:c2=tri"

    def planned_ms(self, input_durations: Sequence[float]) -> float:
        first = self.first.planned_ms(input_durations)
        second = self.second.planned_ms(input_durations)
        return first + second - min(self.duration_ms, first, second)


@dataclass(frozen=True, slots=True)
class Concat(MultiInputFilter):
    """Back-to-back concatenation of audio-only streams."""

    streams: tuple[FilterNode, ...]

    def sources(self) -> tuple[FilterNode, ...]:
        return self.streams

    def expression(self) -> str:
        return f"concat=n={len(self.streams)}:v=0:a=1"

    def planned_ms(self, input_durations: Sequence[float]) -> float:
        return sum(stream.planned_ms(input_durations) for stream in self.streams)


@dataclass(frozen=True, slots=True)
class Mix(MultiInputFilter):
    """Mix streams; `duration="first"` keeps the first stream's length."""

    streams: tuple[FilterNode, ...]
    duration: str = "first"

    def sources(self) -> tuple[FilterNode, ...]:
        return self.streams

    def expression(self) -> str:
        return (
            f"amix=inputs={len(self.streams)}:duration={self.duration}"
            ":dropout_transition=0:normalize=0"
        )

    def planned_ms(self, input_durations: Sequence[float]) -> float:
        lengths = [stream.planned_ms(input_durations) for stream in self.streams]
        if self.duration == "first":
            return lengths[0]
        if self.duration == "shortest":
            return min(lengths)
        return max(lengths)


@dataclass(frozen=True, slots=True)
class Output(FilterNode):
    """Graph root; its stream is mapped to the output file."""

    source: FilterNode
    label: str = "out"

    def planned_ms(self, input_durations: Sequence[float]) -> float:
        return self.source.planned_ms(input_durations)


class FilterGraph:
    """Render an `Output` tree to a `-filter_complex` string."""

    def __init__(self, output: Output, input_count: int) -> None:
        self.output = output
        self.input_count = input_count

    @property
    def output_label(self) -> str:
        return f"[{self.output.label}]"

    def planned_duration_ms(self, input_durations: Sequence[float]) -> float:
        """Return the output duration implied by the graph for the given inputs."""

        if len(input_durations) != self.input_count:
            raise ValueError(
                f"Expected {self.input_count} input durations, got {len(input_durations)}."
            )
        return self.output.planned_ms(input_durations)

    def render(self) -> str:
        statements: list[str] = []
        counter = [0]

        def next_label() -> str:
            label = f"[s{counter[0]}]"
            counter[0] += 1
            return label

        def open_chain(node: FilterNode) -> tuple[str, list[str]]:
            if isinstance(node, Input):
                return node.label, []
            if isinstance(node, UnaryFilter):
                label, chain = open_chain(node.source)
                return label, [*chain, node.expression()]
            if isinstance(node, MultiInputFilter):
                labels = "".join(close_chain(source) for source in node.sources())
                return labels, [node.expression()]
            raise TypeError(f"Unsupported filter node {type(node).__name__}.")

        def close_chain(node: FilterNode, label: str | None = None) -> str:
            inputs, chain = open_chain(node)
            if not chain and label is None:
                return inputs
            target = label or next_label()
            body = ",".join(chain) if chain else "anull"
            statements.append(f"{inputs}{body}{target}")
            return target

        close_chain(self.output.source, self.output_label)
        return ";".join(statements)

    def __str__(self) -> str:
        return self.render()
