"""Assemble synthesized clips into one continuous track.

Responsibilities:
- Pick an assembly strategy from the clip count.
- Build crossfade and gap filter graphs whose transitions depend on the
  speakers on either side of each boundary.
- Batch large clip sets hierarchically to bound per-call input counts.
- Mix overlay tracks under finished narration.
- Keep all intermediate files in a per-request temp directory.
"""

from __future__ import annotations

from dataclasses import replace
from enum import Enum
from pathlib import Path
import shutil
import tempfile
from typing import Sequence

from loguru import logger

from ..config import AssemblyPolicy
from ..errors import AudioEngineError, AudioEngineUnavailableError
from ..models.datatypes import NARRATOR_ROLE, AssembledAudio, AssemblyClip, OverlayTrack
from .engine import AudioEngine, estimate_duration_ms
from .filtergraph import (
    Concat,
    Crossfade,
    Delay,
    Fade,
    FilterGraph,
    FilterNode,
    HighPass,
    Input,
    LoudnessNormalize,
    Mix,
    Output,
    Pad,
    Tempo,
    Volume,
)


class AssemblyStrategy(str, Enum):
    """Assembly code paths, reported as the result's strategy tag."""

    SINGLE = "single_fade"
    SMALL_SET = "crossfade_chain"
    GAP_CONCAT = "gap_concat"
    LARGE_SET = "batch_crossfade"
    LARGE_SET_SINGLE = "batch_crossfade_single"
    PASSTHROUGH = "passthrough"
    CHUNK_JOIN = "chunk_join"


def select_strategy(clip_count: int, policy: AssemblyPolicy) -> AssemblyStrategy:
    """Return the strategy for a clip count, assuming a working engine."""

    if clip_count <= 0:
        raise ValueError("At least one clip is required for assembly.")
    if clip_count == 1:
        return AssemblyStrategy.SINGLE
    if clip_count <= policy.small_set_max:
        return AssemblyStrategy.SMALL_SET
    if clip_count <= policy.large_set_threshold:
        return AssemblyStrategy.GAP_CONCAT
    return AssemblyStrategy.LARGE_SET


def _same_speaker(left: AssemblyClip, right: AssemblyClip) -> bool:
    return left.speaker is not None and left.speaker == right.speaker


def transition_gap_ms(left: AssemblyClip, right: AssemblyClip, policy: AssemblyPolicy) -> int:
    """Trailing silence after `left` when followed by `right`."""

    if _same_speaker(left, right):
        return policy.same_speaker_gap_ms
    if NARRATOR_ROLE in (left.role, right.role):
        return policy.narrator_gap_ms
    return policy.gap_ms


def transition_crossfade_ms(
    left: AssemblyClip, right: AssemblyClip, policy: AssemblyPolicy
) -> int:
    """Crossfade between `left` and `right`."""

    if _same_speaker(left, right):
        return policy.same_speaker_crossfade_ms
    return policy.crossfade_ms


def _prepared(index: int, clip: AssemblyClip, policy: AssemblyPolicy) -> FilterNode:
    """Input stream with optional tempo change followed by DC-offset removal."""

    node: FilterNode = Input(index)
    if abs(clip.speed_modifier - 1.0) > policy.tempo_tolerance:
        node = Tempo(node, clip.speed_modifier)
    return HighPass(node, frequency_hz=policy.highpass_hz)


def _finish(node: FilterNode, normalize: bool) -> Output:
    return Output(LoudnessNormalize(node) if normalize else node)


def _crossfade_or_concat(left: FilterNode, right: FilterNode, duration_ms: float) -> FilterNode:
    if duration_ms > 0:
        return Crossfade(left, right, duration_ms)
    return Concat((left, right))


def build_single_graph(clip: AssemblyClip, policy: AssemblyPolicy) -> FilterGraph:
    """One clip with a light fade-in/fade-out."""

    node: FilterNode = Input(0)
    if abs(clip.speed_modifier - 1.0) > policy.tempo_tolerance:
        node = Tempo(node, clip.speed_modifier)
    return FilterGraph(Output(Fade(node)), input_count=1)


def build_crossfade_chain(
    clips: Sequence[AssemblyClip], policy: AssemblyPolicy, *, normalize: bool
) -> FilterGraph:
    """Pad every clip, then chain pairwise crossfades by speaker transition."""

    padded = [Pad(_prepared(i, clip, policy), policy.pad_ms) for i, clip in enumerate(clips)]
    current: FilterNode = padded[0]
    for i in range(1, len(clips)):
        duration = transition_crossfade_ms(clips[i - 1], clips[i], policy)
        current = _crossfade_or_concat(current, padded[i], duration)
    return FilterGraph(_finish(current, normalize), input_count=len(clips))


def build_gap_concat(
    clips: Sequence[AssemblyClip],
    policy: AssemblyPolicy,
    *,
    normalize: bool,
    successor: AssemblyClip | None = None,
) -> FilterGraph:
    """Pad each clip with its transition gap, then concatenate.

    The final clip gets the standard pad, or the gap to `successor` when the
    clips are one batch of a larger sequence.
    """

    streams: list[FilterNode] = []
    for i, clip in enumerate(clips):
        if i + 1 < len(clips):
            trailing = transition_gap_ms(clip, clips[i + 1], policy)
        elif successor is not None:
            trailing = transition_gap_ms(clip, successor, policy)
        else:
            trailing = policy.pad_ms
        streams.append(Pad(_prepared(i, clip, policy), trailing))
    return FilterGraph(_finish(Concat(tuple(streams)), normalize), input_count=len(clips))


def build_batch_join(
    batch_count: int, policy: AssemblyPolicy, *, normalize: bool
) -> FilterGraph:
    """Join batch outputs with DC removal, pad, and a fixed crossfade."""

    padded = [
        Pad(HighPass(Input(i), frequency_hz=policy.highpass_hz), policy.pad_ms)
        for i in range(batch_count)
    ]
    current: FilterNode = padded[0]
    for node in padded[1:]:
        current = _crossfade_or_concat(current, node, policy.batch_crossfade_ms)
    return FilterGraph(_finish(current, normalize), input_count=batch_count)


def build_chunk_join(clips: Sequence[AssemblyClip], policy: AssemblyPolicy) -> FilterGraph:
    """Join chunks of one segment with a small gap and crossfade."""

    streams = [
        Pad(
            _prepared(i, clip, policy),
            policy.chunk_gap_ms if i + 1 < len(clips) else policy.pad_ms,
        )
        for i, clip in enumerate(clips)
    ]
    current: FilterNode = streams[0]
    for node in streams[1:]:
        current = _crossfade_or_concat(current, node, policy.chunk_crossfade_ms)
    return FilterGraph(Output(current), input_count=len(clips))


def build_overlay_mix(overlays: Sequence[OverlayTrack]) -> FilterGraph:
    """Mix delayed, attenuated overlays under input 0; output keeps input 0's length."""

    streams: list[FilterNode] = [Input(0)]
    for offset, overlay in enumerate(overlays, start=1):
        node: FilterNode = Input(offset)
        if overlay.start_ms > 0:
            node = Delay(node, overlay.start_ms)
        streams.append(Volume(node, overlay.volume))
    return FilterGraph(Output(Mix(tuple(streams), duration="first")), input_count=len(streams))


class AudioAssembler:
    """Assemble ordered clips through an `AudioEngine`."""

    def __init__(
        self,
        engine: AudioEngine,
        policy: AssemblyPolicy | None = None,
        *,
        temp_root: Path | None = None,
    ) -> None:
        self.engine = engine
        self.policy = policy or AssemblyPolicy()
        self.temp_root = temp_root

    async def assemble(
        self, clips: Sequence[AssemblyClip], *, normalize: bool | None = None
    ) -> AssembledAudio:
        """Assemble clips in the given order into one encoded track.

        Raises:
            ValueError: If `clips` is empty.
            AudioEngineUnavailableError: If more than one clip is given and the
                engine cannot run.
            AudioEngineError: If rendering fails.
        """

        strategy = select_strategy(len(clips), self.policy)
        apply_normalize = self.policy.normalize if normalize is None else normalize

        if not await self.engine.available():
            if strategy is AssemblyStrategy.SINGLE:
                return self._passthrough(clips[0])
            raise AudioEngineUnavailableError(
                f"ffmpeg is required to assemble {len(clips)} clips and is not available."
            )

        logger.info("[assembler] assembling {} clips via {}", len(clips), strategy.value)
        with self._workspace() as workdir:
            if strategy is AssemblyStrategy.SINGLE:
                graph = build_single_graph(clips[0], self.policy)
                return await self._render(graph, clips, workdir, strategy)
            if strategy is AssemblyStrategy.SMALL_SET:
                graph = build_crossfade_chain(clips, self.policy, normalize=apply_normalize)
                return await self._render(graph, clips, workdir, strategy)
            if strategy is AssemblyStrategy.GAP_CONCAT:
                graph = build_gap_concat(clips, self.policy, normalize=apply_normalize)
                return await self._render(graph, clips, workdir, strategy)
            return await self._assemble_batched(clips, workdir, apply_normalize)

    async def join_chunks(self, clips: Sequence[AssemblyClip]) -> AssembledAudio:
        """Stitch the chunks of one oversize segment."""

        if len(clips) == 1:
            return self._passthrough(clips[0])
        if not await self.engine.available():
            raise AudioEngineUnavailableError(
                f"ffmpeg is required to join {len(clips)} chunks and is not available."
            )
        with self._workspace() as workdir:
            graph = build_chunk_join(clips, self.policy)
            return await self._render(graph, clips, workdir, AssemblyStrategy.CHUNK_JOIN)

    async def mix_overlays(
        self, narration: AssembledAudio, overlays: Sequence[OverlayTrack]
    ) -> AssembledAudio:
        """Mix overlay tracks under narration.

        The narration length and its assembly strategy tag are kept; the number
        of mixed tracks is reported as `overlay_count`.
        """

        if not overlays:
            return narration
        if not await self.engine.available():
            raise AudioEngineUnavailableError("ffmpeg is required to mix overlay tracks.")
        clips = [AssemblyClip(audio=narration.audio, duration_ms=narration.duration_ms)]
        clips.extend(AssemblyClip(audio=overlay.audio) for overlay in overlays)
        with self._workspace() as workdir:
            graph = build_overlay_mix(overlays)
            output = await self._render_to_file(graph, clips, workdir)
            duration, source = await self._measure(output)
            return replace(
                narration,
                audio=output.read_bytes(),
                duration_ms=duration,
                duration_source=source,
                overlay_count=len(overlays),
            )

    async def _assemble_batched(
        self, clips: Sequence[AssemblyClip], workdir: Path, normalize: bool
    ) -> AssembledAudio:
        size = self.policy.batch_size
        batches = [list(clips[start : start + size]) for start in range(0, len(clips), size)]
        batch_paths: list[Path] = []
        # A lone batch is the final output, so it carries the normalization pass.
        batch_normalize = normalize and len(batches) == 1
        for number, batch in enumerate(batches):
            end = number * size + len(batch)
            successor = clips[end] if end < len(clips) else None
            if successor is None and len(batch) <= self.policy.small_set_max:
                graph = build_crossfade_chain(batch, self.policy, normalize=batch_normalize)
            else:
                graph = build_gap_concat(
                    batch, self.policy, normalize=batch_normalize, successor=successor
                )
            batch_dir = workdir / f"batch_{number:03d}"
            batch_dir.mkdir()
            output = await self._render_to_file(graph, batch, batch_dir)
            batch_paths.append(output)
            logger.debug("[assembler] batch {}/{} rendered", number + 1, len(batches))

        if len(batch_paths) == 1:
            audio = batch_paths[0].read_bytes()
            duration, source = await self._measure(batch_paths[0])
            return AssembledAudio(
                audio=audio,
                duration_ms=duration,
                strategy=AssemblyStrategy.LARGE_SET_SINGLE.value,
                duration_source=source,
                clip_count=len(clips),
                batch_count=1,
            )

        join = build_batch_join(len(batch_paths), self.policy, normalize=normalize)
        output_path = workdir / "joined.mp3"
        await self.engine.render(join, batch_paths, output_path)
        duration, source = await self._measure(output_path)
        return AssembledAudio(
            audio=output_path.read_bytes(),
            duration_ms=duration,
            strategy=AssemblyStrategy.LARGE_SET.value,
            duration_source=source,
            clip_count=len(clips),
            batch_count=len(batch_paths),
        )

    async def _render(
        self,
        graph: FilterGraph,
        clips: Sequence[AssemblyClip],
        workdir: Path,
        strategy: AssemblyStrategy,
    ) -> AssembledAudio:
        output = await self._render_to_file(graph, clips, workdir)
        duration, source = await self._measure(output)
        return AssembledAudio(
            audio=output.read_bytes(),
            duration_ms=duration,
            strategy=strategy.value,
            duration_source=source,
            clip_count=len(clips),
        )

    async def _render_to_file(
        self, graph: FilterGraph, clips: Sequence[AssemblyClip], workdir: Path
    ) -> Path:
        input_paths: list[Path] = []
        for i, clip in enumerate(clips):
            path = workdir / f"in_{i:03d}.mp3"
            path.write_bytes(clip.audio)
            input_paths.append(path)
        output = workdir / "out.mp3"
        await self.engine.render(graph, input_paths, output)
        return output

    async def _measure(self, path: Path) -> tuple[float, str]:
        """Probe a rendered file, estimating from its size when probing fails."""

        try:
            return await self.engine.probe_duration_ms(path), "probe"
        except AudioEngineError as exc:
            logger.warning("[assembler] duration probe failed ({}); estimating from size", exc)
            return estimate_duration_ms(path.stat().st_size), "estimate"

    @staticmethod
    def _passthrough(clip: AssemblyClip) -> AssembledAudio:
        if clip.duration_ms > 0:
            duration, source = clip.duration_ms, "input"
        else:
            duration, source = estimate_duration_ms(len(clip.audio)), "estimate"
        return AssembledAudio(
            audio=clip.audio,
            duration_ms=duration,
            strategy=AssemblyStrategy.PASSTHROUGH.value,
            duration_source=source,
            clip_count=1,
        )

    def _workspace(self) -> _Workspace:
        return _Workspace(self.temp_root)


class _Workspace:
    """Per-request temp directory, removed on exit whether or not assembly failed."""

    def __init__(self, root: Path | None) -> None:
        self._root = root
        self.path: Path | None = None

    def __enter__(self) -> Path:
        self.path = Path(tempfile.mkdtemp(prefix="storyvoice-", dir=self._root))
        return self.path

    def __exit__(self, *exc_info: object) -> None:
        if self.path is None:
            return
        try:
            shutil.rmtree(self.path)
        except OSError as exc:
            logger.warning("[assembler] failed to remove temp dir {}: {}", self.path, exc)
