"""Pipeline orchestration for Storyvoice.

Responsibilities:
- Wire synthesis, scheduling, assembly, and timing components from config.
- Run the caller-facing `synthesize_and_assemble` flow in stage order.
- Map component failures to stage-scoped `PipelineStageError`s.

Key types:
- `SynthesisPipeline`: orchestration facade.
"""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Sequence

from loguru import logger

from ..audio.assembler import AudioAssembler
from ..audio.engine import AudioEngine
from ..config import StoryvoiceConfig, SynthesisSettings
from ..errors import AudioEngineError, AudioEngineUnavailableError, PipelineStageError
from ..errors import TimingValidationError
from ..models.datatypes import (
    AssembledAudio,
    AssemblyClip,
    NarrationResult,
    OverlayTrack,
    Segment,
    SegmentFailure,
    SynthesisResult,
)
from ..providers.cache import AudioCache
from ..providers.retry import CircuitBreakerRegistry
from ..telemetry.logger import RunLogger
from ..tts.client import HTTPSynthesisBackend, SynthesisBackend
from ..tts.synthesizer import SynthesisClient
from .scheduler import BatchScheduler
from .telemetry import PhaseProgress, PipelineTelemetryMixin
from .timing import TimingReconstructor


class SynthesisPipeline(PipelineTelemetryMixin):
    """Turn ordered segments into one narrated track with word timings."""

    def __init__(
        self,
        config: StoryvoiceConfig | None = None,
        *,
        backend: SynthesisBackend | None = None,
        engine: AudioEngine | None = None,
        cache: AudioCache | None = None,
        run_logger: RunLogger | None = None,
        sleeper: Callable[[float], Awaitable[object]] = asyncio.sleep,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        """Build pipeline components; injected collaborators replace the defaults."""

        self.config = config or StoryvoiceConfig()
        self.config.validate()
        self._run_logger = run_logger
        self._progress = None

        self.backend = backend or HTTPSynthesisBackend(
            api_key=self.config.api_key, base_url=self.config.base_url
        )
        self.engine = engine or AudioEngine(
            self.config.ffmpeg_path,
            self.config.ffprobe_path,
            render_timeout_seconds=self.config.assembly.engine_timeout_s,
            probe_timeout_seconds=self.config.assembly.probe_timeout_s,
        )
        if cache is None and self.config.cache.enabled:
            cache = AudioCache(
                max_entries=self.config.cache.max_entries,
                default_ttl_seconds=self.config.cache.ttl_seconds,
            )
        self.cache = cache
        self.assembler = AudioAssembler(self.engine, self.config.assembly)
        self.client = SynthesisClient(
            self.backend,
            settings=self.config.settings,
            retry_policy=self.config.retry,
            breakers=CircuitBreakerRegistry(self.config.circuit_breaker),
            cache=self.cache,
            cache_ttl_seconds=self.config.cache.ttl_seconds,
            chunk_joiner=self.assembler.join_chunks,
            sleeper=sleeper,
            random_fn=random_fn,
        )
        self.timing = TimingReconstructor(
            self.config.timing, tempo_tolerance=self.config.assembly.tempo_tolerance
        )
        self._sleeper = sleeper

    async def synthesize_and_assemble(
        self,
        segments: Sequence[Segment],
        settings: SynthesisSettings | None = None,
        on_progress: PhaseProgress | None = None,
        *,
        normalize: bool | None = None,
        concurrency: int | None = None,
        overlays: Sequence[OverlayTrack] = (),
    ) -> NarrationResult:
        """Synthesize, assemble, and time-align segments in index order.

        Args:
            segments: Segments to narrate; playback follows `Segment.index`.
            settings: Backend settings overriding the configured defaults.
            on_progress: Optional `(phase, current, total)` sink.
            normalize: Loudness normalization override for this request.
            concurrency: Window size override for this request.
            overlays: Optional tracks mixed under the finished narration.

        Raises:
            PipelineStageError: When input is invalid, every segment failed,
                assembly failed, or the timeline is invalid.
        """

        ordered = self._validated_segments(segments)
        calls_before = self.client.backend_calls
        retries_before = self.client.retry_attempts
        self._progress = on_progress
        try:
            results = await self._run_async_stage(
                "synthesize", lambda: self._synthesize(ordered, settings, concurrency)
            )
            successes, failures = self._partition(results)

            words, naive_ms = self._run_stage(
                "merge", lambda: self.timing.merge_timings(successes)
            )
            assembled = await self._run_async_stage(
                "assemble", lambda: self._assemble(successes, normalize)
            )
            if overlays:
                assembled = await self._run_async_stage(
                    "overlay", lambda: self._mix_overlays(assembled, overlays)
                )
            words, total_ms = self._run_stage(
                "rescale", lambda: self.timing.rescale(words, naive_ms, assembled.duration_ms)
            )
            self._run_stage("validate", lambda: self._validate(words, total_ms))
        finally:
            self._progress = None

        cache_hits = sum(1 for result in successes if result.cached)
        logger.info(
            "[pipeline] narrated {} segments ({} failed, {} cached, {} backend calls, {} retries)"
            " in {}ms via {}",
            len(successes),
            len(failures),
            cache_hits,
            self.client.backend_calls - calls_before,
            self.client.retry_attempts - retries_before,
            round(total_ms),
            assembled.strategy,
        )
        return NarrationResult(
            audio=assembled.audio,
            word_timings=words,
            duration_ms=total_ms,
            assembly_strategy=assembled.strategy,
            failures=failures,
            cache_hits=cache_hits,
            overlay_count=assembled.overlay_count,
        )

    @staticmethod
    def _validated_segments(segments: Sequence[Segment]) -> list[Segment]:
        if not segments:
            raise PipelineStageError(
                stage="input",
                detail="No segments were provided.",
                hint="Pass at least one segment with non-empty text.",
            )
        ordered = sorted(segments, key=lambda segment: segment.index)
        seen: set[int] = set()
        duplicates: list[int] = []
        for segment in ordered:
            if segment.index in seen:
                duplicates.append(segment.index)
            seen.add(segment.index)
        if duplicates:
            raise PipelineStageError(
                stage="input",
                detail=f"Duplicate segment indices: {sorted(set(duplicates))}.",
                hint="Every segment needs a unique `index`.",
                segment_indices=tuple(sorted(set(duplicates))),
            )
        return ordered

    async def _synthesize(
        self,
        segments: list[Segment],
        settings: SynthesisSettings | None,
        concurrency: int | None,
    ) -> list[SynthesisResult]:
        scheduler = BatchScheduler(
            lambda segment: self.client.synthesize(segment, settings),
            concurrency=concurrency or self.config.concurrency,
            window_pause_ms=self.config.window_pause_ms,
            sleeper=self._sleeper,
        )
        return await scheduler.run(
            segments,
            on_progress=lambda current, total: self._emit_progress("synthesize", current, total),
        )

    def _partition(
        self,
        results: list[SynthesisResult],
    ) -> tuple[list[SynthesisResult], tuple[SegmentFailure, ...]]:
        successes = [result for result in results if result.success]
        failures = tuple(
            SegmentFailure(
                index=result.segment_index,
                speaker=result.speaker,
                error_kind=result.error_kind or "unknown",
                detail=result.error or "",
            )
            for result in results
            if not result.success
        )
        if not successes:
            kinds = sorted({failure.error_kind for failure in failures})
            raise PipelineStageError(
                stage="synthesis",
                detail=f"All {len(failures)} segments failed synthesis ({', '.join(kinds)}).",
                hint="Check the synthesis API key, quota, and backend availability.",
                segment_indices=tuple(failure.index for failure in failures),
            )
        for failure in failures:
            logger.warning(
                "[pipeline] segment {} omitted ({}): {}",
                failure.index,
                failure.error_kind,
                failure.detail,
            )
            self._on_stage_warning(
                "synthesize",
                "segment_omitted",
                segment=failure.index,
                error_kind=failure.error_kind,
            )
        return successes, failures

    async def _assemble(
        self, successes: list[SynthesisResult], normalize: bool | None
    ) -> AssembledAudio:
        clips = [AssemblyClip.from_result(result) for result in successes]
        try:
            return await self.assembler.assemble(clips, normalize=normalize)
        except AudioEngineUnavailableError as exc:
            raise PipelineStageError(
                stage="assembly",
                detail=str(exc),
                hint="Install ffmpeg/ffprobe or set `ffmpeg_path`/`ffprobe_path` in config.",
                segment_indices=tuple(result.segment_index for result in successes),
            ) from exc
        except AudioEngineError as exc:
            raise PipelineStageError(
                stage="assembly",
                detail=f"Failed to assemble {len(clips)} clips: {exc}",
                hint="Inspect ffmpeg stderr above; clips may be corrupt or unsupported.",
                segment_indices=tuple(result.segment_index for result in successes),
            ) from exc

    async def _mix_overlays(
        self, narration: AssembledAudio, overlays: Sequence[OverlayTrack]
    ) -> AssembledAudio:
        try:
            return await self.assembler.mix_overlays(narration, overlays)
        except AudioEngineError as exc:
            raise PipelineStageError(
                stage="assembly",
                detail=f"Failed to mix {len(overlays)} overlay tracks: {exc}",
                hint="Verify overlay audio payloads are decodable by ffmpeg.",
            ) from exc

    def _validate(self, words: Sequence, total_ms: float) -> None:
        try:
            self.timing.validate(words, total_ms)
        except TimingValidationError as exc:
            raise PipelineStageError(
                stage="timing",
                detail=f"Word timeline failed validation: {exc}",
                hint="Backend alignment and assembled audio disagree; rerun without cache.",
            ) from exc
