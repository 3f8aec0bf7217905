"""Command-line interface for Storyvoice.

Responsibilities:
- Expose user-facing commands for segment synthesis and engine diagnostics.
- Convert CLI arguments into `StoryvoiceConfig` and run the pipeline.

Key public functions:
- `app`: Typer application instance.
- `main`: invoke the Typer application.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
import json
from pathlib import Path
from typing import Annotated, Any

import typer
from loguru import logger

from .audio.engine import AudioEngine
from .cli_rendering import echo_engine_row, echo_narration_summary, exit_with_command_error
from .config import ConfigLoader, StoryvoiceConfig
from .errors import PipelineStageError
from .models.datatypes import NarrationResult, Segment
from .pipeline import SynthesisPipeline
from .runtime_tools import is_resolvable
from .telemetry.logger import RunLogger

app = typer.Typer(
    name="storyvoice",
    no_args_is_help=True,
    help="Storyvoice CLI.",
)


class SynthesisProgressIndicator:
    """Render deterministic progress lines for pipeline phases."""

    _SPINNER_FRAMES = "|/-\\"

    def __init__(self, command_name: str) -> None:
        self._command_name = command_name
        self._ticks = 0

    def __call__(self, phase: str, current: int, total: int) -> None:
        """Print one progress line for a `(phase, current, total)` event."""

        spinner = self._SPINNER_FRAMES[self._ticks % len(self._SPINNER_FRAMES)]
        self._ticks += 1
        typer.echo(
            f"[progress] command={self._command_name} {spinner} {current}/{total} phase={phase}"
        )


def _configure_diagnostics(verbose: bool) -> None:
    """Route component logs to stderr, keeping phase lines for the run logger."""

    logger.remove()
    logger.add(
        lambda message: typer.echo(message, err=True, nl=False),
        format="{level}: {message}",
        level="DEBUG" if verbose else "WARNING",
        colorize=False,
        filter=lambda record: record["extra"].get("phase") is not True,
    )


def _load_config(config_path: Path | None) -> StoryvoiceConfig:
    """Load YAML config when requested, else environment config; map failures."""

    if config_path is None:
        try:
            return ConfigLoader.from_env()
        except ValueError as exc:
            raise PipelineStageError(
                stage="config",
                detail=f"Invalid environment configuration: {exc}",
                hint="Fix `STORYVOICE_*` environment variables and rerun.",
            ) from exc

    try:
        return ConfigLoader.from_yaml(config_path)
    except FileNotFoundError as exc:
        raise PipelineStageError(
            stage="config",
            detail=f"Config file not found: `{config_path}`.",
            hint="Provide an existing path via `--config <path.yaml>`.",
        ) from exc
    except ValueError as exc:
        raise PipelineStageError(
            stage="config",
            detail=f"Invalid config file `{config_path}`: {exc}",
            hint="Fix config schema/values and rerun.",
        ) from exc
    except OSError as exc:
        raise PipelineStageError(
            stage="config",
            detail=f"Failed to load config file `{config_path}`: {exc}",
            hint="Verify file permissions.",
        ) from exc


def _apply_overrides(
    config: StoryvoiceConfig,
    *,
    preset: str | None,
    normalize: bool | None,
    concurrency: int | None,
    model_id: str | None,
) -> StoryvoiceConfig:
    """Apply explicit CLI overrides on top of loaded config."""

    try:
        if preset is not None:
            config.assembly = config.assembly.with_preset(preset)
        if normalize is not None:
            config.assembly = replace(config.assembly, normalize=normalize)
        if concurrency is not None:
            config.concurrency = concurrency
        if model_id is not None:
            config.settings = replace(config.settings, model_id=model_id)
        config.validate()
    except ValueError as exc:
        raise PipelineStageError(
            stage="config",
            detail=str(exc),
            hint="Check `--preset`, `--concurrency`, and `--model` values.",
        ) from exc
    return config


def _load_segments(segments_path: Path) -> list[Segment]:
    """Read segments from a JSON list or a `{"segments": [...]}` document."""

    try:
        payload: Any = json.loads(segments_path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise PipelineStageError(
            stage="input",
            detail=f"Segments file not found: `{segments_path}`.",
            hint="Pass an existing JSON file with a list of segments.",
        ) from exc
    except json.JSONDecodeError as exc:
        raise PipelineStageError(
            stage="input",
            detail=f"Segments file `{segments_path}` is not valid JSON: {exc}",
            hint="Provide a JSON list of segment objects.",
        ) from exc

    if isinstance(payload, dict):
        payload = payload.get("segments")
    if not isinstance(payload, list):
        raise PipelineStageError(
            stage="input",
            detail=f"Segments file `{segments_path}` must contain a list of segments.",
            hint='Use `[...]` or `{"segments": [...]}` as the document root.',
        )

    segments: list[Segment] = []
    for position, item in enumerate(payload):
        if not isinstance(item, dict):
            raise PipelineStageError(
                stage="input",
                detail=f"Segment {position} must be a JSON object.",
                segment_indices=(position,),
            )
        try:
            segments.append(Segment.from_mapping(item, default_index=position))
        except (TypeError, ValueError) as exc:
            raise PipelineStageError(
                stage="input",
                detail=str(exc),
                hint="Every segment needs `text` and `voice_id`.",
                segment_indices=(position,),
            ) from exc
    return segments


def _write_outputs(result: NarrationResult, out: Path, timings: Path) -> None:
    """Write assembled audio and its word timings JSON."""

    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(result.audio)
    timings.parent.mkdir(parents=True, exist_ok=True)
    document = {
        "duration_ms": result.duration_ms,
        "assembly_strategy": result.assembly_strategy,
        "failed_segments": list(result.failed_indices),
        "words": [word.as_dict() for word in result.word_timings],
    }
    timings.write_text(json.dumps(document, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")


@app.command("synthesize")
def synthesize_command(
    segments_path: Annotated[Path, typer.Argument(help="Path to segments JSON.")],
    out: Annotated[Path, typer.Option("--out", help="Output audio path.")] = Path(
        "out/narration.mp3"
    ),
    timings: Annotated[
        Path | None,
        typer.Option("--timings", help="Word timings JSON path (defaults next to `--out`)."),
    ] = None,
    config_file: Annotated[
        Path | None,
        typer.Option("--config", help="Optional YAML config path."),
    ] = None,
    preset: Annotated[
        str | None,
        typer.Option("--preset", help="Assembly preset: natural, bedtime, dramatic, raw."),
    ] = None,
    normalize: Annotated[
        bool | None,
        typer.Option("--normalize/--no-normalize", help="Toggle loudness normalization."),
    ] = None,
    concurrency: Annotated[
        int | None,
        typer.Option("--concurrency", min=1, help="Synthesis window size."),
    ] = None,
    model_id: Annotated[
        str | None,
        typer.Option("--model", help="Backend model id override."),
    ] = None,
    verbose: Annotated[
        bool, typer.Option("--verbose", help="Print debug diagnostics to stderr.")
    ] = False,
) -> None:
    """Synthesize segments into one narrated track plus word timings."""

    _configure_diagnostics(verbose)
    timings_path = timings if timings is not None else out.with_suffix(".timings.json")
    run_logger: RunLogger | None = None
    try:
        config = _apply_overrides(
            _load_config(config_file),
            preset=preset,
            normalize=normalize,
            concurrency=concurrency,
            model_id=model_id,
        )
        segments = _load_segments(segments_path)
        run_logger = RunLogger()
        pipeline = SynthesisPipeline(config, run_logger=run_logger)
        result = asyncio.run(
            pipeline.synthesize_and_assemble(
                segments, on_progress=SynthesisProgressIndicator("synthesize")
            )
        )
        _write_outputs(result, out, timings_path)
    except Exception as exc:
        exit_with_command_error("synthesize", exc)
    finally:
        if run_logger is not None:
            run_logger.close()

    echo_narration_summary(result)
    typer.echo(f"Audio: {out}")
    typer.echo(f"Timings: {timings_path}")


@app.command("check-engine")
def check_engine_command(
    config_file: Annotated[
        Path | None,
        typer.Option("--config", help="Optional YAML config path."),
    ] = None,
) -> None:
    """Report whether ffmpeg and ffprobe can be resolved and run."""

    _configure_diagnostics(False)
    try:
        config = _load_config(config_file)
        engine = AudioEngine(config.ffmpeg_path, config.ffprobe_path)
        ffmpeg_ok = asyncio.run(engine.available())
    except Exception as exc:
        exit_with_command_error("check-engine", exc)

    ffprobe_ok = is_resolvable(engine.ffprobe_path)
    echo_engine_row("ffmpeg", engine.ffmpeg_path, ffmpeg_ok)
    echo_engine_row("ffprobe", engine.ffprobe_path, ffprobe_ok)
    if not (ffmpeg_ok and ffprobe_ok):
        typer.secho(
            "Hint: multi-segment assembly needs both tools; install ffmpeg or set paths in config.",
            fg=typer.colors.YELLOW,
            err=True,
        )
        raise typer.Exit(code=1)


def main() -> None:
    """CLI entrypoint for console scripts."""
    app()
