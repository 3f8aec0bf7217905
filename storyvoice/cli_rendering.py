"""CLI output and error rendering helpers.

This module centralizes user-facing CLI presentation for command diagnostics,
narration summaries, and audio engine availability rows.
"""

from __future__ import annotations

from typing import NoReturn

import typer

from .errors import PipelineStageError
from .models.datatypes import NarrationResult


def exit_with_command_error(command_name: str, exc: Exception) -> NoReturn:
    """Print concise diagnostics for command failures and exit with code 1."""

    if isinstance(exc, PipelineStageError):
        typer.secho(
            f"{command_name} failed at stage `{exc.stage}`: {exc.detail}",
            fg=typer.colors.RED,
            err=True,
        )
        if exc.segment_indices:
            indices = ", ".join(str(index) for index in exc.segment_indices)
            typer.secho(f"Segments: {indices}", fg=typer.colors.RED, err=True)
        if exc.hint:
            typer.secho(f"Hint: {exc.hint}", fg=typer.colors.YELLOW, err=True)
    else:
        typer.secho(f"{command_name} failed: {exc}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1) from exc


def echo_narration_summary(result: NarrationResult) -> None:
    """Print strategy, duration, word count, cache hits, and omitted segments."""

    typer.echo(f"Assembly strategy: {result.assembly_strategy}")
    typer.echo(f"Duration (ms): {round(result.duration_ms)}")
    typer.echo(f"Words: {len(result.word_timings)}")
    typer.echo(f"Cache hits: {result.cache_hits}")
    if not result.failures:
        return
    typer.secho(f"Omitted segments: {len(result.failures)}", fg=typer.colors.YELLOW)
    for failure in sorted(result.failures, key=lambda item: item.index):
        typer.echo(f"  {failure.index}. {failure.speaker} [{failure.error_kind}] {failure.detail}")


def echo_engine_row(tool_name: str, resolved_path: str, available: bool) -> None:
    """Print one engine tool availability row."""

    status = "ok" if available else "missing"
    color = typer.colors.GREEN if available else typer.colors.RED
    typer.secho(f"{tool_name}: {status} ({resolved_path})", fg=color)
