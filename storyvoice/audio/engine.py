"""ffmpeg/ffprobe subprocess wrapper.

Responsibilities:
- Check engine availability once per instance.
- Render a `FilterGraph` over N input files into one encoded output file.
- Probe output durations, with a byte-size estimate for callers to fall back on.
- Enforce per-subprocess timeouts, killing processes that exceed them.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Sequence

from loguru import logger

from ..errors import AudioEngineError, AudioEngineTimeoutError, AudioEngineUnavailableError
from ..runtime_tools import resolve_executable
from .filtergraph import FilterGraph

ESTIMATE_BYTES_PER_SECOND = 16000  # 128 kbps
_STDERR_TAIL_CHARS = 600


def estimate_duration_ms(byte_count: int) -> float:
    """Estimate the duration of a 128 kbps MP3 payload from its size."""

    return byte_count / ESTIMATE_BYTES_PER_SECOND * 1000.0


class AudioEngine:
    """Async wrapper around ffmpeg and ffprobe executables."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        *,
        render_timeout_seconds: float = 300.0,
        probe_timeout_seconds: float = 15.0,
    ) -> None:
        self.ffmpeg_path = resolve_executable(ffmpeg_path)
        self.ffprobe_path = resolve_executable(ffprobe_path)
        self.render_timeout_seconds = render_timeout_seconds
        self.probe_timeout_seconds = probe_timeout_seconds
        self._available: bool | None = None

    async def available(self) -> bool:
        """Return whether ffmpeg runs; the answer is cached for this instance."""

        if self._available is None:
            try:
                await self._run([self.ffmpeg_path, "-version"], timeout=self.probe_timeout_seconds)
            except AudioEngineError as exc:
                logger.warning("[engine] ffmpeg unavailable at `{}`: {}", self.ffmpeg_path, exc)
                self._available = False
            else:
                self._available = True
        return self._available

    async def render(
        self,
        graph: FilterGraph,
        input_paths: Sequence[Path],
        output_path: Path,
    ) -> None:
        """Run one ffmpeg call applying `graph` to `input_paths`."""

        if len(input_paths) != graph.input_count:
            raise ValueError(
                f"Filter graph expects {graph.input_count} inputs, got {len(input_paths)}."
            )
        command = [self.ffmpeg_path, "-y", "-hide_banner", "-loglevel", "error"]
        for path in input_paths:
            command.extend(["-i", str(path)])
        command.extend(
            [
                "-filter_complex",
                graph.render(),
                "-map",
                graph.output_label,
                "-c:a",
                "libmp3lame",
                "-q:a",
                "2",
                str(output_path),
            ]
        )
        logger.debug("[engine] rendering {} inputs -> {}", len(input_paths), output_path.name)
        await self._run(command, timeout=self.render_timeout_seconds)

    async def probe_duration_ms(self, path: Path) -> float:
        """Return the container duration of `path` in milliseconds.

        Raises:
            AudioEngineError: If ffprobe fails or prints no parseable duration.
        """

        stdout = await self._run(
            [
                self.ffprobe_path,
                "-v",
                "error",
                "-show_entries",
                "format=duration",
                "-of",
                "default=noprint_wrappers=1:nokey=1",
                str(path),
            ],
            timeout=self.probe_timeout_seconds,
        )
        text = stdout.decode("utf-8", errors="replace").strip()
        try:
            seconds = float(text)
        except ValueError as exc:
            raise AudioEngineError(f"ffprobe returned unparseable duration `{text}`.") from exc
        return seconds * 1000.0

    async def _run(self, command: list[str], *, timeout: float) -> bytes:
        """Run one subprocess, returning stdout; kill it when `timeout` expires."""

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise AudioEngineUnavailableError(
                f"Cannot execute `{command[0]}`: {exc}"
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise AudioEngineTimeoutError(
                f"`{Path(command[0]).name}` exceeded {timeout:.0f}s timeout and was killed."
            ) from exc

        if process.returncode != 0:
            stderr_text = stderr.decode("utf-8", errors="replace").strip()
            raise AudioEngineError(
                f"`{Path(command[0]).name}` exited with code {process.returncode}: "
                f"{stderr_text[-_STDERR_TAIL_CHARS:]}",
                stderr=stderr_text,
            )
        return stdout
