"""Locate the ffmpeg and ffprobe binaries the audio engine shells out to.

Responsibilities:
- Honour explicit tool paths from config unchanged.
- Search a tools directory override, the install's `bin/`, then `PATH`.
- Report whether a configured tool exists for `storyvoice check-engine`.
"""

from __future__ import annotations

import os
from pathlib import Path
import shutil
import sys
from typing import Mapping

TOOLS_DIR_ENV = "STORYVOICE_TOOLS_DIR"


def engine_tool_dirs(env: Mapping[str, str] | None = None) -> tuple[Path, ...]:
    """Return directories searched before `PATH`, highest precedence first.

    `STORYVOICE_TOOLS_DIR` comes first when set, followed by `bin/` under the
    install root and the install root itself. Frozen builds use the directory
    of the bundled executable as their install root.
    """

    env_map: Mapping[str, str] = os.environ if env is None else env
    dirs: list[Path] = []
    override = env_map.get(TOOLS_DIR_ENV, "").strip()
    if override:
        dirs.append(Path(override).expanduser())
    if getattr(sys, "frozen", False):
        root = Path(sys.executable).resolve().parent
    else:
        root = Path(__file__).resolve().parents[1]
    dirs.extend((root / "bin", root))
    return tuple(dirs)


def resolve_executable(tool: str, env: Mapping[str, str] | None = None) -> str:
    """Resolve an engine tool name to the binary that will be executed.

    A value containing a directory part is a pinned path and is returned as
    given. A bare name that resolves nowhere is returned unchanged so the
    subprocess call reports the missing binary.
    """

    name = tool.strip()
    if not name:
        return tool
    if Path(name).parent != Path("."):
        return name

    # Windows builds ship `ffmpeg.exe`; elsewhere the bare name is the file.
    filenames = [name]
    if sys.platform == "win32" and not name.lower().endswith(".exe"):
        filenames.insert(0, f"{name}.exe")
    for directory in engine_tool_dirs(env):
        for filename in filenames:
            candidate = directory / filename
            if candidate.is_file():
                return str(candidate)

    return shutil.which(name) or name


def is_resolvable(tool: str, env: Mapping[str, str] | None = None) -> bool:
    """Return whether `tool` resolves to an existing file."""

    return Path(resolve_executable(tool, env)).is_file()
