"""Unit tests for YAML and environment config loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from storyvoice.config import AssemblyPolicy, ConfigLoader, StoryvoiceConfig, resolve_preset


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "storyvoice.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_from_yaml_reads_sections_and_coerces_values(tmp_path: Path) -> None:
    """Nested sections are coerced to their field types."""

    path = _write(
        tmp_path,
        """
api_key: file-key
concurrency: "3"
settings:
  model_id: eleven_multilingual_v2
  max_chunk_chars: 2000
retry:
  max_attempts: 4
cache:
  enabled: "no"
assembly:
  gap_ms: 300
  normalize: false
extra:
  project: demo
""",
    )

    config = ConfigLoader.from_yaml(path, env={})

    assert config.api_key == "file-key"
    assert config.concurrency == 3
    assert config.settings.model_id == "eleven_multilingual_v2"
    assert config.settings.max_chunk_chars == 2000
    assert config.retry.max_attempts == 4
    assert config.cache.enabled is False
    assert config.assembly.gap_ms == 300
    assert config.assembly.normalize is False
    assert config.extra == {"project": "demo"}


def test_from_yaml_preset_yields_to_explicit_assembly_keys(tmp_path: Path) -> None:
    path = _write(tmp_path, "preset: bedtime\nassembly:\n  gap_ms: 320\n")

    config = ConfigLoader.from_yaml(path, env={})

    assert config.assembly.crossfade_ms == 200
    assert config.assembly.narrator_gap_ms == 500
    assert config.assembly.gap_ms == 320


def test_from_yaml_falls_back_to_env_api_key(tmp_path: Path) -> None:
    path = _write(tmp_path, "concurrency: 2\n")

    config = ConfigLoader.from_yaml(path, env={"ELEVENLABS_API_KEY": " env-key "})

    assert config.api_key == "env-key"


@pytest.mark.parametrize(
    "text",
    [
        "unknown_key: 1\n",
        "retry:\n  attempts: 3\n",
        "retry: 3\n",
        "concurrency: 0\n",
        "assembly:\n  gap_ms: -10\n",
        "assembly:\n  gap_ms: 10.5\n",
        "preset: lullaby\n",
        "- a\n- b\n",
        "settings: [unclosed\n",
    ],
)
def test_from_yaml_rejects_invalid_payloads(tmp_path: Path, text: str) -> None:
    with pytest.raises(ValueError):
        ConfigLoader.from_yaml(_write(tmp_path, text), env={})


def test_from_env_reads_storyvoice_variables() -> None:
    config = ConfigLoader.from_env(
        {
            "STORYVOICE_API_KEY": "primary",
            "ELEVENLABS_API_KEY": "secondary",
            "STORYVOICE_MODEL_ID": "eleven_turbo_v2_5",
            "STORYVOICE_PRESET": "dramatic",
            "STORYVOICE_NORMALIZE": "off",
            "STORYVOICE_CACHE_ENABLED": "false",
            "STORYVOICE_CONCURRENCY": "8",
            "STORYVOICE_FFMPEG": "/opt/ffmpeg/bin/ffmpeg",
        }
    )

    assert config.api_key == "primary"
    assert config.settings.model_id == "eleven_turbo_v2_5"
    assert config.assembly.crossfade_ms == 50
    assert config.assembly.normalize is False
    assert config.cache.enabled is False
    assert config.concurrency == 8
    assert config.ffmpeg_path == "/opt/ffmpeg/bin/ffmpeg"
    assert config.ffprobe_path == "ffprobe"


def test_from_env_rejects_invalid_boolean() -> None:
    with pytest.raises(ValueError):
        ConfigLoader.from_env({"STORYVOICE_NORMALIZE": "maybe"})


def test_presets_are_case_insensitive_and_raw_disables_normalization() -> None:
    assert resolve_preset(" Natural ")["narrator_gap_ms"] == 350
    raw = AssemblyPolicy().with_preset("raw")

    assert (raw.crossfade_ms, raw.gap_ms, raw.normalize) == (0, 0, False)
    with pytest.raises(ValueError):
        resolve_preset("lullaby")


def test_validate_rejects_inconsistent_thresholds() -> None:
    config = StoryvoiceConfig(assembly=AssemblyPolicy(small_set_max=40))

    with pytest.raises(ValueError):
        config.validate()
