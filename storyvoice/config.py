"""Configuration model and loaders for Storyvoice.

Responsibilities:
- Define runtime configuration as typed dataclasses with explicit validation.
- Carry retry, circuit breaker, cache, timing, and assembly tolerances as policy objects.
- Provide loader entry points for file- and environment-based configuration.

Key types:
- `StoryvoiceConfig`: normalized settings for one synthesis run.
- `SynthesisSettings`: backend model and voice-setting defaults.
- `RetryPolicy`, `CircuitBreakerPolicy`, `CachePolicy`, `TimingPolicy`,
  `AssemblyPolicy`: nested frozen policies.
- `ConfigLoader`: static construction helpers for `StoryvoiceConfig`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
import os
from pathlib import Path
from typing import Any, Mapping

import yaml

from .parsing import (
    normalize_optional_string,
    parse_finite_float,
    parse_permissive_boolean,
    parse_positive_int,
    parse_required_boolean,
)


_DEFAULT_BASE_URL = "https://api.elevenlabs.io/v1"
_DEFAULT_MODEL_ID = "eleven_v3"
_API_KEY_ENV_KEYS = ("STORYVOICE_API_KEY", "ELEVENLABS_API_KEY")


@dataclass(frozen=True, slots=True)
class SynthesisSettings:
    """Backend request defaults shared by every segment of a run.

    Attributes:
        model_id: Backend model identifier; selects directive and setting support.
        similarity_boost: Voice similarity boost in [0, 1].
        style: Default style exaggeration in [0, 1] for models that accept it.
        use_speaker_boost: Speaker boost flag for models that accept it.
        output_format: Backend audio output format.
        max_chunk_chars: Per-call text limit; longer text is chunked.
    """

    model_id: str = _DEFAULT_MODEL_ID
    similarity_boost: float = 0.75
    style: float = 0.0
    use_speaker_boost: bool = True
    output_format: str = "mp3_44100_128"
    max_chunk_chars: int = 4800


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff policy for retryable backend failures."""

    max_attempts: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 10.0
    multiplier: float = 2.0
    jitter_s: float = 0.5


@dataclass(frozen=True, slots=True)
class CircuitBreakerPolicy:
    """Consecutive-failure threshold and cooldown for one backend."""

    failure_threshold: int = 5
    cooldown_s: float = 60.0


@dataclass(frozen=True, slots=True)
class CachePolicy:
    """In-memory audio cache bounds."""

    enabled: bool = True
    max_entries: int = 500
    ttl_seconds: float = 7 * 24 * 3600.0


@dataclass(frozen=True, slots=True)
class TimingPolicy:
    """Tolerances used by timeline rescaling and validation.

    Attributes:
        max_total_ms: Upper bound for a valid total duration.
        lead_in_warn_ms: First-word start that triggers a warning.
        lead_in_max_ms: First-word start that fails validation.
        end_drift_ms: Allowed distance between last word end and total duration.
        rescale_threshold: Relative drift above which timings are rescaled.
    """

    max_total_ms: float = 30 * 60 * 1000.0
    lead_in_warn_ms: float = 400.0
    lead_in_max_ms: float = 1000.0
    end_drift_ms: float = 500.0
    rescale_threshold: float = 0.01


@dataclass(frozen=True, slots=True)
class AssemblyPolicy:
    """Crossfade, gap, batching, and engine settings for audio assembly.

    Attributes:
        crossfade_ms: Crossfade between clips of different speakers.
        same_speaker_crossfade_ms: Crossfade between clips of the same speaker.
        gap_ms: Trailing silence between different characters.
        same_speaker_gap_ms: Trailing silence between clips of the same speaker.
        narrator_gap_ms: Trailing silence on narrator transitions.
        pad_ms: Trailing pad appended before every crossfade.
        highpass_hz: DC-offset removal cutoff.
        normalize: Whether loudness normalization is chained into the graph.
        small_set_max: Largest clip count assembled with a crossfade chain.
        large_set_threshold: Clip count above which hierarchical batching is used.
        batch_size: Clips per hierarchical batch.
        batch_crossfade_ms: Crossfade between batch outputs.
        chunk_gap_ms: Gap between chunks of one oversize segment.
        chunk_crossfade_ms: Crossfade between chunks of one oversize segment.
        tempo_tolerance: Speed modifiers within 1.0 +/- this value are ignored.
        engine_timeout_s: Timeout for one render subprocess.
        probe_timeout_s: Timeout for one duration probe subprocess.
    """

    crossfade_ms: int = 100
    same_speaker_crossfade_ms: int = 50
    gap_ms: int = 250
    same_speaker_gap_ms: int = 150
    narrator_gap_ms: int = 250
    pad_ms: int = 50
    highpass_hz: int = 30
    normalize: bool = True
    small_set_max: int = 5
    large_set_threshold: int = 30
    batch_size: int = 25
    batch_crossfade_ms: int = 100
    chunk_gap_ms: int = 100
    chunk_crossfade_ms: int = 50
    tempo_tolerance: float = 0.05
    engine_timeout_s: float = 300.0
    probe_timeout_s: float = 15.0

    def with_preset(self, name: str) -> AssemblyPolicy:
        """Return a copy with crossfade/gap/normalize values from a named preset."""

        return replace(self, **resolve_preset(name))


ASSEMBLY_PRESETS: dict[str, dict[str, Any]] = {
    "natural": {"crossfade_ms": 100, "gap_ms": 250, "narrator_gap_ms": 350, "normalize": True},
    "bedtime": {"crossfade_ms": 200, "gap_ms": 400, "narrator_gap_ms": 500, "normalize": True},
    "dramatic": {"crossfade_ms": 50, "gap_ms": 150, "narrator_gap_ms": 200, "normalize": True},
    "raw": {"crossfade_ms": 0, "gap_ms": 0, "narrator_gap_ms": 0, "normalize": False},
}


def resolve_preset(name: str) -> dict[str, Any]:
    """Return assembly overrides for a preset name, case-insensitively."""

    key = name.strip().lower()
    if key not in ASSEMBLY_PRESETS:
        supported = ", ".join(sorted(ASSEMBLY_PRESETS))
        raise ValueError(f"Unknown assembly preset `{name}`; supported: {supported}.")
    return dict(ASSEMBLY_PRESETS[key])


@dataclass(slots=True)
class StoryvoiceConfig:
    """Runtime configuration for one synthesis run.

    Attributes:
        api_key: Backend API key; required only by the HTTP backend.
        base_url: Backend base URL.
        concurrency: Synthesis window size.
        window_pause_ms: Pause between synthesis windows.
        ffmpeg_path: ffmpeg executable name or path.
        ffprobe_path: ffprobe executable name or path.
        settings: Backend request defaults.
        retry: Backoff policy.
        circuit_breaker: Breaker policy.
        cache: Audio cache policy.
        timing: Timeline tolerances.
        assembly: Assembly policy.
        extra: Additional metadata for future extensions.
    """

    api_key: str | None = None
    base_url: str = _DEFAULT_BASE_URL
    concurrency: int = 5
    window_pause_ms: float = 50.0
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    settings: SynthesisSettings = field(default_factory=SynthesisSettings)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    circuit_breaker: CircuitBreakerPolicy = field(default_factory=CircuitBreakerPolicy)
    cache: CachePolicy = field(default_factory=CachePolicy)
    timing: TimingPolicy = field(default_factory=TimingPolicy)
    assembly: AssemblyPolicy = field(default_factory=AssemblyPolicy)
    extra: dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        """Validate configuration values before pipeline execution."""

        self._require_non_empty(self.base_url, "base_url")
        self._require_non_empty(self.settings.model_id, "settings.model_id")
        self._require_non_empty(self.settings.output_format, "settings.output_format")
        self._require_unit_interval(self.settings.similarity_boost, "settings.similarity_boost")
        self._require_unit_interval(self.settings.style, "settings.style")
        if self.concurrency <= 0:
            raise ValueError("`concurrency` must be a positive integer.")
        if self.window_pause_ms < 0:
            raise ValueError("`window_pause_ms` must be non-negative.")
        if self.settings.max_chunk_chars <= 0:
            raise ValueError("`settings.max_chunk_chars` must be a positive integer.")
        if self.retry.max_attempts <= 0:
            raise ValueError("`retry.max_attempts` must be a positive integer.")
        if self.retry.base_delay_s < 0 or self.retry.max_delay_s < self.retry.base_delay_s:
            raise ValueError("`retry` delays must satisfy 0 <= base_delay_s <= max_delay_s.")
        if self.circuit_breaker.failure_threshold <= 0:
            raise ValueError("`circuit_breaker.failure_threshold` must be a positive integer.")
        if self.cache.max_entries <= 0:
            raise ValueError("`cache.max_entries` must be a positive integer.")
        if self.timing.lead_in_warn_ms > self.timing.lead_in_max_ms:
            raise ValueError("`timing.lead_in_warn_ms` must not exceed `timing.lead_in_max_ms`.")
        if self.assembly.batch_size <= 1:
            raise ValueError("`assembly.batch_size` must be greater than 1.")
        if self.assembly.small_set_max >= self.assembly.large_set_threshold:
            raise ValueError(
                "`assembly.small_set_max` must be lower than `assembly.large_set_threshold`."
            )
        for name in (
            "crossfade_ms",
            "same_speaker_crossfade_ms",
            "gap_ms",
            "same_speaker_gap_ms",
            "narrator_gap_ms",
            "pad_ms",
            "batch_crossfade_ms",
            "chunk_gap_ms",
            "chunk_crossfade_ms",
        ):
            if getattr(self.assembly, name) < 0:
                raise ValueError(f"`assembly.{name}` must be non-negative.")

    @staticmethod
    def _require_non_empty(value: str, field_name: str) -> None:
        """Validate that string fields are not empty."""

        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"`{field_name}` must be a non-empty string.")

    @staticmethod
    def _require_unit_interval(value: float, field_name: str) -> None:
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"`{field_name}` must be within [0, 1].")


_POLICY_SECTIONS: dict[str, type] = {
    "settings": SynthesisSettings,
    "retry": RetryPolicy,
    "circuit_breaker": CircuitBreakerPolicy,
    "cache": CachePolicy,
    "timing": TimingPolicy,
    "assembly": AssemblyPolicy,
}


class ConfigLoader:
    """Factory methods for creating `StoryvoiceConfig` from external sources."""

    _SUPPORTED_YAML_KEYS = frozenset(
        {
            "api_key",
            "base_url",
            "concurrency",
            "window_pause_ms",
            "ffmpeg_path",
            "ffprobe_path",
            "preset",
            "extra",
            *_POLICY_SECTIONS,
        }
    )

    @staticmethod
    def from_yaml(path: Path, env: Mapping[str, str] | None = None) -> StoryvoiceConfig:
        """Create a validated config from a YAML file.

        The API key falls back to `STORYVOICE_API_KEY` / `ELEVENLABS_API_KEY`
        when the file does not set one.
        """

        env_map: Mapping[str, str] = os.environ if env is None else env
        payload = ConfigLoader._parse_yaml_payload(path.read_text(encoding="utf-8"), path)
        config = ConfigLoader._build_config_from_mapping(payload, source_label=f"YAML `{path}`")
        if config.api_key is None:
            config.api_key = ConfigLoader._env_api_key(env_map)
        return config

    @staticmethod
    def from_env(env: Mapping[str, str] | None = None) -> StoryvoiceConfig:
        """Create a validated config from environment variables."""

        env_map: Mapping[str, str] = os.environ if env is None else env

        settings = SynthesisSettings()
        model_id = ConfigLoader._optional_env_string(env_map, "STORYVOICE_MODEL_ID")
        if model_id is not None:
            settings = replace(settings, model_id=model_id)

        assembly = AssemblyPolicy()
        preset = ConfigLoader._optional_env_string(env_map, "STORYVOICE_PRESET")
        if preset is not None:
            assembly = assembly.with_preset(preset)
        normalize = ConfigLoader._optional_env_boolean(env_map, "STORYVOICE_NORMALIZE")
        if normalize is not None:
            assembly = replace(assembly, normalize=normalize)

        cache = CachePolicy()
        cache_enabled = ConfigLoader._optional_env_boolean(env_map, "STORYVOICE_CACHE_ENABLED")
        if cache_enabled is not None:
            cache = replace(cache, enabled=cache_enabled)

        concurrency_raw = ConfigLoader._optional_env_string(env_map, "STORYVOICE_CONCURRENCY")
        concurrency = (
            parse_positive_int(concurrency_raw, "STORYVOICE_CONCURRENCY")
            if concurrency_raw is not None
            else 5
        )

        config = StoryvoiceConfig(
            api_key=ConfigLoader._env_api_key(env_map),
            base_url=ConfigLoader._optional_env_string(env_map, "STORYVOICE_BASE_URL")
            or _DEFAULT_BASE_URL,
            concurrency=concurrency,
            ffmpeg_path=ConfigLoader._optional_env_string(env_map, "STORYVOICE_FFMPEG")
            or "ffmpeg",
            ffprobe_path=ConfigLoader._optional_env_string(env_map, "STORYVOICE_FFPROBE")
            or "ffprobe",
            settings=settings,
            cache=cache,
            assembly=assembly,
        )
        config.validate()
        return config

    @staticmethod
    def _parse_yaml_payload(raw_text: str, path: Path) -> Mapping[str, Any]:
        """Parse YAML text and enforce a mapping root payload."""

        try:
            payload = yaml.safe_load(raw_text)
        except yaml.YAMLError as exc:
            raise ValueError(f"YAML config `{path}` could not be parsed: {exc}") from exc

        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise ValueError(f"YAML config `{path}` must contain a top-level mapping/object.")
        return payload

    @staticmethod
    def _build_config_from_mapping(
        payload: Mapping[str, Any], source_label: str
    ) -> StoryvoiceConfig:
        """Build a validated config from a normalized mapping payload."""

        unknown = sorted(set(payload).difference(ConfigLoader._SUPPORTED_YAML_KEYS))
        if unknown:
            key_list = ", ".join(unknown)
            raise ValueError(f"{source_label} includes unsupported key(s): {key_list}.")

        sections = {
            name: ConfigLoader._build_policy(policy_type, payload.get(name), name, source_label)
            for name, policy_type in _POLICY_SECTIONS.items()
        }

        preset = normalize_optional_string(payload.get("preset"))
        if preset is not None:
            # Explicit `assembly` keys win over preset values.
            explicit = payload.get("assembly") or {}
            overrides = {
                key: value
                for key, value in resolve_preset(preset).items()
                if key not in explicit
            }
            sections["assembly"] = replace(sections["assembly"], **overrides)

        config = StoryvoiceConfig(
            api_key=normalize_optional_string(payload.get("api_key")),
            base_url=normalize_optional_string(payload.get("base_url")) or _DEFAULT_BASE_URL,
            concurrency=(
                parse_positive_int(payload["concurrency"], "concurrency")
                if payload.get("concurrency") is not None
                else 5
            ),
            window_pause_ms=(
                parse_finite_float(payload["window_pause_ms"], "window_pause_ms")
                if payload.get("window_pause_ms") is not None
                else 50.0
            ),
            ffmpeg_path=normalize_optional_string(payload.get("ffmpeg_path")) or "ffmpeg",
            ffprobe_path=normalize_optional_string(payload.get("ffprobe_path")) or "ffprobe",
            extra=ConfigLoader._optional_string_map(payload, "extra", source_label),
            **sections,
        )
        config.validate()
        return config

    @staticmethod
    def _build_policy(
        policy_type: type, raw: object, section: str, source_label: str
    ) -> Any:
        """Build one nested policy, coercing each value to its field's default type."""

        if raw is None:
            return policy_type()
        if not isinstance(raw, Mapping):
            raise ValueError(f"{source_label} field `{section}` must be a mapping/object.")

        known = {item.name: item for item in fields(policy_type)}
        unknown = sorted(set(raw).difference(known))
        if unknown:
            key_list = ", ".join(f"{section}.{key}" for key in unknown)
            raise ValueError(f"{source_label} includes unsupported key(s): {key_list}.")

        defaults = policy_type()
        values: dict[str, Any] = {}
        for key, value in raw.items():
            values[key] = ConfigLoader._coerce_like(
                getattr(defaults, key), value, f"{section}.{key}"
            )
        return replace(defaults, **values)

    @staticmethod
    def _coerce_like(default: object, value: object, field_name: str) -> Any:
        """Coerce `value` to the type of `default`."""

        if isinstance(default, bool):
            return parse_required_boolean(value, field_name)
        if isinstance(default, int):
            parsed = parse_finite_float(value, field_name)
            if not parsed.is_integer() or parsed < 0:
                raise ValueError(f"`{field_name}` must be a non-negative integer.")
            return int(parsed)
        if isinstance(default, float):
            return parse_finite_float(value, field_name)
        text = normalize_optional_string(value)
        if text is None:
            raise ValueError(f"`{field_name}` must be a non-empty string.")
        return text

    @staticmethod
    def _optional_string_map(
        payload: Mapping[str, Any], key: str, source_label: str
    ) -> dict[str, str]:
        """Read an optional mapping with non-empty string keys and values."""

        raw = payload.get(key)
        if raw is None:
            return {}
        if not isinstance(raw, Mapping):
            raise ValueError(f"{source_label} field `{key}` must be a mapping/object.")

        normalized: dict[str, str] = {}
        for raw_key, raw_value in raw.items():
            key_value = normalize_optional_string(raw_key)
            value_value = normalize_optional_string(raw_value)
            if key_value is None:
                raise ValueError(f"{source_label} field `{key}` contains a blank key.")
            if value_value is None:
                raise ValueError(
                    f"{source_label} field `{key}` contains blank value for `{key_value}`."
                )
            normalized[key_value] = value_value
        return normalized

    @staticmethod
    def _env_api_key(env: Mapping[str, str]) -> str | None:
        for key in _API_KEY_ENV_KEYS:
            value = ConfigLoader._optional_env_string(env, key)
            if value is not None:
                return value
        return None

    @staticmethod
    def _optional_env_string(env: Mapping[str, str], key: str) -> str | None:
        """Read and normalize optional string environment variable values."""

        if key not in env:
            return None
        return normalize_optional_string(env.get(key))

    @staticmethod
    def _optional_env_boolean(env: Mapping[str, str], key: str) -> bool | None:
        """Read an optional boolean from environment mapping."""

        if key not in env:
            return None
        parsed = parse_permissive_boolean(env.get(key))
        if parsed is None:
            raise ValueError(
                f"Environment variable `{key}` must be a boolean value "
                "(`true`/`false`, `1`/`0`, `yes`/`no`)."
            )
        return parsed
