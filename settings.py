from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, Optional


_MODE_ENV = "SPIKE_MODE"
_INPUT_ENV = "SPIKE_INPUT"
_OUTPUT_ENV = "SPIKE_OUTPUT"
_PARALLELISM_ENV = "SPIKE_PARALLELISM"
_SIZE_ENV = "SPIKE_WINDOW_SIZE"
_SLIDE_ENV = "SPIKE_WINDOW_SLIDE"
_LATENESS_ENV = "SPIKE_LATENESS"
_FRACTION_ENV = "SPIKE_FRACTION"
_WATERMARK_ENV = "SPIKE_WATERMARK"
_SHUTDOWN_POLICY_ENV = "SPIKE_SHUTDOWN_POLICY"
_BROKER_PATH_ENV = "SPIKE_BROKER_PATH"
_CONSUMER_GROUP_ENV = "SPIKE_CONSUMER_GROUP"
_BOOTSTRAP_SERVERS_ENV = "SPIKE_BOOTSTRAP_SERVERS"
_MONITOR_INTERVAL_ENV = "SPIKE_MONITOR_INTERVAL"
_LOG_LEVEL_ENV = "LOG_LEVEL"

DEFAULT_SPIKE_FRACTION = 0.03
DEFAULT_PARALLELISM = 1
DEFAULT_CONSUMER_GROUP = "spike-detector"


class ConfigurationError(ValueError):
    """Raised when the pipeline cannot start with the supplied parameters."""


class Mode(str, Enum):
    file = "file"
    topic = "topic"


class WatermarkStrategy(str, Enum):
    none = "none"
    bounded = "bounded"


class ShutdownPolicy(str, Enum):
    flush = "flush"
    discard = "discard"


@dataclass(frozen=True)
class Settings:
    """Raw process settings as read from the environment."""

    mode: Optional[str]
    input: Optional[str]
    output: Optional[str]
    parallelism: Optional[str]
    window_size: Optional[str]
    window_slide: Optional[str]
    lateness: Optional[str]
    spike_fraction: Optional[str]
    watermark: Optional[str]
    shutdown_policy: Optional[str]
    broker_path: Optional[str]
    consumer_group: str
    bootstrap_servers: Optional[str]
    monitor_interval: Optional[str]
    log_level: str


@dataclass(frozen=True)
class PipelineConfig:
    """Validated parameters for one pipeline run."""

    mode: Mode
    input: str
    output: str
    window_size: int
    window_slide: int
    lateness: int
    parallelism: int = DEFAULT_PARALLELISM
    spike_fraction: float = DEFAULT_SPIKE_FRACTION
    watermark: WatermarkStrategy = WatermarkStrategy.bounded
    shutdown_policy: ShutdownPolicy = ShutdownPolicy.flush
    broker_path: Optional[str] = None
    consumer_group: str = DEFAULT_CONSUMER_GROUP
    bootstrap_servers: Optional[str] = None
    monitor_interval: Optional[int] = None

    @property
    def window_size_ms(self) -> int:
        return self.window_size * 1000

    @property
    def window_slide_ms(self) -> int:
        return self.window_slide * 1000

    @property
    def lateness_ms(self) -> int:
        return self.lateness * 1000


def _read_optional_env(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    candidate = value.strip()
    return candidate or None


def _read_str_env(name: str, default: str) -> str:
    return _read_optional_env(name) or default


def _read_log_level(default: str) -> str:
    value = _read_optional_env(_LOG_LEVEL_ENV)
    if value is None:
        return default
    return value.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        mode=_read_optional_env(_MODE_ENV),
        input=_read_optional_env(_INPUT_ENV),
        output=_read_optional_env(_OUTPUT_ENV),
        parallelism=_read_optional_env(_PARALLELISM_ENV),
        window_size=_read_optional_env(_SIZE_ENV),
        window_slide=_read_optional_env(_SLIDE_ENV),
        lateness=_read_optional_env(_LATENESS_ENV),
        spike_fraction=_read_optional_env(_FRACTION_ENV),
        watermark=_read_optional_env(_WATERMARK_ENV),
        shutdown_policy=_read_optional_env(_SHUTDOWN_POLICY_ENV),
        broker_path=_read_optional_env(_BROKER_PATH_ENV),
        consumer_group=_read_str_env(_CONSUMER_GROUP_ENV, DEFAULT_CONSUMER_GROUP),
        bootstrap_servers=_read_optional_env(_BOOTSTRAP_SERVERS_ENV),
        monitor_interval=_read_optional_env(_MONITOR_INTERVAL_ENV),
        log_level=_read_log_level("INFO"),
    )


def _pick(override: Any, fallback: Any) -> Any:
    if override is None:
        return fallback
    if isinstance(override, str) and not override.strip():
        return fallback
    return override


def _require(name: str, value: Any) -> Any:
    if value is None:
        raise ConfigurationError(f"Missing required parameter {name!r}.")
    return value


def _parse_int(name: str, value: Any, minimum: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Parameter {name!r} must be an integer, got {value!r}.") from exc
    if parsed < minimum:
        raise ConfigurationError(f"Parameter {name!r} must be >= {minimum}, got {parsed}.")
    return parsed


def _parse_fraction(value: Any) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"Parameter 'spike_fraction' must be a number, got {value!r}."
        ) from exc
    if parsed != parsed or parsed < 0 or parsed == float("inf"):
        raise ConfigurationError(
            f"Parameter 'spike_fraction' must be a finite non-negative number, got {value!r}."
        )
    return parsed


def _parse_choice(name: str, value: Any, enum_type: type[Enum]) -> Any:
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(str(value).strip().lower())
    except ValueError as exc:
        supported = ", ".join(f'"{member.value}"' for member in enum_type)  # type: ignore[attr-defined]
        raise ConfigurationError(
            f"Unsupported {name} {value!r}; supported values are {supported}."
        ) from exc


def resolve_pipeline_config(
    settings: Optional[Settings] = None,
    **overrides: Any,
) -> PipelineConfig:
    """Merge explicit overrides over environment settings and validate the result.

    Window size, slide and lateness have no implicit default: leaving any of
    them unset is a startup error. The watermark strategy defaults from the
    mode (``file`` reads a bounded input, ``topic`` an unbounded one).
    ``monitor_interval`` (seconds) turns a file input into a watched one.
    ``bootstrap_servers`` switches topic mode from the local broker to Kafka.
    """
    settings = settings or get_settings()

    mode = _parse_choice("mode", _require("mode", _pick(overrides.get("mode"), settings.mode)), Mode)
    source = _require("input", _pick(overrides.get("input"), settings.input))
    sink = _require("output", _pick(overrides.get("output"), settings.output))

    size = _parse_int(
        "size", _require("size", _pick(overrides.get("window_size"), settings.window_size)), 1
    )
    slide = _parse_int(
        "slide", _require("slide", _pick(overrides.get("window_slide"), settings.window_slide)), 1
    )
    if slide > size:
        raise ConfigurationError(
            f"Window slide ({slide}s) must not exceed window size ({size}s)."
        )
    lateness = _parse_int(
        "lateness", _require("lateness", _pick(overrides.get("lateness"), settings.lateness)), 0
    )

    parallelism_raw = _pick(overrides.get("parallelism"), settings.parallelism)
    parallelism = (
        DEFAULT_PARALLELISM
        if parallelism_raw is None
        else _parse_int("parallelism", parallelism_raw, 1)
    )
    fraction_raw = _pick(overrides.get("spike_fraction"), settings.spike_fraction)
    fraction = DEFAULT_SPIKE_FRACTION if fraction_raw is None else _parse_fraction(fraction_raw)

    default_watermark = (
        WatermarkStrategy.none if mode is Mode.file else WatermarkStrategy.bounded
    )
    watermark_raw = _pick(overrides.get("watermark"), settings.watermark)
    watermark = (
        default_watermark
        if watermark_raw is None
        else _parse_choice("watermark strategy", watermark_raw, WatermarkStrategy)
    )
    policy_raw = _pick(overrides.get("shutdown_policy"), settings.shutdown_policy)
    policy = (
        ShutdownPolicy.flush
        if policy_raw is None
        else _parse_choice("shutdown policy", policy_raw, ShutdownPolicy)
    )

    interval_raw = _pick(overrides.get("monitor_interval"), settings.monitor_interval)
    monitor_interval = (
        None if interval_raw is None else _parse_int("monitor_interval", interval_raw, 1)
    )

    return PipelineConfig(
        mode=mode,
        input=str(source),
        output=str(sink),
        window_size=size,
        window_slide=slide,
        lateness=lateness,
        parallelism=parallelism,
        spike_fraction=fraction,
        watermark=watermark,
        shutdown_policy=policy,
        broker_path=_pick(overrides.get("broker_path"), settings.broker_path),
        consumer_group=_pick(overrides.get("consumer_group"), settings.consumer_group),
        bootstrap_servers=_pick(overrides.get("bootstrap_servers"), settings.bootstrap_servers),
        monitor_interval=monitor_interval,
    )
