from __future__ import annotations

from typing import Iterator

import pytest

from settings import (
    DEFAULT_SPIKE_FRACTION,
    ConfigurationError,
    Mode,
    ShutdownPolicy,
    WatermarkStrategy,
    get_settings,
    resolve_pipeline_config,
)

_REQUIRED = dict(mode="file", input="in.txt", output="out.txt", window_size=10, window_slide=5, lateness=2)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch) -> Iterator[None]:
    for name in (
        "SPIKE_MODE",
        "SPIKE_INPUT",
        "SPIKE_OUTPUT",
        "SPIKE_PARALLELISM",
        "SPIKE_WINDOW_SIZE",
        "SPIKE_WINDOW_SLIDE",
        "SPIKE_LATENESS",
        "SPIKE_FRACTION",
        "SPIKE_WATERMARK",
        "SPIKE_SHUTDOWN_POLICY",
        "SPIKE_BROKER_PATH",
        "SPIKE_CONSUMER_GROUP",
        "SPIKE_BOOTSTRAP_SERVERS",
        "SPIKE_MONITOR_INTERVAL",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_explicit_overrides_resolve_with_defaults() -> None:
    config = resolve_pipeline_config(**_REQUIRED)

    assert config.mode is Mode.file
    assert config.window_size_ms == 10_000
    assert config.window_slide_ms == 5_000
    assert config.lateness_ms == 2_000
    assert config.parallelism == 1
    assert config.spike_fraction == DEFAULT_SPIKE_FRACTION
    assert config.watermark is WatermarkStrategy.none
    assert config.shutdown_policy is ShutdownPolicy.flush


def test_environment_values_are_used(monkeypatch) -> None:
    monkeypatch.setenv("SPIKE_MODE", "topic")
    monkeypatch.setenv("SPIKE_INPUT", "readings")
    monkeypatch.setenv("SPIKE_OUTPUT", "spikes")
    monkeypatch.setenv("SPIKE_WINDOW_SIZE", "60")
    monkeypatch.setenv("SPIKE_WINDOW_SLIDE", "10")
    monkeypatch.setenv("SPIKE_LATENESS", "5")
    monkeypatch.setenv("SPIKE_PARALLELISM", "4")
    monkeypatch.setenv("SPIKE_FRACTION", "0.1")
    monkeypatch.setenv("SPIKE_CONSUMER_GROUP", "alerts")
    get_settings.cache_clear()

    config = resolve_pipeline_config()

    assert config.mode is Mode.topic
    assert config.watermark is WatermarkStrategy.bounded
    assert config.parallelism == 4
    assert config.spike_fraction == 0.1
    assert config.consumer_group == "alerts"


def test_overrides_win_over_environment(monkeypatch) -> None:
    monkeypatch.setenv("SPIKE_WINDOW_SIZE", "60")
    get_settings.cache_clear()

    config = resolve_pipeline_config(**_REQUIRED)

    assert config.window_size == 10


def test_unsupported_mode_is_fatal() -> None:
    with pytest.raises(ConfigurationError, match="Unsupported mode"):
        resolve_pipeline_config(**{**_REQUIRED, "mode": "socket"})


@pytest.mark.parametrize("missing", ["mode", "input", "output", "window_size", "window_slide", "lateness"])
def test_required_parameters(missing: str) -> None:
    values = {key: value for key, value in _REQUIRED.items() if key != missing}

    with pytest.raises(ConfigurationError, match="Missing required parameter"):
        resolve_pipeline_config(**values)


@pytest.mark.parametrize(
    "overrides",
    [
        {"window_size": 0},
        {"window_slide": "abc"},
        {"window_size": 5, "window_slide": 10},
        {"lateness": -1},
        {"parallelism": 0},
        {"spike_fraction": -0.5},
        {"spike_fraction": "nan"},
        {"watermark": "sometimes"},
        {"shutdown_policy": "panic"},
    ],
)
def test_invalid_values_are_rejected(overrides: dict) -> None:
    with pytest.raises(ConfigurationError):
        resolve_pipeline_config(**{**_REQUIRED, **overrides})


def test_choices_are_case_insensitive() -> None:
    config = resolve_pipeline_config(
        **{**_REQUIRED, "mode": "FILE", "watermark": "Bounded", "shutdown_policy": "DISCARD"}
    )

    assert config.watermark is WatermarkStrategy.bounded
    assert config.shutdown_policy is ShutdownPolicy.discard


def test_transport_options_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("SPIKE_BOOTSTRAP_SERVERS", "kafka:9092")
    monkeypatch.setenv("SPIKE_MONITOR_INTERVAL", "10")
    get_settings.cache_clear()

    config = resolve_pipeline_config(**_REQUIRED)

    assert config.bootstrap_servers == "kafka:9092"
    assert config.monitor_interval == 10


def test_monitor_interval_must_be_positive() -> None:
    assert resolve_pipeline_config(**_REQUIRED).monitor_interval is None
    with pytest.raises(ConfigurationError):
        resolve_pipeline_config(**{**_REQUIRED, "monitor_interval": 0})
