from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from services.live import build_default_service
from settings import get_settings

SCENARIO_LINES = [
    "2020-01-01 00:00:00.000000 1 2 10.0 1.0 1.0 1.0",
    "2020-01-01 00:00:02.000000 1 2 50.0 1.0 1.0 1.0",
]
CLOSING_LINE = "2020-01-01 00:00:20.000000 1 2 10.0 1.0 1.0 1.0"


@pytest.fixture
def window_environment(monkeypatch) -> Iterator[None]:
    monkeypatch.setenv("SPIKE_WINDOW_SIZE", "5")
    monkeypatch.setenv("SPIKE_WINDOW_SLIDE", "5")
    monkeypatch.setenv("SPIKE_LATENESS", "0")
    for name in ("SPIKE_FRACTION", "SPIKE_WATERMARK", "SPIKE_PARALLELISM", "SPIKE_SHUTDOWN_POLICY"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    build_default_service.cache_clear()
    yield
    build_default_service.cache_clear()
    get_settings.cache_clear()


@pytest.fixture
def api_client(window_environment) -> Iterator[TestClient]:
    app = create_app()
    with TestClient(app) as client:
        yield client


def test_lifespan_shuts_down_service_and_clears_cache(window_environment) -> None:
    app = create_app()

    with TestClient(app):
        service_during = build_default_service()
        assert service_during.sink.closed is False

    assert service_during.sink.closed is True
    service_after = build_default_service()
    try:
        assert service_after is not service_during
    finally:
        service_after.shutdown()


def test_health_and_root(api_client: TestClient) -> None:
    assert api_client.get("/health").json() == {"status": "ok"}
    root = api_client.get("/")
    assert root.status_code == 200
    assert root.json()["status"] == "ok"


def test_readings_emit_spike_once_watermark_passes(api_client: TestClient) -> None:
    response = api_client.post("/readings", json={"lines": SCENARIO_LINES})

    assert response.status_code == 200
    assert response.json() == {"lines": 2, "accepted": 2, "rejected": 0, "spikes": []}

    response = api_client.post("/readings", json={"lines": [CLOSING_LINE]})

    [spike] = response.json()["spikes"]
    assert spike["version"] == 1
    assert spike["sensor_id"] == 1
    assert spike["window_start"] == 1577836800000
    assert spike["window_end"] == 1577836805000
    assert spike["average_value"] == 30.0
    assert spike["current_value"] == 50.0
    assert spike["measurement_count"] == 2

    recent = api_client.get("/spikes").json()["spikes"]
    assert recent == [spike]


def test_flush_closes_open_windows(api_client: TestClient) -> None:
    api_client.post("/readings", json={"lines": SCENARIO_LINES})

    response = api_client.post("/flush")

    assert response.status_code == 200
    [spike] = response.json()["spikes"]
    assert spike["average_value"] == 30.0
    assert api_client.get("/state").json()["partitions"][0]["windows"] == {}


def test_malformed_lines_are_reported(api_client: TestClient) -> None:
    bad_line = "2020-01-01 00:00:01 1 2 10.0"

    response = api_client.post("/readings", json={"lines": [bad_line, SCENARIO_LINES[0]]})

    assert response.json()["rejected"] == 1
    diagnostics = api_client.get("/diagnostics").json()
    assert diagnostics["counts"] == {"FieldCountMismatch": 1}
    [item] = diagnostics["items"]
    assert item["kind"] == "FieldCountMismatch"
    assert item["raw_input"] == bad_line


def test_stats_and_state(api_client: TestClient) -> None:
    api_client.post("/readings", json={"lines": SCENARIO_LINES + ["garbage"]})

    stats = api_client.get("/stats").json()
    assert stats["lines"] == 3
    assert stats["measurements"] == 2
    assert stats["rejected"] == 1

    state = api_client.get("/state").json()
    [partition] = state["partitions"]
    assert partition["size_ms"] == 5000
    assert len(partition["windows"]["1"]) == 1


def test_readings_payload_is_validated(api_client: TestClient) -> None:
    response = api_client.post("/readings", json={"rows": []})

    assert response.status_code == 422
