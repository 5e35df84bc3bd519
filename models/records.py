"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Tuple, Union


class DiagnosticKind(str, Enum):
    """Per-record failures. None of them stops the stream."""

    field_count_mismatch = "FieldCountMismatch"
    timestamp_parse_error = "TimestampParseError"
    numeric_parse_error = "NumericParseError"
    late_data_dropped = "LateDataDropped"


@dataclass(frozen=True, slots=True)
class SensorMeasurement:
    """A single validated reading parsed from one input line."""

    event_time_ms: int
    sensor_id: int
    device_id: int
    metrics: Tuple[float, float, float, float]

    @property
    def value(self) -> float:
        """The metric used for averaging and spike comparison."""
        return self.metrics[0]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_time_ms": self.event_time_ms,
            "sensor_id": self.sensor_id,
            "device_id": self.device_id,
            "metrics": list(self.metrics),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SensorMeasurement":
        metrics = tuple(float(value) for value in payload["metrics"])
        if len(metrics) != 4:
            raise ValueError(f"Expected 4 metric values, got {len(metrics)}.")
        return cls(
            event_time_ms=int(payload["event_time_ms"]),
            sensor_id=int(payload["sensor_id"]),
            device_id=int(payload["device_id"]),
            metrics=metrics,  # type: ignore[arg-type]
        )


@dataclass(frozen=True, slots=True)
class ParseFailure:
    """Why a raw line was rejected. ``detail`` names the offending input."""

    kind: DiagnosticKind
    line: str
    detail: str


ParseResult = Union[SensorMeasurement, ParseFailure]


@dataclass(frozen=True, slots=True)
class WindowSummary:
    """Aggregated view of one closed window for one sensor."""

    sensor_id: int
    window_start: int
    window_end: int
    average_value: float
    current_value: float
    measurement_count: int


@dataclass(slots=True)
class WindowState:
    """Arrival-ordered measurements of one open window ``[start, end)``."""

    start: int
    end: int
    measurements: List[SensorMeasurement] = field(default_factory=list)

    def contains(self, event_time_ms: int) -> bool:
        return self.start <= event_time_ms < self.end

    def summarize(self, sensor_id: int) -> WindowSummary:
        if not self.measurements:
            raise ValueError("Cannot summarize an empty window.")

        total = 0.0
        latest = self.measurements[0]
        for measurement in self.measurements:
            total += measurement.value
            # ">=" lets the later arrival win ties on event time.
            if measurement.event_time_ms >= latest.event_time_ms:
                latest = measurement

        return WindowSummary(
            sensor_id=sensor_id,
            window_start=self.start,
            window_end=self.end,
            average_value=total / len(self.measurements),
            current_value=latest.value,
            measurement_count=len(self.measurements),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start,
            "end": self.end,
            "measurements": [measurement.to_dict() for measurement in self.measurements],
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "WindowState":
        return cls(
            start=int(payload["start"]),
            end=int(payload["end"]),
            measurements=[
                SensorMeasurement.from_dict(item) for item in payload.get("measurements", [])
            ],
        )
