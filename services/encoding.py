"""Wire format for emitted spike records.

Version 1 encodes one JSON object per line with the fields, in order::

    version, sensor_id, window_start, window_end,
    average_value, current_value, measurement_count

``window_start`` and ``window_end`` are epoch milliseconds (UTC).
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from models.records import WindowSummary

ENCODING_VERSION = 1
FIELD_ORDER = (
    "version",
    "sensor_id",
    "window_start",
    "window_end",
    "average_value",
    "current_value",
    "measurement_count",
)


class SpikeRecord(BaseModel):
    """Serialized form of a window summary that passed the spike filter."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: Literal[1] = ENCODING_VERSION
    sensor_id: int
    window_start: int = Field(..., description="Window start, epoch milliseconds.")
    window_end: int = Field(..., description="Window end (exclusive), epoch milliseconds.")
    average_value: float
    current_value: float
    measurement_count: int = Field(..., ge=1)

    @classmethod
    def from_summary(cls, summary: WindowSummary) -> "SpikeRecord":
        return cls(
            sensor_id=summary.sensor_id,
            window_start=summary.window_start,
            window_end=summary.window_end,
            average_value=summary.average_value,
            current_value=summary.current_value,
            measurement_count=summary.measurement_count,
        )


def encode_spike(summary: WindowSummary) -> str:
    """Encode a summary as one version-1 JSON line (no trailing newline)."""
    return SpikeRecord.from_summary(summary).model_dump_json()


def decode_spike(payload: str | bytes) -> SpikeRecord:
    return SpikeRecord.model_validate_json(payload)
