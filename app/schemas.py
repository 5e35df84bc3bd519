"""Pydantic schemas for the HTTP API layer."""

from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, Field

from services.encoding import SpikeRecord


class ReadingsRequest(BaseModel):
    """A batch of raw sensor lines, processed in order."""

    lines: List[str] = Field(..., description="Raw input lines, one reading each.")


class IngestResponse(BaseModel):
    """Outcome of one batch."""

    lines: int = Field(..., ge=0)
    accepted: int = Field(..., ge=0)
    rejected: int = Field(..., ge=0)
    spikes: List[SpikeRecord] = Field(default_factory=list)


class FlushResponse(BaseModel):
    spikes: List[SpikeRecord] = Field(default_factory=list)


class SpikeListResponse(BaseModel):
    spikes: List[SpikeRecord] = Field(default_factory=list)


class DiagnosticOut(BaseModel):
    """A dropped record and the reason it was dropped."""

    kind: str
    raw_input: str
    detail: str
    context: Dict[str, Any] = Field(default_factory=dict)


class DiagnosticsResponse(BaseModel):
    counts: Dict[str, int] = Field(default_factory=dict)
    items: List[DiagnosticOut] = Field(default_factory=list)


class StatsResponse(BaseModel):
    lines: int = 0
    measurements: int = 0
    rejected: int = 0
    late: int = 0
    summaries: int = 0
    spikes: int = 0
    open_windows_dropped: int = 0
