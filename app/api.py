"""HTTP route definitions for the service."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from app.schemas import (
    DiagnosticOut,
    DiagnosticsResponse,
    FlushResponse,
    IngestResponse,
    ReadingsRequest,
    SpikeListResponse,
    StatsResponse,
)
from services.encoding import SpikeRecord
from services.live import LiveDetectionService, build_default_service

router = APIRouter()


def get_service() -> LiveDetectionService:
    return build_default_service()


@router.post(
    "/readings",
    response_model=IngestResponse,
    summary="Feed a batch of raw lines and return the spikes it produced.",
)
def ingest_readings(
    payload: ReadingsRequest,
    service: LiveDetectionService = Depends(get_service),
) -> IngestResponse:
    outcome = service.ingest(payload.lines)
    return IngestResponse(
        lines=outcome.lines,
        accepted=outcome.accepted,
        rejected=outcome.rejected,
        spikes=[SpikeRecord.from_summary(summary) for summary in outcome.spikes],
    )


@router.post(
    "/flush",
    response_model=FlushResponse,
    summary="Close every open window and return resulting spikes.",
)
def flush_windows(service: LiveDetectionService = Depends(get_service)) -> FlushResponse:
    spikes = service.flush()
    return FlushResponse(spikes=[SpikeRecord.from_summary(summary) for summary in spikes])


@router.get(
    "/spikes",
    response_model=SpikeListResponse,
    summary="Most recent spike records, oldest first.",
)
def recent_spikes(service: LiveDetectionService = Depends(get_service)) -> SpikeListResponse:
    return SpikeListResponse(spikes=service.recent_spikes())


@router.get(
    "/diagnostics",
    response_model=DiagnosticsResponse,
    summary="Dropped records grouped by reason.",
)
def list_diagnostics(service: LiveDetectionService = Depends(get_service)) -> DiagnosticsResponse:
    counts = service.pipeline.collector.counts()
    return DiagnosticsResponse(
        counts={kind.value: count for kind, count in counts.items()},
        items=[
            DiagnosticOut(
                kind=item.kind.value,
                raw_input=item.raw_input,
                detail=item.detail,
                context=item.context,
            )
            for item in service.diagnostics()
        ],
    )


@router.get("/stats", response_model=StatsResponse, summary="Pipeline counters.")
def pipeline_stats(service: LiveDetectionService = Depends(get_service)) -> StatsResponse:
    return StatsResponse(**service.stats())


@router.get("/state", summary="Serializable snapshot of open windows and watermarks.")
def window_state(service: LiveDetectionService = Depends(get_service)) -> Dict[str, Any]:
    return service.snapshot()


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
