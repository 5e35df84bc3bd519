"""Long-lived pipeline session fed line batches over HTTP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from threading import Lock
from typing import Any, Dict, List, Sequence

from models.records import WindowSummary
from services.diagnostics import Diagnostic
from services.encoding import SpikeRecord, decode_spike
from services.pipeline import SpikeDetectionPipeline
from settings import Mode, PipelineConfig, resolve_pipeline_config
from transports.memory import MemorySink

logger = logging.getLogger(__name__)


@dataclass
class IngestOutcome:
    lines: int
    accepted: int
    rejected: int
    spikes: List[WindowSummary]


class LiveDetectionService:
    """Serialize callers onto one :class:`SpikeDetectionPipeline`.

    Requests arrive on arbitrary threads; the lock keeps batches whole so the
    per-request counts are exact and partitions see a single ordered stream.
    """

    def __init__(self, config: PipelineConfig, recent_spikes: int = 1000) -> None:
        self.config = config
        self.sink = MemorySink(maxlen=recent_spikes)
        self.pipeline = SpikeDetectionPipeline(config, self.sink)
        self._lock = Lock()

    def ingest(self, lines: Sequence[str]) -> IngestOutcome:
        with self._lock:
            before = self.pipeline.stats.measurements
            spikes = self.pipeline.process_batch(list(lines))
            accepted = self.pipeline.stats.measurements - before
        return IngestOutcome(
            lines=len(lines),
            accepted=accepted,
            rejected=len(lines) - accepted,
            spikes=spikes,
        )

    def flush(self) -> List[WindowSummary]:
        with self._lock:
            return self.pipeline.flush()

    def recent_spikes(self) -> List[SpikeRecord]:
        return [decode_spike(record) for record in self.sink.records()]

    def diagnostics(self) -> List[Diagnostic]:
        return self.pipeline.collector.items

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return self.pipeline.stats.to_dict()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return self.pipeline.snapshot()

    def shutdown(self) -> None:
        with self._lock:
            self.pipeline.shutdown()


def build_service_config() -> PipelineConfig:
    """Live sessions take window parameters from the environment.

    Request bodies are the input and responses the output, so only the
    windowing, threshold and shutdown options matter here.
    """
    return resolve_pipeline_config(mode=Mode.topic, input="http", output="http")


@lru_cache
def build_default_service() -> LiveDetectionService:
    config = build_service_config()
    logger.info(
        "Live session configured",
        extra={"detail": f"size={config.window_size}s slide={config.window_slide}s lateness={config.lateness}s"},
    )
    return LiveDetectionService(config)

