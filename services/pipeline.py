"""Stream orchestration: parse, partition by sensor, window, filter, sink."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass
from itertools import islice
from pathlib import Path
from threading import Event, Lock
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence

from kafka.errors import KafkaError

from models.records import DiagnosticKind, SensorMeasurement, WindowSummary
from services.aggregator import WindowAggregator
from services.diagnostics import (
    DiagnosticCollector,
    DiagnosticReporter,
    FanOutReporter,
    LoggingDiagnosticReporter,
)
from services.encoding import encode_spike
from services.parser import RecordParser
from services.spike_filter import SpikeFilter
from services.watermark import WatermarkTracker
from settings import ConfigurationError, Mode, PipelineConfig, ShutdownPolicy
from transports.file import FileLineSink, FileLineSource, FileMonitor
from transports.kafka_topic import KafkaLineSink, KafkaLineSource
from transports.mock_topic import MockTopicBroker, TopicSink, build_default_broker, validate_topic

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500


class Sink(Protocol):
    def write(self, record: str) -> None:
        ...

    def close(self) -> None:
        ...


@dataclass
class PipelineStats:
    lines: int = 0
    measurements: int = 0
    rejected: int = 0
    late: int = 0
    summaries: int = 0
    spikes: int = 0
    open_windows_dropped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class _Partition:
    """One keyed worker: a single thread owns the aggregator's state."""

    def __init__(self, index: int, aggregator: WindowAggregator) -> None:
        self.index = index
        self.aggregator = aggregator
        self.executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"partition-{index}"
        )

    def submit_batch(self, measurements: List[SensorMeasurement]) -> Future[List[WindowSummary]]:
        return self.executor.submit(self._add_all, measurements)

    def _add_all(self, measurements: List[SensorMeasurement]) -> List[WindowSummary]:
        summaries: List[WindowSummary] = []
        for measurement in measurements:
            summaries.extend(self.aggregator.add(measurement))
        return summaries

    def call(self, func: Callable[..., Any], *args: Any) -> Any:
        return self.executor.submit(func, *args).result()

    def shutdown(self) -> None:
        self.executor.shutdown(wait=True)


class SpikeDetectionPipeline:
    """Run raw lines through the whole detection chain.

    Lines are parsed in order by a pool of ``parallelism`` threads, routed to
    ``sensor_id % parallelism`` partitions and aggregated there. Each batch is
    fully processed before the next one is accepted. Spikes are encoded and
    written to the sink as soon as their window closes.
    """

    def __init__(
        self,
        config: PipelineConfig,
        sink: Sink,
        reporter: Optional[DiagnosticReporter] = None,
        collector: Optional[DiagnosticCollector] = None,
    ) -> None:
        self.config = config
        self.sink = sink
        self.collector = collector or DiagnosticCollector(limit=1000)
        self.reporter = FanOutReporter(
            [reporter or LoggingDiagnosticReporter(logger), self.collector]
        )
        self.parser = RecordParser(self.reporter)
        self.spike_filter = SpikeFilter(config.spike_fraction)
        self.stats = PipelineStats()
        self._parse_executor = ThreadPoolExecutor(
            max_workers=config.parallelism, thread_name_prefix="parser"
        )
        self.partitions = [
            _Partition(
                index,
                WindowAggregator(
                    size_ms=config.window_size_ms,
                    slide_ms=config.window_slide_ms,
                    tracker=WatermarkTracker(config.watermark, config.lateness_ms),
                    reporter=self.reporter,
                ),
            )
            for index in range(config.parallelism)
        ]
        self._stats_lock = Lock()
        self._sink_lock = Lock()
        self._closed = False

    def partition_for(self, sensor_id: int) -> int:
        return sensor_id % len(self.partitions)

    def process_batch(self, lines: Sequence[str]) -> List[WindowSummary]:
        """Parse and aggregate a batch; return the spikes it emitted."""
        if self._closed:
            raise RuntimeError("Pipeline has been shut down.")
        results = list(self._parse_executor.map(self.parser.parse, lines))

        routed: Dict[int, List[SensorMeasurement]] = {}
        measurement_count = 0
        for result in results:
            if isinstance(result, SensorMeasurement):
                measurement_count += 1
                routed.setdefault(self.partition_for(result.sensor_id), []).append(result)

        futures = [
            self.partitions[index].submit_batch(batch) for index, batch in sorted(routed.items())
        ]
        summaries: List[WindowSummary] = []
        for future in futures:
            summaries.extend(future.result())

        with self._stats_lock:
            self.stats.lines += len(lines)
            self.stats.measurements += measurement_count
            self.stats.rejected += len(lines) - measurement_count
        self._refresh_diagnostic_counts()
        return self._emit(summaries)

    def process_lines(
        self, lines: Iterable[str], batch_size: int = DEFAULT_BATCH_SIZE
    ) -> List[WindowSummary]:
        spikes: List[WindowSummary] = []
        for batch in iter_batches(lines, batch_size):
            spikes.extend(self.process_batch(batch))
        return spikes

    def _emit(self, summaries: Iterable[WindowSummary]) -> List[WindowSummary]:
        spikes: List[WindowSummary] = []
        summary_count = 0
        for summary in summaries:
            summary_count += 1
            if not self.spike_filter(summary):
                continue
            record = encode_spike(summary)
            with self._sink_lock:
                self.sink.write(record)
            spikes.append(summary)
        with self._stats_lock:
            self.stats.summaries += summary_count
            self.stats.spikes += len(spikes)
        return spikes

    def flush(self) -> List[WindowSummary]:
        """Close every open window now, as at the end of a bounded input."""
        summaries: List[WindowSummary] = []
        for partition in self.partitions:
            summaries.extend(partition.call(partition.aggregator.flush))
        return self._emit(summaries)

    def close_elapsed(self) -> List[WindowSummary]:
        """Close windows already passed by event time when no watermark is generated."""
        summaries: List[WindowSummary] = []
        for partition in self.partitions:
            summaries.extend(partition.call(partition.aggregator.close_elapsed))
        return self._emit(summaries)

    def discard(self) -> int:
        dropped = sum(
            partition.call(partition.aggregator.discard) for partition in self.partitions
        )
        with self._stats_lock:
            self.stats.open_windows_dropped += dropped
        return dropped

    def snapshot(self) -> Dict[str, Any]:
        """Window state of every partition, read on the owning worker thread."""
        return {
            "partitions": [
                partition.call(partition.aggregator.snapshot) for partition in self.partitions
            ]
        }

    def restore(self, payload: Dict[str, Any]) -> None:
        snapshots = payload.get("partitions", [])
        if len(snapshots) != len(self.partitions):
            raise ValueError(
                f"Snapshot has {len(snapshots)} partitions, pipeline has {len(self.partitions)}."
            )
        for partition, snapshot in zip(self.partitions, snapshots):
            partition.call(partition.aggregator.restore, snapshot)

    def shutdown(self, policy: Optional[ShutdownPolicy] = None) -> List[WindowSummary]:
        """Stop the pipeline, flushing or discarding open windows per ``policy``."""
        if self._closed:
            return []
        policy = policy or self.config.shutdown_policy
        self._closed = True
        spikes: List[WindowSummary] = []
        try:
            if policy is ShutdownPolicy.flush:
                spikes = self.flush()
            else:
                dropped = self.discard()
                if dropped:
                    logger.info("Discarded open windows on shutdown", extra={"detail": dropped})
        finally:
            self._parse_executor.shutdown(wait=True)
            for partition in self.partitions:
                partition.shutdown()
            with self._sink_lock:
                self.sink.close()
            self._refresh_diagnostic_counts()
        return spikes

    def run(self, batches: Iterable[Sequence[str]], stop_event: Optional[Event] = None) -> PipelineStats:
        """Consume ``batches`` to exhaustion or until ``stop_event`` is set.

        Exhausting the input closes every window (end of stream). Stopping
        early, by event or keyboard interrupt, applies the shutdown policy; so
        does a failure, after which the error is re-raised. An empty batch
        marks a source check interval and closes the windows event time has
        already passed.
        """
        logger.info(
            "Pipeline started",
            extra={"mode": self.config.mode.value, "source": self.config.input},
        )
        interrupted = False
        try:
            for batch in batches:
                if batch:
                    self.process_batch(batch)
                else:
                    self.close_elapsed()
                if stop_event is not None and stop_event.is_set():
                    interrupted = True
                    break
        except KeyboardInterrupt:
            interrupted = True
            logger.warning("Interrupted; applying shutdown policy %s", self.config.shutdown_policy.value)
        except BaseException:
            logger.exception(
                "Pipeline failed; applying shutdown policy %s", self.config.shutdown_policy.value
            )
            try:
                self.shutdown()
            except Exception:
                logger.exception("Shutdown after failure did not complete")
            raise

        if interrupted:
            self.shutdown()
        else:
            self.shutdown(ShutdownPolicy.flush)

        logger.info(
            "Pipeline finished",
            extra={"line_count": self.stats.lines, "spike_count": self.stats.spikes},
        )
        return self.stats

    def _refresh_diagnostic_counts(self) -> None:
        counts = self.collector.counts()
        with self._stats_lock:
            self.stats.late = counts.get(DiagnosticKind.late_data_dropped, 0)


def iter_batches(lines: Iterable[str], batch_size: int = DEFAULT_BATCH_SIZE) -> Iterator[List[str]]:
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    iterator = iter(lines)
    while True:
        batch = list(islice(iterator, batch_size))
        if not batch:
            return
        yield batch


def build_source(
    config: PipelineConfig,
    broker: Optional[MockTopicBroker] = None,
    stop_event: Optional[Event] = None,
    follow: bool = True,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> Iterator[List[str]]:
    """Batches of raw lines for the configured mode.

    A watched file input (``monitor_interval``) yields an empty batch after
    every scan. Topic mode reads from Kafka when ``bootstrap_servers`` is set
    and from the local broker otherwise.
    """
    if config.mode is Mode.file:
        path = Path(config.input)
        if not path.exists():
            raise ConfigurationError(f"Input path {config.input!r} does not exist.")
        if config.monitor_interval is not None:
            monitor = FileMonitor(path, config.monitor_interval, stop_event)
            return monitor.batches(batch_size)
        return iter_batches(FileLineSource(path), batch_size)
    if config.mode is Mode.topic:
        _check_topic(config.input)
        if config.bootstrap_servers:
            source = KafkaLineSource(
                config.input, config.bootstrap_servers, config.consumer_group
            )
            return source.batches(batch_size, follow=follow, stop_event=stop_event)
        broker = broker or build_default_broker(config.broker_path)
        return broker.consume_batches(
            config.input,
            config.consumer_group,
            follow=follow,
            stop_event=stop_event,
            batch_size=batch_size,
        )
    raise ConfigurationError(f"Unsupported mode {config.mode!r}.")


def build_sink(config: PipelineConfig, broker: Optional[MockTopicBroker] = None) -> Sink:
    if config.mode is Mode.file:
        return FileLineSink(Path(config.output))
    if config.mode is Mode.topic:
        _check_topic(config.output)
        if config.bootstrap_servers:
            try:
                return KafkaLineSink(config.output, config.bootstrap_servers)
            except KafkaError as exc:
                raise ConfigurationError(
                    f"Cannot reach Kafka at {config.bootstrap_servers!r}: {exc}"
                ) from exc
        broker = broker or build_default_broker(config.broker_path)
        return TopicSink(broker, config.output)
    raise ConfigurationError(f"Unsupported mode {config.mode!r}.")


def _check_topic(name: str) -> None:
    try:
        validate_topic(name)
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc
