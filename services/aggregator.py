"""Keyed sliding-window aggregation for sensor measurements."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from models.records import DiagnosticKind, SensorMeasurement, WindowState, WindowSummary
from services.diagnostics import Diagnostic, DiagnosticReporter, LoggingDiagnosticReporter
from services.watermark import WatermarkTracker

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class WindowAggregator:
    """Maintain overlapping windows per sensor and emit a summary when one closes.

    State is a mapping ``sensor_id -> window_start -> WindowState``. A window
    ``[start, end)`` closes once the key's watermark reaches ``end``, i.e. once
    the newest event time seen for that sensor is at least ``end + lateness``.
    An aggregator is owned by a single worker and is not thread-safe.
    """

    def __init__(
        self,
        size_ms: int,
        slide_ms: int,
        tracker: WatermarkTracker,
        reporter: Optional[DiagnosticReporter] = None,
    ) -> None:
        if size_ms <= 0 or slide_ms <= 0:
            raise ValueError("Window size and slide must be positive.")
        if slide_ms > size_ms:
            raise ValueError("Window slide must not exceed window size.")
        self.size_ms = size_ms
        self.slide_ms = slide_ms
        self.tracker = tracker
        self.reporter = reporter or LoggingDiagnosticReporter(logger)
        self._windows: Dict[int, Dict[int, WindowState]] = {}

    def window_starts(self, event_time_ms: int) -> List[int]:
        """Start times of every window containing ``event_time_ms``, ascending."""
        last_start = event_time_ms - (event_time_ms % self.slide_ms)
        return list(
            reversed(range(last_start, event_time_ms - self.size_ms, -self.slide_ms))
        )

    def add(self, measurement: SensorMeasurement) -> List[WindowSummary]:
        """Assign a measurement to its windows and return any summaries now due."""
        key = measurement.sensor_id
        event_time = measurement.event_time_ms
        watermark = self.tracker.current(key)

        accepted = False
        windows = self._windows.setdefault(key, {})
        for start in self.window_starts(event_time):
            end = start + self.size_ms
            if watermark is not None and end <= watermark:
                continue
            state = windows.get(start)
            if state is None:
                state = windows[start] = WindowState(start=start, end=end)
            state.measurements.append(measurement)
            accepted = True

        if not accepted:
            if not windows:
                del self._windows[key]
            self.reporter.report(
                Diagnostic(
                    kind=DiagnosticKind.late_data_dropped,
                    raw_input=repr(measurement),
                    detail=f"event time {event_time} is behind watermark {watermark}",
                    context={
                        "sensor_id": key,
                        "event_time": event_time,
                        "watermark": watermark,
                    },
                )
            )
            return []

        self.tracker.observe(key, event_time)
        return self._fire_ready(key)

    def _fire_ready(self, key: int) -> List[WindowSummary]:
        watermark = self.tracker.current(key)
        windows = self._windows.get(key)
        if watermark is None or not windows:
            return []

        ready = sorted(start for start, state in windows.items() if state.end <= watermark)
        summaries = [windows.pop(start).summarize(key) for start in ready]
        if not windows:
            del self._windows[key]
        for summary in summaries:
            logger.debug(
                "Window closed",
                extra={
                    "sensor_id": key,
                    "window_start": summary.window_start,
                    "window_end": summary.window_end,
                    "watermark": watermark,
                },
            )
        return summaries

    def flush(self) -> List[WindowSummary]:
        """Emit every open window, per key in ``window_start`` order, and clear state.

        Each key's watermark moves to the latest flushed window end, so a
        later measurement for a flushed window is dropped as late instead of
        reopening it.
        """
        summaries: List[WindowSummary] = []
        for key in sorted(self._windows):
            windows = self._windows[key]
            for start in sorted(windows):
                summaries.append(windows[start].summarize(key))
            self.tracker.advance_to(key, max(state.end for state in windows.values()))
        self._windows.clear()
        return summaries

    def close_elapsed(self) -> List[WindowSummary]:
        """Close windows whose end the key's newest event time has reached.

        Used at a source's check interval when no watermark is generated. With
        a bounded watermark windows already close as event time advances.
        """
        if self.tracker.enabled:
            return []
        summaries: List[WindowSummary] = []
        for key in sorted(self._windows):
            latest = self.tracker.latest(key)
            if latest is None:
                continue
            self.tracker.advance_to(key, latest)
            summaries.extend(self._fire_ready(key))
        return summaries

    def discard(self) -> int:
        """Drop every open window without emitting; returns how many were dropped."""
        dropped = self.open_window_count
        self._windows.clear()
        return dropped

    @property
    def open_window_count(self) -> int:
        return sum(len(windows) for windows in self._windows.values())

    def open_windows(self, sensor_id: int) -> List[WindowState]:
        windows = self._windows.get(sensor_id, {})
        return [windows[start] for start in sorted(windows)]

    def snapshot(self) -> Dict[str, Any]:
        """Deterministic, JSON-serializable copy of all window and watermark state."""
        return {
            "version": SNAPSHOT_VERSION,
            "size_ms": self.size_ms,
            "slide_ms": self.slide_ms,
            "watermarks": self.tracker.snapshot(),
            "windows": {
                str(key): [windows[start].to_dict() for start in sorted(windows)]
                for key, windows in sorted(self._windows.items())
            },
        }

    def restore(self, payload: Dict[str, Any]) -> None:
        if payload.get("version") != SNAPSHOT_VERSION:
            raise ValueError(f"Unsupported snapshot version {payload.get('version')!r}.")
        if payload.get("size_ms") != self.size_ms or payload.get("slide_ms") != self.slide_ms:
            raise ValueError("Snapshot was taken with different window parameters.")

        restored: Dict[int, Dict[int, WindowState]] = {}
        for key, items in payload.get("windows", {}).items():
            states = [WindowState.from_dict(item) for item in items]
            if states:
                restored[int(key)] = {state.start: state for state in states}
        self.tracker.restore(payload.get("watermarks", {}))
        self._windows = restored
