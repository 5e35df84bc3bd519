"""Per-key event-time progress."""

from __future__ import annotations

from typing import Any, Dict, Optional

from settings import WatermarkStrategy


class WatermarkTracker:
    """Track ``max(observed event time) - lateness`` for every key.

    With :attr:`WatermarkStrategy.none` the event-time watermark never
    advances: nothing is late until windows are closed explicitly. Closing
    windows (a flush, or a check interval) raises a key's floor with
    :meth:`advance_to`; the floor applies under both strategies so a closed
    window is never reopened.
    """

    def __init__(self, strategy: WatermarkStrategy, lateness_ms: int = 0) -> None:
        if lateness_ms < 0:
            raise ValueError("lateness_ms must be non-negative")
        self.strategy = strategy
        self.lateness_ms = lateness_ms
        self._max_event_time: Dict[int, int] = {}
        self._closed_until: Dict[int, int] = {}

    @property
    def enabled(self) -> bool:
        return self.strategy is WatermarkStrategy.bounded

    def observe(self, key: int, event_time_ms: int) -> Optional[int]:
        """Record an event time and return the (possibly advanced) watermark."""
        previous = self._max_event_time.get(key)
        if previous is None or event_time_ms > previous:
            self._max_event_time[key] = event_time_ms
        return self.current(key)

    def latest(self, key: int) -> Optional[int]:
        return self._max_event_time.get(key)

    def advance_to(self, key: int, watermark_ms: int) -> None:
        """Raise the key's watermark to at least ``watermark_ms``."""
        floor = self._closed_until.get(key)
        if floor is None or watermark_ms > floor:
            self._closed_until[key] = watermark_ms

    def current(self, key: int) -> Optional[int]:
        watermark = self._closed_until.get(key)
        if self.enabled:
            latest = self._max_event_time.get(key)
            if latest is not None:
                bounded = latest - self.lateness_ms
                watermark = bounded if watermark is None else max(watermark, bounded)
        return watermark

    def is_late(self, key: int, event_time_ms: int) -> bool:
        watermark = self.current(key)
        return watermark is not None and event_time_ms <= watermark

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        return {
            "max_event_time": {
                str(key): value for key, value in sorted(self._max_event_time.items())
            },
            "closed_until": {
                str(key): value for key, value in sorted(self._closed_until.items())
            },
        }

    def restore(self, payload: Dict[str, Any]) -> None:
        self._max_event_time = {
            int(key): int(value) for key, value in payload.get("max_event_time", {}).items()
        }
        self._closed_until = {
            int(key): int(value) for key, value in payload.get("closed_until", {}).items()
        }
