from __future__ import annotations

import pytest

from services.watermark import WatermarkTracker
from settings import WatermarkStrategy


def test_bounded_watermark_trails_max_event_time() -> None:
    tracker = WatermarkTracker(WatermarkStrategy.bounded, lateness_ms=2_000)

    assert tracker.current(1) is None
    assert tracker.observe(1, 10_000) == 8_000
    # Out-of-order events never move the watermark backwards.
    assert tracker.observe(1, 5_000) == 8_000
    assert tracker.observe(1, 12_500) == 10_500


def test_watermarks_are_tracked_per_key() -> None:
    tracker = WatermarkTracker(WatermarkStrategy.bounded, lateness_ms=0)

    tracker.observe(1, 50_000)
    tracker.observe(2, 1_000)

    assert tracker.current(1) == 50_000
    assert tracker.current(2) == 1_000
    assert tracker.is_late(2, 5_000) is False
    assert tracker.is_late(1, 5_000) is True


def test_event_at_watermark_is_late() -> None:
    tracker = WatermarkTracker(WatermarkStrategy.bounded, lateness_ms=1_000)
    tracker.observe(3, 4_000)

    assert tracker.is_late(3, 3_000) is True
    assert tracker.is_late(3, 3_001) is False


def test_no_watermark_strategy_never_reports_late() -> None:
    tracker = WatermarkTracker(WatermarkStrategy.none, lateness_ms=0)
    tracker.observe(1, 100_000)

    assert tracker.current(1) is None
    assert tracker.is_late(1, 0) is False


def test_snapshot_round_trip() -> None:
    tracker = WatermarkTracker(WatermarkStrategy.bounded, lateness_ms=500)
    tracker.observe(9, 7_000)
    tracker.observe(2, 3_000)

    restored = WatermarkTracker(WatermarkStrategy.bounded, lateness_ms=500)
    restored.restore(tracker.snapshot())

    assert tracker.snapshot() == {"max_event_time": {"2": 3_000, "9": 7_000}, "closed_until": {}}
    assert restored.current(9) == 6_500


def test_negative_lateness_rejected() -> None:
    with pytest.raises(ValueError):
        WatermarkTracker(WatermarkStrategy.bounded, lateness_ms=-1)


def test_advance_to_raises_floor_under_both_strategies() -> None:
    bounded = WatermarkTracker(WatermarkStrategy.bounded, lateness_ms=0)
    bounded.observe(1, 2_000)
    bounded.advance_to(1, 5_000)
    bounded.advance_to(1, 4_000)

    assert bounded.current(1) == 5_000
    assert bounded.observe(1, 9_000) == 9_000

    unbounded = WatermarkTracker(WatermarkStrategy.none)
    unbounded.observe(1, 2_000)
    unbounded.advance_to(1, 5_000)

    assert unbounded.current(1) == 5_000
    assert unbounded.is_late(1, 4_999) is True
    assert unbounded.is_late(2, 0) is False


def test_snapshot_keeps_closed_floor() -> None:
    tracker = WatermarkTracker(WatermarkStrategy.none)
    tracker.advance_to(4, 10_000)

    restored = WatermarkTracker(WatermarkStrategy.none)
    restored.restore(tracker.snapshot())

    assert restored.current(4) == 10_000
