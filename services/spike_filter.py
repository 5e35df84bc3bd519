"""Deviation-based spike predicate over window summaries."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator

from models.records import WindowSummary
from settings import DEFAULT_SPIKE_FRACTION


def is_spike(summary: WindowSummary, fraction: float = DEFAULT_SPIKE_FRACTION) -> bool:
    """True when the latest reading deviates from the average by more than ``fraction``.

    A zero average would make the relative threshold zero as well, so it is
    handled on its own: any non-zero current value counts as a spike.
    """
    average = summary.average_value
    current = summary.current_value
    if average == 0:
        return current != 0
    return abs(current - average) > fraction * average


@dataclass(frozen=True)
class SpikeFilter:
    fraction: float = DEFAULT_SPIKE_FRACTION

    def __post_init__(self) -> None:
        if self.fraction < 0:
            raise ValueError("Spike fraction must be non-negative.")

    def __call__(self, summary: WindowSummary) -> bool:
        return is_spike(summary, self.fraction)

    def filter(self, summaries: Iterable[WindowSummary]) -> Iterator[WindowSummary]:
        return (summary for summary in summaries if self(summary))
