from __future__ import annotations

from models.records import DiagnosticKind
from services.diagnostics import Diagnostic, DiagnosticCollector, FanOutReporter


def _diagnostic(index: int, kind: DiagnosticKind = DiagnosticKind.numeric_parse_error) -> Diagnostic:
    return Diagnostic(kind=kind, raw_input=f"line {index}", detail=str(index))


def test_collector_keeps_most_recent_items_and_full_counts() -> None:
    collector = DiagnosticCollector(limit=2)
    for index in range(5):
        collector.report(_diagnostic(index))
    collector.report(_diagnostic(5, DiagnosticKind.late_data_dropped))

    assert [item.detail for item in collector.items] == ["4", "5"]
    assert collector.counts() == {
        DiagnosticKind.numeric_parse_error: 5,
        DiagnosticKind.late_data_dropped: 1,
    }
    assert [item.detail for item in collector.of_kind(DiagnosticKind.late_data_dropped)] == ["5"]

    collector.clear()
    assert collector.items == []
    assert collector.counts() == {}


def test_fan_out_reaches_every_reporter() -> None:
    first, second = DiagnosticCollector(), DiagnosticCollector()

    FanOutReporter([first, second]).report(_diagnostic(1))

    assert len(first.items) == len(second.items) == 1
