"""Reporting channel for per-record failures.

Parsing and windowing never print; they hand a :class:`Diagnostic` to a
reporter. The default reporter logs, the collector keeps everything in memory
so tests and the HTTP layer can inspect what was dropped and why.
"""

from __future__ import annotations

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Deque, Dict, Iterable, List, Optional, Protocol

from models.records import DiagnosticKind, ParseFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Diagnostic:
    kind: DiagnosticKind
    raw_input: str
    detail: str
    context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_failure(cls, failure: ParseFailure, **context: Any) -> "Diagnostic":
        return cls(kind=failure.kind, raw_input=failure.line, detail=failure.detail, context=context)


class DiagnosticReporter(Protocol):
    def report(self, diagnostic: Diagnostic) -> None:
        ...


class LoggingDiagnosticReporter:
    """Emit each diagnostic as a warning carrying the offending input."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self._logger = log or logger

    def report(self, diagnostic: Diagnostic) -> None:
        extra = {
            "kind": diagnostic.kind.value,
            "detail": diagnostic.detail,
            "raw_line": diagnostic.raw_input,
        }
        for key, value in diagnostic.context.items():
            extra.setdefault(key, value)
        self._logger.warning("Dropping record: %s", diagnostic.kind.value, extra=extra)


class DiagnosticCollector:
    """Thread-safe in-memory reporter."""

    def __init__(self, limit: Optional[int] = None) -> None:
        self._items: Deque[Diagnostic] = deque(maxlen=limit)
        self._counts: Counter[DiagnosticKind] = Counter()
        self._lock = Lock()

    def report(self, diagnostic: Diagnostic) -> None:
        with self._lock:
            self._counts[diagnostic.kind] += 1
            self._items.append(diagnostic)

    @property
    def items(self) -> List[Diagnostic]:
        with self._lock:
            return list(self._items)

    def of_kind(self, kind: DiagnosticKind) -> List[Diagnostic]:
        return [item for item in self.items if item.kind is kind]

    def counts(self) -> Dict[DiagnosticKind, int]:
        """Totals per kind, including entries evicted by ``limit``."""
        with self._lock:
            return dict(self._counts)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()
            self._counts.clear()


class FanOutReporter:
    def __init__(self, reporters: Iterable[DiagnosticReporter]) -> None:
        self._reporters = tuple(reporters)

    def report(self, diagnostic: Diagnostic) -> None:
        for reporter in self._reporters:
            reporter.report(diagnostic)
