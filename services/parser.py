"""Turn raw text lines into :class:`SensorMeasurement` values."""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Iterable, Iterator, Optional

from models.records import DiagnosticKind, ParseFailure, ParseResult, SensorMeasurement
from services.diagnostics import Diagnostic, DiagnosticReporter, LoggingDiagnosticReporter

logger = logging.getLogger(__name__)

FIELD_COUNT = 8

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MILLISECOND = timedelta(milliseconds=1)
_FRACTIONAL_PATTERN = re.compile(
    r"^(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})\.(\d{3,6})$"
)
_WHOLE_SECOND_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$")
_BASE_FORMAT = "%Y-%m-%d %H:%M:%S"
_INTEGER_PATTERN = re.compile(r"^[+-]?\d+$")
_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1


def _to_epoch_millis(moment: datetime) -> int:
    return (moment.replace(tzinfo=timezone.utc) - _EPOCH) // _ONE_MILLISECOND


def parse_fractional_timestamp(value: str) -> int:
    """``yyyy-MM-dd HH:mm:ss.SSS[SSS]`` to epoch milliseconds (UTC).

    Sub-millisecond digits are truncated.
    """
    match = _FRACTIONAL_PATTERN.match(value)
    if match is None:
        raise ValueError(f"Timestamp {value!r} does not carry 3-6 fractional digits.")
    base, fraction = match.groups()
    moment = datetime.strptime(base, _BASE_FORMAT)
    micros = int(fraction.ljust(6, "0"))
    return _to_epoch_millis(moment) + micros // 1000


def parse_whole_second_timestamp(value: str) -> int:
    """``yyyy-MM-dd HH:mm:ss`` to epoch milliseconds (UTC)."""
    if _WHOLE_SECOND_PATTERN.match(value) is None:
        raise ValueError(f"Timestamp {value!r} is not in yyyy-MM-dd HH:mm:ss form.")
    return _to_epoch_millis(datetime.strptime(value, _BASE_FORMAT))


def parse_event_time(value: str) -> int:
    """Try the fractional format first, then the whole-second one.

    Raises ``ValueError`` when neither applies; there is no partial result.
    """
    try:
        return parse_fractional_timestamp(value)
    except ValueError:
        pass
    try:
        return parse_whole_second_timestamp(value)
    except ValueError as exc:
        raise ValueError(f"Invalid timestamp {value!r}") from exc


def _parse_int_token(token: str) -> int:
    if _INTEGER_PATTERN.match(token) is None:
        raise ValueError(token)
    parsed = int(token)
    if not _INT32_MIN <= parsed <= _INT32_MAX:
        raise ValueError(token)
    return parsed


def _parse_float_token(token: str) -> float:
    if "_" in token:
        raise ValueError(token)
    parsed = float(token)
    if not math.isfinite(parsed):
        raise ValueError(token)
    return parsed


def parse_line(line: str) -> ParseResult:
    """Parse one line without side effects."""
    fields = line.split()
    if len(fields) != FIELD_COUNT:
        return ParseFailure(
            kind=DiagnosticKind.field_count_mismatch,
            line=line,
            detail=f"expected {FIELD_COUNT} fields, got {len(fields)}",
        )

    date_text = f"{fields[0]} {fields[1]}"
    try:
        event_time_ms = parse_event_time(date_text)
    except ValueError:
        return ParseFailure(
            kind=DiagnosticKind.timestamp_parse_error,
            line=line,
            detail=date_text,
        )

    token = fields[2]
    try:
        sensor_id = _parse_int_token(token)
        token = fields[3]
        device_id = _parse_int_token(token)
        metrics = []
        for token in fields[4:]:
            metrics.append(_parse_float_token(token))
    except ValueError:
        return ParseFailure(
            kind=DiagnosticKind.numeric_parse_error,
            line=line,
            detail=token,
        )

    return SensorMeasurement(
        event_time_ms=event_time_ms,
        sensor_id=sensor_id,
        device_id=device_id,
        metrics=(metrics[0], metrics[1], metrics[2], metrics[3]),
    )


class RecordParser:
    """Stateless line parser that reports rejected lines to a diagnostics channel.

    Instances hold no mutable state besides the reporter, so one parser can be
    shared by any number of worker threads.
    """

    def __init__(self, reporter: Optional[DiagnosticReporter] = None) -> None:
        self.reporter = reporter or LoggingDiagnosticReporter(logger)

    def parse(self, line: str) -> ParseResult:
        result = parse_line(line.rstrip("\r\n"))
        if isinstance(result, ParseFailure):
            self.reporter.report(Diagnostic.from_failure(result))
        return result

    def measurements(self, lines: Iterable[str]) -> Iterator[SensorMeasurement]:
        """Yield only the lines that parsed; the rest go to the reporter."""
        for line in lines:
            result = self.parse(line)
            if isinstance(result, SensorMeasurement):
                yield result
