from __future__ import annotations

from collections import deque
from threading import Lock
from typing import Deque, List, Optional


class MemorySink:
    """Keep the most recent records in memory."""

    def __init__(self, maxlen: Optional[int] = 1000) -> None:
        self._records: Deque[str] = deque(maxlen=maxlen)
        self._lock = Lock()
        self.written = 0
        self.closed = False

    def write(self, record: str) -> None:
        with self._lock:
            self._records.append(record)
            self.written += 1

    def records(self) -> List[str]:
        with self._lock:
            return list(self._records)

    def close(self) -> None:
        self.closed = True
