from __future__ import annotations

import logging
import time
from itertools import islice
from pathlib import Path
from threading import Event, Lock
from typing import IO, Iterator, List, Optional, Set

logger = logging.getLogger(__name__)


class FileLineSource:
    """Lazily yield lines from a file, or from every file under a directory.

    Directory contents are read in sorted path order. Line terminators are
    stripped; blank lines are passed through so the parser can report them.
    """

    def __init__(self, path: Path, encoding: str = "utf-8") -> None:
        self.path = path
        self.encoding = encoding

    def files(self) -> List[Path]:
        if self.path.is_dir():
            return sorted(
                candidate
                for candidate in self.path.rglob("*")
                if candidate.is_file() and not candidate.name.startswith(".")
            )
        if self.path.is_file():
            return [self.path]
        raise FileNotFoundError(f"Input path {str(self.path)!r} does not exist.")

    def __iter__(self) -> Iterator[str]:
        for file_path in self.files():
            yield from read_lines(file_path, self.encoding)


class FileMonitor:
    """Watch a path and read every file that appears under it.

    Each scan reads the files not seen before, in sorted order, and is
    followed by an empty batch marking the check interval. Files are read
    once; later appends to an already-read file are not picked up. Scanning
    continues every ``interval`` seconds until ``stop_event`` is set.
    """

    def __init__(
        self,
        path: Path,
        interval: float,
        stop_event: Optional[Event] = None,
        encoding: str = "utf-8",
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.source = FileLineSource(path, encoding)
        self.interval = interval
        self.stop_event = stop_event
        self._seen: Set[Path] = set()

    def scan(self) -> List[Path]:
        """Files not read yet, marking them as seen."""
        fresh = [path for path in self.source.files() if path not in self._seen]
        self._seen.update(fresh)
        return fresh

    def batches(self, batch_size: int) -> Iterator[List[str]]:
        while True:
            fresh = self.scan()
            if fresh:
                logger.info(
                    "Reading new input files",
                    extra={"source": str(self.source.path), "detail": len(fresh)},
                )
            for file_path in fresh:
                lines = read_lines(file_path, self.source.encoding)
                while True:
                    batch = list(islice(lines, batch_size))
                    if not batch:
                        break
                    yield batch
            yield []
            if self._stopped():
                return
            if self.stop_event is not None:
                self.stop_event.wait(self.interval)
            else:
                time.sleep(self.interval)
            if self._stopped():
                return

    def _stopped(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()


def read_lines(file_path: Path, encoding: str = "utf-8") -> Iterator[str]:
    with file_path.open("r", encoding=encoding) as handle:
        for line in handle:
            yield line.rstrip("\r\n")


class FileLineSink:
    """Write one record per line to a file; safe to share between threads."""

    def __init__(self, path: Path, encoding: str = "utf-8") -> None:
        self.path = path
        self.encoding = encoding
        self._handle: Optional[IO[str]] = None
        self._lock = Lock()
        self.written = 0

    def _open(self) -> IO[str]:
        if self._handle is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = self.path.open("w", encoding=self.encoding)
        return self._handle

    def write(self, record: str) -> None:
        with self._lock:
            handle = self._open()
            handle.write(record)
            handle.write("\n")
            handle.flush()
            self.written += 1

    def close(self) -> None:
        with self._lock:
            if self._handle is None:
                # An empty run still leaves an (empty) output file behind.
                self._open()
            assert self._handle is not None
            self._handle.close()
            self._handle = None
