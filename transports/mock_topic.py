from __future__ import annotations

import json
import logging
import re
import time
from functools import lru_cache
from pathlib import Path
from threading import Event, Lock
from typing import Dict, Iterator, List, Optional, Tuple

from settings import get_settings

logger = logging.getLogger(__name__)

_TOPIC_NAME = re.compile(r"^[A-Za-z0-9._-]+$")


class MockTopicBroker:
    """Append-only named topics with committed offsets per consumer group.

    Without a ``root_path`` everything lives in memory. With one, every topic
    is a ``<topic>.log`` file (one record per line) and offsets are kept in
    ``_offsets/<group>.json``, so separate processes can publish and consume
    through the same directory.
    """

    def __init__(self, root_path: Optional[Path] = None) -> None:
        self.root_path = root_path
        self._records: Dict[str, List[str]] = {}
        self._file_positions: Dict[str, int] = {}
        self._offsets: Dict[Tuple[str, str], int] = {}
        self._lock = Lock()
        if root_path:
            root_path.mkdir(parents=True, exist_ok=True)
            (root_path / "_offsets").mkdir(exist_ok=True)

    def publish(self, topic: str, value: str) -> int:
        """Append a record and return its offset."""
        validate_topic(topic)
        record = value.rstrip("\r\n")
        if "\n" in record:
            raise ValueError("Topic records must be single lines.")

        with self._lock:
            if self.root_path:
                with self._log_path(topic).open("a", encoding="utf-8") as handle:
                    handle.write(record + "\n")
                self._refresh(topic)
                return len(self._records[topic]) - 1
            records = self._records.setdefault(topic, [])
            records.append(record)
            return len(records) - 1

    def size(self, topic: str) -> int:
        validate_topic(topic)
        with self._lock:
            self._refresh(topic)
            return len(self._records.get(topic, []))

    def read(self, topic: str, offset: int, max_records: Optional[int] = None) -> List[str]:
        validate_topic(topic)
        with self._lock:
            self._refresh(topic)
            records = self._records.get(topic, [])
            end = len(records) if max_records is None else offset + max_records
            return records[offset:end]

    def committed(self, group: str, topic: str) -> Optional[int]:
        with self._lock:
            return self._load_offset(group, topic)

    def commit(self, group: str, topic: str, offset: int) -> None:
        with self._lock:
            self._offsets[(group, topic)] = offset
            if self.root_path:
                path = self._offsets_path(group)
                stored = self._read_offsets_file(path)
                stored[topic] = offset
                path.write_text(json.dumps(stored, indent=2, sort_keys=True))

    def consume_batches(
        self,
        topic: str,
        group: str,
        follow: bool = False,
        stop_event: Optional[Event] = None,
        poll_interval: float = 0.2,
        from_latest: bool = False,
        batch_size: int = 500,
    ) -> Iterator[List[str]]:
        """Yield whatever records are available after the group's committed offset.

        ``follow=False`` drains the topic and returns. ``follow=True`` keeps
        polling until ``stop_event`` is set. A group without a committed offset
        starts at the beginning of the topic, or at its current end with
        ``from_latest``. A batch's offsets are committed once the consumer asks
        for the next one.
        """
        validate_topic(topic)
        offset = self.committed(group, topic)
        if offset is None:
            offset = self.size(topic) if from_latest else 0
            self.commit(group, topic, offset)

        while True:
            if stop_event is not None and stop_event.is_set():
                return
            batch = self.read(topic, offset, batch_size)
            if batch:
                yield batch
                offset += len(batch)
                self.commit(group, topic, offset)
                continue
            if not follow:
                return
            if stop_event is not None:
                stop_event.wait(poll_interval)
            else:
                time.sleep(poll_interval)

    def consume(self, topic: str, group: str, **kwargs) -> Iterator[str]:
        for batch in self.consume_batches(topic, group, **kwargs):
            yield from batch

    def topics(self) -> List[str]:
        with self._lock:
            names = set(self._records)
            if self.root_path:
                names.update(path.stem for path in self.root_path.glob("*.log"))
            return sorted(names)

    def _log_path(self, topic: str) -> Path:
        assert self.root_path is not None
        return self.root_path / f"{topic}.log"

    def _offsets_path(self, group: str) -> Path:
        assert self.root_path is not None
        return self.root_path / "_offsets" / f"{group}.json"

    def _refresh(self, topic: str) -> None:
        if not self.root_path:
            return
        path = self._log_path(topic)
        if not path.exists():
            return
        records = self._records.setdefault(topic, [])
        with path.open("r", encoding="utf-8") as handle:
            handle.seek(self._file_positions.get(topic, 0))
            while True:
                line = handle.readline()
                if not line.endswith("\n"):
                    # Incomplete trailing line; pick it up on the next refresh.
                    break
                records.append(line[:-1])
                self._file_positions[topic] = handle.tell()

    def _load_offset(self, group: str, topic: str) -> Optional[int]:
        offset = self._offsets.get((group, topic))
        if offset is not None or not self.root_path:
            return offset
        stored = self._read_offsets_file(self._offsets_path(group))
        value = stored.get(topic)
        if value is not None:
            self._offsets[(group, topic)] = int(value)
            return int(value)
        return None

    @staticmethod
    def _read_offsets_file(path: Path) -> Dict[str, int]:
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_text() or "{}")
        except (OSError, json.JSONDecodeError):
            logger.warning("Ignoring unreadable offsets file", extra={"source": str(path)})
            return {}


class TopicSink:
    """Sink adapter publishing every record to one topic."""

    def __init__(self, broker: MockTopicBroker, topic: str) -> None:
        validate_topic(topic)
        self.broker = broker
        self.topic = topic
        self.written = 0

    def write(self, record: str) -> None:
        self.broker.publish(self.topic, record)
        self.written += 1

    def close(self) -> None:
        return None


def validate_topic(topic: str) -> None:
    if not _TOPIC_NAME.match(topic):
        raise ValueError(f"Invalid topic name {topic!r}.")


@lru_cache
def build_default_broker(root_path: Optional[str] = None) -> MockTopicBroker:
    settings = get_settings()
    broker_root = settings.broker_path if root_path is None else root_path
    path = Path(broker_root) if broker_root else None
    return MockTopicBroker(root_path=path)
