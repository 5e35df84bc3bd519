"""Kafka topics as line sources and sinks (kafka-python)."""

from __future__ import annotations

import logging
from threading import Event
from typing import Any, Callable, Iterator, List, Optional

from kafka import KafkaConsumer, KafkaProducer

logger = logging.getLogger(__name__)


def split_servers(bootstrap_servers: str) -> List[str]:
    return [server.strip() for server in bootstrap_servers.split(",") if server.strip()]


def _decode(value: bytes) -> str:
    return value.decode("utf-8").rstrip("\r\n")


def _encode(value: str) -> bytes:
    return value.encode("utf-8")


class KafkaLineSource:
    """Consume a topic as batches of raw lines within a consumer group.

    Offsets are committed once the consumer asks for the next batch, so a
    batch that fails mid-processing is delivered again on restart.
    """

    def __init__(
        self,
        topic: str,
        bootstrap_servers: str,
        group_id: str,
        from_latest: bool = False,
        poll_timeout_ms: int = 500,
        consumer_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.topic = topic
        self.bootstrap_servers = split_servers(bootstrap_servers)
        self.group_id = group_id
        self.from_latest = from_latest
        self.poll_timeout_ms = poll_timeout_ms
        self._consumer_factory = consumer_factory

    def _connect(self) -> Any:
        factory = self._consumer_factory or KafkaConsumer
        return factory(
            self.topic,
            bootstrap_servers=self.bootstrap_servers,
            group_id=self.group_id,
            auto_offset_reset="latest" if self.from_latest else "earliest",
            enable_auto_commit=False,
            value_deserializer=_decode,
        )

    def batches(
        self,
        batch_size: int,
        follow: bool = True,
        stop_event: Optional[Event] = None,
    ) -> Iterator[List[str]]:
        """Yield polled records; without ``follow`` stop at the first empty poll."""
        consumer = self._connect()
        logger.info(
            "Kafka consumer connected",
            extra={"source": self.topic, "detail": ",".join(self.bootstrap_servers)},
        )
        try:
            while stop_event is None or not stop_event.is_set():
                polled = consumer.poll(timeout_ms=self.poll_timeout_ms, max_records=batch_size)
                batch = [record.value for records in polled.values() for record in records]
                if batch:
                    yield batch
                    consumer.commit()
                    continue
                if not follow:
                    return
        finally:
            consumer.close()


class KafkaLineSink:
    """Publish every record to one topic."""

    def __init__(
        self,
        topic: str,
        bootstrap_servers: str,
        producer_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        factory = producer_factory or KafkaProducer
        self.topic = topic
        self.written = 0
        self._producer = factory(
            bootstrap_servers=split_servers(bootstrap_servers),
            value_serializer=_encode,
        )

    def write(self, record: str) -> None:
        self._producer.send(self.topic, record)
        self.written += 1

    def close(self) -> None:
        self._producer.flush()
        self._producer.close()
