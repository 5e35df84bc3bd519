from __future__ import annotations

import threading
from pathlib import Path

import pytest

from transports.file import FileLineSink, FileLineSource, FileMonitor
from transports.memory import MemorySink
from transports.mock_topic import MockTopicBroker, TopicSink, build_default_broker


def test_file_source_reads_directory_in_sorted_order(tmp_path: Path) -> None:
    (tmp_path / "b.txt").write_text("third\r\nfourth\n")
    (tmp_path / "a.txt").write_text("first\n\nsecond")
    (tmp_path / ".hidden").write_text("ignored\n")

    assert list(FileLineSource(tmp_path)) == ["first", "", "second", "third", "fourth"]


def test_file_source_missing_path(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        list(FileLineSource(tmp_path / "nope.txt"))


def test_file_sink_creates_parents_and_writes_lines(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "out.jsonl"
    sink = FileLineSink(target)

    threads = [
        threading.Thread(target=lambda i=i: sink.write(f"record-{i}")) for i in range(8)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    sink.close()

    lines = target.read_text().splitlines()
    assert sorted(lines) == sorted(f"record-{i}" for i in range(8))
    assert sink.written == 8


def test_file_sink_close_without_records_leaves_empty_file(tmp_path: Path) -> None:
    target = tmp_path / "empty.jsonl"
    FileLineSink(target).close()

    assert target.read_text() == ""


def test_memory_sink_keeps_recent_records() -> None:
    sink = MemorySink(maxlen=2)
    for record in ("a", "b", "c"):
        sink.write(record)

    assert sink.records() == ["b", "c"]
    assert sink.written == 3


def test_in_memory_topic_offsets_and_groups() -> None:
    broker = MockTopicBroker()
    for value in ("one", "two", "three"):
        broker.publish("readings", value)

    assert list(broker.consume("readings", "alpha")) == ["one", "two", "three"]
    assert broker.committed("alpha", "readings") == 3
    assert list(broker.consume("readings", "alpha")) == []
    assert list(broker.consume("readings", "beta", from_latest=True)) == []

    broker.publish("readings", "four")
    assert list(broker.consume("readings", "alpha")) == ["four"]
    assert list(broker.consume("readings", "beta")) == ["four"]


def test_persistent_topic_is_shared_between_brokers(tmp_path: Path) -> None:
    producer = MockTopicBroker(root_path=tmp_path)
    consumer = MockTopicBroker(root_path=tmp_path)

    producer.publish("readings", "first\n")
    assert list(consumer.consume("readings", "g")) == ["first"]

    producer.publish("readings", "second")
    restarted = MockTopicBroker(root_path=tmp_path)
    assert restarted.committed("g", "readings") == 1
    assert list(restarted.consume("readings", "g")) == ["second"]
    assert restarted.topics() == ["readings"]


def test_follow_consumption_stops_on_event() -> None:
    broker = MockTopicBroker()
    broker.publish("readings", "early")
    stop_event = threading.Event()
    received: list[str] = []

    def consume() -> None:
        for batch in broker.consume_batches(
            "readings", "g", follow=True, stop_event=stop_event, poll_interval=0.01
        ):
            received.extend(batch)
            if "late" in received:
                stop_event.set()

    worker = threading.Thread(target=consume)
    worker.start()
    broker.publish("readings", "late")
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert received == ["early", "late"]


def test_topic_rejects_multiline_records_and_bad_names() -> None:
    broker = MockTopicBroker()

    with pytest.raises(ValueError):
        broker.publish("readings", "a\nb")
    with pytest.raises(ValueError):
        broker.publish("../escape", "value")
    with pytest.raises(ValueError):
        TopicSink(broker, "has space")


def test_topic_sink_publishes(tmp_path: Path) -> None:
    broker = MockTopicBroker(root_path=tmp_path)
    sink = TopicSink(broker, "spikes")

    sink.write('{"sensor_id": 1}')
    sink.close()

    assert broker.read("spikes", 0) == ['{"sensor_id": 1}']
    assert (tmp_path / "spikes.log").exists()


def test_default_broker_uses_environment(monkeypatch, tmp_path: Path) -> None:
    from settings import get_settings

    monkeypatch.setenv("SPIKE_BROKER_PATH", str(tmp_path / "broker"))
    get_settings.cache_clear()
    build_default_broker.cache_clear()
    try:
        broker = build_default_broker()
        assert broker.root_path == tmp_path / "broker"
        assert build_default_broker() is broker
    finally:
        build_default_broker.cache_clear()
        get_settings.cache_clear()


def test_file_monitor_reads_new_files_on_each_scan(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("first\n")
    stop_event = threading.Event()
    batches = FileMonitor(tmp_path, interval=0.01, stop_event=stop_event).batches(10)

    assert next(batches) == ["first"]
    assert next(batches) == []

    (tmp_path / "b.txt").write_text("second\nthird\n")
    (tmp_path / "a.txt").write_text("first\nrewritten\n")

    assert next(batches) == ["second", "third"]
    assert next(batches) == []

    stop_event.set()
    assert list(batches) == []


def test_file_monitor_rejects_non_positive_interval(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        FileMonitor(tmp_path, interval=0)
