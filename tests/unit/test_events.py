"""
Unit tests for the event processor.

Tests cover:
- FIFO delivery to handlers in registration order
- Dropping events when the buffer is full
- Handler failures
- The background dispatcher thread
"""

import logging
import threading

from ovsdb_sdk.cache import EVENT_ADD, EVENT_DELETE, EVENT_UPDATE, EventHandlerFuncs, EventProcessor, TableCache
from tests.models import P1, P2, Recorder, parent_row


class TestEventProcessor:
    """Tests for EventProcessor."""

    def test_dispatch_by_kind(self):
        """Each kind reaches its callback."""
        processor = EventProcessor()
        recorder = Recorder()
        processor.add_handler(recorder)
        processor.add_event(EVENT_ADD, "Parent", new="n")
        processor.add_event(EVENT_UPDATE, "Parent", old="o", new="n")
        processor.add_event(EVENT_DELETE, "Parent", old="o")

        assert processor.process_pending() == 3
        assert recorder.events == [
            ("add", "Parent", "n"),
            ("update", "Parent", "o", "n"),
            ("delete", "Parent", "o"),
        ]

    def test_full_buffer_drops(self, caplog):
        """Events beyond capacity are dropped with one warning each."""
        processor = EventProcessor(capacity=3)
        recorder = Recorder()
        processor.add_handler(recorder)

        with caplog.at_level(logging.WARNING, logger="ovsdb_sdk.cache"):
            accepted = [processor.add_event(EVENT_ADD, "Parent", new=i) for i in range(5)]

        assert accepted == [True, True, True, False, False]
        assert processor.dropped == 2
        warnings = [r for r in caplog.records if "event buffer is full" in r.getMessage()]
        assert len(warnings) == 2
        processor.process_pending()
        assert [e[2] for e in recorder.events] == [0, 1, 2]

    def test_handler_failure_logged(self, caplog):
        """A failing handler does not stop the others."""
        processor = EventProcessor()

        def boom(table, model):
            raise RuntimeError("boom")

        recorder = Recorder()
        processor.add_handler(EventHandlerFuncs(add_func=boom))
        processor.add_handler(recorder)
        processor.add_event(EVENT_ADD, "Parent", new="n")

        with caplog.at_level(logging.ERROR, logger="ovsdb_sdk.cache"):
            processor.process_pending()

        assert recorder.events == [("add", "Parent", "n")]
        assert any(r.getMessage() == "Event handler failed" for r in caplog.records)

    def test_partial_funcs(self):
        """Missing callbacks are skipped."""
        seen = []
        processor = EventProcessor()
        processor.add_handler(EventHandlerFuncs(delete_func=lambda table, model: seen.append(model)))
        processor.add_event(EVENT_ADD, "Parent", new="n")
        processor.add_event(EVENT_DELETE, "Parent", old="o")
        processor.process_pending()
        assert seen == ["o"]

    def test_remove_handler(self):
        """Removed handlers receive nothing."""
        processor = EventProcessor()
        recorder = Recorder()
        processor.add_handler(recorder)
        processor.remove_handler(recorder)
        processor.add_event(EVENT_ADD, "Parent", new="n")
        processor.process_pending()
        assert recorder.events == []

    def test_background_thread(self):
        """start() delivers events on a dispatcher thread."""
        processor = EventProcessor()
        delivered = threading.Event()
        processor.add_handler(EventHandlerFuncs(add_func=lambda table, model: delivered.set()))
        processor.start()
        try:
            processor.add_event(EVENT_ADD, "Parent", new="n")
            assert delivered.wait(timeout=5)
        finally:
            processor.stop(timeout=5)


class TestCacheBackPressure:
    """The cache never blocks on a full event buffer."""

    def test_cache_keeps_applying(self, db_model, caplog):
        """Rows are cached even when their events are dropped."""
        cache = TableCache(db_model, event_buffer_size=1)
        recorder = Recorder()
        cache.add_event_handler(recorder)

        with caplog.at_level(logging.WARNING, logger="ovsdb_sdk.cache"):
            cache.apply_updates(
                {"Parent": {P1: {"new": parent_row("a")}, P2: {"new": parent_row("b")}}}
            )

        assert sorted(cache.rows("Parent")) == [P1, P2]
        assert cache.event_processor.dropped == 1
        cache.event_processor.process_pending()
        assert len(recorder.events) == 1
        assert recorder.events[0][2].uuid == P1
