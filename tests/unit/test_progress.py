"""Tests for progress reporting and cooperative cancellation."""

from __future__ import annotations

import logging
import threading

import pytest

from tmdlkit.models.errors import OperationCancelledError
from tmdlkit.service.progress import ProgressEvent, ProgressReporter, check_cancelled


class TestProgressReporter:
    def test_numbering_and_transcript(self) -> None:
        events: list[ProgressEvent] = []
        reporter = ProgressReporter(events.append, total=3)
        reporter.report("one")
        reporter.report("two")
        assert reporter.transcript == ["one", "two"]
        assert [(e.ordinal, e.total, e.message) for e in events] == [(1, 3, "one"), (2, 3, "two")]

    def test_without_sink(self) -> None:
        reporter = ProgressReporter()
        event = reporter.report("hello")
        assert event.ordinal == 1
        assert event.total is None

    def test_failing_sink_is_ignored(self, caplog: pytest.LogCaptureFixture) -> None:
        def sink(event: ProgressEvent) -> None:
            raise RuntimeError("client went away")

        reporter = ProgressReporter(sink)
        with caplog.at_level(logging.WARNING, logger="tmdlkit.progress"):
            reporter.report("step")
            reporter.report("next")
        assert reporter.transcript == ["step", "next"]
        assert "Progress sink failed" in caplog.text


class TestCheckCancelled:
    def test_not_set(self) -> None:
        check_cancelled(None, "anything")
        check_cancelled(threading.Event(), "anything")

    def test_set(self) -> None:
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(OperationCancelledError, match="Cancelled before save"):
            check_cancelled(cancel, "save")
