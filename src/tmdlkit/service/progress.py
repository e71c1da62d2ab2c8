"""Push-style progress reporting and cooperative cancellation."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from pydantic import BaseModel

from tmdlkit.models.errors import OperationCancelledError

logger = logging.getLogger("tmdlkit.progress")


class ProgressEvent(BaseModel):
    """One progress step: ``ordinal`` counts from 1, ``total`` may be unknown."""

    ordinal: int
    total: int | None = None
    message: str


ProgressSink = Callable[[ProgressEvent], object]


class ProgressReporter:
    """Numbers progress messages and forwards them to an optional sink.

    The sink is fire-and-forget: whatever it raises is logged and dropped,
    so reporting never changes the outcome of the operation.  Every message
    is also kept in ``transcript``.
    """

    def __init__(self, sink: ProgressSink | None = None, total: int | None = None) -> None:
        self._sink = sink
        self.total = total
        self.transcript: list[str] = []

    def report(self, message: str) -> ProgressEvent:
        self.transcript.append(message)
        event = ProgressEvent(ordinal=len(self.transcript), total=self.total, message=message)
        logger.debug("progress %d/%s: %s", event.ordinal, event.total or "?", message)
        if self._sink is not None:
            try:
                self._sink(event)
            except Exception:  # noqa: BLE001
                logger.warning("Progress sink failed for %r", message, exc_info=True)
        return event


def check_cancelled(cancel: threading.Event | None, step: str) -> None:
    """Raise ``OperationCancelledError`` if *cancel* has been set."""
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError(f"Cancelled before {step}")
