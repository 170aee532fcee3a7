# tests/fixtures/doubles.py
"""Test doubles shared across the unit tests."""

import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Executor, Future
from typing import Any

from testpulse.contracts.errors import DeliveryError
from testpulse.contracts.events import Event


class InlineExecutor(Executor):
    """Runs submitted callables immediately in the caller's thread."""

    def __init__(self) -> None:
        self.submitted = 0

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        self.submitted += 1
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class RecordingSender:
    """Sender double that records every call and can fail on demand."""

    def __init__(self, *, fail_batches: bool = False, fail_screenshots: bool = False) -> None:
        self.fail_batches = fail_batches
        self.fail_screenshots = fail_screenshots
        self.batches: list[list[Event]] = []
        self.screenshots: list[list[Event]] = []
        self.closed = False
        self._lock = threading.Lock()

    def post_batch(self, events: Sequence[Event]) -> Any:
        with self._lock:
            self.batches.append(list(events))
        if self.fail_batches:
            raise DeliveryError("batch", "simulated outage", status_code=503)
        return {"status": "ok"}

    def send_screenshots(self, events: Sequence[Event]) -> Any:
        with self._lock:
            self.screenshots.append(list(events))
        if self.fail_screenshots:
            raise DeliveryError("screenshot", "simulated outage", status_code=500)
        return {"status": "ok"}

    def close(self) -> None:
        self.closed = True

    @property
    def sent_events(self) -> list[Event]:
        return [event for batch in self.batches for event in batch]


class BlockingSender(RecordingSender):
    """Sender whose screenshot upload blocks until released."""

    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def send_screenshots(self, events: Sequence[Event]) -> Any:
        self.started.set()
        self.release.wait(timeout=10.0)
        return super().send_screenshots(events)
