# src/testpulse/usage/feature_usage.py
"""One-shot usage counter for operations that happen once per build."""

import threading
from typing import Any

from testpulse.contracts.enums import UsageStatus
from testpulse.contracts.errors import CounterError


class FeatureUsage:
    """Tracks whether an operation ran and how it ended.

    ``triggered()`` may be called any number of times; ``success()`` and
    ``failed()`` are terminal and may only happen once.
    """

    def __init__(self, is_triggered: bool | None = None) -> None:
        self._lock = threading.Lock()
        self.is_triggered = is_triggered
        self.status: UsageStatus | None = None
        self.error: str | None = None

    def triggered(self) -> None:
        with self._lock:
            self.is_triggered = True

    def success(self) -> None:
        self._finish(UsageStatus.SUCCESS, None)

    def failed(self, error: BaseException | str | None = None) -> None:
        self._finish(UsageStatus.FAILED, None if error is None else str(error))

    def _finish(self, status: UsageStatus, error: str | None) -> None:
        with self._lock:
            if self.status is not None:
                raise CounterError(f"Usage already finished with status {self.status.value!r}, cannot mark {status.value!r}")
            self.is_triggered = True
            self.status = status
            self.error = error

    def to_json(self) -> dict[str, Any]:
        with self._lock:
            return {
                "isTriggered": self.is_triggered,
                "status": None if self.status is None else self.status.value,
                "error": self.error,
            }
