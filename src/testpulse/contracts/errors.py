# src/testpulse/contracts/errors.py
"""Exceptions raised across the event pipeline.

The queue layer never lets these escape to adapters: it logs and moves on.
The dispatcher records a failed counter and re-raises.
"""


class TestpulseError(Exception):
    """Base class for all pipeline errors."""

    __test__ = False


class NotReadyError(TestpulseError):
    """Raised when an event is enqueued or sent before the build-ready signal."""

    def __init__(self, message: str = "Build not completed yet") -> None:
        super().__init__(message)


class AuthMissingError(TestpulseError):
    """Raised when a POST is attempted without a bearer token."""

    def __init__(self, message: str = "Missing authentication Token") -> None:
        super().__init__(message)


class DeliveryError(TestpulseError):
    """Raised when a batch or screenshot POST fails.

    Attributes:
        kind: Which delivery operation failed (``batch`` or ``screenshot``)
        message: Human-readable error description
        status_code: HTTP status when the server answered, None on transport errors
    """

    def __init__(self, kind: str, message: str, *, status_code: int | None = None) -> None:
        self.kind = kind
        self.message = message
        self.status_code = status_code
        super().__init__(f"Delivery of {kind} failed: {message}")


class CounterError(TestpulseError):
    """Raised on malformed counter input.

    Covers non-string group keys, non-integer counts in serialized stats,
    and a second terminal transition on a one-shot usage counter.
    """


class PolicyPluginError(TestpulseError):
    """Raised when an event-policy plugin cannot be registered."""

    def __init__(self, plugin_name: str, message: str) -> None:
        self.plugin_name = plugin_name
        self.message = message
        super().__init__(f"Policy plugin '{plugin_name}' rejected: {message}")
