# src/testpulse/telemetry/protocols.py
"""Protocol for event senders.

The dispatcher only needs these two delivery operations, so tests and
alternative transports can stand in for the HTTP sender structurally.
"""

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from testpulse.contracts.events import Event


@runtime_checkable
class SenderProtocol(Protocol):
    """Delivers event envelopes to the ingestion service.

    Error Handling:
        Both operations raise on failure (NotReadyError, AuthMissingError,
        DeliveryError). The dispatcher turns the outcome into sent/failed
        counters; the queue logs and drops failed batches.
    """

    def post_batch(self, events: Sequence[Event]) -> Any:
        """Send one batch popped from the event queue."""
        ...

    def send_screenshots(self, events: Sequence[Event]) -> Any:
        """Send screenshot log events without queueing."""
        ...

    def close(self) -> None:
        """Release transport resources."""
        ...
