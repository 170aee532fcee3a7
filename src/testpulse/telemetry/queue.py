# src/testpulse/telemetry/queue.py
"""In-memory event queue with threshold and timer flushing.

Events accumulate in a FIFO buffer. A batch leaves the buffer when:
- an ``add`` brings the buffer to ``batch_size`` events, or any ``add``
  happens after tear-down (the batch is popped synchronously and sent on
  an executor thread);
- the background timer fires (every ``flush_interval`` seconds);
- ``shutdown`` drains the buffer, one batch at a time, in the caller's
  thread.

Delivery is best-effort: a batch handed to the send callback is never
re-enqueued, and send failures are logged here and go no further.
"""

import threading
from collections import deque
from collections.abc import Callable, Sequence
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, ClassVar

import structlog

from testpulse.contracts.enums import QueueState
from testpulse.contracts.errors import NotReadyError
from testpulse.contracts.events import Event
from testpulse.core.context import BuildContext

logger = structlog.get_logger(__name__)

SendCallback = Callable[[list[Event]], Any]


class EventQueue:
    """FIFO buffer that hands batches of events to a send callback.

    Thread Safety:
        The buffer is guarded by a lock; every pop takes a disjoint slice
        from the head, so overlapping flushes never send an event twice.

    Lifecycle:
        IDLE -> POLLING (start_polling) -> DRAINING (shutdown) -> STOPPED.
        A stopped queue still accepts events; each ``add`` then sends at
        once because tear-down has been invoked.
    """

    _instance: ClassVar["EventQueue | None"] = None
    _instance_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(
        self,
        send: SendCallback,
        context: BuildContext,
        *,
        batch_size: int = 1000,
        flush_interval: float = 2.0,
        executor: Executor | None = None,
        autostart: bool = True,
    ) -> None:
        """Initialize the queue.

        Args:
            send: Callback receiving each popped batch.
            context: Build signals (ready gate, tear-down flag).
            batch_size: Events per batch; reaching it triggers a flush.
            flush_interval: Seconds between timer flushes.
            executor: Runs threshold-triggered sends. Defaults to a small
                thread pool owned by the queue.
            autostart: Start the timer thread immediately.

        Raises:
            ValueError: If batch_size < 1 or flush_interval <= 0.
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if flush_interval <= 0:
            raise ValueError(f"flush_interval must be > 0, got {flush_interval}")

        self._send = send
        self._context = context
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._owns_executor = executor is None
        self._executor: Executor = (
            executor if executor is not None else ThreadPoolExecutor(max_workers=2, thread_name_prefix="testpulse-send")
        )

        self._buffer: deque[Event] = deque()
        self._lock = threading.Lock()
        self._state = QueueState.IDLE
        self._stop_polling = threading.Event()
        self._poll_thread: threading.Thread | None = None

        if autostart:
            self.start_polling()

    # =========================================================================
    # Shared instance
    # =========================================================================

    @classmethod
    def get_instance(cls, send: SendCallback | None = None, **kwargs: Any) -> "EventQueue | None":
        """Return the process-wide queue, creating it on first call with a callback.

        Later callers get the existing queue whatever callback they pass.
        Returns None while no caller has supplied a callback yet.
        """
        with cls._instance_lock:
            if cls._instance is None and send is not None:
                if "context" not in kwargs:
                    kwargs["context"] = BuildContext.from_env()
                cls._instance = cls(send, **kwargs)
            return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Forget the process-wide queue (tests and forked workers)."""
        with cls._instance_lock:
            cls._instance = None

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)

    # =========================================================================
    # Enqueue
    # =========================================================================

    def add(self, event: Event) -> None:
        """Append an event, flushing a batch when the threshold is reached.

        Raises:
            NotReadyError: If the build-ready signal has not been observed.
                The buffer is left untouched.
        """
        if not self._context.is_build_ready():
            raise NotReadyError()

        with self._lock:
            self._buffer.append(event)
            if len(self._buffer) >= self._batch_size or self._context.teardown_invoked:
                batch = self._pop_batch_locked()
            else:
                batch = []

        if batch:
            self._submit(batch)

    def _pop_batch_locked(self) -> list[Event]:
        count = min(self._batch_size, len(self._buffer))
        return [self._buffer.popleft() for _ in range(count)]

    def _submit(self, batch: list[Event]) -> None:
        try:
            self._executor.submit(self._send_safely, batch)
        except RuntimeError as e:
            # Executor already shut down; send in the caller's thread
            logger.debug("Send executor unavailable, sending inline", error=str(e))
            self._send_safely(batch)

    def _send_safely(self, batch: Sequence[Event]) -> None:
        try:
            self._send(list(batch))
        except Exception as e:
            logger.warning(
                "Event batch send failed",
                batch_size=len(batch),
                error_type=type(e).__name__,
                error=str(e),
            )

    # =========================================================================
    # Flushing
    # =========================================================================

    def flush_once(self) -> int:
        """Pop up to one batch and send it in the calling thread.

        Returns:
            Number of events handed to the send callback (0 if empty).
        """
        with self._lock:
            batch = self._pop_batch_locked()
        if not batch:
            return 0
        self._send_safely(batch)
        return len(batch)

    def start_polling(self) -> None:
        """Start the timer thread; no-op if already polling or stopped."""
        with self._lock:
            if self._state is not QueueState.IDLE:
                if self._state in (QueueState.DRAINING, QueueState.STOPPED):
                    logger.debug("Ignoring start_polling on a shut down queue", state=self._state.value)
                return
            self._state = QueueState.POLLING
            self._poll_thread = threading.Thread(
                target=self._poll_loop,
                name="testpulse-flush",
                daemon=True,
            )
        self._poll_thread.start()

    def _poll_loop(self) -> None:
        while not self._stop_polling.wait(self._flush_interval):
            self.flush_once()

    def shutdown(self, timeout: float | None = None) -> None:
        """Disarm the timer, invoke tear-down, then drain the buffer.

        Each remaining batch is sent in the calling thread before the next
        is popped. In-flight sends started earlier are not cancelled.

        Args:
            timeout: Longest wait for the timer thread to exit.
        """
        with self._lock:
            if self._state is QueueState.STOPPED:
                return
            self._state = QueueState.DRAINING
            poll_thread = self._poll_thread
            self._poll_thread = None

        self._stop_polling.set()
        if poll_thread is not None and poll_thread is not threading.current_thread():
            poll_thread.join(timeout)

        self._context.invoke_teardown()

        drained = 0
        while True:
            sent = self.flush_once()
            if sent == 0:
                break
            drained += sent

        with self._lock:
            self._state = QueueState.STOPPED
        logger.debug("Event queue shut down", drained=drained)

    def close(self) -> None:
        """Shut down and release the owned executor, waiting for its sends."""
        self.shutdown()
        if self._owns_executor:
            self._executor.shutdown(wait=True)
