# src/testpulse/telemetry/dispatcher.py
"""Single entry point for framework adapters.

Adapters report test and hook lifecycle, log lines, screenshots and
cross-browser-test sessions here. For each call the dispatcher:
1. Asks the event policy whether the kind is enabled (no-op if not)
2. Marks the matching counter ``triggered``
3. Enqueues the event (batched) or sends it at once (screenshots)
4. Reconciles counters to ``sent``/``failed`` when the delivery outcome
   is known

Errors while counting or enqueuing are recorded as ``failed`` on the
relevant counter and re-raised to the adapter. A group key the counter
rejects (CounterError) is recorded as ``failed`` on the counter itself.
Delivery errors of queued batches never reach the adapter; they only show
up in the counters.
"""

import threading
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

import structlog

from testpulse.contracts.config import RuntimeDispatchConfig
from testpulse.contracts.enums import EventType
from testpulse.contracts.events import (
    CBTSessionCreated,
    Event,
    HookRunFinished,
    HookRunStarted,
    LogCreated,
    TestRunFinished,
    TestRunStarted,
)
from testpulse.core.context import BuildContext
from testpulse.telemetry.filtering import EventPolicy
from testpulse.telemetry.protocols import SenderProtocol
from testpulse.telemetry.queue import EventQueue
from testpulse.usage.report import WORKER_USAGE_KEY, UsageStats
from testpulse.usage.stats import FeatureStats
from testpulse.usage.store import WorkerDataStore

logger = structlog.get_logger(__name__)

QueueFactory = Callable[[Callable[[list[Event]], Any]], EventQueue]


def _failure_group(group: object) -> str | None:
    """Group to record a failure under; keys the counter would reject fall back to none."""
    return group if isinstance(group, str) else None


class EventDispatcher:
    """Routes adapter events to counters, the queue and the sender.

    Thread Safety:
        Adapter calls may come from any thread. Counters lock themselves;
        the pending CBT records and the pending-upload count have their own
        locks. Batch results arrive on queue/executor threads.
    """

    def __init__(
        self,
        context: BuildContext,
        sender: SenderProtocol,
        *,
        usage_stats: UsageStats | None = None,
        policy: EventPolicy | None = None,
        queue: EventQueue | None = None,
        queue_factory: QueueFactory | None = None,
        config: RuntimeDispatchConfig | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            context: Build signals shared with the queue and sender.
            sender: Delivery transport.
            usage_stats: Counters to update; a fresh set if omitted.
            policy: Event-kind policy; every kind enabled if omitted.
            queue: Pre-built queue. When omitted, one is obtained lazily on
                the first batched event from ``queue_factory``.
            queue_factory: Builds the queue from the dispatcher's batch
                callback. Defaults to the process-wide ``EventQueue``.
            config: Batching and log-kind settings.
        """
        self._context = context
        self._sender = sender
        self._config = config if config is not None else RuntimeDispatchConfig.default()
        self.usage_stats = usage_stats if usage_stats is not None else UsageStats()
        self._policy = policy if policy is not None else EventPolicy.allow_all()
        self._queue = queue
        self._queue_factory: QueueFactory = queue_factory if queue_factory is not None else self._shared_queue
        self._queue_lock = threading.Lock()

        self._accessibility = False

        self._cbt_lock = threading.Lock()
        self._cbt_test_id: str | None = None
        self._pending_cbt: list[dict[str, Any]] = []

        self._pending_uploads = 0
        self._uploads_done = threading.Condition()

    # =========================================================================
    # Queue wiring
    # =========================================================================

    def _shared_queue(self, send: Callable[[list[Event]], Any]) -> EventQueue:
        queue = EventQueue.get_instance(
            send,
            context=self._context,
            batch_size=self._config.batch_size,
            flush_interval=self._config.flush_interval,
        )
        if queue is None:
            raise RuntimeError("Shared event queue could not be created")
        return queue

    def _get_queue(self) -> EventQueue:
        with self._queue_lock:
            if self._queue is None:
                self._queue = self._queue_factory(self._send_batch)
            return self._queue

    @property
    def queue(self) -> EventQueue | None:
        return self._queue

    def _enqueue(self, event: Event) -> None:
        self._get_queue().add(event)

    def _track(self, stats: FeatureStats, group: Any, make_event: Callable[[], Event]) -> None:
        """Mark ``triggered``, enqueue, and on any error mark ``failed`` and re-raise."""
        try:
            stats.triggered(group)
            self._enqueue(make_event())
        except Exception:
            stats.failed(_failure_group(group))
            raise

    def set_accessibility(self, enabled: bool) -> None:
        """Flag stamped into test payloads as ``product_map.accessibility``."""
        self._accessibility = enabled

    def _with_product_map(self, data: Mapping[str, Any]) -> dict[str, Any]:
        return {**data, "product_map": {"accessibility": self._accessibility}}

    # =========================================================================
    # Hooks
    # =========================================================================

    def hook_started(self, data: Mapping[str, Any]) -> None:
        if not self._policy.is_enabled(EventType.HOOK_RUN_STARTED):
            return
        self._track(self.usage_stats.hook_started, None, lambda: HookRunStarted(dict(data)))

    def hook_finished(self, data: Mapping[str, Any]) -> None:
        if not self._policy.is_enabled(EventType.HOOK_RUN_FINISHED):
            return
        self._track(self.usage_stats.hook_finished, data.get("result"), lambda: HookRunFinished(dict(data)))

    # =========================================================================
    # Tests
    # =========================================================================

    def test_started(self, data: Mapping[str, Any]) -> None:
        """Count and enqueue the test start, then release CBT records held for it.

        A CBT failure does not stop the test start from being queued; the
        first error (test start first) is re-raised once everything ran.
        """
        if not self._policy.is_enabled(EventType.TEST_RUN_STARTED):
            return
        test_id = data.get("uuid")
        if test_id is not None:
            self._context.current_test_id = test_id

        error: Exception | None = None
        try:
            self._track(self.usage_stats.test_started, None, lambda: TestRunStarted(self._with_product_map(data)))
        except Exception as e:
            error = e

        if test_id is not None:
            cbt_error = self._set_cbt_test_id(test_id)
            error = error if error is not None else cbt_error
        if error is not None:
            raise error

    def test_finished(self, data: Mapping[str, Any]) -> None:
        if not self._policy.is_enabled(EventType.TEST_RUN_FINISHED):
            return
        error: Exception | None = None
        try:
            self._track(
                self.usage_stats.test_finished,
                data.get("result"),
                lambda: TestRunFinished(self._with_product_map(data)),
            )
        except Exception as e:
            error = e

        cbt_error = self._finish_cbt_test()
        error = error if error is not None else cbt_error
        if error is not None:
            raise error

    # =========================================================================
    # Logs and screenshots
    # =========================================================================

    def _log_groups(self, logs: Sequence[Mapping[str, Any]]) -> list[Any]:
        return [self._config.normalize_log_kind(entry.get("kind")) for entry in logs]

    def _stamp_test_id(self, logs: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
        current = self._context.current_test_id
        stamped = []
        for entry in logs:
            entry = dict(entry)
            if current is not None and not entry.get("test_run_uuid"):
                entry["test_run_uuid"] = current
            stamped.append(entry)
        return stamped

    def log_created(self, logs: Sequence[Mapping[str, Any]]) -> None:
        """Count each entry under its log-kind group and enqueue them as one event."""
        if not self._policy.is_enabled(EventType.LOG_CREATED):
            return
        if not logs:
            return
        stats = self.usage_stats.log_events
        groups: list[Any] = [None] * len(logs)
        try:
            groups = self._log_groups(logs)
            for group in groups:
                stats.triggered(group)
            self._enqueue(LogCreated(self._stamp_test_id(logs)))
        except Exception:
            for group in groups:
                stats.failed(_failure_group(group))
            raise

    def on_screenshot(self, logs: Sequence[Mapping[str, Any]]) -> Any:
        """Send screenshot logs at once, bypassing the queue.

        No-op before the build is ready. Delivery errors are counted as
        failed and re-raised.
        """
        if not self._policy.is_enabled(EventType.LOG_CREATED):
            return None
        if not self._context.is_build_ready() or not logs:
            return None

        stats = self.usage_stats.log_events
        groups: list[Any] = [None] * len(logs)
        self._upload_started()
        try:
            groups = self._log_groups(logs)
            for group in groups:
                stats.triggered(group)
            response = self._sender.send_screenshots([LogCreated(self._stamp_test_id(logs))])
        except Exception as e:
            for group in groups:
                stats.failed(_failure_group(group))
            logger.debug("Screenshot upload failed", count=len(groups), error=str(e))
            raise
        else:
            for group in groups:
                stats.sent(group)
            return response
        finally:
            self._upload_finished()

    # =========================================================================
    # Cross-browser-test sessions
    # =========================================================================

    def cbt_session_created(self, data: Mapping[str, Any]) -> None:
        """Record a CBT session; held until the owning test id is known."""
        if not self._policy.is_enabled(EventType.CBT_SESSION_CREATED):
            return
        record = dict(data)
        with self._cbt_lock:
            test_id = self._cbt_test_id
            if test_id is None:
                self._pending_cbt.append(record)
                return
        error = self._send_cbt([record], test_id)
        if error is not None:
            raise error

    def _set_cbt_test_id(self, test_id: str) -> Exception | None:
        with self._cbt_lock:
            self._cbt_test_id = test_id
            pending = self._pending_cbt
            if pending:
                self._pending_cbt = []
                self._cbt_test_id = None
        if not pending:
            return None
        return self._send_cbt(pending, test_id)

    def _finish_cbt_test(self) -> Exception | None:
        with self._cbt_lock:
            test_id = self._cbt_test_id
            self._cbt_test_id = None
            if test_id is None:
                return None
            pending = self._pending_cbt
            self._pending_cbt = []
        if not pending:
            return None
        return self._send_cbt(pending, test_id)

    @property
    def pending_cbt_records(self) -> list[dict[str, Any]]:
        with self._cbt_lock:
            return list(self._pending_cbt)

    def _send_cbt(self, records: Iterable[dict[str, Any]], test_id: str) -> Exception | None:
        """Enqueue each record on its own; returns the first error, if any.

        A failing record is counted failed and the rest still go out.
        """
        stats = self.usage_stats.cbt_session
        first_error: Exception | None = None
        for record in records:
            try:
                stats.triggered()
                self._enqueue(CBTSessionCreated({**record, "uuid": test_id}))
            except Exception as e:
                stats.failed()
                logger.debug("CBT session record not queued", test_id=test_id, error=str(e))
                if first_error is None:
                    first_error = e
        return first_error

    # =========================================================================
    # Delivery
    # =========================================================================

    def _send_batch(self, batch: list[Event]) -> None:
        """Queue send callback: POST the batch and reconcile its counters."""
        self._upload_started()
        try:
            self._sender.post_batch(batch)
        except Exception as e:
            logger.debug("Event batch delivery failed", batch_size=len(batch), error=str(e))
            self.on_batch_result(batch, success=False)
        else:
            self.on_batch_result(batch, success=True)
        finally:
            self._upload_finished()

    def on_batch_result(self, batch: Sequence[Event], success: bool) -> None:
        """Mark every event of a delivered (or failed) batch as sent or failed."""
        for event in batch:
            for stats, group in self._counters_for(event):
                if success:
                    stats.sent(group)
                else:
                    stats.failed(group)

    def _counters_for(self, event: Event) -> list[tuple[FeatureStats, str | None]]:
        usage = self.usage_stats
        match event:
            case TestRunStarted():
                return [(usage.test_started, None)]
            case TestRunFinished():
                return [(usage.test_finished, event.result)]
            case HookRunStarted():
                return [(usage.hook_started, None)]
            case HookRunFinished():
                return [(usage.hook_finished, event.result)]
            case LogCreated():
                return [(usage.log_events, group) for group in self._log_groups(event.logs)]
            case CBTSessionCreated():
                return [(usage.cbt_session, None)]
            case _:
                logger.debug("No counter for event", event_type=getattr(event, "event_type", None))
                return []

    # =========================================================================
    # Pending uploads and worker end
    # =========================================================================

    def _upload_started(self) -> None:
        with self._uploads_done:
            self._pending_uploads += 1

    def _upload_finished(self) -> None:
        with self._uploads_done:
            self._pending_uploads -= 1
            if self._pending_uploads <= 0:
                self._uploads_done.notify_all()

    @property
    def pending_uploads(self) -> int:
        with self._uploads_done:
            return self._pending_uploads

    def upload_pending(self, timeout: float | None = None) -> bool:
        """Block until no upload is in flight or ``timeout`` seconds pass.

        Returns:
            True if the pending count reached zero, False on timeout.
        """
        if timeout is None:
            timeout = self._config.upload_wait_timeout
        started = time.monotonic()
        with self._uploads_done:
            done = self._uploads_done.wait_for(lambda: self._pending_uploads <= 0, timeout)
        if not done:
            logger.warning(
                "Timed out waiting for pending uploads",
                pending_uploads=self.pending_uploads,
                waited_seconds=round(time.monotonic() - started, 3),
            )
        return done

    def teardown(self) -> None:
        """Invoke tear-down and drain the queue synchronously."""
        self._context.invoke_teardown()
        if self._queue is not None:
            self._queue.shutdown()

    def on_worker_end(self, store: WorkerDataStore | None = None, *, worker_id: str | None = None) -> None:
        """Wait for uploads, tear down, then persist this worker's counters.

        Failures are logged; a worker must be able to exit regardless.
        """
        try:
            self.upload_pending()
            self.teardown()
        except Exception as e:
            logger.warning("Worker end tear-down failed", error_type=type(e).__name__, error=str(e))

        if store is None:
            return
        try:
            store.save({WORKER_USAGE_KEY: self.usage_stats.get_data_to_save()}, worker_id=worker_id)
        except OSError as e:
            logger.warning("Could not save worker usage data", directory=str(store.directory), error=str(e))

    def close(self) -> None:
        self._sender.close()
