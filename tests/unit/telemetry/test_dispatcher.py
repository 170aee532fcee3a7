# tests/unit/telemetry/test_dispatcher.py
"""Unit tests for EventDispatcher.

Tests cover:
- Counters: triggered on accept, sent/failed once the batch outcome is known
- Result and log-kind grouping
- Errors before the build is ready: counted failed and re-raised
- Screenshots: immediate send, failure counting, pending-upload tracking
- CBT session records held until the owning test id is known, and isolated
  from each other and from the test start when one fails to queue
- Malformed group keys: CounterError re-raised, event counted failed
- Event policy: disabled kinds are silent no-ops
- Payload stamping (product_map, test_run_uuid)
- Worker end: wait, tear-down, snapshot persisted
"""

import threading
from pathlib import Path

import pytest

from testpulse.contracts.config import RuntimeDispatchConfig
from testpulse.contracts.enums import EventType, QueueState
from testpulse.contracts.errors import CounterError, DeliveryError, NotReadyError
from testpulse.contracts.events import (
    CBTSessionCreated,
    Event,
    HookRunFinished,
    LogCreated,
    TestRunFinished,
    TestRunStarted,
)
from testpulse.core.context import BuildContext
from testpulse.telemetry.dispatcher import EventDispatcher
from testpulse.telemetry.filtering import create_event_policy
from testpulse.telemetry.queue import EventQueue
from testpulse.usage.store import WorkerDataStore
from tests.fixtures.doubles import BlockingSender, InlineExecutor, RecordingSender

# =============================================================================
# Helpers
# =============================================================================


class RejectingQueue(EventQueue):
    """Queue that refuses the first N events of chosen kinds with NotReadyError."""

    def __init__(self, *args, rejected: dict[type[Event], int] | None = None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.rejected = dict(rejected or {})

    def add(self, event: Event) -> None:
        remaining = self.rejected.get(type(event), 0)
        if remaining > 0:
            self.rejected[type(event)] = remaining - 1
            raise NotReadyError()
        super().add(event)


def make_dispatcher(
    context: BuildContext,
    sender: RecordingSender | None = None,
    *,
    batch_size: int = 10,
    rejected: dict[type[Event], int] | None = None,
    **kwargs,
) -> tuple[EventDispatcher, RecordingSender]:
    """Dispatcher with a synchronous, timer-less queue."""
    sender = sender if sender is not None else RecordingSender()

    def queue_factory(send):
        return RejectingQueue(
            send,
            context,
            batch_size=batch_size,
            executor=InlineExecutor(),
            autostart=False,
            rejected=rejected,
        )

    return EventDispatcher(context, sender, queue_factory=queue_factory, **kwargs), sender


# =============================================================================
# Test and hook events
# =============================================================================


class TestRunEvents:
    def test_started_counts_triggered_then_sent(self, ready_context: BuildContext) -> None:
        dispatcher, sender = make_dispatcher(ready_context)

        dispatcher.test_started({"uuid": "t1", "name": "login works"})

        stats = dispatcher.usage_stats.test_started
        assert stats.triggered_count == 1
        assert stats.sent_count == 0
        assert sender.batches == []

        dispatcher.teardown()

        assert stats.sent_count == 1
        assert stats.failed_count == 0
        assert sender.sent_events == [
            TestRunStarted({"uuid": "t1", "name": "login works", "product_map": {"accessibility": False}})
        ]

    def test_started_sets_current_test_id(self, ready_context: BuildContext) -> None:
        dispatcher, _ = make_dispatcher(ready_context)
        dispatcher.test_started({"uuid": "t1"})
        assert ready_context.current_test_id == "t1"

    def test_finished_groups_by_result(self, ready_context: BuildContext) -> None:
        dispatcher, _ = make_dispatcher(ready_context)

        dispatcher.test_finished({"uuid": "t1", "result": "passed"})
        dispatcher.test_finished({"uuid": "t2", "result": "failed"})
        dispatcher.test_finished({"uuid": "t3", "result": "passed"})
        dispatcher.teardown()

        stats = dispatcher.usage_stats.test_finished
        assert stats.triggered_count == 3
        assert stats.sent_count == 3
        assert stats.get_usage_for_group("passed").sent_count == 2
        assert stats.get_usage_for_group("failed").sent_count == 1

    def test_failed_batch_counts_failed_under_group(self, ready_context: BuildContext) -> None:
        dispatcher, sender = make_dispatcher(ready_context, RecordingSender(fail_batches=True))

        dispatcher.test_finished({"uuid": "t1", "result": "passed"})
        dispatcher.teardown()

        stats = dispatcher.usage_stats.test_finished
        assert len(sender.batches) == 1
        assert stats.failed_count == 1
        assert stats.sent_count == 0
        assert stats.get_usage_for_group("passed").failed_count == 1
        assert dispatcher.pending_uploads == 0

    def test_hook_events(self, ready_context: BuildContext) -> None:
        dispatcher, sender = make_dispatcher(ready_context)

        dispatcher.hook_started({"uuid": "h1", "type": "hook"})
        dispatcher.hook_finished({"uuid": "h1", "type": "hook", "result": "passed"})
        dispatcher.teardown()

        assert dispatcher.usage_stats.hook_started.sent_count == 1
        assert dispatcher.usage_stats.hook_finished.get_usage_for_group("passed").sent_count == 1
        assert isinstance(sender.sent_events[1], HookRunFinished)

    def test_accessibility_flag_is_stamped(self, ready_context: BuildContext) -> None:
        dispatcher, sender = make_dispatcher(ready_context)
        dispatcher.set_accessibility(True)

        dispatcher.test_started({"uuid": "t1"})
        dispatcher.test_finished({"uuid": "t1", "result": "passed"})
        dispatcher.teardown()

        for event in sender.sent_events:
            assert event.payload["product_map"] == {"accessibility": True}

    def test_threshold_sends_during_run(self, ready_context: BuildContext) -> None:
        dispatcher, sender = make_dispatcher(ready_context, batch_size=2)

        for i in range(5):
            dispatcher.hook_started({"uuid": f"h{i}"})

        assert [len(batch) for batch in sender.batches] == [2, 2]
        assert dispatcher.usage_stats.hook_started.sent_count == 4

    def test_twenty_five_starts_go_out_in_batches_of_ten(self, ready_context: BuildContext) -> None:
        dispatcher, sender = make_dispatcher(ready_context, batch_size=10)

        for i in range(25):
            dispatcher.test_started({"uuid": f"t{i}"})

        stats = dispatcher.usage_stats.test_started
        assert [len(batch) for batch in sender.batches] == [10, 10]
        assert stats.triggered_count == 25
        assert stats.sent_count == 20

        dispatcher.teardown()

        assert [len(batch) for batch in sender.batches] == [10, 10, 5]
        assert stats.sent_count == 25
        assert stats.failed_count == 0
        assert [event.payload["uuid"] for event in sender.sent_events] == [f"t{i}" for i in range(25)]


class TestNotReady:
    def test_started_before_ready_raises_and_counts_failed(self, unready_context: BuildContext) -> None:
        dispatcher, sender = make_dispatcher(unready_context)

        with pytest.raises(NotReadyError, match="Build not completed yet"):
            dispatcher.test_started({"uuid": "t1"})

        stats = dispatcher.usage_stats.test_started
        assert stats.triggered_count == 1
        assert stats.failed_count == 1
        assert len(dispatcher.queue) == 0
        assert sender.batches == []

    def test_finished_before_ready_counts_failed_under_group(self, unready_context: BuildContext) -> None:
        dispatcher, _ = make_dispatcher(unready_context)

        with pytest.raises(NotReadyError):
            dispatcher.test_finished({"uuid": "t1", "result": "skipped"})

        assert dispatcher.usage_stats.test_finished.get_usage_for_group("skipped").failed_count == 1

    def test_log_created_before_ready_counts_each_entry_failed(self, unready_context: BuildContext) -> None:
        dispatcher, _ = make_dispatcher(unready_context)

        with pytest.raises(NotReadyError):
            dispatcher.log_created([{"kind": "TEST_LOG"}, {"kind": "HTTP"}])

        stats = dispatcher.usage_stats.log_events
        assert stats.triggered_count == 2
        assert stats.failed_count == 2
        assert stats.get_usage_for_group("http").failed_count == 1


# =============================================================================
# Logs and screenshots
# =============================================================================


class TestLogs:
    def test_log_kinds_map_to_counter_groups(self, ready_context: BuildContext) -> None:
        dispatcher, sender = make_dispatcher(ready_context)

        dispatcher.log_created([{"kind": "TEST_LOG"}, {"kind": "TEST_STEP"}, {"kind": "TEST_LOG"}])
        dispatcher.teardown()

        stats = dispatcher.usage_stats.log_events
        assert stats.sent_count == 3
        assert stats.get_usage_for_group("log").sent_count == 2
        assert stats.get_usage_for_group("step").sent_count == 1
        assert len(sender.sent_events) == 1
        assert isinstance(sender.sent_events[0], LogCreated)

    def test_unknown_kind_is_its_own_group(self, ready_context: BuildContext) -> None:
        dispatcher, _ = make_dispatcher(ready_context)
        dispatcher.log_created([{"kind": "CUSTOM"}, {"message": "no kind"}])
        assert dispatcher.usage_stats.log_events.get_usage_for_group("CUSTOM").triggered_count == 1
        assert dispatcher.usage_stats.log_events.triggered_count == 2

    def test_configured_log_kind_map(self, ready_context: BuildContext) -> None:
        config = RuntimeDispatchConfig(
            enabled=True,
            batch_size=10,
            flush_interval=1.0,
            upload_wait_timeout=1.0,
            enabled_events=frozenset(EventType),
            log_kind_map={"TEST_LOG": "console"},
        )
        dispatcher, _ = make_dispatcher(ready_context, config=config)
        dispatcher.log_created([{"kind": "TEST_LOG"}])
        assert dispatcher.usage_stats.log_events.get_usage_for_group("console").triggered_count == 1

    def test_empty_log_list_is_ignored(self, ready_context: BuildContext) -> None:
        dispatcher, _ = make_dispatcher(ready_context)
        dispatcher.log_created([])
        assert dispatcher.usage_stats.log_events.triggered_count == 0
        assert dispatcher.queue is None

    def test_logs_are_stamped_with_current_test(self, ready_context: BuildContext) -> None:
        dispatcher, sender = make_dispatcher(ready_context)

        dispatcher.test_started({"uuid": "t1"})
        dispatcher.log_created([{"kind": "TEST_LOG"}, {"kind": "TEST_LOG", "test_run_uuid": "other"}])
        dispatcher.teardown()

        logs = next(event for event in sender.sent_events if isinstance(event, LogCreated)).logs
        assert [entry["test_run_uuid"] for entry in logs] == ["t1", "other"]


class TestScreenshots:
    def test_sent_immediately(self, ready_context: BuildContext) -> None:
        dispatcher, sender = make_dispatcher(ready_context)

        response = dispatcher.on_screenshot([{"kind": "TEST_SCREENSHOT", "message": "b64"}])

        assert response == {"status": "ok"}
        assert len(sender.screenshots) == 1
        assert sender.batches == []
        stats = dispatcher.usage_stats.log_events
        assert stats.get_usage_for_group("screenshot").sent_count == 1
        assert dispatcher.pending_uploads == 0

    def test_failure_counts_failed_and_reraises(self, ready_context: BuildContext) -> None:
        dispatcher, _ = make_dispatcher(ready_context, RecordingSender(fail_screenshots=True))
        shots = [{"kind": "TEST_SCREENSHOT"}, {"kind": "TEST_SCREENSHOT"}]

        with pytest.raises(DeliveryError):
            dispatcher.on_screenshot(shots)

        stats = dispatcher.usage_stats.log_events
        assert stats.triggered_count == 2
        assert stats.failed_count == 2
        assert stats.get_usage_for_group("screenshot").failed_count == 2
        assert dispatcher.pending_uploads == 0

    def test_noop_before_ready(self, unready_context: BuildContext) -> None:
        dispatcher, sender = make_dispatcher(unready_context)
        assert dispatcher.on_screenshot([{"kind": "TEST_SCREENSHOT"}]) is None
        assert sender.screenshots == []
        assert dispatcher.usage_stats.log_events.triggered_count == 0

    def test_upload_pending_waits_for_in_flight_upload(self, ready_context: BuildContext) -> None:
        sender = BlockingSender()
        dispatcher, _ = make_dispatcher(ready_context, sender)
        worker = threading.Thread(target=dispatcher.on_screenshot, args=([{"kind": "TEST_SCREENSHOT"}],))
        worker.start()
        try:
            assert sender.started.wait(timeout=5.0)
            assert dispatcher.pending_uploads == 1
            assert dispatcher.upload_pending(timeout=0.05) is False
        finally:
            sender.release.set()
            worker.join(timeout=5.0)

        assert dispatcher.upload_pending(timeout=5.0) is True
        assert dispatcher.pending_uploads == 0

    def test_upload_pending_returns_at_once_when_idle(self, ready_context: BuildContext) -> None:
        dispatcher, _ = make_dispatcher(ready_context)
        assert dispatcher.upload_pending(timeout=0.0) is True


# =============================================================================
# Cross-browser-test sessions
# =============================================================================


class TestCBTSessions:
    def test_record_before_test_is_held_then_flushed(self, ready_context: BuildContext) -> None:
        dispatcher, sender = make_dispatcher(ready_context)

        dispatcher.cbt_session_created({"integration": "grid", "session": "s1"})
        assert dispatcher.pending_cbt_records == [{"integration": "grid", "session": "s1"}]
        assert dispatcher.usage_stats.cbt_session.triggered_count == 0

        dispatcher.test_started({"uuid": "t1"})

        assert dispatcher.pending_cbt_records == []

        # The id was cleared by the flush, so the next record starts a new pending list
        dispatcher.cbt_session_created({"session": "s2"})
        assert dispatcher.pending_cbt_records == [{"session": "s2"}]

        dispatcher.teardown()

        cbt_events = [event for event in sender.sent_events if isinstance(event, CBTSessionCreated)]
        assert cbt_events == [CBTSessionCreated({"integration": "grid", "session": "s1", "uuid": "t1"})]
        assert dispatcher.usage_stats.cbt_session.triggered_count == 1
        assert dispatcher.usage_stats.cbt_session.sent_count == 1

    def test_record_during_test_is_sent_with_test_id(self, ready_context: BuildContext) -> None:
        dispatcher, sender = make_dispatcher(ready_context)

        dispatcher.test_started({"uuid": "t1"})
        dispatcher.cbt_session_created({"session": "s1"})
        dispatcher.test_finished({"uuid": "t1", "result": "passed"})
        dispatcher.teardown()

        assert dispatcher.pending_cbt_records == []
        kinds = [type(event) for event in sender.sent_events]
        assert kinds == [TestRunStarted, CBTSessionCreated, TestRunFinished]
        assert sender.sent_events[1].payload["uuid"] == "t1"

    def test_record_after_test_finished_waits_for_next_test(self, ready_context: BuildContext) -> None:
        dispatcher, _ = make_dispatcher(ready_context)

        dispatcher.test_started({"uuid": "t1"})
        dispatcher.test_finished({"uuid": "t1", "result": "passed"})
        dispatcher.cbt_session_created({"session": "late"})

        assert dispatcher.pending_cbt_records == [{"session": "late"}]

    def test_failed_record_does_not_drop_the_rest(self, ready_context: BuildContext) -> None:
        dispatcher, sender = make_dispatcher(ready_context, rejected={CBTSessionCreated: 1})
        dispatcher.cbt_session_created({"session": "s1"})
        dispatcher.cbt_session_created({"session": "s2"})

        with pytest.raises(NotReadyError):
            dispatcher.test_started({"uuid": "t1"})

        cbt = dispatcher.usage_stats.cbt_session
        assert dispatcher.usage_stats.test_started.triggered_count == 1
        assert dispatcher.usage_stats.test_started.failed_count == 0
        assert cbt.triggered_count == 2
        assert cbt.failed_count == 1
        assert dispatcher.pending_cbt_records == []

        dispatcher.teardown()

        assert sender.sent_events == [
            TestRunStarted({"uuid": "t1", "product_map": {"accessibility": False}}),
            CBTSessionCreated({"session": "s2", "uuid": "t1"}),
        ]
        assert cbt.sent_count == 1

    def test_finished_error_still_clears_cbt_test_id(self, ready_context: BuildContext) -> None:
        dispatcher, _ = make_dispatcher(ready_context, rejected={TestRunFinished: 1})
        dispatcher.test_started({"uuid": "t1"})

        with pytest.raises(NotReadyError):
            dispatcher.test_finished({"uuid": "t1", "result": "passed"})

        assert dispatcher.usage_stats.test_finished.get_usage_for_group("passed").failed_count == 1
        dispatcher.cbt_session_created({"session": "late"})
        assert dispatcher.pending_cbt_records == [{"session": "late"}]
        assert dispatcher.usage_stats.cbt_session.triggered_count == 0


# =============================================================================
# Malformed group keys
# =============================================================================


class TestCounterErrors:
    def test_finished_with_non_string_result_counts_failed(self, ready_context: BuildContext) -> None:
        dispatcher, _ = make_dispatcher(ready_context)

        with pytest.raises(CounterError, match="Group id must be a string"):
            dispatcher.test_finished({"uuid": "t1", "result": 1})

        stats = dispatcher.usage_stats.test_finished
        assert stats.triggered_count == 0
        assert stats.failed_count == 1
        assert stats.groups == {}
        assert dispatcher.queue is None

    def test_hook_finished_with_non_string_result_counts_failed(self, ready_context: BuildContext) -> None:
        dispatcher, _ = make_dispatcher(ready_context)

        with pytest.raises(CounterError):
            dispatcher.hook_finished({"uuid": "h1", "result": ["x"]})

        assert dispatcher.usage_stats.hook_finished.failed_count == 1
        assert dispatcher.queue is None

    def test_bad_log_kind_fails_the_whole_call(self, ready_context: BuildContext) -> None:
        dispatcher, _ = make_dispatcher(ready_context)

        with pytest.raises(CounterError):
            dispatcher.log_created([{"kind": "TEST_LOG", "message": "a"}, {"kind": 5, "message": "b"}])

        stats = dispatcher.usage_stats.log_events
        assert stats.triggered_count == 1
        assert stats.failed_count == 2
        assert stats.get_usage_for_group("log").triggered_count == 1
        assert stats.get_usage_for_group("log").failed_count == 1
        assert dispatcher.queue is None

    def test_unhashable_log_kind_counts_failed(self, ready_context: BuildContext) -> None:
        dispatcher, _ = make_dispatcher(ready_context)

        with pytest.raises(TypeError):
            dispatcher.log_created([{"kind": ["x"]}])

        assert dispatcher.usage_stats.log_events.failed_count == 1
        assert dispatcher.usage_stats.log_events.triggered_count == 0

    def test_bad_screenshot_kind_is_not_uploaded(self, ready_context: BuildContext) -> None:
        dispatcher, sender = make_dispatcher(ready_context)

        with pytest.raises(CounterError):
            dispatcher.on_screenshot([{"kind": "TEST_SCREENSHOT"}, {"kind": 7}])

        stats = dispatcher.usage_stats.log_events
        assert sender.screenshots == []
        assert stats.triggered_count == 1
        assert stats.failed_count == 2
        assert stats.get_usage_for_group("screenshot").failed_count == 1
        assert dispatcher.pending_uploads == 0


# =============================================================================
# Event policy
# =============================================================================


class TestPolicy:
    def test_disabled_kind_is_noop(self, ready_context: BuildContext) -> None:
        policy = create_event_policy(frozenset(EventType) - {EventType.LOG_CREATED})
        dispatcher, sender = make_dispatcher(ready_context, policy=policy)

        dispatcher.log_created([{"kind": "TEST_LOG"}])
        assert dispatcher.on_screenshot([{"kind": "TEST_SCREENSHOT"}]) is None
        dispatcher.test_started({"uuid": "t1"})
        dispatcher.teardown()

        assert dispatcher.usage_stats.log_events.triggered_count == 0
        assert sender.screenshots == []
        assert [type(event) for event in sender.sent_events] == [TestRunStarted]

    def test_disabled_test_started_does_not_touch_context(self, ready_context: BuildContext) -> None:
        policy = create_event_policy(frozenset())
        dispatcher, _ = make_dispatcher(ready_context, policy=policy)

        dispatcher.test_started({"uuid": "t1"})

        assert ready_context.current_test_id is None
        assert dispatcher.queue is None


# =============================================================================
# Delivery reconciliation
# =============================================================================


class TestBatchResult:
    def test_on_batch_result_maps_events_to_counters(self, ready_context: BuildContext) -> None:
        dispatcher, _ = make_dispatcher(ready_context)
        batch = [
            TestRunFinished({"uuid": "t1", "result": "passed"}),
            LogCreated([{"kind": "HTTP"}, {"kind": "TEST_LOG"}]),
            CBTSessionCreated({"uuid": "t1"}),
        ]

        dispatcher.on_batch_result(batch, success=False)

        usage = dispatcher.usage_stats
        assert usage.test_finished.get_usage_for_group("passed").failed_count == 1
        assert usage.log_events.get_usage_for_group("http").failed_count == 1
        assert usage.log_events.get_usage_for_group("log").failed_count == 1
        assert usage.cbt_session.failed_count == 1


# =============================================================================
# Queue wiring and worker end
# =============================================================================


class TestLifecycle:
    def test_default_queue_is_shared_instance(self, ready_context: BuildContext) -> None:
        dispatcher = EventDispatcher(ready_context, RecordingSender())
        assert dispatcher.queue is None

        dispatcher.hook_started({"uuid": "h1"})

        assert dispatcher.queue is EventQueue.get_instance()

    def test_missing_shared_queue_is_an_error(
        self, ready_context: BuildContext, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(EventQueue, "get_instance", classmethod(lambda cls, send=None, **kwargs: None))
        dispatcher = EventDispatcher(ready_context, RecordingSender())

        with pytest.raises(RuntimeError, match="Shared event queue could not be created"):
            dispatcher.hook_started({"uuid": "h1"})

        assert dispatcher.usage_stats.hook_started.failed_count == 1
        assert dispatcher.queue is None

    def test_teardown_without_queue(self, ready_context: BuildContext) -> None:
        dispatcher, _ = make_dispatcher(ready_context)
        dispatcher.teardown()
        assert ready_context.teardown_invoked is True

    def test_on_worker_end_saves_snapshot(self, ready_context: BuildContext, tmp_path: Path) -> None:
        dispatcher, _ = make_dispatcher(ready_context)
        store = WorkerDataStore(tmp_path / "workers")

        dispatcher.test_started({"uuid": "t1"})
        dispatcher.test_finished({"uuid": "t1", "result": "passed"})
        dispatcher.on_worker_end(store, worker_id="w1")

        records = store.load_all()
        assert len(records) == 1
        test_events = records[0]["usageStats"]["testEvents"]
        assert test_events["started"]["sentCount"] == 1
        assert test_events["finished"]["groups"]["passed"]["sentCount"] == 1
        assert dispatcher.queue.state is QueueState.STOPPED

    def test_on_worker_end_without_store(self, ready_context: BuildContext) -> None:
        dispatcher, sender = make_dispatcher(ready_context)
        dispatcher.hook_started({"uuid": "h1"})
        dispatcher.on_worker_end()
        assert len(sender.batches) == 1

    def test_close_closes_sender(self, ready_context: BuildContext) -> None:
        dispatcher, sender = make_dispatcher(ready_context)
        dispatcher.close()
        assert sender.closed is True
