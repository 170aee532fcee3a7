"""Status codes and kinds used across subsystem boundaries.

Values are the wire strings sent to the ingestion endpoint and written to
per-worker snapshots; changing one breaks compatibility with stored data.
"""

from enum import StrEnum
from types import MappingProxyType


class EventType(StrEnum):
    """Discriminant of an event envelope (``event_type`` on the wire)."""

    TEST_RUN_STARTED = "TestRunStarted"
    TEST_RUN_FINISHED = "TestRunFinished"
    HOOK_RUN_STARTED = "HookRunStarted"
    HOOK_RUN_FINISHED = "HookRunFinished"
    LOG_CREATED = "LogCreated"
    CBT_SESSION_CREATED = "CBTSessionCreated"


class UsageStatus(StrEnum):
    """Counter transition accepted by ``FeatureStats.mark``.

    SUCCESS and SENT are synonyms: both bump the sent counter.
    """

    TRIGGERED = "triggered"
    SUCCESS = "success"
    SENT = "sent"
    FAILED = "failed"


class QueueState(StrEnum):
    """Lifecycle of an EventQueue.

    IDLE -> POLLING -> DRAINING -> STOPPED, no way back from STOPPED.
    """

    IDLE = "idle"
    POLLING = "polling"
    DRAINING = "draining"
    STOPPED = "stopped"


class LogKind(StrEnum):
    """Kind of a log entry as emitted by framework adapters."""

    TEST_LOG = "TEST_LOG"
    TEST_SCREENSHOT = "TEST_SCREENSHOT"
    TEST_STEP = "TEST_STEP"
    HTTP = "HTTP"


# Group key used in the log counters for each adapter log kind.
LOG_KIND_USAGE_MAP: MappingProxyType[str, str] = MappingProxyType(
    {
        LogKind.TEST_LOG: "log",
        LogKind.TEST_SCREENSHOT: "screenshot",
        LogKind.TEST_STEP: "step",
        LogKind.HTTP: "http",
    }
)
