# src/testpulse/contracts/__init__.py
"""Shared contracts: enums, event envelopes, errors, runtime config."""

from testpulse.contracts.enums import LOG_KIND_USAGE_MAP, EventType, QueueState, UsageStatus
from testpulse.contracts.errors import (
    AuthMissingError,
    CounterError,
    DeliveryError,
    NotReadyError,
    PolicyPluginError,
    TestpulseError,
)
from testpulse.contracts.events import (
    CBTSessionCreated,
    Event,
    HookRunFinished,
    HookRunStarted,
    LogCreated,
    TestRunFinished,
    TestRunStarted,
    decode_event,
    encode_event,
    run_event_for,
)

__all__ = [
    "LOG_KIND_USAGE_MAP",
    "AuthMissingError",
    "CBTSessionCreated",
    "CounterError",
    "DeliveryError",
    "Event",
    "EventType",
    "HookRunFinished",
    "HookRunStarted",
    "LogCreated",
    "NotReadyError",
    "PolicyPluginError",
    "QueueState",
    "TestRunFinished",
    "TestRunStarted",
    "TestpulseError",
    "UsageStatus",
    "decode_event",
    "encode_event",
    "run_event_for",
]
