"""Event envelopes shipped to the ingestion endpoint.

Every event kind is its own frozen dataclass. The discriminant
(``event_type``) and the name of the payload field (``payload_key``) are
class-level constants, so encoding and decoding go through a registry
lookup on the discriminant and never guess the kind from which payload
field happens to be present.

Wire shape:
    {"event_type": "TestRunFinished", "test_run": {...}}
    {"event_type": "HookRunStarted", "hook_run": {...}}
    {"event_type": "LogCreated", "logs": [{...}, ...]}
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar

from testpulse.contracts.enums import EventType


class Event:
    """Base for all event envelopes."""

    __slots__ = ()
    __test__ = False

    event_type: ClassVar[EventType]
    payload_key: ClassVar[str]

    @property
    def payload(self) -> Any:
        return getattr(self, self.payload_key)


# =============================================================================
# Test and hook runs
# =============================================================================


@dataclass(frozen=True, slots=True)
class TestRunStarted(Event):
    """A test began executing."""

    event_type: ClassVar[EventType] = EventType.TEST_RUN_STARTED
    payload_key: ClassVar[str] = "test_run"

    test_run: Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class TestRunFinished(Event):
    """A test finished; the payload carries its ``result``."""

    event_type: ClassVar[EventType] = EventType.TEST_RUN_FINISHED
    payload_key: ClassVar[str] = "test_run"

    test_run: Mapping[str, Any]

    @property
    def result(self) -> str | None:
        return self.test_run.get("result")


@dataclass(frozen=True, slots=True)
class HookRunStarted(Event):
    """A hook (before/after each, before/after all) began executing."""

    event_type: ClassVar[EventType] = EventType.HOOK_RUN_STARTED
    payload_key: ClassVar[str] = "hook_run"

    hook_run: Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class HookRunFinished(Event):
    """A hook finished; the payload carries its ``result``."""

    event_type: ClassVar[EventType] = EventType.HOOK_RUN_FINISHED
    payload_key: ClassVar[str] = "hook_run"

    hook_run: Mapping[str, Any]

    @property
    def result(self) -> str | None:
        return self.hook_run.get("result")


# =============================================================================
# Logs and sessions
# =============================================================================


@dataclass(frozen=True, slots=True)
class LogCreated(Event):
    """One or more log entries; screenshots are logs of kind TEST_SCREENSHOT."""

    event_type: ClassVar[EventType] = EventType.LOG_CREATED
    payload_key: ClassVar[str] = "logs"

    logs: tuple[Mapping[str, Any], ...]

    def __post_init__(self) -> None:
        # Accept any sequence but store a tuple so the envelope stays immutable
        if not isinstance(self.logs, tuple):
            object.__setattr__(self, "logs", tuple(self.logs))

    @property
    def kinds(self) -> list[str | None]:
        return [entry.get("kind") for entry in self.logs]


@dataclass(frozen=True, slots=True)
class CBTSessionCreated(Event):
    """Cross-browser-test session record, stamped with the owning test uuid."""

    event_type: ClassVar[EventType] = EventType.CBT_SESSION_CREATED
    payload_key: ClassVar[str] = "test_run"

    test_run: Mapping[str, Any]


_REGISTRY: dict[EventType, type[Event]] = {
    cls.event_type: cls
    for cls in (TestRunStarted, TestRunFinished, HookRunStarted, HookRunFinished, LogCreated, CBTSessionCreated)
}


def event_class_for(event_type: EventType | str) -> type[Event]:
    """Look up the envelope class for a discriminant.

    Raises:
        ValueError: If the discriminant is not a known event type.
    """
    try:
        return _REGISTRY[EventType(event_type)]
    except ValueError:
        raise ValueError(f"Unknown event_type: {event_type!r}") from None


def encode_event(event: Event) -> dict[str, Any]:
    """Serialize an event to its wire envelope."""
    payload = event.payload
    if isinstance(event, LogCreated):
        payload = [dict(entry) for entry in payload]
    else:
        payload = dict(payload)
    return {"event_type": event.event_type.value, event.payload_key: payload}


def decode_event(envelope: Mapping[str, Any]) -> Event:
    """Rebuild an event from its wire envelope.

    Raises:
        ValueError: If ``event_type`` is missing or unknown, or the envelope
            lacks the payload field its kind requires.
    """
    if "event_type" not in envelope:
        raise ValueError("Envelope has no event_type")
    cls = event_class_for(envelope["event_type"])
    if cls.payload_key not in envelope:
        raise ValueError(f"{cls.event_type.value} envelope is missing '{cls.payload_key}'")
    return cls(envelope[cls.payload_key])  # type: ignore[call-arg]


def run_event_for(event_type: EventType | str, data: Mapping[str, Any]) -> Event:
    """Wrap run data under the payload key its ``type`` implies.

    Data with ``type == "hook"`` becomes the hook variant of the requested
    started/finished event; everything else becomes the test variant.
    """
    event_type = EventType(event_type)
    is_hook = data.get("type") == "hook"
    match event_type:
        case EventType.TEST_RUN_STARTED | EventType.HOOK_RUN_STARTED:
            return HookRunStarted(data) if is_hook else TestRunStarted(data)
        case EventType.TEST_RUN_FINISHED | EventType.HOOK_RUN_FINISHED:
            return HookRunFinished(data) if is_hook else TestRunFinished(data)
        case _:
            raise ValueError(f"{event_type.value} is not a run event")
