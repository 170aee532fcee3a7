# src/testpulse/telemetry/filtering.py
"""Event-kind policy: which events the dispatcher processes.

A kind is processed when it is in the configured enabled set and no
policy plugin returns False for it. Disabled kinds turn the dispatcher
operation into a silent no-op: no counters, no enqueue.
"""

from collections.abc import Iterable
from typing import Any

import pluggy
import structlog

from testpulse.contracts.enums import EventType
from testpulse.contracts.errors import PolicyPluginError
from testpulse.telemetry.hookspecs import PROJECT_NAME, TestpulsePolicySpec, hookimpl

logger = structlog.get_logger(__name__)


def should_process(event_type: EventType, enabled_events: frozenset[EventType]) -> bool:
    """Check the configured enabled set only."""
    return event_type in enabled_events


class ConfiguredEventsPlugin:
    """Built-in plugin answering from the configured enabled set."""

    def __init__(self, enabled_events: Iterable[EventType]) -> None:
        self._enabled_events = frozenset(enabled_events)

    @hookimpl
    def testpulse_event_enabled(self, event_type: str) -> bool | None:
        return should_process(EventType(event_type), self._enabled_events)


class EventPolicy:
    """Combines the configured set with plugin vetoes.

    Decisions are cached per kind; plugins are consulted once per kind.
    """

    def __init__(self, plugin_manager: pluggy.PluginManager) -> None:
        self._plugin_manager = plugin_manager
        self._cache: dict[EventType, bool] = {}

    @classmethod
    def allow_all(cls) -> "EventPolicy":
        return create_event_policy(frozenset(EventType))

    def is_enabled(self, event_type: EventType | str) -> bool:
        event_type = EventType(event_type)
        cached = self._cache.get(event_type)
        if cached is not None:
            return cached

        try:
            votes = self._plugin_manager.hook.testpulse_event_enabled(event_type=event_type.value)
        except Exception as e:
            # A broken plugin must not break the test run; process the event
            logger.warning("Event policy plugin failed", event_type=event_type.value, error=str(e))
            return True

        enabled = all(vote is not False for vote in votes)
        self._cache[event_type] = enabled
        if not enabled:
            logger.debug("Event kind disabled by policy", event_type=event_type.value)
        return enabled


def create_event_policy(
    enabled_events: Iterable[EventType],
    *,
    policy_plugins: Iterable[Any] = (),
) -> EventPolicy:
    """Build an EventPolicy with the configured set plus extra plugins.

    Raises:
        PolicyPluginError: If a plugin does not match the hook spec or is
            registered twice.
    """
    plugin_manager = pluggy.PluginManager(PROJECT_NAME)
    plugin_manager.add_hookspecs(TestpulsePolicySpec)

    for plugin in [ConfiguredEventsPlugin(enabled_events), *list(policy_plugins)]:
        try:
            plugin_manager.register(plugin)
            plugin_manager.check_pending()
        except (pluggy.PluginValidationError, ValueError) as e:
            if isinstance(e, pluggy.PluginValidationError) and plugin_manager.is_registered(plugin):
                plugin_manager.unregister(plugin=plugin)
            raise PolicyPluginError(type(plugin).__name__, str(e)) from e

    return EventPolicy(plugin_manager)
