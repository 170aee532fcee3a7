# src/testpulse/telemetry/factory.py
"""Factory functions for wiring an EventDispatcher from configuration.

Glue between settings and the runtime objects:
1. Convert PulseSettings to RuntimeDispatchConfig
2. Build the event policy (configured kinds plus policy plugins)
3. Create the HTTP sender, the event queue and the dispatcher

Usage:
    from testpulse.core.config import load_settings
    from testpulse.core.context import BuildContext
    from testpulse.telemetry.factory import create_dispatcher

    settings = load_settings(Path("testpulse.yaml"))
    dispatcher = create_dispatcher(settings, BuildContext.from_env())
"""

from collections.abc import Iterable
from typing import Any

import httpx
import structlog

from testpulse.contracts.config import RuntimeDispatchConfig
from testpulse.core.config import PulseSettings
from testpulse.core.context import BuildContext
from testpulse.telemetry.dispatcher import EventDispatcher
from testpulse.telemetry.filtering import create_event_policy
from testpulse.telemetry.protocols import SenderProtocol
from testpulse.telemetry.queue import EventQueue
from testpulse.telemetry.sender import HttpEventSender
from testpulse.usage.report import UsageStats

logger = structlog.get_logger(__name__)


def create_sender(
    settings: PulseSettings,
    context: BuildContext,
    *,
    client: httpx.Client | None = None,
) -> HttpEventSender:
    """Create the HTTP sender for the configured endpoint."""
    endpoint = settings.endpoint
    return HttpEventSender(
        context,
        base_url=endpoint.url,
        batch_path=endpoint.batch_path,
        screenshot_path=endpoint.screenshot_path,
        timeout=endpoint.timeout_seconds,
        client=client,
    )


def create_dispatcher(
    settings: PulseSettings,
    context: BuildContext,
    *,
    sender: SenderProtocol | None = None,
    usage_stats: UsageStats | None = None,
    policy_plugins: Iterable[Any] = (),
    autostart: bool = True,
) -> EventDispatcher:
    """Create an EventDispatcher with its own queue from settings.

    When ``settings.enabled`` is false every event kind is disabled, so the
    dispatcher accepts calls and does nothing.

    Args:
        settings: Validated settings.
        context: Build signals shared by queue, sender and dispatcher.
        sender: Transport override; the HTTP sender by default.
        usage_stats: Counters to update; a fresh set by default.
        policy_plugins: Extra plugins implementing ``testpulse_event_enabled``.
        autostart: Start the queue's timer thread on creation.

    Raises:
        ValueError: If the settings name an unknown event type
        PolicyPluginError: If a policy plugin is invalid
    """
    config = RuntimeDispatchConfig.from_settings(settings)
    enabled_events = config.enabled_events if config.enabled else frozenset()
    policy = create_event_policy(enabled_events, policy_plugins=policy_plugins)

    if sender is None:
        sender = create_sender(settings, context)

    def queue_factory(send: Any) -> EventQueue:
        return EventQueue(
            send,
            context,
            batch_size=config.batch_size,
            flush_interval=config.flush_interval,
            autostart=autostart,
        )

    dispatcher = EventDispatcher(
        context,
        sender,
        usage_stats=usage_stats,
        policy=policy,
        queue_factory=queue_factory,
        config=config,
    )
    logger.debug(
        "Event dispatcher created",
        enabled=config.enabled,
        batch_size=config.batch_size,
        flush_interval=config.flush_interval,
        enabled_events=sorted(e.value for e in enabled_events),
    )
    return dispatcher


__all__ = ["create_dispatcher", "create_sender"]
