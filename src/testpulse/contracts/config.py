# src/testpulse/contracts/config.py
"""Runtime configuration consumed by the queue and dispatcher.

Settings models (pydantic, in ``testpulse.core.config``) describe what a
user can write in YAML or the environment. This module holds the frozen
runtime view built from them, with string values parsed into enums and
durations already in seconds.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

from testpulse.contracts.enums import LOG_KIND_USAGE_MAP, EventType

if TYPE_CHECKING:
    from testpulse.core.config import PulseSettings


@dataclass(frozen=True, slots=True)
class RuntimeDispatchConfig:
    """Runtime configuration for event batching and delivery.

    Field Origins (all from PulseSettings):
        - enabled: PulseSettings.enabled
        - batch_size: PulseSettings.batching.size
        - flush_interval: PulseSettings.batching.interval_seconds
        - upload_wait_timeout: PulseSettings.uploads.wait_timeout_seconds
        - enabled_events: PulseSettings.enabled_events (parsed to EventType)
        - log_kind_map: PulseSettings.log_kind_map
    """

    enabled: bool
    batch_size: int
    flush_interval: float
    upload_wait_timeout: float
    enabled_events: frozenset[EventType]
    log_kind_map: Mapping[str, str] = field(default_factory=lambda: LOG_KIND_USAGE_MAP)

    @classmethod
    def default(cls) -> "RuntimeDispatchConfig":
        """Factory for the default configuration: every event kind enabled."""
        return cls(
            enabled=True,
            batch_size=1000,
            flush_interval=2.0,
            upload_wait_timeout=60.0,
            enabled_events=frozenset(EventType),
        )

    @classmethod
    def from_settings(cls, settings: "PulseSettings") -> "RuntimeDispatchConfig":
        """Factory from the PulseSettings config model.

        Raises:
            ValueError: If an enabled event name is not a known event type
        """
        enabled_events: set[EventType] = set()
        for name in settings.enabled_events:
            try:
                enabled_events.add(EventType(name))
            except ValueError:
                known = sorted(e.value for e in EventType)
                raise ValueError(f"Unknown event type {name!r} in enabled_events. Use one of: {known}") from None

        return cls(
            enabled=settings.enabled,
            batch_size=settings.batching.size,
            flush_interval=settings.batching.interval_seconds,
            upload_wait_timeout=settings.uploads.wait_timeout_seconds,
            enabled_events=frozenset(enabled_events),
            log_kind_map=MappingProxyType(dict(settings.log_kind_map)),
        )

    def normalize_log_kind(self, kind: str | None) -> str | None:
        """Map an adapter log kind to its counter group; unknown kinds pass through."""
        if kind is None:
            return None
        return self.log_kind_map.get(kind, kind)
