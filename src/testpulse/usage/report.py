# src/testpulse/usage/report.py
"""Process-level usage counters and the build-level report.

Every worker process keeps one UsageStats. At worker end it writes
``get_data_to_save()`` to the worker data store; the launcher loads all
snapshots, merges them with ``add_data_from_workers`` and sends
``get_formatted_data`` along with the build stop call.
"""

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

import structlog

from testpulse.contracts.errors import CounterError
from testpulse.usage.feature_usage import FeatureUsage
from testpulse.usage.stats import FeatureStats

if TYPE_CHECKING:
    from testpulse.core.context import BuildContext

logger = structlog.get_logger(__name__)

WORKER_USAGE_KEY = "usageStats"


class UsageStats:
    """Counters for every event kind plus the build start/stop usage."""

    def __init__(self) -> None:
        self.test_started = FeatureStats()
        self.test_finished = FeatureStats()
        self.hook_started = FeatureStats()
        self.hook_finished = FeatureStats()
        self.cbt_session = FeatureStats()
        self.log_events = FeatureStats()
        self.launch_build = FeatureUsage()
        self.stop_build = FeatureUsage()

    def add(self, other: "UsageStats") -> None:
        """Merge another process's event counters into this one.

        Build start/stop usage is owned by the launcher and is not merged.
        """
        self.test_started.add(other.test_started)
        self.test_finished.add(other.test_finished)
        self.hook_started.add(other.hook_started)
        self.hook_finished.add(other.hook_finished)
        self.cbt_session.add(other.cbt_session)
        self.log_events.add(other.log_events)

    # =========================================================================
    # Worker snapshots
    # =========================================================================

    def get_data_to_save(self) -> dict[str, Any]:
        """Snapshot written by a worker at its end."""
        return {
            "testEvents": {
                "started": self.test_started.to_json(nested_groups=True),
                "finished": self.test_finished.to_json(nested_groups=True),
            },
            "hookEvents": {
                "started": self.hook_started.to_json(nested_groups=True),
                "finished": self.hook_finished.to_json(nested_groups=True),
            },
            "logEvents": self.log_events.to_json(nested_groups=True),
            "cbtSessionEvents": self.cbt_session.to_json(nested_groups=True),
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any] | None) -> "UsageStats":
        """Inverse of ``get_data_to_save``; missing sections are zero trees.

        Raises:
            CounterError: If a section is malformed.
        """
        usage = cls()
        if not data:
            return usage
        if not isinstance(data, Mapping):
            raise CounterError(f"Usage snapshot must be a mapping, got {type(data).__name__}")

        test_events = data.get("testEvents") or {}
        hook_events = data.get("hookEvents") or {}
        usage.test_started = FeatureStats.from_json(test_events.get("started"))
        usage.test_finished = FeatureStats.from_json(test_events.get("finished"))
        usage.hook_started = FeatureStats.from_json(hook_events.get("started"))
        usage.hook_finished = FeatureStats.from_json(hook_events.get("finished"))
        usage.log_events = FeatureStats.from_json(data.get("logEvents"))
        usage.cbt_session = FeatureStats.from_json(data.get("cbtSessionEvents"))
        return usage

    def add_data_from_workers(self, workers_data: Iterable[Mapping[str, Any]]) -> int:
        """Merge worker snapshots; malformed records are logged and skipped.

        Returns:
            Number of worker records merged.
        """
        merged = 0
        for index, worker_data in enumerate(workers_data):
            try:
                worker_usage = UsageStats.from_json(worker_data[WORKER_USAGE_KEY])
            except (KeyError, TypeError, AttributeError, CounterError) as e:
                logger.debug("Skipping malformed worker usage data", worker_index=index, error=str(e))
                continue
            self.add(worker_usage)
            merged += 1
        return merged

    # =========================================================================
    # Build report
    # =========================================================================

    def get_events_data(self) -> dict[str, Any]:
        """Event section of the build report.

        Finished counters appear twice: as an overview under ``finished``
        and flattened per result group (``passed``, ``failed``, ...).
        """
        return {
            "buildEvents": {
                "started": self.launch_build.to_json(),
                "finished": self.stop_build.to_json(),
            },
            "testEvents": {
                "started": self.test_started.to_json(),
                "finished": self.test_finished.to_json(omit_groups=True),
                **self.test_finished.to_json(only_groups=True),
            },
            "hookEvents": {
                "started": self.hook_started.to_json(),
                "finished": self.hook_finished.to_json(omit_groups=True),
                **self.hook_finished.to_json(only_groups=True),
            },
            "logEvents": self.log_events.to_json(),
            "cbtSessionEvents": self.cbt_session.to_json(),
        }

    def get_formatted_data(
        self,
        workers_data: Iterable[Mapping[str, Any]],
        *,
        context: "BuildContext | None" = None,
        enabled: bool = True,
        manually_set: bool = False,
    ) -> dict[str, Any]:
        """Merge worker snapshots and build the usage report for the build stop call."""
        self.add_data_from_workers(workers_data)
        usage: dict[str, Any] = {
            "enabled": enabled,
            "manuallySet": manually_set,
            "buildHashedId": None if context is None else context.build_hashed_id,
        }
        if not enabled:
            return usage
        usage["events"] = self.get_events_data()
        return usage
