# src/testpulse/usage/stats.py
"""Hierarchical triggered/sent/failed counters.

A FeatureStats node holds three scalars and a map of named child nodes
(groups). Groups are created on first use and may nest arbitrarily. Trees
merge by summing scalars and recursively merging groups, so snapshots from
many worker processes combine into one build-level tree regardless of the
order they arrive in.

Serialized form (``nested_groups=True``):
    {"triggeredCount": 3, "sentCount": 2, "failedCount": 1,
     "groups": {"passed": {"triggeredCount": 2, ...}}}
"""

import threading
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

import structlog

from testpulse.contracts.enums import UsageStatus
from testpulse.contracts.errors import CounterError

logger = structlog.get_logger(__name__)

_TRIGGERED_KEY = "triggeredCount"
_SENT_KEY = "sentCount"
_FAILED_KEY = "failedCount"
_GROUPS_KEY = "groups"


def _check_group_id(group_id: object) -> str | None:
    """Normalize a group id; the empty string means no group."""
    if group_id is None or group_id == "":
        return None
    if not isinstance(group_id, str):
        raise CounterError(f"Group id must be a string, got {type(group_id).__name__}: {group_id!r}")
    return group_id


def _read_count(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key, 0)
    if value is None:
        return 0
    # bool is an int subclass but never a valid count
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise CounterError(f"{key} must be a non-negative integer, got {value!r}")
    return value


class FeatureStats:
    """Counter tree for one feature (test events, hook events, logs, ...).

    Thread Safety:
        Each node has its own lock. ``add`` snapshots the other tree before
        taking this node's lock, so merging two trees in opposite
        directions from two threads cannot deadlock.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._triggered_count = 0
        self._sent_count = 0
        self._failed_count = 0
        self._groups: dict[str, FeatureStats] = {}

    # =========================================================================
    # Marking
    # =========================================================================

    def mark(self, status: UsageStatus | str, group_id: str | None = None) -> None:
        """Record one transition, on this node and on ``group_id`` when given.

        Unknown statuses are logged and ignored.
        """
        try:
            status = UsageStatus(status)
        except ValueError:
            logger.debug("Ignoring unknown usage status", status=status, group_id=group_id)
            return

        match status:
            case UsageStatus.TRIGGERED:
                self.triggered(group_id)
            case UsageStatus.SUCCESS | UsageStatus.SENT:
                self.sent(group_id)
            case UsageStatus.FAILED:
                self.failed(group_id)

    def triggered(self, group_id: str | None = None) -> None:
        group_id = _check_group_id(group_id)
        with self._lock:
            self._triggered_count += 1
            if group_id is not None:
                self._group_locked(group_id).triggered()

    def sent(self, group_id: str | None = None) -> None:
        group_id = _check_group_id(group_id)
        with self._lock:
            self._sent_count += 1
            if group_id is not None:
                self._group_locked(group_id).sent()

    success = sent

    def failed(self, group_id: str | None = None) -> None:
        group_id = _check_group_id(group_id)
        with self._lock:
            self._failed_count += 1
            if group_id is not None:
                self._group_locked(group_id).failed()

    # =========================================================================
    # Groups
    # =========================================================================

    def _group_locked(self, group_id: str) -> "FeatureStats":
        group = self._groups.get(group_id)
        if group is None:
            group = FeatureStats()
            self._groups[group_id] = group
        return group

    def create_group(self, group_id: str) -> "FeatureStats":
        """Return the group, creating an empty one if absent."""
        checked = _check_group_id(group_id)
        if checked is None:
            raise CounterError("Cannot create a group with an empty id")
        with self._lock:
            return self._group_locked(checked)

    def get_usage_for_group(self, group_id: str) -> "FeatureStats":
        """Return the group, or a fresh zero tree when absent (not attached)."""
        with self._lock:
            group = self._groups.get(group_id)
        return group if group is not None else FeatureStats()

    @property
    def groups(self) -> Mapping[str, "FeatureStats"]:
        with self._lock:
            return MappingProxyType(dict(self._groups))

    # =========================================================================
    # Scalars
    # =========================================================================

    @property
    def triggered_count(self) -> int:
        return self._triggered_count

    @property
    def sent_count(self) -> int:
        return self._sent_count

    @property
    def failed_count(self) -> int:
        return self._failed_count

    def overview(self) -> dict[str, int]:
        with self._lock:
            return {
                _TRIGGERED_KEY: self._triggered_count,
                _SENT_KEY: self._sent_count,
                _FAILED_KEY: self._failed_count,
            }

    # =========================================================================
    # Merge
    # =========================================================================

    def add(self, other: "FeatureStats") -> None:
        """Sum ``other`` into this tree; groups only in ``other`` are copied in."""
        snapshot = other.copy()
        self._merge_snapshot(snapshot)

    def _merge_snapshot(self, snapshot: "FeatureStats") -> None:
        # snapshot is private to this call, no lock needed on it
        with self._lock:
            self._triggered_count += snapshot._triggered_count
            self._sent_count += snapshot._sent_count
            self._failed_count += snapshot._failed_count
            for group_id, group in snapshot._groups.items():
                existing = self._groups.get(group_id)
                if existing is None:
                    self._groups[group_id] = group
                else:
                    existing._merge_snapshot(group)

    def copy(self) -> "FeatureStats":
        """Deep copy of this tree."""
        clone = FeatureStats()
        with self._lock:
            clone._triggered_count = self._triggered_count
            clone._sent_count = self._sent_count
            clone._failed_count = self._failed_count
            clone._groups = {group_id: group.copy() for group_id, group in self._groups.items()}
        return clone

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_json(
        self,
        *,
        omit_groups: bool = False,
        only_groups: bool = False,
        nested_groups: bool = False,
    ) -> dict[str, Any]:
        """Serialize the tree.

        Args:
            omit_groups: Leave the groups out.
            only_groups: Leave the overview counts out.
            nested_groups: Put groups under ``"groups"`` instead of
                flattening them into the top level.

        Each group is serialized with default options, so its own
        sub-groups appear flattened inside it.
        """
        with self._lock:
            data: dict[str, Any] = {}
            if not only_groups:
                data.update(self.overview())
            if not omit_groups:
                if nested_groups:
                    data[_GROUPS_KEY] = {
                        group_id: group.to_json(nested_groups=True) for group_id, group in self._groups.items()
                    }
                else:
                    data.update({group_id: group.to_json() for group_id, group in self._groups.items()})
            return data

    @classmethod
    def from_json(cls, data: Mapping[str, Any] | None) -> "FeatureStats":
        """Rebuild a tree from its ``nested_groups=True`` form.

        ``None`` and ``{}`` decode to a zero tree; missing counts are 0.

        Raises:
            CounterError: If a count is not a non-negative integer or the
                groups entry is not a mapping keyed by strings.
        """
        stats = cls()
        if not data:
            return stats
        if not isinstance(data, Mapping):
            raise CounterError(f"Stats must be a mapping, got {type(data).__name__}")

        stats._triggered_count = _read_count(data, _TRIGGERED_KEY)
        stats._sent_count = _read_count(data, _SENT_KEY)
        stats._failed_count = _read_count(data, _FAILED_KEY)

        groups = data.get(_GROUPS_KEY) or {}
        if not isinstance(groups, Mapping):
            raise CounterError(f"groups must be a mapping, got {type(groups).__name__}")
        for group_id, group_data in groups.items():
            checked = _check_group_id(group_id)
            if checked is None:
                raise CounterError("Serialized stats contain an empty group id")
            stats._groups[checked] = cls.from_json(group_data)
        return stats

    # =========================================================================
    # Comparison
    # =========================================================================

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FeatureStats):
            return NotImplemented
        return self.to_json(nested_groups=True) == other.to_json(nested_groups=True)

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"FeatureStats({self.to_json(nested_groups=True)!r})"
