# src/testpulse/usage/__init__.py
"""Usage counters: per-feature stats, one-shot usage, worker snapshots."""

from testpulse.usage.feature_usage import FeatureUsage
from testpulse.usage.report import UsageStats
from testpulse.usage.stats import FeatureStats
from testpulse.usage.store import WorkerDataStore

__all__ = ["FeatureStats", "FeatureUsage", "UsageStats", "WorkerDataStore"]
