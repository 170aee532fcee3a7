# src/testpulse/__init__.py
"""testpulse: test-run event pipeline.

Collects lifecycle events from a running test suite, batches them for
delivery to an analytics ingestion endpoint, and keeps per-feature usage
counters that are merged across worker processes into a build report.
"""

__version__ = "0.1.0"
