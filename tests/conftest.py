# tests/conftest.py
"""Shared fixtures and Hypothesis profiles for the test suite."""

import os
from collections.abc import Iterator

import pytest
from hypothesis import Phase, Verbosity, settings

from testpulse.core.context import BuildContext
from testpulse.telemetry.queue import EventQueue

# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Timing varies on shared runners
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def ready_context() -> BuildContext:
    """Build context with the ready gate open and a bearer token."""
    return BuildContext(jwt="jwt-token", build_hashed_id="build-123", build_ready=True)


@pytest.fixture
def unready_context() -> BuildContext:
    """Build context before the build-ready signal."""
    return BuildContext()


@pytest.fixture(autouse=True)
def _reset_shared_queue() -> Iterator[None]:
    """Keep the process-wide queue from leaking between tests."""
    EventQueue.reset_instance()
    yield
    shared = EventQueue.get_instance()
    if shared is not None:
        shared.shutdown(timeout=1.0)
    EventQueue.reset_instance()
