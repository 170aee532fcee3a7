# src/testpulse/telemetry/hookspecs.py
"""pluggy hook specifications for event-policy plugins.

Plugins can veto event kinds at runtime, e.g. to turn off log shipping
for a particular framework adapter.

Usage (implementing a policy plugin):
    from testpulse.telemetry.hookspecs import hookimpl

    class NoLogsPlugin:
        @hookimpl
        def testpulse_event_enabled(self, event_type):
            if event_type == "LogCreated":
                return False
            return None
"""

import pluggy

PROJECT_NAME = "testpulse"

hookspec = pluggy.HookspecMarker(PROJECT_NAME)

hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


class TestpulsePolicySpec:
    """Hook specifications for event-policy plugins."""

    __test__ = False

    @hookspec
    def testpulse_event_enabled(self, event_type: str) -> bool | None:  # type: ignore[empty-body]
        """Decide whether events of ``event_type`` are processed.

        Returns:
            False to disable the kind, True or None to leave the decision
            to other plugins. Any False wins.
        """
