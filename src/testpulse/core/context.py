# src/testpulse/core/context.py
"""Process-wide build signals held in one explicit object.

The launcher process starts a build on the analytics service and learns
its JWT and hashed id. Worker processes inherit those through environment
variables; ``BuildContext.from_env`` reads them back. Collaborators receive
the context by injection instead of reading globals.
"""

import os
import threading
from collections.abc import Mapping

ENV_BUILD_READY = "TESTPULSE_BUILD_READY"
ENV_JWT = "TESTPULSE_JWT"
ENV_BUILD_HASHED_ID = "TESTPULSE_BUILD_HASHED_ID"

_TRUTHY = frozenset({"1", "true", "yes", "on"})


class BuildContext:
    """Build-ready gate, auth token, tear-down flag and current test id.

    Thread Safety:
        Flags are ``threading.Event``; the token, build id and test id are
        guarded by a single lock. Safe to share between the adapter thread,
        the queue's timer thread and send threads.
    """

    def __init__(
        self,
        *,
        jwt: str | None = None,
        build_hashed_id: str | None = None,
        build_ready: bool = False,
    ) -> None:
        self._lock = threading.Lock()
        self._jwt = jwt
        self._build_hashed_id = build_hashed_id
        self._current_test_id: str | None = None
        self._build_ready = threading.Event()
        self._teardown = threading.Event()
        if build_ready:
            self._build_ready.set()

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "BuildContext":
        """Build a context from the variables the launcher exported."""
        env = os.environ if environ is None else environ
        return cls(
            jwt=env.get(ENV_JWT) or None,
            build_hashed_id=env.get(ENV_BUILD_HASHED_ID) or None,
            build_ready=env.get(ENV_BUILD_READY, "").strip().lower() in _TRUTHY,
        )

    # === Build-ready gate ===

    def mark_build_ready(self, *, jwt: str | None = None, build_hashed_id: str | None = None) -> None:
        with self._lock:
            if jwt is not None:
                self._jwt = jwt
            if build_hashed_id is not None:
                self._build_hashed_id = build_hashed_id
        self._build_ready.set()

    def is_build_ready(self) -> bool:
        return self._build_ready.is_set()

    def wait_build_ready(self, timeout: float | None = None) -> bool:
        return self._build_ready.wait(timeout)

    @property
    def jwt(self) -> str | None:
        with self._lock:
            return self._jwt

    @property
    def build_hashed_id(self) -> str | None:
        with self._lock:
            return self._build_hashed_id

    # === Tear-down ===

    @property
    def teardown_invoked(self) -> bool:
        return self._teardown.is_set()

    def invoke_teardown(self) -> None:
        self._teardown.set()

    # === Current test ===

    @property
    def current_test_id(self) -> str | None:
        with self._lock:
            return self._current_test_id

    @current_test_id.setter
    def current_test_id(self, value: str | None) -> None:
        with self._lock:
            self._current_test_id = value

    def export_env(self) -> dict[str, str]:
        """Variables a launcher sets so worker processes see this build."""
        env = {ENV_BUILD_READY: "true" if self.is_build_ready() else "false"}
        with self._lock:
            if self._jwt is not None:
                env[ENV_JWT] = self._jwt
            if self._build_hashed_id is not None:
                env[ENV_BUILD_HASHED_ID] = self._build_hashed_id
        return env
