"""
Error taxonomy for the radio watchdog.

Every way a role can fail is represented by one of the classes below so the
orchestrator and restart policy can make decisions from a closed set of
variants instead of raw exit statuses.

- ConfigurationError: deployment mistake, fatal immediately, never retried
- SpawnError: executable missing or receiver hardware unavailable
- UnexpectedExit: a role process exited while it was supposed to run
- StartupTimeout: a role never produced output / readiness in time
- StreamStall: a role is alive but its byte stream stopped advancing
- ShutdownRequested: not an error, drives graceful teardown
"""

from __future__ import annotations

import signal
from typing import Optional


class WatchdogError(Exception):
    """Base class for all watchdog errors."""


class ConfigurationError(WatchdogError):
    """Raised when the watchdog configuration is missing or invalid."""


class RoleFailure(WatchdogError):
    """
    Base class for failures of a single pipeline role.

    Role failures are recovered by the restart policy and never surface past
    the orchestrator unless the role's failure budget is exhausted.
    """

    kind = "failure"

    def __init__(self, role: str, message: str) -> None:
        super().__init__(message)
        self.role = role

    def describe(self) -> str:
        return f"{self.kind}: {self}"


class SpawnError(RoleFailure):
    """Raised when a role's executable cannot be launched or dies during its spawn grace period."""

    kind = "spawn_error"

    def __init__(
        self,
        role: str,
        message: str,
        exit_code: Optional[int] = None,
        stderr_tail: str = "",
    ) -> None:
        super().__init__(role, message)
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail


class UnexpectedExit(RoleFailure):
    """A role process exited on its own while it was expected to keep running."""

    kind = "unexpected_exit"

    def __init__(self, role: str, returncode: Optional[int], stderr_tail: str = "") -> None:
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        super().__init__(role, f"{role} exited ({describe_returncode(returncode)})")

    @property
    def exit_code(self) -> Optional[int]:
        if self.returncode is None or self.returncode < 0:
            return None
        return self.returncode

    @property
    def signal_number(self) -> Optional[int]:
        if self.returncode is None or self.returncode >= 0:
            return None
        return -self.returncode


class StartupTimeout(UnexpectedExit):
    """A role did not report output or readiness within the startup timeout."""

    kind = "startup_timeout"

    def __init__(self, role: str, timeout_sec: float, stderr_tail: str = "") -> None:
        self.timeout_sec = timeout_sec
        RoleFailure.__init__(
            self, role, f"{role} produced no output within {timeout_sec:.1f}s"
        )
        self.returncode = None
        self.stderr_tail = stderr_tail


class StreamStall(RoleFailure):
    """A role is still alive but no bytes crossed its pipe for too long."""

    kind = "stream_stall"

    def __init__(self, role: str, pipe_name: str, stalled_sec: float) -> None:
        super().__init__(
            role, f"{pipe_name} stalled for {stalled_sec:.1f}s"
        )
        self.pipe_name = pipe_name
        self.stalled_sec = stalled_sec


class ShutdownRequested(WatchdogError):
    """Graceful (or forced) shutdown request. Not a failure."""

    def __init__(self, signum: Optional[int] = None, forced: bool = False) -> None:
        self.signum = signum
        self.forced = forced
        super().__init__(f"shutdown requested ({signal_name(signum)}, forced={forced})")


def signal_name(signum: Optional[int]) -> str:
    if signum is None:
        return "no signal"
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


def describe_returncode(returncode: Optional[int]) -> str:
    """Render a Popen-style returncode (negative means killed by signal)."""
    if returncode is None:
        return "status unknown"
    if returncode < 0:
        return f"killed by {signal_name(-returncode)}"
    return f"exit code {returncode}"
