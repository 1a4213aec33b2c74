"""
Events consumed by the orchestrator control loop.

Everything that happens outside the control loop (process exits collected by
the reaper, stream activity seen by pipes and monitors, signals) is turned
into one of these immutable notifications and posted to the loop's queue.
Events that concern a specific process carry its generation so that late
notifications about a replaced process are ignored.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from radiowatch.errors import ShutdownRequested
from radiowatch.roles import Role


class TimerKind(enum.Enum):
    RETRY = "retry"
    STARTUP_TIMEOUT = "startup_timeout"
    STALL_GRACE = "stall_grace"
    STABILITY = "stability"


@dataclass(frozen=True)
class ProcessExited:
    role: Role
    generation: int


@dataclass(frozen=True)
class OutputObserved:
    """First stdout bytes of a role process (posted once per generation)."""
    role: Role
    generation: int


@dataclass(frozen=True)
class RoleReady:
    """A role that does not prove liveness by output reported ready."""
    role: Role
    generation: int


@dataclass(frozen=True)
class StallDetected:
    role: Role
    generation: int
    pipe_name: str
    stalled_sec: float


@dataclass(frozen=True)
class StallCleared:
    role: Role
    generation: int
    pipe_name: str


@dataclass(frozen=True)
class TimerFired:
    kind: TimerKind
    role: Role
    generation: int


@dataclass(frozen=True)
class Shutdown:
    request: ShutdownRequested
