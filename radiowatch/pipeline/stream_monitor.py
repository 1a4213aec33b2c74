"""
Stream stall detection.

A hung decoder (signal lost, dongle wedged) can stay alive while producing
nothing, which exit-status monitoring cannot see. StreamMonitor watches the
bytes crossing one pipe and raises a stall event exactly once per stall
episode. It also watches the delivery side: if the pipe cannot hand its
backlog to the downstream role for longer than the stall timeout, that
downstream role is reported as stalled.

StreamHealth is mutated only here. The pipe pump reports activity through
observe()/observe_delivery(); the orchestrator reads snapshots via health().
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

from radiowatch.pipeline.events import StallCleared, StallDetected
from radiowatch.roles import Role

logger = logging.getLogger(__name__)


@dataclass
class StreamHealth:
    """
    Per-pipe health record.

    Attributes:
        pipe_name: Human-readable pipe name, e.g. "DECODE->TRANSCODE"
        last_byte_at: Monotonic timestamp of the last byte read from the source
        stalled: True while a source stall episode is active
        stalled_since: When the current source stall episode started
        bytes_total: Bytes read from the source over the pipe's lifetime
        delivery_stalled: True while the sink cannot accept the backlog
        armed: True while the upstream role is Running (stall detection active)
    """
    pipe_name: str
    last_byte_at: Optional[float] = None
    stalled: bool = False
    stalled_since: Optional[float] = None
    bytes_total: int = 0
    delivery_stalled: bool = False
    armed: bool = False

    def to_dict(self, now: Optional[float] = None) -> dict:
        now = time.monotonic() if now is None else now
        return {
            "pipe": self.pipe_name,
            "stalled": self.stalled,
            "delivery_stalled": self.delivery_stalled,
            "armed": self.armed,
            "bytes_total": self.bytes_total,
            "seconds_since_last_byte": (
                round(now - self.last_byte_at, 3) if self.last_byte_at is not None else None
            ),
        }


class StreamMonitor(threading.Thread):
    """
    Periodic stall checker for one pipe.

    Attributes:
        source_role: Role whose stdout feeds the pipe (blamed for source stalls)
        sink_role: Role whose stdin the pipe feeds (blamed for delivery stalls), or None
        stall_timeout_sec: Silence longer than this is a stall
    """

    def __init__(
        self,
        pipe_name: str,
        source_role: Role,
        sink_role: Optional[Role],
        stall_timeout_sec: float,
        post: Callable[[Any], None],
        check_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(name=f"StreamMonitor[{pipe_name}]", daemon=True)
        self.source_role = source_role
        self.sink_role = sink_role
        self.stall_timeout_sec = stall_timeout_sec
        self._post = post
        self._clock = clock
        self._check_interval = (
            check_interval if check_interval is not None else min(stall_timeout_sec / 4.0, 0.5)
        )
        self._lock = threading.Lock()
        self._health = StreamHealth(pipe_name=pipe_name)
        self._shutdown_event = threading.Event()

        self._source_generation: Optional[int] = None
        self._sink_generation: Optional[int] = None
        self._last_delivery_at: Optional[float] = None
        self._delivery_pending = False

    @property
    def pipe_name(self) -> str:
        return self._health.pipe_name

    # ------------------------------------------------------------------
    # Commands from the orchestrator
    # ------------------------------------------------------------------

    def arm(self, generation: int) -> None:
        """Start stall detection for the given source generation (role entered Running)."""
        with self._lock:
            self._source_generation = generation
            self._health.armed = True
            self._health.last_byte_at = self._clock()
            self._health.stalled = False
            self._health.stalled_since = None
        logger.debug(f"[{self.pipe_name}] stall detection armed (generation {generation})")

    def disarm(self) -> None:
        with self._lock:
            self._source_generation = None
            self._health.armed = False
            self._health.stalled = False
            self._health.stalled_since = None

    def arm_sink(self, generation: int) -> None:
        """Start delivery-stall detection for the given sink generation."""
        with self._lock:
            self._sink_generation = generation
            self._last_delivery_at = self._clock()
            self._health.delivery_stalled = False

    def disarm_sink(self) -> None:
        with self._lock:
            self._sink_generation = None
            self._health.delivery_stalled = False

    # ------------------------------------------------------------------
    # Activity reports from the pipe pump
    # ------------------------------------------------------------------

    def observe(self, nbytes: int) -> None:
        """Record bytes read from the source; clears an active source stall."""
        cleared: Optional[StallCleared] = None
        with self._lock:
            self._health.last_byte_at = self._clock()
            self._health.bytes_total += nbytes
            if self._health.stalled:
                self._health.stalled = False
                self._health.stalled_since = None
                if self._source_generation is not None:
                    cleared = StallCleared(self.source_role, self._source_generation, self.pipe_name)
        if cleared is not None:
            logger.info(f"[{self.pipe_name}] bytes flowing again, stall cleared")
            self._post(cleared)

    def observe_delivery(self, delivered: int, pending: bool) -> None:
        """Record a delivery attempt to the sink: bytes written and whether backlog remains."""
        cleared: Optional[StallCleared] = None
        with self._lock:
            self._delivery_pending = pending
            if delivered > 0 or not pending:
                self._last_delivery_at = self._clock()
                if self._health.delivery_stalled:
                    self._health.delivery_stalled = False
                    if self.sink_role is not None and self._sink_generation is not None:
                        cleared = StallCleared(self.sink_role, self._sink_generation, self.pipe_name)
        if cleared is not None:
            logger.info(f"[{self.pipe_name}] delivery resumed")
            self._post(cleared)

    # ------------------------------------------------------------------
    # Checking
    # ------------------------------------------------------------------

    def check(self) -> None:
        """Run one stall check. Posts at most one event per stall episode."""
        events = []
        now = self._clock()
        with self._lock:
            health = self._health
            if (
                health.armed
                and not health.stalled
                and health.last_byte_at is not None
                and now - health.last_byte_at > self.stall_timeout_sec
            ):
                health.stalled = True
                health.stalled_since = now
                events.append(
                    StallDetected(
                        self.source_role,
                        self._source_generation,
                        self.pipe_name,
                        now - health.last_byte_at,
                    )
                )

            if (
                self.sink_role is not None
                and self._sink_generation is not None
                and self._delivery_pending
                and not health.delivery_stalled
                and self._last_delivery_at is not None
                and now - self._last_delivery_at > self.stall_timeout_sec
            ):
                health.delivery_stalled = True
                events.append(
                    StallDetected(
                        self.sink_role,
                        self._sink_generation,
                        self.pipe_name,
                        now - self._last_delivery_at,
                    )
                )

        for event in events:
            logger.warning(
                f"[{self.pipe_name}] stall detected: {event.role.label} "
                f"({event.stalled_sec:.1f}s without bytes)"
            )
            self._post(event)

    def health(self) -> StreamHealth:
        """Snapshot copy of the health record."""
        with self._lock:
            return replace(self._health)

    def run(self) -> None:
        logger.debug(f"[{self.pipe_name}] stream monitor started")
        while not self._shutdown_event.wait(timeout=self._check_interval):
            try:
                self.check()
            except Exception as e:
                logger.error(f"[{self.pipe_name}] stall check failed: {e}", exc_info=True)
        logger.debug(f"[{self.pipe_name}] stream monitor exiting")

    def stop(self, timeout: float = 1.0) -> None:
        self._shutdown_event.set()
        if self.is_alive():
            self.join(timeout=timeout)
            if self.is_alive():
                logger.warning(f"[{self.pipe_name}] stream monitor did not terminate within timeout")
