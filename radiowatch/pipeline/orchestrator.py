"""
Pipeline orchestrator.

Owns the per-role state machines of the decode -> transcode -> forward chain
and is the only place where state transitions happen. The reaper, pipes,
stream monitors and signal handlers never touch role state directly: they
post events (see radiowatch.pipeline.events) to a queue consumed by a single
control-loop thread. Retry, startup-timeout, stall-grace and stability timers
live in a heap inside the same loop.

Per-role states:

    STOPPED -> STARTING -> RUNNING <-> STALLED
    STALLED -> STARTING (upstream no longer RUNNING; process kept)
    STARTING | RUNNING | STALLED -> RESTARTING -> STARTING
    any -> STOPPING -> STOPPED
    any -> FATALLY_FAILED (terminal, reached at most once per pipeline)

A downstream role is spawned only once its upstream role is RUNNING, and is
never promoted to RUNNING while its upstream role is not RUNNING. Every entry
of a role into RUNNING wakes its downstream role if that one is waiting.
"""

from __future__ import annotations

import enum
import heapq
import itertools
import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from radiowatch.config import WatchdogConfig
from radiowatch.errors import (
    RoleFailure,
    ShutdownRequested,
    SpawnError,
    StartupTimeout,
    StreamStall,
)
from radiowatch.pipeline.events import (
    OutputObserved,
    ProcessExited,
    RoleReady,
    Shutdown,
    StallCleared,
    StallDetected,
    TimerFired,
    TimerKind,
)
from radiowatch.pipeline.pipe import Pipe
from radiowatch.pipeline.restart_policy import RestartPolicy, RestartRecord
from radiowatch.pipeline.stream_monitor import StreamHealth, StreamMonitor
from radiowatch.process.managed_process import ManagedProcess
from radiowatch.process.reaper import Reaper
from radiowatch.roles import PIPELINE_ORDER, SHUTDOWN_ORDER, Role

logger = logging.getLogger(__name__)

# Alerts and status are refreshed at most this often
TICK_INTERVAL_SEC = 1.0

# Timers may fire this much early due to clock granularity
TIMER_SLACK_SEC = 0.01


class RoleState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STALLED = "stalled"
    RESTARTING = "restarting"
    STOPPING = "stopping"
    FATALLY_FAILED = "fatally_failed"


class PipelineHealth(enum.Enum):
    STARTING = "starting"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FATALLY_FAILED = "fatally_failed"
    STOPPED = "stopped"


@dataclass
class RoleSlot:
    """Orchestrator-internal state of one role."""
    role: Role
    state: RoleState = RoleState.STOPPED
    process: Optional[ManagedProcess] = None
    generation: int = 0
    running_since: Optional[float] = None
    stalled_since: Optional[float] = None
    stalled_pipe: Optional[str] = None
    last_failure: Optional[RoleFailure] = None
    output_seen: bool = False


@dataclass(frozen=True)
class TransitionRecord:
    at: float
    role: Role
    from_state: RoleState
    to_state: RoleState
    upstream_state: Optional[RoleState]


@dataclass
class RoleStatus:
    role: Role
    state: RoleState
    pid: Optional[int]
    generation: int
    running_since: Optional[float]
    last_failure: Optional[str]
    restarts: RestartRecord

    def to_dict(self, now: float) -> dict:
        return {
            "state": self.state.value,
            "pid": self.pid,
            "generation": self.generation,
            "running_for_sec": (
                round(now - self.running_since, 1) if self.running_since is not None else None
            ),
            "last_failure": self.last_failure,
            "consecutive_failures": self.restarts.consecutive_failures,
            "total_restarts": self.restarts.total_restarts,
            "last_delay_sec": round(self.restarts.last_delay, 3),
        }


@dataclass
class PipelineSnapshot:
    health: PipelineHealth
    roles: Dict[Role, RoleStatus]
    streams: List[StreamHealth] = field(default_factory=list)
    pipes: List[dict] = field(default_factory=list)
    taken_at: float = field(default_factory=time.monotonic)

    def to_dict(self) -> dict:
        return {
            "health": self.health.value,
            "roles": {role.value: status.to_dict(self.taken_at) for role, status in self.roles.items()},
            "streams": [health.to_dict(self.taken_at) for health in self.streams],
            "pipes": self.pipes,
        }


@dataclass
class PipelineOutcome:
    """How the control loop ended: after a shutdown request, or fatally."""
    fatal: bool
    failure: Optional[RoleFailure] = None
    shutdown: Optional[ShutdownRequested] = None


class Orchestrator:
    """
    Drives the three role state machines from a single control loop.

    Typical use:

        orchestrator = Orchestrator(config, commands, reaper)
        orchestrator.start()
        orchestrator.wait()
        outcome = orchestrator.outcome
    """

    def __init__(
        self,
        config: WatchdogConfig,
        commands: Dict[Role, List[str]],
        reaper: Reaper,
        policy: Optional[RestartPolicy] = None,
        on_tick: Optional[Callable[[PipelineSnapshot], None]] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        self.config = config
        self._commands = commands
        self._reaper = reaper
        self._env = env
        self._on_tick = on_tick
        self._policy = policy or RestartPolicy(
            max_restarts=config.max_restarts,
            backoff_base_ms=config.backoff_base_ms,
            backoff_max_ms=config.backoff_max_ms,
            backoff_jitter=config.backoff_jitter,
        )

        self._events: "queue.Queue[Any]" = queue.Queue()
        self._timers: List[Tuple[float, int, TimerFired]] = []
        self._timer_seq = itertools.count()
        self._shutdown_event = threading.Event()
        self._done_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._finished = False
        self._outcome: Optional[PipelineOutcome] = None
        self._all_running_once = False
        self._last_tick = 0.0

        self._slots: Dict[Role, RoleSlot] = {role: RoleSlot(role) for role in PIPELINE_ORDER}
        self.transitions: Deque[TransitionRecord] = deque(maxlen=1000)

        # One pipe per link plus a discard sink for the last role's stdout
        self._outbound: Dict[Role, Pipe] = {}
        self._inbound: Dict[Role, Pipe] = {}
        for role in PIPELINE_ORDER:
            downstream = role.downstream
            if downstream is not None:
                name = f"{role.label}->{downstream.label}"
                monitor = StreamMonitor(
                    name,
                    source_role=role,
                    sink_role=downstream,
                    stall_timeout_sec=config.stall_timeout_sec,
                    post=self.post,
                )
                pipe = Pipe(
                    name,
                    source_role=role,
                    sink_role=downstream,
                    post=self.post,
                    monitor=monitor,
                    backlog_bytes=config.pipe_backlog_bytes,
                )
                self._inbound[downstream] = pipe
            else:
                pipe = Pipe(f"{role.label}->discard", source_role=role, sink_role=None, post=self.post)
            self._outbound[role] = pipe
        self._armed_source: Dict[str, Optional[int]] = {p.pipe_name: None for p in self.pipes}
        self._armed_sink: Dict[str, Optional[int]] = {p.pipe_name: None for p in self.pipes}

        self._published: PipelineSnapshot = self._build_snapshot()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def pipes(self) -> List[Pipe]:
        return [self._outbound[role] for role in PIPELINE_ORDER]

    @property
    def policy(self) -> RestartPolicy:
        return self._policy

    @property
    def outcome(self) -> Optional[PipelineOutcome]:
        return self._outcome

    @property
    def ever_healthy(self) -> bool:
        """True once every role has been RUNNING at the same time."""
        return self._all_running_once

    @property
    def started(self) -> bool:
        return self._thread is not None

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Orchestrator already started")
        for pipe in self.pipes:
            pipe.start()
            if pipe.monitor is not None:
                pipe.monitor.start()
        self._thread = threading.Thread(target=self._run, daemon=True, name="Orchestrator")
        self._thread.start()
        logger.info("Orchestrator started")

    def post(self, event: Any) -> None:
        """Thread-safe: hand an event to the control loop."""
        self._events.put(event)

    def request_shutdown(self, request: Optional[ShutdownRequested] = None) -> None:
        """Thread- and signal-safe shutdown request; cuts pending spawn waits short."""
        self._shutdown_event.set()
        self.post(Shutdown(request or ShutdownRequested()))

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the control loop has finished. Returns True if it did."""
        return self._done_event.wait(timeout=timeout)

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def snapshot(self) -> PipelineSnapshot:
        """Latest published role states combined with live stream health."""
        published = self._published
        streams = [p.monitor.health() for p in self.pipes if p.monitor is not None]
        health = published.health
        if health == PipelineHealth.HEALTHY and any(s.stalled or s.delivery_stalled for s in streams):
            health = PipelineHealth.DEGRADED
        return PipelineSnapshot(
            health=health,
            roles=published.roles,
            streams=streams,
            pipes=[pipe.to_dict() for pipe in self.pipes],
        )

    def state_of(self, role: Role) -> RoleState:
        return self._slots[role].state

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def _run(self) -> None:
        try:
            self._start_pipeline()
            while not self._finished:
                try:
                    event = self._events.get(timeout=self._next_wakeup())
                except queue.Empty:
                    event = None
                try:
                    if event is not None:
                        self._dispatch(event)
                    if not self._finished:
                        self._fire_due_timers()
                except Exception as e:
                    logger.error(f"Orchestrator: error handling {event!r}: {e}", exc_info=True)
                self._publish()
                self._maybe_tick()
        except Exception as e:
            logger.critical(f"Orchestrator: control loop crashed: {e}", exc_info=True)
            self._stop_all()
        finally:
            for pipe in self.pipes:
                if pipe.monitor is not None:
                    pipe.monitor.stop()
                pipe.stop()
            self._publish()
            self._maybe_tick(force=True)
            self._done_event.set()
            logger.info("Orchestrator stopped")

    def _next_wakeup(self) -> float:
        timeout = TICK_INTERVAL_SEC
        if self._timers:
            timeout = min(timeout, max(0.0, self._timers[0][0] - time.monotonic()))
        return timeout

    def _dispatch(self, event: Any) -> None:
        if isinstance(event, Shutdown):
            self._shutdown(event.request)
        elif isinstance(event, ProcessExited):
            self._handle_exit(event)
        elif isinstance(event, (OutputObserved, RoleReady)):
            self._handle_liveness(event.role, event.generation)
        elif isinstance(event, StallDetected):
            self._handle_stall(event)
        elif isinstance(event, StallCleared):
            self._handle_stall_cleared(event)
        elif isinstance(event, TimerFired):
            self._handle_timer(event)
        else:
            logger.warning(f"Orchestrator: ignoring unknown event {event!r}")

    def _maybe_tick(self, force: bool = False) -> None:
        if self._on_tick is None:
            return
        now = time.monotonic()
        if not force and now - self._last_tick < TICK_INTERVAL_SEC:
            return
        self._last_tick = now
        try:
            self._on_tick(self.snapshot())
        except Exception as e:
            logger.error(f"Orchestrator: tick listener failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _schedule(self, delay: float, kind: TimerKind, slot: RoleSlot) -> None:
        timer = TimerFired(kind, slot.role, slot.generation)
        heapq.heappush(self._timers, (time.monotonic() + delay, next(self._timer_seq), timer))

    def _fire_due_timers(self) -> None:
        now = time.monotonic()
        while self._timers and self._timers[0][0] <= now + TIMER_SLACK_SEC and not self._finished:
            _, _, timer = heapq.heappop(self._timers)
            self._handle_timer(timer)

    def _handle_timer(self, timer: TimerFired) -> None:
        slot = self._slots[timer.role]
        if timer.generation != slot.generation:
            return
        now = time.monotonic()

        if timer.kind == TimerKind.RETRY:
            if slot.state == RoleState.RESTARTING:
                self._begin_start(slot)

        elif timer.kind == TimerKind.STARTUP_TIMEOUT:
            if slot.state != RoleState.STARTING or slot.process is None:
                return
            upstream = timer.role.upstream
            if upstream is not None and self._slots[upstream].state != RoleState.RUNNING:
                # Starved by its upstream; not this role's fault
                self._schedule(self.config.startup_timeout_sec, TimerKind.STARTUP_TIMEOUT, slot)
                return
            self._fail(
                slot,
                StartupTimeout(
                    timer.role.value,
                    self.config.startup_timeout_sec,
                    stderr_tail=slot.process.last_stderr,
                ),
            )

        elif timer.kind == TimerKind.STALL_GRACE:
            if slot.state != RoleState.STALLED or slot.stalled_since is None:
                return
            stalled_for = now - slot.stalled_since
            if stalled_for + TIMER_SLACK_SEC < self.config.stall_restart_grace_sec:
                return
            self._fail(
                slot,
                StreamStall(
                    timer.role.value,
                    slot.stalled_pipe or "",
                    stalled_for + self.config.stall_timeout_sec,
                ),
            )

        elif timer.kind == TimerKind.STABILITY:
            if slot.state != RoleState.RUNNING or slot.running_since is None:
                return
            if now - slot.running_since + TIMER_SLACK_SEC >= self.config.stability_window_sec:
                self._policy.on_stable(timer.role)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _set_state(self, slot: RoleSlot, state: RoleState) -> None:
        if slot.state == state:
            return
        upstream = slot.role.upstream
        record = TransitionRecord(
            at=time.monotonic(),
            role=slot.role,
            from_state=slot.state,
            to_state=state,
            upstream_state=self._slots[upstream].state if upstream is not None else None,
        )
        self.transitions.append(record)
        logger.info(f"[{slot.role.label}] {slot.state.value} -> {state.value}")
        slot.state = state

    def _start_pipeline(self) -> None:
        logger.info("Starting pipeline: " + " -> ".join(role.label for role in PIPELINE_ORDER))
        for role in PIPELINE_ORDER:
            if self._finished or self._shutdown_event.is_set():
                break
            self._begin_start(self._slots[role])

    def _begin_start(self, slot: RoleSlot) -> None:
        """Enter STARTING; spawn now if the upstream role is RUNNING, else wait for it."""
        self._set_state(slot, RoleState.STARTING)
        slot.output_seen = False
        upstream = slot.role.upstream
        if upstream is None or self._slots[upstream].state == RoleState.RUNNING:
            self._spawn(slot)
        else:
            logger.info(f"[{slot.role.label}] waiting for {upstream.label} to be running")

    def _spawn(self, slot: RoleSlot) -> None:
        role = slot.role
        slot.generation += 1
        process = ManagedProcess(
            role,
            self._commands[role],
            self._reaper,
            env=self._env,
            spawn_grace_sec=self.config.spawn_grace_sec,
            generation=slot.generation,
            ready_pattern=self.config.forward_ready_pattern if role is Role.FORWARD else None,
            on_exit=self._on_process_exit,
            on_ready=self._on_process_ready,
        )
        slot.process = process
        try:
            handle = process.start(cancel_event=self._shutdown_event)
        except SpawnError as e:
            slot.process = None
            self._fail(slot, e)
            return

        self._outbound[role].attach_source(handle.stdout, slot.generation)
        inbound = self._inbound.get(role)
        if inbound is not None:
            inbound.attach_sink(handle.stdin, slot.generation)
        self._schedule(self.config.startup_timeout_sec, TimerKind.STARTUP_TIMEOUT, slot)

        if not role.ready_on_output and self.config.forward_ready_pattern is None:
            # Surviving the spawn grace period is the only readiness signal
            self._handle_liveness(role, slot.generation)

    def _on_process_exit(self, process: ManagedProcess) -> None:
        # Reaper thread
        self.post(ProcessExited(process.role, process.generation))

    def _on_process_ready(self, process: ManagedProcess) -> None:
        # stderr drain thread
        self.post(RoleReady(process.role, process.generation))

    def _handle_liveness(self, role: Role, generation: int) -> None:
        slot = self._slots[role]
        if generation != slot.generation or slot.process is None:
            return
        if not slot.output_seen:
            slot.output_seen = True
            logger.debug(f"[{role.label}] first sign of life (generation {generation})")
        self._try_promote(slot)

    def _try_promote(self, slot: RoleSlot) -> None:
        if slot.state != RoleState.STARTING or slot.process is None or not slot.output_seen:
            return
        upstream = slot.role.upstream
        if upstream is not None and self._slots[upstream].state != RoleState.RUNNING:
            logger.debug(f"[{slot.role.label}] promotion deferred until {upstream.label} is running")
            return

        self._enter_running(slot)

    def _enter_running(self, slot: RoleSlot) -> None:
        """Enter RUNNING (upstream must be RUNNING) and wake a downstream role waiting in STARTING."""
        self._set_state(slot, RoleState.RUNNING)
        slot.running_since = time.monotonic()
        slot.stalled_since = None
        slot.stalled_pipe = None
        self._schedule(self.config.stability_window_sec, TimerKind.STABILITY, slot)
        self._update_arming()

        if all(s.state == RoleState.RUNNING for s in self._slots.values()):
            if not self._all_running_once:
                logger.info("Pipeline healthy: all roles running")
            self._all_running_once = True

        downstream = slot.role.downstream
        if downstream is not None and slot.state == RoleState.RUNNING:
            down_slot = self._slots[downstream]
            if down_slot.state == RoleState.STARTING:
                if down_slot.process is None:
                    self._spawn(down_slot)
                else:
                    self._try_promote(down_slot)

    def _resume(self, slot: RoleSlot) -> None:
        """Leave STALLED: back to RUNNING, or to STARTING if the upstream role is not RUNNING."""
        upstream = slot.role.upstream
        if upstream is not None and self._slots[upstream].state != RoleState.RUNNING:
            self._demote(slot)
        else:
            self._enter_running(slot)

    def _demote(self, slot: RoleSlot) -> None:
        """
        Park a live role in STARTING until its upstream role is RUNNING again.

        The process keeps running; _enter_running of the upstream role promotes
        it back, after which stall detection starts a fresh episode.
        """
        upstream = slot.role.upstream
        logger.info(
            f"[{slot.role.label}] waiting for {upstream.label} to be running before resuming"
        )
        self._set_state(slot, RoleState.STARTING)
        slot.running_since = None
        slot.stalled_since = None
        slot.stalled_pipe = None
        self._update_arming()

    def _handle_exit(self, event: ProcessExited) -> None:
        slot = self._slots[event.role]
        process = slot.process
        if event.generation != slot.generation or process is None:
            return
        if process.stop_requested:
            return
        if slot.state not in (RoleState.STARTING, RoleState.RUNNING, RoleState.STALLED):
            return
        self._fail(slot, process.classify_exit())

    def _handle_stall(self, event: StallDetected) -> None:
        slot = self._slots[event.role]
        if event.generation != slot.generation or slot.state != RoleState.RUNNING:
            return
        if self._starved_by_upstream(slot.role, event.pipe_name):
            upstream = slot.role.upstream
            logger.info(f"[{slot.role.label}] quiet because {upstream.label} is quiet, not blaming it")
            # Fresh episode: a genuine stall is reported again after another timeout
            self._outbound[slot.role].monitor.arm(slot.generation)
            return
        self._set_state(slot, RoleState.STALLED)
        slot.stalled_since = time.monotonic()
        slot.stalled_pipe = event.pipe_name
        slot.running_since = None
        self._update_arming()
        self._schedule(self.config.stall_restart_grace_sec, TimerKind.STALL_GRACE, slot)

    def _starved_by_upstream(self, role: Role, pipe_name: str) -> bool:
        """True if a source stall on role's output coincides with silence on its input."""
        outbound = self._outbound[role]
        inbound = self._inbound.get(role)
        if outbound.pipe_name != pipe_name or inbound is None or inbound.monitor is None:
            return False
        last_byte_at = inbound.monitor.health().last_byte_at
        if last_byte_at is None:
            return True
        return time.monotonic() - last_byte_at >= self.config.stall_timeout_sec / 2

    def _handle_stall_cleared(self, event: StallCleared) -> None:
        slot = self._slots[event.role]
        if event.generation != slot.generation or slot.state != RoleState.STALLED:
            return
        if event.pipe_name != slot.stalled_pipe:
            return
        self._resume(slot)

    def _fail(self, slot: RoleSlot, failure: RoleFailure) -> None:
        """Record a role failure, tear the role down and schedule its retry (or go fatal)."""
        role = slot.role
        slot.last_failure = failure
        logger.warning(f"[{role.label}] {failure.describe()}")
        stderr_tail = getattr(failure, "stderr_tail", "")
        if stderr_tail:
            logger.debug(f"[{role.label}] last stderr:\n{stderr_tail.rstrip()}")

        self._teardown(slot)
        delay = self._policy.on_failure(role)
        if self._policy.is_exhausted(role):
            self._fatal(slot, failure)
            return

        self._set_state(slot, RoleState.RESTARTING)
        slot.running_since = None
        self._update_arming()
        logger.info(f"[{role.label}] restarting in {delay:.2f}s")
        self._schedule(delay, TimerKind.RETRY, slot)

    def _teardown(self, slot: RoleSlot) -> None:
        """Detach the role's pipe ends, then stop its process."""
        role = slot.role
        inbound = self._inbound.get(role)
        if inbound is not None:
            inbound.detach_sink()
        self._outbound[role].detach_source()
        self._disarm(role)

        process = slot.process
        slot.process = None
        slot.stalled_since = None
        slot.stalled_pipe = None
        if process is not None:
            process.stop(grace=self.config.grace_for(role))

    def _fatal(self, slot: RoleSlot, failure: RoleFailure) -> None:
        if self._outcome is not None:
            return
        self._set_state(slot, RoleState.FATALLY_FAILED)
        logger.critical(
            f"[{slot.role.label}] restart budget exhausted after "
            f"{self._policy.max_restarts} restarts ({failure.describe()}); tearing down pipeline"
        )
        self._outcome = PipelineOutcome(fatal=True, failure=failure)
        self._timers.clear()
        self._stop_all(skip=slot.role)
        self._finished = True

    def _shutdown(self, request: ShutdownRequested) -> None:
        if self._outcome is not None:
            return
        logger.info(f"Orchestrator: {request}")
        self._outcome = PipelineOutcome(fatal=False, shutdown=request)
        self._timers.clear()
        self._stop_all()
        self._finished = True

    def _stop_all(self, skip: Optional[Role] = None) -> None:
        """Ordered teardown, consumers first."""
        for role in SHUTDOWN_ORDER:
            if role is skip:
                continue
            slot = self._slots[role]
            if slot.state in (RoleState.STOPPED, RoleState.FATALLY_FAILED):
                continue
            self._set_state(slot, RoleState.STOPPING)
            self._teardown(slot)
            slot.running_since = None
            self._set_state(slot, RoleState.STOPPED)
        self._update_arming()

    # ------------------------------------------------------------------
    # Stall detection arming
    # ------------------------------------------------------------------

    def _update_arming(self) -> None:
        """
        Arm each pipe's source side while its role is live and every role
        above it is RUNNING; arm the sink side while the sink role is live.
        """
        live = (RoleState.RUNNING, RoleState.STALLED)
        for pipe in self.pipes:
            monitor = pipe.monitor
            if monitor is None:
                continue
            source_slot = self._slots[pipe.source_role]
            upstream_ok = all(
                self._slots[role].state == RoleState.RUNNING
                for role in PIPELINE_ORDER[: pipe.source_role.index]
            )
            want_source = source_slot.state in live and upstream_ok
            armed = self._armed_source[pipe.pipe_name]
            if want_source and armed != source_slot.generation:
                monitor.arm(source_slot.generation)
                self._armed_source[pipe.pipe_name] = source_slot.generation
            elif not want_source and armed is not None:
                monitor.disarm()
                self._armed_source[pipe.pipe_name] = None
                if (
                    source_slot.state == RoleState.STALLED
                    and source_slot.stalled_pipe == pipe.pipe_name
                ):
                    # The silence may be explained by a role further up; the
                    # stall is re-detected once that role is RUNNING again
                    self._demote(source_slot)

            sink_slot = self._slots[pipe.sink_role]
            want_sink = sink_slot.state in live
            armed = self._armed_sink[pipe.pipe_name]
            if want_sink and armed != sink_slot.generation:
                monitor.arm_sink(sink_slot.generation)
                self._armed_sink[pipe.pipe_name] = sink_slot.generation
            elif not want_sink and armed is not None:
                monitor.disarm_sink()
                self._armed_sink[pipe.pipe_name] = None

    def _disarm(self, role: Role) -> None:
        outbound = self._outbound[role]
        if outbound.monitor is not None and self._armed_source[outbound.pipe_name] is not None:
            outbound.monitor.disarm()
            self._armed_source[outbound.pipe_name] = None
        inbound = self._inbound.get(role)
        if inbound is not None and self._armed_sink[inbound.pipe_name] is not None:
            inbound.monitor.disarm_sink()
            self._armed_sink[inbound.pipe_name] = None

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def _publish(self) -> None:
        self._published = self._build_snapshot()

    def _build_snapshot(self) -> PipelineSnapshot:
        roles = {}
        for role, slot in self._slots.items():
            process = slot.process
            roles[role] = RoleStatus(
                role=role,
                state=slot.state,
                pid=process.pid if process is not None else None,
                generation=slot.generation,
                running_since=slot.running_since,
                last_failure=slot.last_failure.describe() if slot.last_failure else None,
                restarts=self._policy.record(role),
            )
        return PipelineSnapshot(health=self._derive_health(), roles=roles)

    def _derive_health(self) -> PipelineHealth:
        states = [slot.state for slot in self._slots.values()]
        if RoleState.FATALLY_FAILED in states:
            return PipelineHealth.FATALLY_FAILED
        if self._outcome is not None:
            return PipelineHealth.STOPPED
        if all(state == RoleState.RUNNING for state in states):
            return PipelineHealth.HEALTHY
        if not self._all_running_once:
            return PipelineHealth.STARTING
        return PipelineHealth.DEGRADED
