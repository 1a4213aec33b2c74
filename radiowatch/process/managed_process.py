"""
Managed process wrapper for one pipeline role.

ManagedProcess launches one external tool (decoder, transcoder or forwarder),
exposes its byte streams, drains and classifies its stderr, and learns about
its exit exclusively through the Reaper. One instance is created per launch;
a restart always creates a fresh instance.
"""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import BinaryIO, Callable, Dict, List, Optional

from radiowatch.errors import RoleFailure, SpawnError, UnexpectedExit, describe_returncode
from radiowatch.process.reaper import Reaper, signal_process_group
from radiowatch.roles import Role

logger = logging.getLogger(__name__)

# Receiver errors printed by librtlsdr / nrsc5 when the dongle is missing or busy
HARDWARE_FAULT_PATTERNS = (
    "No supported devices found",
    "usb_claim_interface error",
    "Failed to open rtlsdr device",
    "Unable to open device",
    "Device or resource busy",
)

# How long to wait for the reaper after SIGKILL before giving up on a process
KILL_WAIT_SEC = 2.0

# Keep the last 10KB of stderr for diagnostics
STDERR_TAIL_MAX_SIZE = 10 * 1024


@dataclass
class ProcessHandle:
    """Streams and exit observation of a started role process."""

    role: Role
    pid: int
    stdin: Optional[BinaryIO]
    stdout: Optional[BinaryIO]
    exit_event: threading.Event
    started_at: float


class ManagedProcess:
    """
    Supervised wrapper around one external program instance.

    Attributes:
        role: Pipeline role this process fills
        argv: Command line used to launch it
        generation: Launch counter assigned by the orchestrator
    """

    def __init__(
        self,
        role: Role,
        argv: List[str],
        reaper: Reaper,
        env: Optional[Dict[str, str]] = None,
        spawn_grace_sec: float = 0.5,
        generation: int = 0,
        ready_pattern: Optional[str] = None,
        on_exit: Optional[Callable[["ManagedProcess"], None]] = None,
        on_ready: Optional[Callable[["ManagedProcess"], None]] = None,
    ) -> None:
        if not argv:
            raise ValueError("argv must not be empty")
        self.role = role
        self.argv = list(argv)
        self.generation = generation
        self._reaper = reaper
        self._env = env
        self._spawn_grace_sec = spawn_grace_sec
        self._ready_re = re.compile(ready_pattern) if ready_pattern else None
        self._on_exit = on_exit
        self._on_ready = on_ready

        self._popen: Optional[subprocess.Popen] = None
        self._handle: Optional[ProcessHandle] = None
        self._exit_event = threading.Event()
        self._ready_event = threading.Event()
        self._returncode: Optional[int] = None
        self._stderr_thread: Optional[threading.Thread] = None
        self._stderr_lock = threading.Lock()
        self._last_stderr = ""
        self._hardware_fault: Optional[str] = None
        self._stop_requested = False

        self.started_at: Optional[float] = None
        self.exited_at: Optional[float] = None

    def __repr__(self) -> str:
        return f"<ManagedProcess {self.role.label} gen={self.generation} pid={self.pid}>"

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def pid(self) -> Optional[int]:
        return self._popen.pid if self._popen is not None else None

    @property
    def handle(self) -> Optional[ProcessHandle]:
        return self._handle

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    @property
    def exit_event(self) -> threading.Event:
        return self._exit_event

    @property
    def ready_event(self) -> threading.Event:
        return self._ready_event

    @property
    def has_exited(self) -> bool:
        return self._exit_event.is_set()

    @property
    def stop_requested(self) -> bool:
        """True once stop() was called; an exit after that is expected."""
        return self._stop_requested

    @property
    def hardware_fault(self) -> Optional[str]:
        return self._hardware_fault

    @property
    def last_stderr(self) -> str:
        with self._stderr_lock:
            return self._last_stderr

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, cancel_event: Optional[threading.Event] = None) -> ProcessHandle:
        """
        Launch the process and wait out its spawn grace period.

        Args:
            cancel_event: Optional event that cuts the grace period short (shutdown)

        Returns:
            ProcessHandle exposing stdin/stdout and the exit event

        Raises:
            SpawnError: If the executable cannot be launched, the process exits
                        during the grace period, or the receiver hardware is unavailable
        """
        if self._popen is not None:
            raise RuntimeError(f"{self!r} already started")

        env = None
        if self._env:
            env = dict(os.environ)
            env.update(self._env)

        with self._reaper.spawning():
            try:
                popen = subprocess.Popen(
                    self.argv,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    bufsize=0,
                    env=env,
                    start_new_session=True,  # own process group, so the whole tree can be signalled
                )
            except (FileNotFoundError, PermissionError) as e:
                raise SpawnError(self.role.value, f"{self.role.label} executable unavailable: {e}")
            except OSError as e:
                raise SpawnError(self.role.value, f"{self.role.label} failed to spawn: {e}")
            self._popen = popen
            self.started_at = time.monotonic()
            self._reaper.register(popen, self._on_reaped, name=self.role.label)

        logger.info(f"[{self.role.label}] started pid={popen.pid} (generation {self.generation})")

        if popen.stderr is not None:
            self._stderr_thread = threading.Thread(
                target=self._stderr_drain,
                args=(popen.stderr,),
                daemon=True,
                name=f"{self.role.label}StderrDrain",
            )
            self._stderr_thread.start()

        self._wait_spawn_grace(cancel_event)

        if self._exit_event.is_set():
            # Let the drain collect the last words before reporting them
            if self._stderr_thread is not None:
                self._stderr_thread.join(timeout=0.2)
            self._close_streams()
            raise SpawnError(
                self.role.value,
                f"{self.role.label} exited during spawn grace period "
                f"({describe_returncode(self._returncode)})",
                exit_code=self._returncode,
                stderr_tail=self.last_stderr,
            )

        if self._hardware_fault is not None:
            fault = self._hardware_fault
            self.stop(grace=1.0)
            raise SpawnError(
                self.role.value,
                f"receiver hardware unavailable: {fault}",
                stderr_tail=self.last_stderr,
            )

        self._handle = ProcessHandle(
            role=self.role,
            pid=popen.pid,
            stdin=popen.stdin,
            stdout=popen.stdout,
            exit_event=self._exit_event,
            started_at=self.started_at,
        )
        return self._handle

    def _wait_spawn_grace(self, cancel_event: Optional[threading.Event]) -> None:
        deadline = time.monotonic() + self._spawn_grace_sec
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            if self._exit_event.wait(timeout=min(remaining, 0.05)):
                return
            if self._hardware_fault is not None:
                return
            if cancel_event is not None and cancel_event.is_set():
                return

    def stop(self, grace: float = 5.0) -> Optional[int]:
        """
        Terminate the process: SIGTERM, wait up to grace, then SIGKILL.

        Idempotent. Returns the observed returncode (None if it could not be observed).
        """
        self._stop_requested = True
        popen = self._popen
        if popen is None:
            return None

        if not self._exit_event.is_set():
            logger.info(f"[{self.role.label}] stopping pid={popen.pid} (grace {grace:.1f}s)")
            signal_process_group(popen.pid, signal.SIGTERM)
            if not self._exit_event.wait(timeout=grace):
                logger.warning(
                    f"[{self.role.label}] pid={popen.pid} did not exit within {grace:.1f}s, killing"
                )
                signal_process_group(popen.pid, signal.SIGKILL)
                if not self._exit_event.wait(timeout=KILL_WAIT_SEC):
                    logger.error(f"[{self.role.label}] pid={popen.pid} still not reaped after SIGKILL")

        self._close_streams()

        if self._stderr_thread is not None and self._stderr_thread.is_alive():
            self._stderr_thread.join(timeout=0.5)
            if self._stderr_thread.is_alive():
                logger.warning(f"[{self.role.label}] stderr drain thread did not terminate within timeout")

        return self._returncode

    def send_signal(self, sig: int) -> bool:
        """Relay an arbitrary signal to the process group."""
        popen = self._popen
        if popen is None or self._exit_event.is_set():
            return False
        return signal_process_group(popen.pid, sig)

    def classify_exit(self) -> RoleFailure:
        """Describe why the process ended, for the restart policy."""
        if self._hardware_fault is not None:
            return SpawnError(
                self.role.value,
                f"receiver hardware unavailable: {self._hardware_fault}",
                exit_code=self._returncode,
                stderr_tail=self.last_stderr,
            )
        return UnexpectedExit(self.role.value, self._returncode, stderr_tail=self.last_stderr)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _on_reaped(self, returncode: Optional[int]) -> None:
        """Called by the Reaper thread once the exit status is collected."""
        self._returncode = returncode
        self.exited_at = time.monotonic()
        self._exit_event.set()
        level = logging.INFO if self._stop_requested else logging.WARNING
        logger.log(
            level,
            f"[{self.role.label}] pid={self.pid} exited ({describe_returncode(returncode)})",
        )
        if self._on_exit is not None:
            self._on_exit(self)

    def _close_streams(self) -> None:
        popen = self._popen
        if popen is None:
            return
        for stream in (popen.stdin, popen.stdout):
            if stream is None:
                continue
            try:
                stream.close()
            except (OSError, ValueError):
                pass

    def _stderr_drain(self, stderr: BinaryIO) -> None:
        """Drain stderr line by line until EOF, logging with a [ROLE] prefix."""
        try:
            while True:
                try:
                    line = stderr.readline()
                except (OSError, ValueError) as e:
                    logger.debug(f"[{self.role.label}] stderr read error (likely closed): {e}")
                    break
                if not line:
                    break
                decoded_line = line.decode(errors="ignore").rstrip()
                if decoded_line:
                    self._handle_stderr_line(decoded_line)
        finally:
            try:
                stderr.close()
            except (OSError, ValueError):
                pass
        logger.debug(f"[{self.role.label}] stderr drain thread exiting")

    def _handle_stderr_line(self, line: str) -> None:
        prefix = f"[{self.role.label}]"

        fault = next((p for p in HARDWARE_FAULT_PATTERNS if p in line), None)
        if fault is not None:
            logger.error(f"{prefix} {line}")
            self._hardware_fault = fault
        elif "Lost synchronization" in line:
            logger.warning(f"{prefix} lost synchronization")
        elif "Synchronized" in line:
            logger.info(f"{prefix} synchronized")
        elif "error" in line.lower():
            logger.warning(f"{prefix} {line}")
        else:
            logger.debug(f"{prefix} {line}")

        new_line = line + "\n"
        with self._stderr_lock:
            if len(self._last_stderr) + len(new_line) > STDERR_TAIL_MAX_SIZE:
                excess = len(self._last_stderr) + len(new_line) - STDERR_TAIL_MAX_SIZE
                self._last_stderr = self._last_stderr[excess:]
            self._last_stderr += new_line

        if self._ready_re is not None and not self._ready_event.is_set() and self._ready_re.search(line):
            logger.info(f"{prefix} reported ready")
            self._ready_event.set()
            if self._on_ready is not None:
                self._on_ready(self)
