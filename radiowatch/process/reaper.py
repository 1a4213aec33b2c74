"""
Reaper and signal router.

The watchdog runs as the container's init process, so nobody else will
collect the exit status of its children (or of orphans re-parented to it).
Reaper is the only code in the watchdog that waits on child pids: every
ManagedProcess registers its Popen here and is told about its exit through a
callback. It also owns the watchdog-level signal handlers:

- first SIGTERM/SIGINT: request an ordered graceful shutdown
- second SIGTERM/SIGINT: SIGKILL every registered process group immediately
- SIGHUP/SIGUSR1/SIGUSR2: relayed to every live child
"""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional

from radiowatch.errors import ShutdownRequested, signal_name

logger = logging.getLogger(__name__)

TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGINT)
RELAYED_SIGNALS = (signal.SIGHUP, signal.SIGUSR1, signal.SIGUSR2)


@dataclass
class _Registration:
    popen: subprocess.Popen
    name: str
    on_exit: Callable[[Optional[int]], None]


def _decode_status(status: int) -> Optional[int]:
    """Convert a raw wait status to a Popen-style returncode."""
    try:
        return os.waitstatus_to_exitcode(status)
    except ValueError:
        return None


class Reaper:
    """
    Collects the exit status of every child and routes watchdog-level signals.

    In orphan-reaping mode (PID 1, or WATCHDOG_REAP_ORPHANS=1) the reaper
    waits on any child with waitpid(-1), so grandchildren re-parented to the
    watchdog never become zombies. Otherwise only registered pids are waited
    on, leaving unrelated children of the hosting process alone.
    """

    def __init__(self, reap_orphans: bool = False, poll_interval: float = 0.1) -> None:
        self._reap_orphans = reap_orphans
        self._poll_interval = poll_interval
        self._registry: Dict[int, _Registration] = {}
        # Re-entrant: termination signals are handled on the main thread,
        # which may already hold it (wait_for_all during shutdown)
        self._lock = threading.RLock()
        # Held from Popen() until register(); orphan sweeps wait on it
        self._spawn_lock = threading.Lock()
        self._wakeup = threading.Event()
        self._shutdown_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._on_shutdown: Optional[Callable[[ShutdownRequested], None]] = None
        self._termination_count = 0
        self._forced_signal: Optional[int] = None
        self._previous_handlers: Dict[int, object] = {}

        self.orphans_reaped = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._shutdown_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="Reaper")
        self._thread.start()
        logger.info(f"Reaper started (reap_orphans={self._reap_orphans})")

    def stop(self, timeout: float = 1.0) -> None:
        self._shutdown_event.set()
        self._wakeup.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Reaper thread did not terminate within timeout")
        self._thread = None
        # Final sweep so nothing exits the watchdog as a zombie
        self.reap_once()
        logger.info("Reaper stopped")

    def _run(self) -> None:
        while not self._shutdown_event.is_set():
            self._wakeup.wait(timeout=self._poll_interval)
            self._wakeup.clear()
            try:
                self.reap_once()
            except Exception as e:
                logger.error(f"Reaper sweep failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        popen: subprocess.Popen,
        on_exit: Callable[[Optional[int]], None],
        name: str = "",
    ) -> None:
        """Register a started child; on_exit(returncode) is called once it is reaped."""
        with self._lock:
            self._registry[popen.pid] = _Registration(popen=popen, name=name, on_exit=on_exit)
        logger.debug(f"Reaper: registered {name or 'process'} pid={popen.pid}")
        # The child may already be gone; do not wait a full poll interval for it
        self._wakeup.set()

    @contextlib.contextmanager
    def spawning(self) -> Iterator[None]:
        """
        Hold off orphan sweeps while a child is launched and registered.

        A child that exits before register() would otherwise be collected
        as an orphan and its exit never reported:

            with reaper.spawning():
                popen = subprocess.Popen(argv)
                reaper.register(popen, on_exit)
        """
        with self._spawn_lock:
            yield

    def live_pids(self) -> List[int]:
        with self._lock:
            return list(self._registry)

    def wait_for_all(self, timeout: float) -> bool:
        """Wait until every registered child has been reaped. Returns True on success."""
        deadline = time.monotonic() + timeout
        while True:
            self.reap_once()
            if not self.live_pids():
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.02)

    # ------------------------------------------------------------------
    # Reaping
    # ------------------------------------------------------------------

    def reap_once(self) -> int:
        """Collect every exited child that is ready now. Returns how many were reaped."""
        if self._reap_orphans:
            return self._reap_any()
        return self._reap_registered()

    def _reap_any(self) -> int:
        collected = []
        with self._spawn_lock:
            while True:
                try:
                    pid, status = os.waitpid(-1, os.WNOHANG)
                except ChildProcessError:
                    break
                if pid == 0:
                    break
                collected.append((pid, _decode_status(status)))
        for pid, returncode in collected:
            self._deliver(pid, returncode)
        return len(collected)

    def _reap_registered(self) -> int:
        reaped = 0
        for pid in self.live_pids():
            try:
                rpid, status = os.waitpid(pid, os.WNOHANG)
            except ChildProcessError:
                # Already collected by someone else; the status is lost
                logger.warning(f"Reaper: pid={pid} was reaped outside the watchdog")
                self._deliver(pid, None)
                reaped += 1
                continue
            if rpid == 0:
                continue
            reaped += 1
            self._deliver(pid, _decode_status(status))
        return reaped

    def _deliver(self, pid: int, returncode: Optional[int]) -> None:
        with self._lock:
            registration = self._registry.pop(pid, None)

        if registration is None:
            self.orphans_reaped += 1
            logger.debug(f"Reaper: collected orphan pid={pid} (returncode={returncode})")
            return

        # Let Popen know so it never tries to wait on the pid itself
        registration.popen.returncode = returncode
        logger.debug(
            f"Reaper: {registration.name or 'process'} pid={pid} reaped (returncode={returncode})"
        )
        try:
            registration.on_exit(returncode)
        except Exception as e:
            logger.error(f"Reaper: exit callback for pid={pid} failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def send_to_all(self, sig: int) -> List[int]:
        """Send sig to every registered process group. Returns the pids signalled."""
        signalled = []
        with self._lock:
            registrations = list(self._registry.values())
        for registration in registrations:
            pid = registration.popen.pid
            if signal_process_group(pid, sig):
                signalled.append(pid)
        return signalled

    def kill_all(self) -> List[int]:
        pids = self.send_to_all(signal.SIGKILL)
        if pids:
            logger.warning(f"Reaper: SIGKILL sent to {len(pids)} process group(s): {pids}")
        return pids

    @property
    def forced_signal(self) -> Optional[int]:
        """Signal that forced an immediate kill, if a second termination signal arrived."""
        return self._forced_signal

    def install_signal_handlers(self, on_shutdown: Callable[[ShutdownRequested], None]) -> None:
        """
        Install watchdog-level signal handlers. Must be called from the main thread.

        Args:
            on_shutdown: Called with a ShutdownRequested for every termination signal.
                         Must only post a notification; it runs inside a signal handler.
        """
        self._on_shutdown = on_shutdown
        for sig in TERMINATION_SIGNALS:
            self._previous_handlers[sig] = signal.signal(sig, self._handle_termination)
        for sig in RELAYED_SIGNALS:
            self._previous_handlers[sig] = signal.signal(sig, self._handle_relay)
        self._previous_handlers[signal.SIGCHLD] = signal.signal(signal.SIGCHLD, self._handle_sigchld)
        logger.debug("Reaper: signal handlers installed")

    def restore_signal_handlers(self) -> None:
        for sig, handler in self._previous_handlers.items():
            try:
                signal.signal(sig, handler)
            except (TypeError, ValueError) as e:
                logger.debug(f"Reaper: could not restore handler for {signal_name(sig)}: {e}")
        self._previous_handlers.clear()

    def _handle_termination(self, signum, frame) -> None:
        self._termination_count += 1
        if self._termination_count == 1:
            logger.info(f"Received {signal_name(signum)} - initiating ordered shutdown")
            request = ShutdownRequested(signum)
        else:
            logger.warning(
                f"Received {signal_name(signum)} again - killing all descendants immediately"
            )
            self._forced_signal = signum
            self.kill_all()
            request = ShutdownRequested(signum, forced=True)
        if self._on_shutdown is not None:
            self._on_shutdown(request)

    def _handle_relay(self, signum, frame) -> None:
        pids = self.send_to_all(signum)
        logger.info(f"Relayed {signal_name(signum)} to {len(pids)} child process group(s)")

    def _handle_sigchld(self, signum, frame) -> None:
        self._wakeup.set()


def signal_process_group(pid: int, sig: int) -> bool:
    """Signal the process group led by pid, falling back to the pid alone."""
    try:
        os.killpg(pid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        pass
    try:
        os.kill(pid, sig)
        return True
    except (ProcessLookupError, PermissionError):
        return False
