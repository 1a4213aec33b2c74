# radiowatch/service.py

import logging
import threading
from typing import Dict, List, Optional

from radiowatch.alerts.alert_manager import AlertManager
from radiowatch.alerts.slack import SlackMessageSender
from radiowatch.commands import build_commands, preflight
from radiowatch.config import WatchdogConfig
from radiowatch.errors import SpawnError, signal_name
from radiowatch.http.status_server import StatusServer
from radiowatch.pipeline.orchestrator import Orchestrator, PipelineSnapshot
from radiowatch.process.reaper import Reaper
from radiowatch.roles import Role

logger = logging.getLogger(__name__)

# Process exit codes (sysexits.h where one fits)
EXIT_OK = 0
EXIT_SPAWN_FAILURE = 69  # EX_UNAVAILABLE
EXIT_INTERNAL_ERROR = 70  # EX_SOFTWARE
EXIT_FATAL_PIPELINE = 75  # EX_TEMPFAIL
EXIT_CONFIG_ERROR = 78  # EX_CONFIG

# Extra time allowed on top of the configured stop graces before giving up on children
SHUTDOWN_SLACK_SEC = 2.0


class WatchdogService:
    def __init__(
        self,
        config: WatchdogConfig,
        commands: Optional[Dict[Role, List[str]]] = None,
        install_signals: bool = True,
    ):
        """
        Initialize WatchdogService.

        Args:
            config: Loaded and validated configuration
            commands: Role argv overrides (default: built from config)
            install_signals: Install SIGTERM/SIGINT/relay handlers (main thread only)
        """
        self.config = config
        self.commands = commands if commands is not None else build_commands(config)
        self.install_signals = install_signals

        self.reaper = Reaper(reap_orphans=config.reap_orphans)
        self.slack = SlackMessageSender(
            config.slack_auth,
            config.slack_channel,
            dry_run=config.dry_run,
        )
        self.alerts = AlertManager(self.slack)
        self.orchestrator = Orchestrator(
            config,
            self.commands,
            self.reaper,
            on_tick=self.alerts.evaluate,
        )
        self.status_server: Optional[StatusServer] = None
        if config.status_port > 0:
            self.status_server = StatusServer("0.0.0.0", config.status_port, self.snapshot)

        self._signals_installed = False
        self._stopped = False

    def snapshot(self) -> PipelineSnapshot:
        return self.orchestrator.snapshot()

    def start(self) -> None:
        """
        Verify executables and start every watchdog thread.

        Raises:
            SpawnError: If a role executable cannot be found (nothing is spawned)
        """
        logger.info("=== Radio watchdog starting ===")
        preflight(self.commands)

        self.reaper.start()
        self.slack.start()
        if self.install_signals and threading.current_thread() is threading.main_thread():
            self.reaper.install_signal_handlers(self.orchestrator.request_shutdown)
            self._signals_installed = True
        if self.status_server is not None:
            self.status_server.start()
        self.orchestrator.start()

    def wait(self) -> None:
        """Block the calling thread until the orchestrator has finished."""
        while not self.orchestrator.wait(timeout=0.5):
            pass

    def stop(self) -> None:
        """Make sure nothing outlives the watchdog, then stop the helper threads."""
        if self._stopped:
            return
        self._stopped = True

        if self.orchestrator.started:
            if self.orchestrator.outcome is None:
                self.orchestrator.request_shutdown()
            self.orchestrator.wait(timeout=self.config.total_stop_grace_sec + SHUTDOWN_SLACK_SEC)
            self.orchestrator.join(timeout=1.0)
        else:
            for pipe in self.orchestrator.pipes:
                pipe.stop()

        if not self.reaper.wait_for_all(timeout=SHUTDOWN_SLACK_SEC):
            logger.warning(f"Children still alive after shutdown: {self.reaper.live_pids()}")
            self.reaper.kill_all()
            self.reaper.wait_for_all(timeout=SHUTDOWN_SLACK_SEC)

        if self.status_server is not None:
            self.status_server.stop()
        self.slack.stop()
        self.reaper.stop()
        if self._signals_installed:
            self.reaper.restore_signal_handlers()
            self._signals_installed = False
        logger.info("=== Radio watchdog stopped ===")

    def exit_code(self) -> int:
        forced = self.reaper.forced_signal
        if forced is not None:
            return 128 + forced
        outcome = self.orchestrator.outcome
        if outcome is None:
            return EXIT_INTERNAL_ERROR
        if outcome.fatal:
            if isinstance(outcome.failure, SpawnError) and not self.orchestrator.ever_healthy:
                # Receiver or tool never came up at all
                return EXIT_SPAWN_FAILURE
            return EXIT_FATAL_PIPELINE
        return EXIT_OK

    def run(self) -> int:
        """Start, supervise until shutdown or fatal failure, stop. Returns the process exit code."""
        try:
            self.start()
        except SpawnError as e:
            logger.critical(f"Cannot start pipeline: {e}")
            self.stop()
            return EXIT_SPAWN_FAILURE

        try:
            self.wait()
        except Exception as e:
            logger.critical(f"Watchdog main loop failed: {e}", exc_info=True)
        finally:
            self.stop()

        code = self.exit_code()
        outcome = self.orchestrator.outcome
        if self.reaper.forced_signal is not None:
            logger.warning(f"Forced exit after second {signal_name(self.reaper.forced_signal)}")
        elif outcome is not None and outcome.fatal:
            logger.critical(f"Pipeline fatally failed: {outcome.failure}")
        logger.info(f"Exiting with code {code}")
        return code
