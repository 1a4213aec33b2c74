"""
Alert state tracking.

Each watched condition (a role, a pipe, the pipeline as a whole) is an Alert.
The manager is fed pipeline snapshots on every orchestrator tick, sends a
message when a condition starts failing or recovers, and reminds every ten
minutes while it stays failing.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Callable, Dict, Optional

from radiowatch.alerts.slack import SlackMessageSender
from radiowatch.pipeline.orchestrator import PipelineHealth, PipelineSnapshot, RoleState

logger = logging.getLogger(__name__)

REMINDER_INTERVAL_SEC = 10 * 60

_FAILING_ROLE_STATES = (RoleState.RESTARTING, RoleState.STALLED, RoleState.FATALLY_FAILED)


class AlertState(enum.Enum):
    NEW_FAILING = "new_failing"
    FAILING_ALERT_SENT = "failing_alert_sent"
    FAILING_REMINDER_NEEDED = "failing_reminder_needed"
    NEW_PASSING = "new_passing"
    PASSING = "passing"


class Alert:
    def __init__(
        self,
        name: str,
        message: str = "",
        reminder_interval_sec: float = REMINDER_INTERVAL_SEC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.message = message
        self.reminder_interval_sec = reminder_interval_sec
        self._clock = clock
        self.failing_since: Optional[float] = None
        self.last_sent_update: Optional[float] = None

    def mark_failing(self, message: str) -> None:
        self.message = message
        if self.failing_since is None:
            self.failing_since = self._clock()

    def mark_passing(self) -> None:
        self.failing_since = None

    @property
    def is_failing(self) -> bool:
        return self.failing_since is not None

    def alert_state(self) -> AlertState:
        if self.failing_since is not None:
            if self.last_sent_update is None:
                return AlertState.NEW_FAILING
            if self._clock() - self.last_sent_update >= self.reminder_interval_sec:
                return AlertState.FAILING_REMINDER_NEEDED
            return AlertState.FAILING_ALERT_SENT
        if self.last_sent_update is not None:
            return AlertState.NEW_PASSING
        return AlertState.PASSING

    def register_sent(self) -> None:
        state = self.alert_state()
        if state in (AlertState.NEW_FAILING, AlertState.FAILING_REMINDER_NEEDED):
            self.last_sent_update = self._clock()
        elif state == AlertState.NEW_PASSING:
            self.last_sent_update = None


class AlertManager:
    """Turns pipeline snapshots into Slack messages."""

    def __init__(
        self,
        sender: SlackMessageSender,
        reminder_interval_sec: float = REMINDER_INTERVAL_SEC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sender = sender
        self._reminder_interval_sec = reminder_interval_sec
        self._clock = clock
        self._alerts: Dict[str, Alert] = {}
        self._lock = threading.Lock()

    def get(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            return self._alerts.get(alert_id)

    def update_alert(self, alert_id: str, is_error: bool, message: str) -> None:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                if not is_error:
                    # Nothing to clear for a condition that never failed
                    return
                alert = Alert(alert_id, message, self._reminder_interval_sec, self._clock)
                self._alerts[alert_id] = alert

            previous_state = alert.alert_state()
            if is_error:
                alert.mark_failing(message)
            else:
                alert.mark_passing()
            new_state = alert.alert_state()

            if new_state == AlertState.NEW_FAILING and previous_state != AlertState.NEW_FAILING:
                logger.error(f"New alert: {message}")
                self._sender.enqueue(f"*Warning:* _A new issue has been detected!_ {message}")
                alert.register_sent()
            elif new_state == AlertState.NEW_PASSING and previous_state != AlertState.NEW_PASSING:
                logger.info(f"Alert cleared: {alert_id}")
                self._sender.enqueue(f"*Success:* *Issue resolved!* {alert.message}")
                alert.register_sent()

    def process_alerts(self) -> None:
        """Send reminders for conditions that are still failing."""
        with self._lock:
            for alert in self._alerts.values():
                if alert.alert_state() == AlertState.FAILING_REMINDER_NEEDED:
                    logger.warning(f"Alert reminder: {alert.message}")
                    self._sender.enqueue(f"*Reminder:* _Issue is still present!_ {alert.message}")
                    alert.register_sent()

    def evaluate(self, snapshot: PipelineSnapshot) -> None:
        """Orchestrator tick listener."""
        for role, status in snapshot.roles.items():
            failing = status.state in _FAILING_ROLE_STATES
            message = f"{role.label} is {status.state.value}"
            if status.last_failure:
                message += f" ({status.last_failure})"
            self.update_alert(f"role:{role.value}", failing, message)

        for health in snapshot.streams:
            if health.delivery_stalled:
                message = f"{health.pipe_name} cannot deliver bytes downstream"
            else:
                message = f"no audio flowing through {health.pipe_name}"
            self.update_alert(f"stream:{health.pipe_name}", health.stalled or health.delivery_stalled, message)

        self.update_alert(
            "pipeline",
            snapshot.health == PipelineHealth.FATALLY_FAILED,
            "pipeline fatally failed, watchdog is exiting",
        )
        self.process_alerts()
