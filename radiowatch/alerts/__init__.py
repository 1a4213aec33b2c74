"""
Alerting: failing/recovered notifications and ten-minute reminders sent to Slack.
"""

from radiowatch.alerts.alert_manager import Alert, AlertManager, AlertState
from radiowatch.alerts.slack import SlackMessageSender

__all__ = [
    "Alert",
    "AlertManager",
    "AlertState",
    "SlackMessageSender",
]
