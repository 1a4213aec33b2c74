"""
Tests for Alert state tracking, AlertManager messaging and the Slack sender.
"""

from unittest.mock import Mock, patch

import httpx
import pytest

from radiowatch.alerts.alert_manager import Alert, AlertManager, AlertState
from radiowatch.alerts.slack import SlackMessageSender
from radiowatch.pipeline.orchestrator import (
    PipelineHealth,
    PipelineSnapshot,
    RoleState,
    RoleStatus,
)
from radiowatch.pipeline.restart_policy import RestartRecord
from radiowatch.pipeline.stream_monitor import StreamHealth
from radiowatch.roles import PIPELINE_ORDER, Role
from radiowatch.tests.contracts._watchdog_harness import FakeClock, wait_until


def make_snapshot(states, health=PipelineHealth.DEGRADED, streams=None, failure=None):
    roles = {
        role: RoleStatus(
            role=role,
            state=states.get(role, RoleState.RUNNING),
            pid=None,
            generation=1,
            running_since=None,
            last_failure=failure if states.get(role) else None,
            restarts=RestartRecord(),
        )
        for role in PIPELINE_ORDER
    }
    return PipelineSnapshot(health=health, roles=roles, streams=streams or [])


class TestAlertState:

    def test_lifecycle(self):
        clock = FakeClock()
        alert = Alert("role:decode", clock=clock)
        assert alert.alert_state() == AlertState.PASSING

        alert.mark_failing("decode down")
        assert alert.alert_state() == AlertState.NEW_FAILING
        alert.register_sent()
        assert alert.alert_state() == AlertState.FAILING_ALERT_SENT

        clock.advance(600)
        assert alert.alert_state() == AlertState.FAILING_REMINDER_NEEDED
        alert.register_sent()
        assert alert.alert_state() == AlertState.FAILING_ALERT_SENT

        alert.mark_passing()
        assert alert.alert_state() == AlertState.NEW_PASSING
        alert.register_sent()
        assert alert.alert_state() == AlertState.PASSING

    def test_failing_since_kept_across_updates(self):
        clock = FakeClock()
        alert = Alert("x", clock=clock)
        alert.mark_failing("first")
        since = alert.failing_since
        clock.advance(5)
        alert.mark_failing("second")
        assert alert.failing_since == since
        assert alert.message == "second"


class TestAlertManager:

    @pytest.fixture
    def sender(self):
        return Mock(spec=SlackMessageSender)

    def test_new_failure_sends_once(self, sender):
        manager = AlertManager(sender, clock=FakeClock())
        manager.update_alert("role:decode", True, "DECODE is restarting")
        manager.update_alert("role:decode", True, "DECODE is restarting")
        sender.enqueue.assert_called_once()
        assert "A new issue has been detected" in sender.enqueue.call_args[0][0]

    def test_recovery_sends_resolved(self, sender):
        manager = AlertManager(sender, clock=FakeClock())
        manager.update_alert("role:decode", True, "DECODE is restarting")
        manager.update_alert("role:decode", False, "DECODE is running")
        message = sender.enqueue.call_args[0][0]
        assert "Issue resolved" in message
        assert "DECODE is restarting" in message
        assert manager.get("role:decode").alert_state() == AlertState.PASSING

    def test_passing_condition_without_history_is_silent(self, sender):
        manager = AlertManager(sender)
        manager.update_alert("role:forward", False, "FORWARD is running")
        sender.enqueue.assert_not_called()

    def test_reminder_after_interval(self, sender):
        clock = FakeClock()
        manager = AlertManager(sender, reminder_interval_sec=600, clock=clock)
        manager.update_alert("pipeline", True, "pipeline fatally failed")
        manager.process_alerts()
        assert sender.enqueue.call_count == 1
        clock.advance(601)
        manager.process_alerts()
        assert sender.enqueue.call_count == 2
        assert "Reminder" in sender.enqueue.call_args[0][0]

    def test_evaluate_snapshot(self, sender):
        manager = AlertManager(sender, clock=FakeClock())
        stalled = StreamHealth(pipe_name="DECODE->TRANSCODE", stalled=True)
        snapshot = make_snapshot(
            {Role.TRANSCODE: RoleState.RESTARTING},
            streams=[stalled],
            failure="unexpected_exit: transcode exited (exit code 1)",
        )
        manager.evaluate(snapshot)

        messages = [call[0][0] for call in sender.enqueue.call_args_list]
        assert len(messages) == 2
        assert any("TRANSCODE is restarting" in m and "exit code 1" in m for m in messages)
        assert any("DECODE->TRANSCODE" in m for m in messages)

        flowing = StreamHealth(pipe_name="DECODE->TRANSCODE")
        manager.evaluate(make_snapshot({}, health=PipelineHealth.HEALTHY, streams=[flowing]))
        resolved = [call[0][0] for call in sender.enqueue.call_args_list[2:]]
        assert len(resolved) == 2
        assert all("Issue resolved" in m for m in resolved)

    def test_fatal_pipeline_alert(self, sender):
        manager = AlertManager(sender, clock=FakeClock())
        manager.evaluate(make_snapshot(
            {Role.DECODE: RoleState.FATALLY_FAILED}, health=PipelineHealth.FATALLY_FAILED,
        ))
        messages = [call[0][0] for call in sender.enqueue.call_args_list]
        assert any("pipeline fatally failed" in m for m in messages)


class TestSlackMessageSender:

    def test_dry_run_never_posts(self):
        sender = SlackMessageSender("token", "C1", dry_run=True)
        with patch("radiowatch.alerts.slack.httpx.post") as post:
            assert sender.send("hello")
        post.assert_not_called()

    def test_missing_credentials_force_dry_run(self):
        assert SlackMessageSender(None, "C1").dry_run
        assert SlackMessageSender("token", None).dry_run

    def test_posts_message_with_bearer_token(self):
        sender = SlackMessageSender("xoxb-1", "C123")
        response = Mock()
        response.json.return_value = {"ok": True}
        with patch("radiowatch.alerts.slack.httpx.post", return_value=response) as post:
            assert sender.send("decode down")

        args, kwargs = post.call_args
        assert args[0] == "https://slack.com/api/chat.postMessage"
        assert kwargs["json"] == {"channel": "C123", "text": "decode down"}
        assert kwargs["headers"]["Authorization"] == "Bearer xoxb-1"

    def test_api_error_reported_as_failure(self):
        sender = SlackMessageSender("xoxb-1", "C123")
        response = Mock()
        response.json.return_value = {"ok": False, "error": "channel_not_found"}
        with patch("radiowatch.alerts.slack.httpx.post", return_value=response):
            assert not sender.send("decode down")

    def test_http_error_reported_as_failure(self):
        sender = SlackMessageSender("xoxb-1", "C123")
        with patch(
            "radiowatch.alerts.slack.httpx.post",
            side_effect=httpx.ConnectError("no route"),
        ):
            assert not sender.send("decode down")

    def test_background_delivery(self, thread_leak_guard):
        sender = SlackMessageSender("xoxb-1", "C123")
        response = Mock()
        response.json.return_value = {"ok": True}
        with patch("radiowatch.alerts.slack.httpx.post", return_value=response) as post:
            sender.start()
            try:
                sender.enqueue("one")
                sender.enqueue("two")
                assert wait_until(lambda: post.call_count == 2)
            finally:
                sender.stop()
        texts = [call[1]["json"]["text"] for call in post.call_args_list]
        assert texts == ["one", "two"]
