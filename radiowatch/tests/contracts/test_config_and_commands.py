"""
Tests for WatchdogConfig loading/validation and role command construction.
"""

import sys

import pytest

from radiowatch.commands import (
    build_commands,
    build_decode_cmd,
    build_forward_cmd,
    build_transcode_cmd,
    preflight,
)
from radiowatch.config import WatchdogConfig, load_config
from radiowatch.errors import ConfigurationError, SpawnError
from radiowatch.roles import Role


class TestConfigLoading:

    def test_required_values_and_defaults(self, required_env):
        config = WatchdogConfig.load_config()
        assert config.receiver_device == "0"
        assert config.frequency_mhz == 90.1
        assert config.forward_host == "icecast.local"
        assert config.forward_port == 8000
        assert config.program == 0
        assert config.max_restarts == 5
        assert config.backoff_base_ms == 1000
        assert config.backoff_max_ms == 30000
        assert config.stall_timeout_sec == 10.0
        assert config.status_port == 0
        assert config.grace_for(Role.FORWARD) == 5.0
        assert config.total_stop_grace_sec == 15.0
        # No Slack credentials means nothing is ever sent
        assert config.dry_run

    @pytest.mark.parametrize("missing", [
        "WATCHDOG_RECEIVER_DEVICE",
        "WATCHDOG_FREQUENCY",
        "WATCHDOG_FORWARD_HOST",
        "WATCHDOG_FORWARD_PORT",
    ])
    def test_missing_required_variable(self, required_env, missing):
        required_env.delenv(missing)
        with pytest.raises(ConfigurationError) as exc_info:
            load_config()
        assert missing in str(exc_info.value)

    @pytest.mark.parametrize("name,value", [
        ("WATCHDOG_FORWARD_PORT", "not-a-port"),
        ("WATCHDOG_FORWARD_PORT", "70000"),
        ("WATCHDOG_FREQUENCY", "-1"),
        ("WATCHDOG_MAX_RESTARTS", "-1"),
        ("WATCHDOG_BACKOFF_MAX_MS", "10"),
        ("WATCHDOG_BACKOFF_JITTER", "1.5"),
        ("WATCHDOG_STALL_TIMEOUT_SEC", "0"),
        ("WATCHDOG_TRANSCODE_BITRATE", "128"),
        ("WATCHDOG_LOG_LEVEL", "CHATTY"),
        ("WATCHDOG_DECODE_CMD", "nrsc5 'unterminated"),
    ])
    def test_invalid_values_rejected(self, required_env, name, value):
        required_env.setenv(name, value)
        with pytest.raises(ConfigurationError):
            WatchdogConfig.load_config()

    def test_per_role_stop_grace(self, required_env):
        required_env.setenv("WATCHDOG_STOP_GRACE_SEC", "2")
        required_env.setenv("WATCHDOG_FORWARD_STOP_GRACE_SEC", "0.5")
        config = WatchdogConfig.load_config()
        assert config.grace_for(Role.DECODE) == 2.0
        assert config.grace_for(Role.FORWARD) == 0.5
        assert config.total_stop_grace_sec == 4.5

    def test_command_override_is_shell_split(self, required_env):
        required_env.setenv("WATCHDOG_FORWARD_CMD", "socat - 'TCP:host with space:9'")
        config = WatchdogConfig.load_config()
        assert config.command_overrides == {Role.FORWARD: ["socat", "-", "TCP:host with space:9"]}

    def test_env_file_does_not_override_environment(self, required_env, tmp_path):
        env_file = tmp_path / "watchdog.env"
        env_file.write_text("WATCHDOG_FORWARD_HOST=from-file\nWATCHDOG_PROGRAM=2\n")
        required_env.setenv("WATCHDOG_ENV_FILE", str(env_file))
        # Registered with monkeypatch so the value loaded from the file is removed afterwards
        required_env.setenv("WATCHDOG_PROGRAM", "0")
        required_env.delenv("WATCHDOG_PROGRAM")
        config = WatchdogConfig.load_config()
        assert config.forward_host == "icecast.local"
        assert config.program == 2

    def test_slack_settings_disable_dry_run(self, required_env):
        required_env.setenv("SLACK_AUTH", "xoxb-token")
        required_env.setenv("SLACK_ID", "C123")
        config = WatchdogConfig.load_config()
        assert not config.dry_run
        assert config.slack_channel == "C123"


@pytest.fixture
def config():
    return WatchdogConfig(
        receiver_device="1",
        frequency_mhz=90.1,
        program=1,
        forward_host="stream.example.org",
        forward_port=8443,
    )


class TestRoleCommands:

    def test_decode_uses_local_device(self, config):
        assert build_decode_cmd(config) == ["nrsc5", "-d", "1", "-o", "-", "90.1", "1"]

    def test_decode_uses_rtl_tcp_and_gain(self, config):
        config.rtl_tcp_host = "sdr.local:1234"
        config.gain = 49.6
        assert build_decode_cmd(config) == [
            "nrsc5", "-H", "sdr.local:1234", "-g", "49.6", "-o", "-", "90.1", "1",
        ]

    def test_transcode_reads_raw_pcm_and_writes_stdout(self, config):
        cmd = build_transcode_cmd(config)
        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-i") + 1] == "pipe:0"
        assert cmd[cmd.index("-c:a") + 1] == "libmp3lame"
        assert cmd[cmd.index("-b:a") + 1] == "128k"
        assert cmd[-1] == "pipe:1"

    def test_forward_plain_and_tls(self, config):
        assert build_forward_cmd(config) == ["nc", "stream.example.org", "8443"]
        config.forward_tls = True
        assert build_forward_cmd(config) == [
            "openssl", "s_client", "-quiet", "-connect", "stream.example.org:8443",
        ]

    def test_overrides_replace_whole_argv(self, config):
        config.command_overrides = {Role.TRANSCODE: ["cat"]}
        commands = build_commands(config)
        assert commands[Role.TRANSCODE] == ["cat"]
        assert commands[Role.DECODE][0] == "nrsc5"


class TestPreflight:

    def test_resolvable_executables_pass(self):
        preflight({role: [sys.executable, "-c", "pass"] for role in Role})

    def test_missing_executable_raises_spawn_error(self):
        commands = {
            Role.DECODE: [sys.executable],
            Role.TRANSCODE: ["definitely-not-installed-ffmpeg"],
        }
        with pytest.raises(SpawnError) as exc_info:
            preflight(commands)
        assert exc_info.value.role == "transcode"
