"""
Configuration management for the radio watchdog.

Reads configuration from an optional .env file and environment variables.
Required variables have no defaults: a missing one is a ConfigurationError
raised before any subprocess is spawned.
"""

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

from radiowatch.errors import ConfigurationError
from radiowatch.roles import PIPELINE_ORDER, Role

# Default .env file location
DEFAULT_ENV_FILE = Path("/etc/radiowatch/watchdog.env")

logger = logging.getLogger(__name__)

REQUIRED_VARS = (
    "WATCHDOG_RECEIVER_DEVICE",
    "WATCHDOG_FREQUENCY",
    "WATCHDOG_FORWARD_HOST",
    "WATCHDOG_FORWARD_PORT",
)

_TRUE_VALUES = ("1", "true", "yes", "on")


def _load_env_file() -> None:
    """Load environment variables from .env file if it exists."""
    env_file = os.getenv("WATCHDOG_ENV_FILE", str(DEFAULT_ENV_FILE))
    env_path = Path(env_file)

    if env_path.exists():
        load_dotenv(env_path, override=False)  # Don't override existing env vars


def _require(name: str) -> str:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        raise ConfigurationError(f"Missing required environment variable {name}")
    return value.strip()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"Invalid {name}: {raw} (must be an integer)")


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"Invalid {name}: {raw} (must be a number)")


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _get_command(name: str) -> Optional[List[str]]:
    """Parse a shell-style command override, e.g. WATCHDOG_DECODE_CMD."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        argv = shlex.split(raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid {name}: {e}")
    if not argv:
        raise ConfigurationError(f"Invalid {name}: command is empty")
    return argv


@dataclass
class WatchdogConfig:
    """Watchdog configuration loaded from .env file and environment variables."""

    # Receiver / decode
    receiver_device: str
    frequency_mhz: float
    program: int = 0
    gain: Optional[float] = None
    rtl_tcp_host: Optional[str] = None

    # Transcode
    transcode_codec: str = "libmp3lame"
    transcode_bitrate: str = "128k"
    transcode_format: str = "mp3"

    # Forward
    forward_host: str = "127.0.0.1"
    forward_port: int = 8000
    forward_tls: bool = False
    forward_ready_pattern: Optional[str] = None

    # Full argv overrides per role (shell-split)
    command_overrides: Dict[Role, List[str]] = field(default_factory=dict)

    # Supervision timing
    stall_timeout_sec: float = 10.0
    stall_restart_grace_sec: float = 5.0
    startup_timeout_sec: float = 15.0
    spawn_grace_sec: float = 0.5
    stop_grace_sec: Dict[Role, float] = field(
        default_factory=lambda: {role: 5.0 for role in PIPELINE_ORDER}
    )

    # Restart policy
    max_restarts: int = 5
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 30000
    backoff_jitter: float = 0.1
    stability_window_sec: float = 60.0

    # Pipes
    pipe_backlog_bytes: int = 1024 * 1024

    # PID 1 duties
    reap_orphans: bool = False

    # Status endpoint (0 = disabled)
    status_port: int = 0

    # Alerts
    slack_auth: Optional[str] = None
    slack_channel: Optional[str] = None
    dry_run: bool = False

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def grace_for(self, role: Role) -> float:
        return self.stop_grace_sec.get(role, 5.0)

    @property
    def total_stop_grace_sec(self) -> float:
        return sum(self.grace_for(role) for role in PIPELINE_ORDER)

    @classmethod
    def load_config(cls) -> "WatchdogConfig":
        """
        Load configuration from environment variables.

        Returns:
            WatchdogConfig instance with loaded values

        Raises:
            ConfigurationError: If a required variable is missing or a value is invalid
        """
        # Load .env file first (if it exists)
        _load_env_file()

        missing = [name for name in REQUIRED_VARS if not os.getenv(name, "").strip()]
        if missing:
            raise ConfigurationError(
                f"Missing required environment variable(s): {', '.join(missing)}"
            )

        # Receiver / decode
        receiver_device = _require("WATCHDOG_RECEIVER_DEVICE")
        frequency_mhz = _get_float("WATCHDOG_FREQUENCY", 0.0)
        program = _get_int("WATCHDOG_PROGRAM", 0)
        gain_raw = os.getenv("WATCHDOG_GAIN")
        gain = _get_float("WATCHDOG_GAIN", 0.0) if gain_raw not in (None, "") else None
        rtl_tcp_host = os.getenv("WATCHDOG_RTL_TCP_HOST") or None

        # Forward
        forward_host = _require("WATCHDOG_FORWARD_HOST")
        forward_port = _get_int("WATCHDOG_FORWARD_PORT", 0)
        forward_ready_pattern = os.getenv("WATCHDOG_FORWARD_READY_PATTERN") or None

        command_overrides: Dict[Role, List[str]] = {}
        for role in PIPELINE_ORDER:
            argv = _get_command(f"WATCHDOG_{role.label}_CMD")
            if argv is not None:
                command_overrides[role] = argv

        default_grace = _get_float("WATCHDOG_STOP_GRACE_SEC", 5.0)
        stop_grace_sec = {
            role: _get_float(f"WATCHDOG_{role.label}_STOP_GRACE_SEC", default_grace)
            for role in PIPELINE_ORDER
        }

        # Default to orphan reaping when we really are the init process
        reap_orphans = _get_bool("WATCHDOG_REAP_ORPHANS", default=os.getpid() == 1)

        slack_auth = os.getenv("SLACK_AUTH") or None
        slack_channel = os.getenv("SLACK_ID") or None

        config = cls(
            receiver_device=receiver_device,
            frequency_mhz=frequency_mhz,
            program=program,
            gain=gain,
            rtl_tcp_host=rtl_tcp_host,
            transcode_codec=os.getenv("WATCHDOG_TRANSCODE_CODEC", "libmp3lame"),
            transcode_bitrate=os.getenv("WATCHDOG_TRANSCODE_BITRATE", "128k"),
            transcode_format=os.getenv("WATCHDOG_TRANSCODE_FORMAT", "mp3"),
            forward_host=forward_host,
            forward_port=forward_port,
            forward_tls=_get_bool("WATCHDOG_FORWARD_TLS"),
            forward_ready_pattern=forward_ready_pattern,
            command_overrides=command_overrides,
            stall_timeout_sec=_get_float("WATCHDOG_STALL_TIMEOUT_SEC", 10.0),
            stall_restart_grace_sec=_get_float("WATCHDOG_STALL_RESTART_GRACE_SEC", 5.0),
            startup_timeout_sec=_get_float("WATCHDOG_STARTUP_TIMEOUT_SEC", 15.0),
            spawn_grace_sec=_get_float("WATCHDOG_SPAWN_GRACE_SEC", 0.5),
            stop_grace_sec=stop_grace_sec,
            max_restarts=_get_int("WATCHDOG_MAX_RESTARTS", 5),
            backoff_base_ms=_get_int("WATCHDOG_BACKOFF_BASE_MS", 1000),
            backoff_max_ms=_get_int("WATCHDOG_BACKOFF_MAX_MS", 30000),
            backoff_jitter=_get_float("WATCHDOG_BACKOFF_JITTER", 0.1),
            stability_window_sec=_get_float("WATCHDOG_STABILITY_WINDOW_SEC", 60.0),
            pipe_backlog_bytes=_get_int("WATCHDOG_PIPE_BACKLOG_BYTES", 1024 * 1024),
            reap_orphans=reap_orphans,
            status_port=_get_int("WATCHDOG_STATUS_PORT", 0),
            slack_auth=slack_auth,
            slack_channel=slack_channel,
            dry_run=_get_bool("DRY_RUN") or slack_auth is None or slack_channel is None,
            log_level=os.getenv("WATCHDOG_LOG_LEVEL", "INFO"),
            log_file=os.getenv("WATCHDOG_LOG_FILE") or None,
        )

        # Validate configuration
        config.validate()

        return config

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if not self.receiver_device:
            raise ConfigurationError("Receiver device identifier cannot be empty")

        if self.frequency_mhz <= 0:
            raise ConfigurationError(
                f"Invalid frequency: {self.frequency_mhz} (must be > 0 MHz)"
            )

        if self.program < 0:
            raise ConfigurationError(f"Invalid program: {self.program} (must be >= 0)")

        if self.forward_port < 1 or self.forward_port > 65535:
            raise ConfigurationError(
                f"Invalid forward port: {self.forward_port} (must be 1-65535)"
            )

        if not self.transcode_bitrate.endswith("k"):
            raise ConfigurationError(
                f"Invalid bitrate format: {self.transcode_bitrate} (must end with 'k', e.g., '128k')"
            )
        try:
            bitrate_value = int(self.transcode_bitrate[:-1])
        except ValueError:
            raise ConfigurationError(f"Invalid bitrate: {self.transcode_bitrate}")
        if bitrate_value <= 0:
            raise ConfigurationError(f"Invalid bitrate value: {bitrate_value}")

        for name in (
            "stall_timeout_sec",
            "stall_restart_grace_sec",
            "startup_timeout_sec",
            "stability_window_sec",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"Invalid {name}: {getattr(self, name)} (must be > 0)")

        if self.spawn_grace_sec < 0:
            raise ConfigurationError(f"Invalid spawn grace: {self.spawn_grace_sec} (must be >= 0)")

        for role, grace in self.stop_grace_sec.items():
            if grace <= 0:
                raise ConfigurationError(
                    f"Invalid stop grace for {role.label}: {grace} (must be > 0)"
                )

        if self.max_restarts < 0:
            raise ConfigurationError(
                f"Invalid max restarts: {self.max_restarts} (must be >= 0)"
            )

        if self.backoff_base_ms <= 0:
            raise ConfigurationError(
                f"Invalid backoff base: {self.backoff_base_ms} (must be > 0)"
            )
        if self.backoff_max_ms < self.backoff_base_ms:
            raise ConfigurationError(
                f"Invalid backoff max: {self.backoff_max_ms} (must be >= base {self.backoff_base_ms})"
            )
        if not 0.0 <= self.backoff_jitter < 1.0:
            raise ConfigurationError(
                f"Invalid backoff jitter: {self.backoff_jitter} (must be in [0, 1))"
            )

        if self.pipe_backlog_bytes <= 0:
            raise ConfigurationError(
                f"Invalid pipe backlog: {self.pipe_backlog_bytes} (must be > 0)"
            )

        if self.status_port < 0 or self.status_port > 65535:
            raise ConfigurationError(
                f"Invalid status port: {self.status_port} (must be 0-65535)"
            )

        # Validate log level
        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigurationError(
                f"Invalid log level: {self.log_level} "
                f"(must be one of: {', '.join(valid_log_levels)})"
            )


def load_config() -> WatchdogConfig:
    """
    Load and validate watchdog configuration from environment variables.

    Returns:
        WatchdogConfig instance with loaded and validated values

    Raises:
        ConfigurationError: If configuration is invalid
    """
    try:
        return WatchdogConfig.load_config()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise
