"""
Argument vectors for the three pipeline roles.

Defaults target the tools shipped next to the watchdog (nrsc5, ffmpeg,
netcat / openssl). Any role can be replaced wholesale through
WATCHDOG_<ROLE>_CMD.
"""

from __future__ import annotations

import logging
import shutil
from typing import Dict, List

from radiowatch.config import WatchdogConfig
from radiowatch.errors import SpawnError
from radiowatch.roles import PIPELINE_ORDER, Role

logger = logging.getLogger(__name__)


def _format_frequency(frequency_mhz: float) -> str:
    # nrsc5 accepts MHz ("91.1") as well as Hz; keep the short form
    return f"{frequency_mhz:g}"


def build_decode_cmd(config: WatchdogConfig) -> List[str]:
    cmd = ["nrsc5"]
    if config.rtl_tcp_host:
        cmd += ["-H", config.rtl_tcp_host]
    else:
        cmd += ["-d", config.receiver_device]
    if config.gain is not None:
        cmd += ["-g", f"{config.gain:g}"]
    cmd += ["-o", "-", _format_frequency(config.frequency_mhz), str(config.program)]
    return cmd


def build_transcode_cmd(config: WatchdogConfig) -> List[str]:
    return [
        "ffmpeg",
        "-hide_banner",
        "-nostdin",
        "-loglevel", "warning",
        # Raw PCM: a restarted transcoder joins the decoder stream mid-way, after the WAV header
        "-f", "s16le",
        "-ar", "44100",
        "-ac", "2",
        "-i", "pipe:0",
        "-c:a", config.transcode_codec,
        "-b:a", config.transcode_bitrate,
        "-f", config.transcode_format,
        "-flush_packets", "1",
        "pipe:1",
    ]


def build_forward_cmd(config: WatchdogConfig) -> List[str]:
    if config.forward_tls:
        return [
            "openssl", "s_client",
            "-quiet",
            "-connect", f"{config.forward_host}:{config.forward_port}",
        ]
    return ["nc", config.forward_host, str(config.forward_port)]


_BUILDERS = {
    Role.DECODE: build_decode_cmd,
    Role.TRANSCODE: build_transcode_cmd,
    Role.FORWARD: build_forward_cmd,
}


def build_commands(config: WatchdogConfig) -> Dict[Role, List[str]]:
    """Return the argv for every role, honouring per-role overrides."""
    commands: Dict[Role, List[str]] = {}
    for role in PIPELINE_ORDER:
        override = config.command_overrides.get(role)
        commands[role] = list(override) if override else _BUILDERS[role](config)
        logger.debug(f"[{role.label}] command: {' '.join(commands[role])}")
    return commands


def preflight(commands: Dict[Role, List[str]]) -> None:
    """
    Verify every role executable can be resolved before anything is spawned.

    Raises:
        SpawnError: If an executable is missing from PATH (or not executable)
    """
    for role, argv in commands.items():
        binary = argv[0]
        resolved = shutil.which(binary)
        if resolved is None:
            raise SpawnError(
                role.value,
                f"{role.label} executable not found or not executable: {binary}",
            )
        logger.debug(f"[{role.label}] executable resolved to {resolved}")
