"""
Shared pytest fixtures for watchdog tests.
"""
import os
import threading
import time

import pytest

from radiowatch.config import WatchdogConfig
from radiowatch.process.reaper import Reaper
from radiowatch.roles import PIPELINE_ORDER, Role
from radiowatch.tests.contracts._watchdog_harness import CAT, PRODUCER, SINK, py_cmd


@pytest.fixture
def make_config():
    """Factory for a fast-timing WatchdogConfig; keyword arguments override fields."""

    def _make(**overrides):
        values = dict(
            receiver_device="0",
            frequency_mhz=90.1,
            forward_host="127.0.0.1",
            forward_port=9000,
            stall_timeout_sec=0.5,
            stall_restart_grace_sec=0.3,
            startup_timeout_sec=3.0,
            spawn_grace_sec=0.1,
            stop_grace_sec={role: 1.0 for role in PIPELINE_ORDER},
            max_restarts=3,
            backoff_base_ms=50,
            backoff_max_ms=400,
            backoff_jitter=0.1,
            stability_window_sec=30.0,
            pipe_backlog_bytes=64 * 1024,
            dry_run=True,
        )
        values.update(overrides)
        return WatchdogConfig(**values)

    return _make


@pytest.fixture
def healthy_commands():
    return {
        Role.DECODE: py_cmd(PRODUCER),
        Role.TRANSCODE: py_cmd(CAT),
        Role.FORWARD: py_cmd(SINK),
    }


@pytest.fixture
def reaper():
    """Running Reaper; anything still registered at teardown is killed and reaped."""
    r = Reaper(reap_orphans=False, poll_interval=0.02)
    r.start()
    yield r
    r.kill_all()
    r.wait_for_all(timeout=2.0)
    r.stop()


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Environment without any watchdog variables and without an env file."""
    for name in list(os.environ):
        if name.startswith("WATCHDOG_") or name in ("SLACK_AUTH", "SLACK_ID", "DRY_RUN"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("WATCHDOG_ENV_FILE", str(tmp_path / "missing.env"))
    return monkeypatch


@pytest.fixture
def required_env(clean_env):
    clean_env.setenv("WATCHDOG_RECEIVER_DEVICE", "0")
    clean_env.setenv("WATCHDOG_FREQUENCY", "90.1")
    clean_env.setenv("WATCHDOG_FORWARD_HOST", "icecast.local")
    clean_env.setenv("WATCHDOG_FORWARD_PORT", "8000")
    return clean_env


@pytest.fixture(autouse=False)  # Request explicitly (first) in tests that start threads
def thread_leak_guard():
    """
    Detect threads left running after a test.

    Ensures shutdown paths actually join what they started.
    """
    before = set(t.ident for t in threading.enumerate())
    yield
    # Threads that were told to stop get a moment to finish
    deadline = time.monotonic() + 2.0
    while True:
        leaked = [t for t in threading.enumerate() if t.ident not in before and t.is_alive()]
        if not leaked or time.monotonic() >= deadline:
            break
        time.sleep(0.05)
    if leaked:
        thread_info = '\n'.join(f"  - {t.name} (daemon={t.daemon})" for t in leaked)
        assert False, f"Thread leak detected, shutdown incomplete.\nLeaked threads:\n{thread_info}"
