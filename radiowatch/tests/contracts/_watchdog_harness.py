"""
Test harness for watchdog process-level tests.

Role programs are tiny `sys.executable -c ...` scripts standing in for
nrsc5 / ffmpeg / nc so the tests run anywhere Python does.
"""

import os
import sys
import time

# Writes 1KB every 20ms forever
PRODUCER = """
import sys, time
while True:
    sys.stdout.buffer.write(b"x" * 1024)
    sys.stdout.buffer.flush()
    time.sleep(0.02)
"""

# Copies stdin to stdout
CAT = """
import sys
while True:
    data = sys.stdin.buffer.read1(4096)
    if not data:
        break
    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()
"""

# Reads and discards stdin, never writes
SINK = """
import sys
while sys.stdin.buffer.read1(4096):
    pass
"""

# Copies stdin to stdout for half a second, then keeps reading without writing
GOES_SILENT = """
import sys, time
started = time.monotonic()
while True:
    data = sys.stdin.buffer.read1(4096)
    if not data:
        break
    if time.monotonic() - started < 0.5:
        sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()
"""

# Outlives the spawn grace period, then fails
EXITS_WITH_1 = """
import sys, time
time.sleep(0.3)
sys.exit(1)
"""

# Produces output for a moment, then fails
PRODUCES_THEN_EXITS = """
import sys, time
for _ in range(15):
    sys.stdout.buffer.write(b"x" * 1024)
    sys.stdout.buffer.flush()
    time.sleep(0.02)
sys.exit(1)
"""

# Produces output for two seconds, then fails
PRODUCES_LONGER_THEN_EXITS = """
import sys, time
started = time.monotonic()
while time.monotonic() - started < 2.0:
    sys.stdout.buffer.write(b"x" * 1024)
    sys.stdout.buffer.flush()
    time.sleep(0.02)
sys.exit(1)
"""

# Produces output, goes quiet from 1s to 4s, then produces again forever
PAUSES_OUTPUT = """
import sys, time
started = time.monotonic()
while True:
    elapsed = time.monotonic() - started
    if elapsed < 1.0 or elapsed > 4.0:
        sys.stdout.buffer.write(b"x" * 1024)
        sys.stdout.buffer.flush()
    time.sleep(0.02)
"""

# Receiver missing: reports it on stderr and lingers
NO_RECEIVER = """
import sys, time
sys.stderr.write("No supported devices found.\\n")
sys.stderr.flush()
time.sleep(30)
"""


def fails_once_then_copies(marker, fail_after=1.8):
    """Copies stdin to stdout; the first launch (no marker file yet) exits 1 after fail_after seconds."""
    return f"""
import os, select, sys, time
marker = {str(marker)!r}
first = not os.path.exists(marker)
if first:
    open(marker, "w").close()
started = time.monotonic()
while True:
    if first and time.monotonic() - started > {fail_after}:
        sys.exit(1)
    ready, _, _ = select.select([sys.stdin], [], [], 0.05)
    if not ready:
        continue
    data = sys.stdin.buffer.read1(4096)
    if not data:
        break
    sys.stdout.buffer.write(data)
    sys.stdout.buffer.flush()
"""


def py_cmd(script):
    return [sys.executable, "-c", script]


def wait_until(predicate, timeout=5.0, interval=0.02):
    """Poll predicate until it is truthy or timeout expires. Returns the last result."""
    deadline = time.monotonic() + timeout
    while True:
        result = predicate()
        if result or time.monotonic() >= deadline:
            return result
        time.sleep(interval)


def pid_is_gone(pid):
    """True once pid no longer exists (reaped, not left as a zombie)."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    return False


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
