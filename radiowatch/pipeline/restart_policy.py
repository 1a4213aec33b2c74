"""
Per-role restart budget with exponential backoff.

The delay before restart n (n consecutive failures) is

    min(base * 2 ** (n - 1) * (1 + jitter * u), max),   u in [0, 1)

never less than the previous delay. Jitter only adds, and adds less than a
doubling, so delays strictly increase until they reach the cap. The counter
is reset only by on_stable(), once a role has stayed Running for the
stability window.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, asdict
from typing import Callable, Dict, Optional

from radiowatch.roles import PIPELINE_ORDER, Role

logger = logging.getLogger(__name__)


@dataclass
class RestartRecord:
    consecutive_failures: int = 0
    next_retry_at: Optional[float] = None
    last_delay: float = 0.0
    total_restarts: int = 0


class RestartPolicy:
    def __init__(
        self,
        max_restarts: int,
        backoff_base_ms: int,
        backoff_max_ms: int,
        backoff_jitter: float = 0.1,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not 0.0 <= backoff_jitter < 1.0:
            raise ValueError(f"backoff_jitter must be in [0, 1), got {backoff_jitter}")
        self.max_restarts = max_restarts
        self._base_sec = backoff_base_ms / 1000.0
        self._max_sec = backoff_max_ms / 1000.0
        self._jitter = backoff_jitter
        self._rng = rng or random.Random()
        self._clock = clock
        self._lock = threading.Lock()
        self._records: Dict[Role, RestartRecord] = {role: RestartRecord() for role in PIPELINE_ORDER}

    def on_failure(self, role: Role) -> float:
        """Count a failure of role and return the delay (seconds) before the next attempt."""
        with self._lock:
            record = self._records[role]
            record.consecutive_failures += 1
            record.total_restarts += 1
            n = record.consecutive_failures

            raw = self._base_sec * (2 ** (n - 1))
            delay = min(raw * (1.0 + self._jitter * self._rng.random()), self._max_sec)
            delay = max(delay, record.last_delay)

            record.last_delay = delay
            record.next_retry_at = self._clock() + delay

        logger.debug(
            f"[{role.label}] consecutive failure {n} (max {self.max_restarts}), backoff {delay:.2f}s"
        )
        return delay

    def on_stable(self, role: Role) -> None:
        with self._lock:
            record = self._records[role]
            if record.consecutive_failures == 0:
                return
            logger.info(
                f"[{role.label}] stable, resetting failure counter "
                f"(was {record.consecutive_failures})"
            )
            record.consecutive_failures = 0
            record.last_delay = 0.0
            record.next_retry_at = None

    def is_exhausted(self, role: Role) -> bool:
        with self._lock:
            return self._records[role].consecutive_failures > self.max_restarts

    def record(self, role: Role) -> RestartRecord:
        """Copy of the role's restart record."""
        with self._lock:
            return RestartRecord(**asdict(self._records[role]))
