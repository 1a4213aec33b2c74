"""
Pipeline roles.

The pipeline is a fixed linear chain: DECODE -> TRANSCODE -> FORWARD.
"""

from __future__ import annotations

import enum
from typing import List, Optional


class Role(enum.Enum):
    DECODE = "decode"
    TRANSCODE = "transcode"
    FORWARD = "forward"

    @property
    def label(self) -> str:
        return self.name

    @property
    def index(self) -> int:
        return PIPELINE_ORDER.index(self)

    @property
    def upstream(self) -> Optional["Role"]:
        idx = self.index
        return PIPELINE_ORDER[idx - 1] if idx > 0 else None

    @property
    def downstream(self) -> Optional["Role"]:
        idx = self.index
        return PIPELINE_ORDER[idx + 1] if idx + 1 < len(PIPELINE_ORDER) else None

    @property
    def ready_on_output(self) -> bool:
        """Decode and transcode are proven live by stdout bytes; forward reports ready instead."""
        return self is not Role.FORWARD


PIPELINE_ORDER: List[Role] = [Role.DECODE, Role.TRANSCODE, Role.FORWARD]

# Ordered shutdown stops consumers before producers
SHUTDOWN_ORDER: List[Role] = list(reversed(PIPELINE_ORDER))
