"""
Pipeline subsystem.

This package wires the three role processes together and supervises them:
- Orchestrator: per-role state machines driven by a single control loop
- Pipe: byte pump between two roles, with a bounded backlog
- StreamMonitor: stall detection on each pipe
- RestartPolicy: per-role exponential backoff and failure budget
"""

from radiowatch.pipeline.orchestrator import (
    Orchestrator,
    PipelineHealth,
    PipelineOutcome,
    PipelineSnapshot,
    RoleState,
)
from radiowatch.pipeline.pipe import Pipe
from radiowatch.pipeline.restart_policy import RestartPolicy, RestartRecord
from radiowatch.pipeline.stream_monitor import StreamHealth, StreamMonitor

__all__ = [
    "Orchestrator",
    "PipelineHealth",
    "PipelineOutcome",
    "PipelineSnapshot",
    "RoleState",
    "Pipe",
    "RestartPolicy",
    "RestartRecord",
    "StreamHealth",
    "StreamMonitor",
]
