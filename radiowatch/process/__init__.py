"""
Process supervision primitives.

- Reaper: sole collector of child exit statuses, routes watchdog-level signals
- ManagedProcess: one launch of one role's external program
"""

from radiowatch.process.reaper import Reaper
from radiowatch.process.managed_process import ManagedProcess, ProcessHandle

__all__ = [
    "Reaper",
    "ManagedProcess",
    "ProcessHandle",
]
