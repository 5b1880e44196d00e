"""
DevStack Services

Process supervision and captured service output.
"""

from .log_buffer import LogBuffer, LogEvent, LogType
from .supervisor import RunningProcess, ServiceSupervisor

__all__ = [
    "LogBuffer",
    "LogEvent",
    "LogType",
    "RunningProcess",
    "ServiceSupervisor",
]
