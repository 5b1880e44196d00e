"""
Per-service ring buffer of captured output.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Deque, Dict, List

logger = logging.getLogger(__name__)

DEFAULT_MAX_LINES = 100


class LogType(str, Enum):
    INFO = "info"
    STDOUT = "stdout"
    STDERR = "stderr"
    ERROR = "error"


@dataclass
class LogEvent:
    """One captured line."""
    app_id: str
    type: LogType
    message: str
    timestamp: str = field(default_factory=lambda: datetime.now().strftime("%H:%M:%S"))

    def to_dict(self) -> Dict[str, str]:
        return {
            "appId": self.app_id,
            "timestamp": self.timestamp,
            "type": self.type.value,
            "message": self.message,
        }


class LogBuffer:
    """
    Bounded logs keyed by app id; the oldest line is evicted first.

    Buffers outlive the processes that filled them, so logs of a crashed
    service stay readable until cleared or overwritten by the next start.
    """

    def __init__(self, max_lines: int = DEFAULT_MAX_LINES):
        self.max_lines = max_lines
        self._buffers: Dict[str, Deque[LogEvent]] = {}
        self._listeners: List[Callable[[LogEvent], None]] = []
        self._lock = threading.Lock()

    def add(self, app_id: str, log_type: LogType, message: str) -> LogEvent:
        event = LogEvent(app_id=app_id, type=log_type, message=message)
        with self._lock:
            buffer = self._buffers.get(app_id)
            if buffer is None:
                buffer = self._buffers[app_id] = deque(maxlen=self.max_lines)
            buffer.append(event)
            listeners = list(self._listeners)

        for callback in listeners:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Log listener error: {e}")
        return event

    def get(self, app_id: str) -> List[LogEvent]:
        with self._lock:
            return list(self._buffers.get(app_id, ()))

    def tail(self, app_id: str, count: int = 10) -> List[str]:
        """Messages of the last few lines."""
        return [e.message for e in self.get(app_id)[-count:]]

    def clear(self, app_id: str) -> None:
        with self._lock:
            self._buffers.pop(app_id, None)

    def add_listener(self, callback: Callable[[LogEvent], None]) -> None:
        with self._lock:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[LogEvent], None]) -> None:
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)
