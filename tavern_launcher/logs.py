"""
Operator-facing log buffer.

Keeps the most recent launcher and SillyTavern output in memory so the control
panel can show why a start failed. Every entry is mirrored to the console
logger as well.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

from .config import config

logger = logging.getLogger(__name__)

LEVELS = ("info", "error", "stdout", "stderr")


@dataclass
class LogEntry:
    """A single line in the operator log."""

    message: str
    level: str = "info"
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "message": self.message,
            "level": self.level,
        }


class LogBuffer:
    """Bounded ring buffer of log entries; the oldest entry is evicted first."""

    def __init__(self, capacity: int = None):
        self.capacity = capacity or config.log_buffer_size
        self._entries: deque[LogEntry] = deque(maxlen=self.capacity)

    def add(self, message: str, level: str = "info") -> LogEntry:
        """Append an entry and mirror it to the console."""
        if level not in LEVELS:
            level = "info"
        entry = LogEntry(message=message, level=level)
        self._entries.append(entry)

        if level == "stdout":
            logger.info(f"[ST] {message}")
        elif level == "stderr":
            logger.error(f"[ST ERROR] {message}")
        elif level == "error":
            logger.error(message)
        else:
            logger.info(message)
        return entry

    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
