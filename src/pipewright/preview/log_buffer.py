from __future__ import annotations

import re
import time
from collections import deque
from dataclasses import dataclass
from typing import Any

ERROR_PATTERN = re.compile(
    r"(error|warn(ing)?|exception|failed|fatal|panic|unhandled)", re.IGNORECASE
)


@dataclass(slots=True, frozen=True)
class LogEntry:
    line: str
    stream: str
    timestamp: float


class LogBuffer:
    """Keeps the last ``max_lines`` lines a preview server printed."""

    def __init__(self, max_lines: int = 200) -> None:
        self.max_lines = max_lines
        self._lines: deque[LogEntry] = deque(maxlen=max_lines)

    def append(self, line: Any, stream: str = "stdout") -> None:
        if not isinstance(line, str):
            return
        self._lines.append(LogEntry(line=line.strip(), stream=stream, timestamp=time.time()))

    def get_all(self) -> list[LogEntry]:
        return list(self._lines)

    def get_errors(self) -> list[LogEntry]:
        return [
            entry
            for entry in self._lines
            if entry.stream == "stderr" or ERROR_PATTERN.search(entry.line)
        ]

    def get_recent(self, n: int = 50) -> list[LogEntry]:
        if n <= 0:
            return []
        return list(self._lines)[-n:]

    @property
    def size(self) -> int:
        return len(self._lines)

    def clear(self) -> None:
        self._lines.clear()

    def to_context(self) -> dict[str, Any]:
        """Error and recent-output summary, shaped for an agent context payload."""
        errors = self.get_errors()
        return {
            "total_lines": self.size,
            "error_count": len(errors),
            "errors": [entry.line for entry in errors],
            "recent_output": [f"[{entry.stream}] {entry.line}" for entry in self.get_recent(50)],
        }
