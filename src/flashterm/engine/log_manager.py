from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Deque, Dict, Optional


@dataclass
class LogManager:
    """Simple line-buffered log manager by category.

    Categories: events, errors, debug, output.
    When ``log_file`` is set every line is also appended there with a
    timestamp and category tag.
    """

    max_lines: int = 2000
    log_file: Optional[Path] = None
    buffers: Dict[str, Deque[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("events", "errors", "debug", "output"):
            self.buffers[name] = deque(maxlen=self.max_lines)
        if self.log_file is not None:
            self.log_file = Path(self.log_file)
            self.log_file.parent.mkdir(parents=True, exist_ok=True)

    def add(self, category: str, message: str) -> None:
        buf = self.buffers.setdefault(category, deque(maxlen=self.max_lines))
        lines = message.splitlines() or [message]
        for line in lines:
            buf.append(line)
        if self.log_file is not None:
            stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
            with self.log_file.open("a", encoding="utf-8") as fh:
                for line in lines:
                    fh.write(f"{stamp} [{category}] {line}\n")

    def text(self, category: str) -> str:
        buf = self.buffers.get(category)
        if not buf:
            return ""
        return "\n".join(buf)

    def logger(self, category: str) -> Callable[[str], None]:
        """Return a ``debug_logger``-style callback bound to one category."""
        return lambda message: self.add(category, message)
