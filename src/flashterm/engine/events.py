"""Output events delivered from backends to tabs."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class EventKind(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    CWD = "cwd"
    INFO = "info"
    ERROR = "error"


@dataclass(frozen=True)
class OutputEvent:
    """A single typed unit of output scoped to one session.

    ``text`` carries the chunk for stdout/stderr/info/error events;
    ``cwd`` is only set for directory-changed notices.
    """

    kind: EventKind
    text: str = ""
    cwd: Optional[str] = None

    @classmethod
    def stdout(cls, text: str) -> "OutputEvent":
        return cls(EventKind.STDOUT, text)

    @classmethod
    def stderr(cls, text: str) -> "OutputEvent":
        return cls(EventKind.STDERR, text)

    @classmethod
    def info(cls, text: str) -> "OutputEvent":
        return cls(EventKind.INFO, text)

    @classmethod
    def error(cls, text: str) -> "OutputEvent":
        return cls(EventKind.ERROR, text)

    @classmethod
    def cwd_changed(cls, path: str) -> "OutputEvent":
        return cls(EventKind.CWD, cwd=path)

    @property
    def is_error(self) -> bool:
        return self.kind in (EventKind.STDERR, EventKind.ERROR)

    def to_payload(self) -> Dict[str, Any]:
        """Convert to the wire shape consumed by tabs.

        Returns:
            ``{"stdout", "stderr", "type"}`` plus ``"cwd"`` for
            directory updates. ``type`` is one of
            output | error | info | cwd-update.
        """
        if self.kind is EventKind.CWD:
            return {"stdout": "", "stderr": "", "type": "cwd-update", "cwd": self.cwd}
        if self.kind is EventKind.STDOUT:
            return {"stdout": self.text, "stderr": "", "type": "output"}
        if self.kind is EventKind.INFO:
            return {"stdout": self.text, "stderr": "", "type": "info"}
        return {"stdout": "", "stderr": self.text, "type": "error"}
