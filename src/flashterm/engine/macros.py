"""Persisted macros: name -> ordered list of commands, stored as JSON."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Callable, Dict, List, Optional


class MacroStore:
    """JSON-file backed macro storage.

    The file is re-read on every access so several windows sharing one
    data directory see each other's changes.
    """

    def __init__(self, path: Path, debug_logger: Optional[Callable[[str], None]] = None):
        self.path = Path(path)
        self._debug_logger = debug_logger or (lambda msg: None)

    def load(self) -> Dict[str, List[str]]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            self._debug_logger(f"Could not read macros from {self.path}: {exc}")
            return {}
        if not isinstance(data, dict):
            self._debug_logger(f"Ignoring malformed macro file {self.path}")
            return {}
        return {str(name): [str(cmd) for cmd in cmds] for name, cmds in data.items() if isinstance(cmds, list)}

    def get(self, name: str) -> Optional[List[str]]:
        return self.load().get(name)

    def save(self, name: str, commands: List[str]) -> None:
        macros = self.load()
        macros[name] = list(commands)
        self._write(macros)

    def delete(self, name: str) -> bool:
        macros = self.load()
        if name not in macros:
            return False
        del macros[name]
        self._write(macros)
        return True

    def _write(self, macros: Dict[str, List[str]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(macros, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)
