"""Engine configuration."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional


def default_data_dir() -> Path:
    """Return the application-private data directory for this platform."""
    home = Path.home()
    if sys.platform == "win32":
        base = os.environ.get("APPDATA")
        return Path(base) / "flashterm" if base else home / "AppData" / "Roaming" / "flashterm"
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / "flashterm"
    xdg = os.environ.get("XDG_DATA_HOME")
    return (Path(xdg) if xdg else home / ".local" / "share") / "flashterm"


@dataclass
class EngineConfig:
    """Engine configuration.

    Attributes:
        shell: Interpreter for local sessions (None = platform default)
        shell_args: Extra arguments for the interpreter (None = platform default)
        flush_interval: Minimum seconds between output flushes per tab
        batch_threshold: Buffered events above this count are combined
        connect_timeout: SSH handshake timeout in seconds
        channel_size: Bound of the per-session event queue
        read_chunk_size: Bytes per read from process pipes / SSH channel
        macro_delay: Pause between replayed macro commands in seconds
        data_dir: Directory for persisted state (macros)
        initial_cwd: Working directory of new sessions (None = process cwd)
        log_file: Optional file mirroring the engine log
        max_log_lines: Lines kept per log category
    """

    shell: Optional[str] = None
    shell_args: Optional[List[str]] = None
    flush_interval: float = 0.0
    batch_threshold: int = 5
    connect_timeout: float = 20.0
    channel_size: int = 256
    read_chunk_size: int = 4096
    macro_delay: float = 0.3
    data_dir: Path = field(default_factory=default_data_dir)
    initial_cwd: Optional[Path] = None
    log_file: Optional[Path] = None
    max_log_lines: int = 2000

    def __post_init__(self):
        """Validate configuration."""
        if self.flush_interval < 0:
            raise ValueError("flush_interval must not be negative")
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")
        if self.macro_delay < 0:
            raise ValueError("macro_delay must not be negative")
        for name in ("batch_threshold", "channel_size", "read_chunk_size", "max_log_lines"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        self.data_dir = Path(self.data_dir)
        if self.log_file is not None:
            self.log_file = Path(self.log_file)
        if self.initial_cwd is not None:
            self.initial_cwd = Path(self.initial_cwd)

    @property
    def macros_file(self) -> Path:
        return self.data_dir / "Saves" / "macros.json"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "EngineConfig":
        """Build a config from FLASHTERM_* variables, then apply overrides.

        Overrides whose value is None are ignored so CLI options that were
        not given fall through to the environment or defaults.
        """
        env = os.environ if environ is None else environ
        values = {}
        if env.get("FLASHTERM_SHELL"):
            values["shell"] = env["FLASHTERM_SHELL"]
        if env.get("FLASHTERM_FLUSH_INTERVAL"):
            values["flush_interval"] = float(env["FLASHTERM_FLUSH_INTERVAL"])
        if env.get("FLASHTERM_BATCH_THRESHOLD"):
            values["batch_threshold"] = int(env["FLASHTERM_BATCH_THRESHOLD"])
        if env.get("FLASHTERM_CONNECT_TIMEOUT"):
            values["connect_timeout"] = float(env["FLASHTERM_CONNECT_TIMEOUT"])
        if env.get("FLASHTERM_DATA_DIR"):
            values["data_dir"] = Path(env["FLASHTERM_DATA_DIR"])
        if env.get("FLASHTERM_LOG_FILE"):
            values["log_file"] = Path(env["FLASHTERM_LOG_FILE"])
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
