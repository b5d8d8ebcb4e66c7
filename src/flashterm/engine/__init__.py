"""Session & process orchestration engine.

Creates, reuses and tears down per-tab shell processes and SSH streams,
routes typed commands between them, emulates ``cd`` and delivers output
to tabs in order.
"""

from .config import EngineConfig, default_data_dir
from .dispatcher import EventChannel, OutputDispatcher
from .engine import ShellEngine
from .errors import (
    BackendClosedError,
    BackendWriteError,
    FlashTermError,
    RemoteConnectError,
    SpawnError,
)
from .events import EventKind, OutputEvent
from .log_manager import LogManager
from .macros import MacroStore
from .process_backend import BackendState, ProcessBackend
from .remote_backend import RemoteBackend
from .router import CommandResult, CommandRouter, TabMode
from .session_registry import Session, SessionRegistry

__all__ = [
    "BackendClosedError",
    "BackendState",
    "BackendWriteError",
    "CommandResult",
    "CommandRouter",
    "EngineConfig",
    "EventChannel",
    "EventKind",
    "FlashTermError",
    "LogManager",
    "MacroStore",
    "OutputDispatcher",
    "OutputEvent",
    "ProcessBackend",
    "RemoteBackend",
    "RemoteConnectError",
    "Session",
    "SessionRegistry",
    "ShellEngine",
    "SpawnError",
    "TabMode",
    "default_data_dir",
]
