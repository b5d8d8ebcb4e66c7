"""Command routing per tab.

Each line typed into a tab goes through ``CommandRouter.execute``:

1. AwaitingRemotePassword: the line is the SSH password, used once.
2. AwaitingConfirmation: the line answers a y/n question (macro delete).
3. Normal:
   - a bound SSH stream gets the line verbatim, nothing is intercepted
   - built-ins (ssh, exit, history, help, flash macro ...) are handled here
   - ``cd`` is resolved in-process and never forwarded as typed
   - anything else is written to the local shell

Command handling for one session is serialized by ``Session.lock`` so
writes reach the backend in the order they were submitted. Every failure
is turned into a ``CommandResult`` plus an error event; nothing raises
out of ``execute``.
"""

from __future__ import annotations

import asyncio
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .directory import native_cd_command, parse_cd, resolve_directory
from .errors import FlashTermError, RemoteConnectError, SpawnError
from .events import OutputEvent
from .macros import MacroStore
from .process_backend import ProcessBackend
from .remote_backend import RemoteBackend
from .session_registry import Session, SessionRegistry


SSH_PATTERN = re.compile(r"^ssh\s+([^\s@]+)@([^\s:]+)(?::(\d+))?(?:\s+(.+))?$")
RULE = "━" * 60
HISTORY_SHOWN = 20

HELP_TEXT = """
FLASH TERMINAL
{rule}
SSH COMMANDS:
  ssh user@host              - Connect via SSH
  ssh user@host:port         - Connect with custom port
  exit                       - Disconnect SSH / Close tab

MACRO COMMANDS:
  flash macro create <name> <number> - Create macro from last N commands
  flash macro list                   - List all macros with commands
  flash macro <name>                 - Execute saved macro
  flash macro delete <name>          - Delete a macro
  macros                             - Quick list of macros

OTHER:
  cd <dir>       - Change directory (desktop, documents, downloads, ~, ..)
  clear / cls    - Clear screen
  history        - Show command history
  help           - Show this help
  exit           - Close current tab
{rule}
"""


class TabMode(str, Enum):
    NORMAL = "normal"
    AWAITING_REMOTE_PASSWORD = "awaiting_remote_password"
    AWAITING_CONFIRMATION = "awaiting_confirmation"


@dataclass
class RemoteTarget:
    username: str
    host: str
    port: int = 22

    @property
    def label(self) -> str:
        return f"{self.username}@{self.host}"


@dataclass
class TabState:
    mode: TabMode = TabMode.NORMAL
    pending_remote: Optional[RemoteTarget] = None
    pending_confirmation: Optional[str] = None
    history: List[str] = field(default_factory=list)


@dataclass
class CommandResult:
    """Outcome of one submitted line.

    ``close_tab`` asks the consumer to close the tab and destroy the
    session (local ``exit``).
    """

    success: bool = True
    error: Optional[str] = None
    close_tab: bool = False

    @classmethod
    def failed(cls, error: str) -> "CommandResult":
        return cls(success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success}
        if self.error is not None:
            data["error"] = self.error
        if self.close_tab:
            data["close_tab"] = True
        return data


ProcessFactory = Callable[[Session], ProcessBackend]
RemoteFactory = Callable[[Session, RemoteTarget], RemoteBackend]


class CommandRouter:
    """Routes typed lines to built-ins, cd emulation or a backend."""

    def __init__(
        self,
        registry: SessionRegistry,
        process_factory: ProcessFactory,
        remote_factory: RemoteFactory,
        macro_store: MacroStore,
        macro_delay: float = 0.3,
        debug_logger: Optional[Callable[[str], None]] = None,
        error_logger: Optional[Callable[[str], None]] = None,
    ):
        """Initialize router.

        Args:
            registry: Session registry shared with the engine
            process_factory: Builds the local shell backend for a session
            remote_factory: Builds an SSH backend for a session and target
            macro_store: Persisted macros
            macro_delay: Pause between replayed macro commands (seconds)
            debug_logger: Optional callback for debug messages
            error_logger: Optional callback for failures
        """
        self.registry = registry
        self._process_factory = process_factory
        self._remote_factory = remote_factory
        self._macros = macro_store
        self.macro_delay = macro_delay
        self._debug_logger = debug_logger or (lambda msg: None)
        self._error_logger = error_logger or self._debug_logger
        self._tabs: Dict[str, TabState] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def tab_state(self, tab_id: str) -> TabState:
        return self._tabs.setdefault(tab_id, TabState())

    def forget_tab(self, tab_id: str) -> None:
        self._tabs.pop(tab_id, None)

    def awaiting_secret(self, tab_id: str) -> bool:
        state = self._tabs.get(tab_id)
        return state is not None and state.mode is TabMode.AWAITING_REMOTE_PASSWORD

    async def execute(self, session_id: str, tab_id: str, text: str) -> CommandResult:
        """Handle one line typed into a tab. Never raises."""
        session = self.registry.get_or_create(session_id)
        session.tab_id = tab_id
        tab = self.tab_state(tab_id)
        async with session.lock:
            if not session.alive:
                return CommandResult.failed("Session has been closed")
            if tab.mode is TabMode.AWAITING_REMOTE_PASSWORD:
                action = self._complete_remote_login(session, tab, text)
            elif tab.mode is TabMode.AWAITING_CONFIRMATION:
                action = self._complete_confirmation(session, tab, text)
            else:
                action = self._handle_normal(session, tab, text)
            return await self._guarded(session, action)

    async def connect(
        self,
        session_id: str,
        tab_id: str,
        host: str,
        username: str,
        password: str,
        port: Any = 22,
    ) -> CommandResult:
        """Open an SSH stream for a session directly (no password prompt). Never raises."""
        session = self.registry.get_or_create(session_id)
        session.tab_id = tab_id
        target = RemoteTarget(username=username, host=host, port=port)
        async with session.lock:
            if not session.alive:
                return CommandResult.failed("Session has been closed")
            return await self._guarded(session, self._connect_remote(session, target, password))

    async def disconnect(self, session_id: str) -> CommandResult:
        """Close the session's SSH stream if any; routing reverts to local.

        Waits for a command or handshake in progress on the session, so a
        connect that was pending when this was called is undone too.
        """
        session = self.registry.get(session_id)
        if session is None:
            return CommandResult()
        async with session.lock:
            remote = session.remote
            if remote is None or not session.alive:
                return CommandResult()
            session.unbind_remote(remote)
            remote.close()
            await session.emit(OutputEvent.info("\n[SSH connection closed]\n"))
        return CommandResult()

    async def _guarded(self, session: Session, action: Awaitable[CommandResult]) -> CommandResult:
        """Await a handler, turning any failure into a failed result plus an error event."""
        try:
            return await action
        except FlashTermError as exc:
            self._error_logger(f"[{session.session_id}] {exc}")
            await session.emit(OutputEvent.error(f"{exc}\n"))
            return CommandResult.failed(str(exc))
        except Exception as exc:
            self._error_logger(f"[{session.session_id}] unexpected error: {exc!r}")
            await session.emit(OutputEvent.error(f"Error executing command: {exc}\n"))
            return CommandResult.failed(str(exc))

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    async def _complete_remote_login(self, session: Session, tab: TabState, text: str) -> CommandResult:
        target = tab.pending_remote
        tab.mode = TabMode.NORMAL
        tab.pending_remote = None
        if target is None:
            return CommandResult.failed("No pending SSH connection")
        return await self._connect_remote(session, target, text.strip())

    async def _complete_confirmation(self, session: Session, tab: TabState, text: str) -> CommandResult:
        name = tab.pending_confirmation
        tab.mode = TabMode.NORMAL
        tab.pending_confirmation = None
        answer = text.strip().lower()
        if name is not None and answer in ("y", "yes"):
            self._macros.delete(name)
            await self._info(session, f"Macro '{name}' deleted successfully.")
        else:
            await self._info(session, "Deletion cancelled.")
        return CommandResult()

    async def _handle_normal(self, session: Session, tab: TabState, text: str) -> CommandResult:
        stripped = text.strip()
        if not stripped:
            return CommandResult()

        previous = list(tab.history)
        tab.history.append(text)

        if session.remote is not None:
            return await self._route(session, text)

        lowered = stripped.lower()
        if stripped == "exit":
            return CommandResult(close_tab=True)
        if stripped == "help":
            await self._info(session, HELP_TEXT.format(rule=RULE).strip("\n"))
            return CommandResult()
        if stripped == "history":
            await self._show_history(session, previous)
            return CommandResult()
        if lowered in ("macros", "flash macros"):
            await self._list_macros(session, detailed=False)
            return CommandResult()
        if stripped.startswith("flash"):
            return await self._handle_flash(session, tab, stripped, previous)
        if stripped.startswith("ssh "):
            return await self._request_remote(session, tab, stripped)

        return await self._route(session, text)

    # ------------------------------------------------------------------
    # Core routing
    # ------------------------------------------------------------------

    async def _route(self, session: Session, text: str) -> CommandResult:
        """Remote verbatim, else cd emulation, else the local shell."""
        remote = session.remote
        if remote is not None:
            await remote.write(text)
            return CommandResult()

        arg = parse_cd(text)
        if arg is not None:
            return await self._change_directory(session, arg)

        process = session.process
        if process is None:
            process = self._process_factory(session)
            session.process = process
        try:
            await process.write(text)
        except SpawnError:
            if session.process is process:
                process.close()
                session.process = None
            raise
        return CommandResult()

    async def _change_directory(self, session: Session, arg: str) -> CommandResult:
        target = resolve_directory(arg, session.cwd)
        if not os.path.isdir(target):
            self._debug_logger(f"[{session.session_id}] cd failed, not a directory: {target}")
            await session.emit(OutputEvent.error(f"The system cannot find the path specified: {target}\n"))
            return CommandResult()

        session.cwd = target
        process = session.process
        if process is not None and process.is_alive():
            written = await process.write_directive(native_cd_command(target, process.flavor))
            if not written:
                self._debug_logger(f"[{session.session_id}] shell not told about cd to {target}")
        self._debug_logger(f"[{session.session_id}] cwd -> {target}")
        await session.emit(OutputEvent.cwd_changed(target))
        return CommandResult()

    # ------------------------------------------------------------------
    # SSH
    # ------------------------------------------------------------------

    async def _request_remote(self, session: Session, tab: TabState, command: str) -> CommandResult:
        match = SSH_PATTERN.match(command)
        if match is None:
            await session.emit(OutputEvent.error("Usage: ssh user@host[:port]\n"))
            await self._info(session, "Example: ssh root@192.168.1.1\nExample: ssh user@example.com:2222")
            return CommandResult()
        username, host, port, _ = match.groups()
        target = RemoteTarget(username=username, host=host, port=int(port) if port else 22)
        tab.mode = TabMode.AWAITING_REMOTE_PASSWORD
        tab.pending_remote = target
        await self._info(session, f"Enter password for {target.label}:")
        return CommandResult()

    async def _connect_remote(self, session: Session, target: RemoteTarget, password: str) -> CommandResult:
        remote = self._remote_factory(session, target)
        await self._info(session, f"Connecting via SSH to {target.label}...")
        try:
            await remote.connect(password)
        except RemoteConnectError as exc:
            remote.close()
            self._error_logger(f"[{session.session_id}] SSH connect to {remote.target} failed: {exc}")
            await session.emit(OutputEvent.error(f"SSH connection error: {exc}\n"))
            return CommandResult.failed(str(exc))
        if not session.alive:
            remote.close()
            return CommandResult.failed("Session has been closed")
        session.bind_remote(remote)
        await self._info(session, f"Connected to {target.label}")
        return CommandResult()

    # ------------------------------------------------------------------
    # Built-ins
    # ------------------------------------------------------------------

    async def _show_history(self, session: Session, history: List[str]) -> None:
        if not history:
            await self._info(session, "No command history yet.")
            return
        recent = history[-HISTORY_SHOWN:]
        start = len(history) - len(recent) + 1
        lines = ["COMMAND HISTORY", RULE]
        lines.extend(f"{start + i}. {cmd}" for i, cmd in enumerate(recent))
        lines.append(RULE)
        await self._info(session, "\n".join(lines))

    async def _list_macros(self, session: Session, detailed: bool) -> None:
        macros = self._macros.load()
        if not macros:
            await self._info(session, "No macros saved yet.\nCreate one with: flash macro create <name> <number>")
            return
        lines = ["SAVED MACROS", RULE]
        for name, commands in macros.items():
            lines.append(f"{name} ({len(commands)} commands)")
            if detailed:
                lines.extend(f"  {i + 1}. {cmd}" for i, cmd in enumerate(commands))
        if not detailed:
            lines.append("Use 'flash macro list' for detailed view")
        lines.append(RULE)
        await self._info(session, "\n".join(lines))

    async def _handle_flash(
        self, session: Session, tab: TabState, command: str, history: List[str]
    ) -> CommandResult:
        parts = command.split()
        if len(parts) < 2:
            await session.emit(OutputEvent.error("Usage: flash <subcommand> [args]\n"))
            return CommandResult()
        if parts[1] != "macro":
            await session.emit(OutputEvent.error(f"Unknown flash command: {parts[1]}\n"))
            return CommandResult()
        if len(parts) < 3:
            await self._info(
                session,
                "Usage:\n"
                "  flash macro create <name> <number>\n"
                "  flash macro list\n"
                "  flash macro <name>\n"
                "  flash macro delete <name>",
            )
            return CommandResult()

        action = parts[2]
        if action == "list":
            await self._list_macros(session, detailed=True)
        elif action == "create":
            await self._create_macro(session, parts, history)
        elif action == "delete":
            if len(parts) < 4:
                await session.emit(OutputEvent.error("Usage: flash macro delete <name>\n"))
            elif self._macros.get(parts[3]) is None:
                await session.emit(OutputEvent.error(f"Macro '{parts[3]}' not found.\n"))
            else:
                tab.mode = TabMode.AWAITING_CONFIRMATION
                tab.pending_confirmation = parts[3]
                await self._info(session, f"Delete macro '{parts[3]}'? (y/n)")
        else:
            await self._run_macro(session, action)
        return CommandResult()

    async def _create_macro(self, session: Session, parts: List[str], history: List[str]) -> None:
        if len(parts) < 5:
            await session.emit(OutputEvent.error("Usage: flash macro create <name> <number>\n"))
            await self._info(session, "Example: flash macro create deploy 5")
            return
        name = parts[3]
        try:
            count = int(parts[4])
        except ValueError:
            count = 0
        if count < 1:
            await session.emit(OutputEvent.error("Error: Number must be a positive integer.\n"))
            return
        if count > len(history):
            await session.emit(OutputEvent.error(f"Error: Only {len(history)} commands in history.\n"))
            return
        commands = history[-count:]
        self._macros.save(name, commands)
        lines = [f"Macro '{name}' created with {count} commands:"]
        lines.extend(f"  {i + 1}. {cmd}" for i, cmd in enumerate(commands))
        lines.append(f"Run with: flash macro {name}")
        await self._info(session, "\n".join(lines))

    async def _run_macro(self, session: Session, name: str) -> None:
        commands = self._macros.get(name)
        if commands is None:
            await session.emit(OutputEvent.error(f"Macro '{name}' not found.\n"))
            await self._info(session, "Use 'flash macro list' to see available macros.")
            return
        await self._info(session, f"Executing macro '{name}'...\n{RULE}")
        for command in commands:
            await self._info(session, f"> {command}")
            try:
                await self._route(session, command)
            except FlashTermError as exc:
                self._error_logger(f"[{session.session_id}] macro '{name}' step failed: {exc}")
                await session.emit(OutputEvent.error(f"{exc}\n"))
            if self.macro_delay:
                await asyncio.sleep(self.macro_delay)
        await self._info(session, f"{RULE}\nMacro '{name}' completed.")

    async def _info(self, session: Session, text: str) -> None:
        await session.emit(OutputEvent.info(text + "\n"))
