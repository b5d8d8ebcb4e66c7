"""Session & process orchestration engine.

``ShellEngine`` is the single entry point a front end talks to:

- ``execute(session_id, tab_id, text)`` -> ``{"success": ...}``
- ``destroy(session_id)``
- ``get_cwd(session_id)``
- ``connect(...)`` / ``disconnect(session_id)``
- ``run_once(session_id, command)`` / ``ssh_execute(...)`` for one-shot commands

Output is pushed to the consumer callback as
``consumer(tab_id, {"stdout", "stderr", "type", "cwd"?})``.
All methods are meant to be called from the event loop thread.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from .config import EngineConfig
from .dispatcher import EventChannel, OutputDispatcher
from .errors import RemoteConnectError
from .events import OutputEvent
from .log_manager import LogManager
from .macros import MacroStore
from .process_backend import ProcessBackend, run_command_once
from .remote_backend import RemoteBackend, run_remote_command
from .router import CommandRouter, RemoteTarget
from .session_registry import Session, SessionRegistry


OutputConsumer = Callable[[str, Dict[str, Any]], None]


class ShellEngine:
    """Owns the registry, router and dispatcher for all tabs."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        consumer: Optional[OutputConsumer] = None,
        log_manager: Optional[LogManager] = None,
    ):
        """Initialize engine.

        Args:
            config: Engine configuration (defaults if omitted)
            consumer: Callback(tab_id, payload) receiving output
            log_manager: Log sink (one is created from config if omitted)
        """
        self.config = config or EngineConfig()
        self.log_manager = log_manager or LogManager(
            max_lines=self.config.max_log_lines, log_file=self.config.log_file
        )
        self._debug = self.log_manager.logger("debug")
        self._consumer: OutputConsumer = consumer or (lambda tab_id, payload: None)

        self.dispatcher = OutputDispatcher(
            self._deliver_to_consumer,
            flush_interval=self.config.flush_interval,
            batch_threshold=self.config.batch_threshold,
            debug_logger=self._debug,
        )
        self.registry = SessionRegistry(
            channel_factory=self._make_channel,
            initial_cwd=str(self.config.initial_cwd) if self.config.initial_cwd else None,
            debug_logger=self.log_manager.logger("events"),
        )
        self.macros = MacroStore(self.config.macros_file, debug_logger=self.log_manager.logger("errors"))
        self.router = CommandRouter(
            registry=self.registry,
            process_factory=self._make_process,
            remote_factory=self._make_remote,
            macro_store=self.macros,
            macro_delay=self.config.macro_delay,
            debug_logger=self._debug,
            error_logger=self.log_manager.logger("errors"),
        )

    def set_consumer(self, consumer: OutputConsumer) -> None:
        self._consumer = consumer

    async def execute(self, session_id: str, tab_id: str, command_text: str) -> Dict[str, Any]:
        """Route one typed line. Never raises."""
        result = await self.router.execute(session_id, tab_id, command_text)
        return result.to_dict()

    def destroy(self, session_id: str) -> None:
        """Release the session's backends and forget it. Idempotent."""
        session = self.registry.get(session_id)
        if session is None:
            return
        tab_id = session.tab_id
        self.registry.destroy(session_id)
        if tab_id is not None:
            self.dispatcher.discard(tab_id)
            self.router.forget_tab(tab_id)

    def get_cwd(self, session_id: str) -> str:
        return self.registry.get_or_create(session_id).cwd

    async def connect(
        self,
        session_id: str,
        tab_id: str,
        host: str,
        username: str,
        password: str,
        port: Any = 22,
    ) -> Dict[str, Any]:
        result = await self.router.connect(session_id, tab_id, host, username, password, port)
        return result.to_dict()

    async def disconnect(self, session_id: str) -> Dict[str, Any]:
        result = await self.router.disconnect(session_id)
        return result.to_dict()

    async def run_once(self, session_id: str, command: str) -> Dict[str, Any]:
        """Run one command to completion outside the persistent shell.

        The command runs in the session's recorded cwd with its environment
        and its output is returned, not pushed to the consumer. Never raises.
        """
        session = self.registry.get_or_create(session_id)
        result = await run_command_once(command, session.cwd, session.env)
        if result["returncode"] != 0:
            self._debug(f"[{session_id}] one-shot command exited with {result['returncode']}")
        return result

    async def ssh_execute(
        self,
        host: str,
        username: str,
        password: str,
        command: str = "",
        port: Any = 22,
    ) -> Dict[str, Any]:
        """Run one command over a fresh SSH connection. Never raises.

        Returns ``{"success": True, "stdout", "stderr", "code"}`` or
        ``{"success": False, "error"}``.
        """
        try:
            result = await run_remote_command(
                host,
                username,
                password,
                command=command,
                port=port,
                connect_timeout=self.config.connect_timeout,
            )
        except RemoteConnectError as exc:
            self.log_manager.add("errors", f"SSH exec on {username}@{host} failed: {exc}")
            return {"success": False, "error": str(exc)}
        return {"success": True, **result}

    def remote_label(self, session_id: str) -> Optional[str]:
        """Return ``user@host`` while an SSH stream is bound, else None."""
        session = self.registry.get(session_id)
        if session is None or session.remote is None:
            return None
        return f"{session.remote.username}@{session.remote.host}"

    def awaiting_secret(self, tab_id: str) -> bool:
        return self.router.awaiting_secret(tab_id)

    async def drain(self, session_id: str) -> None:
        """Wait until all events queued for a session reached the dispatcher."""
        session = self.registry.get(session_id)
        if session is not None:
            await session.channel.join()

    async def shutdown(self) -> None:
        """Destroy every session, waiting for local shells to be reaped."""
        for session_id in self.registry.ids():
            session = self.registry.get(session_id)
            process = session.process if session is not None else None
            self.destroy(session_id)
            if process is not None:
                await process.aclose()

    def _deliver_to_consumer(self, tab_id: str, payload: Dict[str, Any]) -> None:
        text = payload.get("stdout") or payload.get("stderr") or ""
        if text:
            self.log_manager.add("output", f"[{tab_id}] {text.rstrip()}")
        self._consumer(tab_id, payload)

    def _make_channel(self, session_id: str) -> EventChannel:
        def deliver(event: OutputEvent) -> None:
            session = self.registry.get(session_id)
            tab_id = session.tab_id if session is not None and session.tab_id else session_id
            self.dispatcher.publish(tab_id, event)

        return EventChannel(
            session_id,
            deliver,
            maxsize=self.config.channel_size,
            debug_logger=self._debug,
        )

    def _make_process(self, session: Session) -> ProcessBackend:
        return ProcessBackend(
            name=session.session_id,
            cwd_provider=lambda: session.cwd,
            env=session.env,
            emit=session.emit,
            shell=self.config.shell,
            shell_args=self.config.shell_args,
            read_chunk_size=self.config.read_chunk_size,
            debug_logger=self._debug,
        )

    def _make_remote(self, session: Session, target: RemoteTarget) -> RemoteBackend:
        return RemoteBackend(
            name=session.session_id,
            host=target.host,
            username=target.username,
            port=target.port,
            emit=session.emit,
            on_closed=session.unbind_remote,
            connect_timeout=self.config.connect_timeout,
            read_chunk_size=self.config.read_chunk_size,
            debug_logger=self._debug,
        )
