"""Session registry: one entry per tab, owning that tab's backends."""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from .dispatcher import EventChannel
from .events import OutputEvent

if TYPE_CHECKING:
    from .backend import ShellBackend
    from .process_backend import ProcessBackend
    from .remote_backend import RemoteBackend


@dataclass
class Session:
    """Per-tab execution context.

    ``cwd`` is the authoritative working directory. ``process`` is the
    local shell and ``remote`` the SSH stream; while a remote is bound it
    supersedes the local shell, which is left running but bypassed.
    ``lock`` serializes command handling so writes reach the backend in
    submission order.
    """

    session_id: str
    cwd: str
    env: Dict[str, str]
    channel: EventChannel
    tab_id: Optional[str] = None
    process: Optional[ProcessBackend] = None
    remote: Optional[RemoteBackend] = None
    alive: bool = True
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def backend(self) -> Optional[ShellBackend]:
        if self.remote is not None:
            return self.remote
        return self.process

    async def emit(self, event: OutputEvent) -> None:
        await self.channel.send(event)

    def bind_remote(self, remote: RemoteBackend) -> None:
        if self.remote is not None and self.remote is not remote:
            self.remote.close()
        self.remote = remote

    def unbind_remote(self, remote: Optional[RemoteBackend] = None) -> bool:
        """Drop the bound remote (only if it is ``remote`` when given)."""
        if self.remote is None:
            return False
        if remote is not None and self.remote is not remote:
            return False
        self.remote = None
        return True

    def release(self) -> None:
        """Kill the local shell, end the SSH stream and stop delivery."""
        self.alive = False
        if self.process is not None:
            self.process.close()
            self.process = None
        if self.remote is not None:
            self.remote.close()
            self.remote = None
        self.channel.close()


class SessionRegistry:
    """Maps session ids to sessions.

    Sessions are created on first reference and destroyed explicitly.
    Accessed only from the event loop thread.
    """

    def __init__(
        self,
        channel_factory: Callable[[str], EventChannel],
        initial_cwd: Optional[str] = None,
        debug_logger: Optional[Callable[[str], None]] = None,
    ):
        """Initialize registry.

        Args:
            channel_factory: Builds the event channel for a new session id
            initial_cwd: Working directory for new sessions (default: process cwd)
            debug_logger: Optional callback for debug messages
        """
        self._sessions: Dict[str, Session] = {}
        self._channel_factory = channel_factory
        self._initial_cwd = initial_cwd
        self._debug_logger = debug_logger or (lambda msg: None)

    def get_or_create(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        cwd = os.path.normpath(self._initial_cwd or os.getcwd())
        session = Session(
            session_id=session_id,
            cwd=cwd,
            env=dict(os.environ),
            channel=self._channel_factory(session_id),
        )
        self._sessions[session_id] = session
        self._debug_logger(f"[{session_id}] session created cwd={cwd}")
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def destroy(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.release()
        self._debug_logger(f"[{session_id}] session destroyed")
        return True

    def destroy_all(self) -> None:
        for session_id in list(self._sessions):
            self.destroy(session_id)

    def ids(self) -> List[str]:
        return list(self._sessions.keys())

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
