"""Local persistent shell process for one session.

One interactive interpreter per session is spawned lazily and kept for
the lifetime of the session. Commands are written to its stdin; stdout
and stderr are read by two independent tasks and pushed as output events
as soon as they arrive.

States:
- IDLE: never started
- SPAWNING: interpreter being created
- LIVE: running and writable
- DEAD: exited, failed to spawn, or stdin broke; the next write respawns
- CLOSED: session destroyed; terminal state
"""

from __future__ import annotations

import asyncio
import codecs
import os
import subprocess
import sys
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .backend import EmitCallback
from .errors import BackendClosedError, BackendWriteError, SpawnError
from .events import OutputEvent


COLOR_ENV = {"FORCE_COLOR": "1", "TERM": "xterm-256color"}


class BackendState(str, Enum):
    IDLE = "idle"
    SPAWNING = "spawning"
    LIVE = "live"
    DEAD = "dead"
    CLOSED = "closed"


def default_shell() -> Tuple[str, List[str]]:
    """Return (interpreter, args) for the platform's interactive shell."""
    if sys.platform == "win32":
        return "powershell.exe", ["-NoExit", "-Command", "-"]
    shell = os.environ.get("SHELL")
    if not shell:
        try:
            import pwd
            shell = pwd.getpwuid(os.getuid()).pw_shell
        except (ImportError, KeyError):
            shell = None
    return shell or "/bin/bash", []


def detect_flavor(shell: str) -> str:
    """Classify an interpreter as posix, powershell or cmd."""
    name = os.path.basename(shell.replace("\\", "/")).lower()
    if "powershell" in name or name.startswith("pwsh"):
        return "powershell"
    if name in ("cmd", "cmd.exe"):
        return "cmd"
    return "posix"


async def run_command_once(command: str, cwd: str, env: Dict[str, str]) -> Dict[str, Any]:
    """Run one command to completion in a throwaway shell.

    Uses ``cmd.exe /c`` on Windows and ``/bin/sh -c`` elsewhere. A spawn
    failure is reported in the result (``returncode`` 1) rather than raised.

    Returns:
        ``{"stdout", "stderr", "returncode", "cwd"}``
    """
    if sys.platform == "win32":
        argv = ["cmd.exe", "/c", command]
    else:
        argv = ["/bin/sh", "-c", command]
    full_env = dict(env)
    full_env.update(COLOR_ENV)
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=cwd,
            env=full_env,
        )
        stdout, stderr = await process.communicate()
    except OSError as exc:
        return {"stdout": "", "stderr": str(exc), "returncode": 1, "cwd": cwd}
    return {
        "stdout": stdout.decode("utf-8", errors="replace"),
        "stderr": stderr.decode("utf-8", errors="replace"),
        "returncode": process.returncode,
        "cwd": cwd,
    }


class ProcessBackend:
    """Owns one interactive shell process and its three pipes."""

    kind = "process"

    def __init__(
        self,
        name: str,
        cwd_provider: Callable[[], str],
        env: Dict[str, str],
        emit: EmitCallback,
        shell: Optional[str] = None,
        shell_args: Optional[List[str]] = None,
        read_chunk_size: int = 4096,
        debug_logger: Optional[Callable[[str], None]] = None,
    ):
        """Initialize backend (nothing is spawned yet).

        Args:
            name: Session identifier used in log lines
            cwd_provider: Returns the directory to spawn in
            env: Session environment snapshot
            emit: Coroutine callback receiving output events
            shell: Interpreter path (default: platform shell)
            shell_args: Interpreter arguments (default: platform args)
            read_chunk_size: Max bytes per pipe read
            debug_logger: Optional callback for debug messages
        """
        default_cmd, default_args = default_shell()
        self.name = name
        self.shell = shell or default_cmd
        self.shell_args = list(shell_args) if shell_args is not None else (
            default_args if shell is None else []
        )
        self.flavor = detect_flavor(self.shell)
        self.line_terminator = "\r\n" if self.flavor in ("powershell", "cmd") else "\n"
        self.read_chunk_size = read_chunk_size
        self.spawn_count = 0
        self._cwd_provider = cwd_provider
        self._env = env
        self._emit = emit
        self._debug_logger = debug_logger or (lambda msg: None)
        self._state = BackendState.IDLE
        self._process: Optional[asyncio.subprocess.Process] = None
        self._tasks: List[asyncio.Task] = []
        self._exit_requested = False
        self._spawn_lock = asyncio.Lock()

    @property
    def state(self) -> BackendState:
        return self._state

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process is not None else None

    def is_alive(self) -> bool:
        """Live, no exit code recorded, and stdin still open."""
        if self._state is not BackendState.LIVE or self._process is None:
            return False
        if self._process.returncode is not None:
            return False
        stdin = self._process.stdin
        return stdin is not None and not stdin.is_closing()

    async def ensure_running(self) -> "ProcessBackend":
        """Return self with a live interpreter, spawning one if needed.

        Raises:
            SpawnError: The interpreter could not be started
            BackendClosedError: The session was destroyed meanwhile
        """
        async with self._spawn_lock:
            if self._state is BackendState.CLOSED:
                raise BackendClosedError(f"Session {self.name} is closed")
            if self.is_alive():
                return self
            if self._state is BackendState.LIVE:
                self._debug_logger(f"[{self.name}] shell found dead before write, respawning")
                self._mark_dead()
            await self._spawn()
            return self

    async def write(self, command_text: str) -> None:
        """Write one command line, respawning once if the shell is unusable.

        Raises:
            SpawnError: Spawning (or respawning) failed
            BackendWriteError: The write failed on a freshly spawned shell too
            BackendClosedError: The session was destroyed meanwhile
        """
        data = (command_text + self.line_terminator).encode("utf-8")
        await self.ensure_running()
        try:
            await self._write_raw(data)
            return
        except OSError as exc:
            self._debug_logger(f"[{self.name}] write failed ({exc!r}), respawning and retrying")
            self._mark_dead()

        await self.ensure_running()
        try:
            await self._write_raw(data)
        except OSError as exc:
            self._mark_dead()
            raise BackendWriteError(f"Error executing command: {exc}") from exc

    async def write_directive(self, text: str) -> bool:
        """Best-effort write to a live shell; never spawns, never raises."""
        if not self.is_alive():
            return False
        try:
            await self._write_raw((text + self.line_terminator).encode("utf-8"))
        except OSError as exc:
            self._debug_logger(f"[{self.name}] directive write failed: {exc!r}")
            return False
        return True

    def close(self) -> None:
        """Kill the shell immediately. Safe to call in any state."""
        if self._state is BackendState.CLOSED:
            return
        self._state = BackendState.CLOSED
        self._exit_requested = True
        self._kill(self._process)
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        self._debug_logger(f"[{self.name}] shell closed")

    async def aclose(self, timeout: float = 2.0) -> None:
        """Close and wait for the process to be reaped."""
        process = self._process
        self.close()
        if process is not None and process.returncode is None:
            try:
                await asyncio.wait_for(process.wait(), timeout)
            except asyncio.TimeoutError:
                self._debug_logger(f"[{self.name}] shell did not exit within {timeout}s")

    async def _spawn(self) -> None:
        self._state = BackendState.SPAWNING
        cwd = self._cwd_provider()
        env = dict(self._env)
        env.update(COLOR_ENV)
        kwargs = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = getattr(subprocess, "CREATE_NO_WINDOW", 0)

        self._debug_logger(
            f"[{self.name}] spawning shell={self.shell} args={self.shell_args} cwd={cwd} flavor={self.flavor}"
        )
        try:
            process = await asyncio.create_subprocess_exec(
                self.shell,
                *self.shell_args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                **kwargs,
            )
        except OSError as exc:
            if self._state is not BackendState.CLOSED:
                self._state = BackendState.DEAD
            raise SpawnError(f"Failed to create shell process: {exc}") from exc

        if self._state is BackendState.CLOSED:
            self._kill(process)
            raise BackendClosedError(f"Session {self.name} closed during spawn")

        self._process = process
        self._exit_requested = False
        readers = [
            asyncio.create_task(self._read_stream(process.stdout, OutputEvent.stdout)),
            asyncio.create_task(self._read_stream(process.stderr, OutputEvent.stderr)),
        ]
        self._tasks = readers + [asyncio.create_task(self._watch_exit(process, readers))]
        self._state = BackendState.LIVE
        self.spawn_count += 1
        self._debug_logger(f"[{self.name}] shell live pid={process.pid}")

    async def _write_raw(self, data: bytes) -> None:
        process = self._process
        stdin = process.stdin if process is not None else None
        if stdin is None or stdin.is_closing():
            raise BrokenPipeError("shell stdin is not writable")
        stdin.write(data)
        await stdin.drain()

    async def _read_stream(
        self,
        stream: Optional[asyncio.StreamReader],
        make_event: Callable[[str], OutputEvent],
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(self.read_chunk_size)
            if not data:
                break
            text = decoder.decode(data)
            if text:
                await self._emit(make_event(text))
        tail = decoder.decode(b"", final=True)
        if tail:
            await self._emit(make_event(tail))

    async def _watch_exit(self, process: asyncio.subprocess.Process, readers: List[asyncio.Task]) -> None:
        code = await process.wait()
        # let buffered output reach the channel before the exit notice
        await asyncio.wait(readers, timeout=1.0)
        if process is not self._process or self._exit_requested:
            return
        if self._state is not BackendState.LIVE:
            return
        self._state = BackendState.DEAD
        self._debug_logger(f"[{self.name}] shell exited unexpectedly code={code}")
        await self._emit(OutputEvent.error(f"\n[Shell exited unexpectedly with code {code}]\n"))

    def _mark_dead(self) -> None:
        """Invalidate the current process so the next ensure_running respawns."""
        self._exit_requested = True
        self._kill(self._process)
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        if self._state is not BackendState.CLOSED:
            self._state = BackendState.DEAD

    def _kill(self, process: Optional[asyncio.subprocess.Process]) -> None:
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            pass
