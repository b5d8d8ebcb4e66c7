"""Remote SSH shell stream for one session.

Philosophy:
- Password authentication only (no keys, no agent, no keyboard-interactive)
- Blocking paramiko calls run off the event loop
- One daemon reader thread per stream hands chunks back to the loop
- No automatic reconnect: a failed write is reported, never replayed

The handshake is bounded twice: paramiko's own socket/banner/auth
timeouts and an outer ``asyncio.wait_for``.
"""

from __future__ import annotations

import asyncio
import codecs
import concurrent.futures
import threading
from typing import Any, Callable, Dict, Optional

import paramiko

from .backend import EmitCallback
from .errors import BackendWriteError, RemoteConnectError
from .events import OutputEvent


DEFAULT_PORT = 22
CLOSED_NOTICE = "\n[SSH connection closed]\n"


def parse_port(value: Any) -> int:
    """Coerce a port value, falling back to 22 when it is not a valid port."""
    try:
        port = int(value)
    except (TypeError, ValueError):
        return DEFAULT_PORT
    if 0 < port < 65536:
        return port
    return DEFAULT_PORT


def _password_login(client: Any, host: str, port: int, username: str, password: str, timeout: float) -> None:
    """Blocking password-only handshake on a fresh client."""
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    client.connect(
        hostname=host,
        port=port,
        username=username,
        password=password,
        timeout=timeout,
        banner_timeout=timeout,
        auth_timeout=timeout,
        look_for_keys=False,
        allow_agent=False,
    )


async def run_remote_command(
    host: str,
    username: str,
    password: str,
    command: str = "",
    port: Any = DEFAULT_PORT,
    connect_timeout: float = 20.0,
    client_factory: Optional[Callable[[], Any]] = None,
) -> Dict[str, Any]:
    """Run one command over a short-lived SSH connection.

    The handshake is bounded by ``connect_timeout``; the command itself
    runs until the remote side closes the channel. An empty command runs
    ``echo Connected``.

    Returns:
        ``{"stdout", "stderr", "code"}`` with the remote exit status

    Raises:
        RemoteConnectError: Handshake, auth or exec failure
    """
    factory = client_factory or paramiko.SSHClient
    port = parse_port(port)
    target = f"{username}@{host}:{port}"

    def run() -> Dict[str, Any]:
        client = factory()
        try:
            _password_login(client, host, port, username, password, connect_timeout)
            _, stdout, stderr = client.exec_command(command or "echo Connected")
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            code = stdout.channel.recv_exit_status()
        finally:
            client.close()
        return {"stdout": out, "stderr": err, "code": code}

    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, run)
    except paramiko.AuthenticationException as exc:
        raise RemoteConnectError(f"Authentication failed for {username}@{host}") from exc
    except (paramiko.SSHException, OSError, EOFError) as exc:
        raise RemoteConnectError(str(exc) or f"SSH exec on {target} failed") from exc
    except Exception as exc:
        raise RemoteConnectError(f"{exc.__class__.__name__}: {exc}") from exc


class RemoteBackend:
    """Owns one authenticated SSH connection and its interactive shell."""

    kind = "remote"

    def __init__(
        self,
        name: str,
        host: str,
        username: str,
        emit: EmitCallback,
        port: Any = DEFAULT_PORT,
        connect_timeout: float = 20.0,
        read_chunk_size: int = 4096,
        on_closed: Optional[Callable[["RemoteBackend"], Any]] = None,
        debug_logger: Optional[Callable[[str], None]] = None,
        client_factory: Optional[Callable[[], Any]] = None,
    ):
        """Initialize backend (nothing is connected yet).

        Args:
            name: Session identifier used in log lines
            host: Remote host
            username: Login name
            emit: Coroutine callback receiving output events
            port: SSH port; invalid values fall back to 22
            connect_timeout: Seconds allowed for the whole handshake
            read_chunk_size: Max bytes per channel read
            on_closed: Called on the loop when the remote end closes the stream
            debug_logger: Optional callback for debug messages
            client_factory: Builds the SSH client (default paramiko.SSHClient)
        """
        self.name = name
        self.host = host
        self.username = username
        self.port = parse_port(port)
        self.connect_timeout = connect_timeout
        self.read_chunk_size = read_chunk_size
        self._emit = emit
        self._on_closed = on_closed
        self._debug_logger = debug_logger or (lambda msg: None)
        self._client_factory = client_factory or paramiko.SSHClient
        self._client: Optional[Any] = None
        self._channel: Optional[Any] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._abandoned = False
        self._closed = False

    @property
    def target(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    @property
    def closed(self) -> bool:
        return self._closed

    def is_alive(self) -> bool:
        if self._closed or self._channel is None:
            return False
        return not getattr(self._channel, "closed", False)

    async def connect(self, password: str) -> None:
        """Authenticate and open the interactive shell.

        Raises:
            RemoteConnectError: Timeout, auth rejection, network or shell failure
        """
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._debug_logger(f"[{self.name}] connecting to {self.target}")
        try:
            await asyncio.wait_for(
                loop.run_in_executor(None, self._open, password),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as exc:
            self._abandoned = True
            self._close_transport()
            raise RemoteConnectError(
                f"Timed out while connecting to {self.target} after {self.connect_timeout:g}s"
            ) from exc
        except paramiko.AuthenticationException as exc:
            raise RemoteConnectError(f"Authentication failed for {self.username}@{self.host}") from exc
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise RemoteConnectError(str(exc) or exc.__class__.__name__) from exc
        except Exception as exc:
            # e.g. UnicodeError from the resolver for a malformed host name
            raise RemoteConnectError(f"{exc.__class__.__name__}: {exc}") from exc

        if self._closed:
            self._close_transport()
            raise RemoteConnectError(f"Connection to {self.target} cancelled")

        self._reader_thread = threading.Thread(
            target=self._reader_loop, name=f"ssh-reader-{self.name}", daemon=True
        )
        self._reader_thread.start()
        self._debug_logger(f"[{self.name}] connected to {self.target}")

    async def write(self, command_text: str) -> None:
        """Send one command line. No retry on failure.

        Raises:
            BackendWriteError: The stream is gone or the send failed
        """
        channel = self._channel
        if not self.is_alive() or channel is None:
            raise BackendWriteError(f"SSH session to {self.target} is not connected")
        data = (command_text + "\n").encode("utf-8")
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, channel.sendall, data)
        except (OSError, paramiko.SSHException) as exc:
            raise BackendWriteError(f"SSH write error: {exc}") from exc

    def close(self) -> None:
        """End the stream and the connection. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._stop_event.set()
        self._close_transport()
        self._debug_logger(f"[{self.name}] disconnected from {self.target}")

    def _open(self, password: str) -> None:
        # runs in an executor thread
        client = self._client_factory()
        self._client = client
        try:
            _password_login(client, self.host, self.port, self.username, password, self.connect_timeout)
            channel = client.invoke_shell(term="xterm-256color")
        except Exception:
            client.close()
            raise
        if self._abandoned or self._closed:
            client.close()
            return
        self._channel = channel

    def _close_transport(self) -> None:
        channel, self._channel = self._channel, None
        client, self._client = self._client, None
        for resource in (channel, client):
            if resource is None:
                continue
            try:
                resource.close()
            except (OSError, paramiko.SSHException) as exc:
                self._debug_logger(f"[{self.name}] error while closing: {exc!r}")

    def _reader_loop(self) -> None:
        channel = self._channel
        if channel is None:
            return
        out_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        err_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while not self._stop_event.is_set():
            try:
                if channel.recv_stderr_ready():
                    data = channel.recv_stderr(self.read_chunk_size)
                    if data:
                        self._deliver(OutputEvent.stderr(err_decoder.decode(data)))
                    continue
                if channel.recv_ready():
                    data = channel.recv(self.read_chunk_size)
                    if not data:
                        break
                    self._deliver(OutputEvent.stdout(out_decoder.decode(data)))
                    continue
                if channel.closed or channel.eof_received or channel.exit_status_ready():
                    break
            except (OSError, EOFError, paramiko.SSHException) as exc:
                if not self._stop_event.is_set():
                    self._deliver(OutputEvent.error(f"SSH stream error: {exc}\n"))
                break
            self._stop_event.wait(0.05)

        if self._stop_event.is_set():
            return
        # remote end closed the stream
        self._deliver(OutputEvent.info(CLOSED_NOTICE))
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._handle_remote_close)

    def _handle_remote_close(self) -> None:
        if self._closed:
            return
        self.close()
        if self._on_closed is not None:
            self._on_closed(self)

    def _deliver(self, event: OutputEvent) -> None:
        """Hand an event to the loop, waiting while the channel is full."""
        loop = self._loop
        if loop is None or loop.is_closed() or not event.text:
            return
        try:
            future = asyncio.run_coroutine_threadsafe(self._emit(event), loop)
        except RuntimeError:
            return
        while not self._stop_event.is_set():
            try:
                future.result(timeout=0.2)
                return
            except concurrent.futures.TimeoutError:
                continue
            except Exception as exc:
                self._log_from_thread(f"[{self.name}] event delivery failed: {exc!r}")
                return
        future.cancel()

    def _log_from_thread(self, message: str) -> None:
        """Log from the reader thread; the log sink is only touched on the loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._debug_logger, message)
        except RuntimeError:
            # loop closed meanwhile
            pass
