"""Tests for RemoteBackend against a fake paramiko client."""

import threading

import paramiko
import pytest

from flashterm.engine.backend import ShellBackend
from flashterm.engine.errors import BackendWriteError, RemoteConnectError
from flashterm.engine.events import EventKind
from flashterm.engine.process_backend import ProcessBackend
from flashterm.engine.remote_backend import CLOSED_NOTICE, RemoteBackend, parse_port, run_remote_command


pytestmark = pytest.mark.anyio


class Recorder:

    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)

    def text(self, kind=None):
        return "".join(e.text for e in self.events if kind is None or e.kind is kind)


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def make_backend(fake_ssh, recorder):
    created = []

    def make(**kwargs):
        kwargs.setdefault("connect_timeout", 2.0)
        backend = RemoteBackend(
            name="test",
            host="example.com",
            username="bob",
            emit=recorder,
            client_factory=fake_ssh.factory,
            **kwargs,
        )
        created.append(backend)
        return backend

    yield make
    for backend in created:
        backend.close()


class TestParsePort:

    @pytest.mark.parametrize(
        "value, expected",
        [(22, 22), ("2222", 2222), (None, 22), ("abc", 22), (0, 22), (70000, 22)],
    )
    def test_parse_port(self, value, expected):
        assert parse_port(value) == expected


class TestConnect:

    async def test_password_only_handshake(self, make_backend, fake_ssh):
        backend = make_backend(port="2222")
        await backend.connect("s3cret")

        kwargs = fake_ssh.connect_kwargs
        assert kwargs["hostname"] == "example.com"
        assert kwargs["port"] == 2222
        assert kwargs["username"] == "bob"
        assert kwargs["password"] == "s3cret"
        assert kwargs["look_for_keys"] is False
        assert kwargs["allow_agent"] is False
        assert kwargs["timeout"] == 2.0
        assert fake_ssh.shell_kwargs == {"term": "xterm-256color"}
        assert isinstance(fake_ssh.clients[0].policy, paramiko.AutoAddPolicy)
        assert backend.is_alive()
        assert backend.target == "bob@example.com:2222"

    async def test_authentication_failure(self, make_backend, fake_ssh):
        fake_ssh.connect_error = paramiko.AuthenticationException("bad password")
        backend = make_backend()
        with pytest.raises(RemoteConnectError, match="Authentication failed for bob@example.com"):
            await backend.connect("wrong")
        assert fake_ssh.clients[0].closed
        assert not backend.is_alive()

    async def test_network_failure(self, make_backend, fake_ssh):
        fake_ssh.connect_error = OSError("Connection refused")
        with pytest.raises(RemoteConnectError, match="Connection refused"):
            await make_backend().connect("pw")

    async def test_timeout(self, make_backend, fake_ssh):
        fake_ssh.connect_delay = 0.5
        backend = make_backend(connect_timeout=0.05)
        with pytest.raises(RemoteConnectError, match="Timed out"):
            await backend.connect("pw")
        assert not backend.is_alive()

    @pytest.mark.parametrize("error", [ValueError("bad host"), UnicodeError("label empty or too long")])
    async def test_unexpected_error_becomes_connect_error(self, make_backend, fake_ssh, error):
        fake_ssh.connect_error = error
        backend = make_backend()
        with pytest.raises(RemoteConnectError, match=type(error).__name__):
            await backend.connect("pw")
        assert fake_ssh.clients[0].closed
        assert not backend.is_alive()


class TestStream:

    async def test_output_is_streamed(self, make_backend, fake_ssh, recorder, wait_until):
        fake_ssh.channel.feed(b"Welcome\n")
        backend = make_backend()
        await backend.connect("pw")
        fake_ssh.channel.feed(b"prompt$ ")
        assert await wait_until(lambda: recorder.text(EventKind.STDOUT) == "Welcome\nprompt$ ")

    async def test_stderr_is_separate(self, make_backend, fake_ssh, recorder, wait_until):
        fake_ssh.channel.stderr_chunks.append(b"warning\n")
        await make_backend().connect("pw")
        assert await wait_until(lambda: recorder.text(EventKind.STDERR) == "warning\n")

    async def test_split_utf8_sequence_is_reassembled(self, make_backend, fake_ssh, recorder, wait_until):
        data = "héllo\n".encode("utf-8")
        fake_ssh.channel.feed(data[:2])
        fake_ssh.channel.feed(data[2:])
        await make_backend().connect("pw")
        assert await wait_until(lambda: recorder.text(EventKind.STDOUT) == "héllo\n")

    async def test_write_sends_line(self, make_backend, fake_ssh):
        backend = make_backend()
        await backend.connect("pw")
        await backend.write("ls -la")
        assert fake_ssh.channel.sent == [b"ls -la\n"]

    async def test_write_failure_is_not_retried(self, make_backend, fake_ssh):
        backend = make_backend()
        await backend.connect("pw")
        fake_ssh.channel.send_error = OSError("Socket is closed")
        with pytest.raises(BackendWriteError, match="SSH write error"):
            await backend.write("ls")
        assert fake_ssh.channel.sent == []
        assert len(fake_ssh.clients) == 1

    async def test_write_before_connect_fails(self, make_backend):
        with pytest.raises(BackendWriteError):
            await make_backend().write("ls")


class TestClosing:

    async def test_remote_hangup_notifies_and_closes(self, make_backend, fake_ssh, recorder, wait_until):
        closed = []
        backend = make_backend(on_closed=closed.append)
        await backend.connect("pw")
        fake_ssh.channel.feed(b"logout\n")
        fake_ssh.channel.hang_up()

        assert await wait_until(lambda: closed == [backend])
        assert recorder.text(EventKind.STDOUT) == "logout\n"
        assert recorder.text(EventKind.INFO) == CLOSED_NOTICE
        assert backend.closed
        assert fake_ssh.clients[0].closed

    async def test_local_close_is_silent(self, make_backend, fake_ssh, recorder, wait_until):
        closed = []
        backend = make_backend(on_closed=closed.append)
        await backend.connect("pw")
        backend.close()
        backend.close()

        assert fake_ssh.channel.closed
        assert fake_ssh.clients[0].closed
        assert not await wait_until(lambda: bool(recorder.events), timeout=0.3)
        assert closed == []
        with pytest.raises(BackendWriteError):
            await backend.write("ls")


def test_both_backends_share_capability(make_backend):
    assert isinstance(make_backend(), ShellBackend)
    assert isinstance(ProcessBackend("x", lambda: ".", {}, emit=None, shell="/bin/sh"), ShellBackend)


class TestDeliveryFailure:

    async def test_failure_is_logged_on_the_loop(self, fake_ssh, wait_until):
        logged = []

        async def broken_emit(event):
            raise RuntimeError("consumer gone")

        def debug(message):
            logged.append((message, threading.get_ident()))

        backend = RemoteBackend(
            name="test",
            host="example.com",
            username="bob",
            emit=broken_emit,
            client_factory=fake_ssh.factory,
            debug_logger=debug,
        )
        fake_ssh.channel.feed(b"hello\n")
        try:
            await backend.connect("pw")
            assert await wait_until(lambda: any("event delivery failed" in m for m, _ in logged))
        finally:
            backend.close()
        loop_thread = threading.get_ident()
        assert all(thread == loop_thread for _, thread in logged)


class TestRunRemoteCommand:

    async def test_output_and_exit_status(self, fake_ssh):
        fake_ssh.exec_output = b"up 3 days\n"
        fake_ssh.exec_errors = b"warning\n"
        fake_ssh.exec_code = 3

        result = await run_remote_command(
            "example.com", "bob", "pw", command="uptime", port="2222", client_factory=fake_ssh.factory
        )

        assert result == {"stdout": "up 3 days\n", "stderr": "warning\n", "code": 3}
        assert fake_ssh.commands == ["uptime"]
        assert fake_ssh.connect_kwargs["port"] == 2222
        assert fake_ssh.connect_kwargs["look_for_keys"] is False
        assert fake_ssh.clients[0].closed

    async def test_empty_command_checks_connection(self, fake_ssh):
        await run_remote_command("example.com", "bob", "pw", client_factory=fake_ssh.factory)
        assert fake_ssh.commands == ["echo Connected"]

    async def test_authentication_failure(self, fake_ssh):
        fake_ssh.connect_error = paramiko.AuthenticationException("denied")
        with pytest.raises(RemoteConnectError, match="Authentication failed for bob@example.com"):
            await run_remote_command("example.com", "bob", "pw", client_factory=fake_ssh.factory)
        assert fake_ssh.commands == []
        assert fake_ssh.clients[0].closed

    async def test_exec_failure(self, fake_ssh):
        fake_ssh.exec_error = paramiko.SSHException("channel request refused")
        with pytest.raises(RemoteConnectError, match="channel request refused"):
            await run_remote_command("example.com", "bob", "pw", command="ls", client_factory=fake_ssh.factory)
        assert fake_ssh.clients[0].closed
