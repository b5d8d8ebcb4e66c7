"""End-to-end tests for ShellEngine with a real /bin/sh.

SSH scenarios replace ``paramiko.SSHClient`` with the fake client from
``fakes.py``; everything else (registry, router, dispatcher, local shell)
is the real thing.
"""

import asyncio
import json
import os
import sys

import paramiko
import pytest

from flashterm.engine import ShellEngine


pytestmark = [
    pytest.mark.anyio,
    pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh"),
]

TAB = "tab-1"


@pytest.fixture
async def engine(anyio_backend, engine_config, collector):
    engine = ShellEngine(config=engine_config, consumer=collector)
    yield engine
    await engine.shutdown()


async def run(engine, text, tab=TAB):
    result = await engine.execute(tab, tab, text)
    await engine.drain(tab)
    return result


class TestLocalShell:

    async def test_output_reaches_tab(self, engine, collector, wait_until):
        result = await run(engine, "echo hello")
        assert result == {"success": True}
        assert await wait_until(lambda: "hello" in collector.text(TAB))
        assert "output" in collector.types(TAB)

    async def test_stderr_is_error_typed(self, engine, collector, wait_until):
        await run(engine, "echo broken 1>&2")
        assert await wait_until(lambda: any("broken" in p["stderr"] for p in collector.of_type(TAB, "error")))

    async def test_shell_survives_between_commands(self, engine, collector, wait_until):
        await run(engine, "COUNTER=41")
        await run(engine, "echo $((COUNTER + 1))")
        assert await wait_until(lambda: "42" in collector.text(TAB))
        assert engine.registry.get(TAB).process.spawn_count == 1

    async def test_exit_requests_tab_close(self, engine):
        result = await run(engine, "exit")
        assert result == {"success": True, "close_tab": True}

    async def test_unexpected_exit_then_respawn(self, engine, collector, wait_until):
        await run(engine, "exit 4")
        assert await wait_until(lambda: "[Shell exited unexpectedly with code 4]" in collector.text(TAB))
        await run(engine, "echo again")
        assert await wait_until(lambda: "again" in collector.text(TAB))

    async def test_tabs_do_not_share_state(self, engine, collector, engine_config, wait_until):
        (engine_config.initial_cwd / "only-a").mkdir()
        await run(engine, "cd only-a", tab="a")
        await run(engine, "SECRET=a-only", tab="a")
        await run(engine, 'echo "secret=[$SECRET]"', tab="b")
        assert await wait_until(lambda: "secret=[]" in collector.text("b"))
        assert engine.get_cwd("b") == str(engine_config.initial_cwd)
        assert engine.get_cwd("a") == str(engine_config.initial_cwd / "only-a")


class TestDirectoryChange:

    @pytest.fixture
    def home(self, tmp_path, monkeypatch):
        home = tmp_path / "home"
        (home / "Desktop").mkdir(parents=True)
        monkeypatch.setenv("HOME", str(home))
        return home

    async def test_cd_desktop_then_pwd(self, engine, collector, home, wait_until):
        result = await run(engine, "cd desktop")
        assert result == {"success": True}
        desktop = str(home / "Desktop")
        assert collector.of_type(TAB, "cwd-update") == [
            {"stdout": "", "stderr": "", "type": "cwd-update", "cwd": desktop}
        ]
        assert engine.get_cwd(TAB) == desktop

        await run(engine, "pwd")
        assert await wait_until(lambda: os.path.realpath(desktop) in collector.text(TAB))

    async def test_cd_in_running_shell(self, engine, collector, engine_config, wait_until):
        target = engine_config.initial_cwd / "nested dir"
        target.mkdir()
        await run(engine, "echo warm")
        assert await wait_until(lambda: "warm" in collector.text(TAB))

        await run(engine, 'cd "nested dir"')
        await run(engine, "pwd")
        assert await wait_until(lambda: os.path.realpath(str(target)) in collector.text(TAB))
        assert engine.registry.get(TAB).process.spawn_count == 1

    async def test_cd_to_missing_directory(self, engine, collector, engine_config):
        result = await run(engine, "cd nowhere")
        assert result == {"success": True}
        errors = collector.of_type(TAB, "error")
        assert errors and "The system cannot find the path specified:" in errors[0]["stderr"]
        assert engine.get_cwd(TAB) == str(engine_config.initial_cwd)


class TestDestroy:

    async def test_destroy_kills_shell(self, engine, collector, wait_until):
        await run(engine, "echo up")
        assert await wait_until(lambda: "up" in collector.text(TAB))
        process = engine.registry.get(TAB).process

        engine.destroy(TAB)
        engine.destroy(TAB)

        assert TAB not in engine.registry
        assert await wait_until(lambda: process.returncode is not None)

    async def test_destroy_unknown_is_noop(self, engine):
        engine.destroy("never-existed")
        assert len(engine.registry) == 0


class TestRemote:

    async def test_failed_login_keeps_local_shell(self, engine, collector, patched_ssh, wait_until):
        patched_ssh.connect_error = paramiko.AuthenticationException("denied")

        await run(engine, "ssh bob@localhost")
        assert engine.awaiting_secret(TAB)
        result = await run(engine, "wrong-password")

        assert result["success"] is False
        assert "SSH connection error: Authentication failed for bob@localhost" in collector.text(TAB)
        assert engine.remote_label(TAB) is None
        assert "wrong-password" not in engine.log_manager.text("errors")

        await run(engine, "echo still-local")
        assert await wait_until(lambda: "still-local" in collector.text(TAB))

    async def test_remote_session_round_trip(self, engine, collector, patched_ssh, engine_config, wait_until):
        channel = patched_ssh.channel
        channel.feed(b"Welcome to example\n")

        await run(engine, "ssh bob@example.com:2222")
        result = await run(engine, "pw")
        assert result == {"success": True}
        assert engine.remote_label(TAB) == "bob@example.com"
        assert patched_ssh.connect_kwargs["port"] == 2222
        assert await wait_until(lambda: "Welcome to example" in collector.text(TAB))

        await run(engine, "cd /var/log")
        await run(engine, "exit")
        assert channel.sent == [b"cd /var/log\n", b"exit\n"]
        assert engine.get_cwd(TAB) == str(engine_config.initial_cwd)

        channel.hang_up()
        assert await wait_until(lambda: engine.remote_label(TAB) is None)
        assert await wait_until(lambda: "[SSH connection closed]" in collector.text(TAB))

        await run(engine, "echo back-home")
        assert await wait_until(lambda: "back-home" in collector.text(TAB))

    async def test_direct_connect_and_disconnect(self, engine, collector, patched_ssh):
        result = await engine.connect(TAB, TAB, "example.com", "alice", "pw")
        assert result == {"success": True}
        assert engine.remote_label(TAB) == "alice@example.com"

        assert await engine.disconnect(TAB) == {"success": True}
        await engine.drain(TAB)
        assert engine.remote_label(TAB) is None
        assert patched_ssh.channel.closed
        assert "[SSH connection closed]" in collector.text(TAB)

    async def test_unexpected_connect_failure_is_reported_once(self, engine, collector, patched_ssh):
        patched_ssh.connect_error = ValueError("bad host")

        result = await engine.connect(TAB, TAB, "a..b", "alice", "pw")
        await engine.drain(TAB)

        assert result["success"] is False
        assert "ValueError: bad host" in result["error"]
        errors = collector.of_type(TAB, "error")
        assert len(errors) == 1
        assert "SSH connection error:" in errors[0]["stderr"]
        assert engine.remote_label(TAB) is None

    async def test_unexpected_failure_after_password_prompt(self, engine, collector, patched_ssh):
        patched_ssh.connect_error = ValueError("bad host")

        await run(engine, "ssh alice@a..b")
        result = await run(engine, "pw")

        assert result["success"] is False
        assert len(collector.of_type(TAB, "error")) == 1
        assert not engine.awaiting_secret(TAB)

    async def test_disconnect_without_connection_never_raises(self, engine):
        assert await engine.disconnect("never-existed") == {"success": True}
        await run(engine, "echo local")
        assert await engine.disconnect(TAB) == {"success": True}

    async def test_disconnect_waits_for_pending_connect(self, engine, patched_ssh):
        patched_ssh.connect_delay = 0.2

        connected, disconnected = await asyncio.gather(
            engine.connect(TAB, TAB, "example.com", "alice", "pw"),
            engine.disconnect(TAB),
        )

        assert connected == {"success": True}
        assert disconnected == {"success": True}
        assert engine.remote_label(TAB) is None
        assert patched_ssh.channel.closed


class TestOneShotCommands:

    async def test_run_once_returns_output(self, engine, collector):
        result = await engine.run_once(TAB, "echo out; echo err 1>&2; exit 3")
        assert result["stdout"] == "out\n"
        assert result["stderr"] == "err\n"
        assert result["returncode"] == 3
        assert collector.payloads[TAB] == []

    async def test_run_once_uses_session_directory(self, engine, engine_config):
        target = engine_config.initial_cwd / "sub"
        target.mkdir()
        await run(engine, "cd sub")

        result = await engine.run_once(TAB, "pwd")

        assert result["cwd"] == str(target)
        assert result["stdout"].strip() == os.path.realpath(str(target))
        assert result["returncode"] == 0

    async def test_run_once_reports_missing_directory(self, engine, engine_config):
        session = engine.registry.get_or_create(TAB)
        session.cwd = str(engine_config.initial_cwd / "gone")

        result = await engine.run_once(TAB, "echo never")

        assert result["stdout"] == ""
        assert result["stderr"]
        assert result["returncode"] == 1

    async def test_ssh_execute(self, engine, patched_ssh):
        patched_ssh.exec_output = b"Connected\n"

        result = await engine.ssh_execute("example.com", "alice", "pw")

        assert result == {"success": True, "stdout": "Connected\n", "stderr": "", "code": 0}
        assert patched_ssh.commands == ["echo Connected"]
        assert patched_ssh.connect_kwargs["timeout"] == engine.config.connect_timeout

    async def test_ssh_execute_failure(self, engine, patched_ssh):
        patched_ssh.connect_error = paramiko.AuthenticationException("denied")

        result = await engine.ssh_execute("example.com", "alice", "hunter2", command="ls")

        assert result == {"success": False, "error": "Authentication failed for alice@example.com"}
        errors = engine.log_manager.text("errors")
        assert "Authentication failed for alice@example.com" in errors
        assert "hunter2" not in errors


class TestMacrosAndLogs:

    async def test_macro_persisted_in_data_dir(self, engine, engine_config):
        await run(engine, "echo one")
        await run(engine, "flash macro create first 1")
        saved = json.loads(engine_config.macros_file.read_text(encoding="utf-8"))
        assert saved == {"first": ["echo one"]}

    async def test_lifecycle_is_logged(self, engine):
        await run(engine, "echo logged")
        engine.destroy(TAB)
        events = engine.log_manager.text("events")
        assert f"[{TAB}] session created" in events
        assert f"[{TAB}] session destroyed" in events
