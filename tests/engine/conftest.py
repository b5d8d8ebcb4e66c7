"""Fixtures for the engine tests."""

import paramiko
import pytest

from fakes import FakeSSH


@pytest.fixture
def fake_ssh():
    return FakeSSH()


@pytest.fixture
def patched_ssh(monkeypatch, fake_ssh):
    """Make every new RemoteBackend use the fake client."""
    monkeypatch.setattr(paramiko, "SSHClient", fake_ssh.factory)
    return fake_ssh
