"""Shared fixtures for flashterm tests."""

import asyncio
import time
from collections import defaultdict

import pytest

from flashterm.engine.config import EngineConfig


@pytest.fixture
def anyio_backend():
    # Engine code is written against asyncio (subprocess transports, executors)
    return "asyncio"


class OutputCollector:
    """Consumer callback that records delivered payloads per tab."""

    def __init__(self):
        self.payloads = defaultdict(list)

    def __call__(self, tab_id, payload):
        self.payloads[tab_id].append(payload)

    def types(self, tab_id):
        return [p["type"] for p in self.payloads[tab_id]]

    def text(self, tab_id):
        return "".join((p.get("stdout") or "") + (p.get("stderr") or "") for p in self.payloads[tab_id])

    def of_type(self, tab_id, kind):
        return [p for p in self.payloads[tab_id] if p["type"] == kind]


@pytest.fixture
def collector():
    return OutputCollector()


async def _wait_until(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@pytest.fixture
def wait_until():
    """Poll a predicate on the event loop until it holds or times out."""
    return _wait_until


@pytest.fixture
def engine_config(tmp_path):
    """Engine settings isolated to tmp_path, driving /bin/sh."""
    workdir = tmp_path / "work"
    workdir.mkdir()
    return EngineConfig(
        shell="/bin/sh",
        data_dir=tmp_path / "data",
        initial_cwd=workdir,
        macro_delay=0,
        connect_timeout=2.0,
    )
