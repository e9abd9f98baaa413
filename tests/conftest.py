"""Shared pytest fixtures for the witness test suite."""

from __future__ import annotations

import asyncio
import socket
import sys
from pathlib import Path
from typing import Generator

import psutil
import pytest

from witness.channel import TriggerChannel, TriggerSender


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------


@pytest.fixture
def channel() -> TriggerChannel:
    return TriggerChannel()


@pytest.fixture
def sender(channel: TriggerChannel) -> TriggerSender:
    return channel.sender()


# ---------------------------------------------------------------------------
# Child processes
# ---------------------------------------------------------------------------


def _python_command(code: str) -> list[str]:
    return [sys.executable, "-c", code]


@pytest.fixture
def python_command():
    """Build an argv running *code* with the current interpreter (bypasses the shell)."""
    return _python_command


@pytest.fixture(autouse=True)
def reap_children() -> Generator[None, None, None]:
    """Kill any child process a test left running."""
    yield
    for child in psutil.Process().children(recursive=True):
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass


async def _wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until():
    """Poll a predicate until it is true, failing after a timeout."""
    return _wait_until


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


@pytest.fixture
def taken_tcp_port() -> Generator[int, None, None]:
    """A localhost TCP port that is already listening."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    yield sock.getsockname()[1]
    sock.close()


@pytest.fixture
def taken_udp_port() -> Generator[int, None, None]:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    yield sock.getsockname()[1]
    sock.close()


# ---------------------------------------------------------------------------
# Temp filesystem
# ---------------------------------------------------------------------------


@pytest.fixture
def src_dir(tmp_path: Path) -> Path:
    src = tmp_path / "src"
    src.mkdir()
    return src
