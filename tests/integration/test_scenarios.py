"""Integration tests — real watcher, sockets and child processes end to end."""

from __future__ import annotations

import asyncio
import io
import shutil
import socket
import subprocess
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import pytest

from witness.config import FileOptions, NetworkOptions
from witness.supervisor import Supervisor
from witness.watcher import Watcher

# time for the OS notification backend to settle after the watch starts
_WATCH_SETTLE = 0.3


def _runs(path: Path) -> list[float]:
    if not path.exists():
        return []
    return [float(line) for line in path.read_text(encoding="utf-8").split()]


def _recording(path: Path, tail: str = "time.sleep(30)") -> str:
    """Child code that appends its start time to *path* and then runs *tail*."""
    return (
        "import signal, time\n"
        f"with open({str(path)!r}, 'a') as fh:\n"
        "    fh.write(f'{time.time()}\\n')\n"
        f"{tail}\n"
    )


@asynccontextmanager
async def supervised(
    command: list[str], files: FileOptions, network: NetworkOptions, wait: bool = False
) -> AsyncIterator[Watcher]:
    watcher = Watcher(files, network)
    shutdown = asyncio.Event()
    supervisor = Supervisor(command, watcher, shutdown, wait=wait, stdout=io.BytesIO())
    await watcher.start()
    task = asyncio.create_task(supervisor.run())
    try:
        yield watcher
    finally:
        shutdown.set()
        await asyncio.wait_for(task, timeout=5.0)
        await watcher.stop()


@pytest.mark.integration
class TestFileTriggers:
    async def test_burst_restarts_once(self, tmp_path: Path, src_dir: Path, python_command, wait_until) -> None:
        runs = tmp_path / "runs"
        files = FileOptions(paths=[src_dir], debounce="100ms", extensions=[".rs"], respect_vcs_ignore=False)

        async with supervised(python_command(_recording(runs)), files, NetworkOptions()):
            await wait_until(lambda: len(_runs(runs)) == 1)
            await asyncio.sleep(_WATCH_SETTLE)

            (src_dir / "a.rs").write_text("one\n", encoding="utf-8")
            (src_dir / "a.rs").write_text("two\n", encoding="utf-8")
            await asyncio.sleep(0.01)
            (src_dir / "a.txt").write_text("ignored\n", encoding="utf-8")

            await wait_until(lambda: len(_runs(runs)) == 2)
            await asyncio.sleep(0.5)
            assert len(_runs(runs)) == 2

    async def test_filtered_extension_never_restarts(
        self, tmp_path: Path, src_dir: Path, python_command, wait_until
    ) -> None:
        runs = tmp_path / "runs"
        files = FileOptions(paths=[src_dir], debounce=0, extensions=["rs"], respect_vcs_ignore=False)

        async with supervised(python_command(_recording(runs)), files, NetworkOptions()):
            await wait_until(lambda: len(_runs(runs)) == 1)
            await asyncio.sleep(_WATCH_SETTLE)
            (src_dir / "notes.md").write_text("hello\n", encoding="utf-8")
            await asyncio.sleep(0.5)
            assert len(_runs(runs)) == 1

    @pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
    async def test_git_ignored_paths_skipped(
        self, tmp_path: Path, python_command, wait_until, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        repo = tmp_path / "repo"
        (repo / "target").mkdir(parents=True)
        (repo / "src").mkdir()
        subprocess.run(["git", "init", "-q", str(repo)], check=True)
        (repo / ".gitignore").write_text("target/\n", encoding="utf-8")
        monkeypatch.chdir(repo)

        runs = tmp_path / "runs"
        files = FileOptions(paths=[repo / "target", repo / "src"], debounce=0)

        async with supervised(python_command(_recording(runs)), files, NetworkOptions()):
            await wait_until(lambda: len(_runs(runs)) == 1)
            await asyncio.sleep(_WATCH_SETTLE)

            (repo / "target" / "app.o").write_bytes(b"\x00")
            await asyncio.sleep(0.5)
            assert len(_runs(runs)) == 1

            (repo / "src" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")
            await wait_until(lambda: len(_runs(runs)) == 2)


@pytest.mark.integration
class TestNetworkTriggers:
    async def test_udp_key_prefix(self, tmp_path: Path, python_command, wait_until) -> None:
        runs = tmp_path / "runs"
        network = NetworkOptions(udp=[0], key="secret", host="127.0.0.1")

        async with supervised(python_command(_recording(runs)), FileOptions(paths=[]), network) as watcher:
            await wait_until(lambda: len(_runs(runs)) == 1)
            address = watcher.network.udp_addresses[0]

            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.sendto(b"secretXYZ", address)
            await wait_until(lambda: len(_runs(runs)) == 2)

            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.sendto(b"wrong", address)
            await asyncio.sleep(0.5)
            assert len(_runs(runs)) == 2


@pytest.mark.integration
class TestRestartPolicies:
    async def test_wait_restarts_after_natural_exit(self, tmp_path: Path, python_command, wait_until) -> None:
        runs = tmp_path / "runs"
        network = NetworkOptions(tcp=[0], key="secret", host="127.0.0.1")
        command = python_command(_recording(runs, tail="time.sleep(2)"))

        async with supervised(command, FileOptions(paths=[]), network, wait=True) as watcher:
            await wait_until(lambda: len(_runs(runs)) == 1)
            host, port = watcher.network.tcp_addresses[0]
            _reader, writer = await asyncio.open_connection(host, port)
            writer.write(b"secret")
            await writer.drain()
            writer.close()

            await wait_until(lambda: len(_runs(runs)) == 2, timeout=10.0)
            first, second = _runs(runs)
            assert second - first >= 1.9

            # the second child also exits after 2s; without a trigger it stays down
            await asyncio.sleep(2.5)
            assert len(_runs(runs)) == 2

    async def test_immediate_kills_child_ignoring_signals(
        self, tmp_path: Path, python_command, wait_until
    ) -> None:
        runs = tmp_path / "runs"
        network = NetworkOptions(udp=[0], key="secret", host="127.0.0.1")
        tail = (
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "signal.signal(signal.SIGINT, signal.SIG_IGN)\n"
            "time.sleep(30)"
        )

        async with supervised(python_command(_recording(runs, tail)), FileOptions(paths=[]), network) as watcher:
            await wait_until(lambda: len(_runs(runs)) == 1)
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.sendto(b"secret", watcher.network.udp_addresses[0])
            await wait_until(lambda: len(_runs(runs)) == 2, timeout=5.0)
