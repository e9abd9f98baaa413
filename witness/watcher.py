"""Watcher — the single pull point for execution triggers.

Owns the receiving end of the ``TriggerChannel`` together with the file and
network sources feeding it.  Either source failing to start is fatal; there
is no degraded mode.
"""

from __future__ import annotations

import asyncio

from witness.channel import ExecutionTrigger, TriggerChannel
from witness.config import FileOptions, NetworkOptions
from witness.exceptions import ConfigError, WatchPathError
from witness.logging import get_logger
from witness.sources.files import FileWatcher
from witness.sources.network import HANDSHAKE_TIMEOUT_SECONDS, NetworkWatcher

log = get_logger(__name__)


class Watcher:
    """Watches for events on a set of sources.

    Usage::

        watcher = Watcher(settings.files, settings.network)
        await watcher.start()
        while True:
            trigger = await watcher.recv()
    """

    def __init__(
        self,
        files: FileOptions,
        network: NetworkOptions,
        handshake_timeout: float = HANDSHAKE_TIMEOUT_SECONDS,
    ) -> None:
        if not files.paths and not network.enabled:
            raise ConfigError("nothing to watch: no paths and no network ports configured")

        self._channel = TriggerChannel()
        self.files: FileWatcher | None = None
        self.network: NetworkWatcher | None = None

        if files.paths:
            self.files = FileWatcher(files, self._channel.sender())
        if network.enabled:
            try:
                self.network = NetworkWatcher(
                    network, self._channel.sender(), handshake_timeout=handshake_timeout
                )
            except Exception:
                if self.files is not None:
                    self.files.stop()
                raise

    async def start(self) -> None:
        """Start every configured source."""
        if self.files is not None:
            self.files.start(asyncio.get_running_loop())
        if self.network is not None:
            await self.network.start()

    async def recv(self) -> ExecutionTrigger | None:
        """Wait for the next trigger.  ``None`` means every source has gone away.

        Raises ``WatchPathError`` if the file worker crashed; there is no
        degraded mode with only the network source left.
        """
        failed = self.files.failed if self.files is not None else None
        if failed is None:
            return await self._channel.recv()

        self._raise_if_files_failed()
        recv_task = asyncio.ensure_future(self._channel.recv())
        failed_task = asyncio.ensure_future(failed.wait())
        try:
            await asyncio.wait({recv_task, failed_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (recv_task, failed_task):
                if not task.done():
                    task.cancel()

        self._raise_if_files_failed()
        return recv_task.result()

    def _raise_if_files_failed(self) -> None:
        if self.files is not None and self.files.failed is not None and self.files.failed.is_set():
            paths = ", ".join(str(path) for path in self.files.paths)
            raise WatchPathError(paths, self.files.error or "file watcher stopped")

    async def stop(self) -> None:
        """Stop the sources.  Re-raises the first network loop error, if any."""
        if self.files is not None:
            await asyncio.to_thread(self.files.stop)
        if self.network is not None:
            await self.network.stop()
        log.debug("watcher_stopped")
