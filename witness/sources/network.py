"""Network source — remote triggers over UDP and TCP.

Every configured port is bound when the ``NetworkWatcher`` is constructed,
so a port clash fails the program at startup rather than later.  Each bound
socket then gets one asyncio task:

- UDP: every datagram whose bytes start with the key emits a trigger.
- TCP: every accepted connection is handed to its own task which reads
  exactly ``len(key)`` bytes within the handshake timeout and emits a
  trigger on a match.  The accept loop never waits for those tasks.

All loops race their blocking call against one stop event, so ``stop()``
ends every loop promptly.
"""

from __future__ import annotations

import asyncio
import socket
from typing import Any

from witness.channel import TriggerSender
from witness.config import NetworkOptions
from witness.exceptions import BindError, ListenerError
from witness.logging import get_logger

log = get_logger(__name__)

HANDSHAKE_TIMEOUT_SECONDS = 5.0
_LISTEN_BACKLOG = 128


def matches_key(payload: bytes, key: bytes) -> bool:
    """True if *payload* starts with *key*.  An empty key matches anything."""
    return payload.startswith(key)


class NetworkWatcher:
    """Binds UDP and TCP listeners and turns matching requests into triggers.

    Usage::

        network = NetworkWatcher(options, channel.sender())
        await network.start()
        ...
        await network.stop()
    """

    def __init__(
        self,
        options: NetworkOptions,
        sender: TriggerSender,
        handshake_timeout: float = HANDSHAKE_TIMEOUT_SECONDS,
    ) -> None:
        self._key = options.key.encode()
        self._sender = sender
        self._handshake_timeout = handshake_timeout
        self._udp_sockets: list[socket.socket] = []
        self._tcp_sockets: list[socket.socket] = []
        self._loops: list[asyncio.Task[None]] = []
        self._handlers: set[asyncio.Task[None]] = set()
        self._stop_event: asyncio.Event | None = None

        try:
            for port in options.udp:
                self._udp_sockets.append(_bind_udp(options.host, port))
            for port in options.tcp:
                self._tcp_sockets.append(_bind_tcp(options.host, port))
        except BindError:
            self._close_sockets()
            raise

        for sock in self._udp_sockets:
            log.info("listening_udp", address=sock.getsockname())
        for sock in self._tcp_sockets:
            log.info("listening_tcp", address=sock.getsockname())

    # ---------------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------------

    @property
    def udp_addresses(self) -> list[tuple[str, int]]:
        return [sock.getsockname() for sock in self._udp_sockets]

    @property
    def tcp_addresses(self) -> list[tuple[str, int]]:
        return [sock.getsockname() for sock in self._tcp_sockets]

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._loops)

    async def start(self) -> None:
        """Spawn one receive/accept loop per bound socket."""
        if self._loops:
            return
        self._stop_event = asyncio.Event()
        for sock in self._udp_sockets:
            self._spawn_loop(self._udp_loop(sock), f"witness_udp_{sock.getsockname()[1]}")
        for sock in self._tcp_sockets:
            self._spawn_loop(self._tcp_loop(sock), f"witness_tcp_{sock.getsockname()[1]}")

    async def stop(self) -> None:
        """Stop every loop, wait for them, and re-raise the first loop error."""
        if self._stop_event is not None:
            self._stop_event.set()

        results = await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []

        for task in list(self._handlers):
            task.cancel()
        if self._handlers:
            await asyncio.gather(*self._handlers, return_exceptions=True)

        self._close_sockets()
        self._sender.close()
        log.debug("network_watcher_stopped")

        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                raise result

    # ---------------------------------------------------------------------------
    # Loops
    # ---------------------------------------------------------------------------

    async def _udp_loop(self, sock: socket.socket) -> None:
        loop = asyncio.get_running_loop()
        address = sock.getsockname()
        # one byte past the key is enough to tell a prefix match apart
        bufsize = len(self._key) + 1

        while True:
            log.debug("waiting_on_udp", address=address)
            try:
                received = await self._until_stopped(loop.sock_recvfrom(sock, bufsize))
            except OSError as exc:
                raise ListenerError("UDP", address, str(exc)) from exc
            if received is None:
                return
            payload, peer = received
            if matches_key(payload, self._key):
                log.debug("udp_trigger", peer=peer)
                self._sender.send()
            else:
                log.debug("udp_payload_rejected", peer=peer)

    async def _tcp_loop(self, sock: socket.socket) -> None:
        loop = asyncio.get_running_loop()
        address = sock.getsockname()

        while True:
            log.debug("waiting_on_tcp", address=address)
            try:
                accepted = await self._until_stopped(loop.sock_accept(sock))
            except OSError as exc:
                raise ListenerError("TCP", address, str(exc)) from exc
            if accepted is None:
                return
            conn, peer = accepted
            log.debug("incoming_tcp_client", peer=peer)
            task = asyncio.create_task(self._handle_connection(conn, peer))
            self._handlers.add(task)
            task.add_done_callback(self._handlers.discard)

    async def _handle_connection(self, conn: socket.socket, peer: Any) -> None:
        conn.setblocking(False)
        try:
            reader, writer = await asyncio.open_connection(sock=conn)
        except OSError as exc:
            conn.close()
            log.debug("tcp_client_setup_failed", peer=peer, error=str(exc))
            return

        try:
            log.debug("waiting_on_keyphrase", peer=peer)
            payload = await asyncio.wait_for(
                reader.readexactly(len(self._key)), timeout=self._handshake_timeout
            )
        except asyncio.TimeoutError:
            log.debug("tcp_client_timed_out", peer=peer)
        except (asyncio.IncompleteReadError, OSError) as exc:
            log.debug("tcp_keyphrase_failed", peer=peer, error=str(exc))
        else:
            if matches_key(payload, self._key):
                log.debug("tcp_trigger", peer=peer)
                self._sender.send()
            else:
                log.debug("tcp_payload_rejected", peer=peer)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    # ---------------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------------

    async def _until_stopped(self, operation: Any) -> Any:
        """Race *operation* against the stop event.  Returns None when stopped."""
        if self._stop_event is None:
            raise RuntimeError("start() not called")
        op_task = asyncio.ensure_future(operation)
        stop_task = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({op_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (op_task, stop_task):
                if not task.done():
                    task.cancel()

        if stop_task.done() and not stop_task.cancelled():
            if op_task.done() and not op_task.cancelled() and op_task.exception() is None:
                _discard(op_task.result())
            return None
        return op_task.result()

    def _spawn_loop(self, coro: Any, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        task.add_done_callback(self._on_loop_done)
        self._loops.append(task)

    @staticmethod
    def _on_loop_done(task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("network_listener_failed", task=task.get_name(), error=str(exc))

    def _close_sockets(self) -> None:
        for sock in (*self._udp_sockets, *self._tcp_sockets):
            sock.close()


def _bind_udp(host: str, port: int) -> socket.socket:
    sock: socket.socket | None = None
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.bind((host, port))
        sock.setblocking(False)
    except OSError as exc:
        if sock is not None:
            sock.close()
        raise BindError("UDP", port, str(exc)) from exc
    return sock


def _bind_tcp(host: str, port: int) -> socket.socket:
    sock: socket.socket | None = None
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(_LISTEN_BACKLOG)
        sock.setblocking(False)
    except OSError as exc:
        if sock is not None:
            sock.close()
        raise BindError("TCP", port, str(exc)) from exc
    return sock


def _discard(result: Any) -> None:
    """Close the connection of an accept that raced the stop event."""
    if isinstance(result, tuple) and result and isinstance(result[0], socket.socket):
        result[0].close()
