"""Trigger client — kick another witness instance over the network.

Used by ``witness --trigger``: sends the shared key to every configured UDP
port, then connects to every configured TCP port and writes the key.
"""

from __future__ import annotations

import asyncio
import socket

from witness.exceptions import TriggerSendError
from witness.logging import get_logger

log = get_logger(__name__)

DEFAULT_TARGET_HOST = "127.0.0.1"


async def send_udp_trigger(
    ports: list[int], key: str, host: str = DEFAULT_TARGET_HOST
) -> None:
    """Send one datagram carrying *key* to each port on *host*."""
    if not ports:
        return
    payload = key.encode()
    loop = asyncio.get_running_loop()

    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        sock.setblocking(False)
        try:
            sock.bind(("0.0.0.0", 0))
        except OSError as exc:
            raise TriggerSendError(f"failed to bind UDP socket: {exc}") from exc

        for port in ports:
            try:
                count = await loop.sock_sendto(sock, payload, (host, port))
            except OSError as exc:
                raise TriggerSendError(
                    f"failed to send UDP trigger on port {port}: {exc}",
                    context={"port": port},
                ) from exc
            if count != len(payload):
                raise TriggerSendError(
                    "failed to send entire key over UDP. Maybe it's too big?",
                    context={"port": port, "sent": count, "expected": len(payload)},
                )
            log.info("udp_trigger_sent", host=host, port=port)


async def send_tcp_trigger(
    ports: list[int], key: str, host: str = DEFAULT_TARGET_HOST
) -> None:
    """Connect to each port on *host* and write *key*."""
    payload = key.encode()
    for port in ports:
        try:
            _reader, writer = await asyncio.open_connection(host, port)
        except OSError as exc:
            raise TriggerSendError(
                f"failed to connect to TCP port {port}: {exc}",
                context={"port": port},
            ) from exc
        try:
            writer.write(payload)
            await writer.drain()
        except OSError as exc:
            raise TriggerSendError(
                f"failed to write to TCP port {port}: {exc}",
                context={"port": port},
            ) from exc
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
        log.info("tcp_trigger_sent", host=host, port=port)


async def send_triggers(
    udp: list[int], tcp: list[int], key: str, host: str = DEFAULT_TARGET_HOST
) -> None:
    """Send to every UDP port, then to every TCP port."""
    await send_udp_trigger(udp, key, host)
    await send_tcp_trigger(tcp, key, host)
