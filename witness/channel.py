"""Trigger channel — the single conduit between event sources and the supervisor.

The channel holds at most one pending ``ExecutionTrigger``.  Sending while a
trigger is already pending drops the new one: that is how bursts from several
sources collapse into one unit of work.

Producers obtain a ``TriggerSender`` via ``TriggerChannel.sender()`` and close
it when they go away.  Once every sender is closed, ``recv()`` returns
``None`` after any pending trigger has been delivered.

The channel itself lives on the event loop.  Worker threads must use
``TriggerSender.send_threadsafe()``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from witness.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class ExecutionTrigger:
    """Sent when a source wants the command re-executed.  Carries no payload."""


TRIGGER = ExecutionTrigger()

_CLOSED = None


class TriggerChannel:
    """Capacity-1, many-producer / single-consumer coalescing queue."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[ExecutionTrigger | None] = asyncio.Queue(maxsize=1)
        self._open_senders = 0
        self._closed = False

    def sender(self) -> "TriggerSender":
        """Register a new producer."""
        if self._closed:
            raise RuntimeError("trigger channel is closed")
        self._open_senders += 1
        return TriggerSender(self)

    @property
    def closed(self) -> bool:
        return self._closed

    async def recv(self) -> ExecutionTrigger | None:
        """Wait for the next trigger.  Returns ``None`` once the channel is closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    # ---------------------------------------------------------------------------
    # Producer side (called by TriggerSender)
    # ---------------------------------------------------------------------------

    def _offer(self) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(TRIGGER)
        except asyncio.QueueFull:
            return False
        return True

    def _release(self) -> None:
        self._open_senders -= 1
        if self._open_senders > 0 or self._closed:
            return
        self._closed = True
        log.debug("trigger_channel_closed")
        # Wake a consumer blocked in recv(); if a trigger is pending it is
        # delivered first and the next recv() sees the closed state.
        if self._queue.empty():
            self._queue.put_nowait(_CLOSED)


class TriggerSender:
    """Producer handle for a ``TriggerChannel``."""

    def __init__(self, channel: TriggerChannel) -> None:
        self._channel = channel
        self._loop: asyncio.AbstractEventLoop | None = None
        self._released = False

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Remember the loop that owns the channel, for ``send_threadsafe()``."""
        self._loop = loop

    def send(self) -> bool:
        """Offer a trigger.  Returns False if one was already pending (coalesced)."""
        if self._released:
            return False
        return self._channel._offer()

    def send_threadsafe(self) -> None:
        """Offer a trigger from a thread other than the event loop's."""
        if self._loop is None:
            raise RuntimeError("send_threadsafe() requires bind_loop() first")
        self._loop.call_soon_threadsafe(self.send)

    def close(self) -> None:
        """Release this producer.  Idempotent."""
        if self._released:
            return
        self._released = True
        self._channel._release()

    def close_threadsafe(self) -> None:
        if self._loop is None:
            self.close()
            return
        try:
            self._loop.call_soon_threadsafe(self.close)
        except RuntimeError:
            # Loop already closed: nobody is left to observe the channel.
            pass
