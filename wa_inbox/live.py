"""
Live update bus.

Keeps the set of connected dashboard subscribers for this process and fans
events out to them as Server-Sent Events. Delivery is best effort: no replay
buffer, a subscriber that connects late reconciles with a full pull. A
subscriber whose channel rejects a write is torn down on the spot.

Wire format:
- ``retry: <ms>`` once at the start of a stream
- ``data: <json>`` per event, terminated by a blank line
- ``: ping`` comments as keep-alive
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Dict, Optional

from wa_inbox.metrics import record_live_event, set_live_subscribers

logger = logging.getLogger(__name__)

KEEPALIVE = ": ping\n\n"

DEFAULT_KEEPALIVE_SECONDS = 25.0
DEFAULT_QUEUE_SIZE = 256
DEFAULT_RETRY_MS = 5000

_CLOSED = object()


def encode_event(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


def retry_directive(retry_ms: int) -> str:
    return f"retry: {retry_ms}\n\n"


def message_event(conversation_id: str, phone: str, summary: Optional[dict], message: dict) -> dict:
    return {
        "type": "message",
        "conversationId": conversation_id,
        "phone": phone,
        "summary": summary,
        "message": message,
    }


def status_event(
    conversation_id: str,
    sid: str,
    status: Optional[str],
    error_code: Optional[str],
    error_message: Optional[str],
    timestamp: int,
) -> dict:
    return {
        "type": "status",
        "conversationId": conversation_id,
        "sid": sid,
        "status": status,
        "errorCode": error_code or None,
        "errorMessage": error_message or None,
        "timestamp": timestamp,
    }


def summary_event(conversation_id: str, summary: Optional[dict]) -> dict:
    return {"type": "summary", "conversationId": conversation_id, "summary": summary}


class ChannelClosed(Exception):
    """Write attempted on a closed channel."""


class QueueChannel:
    """
    Output channel backed by a bounded asyncio queue.

    The HTTP response drains it; a consumer that falls a full queue behind
    makes write() fail, which gets the subscriber dropped.
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)
        self.closed = False

    def write(self, chunk: str) -> None:
        if self.closed:
            raise ChannelClosed("channel closed")
        self._queue.put_nowait(chunk)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while True:
            try:
                self._queue.put_nowait(_CLOSED)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class SubscriberHandle:
    """A registered subscriber. close() stops its keep-alive and deregisters it."""

    _ids = itertools.count(1)

    def __init__(self, bus: "LiveUpdateBus", channel):
        self.id = next(self._ids)
        self.bus = bus
        self.channel = channel
        self.keepalive: Optional[asyncio.Task] = None
        self.closed = False

    def close(self) -> None:
        self.bus.unsubscribe(self)

    def __aiter__(self):
        return self.channel.__aiter__()


class LiveUpdateBus:
    """Process-scoped subscriber registry. Only touched from the event loop."""

    def __init__(
        self,
        keepalive_seconds: float = DEFAULT_KEEPALIVE_SECONDS,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        retry_ms: int = DEFAULT_RETRY_MS,
    ):
        self.keepalive_seconds = keepalive_seconds
        self.queue_size = queue_size
        self.retry_ms = retry_ms
        self._subscribers: Dict[int, SubscriberHandle] = {}

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(self, channel=None) -> SubscriberHandle:
        """Register a channel (a fresh QueueChannel by default) and start its keep-alive."""
        handle = SubscriberHandle(self, channel if channel is not None else QueueChannel(self.queue_size))
        self._subscribers[handle.id] = handle
        handle.keepalive = asyncio.get_running_loop().create_task(self._keepalive(handle))
        set_live_subscribers(len(self._subscribers))
        logger.info("Live subscriber connected", extra={"subscriber": handle.id, "subscribers": len(self)})
        return handle

    def unsubscribe(self, handle: SubscriberHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        self._subscribers.pop(handle.id, None)
        task = handle.keepalive
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        try:
            handle.channel.close()
        except Exception as e:
            logger.warning(f"Error closing live subscriber {handle.id}: {e}")
        set_live_subscribers(len(self._subscribers))
        logger.info("Live subscriber disconnected", extra={"subscriber": handle.id, "subscribers": len(self)})

    def broadcast(self, event: Optional[Dict[str, Any]]) -> int:
        """
        Write one event to every current subscriber.

        Returns the number of subscribers that accepted it.
        """
        if not event:
            return 0
        chunk = encode_event(event)
        record_live_event(event.get("type"))

        delivered = 0
        for handle in list(self._subscribers.values()):
            if self._deliver(handle, chunk):
                delivered += 1
        return delivered

    def shutdown(self) -> None:
        """Close every subscriber; used when the process stops."""
        for handle in list(self._subscribers.values()):
            handle.close()

    def _deliver(self, handle: SubscriberHandle, chunk: str) -> bool:
        if handle.closed:
            return False
        try:
            handle.channel.write(chunk)
            return True
        except Exception as e:
            logger.warning(f"Dropping live subscriber {handle.id}: {e!r}")
            handle.close()
            return False

    async def _keepalive(self, handle: SubscriberHandle) -> None:
        while not handle.closed:
            await asyncio.sleep(self.keepalive_seconds)
            if not self._deliver(handle, KEEPALIVE):
                return

    async def stream(self):
        """
        Server-Sent Events body for one connection.

        The subscriber is released when the generator is closed, which is
        what the response does when the client disconnects.
        """
        handle = self.subscribe()
        try:
            yield retry_directive(self.retry_ms)
            async for chunk in handle:
                yield chunk
        finally:
            handle.close()
