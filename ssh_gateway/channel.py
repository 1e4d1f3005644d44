import asyncio
import json
from typing import Any, AsyncIterator, Dict, Optional

from ssh_gateway.utils import iso_now

_CLOSE = object()


class ChannelClosed(Exception):
    """Write attempted on a delivery channel that is already closed."""


class EventChannel:
    """Server->client delivery channel for one session.

    Events are plain dicts in the shape sse-starlette expects
    (``event``/``data``). ``events()`` drains the queue until ``close()``.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def send(self, event: str, data: str) -> None:
        if self.closed:
            raise ChannelClosed("delivery channel is closed")
        self._queue.put_nowait({"event": event, "data": data})

    def send_message(self, message: Dict[str, Any]) -> None:
        self.send("message", json.dumps(message, ensure_ascii=False))

    def send_ping(self) -> None:
        self.send("ping", iso_now())

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CLOSE)

    async def events(self, first: Optional[Dict[str, str]] = None) -> AsyncIterator[Dict[str, str]]:
        if first is not None:
            yield first
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            yield item
