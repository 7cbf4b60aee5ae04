from typing import Any, AsyncIterator, Dict, List, Optional
import asyncio
import json

_CLOSED = object()


class NdjsonLineBuffer:
    """Splits streamed text into complete lines, holding a partial trailing line"""

    def __init__(self):
        self._pending = ""

    def feed(self, text: str) -> List[str]:
        self._pending += text
        if "\n" not in self._pending:
            return []

        *complete, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in complete]

    def flush(self) -> List[str]:
        """Return the held partial line, if any"""

        rest, self._pending = self._pending, ""
        return [rest] if rest.strip() else []


def encode_line(event: Dict[str, Any]) -> str:
    return json.dumps(event, ensure_ascii=False, separators=(",", ":")) + "\n"


class EventChannel:
    """Single-producer, single-consumer queue of validated events"""

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._error: Optional[BaseException] = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: Dict[str, Any]) -> None:
        if self._closed:
            raise RuntimeError("send on closed channel")
        await self._queue.put(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def fail(self, error: BaseException) -> None:
        """Close the channel so the consumer re-raises the producer's error"""

        if not self._closed:
            self._error = error
            self.close()

    async def receive(self) -> Optional[Dict[str, Any]]:
        """Next event, or None once the channel is closed and drained"""

        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the sentinel for any later receive.
            self._queue.put_nowait(_CLOSED)
            if self._error is not None:
                raise self._error
            return None
        return item

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            event = await self.receive()
            if event is None:
                return
            yield event
