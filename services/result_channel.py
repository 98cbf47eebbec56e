"""Single-consumer channel carrying OutcomeRecords from fired cycles to the Reporter."""
from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional

from executors.base import OutcomeRecord
from utils.structured_logging import get_logger

LOG = get_logger("watchdog.channel")

_CLOSED = object()


class ResultChannel:
    """
    Unbounded, so ``send`` never blocks the execution path. Records are
    immutable values; nothing else is shared between producer and consumer.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._sent = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def sent(self) -> int:
        return self._sent

    def send(self, record: OutcomeRecord) -> bool:
        if self._closed:
            LOG.warning("Result channel closed, dropping outcome of cycle %s", record.cycle)
            return False
        self._queue.put_nowait(record)
        self._sent += 1
        return True

    async def receive(self) -> Optional[OutcomeRecord]:
        """Next record, or None once the channel is closed and drained."""
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            # оставляем маркер для последующих вызовов receive()
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def __aiter__(self) -> AsyncIterator[OutcomeRecord]:
        while True:
            record = await self.receive()
            if record is None:
                return
            yield record


__all__ = ["ResultChannel"]
