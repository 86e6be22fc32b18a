"""Logging handler for WebSocket streaming."""

from __future__ import annotations

import asyncio
import logging

from livebridge.core.channels import offer_latest


class WebSocketLogBroadcaster(logging.Handler):
    """Fans formatted records out to one bounded queue per connected client."""

    def __init__(self, level: int = logging.INFO, maxsize: int = 500) -> None:
        super().__init__(level)
        self._maxsize = maxsize
        self._queues: set[asyncio.Queue[str]] = set()

    @property
    def client_count(self) -> int:
        return len(self._queues)

    def subscribe(self) -> asyncio.Queue[str]:
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=self._maxsize)
        self._queues.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[str]) -> None:
        self._queues.discard(queue)

    def emit(self, record: logging.LogRecord) -> None:
        if not self._queues:
            return
        try:
            entry = self.format(record)
        except Exception:
            self.handleError(record)
            return
        # slow clients lose their oldest lines
        for queue in list(self._queues):
            offer_latest(queue, entry)
