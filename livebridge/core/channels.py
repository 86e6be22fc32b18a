"""Explicit publish/subscribe channels.

Each producer owns its channels; consumers subscribe and keep the returned
token to unsubscribe. A failing subscriber is logged and never stops delivery
to the others.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Generic, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class Channel(Generic[T]):
    """Synchronous fan-out of values to registered callbacks."""

    def __init__(self, name: str) -> None:
        self._name = name
        self._subscribers: list[Callable[[T], None]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: Callable[[T], None]) -> Unsubscribe:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            try:
                self._subscribers.remove(callback)
            except ValueError:
                pass

        return _unsubscribe

    def publish(self, value: T) -> None:
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception:
                log.exception("%s subscriber failed", self._name)


def offer_latest(queue: asyncio.Queue[T], item: T) -> None:
    """Put without blocking; a full queue loses its oldest item."""
    while True:
        try:
            queue.put_nowait(item)
            return
        except asyncio.QueueFull:
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
