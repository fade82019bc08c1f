from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

from stata_mcp_client.utils.time import utc_now_iso

logger = logging.getLogger(__name__)

NOTIFICATIONS = "notifications"


@dataclass
class BusMessage:
    topic: str
    sequence: int
    timestamp: str
    event: Any


class EventBus:
    """Typed fan-out of worker notifications to per-run subscribers.

    Subscribers receive ``BusMessage`` items on their own queue, in publish
    order. A subscriber whose queue overflows is dropped.
    """

    def __init__(self, *, max_sub_queue: int = 10_000):
        self._subs: dict[str, set[asyncio.Queue[BusMessage]]] = defaultdict(set)
        self._sequence: dict[str, int] = defaultdict(int)
        self._max_sub_queue = max_sub_queue
        self._lock = asyncio.Lock()

    async def subscribe(self, topic: str) -> asyncio.Queue[BusMessage]:
        queue: asyncio.Queue[BusMessage] = asyncio.Queue(maxsize=self._max_sub_queue)
        async with self._lock:
            self._subs[topic].add(queue)
        return queue

    async def unsubscribe(self, topic: str, queue: asyncio.Queue[BusMessage]) -> None:
        async with self._lock:
            self._subs[topic].discard(queue)
            if not self._subs[topic]:
                self._subs.pop(topic, None)

    async def publish(self, topic: str, event: Any) -> BusMessage:
        async with self._lock:
            self._sequence[topic] += 1
            message = BusMessage(
                topic=topic,
                sequence=self._sequence[topic],
                timestamp=utc_now_iso(),
                event=event,
            )

            dead: list[asyncio.Queue[BusMessage]] = []
            for queue in self._subs.get(topic, set()):
                try:
                    queue.put_nowait(message)
                except asyncio.QueueFull:
                    dead.append(queue)
            for queue in dead:
                logger.warning("Dropping slow %s subscriber (queue full)", topic)
                self._subs[topic].discard(queue)

            return message

    async def subscriber_count(self, topic: str) -> int:
        async with self._lock:
            return len(self._subs.get(topic, set()))
