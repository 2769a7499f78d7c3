"""In-memory transport for tests and single-process runs."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple, Type

from ..contracts import Envelope
from .base import BaseTransport, MessageT

RawMessage = Tuple[str, str]


class InMemoryTransport(BaseTransport[RawMessage]):
    """Simple in-process queue per topic.

    Raw messages are ``(topic, json)`` pairs; nacked messages with
    ``requeue=True`` go back to the front of their queue.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[str]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, message: Envelope) -> None:
        """Publish message to in-memory queue."""
        async with self._lock:
            self._queues[topic].append(message.to_json())

    async def subscribe(
        self,
        topic: str,
        message_type: Type[MessageT],
        lifespan: Optional[float] = None,
    ) -> AsyncIterator[Tuple[RawMessage, MessageT]]:
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            async with self._lock:
                data = self._queues[topic].popleft() if self._queues[topic] else None
            if data is not None:
                yield (topic, data), message_type.from_json(data)
                continue

            await asyncio.sleep(0.05)

    async def ack(self, raw_message: RawMessage) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        if requeue:
            topic, data = raw_message
            async with self._lock:
                self._queues[topic].appendleft(data)

    def pending(self, topic: str) -> List[str]:
        """Return queued JSON messages for ``topic`` without consuming them."""
        return list(self._queues.get(topic, ()))
