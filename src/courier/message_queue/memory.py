"""
In-Memory Message Queue

Ordered work list plus a bounded dead letter sink, held in process memory.
Uses an asyncio.Lock so every mutation of the store is serialized.
"""

import asyncio
import uuid
from collections import OrderedDict, deque
from datetime import datetime
from typing import Optional

from courier.message_queue.base import MessageQueue, MessageStatus, QueuedMessage


def generate_message_id() -> str:
    """Generate a unique message ID."""
    return f"msg_{uuid.uuid4().hex}"


class InMemoryQueue(MessageQueue):
    """
    In-memory message queue implementation.

    The active queue is a deque: new work is appended at the tail and
    retries are pushed at the head. The dead letter sink is a size-bounded
    FIFO; inserting into a full sink evicts its oldest entry.

    Data is lost on restart.

    Suitable for:
    - Testing
    - Single-instance applications

    Not suitable for:
    - Multi-instance deployments
    - Long-term message persistence
    """

    def __init__(self, dead_letter_capacity: int = 1000):
        """
        Initialize in-memory queue.

        Args:
            dead_letter_capacity: Maximum dead letter entries kept

        Raises:
            ValueError: If capacity is not positive
        """
        if dead_letter_capacity <= 0:
            raise ValueError(f"dead_letter_capacity must be > 0, got {dead_letter_capacity}")

        self.dead_letter_capacity = dead_letter_capacity
        self._active: deque[QueuedMessage] = deque()
        self._dead_letter: OrderedDict[str, QueuedMessage] = OrderedDict()
        self._lock = asyncio.Lock()

    async def enqueue(self, message: QueuedMessage) -> str:
        async with self._lock:
            if not message.id:
                message.id = generate_message_id()

            message.status = MessageStatus.PENDING
            self._active.append(message)
            return message.id

    async def enqueue_front(self, message: QueuedMessage) -> None:
        async with self._lock:
            message.status = MessageStatus.PENDING
            self._active.appendleft(message)

    async def dequeue(self) -> Optional[QueuedMessage]:
        async with self._lock:
            if not self._active:
                return None

            message = self._active.popleft()
            message.status = MessageStatus.PROCESSING
            return message

    async def dead_letter(
        self,
        message: QueuedMessage,
        now: Optional[datetime] = None,
    ) -> Optional[QueuedMessage]:
        async with self._lock:
            evicted = None
            if len(self._dead_letter) >= self.dead_letter_capacity:
                # Ring semantics: drop the oldest entry
                _, evicted = self._dead_letter.popitem(last=False)

            message.status = MessageStatus.DEAD_LETTER
            message.dead_lettered_at = now
            self._dead_letter[message.id] = message
            return evicted

    async def get_dead_letter_messages(self, limit: Optional[int] = None) -> list[QueuedMessage]:
        async with self._lock:
            messages = [m.model_copy() for m in self._dead_letter.values()]
            return messages if limit is None else messages[:limit]

    async def pop_dead_letter(self, message_id: str) -> Optional[QueuedMessage]:
        async with self._lock:
            return self._dead_letter.pop(message_id, None)

    async def purge_dead_letters(self) -> int:
        async with self._lock:
            count = len(self._dead_letter)
            self._dead_letter.clear()
            return count

    async def active_count(self) -> int:
        async with self._lock:
            return len(self._active)

    async def dead_letter_count(self) -> int:
        async with self._lock:
            return len(self._dead_letter)
