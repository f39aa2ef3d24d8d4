"""
Base Queue Interface

Message model, statistics and the abstract queue store used by the
dispatcher and the retry scheduler.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum, StrEnum
from typing import Any, Awaitable, Callable, Optional
from pydantic import BaseModel, ConfigDict, Field


class Channel(StrEnum):
    """Origin of a message. Used for routing and metrics only."""
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"
    EMAIL = "email"
    WEB = "web"


class MessageStatus(str, Enum):
    """Message processing status."""
    PENDING = "pending"
    PROCESSING = "processing"
    RETRY_SCHEDULED = "retry_scheduled"
    COMPLETED = "completed"
    DEAD_LETTER = "dead_letter"


class CourierError(Exception):
    """Base class for errors raised by courier."""
    pass


class BrokerClosedError(CourierError):
    """Raised when work is submitted to a broker that is shutting down."""
    pass


class NonRetryableError(CourierError):
    """
    Raised by a handler to skip the retry budget.

    The message goes straight to the dead letter sink.
    """
    pass


class QueuedMessage(BaseModel):
    """
    Message in the queue.

    Attributes:
        id: Unique message identifier, assigned at enqueue time
        channel: Origin channel
        payload: Opaque content, never inspected by the queue
        metadata: Opaque caller annotations
        attempt: Delivery attempts made so far (0 on first enqueue)
        status: Current processing status
        created_at: When the message was published
        last_error: Last handler error, if any
        dead_lettered_at: When the message entered the dead letter sink
    """
    model_config = ConfigDict(use_enum_values=True)

    id: str = ""
    channel: Channel
    payload: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    attempt: int = Field(default=0, ge=0)
    status: MessageStatus = MessageStatus.PENDING
    created_at: datetime
    last_error: Optional[str] = None
    dead_lettered_at: Optional[datetime] = None


class QueueStats(BaseModel):
    """
    Point-in-time queue statistics.

    Attributes:
        active: Messages waiting in the active queue
        dead_lettered: Messages held in the dead letter sink
        running: Whether the dispatcher loop is currently active
        retry_scheduled: Messages waiting out a backoff delay
        processed: Total successful handler invocations
        failed: Total failed handler invocations
        dead_letter_evictions: Dead letter entries dropped because the sink was full
    """
    active: int = 0
    dead_lettered: int = 0
    running: bool = False
    retry_scheduled: int = 0
    processed: int = 0
    failed: int = 0
    dead_letter_evictions: int = 0


MessageHandler = Callable[[QueuedMessage], Awaitable[Any]]


class MessageQueue(ABC):
    """
    Abstract message store: an ordered active list plus a bounded dead letter sink.

    Implementations must provide:
    - Enqueue: Add message at the tail (new work) or the head (retries)
    - Dequeue: Pop the head without waiting
    - Dead letter: Store, list, pop and purge exhausted messages
    - Counts: Active and dead letter sizes
    """

    @abstractmethod
    async def enqueue(self, message: QueuedMessage) -> str:
        """
        Append message to the tail of the queue.

        Args:
            message: Message to enqueue (an id is generated if empty)

        Returns:
            Message ID
        """
        pass

    @abstractmethod
    async def enqueue_front(self, message: QueuedMessage) -> None:
        """
        Insert message at the head of the queue.

        Args:
            message: Message to reinsert, ahead of everything already waiting
        """
        pass

    @abstractmethod
    async def dequeue(self) -> Optional[QueuedMessage]:
        """
        Pop the head of the queue.

        Returns:
            Next message or None if the queue is empty
        """
        pass

    @abstractmethod
    async def dead_letter(
        self,
        message: QueuedMessage,
        now: Optional[datetime] = None,
    ) -> Optional[QueuedMessage]:
        """
        Move a message into the dead letter sink.

        Args:
            message: Message that exhausted its retries
            now: Timestamp recorded as dead_lettered_at

        Returns:
            The evicted oldest entry when the sink was full, else None
        """
        pass

    @abstractmethod
    async def get_dead_letter_messages(self, limit: Optional[int] = None) -> list[QueuedMessage]:
        """
        Snapshot of the dead letter sink, oldest first.

        Args:
            limit: Maximum messages to return (all when None)
        """
        pass

    @abstractmethod
    async def pop_dead_letter(self, message_id: str) -> Optional[QueuedMessage]:
        """
        Remove and return a dead letter entry.

        Args:
            message_id: ID of the dead-lettered message

        Returns:
            The message, or None if it is not in the sink
        """
        pass

    @abstractmethod
    async def purge_dead_letters(self) -> int:
        """
        Drop every dead letter entry.

        Returns:
            Number of entries removed
        """
        pass

    @abstractmethod
    async def active_count(self) -> int:
        """Number of messages waiting in the active queue."""
        pass

    @abstractmethod
    async def dead_letter_count(self) -> int:
        """Number of messages held in the dead letter sink."""
        pass
