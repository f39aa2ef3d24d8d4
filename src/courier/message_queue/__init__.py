"""
Message Queue System

In-process async message processing with:
- Abstract queue store interface
- In-memory queue with a bounded dead letter sink
- Single-consumer dispatcher loop
- Retry logic with exponential backoff
- Broker façade with dead letter review and requeue
"""

from courier.message_queue.base import (
    BrokerClosedError,
    Channel,
    CourierError,
    MessageHandler,
    MessageQueue,
    MessageStatus,
    NonRetryableError,
    QueuedMessage,
    QueueStats,
)
from courier.message_queue.memory import InMemoryQueue
from courier.message_queue.retry import RetryDecision, RetryScheduler, compute_delay
from courier.message_queue.worker import Dispatcher
from courier.message_queue.broker import MessageBroker

__all__ = [
    "BrokerClosedError",
    "Channel",
    "CourierError",
    "MessageHandler",
    "MessageQueue",
    "MessageStatus",
    "NonRetryableError",
    "QueuedMessage",
    "QueueStats",
    "InMemoryQueue",
    "RetryDecision",
    "RetryScheduler",
    "compute_delay",
    "Dispatcher",
    "MessageBroker",
]
