"""
Message Broker

Producer-facing façade over the queue, the dispatcher and the retry
scheduler. Construct one per process (or per test) and pass it to the
code that publishes or inspects messages.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional
from loguru import logger

from courier.config import BrokerConfig
from courier.message_queue.base import (
    BrokerClosedError,
    Channel,
    MessageHandler,
    MessageQueue,
    QueuedMessage,
    QueueStats,
)
from courier.message_queue.memory import InMemoryQueue
from courier.message_queue.retry import RetryScheduler
from courier.message_queue.worker import Dispatcher
from courier.utils.clock import Clock, utc_now
from courier.utils.metrics import metrics
from courier.utils.observability import log_queue_event


class MessageBroker:
    """
    In-process message broker with retry, backoff and dead letter overflow.

    Usage:
        async def handle(message: QueuedMessage) -> None:
            ...

        async with MessageBroker(handle, BrokerConfig(max_retries=3)) as broker:
            message_id = await broker.publish("whatsapp", {"text": "hola"})
            await broker.join()

            for message in await broker.get_dead_letter_messages():
                await broker.retry_dead_letter(message.id)
    """

    def __init__(
        self,
        handler: MessageHandler,
        config: Optional[BrokerConfig] = None,
        queue: Optional[MessageQueue] = None,
        clock: Clock = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize message broker.

        Args:
            handler: Async function invoked with each message; raising means failure
            config: Broker options (defaults when None)
            queue: Queue store (an InMemoryQueue sized from config when None)
            clock: Source of the current time
            sleep: Awaits retry backoff delays
        """
        self.config = config or BrokerConfig()
        self.queue = queue or InMemoryQueue(dead_letter_capacity=self.config.dead_letter_capacity)
        self._clock = clock
        self._closed = False

        self.retry_scheduler = RetryScheduler(
            queue=self.queue,
            max_retries=self.config.max_retries,
            base_delay=self.config.base_retry_delay_seconds,
            jitter=self.config.retry_jitter,
            sleep=sleep,
        )
        self.dispatcher = Dispatcher(
            queue=self.queue,
            handler=handler,
            retry_scheduler=self.retry_scheduler,
            clock=clock,
        )
        self.retry_scheduler.on_ready = self.dispatcher.wake

    @property
    def closed(self) -> bool:
        return self._closed

    async def publish(
        self,
        channel: Channel | str,
        payload: Any,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        """
        Append a new message to the tail of the queue.

        Returns as soon as the message is queued; processing happens in the
        dispatcher task.

        Args:
            channel: Origin channel (Channel member or its value)
            payload: Opaque content handed to the handler
            metadata: Opaque caller annotations

        Returns:
            The new message ID

        Raises:
            BrokerClosedError: If the broker is shutting down
            ValueError: If channel is not a known Channel
        """
        if self._closed:
            raise BrokerClosedError("Broker is shut down, not accepting new messages")

        message = QueuedMessage(
            channel=Channel(channel),
            payload=payload,
            metadata=metadata or {},
            created_at=self._clock(),
        )
        message_id = await self.queue.enqueue(message)

        metrics.messages_published.inc(channel=str(message.channel))
        log_queue_event("published", message_id=message_id, channel=str(message.channel), attempt=0)

        self.dispatcher.wake()
        return message_id

    async def get_dead_letter_messages(self, limit: Optional[int] = None) -> list[QueuedMessage]:
        """Dead letter messages for manual review, oldest first."""
        return await self.queue.get_dead_letter_messages(limit)

    async def retry_dead_letter(self, message_id: str) -> bool:
        """
        Move a dead letter message back to the tail of the active queue.

        Resets the attempt count and last error.

        Returns:
            True if the message was requeued, False if it is not in the sink

        Raises:
            BrokerClosedError: If the broker is shutting down
        """
        if self._closed:
            raise BrokerClosedError("Broker is shut down, cannot requeue")

        message = await self.queue.pop_dead_letter(message_id)
        if message is None:
            return False

        message.attempt = 0
        message.last_error = None
        message.dead_lettered_at = None
        await self.queue.enqueue(message)

        log_queue_event("requeued", message_id=message_id, channel=str(message.channel), attempt=0)
        self.dispatcher.wake()
        return True

    async def purge_dead_letters(self) -> int:
        """Drop every dead letter message after manual review."""
        count = await self.queue.purge_dead_letters()
        if count:
            logger.info(f"Purged {count} dead letter messages")
        return count

    async def get_queue_stats(self) -> QueueStats:
        """Point-in-time counts. Also refreshes the queue gauges."""
        stats = QueueStats(
            active=await self.queue.active_count(),
            dead_lettered=await self.queue.dead_letter_count(),
            running=self.dispatcher.running,
            retry_scheduled=self.retry_scheduler.pending,
            processed=self.dispatcher.processed,
            failed=self.dispatcher.failed,
            dead_letter_evictions=self.dispatcher.dead_letter_evictions,
        )

        metrics.queue_active.set(stats.active)
        metrics.queue_retry_scheduled.set(stats.retry_scheduled)
        metrics.queue_dead_letter.set(stats.dead_lettered)
        return stats

    async def join(self, poll_interval: float = 0.01) -> None:
        """
        Wait until no work is left: queue empty, dispatcher idle, no retry pending.

        Messages that end up in the dead letter sink count as done. Returns
        immediately once the broker is shut down, since anything still queued
        was dropped.
        """
        while not self._closed:
            stats = await self.get_queue_stats()
            if not stats.active and not stats.running and not stats.retry_scheduled:
                return
            await asyncio.sleep(poll_interval)

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop accepting work, let the in-flight handler finish, cancel pending retries.

        Messages still waiting in the active queue or on a backoff delay are
        dropped; the broker is not durable.
        """
        if self._closed:
            return

        logger.info("Shutting down message broker...")
        self._closed = True

        await self.dispatcher.stop(
            self.config.shutdown_timeout_seconds if timeout is None else timeout
        )
        cancelled = await self.retry_scheduler.cancel_all()

        abandoned = await self.queue.active_count()
        if abandoned or cancelled:
            logger.warning(
                f"Dropped {abandoned} queued and {cancelled} retrying messages on shutdown"
            )
        logger.info("🛑 Message broker stopped")

    async def __aenter__(self) -> "MessageBroker":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()
