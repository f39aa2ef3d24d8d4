"""
Dispatcher

The single consumer loop that drains the queue through the handler.
"""

import asyncio
from typing import Optional
from loguru import logger

from courier.message_queue.base import (
    MessageHandler,
    MessageQueue,
    MessageStatus,
    QueuedMessage,
)
from courier.message_queue.retry import RetryScheduler
from courier.utils.clock import Clock, utc_now
from courier.utils.metrics import Timer, metrics
from courier.utils.observability import log_queue_event


class Dispatcher:
    """
    Single active consumer for a message queue.

    The loop is started on demand by wake(), processes messages strictly one
    at a time (the handler is awaited before the next message is popped) and
    goes idle as soon as the queue is empty. A slow handler therefore stalls
    the whole queue; in exchange, side effects are totally ordered.

    Handler exceptions never escape the loop: they are routed to the retry
    scheduler, which either schedules another attempt or sends the message
    to the dead letter sink. This includes a CancelledError raised by
    something the handler awaited; only cancelling the loop task itself
    (stop()) propagates.

    Attributes:
        queue: Message queue to drain
        handler: Async function invoked with each message
        retry_scheduler: Backoff and retry budget policy
    """

    def __init__(
        self,
        queue: MessageQueue,
        handler: MessageHandler,
        retry_scheduler: RetryScheduler,
        clock: Clock = utc_now,
    ):
        self.queue = queue
        self.handler = handler
        self.retry_scheduler = retry_scheduler
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._accepting = True

        self.processed = 0
        self.failed = 0
        self.dead_letter_evictions = 0

    @property
    def running(self) -> bool:
        """True while the loop task is active."""
        return self._task is not None and not self._task.done()

    def wake(self) -> None:
        """Start the loop if it is idle. No-op while running or after stop()."""
        if not self._accepting or self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        logger.debug("Dispatcher started")
        while self._accepting:
            message = await self.queue.dequeue()
            if message is None:
                break
            await self._process_message(message)
        logger.debug("Dispatcher idle")

    async def _process_message(self, message: QueuedMessage) -> None:
        channel = str(message.channel)
        logger.debug(f"Processing message {message.id} (attempt {message.attempt})")

        try:
            with Timer(metrics.handler_duration, channel=channel):
                await self.handler(message)
        except asyncio.CancelledError as e:
            # Only a cancel aimed at this task (stop/shutdown) ends the loop;
            # a cancelled downstream call is an ordinary handler failure
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            await self._record_failure(message, e)
            return
        except Exception as e:
            await self._record_failure(message, e)
            return

        self.processed += 1
        message.status = MessageStatus.COMPLETED
        message.last_error = None
        metrics.messages_processed.inc(channel=channel)
        log_queue_event("processed", message_id=message.id, channel=channel, attempt=message.attempt)

    async def _record_failure(self, message: QueuedMessage, error: BaseException) -> None:
        self.failed += 1
        metrics.handler_failures.inc(channel=str(message.channel))
        message.last_error = f"{type(error).__name__}: {error}" if str(error) else type(error).__name__
        logger.opt(exception=error).error(f"❌ Failed to process message {message.id}: {error!r}")
        await self._handle_failure(message, error)

    async def _handle_failure(self, message: QueuedMessage, error: BaseException) -> None:
        decision = self.retry_scheduler.decide(message, error)

        if decision.should_retry:
            self.retry_scheduler.schedule(message, decision.delay_seconds)
            return

        evicted = await self.queue.dead_letter(message, now=self._clock())
        metrics.dead_lettered.inc(reason=decision.reason or "unknown")
        log_queue_event(
            "dead_lettered",
            message_id=message.id,
            channel=str(message.channel),
            attempt=message.attempt,
            level="WARNING",
            reason=decision.reason,
            error=message.last_error,
        )

        if evicted is not None:
            self.dead_letter_evictions += 1
            metrics.dead_letter_evictions.inc()
            logger.warning(f"Dead letter sink full, evicted oldest message {evicted.id}")

    async def stop(self, timeout: float = 30.0) -> None:
        """
        Stop the loop.

        Gracefully shuts down:
        1. Stops picking up new messages (and ignores further wake() calls)
        2. Waits for the in-flight handler invocation to complete
        3. Cancels it if it does not finish within ``timeout`` seconds
        """
        self._accepting = False
        if not self.running:
            return

        logger.info("Waiting for in-flight message to complete...")
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Timeout waiting for handler, cancelling dispatcher")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
