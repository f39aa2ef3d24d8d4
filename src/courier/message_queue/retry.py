"""
Retry Scheduling

Exponential backoff and delayed reinsertion of failed messages.

Failed messages are re-inserted at the head of the queue once their delay
elapses, so a retry runs before work that was published after it.
Each wait is its own asyncio task: the dispatcher keeps processing other
messages while a retry is pending, and shutdown can cancel every pending
retry deterministically.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional
from loguru import logger

from courier.message_queue.base import (
    MessageQueue,
    MessageStatus,
    NonRetryableError,
    QueuedMessage,
)
from courier.utils.metrics import metrics
from courier.utils.observability import log_queue_event


def compute_delay(attempt: int, base_delay: float, jitter: float = 0.0) -> float:
    """
    Backoff delay for a retry attempt.

    ``base_delay * 2 ** (attempt - 1)`` where ``attempt`` is 1 for the first
    retry. With ``max_retries=3`` and ``base_delay=1`` the delays are 1s, 2s, 4s.

    Args:
        attempt: 1-indexed retry attempt
        base_delay: Delay before the first retry, in seconds
        jitter: Proportional jitter (0.1 = +/-10%); 0 keeps the delay exact

    Returns:
        Delay in seconds

    Raises:
        ValueError: If attempt < 1
    """
    if attempt < 1:
        raise ValueError(f"attempt is 1-indexed, got {attempt}")

    delay = base_delay * (2 ** (attempt - 1))
    if jitter <= 0:
        return delay
    spread = delay * jitter
    return random.uniform(delay - spread, delay + spread)


@dataclass
class RetryDecision:
    """
    Outcome of the retry budget check for a failed message.

    Attributes:
        should_retry: Whether the message gets another attempt
        next_attempt: Attempt number the retry would carry
        delay_seconds: Backoff before reinsertion (0 when not retrying)
        reason: Why the message is dead-lettered (None when retrying)
    """
    should_retry: bool
    next_attempt: int
    delay_seconds: float = 0.0
    reason: Optional[str] = None


class RetryScheduler:
    """
    Decides whether failed messages are retried and schedules reinsertion.

    Usage:
        scheduler = RetryScheduler(queue, max_retries=3, base_delay=1.0)
        scheduler.on_ready = dispatcher.wake

        decision = scheduler.decide(message, error)
        if decision.should_retry:
            scheduler.schedule(message, decision.delay_seconds)
    """

    def __init__(
        self,
        queue: MessageQueue,
        max_retries: int,
        base_delay: float,
        jitter: float = 0.0,
        on_ready: Optional[Callable[[], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize retry scheduler.

        Args:
            queue: Queue that receives reinserted messages
            max_retries: Retries allowed after the first attempt
            base_delay: Delay before the first retry, in seconds
            jitter: Proportional jitter applied to each delay
            on_ready: Called after each reinsertion (wakes the dispatcher)
            sleep: Awaits a backoff delay (event loop time by default; the
                timestamp Clock does not drive backoff)
        """
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        if base_delay <= 0:
            raise ValueError(f"base_delay must be > 0, got {base_delay}")

        self.queue = queue
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.jitter = jitter
        self.on_ready = on_ready
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Number of messages currently waiting out a delay."""
        return sum(1 for task in self._tasks if not task.done())

    def decide(self, message: QueuedMessage, error: BaseException) -> RetryDecision:
        """
        Check the retry budget for a failed message.

        The budget check happens before any scheduling: once the next
        attempt would exceed max_retries the message is dead-lettered.
        """
        next_attempt = message.attempt + 1

        if isinstance(error, NonRetryableError):
            return RetryDecision(False, next_attempt, reason="non_retryable")

        if next_attempt > self.max_retries:
            return RetryDecision(False, next_attempt, reason="max_retries_exceeded")

        return RetryDecision(
            should_retry=True,
            next_attempt=next_attempt,
            delay_seconds=compute_delay(next_attempt, self.base_delay, self.jitter),
        )

    def schedule(self, message: QueuedMessage, delay: float) -> asyncio.Task:
        """
        Reinsert the message at the head of the queue after ``delay`` seconds.

        Bumps ``attempt`` immediately; returns without waiting.
        """
        message.attempt += 1
        message.status = MessageStatus.RETRY_SCHEDULED

        task = asyncio.create_task(self._reinsert_after(message, delay))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        metrics.retries_scheduled.inc(channel=str(message.channel))
        log_queue_event(
            "retry_scheduled",
            message_id=message.id,
            channel=str(message.channel),
            attempt=message.attempt,
            max_retries=self.max_retries,
            delay_seconds=delay,
        )
        return task

    async def _reinsert_after(self, message: QueuedMessage, delay: float) -> None:
        await self._sleep(delay)
        await self.queue.enqueue_front(message)
        logger.debug(f"Retrying message {message.id} (attempt {message.attempt}/{self.max_retries})")

        if self.on_ready is not None:
            self.on_ready()

    async def cancel_all(self) -> int:
        """
        Cancel every pending reinsertion.

        Returns:
            Number of retries cancelled
        """
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Cancelled {len(pending)} pending retries")

        return len(pending)
