"""
Tests for MessageBroker: publish, retry, dead letter and requeue behavior.
"""

import asyncio
import pytest

from courier.config import BrokerConfig
from courier.message_queue import (
    BrokerClosedError,
    Channel,
    CourierError,
    MessageBroker,
    NonRetryableError,
    QueuedMessage,
)
from courier.utils.metrics import metrics


FAST = dict(base_retry_delay_seconds=0.01, shutdown_timeout_seconds=1.0)


async def join(broker: MessageBroker, timeout: float = 3.0) -> None:
    await asyncio.wait_for(broker.join(), timeout=timeout)


class TestPublish:
    """publish() and the happy path."""

    @pytest.mark.asyncio
    async def test_all_messages_processed_once_in_order(self, clock):
        seen = []

        async def handler(message: QueuedMessage):
            seen.append(message.payload)

        async with MessageBroker(handler, BrokerConfig(**FAST), clock=clock) as broker:
            ids = [await broker.publish("web", i) for i in range(20)]
            await join(broker)

            stats = await broker.get_queue_stats()

        assert seen == list(range(20))
        assert len(set(ids)) == 20
        assert stats.active == 0
        assert stats.processed == 20
        assert stats.running is False

    @pytest.mark.asyncio
    async def test_publish_builds_message(self, clock):
        received = []

        async def handler(message: QueuedMessage):
            received.append(message)

        async with MessageBroker(handler, BrokerConfig(**FAST), clock=clock) as broker:
            message_id = await broker.publish(
                Channel.WHATSAPP, {"body": "hola"}, metadata={"lead": "+5215512345678"}
            )
            await join(broker)

        [message] = received
        assert message.id == message_id
        assert message.channel == Channel.WHATSAPP
        assert message.payload == {"body": "hola"}
        assert message.metadata == {"lead": "+5215512345678"}
        assert message.attempt == 0
        assert message.created_at == clock.now
        assert metrics.messages_published.value(channel="whatsapp") == 1

    @pytest.mark.asyncio
    async def test_publish_returns_before_processing(self):
        release = asyncio.Event()

        async def handler(message: QueuedMessage):
            await release.wait()

        async with MessageBroker(handler, BrokerConfig(**FAST)) as broker:
            await broker.publish("web", "a")
            await broker.publish("web", "b")

            await asyncio.sleep(0.01)
            stats = await broker.get_queue_stats()
            assert stats.running is True
            assert stats.active == 1

            release.set()
            await join(broker)

    @pytest.mark.asyncio
    async def test_unknown_channel_rejected(self):
        async with MessageBroker(lambda m: asyncio.sleep(0), BrokerConfig(**FAST)) as broker:
            with pytest.raises(ValueError):
                await broker.publish("carrier-pigeon", "coo")

    @pytest.mark.asyncio
    async def test_publish_after_shutdown_raises(self):
        broker = MessageBroker(lambda m: asyncio.sleep(0), BrokerConfig(**FAST))
        await broker.shutdown()

        with pytest.raises(BrokerClosedError):
            await broker.publish("web", "late")


class TestRetries:
    """Failure routing through the retry scheduler."""

    @pytest.mark.asyncio
    async def test_flaky_handler_eventually_succeeds(self):
        attempts = []

        async def handler(message: QueuedMessage):
            attempts.append(message.attempt)
            if len(attempts) <= 2:
                raise ConnectionError("try again")

        async with MessageBroker(handler, BrokerConfig(max_retries=3, **FAST)) as broker:
            await broker.publish("telegram", "x")
            await join(broker)
            stats = await broker.get_queue_stats()

        assert attempts == [0, 1, 2]
        assert stats.dead_lettered == 0
        assert stats.failed == 2
        assert stats.processed == 1

    @pytest.mark.asyncio
    async def test_always_failing_handler_dead_letters_after_budget(self):
        attempts = []

        async def handler(message: QueuedMessage):
            attempts.append(message.attempt)
            raise RuntimeError("always broken")

        async with MessageBroker(handler, BrokerConfig(max_retries=3, **FAST)) as broker:
            message_id = await broker.publish("email", "x")
            await join(broker)

            stats = await broker.get_queue_stats()
            [dead] = await broker.get_dead_letter_messages()

        assert attempts == [0, 1, 2, 3]
        assert stats.active == 0
        assert stats.dead_lettered == 1
        assert dead.id == message_id
        assert dead.last_error == "RuntimeError: always broken"
        assert metrics.dead_lettered.value(reason="max_retries_exceeded") == 1

    @pytest.mark.asyncio
    async def test_backoff_delays_double(self):
        """max_retries=3, base 1s -> scheduled delays 1s, 2s, 4s."""
        delays = []

        async def recording_sleep(seconds: float) -> None:
            delays.append(seconds)
            await asyncio.sleep(0)

        async def handler(message: QueuedMessage):
            raise RuntimeError("fail")

        config = BrokerConfig(max_retries=3, base_retry_delay_seconds=1.0, shutdown_timeout_seconds=1.0)
        async with MessageBroker(handler, config, sleep=recording_sleep) as broker:
            await broker.publish("web", "x")
            await join(broker)
            stats = await broker.get_queue_stats()

        assert delays == [1.0, 2.0, 4.0]
        assert stats.dead_lettered == 1

    @pytest.mark.asyncio
    async def test_retry_jumps_ahead_of_later_messages(self):
        order = []
        failed_once = False

        async def handler(message: QueuedMessage):
            nonlocal failed_once
            order.append(message.payload)
            if message.payload == "first" and not failed_once:
                failed_once = True
                raise RuntimeError("retry me")
            if message.payload == "second":
                # Outlast the first message's backoff
                await asyncio.sleep(0.05)

        async with MessageBroker(handler, BrokerConfig(**FAST)) as broker:
            await broker.publish("web", "first")
            await broker.publish("web", "second")
            await broker.publish("web", "third")
            await join(broker)

        assert order == ["first", "second", "first", "third"]

    @pytest.mark.asyncio
    async def test_non_retryable_error_skips_budget(self):
        calls = 0

        async def handler(message: QueuedMessage):
            nonlocal calls
            calls += 1
            raise NonRetryableError("malformed payload")

        async with MessageBroker(handler, BrokerConfig(max_retries=5, **FAST)) as broker:
            await broker.publish("web", "x")
            await join(broker)
            stats = await broker.get_queue_stats()

        assert calls == 1
        assert stats.dead_lettered == 1
        assert metrics.dead_lettered.value(reason="non_retryable") == 1


class TestDeadLetters:
    """Bounded sink, requeue and purge."""

    @staticmethod
    async def failing(message: QueuedMessage):
        raise RuntimeError("down")

    @pytest.mark.asyncio
    async def test_sink_never_exceeds_capacity(self):
        config = BrokerConfig(max_retries=0, dead_letter_capacity=2, **FAST)

        async with MessageBroker(self.failing, config) as broker:
            ids = [await broker.publish("web", i) for i in range(3)]
            await join(broker)

            dead = await broker.get_dead_letter_messages()
            stats = await broker.get_queue_stats()

        assert [m.id for m in dead] == ids[1:]
        assert stats.dead_lettered == 2
        assert stats.dead_letter_evictions == 1

    @pytest.mark.asyncio
    async def test_requeue_resets_attempt_and_reprocesses(self):
        healthy = False
        attempts = []

        async def handler(message: QueuedMessage):
            attempts.append(message.attempt)
            if not healthy:
                raise RuntimeError("down")

        async with MessageBroker(handler, BrokerConfig(max_retries=1, **FAST)) as broker:
            message_id = await broker.publish("whatsapp", "x")
            await join(broker)
            assert attempts == [0, 1]

            healthy = True
            assert await broker.retry_dead_letter(message_id) is True
            assert await broker.retry_dead_letter(message_id) is False
            await join(broker)

            stats = await broker.get_queue_stats()

        assert attempts == [0, 1, 0]
        assert stats.dead_lettered == 0
        assert stats.processed == 1

    @pytest.mark.asyncio
    async def test_requeue_unknown_id(self):
        async with MessageBroker(self.failing, BrokerConfig(**FAST)) as broker:
            assert await broker.retry_dead_letter("msg_missing") is False

    @pytest.mark.asyncio
    async def test_purge(self):
        async with MessageBroker(self.failing, BrokerConfig(max_retries=0, **FAST)) as broker:
            await broker.publish("web", "a")
            await broker.publish("web", "b")
            await join(broker)

            assert await broker.purge_dead_letters() == 2
            assert await broker.get_dead_letter_messages() == []


class TestShutdown:
    """Graceful drain."""

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_retries(self):
        async def handler(message: QueuedMessage):
            raise RuntimeError("fail")

        config = BrokerConfig(max_retries=3, base_retry_delay_seconds=10.0, shutdown_timeout_seconds=1.0)
        broker = MessageBroker(handler, config)
        await broker.publish("web", "x")

        while (await broker.get_queue_stats()).retry_scheduled == 0:
            await asyncio.sleep(0.01)

        await broker.shutdown()
        stats = await broker.get_queue_stats()

        assert broker.closed is True
        assert stats.retry_scheduled == 0
        assert stats.running is False
        assert stats.dead_lettered == 0

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self):
        broker = MessageBroker(lambda m: asyncio.sleep(0), BrokerConfig(**FAST))
        await broker.shutdown()
        await broker.shutdown()

        with pytest.raises(BrokerClosedError):
            await broker.retry_dead_letter("msg_any")

    @pytest.mark.asyncio
    async def test_shutdown_honors_zero_timeout(self):
        """An explicit timeout=0 cancels a stuck handler instead of using the configured timeout."""
        started = asyncio.Event()

        async def stuck_handler(message: QueuedMessage):
            started.set()
            await asyncio.sleep(10)

        config = BrokerConfig(base_retry_delay_seconds=0.01, shutdown_timeout_seconds=30.0)
        broker = MessageBroker(stuck_handler, config)
        await broker.publish("web", "x")
        await started.wait()

        await asyncio.wait_for(broker.shutdown(timeout=0), timeout=1.0)

        assert (await broker.get_queue_stats()).running is False

    @pytest.mark.asyncio
    async def test_join_returns_after_shutdown_drops_messages(self):
        started = asyncio.Event()

        async def stuck_handler(message: QueuedMessage):
            started.set()
            await asyncio.sleep(10)

        broker = MessageBroker(stuck_handler, BrokerConfig(**FAST))
        for i in range(3):
            await broker.publish("web", i)
        await started.wait()

        await broker.shutdown(timeout=0.01)
        assert (await broker.get_queue_stats()).active == 2

        await asyncio.wait_for(broker.join(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_join_wakes_up_when_shutdown_happens(self):
        release = asyncio.Event()

        async def handler(message: QueuedMessage):
            await release.wait()

        broker = MessageBroker(handler, BrokerConfig(**FAST))
        await broker.publish("web", "a")
        await broker.publish("web", "b")

        waiter = asyncio.create_task(broker.join())
        await asyncio.sleep(0.02)
        assert not waiter.done()

        await broker.shutdown(timeout=0.01)
        await asyncio.wait_for(waiter, timeout=1.0)

    def test_invalid_config_fails_fast(self):
        with pytest.raises(ValueError):
            BrokerConfig(max_retries=-1)
        with pytest.raises(ValueError):
            BrokerConfig(dead_letter_capacity=0)

    def test_errors_share_a_base(self):
        assert issubclass(BrokerClosedError, CourierError)
        assert issubclass(NonRetryableError, CourierError)
