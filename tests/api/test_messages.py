"""
Tests for message publishing and dead letter endpoints.
"""
import time
import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, MagicMock

from courier.api.main import create_app
from courier.config import Settings
from courier.message_queue import BrokerClosedError, QueuedMessage


FAST = Settings(max_retries=0, base_retry_delay_seconds=0.01, shutdown_timeout_seconds=1.0)


async def failing_handler(message: QueuedMessage) -> None:
    raise RuntimeError("provider unavailable")


def wait_for_dead_letters(client: TestClient, count: int, timeout: float = 2.0) -> list:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        data = client.get("/dead-letters").json()
        if data["count"] >= count:
            return data["messages"]
        time.sleep(0.01)
    raise AssertionError(f"Expected {count} dead letter messages")


@pytest.fixture
def received():
    return []


@pytest.fixture
def client(received):
    """Test client whose broker records every handled message."""
    async def handler(message: QueuedMessage) -> None:
        received.append(message)

    with TestClient(create_app(handler=handler, settings=FAST)) as client:
        yield client


@pytest.fixture
def failing_client():
    """Test client whose handler always fails, so every message is dead-lettered."""
    with TestClient(create_app(handler=failing_handler, settings=FAST)) as client:
        yield client


class TestPublishEndpoint:
    """Tests for POST /messages."""

    def test_publish_returns_202_with_id(self, client, received):
        response = client.post(
            "/messages",
            json={"channel": "whatsapp", "payload": {"body": "Hola"}, "metadata": {"lead": "123"}},
        )

        assert response.status_code == 202
        message_id = response.json()["message_id"]
        assert message_id.startswith("msg_")

        deadline = time.monotonic() + 2.0
        while not received and time.monotonic() < deadline:
            time.sleep(0.01)

        [message] = received
        assert message.id == message_id
        assert message.payload == {"body": "Hola"}
        assert message.metadata == {"lead": "123"}

    def test_unknown_channel_rejected(self, client):
        response = client.post("/messages", json={"channel": "fax", "payload": "x"})

        assert response.status_code == 422

    def test_closed_broker_returns_503(self, client):
        broker = MagicMock()
        broker.publish = AsyncMock(side_effect=BrokerClosedError("Broker is shut down"))
        client.app.state.broker = broker

        response = client.post("/messages", json={"channel": "web", "payload": "x"})

        assert response.status_code == 503


class TestDeadLetterEndpoints:
    """Tests for /dead-letters."""

    def test_failed_message_listed(self, failing_client):
        message_id = failing_client.post("/messages", json={"channel": "email", "payload": "x"}).json()["message_id"]

        [dead] = wait_for_dead_letters(failing_client, 1)

        assert dead["id"] == message_id
        assert dead["status"] == "dead_letter"
        assert dead["last_error"] == "RuntimeError: provider unavailable"
        assert dead["dead_lettered_at"] is not None

    def test_list_respects_limit(self, failing_client):
        for i in range(3):
            failing_client.post("/messages", json={"channel": "web", "payload": i})
        wait_for_dead_letters(failing_client, 3)

        data = failing_client.get("/dead-letters", params={"limit": 2}).json()

        assert data["count"] == 2
        assert [m["payload"] for m in data["messages"]] == [0, 1]

    def test_requeue(self, failing_client):
        message_id = failing_client.post("/messages", json={"channel": "web", "payload": "x"}).json()["message_id"]
        wait_for_dead_letters(failing_client, 1)

        response = failing_client.post(f"/dead-letters/{message_id}/requeue")

        assert response.status_code == 200
        assert response.json() == {"status": "requeued", "message_id": message_id}

        # The handler still fails, so the message lands back in the sink
        [dead] = wait_for_dead_letters(failing_client, 1)
        assert dead["attempt"] == 0

    def test_requeue_unknown_returns_404(self, failing_client):
        response = failing_client.post("/dead-letters/msg_missing/requeue")

        assert response.status_code == 404

    def test_purge(self, failing_client):
        for i in range(2):
            failing_client.post("/messages", json={"channel": "web", "payload": i})
        wait_for_dead_letters(failing_client, 2)

        response = failing_client.delete("/dead-letters")

        assert response.json() == {"status": "purged", "count": 2}
        assert failing_client.get("/dead-letters").json()["count"] == 0
