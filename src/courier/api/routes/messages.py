"""
Message Ingress

Publishes messages onto the broker.
"""
from typing import Any
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field

from courier.message_queue import BrokerClosedError, Channel, MessageBroker

router = APIRouter(tags=["Messages"])


class PublishRequest(BaseModel):
    """Body of POST /messages."""
    channel: Channel
    payload: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)


@router.post("/messages", status_code=status.HTTP_202_ACCEPTED)
async def publish_message(body: PublishRequest, request: Request):
    """
    Queue a message for processing.

    Returns 202 with the message ID; processing happens asynchronously.
    Returns 503 while the broker is shutting down.
    """
    broker: MessageBroker = request.app.state.broker

    try:
        message_id = await broker.publish(body.channel, body.payload, body.metadata)
    except BrokerClosedError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return {"message_id": message_id}
