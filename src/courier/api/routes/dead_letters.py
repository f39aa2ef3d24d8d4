"""
Dead Letter Endpoints

Manual review, requeue and purge of messages that exhausted their retries.
"""
from typing import Optional
from fastapi import APIRouter, HTTPException, Query, Request, status
from loguru import logger

from courier.message_queue import BrokerClosedError, MessageBroker

router = APIRouter(prefix="/dead-letters", tags=["Dead Letters"])


@router.get("")
async def list_dead_letters(request: Request, limit: Optional[int] = Query(None, ge=1)):
    """
    List dead letter messages, oldest first.

    Args:
        limit: Maximum messages to return
    """
    broker: MessageBroker = request.app.state.broker
    messages = await broker.get_dead_letter_messages(limit)

    return {
        "count": len(messages),
        "messages": [m.model_dump(mode="json") for m in messages]
    }


@router.post("/{message_id}/requeue")
async def requeue_dead_letter(message_id: str, request: Request):
    """
    Move a dead letter message back to the active queue with attempt reset to 0.

    Returns 404 if the message is not in the dead letter sink.
    """
    broker: MessageBroker = request.app.state.broker

    try:
        requeued = await broker.retry_dead_letter(message_id)
    except BrokerClosedError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    if not requeued:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Message {message_id} not in dead letter queue"
        )

    logger.info(f"Dead letter message requeued via API: {message_id}")
    return {"status": "requeued", "message_id": message_id}


@router.delete("")
async def purge_dead_letters(request: Request):
    """Drop every dead letter message."""
    broker: MessageBroker = request.app.state.broker
    purged = await broker.purge_dead_letters()
    return {"status": "purged", "count": purged}
