"""
Metrics Endpoints

Prometheus-compatible metrics plus JSON queue and ledger statistics.
"""
from fastapi import APIRouter, Request
from fastapi.responses import Response, JSONResponse
from loguru import logger

from courier.idempotency import IdempotencyLedger
from courier.message_queue import MessageBroker
from courier.utils.metrics import metrics

router = APIRouter(tags=["Metrics"])


@router.get("/metrics")
async def prometheus_metrics(request: Request):
    """
    Prometheus metrics endpoint.

    Refreshes the queue and ledger gauges from current state, then exports
    every registered metric.

    Content-Type: text/plain; version=0.0.4; charset=utf-8
    """
    try:
        broker: MessageBroker = request.app.state.broker
        ledger: IdempotencyLedger = request.app.state.ledger

        # Both calls refresh their gauges as a side effect
        await broker.get_queue_stats()
        await ledger.get_statistics()

        return Response(
            content=metrics.export(),
            media_type="text/plain; version=0.0.4; charset=utf-8"
        )

    except Exception as e:
        logger.error(f"Failed to export metrics: {e}")
        return Response(
            content=f"# Error exporting metrics: {e}\n",
            media_type="text/plain",
            status_code=500
        )


@router.get("/metrics/queue")
async def queue_metrics(request: Request):
    """
    Get message queue statistics.

    Returns:
        Active, dead-lettered and retrying counts, dispatcher state,
        processed/failed totals and dead letter evictions
    """
    try:
        broker: MessageBroker = request.app.state.broker
        stats = await broker.get_queue_stats()

        return {
            "status": "ok",
            "metrics": stats.model_dump()
        }

    except Exception as e:
        logger.error(f"Failed to get queue metrics: {e}")
        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "error": str(e)
            }
        )


@router.get("/metrics/idempotency")
async def idempotency_metrics(request: Request):
    """
    Get idempotency ledger statistics.

    Returns:
        Record counts by status and action type, plus expired-but-unswept records
    """
    try:
        ledger: IdempotencyLedger = request.app.state.ledger
        stats = await ledger.get_statistics()

        return {
            "status": "ok",
            "metrics": stats.model_dump()
        }

    except Exception as e:
        logger.error(f"Failed to get idempotency metrics: {e}")
        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "error": str(e)
            }
        )
