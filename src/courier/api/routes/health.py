"""
Health Endpoints

Liveness probe and API index.
"""
from fastapi import APIRouter

router = APIRouter(tags=["Health"])

# API version - single source of truth
API_VERSION = "0.1.0"


@router.get("/health")
async def health_check():
    """
    Basic health check endpoint.

    Returns 200 if service is running.
    """
    return {
        "status": "healthy",
        "service": "courier",
        "version": API_VERSION
    }


@router.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Courier API",
        "version": API_VERSION,
        "endpoints": {
            "health": "/health",
            "publish": "/messages (POST)",
            "dead_letters": "/dead-letters",
            "requeue": "/dead-letters/{message_id}/requeue (POST)",
            "metrics": "/metrics",
            "queue_metrics": "/metrics/queue",
            "idempotency_metrics": "/metrics/idempotency"
        }
    }
