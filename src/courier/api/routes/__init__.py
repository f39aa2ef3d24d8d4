"""
API Routes

Modular route definitions for the courier admin API.
"""
from courier.api.routes.health import router as health_router
from courier.api.routes.messages import router as messages_router
from courier.api.routes.dead_letters import router as dead_letters_router
from courier.api.routes.metrics import router as metrics_router

__all__ = [
    "health_router",
    "messages_router",
    "dead_letters_router",
    "metrics_router",
]
