"""
FastAPI Application

Admin host for the message broker and idempotency ledger.
Handles application lifecycle and router mounting.
"""
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from loguru import logger

from courier.config import BrokerConfig, LedgerConfig, Settings, get_settings
from courier.idempotency import IdempotencyLedger
from courier.message_queue import MessageBroker, MessageHandler, QueuedMessage
from courier.api.routes import health_router, messages_router, dead_letters_router, metrics_router
from courier.api.routes.health import API_VERSION
from courier.utils.observability import configure_logging


async def log_message_handler(message: QueuedMessage) -> None:
    """
    Default handler: logs the message and succeeds.

    Hosts replace it with real processing through create_app(handler=...).
    """
    preview = str(message.payload)[:50]
    logger.info(f"🔄 Processing message from {message.channel}: {preview}")


def create_app(
    handler: Optional[MessageHandler] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the admin API.

    Args:
        handler: Message handler run by the broker (logs messages when None)
        settings: Configuration (process settings when None)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Manage application lifecycle: startup and shutdown events.

        Startup:
        - Configure logging
        - Build the broker and the ledger from settings
        - Start the ledger sweep

        Shutdown:
        - Drain the broker (in-flight handler finishes, retries cancelled)
        - Stop the ledger sweep
        """
        resolved = settings or get_settings()
        configure_logging(resolved)
        logger.info("Starting courier admin API...")

        broker = MessageBroker(
            handler=handler or log_message_handler,
            config=BrokerConfig.from_settings(resolved),
        )
        ledger = IdempotencyLedger(config=LedgerConfig.from_settings(resolved))
        ledger.start()

        app.state.broker = broker
        app.state.ledger = ledger

        logger.info("Courier admin API ready")

        yield

        logger.info("Shutting down courier admin API...")
        await broker.shutdown()
        await ledger.stop()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="Courier API",
        description="In-process message broker with retries, dead letters and idempotency",
        version=API_VERSION,
        lifespan=lifespan,
    )

    app.include_router(health_router)
    app.include_router(messages_router)
    app.include_router(dead_letters_router)
    app.include_router(metrics_router)
    return app


app = create_app()
