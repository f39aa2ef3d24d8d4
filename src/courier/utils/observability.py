"""
Structured Logging & Observability
Logging that's both human-readable and machine-parseable.
"""
import sys
from typing import Any, Optional
from loguru import logger
from courier.config import Settings, get_settings


def configure_logging(settings: Optional[Settings] = None):
    """
    Configure loguru for the host process.

    In development: Human-readable colorized output
    In production: Structured JSON logs for ingestion (ELK, Datadog, etc.)
    """
    settings = settings or get_settings()

    # Remove default handler
    logger.remove()

    if not settings.enable_structured_logging:
        logger.add(
            sys.stderr,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
                "{message}"
            ),
            level=settings.log_level,
            colorize=True,
        )
    else:
        logger.add(
            sys.stderr,
            format="{message}",
            level=settings.log_level,
            serialize=True,  # Output as JSON
        )

    logger.info(f"Logging configured: level={settings.log_level}, structured={settings.enable_structured_logging}")


def log_queue_event(
    event: str,
    message_id: str,
    channel: str,
    attempt: int,
    level: str = "INFO",
    **context: Any
):
    """
    Structured logging for message lifecycle events.

    Args:
        event: What happened (e.g., "published", "retry_scheduled", "dead_lettered")
        message_id: The message involved
        channel: Origin channel of the message
        attempt: Delivery attempts made so far
        level: Loguru level name
        **context: Additional context (delay_seconds, error, ...)

    Example:
        >>> log_queue_event(
        ...     "retry_scheduled",
        ...     message_id="msg_3f2a...",
        ...     channel="whatsapp",
        ...     attempt=2,
        ...     delay_seconds=2.0,
        ... )
    """
    log_data = {
        "event_type": "queue",
        "event": event,
        "message_id": message_id,
        "channel": channel,
        "attempt": attempt,
        **context,
    }
    logger.bind(**log_data).log(level, f"Queue | {event} | {message_id}")


def log_idempotency_event(
    event: str,
    actor_id: str,
    action_id: str,
    level: str = "INFO",
    **context: Any
):
    """
    Structured logging for idempotency ledger transitions.

    Args:
        event: Transition or decision (e.g., "stored", "completed", "cache_hit")
        actor_id: Actor owning the action
        action_id: Logical action identifier
        level: Loguru level name
        **context: Event-specific data
    """
    log_data = {
        "event_type": "idempotency",
        "event": event,
        "actor_id": actor_id,
        "action_id": action_id,
        **context,
    }
    logger.bind(**log_data).log(level, f"Idempotency | {event} | {actor_id}:{action_id}")
