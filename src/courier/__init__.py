"""
Courier

In-process asynchronous message processing core:
- Message broker with retry, exponential backoff and a bounded dead letter sink
- Idempotency ledger deduplicating side-effecting actions per (actor, action)
"""

from courier.config import BrokerConfig, LedgerConfig, Settings, get_settings
from courier.idempotency import IdempotencyLedger
from courier.message_queue import MessageBroker

__version__ = "0.1.0"

__all__ = [
    "BrokerConfig",
    "LedgerConfig",
    "Settings",
    "get_settings",
    "IdempotencyLedger",
    "MessageBroker",
]
