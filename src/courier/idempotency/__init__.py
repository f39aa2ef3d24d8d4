"""
Idempotency Ledger

Deduplicates side-effecting actions per (actor_id, action_id):
- Pending / completed / failed lifecycle with TTL expiry
- Cached results for completed actions
- Bounded retries for failed actions
- Background sweep of expired records
"""

from courier.idempotency.models import (
    ExecutionResult,
    IdempotencyCheck,
    IdempotencyReason,
    IdempotencyRecord,
    IdempotencyStatus,
    LedgerStatistics,
)
from courier.idempotency.ledger import IdempotencyLedger

__all__ = [
    "ExecutionResult",
    "IdempotencyCheck",
    "IdempotencyReason",
    "IdempotencyRecord",
    "IdempotencyStatus",
    "LedgerStatistics",
    "IdempotencyLedger",
]
