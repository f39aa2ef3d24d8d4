"""
Idempotency Models

Records, check outcomes and execution results for the idempotency ledger.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, Generic, Optional, TypeVar
from pydantic import BaseModel, Field

T = TypeVar("T")


class IdempotencyStatus(StrEnum):
    """Lifecycle of a logical action. Absence of a record is the implicit initial state."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class IdempotencyReason(StrEnum):
    """Why an action may not proceed. A designed outcome, not an error."""
    IN_PROGRESS = "in progress"
    ALREADY_COMPLETED = "already completed"
    MAX_RETRIES_EXCEEDED = "max retries exceeded"


class IdempotencyRecord(BaseModel):
    """
    Ledger entry for one (actor_id, action_id) key.

    Attributes:
        actor_id: Actor (customer, lead, tenant) owning the action
        action_id: Logical action identifier, unique per actor
        action_type: Free-form category used for statistics
        status: Current lifecycle state
        result: Cached action result (completed records only)
        error: Last failure message (failed records only)
        metadata: Opaque caller annotations
        retry_count: Failures recorded under this key
        created_at: When the record was last stored as pending
        completed_at: When the record reached completed or failed
        expires_at: After this instant the record counts as absent
    """
    actor_id: str
    action_id: str
    action_type: str = "default"
    status: IdempotencyStatus = IdempotencyStatus.PENDING
    result: Any = None
    error: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    retry_count: int = Field(default=0, ge=0)
    created_at: datetime
    completed_at: Optional[datetime] = None
    expires_at: datetime

    @property
    def key(self) -> tuple[str, str]:
        return (self.actor_id, self.action_id)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class LedgerStatistics(BaseModel):
    """Point-in-time counts over the ledger store."""
    total_records: int = 0
    pending: int = 0
    completed: int = 0
    failed: int = 0
    expired: int = 0
    by_action_type: dict[str, int] = Field(default_factory=dict)


@dataclass
class IdempotencyCheck:
    """
    Result of an idempotency check.

    Attributes:
        can_proceed: Whether the caller may store and run the action
        existing_record: Snapshot of the current record, if any
        reason: Why the action may not proceed (None when it may)
    """
    can_proceed: bool
    existing_record: Optional[IdempotencyRecord] = None
    reason: Optional[IdempotencyReason] = None


@dataclass
class ExecutionResult(Generic[T]):
    """
    Outcome of execute_with_idempotency.

    Attributes:
        success: True when the action ran successfully now or earlier
        result: Action result (fresh or cached)
        from_cache: True when the action was not invoked because it had completed before
        error: Failure message when success is False
        reason: Set when the action was refused without being invoked
    """
    success: bool
    result: Optional[T] = None
    from_cache: bool = False
    error: Optional[str] = None
    reason: Optional[IdempotencyReason] = None
