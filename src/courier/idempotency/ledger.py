"""
Idempotency Ledger

Prevents duplicate execution of side-effecting actions keyed by
(actor_id, action_id) and caches their results for a TTL window.
"""

import asyncio
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, TypeVar
from loguru import logger

from courier.config import LedgerConfig
from courier.idempotency.models import (
    ExecutionResult,
    IdempotencyCheck,
    IdempotencyReason,
    IdempotencyRecord,
    IdempotencyStatus,
    LedgerStatistics,
)
from courier.utils.clock import Clock, utc_now
from courier.utils.metrics import metrics
from courier.utils.observability import log_idempotency_event

T = TypeVar("T")

Key = tuple[str, str]


class IdempotencyLedger:
    """
    In-memory idempotency ledger.

    State machine per key:
        absent    --store_action-->     pending
        pending   --mark_completed-->   completed
        pending   --mark_failed-->      failed
        failed    --store_action-->     pending   (only while retry_count < max_retries)
        any       --expires_at passes-> absent    (swept in the background)

    execute_with_idempotency runs check and store atomically under the
    ledger lock, so two concurrent callers for the same key can never both
    invoke the action: the second one sees "in progress" or, once the first
    completes, the cached result.

    Usage:
        async with IdempotencyLedger(LedgerConfig(ttl_seconds=3600)) as ledger:
            outcome = await ledger.execute_with_idempotency(
                "customer-42", "send-invoice-2024-06", send_invoice
            )
            if outcome.from_cache:
                ...
    """

    def __init__(self, config: Optional[LedgerConfig] = None, clock: Clock = utc_now):
        """
        Initialize idempotency ledger.

        Args:
            config: TTL, retry budget and sweep interval (defaults when None)
            clock: Source of the current time
        """
        self.config = config or LedgerConfig()
        self._clock = clock
        self._ttl = timedelta(seconds=self.config.ttl_seconds)
        self._store: dict[Key, IdempotencyRecord] = {}
        self._lock = asyncio.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Core state machine
    # ------------------------------------------------------------------

    async def check_idempotency(self, actor_id: str, action_id: str) -> IdempotencyCheck:
        """
        Check whether an action may run.

        An expired record is deleted as a side effect and treated as absent.
        A completed record is returned so the caller can reuse its result.
        """
        async with self._lock:
            return self._check_locked(actor_id, action_id)

    def _check_locked(self, actor_id: str, action_id: str) -> IdempotencyCheck:
        key = (actor_id, action_id)
        record = self._store.get(key)

        if record is None:
            return IdempotencyCheck(can_proceed=True)

        if record.is_expired(self._clock()):
            del self._store[key]
            log_idempotency_event("expired", actor_id, action_id, level="DEBUG")
            return IdempotencyCheck(can_proceed=True)

        snapshot = record.model_copy()

        if record.status == IdempotencyStatus.PENDING:
            log_idempotency_event("in_progress", actor_id, action_id, level="WARNING")
            return IdempotencyCheck(False, snapshot, IdempotencyReason.IN_PROGRESS)

        if record.status == IdempotencyStatus.COMPLETED:
            log_idempotency_event("already_completed", actor_id, action_id)
            return IdempotencyCheck(False, snapshot, IdempotencyReason.ALREADY_COMPLETED)

        if record.retry_count >= self.config.max_retries:
            log_idempotency_event(
                "max_retries_exceeded",
                actor_id,
                action_id,
                level="WARNING",
                retry_count=record.retry_count,
                max_retries=self.config.max_retries,
            )
            return IdempotencyCheck(False, snapshot, IdempotencyReason.MAX_RETRIES_EXCEEDED)

        log_idempotency_event(
            "retry_allowed",
            actor_id,
            action_id,
            retry=record.retry_count + 1,
            max_retries=self.config.max_retries,
        )
        return IdempotencyCheck(True, snapshot)

    async def store_action(
        self,
        actor_id: str,
        action_id: str,
        metadata: Optional[dict[str, Any]] = None,
        action_type: str = "default",
    ) -> IdempotencyRecord:
        """
        Store the action as pending with a fresh TTL.

        Call only after check_idempotency allowed the action. The retry
        count of a previously failed record is carried over.
        """
        async with self._lock:
            return self._store_locked(actor_id, action_id, metadata, action_type).model_copy()

    def _store_locked(
        self,
        actor_id: str,
        action_id: str,
        metadata: Optional[dict[str, Any]],
        action_type: str,
    ) -> IdempotencyRecord:
        key = (actor_id, action_id)
        now = self._clock()

        previous = self._store.get(key)
        retry_count = 0
        if (
            previous is not None
            and previous.status == IdempotencyStatus.FAILED
            and not previous.is_expired(now)
        ):
            retry_count = previous.retry_count

        record = IdempotencyRecord(
            actor_id=actor_id,
            action_id=action_id,
            action_type=action_type,
            status=IdempotencyStatus.PENDING,
            metadata=dict(metadata or {}),
            retry_count=retry_count,
            created_at=now,
            expires_at=now + self._ttl,
        )
        self._store[key] = record
        log_idempotency_event("stored", actor_id, action_id, action_type=action_type, retry_count=retry_count)
        return record

    async def mark_completed(
        self,
        actor_id: str,
        action_id: str,
        result: Any,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Transition pending -> completed and cache the result.

        Returns:
            False if no live pending record exists for the key
        """
        async with self._lock:
            record = self._live_pending_locked(actor_id, action_id, "completed")
            if record is None:
                return False

            record.status = IdempotencyStatus.COMPLETED
            record.result = result
            record.error = None
            record.completed_at = self._clock()
            if metadata:
                record.metadata.update(metadata)

        log_idempotency_event("completed", actor_id, action_id)
        return True

    async def mark_failed(
        self,
        actor_id: str,
        action_id: str,
        error: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Transition pending -> failed, increment retry_count and keep the error.

        Returns:
            False if no live pending record exists for the key
        """
        async with self._lock:
            record = self._live_pending_locked(actor_id, action_id, "failed")
            if record is None:
                return False

            record.status = IdempotencyStatus.FAILED
            record.retry_count += 1
            record.error = error
            record.result = None
            record.completed_at = self._clock()
            if metadata:
                record.metadata.update(metadata)
            retry_count = record.retry_count

        log_idempotency_event("failed", actor_id, action_id, level="WARNING", retry_count=retry_count, error=error)
        return True

    def _live_pending_locked(
        self, actor_id: str, action_id: str, target: str
    ) -> Optional[IdempotencyRecord]:
        record = self._store.get((actor_id, action_id))

        if record is None or record.is_expired(self._clock()):
            logger.warning(f"⚠️ No record found for action {actor_id}:{action_id}")
            return None

        if record.status != IdempotencyStatus.PENDING:
            logger.warning(
                f"⚠️ Refusing {record.status} -> {target} for action {actor_id}:{action_id}"
            )
            return None

        return record

    async def execute_with_idempotency(
        self,
        actor_id: str,
        action_id: str,
        action: Callable[[], Awaitable[T]],
        metadata: Optional[dict[str, Any]] = None,
        action_type: str = "default",
    ) -> ExecutionResult[T]:
        """
        Run ``action`` at most once per key and TTL window.

        - Already completed: returns the cached result, action not invoked
        - In progress or out of retries: returns a failure carrying the reason
        - Otherwise: stores pending, invokes the action once, records the outcome

        Args:
            actor_id: Actor owning the action
            action_id: Logical action identifier
            action: Zero-argument async callable performing the side effect
            metadata: Opaque caller annotations stored on the record
            action_type: Category for statistics

        Returns:
            Execution outcome. Action exceptions are captured, not raised.

        Raises:
            asyncio.CancelledError: Only when the calling task is cancelled;
                the record is marked failed first
        """
        async with self._lock:
            check = self._check_locked(actor_id, action_id)

            if not check.can_proceed:
                if check.reason == IdempotencyReason.ALREADY_COMPLETED:
                    metrics.idempotency_executions.inc(outcome="cache_hit")
                    return ExecutionResult(
                        success=True,
                        result=check.existing_record.result,
                        from_cache=True,
                    )

                metrics.idempotency_executions.inc(outcome="rejected")
                return ExecutionResult(
                    success=False,
                    error=f"Action {check.reason}",
                    reason=check.reason,
                )

            self._store_locked(actor_id, action_id, metadata, action_type)

        # Execute outside lock to allow concurrency across keys
        try:
            result = await action()
        except asyncio.CancelledError:
            await self.mark_failed(actor_id, action_id, "cancelled")
            metrics.idempotency_executions.inc(outcome="failed")
            # Propagate only when the caller itself is being cancelled
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            return ExecutionResult(success=False, error="cancelled")
        except Exception as e:
            error = str(e) or type(e).__name__
            await self.mark_failed(actor_id, action_id, error)
            metrics.idempotency_executions.inc(outcome="failed")
            return ExecutionResult(success=False, error=error)

        await self.mark_completed(actor_id, action_id, result)
        metrics.idempotency_executions.inc(outcome="executed")
        return ExecutionResult(success=True, result=result)

    # ------------------------------------------------------------------
    # Inspection and manual maintenance
    # ------------------------------------------------------------------

    async def get_action_result(self, actor_id: str, action_id: str) -> Any:
        """Cached result of a completed, unexpired action; None otherwise."""
        record = await self.get_action_status(actor_id, action_id)
        if record is None or record.status != IdempotencyStatus.COMPLETED:
            return None
        return record.result

    async def get_action_status(self, actor_id: str, action_id: str) -> Optional[IdempotencyRecord]:
        """Snapshot of the live record for a key, or None when absent or expired."""
        async with self._lock:
            record = self._store.get((actor_id, action_id))
            if record is None or record.is_expired(self._clock()):
                return None
            return record.model_copy()

    async def remove_action(self, actor_id: str, action_id: str) -> bool:
        """Delete a record manually. Returns False if there was none."""
        async with self._lock:
            removed = self._store.pop((actor_id, action_id), None) is not None

        if removed:
            log_idempotency_event("removed", actor_id, action_id)
        return removed

    async def get_actor_actions(self, actor_id: str) -> list[IdempotencyRecord]:
        """Live records for one actor, newest first."""
        async with self._lock:
            now = self._clock()
            records = [
                r.model_copy()
                for r in self._store.values()
                if r.actor_id == actor_id and not r.is_expired(now)
            ]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def get_statistics(self) -> LedgerStatistics:
        """Counts by status and action type. Expired-but-unswept records are included."""
        async with self._lock:
            now = self._clock()
            stats = LedgerStatistics(total_records=len(self._store))

            for record in self._store.values():
                if record.status == IdempotencyStatus.PENDING:
                    stats.pending += 1
                elif record.status == IdempotencyStatus.COMPLETED:
                    stats.completed += 1
                else:
                    stats.failed += 1

                if record.is_expired(now):
                    stats.expired += 1

                stats.by_action_type[record.action_type] = (
                    stats.by_action_type.get(record.action_type, 0) + 1
                )

        metrics.idempotency_records.set(stats.pending, status="pending")
        metrics.idempotency_records.set(stats.completed, status="completed")
        metrics.idempotency_records.set(stats.failed, status="failed")
        return stats

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    async def sweep_expired(self) -> int:
        """
        Remove every expired record.

        Returns:
            Number of records removed
        """
        async with self._lock:
            now = self._clock()
            expired = [key for key, record in self._store.items() if record.is_expired(now)]
            for key in expired:
                del self._store[key]

        if expired:
            metrics.idempotency_swept.inc(len(expired))
            logger.info(f"🧹 Cleaned up {len(expired)} expired idempotency records")
        return len(expired)

    @property
    def sweeping(self) -> bool:
        """True while the background sweep task is active."""
        return self._sweep_task is not None and not self._sweep_task.done()

    def start(self) -> None:
        """Start the background sweep. Must be called from a running event loop."""
        if self.sweeping:
            logger.warning("Idempotency sweep already running")
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the background sweep and wait for it to exit."""
        if self._sweep_task is None:
            return

        task, self._sweep_task = self._sweep_task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self) -> None:
        interval = self.config.sweep_interval_seconds
        logger.info("Idempotency sweep started", extra={"interval_seconds": interval})

        while True:
            try:
                await asyncio.sleep(interval)
                await self.sweep_expired()
            except asyncio.CancelledError:
                logger.info("Idempotency sweep cancelled")
                raise
            except Exception as e:
                logger.error(f"Idempotency sweep error: {e}")

    async def __aenter__(self) -> "IdempotencyLedger":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
