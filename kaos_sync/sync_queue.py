"""
Sync Queue Module
Persistent queue of operations waiting to be sent to Jira.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func

from kaos_sync.database.connection import DatabaseConnection, get_db
from kaos_sync.database.models import OperationType, SyncOperation, SyncState
from kaos_sync.exceptions import InvalidTransitionError, NotFoundError
from kaos_sync.utils.helpers import sanitize_string, utcnow
from kaos_sync.utils.logger import get_logger

logger = get_logger(__name__)

# Allowed state transitions
TRANSITIONS = {
    SyncState.PENDING: {SyncState.IN_PROGRESS},
    SyncState.IN_PROGRESS: {SyncState.COMPLETED, SyncState.ERROR, SyncState.PENDING},
    SyncState.ERROR: {SyncState.PENDING},
    SyncState.COMPLETED: set(),
}


class SyncQueue:
    """
    Queue of SyncOperation rows.

    Rows move PENDING -> IN_PROGRESS -> COMPLETED | ERROR. Each transition
    commits in its own transaction. ERROR rows are terminal until an
    administrator calls ``retry``.
    """

    def __init__(self, db: DatabaseConnection = None):
        self.db = db or get_db()

    # ========================================
    # Producers
    # ========================================

    def enqueue(
        self,
        squad_id: int,
        operation_type,
        scheduled_at: Optional[datetime] = None,
        payload: Optional[Dict[str, Any]] = None,
        deduplicate: bool = False
    ) -> SyncOperation:
        """
        Add a PENDING operation.

        Args:
            squad_id: Owning squad
            operation_type: OperationType or its name
            scheduled_at: Not processed before this instant (default: now)
            payload: JSON-serialisable operation data
            deduplicate: Return the existing PENDING row of the same squad and
                type instead of creating another one

        Returns:
            The queued operation
        """
        operation_type = OperationType(operation_type)

        with self.db.session_scope() as session:
            if deduplicate:
                existing = session.query(SyncOperation).filter(
                    SyncOperation.squad_id == squad_id,
                    SyncOperation.operation_type == operation_type.value,
                    SyncOperation.state == SyncState.PENDING.value
                ).order_by(SyncOperation.id).first()
                if existing:
                    logger.debug(f"{operation_type.value} already queued for squad {squad_id} (op {existing.id})")
                    return existing

            now = utcnow()
            operation = SyncOperation(
                squad_id=squad_id,
                operation_type=operation_type.value,
                state=SyncState.PENDING.value,
                payload=json.dumps(payload) if payload is not None else None,
                attempts=0,
                scheduled_at=scheduled_at or now,
                created_at=now
            )
            session.add(operation)
            session.flush()

            logger.info(f"Queued {operation_type.value} for squad {squad_id} (op {operation.id})")
            return operation

    # ========================================
    # Consumers
    # ========================================

    def fetch_pending(self, now: Optional[datetime] = None) -> List[SyncOperation]:
        """
        PENDING operations due at ``now``, oldest first across all squads.
        """
        now = now or utcnow()
        with self.db.session_scope() as session:
            return session.query(SyncOperation).filter(
                SyncOperation.state == SyncState.PENDING.value,
                SyncOperation.scheduled_at <= now
            ).order_by(
                SyncOperation.scheduled_at,
                SyncOperation.created_at,
                SyncOperation.id
            ).all()

    def mark_in_progress(self, operation_id: int) -> SyncOperation:
        """Claim an operation for processing and count the attempt."""
        def apply(op):
            op.started_at = utcnow()
            op.attempts = (op.attempts or 0) + 1
        return self._transition(operation_id, SyncState.IN_PROGRESS, apply)

    def mark_completed(self, operation_id: int) -> SyncOperation:
        def apply(op):
            op.completed_at = utcnow()
            op.error_message = None
        return self._transition(operation_id, SyncState.COMPLETED, apply)

    def mark_error(self, operation_id: int, message: str) -> SyncOperation:
        """Record a failure. Rows still PENDING are marked too (failure before claim)."""
        def apply(op):
            op.completed_at = utcnow()
            op.error_message = sanitize_string(message or 'Unknown error', 2000)
        return self._transition(
            operation_id, SyncState.ERROR, apply,
            extra_sources={SyncState.PENDING}
        )

    def retry(self, operation_id: int) -> SyncOperation:
        """Send an ERROR operation back to PENDING, due immediately."""
        def apply(op):
            op.scheduled_at = utcnow()
            op.started_at = None
            op.completed_at = None
        return self._transition(operation_id, SyncState.PENDING, apply, allowed_sources={SyncState.ERROR})

    def _transition(
        self,
        operation_id: int,
        target: SyncState,
        apply=None,
        extra_sources=None,
        allowed_sources=None
    ) -> SyncOperation:
        with self.db.session_scope() as session:
            op = session.get(SyncOperation, operation_id)
            if op is None:
                raise NotFoundError('SyncOperation', operation_id)

            current = SyncState(op.state)
            if allowed_sources is not None:
                valid = current in allowed_sources
            else:
                valid = target in TRANSITIONS[current] or current in (extra_sources or set())
            if not valid:
                raise InvalidTransitionError(operation_id, current.value, target.value)

            op.state = target.value
            if apply:
                apply(op)
            session.flush()
            return op

    # ========================================
    # Maintenance
    # ========================================

    def purge_completed_older_than(self, cutoff: datetime) -> int:
        """
        Delete COMPLETED operations finished before ``cutoff``.

        Returns:
            Number of rows deleted
        """
        with self.db.session_scope() as session:
            deleted = session.query(SyncOperation).filter(
                SyncOperation.state == SyncState.COMPLETED.value,
                SyncOperation.completed_at < cutoff
            ).delete(synchronize_session=False)

        if deleted:
            logger.info(f"Purged {deleted} completed sync operations older than {cutoff.isoformat()}")
        return deleted

    def reset_stale_in_progress(self, older_than: datetime) -> int:
        """
        Return operations stuck IN_PROGRESS since before ``older_than`` to PENDING.

        Returns:
            Number of rows reset
        """
        with self.db.session_scope() as session:
            reset = session.query(SyncOperation).filter(
                SyncOperation.state == SyncState.IN_PROGRESS.value,
                SyncOperation.started_at < older_than
            ).update({
                SyncOperation.state: SyncState.PENDING.value,
                SyncOperation.started_at: None
            }, synchronize_session=False)

        if reset:
            logger.warning(f"Reset {reset} sync operations stuck in progress since before {older_than.isoformat()}")
        return reset

    # ========================================
    # Queries
    # ========================================

    def get(self, operation_id: int) -> SyncOperation:
        with self.db.session_scope() as session:
            op = session.get(SyncOperation, operation_id)
            if op is None:
                raise NotFoundError('SyncOperation', operation_id)
            return op

    def list_operations(
        self,
        squad_id: Optional[int] = None,
        state: Optional[str] = None,
        limit: int = 100
    ) -> List[SyncOperation]:
        """Most recent operations, optionally filtered by squad and state."""
        with self.db.session_scope() as session:
            query = session.query(SyncOperation)
            if squad_id is not None:
                query = query.filter(SyncOperation.squad_id == squad_id)
            if state:
                query = query.filter(SyncOperation.state == SyncState(state).value)
            return query.order_by(SyncOperation.created_at.desc(), SyncOperation.id.desc()).limit(limit).all()

    def count_pending(self, squad_id: Optional[int] = None) -> int:
        with self.db.session_scope() as session:
            query = session.query(func.count(SyncOperation.id)).filter(
                SyncOperation.state == SyncState.PENDING.value
            )
            if squad_id is not None:
                query = query.filter(SyncOperation.squad_id == squad_id)
            return query.scalar() or 0

    @staticmethod
    def load_payload(operation: SyncOperation) -> Dict[str, Any]:
        """Decode an operation's JSON payload ({} when absent)."""
        if not operation.payload:
            return {}
        return json.loads(operation.payload)
