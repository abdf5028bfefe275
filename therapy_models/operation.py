"""
Bulk operation data models.

A BulkOperation is the unit of cancellation and rollback. Its outcome log is
append-only and holds enough (the previous session state) to reverse every
committed change.
"""

from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field
from datetime import datetime, timezone

from .conflict import Conflict
from .request import BulkOperationType, BulkReschedulingRequest
from .session import Session


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OperationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"


TERMINAL_STATUSES = frozenset({
    OperationStatus.COMPLETED,
    OperationStatus.FAILED,
    OperationStatus.CANCELLED,
    OperationStatus.ROLLED_BACK,
})


class OutcomeKind(str, Enum):
    # Forward processing
    RESCHEDULED = "rescheduled"
    FAILED = "failed"
    SKIPPED = "skipped"
    # Rollback processing
    RESTORED = "restored"
    ROLLBACK_CONFLICT = "rollback_conflict"
    ROLLBACK_FAILED = "rollback_failed"


class SessionOutcome(BaseModel):
    """One line of the operation ledger."""
    session_id: str
    kind: OutcomeKind
    previous_state: Optional[Session] = Field(default=None, description="State before the change")
    new_state: Optional[Session] = Field(default=None, description="State committed by the change")
    reason: str = ""
    conflicts: List[Conflict] = Field(default_factory=list)
    recorded_at: datetime = Field(default_factory=utcnow)


class BulkOperation(BaseModel):
    """Tracker-owned record of a long-running bulk operation."""
    id: str
    type: BulkOperationType
    status: OperationStatus = OperationStatus.PENDING
    request: BulkReschedulingRequest

    affected_session_ids: List[str] = Field(default_factory=list)
    outcomes: List[SessionOutcome] = Field(default_factory=list)
    rollback_log: List[SessionOutcome] = Field(default_factory=list)

    cancel_requested: bool = False
    error: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def count(self, kind: OutcomeKind) -> int:
        return sum(1 for o in self.outcomes if o.kind == kind)


class OperationSnapshot(BaseModel):
    """Point-in-time view of an operation, safe to hand to callers."""
    id: str
    type: BulkOperationType
    status: OperationStatus
    total: int
    processed: int
    succeeded: int
    failed: int
    skipped: int
    progress_percent: float
    cancel_requested: bool
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None

    @classmethod
    def of(cls, operation: BulkOperation) -> "OperationSnapshot":
        total = len(operation.affected_session_ids)
        processed = len(operation.outcomes)
        progress = (processed / total * 100) if total else (100.0 if operation.is_terminal else 0.0)
        return cls(
            id=operation.id,
            type=operation.type,
            status=operation.status,
            total=total,
            processed=processed,
            succeeded=operation.count(OutcomeKind.RESCHEDULED),
            failed=operation.count(OutcomeKind.FAILED),
            skipped=operation.count(OutcomeKind.SKIPPED),
            progress_percent=round(progress, 1),
            cancel_requested=operation.cancel_requested,
            error=operation.error,
            created_at=operation.created_at,
            started_at=operation.started_at,
            finished_at=operation.finished_at,
            cancelled_at=operation.cancelled_at,
            rolled_back_at=operation.rolled_back_at,
        )


class RollbackReport(BaseModel):
    """Result of replaying an operation's ledger in reverse."""
    operation_id: str
    status: OperationStatus
    restored_session_ids: List[str] = Field(default_factory=list)
    conflict_session_ids: List[str] = Field(default_factory=list)
    failed_session_ids: List[str] = Field(default_factory=list)

    @property
    def fully_restored(self) -> bool:
        return not self.conflict_session_ids and not self.failed_session_ids
