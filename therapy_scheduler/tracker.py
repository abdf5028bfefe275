"""
Operation Tracker.

Single owner of every BulkOperation record. All mutation goes through one
lock, which makes the per-operation outcome log a serialized, append-only
ledger even when several group workers report at once.

Lifecycle:
    pending -> running -> completed | failed | cancelled
    completed | cancelled -> rolled_back
Terminal records accept no further mutation apart from that rollback step.
"""

import logging
import threading
import uuid
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Set

from therapy_models import (
    BulkOperation,
    BulkReschedulingRequest,
    OperationSnapshot,
    OperationStatus,
    SessionOutcome,
)
from therapy_models.operation import utcnow

from .errors import OperationNotFound, OperationStateError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[OperationSnapshot], None]

_TRANSITIONS: Dict[OperationStatus, Set[OperationStatus]] = {
    OperationStatus.PENDING: {OperationStatus.RUNNING},
    OperationStatus.RUNNING: {OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.CANCELLED},
    OperationStatus.COMPLETED: {OperationStatus.ROLLED_BACK},
    OperationStatus.CANCELLED: {OperationStatus.ROLLED_BACK},
    OperationStatus.FAILED: set(),
    OperationStatus.ROLLED_BACK: set(),
}


class OperationTracker:
    """Thread-safe registry of bulk operations with a progress push channel."""

    def __init__(self):
        self._lock = threading.Lock()
        self._operations: Dict[str, BulkOperation] = {}
        self._subscribers: Dict[str, List[ProgressCallback]] = defaultdict(list)
        self._rolling_back: Set[str] = set()

    # --- Internal helpers (call with the lock held) ---

    def _require(self, op_id: str) -> BulkOperation:
        operation = self._operations.get(op_id)
        if operation is None:
            raise OperationNotFound(f"Unknown operation {op_id}", details={"operation_id": op_id})
        return operation

    def _transition(self, operation: BulkOperation, target: OperationStatus) -> None:
        if target not in _TRANSITIONS[operation.status]:
            raise OperationStateError(
                f"Operation {operation.id} cannot move from {operation.status.value} to {target.value}",
                details={"operation_id": operation.id, "status": operation.status.value},
            )
        operation.status = target

    def _notify(self, op_id: str) -> None:
        with self._lock:
            snapshot = OperationSnapshot.of(self._require(op_id))
            callbacks = list(self._subscribers.get(op_id, []))
        for callback in callbacks:
            try:
                callback(snapshot)
            except Exception:
                logger.exception(f"Progress subscriber for {op_id} raised")

    # --- Lifecycle ---

    def create(self, request: BulkReschedulingRequest) -> BulkOperation:
        operation = BulkOperation(
            id=f"op_{uuid.uuid4().hex[:12]}",
            type=request.operation_type,
            request=request,
            affected_session_ids=list(request.session_ids),
        )
        with self._lock:
            self._operations[operation.id] = operation
        logger.info(f"Created {operation.type.value} operation {operation.id}")
        return operation.model_copy(deep=True)

    def start(self, op_id: str) -> None:
        with self._lock:
            operation = self._require(op_id)
            self._transition(operation, OperationStatus.RUNNING)
            operation.started_at = utcnow()
        logger.info(f"Operation {op_id} running")
        self._notify(op_id)

    def set_affected(self, op_id: str, session_ids: List[str]) -> None:
        with self._lock:
            operation = self._require(op_id)
            if operation.status != OperationStatus.RUNNING:
                raise OperationStateError(f"Operation {op_id} is not running")
            operation.affected_session_ids = list(session_ids)
        self._notify(op_id)

    def append_outcome(self, op_id: str, outcome: SessionOutcome) -> None:
        """Append one ledger line. Only a running operation accepts outcomes."""
        with self._lock:
            operation = self._require(op_id)
            if operation.status != OperationStatus.RUNNING:
                raise OperationStateError(
                    f"Operation {op_id} is {operation.status.value}; its outcome log is closed"
                )
            operation.outcomes.append(outcome)
        self._notify(op_id)

    def request_cancel(self, op_id: str) -> OperationSnapshot:
        """Cooperative: the worker stops before its next session. Running operations only."""
        with self._lock:
            operation = self._require(op_id)
            if operation.status != OperationStatus.RUNNING:
                raise OperationStateError(
                    f"Operation {op_id} is {operation.status.value}; only running operations can be cancelled",
                    details={"operation_id": op_id, "status": operation.status.value},
                )
            operation.cancel_requested = True
        logger.info(f"Cancellation requested for {op_id}")
        self._notify(op_id)
        return self.snapshot(op_id)

    def is_cancel_requested(self, op_id: str) -> bool:
        with self._lock:
            return self._require(op_id).cancel_requested

    def finish(self, op_id: str, status: OperationStatus, error: Optional[str] = None) -> None:
        with self._lock:
            operation = self._require(op_id)
            self._transition(operation, status)
            now = utcnow()
            operation.finished_at = now
            if status == OperationStatus.CANCELLED:
                operation.cancelled_at = now
            if error:
                operation.error = error
        logger.info(f"Operation {op_id} finished: {status.value}")
        self._notify(op_id)
        self._drop_subscribers(op_id)

    def begin_rollback(self, op_id: str) -> BulkOperation:
        """Claim the operation for rollback; rejects ineligible or concurrent rollbacks."""
        with self._lock:
            operation = self._require(op_id)
            if OperationStatus.ROLLED_BACK not in _TRANSITIONS[operation.status]:
                raise OperationStateError(
                    f"Operation {op_id} cannot be rolled back from {operation.status.value}",
                    details={"operation_id": op_id, "status": operation.status.value},
                )
            if op_id in self._rolling_back:
                raise OperationStateError(f"Operation {op_id} is already being rolled back")
            self._rolling_back.add(op_id)
            return operation.model_copy(deep=True)

    def abort_rollback(self, op_id: str) -> None:
        with self._lock:
            self._rolling_back.discard(op_id)

    def record_rollback(self, op_id: str, entries: List[SessionOutcome]) -> None:
        with self._lock:
            operation = self._require(op_id)
            self._transition(operation, OperationStatus.ROLLED_BACK)
            operation.rollback_log = list(entries)
            operation.rolled_back_at = utcnow()
            self._rolling_back.discard(op_id)
        logger.info(f"Operation {op_id} rolled back ({len(entries)} session(s) replayed)")
        self._notify(op_id)
        self._drop_subscribers(op_id)

    # --- Queries ---

    def get(self, op_id: str) -> BulkOperation:
        """Detached copy of the record."""
        with self._lock:
            return self._require(op_id).model_copy(deep=True)

    def snapshot(self, op_id: str) -> OperationSnapshot:
        with self._lock:
            return OperationSnapshot.of(self._require(op_id))

    def active_count(self) -> int:
        with self._lock:
            return sum(
                1 for op in self._operations.values()
                if op.status in (OperationStatus.PENDING, OperationStatus.RUNNING)
            )

    def list_operations(self) -> List[OperationSnapshot]:
        with self._lock:
            return [OperationSnapshot.of(op) for op in self._operations.values()]

    # --- Progress channel ---

    def subscribe(self, op_id: str, callback: ProgressCallback) -> None:
        with self._lock:
            self._require(op_id)
            self._subscribers[op_id].append(callback)

    def unsubscribe(self, op_id: str, callback: ProgressCallback) -> None:
        with self._lock:
            if callback in self._subscribers.get(op_id, []):
                self._subscribers[op_id].remove(callback)

    def _drop_subscribers(self, op_id: str) -> None:
        """Subscriptions end with the final notification of a finish or rollback."""
        with self._lock:
            self._subscribers.pop(op_id, None)
