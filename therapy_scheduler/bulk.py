"""
Bulk Rescheduling Engine.

Applies one structural change (freeze, mass shift, reassignment) to many
committed sessions as a tracked, cancellable, rollback-capable job.

Best effort, not all-or-nothing: each session is placed and committed on
its own, failures are recorded in the outcome log and processing moves on.
Every committed change is logged with the state it replaced, which is
what rollback replays.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from therapy_models import (
    BulkOperationType,
    BulkReschedulingRequest,
    DateRange,
    OperationSnapshot,
    OperationStatus,
    OutcomeKind,
    RollbackReport,
    Session,
    SessionOutcome,
    SessionStatus,
)

from .availability_index import AvailabilityIndex
from .collaborators import SchedulingDataSource, SessionFilter, call_with_retry
from .config import Settings, get_settings
from .conflicts import DetectionContext, partition_independent
from .engine import ScheduleGenerator
from .errors import ClientError, CollaboratorError, OperationRejected
from .tracker import OperationTracker, ProgressCallback

logger = logging.getLogger(__name__)


class BulkReschedulingEngine:
    """
    Runs bulk operations on a background worker pool (one worker per operation,
    plus a bounded pool of group workers inside each operation).
    """

    def __init__(
        self,
        data_source: SchedulingDataSource,
        generator: Optional[ScheduleGenerator] = None,
        tracker: Optional[OperationTracker] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.data_source = data_source
        self.generator = generator or ScheduleGenerator(settings=self.settings)
        self.detector = self.generator.detector
        self.tracker = tracker or OperationTracker()

        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.max_active_operations, thread_name_prefix="bulk-op"
        )
        self._futures: Dict[str, Future] = {}
        self._futures_lock = threading.Lock()
        self._admission = threading.Lock()

    def _retry(self, op_name: str, func: Callable):
        return call_with_retry(
            op_name,
            func,
            max_attempts=self.settings.collaborator_max_attempts,
            backoff_seconds=self.settings.collaborator_backoff_seconds,
        )

    # --- Public API ---

    def execute_bulk_reschedule(
        self,
        request: BulkReschedulingRequest,
        on_progress: Optional[ProgressCallback] = None,
    ) -> OperationSnapshot:
        """
        Accept the request and return immediately with the pending operation.
        `on_progress` is subscribed before any work starts.
        """
        if len(request.session_ids) > self.settings.bulk_max_sessions:
            raise ClientError(
                f"Bulk operations are limited to {self.settings.bulk_max_sessions} sessions",
                details={"requested": len(request.session_ids)},
            )

        with self._admission:
            if self.tracker.active_count() >= self.settings.max_active_operations:
                raise OperationRejected(
                    f"Too many active bulk operations (max {self.settings.max_active_operations})"
                )
            operation = self.tracker.create(request)
            if on_progress is not None:
                self.tracker.subscribe(operation.id, on_progress)
            future = self._executor.submit(self._run, operation.id, request)
            with self._futures_lock:
                self._futures[operation.id] = future

        # Only running work is kept; the record itself stays with the tracker
        future.add_done_callback(lambda _, op_id=operation.id: self._forget(op_id))
        return self.tracker.snapshot(operation.id)

    def get_operation_status(self, op_id: str) -> OperationSnapshot:
        return self.tracker.snapshot(op_id)

    def cancel_operation(self, op_id: str) -> OperationSnapshot:
        return self.tracker.request_cancel(op_id)

    def wait(self, op_id: str, timeout: Optional[float] = None) -> OperationSnapshot:
        """Block until the operation's worker has finished."""
        with self._futures_lock:
            future = self._futures.get(op_id)
        if future is not None:
            future.result(timeout=timeout)
            self._forget(op_id)
        return self.tracker.snapshot(op_id)

    def _forget(self, op_id: str) -> None:
        with self._futures_lock:
            self._futures.pop(op_id, None)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # --- Worker ---

    def _run(self, op_id: str, request: BulkReschedulingRequest) -> None:
        try:
            self.tracker.start(op_id)
            if self.tracker.is_cancel_requested(op_id):
                self.tracker.finish(op_id, OperationStatus.CANCELLED)
                return

            try:
                sessions, missing = self._load_targets(request)
                availability, calendar = self._load_snapshot(sessions, request)
            except CollaboratorError as exc:
                logger.error(f"Operation {op_id} could not load its data: {exc}")
                self.tracker.finish(op_id, OperationStatus.FAILED, error=str(exc))
                return

            self.tracker.set_affected(op_id, missing + [s.id for s in sessions])
            for session_id in missing:
                self.tracker.append_outcome(op_id, SessionOutcome(
                    session_id=session_id, kind=OutcomeKind.FAILED, reason="Session not found",
                ))

            groups = partition_independent(sessions, owners_of=lambda s: self._target_owners(s, request))
            workers = max(1, min(request.max_concurrency or self.settings.bulk_max_concurrency, len(groups)))
            logger.info(f"Operation {op_id}: {len(sessions)} session(s) in {len(groups)} group(s)")

            calendar_lock = threading.Lock()
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"{op_id}-group") as pool:
                futures = [
                    pool.submit(self._process_group, op_id, request, group, availability, calendar, calendar_lock)
                    for group in groups
                ]
                for future in futures:
                    future.result()

            self.tracker.finish(op_id, self._final_status(op_id))
        except Exception as exc:
            logger.exception(f"Operation {op_id} crashed")
            if self.tracker.get(op_id).status == OperationStatus.RUNNING:
                self.tracker.finish(op_id, OperationStatus.FAILED, error=str(exc))

    def _final_status(self, op_id: str) -> OperationStatus:
        operation = self.tracker.get(op_id)
        if operation.cancel_requested:
            return OperationStatus.CANCELLED
        if operation.count(OutcomeKind.RESCHEDULED) == 0 and operation.count(OutcomeKind.FAILED) > 0:
            return OperationStatus.FAILED
        return OperationStatus.COMPLETED

    def _load_targets(self, request: BulkReschedulingRequest) -> Tuple[List[Session], List[str]]:
        session_filter = SessionFilter(session_ids=request.session_ids, subscription_id=request.subscription_id)
        sessions = self._retry(
            "fetch_existing_sessions",
            lambda: self.data_source.fetch_existing_sessions(session_filter),
        )
        found = {s.id for s in sessions}
        missing = [sid for sid in request.session_ids if sid not in found]

        if request.operation_type == BulkOperationType.FREEZE:
            sessions = [s for s in sessions if s.date is None or s.date >= request.freeze_start]

        # Forward moves run latest-first so each session can take a slot its
        # successor has just vacated; backward moves run earliest-first.
        reverse = self._date_offset(request) > 0
        placed = sorted(
            (s for s in sessions if s.is_placed),
            key=lambda s: (s.start_datetime, s.id),
            reverse=reverse,
        )
        unplaced = sorted((s for s in sessions if not s.is_placed), key=lambda s: s.id)
        return placed + unplaced, missing

    def _load_snapshot(
        self, sessions: List[Session], request: BulkReschedulingRequest
    ) -> Tuple[AvailabilityIndex, Dict[str, Session]]:
        """Availability + calendar for every owner the operation can touch."""
        dated = [s.date for s in sessions if s.date is not None]
        if not dated:
            return AvailabilityIndex(), {}

        offset = self._date_offset(request)
        margin = timedelta(days=self.settings.suggestion_search_days)
        start = min(dated) - margin + min(offset, 0) * timedelta(days=1)
        end = max(dated) + margin + max(offset, 0) * timedelta(days=1)
        date_range = DateRange(start_date=start, end_date=end)

        owners = sorted({o for s in sessions for o in self._target_owners(s, request)}
                        | {o for s in sessions for o in s.owner_ids()})
        slots = self._retry(
            "fetch_availability",
            lambda: self.data_source.fetch_availability(owners, date_range),
        )
        existing = self._retry(
            "fetch_existing_sessions",
            lambda: self.data_source.fetch_existing_sessions(
                SessionFilter(owner_ids=owners, date_range=date_range)
            ),
        )
        return AvailabilityIndex(slots), {s.id: s for s in existing}

    @staticmethod
    def _date_offset(request: BulkReschedulingRequest) -> int:
        if request.operation_type == BulkOperationType.FREEZE:
            return request.freeze_days
        if request.operation_type == BulkOperationType.MASS_SHIFT:
            return request.shift_days or 0
        return 0

    @staticmethod
    def _target_owners(session: Session, request: BulkReschedulingRequest) -> Iterable[str]:
        if request.operation_type == BulkOperationType.REASSIGN:
            therapist = request.new_therapist_id
        else:
            therapist = session.therapist_id
        return (therapist, session.resource_id) if session.resource_id else (therapist,)

    def _target_for(self, session: Session, request: BulkReschedulingRequest) -> Session:
        if request.operation_type == BulkOperationType.REASSIGN:
            return session.moved_to(therapist_id=request.new_therapist_id)
        return session.moved_to(date=session.date + timedelta(days=self._date_offset(request)))

    def _process_group(
        self,
        op_id: str,
        request: BulkReschedulingRequest,
        group: List[Session],
        availability: AvailabilityIndex,
        calendar: Dict[str, Session],
        calendar_lock: threading.Lock,
    ) -> None:
        for session in group:
            # Cancellation is checked between sessions, never mid-session
            if self.tracker.is_cancel_requested(op_id):
                logger.info(f"Operation {op_id} stopping before {session.id}: cancelled")
                return
            outcome = self._process_session(request, session, availability, calendar, calendar_lock)
            self.tracker.append_outcome(op_id, outcome)

    def _process_session(
        self,
        request: BulkReschedulingRequest,
        session: Session,
        availability: AvailabilityIndex,
        calendar: Dict[str, Session],
        calendar_lock: threading.Lock,
    ) -> SessionOutcome:
        if not session.is_placed:
            logger.error(f"Session {session.id} has no placement; excluded from operation")
            return SessionOutcome(
                session_id=session.id, kind=OutcomeKind.FAILED, previous_state=session,
                reason="Invariant violation: session has no date/time window",
            )
        if session.status != SessionStatus.SCHEDULED:
            return SessionOutcome(
                session_id=session.id, kind=OutcomeKind.SKIPPED, previous_state=session,
                reason=f"Session is {session.status.value}",
            )

        target = self._target_for(session, request)
        with calendar_lock:
            snapshot = list(calendar.values())
        context = DetectionContext(existing_sessions=snapshot, availability=availability)
        earliest = request.freeze_end if request.operation_type == BulkOperationType.FREEZE else None

        attempt = self.generator.place_candidate(target, context, earliest_date=earliest)
        if not attempt.placed:
            return SessionOutcome(
                session_id=session.id, kind=OutcomeKind.FAILED, previous_state=session,
                reason=f"No conflict-free placement: {attempt.blocking[0].description}",
                conflicts=attempt.blocking,
            )
        placed = attempt.session

        # Final validation against the live calendar (optimistic concurrency)
        try:
            fresh = self._retry(
                "fetch_existing_sessions",
                lambda: self.data_source.fetch_existing_sessions(SessionFilter(
                    owner_ids=list(placed.owner_ids()),
                    date_range=DateRange(start_date=placed.date, end_date=placed.date),
                )),
            )
            late = [c for c in self.detector.detect(placed, DetectionContext(fresh, availability)) if c.is_blocking]
            if late:
                return SessionOutcome(
                    session_id=session.id, kind=OutcomeKind.FAILED, previous_state=session,
                    reason="Calendar changed before commit", conflicts=late,
                )
            self._retry(
                "commit_session_change",
                lambda: self.data_source.commit_session_change(placed, session),
            )
        except CollaboratorError as exc:
            logger.warning(f"Could not commit {session.id}: {exc}")
            return SessionOutcome(
                session_id=session.id, kind=OutcomeKind.FAILED, previous_state=session,
                reason=f"Collaborator error: {exc.message}",
            )

        with calendar_lock:
            calendar[placed.id] = placed
        logger.debug(f"Rescheduled {session.describe()} -> {placed.describe()}")
        return SessionOutcome(
            session_id=session.id,
            kind=OutcomeKind.RESCHEDULED,
            previous_state=session,
            new_state=placed,
            conflicts=[c for c in attempt.conflicts if not c.is_blocking],
        )

    # --- Rollback ---

    def rollback_operation(self, op_id: str) -> RollbackReport:
        """
        Replay the outcome log in reverse, restoring each session's logged
        previous state. A session modified since the operation touched it is
        reported as a conflict and left alone.
        """
        operation = self.tracker.begin_rollback(op_id)
        entries: List[SessionOutcome] = []
        try:
            for outcome in reversed(operation.outcomes):
                if outcome.kind != OutcomeKind.RESCHEDULED:
                    continue
                entries.append(self._restore(outcome))
        except Exception:
            self.tracker.abort_rollback(op_id)
            raise

        self.tracker.record_rollback(op_id, entries)
        report = RollbackReport(
            operation_id=op_id,
            status=OperationStatus.ROLLED_BACK,
            restored_session_ids=[e.session_id for e in entries if e.kind == OutcomeKind.RESTORED],
            conflict_session_ids=[e.session_id for e in entries if e.kind == OutcomeKind.ROLLBACK_CONFLICT],
            failed_session_ids=[e.session_id for e in entries if e.kind == OutcomeKind.ROLLBACK_FAILED],
        )
        if not report.fully_restored:
            logger.warning(
                f"Rollback of {op_id} incomplete: {len(report.conflict_session_ids)} conflict(s), "
                f"{len(report.failed_session_ids)} failure(s)"
            )
        return report

    def _restore(self, outcome: SessionOutcome) -> SessionOutcome:
        session_id = outcome.session_id
        try:
            current = self._retry(
                "fetch_existing_sessions",
                lambda: self.data_source.fetch_existing_sessions(SessionFilter(session_ids=[session_id])),
            )
            current = current[0] if current else None
            if current is None or current.placement_key() != outcome.new_state.placement_key():
                logger.warning(f"Rollback conflict on {session_id}: modified since the operation")
                return SessionOutcome(
                    session_id=session_id,
                    kind=OutcomeKind.ROLLBACK_CONFLICT,
                    previous_state=current,
                    new_state=outcome.previous_state,
                    reason="Session was modified after the operation; not overwritten",
                )
            self._retry(
                "commit_session_change",
                lambda: self.data_source.commit_session_change(outcome.previous_state, current),
            )
        except CollaboratorError as exc:
            logger.error(f"Rollback of {session_id} failed: {exc}")
            return SessionOutcome(
                session_id=session_id,
                kind=OutcomeKind.ROLLBACK_FAILED,
                previous_state=outcome.new_state,
                new_state=outcome.previous_state,
                reason=f"Collaborator error: {exc.message}",
            )
        return SessionOutcome(
            session_id=session_id,
            kind=OutcomeKind.RESTORED,
            previous_state=outcome.new_state,
            new_state=outcome.previous_state,
        )
