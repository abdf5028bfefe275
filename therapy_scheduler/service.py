"""
Scheduling Service.

The caller-facing API of the core. Wires the components together, fetches
the context each call needs from the data collaborator, and turns malformed
input into structured 'rejected' results instead of stack traces.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from therapy_models import (
    BulkReschedulingRequest,
    Conflict,
    DateRange,
    OperationSnapshot,
    RollbackReport,
    SchedulingConstraints,
    SchedulingRequest,
    Session,
)

from .availability_index import AvailabilityIndex
from .bulk import BulkReschedulingEngine
from .collaborators import SchedulingDataSource, SessionFilter, call_with_retry
from .config import Settings, get_settings
from .conflicts import ConflictDetector, DetectionContext
from .engine import ScheduleGenerator
from .errors import ClientError, CollaboratorError
from .rules import OptimizationResult, OptimizationRuleEngine
from .state import GenerationResult, ScheduleOutcome
from .tracker import OperationTracker, ProgressCallback

logger = logging.getLogger(__name__)


def _validation_messages(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}"
        for err in exc.errors()
    ]


class SchedulingService:
    """
    Entry point for API/UI layers: generation, conflict checks, optimization
    and bulk operations over one data collaborator.
    """

    def __init__(self, data_source: SchedulingDataSource, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.data_source = data_source
        self.detector = ConflictDetector(self.settings)
        self.rule_engine = OptimizationRuleEngine(self.detector, self.settings)
        self.generator = ScheduleGenerator(self.detector, self.rule_engine, self.settings)
        self.tracker = OperationTracker()
        self.bulk = BulkReschedulingEngine(data_source, self.generator, self.tracker, self.settings)

    def _retry(self, op_name: str, func):
        return call_with_retry(
            op_name,
            func,
            max_attempts=self.settings.collaborator_max_attempts,
            backoff_seconds=self.settings.collaborator_backoff_seconds,
        )

    def build_context(
        self,
        owner_ids: Iterable[str],
        date_range: DateRange,
        constraints: Optional[SchedulingConstraints] = None,
    ) -> DetectionContext:
        """Materialize availability + calendar for the given owners and dates."""
        owners = sorted(set(owner_ids))
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
        return DetectionContext(
            existing_sessions=existing,
            availability=AvailabilityIndex(slots),
            constraints=constraints,
        )

    def _context_for_sessions(self, sessions: Sequence[Session], all_owners: bool = False) -> DetectionContext:
        placed = [s for s in sessions if s.is_placed]
        if not placed:
            raise ClientError("No placed sessions to evaluate")
        margin = timedelta(days=self.settings.suggestion_search_days)
        date_range = DateRange(
            start_date=min(s.date for s in placed) - margin,
            end_date=max(s.date for s in placed) + margin,
        )
        if all_owners:
            # An empty owner list loads every therapist and resource
            return self.build_context((), date_range)
        return self.build_context((o for s in placed for o in s.owner_ids()), date_range)

    # --- Generation ---

    def generate_schedule(
        self,
        request: Union[SchedulingRequest, Mapping[str, Any]],
        commit: bool = False,
    ) -> GenerationResult:
        """
        Generate (and optionally commit) a schedule. Malformed requests come
        back as outcome=rejected; collaborator outages propagate.
        """
        try:
            if not isinstance(request, SchedulingRequest):
                request = SchedulingRequest.model_validate(request)
            self.generator.validate_request(request)
        except ValidationError as exc:
            logger.info(f"Rejected scheduling request: {exc.error_count()} validation error(s)")
            return GenerationResult.rejected(*_validation_messages(exc))
        except ClientError as exc:
            logger.info(f"Rejected scheduling request: {exc.message}")
            return GenerationResult.rejected(exc.message)

        owners = [request.therapist_id] + ([request.resource_id] if request.resource_id else [])
        context = self.build_context(owners, request.date_range, request.constraints)
        rule_order = self._retry("fetch_optimization_rules", self.data_source.fetch_optimization_rules)

        try:
            result = self.generator.generate(request, context, rule_order=rule_order)
        except ClientError as exc:
            return GenerationResult.rejected(exc.message)

        if commit and result.sessions:
            self._commit_generated(result, context)
        return result

    def _commit_generated(self, result: GenerationResult, context: DetectionContext) -> None:
        """Final validation pass against the live calendar, then one commit per session."""
        committed: List[Session] = []
        for session in result.sessions:
            fresh = self._retry(
                "fetch_existing_sessions",
                lambda: self.data_source.fetch_existing_sessions(SessionFilter(
                    owner_ids=list(session.owner_ids()),
                    date_range=DateRange(start_date=session.date, end_date=session.date),
                )),
            )
            blocking = [
                c for c in self.detector.detect(session, context.with_sessions(fresh))
                if c.is_blocking
            ]
            if blocking:
                logger.warning(f"{session.id} lost its slot before commit: {blocking[0].description}")
                result.unresolved.extend(blocking)
                continue
            try:
                self._retry("commit_session_change", lambda: self.data_source.commit_session_change(session, None))
            except CollaboratorError as exc:
                logger.error(f"Commit of {session.id} failed: {exc}")
                result.errors.append(f"{session.id}: {exc.message}")
                continue
            committed.append(session)

        if len(committed) != len(result.sessions):
            result.sessions = committed
            result.outcome = ScheduleOutcome.PARTIAL
        logger.info(f"Committed {len(committed)} session(s)")

    # --- Conflict detection ---

    def detect_conflicts(self, session: Session, context: Optional[DetectionContext] = None) -> List[Conflict]:
        if context is None:
            context = self._context_for_sessions([session])
        return self.detector.detect(session, context)

    def detect_batch_conflicts(
        self,
        sessions: Sequence[Session],
        context: Optional[DetectionContext] = None,
        parallel: bool = False,
        max_concurrency: Optional[int] = None,
    ) -> Dict[str, List[Conflict]]:
        if context is None:
            context = self._context_for_sessions(sessions)
        return self.detector.detect_batch(sessions, context, parallel=parallel, max_concurrency=max_concurrency)

    def suggest_alternatives(self, session: Session, context: Optional[DetectionContext] = None):
        """Other times first, then the same time with another therapist or room."""
        if context is None:
            context = self._context_for_sessions([session], all_owners=True)
        conflicts = self.detector.detect(session, context)
        return self.detector.generate_resolution_suggestions(
            conflicts, session, context, include_other_owners=True
        )

    # --- Optimization ---

    def execute_optimization_rules(
        self,
        sessions: List[Session],
        request: SchedulingRequest,
        context: Optional[DetectionContext] = None,
    ) -> OptimizationResult:
        if context is None:
            owners = [request.therapist_id] + ([request.resource_id] if request.resource_id else [])
            context = self.build_context(owners, request.date_range, request.constraints)
            # The set under optimization must not collide with its own stored copies
            ids = {s.id for s in sessions}
            context = context.with_sessions([s for s in context.existing_sessions if s.id not in ids])
        rule_order = self._retry("fetch_optimization_rules", self.data_source.fetch_optimization_rules)
        return self.rule_engine.execute(sessions, request, context, rule_order)

    def get_rule_statistics(self, rule_id: Optional[str] = None) -> Dict:
        return self.rule_engine.get_rule_statistics(rule_id)

    # --- Bulk operations ---

    def execute_bulk_reschedule(
        self,
        request: Union[BulkReschedulingRequest, Mapping[str, Any]],
        on_progress: Optional[ProgressCallback] = None,
    ) -> OperationSnapshot:
        if not isinstance(request, BulkReschedulingRequest):
            try:
                request = BulkReschedulingRequest.model_validate(request)
            except ValidationError as exc:
                raise ClientError(
                    "Invalid bulk rescheduling request",
                    details={"errors": _validation_messages(exc)},
                ) from exc
        return self.bulk.execute_bulk_reschedule(request, on_progress=on_progress)

    def get_operation_status(self, op_id: str) -> OperationSnapshot:
        return self.bulk.get_operation_status(op_id)

    def cancel_operation(self, op_id: str) -> OperationSnapshot:
        return self.bulk.cancel_operation(op_id)

    def rollback_operation(self, op_id: str) -> RollbackReport:
        return self.bulk.rollback_operation(op_id)

    def subscribe_operation(self, op_id: str, callback: ProgressCallback) -> None:
        self.tracker.subscribe(op_id, callback)

    def wait_for_operation(self, op_id: str, timeout: Optional[float] = None) -> OperationSnapshot:
        return self.bulk.wait(op_id, timeout)

    def shutdown(self) -> None:
        self.bulk.shutdown()
