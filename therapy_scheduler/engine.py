"""
The Schedule Generation Engine.

Turns a subscription's cadence ("2 sessions/week, 8 weeks, therapist X")
into concrete sessions:
1. Cadence Expansion - sessions/week x date range -> dated candidates.
2. Conflict-Guided Placement - each candidate is checked and, when blocked,
   retried with the best resolution suggestion (bounded).
3. Optimization - the accepted set is handed to the rule engine.

Scheduling impossibility is never an exception: blocked candidates are
reported as unresolved and the rest of the schedule is still returned.
"""

import logging
from datetime import date as date_type, timedelta
from typing import List, Optional

from therapy_models import (
    Session,
    SessionStatus,
    SchedulingRequest,
    TimeWindow,
    add_minutes,
)

from .availability_index import AvailabilityIndex
from .config import Settings, get_settings
from .conflicts import ConflictDetector, DetectionContext
from .errors import ClientError
from .rules import OptimizationRuleEngine
from .state import GenerationResult, GenerationState, PlacementAttempt, ScheduleOutcome

logger = logging.getLogger(__name__)


class ScheduleGenerator:
    """
    Main scheduling engine.
    Ingests Demand (SchedulingRequest) and Supply (availability + calendar), outputs Sessions.
    """

    def __init__(
        self,
        detector: Optional[ConflictDetector] = None,
        rule_engine: Optional[OptimizationRuleEngine] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.detector = detector or ConflictDetector(self.settings)
        self.rule_engine = rule_engine or OptimizationRuleEngine(self.detector, self.settings)

    def validate_request(self, request: SchedulingRequest) -> None:
        """Semantic checks pydantic cannot express on a single field."""
        duration = request.session_duration_minutes
        for label, start in (("preferred_start_time", request.preferred_start_time),
                             ("earliest_start", request.constraints.earliest_start)):
            if start is not None and start.hour * 60 + start.minute + duration >= 24 * 60:
                raise ClientError(
                    f"{label} plus session duration runs past midnight",
                    details={label: str(start), "duration": duration},
                )
        if request.preferred_days and request.sessions_per_week > len(set(request.preferred_days)):
            raise ClientError(
                f"{request.sessions_per_week} sessions/week cannot fit on "
                f"{len(set(request.preferred_days))} preferred day(s)",
                details={"preferred_days": request.preferred_days},
            )

    def run(self, request: SchedulingRequest, context: DetectionContext) -> GenerationState:
        """
        Execute the placement pipeline and return the raw state (no optimization).
        """
        self.validate_request(request)
        logger.info(
            f"Generating schedule for {request.subscription_id}: "
            f"{request.sessions_per_week}/week {request.start_date}..{request.end_date}"
        )

        # 1. Expand Demand
        candidates = self.expand_cadence(request, context.availability)
        if not candidates:
            raise ClientError(
                "Date range contains no day matching the requested cadence",
                details={"start_date": str(request.start_date), "end_date": str(request.end_date)},
            )

        # 2. Place each candidate in date order; accepted ones become 'existing'
        state = GenerationState()
        base = DetectionContext(
            existing_sessions=list(context.existing_sessions),
            availability=context.availability,
            constraints=request.constraints,
        )
        running = list(base.existing_sessions)
        for candidate in candidates:
            attempt = self.place_candidate(
                candidate, base.with_sessions(running), request.start_date, request.end_date
            )
            if attempt.placed:
                accepted = attempt.session.model_copy(update={"status": SessionStatus.SCHEDULED})
                state.add_booking(accepted, attempt.attempts)
                running.append(accepted)
            else:
                state.record_failure(candidate, attempt.blocking, attempt.attempts)
                logger.warning(
                    f"Could not place {candidate.describe()} after {attempt.attempts} attempt(s): "
                    f"{attempt.blocking[0].description}"
                )
        return state

    def generate(
        self,
        request: SchedulingRequest,
        context: DetectionContext,
        rule_order=None,
    ) -> GenerationResult:
        """
        Full pipeline: placement, then optimization of the accepted set.
        Raises ClientError for malformed requests only.
        """
        state = self.run(request, context)
        base = DetectionContext(
            existing_sessions=list(context.existing_sessions),
            availability=context.availability,
            constraints=request.constraints,
        )

        applied_rules: List[str] = []
        score = 0.0
        if state.accepted:
            optimized = self.rule_engine.execute(state.accepted, request, base, rule_order)
            state.replace_sessions(optimized.sessions)
            applied_rules = optimized.applied_rules
            score = optimized.optimization_score

        warnings = []
        for session in state.accepted:
            others = list(base.existing_sessions) + [s for s in state.accepted if s.id != session.id]
            warnings.extend(
                c for c in self.detector.detect(session, base.with_sessions(others)) if not c.is_blocking
            )

        unresolved = state.unresolved_conflicts()
        outcome = ScheduleOutcome.PARTIAL if state.failed_candidates else ScheduleOutcome.SATISFIED

        stats = state.get_statistics()
        logger.info(
            f"Generated {stats['total_sessions']} session(s) for {request.subscription_id}, "
            f"{stats['failed_count']} unresolved ({outcome.value})"
        )

        return GenerationResult(
            outcome=outcome,
            sessions=list(state.accepted),
            unresolved=unresolved,
            warnings=warnings,
            applied_rules=applied_rules,
            optimization_score=score,
            attempts=state.total_attempts,
            failure_report=state.get_failure_report(),
        )

    def place_candidate(
        self,
        candidate: Session,
        context: DetectionContext,
        earliest_date: Optional[date_type] = None,
        latest_date: Optional[date_type] = None,
    ) -> PlacementAttempt:
        """
        Single-candidate path: detect, and while blocked retry with the top
        untried suggestion (bounded by max_placement_retries).
        """
        session = candidate
        tried = {candidate.placement_key()}
        conflicts = self.detector.detect(session, context)
        attempts = 1

        while any(c.is_blocking for c in conflicts) and attempts <= self.settings.max_placement_retries:
            suggestions = self.detector.generate_resolution_suggestions(
                conflicts, candidate, context,
                earliest_date=earliest_date, latest_date=latest_date, exclude=tried,
            )
            if not suggestions:
                break
            top = suggestions[0]
            session = candidate.moved_to(date=top.date, start_time=top.window.start_time)
            tried.add(session.placement_key())
            conflicts = self.detector.detect(session, context)
            attempts += 1
            logger.debug(f"Retry {attempts - 1} for {candidate.id}: {session.describe()}")

        if any(c.is_blocking for c in conflicts):
            # Report what blocks the requested placement, not the last retry
            return PlacementAttempt(
                session=candidate,
                conflicts=self.detector.detect(candidate, context),
                attempts=attempts,
            )
        return PlacementAttempt(session=session, conflicts=conflicts, attempts=attempts)

    # --- Cadence expansion ---

    def expand_cadence(self, request: SchedulingRequest, availability: AvailabilityIndex) -> List[Session]:
        """
        Flattens the cadence into dated candidates, ordered by date.
        """
        weekdays = self._weekdays_for(request, availability)
        span_days = (request.end_date - request.start_date).days + 1
        weeks = -(-span_days // 7)

        dates: List[date_type] = []
        for week_num in range(weeks):
            week_start = request.start_date + timedelta(weeks=week_num)
            week_dates = []
            for occurrence in range(request.sessions_per_week):
                weekday = weekdays[occurrence % len(weekdays)]
                target = week_start + timedelta(days=(weekday - week_start.weekday()) % 7)
                if target <= request.end_date and target not in week_dates:
                    week_dates.append(target)
            dates.extend(sorted(week_dates))

        if request.total_sessions is not None:
            dates = dates[:request.total_sessions]

        candidates = []
        for sequence, day in enumerate(dates, start=1):
            start = self._start_time_for(request, availability, day)
            candidates.append(Session(
                id=f"{request.subscription_id}-{sequence:03d}",
                subscription_id=request.subscription_id,
                sequence=sequence,
                therapist_id=request.therapist_id,
                resource_id=request.resource_id,
                date=day,
                window=TimeWindow(
                    start_time=start,
                    end_time=add_minutes(start, request.session_duration_minutes),
                ),
                status=SessionStatus.PROPOSED,
            ))
        return candidates

    def _weekdays_for(self, request: SchedulingRequest, availability: AvailabilityIndex) -> List[int]:
        if request.preferred_days:
            return list(request.preferred_days)

        avoid = set(request.constraints.avoid_days)
        available = [d for d in availability.weekdays_for(request.therapist_id) if d not in avoid]
        per_week = request.sessions_per_week
        if not available:
            # Default spread: Mon, Wed, Fri, etc.
            return [(i * 2) % 7 for i in range(per_week)]

        if len(available) >= per_week:
            # Spread evenly across the available days (Mon..Fri, 2/week -> Mon, Wed)
            return [available[(i * len(available)) // per_week] for i in range(per_week)]

        # More sessions than available weekdays: the extra occurrences still go
        # through placement, so whatever cannot be moved ends up unresolved.
        extra = [d for d in range(7) if d not in available and d not in avoid]
        extra += [d for d in range(7) if d in avoid]
        logger.info(
            f"{request.therapist_id} has {len(available)} available weekday(s) "
            f"for {per_week} sessions/week; padding with {extra[:per_week - len(available)]}"
        )
        return available + extra[:per_week - len(available)]

    def _start_time_for(self, request: SchedulingRequest, availability: AvailabilityIndex, day: date_type):
        if request.preferred_start_time is not None:
            return request.preferred_start_time
        fitting = availability.first_fitting_start(
            request.therapist_id, day, request.session_duration_minutes, request.constraints
        )
        if fitting is not None:
            return fitting
        if request.constraints.earliest_start is not None:
            return request.constraints.earliest_start
        return self.settings.default_start_time
