"""
Conflict Detection Logic.

This module answers the question: "What is wrong with Session X at Time Y?"
It enforces physical reality (a therapist cannot be in two places at once),
resource limits (a room holds N sessions), and availability (nobody works
outside their slots). Soft limits are reported as warnings.

Everything here is a pure function of its inputs: the caller supplies the
calendar slice and availability, nothing is fetched, nothing is mutated.
"""

import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from therapy_models import (
    Conflict,
    ConflictSeverity,
    ConflictType,
    OwnerType,
    SchedulingConstraints,
    Session,
    Suggestion,
    time_from_minutes,
)

from .availability_index import AvailabilityIndex
from .config import Settings, get_settings
from .errors import ClientError, InvariantViolation

logger = logging.getLogger(__name__)

TYPE_ORDER = {
    ConflictType.TIME_OVERLAP: 0,
    ConflictType.RESOURCE_OVERCOMMIT: 1,
    ConflictType.AVAILABILITY_VIOLATION: 2,
    ConflictType.CONSTRAINT_VIOLATION: 3,
}


@dataclass(frozen=True)
class DetectionContext:
    """Calendar slice + availability the detector evaluates against."""
    existing_sessions: Sequence[Session]
    availability: AvailabilityIndex
    constraints: Optional[SchedulingConstraints] = None

    def with_sessions(self, sessions: Sequence[Session]) -> "DetectionContext":
        return replace(self, existing_sessions=list(sessions))


def partition_independent(
    items: Sequence[Session],
    owners_of: Callable[[Session], Iterable[str]] = lambda s: s.owner_ids(),
) -> List[List[Session]]:
    """
    Split sessions into groups that share no therapist/resource, transitively.
    Groups keep submission order internally and are ordered by their first member.
    """
    parent = list(range(len(items)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    first_by_owner: Dict[str, int] = {}
    for idx, item in enumerate(items):
        for owner in owners_of(item):
            if owner in first_by_owner:
                root_a, root_b = find(idx), find(first_by_owner[owner])
                if root_a != root_b:
                    parent[max(root_a, root_b)] = min(root_a, root_b)
            else:
                first_by_owner[owner] = idx

    groups: Dict[int, List[Session]] = defaultdict(list)
    for idx, item in enumerate(items):
        groups[find(idx)].append(item)
    return [groups[root] for root in sorted(groups)]


class ConflictDetector:
    """
    Validates sessions against the calendar and availability.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    # --- Single session ---

    def detect(self, candidate: Session, context: DetectionContext) -> List[Conflict]:
        """
        Master validation function. Returns [] if the placement is clean.
        """
        if not candidate.is_placed:
            raise InvariantViolation(
                f"Session {candidate.id} has no date/time window to evaluate",
                details={"session_id": candidate.id},
            )

        # Only sessions that still hold calendar time on the same day matter
        same_day = [
            s for s in context.existing_sessions
            if s.id != candidate.id and s.is_active and s.is_placed and s.date == candidate.date
        ]

        conflicts: List[Conflict] = []

        # 1 + 2. Double booking / capacity (per therapist and per resource)
        for owner_id in candidate.owner_ids():
            conflicts.extend(self._check_owner_load(candidate, owner_id, same_day, context.availability))

        # 3. Availability (must sit inside a slot of every owner)
        conflicts.extend(self._check_availability(candidate, context.availability))

        # 4. Soft limits
        conflicts.extend(self._check_request_constraints(candidate, context.constraints))
        conflicts.extend(self._check_business_hours(candidate))
        conflicts.extend(self._check_rest_gap(candidate, same_day))
        conflicts.extend(self._check_daily_load(candidate, same_day))

        return self._prioritize(conflicts)

    def _check_owner_load(
        self,
        candidate: Session,
        owner_id: str,
        same_day: List[Session],
        availability: AvailabilityIndex,
    ) -> List[Conflict]:
        clashing = [
            s for s in same_day
            if owner_id in s.owner_ids() and s.window.overlaps(candidate.window)
        ]
        if not clashing:
            return []

        slot = availability.containing_slot(owner_id, candidate.date, candidate.window)
        capacity = slot.capacity if slot else 1
        involved = [candidate.id] + sorted(s.id for s in clashing)
        role = "Therapist" if owner_id == candidate.therapist_id else "Resource"

        if capacity == 1:
            return [Conflict(
                type=ConflictType.TIME_OVERLAP,
                severity=ConflictSeverity.BLOCKING,
                session_id=candidate.id,
                involved_session_ids=involved,
                owner_id=owner_id,
                description=(
                    f"{role} {owner_id} is already booked on {candidate.date} "
                    f"{candidate.window} ({', '.join(involved[1:])})"
                ),
            )]

        if len(clashing) >= capacity:
            return [Conflict(
                type=ConflictType.RESOURCE_OVERCOMMIT,
                severity=ConflictSeverity.BLOCKING,
                session_id=candidate.id,
                involved_session_ids=involved,
                owner_id=owner_id,
                description=(
                    f"{role} {owner_id} is full on {candidate.date} {candidate.window} "
                    f"({len(clashing)}/{capacity} concurrent bookings)"
                ),
            )]
        return []

    def _check_availability(self, candidate: Session, availability: AvailabilityIndex) -> List[Conflict]:
        conflicts = []
        for owner_id in candidate.owner_ids():
            if availability.is_available(owner_id, candidate.date, candidate.window):
                continue
            role = "Therapist" if owner_id == candidate.therapist_id else "Resource"
            if availability.slots_for(owner_id, candidate.date):
                reason = f"{role} {owner_id} is not available at {candidate.window} on {candidate.date}"
            else:
                reason = f"{role} {owner_id} has no availability on {candidate.date:%A} {candidate.date}"
            conflicts.append(Conflict(
                type=ConflictType.AVAILABILITY_VIOLATION,
                severity=ConflictSeverity.BLOCKING,
                session_id=candidate.id,
                involved_session_ids=[candidate.id],
                owner_id=owner_id,
                description=reason,
            ))
        return conflicts

    def _check_request_constraints(
        self, candidate: Session, constraints: Optional[SchedulingConstraints]
    ) -> List[Conflict]:
        if constraints is None:
            return []

        reasons = []
        if constraints.earliest_start and candidate.window.start_time < constraints.earliest_start:
            reasons.append(f"starts before {constraints.earliest_start:%H:%M}")
        if constraints.latest_end and candidate.window.end_time > constraints.latest_end:
            reasons.append(f"ends after {constraints.latest_end:%H:%M}")
        if candidate.date.weekday() in constraints.avoid_days:
            reasons.append(f"falls on an avoided day ({candidate.date:%A})")

        return [self._warning(candidate, f"Session {reason}") for reason in reasons]

    def _check_business_hours(self, candidate: Session) -> List[Conflict]:
        opens, closes = self.settings.business_hours_start, self.settings.business_hours_end
        if candidate.window.start_time < opens or candidate.window.end_time > closes:
            return [self._warning(
                candidate,
                f"Session is outside business hours ({opens:%H:%M}-{closes:%H:%M})",
            )]
        return []

    def _check_rest_gap(self, candidate: Session, same_day: List[Session]) -> List[Conflict]:
        """Back-to-back sessions leave the therapist no rest between students."""
        min_gap = self.settings.min_gap_minutes
        if not min_gap:
            return []

        conflicts = []
        for s in same_day:
            if s.therapist_id != candidate.therapist_id:
                continue
            if s.window.end_minutes <= candidate.window.start_minutes:
                gap = candidate.window.start_minutes - s.window.end_minutes
            elif candidate.window.end_minutes <= s.window.start_minutes:
                gap = s.window.start_minutes - candidate.window.end_minutes
            else:
                continue  # Overlap is reported elsewhere
            if gap < min_gap:
                conflicts.append(self._warning(
                    candidate,
                    f"Only {gap} minutes between sessions for {candidate.therapist_id} (minimum {min_gap})",
                    involved=[s.id],
                    owner_id=candidate.therapist_id,
                ))
        return conflicts

    def _check_daily_load(self, candidate: Session, same_day: List[Session]) -> List[Conflict]:
        limit = self.settings.max_sessions_per_day
        booked = [s for s in same_day if s.therapist_id == candidate.therapist_id]
        if len(booked) >= limit:
            return [self._warning(
                candidate,
                f"{candidate.therapist_id} already has {len(booked)} sessions on {candidate.date} (limit {limit})",
                owner_id=candidate.therapist_id,
            )]
        return []

    def _warning(
        self,
        candidate: Session,
        description: str,
        involved: Optional[List[str]] = None,
        owner_id: Optional[str] = None,
    ) -> Conflict:
        return Conflict(
            type=ConflictType.CONSTRAINT_VIOLATION,
            severity=ConflictSeverity.WARNING,
            session_id=candidate.id,
            involved_session_ids=[candidate.id] + sorted(involved or []),
            owner_id=owner_id,
            description=description,
        )

    @staticmethod
    def _prioritize(conflicts: List[Conflict]) -> List[Conflict]:
        return sorted(conflicts, key=lambda c: (
            0 if c.is_blocking else 1,
            TYPE_ORDER[c.type],
            c.owner_id or "",
            c.involved_session_ids,
            c.description,
        ))

    # --- Batches ---

    def detect_batch(
        self,
        candidates: Sequence[Session],
        context: DetectionContext,
        parallel: bool = False,
        max_concurrency: Optional[int] = None,
    ) -> Dict[str, List[Conflict]]:
        """
        Detect conflicts for many candidates against one shared snapshot.

        Tie-break rule: candidates are evaluated in submission order and every
        earlier candidate counts as an existing booking for the later ones, so
        the first-submitted candidate wins a contested slot.
        Candidates without a placement are logged and left out of the result.
        """
        ids = [c.id for c in candidates]
        if len(ids) != len(set(ids)):
            raise ClientError("Batch contains duplicate session ids")

        if not parallel or len(candidates) < 2:
            results = self._detect_group(candidates, context)
        else:
            groups = partition_independent(candidates)
            workers = max_concurrency or self.settings.batch_max_concurrency
            results = {}
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="conflict-batch") as pool:
                for group_result in pool.map(lambda group: self._detect_group(group, context), groups):
                    results.update(group_result)

        return {c.id: results[c.id] for c in candidates if c.id in results}

    def _detect_group(self, group: Sequence[Session], context: DetectionContext) -> Dict[str, List[Conflict]]:
        running = list(context.existing_sessions)
        results: Dict[str, List[Conflict]] = {}
        for candidate in group:
            try:
                results[candidate.id] = self.detect(candidate, context.with_sessions(running))
            except InvariantViolation as exc:
                logger.error(f"Excluding {candidate.id} from batch: {exc}")
                continue
            running.append(candidate)
        return results

    def count_blocking(self, sessions: Sequence[Session], context: DetectionContext) -> int:
        """Blocking conflicts of a session set, each member checked against the rest."""
        total = 0
        for session in sessions:
            if not session.is_placed:
                continue
            others = list(context.existing_sessions) + [s for s in sessions if s.id != session.id]
            total += sum(1 for c in self.detect(session, context.with_sessions(others)) if c.is_blocking)
        return total

    # --- Resolution ---

    def generate_resolution_suggestions(
        self,
        conflicts: Sequence[Conflict],
        session: Session,
        context: DetectionContext,
        earliest_date=None,
        latest_date=None,
        exclude: Iterable[tuple] = (),
        include_other_owners: bool = False,
    ) -> List[Suggestion]:
        """
        Propose alternative placements drawn from the therapist's unused slot capacity.

        Ranked by displacement from the original start (then fewer warnings,
        earlier date, earlier time). Every suggestion is verified to be free
        of blocking conflicts against the same context.
        With `include_other_owners`, same-time moves to another therapist or
        room follow the time-based ones.
        """
        blocking = [c for c in conflicts if c.is_blocking]
        if not blocking or not session.is_placed:
            return []

        resolves = sorted({c.type for c in blocking}, key=lambda t: TYPE_ORDER[t])
        excluded = set(exclude)
        duration = session.window.duration_minutes
        granularity = self.settings.slot_granularity_minutes
        origin = session.start_datetime

        span = timedelta(days=self.settings.suggestion_search_days)
        first_day, last_day = session.date - span, session.date + span
        if earliest_date and earliest_date > first_day:
            first_day = earliest_date
        if latest_date and latest_date < last_day:
            last_day = latest_date

        ranked = []
        day = first_day
        while day <= last_day:
            for slot in context.availability.slots_for(session.therapist_id, day):
                last_start = slot.window.end_minutes - duration
                for start_min in range(slot.window.start_minutes, last_start + 1, granularity):
                    moved = session.moved_to(date=day, start_time=time_from_minutes(start_min))
                    key = moved.placement_key()
                    if key == session.placement_key() or key in excluded:
                        continue
                    found = self.detect(moved, context)
                    if any(c.is_blocking for c in found):
                        continue
                    displacement = int(abs((moved.start_datetime - origin).total_seconds()) // 60)
                    ranked.append((displacement, len(found), moved))
            day += timedelta(days=1)

        ranked.sort(key=lambda r: (r[0], r[1], r[2].date, r[2].window.start_time))
        suggestions = [
            Suggestion(
                session_id=session.id,
                date=moved.date,
                window=moved.window,
                therapist_id=moved.therapist_id,
                resource_id=moved.resource_id,
                displacement_minutes=displacement,
                resolves=resolves,
                reason=f"Free slot {displacement} minutes from the requested time",
            )
            for displacement, _, moved in ranked[:self.settings.max_suggestions]
        ]
        if include_other_owners:
            suggestions.extend(self._owner_alternatives(session, context, resolves))
        return suggestions

    def _owner_alternatives(
        self, session: Session, context: DetectionContext, resolves: List[ConflictType]
    ) -> List[Suggestion]:
        """
        Same date and time with another therapist, or in another room when the
        session books one. Ranked after every time-based suggestion.
        """
        availability = context.availability
        moves = [
            (session.moved_to(therapist_id=owner_id), f"Same time with therapist {owner_id}")
            for owner_id in availability.owners(OwnerType.THERAPIST)
            if owner_id != session.therapist_id
        ]
        if session.resource_id:
            moves.extend(
                (session.moved_to(resource_id=owner_id), f"Same time in {owner_id}")
                for owner_id in availability.owners(OwnerType.RESOURCE)
                if owner_id != session.resource_id
            )

        ranked = []
        for moved, reason in moves:
            found = self.detect(moved, context)
            if any(c.is_blocking for c in found):
                continue
            ranked.append((len(found), moved, reason))
        ranked.sort(key=lambda r: r[0])

        return [
            Suggestion(
                session_id=session.id,
                date=moved.date,
                window=moved.window,
                therapist_id=moved.therapist_id,
                resource_id=moved.resource_id,
                displacement_minutes=0,
                resolves=resolves,
                reason=reason,
            )
            for _, moved, reason in ranked[:self.settings.max_suggestions]
        ]
