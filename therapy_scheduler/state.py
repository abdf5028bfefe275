"""
Generation State Management.

This module acts as the 'Memory' of a single generation run.
It tracks:
1. Accepted sessions and per-therapist / per-resource usage.
2. Candidates that could not be placed, with the conflicts that blocked them.
3. Reporting (statistics + failure report) for the caller.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date as date_type
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from therapy_models import Conflict, ConflictType, Session


class ScheduleOutcome(str, Enum):
    """Structured verdict of a generation call. Never infer success from 'no exception'."""
    SATISFIED = "satisfied"
    PARTIAL = "partial"
    REJECTED = "rejected"


@dataclass
class PlacementAttempt:
    """Result of the single-candidate path: final placement + what still blocks it."""
    session: Session
    conflicts: List[Conflict] = field(default_factory=list)
    attempts: int = 1

    @property
    def blocking(self) -> List[Conflict]:
        return [c for c in self.conflicts if c.is_blocking]

    @property
    def placed(self) -> bool:
        return not self.blocking


@dataclass
class GenerationResult:
    outcome: ScheduleOutcome
    sessions: List[Session] = field(default_factory=list)
    unresolved: List[Conflict] = field(default_factory=list)
    warnings: List[Conflict] = field(default_factory=list)
    applied_rules: List[str] = field(default_factory=list)
    optimization_score: float = 0.0
    attempts: int = 0
    errors: List[str] = field(default_factory=list)
    failure_report: List[Dict] = field(default_factory=list)

    @classmethod
    def rejected(cls, *errors: str) -> "GenerationResult":
        return cls(outcome=ScheduleOutcome.REJECTED, errors=list(errors))

    @property
    def unresolved_session_ids(self) -> List[str]:
        seen = []
        for conflict in self.unresolved:
            if conflict.session_id not in seen:
                seen.append(conflict.session_id)
        return seen


@dataclass
class CandidateFailure:
    """Record of a candidate that exhausted its retries."""
    session: Session
    attempts: int = 0
    conflicts: List[Conflict] = field(default_factory=list)


class GenerationState:
    """
    Maintains the mutable state of one generation run.
    Tracks bookings, owner usage, and failure logs.
    """

    def __init__(self):
        self.accepted: List[Session] = []

        # Owner indices
        self.therapist_bookings: Dict[str, List[Session]] = defaultdict(list)
        self.resource_bookings: Dict[str, List[Session]] = defaultdict(list)

        self.failed_candidates: Dict[str, CandidateFailure] = {}
        self.total_attempts = 0

    def add_booking(self, session: Session, attempts: int = 1) -> None:
        """Commit an accepted session to the state."""
        self.accepted.append(session)
        self.therapist_bookings[session.therapist_id].append(session)
        if session.resource_id:
            self.resource_bookings[session.resource_id].append(session)
        self.total_attempts += attempts

    def record_failure(self, session: Session, conflicts: List[Conflict], attempts: int) -> None:
        """Log a candidate that could not be placed (aggregated if seen twice)."""
        self.total_attempts += attempts
        if session.id not in self.failed_candidates:
            self.failed_candidates[session.id] = CandidateFailure(
                session=session, attempts=attempts, conflicts=list(conflicts)
            )
        else:
            failure = self.failed_candidates[session.id]
            failure.attempts += attempts
            failure.conflicts.extend(conflicts)

    def replace_sessions(self, sessions: List[Session]) -> None:
        """Swap in an optimized session set and rebuild the indices."""
        attempts = self.total_attempts
        self.accepted = []
        self.therapist_bookings.clear()
        self.resource_bookings.clear()
        for session in sessions:
            self.add_booking(session, attempts=0)
        self.total_attempts = attempts

    # --- Queries ---

    def unresolved_conflicts(self) -> List[Conflict]:
        return [
            c
            for failure in self.failed_candidates.values()
            for c in failure.conflicts
            if c.is_blocking
        ]

    def get_date_range(self) -> Optional[Tuple[date_type, date_type]]:
        if not self.accepted:
            return None
        dates = [s.date for s in self.accepted]
        return min(dates), max(dates)

    # --- Reporting ---

    def get_statistics(self) -> Dict[str, Any]:
        """Summary numbers for logs and the demo report."""
        demanded = len(self.accepted) + len(self.failed_candidates)
        if not self.accepted:
            return {
                "total_sessions": 0,
                "failed_count": len(self.failed_candidates),
                "success_rate": "0.0%",
                "total_attempts": self.total_attempts,
            }

        date_counts = defaultdict(int)
        for s in self.accepted:
            date_counts[s.date] += 1
        busiest_day = max(date_counts.items(), key=lambda x: x[1])

        success_rate = len(self.accepted) / demanded * 100 if demanded else 0.0

        return {
            "total_sessions": len(self.accepted),
            "failed_count": len(self.failed_candidates),
            "success_rate": f"{success_rate:.1f}%",
            "total_attempts": self.total_attempts,
            "date_range": self.get_date_range(),
            "busiest_day": busiest_day,
            "therapist_usage_count": {k: len(v) for k, v in self.therapist_bookings.items()},
            "resource_usage_count": {k: len(v) for k, v in self.resource_bookings.items()},
        }

    def get_failure_report(self) -> List[Dict]:
        """
        Human-readable list of what failed and why, ordered by candidate date.
        """
        report = []
        for session_id, failure in self.failed_candidates.items():
            breakdown: Dict[ConflictType, int] = defaultdict(int)
            for c in failure.conflicts:
                breakdown[c.type] += 1

            latest_reason = failure.conflicts[-1].description if failure.conflicts else "Unknown"
            report.append({
                "session_id": session_id,
                "requested": failure.session.describe(),
                "total_attempts": failure.attempts,
                "primary_failure_cause": max(breakdown, key=breakdown.get).value if breakdown else None,
                "conflict_breakdown": {k.value: v for k, v in breakdown.items()},
                "latest_reason": latest_reason,
                "_date": failure.session.date or date_type.max,
            })

        report.sort(key=lambda x: (x["_date"], x["session_id"]))
        for entry in report:
            del entry["_date"]
        return report
