"""
Optimization Rule Engine.

Once hard constraints are satisfied, rules nudge placements toward soft
preferences (requested days/times, a steady weekly rhythm, compact therapist
days). Rules are a closed set: each `RuleId` maps to one statically
registered implementation, and the order they run in is configuration.

Safety net: a proposal that raises the blocking-conflict count of the
session set is discarded, so rules can only improve or hold the schedule.
"""

import logging
import threading
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Type, Union

from therapy_models import SchedulingRequest, Session, time_from_minutes

from .config import Settings, get_settings
from .conflicts import ConflictDetector, DetectionContext
from .errors import InvariantViolation
from .scoring import SessionScorer

logger = logging.getLogger(__name__)


class RuleId(str, Enum):
    PREFER_REQUESTED_DAYS = "prefer_requested_days"
    PREFER_REQUESTED_TIME = "prefer_requested_time"
    CONSISTENT_TIME_OF_DAY = "consistent_time_of_day"
    MINIMIZE_THERAPIST_GAPS = "minimize_therapist_gaps"


@dataclass
class Proposal:
    """Modified placements keyed by session id. Empty means 'nothing to do'."""
    changes: Dict[str, Session] = field(default_factory=dict)
    note: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.changes


@dataclass
class OptimizationResult:
    sessions: List[Session]
    applied_rules: List[str] = field(default_factory=list)
    rejected_rules: List[str] = field(default_factory=list)
    optimization_score: float = 0.0


@dataclass
class RuleStatistics:
    executions: int = 0
    successes: int = 0
    failures: int = 0
    no_ops: int = 0
    total_duration_ms: float = 0.0

    @property
    def average_duration_ms(self) -> float:
        return self.total_duration_ms / self.executions if self.executions else 0.0

    def to_dict(self) -> Dict[str, Union[int, float]]:
        return {
            "executions": self.executions,
            "successes": self.successes,
            "failures": self.failures,
            "no_ops": self.no_ops,
            "average_duration_ms": round(self.average_duration_ms, 3),
        }


class OptimizationRule:
    """Base class: `apply` inspects the set and proposes changes, never mutates."""

    rule_id: RuleId

    def __init__(self, detector: ConflictDetector):
        self.detector = detector
        self.settings = detector.settings

    def apply(self, sessions: List[Session], request: SchedulingRequest, context: DetectionContext) -> Proposal:
        raise NotImplementedError

    def _fits(self, moved: Session, sessions: List[Session], changes: Dict[str, Session], context: DetectionContext) -> bool:
        """True when `moved` is blocking-free against the set (with earlier changes applied)."""
        others = list(context.existing_sessions) + [
            changes.get(s.id, s) for s in sessions if s.id != moved.id
        ]
        found = self.detector.detect(moved, context.with_sessions(others))
        return not any(c.is_blocking for c in found)


_RULES: Dict[RuleId, Type[OptimizationRule]] = {}


def register_rule(rule_id: RuleId):
    def decorator(cls: Type[OptimizationRule]) -> Type[OptimizationRule]:
        cls.rule_id = rule_id
        _RULES[rule_id] = cls
        return cls
    return decorator


def registered_rules() -> List[RuleId]:
    return list(_RULES)


@register_rule(RuleId.PREFER_REQUESTED_DAYS)
class PreferRequestedDays(OptimizationRule):
    """Move sessions that landed off a preferred weekday back onto one, within the same week."""

    def apply(self, sessions, request, context):
        if not request.preferred_days:
            return Proposal()

        changes: Dict[str, Session] = {}
        for session in sessions:
            if not session.is_placed or session.date.weekday() in request.preferred_days:
                continue
            week_index = (session.date - request.start_date).days // 7
            week_start = request.start_date + timedelta(weeks=week_index)
            for weekday in request.preferred_days:
                target = week_start + timedelta(days=(weekday - week_start.weekday()) % 7)
                if not request.date_range.contains(target):
                    continue
                moved = session.moved_to(date=target)
                if self._fits(moved, sessions, changes, context):
                    changes[session.id] = moved
                    break
        return Proposal(changes, note=f"{len(changes)} session(s) moved onto preferred days")


@register_rule(RuleId.PREFER_REQUESTED_TIME)
class PreferRequestedTime(OptimizationRule):
    """Pull sessions back to the requested start time on their current date."""

    def apply(self, sessions, request, context):
        preferred = request.preferred_start_time
        if preferred is None:
            return Proposal()

        changes: Dict[str, Session] = {}
        for session in sessions:
            if not session.is_placed or session.window.start_time == preferred:
                continue
            moved = session.moved_to(start_time=preferred)
            if moved.window.duration_minutes != session.window.duration_minutes:
                continue
            if self._fits(moved, sessions, changes, context):
                changes[session.id] = moved
        return Proposal(changes, note=f"{len(changes)} session(s) moved to {preferred:%H:%M}")


@register_rule(RuleId.CONSISTENT_TIME_OF_DAY)
class ConsistentTimeOfDay(OptimizationRule):
    """Align every session of the set with the dominant start time."""

    def apply(self, sessions, request, context):
        placed = [s for s in sessions if s.is_placed]
        if len(placed) < 2:
            return Proposal()

        counts = Counter(s.window.start_time for s in placed)
        dominant = min(counts, key=lambda t: (-counts[t], t))

        changes: Dict[str, Session] = {}
        for session in placed:
            if session.window.start_time == dominant:
                continue
            moved = session.moved_to(start_time=dominant)
            if moved.window.duration_minutes != session.window.duration_minutes:
                continue
            if self._fits(moved, sessions, changes, context):
                changes[session.id] = moved
        return Proposal(changes, note=f"{len(changes)} session(s) aligned to {dominant:%H:%M}")


@register_rule(RuleId.MINIMIZE_THERAPIST_GAPS)
class MinimizeTherapistGaps(OptimizationRule):
    """
    Close idle gaps longer than `max_gap_minutes` between a therapist's sessions
    on the same day, leaving the minimum rest gap in place.
    """

    def apply(self, sessions, request, context):
        ours = {s.id for s in sessions if s.is_placed}
        granularity = self.settings.slot_granularity_minutes
        max_gap = self.settings.max_gap_minutes
        min_gap = self.settings.min_gap_minutes

        day_lines: Dict[tuple, List[Session]] = defaultdict(list)
        for s in list(context.existing_sessions) + [s for s in sessions if s.is_placed]:
            if s.is_active and s.is_placed:
                day_lines[(s.therapist_id, s.date)].append(s)

        changes: Dict[str, Session] = {}
        for key in sorted(day_lines, key=lambda k: (k[1], k[0])):
            line = sorted(day_lines[key], key=lambda s: s.window.start_minutes)
            for prev, nxt in zip(line, line[1:]):
                prev = changes.get(prev.id, prev)
                if nxt.id not in ours:
                    continue
                gap = nxt.window.start_minutes - prev.window.end_minutes
                if gap <= max_gap:
                    continue
                target = prev.window.end_minutes + min_gap
                target = -(-target // granularity) * granularity
                if target >= nxt.window.start_minutes or target + nxt.window.duration_minutes > 24 * 60 - 1:
                    continue
                moved = nxt.moved_to(start_time=time_from_minutes(target))
                if self._fits(moved, sessions, changes, context):
                    changes[nxt.id] = moved
        return Proposal(changes, note=f"{len(changes)} gap(s) closed")


class OptimizationRuleEngine:
    """
    Runs the configured rules in order and keeps per-rule statistics.
    """

    def __init__(
        self,
        detector: Optional[ConflictDetector] = None,
        settings: Optional[Settings] = None,
        rule_order: Optional[Iterable[str]] = None,
    ):
        self.settings = settings or get_settings()
        self.detector = detector or ConflictDetector(self.settings)
        self.rule_order = list(rule_order) if rule_order is not None else list(self.settings.optimization_rules)
        self.scorer = SessionScorer(self.settings.min_gap_minutes, self.settings.max_gap_minutes)
        self._stats: Dict[RuleId, RuleStatistics] = {rule_id: RuleStatistics() for rule_id in RuleId}
        self._lock = threading.Lock()

    def resolve_order(self, rule_order: Optional[Iterable[str]] = None) -> List[RuleId]:
        """Map configured names to RuleIds. Unknown or duplicate names are skipped."""
        resolved: List[RuleId] = []
        for name in (rule_order if rule_order is not None else self.rule_order):
            try:
                rule_id = RuleId(name)
            except ValueError:
                logger.warning(f"Unknown optimization rule '{name}' skipped")
                continue
            if rule_id not in _RULES or rule_id in resolved:
                continue
            resolved.append(rule_id)
        return resolved

    def execute(
        self,
        sessions: List[Session],
        request: SchedulingRequest,
        context: DetectionContext,
        rule_order: Optional[Iterable[str]] = None,
    ) -> OptimizationResult:
        current = list(sessions)
        baseline = self.detector.count_blocking(current, context)
        applied: List[str] = []
        rejected: List[str] = []

        for rule_id in self.resolve_order(rule_order):
            rule = _RULES[rule_id](self.detector)
            started = time.perf_counter()
            try:
                proposal = rule.apply(current, request, context)
            except InvariantViolation as exc:
                self._record(rule_id, started, failure=True)
                logger.error(f"Rule {rule_id.value} aborted: {exc}")
                rejected.append(rule_id.value)
                continue

            if proposal.is_empty:
                self._record(rule_id, started, no_op=True)
                continue

            candidate = [proposal.changes.get(s.id, s) for s in current]
            after = self.detector.count_blocking(candidate, context)
            if after > baseline:
                self._record(rule_id, started, failure=True)
                logger.warning(
                    f"Discarded proposal of {rule_id.value}: blocking conflicts {baseline} -> {after}"
                )
                rejected.append(rule_id.value)
                continue

            current, baseline = candidate, after
            self._record(rule_id, started)
            applied.append(rule_id.value)
            logger.info(f"Applied {rule_id.value}: {proposal.note}")

        return OptimizationResult(
            sessions=current,
            applied_rules=applied,
            rejected_rules=rejected,
            optimization_score=self.scorer.score(current, request),
        )

    def _record(self, rule_id: RuleId, started: float, failure: bool = False, no_op: bool = False) -> None:
        elapsed_ms = (time.perf_counter() - started) * 1000
        with self._lock:
            stats = self._stats[rule_id]
            stats.executions += 1
            stats.total_duration_ms += elapsed_ms
            if failure:
                stats.failures += 1
            elif no_op:
                stats.no_ops += 1
            else:
                stats.successes += 1

    def get_rule_statistics(self, rule_id: Optional[Union[RuleId, str]] = None) -> Dict:
        with self._lock:
            if rule_id is not None:
                return self._stats[RuleId(rule_id)].to_dict()
            return {rid.value: stats.to_dict() for rid, stats in self._stats.items()}
