"""
Heuristic Scoring for session sets.

Hard constraints are binary (the Conflict Detector says yes/no). This module
provides a gradient (0.0 - 100.0) describing how 'human-friendly' an
accepted schedule is, so that optimization results can be compared.
"""

from collections import Counter, defaultdict
from typing import Dict, List, Optional

from therapy_models import SchedulingRequest, Session


class SessionScorer:
    """
    Evaluates a set of placed sessions against soft preferences
    (consistent times, requested days, breathing room for the therapist).
    """

    def __init__(self, min_gap_minutes: int = 15, max_gap_minutes: int = 60):
        self.min_gap_minutes = min_gap_minutes
        self.max_gap_minutes = max_gap_minutes

    def score(self, sessions: List[Session], request: Optional[SchedulingRequest] = None) -> float:
        """
        Master scoring function. Returns 0-100.
        """
        placed = [s for s in sessions if s.is_placed]
        if not placed:
            return 0.0

        score = 50.0  # Base score

        # 1. Time-of-day consistency (+/- 20)
        score += self._score_time_consistency(placed)

        # 2. Requested weekdays (+/- 15)
        score += self._score_requested_days(placed, request)

        # 3. Buffer zones between a therapist's sessions (+/- 15)
        score += self._score_buffer_zones(placed)

        return round(max(0.0, min(100.0, score)), 1)

    def _score_time_consistency(self, sessions: List[Session]) -> float:
        """Students do better with a fixed weekly rhythm: reward one dominant start time."""
        starts = Counter(s.window.start_time for s in sessions)
        _, dominant = starts.most_common(1)[0]
        share = dominant / len(sessions)
        # share 1.0 -> +20, share 0.5 -> 0, lower -> penalty
        return (share - 0.5) * 40.0

    def _score_requested_days(self, sessions: List[Session], request: Optional[SchedulingRequest]) -> float:
        if not request or not request.preferred_days:
            return 0.0
        hits = sum(1 for s in sessions if s.date.weekday() in request.preferred_days)
        return (hits / len(sessions)) * 30.0 - 15.0

    def _score_buffer_zones(self, sessions: List[Session]) -> float:
        """
        Scores the gaps between consecutive sessions of the same therapist on the same day.

        - below min gap:   Penalty (no rest, delays cascade).
        - min..max gap:    Reward (ideal buffer).
        - beyond max gap:  Small penalty (fragmented dead time).
        """
        by_day: Dict[tuple, List[Session]] = defaultdict(list)
        for s in sessions:
            by_day[(s.therapist_id, s.date)].append(s)

        gap_scores = []
        for day_sessions in by_day.values():
            day_sessions.sort(key=lambda s: s.window.start_minutes)
            for prev, nxt in zip(day_sessions, day_sessions[1:]):
                gap = nxt.window.start_minutes - prev.window.end_minutes
                if gap < self.min_gap_minutes:
                    gap_scores.append(-15.0)
                elif gap <= self.max_gap_minutes:
                    gap_scores.append(15.0)
                else:
                    gap_scores.append(-5.0)

        if not gap_scores:
            return 15.0  # No same-day neighbours: maximally relaxed
        return sum(gap_scores) / len(gap_scores)
