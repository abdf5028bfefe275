"""Tests for the optimization rule engine and the session scorer."""

from __future__ import annotations

from datetime import date, time

from therapy_scheduler import DetectionContext, OptimizationRuleEngine, Proposal, RuleId
from therapy_scheduler import rules as rules_module
from therapy_scheduler.rules import OptimizationRule
from therapy_scheduler.scoring import SessionScorer

from factories import MONDAY, make_request, make_session


def th02_request(**overrides):
    return make_request(therapist_id="th_02", **overrides)


# --- Individual rules ---

def test_consistent_time_of_day_aligns_outlier(rule_engine, empty_context) -> None:
    sessions = [
        make_session("s1", on_date=MONDAY),
        make_session("s2", on_date=date(2025, 1, 13)),
        make_session("s3", on_date=date(2025, 1, 8), start=time(14, 0), end=time(15, 0)),
    ]

    result = rule_engine.execute(sessions, th02_request(), empty_context, ["consistent_time_of_day"])

    assert result.applied_rules == ["consistent_time_of_day"]
    assert {s.window.start_time for s in result.sessions} == {time(9, 0)}
    assert [s.id for s in result.sessions] == ["s1", "s2", "s3"]


def test_prefer_requested_days_moves_within_week(rule_engine, empty_context) -> None:
    sessions = [make_session("s1", on_date=date(2025, 1, 7))]

    result = rule_engine.execute(
        sessions, th02_request(preferred_days=[0], sessions_per_week=1), empty_context, ["prefer_requested_days"]
    )

    assert result.sessions[0].date == MONDAY


def test_prefer_requested_time_skips_blocked_moves(rule_engine, index) -> None:
    blocker = make_session("other", start=time(11, 0), end=time(12, 0), subscription="sub_999")
    sessions = [
        make_session("s1", on_date=MONDAY, start=time(14, 0), end=time(15, 0)),
        make_session("s2", on_date=date(2025, 1, 8), start=time(14, 0), end=time(15, 0)),
    ]
    context = DetectionContext([blocker], index)

    result = rule_engine.execute(
        sessions, th02_request(preferred_start_time=time(11, 0)), context, ["prefer_requested_time"]
    )

    by_id = {s.id: s for s in result.sessions}
    assert by_id["s1"].window.start_time == time(14, 0)
    assert by_id["s2"].window.start_time == time(11, 0)


def test_minimize_gaps_pulls_session_forward(rule_engine, empty_context, settings) -> None:
    sessions = [
        make_session("s1", start=time(9, 0), end=time(10, 0)),
        make_session("s2", start=time(13, 0), end=time(14, 0)),
    ]

    result = rule_engine.execute(sessions, th02_request(), empty_context, ["minimize_therapist_gaps"])

    moved = {s.id: s for s in result.sessions}["s2"]
    assert moved.window.start_time == time(10, 15)
    assert moved.window.duration_minutes == 60


# --- Engine guarantees ---

class CollidingRule(OptimizationRule):
    """Moves every session onto the first one's slot."""

    def apply(self, sessions, request, context):
        anchor = sessions[0]
        return Proposal({
            s.id: s.moved_to(date=anchor.date, start_time=anchor.window.start_time)
            for s in sessions[1:]
        })


def test_proposal_that_adds_blocking_conflicts_is_discarded(rule_engine, empty_context, monkeypatch) -> None:
    monkeypatch.setitem(rules_module._RULES, RuleId.PREFER_REQUESTED_TIME, CollidingRule)
    sessions = [make_session("s1"), make_session("s2", on_date=date(2025, 1, 8))]

    result = rule_engine.execute(sessions, th02_request(), empty_context, ["prefer_requested_time"])

    assert result.sessions == sessions
    assert result.applied_rules == []
    assert result.rejected_rules == ["prefer_requested_time"]
    assert rule_engine.get_rule_statistics("prefer_requested_time")["failures"] == 1


def test_rules_never_increase_blocking_count(rule_engine, detector, index) -> None:
    existing = [make_session("busy", start=time(10, 0), end=time(11, 0), subscription="sub_999")]
    context = DetectionContext(existing, index)
    sessions = [
        make_session("s1", start=time(12, 0), end=time(13, 0)),
        make_session("s2", on_date=date(2025, 1, 7), start=time(10, 0), end=time(11, 0)),
        make_session("s3", on_date=date(2025, 1, 8), start=time(15, 0), end=time(16, 0)),
    ]
    before = detector.count_blocking(sessions, context)

    result = rule_engine.execute(
        sessions, th02_request(preferred_days=[0, 2], preferred_start_time=time(10, 0)), context
    )

    assert detector.count_blocking(result.sessions, context) <= before


def test_unknown_rule_names_are_skipped(rule_engine) -> None:
    order = rule_engine.resolve_order(["consistent_time_of_day", "round_robin", "consistent_time_of_day"])
    assert order == [RuleId.CONSISTENT_TIME_OF_DAY]


def test_statistics_track_executions(rule_engine, empty_context) -> None:
    sessions = [make_session("s1")]
    for _ in range(2):
        rule_engine.execute(sessions, th02_request(), empty_context)

    stats = rule_engine.get_rule_statistics()
    assert set(stats) == {r.value for r in RuleId}
    for entry in stats.values():
        assert entry["executions"] == 2
        assert entry["no_ops"] == 2
        assert entry["average_duration_ms"] >= 0


def test_rule_order_defaults_to_settings(detector, settings) -> None:
    engine = OptimizationRuleEngine(detector, settings)
    assert [r.value for r in engine.resolve_order()] == settings.optimization_rules


# --- Scoring ---

def test_scorer_prefers_consistent_schedules() -> None:
    scorer = SessionScorer()
    steady = [make_session(f"s{i}", on_date=date(2025, 1, 6 + 7 * i)) for i in range(3)]
    scattered = [
        make_session("s0", on_date=MONDAY, start=time(9, 0), end=time(10, 0)),
        make_session("s1", on_date=date(2025, 1, 13), start=time(12, 0), end=time(13, 0)),
        make_session("s2", on_date=date(2025, 1, 20), start=time(15, 0), end=time(16, 0)),
    ]

    assert scorer.score(steady) > scorer.score(scattered)
    assert scorer.score([]) == 0.0
    assert 0.0 <= scorer.score(scattered) <= 100.0
