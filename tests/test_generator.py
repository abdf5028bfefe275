"""Tests for schedule generation: cadence expansion, placement retries and outcomes."""

from __future__ import annotations

from datetime import date, time

import pytest

from therapy_models import ConflictType, SchedulingConstraints, SessionStatus
from therapy_scheduler import (
    ClientError,
    DetectionContext,
    ScheduleGenerator,
    ScheduleOutcome,
)

from factories import MONDAY, fast_settings, make_request, make_session


def assert_no_blocking(detector, sessions, context) -> None:
    assert detector.count_blocking(sessions, context) == 0


# --- Scenario: Mon/Wed-only therapist ---

def test_two_per_week_on_mon_wed_only_therapist(generator, detector, empty_context) -> None:
    result = generator.generate(make_request(), empty_context)

    assert result.outcome == ScheduleOutcome.SATISFIED
    assert result.unresolved == []
    assert len(result.sessions) == 8
    for session in result.sessions:
        assert session.date.weekday() in (0, 2)
        assert session.window.start_time == time(9, 0)
        assert session.window.end_time == time(10, 0)
        assert session.status == SessionStatus.SCHEDULED
    assert [s.id for s in result.sessions] == [f"sub_001-{i:03d}" for i in range(1, 9)]
    assert_no_blocking(detector, result.sessions, empty_context)


def test_generated_sessions_sit_inside_availability(generator, detector, index) -> None:
    existing = [make_session("other-1", therapist="th_02", start=time(9, 0), end=time(11, 0))]
    context = DetectionContext(existing, index)
    request = make_request(therapist_id="th_02", resource_id="room_a", sessions_per_week=3)

    result = generator.generate(request, context)

    assert result.outcome == ScheduleOutcome.SATISFIED
    for session in result.sessions:
        blocking = [
            c for c in detector.detect(session, context.with_sessions(
                existing + [s for s in result.sessions if s.id != session.id]
            ))
            if c.is_blocking
        ]
        assert blocking == []


# --- Partial success ---

def test_blocked_candidates_are_reported_not_raised(generator, index) -> None:
    taken = make_session("other-1", therapist="th_01", on_date=date(2025, 1, 13), subscription="sub_999")
    context = DetectionContext([taken], index)

    result = generator.generate(make_request(), context)

    # Seven free Mon/Wed slots remain for eight requested sessions
    assert result.outcome == ScheduleOutcome.PARTIAL
    assert len(result.sessions) == 7
    assert len(result.unresolved_session_ids) == 1
    assert all(c.is_blocking for c in result.unresolved)
    assert date(2025, 1, 13) not in [s.date for s in result.sessions]


def test_therapist_without_availability_returns_empty_schedule(generator, empty_context) -> None:
    result = generator.generate(make_request(therapist_id="th_99"), empty_context)

    assert result.sessions == []
    assert result.outcome == ScheduleOutcome.PARTIAL
    assert len(result.unresolved_session_ids) == 8
    assert {c.type for c in result.unresolved} == {ConflictType.AVAILABILITY_VIOLATION}


def test_zero_retries_keeps_original_placement(index) -> None:
    generator = ScheduleGenerator(settings=fast_settings(max_placement_retries=0))
    context = DetectionContext([make_session("e1")], index)

    attempt = generator.place_candidate(make_session("c1"), context)

    assert not attempt.placed
    assert attempt.attempts == 1
    assert attempt.session.window.start_time == time(9, 0)


def test_place_candidate_moves_to_top_suggestion(generator, index) -> None:
    context = DetectionContext([make_session("e1")], index)

    attempt = generator.place_candidate(make_session("c1"), context)

    assert attempt.placed
    assert attempt.attempts == 2
    assert (attempt.session.date, attempt.session.window.start_time) == (MONDAY, time(10, 0))


# --- Malformed requests ---

def test_more_sessions_than_preferred_days_is_client_error(generator, empty_context) -> None:
    with pytest.raises(ClientError):
        generator.generate(make_request(preferred_days=[0]), empty_context)


def test_range_without_matching_weekday_is_client_error(generator, empty_context) -> None:
    # Tuesday..Tuesday with Monday-only cadence
    request = make_request(start_date=date(2025, 1, 7), end_date=date(2025, 1, 7),
                           sessions_per_week=1, preferred_days=[0])
    with pytest.raises(ClientError):
        generator.generate(request, empty_context)


def test_session_past_midnight_is_client_error(generator, empty_context) -> None:
    with pytest.raises(ClientError):
        generator.generate(make_request(preferred_start_time=time(23, 30)), empty_context)


# --- Cadence expansion ---

def test_expand_cadence_caps_total_sessions(generator, index) -> None:
    candidates = generator.expand_cadence(make_request(total_sessions=3), index)

    assert [c.date for c in candidates] == [date(2025, 1, 6), date(2025, 1, 8), date(2025, 1, 13)]
    assert [c.sequence for c in candidates] == [1, 2, 3]
    assert all(c.status == SessionStatus.PROPOSED for c in candidates)


def test_expand_cadence_uses_preferences(generator, index) -> None:
    request = make_request(
        therapist_id="th_02", preferred_days=[4, 1], preferred_start_time=time(14, 30),
        session_duration_minutes=45,
    )
    candidates = generator.expand_cadence(request, index)

    assert candidates[0].date == date(2025, 1, 7)
    assert candidates[1].date == date(2025, 1, 10)
    assert str(candidates[0].window) == "14:30-15:15"


def test_expand_cadence_spreads_over_available_days(generator, index) -> None:
    request = make_request(therapist_id="th_02", end_date=date(2025, 1, 12))
    weekdays = [c.date.weekday() for c in generator.expand_cadence(request, index)]
    assert weekdays == [0, 2]


def test_expand_cadence_honours_earliest_start(generator, index) -> None:
    request = make_request(therapist_id="th_02", constraints=SchedulingConstraints(earliest_start=time(13, 0)))
    candidates = generator.expand_cadence(request, index)
    assert {c.window.start_time for c in candidates} == {time(13, 0)}


def test_default_start_when_therapist_has_no_slots(generator, index, settings) -> None:
    candidates = generator.expand_cadence(make_request(therapist_id="th_99"), index)
    assert [c.date.weekday() for c in candidates[:2]] == [0, 2]
    assert candidates[0].window.start_time == settings.default_start_time


# --- Reporting ---

def test_state_reports_failures(generator, index) -> None:
    taken = make_session("other-1", therapist="th_01", on_date=date(2025, 1, 13), subscription="sub_999")
    state = generator.run(make_request(), DetectionContext([taken], index))

    stats = state.get_statistics()
    assert stats["total_sessions"] == 7
    assert stats["failed_count"] == 1

    report = state.get_failure_report()
    assert len(report) == 1
    assert report[0]["primary_failure_cause"] == ConflictType.TIME_OVERLAP.value


def test_result_carries_failure_report(generator, index) -> None:
    taken = make_session("other-1", therapist="th_01", on_date=date(2025, 1, 13), subscription="sub_999")

    result = generator.generate(make_request(), DetectionContext([taken], index))

    assert [entry["session_id"] for entry in result.failure_report] == result.unresolved_session_ids
    assert result.failure_report[0]["primary_failure_cause"] == ConflictType.TIME_OVERLAP.value


# --- Cadence beyond availability ---

def test_cadence_wider_than_availability_keeps_every_occurrence(generator, index) -> None:
    candidates = generator.expand_cadence(make_request(sessions_per_week=3), index)

    assert len(candidates) == 12
    assert [c.date.weekday() for c in candidates[:3]] == [0, 1, 2]


def test_occurrences_without_room_are_unresolved(generator, empty_context) -> None:
    result = generator.generate(make_request(sessions_per_week=3), empty_context)

    assert result.outcome == ScheduleOutcome.PARTIAL
    assert len(result.sessions) == 8
    assert len(result.unresolved_session_ids) == 4
    assert {s.date.weekday() for s in result.sessions} == {0, 2}
