"""Tests for the caller-facing service: validation, context loading and commits."""

from __future__ import annotations

from datetime import date, time

import pytest

from therapy_models import ConflictType, OperationStatus
from therapy_scheduler import (
    InMemoryDataSource,
    OperationNotFound,
    ScheduleOutcome,
    SchedulingService,
    TransientCollaboratorError,
)

from factories import MONDAY, fast_settings, make_request, make_session, seed_slots, weekly_slot


def th_02_request(subscription: str = "sub_001", **overrides):
    values = {
        "subscription_id": subscription,
        "therapist_id": "th_02",
        "preferred_days": [0, 2],
        "preferred_start_time": time(10, 0),
    }
    values.update(overrides)
    return make_request(**values)


# --- Request validation ---

def test_malformed_dict_is_rejected_not_raised(service) -> None:
    result = service.generate_schedule({"subscription_id": "sub_001", "sessions_per_week": 0})

    assert result.outcome == ScheduleOutcome.REJECTED
    assert result.sessions == []
    assert any("therapist_id" in e for e in result.errors)


def test_inverted_date_range_is_rejected(service) -> None:
    result = service.generate_schedule({
        "subscription_id": "sub_001",
        "therapist_id": "th_01",
        "start_date": "2025-02-01",
        "end_date": "2025-01-01",
        "sessions_per_week": 1,
    })

    assert result.outcome == ScheduleOutcome.REJECTED


def test_cadence_that_cannot_fit_preferred_days_is_rejected(service) -> None:
    result = service.generate_schedule(make_request(sessions_per_week=3, preferred_days=[0, 2]))

    assert result.outcome == ScheduleOutcome.REJECTED
    assert "preferred day" in result.errors[0]


# --- Generation against the collaborator ---

def test_generate_without_commit_leaves_calendar_untouched(service, data_source) -> None:
    result = service.generate_schedule(th_02_request())

    assert result.outcome == ScheduleOutcome.SATISFIED
    assert len(result.sessions) == 8
    assert data_source.all_sessions() == []


def test_commit_stores_generated_sessions(service, data_source) -> None:
    result = service.generate_schedule(th_02_request(), commit=True)

    stored = {s.id: s for s in data_source.all_sessions()}
    assert set(stored) == {s.id for s in result.sessions}
    assert all(stored[s.id].date == s.date for s in result.sessions)


def test_second_subscription_works_around_committed_sessions(service, data_source) -> None:
    first = service.generate_schedule(th_02_request("sub_001"), commit=True)
    second = service.generate_schedule(th_02_request("sub_002"), commit=True)

    assert len(second.sessions) == 8
    taken = [(s.date, s.window) for s in first.sessions]
    for session in second.sessions:
        for on_date, window in taken:
            assert not (session.date == on_date and session.window.overlaps(window))
    assert len(data_source.all_sessions()) == 16


def test_rule_order_comes_from_collaborator() -> None:
    data_source = InMemoryDataSource(availability=seed_slots(), rules=[])
    service = SchedulingService(data_source, fast_settings())
    try:
        result = service.generate_schedule(th_02_request())
    finally:
        service.shutdown()

    assert result.applied_rules == []
    assert all(stats["executions"] == 0 for stats in service.get_rule_statistics().values())


def test_transient_outage_is_retried(service, data_source) -> None:
    data_source.inject_failures("fetch_availability", count=2)

    result = service.generate_schedule(th_02_request())

    assert result.outcome == ScheduleOutcome.SATISFIED


def test_persistent_outage_propagates(service, data_source) -> None:
    data_source.inject_failures("fetch_availability", count=3)

    with pytest.raises(TransientCollaboratorError):
        service.generate_schedule(th_02_request())


def test_overlapping_collaborator_slots_are_excluded_not_raised(service, data_source) -> None:
    data_source.add_slots([weekly_slot("th_01", 0, time(9, 30), time(11, 0), slot_id="dup")])

    result = service.generate_schedule(make_request())

    # Monday availability is dropped, Wednesday is all that is left
    assert result.outcome == ScheduleOutcome.PARTIAL
    assert result.sessions
    assert all(s.date.weekday() == 2 for s in result.sessions)
    assert len(result.sessions) + len(result.unresolved_session_ids) == 8


# --- Conflict queries ---

def test_detect_conflicts_loads_its_own_context(service, data_source) -> None:
    data_source.add_sessions([make_session("existing", therapist="th_02")])
    tuesday_th_01 = make_session("candidate", therapist="th_01", on_date=date(2025, 1, 7))
    clash_th_02 = make_session("candidate-2", therapist="th_02")

    assert [c.type for c in service.detect_conflicts(tuesday_th_01)] == [ConflictType.AVAILABILITY_VIOLATION]
    assert [c.type for c in service.detect_conflicts(clash_th_02)] == [ConflictType.TIME_OVERLAP]


def test_suggest_alternatives_for_clash(service, data_source) -> None:
    data_source.add_sessions([make_session("existing", therapist="th_02")])

    suggestions = service.suggest_alternatives(make_session("candidate", therapist="th_02"))

    assert suggestions
    time_moves = [s for s in suggestions if s.therapist_id == "th_02"]
    assert all(not (s.date == MONDAY and s.window.start_time == time(9, 0)) for s in time_moves)
    # Same slot with the other therapist comes last
    other = suggestions[-1]
    assert (other.therapist_id, other.date, other.window.start_time) == ("th_01", MONDAY, time(9, 0))
    assert other.displacement_minutes == 0


def test_optimization_ignores_the_sets_own_stored_copies(service, data_source) -> None:
    result = service.generate_schedule(th_02_request(), commit=True)

    optimized = service.execute_optimization_rules(result.sessions, th_02_request())

    assert [s.id for s in optimized.sessions] == [s.id for s in result.sessions]
    assert optimized.rejected_rules == []


# --- Bulk surface ---

def test_unknown_operation_id(service) -> None:
    with pytest.raises(OperationNotFound):
        service.get_operation_status("op_missing")


def test_bulk_from_dict(service, data_source) -> None:
    data_source.add_sessions([make_session("sub_001-001", therapist="th_02")])

    pending = service.execute_bulk_reschedule({
        "operation_type": "mass_shift",
        "session_ids": ["sub_001-001"],
        "shift_days": 1,
        "reason": "Room maintenance",
    })
    final = service.wait_for_operation(pending.id, timeout=10)

    assert final.status == OperationStatus.COMPLETED
    assert data_source.get_session("sub_001-001").date == date(2025, 1, 7)
