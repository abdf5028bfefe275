"""Tests for collaborator retries and the in-memory collaborator."""

from __future__ import annotations

from datetime import date, time

import pytest

from therapy_models import DateRange
from therapy_scheduler import (
    CollaboratorError,
    InMemoryDataSource,
    SessionFilter,
    TransientCollaboratorError,
    call_with_retry,
)
from therapy_scheduler.collaborators import _retry_delay

from factories import MONDAY, dated_slot, make_session


class Flaky:
    def __init__(self, failures, error_cls=TransientCollaboratorError):
        self.failures = failures
        self.error_cls = error_cls
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error_cls(f"failure {self.calls}")
        return "ok"


def test_succeeds_after_transient_failures() -> None:
    flaky = Flaky(failures=2)

    assert call_with_retry("fetch", flaky, max_attempts=3, backoff_seconds=0) == "ok"
    assert flaky.calls == 3


def test_gives_up_after_max_attempts() -> None:
    flaky = Flaky(failures=5)

    with pytest.raises(TransientCollaboratorError):
        call_with_retry("fetch", flaky, max_attempts=3, backoff_seconds=0)
    assert flaky.calls == 3


def test_permanent_errors_are_not_retried() -> None:
    flaky = Flaky(failures=1, error_cls=CollaboratorError)

    with pytest.raises(CollaboratorError):
        call_with_retry("commit", flaky, max_attempts=3, backoff_seconds=0)
    assert flaky.calls == 1


def test_backoff_grows_exponentially() -> None:
    assert 0.1 <= _retry_delay(1, 0.1) < 0.11
    assert 0.4 <= _retry_delay(3, 0.1) < 0.42
    assert _retry_delay(2, 0) == 0


# --- InMemoryDataSource ---

def test_filter_by_owner_and_date() -> None:
    source = InMemoryDataSource(sessions=[
        make_session("a", therapist="th_01"),
        make_session("b", therapist="th_02", resource="room_a"),
        make_session("c", therapist="th_02", on_date=date(2025, 1, 7)),
    ])

    found = source.fetch_existing_sessions(SessionFilter(
        owner_ids=["room_a", "th_01"],
        date_range=DateRange(start_date=MONDAY, end_date=MONDAY),
    ))

    assert sorted(s.id for s in found) == ["a", "b"]


def test_dated_slots_outside_range_are_not_returned() -> None:
    source = InMemoryDataSource(availability=[
        dated_slot("th_01", MONDAY, time(9, 0), time(10, 0)),
        dated_slot("th_01", date(2025, 3, 3), time(9, 0), time(10, 0)),
    ])

    slots = source.fetch_availability(["th_01"], DateRange(start_date=MONDAY, end_date=date(2025, 1, 31)))

    assert [s.window.specific_date for s in slots] == [MONDAY]


def test_stale_write_is_refused() -> None:
    stored = make_session("a", therapist="th_01")
    source = InMemoryDataSource(sessions=[stored])
    source.add_sessions([stored.moved_to(date=date(2025, 1, 8))])

    with pytest.raises(CollaboratorError) as exc_info:
        source.commit_session_change(stored.moved_to(date=date(2025, 1, 13)), stored)
    assert exc_info.value.code == "stale_write"


def test_injected_failures_are_consumed_in_order() -> None:
    source = InMemoryDataSource()
    source.inject_failures("fetch_optimization_rules", count=1)

    with pytest.raises(TransientCollaboratorError):
        source.fetch_optimization_rules()
    assert source.fetch_optimization_rules()
