"""Tests for the per-owner availability index."""

from __future__ import annotations

import logging
from datetime import date, time

from therapy_models import OwnerType, SchedulingConstraints, TimeWindow
from therapy_scheduler import AvailabilityIndex

from factories import MONDAY, dated_slot, weekly_slot


def test_overlapping_slots_of_same_owner_are_excluded(caplog) -> None:
    with caplog.at_level(logging.ERROR, logger="therapy_scheduler.availability_index"):
        index = AvailabilityIndex([
            weekly_slot("th_01", 0, time(9, 0), time(11, 0)),
            weekly_slot("th_01", 0, time(10, 0), time(12, 0)),
            weekly_slot("th_01", 2, time(9, 0), time(10, 0)),
        ])

    assert index.slots_for("th_01", MONDAY) == []
    assert [s.id for s in index.excluded_slots] == ["th_01-0-0900", "th_01-0-1000"]
    assert index.weekdays_for("th_01") == [2]
    assert "overlap" in caplog.text


def test_owner_with_only_overlapping_slots_drops_out() -> None:
    index = AvailabilityIndex([
        weekly_slot("th_01", 0, time(9, 0), time(11, 0)),
        weekly_slot("th_01", 0, time(9, 30), time(10, 0)),
    ])

    assert index.owners() == []
    assert len(index) == 0


def test_overlap_allowed_across_owners_days_and_active_ranges() -> None:
    first = weekly_slot("th_01", 0, time(9, 0), time(11, 0)).model_copy(
        update={"active_until": date(2025, 1, 31)}
    )
    second = weekly_slot("th_01", 0, time(10, 0), time(12, 0), slot_id="later").model_copy(
        update={"active_from": date(2025, 2, 1)}
    )
    index = AvailabilityIndex([
        first,
        second,
        weekly_slot("th_02", 0, time(9, 0), time(11, 0)),
        weekly_slot("th_01", 1, time(9, 0), time(11, 0)),
    ])
    assert len(index) == 4


def test_slots_for_combines_recurring_and_dated(index) -> None:
    extra = dated_slot("th_01", MONDAY, time(14, 0), time(15, 0))
    index = AvailabilityIndex(index.all_slots() + [extra])

    slots = index.slots_for("th_01", MONDAY)
    assert [str(s.window) for s in slots] == ["09:00-10:00", "14:00-15:00"]
    assert index.slots_for("th_01", date(2025, 1, 7)) == []


def test_containing_slot_requires_full_containment(index) -> None:
    inside = TimeWindow(start_time=time(9, 0), end_time=time(10, 0))
    spilling = TimeWindow(start_time=time(9, 30), end_time=time(10, 30))

    assert index.is_available("th_01", MONDAY, inside)
    assert not index.is_available("th_01", MONDAY, spilling)
    assert index.containing_slot("room_a", MONDAY, spilling).capacity == 2


def test_owner_queries(index) -> None:
    assert index.weekdays_for("th_01") == [0, 2]
    assert index.owners(OwnerType.RESOURCE) == ["room_a"]
    assert "th_02" in index.owners()


def test_first_fitting_start_honours_time_limits(index) -> None:
    assert index.first_fitting_start("th_02", MONDAY, 60) == time(9, 0)

    late = SchedulingConstraints(earliest_start=time(13, 0))
    assert index.first_fitting_start("th_02", MONDAY, 60, late) == time(13, 0)

    too_tight = SchedulingConstraints(latest_end=time(9, 30))
    assert index.first_fitting_start("th_02", MONDAY, 60, too_tight) is None
