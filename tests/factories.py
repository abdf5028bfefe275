"""Builders shared by the test modules."""

from __future__ import annotations

from datetime import date, time
from typing import List, Optional

from therapy_models import (
    AvailabilitySlot,
    OwnerType,
    SchedulingRequest,
    Session,
    SessionStatus,
    TimeWindow,
)
from therapy_scheduler import Settings

MONDAY = date(2025, 1, 6)


def fast_settings(**overrides) -> Settings:
    """Settings with retries that do not sleep."""
    values = {"collaborator_backoff_seconds": 0.0}
    values.update(overrides)
    return Settings(**values)


def weekly_slot(
    owner: str,
    day: int,
    start: time,
    end: time,
    capacity: int = 1,
    owner_type: OwnerType = OwnerType.THERAPIST,
    slot_id: Optional[str] = None,
) -> AvailabilitySlot:
    return AvailabilitySlot(
        id=slot_id or f"{owner}-{day}-{start:%H%M}",
        owner_id=owner,
        owner_type=owner_type,
        window=TimeWindow(start_time=start, end_time=end, day_of_week=day),
        capacity=capacity,
    )


def dated_slot(owner: str, on_date: date, start: time, end: time, capacity: int = 1) -> AvailabilitySlot:
    return AvailabilitySlot(
        id=f"{owner}-{on_date}-{start:%H%M}",
        owner_id=owner,
        window=TimeWindow(start_time=start, end_time=end, specific_date=on_date),
        capacity=capacity,
    )


def seed_slots() -> List[AvailabilitySlot]:
    """
    th_01: Mon + Wed 09:00-10:00 only
    th_02: Mon-Fri 09:00-17:00
    room_a: Mon-Fri 08:00-18:00, two sessions at once
    """
    slots = [
        weekly_slot("th_01", 0, time(9, 0), time(10, 0)),
        weekly_slot("th_01", 2, time(9, 0), time(10, 0)),
    ]
    for day in range(5):
        slots.append(weekly_slot("th_02", day, time(9, 0), time(17, 0)))
        slots.append(weekly_slot(
            "room_a", day, time(8, 0), time(18, 0), capacity=2, owner_type=OwnerType.RESOURCE
        ))
    return slots


def make_session(
    session_id: str,
    therapist: str = "th_02",
    on_date: Optional[date] = MONDAY,
    start: time = time(9, 0),
    end: time = time(10, 0),
    resource: Optional[str] = None,
    status: SessionStatus = SessionStatus.SCHEDULED,
    subscription: str = "sub_001",
) -> Session:
    window = TimeWindow(start_time=start, end_time=end) if on_date is not None else None
    return Session(
        id=session_id,
        subscription_id=subscription,
        therapist_id=therapist,
        resource_id=resource,
        date=on_date,
        window=window,
        status=status,
    )


def make_request(**overrides) -> SchedulingRequest:
    """Baseline: 2/week for 4 weeks with th_01, hour-long sessions."""
    defaults = {
        "subscription_id": "sub_001",
        "therapist_id": "th_01",
        "start_date": MONDAY,
        "end_date": date(2025, 2, 2),
        "sessions_per_week": 2,
        "session_duration_minutes": 60,
    }
    defaults.update(overrides)
    return SchedulingRequest(**defaults)
