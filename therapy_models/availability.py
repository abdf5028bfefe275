"""
Availability data models for the Therapy Session Scheduler.

This module defines the 'Supply' side of the scheduler:
1. Time Windows (a start/end pair, optionally pinned to a weekday or a date)
2. Availability Slots (when a Therapist or a Resource can be booked, and how often)
"""

import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, model_validator
from datetime import date, time, timedelta


def add_minutes(value: time, minutes: int) -> time:
    """Shift a wall-clock time by a number of minutes (same day, clamped to 23:59)."""
    total = value.hour * 60 + value.minute + minutes
    total = max(0, min(total, 23 * 60 + 59))
    return (datetime.datetime.min + timedelta(minutes=total)).time()


def time_from_minutes(minutes: int) -> time:
    """Minutes from midnight -> time object."""
    return add_minutes(time(0, 0), minutes)


class OwnerType(str, Enum):
    """Who an availability slot belongs to."""
    THERAPIST = "therapist"
    RESOURCE = "resource"     # Rooms and equipment


class TimeWindow(BaseModel):
    """A start/end pair. Recurring windows carry a weekday, one-off windows a date."""
    start_time: time = Field(description="Window start")
    end_time: time = Field(description="Window end")
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6, description="0=Monday, 6=Sunday")
    specific_date: Optional[date] = Field(default=None, description="One-off date")

    @model_validator(mode='after')
    def validate_times(self):
        if self.start_time >= self.end_time:
            raise ValueError("End time must be strictly after start time")
        return self

    @property
    def start_minutes(self) -> int:
        return self.start_time.hour * 60 + self.start_time.minute

    @property
    def end_minutes(self) -> int:
        return self.end_time.hour * 60 + self.end_time.minute

    @property
    def duration_minutes(self) -> int:
        return self.end_minutes - self.start_minutes

    def overlaps(self, other: "TimeWindow") -> bool:
        # Standard Overlap Logic: StartA < EndB and StartB < EndA
        return self.start_minutes < other.end_minutes and other.start_minutes < self.end_minutes

    def contains(self, other: "TimeWindow") -> bool:
        return self.start_minutes <= other.start_minutes and other.end_minutes <= self.end_minutes

    def shifted(self, start_time: time) -> "TimeWindow":
        """Same duration, new start."""
        return TimeWindow(
            start_time=start_time,
            end_time=add_minutes(start_time, self.duration_minutes),
        )

    def __str__(self) -> str:
        return f"{self.start_time:%H:%M}-{self.end_time:%H:%M}"


class AvailabilitySlot(BaseModel):
    """
    A window during which a Therapist or Resource accepts bookings.
    Read-only to the scheduling core.
    """
    id: str = Field(description="Unique identifier")
    owner_id: str = Field(description="Therapist or Resource id")
    owner_type: OwnerType = Field(default=OwnerType.THERAPIST)
    window: TimeWindow = Field(description="Weekly (day_of_week) or one-off (specific_date) window")

    # Capacity Constraint
    capacity: int = Field(
        default=1,
        ge=1,
        description="How many sessions may run concurrently inside this slot"
    )

    active_from: Optional[date] = Field(default=None, description="First date the slot applies")
    active_until: Optional[date] = Field(default=None, description="Last date the slot applies")

    @model_validator(mode='after')
    def validate_slot(self):
        has_weekday = self.window.day_of_week is not None
        has_date = self.window.specific_date is not None
        if has_weekday == has_date:
            raise ValueError("Slot window needs exactly one of day_of_week or specific_date")
        if self.active_from and self.active_until and self.active_until < self.active_from:
            raise ValueError("active_until cannot be before active_from")
        return self

    @property
    def is_recurring(self) -> bool:
        return self.window.day_of_week is not None

    def applies_on(self, on_date: date) -> bool:
        if self.active_from and on_date < self.active_from:
            return False
        if self.active_until and on_date > self.active_until:
            return False
        if self.is_recurring:
            return on_date.weekday() == self.window.day_of_week
        return on_date == self.window.specific_date

    def covers(self, on_date: date, window: TimeWindow) -> bool:
        """Window must fit ENTIRELY within the slot on that date."""
        return self.applies_on(on_date) and self.window.contains(window)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "id": "slot_th01_mon",
            "owner_id": "th_01",
            "owner_type": "therapist",
            "window": {"day_of_week": 0, "start_time": "09:00:00", "end_time": "12:00:00"},
            "capacity": 1,
            "active_from": "2025-01-01"
        }
    })
