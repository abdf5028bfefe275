"""
Session data models for the Therapy Session Scheduler.

A Session is the unit being scheduled: one meeting of a student's
subscription with a therapist (and optionally a room or piece of equipment).
"""

from typing import Optional, Tuple
from enum import Enum
from pydantic import BaseModel, Field, ConfigDict
from datetime import date as date_type, time as time_type, datetime

from .availability import TimeWindow


class SessionStatus(str, Enum):
    """Lifecycle of a session."""
    PROPOSED = "proposed"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Session(BaseModel):
    """
    A single therapy session owned by exactly one subscription.

    `date` and `window` are optional so that records loaded from storage
    without a placement can still be represented (and rejected as invariant
    violations by the core instead of failing at load time).
    """

    # --- Identity ---
    id: str = Field(description="Unique identifier")
    subscription_id: str = Field(description="Owning subscription")
    sequence: int = Field(default=0, ge=0, description="Position within the subscription")

    # --- Resource Allocation ---
    therapist_id: str = Field(description="Assigned therapist")
    resource_id: Optional[str] = Field(default=None, description="Assigned room/equipment")

    # --- Placement ---
    date: Optional[date_type] = Field(default=None, description="Calendar date")
    window: Optional[TimeWindow] = Field(default=None, description="Start/end on that date")

    status: SessionStatus = Field(default=SessionStatus.PROPOSED, description="Current state")

    @property
    def is_placed(self) -> bool:
        return self.date is not None and self.window is not None

    @property
    def is_active(self) -> bool:
        """Cancelled sessions no longer hold calendar time."""
        return self.status != SessionStatus.CANCELLED

    @property
    def start_datetime(self) -> Optional[datetime]:
        if not self.is_placed:
            return None
        return datetime.combine(self.date, self.window.start_time)

    def owner_ids(self) -> Tuple[str, ...]:
        if self.resource_id:
            return (self.therapist_id, self.resource_id)
        return (self.therapist_id,)

    def placement_key(self) -> tuple:
        """Fields a bulk operation changes; used to spot concurrent modification."""
        window = (self.window.start_time, self.window.end_time) if self.window else None
        return (self.therapist_id, self.resource_id, self.date, window, self.status)

    def moved_to(
        self,
        date: Optional[date_type] = None,
        start_time: Optional[time_type] = None,
        therapist_id: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> "Session":
        """Copy of this session at a new placement (duration preserved)."""
        update = {}
        if date is not None:
            update["date"] = date
        if start_time is not None and self.window is not None:
            update["window"] = self.window.shifted(start_time)
        if therapist_id is not None:
            update["therapist_id"] = therapist_id
        if resource_id is not None:
            update["resource_id"] = resource_id
        return self.model_copy(update=update)

    def describe(self) -> str:
        where = f"{self.date} {self.window}" if self.is_placed else "unplaced"
        return f"{self.id} [{self.therapist_id} @ {where}]"

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "id": "sub_001-001",
            "subscription_id": "sub_001",
            "sequence": 1,
            "therapist_id": "th_01",
            "resource_id": "room_a",
            "date": "2025-01-06",
            "window": {"start_time": "09:00:00", "end_time": "10:00:00"},
            "status": "scheduled"
        }
    })
