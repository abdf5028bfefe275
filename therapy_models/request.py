"""
Request data models for the Therapy Session Scheduler.

Two kinds of demand enter the core:
1. SchedulingRequest - "2 sessions/week for 8 weeks with therapist X"
2. BulkReschedulingRequest - "freeze / shift / reassign these committed sessions"
"""

from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict
from datetime import date, time, timedelta


class DateRange(BaseModel):
    """Inclusive date range."""
    start_date: date
    end_date: date

    @model_validator(mode='after')
    def validate_range(self):
        if self.end_date < self.start_date:
            raise ValueError("End date cannot be before start date")
        return self

    def days(self) -> List[date]:
        span = (self.end_date - self.start_date).days
        return [self.start_date + timedelta(days=i) for i in range(span + 1)]

    def contains(self, value: date) -> bool:
        return self.start_date <= value <= self.end_date


class SchedulingConstraints(BaseModel):
    """Request-level limits (e.g. 'must be before 2pm'). Violations are warnings."""
    earliest_start: Optional[time] = Field(default=None, description="Sessions should not start before")
    latest_end: Optional[time] = Field(default=None, description="Sessions should end by")
    avoid_days: List[int] = Field(default_factory=list, description="Weekdays to avoid (0=Monday)")

    @field_validator('avoid_days')
    @classmethod
    def validate_days(cls, v):
        if any(d < 0 or d > 6 for d in v):
            raise ValueError("avoid_days must be weekdays between 0 and 6")
        return v

    @model_validator(mode='after')
    def validate_window(self):
        if self.earliest_start and self.latest_end and self.latest_end <= self.earliest_start:
            raise ValueError("latest_end must be after earliest_start")
        return self


class SchedulingRequest(BaseModel):
    """
    Desired cadence for one subscription. Immutable once submitted.
    """
    model_config = ConfigDict(frozen=True, json_schema_extra={
        "example": {
            "subscription_id": "sub_001",
            "therapist_id": "th_01",
            "start_date": "2025-01-06",
            "end_date": "2025-02-02",
            "sessions_per_week": 2,
            "session_duration_minutes": 60,
            "preferred_days": [0, 2],
            "constraints": {"latest_end": "14:00:00"}
        }
    })

    # --- Core Identity ---
    subscription_id: str = Field(min_length=1, description="Subscription being scheduled")
    therapist_id: str = Field(min_length=1, description="Therapist to book")
    resource_id: Optional[str] = Field(default=None, description="Room/equipment to book with each session")

    # --- Cadence ---
    start_date: date = Field(description="First date sessions may be placed on")
    end_date: date = Field(description="Last date sessions may be placed on")
    sessions_per_week: int = Field(ge=1, le=7, description="Sessions per 7-day block")
    session_duration_minutes: int = Field(ge=5, le=480, description="Length of each session")
    total_sessions: Optional[int] = Field(default=None, ge=1, description="Optional cap on sessions generated")

    # --- Preferences ---
    preferred_days: Optional[List[int]] = Field(
        default=None,
        description="Weekdays to use, cycled in order (0=Monday, 6=Sunday)"
    )
    preferred_start_time: Optional[time] = Field(default=None, description="Preferred start time")

    # --- Constraints ---
    constraints: SchedulingConstraints = Field(default_factory=SchedulingConstraints)

    @field_validator('preferred_days')
    @classmethod
    def validate_preferred_days(cls, v):
        if v is None:
            return v
        if not v:
            raise ValueError("preferred_days cannot be an empty list")
        if any(d < 0 or d > 6 for d in v):
            raise ValueError("preferred_days must be weekdays between 0 and 6")
        return v

    @model_validator(mode='after')
    def validate_dates(self):
        if self.end_date < self.start_date:
            raise ValueError("End date cannot be before start date")
        return self

    @property
    def date_range(self) -> DateRange:
        return DateRange(start_date=self.start_date, end_date=self.end_date)


class BulkOperationType(str, Enum):
    """Structural changes a bulk operation can apply."""
    FREEZE = "freeze"
    REASSIGN = "reassign"
    MASS_SHIFT = "mass_shift"


class BulkReschedulingRequest(BaseModel):
    """A structural change applied to many committed sessions."""
    operation_type: BulkOperationType

    # --- Targets (either explicit ids or a whole subscription) ---
    session_ids: List[str] = Field(default_factory=list, max_length=1000)
    subscription_id: Optional[str] = Field(default=None)

    reason: str = Field(min_length=5, description="Why the operation is being run")

    # --- Change parameters ---
    freeze_start: Optional[date] = Field(default=None, description="First frozen day")
    freeze_end: Optional[date] = Field(default=None, description="Day the subscription resumes")
    shift_days: Optional[int] = Field(default=None, description="Date offset for mass shifts")
    new_therapist_id: Optional[str] = Field(default=None, description="Target therapist for reassignments")

    max_concurrency: Optional[int] = Field(default=None, ge=1, description="Parallel group workers")

    @model_validator(mode='after')
    def validate_parameters(self):
        if not self.session_ids and not self.subscription_id:
            raise ValueError("Either session_ids or subscription_id is required")

        if self.operation_type == BulkOperationType.FREEZE:
            if not (self.freeze_start and self.freeze_end):
                raise ValueError("Freeze requires freeze_start and freeze_end")
            if self.freeze_end <= self.freeze_start:
                raise ValueError("freeze_end must be after freeze_start")
        elif self.operation_type == BulkOperationType.MASS_SHIFT:
            if not self.shift_days:
                raise ValueError("Mass shift requires a non-zero shift_days")
        elif self.operation_type == BulkOperationType.REASSIGN:
            if not self.new_therapist_id:
                raise ValueError("Reassignment requires new_therapist_id")
        return self

    @property
    def freeze_days(self) -> int:
        if not (self.freeze_start and self.freeze_end):
            return 0
        return (self.freeze_end - self.freeze_start).days
