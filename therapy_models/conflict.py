"""
Conflict data models.

Conflicts are derived data: they are recomputed against current state on
every evaluation and never stored on their own.
"""

from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field
from datetime import date

from .availability import TimeWindow


class ConflictType(str, Enum):
    TIME_OVERLAP = "time_overlap"
    RESOURCE_OVERCOMMIT = "resource_overcommit"
    AVAILABILITY_VIOLATION = "availability_violation"
    CONSTRAINT_VIOLATION = "constraint_violation"


class ConflictSeverity(str, Enum):
    BLOCKING = "blocking"     # Prevents commit
    WARNING = "warning"       # Informs optimization only


class Conflict(BaseModel):
    """Detailed reason a placement is (or should not be) accepted."""
    type: ConflictType
    severity: ConflictSeverity
    session_id: str = Field(description="Session being evaluated")
    involved_session_ids: List[str] = Field(default_factory=list, description="Evaluated + clashing sessions")
    owner_id: Optional[str] = Field(default=None, description="Therapist/resource the conflict is about")
    description: str = ""

    @property
    def is_blocking(self) -> bool:
        return self.severity == ConflictSeverity.BLOCKING


class Suggestion(BaseModel):
    """An alternative placement that clears the blocking conflicts of a session."""
    session_id: str
    date: date
    window: TimeWindow
    therapist_id: str
    resource_id: Optional[str] = None
    displacement_minutes: int = Field(ge=0, description="Distance from the originally requested start")
    resolves: List[ConflictType] = Field(default_factory=list)
    reason: str = ""
