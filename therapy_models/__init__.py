"""
Data models package for the Therapy Session Scheduler.

This package exports the four pillars of the data architecture:
1. Supply (TimeWindow, AvailabilitySlot)
2. Demand (SchedulingRequest, BulkReschedulingRequest)
3. Output (Session, Conflict, Suggestion)
4. Long-running work (BulkOperation, SessionOutcome)
"""

from .availability import (
    AvailabilitySlot,
    OwnerType,
    TimeWindow,
    add_minutes,
    time_from_minutes,
)

from .request import (
    BulkOperationType,
    BulkReschedulingRequest,
    DateRange,
    SchedulingConstraints,
    SchedulingRequest,
)

from .session import (
    Session,
    SessionStatus,
)

from .conflict import (
    Conflict,
    ConflictSeverity,
    ConflictType,
    Suggestion,
)

from .operation import (
    TERMINAL_STATUSES,
    BulkOperation,
    OperationSnapshot,
    OperationStatus,
    OutcomeKind,
    RollbackReport,
    SessionOutcome,
)

__all__ = [
    # --- Supply Models ---
    "AvailabilitySlot",
    "OwnerType",
    "TimeWindow",
    "add_minutes",
    "time_from_minutes",

    # --- Demand Models ---
    "BulkOperationType",
    "BulkReschedulingRequest",
    "DateRange",
    "SchedulingConstraints",
    "SchedulingRequest",

    # --- Output Models ---
    "Session",
    "SessionStatus",
    "Conflict",
    "ConflictSeverity",
    "ConflictType",
    "Suggestion",

    # --- Operation Models ---
    "TERMINAL_STATUSES",
    "BulkOperation",
    "OperationSnapshot",
    "OperationStatus",
    "OutcomeKind",
    "RollbackReport",
    "SessionOutcome",
]
