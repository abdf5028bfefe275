"""
Scheduling core for the Therapy Session Scheduler.

Leaf-first:
1. Supply lookups (AvailabilityIndex)
2. Validation (ConflictDetector)
3. Generation + Optimization (ScheduleGenerator, OptimizationRuleEngine)
4. Long-running work (BulkReschedulingEngine, OperationTracker)
5. Caller API (SchedulingService)
"""

from .availability_index import AvailabilityIndex
from .conflicts import ConflictDetector, DetectionContext, partition_independent
from .engine import ScheduleGenerator
from .state import GenerationResult, GenerationState, PlacementAttempt, ScheduleOutcome
from .rules import (
    OptimizationResult,
    OptimizationRuleEngine,
    Proposal,
    RuleId,
    register_rule,
)
from .tracker import OperationTracker
from .bulk import BulkReschedulingEngine
from .service import SchedulingService

from .collaborators import (
    InMemoryDataSource,
    SchedulingDataSource,
    SessionFilter,
    call_with_retry,
)
from .config import Settings, get_settings
from .errors import (
    ClientError,
    CollaboratorError,
    InvariantViolation,
    OperationNotFound,
    OperationRejected,
    OperationStateError,
    SchedulingError,
    TransientCollaboratorError,
)

__all__ = [
    # --- Components ---
    "AvailabilityIndex",
    "ConflictDetector",
    "DetectionContext",
    "partition_independent",
    "ScheduleGenerator",
    "OptimizationRuleEngine",
    "RuleId",
    "register_rule",
    "OperationTracker",
    "BulkReschedulingEngine",
    "SchedulingService",

    # --- Results ---
    "GenerationResult",
    "GenerationState",
    "PlacementAttempt",
    "ScheduleOutcome",
    "OptimizationResult",
    "Proposal",

    # --- Collaborators ---
    "InMemoryDataSource",
    "SchedulingDataSource",
    "SessionFilter",
    "call_with_retry",

    # --- Configuration ---
    "Settings",
    "get_settings",

    # --- Errors ---
    "SchedulingError",
    "ClientError",
    "CollaboratorError",
    "TransientCollaboratorError",
    "InvariantViolation",
    "OperationNotFound",
    "OperationRejected",
    "OperationStateError",
]
