"""
Error taxonomy of the scheduling core.

Conflicts (blocking or warning) are NOT errors: they are normal outcomes and
travel as data. Exceptions are reserved for malformed input, collaborator
failures, broken invariants and illegal operation transitions.
"""

from typing import Any, Dict, Optional


class SchedulingError(Exception):
    """Base exception for all scheduling-core errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


class ClientError(SchedulingError):
    """Malformed request (missing cadence, invalid date range). Never retried."""


class CollaboratorError(SchedulingError):
    """A data collaborator rejected a call."""


class TransientCollaboratorError(CollaboratorError):
    """A data collaborator failed in a way worth retrying (timeouts, dropped connections)."""


class InvariantViolation(SchedulingError):
    """Stored data breaks a model invariant. Fatal for the affected session only."""


class OperationNotFound(SchedulingError):
    """Unknown bulk operation id."""


class OperationStateError(SchedulingError):
    """Requested transition is not allowed from the operation's current status."""


class OperationRejected(SchedulingError):
    """A bulk operation could not be accepted (e.g. too many running)."""
