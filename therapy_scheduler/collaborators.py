"""
External data collaborators.

The core never talks to a database. It reads availability, existing sessions
and the active rule order through `SchedulingDataSource`, and writes one
session change at a time through `commit_session_change`.
"""

import logging
import random
import threading
import time
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional, Protocol, TypeVar

from pydantic import BaseModel, Field

from therapy_models import AvailabilitySlot, DateRange, Session

from .config import DEFAULT_RULE_ORDER
from .errors import CollaboratorError, TransientCollaboratorError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionFilter(BaseModel):
    """Selection passed to `fetch_existing_sessions`. Empty fields do not filter."""
    session_ids: List[str] = Field(default_factory=list)
    subscription_id: Optional[str] = None
    owner_ids: List[str] = Field(default_factory=list, description="Therapist or resource ids")
    date_range: Optional[DateRange] = None

    def matches(self, session: Session) -> bool:
        if self.session_ids and session.id not in self.session_ids:
            return False
        if self.subscription_id and session.subscription_id != self.subscription_id:
            return False
        if self.owner_ids and not set(session.owner_ids()) & set(self.owner_ids):
            return False
        if self.date_range and (session.date is None or not self.date_range.contains(session.date)):
            return False
        return True


class SchedulingDataSource(Protocol):
    """Read/write contract the core consumes. Implementations live outside the core."""

    def fetch_availability(self, owner_ids: Iterable[str], date_range: DateRange) -> List[AvailabilitySlot]:
        ...

    def fetch_existing_sessions(self, session_filter: SessionFilter) -> List[Session]:
        ...

    def fetch_optimization_rules(self) -> List[str]:
        """Ordered, active-only rule ids."""
        ...

    def commit_session_change(self, session: Session, previous_state: Optional[Session]) -> None:
        """Persist `session`. `previous_state` is what the caller believes is stored."""
        ...


def _retry_delay(attempt: int, backoff_seconds: float) -> float:
    base = backoff_seconds * (2 ** (attempt - 1))
    return base + random.uniform(0, 0.05 * attempt * backoff_seconds)


def call_with_retry(
    op_name: str,
    func: Callable[[], T],
    *,
    max_attempts: int = 3,
    backoff_seconds: float = 0.1,
) -> T:
    """
    Execute a collaborator call, retrying TransientCollaboratorError with exponential backoff.
    Any other exception propagates immediately.
    """
    attempt = 1
    while True:
        try:
            return func()
        except TransientCollaboratorError as exc:
            if attempt >= max_attempts:
                logger.error(f"{op_name} failed after {attempt} attempts: {exc}")
                raise

            delay = _retry_delay(attempt, backoff_seconds)
            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed for {op_name}: {exc}. Retrying in {delay:.2f}s..."
            )
            time.sleep(delay)
            attempt += 1


class InMemoryDataSource:
    """
    Thread-safe, dictionary-backed collaborator.
    Used by the demo script and the test-suite; also handy as a cache-free stub
    when embedding the core.
    """

    def __init__(
        self,
        availability: Optional[Iterable[AvailabilitySlot]] = None,
        sessions: Optional[Iterable[Session]] = None,
        rules: Optional[List[str]] = None,
    ):
        self._lock = threading.Lock()
        self._slots: List[AvailabilitySlot] = list(availability or [])
        self._sessions: Dict[str, Session] = {}
        self._rules: Optional[List[str]] = list(rules) if rules is not None else None
        self._failures: Dict[str, List[Exception]] = defaultdict(list)
        self.commit_log: List[Session] = []
        for session in sessions or []:
            self._sessions[session.id] = session

    # --- Test/demo helpers ---

    def add_slots(self, slots: Iterable[AvailabilitySlot]) -> None:
        with self._lock:
            self._slots.extend(slots)

    def add_sessions(self, sessions: Iterable[Session]) -> None:
        with self._lock:
            for session in sessions:
                self._sessions[session.id] = session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def all_sessions(self) -> List[Session]:
        with self._lock:
            return list(self._sessions.values())

    def inject_failures(self, method: str, count: int = 1, error: Optional[Exception] = None) -> None:
        """Make the next `count` calls of `method` raise `error` (transient by default)."""
        with self._lock:
            for _ in range(count):
                self._failures[method].append(error or TransientCollaboratorError(f"{method} unavailable"))

    def _maybe_fail(self, method: str) -> None:
        with self._lock:
            pending = self._failures.get(method)
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error

    # --- SchedulingDataSource ---

    def fetch_availability(self, owner_ids: Iterable[str], date_range: DateRange) -> List[AvailabilitySlot]:
        self._maybe_fail("fetch_availability")
        wanted = set(owner_ids)
        with self._lock:
            slots = list(self._slots)
        result = []
        for slot in slots:
            if wanted and slot.owner_id not in wanted:
                continue
            if slot.active_from and slot.active_from > date_range.end_date:
                continue
            if slot.active_until and slot.active_until < date_range.start_date:
                continue
            if not slot.is_recurring and not date_range.contains(slot.window.specific_date):
                continue
            result.append(slot)
        return result

    def fetch_existing_sessions(self, session_filter: SessionFilter) -> List[Session]:
        self._maybe_fail("fetch_existing_sessions")
        with self._lock:
            sessions = list(self._sessions.values())
        return [s for s in sessions if session_filter.matches(s)]

    def fetch_optimization_rules(self) -> List[str]:
        self._maybe_fail("fetch_optimization_rules")
        if self._rules is None:
            return list(DEFAULT_RULE_ORDER)
        return list(self._rules)

    def commit_session_change(self, session: Session, previous_state: Optional[Session]) -> None:
        self._maybe_fail("commit_session_change")
        with self._lock:
            stored = self._sessions.get(session.id)
            if stored is not None and previous_state is not None:
                if stored.placement_key() != previous_state.placement_key():
                    raise CollaboratorError(
                        f"Session {session.id} changed since it was read",
                        code="stale_write",
                    )
            self._sessions[session.id] = session
            self.commit_log.append(session)
