"""
Availability Index.

Normalized per-owner view over AvailabilitySlot data. Answers "which slots
does owner X have on date D" and nothing more: no business rules live here.
"""

import logging
from collections import defaultdict
from datetime import date as date_type, time as time_type
from typing import Dict, Iterable, List, Optional

from therapy_models import AvailabilitySlot, OwnerType, SchedulingConstraints, TimeWindow

logger = logging.getLogger(__name__)


def _active_ranges_overlap(a: AvailabilitySlot, b: AvailabilitySlot) -> bool:
    a_from, a_until = a.active_from or date_type.min, a.active_until or date_type.max
    b_from, b_until = b.active_from or date_type.min, b.active_until or date_type.max
    return a_from <= b_until and b_from <= a_until


class AvailabilityIndex:
    """Read-only index of availability slots keyed by owner."""

    def __init__(self, slots: Iterable[AvailabilitySlot] = ()):
        self._by_owner: Dict[str, List[AvailabilitySlot]] = defaultdict(list)
        self.excluded_slots: List[AvailabilitySlot] = []
        for slot in slots:
            self._by_owner[slot.owner_id].append(slot)
        for owner_slots in self._by_owner.values():
            owner_slots.sort(key=lambda s: (s.window.day_of_week if s.is_recurring else -1, s.window.start_minutes))
        self._validate()

    def _validate(self) -> None:
        """
        Windows of the same owner on the same day must not self-overlap.
        Every slot involved in an overlap is logged and left out of the index.
        """
        for owner_id, slots in list(self._by_owner.items()):
            bad = set()
            for i, a in enumerate(slots):
                for j in range(i + 1, len(slots)):
                    b = slots[j]
                    if a.is_recurring != b.is_recurring:
                        continue
                    same_day = (
                        a.window.day_of_week == b.window.day_of_week if a.is_recurring
                        else a.window.specific_date == b.window.specific_date
                    )
                    if same_day and a.window.overlaps(b.window) and _active_ranges_overlap(a, b):
                        logger.error(f"Availability slots {a.id} and {b.id} of {owner_id} overlap; excluding both")
                        bad.update((i, j))
            if not bad:
                continue
            self.excluded_slots.extend(slots[i] for i in sorted(bad))
            kept = [s for i, s in enumerate(slots) if i not in bad]
            if kept:
                self._by_owner[owner_id] = kept
            else:
                del self._by_owner[owner_id]

    def __len__(self) -> int:
        return sum(len(v) for v in self._by_owner.values())

    def owners(self, owner_type: Optional[OwnerType] = None) -> List[str]:
        return sorted(
            owner_id for owner_id, slots in self._by_owner.items()
            if owner_type is None or any(s.owner_type == owner_type for s in slots)
        )

    def all_slots(self) -> List[AvailabilitySlot]:
        return [slot for slots in self._by_owner.values() for slot in slots]

    def slots_for(self, owner_id: str, on_date: date_type) -> List[AvailabilitySlot]:
        """Slots applicable on a date, ordered by start time."""
        slots = [s for s in self._by_owner.get(owner_id, []) if s.applies_on(on_date)]
        return sorted(slots, key=lambda s: s.window.start_minutes)

    def containing_slot(self, owner_id: str, on_date: date_type, window: TimeWindow) -> Optional[AvailabilitySlot]:
        for slot in self.slots_for(owner_id, on_date):
            if slot.covers(on_date, window):
                return slot
        return None

    def is_available(self, owner_id: str, on_date: date_type, window: TimeWindow) -> bool:
        return self.containing_slot(owner_id, on_date, window) is not None

    def weekdays_for(self, owner_id: str) -> List[int]:
        """Weekdays on which the owner has recurring availability."""
        return sorted({s.window.day_of_week for s in self._by_owner.get(owner_id, []) if s.is_recurring})

    def first_fitting_start(
        self,
        owner_id: str,
        on_date: date_type,
        duration_minutes: int,
        constraints: Optional[SchedulingConstraints] = None,
    ) -> Optional[time_type]:
        """Earliest start inside the owner's slots that fits the duration (and the time-of-day limits)."""
        for slot in self.slots_for(owner_id, on_date):
            start = slot.window.start_time
            if constraints and constraints.earliest_start and start < constraints.earliest_start:
                start = constraints.earliest_start
            end_minutes = start.hour * 60 + start.minute + duration_minutes
            if end_minutes > slot.window.end_minutes:
                continue
            if constraints and constraints.latest_end:
                latest = constraints.latest_end.hour * 60 + constraints.latest_end.minute
                if end_minutes > latest:
                    continue
            return start
        return None
