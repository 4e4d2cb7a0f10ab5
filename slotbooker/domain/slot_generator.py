"""
Candidate slot grid generation.

Pure domain logic: no storage, no calendars, no exclusions. The grid is
filtered against busy time later by the availability resolver.
"""

from typing import List, Optional

from pendulum import Date, DateTime

from .exceptions import ValidationError
from .models import TimeInterval, WorkingHours

DEFAULT_GRANULARITY_MINUTES = 30


class SlotGenerator:
    """
    Produces fixed-length candidate slots inside a working window.

    Algorithm:
    1. Resolve the working window for the target date
    2. Walk the window from its start in ``granularity`` steps
    3. Emit a slot of ``duration`` minutes while it still fits in the window
    4. Drop slots that start before "now"
    """

    def __init__(self, granularity_minutes: int = DEFAULT_GRANULARITY_MINUTES):
        if granularity_minutes <= 0:
            raise ValidationError(f"Slot granularity must be positive, got {granularity_minutes}")
        self.granularity_minutes = granularity_minutes

    def generate(
        self,
        window: TimeInterval,
        duration_minutes: int,
        now: Optional[DateTime] = None,
    ) -> List[TimeInterval]:
        """
        Generate candidate slots confined to ``window``.

        Args:
            window: Working window for one day (may run past midnight)
            duration_minutes: Length of every slot
            now: Slots starting before this instant are dropped

        Returns:
            Ordered list of candidate slots; empty if the duration does not fit
        """
        if duration_minutes <= 0:
            raise ValidationError(f"Duration must be positive, got {duration_minutes}")

        slots: List[TimeInterval] = []

        if duration_minutes > window.duration_minutes():
            return slots

        current = window.start
        while True:
            slot_end = current.add(minutes=duration_minutes)
            if slot_end > window.end:
                break

            if now is None or current >= now:
                slots.append(TimeInterval(start=current, end=slot_end, timezone=window.timezone))

            current = current.add(minutes=self.granularity_minutes)

        return slots

    def generate_for_day(
        self,
        working_hours: WorkingHours,
        day: Date,
        timezone: str,
        duration_minutes: int,
        now: Optional[DateTime] = None,
    ) -> List[TimeInterval]:
        """Generate the grid for ``day`` from weekly working hours."""
        window = working_hours.get_working_hours_for_day(day, timezone)
        if window is None:
            return []
        return self.generate(window, duration_minutes, now=now)
