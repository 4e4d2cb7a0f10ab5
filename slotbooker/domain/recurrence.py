"""
Recurrence expansion for yearly blocked time and recurring bookings.
"""

from typing import Iterable, List

from .exceptions import ValidationError
from .models import BlockedTime, RecurrencePattern, RecurringBookingRequest, TimeInterval

MAX_SERIES_OCCURRENCES = 52


class RecurrenceExpander:
    """
    Turns recurring definitions into concrete intervals.

    Two modes:
    - yearly blocked time projected onto every year touching a query window
    - daily/weekly/monthly booking series bounded by an end date or a count
    """

    def __init__(self, max_occurrences: int = MAX_SERIES_OCCURRENCES):
        if max_occurrences < 1:
            raise ValidationError(f"max_occurrences must be at least 1, got {max_occurrences}")
        self.max_occurrences = max_occurrences

    def expand_blocked_time(self, block: BlockedTime, window: TimeInterval) -> List[TimeInterval]:
        """
        Concrete intervals of ``block`` that overlap ``window``.

        A yearly block keeps its month, day and time of day in its own
        timezone. The year before the window start is projected as well so a
        block spanning New Year is not lost.
        """
        base = block.effective_interval()

        if not block.recurring_yearly:
            return [base] if base.overlaps(window) else []

        zone = base.start.timezone
        first_year = window.start.in_timezone(zone).year - 1
        last_year = window.end.in_timezone(zone).year

        intervals: List[TimeInterval] = []
        for year in range(first_year, last_year + 1):
            projected = self._project_to_year(base, year)
            if projected.overlaps(window):
                intervals.append(projected)

        return intervals

    def expand_blocked_times(self, blocks: Iterable[BlockedTime], window: TimeInterval) -> List[TimeInterval]:
        """Expand several blocks; order follows the input."""
        intervals: List[TimeInterval] = []
        for block in blocks:
            intervals.extend(self.expand_blocked_time(block, window))
        return intervals

    @staticmethod
    def _project_to_year(interval: TimeInterval, year: int) -> TimeInterval:
        offset = year - interval.start.year
        if offset == 0:
            return interval

        # pendulum clamps Feb 29 to Feb 28 in non-leap years
        start = interval.start.add(years=offset)
        end = interval.end.add(years=offset)
        if end <= start:
            end = start + (interval.end - interval.start)

        return TimeInterval(start=start, end=end, timezone=interval.timezone)

    def expand_booking(self, first: TimeInterval, request: RecurringBookingRequest) -> List[TimeInterval]:
        """
        Generate the occurrences of a booking series starting with ``first``.

        Offsets are computed from the first occurrence, so a monthly series
        started on the 31st returns to the 31st after shorter months.

        Generation stops at the first start after ``request.end_date`` when an
        end date is set, otherwise after ``request.occurrence_count``
        occurrences. The series is never longer than ``max_occurrences``.
        """
        duration = first.duration_minutes()
        tz = first.timezone
        base = first.start

        if request.uses_end_date:
            limit = self.max_occurrences
        else:
            limit = min(request.occurrence_count, self.max_occurrences)

        occurrences: List[TimeInterval] = []
        for index in range(limit):
            start = self._offset(base, request.base_pattern, index)

            if request.uses_end_date and start.date() > request.end_date:
                break

            occurrences.append(TimeInterval(start=start, end=start.add(minutes=duration), timezone=tz))

        return occurrences

    @staticmethod
    def _offset(base, pattern: RecurrencePattern, index: int):
        if pattern == RecurrencePattern.DAILY:
            return base.add(days=index)
        if pattern == RecurrencePattern.WEEKLY:
            return base.add(weeks=index)
        if pattern == RecurrencePattern.MONTHLY:
            return base.add(months=index)
        raise ValidationError(f"Unsupported recurrence pattern: {pattern}")
