"""
Commit-time conflict detection.
"""

import logging

from ..domain.exceptions import SlotUnavailableError
from ..domain.models import Listing, TimeInterval
from .availability import AvailabilityResolver, IntervalCheck

logger = logging.getLogger(__name__)


class ConflictDetector:
    """
    Re-validates a requested interval right before a booking is written.

    This is the fast path that gives callers a precise error; the storage
    exclusion check on insert is what actually prevents double booking.
    """

    def __init__(self, resolver: AvailabilityResolver) -> None:
        self._resolver = resolver

    async def ensure_available(self, listing: Listing, interval: TimeInterval) -> IntervalCheck:
        """
        Raises:
            SlotUnavailableError: If the interval is not free right now
        """
        check = await self._resolver.check_interval(listing, interval)
        if not check.free:
            logger.info("Slot %s for listing %s unavailable: %s", interval, listing.id, check.reason)
            raise SlotUnavailableError(check.reason, interval)
        if check.degraded:
            logger.warning(
                "Booking check for listing %s ran without calendars %s",
                listing.id, ", ".join(check.failed_connection_ids),
            )
        return check
