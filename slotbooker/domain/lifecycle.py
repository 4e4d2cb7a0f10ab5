"""
Booking lifecycle state machine.

    pending   -> confirmed | cancelled
    confirmed -> completed | no_show | cancelled
    completed, cancelled, no_show are terminal
"""

from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, Mapping, Optional

from pendulum import DateTime

from .exceptions import TransitionError, ValidationError
from .models import (
    Actor,
    Booking,
    BookingAction,
    BookingRequest,
    BookingStatus,
    Listing,
    RecurrencePattern,
    TimeInterval,
)

TRANSITIONS: Mapping[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset(
        {BookingStatus.COMPLETED, BookingStatus.NO_SHOW, BookingStatus.CANCELLED}
    ),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.NO_SHOW: frozenset(),
}

ACTION_TARGETS: Mapping[BookingAction, BookingStatus] = {
    BookingAction.CONFIRM: BookingStatus.CONFIRMED,
    BookingAction.CANCEL: BookingStatus.CANCELLED,
    BookingAction.COMPLETE: BookingStatus.COMPLETED,
    BookingAction.NO_SHOW: BookingStatus.NO_SHOW,
}

# Timestamp field stamped when a booking enters a status
STAMP_FIELDS: Mapping[BookingStatus, str] = {
    BookingStatus.CONFIRMED: "confirmed_at",
    BookingStatus.COMPLETED: "completed_at",
    BookingStatus.CANCELLED: "cancelled_at",
}


def parse_action(value) -> BookingAction:
    """Coerce an action name such as ``"confirm"`` to a ``BookingAction``."""
    try:
        return BookingAction(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown booking action: {value!r}") from exc


def parse_actor(value) -> Actor:
    try:
        return Actor(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown actor: {value!r}") from exc


@dataclass(frozen=True)
class Transition:
    """A validated status change, ready to be written by storage."""
    booking_id: str
    from_status: BookingStatus
    to_status: BookingStatus
    stamps: Dict[str, DateTime] = field(default_factory=dict)
    provider_notes: Optional[str] = None

    def apply_to(self, booking: Booking) -> Booking:
        changes = dict(self.stamps)
        if self.provider_notes is not None:
            changes["provider_notes"] = self.provider_notes
        return replace(booking, status=self.to_status, **changes)


class BookingLifecycleManager:
    """Validates status transitions and builds new booking records."""

    def new_booking(
        self,
        *,
        booking_id: str,
        request: BookingRequest,
        listing: Listing,
        interval: TimeInterval,
        now: DateTime,
        parent_booking_id: Optional[str] = None,
        recurrence_pattern: Optional[RecurrencePattern] = None,
        recurrence_sequence: int = 0,
    ) -> Booking:
        """Every booking starts out pending."""
        return Booking(
            id=booking_id,
            listing_id=listing.id,
            provider_id=listing.provider_id,
            customer_id=request.customer_id,
            interval=interval,
            created_at=now,
            service_name=request.service_name or listing.title,
            price=request.price,
            currency=request.currency,
            status=BookingStatus.PENDING,
            customer_notes=request.customer_notes,
            parent_booking_id=parent_booking_id,
            recurrence_pattern=recurrence_pattern,
            recurrence_sequence=recurrence_sequence,
        )

    @staticmethod
    def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
        return target in TRANSITIONS[current]

    def plan(
        self,
        booking: Booking,
        action: BookingAction,
        *,
        actor: Actor = Actor.PROVIDER,
        now: DateTime,
        notes: Optional[str] = None,
    ) -> Transition:
        """
        Validate ``action`` against the booking's current status.

        Customers may only cancel, and only while the booking is pending.

        Raises:
            ValidationError: If the action is unknown
            TransitionError: If the target status is not reachable
        """
        target = ACTION_TARGETS[parse_action(action)]
        current = booking.status

        if not self.can_transition(current, target):
            raise TransitionError(booking.id, current.value, target.value)

        if actor == Actor.CUSTOMER and not (
            target == BookingStatus.CANCELLED and current == BookingStatus.PENDING
        ):
            raise TransitionError(
                booking.id, current.value, target.value,
                "customers may only cancel pending bookings",
            )

        stamps: Dict[str, DateTime] = {}
        stamp_field = STAMP_FIELDS.get(target)
        if stamp_field:
            stamps[stamp_field] = now

        return Transition(
            booking_id=booking.id,
            from_status=current,
            to_status=target,
            stamps=stamps,
            provider_notes=notes if actor == Actor.PROVIDER else None,
        )

    def apply(
        self,
        booking: Booking,
        action: BookingAction,
        *,
        actor: Actor = Actor.PROVIDER,
        now: DateTime,
        notes: Optional[str] = None,
    ) -> Booking:
        """Return a new booking with the transition applied; the input is untouched."""
        return self.plan(booking, action, actor=actor, now=now, notes=notes).apply_to(booking)
