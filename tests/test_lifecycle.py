"""
Tests for the booking lifecycle state machine.
"""

import pendulum
import pytest

from slotbooker.domain.exceptions import TransitionError, ValidationError
from slotbooker.domain.lifecycle import BookingLifecycleManager, parse_action, parse_actor
from slotbooker.domain.models import (
    Actor,
    Booking,
    BookingAction,
    BookingRequest,
    BookingStatus,
    Listing,
    TimeInterval,
)

NOW = pendulum.datetime(2025, 1, 1, 8, 0, tz="Europe/Berlin")


def _booking(status: BookingStatus = BookingStatus.PENDING) -> Booking:
    start = pendulum.parse("2025-01-06 09:00", tz="Europe/Berlin")
    return Booking(
        id="b1",
        listing_id="l1",
        provider_id="p1",
        customer_id="c1",
        interval=TimeInterval.from_duration(start, 60),
        created_at=NOW,
        status=status,
    )


class TestBookingLifecycleManager:
    """Tests for BookingLifecycleManager."""

    def test_new_booking_is_pending(self):
        listing = Listing(id="l1", provider_id="p1", title="Massage")
        request = BookingRequest(
            listing_id="l1",
            customer_id="c1",
            start=pendulum.parse("2025-01-06 09:00", tz="Europe/Berlin"),
        )

        booking = BookingLifecycleManager().new_booking(
            booking_id="b1",
            request=request,
            listing=listing,
            interval=TimeInterval.from_duration(request.start, 60),
            now=NOW,
        )

        assert booking.status == BookingStatus.PENDING
        assert booking.provider_id == "p1"
        assert booking.service_name == "Massage"
        assert booking.created_at == NOW
        assert booking.confirmed_at is None

    def test_confirm_stamps_confirmed_at(self):
        confirmed = BookingLifecycleManager().apply(_booking(), BookingAction.CONFIRM, now=NOW)

        assert confirmed.status == BookingStatus.CONFIRMED
        assert confirmed.confirmed_at == NOW

    def test_pending_to_completed_fails(self):
        with pytest.raises(TransitionError, match="pending to completed"):
            BookingLifecycleManager().apply(_booking(), BookingAction.COMPLETE, now=NOW)

    def test_confirmed_to_no_show_has_no_completion_stamp(self):
        booking = _booking(BookingStatus.CONFIRMED)

        no_show = BookingLifecycleManager().apply(booking, BookingAction.NO_SHOW, now=NOW)

        assert no_show.status == BookingStatus.NO_SHOW
        assert no_show.completed_at is None
        assert no_show.cancelled_at is None

    def test_complete_stamps_completed_at(self):
        completed = BookingLifecycleManager().apply(
            _booking(BookingStatus.CONFIRMED), BookingAction.COMPLETE, now=NOW, notes="All good"
        )

        assert completed.completed_at == NOW
        assert completed.provider_notes == "All good"

    @pytest.mark.parametrize(
        "status",
        [BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW],
    )
    def test_terminal_states_reject_everything(self, status):
        manager = BookingLifecycleManager()
        for action in BookingAction:
            with pytest.raises(TransitionError):
                manager.plan(_booking(status), action, now=NOW)

    def test_rejected_transition_leaves_booking_untouched(self):
        booking = _booking()

        with pytest.raises(TransitionError):
            BookingLifecycleManager().apply(booking, BookingAction.NO_SHOW, now=NOW)

        assert booking.status == BookingStatus.PENDING

    def test_customer_may_cancel_pending(self):
        cancelled = BookingLifecycleManager().apply(
            _booking(), BookingAction.CANCEL, actor=Actor.CUSTOMER, now=NOW, notes="ignored"
        )

        assert cancelled.status == BookingStatus.CANCELLED
        assert cancelled.cancelled_at == NOW
        assert cancelled.provider_notes == ""

    def test_customer_cannot_cancel_confirmed(self):
        with pytest.raises(TransitionError, match="customers may only cancel"):
            BookingLifecycleManager().plan(
                _booking(BookingStatus.CONFIRMED), BookingAction.CANCEL, actor=Actor.CUSTOMER, now=NOW
            )

    def test_customer_cannot_confirm(self):
        with pytest.raises(TransitionError):
            BookingLifecycleManager().plan(_booking(), BookingAction.CONFIRM, actor=Actor.CUSTOMER, now=NOW)

    def test_plan_reports_from_and_to(self):
        transition = BookingLifecycleManager().plan(_booking(BookingStatus.CONFIRMED), BookingAction.CANCEL, now=NOW)

        assert transition.from_status == BookingStatus.CONFIRMED
        assert transition.to_status == BookingStatus.CANCELLED
        assert transition.stamps == {"cancelled_at": NOW}

    def test_action_given_by_name(self):
        transition = BookingLifecycleManager().plan(_booking(), "confirm", now=NOW)

        assert transition.to_status == BookingStatus.CONFIRMED

    def test_unknown_action(self):
        with pytest.raises(ValidationError, match="Unknown booking action"):
            BookingLifecycleManager().plan(_booking(), "reschedule", now=NOW)

    def test_parse_actor(self):
        assert parse_actor("customer") == Actor.CUSTOMER
        assert parse_action(BookingAction.NO_SHOW) == BookingAction.NO_SHOW
        with pytest.raises(ValidationError, match="Unknown actor"):
            parse_actor("admin")
