import logging
import math
from collections.abc import Callable
from datetime import datetime

from staffing.config import Settings
from staffing.database import LifecycleStore
from staffing.errors import InvalidInput, InvalidTransition
from staffing.models import (
    BOOKING_TRANSITIONS,
    Booking,
    BookingEvent,
    BookingStatus,
    ShiftStatus,
    calculate_payout,
)
from staffing.policy import Action, authorize

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]


def require_booking_transition(booking: Booking, target: BookingStatus) -> None:
    if target not in BOOKING_TRANSITIONS[booking.status]:
        raise InvalidTransition(
            f"Cannot move booking from {booking.status} to {target}"
        )


class BookingService:
    """
    check-in / check-out / complete / cancel for confirmed bookings.
    Bookings themselves are created when an application is accepted.
    """

    def __init__(
        self,
        store: LifecycleStore,
        settings: Settings,
        *,
        now_fn: NowFn,
    ) -> None:
        self.store = store
        self.settings = settings
        self.now_fn = now_fn

    async def check_in(self, booking_id: str, actor_therapist_id: str) -> Booking:
        booking = self.store.get_booking(booking_id)
        shift = self.store.get_shift(booking.shift_id)
        actor_type = authorize(Action.CHECK_IN, actor_therapist_id, shift=shift, booking=booking)
        require_booking_transition(booking, BookingStatus.CHECKED_IN)

        now = self.now_fn()
        booking = self.store.update_booking_status(
            booking_id,
            BookingStatus.CHECKED_IN,
            expected={BookingStatus.CONFIRMED},
            fields={"check_in_time": now},
            actor_id=actor_therapist_id,
            actor_type=actor_type,
            details="Therapist checked in",
            now=now,
        )
        logger.info("booking %s: confirmed -> checked_in", booking_id)
        return booking

    async def check_out(
        self, booking_id: str, actor_therapist_id: str, hours_worked: float
    ) -> Booking:
        booking = self.store.get_booking(booking_id)
        shift = self.store.get_shift(booking.shift_id)
        actor_type = authorize(Action.CHECK_OUT, actor_therapist_id, shift=shift, booking=booking)
        require_booking_transition(booking, BookingStatus.CHECKED_OUT)

        if not math.isfinite(hours_worked) or hours_worked <= 0:
            raise InvalidInput("hours_worked must be greater than zero")
        if hours_worked > self.settings.max_hours_per_booking:
            raise InvalidInput(
                f"hours_worked cannot exceed {self.settings.max_hours_per_booking:g}"
            )

        payout = calculate_payout(
            hours_worked, shift.hourly_rate, self.settings.platform_fee_percent
        )
        now = self.now_fn()
        booking = self.store.update_booking_status(
            booking_id,
            BookingStatus.CHECKED_OUT,
            expected={BookingStatus.CHECKED_IN},
            fields={"check_out_time": now, **payout.model_dump()},
            actor_id=actor_therapist_id,
            actor_type=actor_type,
            details=(
                f"Therapist checked out. Hours: {hours_worked:g}, "
                f"payout: ${payout.therapist_payout:.2f}"
            ),
            now=now,
        )
        logger.info(
            "booking %s: checked_in -> checked_out (%.2fh, payout %.2f)",
            booking_id,
            hours_worked,
            payout.therapist_payout,
        )
        return booking

    async def complete(self, booking_id: str, actor_organizer_id: str) -> Booking:
        booking = self.store.get_booking(booking_id)
        shift = self.store.get_shift(booking.shift_id)
        actor_type = authorize(
            Action.COMPLETE_BOOKING, actor_organizer_id, shift=shift, booking=booking
        )
        if booking.status == BookingStatus.COMPLETED:
            logger.debug("booking %s already completed", booking_id)
            return booking
        require_booking_transition(booking, BookingStatus.COMPLETED)

        try:
            booking = self.store.update_booking_status(
                booking_id,
                BookingStatus.COMPLETED,
                expected={BookingStatus.CHECKED_OUT},
                actor_id=actor_organizer_id,
                actor_type=actor_type,
                details="Booking completed",
                now=self.now_fn(),
            )
        except InvalidTransition:
            # a concurrent complete got there first
            current = self.store.get_booking(booking_id)
            if current.status == BookingStatus.COMPLETED:
                return current
            raise

        self.store.update_shift_status(shift.id, ShiftStatus.COMPLETED)
        logger.info(
            "booking %s: checked_out -> completed, shift %s completed", booking_id, shift.id
        )
        return booking

    async def cancel(self, booking_id: str, actor_id: str, reason: str) -> Booking:
        booking = self.store.get_booking(booking_id)
        shift = self.store.get_shift(booking.shift_id)
        actor_type = authorize(Action.CANCEL_BOOKING, actor_id, shift=shift, booking=booking)
        require_booking_transition(booking, BookingStatus.CANCELLED)

        reason = (reason or "").strip()
        if not reason:
            raise InvalidInput("A cancellation reason is required")

        now = self.now_fn()
        previous = booking.status
        booking = self.store.update_booking_status(
            booking_id,
            BookingStatus.CANCELLED,
            expected={BookingStatus.CONFIRMED, BookingStatus.CHECKED_IN},
            fields={"cancellation_reason": reason},
            actor_id=actor_id,
            actor_type=actor_type,
            details=f"Cancelled by {actor_type}: {reason}",
            now=now,
        )

        if now < shift.start_time:
            shift = self.store.update_shift_status(shift.id, ShiftStatus.OPEN)
        else:
            shift = self.store.update_shift_status(shift.id, ShiftStatus.CANCELLED)
        logger.info(
            "booking %s: %s -> cancelled by %s, shift %s now %s",
            booking_id,
            previous,
            actor_type,
            shift.id,
            shift.status,
        )
        return booking

    async def timeline(self, booking_id: str, actor_id: str) -> list[BookingEvent]:
        booking = self.store.get_booking(booking_id)
        shift = self.store.get_shift(booking.shift_id)
        authorize(Action.VIEW_BOOKING, actor_id, shift=shift, booking=booking)
        return self.store.booking_events(booking_id)
