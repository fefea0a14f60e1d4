"""
Shift reminders for upcoming bookings.

``ReminderScheduler.due_reminders`` is meant to be called periodically by a
cron job. Each (booking, tier) pair is claimed in the store before its
reminder is emitted, so calling it again with the same clock sends nothing
new.
"""

import logging
import math
from collections.abc import Callable
from datetime import UTC, datetime

from pydantic import BaseModel

from staffing.config import Settings
from staffing.database import LifecycleStore
from staffing.errors import NotFound
from staffing.models import Booking, Shift
from staffing.notifier import (
    NotificationOutbox,
    NotificationRequest,
    NotificationType,
    ShiftReminderPayload,
    shift_date,
    shift_time,
)

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]


class DueReminder(BaseModel):
    booking: Booking
    tier_hours: int
    hours_until: float


def hours_until(shift: Shift, now: datetime) -> float:
    return (shift.start_time - now).total_seconds() / 3600


class ReminderScheduler:
    def __init__(
        self,
        store: LifecycleStore,
        outbox: NotificationOutbox,
        settings: Settings,
        *,
        now_fn: NowFn,
    ) -> None:
        self.store = store
        self.outbox = outbox
        self.tiers = sorted(settings.reminder_tiers_hours, reverse=True)
        self.now_fn = now_fn

    def tier_for(self, remaining_hours: float) -> int | None:
        """Smallest tier that still contains ``remaining_hours``."""
        if remaining_hours <= 0:
            return None
        containing = [tier for tier in self.tiers if remaining_hours <= tier]
        return min(containing) if containing else None

    async def due_reminders(self, now: datetime | None = None) -> list[DueReminder]:
        now = now or self.now_fn()
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        due: list[DueReminder] = []

        for booking in self.store.list_active_bookings():
            try:
                shift = self.store.get_shift(booking.shift_id)
                remaining = hours_until(shift, now)
                tier = self.tier_for(remaining)
                if tier is None:
                    continue
                therapist = self.store.get_therapist(booking.therapist_id)
                organizer = self.store.get_organizer(shift.organizer_id)
            except NotFound as e:
                logger.warning("skipping reminder for booking %s: %s", booking.id, e.detail)
                continue

            # wider tiers the booking is already inside must not fire later
            for wider in self.tiers:
                if wider > tier:
                    self.store.claim_reminder(booking.id, wider, now=now)
            if not self.store.claim_reminder(booking.id, tier, now=now):
                continue

            self.outbox.emit(
                NotificationRequest(
                    type=NotificationType.SHIFT_REMINDER,
                    recipient=therapist.email,
                    payload=ShiftReminderPayload(
                        therapist_name=therapist.name,
                        shift_title=shift.title,
                        shift_date=shift_date(shift),
                        shift_time=shift_time(shift),
                        location=shift.location,
                        address=shift.address,
                        organizer_name=organizer.name,
                        hours_until=math.ceil(remaining),
                    ),
                )
            )
            due.append(DueReminder(booking=booking, tier_hours=tier, hours_until=remaining))

        if due:
            logger.info("queued %d shift reminder(s)", len(due))
        return due
