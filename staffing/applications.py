import logging
from collections.abc import Callable
from datetime import datetime

from pydantic import BaseModel

from staffing.config import Settings
from staffing.database import LifecycleStore
from staffing.errors import InvalidInput, InvalidTransition
from staffing.models import (
    APPLICATION_TRANSITIONS,
    Application,
    ApplicationStatus,
    Booking,
    Decision,
    Organizer,
    Shift,
    Therapist,
)
from staffing.notifier import (
    ApplicationStatusPayload,
    ApplicationSubmittedPayload,
    BookingConfirmedPayload,
    NewApplicationPayload,
    NotificationOutbox,
    NotificationRequest,
    NotificationType,
    shift_date,
    shift_time,
)
from staffing.policy import Action, authorize

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]


class DecisionResult(BaseModel):
    application: Application
    booking: Booking | None = None


def require_application_transition(
    application: Application, target: ApplicationStatus
) -> None:
    if target not in APPLICATION_TRANSITIONS[application.status]:
        raise InvalidTransition(
            f"Cannot move application from {application.status} to {target}; "
            "only pending applications can change"
        )


class ApplicationService:
    """submit / withdraw / decide for shift applications."""

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
        self.settings = settings
        self.now_fn = now_fn

    async def submit(
        self, shift_id: str, therapist_id: str, message: str | None = None
    ) -> Application:
        therapist = self.store.get_therapist(therapist_id)
        shift = self.store.get_shift(shift_id)
        organizer = self.store.get_organizer(shift.organizer_id)

        application = self.store.create_application(
            shift_id, therapist_id, message=message, now=self.now_fn()
        )
        logger.info(
            "application %s submitted by therapist %s for shift %s",
            application.id,
            therapist_id,
            shift_id,
        )

        self.outbox.emit(
            NotificationRequest(
                type=NotificationType.APPLICATION_SUBMITTED,
                recipient=therapist.email,
                payload=ApplicationSubmittedPayload(
                    therapist_name=therapist.name,
                    shift_title=shift.title,
                    shift_date=shift_date(shift),
                    shift_time=shift_time(shift),
                    location=shift.location,
                    organizer_name=organizer.name,
                ),
            )
        )
        self.outbox.emit(
            NotificationRequest(
                type=NotificationType.NEW_APPLICATION,
                recipient=organizer.email,
                payload=NewApplicationPayload(
                    organizer_name=organizer.name,
                    therapist_name=therapist.name,
                    shift_title=shift.title,
                    shift_date=shift_date(shift),
                    message=message,
                ),
            )
        )
        return application

    async def withdraw(self, application_id: str, actor_therapist_id: str) -> Application:
        application = self.store.get_application(application_id)
        shift = self.store.get_shift(application.shift_id)
        authorize(
            Action.WITHDRAW_APPLICATION,
            actor_therapist_id,
            shift=shift,
            application=application,
        )
        require_application_transition(application, ApplicationStatus.WITHDRAWN)

        application = self.store.update_application_status(
            application_id,
            ApplicationStatus.WITHDRAWN,
            expected=ApplicationStatus.PENDING,
            now=self.now_fn(),
        )
        logger.info("application %s: pending -> withdrawn", application_id)
        return application

    async def decide(
        self,
        application_id: str,
        actor_organizer_id: str,
        outcome: Decision,
    ) -> DecisionResult:
        application = self.store.get_application(application_id)
        shift = self.store.get_shift(application.shift_id)
        authorize(
            Action.DECIDE_APPLICATION,
            actor_organizer_id,
            shift=shift,
            application=application,
        )
        try:
            outcome = Decision(outcome)
        except ValueError:
            raise InvalidInput(f"Unknown decision {outcome!r}") from None
        target = (
            ApplicationStatus.ACCEPTED
            if outcome == Decision.ACCEPT
            else ApplicationStatus.REJECTED
        )
        require_application_transition(application, target)

        therapist = self.store.get_therapist(application.therapist_id)
        organizer = self.store.get_organizer(shift.organizer_id)
        now = self.now_fn()

        booking = None
        if outcome == Decision.ACCEPT:
            application, booking, shift = self.store.accept_application(
                application_id, actor_id=actor_organizer_id, now=now
            )
            logger.info(
                "application %s: pending -> accepted, booking %s confirmed, shift %s filled",
                application_id,
                booking.id,
                shift.id,
            )
        else:
            application = self.store.update_application_status(
                application_id,
                ApplicationStatus.REJECTED,
                expected=ApplicationStatus.PENDING,
                now=now,
            )
            logger.info("application %s: pending -> rejected", application_id)

        self.outbox.emit(
            NotificationRequest(
                type=NotificationType.APPLICATION_STATUS,
                recipient=therapist.email,
                payload=ApplicationStatusPayload(
                    therapist_name=therapist.name,
                    shift_title=shift.title,
                    shift_date=shift_date(shift),
                    shift_time=shift_time(shift),
                    location=shift.location,
                    status=application.status.value,
                ),
            )
        )
        if booking is not None and self.settings.notify_booking_confirmed:
            self._emit_booking_confirmed(shift, therapist, organizer)

        return DecisionResult(application=application, booking=booking)

    def _emit_booking_confirmed(
        self, shift: Shift, therapist: Therapist, organizer: Organizer
    ) -> None:
        parties = [
            (therapist.email, therapist.name, "therapist", organizer.name),
            (organizer.email, organizer.name, "organizer", therapist.name),
        ]
        for email, name, recipient_type, other_party in parties:
            self.outbox.emit(
                NotificationRequest(
                    type=NotificationType.BOOKING_CONFIRMED,
                    recipient=email,
                    payload=BookingConfirmedPayload(
                        recipient_name=name,
                        recipient_type=recipient_type,
                        shift_title=shift.title,
                        shift_date=shift_date(shift),
                        shift_time=shift_time(shift),
                        location=shift.location,
                        address=shift.address,
                        hourly_rate=shift.hourly_rate,
                        other_party_name=other_party,
                    ),
                )
            )
