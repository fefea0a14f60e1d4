"""
Notification dispatch.

Every notification type has exactly one handler that turns its payload into
an email. ``NotificationDispatcher.send`` never raises: transport errors,
timeouts and mismatched payloads all come back as ``False`` and a log line.
The state change that produced a notification has already been written by
the time it is sent, so a failed send never undoes a transition.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import StrEnum
from typing import Literal, Protocol

import httpx
from pydantic import BaseModel, ValidationError

from staffing.config import Settings
from staffing.models import DeliveryOutcome, Shift

logger = logging.getLogger(__name__)

NowFn = Callable[[], datetime]


class NotificationType(StrEnum):
    APPLICATION_SUBMITTED = "application_submitted"
    APPLICATION_STATUS = "application_status"
    NEW_APPLICATION = "new_application"
    BOOKING_CONFIRMED = "booking_confirmed"
    SHIFT_REMINDER = "shift_reminder"
    CREDENTIALS_VERIFIED = "credentials_verified"


class ApplicationSubmittedPayload(BaseModel):
    therapist_name: str
    shift_title: str
    shift_date: str
    shift_time: str
    location: str
    organizer_name: str


class ApplicationStatusPayload(BaseModel):
    therapist_name: str
    shift_title: str
    shift_date: str
    shift_time: str
    location: str
    status: Literal["accepted", "rejected"]


class NewApplicationPayload(BaseModel):
    organizer_name: str
    therapist_name: str
    shift_title: str
    shift_date: str
    message: str | None = None


class BookingConfirmedPayload(BaseModel):
    recipient_name: str
    recipient_type: Literal["therapist", "organizer"]
    shift_title: str
    shift_date: str
    shift_time: str
    location: str
    address: str
    hourly_rate: float
    other_party_name: str


class ShiftReminderPayload(BaseModel):
    therapist_name: str
    shift_title: str
    shift_date: str
    shift_time: str
    location: str
    address: str
    organizer_name: str
    hours_until: int


class CredentialsVerifiedPayload(BaseModel):
    therapist_name: str


class NotificationRequest(BaseModel):
    type: NotificationType
    recipient: str
    payload: BaseModel


class RenderedEmail(BaseModel):
    subject: str
    text: str


def shift_date(shift: Shift) -> str:
    return shift.start_time.strftime("%a, %b %d, %Y")


def shift_time(shift: Shift) -> str:
    return f"{shift.start_time:%H:%M} - {shift.end_time:%H:%M}"


Handler = Callable[[BaseModel, str], RenderedEmail]

_HANDLERS: dict[NotificationType, tuple[type[BaseModel], Handler]] = {}


def _handles(notification_type: NotificationType, payload_model: type[BaseModel]):
    def register(fn: Handler) -> Handler:
        _HANDLERS[notification_type] = (payload_model, fn)
        return fn

    return register


@_handles(NotificationType.APPLICATION_SUBMITTED, ApplicationSubmittedPayload)
def _application_submitted(p: ApplicationSubmittedPayload, app_url: str) -> RenderedEmail:
    return RenderedEmail(
        subject=f"Application Submitted - {p.shift_title}",
        text=(
            f"Hi {p.therapist_name}, your application has been submitted.\n\n"
            f"{p.shift_title} with {p.organizer_name}\n"
            f"{p.shift_date}, {p.shift_time}\n{p.location}\n\n"
            f"Track it at {app_url}/therapist/applications"
        ),
    )


@_handles(NotificationType.APPLICATION_STATUS, ApplicationStatusPayload)
def _application_status(p: ApplicationStatusPayload, app_url: str) -> RenderedEmail:
    accepted = p.status == "accepted"
    if accepted:
        outcome = "Congratulations, your application was accepted."
        link = f"{app_url}/therapist/bookings"
    else:
        outcome = "Unfortunately your application was not selected this time."
        link = f"{app_url}/therapist/shifts"
    return RenderedEmail(
        subject=f"Application {'Accepted' if accepted else 'Update'} - {p.shift_title}",
        text=(
            f"Hi {p.therapist_name},\n\n{outcome}\n\n"
            f"{p.shift_title}\n{p.shift_date}, {p.shift_time}\n{p.location}\n\n"
            f"{link}"
        ),
    )


@_handles(NotificationType.NEW_APPLICATION, NewApplicationPayload)
def _new_application(p: NewApplicationPayload, app_url: str) -> RenderedEmail:
    note = f'\n\nMessage: "{p.message}"' if p.message else ""
    return RenderedEmail(
        subject=f"New Application - {p.shift_title}",
        text=(
            f"Hi {p.organizer_name}, you have a new application for your shift.\n\n"
            f"{p.therapist_name} applied to {p.shift_title} on {p.shift_date}.{note}\n\n"
            f"Review it at {app_url}/organizer/applications"
        ),
    )


@_handles(NotificationType.BOOKING_CONFIRMED, BookingConfirmedPayload)
def _booking_confirmed(p: BookingConfirmedPayload, app_url: str) -> RenderedEmail:
    counterpart = "Organizer" if p.recipient_type == "therapist" else "Therapist"
    return RenderedEmail(
        subject=f"Booking Confirmed - {p.shift_title}",
        text=(
            f"Hi {p.recipient_name}, your booking is confirmed.\n\n"
            f"{p.shift_title}\n{p.shift_date}, {p.shift_time}\n"
            f"{p.location}\n{p.address}\n"
            f"Rate: ${p.hourly_rate:.2f}/hr\n{counterpart}: {p.other_party_name}\n\n"
            f"{app_url}/{p.recipient_type}/bookings"
        ),
    )


@_handles(NotificationType.SHIFT_REMINDER, ShiftReminderPayload)
def _shift_reminder(p: ShiftReminderPayload, app_url: str) -> RenderedEmail:
    return RenderedEmail(
        subject=f"Reminder: Shift in {p.hours_until} hours - {p.shift_title}",
        text=(
            f"Hi {p.therapist_name}, your shift starts in {p.hours_until} hours.\n\n"
            f"{p.shift_title} with {p.organizer_name}\n"
            f"{p.shift_date}, {p.shift_time}\n{p.location}\n{p.address}\n\n"
            f"{app_url}/therapist/bookings"
        ),
    )


@_handles(NotificationType.CREDENTIALS_VERIFIED, CredentialsVerifiedPayload)
def _credentials_verified(p: CredentialsVerifiedPayload, app_url: str) -> RenderedEmail:
    return RenderedEmail(
        subject="Your Credentials Have Been Verified - TherapistConnect",
        text=(
            f"Hi {p.therapist_name}, your credentials have been reviewed and verified. "
            f"You can now apply to shifts.\n\n{app_url}/therapist/shifts"
        ),
    )


_missing = set(NotificationType) - set(_HANDLERS)
if _missing:
    raise RuntimeError(f"no notification handler for: {sorted(_missing)}")


class EmailTransport(Protocol):
    async def deliver(self, to: str, subject: str, text: str) -> bool: ...

    async def aclose(self) -> None: ...


class LoggingTransport:
    """Used when no email API is configured; nothing leaves the process."""

    async def deliver(self, to: str, subject: str, text: str) -> bool:
        logger.info("email not sent (transport not configured): to=%s subject=%r", to, subject)
        return False

    async def aclose(self) -> None:
        return None


class HttpEmailTransport:
    def __init__(
        self,
        api_url: str,
        api_key: str,
        sender: str,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_url = api_url
        self._sender = sender
        self._client = client or httpx.AsyncClient()
        self._headers = {"Authorization": f"Bearer {api_key}"}

    async def deliver(self, to: str, subject: str, text: str) -> bool:
        response = await self._client.post(
            self._api_url,
            headers=self._headers,
            json={"from": self._sender, "to": [to], "subject": subject, "text": text},
        )
        response.raise_for_status()
        return True

    async def aclose(self) -> None:
        await self._client.aclose()


def build_transport(settings: Settings) -> EmailTransport:
    if not settings.email_api_key:
        return LoggingTransport()
    return HttpEmailTransport(
        settings.email_api_url, settings.email_api_key, settings.email_from
    )


class NotificationDispatcher:
    def __init__(
        self,
        transport: EmailTransport,
        *,
        app_url: str,
        timeout_seconds: float,
    ) -> None:
        self.transport = transport
        self._app_url = app_url.rstrip("/")
        self._timeout = timeout_seconds

    async def send(
        self,
        notification_type: NotificationType | str,
        recipient: str,
        payload: BaseModel | dict,
    ) -> bool:
        try:
            notification_type = NotificationType(notification_type)
        except ValueError:
            logger.error("unknown notification type %r for %s", notification_type, recipient)
            return False

        payload_model, handler = _HANDLERS[notification_type]
        try:
            if isinstance(payload, BaseModel):
                payload = payload.model_dump()
            parsed = payload_model.model_validate(payload)
        except ValidationError as e:
            logger.error(
                "invalid %s payload for %s: %s", notification_type, recipient, e
            )
            return False

        try:
            email = handler(parsed, self._app_url)
            sent = await asyncio.wait_for(
                self.transport.deliver(recipient, email.subject, email.text),
                timeout=self._timeout,
            )
        except TimeoutError:
            logger.warning(
                "%s to %s timed out after %.1fs", notification_type, recipient, self._timeout
            )
            return False
        except Exception as e:
            logger.error("failed to send %s to %s: %s", notification_type, recipient, e)
            return False

        if sent:
            logger.info("%s sent to %s", notification_type, recipient)
        else:
            logger.debug("%s to %s was not sent", notification_type, recipient)
        return bool(sent)


class NotificationOutbox:
    """
    Fire-and-forget front for the dispatcher.

    ``emit`` schedules the send as a background task and returns immediately;
    the outcome of each send is appended to ``outcomes`` when it finishes;
    only the most recent ``max_outcomes`` are kept.
    ``drain`` waits for anything still in flight.
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        *,
        now_fn: NowFn,
        max_outcomes: int = 1000,
    ) -> None:
        self.dispatcher = dispatcher
        self.now_fn = now_fn
        self.outcomes: deque[DeliveryOutcome] = deque(maxlen=max_outcomes)
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def emit(self, request: NotificationRequest) -> Awaitable[bool]:
        task = asyncio.create_task(self._deliver(request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, request: NotificationRequest) -> bool:
        sent = await self.dispatcher.send(request.type, request.recipient, request.payload)
        self.outcomes.append(
            DeliveryOutcome(
                notification_type=request.type,
                recipient=request.recipient,
                sent=sent,
                attempted_at=self.now_fn(),
            )
        )
        return sent

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
