"""
Domain models for shifts, applications and bookings.
"""

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator


class ShiftStatus(StrEnum):
    OPEN = "open"
    FILLED = "filled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class ApplicationStatus(StrEnum):
    PENDING = "pending"
    WITHDRAWN = "withdrawn"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class BookingStatus(StrEnum):
    CONFIRMED = "confirmed"
    CHECKED_IN = "checked_in"
    CHECKED_OUT = "checked_out"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Decision(StrEnum):
    ACCEPT = "accept"
    REJECT = "reject"


class ActorType(StrEnum):
    THERAPIST = "therapist"
    ORGANIZER = "organizer"


# legal edges; anything missing from a value set is an invalid transition
APPLICATION_TRANSITIONS: dict[ApplicationStatus, frozenset[ApplicationStatus]] = {
    ApplicationStatus.PENDING: frozenset(
        {
            ApplicationStatus.WITHDRAWN,
            ApplicationStatus.ACCEPTED,
            ApplicationStatus.REJECTED,
        }
    ),
    ApplicationStatus.WITHDRAWN: frozenset(),
    ApplicationStatus.ACCEPTED: frozenset(),
    ApplicationStatus.REJECTED: frozenset(),
}

BOOKING_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.CONFIRMED: frozenset(
        {BookingStatus.CHECKED_IN, BookingStatus.CANCELLED}
    ),
    BookingStatus.CHECKED_IN: frozenset(
        {BookingStatus.CHECKED_OUT, BookingStatus.CANCELLED}
    ),
    BookingStatus.CHECKED_OUT: frozenset({BookingStatus.COMPLETED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


class Therapist(BaseModel):
    id: str
    name: str
    email: str


class Organizer(BaseModel):
    id: str
    name: str  # organization name shown in emails
    email: str


class Shift(BaseModel):
    id: str
    organizer_id: str
    title: str
    start_time: datetime
    end_time: datetime
    location: str
    address: str = ""
    hourly_rate: float = Field(gt=0)
    status: ShiftStatus = ShiftStatus.OPEN

    @field_validator("start_time", "end_time")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


class Application(BaseModel):
    id: str
    shift_id: str
    therapist_id: str
    status: ApplicationStatus = ApplicationStatus.PENDING
    message: str | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return not APPLICATION_TRANSITIONS[self.status]


class Booking(BaseModel):
    id: str
    application_id: str
    shift_id: str
    therapist_id: str
    status: BookingStatus = BookingStatus.CONFIRMED
    check_in_time: datetime | None = None
    check_out_time: datetime | None = None
    # payout fields stay None until checked_out, then never change
    hours_worked: float | None = None
    therapist_payout: float | None = None
    platform_fee: float | None = None
    amount_due: float | None = None
    cancellation_reason: str | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return not BOOKING_TRANSITIONS[self.status]


class BookingEvent(BaseModel):
    id: str
    sequence: int
    booking_id: str
    event_type: str
    actor_id: str
    actor_type: ActorType
    previous_status: BookingStatus | None = None
    new_status: BookingStatus
    details: str | None = None
    created_at: datetime


class Payout(BaseModel):
    hours_worked: float
    therapist_payout: float
    platform_fee: float
    amount_due: float


def calculate_payout(
    hours_worked: float, hourly_rate: float, platform_fee_percent: float
) -> Payout:
    """
    Therapist earns 100% of the posted rate; the platform fee is charged
    on top to the organizer.
    """
    therapist_payout = round(hours_worked * hourly_rate, 2)
    platform_fee = round(therapist_payout * platform_fee_percent / 100, 2)
    return Payout(
        hours_worked=hours_worked,
        therapist_payout=therapist_payout,
        platform_fee=platform_fee,
        amount_due=round(therapist_payout + platform_fee, 2),
    )


class DeliveryOutcome(BaseModel):
    notification_type: str
    recipient: str
    sent: bool
    attempted_at: datetime
