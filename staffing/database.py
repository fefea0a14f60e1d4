import itertools
import threading
import uuid
from collections.abc import Iterable, MutableMapping
from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from staffing.errors import Conflict, InvalidTransition, NotFound
from staffing.models import (
    ActorType,
    Application,
    ApplicationStatus,
    Booking,
    BookingEvent,
    BookingStatus,
    Organizer,
    Shift,
    ShiftStatus,
    Therapist,
)

K = TypeVar("K")
V = TypeVar("V")
M = TypeVar("M", bound=BaseModel)

ACTIVE_BOOKING_STATUSES = frozenset({BookingStatus.CONFIRMED, BookingStatus.CHECKED_IN})


def new_id() -> str:
    return uuid.uuid4().hex


class InMemoryKeyValueDatabase(Generic[K, V]):
    """
    Simple in-memory key/value database guarded by a re-entrant lock.
    Callers that need a read-check-write to be atomic hold ``lock``.
    """

    def __init__(self) -> None:
        self._store: MutableMapping[K, V] = {}
        self.lock = threading.RLock()

    def put(self, key: K, value: V) -> None:
        with self.lock:
            self._store[key] = value

    def get(self, key: K) -> V | None:
        return self._store.get(key)

    def all(self) -> list[V]:
        with self.lock:
            return list(self._store.values())

    def add_if_absent(self, key: K, value: V) -> bool:
        """
        Atomically store value under key unless the key is already present.
        Returns True if the value was stored.
        """
        with self.lock:
            if key in self._store:
                return False
            self._store[key] = value
            return True


class LifecycleStore:
    """
    Owns shifts, applications and bookings, and is the only code that
    changes them. Reads hand out copies; every status write is a
    compare-and-set against the status the caller last saw, performed
    under the database lock, so two writers racing on the same row cannot
    both win.
    """

    def __init__(self, db: InMemoryKeyValueDatabase[str, Any] | None = None) -> None:
        self.db: InMemoryKeyValueDatabase[str, Any] = db or InMemoryKeyValueDatabase()
        self._event_seq = itertools.count(1)

    def put_therapist(self, therapist: Therapist) -> None:
        self.db.put(f"therapist:{therapist.id}", therapist.model_copy())

    def put_organizer(self, organizer: Organizer) -> None:
        self.db.put(f"organizer:{organizer.id}", organizer.model_copy())

    def put_shift(self, shift: Shift) -> None:
        self.db.put(f"shift:{shift.id}", shift.model_copy())

    def get_therapist(self, therapist_id: str) -> Therapist:
        return self._load(f"therapist:{therapist_id}", Therapist, "Therapist")

    def get_organizer(self, organizer_id: str) -> Organizer:
        return self._load(f"organizer:{organizer_id}", Organizer, "Organizer")

    def get_shift(self, shift_id: str) -> Shift:
        return self._load(f"shift:{shift_id}", Shift, "Shift")

    def get_application(self, application_id: str) -> Application:
        return self._load(f"application:{application_id}", Application, "Application")

    def get_booking(self, booking_id: str) -> Booking:
        return self._load(f"booking:{booking_id}", Booking, "Booking")

    def get_application_by_shift_and_therapist(
        self, shift_id: str, therapist_id: str
    ) -> Application | None:
        """Pending application for the pair if there is one, else the latest."""
        matches = [
            a
            for a in self._of_type(Application)
            if a.shift_id == shift_id and a.therapist_id == therapist_id
        ]
        if not matches:
            return None
        pending = [a for a in matches if a.status == ApplicationStatus.PENDING]
        chosen = pending[0] if pending else max(matches, key=lambda a: a.created_at)
        return chosen.model_copy()

    def list_active_bookings(self) -> list[Booking]:
        return [
            b.model_copy()
            for b in self._of_type(Booking)
            if b.status in ACTIVE_BOOKING_STATUSES
        ]

    def booking_events(self, booking_id: str) -> list[BookingEvent]:
        events = [e for e in self._of_type(BookingEvent) if e.booking_id == booking_id]
        return [e.model_copy() for e in sorted(events, key=lambda e: e.sequence)]

    def create_application(
        self,
        shift_id: str,
        therapist_id: str,
        *,
        message: str | None,
        now: datetime,
    ) -> Application:
        with self.db.lock:
            shift = self.db.get(f"shift:{shift_id}")
            if not isinstance(shift, Shift) or shift.status != ShiftStatus.OPEN:
                raise NotFound("Shift not found or no longer open")

            existing = self.get_application_by_shift_and_therapist(shift_id, therapist_id)
            if existing is not None and not existing.is_terminal:
                raise Conflict("A pending application already exists for this shift")

            application = Application(
                id=new_id(),
                shift_id=shift_id,
                therapist_id=therapist_id,
                message=message,
                created_at=now,
                updated_at=now,
            )
            self.db.put(f"application:{application.id}", application)
            return application.model_copy()

    def update_application_status(
        self,
        application_id: str,
        status: ApplicationStatus,
        *,
        expected: ApplicationStatus,
        now: datetime,
    ) -> Application:
        with self.db.lock:
            application = self._current(f"application:{application_id}", Application, "Application")
            if application.status != expected:
                raise InvalidTransition(
                    f"Application is {application.status}, expected {expected}"
                )
            application = application.model_copy(update={"status": status, "updated_at": now})
            self.db.put(f"application:{application_id}", application)
            return application.model_copy()

    def accept_application(
        self, application_id: str, *, actor_id: str, now: datetime
    ) -> tuple[Application, Booking, Shift]:
        """
        Flip a pending application to accepted, create its booking and mark
        the shift filled, all under one lock acquisition.
        """
        with self.db.lock:
            application = self._current(f"application:{application_id}", Application, "Application")
            if application.status != ApplicationStatus.PENDING:
                raise InvalidTransition(
                    f"Application is {application.status}, expected {ApplicationStatus.PENDING}"
                )
            shift = self._current(f"shift:{application.shift_id}", Shift, "Shift")
            if shift.status != ShiftStatus.OPEN:
                raise Conflict("Shift is no longer available")

            application = application.model_copy(
                update={"status": ApplicationStatus.ACCEPTED, "updated_at": now}
            )
            booking = self.create_booking(application, actor_id=actor_id, now=now)
            shift = shift.model_copy(update={"status": ShiftStatus.FILLED})

            self.db.put(f"application:{application.id}", application)
            self.db.put(f"shift:{shift.id}", shift)
            return application.model_copy(), booking, shift.model_copy()

    def create_booking(
        self, application: Application, *, actor_id: str, now: datetime
    ) -> Booking:
        if application.status != ApplicationStatus.ACCEPTED:
            raise InvalidTransition("Bookings can only be created from accepted applications")
        with self.db.lock:
            booking = Booking(
                id=new_id(),
                application_id=application.id,
                shift_id=application.shift_id,
                therapist_id=application.therapist_id,
                created_at=now,
                updated_at=now,
            )
            self.db.put(f"booking:{booking.id}", booking)
            self._append_event(
                booking.id,
                "created",
                actor_id=actor_id,
                actor_type=ActorType.ORGANIZER,
                previous=None,
                new=BookingStatus.CONFIRMED,
                details="Application accepted",
                now=now,
            )
            return booking.model_copy()

    def update_booking_status(
        self,
        booking_id: str,
        status: BookingStatus,
        *,
        expected: Iterable[BookingStatus],
        fields: dict[str, Any] | None = None,
        actor_id: str,
        actor_type: ActorType,
        details: str | None = None,
        now: datetime,
    ) -> Booking:
        """
        Move a booking to ``status`` if it is still in one of ``expected``.
        ``fields`` are written in the same step, together with the timeline
        event, so a reader never sees the new status without them.
        """
        expected = frozenset(expected)
        with self.db.lock:
            booking = self._current(f"booking:{booking_id}", Booking, "Booking")
            previous = booking.status
            if previous not in expected:
                raise InvalidTransition(
                    f"Booking is {previous}, expected one of {sorted(expected)}"
                )
            update = dict(fields or {})
            update.update(status=status, updated_at=now)
            booking = booking.model_copy(update=update)
            self.db.put(f"booking:{booking_id}", booking)
            self._append_event(
                booking_id,
                status.value,
                actor_id=actor_id,
                actor_type=actor_type,
                previous=previous,
                new=status,
                details=details,
                now=now,
            )
            return booking.model_copy()

    def update_shift_status(self, shift_id: str, status: ShiftStatus) -> Shift:
        with self.db.lock:
            shift = self._current(f"shift:{shift_id}", Shift, "Shift")
            shift = shift.model_copy(update={"status": status})
            self.db.put(f"shift:{shift_id}", shift)
            return shift.model_copy()

    def claim_reminder(self, booking_id: str, tier_hours: int, *, now: datetime) -> bool:
        """
        Record that the ``tier_hours`` reminder for a booking went out.
        Returns False if it was already recorded.
        """
        return self.db.add_if_absent(f"reminder:{booking_id}:{tier_hours}", now)

    def _append_event(
        self,
        booking_id: str,
        event_type: str,
        *,
        actor_id: str,
        actor_type: ActorType,
        previous: BookingStatus | None,
        new: BookingStatus,
        details: str | None,
        now: datetime,
    ) -> None:
        event = BookingEvent(
            id=new_id(),
            sequence=next(self._event_seq),
            booking_id=booking_id,
            event_type=event_type,
            actor_id=actor_id,
            actor_type=actor_type,
            previous_status=previous,
            new_status=new,
            details=details,
            created_at=now,
        )
        self.db.put(f"event:{event.id}", event)

    def _current(self, key: str, model: type[M], label: str) -> M:
        value = self.db.get(key)
        if not isinstance(value, model):
            raise NotFound(f"{label} not found")
        return value

    def _load(self, key: str, model: type[M], label: str) -> M:
        return self._current(key, model, label).model_copy()

    def _of_type(self, model: type[M]) -> list[M]:
        return [v for v in self.db.all() if isinstance(v, model)]
