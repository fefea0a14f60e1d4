"""
Who may perform which transition.

Both transition services call ``authorize`` before touching the store, so
ownership rules live here and nowhere else.
"""

from enum import StrEnum

from staffing.errors import Forbidden
from staffing.models import ActorType, Application, Booking, Shift


class Action(StrEnum):
    WITHDRAW_APPLICATION = "withdraw_application"
    DECIDE_APPLICATION = "decide_application"
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"
    COMPLETE_BOOKING = "complete_booking"
    CANCEL_BOOKING = "cancel_booking"
    VIEW_BOOKING = "view_booking"


# which party may act; the therapist is read from the application or booking,
# the organizer from the shift
RULES: dict[Action, frozenset[ActorType]] = {
    Action.WITHDRAW_APPLICATION: frozenset({ActorType.THERAPIST}),
    Action.DECIDE_APPLICATION: frozenset({ActorType.ORGANIZER}),
    Action.CHECK_IN: frozenset({ActorType.THERAPIST}),
    Action.CHECK_OUT: frozenset({ActorType.THERAPIST}),
    Action.COMPLETE_BOOKING: frozenset({ActorType.ORGANIZER}),
    Action.CANCEL_BOOKING: frozenset({ActorType.THERAPIST, ActorType.ORGANIZER}),
    Action.VIEW_BOOKING: frozenset({ActorType.THERAPIST, ActorType.ORGANIZER}),
}


def authorize(
    action: Action,
    actor_id: str,
    *,
    shift: Shift,
    application: Application | None = None,
    booking: Booking | None = None,
) -> ActorType:
    """
    Return the role ``actor_id`` plays for this entity, or raise Forbidden
    if that role may not perform ``action``.
    """
    if booking is not None:
        therapist_id = booking.therapist_id
    elif application is not None:
        therapist_id = application.therapist_id
    else:
        therapist_id = None

    roles = set()
    if therapist_id is not None and actor_id == therapist_id:
        roles.add(ActorType.THERAPIST)
    if actor_id == shift.organizer_id:
        roles.add(ActorType.ORGANIZER)

    allowed = roles & RULES[action]
    if not allowed:
        raise Forbidden(f"Not authorized to {action.value.replace('_', ' ')}")
    if ActorType.THERAPIST in allowed:
        return ActorType.THERAPIST
    return ActorType.ORGANIZER
