import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Annotated, Any

from fastapi import APIRouter, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from staffing.applications import ApplicationService, DecisionResult
from staffing.bookings import BookingService
from staffing.config import Settings
from staffing.database import LifecycleStore
from staffing.errors import LifecycleError
from staffing.models import Application, Booking, BookingEvent, Decision
from staffing.notifier import (
    NotificationDispatcher,
    NotificationOutbox,
    NotificationType,
    build_transport,
)
from staffing.reminders import ReminderScheduler

logger = logging.getLogger(__name__)

router = APIRouter()

ActorId = Annotated[str, Header(alias="X-Actor-Id")]


class SubmitApplicationRequest(BaseModel):
    message: str | None = None


class DecisionRequest(BaseModel):
    outcome: Decision


class CheckOutRequest(BaseModel):
    hours_worked: float


class CancelRequest(BaseModel):
    reason: str


class SendNotificationRequest(BaseModel):
    type: str
    to: str
    payload: dict[str, Any]


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/shifts/{shift_id}/applications", status_code=201)
async def submit_application(
    shift_id: str, body: SubmitApplicationRequest, request: Request, actor_id: ActorId
) -> Application:
    service: ApplicationService = request.app.state.applications
    return await service.submit(shift_id, actor_id, body.message)


@router.post("/applications/{application_id}/withdraw")
async def withdraw_application(
    application_id: str, request: Request, actor_id: ActorId
) -> Application:
    service: ApplicationService = request.app.state.applications
    return await service.withdraw(application_id, actor_id)


@router.post("/applications/{application_id}/decision")
async def decide_application(
    application_id: str, body: DecisionRequest, request: Request, actor_id: ActorId
) -> DecisionResult:
    service: ApplicationService = request.app.state.applications
    return await service.decide(application_id, actor_id, body.outcome)


@router.post("/bookings/{booking_id}/check-in")
async def check_in(booking_id: str, request: Request, actor_id: ActorId) -> Booking:
    service: BookingService = request.app.state.bookings
    return await service.check_in(booking_id, actor_id)


@router.post("/bookings/{booking_id}/check-out")
async def check_out(
    booking_id: str, body: CheckOutRequest, request: Request, actor_id: ActorId
) -> Booking:
    service: BookingService = request.app.state.bookings
    return await service.check_out(booking_id, actor_id, body.hours_worked)


@router.post("/bookings/{booking_id}/complete")
async def complete_booking(booking_id: str, request: Request, actor_id: ActorId) -> Booking:
    service: BookingService = request.app.state.bookings
    return await service.complete(booking_id, actor_id)


@router.post("/bookings/{booking_id}/cancel")
async def cancel_booking(
    booking_id: str, body: CancelRequest, request: Request, actor_id: ActorId
) -> Booking:
    service: BookingService = request.app.state.bookings
    return await service.cancel(booking_id, actor_id, body.reason)


@router.get("/bookings/{booking_id}/events")
async def booking_events(
    booking_id: str, request: Request, actor_id: ActorId
) -> list[BookingEvent]:
    service: BookingService = request.app.state.bookings
    return await service.timeline(booking_id, actor_id)


@router.post("/reminders/run")
async def run_reminders(request: Request) -> dict:
    scheduler: ReminderScheduler = request.app.state.reminders
    due = await scheduler.due_reminders(request.app.state.now_fn())
    return {
        "queued": len(due),
        "reminders": [
            {
                "booking_id": r.booking.id,
                "tier_hours": r.tier_hours,
                "hours_until": round(r.hours_until, 2),
            }
            for r in due
        ],
    }


@router.post("/notifications")
async def send_notification(body: SendNotificationRequest, request: Request) -> JSONResponse:
    if body.type not in {t.value for t in NotificationType}:
        return JSONResponse({"error": "Invalid notification type"}, status_code=400)

    dispatcher: NotificationDispatcher = request.app.state.dispatcher
    sent = await dispatcher.send(body.type, body.to, body.payload)
    if sent:
        return JSONResponse({"success": True})
    return JSONResponse({"error": "Failed to send notification", "sent": False})


async def lifecycle_error_handler(request: Request, exc: LifecycleError) -> JSONResponse:
    logger.info(
        "%s %s rejected: %s (%s)", request.method, request.url.path, exc.kind, exc.detail
    )
    return JSONResponse(
        {"error": exc.kind, "detail": exc.detail}, status_code=exc.status_code
    )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await app.state.outbox.drain()
    await app.state.dispatcher.transport.aclose()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings)

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.now_fn = lambda: datetime.now(UTC)

    # services read the clock through app.state so tests can swap it
    def now_fn() -> datetime:
        return app.state.now_fn()

    store = LifecycleStore()
    dispatcher = NotificationDispatcher(
        build_transport(settings),
        app_url=settings.app_url,
        timeout_seconds=settings.dispatch_timeout_seconds,
    )
    outbox = NotificationOutbox(
        dispatcher, now_fn=now_fn, max_outcomes=settings.outcome_history
    )

    app.state.store = store
    app.state.dispatcher = dispatcher
    app.state.outbox = outbox
    app.state.applications = ApplicationService(store, outbox, settings, now_fn=now_fn)
    app.state.bookings = BookingService(store, settings, now_fn=now_fn)
    app.state.reminders = ReminderScheduler(store, outbox, settings, now_fn=now_fn)

    app.add_exception_handler(LifecycleError, lifecycle_error_handler)
    app.include_router(router)
    return app
