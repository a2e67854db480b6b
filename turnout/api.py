"""FastAPI application for Turnout."""

from __future__ import annotations

import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
import tomllib

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from . import database
from .capacity import CapacityState
from .config import settings
from .counts import AttendeeRecord
from .crud import create_event, get_event, list_attendees, update_capacity_policy
from .errors import (
    AttendeeNotFoundError,
    CapacityExceededError,
    EventNotFoundError,
    InvalidTransitionError,
)
from .models import Event
from .reconcile import reconcile_event
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db
from .transitions import BulkItem, RSVPTransitionController, TransitionResult
from .utils import humanize_time

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")

EVENT_FULL_ERROR = {
    "error": "EventFull",
    "message": "Event is full. No more RSVPs can be accepted.",
}


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("turnout")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="Turnout", version=APP_VERSION, lifespan=lifespan)
controller = RSVPTransitionController()


def get_db():
    db = database.SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _event_full_payload(exc: CapacityExceededError) -> dict:
    return {**EVENT_FULL_ERROR, "reason": exc.reason, "message": exc.user_message()}


@app.exception_handler(CapacityExceededError)
async def capacity_exceeded_handler(request: Request, exc: CapacityExceededError):
    logger.info(
        "Rejected RSVP on event %s: %s (%s/%s going)",
        exc.event_id,
        exc.reason,
        exc.total_going,
        exc.max_attendees,
    )
    return JSONResponse(_event_full_payload(exc), status_code=400)


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    return JSONResponse(
        {"error": "InvalidTransition", "detail": str(exc)}, status_code=409
    )


@app.exception_handler(EventNotFoundError)
async def event_not_found_handler(request: Request, exc: EventNotFoundError):
    return JSONResponse({"detail": "Event not found"}, status_code=404)


@app.exception_handler(AttendeeNotFoundError)
async def attendee_not_found_handler(request: Request, exc: AttendeeNotFoundError):
    return JSONResponse({"detail": "Attendee not found"}, status_code=404)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        detail = "The database is busy at the moment. Please wait a few seconds and try again."
        status = 503
    else:
        logger.error(
            "Operational database error on %s %s: %s",
            request.method,
            request.url.path,
            raw,
        )
        detail = "We hit a database issue. Please try again."
        status = 500
    return JSONResponse({"detail": detail}, status_code=status)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse({"detail": exc.errors()}, status_code=422)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"detail": "Internal server error"}, status_code=500)


class EventCreatePayload(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    start_time: datetime | None = None
    max_attendees: int | None = Field(
        None, ge=0, description="Maximum number of going attendees; null is unlimited"
    )
    waitlist_enabled: bool = False
    waitlist_limit: int | None = Field(None, ge=0)


class CapacityPolicyPayload(BaseModel):
    max_attendees: int | None = Field(None, ge=0)
    waitlist_enabled: bool = False
    waitlist_limit: int | None = Field(None, ge=0)


class RSVPPayload(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    status: str
    name: str | None = Field(None, max_length=120)


class StatusChangePayload(BaseModel):
    status: str


class AttendeePayload(BaseModel):
    attendee_type: str = "guest"
    name: str | None = Field(None, max_length=120)
    user_id: str | None = Field(None, max_length=128)
    rsvp_status: str = "going"


class BulkAddPayload(BaseModel):
    attendees: list[AttendeePayload]


def _ensure_event(db: Session, event_id: str) -> Event:
    event = get_event(db, event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


def _serialize_capacity(state: CapacityState) -> dict:
    return {
        "state": state.state,
        "remaining": None if math.isinf(state.remaining) else int(state.remaining),
        "is_at_capacity": state.is_at_capacity,
        "is_nearly_full": state.is_nearly_full,
        "can_add_more": state.can_add_more,
        "can_waitlist": state.can_waitlist,
        "warning_message": state.warning_message,
        "slots_remaining_text": state.slots_remaining_text,
        "capacity_percentage": round(state.capacity_percentage, 4),
        "waitlist_count": state.waitlist_count,
    }


def _serialize_event(event: Event) -> dict:
    return {
        "id": event.id,
        "title": event.title,
        "start_time": event.start_time.isoformat() if event.start_time else None,
        "starts": humanize_time(event.start_time) if event.start_time else None,
        "max_attendees": event.max_attendees,
        "waitlist_enabled": event.waitlist_enabled,
        "waitlist_limit": event.waitlist_limit,
        "going_count": event.going_count,
        "waitlisted_count": event.waitlisted_count,
        "created_at": event.created_at.isoformat(),
    }


def _serialize_attendee(record: AttendeeRecord) -> dict:
    return {
        "id": record.id,
        "event_id": record.event_id,
        "user_id": record.user_id,
        "name": record.name,
        "attendee_type": record.attendee_type,
        "rsvp_status": record.rsvp_status,
        "created_at": record.created_at.isoformat(),
    }


def _serialize_result(result: TransitionResult) -> dict:
    payload = {
        "attendee_id": result.attendee_id,
        "event_id": result.event_id,
        "user_id": result.user_id,
        "attendee_type": result.attendee_type,
        "previous_status": result.previous_status,
        "status": result.status,
        "changed": result.changed,
        "waitlist_position": result.waitlist_position,
        "message": result.message,
    }
    if result.cascaded_ids:
        payload["cascaded_ids"] = result.cascaded_ids
    if result.cascade_failure is not None:
        payload["cascade_failed_ids"] = result.cascade_failure.failed_ids
    return payload


@app.get("/healthz")
def healthz():
    return {"status": "ok", "version": APP_VERSION}


@app.post("/api/v1/events", status_code=201)
def api_create_event(payload: EventCreatePayload, db: Session = Depends(get_db)):
    event = create_event(
        db,
        title=payload.title,
        start_time=payload.start_time,
        max_attendees=payload.max_attendees,
        waitlist_enabled=payload.waitlist_enabled,
        waitlist_limit=payload.waitlist_limit,
    )
    logger.info("Created event %s (max_attendees=%s)", event.id, event.max_attendees)
    return {"event": _serialize_event(event)}


@app.get("/api/v1/events/{event_id}")
def api_get_event(event_id: str, db: Session = Depends(get_db)):
    return {"event": _serialize_event(_ensure_event(db, event_id))}


@app.patch("/api/v1/events/{event_id}/capacity")
def api_update_capacity(
    event_id: str, payload: CapacityPolicyPayload, db: Session = Depends(get_db)
):
    event = _ensure_event(db, event_id)
    changes = payload.model_dump(exclude_unset=True)
    update_capacity_policy(
        db,
        event,
        max_attendees=changes.get("max_attendees", event.max_attendees),
        waitlist_enabled=changes.get("waitlist_enabled", event.waitlist_enabled),
        waitlist_limit=changes.get("waitlist_limit", event.waitlist_limit),
    )
    return {"event": _serialize_event(event)}


@app.get("/api/v1/events/{event_id}/capacity")
def api_get_capacity(event_id: str):
    return {"capacity": _serialize_capacity(controller.capacity(event_id))}


@app.get("/api/v1/events/{event_id}/waitlist")
def api_get_waitlist(event_id: str, user_id: str | None = Query(None)):
    ranking = controller.waitlist(event_id)
    payload = {
        "waitlist": [
            {
                "position": entry.position,
                "attendee_id": entry.attendee_id,
                "user_id": entry.user_id,
                "name": entry.record.name,
            }
            for entry in ranking
        ],
    }
    if user_id is not None:
        payload["my_position"] = ranking.by_user.get(user_id)
    return payload


@app.get("/api/v1/events/{event_id}/attendees")
def api_list_attendees(
    event_id: str,
    status: str | None = Query(None),
    db: Session = Depends(get_db),
):
    _ensure_event(db, event_id)
    try:
        attendees = list_attendees(db, event_id, status=status)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "attendees": [
            _serialize_attendee(AttendeeRecord.from_model(a)) for a in attendees
        ]
    }


@app.post("/api/v1/events/{event_id}/rsvp")
def api_respond(event_id: str, payload: RSVPPayload):
    result = controller.respond(
        event_id, payload.user_id, payload.status, name=payload.name
    )
    return {"rsvp": _serialize_result(result)}


@app.post("/api/v1/events/{event_id}/attendees", status_code=201)
def api_add_attendee(event_id: str, payload: AttendeePayload):
    result = controller.add_attendee(
        event_id,
        attendee_type=payload.attendee_type,
        user_id=payload.user_id,
        name=payload.name,
        rsvp_status=payload.rsvp_status,
    )
    return {"rsvp": _serialize_result(result)}


@app.post("/api/v1/events/{event_id}/attendees/bulk")
def api_bulk_add(event_id: str, payload: BulkAddPayload):
    outcome = controller.bulk_add(
        event_id,
        [
            BulkItem(
                attendee_type=item.attendee_type,
                name=item.name,
                user_id=item.user_id,
                rsvp_status=item.rsvp_status,
            )
            for item in payload.attendees
        ],
    )
    rejected = []
    for item, error in outcome.rejected:
        entry = {"name": item.name, "attendee_type": item.attendee_type}
        if isinstance(error, CapacityExceededError):
            entry.update(_event_full_payload(error))
        else:
            entry.update({"error": "InvalidTransition", "message": str(error)})
        rejected.append(entry)
    return {
        "added": [_serialize_result(result) for result in outcome.added],
        "rejected": rejected,
    }


@app.post("/api/v1/attendees/{attendee_id}/status")
def api_set_status(attendee_id: str, payload: StatusChangePayload):
    result = controller.set_status(attendee_id, payload.status)
    return {"rsvp": _serialize_result(result)}


@app.delete("/api/v1/attendees/{attendee_id}", status_code=204)
def api_remove_attendee(attendee_id: str):
    controller.remove_attendee(attendee_id)


@app.post("/api/v1/events/{event_id}/reconcile")
def api_reconcile(event_id: str):
    return {"reconcile": reconcile_event(event_id, controller=controller)}
