"""CRUD helpers for events, attendees, and the occupancy counters."""

from __future__ import annotations

import time
from collections.abc import Iterator
from datetime import datetime
from typing import Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session, aliased

from . import database
from .config import settings
from .counts import AttendeeCounts, AttendeeRecord
from .errors import AttendeeNotFoundError, ConcurrentCapacityConflictError
from .models import ATTENDEE_TYPES, RSVP_STATUSES, Attendee, Event
from .utils import to_naive_utc, utcnow


def _now() -> datetime:
    return utcnow()


def normalize_status(status: str | None) -> str:
    normalized = (status or "").strip().lower().replace("_", "-")
    if normalized not in RSVP_STATUSES:
        raise ValueError(f"Invalid RSVP status: {status!r}")
    return normalized


def normalize_attendee_type(attendee_type: str | None) -> str:
    normalized = (attendee_type or "primary").strip().lower().replace("-", "_")
    if normalized not in ATTENDEE_TYPES:
        raise ValueError(f"Invalid attendee type: {attendee_type!r}")
    return normalized


def _validate_limit(value: int | None, label: str) -> int | None:
    if value is None:
        return None
    if value < 0:
        raise ValueError(f"{label} must be >= 0")
    return value


def create_event(
    session: Session,
    *,
    title: str,
    start_time: datetime | None = None,
    max_attendees: int | None = None,
    waitlist_enabled: bool = False,
    waitlist_limit: int | None = None,
) -> Event:
    """Create and persist a new event."""
    event = Event(
        title=title,
        start_time=to_naive_utc(start_time),
        max_attendees=_validate_limit(max_attendees, "max_attendees"),
        waitlist_enabled=bool(waitlist_enabled),
        waitlist_limit=_validate_limit(waitlist_limit, "waitlist_limit"),
        going_count=0,
        waitlisted_count=0,
    )
    session.add(event)
    session.flush()
    return event


def update_capacity_policy(
    session: Session,
    event: Event,
    *,
    max_attendees: int | None,
    waitlist_enabled: bool,
    waitlist_limit: int | None,
) -> Event:
    """Change an event's capacity policy; existing attendees are left alone."""
    event.max_attendees = _validate_limit(max_attendees, "max_attendees")
    event.waitlist_enabled = bool(waitlist_enabled)
    event.waitlist_limit = _validate_limit(waitlist_limit, "waitlist_limit")
    event.updated_at = _now()
    session.add(event)
    session.flush()
    return event


def get_event(session: Session, event_id: str) -> Event | None:
    return session.get(Event, event_id)


def list_event_ids(session: Session) -> list[str]:
    return list(session.scalars(select(Event.id).order_by(Event.created_at)))


def get_attendee(session: Session, attendee_id: str) -> Attendee | None:
    attendee = session.get(Attendee, attendee_id)
    if attendee is None or attendee.is_deleted:
        return None
    return attendee


def list_attendees(
    session: Session,
    event_id: str,
    *,
    status: str | None = None,
    include_deleted: bool = False,
) -> Sequence[Attendee]:
    stmt = (
        select(Attendee)
        .where(Attendee.event_id == event_id)
        .order_by(Attendee.created_at.asc(), Attendee.id.asc())
    )
    if status is not None:
        stmt = stmt.where(Attendee.rsvp_status == normalize_status(status))
    if not include_deleted:
        stmt = stmt.where(Attendee.is_deleted.is_(False))
    return session.scalars(stmt).all()


def attendee_records(session: Session, event_id: str) -> list[AttendeeRecord]:
    return [AttendeeRecord.from_model(a) for a in list_attendees(session, event_id)]


def find_primary(session: Session, event_id: str, user_id: str) -> Attendee | None:
    stmt = select(Attendee).where(
        Attendee.event_id == event_id,
        Attendee.user_id == user_id,
        Attendee.attendee_type == "primary",
        Attendee.is_deleted.is_(False),
    )
    return session.scalars(stmt).first()


def family_members(
    session: Session,
    event_id: str,
    user_id: str,
    *,
    status: str | None = None,
) -> Sequence[Attendee]:
    stmt = (
        select(Attendee)
        .where(
            Attendee.event_id == event_id,
            Attendee.user_id == user_id,
            Attendee.attendee_type == "family_member",
            Attendee.is_deleted.is_(False),
        )
        .order_by(Attendee.created_at.asc(), Attendee.id.asc())
    )
    if status is not None:
        stmt = stmt.where(Attendee.rsvp_status == normalize_status(status))
    return session.scalars(stmt).all()


def insert_attendee(
    session: Session,
    *,
    event_id: str,
    user_id: str | None,
    attendee_type: str,
    rsvp_status: str,
    name: str | None = None,
) -> Attendee:
    """Insert an attendee row. Callers own the matching counter claim."""
    now = _now()
    attendee = Attendee(
        event_id=event_id,
        user_id=user_id,
        name=name,
        attendee_type=normalize_attendee_type(attendee_type),
        rsvp_status=normalize_status(rsvp_status),
        is_deleted=False,
        created_at=now,
        updated_at=now,
    )
    session.add(attendee)
    session.flush()
    return attendee


def set_attendee_status(session: Session, attendee: Attendee, status: str) -> Attendee:
    """Update the stored status. Callers own the matching counter moves."""
    attendee.rsvp_status = normalize_status(status)
    attendee.updated_at = _now()
    session.add(attendee)
    session.flush()
    return attendee


def soft_delete_attendee(session: Session, attendee: Attendee) -> Attendee:
    attendee.is_deleted = True
    attendee.updated_at = _now()
    session.add(attendee)
    session.flush()
    return attendee


def claim_slot(session: Session, event_id: str, status: str) -> None:
    """Take one going or waitlist slot with a single conditional UPDATE.

    The capacity check and the increment happen in the same statement, so two
    writers can never both take the last slot. Raises
    ``ConcurrentCapacityConflictError`` when the condition no longer holds.
    """
    if status == "going":
        stmt = (
            update(Event)
            .where(Event.id == event_id)
            .where(
                or_(
                    Event.max_attendees.is_(None),
                    Event.going_count < Event.max_attendees,
                )
            )
            .values(going_count=Event.going_count + 1, updated_at=_now())
        )
    elif status == "waitlisted":
        stmt = (
            update(Event)
            .where(Event.id == event_id)
            .where(Event.waitlist_enabled.is_(True))
            .where(
                or_(
                    Event.waitlist_limit.is_(None),
                    Event.waitlisted_count < Event.waitlist_limit,
                )
            )
            .values(waitlisted_count=Event.waitlisted_count + 1, updated_at=_now())
        )
    else:
        return
    result = session.execute(stmt, execution_options={"synchronize_session": False})
    if result.rowcount != 1:
        raise ConcurrentCapacityConflictError(event_id, status)


def release_slot(session: Session, event_id: str, status: str) -> None:
    """Give back a slot previously taken with ``claim_slot``; floors at zero."""
    if status == "going":
        column = Event.going_count
        values = {"going_count": Event.going_count - 1}
    elif status == "waitlisted":
        column = Event.waitlisted_count
        values = {"waitlisted_count": Event.waitlisted_count - 1}
    else:
        return
    stmt = (
        update(Event)
        .where(Event.id == event_id)
        .where(column > 0)
        .values(updated_at=_now(), **values)
    )
    session.execute(stmt, execution_options={"synchronize_session": False})


def event_counts(session: Session, event: Event) -> AttendeeCounts:
    """Counts for ``event`` with occupancy taken from its denormalized counters."""
    session.refresh(event)
    rows = session.execute(
        select(Attendee.rsvp_status, func.count())
        .where(Attendee.event_id == event.id, Attendee.is_deleted.is_(False))
        .group_by(Attendee.rsvp_status)
    ).all()
    tally = {status: count for status, count in rows}
    return AttendeeCounts(
        going_count=tally.get("going", 0),
        not_going_count=tally.get("not-going", 0),
        pending_count=tally.get("pending", 0),
        waitlisted_count=event.waitlisted_count,
        total_going=event.going_count,
    )


def _live_count(status: str):
    return (
        select(func.count(Attendee.id))
        .where(
            Attendee.event_id == Event.id,
            Attendee.rsvp_status == status,
            Attendee.is_deleted.is_(False),
        )
        .scalar_subquery()
    )


def recount_event(session: Session, event: Event) -> dict[str, int]:
    """Reset the denormalized counters from the live attendee rows.

    Runs as one UPDATE with correlated subqueries so it cannot interleave with
    a slot claim. Returns the counters before and after.
    """
    session.refresh(event)
    before = {"going": event.going_count, "waitlisted": event.waitlisted_count}
    session.execute(
        update(Event)
        .where(Event.id == event.id)
        .values(
            going_count=_live_count("going"),
            waitlisted_count=_live_count("waitlisted"),
        ),
        execution_options={"synchronize_session": False},
    )
    session.refresh(event)
    return {
        "going_before": before["going"],
        "going_after": event.going_count,
        "waitlisted_before": before["waitlisted"],
        "waitlisted_after": event.waitlisted_count,
    }


def cascade_violations(
    session: Session, event_id: str | None = None
) -> list[tuple[str, str]]:
    """(event_id, user_id) pairs whose primary is not-going but family is going."""
    primary = aliased(Attendee)
    member = aliased(Attendee)
    stmt = (
        select(member.event_id, member.user_id)
        .join(
            primary,
            and_(
                primary.event_id == member.event_id,
                primary.user_id == member.user_id,
                primary.attendee_type == "primary",
                primary.rsvp_status == "not-going",
                primary.is_deleted.is_(False),
            ),
        )
        .where(
            member.attendee_type == "family_member",
            member.rsvp_status == "going",
            member.is_deleted.is_(False),
        )
        .distinct()
    )
    if event_id is not None:
        stmt = stmt.where(member.event_id == event_id)
    return [(row[0], row[1]) for row in session.execute(stmt).all()]


class SqlAttendeeStore:
    """``AttendeeStore`` backed by the SQL tables.

    ``observe_attendees`` polls and only yields when the snapshot changed.
    Writes keep the occupancy counters in step inside the same transaction.
    """

    def __init__(
        self,
        session_factory=None,
        *,
        poll_seconds: float | None = None,
        sleep=time.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._poll_seconds = (
            settings.watch_poll_seconds if poll_seconds is None else poll_seconds
        )
        self._sleep = sleep

    def snapshot(self, event_id: str) -> list[AttendeeRecord]:
        with database.get_session(self._session_factory) as session:
            return attendee_records(session, event_id)

    def observe_attendees(
        self, event_id: str, *, max_polls: int | None = None
    ) -> Iterator[list[AttendeeRecord]]:
        last: list[AttendeeRecord] | None = None
        polls = 0
        while max_polls is None or polls < max_polls:
            current = self.snapshot(event_id)
            if current != last:
                last = current
                yield current
            polls += 1
            if max_polls is None or polls < max_polls:
                self._sleep(self._poll_seconds)

    def create_attendee(self, data: dict) -> str:
        with database.get_session(self._session_factory) as session:
            status = normalize_status(data.get("rsvp_status", "pending"))
            claim_slot(session, data["event_id"], status)
            attendee = insert_attendee(
                session,
                event_id=data["event_id"],
                user_id=data.get("user_id"),
                attendee_type=data.get("attendee_type", "primary"),
                rsvp_status=status,
                name=data.get("name"),
            )
            return attendee.id

    def update_attendee_status(self, attendee_id: str, status: str) -> None:
        with database.get_session(self._session_factory) as session:
            attendee = get_attendee(session, attendee_id)
            if attendee is None:
                raise AttendeeNotFoundError(attendee_id)
            target = normalize_status(status)
            if attendee.rsvp_status == target:
                return
            claim_slot(session, attendee.event_id, target)
            release_slot(session, attendee.event_id, attendee.rsvp_status)
            set_attendee_status(session, attendee, target)
