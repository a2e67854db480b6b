"""Attendee snapshots, counts, and the store contract the core relies on."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class AttendeeRecord:
    """Detached, read-only view of one attendee row."""

    id: str
    event_id: str
    user_id: str | None
    attendee_type: str
    rsvp_status: str
    created_at: datetime
    updated_at: datetime | None = None
    name: str | None = None
    is_deleted: bool = False

    @classmethod
    def from_model(cls, attendee) -> "AttendeeRecord":
        return cls(
            id=attendee.id,
            event_id=attendee.event_id,
            user_id=attendee.user_id,
            attendee_type=attendee.attendee_type,
            rsvp_status=attendee.rsvp_status,
            created_at=attendee.created_at,
            updated_at=attendee.updated_at,
            name=attendee.name,
            is_deleted=bool(attendee.is_deleted),
        )


@dataclass(frozen=True)
class AttendeeCounts:
    going_count: int = 0
    not_going_count: int = 0
    pending_count: int = 0
    waitlisted_count: int = 0
    total_going: int = 0


def count_attendees(records: Iterable[AttendeeRecord]) -> AttendeeCounts:
    """Tally live records per status."""
    tally = {"going": 0, "not-going": 0, "pending": 0, "waitlisted": 0}
    for record in records:
        if record.is_deleted:
            continue
        if record.rsvp_status in tally:
            tally[record.rsvp_status] += 1
    return AttendeeCounts(
        going_count=tally["going"],
        not_going_count=tally["not-going"],
        pending_count=tally["pending"],
        waitlisted_count=tally["waitlisted"],
        total_going=tally["going"],
    )


class AttendeeStore(Protocol):
    """Persistence the capacity core depends on.

    ``observe_attendees`` yields a fresh snapshot each time the event's
    attendee set changes; delivery is at-least-once.
    """

    def observe_attendees(self, event_id: str) -> Iterator[list[AttendeeRecord]]: ...

    def create_attendee(self, data: dict) -> str: ...

    def update_attendee_status(self, attendee_id: str, status: str) -> None: ...
