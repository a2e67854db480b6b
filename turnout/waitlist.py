"""Waitlist ordering.

Positions are derived, never stored: every call ranks the waitlisted records
from scratch, first come first served by ``created_at`` with the record id as
tie-breaker. A position read from an old snapshot is simply stale until the
next snapshot arrives.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from .counts import AttendeeRecord
from .errors import StaleWaitlistPositionError


@dataclass(frozen=True)
class WaitlistEntry:
    attendee_id: str
    user_id: str | None
    position: int
    record: AttendeeRecord


@dataclass(frozen=True)
class WaitlistRanking:
    entries: tuple[WaitlistEntry, ...] = ()

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @property
    def by_attendee(self) -> dict[str, int]:
        return {entry.attendee_id: entry.position for entry in self.entries}

    @property
    def by_user(self) -> dict[str, int]:
        """Best position per user; ghost entries without a user are skipped."""
        positions: dict[str, int] = {}
        for entry in self.entries:
            if entry.user_id is None or entry.user_id in positions:
                continue
            positions[entry.user_id] = entry.position
        return positions


def _sort_key(record: AttendeeRecord):
    return (record.created_at, record.id)


def rank(records: Iterable[AttendeeRecord]) -> WaitlistRanking:
    waitlisted = [
        record
        for record in records
        if record.rsvp_status == "waitlisted" and not record.is_deleted
    ]
    waitlisted.sort(key=_sort_key)
    return WaitlistRanking(
        entries=tuple(
            WaitlistEntry(
                attendee_id=record.id,
                user_id=record.user_id,
                position=index,
                record=record,
            )
            for index, record in enumerate(waitlisted, start=1)
        )
    )


def my_position(user_id: str | None, ranking: WaitlistRanking) -> int | None:
    if user_id is None:
        return None
    return ranking.by_user.get(user_id)


def position_of(attendee_id: str, ranking: WaitlistRanking) -> int:
    try:
        return ranking.by_attendee[attendee_id]
    except KeyError as exc:
        raise StaleWaitlistPositionError(
            f"Attendee {attendee_id} is not in the waitlist snapshot"
        ) from exc
