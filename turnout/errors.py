"""Domain exceptions for capacity and RSVP transitions."""

from __future__ import annotations

from typing import Literal

CapacityReason = Literal["capacity_exceeded", "waitlist_disabled", "waitlist_full"]


class CapacityExceededError(Exception):
    """Raised when a move to ``going`` fits neither the event nor its waitlist."""

    def __init__(
        self,
        *,
        event_id: str,
        total_going: int,
        max_attendees: int | None,
        waitlist_enabled: bool,
        reason: CapacityReason = "capacity_exceeded",
    ) -> None:
        self.event_id = event_id
        self.total_going = total_going
        self.max_attendees = max_attendees
        self.waitlist_enabled = waitlist_enabled
        self.reason = reason
        super().__init__(f"Event {event_id} is at capacity ({reason})")

    def user_message(self) -> str:
        detail = (
            f" ({self.total_going}/{self.max_attendees})"
            if self.max_attendees is not None
            else ""
        )
        if self.reason == "waitlist_full":
            return f"Event is full{detail} and the waitlist is full."
        return f"Event is full{detail}. No more RSVPs can be accepted."


class ConcurrentCapacityConflictError(Exception):
    """Raised when a conditional slot claim matched no row.

    Another writer took the slot between the capacity read and the write.
    """

    def __init__(self, event_id: str, slot: str) -> None:
        self.event_id = event_id
        self.slot = slot
        super().__init__(f"Lost the race for a {slot} slot on event {event_id}")


class StaleWaitlistPositionError(LookupError):
    """The attendee is missing from the waitlist snapshot used for ranking."""


class InvalidTransitionError(ValueError):
    """The requested RSVP status change is not allowed."""


class EventNotFoundError(LookupError):
    pass


class AttendeeNotFoundError(LookupError):
    pass


class CascadeFailure(Exception):
    """Some family members could not be downgraded after their primary.

    The primary change is already committed; ``failed_ids`` can be retried
    with ``RSVPTransitionController.repair_cascade``.
    """

    def __init__(self, *, event_id: str, user_id: str, failed_ids: list[str]) -> None:
        self.event_id = event_id
        self.user_id = user_id
        self.failed_ids = list(failed_ids)
        super().__init__(
            f"Cascade for user {user_id} on event {event_id} left "
            f"{len(self.failed_ids)} family member(s) going"
        )
