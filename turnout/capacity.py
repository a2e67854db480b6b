"""Capacity decision engine.

``evaluate`` is a pure function of attendee counts and an event's capacity
policy. It is cheap enough to call on every read and is the single place that
decides whether an event can take another ``going`` attendee, can only offer
the waitlist, or is closed.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Literal

from .counts import AttendeeCounts, AttendeeRecord, count_attendees
from .utils import pluralize

NEAR_FULL_RATIO = 0.9

CapacityStateName = Literal["ok", "near", "full", "waitlist"]


@dataclass(frozen=True)
class CapacityPolicy:
    max_attendees: int | None = None
    waitlist_enabled: bool = False
    waitlist_limit: int | None = None

    @classmethod
    def from_event(cls, event) -> "CapacityPolicy":
        return cls(
            max_attendees=event.max_attendees,
            waitlist_enabled=bool(event.waitlist_enabled),
            waitlist_limit=event.waitlist_limit,
        )

    @property
    def is_unlimited(self) -> bool:
        return self.max_attendees is None


@dataclass(frozen=True)
class CapacityState:
    state: CapacityStateName
    remaining: float
    is_at_capacity: bool
    is_nearly_full: bool
    can_add_more: bool
    can_waitlist: bool
    warning_message: str
    slots_remaining_text: str
    capacity_percentage: float
    waitlist_count: int


def waitlist_has_room(counts: AttendeeCounts, policy: CapacityPolicy) -> bool:
    """Whether the waitlist itself accepts entries, ignoring event capacity."""
    if not policy.waitlist_enabled:
        return False
    if policy.waitlist_limit is None:
        return True
    return counts.waitlisted_count < policy.waitlist_limit


def evaluate(
    counts: AttendeeCounts,
    policy: CapacityPolicy,
    *,
    near_full_ratio: float = NEAR_FULL_RATIO,
) -> CapacityState:
    """Return the capacity state for ``counts`` under ``policy``."""
    if policy.is_unlimited:
        return CapacityState(
            state="ok",
            remaining=math.inf,
            is_at_capacity=False,
            is_nearly_full=False,
            can_add_more=True,
            can_waitlist=False,
            warning_message="",
            slots_remaining_text="",
            capacity_percentage=0.0,
            waitlist_count=counts.waitlisted_count,
        )

    max_attendees = policy.max_attendees
    total_going = counts.total_going
    remaining = max_attendees - total_going
    is_at_capacity = total_going >= max_attendees
    is_nearly_full = total_going >= max_attendees * near_full_ratio
    percentage = total_going / max_attendees if max_attendees else 1.0
    waitlist_open = waitlist_has_room(counts, policy)

    if is_at_capacity and waitlist_open:
        state: CapacityStateName = "waitlist"
        warning = "Event is full - join waitlist"
        if policy.waitlist_limit is not None:
            spots = policy.waitlist_limit - counts.waitlisted_count
            slots_text = f"Waitlist available ({pluralize(spots, 'spot')} remaining)"
        else:
            slots_text = "Join waitlist to be notified if spots open up"
    elif is_at_capacity:
        state = "full"
        warning = "Event is at capacity"
        slots_text = "Event is full. No more RSVPs can be accepted."
    elif is_nearly_full:
        state = "near"
        warning = "Event is nearly full"
        slots_text = f"Only {pluralize(remaining, 'slot')} remaining."
    else:
        state = "ok"
        warning = ""
        slots_text = ""

    return CapacityState(
        state=state,
        remaining=remaining,
        is_at_capacity=is_at_capacity,
        is_nearly_full=is_nearly_full,
        can_add_more=not is_at_capacity,
        can_waitlist=is_at_capacity and waitlist_open,
        warning_message=warning,
        slots_remaining_text=slots_text,
        capacity_percentage=percentage,
        waitlist_count=counts.waitlisted_count,
    )


def rejection_reason(counts: AttendeeCounts, policy: CapacityPolicy) -> str:
    """Classify why a full event refused another ``going`` attendee."""
    if not policy.waitlist_enabled:
        return "waitlist_disabled"
    if not waitlist_has_room(counts, policy):
        return "waitlist_full"
    return "capacity_exceeded"


def watch_capacity(
    snapshots: Iterable[list[AttendeeRecord]],
    policy: CapacityPolicy,
    *,
    near_full_ratio: float = NEAR_FULL_RATIO,
) -> Iterator[CapacityState]:
    """Re-evaluate capacity for every observed attendee snapshot."""
    for records in snapshots:
        yield evaluate(count_attendees(records), policy, near_full_ratio=near_full_ratio)
