"""Development helpers for populating fake events and attendees."""

from __future__ import annotations

import random
from datetime import timedelta

from faker import Faker

from .config import settings
from .database import get_session
from .crud import create_event
from .errors import CapacityExceededError, InvalidTransitionError
from .storage import init_db
from .transitions import RSVPTransitionController
from .utils import utcnow

_event_types = [
    "Mixer",
    "Hangout",
    "Workshop",
    "Field Trip",
    "Meet & Greet",
    "Dinner",
    "Discussion",
    "Picnic",
]
_responses = ["going", "going", "going", "not-going"]
_extra_types = ["guest", "family_member", "ghost", "volunteer"]


def seed_fake_data(
    *,
    event_count: int | None = None,
    attendees_per_event: int | None = None,
    waitlist_percent: int | None = None,
) -> dict[str, int]:
    """Populate the database with synthetic events and RSVPs.

    Every RSVP goes through ``RSVPTransitionController`` so the seeded data
    respects capacity exactly like real traffic does.
    """
    event_count = settings.seed_events if event_count is None else event_count
    attendees_per_event = (
        settings.seed_attendees_per_event
        if attendees_per_event is None
        else attendees_per_event
    )
    waitlist_percent = (
        settings.seed_waitlist_percent if waitlist_percent is None else waitlist_percent
    )
    if event_count < 0:
        raise ValueError("event_count must be >= 0")
    if attendees_per_event < 0:
        raise ValueError("attendees_per_event must be >= 0")
    if not 0 <= waitlist_percent <= 100:
        raise ValueError("waitlist_percent must be between 0 and 100")

    init_db()
    fake = Faker()
    controller = RSVPTransitionController()
    stats = {"events": 0, "attendees": 0, "waitlisted": 0, "rejected": 0}

    for _ in range(event_count):
        event_id = _create_event(fake, attendees_per_event, waitlist_percent)
        stats["events"] += 1
        for _ in range(random.randint(0, attendees_per_event)):
            try:
                result = _create_response(fake, controller, event_id)
            except (CapacityExceededError, InvalidTransitionError):
                stats["rejected"] += 1
                continue
            stats["attendees"] += 1
            if result.status == "waitlisted":
                stats["waitlisted"] += 1

    return stats


def _create_event(fake: Faker, attendees_per_event: int, waitlist_percent: int) -> str:
    start_time = utcnow() + timedelta(
        days=random.randint(1, 30), minutes=random.randint(0, 23 * 60)
    )
    if random.random() < 0.2:
        max_attendees = None
    else:
        max_attendees = random.randint(1, max(1, attendees_per_event))
    waitlist_enabled = random.randint(1, 100) <= waitlist_percent
    waitlist_limit = random.choice([None, 2, 5]) if waitlist_enabled else None
    with get_session() as session:
        event = create_event(
            session,
            title=f"{fake.city()} {random.choice(_event_types)}",
            start_time=start_time,
            max_attendees=max_attendees,
            waitlist_enabled=waitlist_enabled,
            waitlist_limit=waitlist_limit,
        )
        return event.id


def _create_response(fake: Faker, controller: RSVPTransitionController, event_id: str):
    if random.random() < 0.8:
        return controller.respond(
            event_id,
            fake.uuid4(),
            random.choice(_responses),
            name=fake.name_nonbinary(),
        )
    return controller.add_attendee(
        event_id,
        attendee_type=random.choice(_extra_types),
        name=fake.name_nonbinary(),
    )
