"""Counter reconciliation and cascade repair."""

from __future__ import annotations

import logging

from . import database
from .crud import cascade_violations, get_event, list_event_ids, recount_event
from .errors import CascadeFailure, EventNotFoundError
from .transitions import RSVPTransitionController

logger = logging.getLogger("uvicorn.error")


def reconcile_event(
    event_id: str,
    *,
    controller: RSVPTransitionController | None = None,
) -> dict:
    """Recount one event's occupancy counters and finish any broken cascades."""
    controller = controller or RSVPTransitionController()
    with database.get_session() as session:
        event = get_event(session, event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        counters = recount_event(session, event)
        violations = cascade_violations(session, event_id)

    drifted = (
        counters["going_before"] != counters["going_after"]
        or counters["waitlisted_before"] != counters["waitlisted_after"]
    )
    if drifted:
        logger.warning(
            "Counter drift on event %s: going %d -> %d, waitlisted %d -> %d",
            event_id,
            counters["going_before"],
            counters["going_after"],
            counters["waitlisted_before"],
            counters["waitlisted_after"],
        )

    repaired: list[str] = []
    failures: list[str] = []
    for _, user_id in violations:
        try:
            repaired.extend(controller.repair_cascade(event_id, user_id))
        except CascadeFailure as exc:
            failures.extend(exc.failed_ids)

    return {
        "event_id": event_id,
        "drifted": drifted,
        **counters,
        "cascade_repaired": repaired,
        "cascade_failed": failures,
    }


def reconcile_all_events() -> dict[str, int]:
    stats = {"events": 0, "drifted": 0, "cascade_repaired": 0, "cascade_failed": 0}
    logger.info("Reconciliation cycle started")

    with database.get_session() as session:
        event_ids = list_event_ids(session)

    controller = RSVPTransitionController()
    for event_id in event_ids:
        try:
            result = reconcile_event(event_id, controller=controller)
        except EventNotFoundError:
            # Deleted since the id listing.
            continue
        stats["events"] += 1
        stats["drifted"] += int(result["drifted"])
        stats["cascade_repaired"] += len(result["cascade_repaired"])
        stats["cascade_failed"] += len(result["cascade_failed"])

    logger.info(
        "Reconciliation cycle finished: %d events, %d drifted, %d cascades repaired, %d failed",
        stats["events"],
        stats["drifted"],
        stats["cascade_repaired"],
        stats["cascade_failed"],
    )
    return stats
