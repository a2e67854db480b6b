from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from turnout import database
from turnout.crud import (
    SqlAttendeeStore,
    cascade_violations,
    claim_slot,
    create_event,
    event_counts,
    family_members,
    find_primary,
    get_attendee,
    get_event,
    insert_attendee,
    list_attendees,
    normalize_status,
    recount_event,
    release_slot,
    set_attendee_status,
    soft_delete_attendee,
    update_capacity_policy,
)
from turnout.errors import AttendeeNotFoundError, ConcurrentCapacityConflictError


def _event(session, **kwargs):
    event = create_event(session, title="Board Games", **kwargs)
    session.commit()
    return event


def test_create_event_rejects_negative_limits(session):
    with pytest.raises(ValueError):
        create_event(session, title="Bad", max_attendees=-1)
    with pytest.raises(ValueError):
        create_event(session, title="Bad", waitlist_limit=-3)


def test_update_capacity_policy(session):
    event = _event(session, max_attendees=5)
    update_capacity_policy(
        session, event, max_attendees=8, waitlist_enabled=True, waitlist_limit=2
    )
    session.commit()
    refreshed = get_event(session, event.id)
    assert refreshed.max_attendees == 8
    assert refreshed.waitlist_enabled is True
    assert refreshed.waitlist_limit == 2


def test_normalize_status_accepts_underscores():
    assert normalize_status("Not_Going") == "not-going"
    with pytest.raises(ValueError):
        normalize_status("maybe")


def test_claim_going_slot_until_full(session):
    event = _event(session, max_attendees=2)
    claim_slot(session, event.id, "going")
    claim_slot(session, event.id, "going")
    with pytest.raises(ConcurrentCapacityConflictError) as excinfo:
        claim_slot(session, event.id, "going")
    assert excinfo.value.slot == "going"
    session.commit()
    session.refresh(event)
    assert event.going_count == 2


def test_claim_slot_on_unlimited_event(session):
    event = _event(session)
    for _ in range(25):
        claim_slot(session, event.id, "going")
    session.commit()
    session.refresh(event)
    assert event.going_count == 25


def test_claim_waitlist_slot_respects_flag_and_limit(session):
    closed = _event(session, max_attendees=1)
    with pytest.raises(ConcurrentCapacityConflictError):
        claim_slot(session, closed.id, "waitlisted")

    limited = _event(session, max_attendees=1, waitlist_enabled=True, waitlist_limit=1)
    claim_slot(session, limited.id, "waitlisted")
    with pytest.raises(ConcurrentCapacityConflictError):
        claim_slot(session, limited.id, "waitlisted")


def test_claim_and_release_ignore_statuses_without_slots(session):
    event = _event(session, max_attendees=0)
    claim_slot(session, event.id, "not-going")
    claim_slot(session, event.id, "pending")
    release_slot(session, event.id, "pending")
    session.commit()
    session.refresh(event)
    assert (event.going_count, event.waitlisted_count) == (0, 0)


def test_release_slot_floors_at_zero(session):
    event = _event(session, max_attendees=3)
    claim_slot(session, event.id, "going")
    release_slot(session, event.id, "going")
    release_slot(session, event.id, "going")
    session.commit()
    session.refresh(event)
    assert event.going_count == 0


def test_event_counts_reads_counters_for_occupancy(session):
    event = _event(session, max_attendees=10, waitlist_enabled=True)
    for user, status in [("u1", "going"), ("u2", "not-going"), ("u3", "pending")]:
        claim_slot(session, event.id, status)
        insert_attendee(
            session,
            event_id=event.id,
            user_id=user,
            attendee_type="primary",
            rsvp_status=status,
        )
    session.commit()
    counts = event_counts(session, event)
    assert counts.total_going == 1
    assert counts.going_count == 1
    assert counts.not_going_count == 1
    assert counts.pending_count == 1
    assert counts.waitlisted_count == 0


def test_recount_event_repairs_drift(session):
    event = _event(session, max_attendees=10, waitlist_enabled=True)
    insert_attendee(
        session, event_id=event.id, user_id="u1", attendee_type="primary", rsvp_status="going"
    )
    insert_attendee(
        session,
        event_id=event.id,
        user_id="u2",
        attendee_type="primary",
        rsvp_status="waitlisted",
    )
    gone = insert_attendee(
        session, event_id=event.id, user_id="u3", attendee_type="primary", rsvp_status="going"
    )
    soft_delete_attendee(session, gone)
    event.going_count = 7
    session.commit()

    result = recount_event(session, event)
    session.commit()

    assert result == {
        "going_before": 7,
        "going_after": 1,
        "waitlisted_before": 0,
        "waitlisted_after": 1,
    }


def test_one_live_primary_per_user(session):
    event = _event(session)
    first = insert_attendee(
        session, event_id=event.id, user_id="u1", attendee_type="primary", rsvp_status="going"
    )
    session.commit()
    with pytest.raises(IntegrityError):
        insert_attendee(
            session,
            event_id=event.id,
            user_id="u1",
            attendee_type="primary",
            rsvp_status="going",
        )
    session.rollback()

    soft_delete_attendee(session, get_attendee(session, first.id))
    session.commit()
    replacement = insert_attendee(
        session, event_id=event.id, user_id="u1", attendee_type="primary", rsvp_status="pending"
    )
    session.commit()
    assert find_primary(session, event.id, "u1").id == replacement.id
    assert get_attendee(session, first.id) is None
    assert len(list_attendees(session, event.id, include_deleted=True)) == 2


def test_family_members_and_cascade_violations(session):
    event = _event(session)
    primary = insert_attendee(
        session, event_id=event.id, user_id="u1", attendee_type="primary", rsvp_status="going"
    )
    for name in ("Kid A", "Kid B"):
        insert_attendee(
            session,
            event_id=event.id,
            user_id="u1",
            attendee_type="family_member",
            rsvp_status="going",
            name=name,
        )
    insert_attendee(
        session, event_id=event.id, user_id="u1", attendee_type="guest", rsvp_status="going"
    )
    session.commit()

    assert len(family_members(session, event.id, "u1")) == 2
    assert cascade_violations(session) == []

    set_attendee_status(session, primary, "not-going")
    session.commit()
    assert cascade_violations(session) == [(event.id, "u1")]
    assert cascade_violations(session, "some-other-event") == []


def test_store_observe_yields_only_on_change(make_event):
    event_id = make_event(max_attendees=5)
    store = SqlAttendeeStore(poll_seconds=0)
    polls = []

    def fake_sleep(_seconds):
        polls.append(_seconds)
        if len(polls) == 2:
            store.create_attendee(
                {"event_id": event_id, "user_id": "u1", "rsvp_status": "going"}
            )

    store._sleep = fake_sleep
    snapshots = list(store.observe_attendees(event_id, max_polls=4))

    assert len(polls) == 3
    assert [len(snapshot) for snapshot in snapshots] == [0, 1]
    assert snapshots[1][0].rsvp_status == "going"


def test_store_writes_keep_counters_in_step(make_event):
    event_id = make_event(max_attendees=1, waitlist_enabled=True)
    store = SqlAttendeeStore()
    attendee_id = store.create_attendee(
        {"event_id": event_id, "user_id": "u1", "rsvp_status": "going"}
    )
    with pytest.raises(ConcurrentCapacityConflictError):
        store.create_attendee({"event_id": event_id, "user_id": "u2", "rsvp_status": "going"})

    store.update_attendee_status(attendee_id, "waitlisted")
    store.update_attendee_status(attendee_id, "waitlisted")
    with database.get_session() as db:
        event = get_event(db, event_id)
        assert (event.going_count, event.waitlisted_count) == (0, 1)
        assert [a.user_id for a in list_attendees(db, event_id)] == ["u1"]

    with pytest.raises(AttendeeNotFoundError):
        store.update_attendee_status("missing", "going")
