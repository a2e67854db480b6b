"""RSVP status transitions with atomic capacity enforcement.

Every move into ``going`` or ``waitlisted`` claims its slot with a conditional
UPDATE on the event's counters inside the same transaction as the attendee
write (see ``crud.claim_slot``). The capacity decision itself comes from
``capacity.evaluate`` on a fresh read, so the decision is only advisory; the
conditional write is what actually prevents overbooking. A lost race is
retried with a fresh read, then reported as ``CapacityExceededError``.

Cascades (family members following their primary to ``not-going``) run after
the primary change commits, one transaction per family member. Failures are
logged, reported on the result and can be replayed with ``repair_cascade``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import database
from .capacity import CapacityPolicy, CapacityState, evaluate, rejection_reason
from .config import settings
from .counts import AttendeeRecord
from .crud import (
    attendee_records,
    claim_slot,
    event_counts,
    family_members,
    find_primary,
    get_attendee,
    get_event,
    insert_attendee,
    normalize_attendee_type,
    normalize_status,
    release_slot,
    set_attendee_status,
    soft_delete_attendee,
)
from .errors import (
    AttendeeNotFoundError,
    CapacityExceededError,
    CascadeFailure,
    ConcurrentCapacityConflictError,
    EventNotFoundError,
    InvalidTransitionError,
    StaleWaitlistPositionError,
)
from .models import Attendee, Event
from .notifications import (
    LoggingNotificationSink,
    NotificationSink,
    TransitionNotice,
    dispatch,
)
from .waitlist import WaitlistRanking, position_of, rank
from .waitlist import my_position as waitlist_position_for

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

USER_TARGETS = {"going", "not-going"}
CREATE_TARGETS = {"going", "not-going", "pending"}


@dataclass(frozen=True)
class _Applied:
    attendee_id: str
    event_id: str
    user_id: str | None
    attendee_type: str
    previous_status: str | None
    status: str
    changed: bool


@dataclass
class TransitionResult:
    attendee_id: str
    event_id: str
    user_id: str | None
    attendee_type: str
    previous_status: str | None
    status: str
    changed: bool
    waitlist_position: int | None = None
    cascaded_ids: list[str] = field(default_factory=list)
    cascade_failure: CascadeFailure | None = None

    @property
    def message(self) -> str:
        if self.status == "going":
            return "You're going!"
        if self.status == "waitlisted":
            if self.waitlist_position is not None:
                return (
                    "Event is full. You have been added to the waitlist "
                    f"(position {self.waitlist_position})."
                )
            return "Event is full. You have been added to the waitlist."
        if self.status == "not-going":
            return "Your response has been recorded."
        return "Your RSVP is pending."


@dataclass(frozen=True)
class BulkItem:
    attendee_type: str = "guest"
    name: str | None = None
    user_id: str | None = None
    rsvp_status: str = "going"


@dataclass
class BulkAddResult:
    added: list[TransitionResult] = field(default_factory=list)
    rejected: list[tuple[BulkItem, Exception]] = field(default_factory=list)


class RSVPTransitionController:
    def __init__(
        self,
        session_factory=None,
        *,
        notifier: NotificationSink | None = None,
        near_full_ratio: float | None = None,
        conflict_retries: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.notifier = notifier if notifier is not None else LoggingNotificationSink()
        self.near_full_ratio = (
            settings.near_full_ratio if near_full_ratio is None else near_full_ratio
        )
        self.conflict_retries = (
            settings.capacity_conflict_retries
            if conflict_retries is None
            else conflict_retries
        )

    def _session(self):
        return database.get_session(self._session_factory)

    # Reads

    def capacity(self, event_id: str) -> CapacityState:
        with self._session() as session:
            event = self._require_event(session, event_id)
            return self._evaluate(session, event)

    def waitlist(self, event_id: str) -> WaitlistRanking:
        with self._session() as session:
            self._require_event(session, event_id)
            return rank(attendee_records(session, event_id))

    def my_position(self, event_id: str, user_id: str) -> int | None:
        return waitlist_position_for(user_id, self.waitlist(event_id))

    # Transitions

    def respond(
        self,
        event_id: str,
        user_id: str,
        status: str,
        *,
        name: str | None = None,
    ) -> TransitionResult:
        """Apply a user's own RSVP, creating their primary record on first use."""
        target = self._target(status, USER_TARGETS)

        def operation(session: Session) -> _Applied:
            event = self._require_event(session, event_id)
            primary = find_primary(session, event_id, user_id)
            if primary is None:
                return self._create(
                    session,
                    event,
                    user_id=user_id,
                    attendee_type="primary",
                    name=name,
                    target=target,
                )
            return self._transition(session, event, primary, target)

        try:
            applied = self._with_conflict_retry(event_id, operation)
        except IntegrityError:
            # A concurrent first RSVP created the primary; retry against it.
            logger.info("Primary for user %s on event %s created concurrently", user_id, event_id)
            applied = self._with_conflict_retry(event_id, operation)
        return self._finish(applied)

    def set_status(self, attendee_id: str, status: str) -> TransitionResult:
        """Change the status of one specific (possibly managed) attendee."""
        target = self._target(status, USER_TARGETS)
        event_id = self._event_id_for(attendee_id)

        def operation(session: Session) -> _Applied:
            attendee = self._require_attendee(session, attendee_id)
            event = self._require_event(session, attendee.event_id)
            return self._transition(session, event, attendee, target)

        return self._finish(self._with_conflict_retry(event_id, operation))

    def add_attendee(
        self,
        event_id: str,
        *,
        attendee_type: str,
        user_id: str | None = None,
        name: str | None = None,
        rsvp_status: str = "going",
    ) -> TransitionResult:
        """Attach a new attendee (family member, guest, ghost, ...) to an event."""
        target = self._target(rsvp_status, CREATE_TARGETS)
        try:
            kind = normalize_attendee_type(attendee_type)
        except ValueError as exc:
            raise InvalidTransitionError(str(exc)) from exc

        def operation(session: Session) -> _Applied:
            event = self._require_event(session, event_id)
            if kind == "primary" and user_id is not None:
                if find_primary(session, event_id, user_id) is not None:
                    raise InvalidTransitionError(
                        f"User {user_id} already has a primary attendee for this event"
                    )
            return self._create(
                session,
                event,
                user_id=user_id,
                attendee_type=kind,
                name=name,
                target=target,
            )

        return self._finish(self._with_conflict_retry(event_id, operation))

    def bulk_add(self, event_id: str, items: Iterable[BulkItem]) -> BulkAddResult:
        """Add attendees one by one, re-checking capacity for every item.

        Each item commits on its own; items that do not fit are reported in
        ``rejected`` and leave nothing behind.
        """
        result = BulkAddResult()
        for item in items:
            try:
                added = self.add_attendee(
                    event_id,
                    attendee_type=item.attendee_type,
                    user_id=item.user_id,
                    name=item.name,
                    rsvp_status=item.rsvp_status,
                )
            except (CapacityExceededError, InvalidTransitionError) as exc:
                result.rejected.append((item, exc))
                continue
            result.added.append(added)
        logger.info(
            "Bulk add on event %s: %d added, %d rejected",
            event_id,
            len(result.added),
            len(result.rejected),
        )
        return result

    def remove_attendee(self, attendee_id: str) -> AttendeeRecord:
        """Soft-delete an attendee and give back any slot they held.

        Removing a primary takes their going family members down with them,
        exactly as a move to ``not-going`` would.
        """
        with self._session() as session:
            attendee = self._require_attendee(session, attendee_id)
            release_slot(session, attendee.event_id, attendee.rsvp_status)
            soft_delete_attendee(session, attendee)
            record = AttendeeRecord.from_model(attendee)

        dispatch(
            self.notifier,
            TransitionNotice(
                event_id=record.event_id,
                attendee_id=record.id,
                user_id=record.user_id,
                previous_status=record.rsvp_status,
                status="removed",
            ),
        )
        if record.attendee_type == "primary" and record.user_id is not None:
            self._cascade(record.event_id, record.user_id)
        return record

    def repair_cascade(self, event_id: str, user_id: str) -> list[str]:
        """Re-run the not-going cascade for ``user_id`` if their primary is not going."""
        with self._session() as session:
            primary = find_primary(session, event_id, user_id)
            if primary is None or primary.rsvp_status != "not-going":
                return []
        downgraded, failure = self._cascade(event_id, user_id)
        if failure is not None:
            raise failure
        return downgraded

    # Internals

    def _target(self, status: str, allowed: set[str]) -> str:
        try:
            target = normalize_status(status)
        except ValueError as exc:
            raise InvalidTransitionError(str(exc)) from exc
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot request status {target!r}; allowed: {', '.join(sorted(allowed))}"
            )
        return target

    def _require_event(self, session: Session, event_id: str) -> Event:
        event = get_event(session, event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    def _require_attendee(self, session: Session, attendee_id: str) -> Attendee:
        attendee = get_attendee(session, attendee_id)
        if attendee is None:
            raise AttendeeNotFoundError(attendee_id)
        return attendee

    def _event_id_for(self, attendee_id: str) -> str:
        with self._session() as session:
            return self._require_attendee(session, attendee_id).event_id

    def _evaluate(self, session: Session, event: Event) -> CapacityState:
        counts = event_counts(session, event)
        return evaluate(
            counts, CapacityPolicy.from_event(event), near_full_ratio=self.near_full_ratio
        )

    def _decide(self, session: Session, event: Event, target: str) -> str:
        """Map a requested status onto the status that will actually be stored."""
        if target != "going":
            return target
        counts = event_counts(session, event)
        policy = CapacityPolicy.from_event(event)
        state = evaluate(counts, policy, near_full_ratio=self.near_full_ratio)
        if state.can_add_more:
            return "going"
        if state.can_waitlist:
            return "waitlisted"
        raise CapacityExceededError(
            event_id=event.id,
            total_going=counts.total_going,
            max_attendees=policy.max_attendees,
            waitlist_enabled=policy.waitlist_enabled,
            reason=rejection_reason(counts, policy),
        )

    def _create(
        self,
        session: Session,
        event: Event,
        *,
        user_id: str | None,
        attendee_type: str,
        name: str | None,
        target: str,
    ) -> _Applied:
        if target == "going":
            self._guard_family_member(session, event.id, attendee_type, user_id)
        applied = self._decide(session, event, target)
        claim_slot(session, event.id, applied)
        attendee = insert_attendee(
            session,
            event_id=event.id,
            user_id=user_id,
            attendee_type=attendee_type,
            rsvp_status=applied,
            name=name,
        )
        return _Applied(
            attendee_id=attendee.id,
            event_id=event.id,
            user_id=user_id,
            attendee_type=attendee.attendee_type,
            previous_status=None,
            status=applied,
            changed=True,
        )

    def _transition(
        self, session: Session, event: Event, attendee: Attendee, target: str
    ) -> _Applied:
        current = attendee.rsvp_status
        if current == target or (target == "going" and current == "waitlisted"):
            return _Applied(
                attendee_id=attendee.id,
                event_id=attendee.event_id,
                user_id=attendee.user_id,
                attendee_type=attendee.attendee_type,
                previous_status=current,
                status=current,
                changed=False,
            )
        if target == "going":
            self._guard_family_member(
                session, event.id, attendee.attendee_type, attendee.user_id
            )
        applied = self._decide(session, event, target)
        claim_slot(session, event.id, applied)
        release_slot(session, event.id, current)
        set_attendee_status(session, attendee, applied)
        return _Applied(
            attendee_id=attendee.id,
            event_id=attendee.event_id,
            user_id=attendee.user_id,
            attendee_type=attendee.attendee_type,
            previous_status=current,
            status=applied,
            changed=True,
        )

    def _guard_family_member(
        self,
        session: Session,
        event_id: str,
        attendee_type: str,
        user_id: str | None,
    ) -> None:
        if attendee_type != "family_member" or user_id is None:
            return
        primary = find_primary(session, event_id, user_id)
        if primary is not None and primary.rsvp_status == "not-going":
            raise InvalidTransitionError(
                "Family members cannot attend while their primary attendee is not going"
            )

    def _with_conflict_retry(
        self, event_id: str, operation: Callable[[Session], T]
    ) -> T:
        attempts = self.conflict_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                with self._session() as session:
                    return operation(session)
            except ConcurrentCapacityConflictError as exc:
                logger.warning(
                    "Capacity conflict claiming a %s slot on event %s (attempt %d/%d)",
                    exc.slot,
                    event_id,
                    attempt,
                    attempts,
                )
        raise self._exhausted(event_id)

    def _exhausted(self, event_id: str) -> CapacityExceededError:
        with self._session() as session:
            event = self._require_event(session, event_id)
            counts = event_counts(session, event)
            policy = CapacityPolicy.from_event(event)
        return CapacityExceededError(
            event_id=event_id,
            total_going=counts.total_going,
            max_attendees=policy.max_attendees,
            waitlist_enabled=policy.waitlist_enabled,
            reason=rejection_reason(counts, policy),
        )

    def _waitlist_position(self, event_id: str, attendee_id: str) -> int | None:
        try:
            return position_of(attendee_id, self.waitlist(event_id))
        except StaleWaitlistPositionError:
            # Promoted or removed since the write; the next read corrects it.
            logger.debug("Waitlist position for %s not in current snapshot", attendee_id)
            return None

    def _finish(self, applied: _Applied) -> TransitionResult:
        result = TransitionResult(
            attendee_id=applied.attendee_id,
            event_id=applied.event_id,
            user_id=applied.user_id,
            attendee_type=applied.attendee_type,
            previous_status=applied.previous_status,
            status=applied.status,
            changed=applied.changed,
        )
        if applied.status == "waitlisted":
            result.waitlist_position = self._waitlist_position(
                applied.event_id, applied.attendee_id
            )
        if not applied.changed:
            return result

        dispatch(
            self.notifier,
            TransitionNotice(
                event_id=applied.event_id,
                attendee_id=applied.attendee_id,
                user_id=applied.user_id,
                previous_status=applied.previous_status,
                status=applied.status,
                waitlist_position=result.waitlist_position,
            ),
        )
        if (
            applied.attendee_type == "primary"
            and applied.status == "not-going"
            and applied.user_id is not None
        ):
            result.cascaded_ids, result.cascade_failure = self._cascade(
                applied.event_id, applied.user_id
            )
        return result

    def _cascade(
        self, event_id: str, user_id: str
    ) -> tuple[list[str], CascadeFailure | None]:
        with self._session() as session:
            member_ids = [
                member.id
                for member in family_members(session, event_id, user_id, status="going")
            ]
        downgraded: list[str] = []
        failed: list[str] = []
        for member_id in member_ids:
            try:
                with self._session() as session:
                    member = get_attendee(session, member_id)
                    if member is None or member.rsvp_status != "going":
                        continue
                    release_slot(session, event_id, "going")
                    set_attendee_status(session, member, "not-going")
            except SQLAlchemyError:
                logger.exception(
                    "Cascade downgrade failed for family member %s on event %s",
                    member_id,
                    event_id,
                )
                failed.append(member_id)
                continue
            downgraded.append(member_id)
            dispatch(
                self.notifier,
                TransitionNotice(
                    event_id=event_id,
                    attendee_id=member_id,
                    user_id=user_id,
                    previous_status="going",
                    status="not-going",
                    cascaded=True,
                ),
            )
        if not failed:
            return downgraded, None
        failure = CascadeFailure(event_id=event_id, user_id=user_id, failed_ids=failed)
        logger.warning("%s", failure)
        return downgraded, failure
