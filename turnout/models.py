"""SQLAlchemy models for Turnout."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()

ATTENDEE_TYPES = (
    "primary",
    "family_member",
    "guest",
    "ghost",
    "offline_paid",
    "vip",
    "sponsor",
    "volunteer",
    "early_bird",
    "group_booking",
)
RSVP_STATUSES = ("going", "not-going", "waitlisted", "pending")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String(255), nullable=False)
    start_time = Column(DateTime, nullable=True)
    max_attendees = Column(Integer, nullable=True)
    waitlist_enabled = Column(Boolean, default=False, nullable=False)
    waitlist_limit = Column(Integer, nullable=True)
    # Denormalized occupancy; only moved by conditional updates in crud.
    going_count = Column(Integer, default=0, nullable=False)
    waitlisted_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    attendees = relationship(
        "Attendee",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="Attendee.created_at",
    )


class Attendee(Base):
    __tablename__ = "attendees"
    __table_args__ = (
        Index(
            "uq_attendees_primary_per_user",
            "event_id",
            "user_id",
            unique=True,
            sqlite_where=text("attendee_type = 'primary' AND is_deleted = 0"),
            postgresql_where=text("attendee_type = 'primary' AND NOT is_deleted"),
        ),
        Index("ix_attendees_event_status", "event_id", "rsvp_status"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(String(36), ForeignKey("events.id"), nullable=False)
    user_id = Column(String(128), nullable=True)
    name = Column(String(120), nullable=True)
    attendee_type = Column(String(32), nullable=False, default="primary")
    rsvp_status = Column(String(16), nullable=False, default="pending")
    is_deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="attendees")
