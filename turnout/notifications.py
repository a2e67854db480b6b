"""Fire-and-forget notices about RSVP status changes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class TransitionNotice:
    event_id: str
    attendee_id: str
    user_id: str | None
    previous_status: str | None
    status: str
    waitlist_position: int | None = None
    cascaded: bool = False


class NotificationSink(Protocol):
    def notify(self, notice: TransitionNotice) -> None: ...


class LoggingNotificationSink:
    """Default sink: writes each notice to the application log."""

    def notify(self, notice: TransitionNotice) -> None:
        suffix = (
            f" (waitlist position {notice.waitlist_position})"
            if notice.waitlist_position is not None
            else ""
        )
        logger.info(
            "RSVP %s -> %s for attendee %s on event %s%s%s",
            notice.previous_status or "new",
            notice.status,
            notice.attendee_id,
            notice.event_id,
            suffix,
            " [cascade]" if notice.cascaded else "",
        )


class RecordingNotificationSink:
    """Keeps notices in memory."""

    def __init__(self) -> None:
        self.notices: list[TransitionNotice] = []

    def notify(self, notice: TransitionNotice) -> None:
        self.notices.append(notice)


def dispatch(sink: NotificationSink | None, notice: TransitionNotice) -> None:
    """Deliver ``notice``; sink failures are logged and never propagate."""
    if sink is None:
        return
    try:
        sink.notify(notice)
    except Exception:
        logger.exception(
            "Notification sink failed for attendee %s on event %s",
            notice.attendee_id,
            notice.event_id,
        )
