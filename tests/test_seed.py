from __future__ import annotations

import pytest

from turnout import database, seed
from turnout.crud import get_event, list_attendees, list_event_ids


def test_seed_fake_data_respects_capacity(monkeypatch):
    monkeypatch.setattr(seed, "init_db", lambda: None)

    stats = seed.seed_fake_data(event_count=4, attendees_per_event=8, waitlist_percent=50)

    assert stats["events"] == 4
    with database.get_session() as db:
        event_ids = list_event_ids(db)
        assert len(event_ids) == 4
        total = 0
        for event_id in event_ids:
            event = get_event(db, event_id)
            going = list_attendees(db, event_id, status="going")
            total += len(list_attendees(db, event_id))
            assert event.going_count == len(going)
            if event.max_attendees is not None:
                assert len(going) <= event.max_attendees
            if not event.waitlist_enabled:
                assert list_attendees(db, event_id, status="waitlisted") == []
        assert total == stats["attendees"]


def test_seed_fake_data_validates_arguments():
    with pytest.raises(ValueError):
        seed.seed_fake_data(event_count=-1)
    with pytest.raises(ValueError):
        seed.seed_fake_data(waitlist_percent=101)
