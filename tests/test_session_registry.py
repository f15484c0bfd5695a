"""
Session registry tests.

Verifies:
- Known, live identifiers are reused
- Malformed, unknown and expired identifiers mint a new session
- Reset expires the old session
- Records persist across registry instances
"""
import json
import uuid
from datetime import datetime, timedelta, timezone

from chat_server.session import SessionRecord, SessionRegistry, is_session_id


class Clock:

    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def test_is_session_id():
    assert is_session_id(str(uuid.uuid4()))
    assert is_session_id(str(uuid.uuid4()).upper())
    assert not is_session_id(None)
    assert not is_session_id("")
    assert not is_session_id(42)
    assert not is_session_id("not-a-uuid")
    assert not is_session_id("00000000-0000-0000-0000-000000000000")


def test_no_identifier_creates_session():
    registry = SessionRegistry()

    session, created, rotated = registry.ensure_session(None, ip_address="10.0.0.1", user_agent="pytest")

    assert created and not rotated
    assert is_session_id(session.id)
    assert session.ip_address == "10.0.0.1"
    assert session.user_agent == "pytest"


def test_known_identifier_is_reused_and_touched():
    clock = Clock()
    registry = SessionRegistry(now=clock)
    session, _, _ = registry.ensure_session(None)

    clock.advance(minutes=5)
    again, created, rotated = registry.ensure_session(session.id, ip_address="10.0.0.2")

    assert again.id == session.id
    assert not created and not rotated
    assert again.last_seen == clock.now
    assert again.ip_address == "10.0.0.2"


def test_uppercase_identifier_is_reused():
    registry = SessionRegistry()
    session, _, _ = registry.ensure_session(None)

    again, created, _ = registry.ensure_session(session.id.upper())

    assert again.id == session.id
    assert not created


def test_malformed_identifier_is_replaced_without_rotation():
    session, created, rotated = SessionRegistry().ensure_session("abc")

    assert created and not rotated
    assert session.id != "abc"


def test_unknown_well_formed_identifier_rotates():
    presented = str(uuid.uuid4())

    session, created, rotated = SessionRegistry().ensure_session(presented)

    assert created and rotated
    assert session.id != presented


def test_reset_expires_previous_session():
    registry = SessionRegistry()
    old, _, _ = registry.ensure_session(None)

    new = registry.reset_session(old.id, ip_address="10.0.0.1")

    assert new.id != old.id
    assert registry.get_session(old.id) is None
    assert registry.get_session(new.id) is new


def test_expired_identifier_is_never_revived():
    registry = SessionRegistry()
    old, _, _ = registry.ensure_session(None)
    registry.reset_session(old.id)

    session, created, rotated = registry.ensure_session(old.id)

    assert session.id != old.id
    assert created and rotated


def test_reset_unknown_previous_still_mints():
    registry = SessionRegistry()

    new = registry.reset_session(None)

    assert registry.get_session(new.id) is new


def test_persistence_round_trip(tmp_path):
    path = tmp_path / "sessions.json"
    registry = SessionRegistry(path)
    live, _, _ = registry.ensure_session(None, user_agent="pytest")
    expired, _, _ = registry.ensure_session(None)
    registry.reset_session(expired.id)

    reloaded = SessionRegistry(path)

    assert reloaded.get_session(live.id).user_agent == "pytest"
    assert reloaded.get_session(expired.id) is None
    assert len(reloaded.list_sessions()) == 3


def test_malformed_records_are_skipped(tmp_path):
    path = tmp_path / "sessions.json"
    good = SessionRecord(
        id=str(uuid.uuid4()),
        created_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
        last_seen=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )
    path.write_text(json.dumps([
        good.to_dict(),
        {"id": "not-a-uuid", "created_at": "2024-05-01T00:00:00+00:00", "last_seen": "2024-05-01T00:00:00+00:00"},
        {"id": str(uuid.uuid4())},
        {"id": str(uuid.uuid4()), "created_at": 20240501, "last_seen": None},
        {"id": 42, "created_at": "2024-05-01T00:00:00+00:00", "last_seen": "2024-05-01T00:00:00+00:00"},
        "junk",
        ["nested"],
        None,
    ]), encoding="utf-8")

    registry = SessionRegistry(path)

    assert [s["id"] for s in registry.list_sessions()] == [good.id]


def test_unreadable_file_starts_empty(tmp_path):
    path = tmp_path / "sessions.json"
    path.write_text("{{{", encoding="utf-8")

    assert SessionRegistry(path).list_sessions() == []
