from datetime import datetime, timedelta, timezone

import pytest

from lms_tools.notifications import NotificationService

NOW = datetime(2025, 8, 4, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def service(fake_db):
    return NotificationService(fake_db)


def _note(id, **extra):
    row = {
        "id": id,
        "recipient_id": "u1",
        "company": "login",
        "type": "info",
        "is_read": False,
        "expires_at": None,
        "created_at": f"2025-08-0{id[-1]}T00:00:00+00:00",
    }
    row.update(extra)
    return row


def test_list_for_skips_expired_and_filters(service, fake_db):
    fake_db.tables["notifications"] = [
        _note("n1"),
        _note("n2", expires_at=(NOW - timedelta(days=1)).isoformat()),
        _note("n3", expires_at=(NOW + timedelta(days=1)).isoformat(), is_read=True),
        _note("n4", company="meta"),
        _note("n5", recipient_id="u2"),
        _note("n6", type="grade"),
    ]
    assert [n["id"] for n in service.list_for("u1", now=NOW)] == ["n6", "n3", "n1"]
    assert [n["id"] for n in service.list_for("u1", unread_only=True, now=NOW)] == ["n6", "n1"]
    assert [n["id"] for n in service.list_for("u1", type="grade", now=NOW)] == ["n6"]
    assert [n["id"] for n in service.list_for("u1", limit=1, offset=1, now=NOW)] == ["n3"]


def test_create_and_mark_read(service, fake_db):
    created = service.create("u1", "Graded", "Your quiz was graded", type="grade")
    assert created["company"] == "login"
    assert created["expires_at"] is None

    assert service.mark_read(created["id"], "someone-else", now=NOW) is False
    assert service.mark_read(created["id"], "u1", now=NOW) is True
    stored = fake_db.tables["notifications"][0]
    assert stored["is_read"] is True
    assert stored["read_at"] == NOW.isoformat()


def test_counters_go_through_rpc(service, fake_db):
    fake_db.rpc_handlers["get_unread_notification_count"] = lambda params: 4
    fake_db.rpc_handlers["mark_all_notifications_read"] = lambda params: None
    assert service.unread_count("u1") == 4
    service.mark_all_read("u1")
    assert ("rpc", "mark_all_notifications_read", {"target_user_id": "u1"}) in fake_db.calls


def test_delete_only_own_notification(service, fake_db):
    fake_db.tables["notifications"] = [_note("n1"), _note("n2", recipient_id="u2")]
    assert service.delete("n2", "u1") is False
    assert service.delete("n1", "u1") is True
    assert service.delete("n1", "u1") is False
    assert [n["id"] for n in fake_db.tables["notifications"]] == ["n2"]


def test_writes_are_logged(service, fake_db, capsys):
    created = service.create("u1", "Graded", "Your quiz was graded", type="grade")
    service.mark_read(created["id"], "someone-else", now=NOW)
    service.mark_read(created["id"], "u1", now=NOW)
    service.delete(created["id"], "u1")
    out = capsys.readouterr().out.splitlines()
    assert out == [
        "[notifications] Sent grade notification to u1: Graded",
        f"[notifications] Marked {created['id']} read for u1",
        f"[notifications] Deleted {created['id']} for u1",
    ]
