from datetime import timedelta

import pytest

from edugate.service.activity import (
    Action,
    ActivityRecorder,
    action_for_method,
    derive_scope,
    scrub_snapshot,
)
from edugate.storage.memory import MemoryStore
from edugate.storage.models import ActivityLogEntry, utcnow


class BrokenStore:
    def append_activity(self, entry):
        raise RuntimeError("disk full")


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def recorder(store):
    return ActivityRecorder(store, api_prefix="/api")


def test_record_failure_is_swallowed():
    recorder = ActivityRecorder(BrokenStore())

    assert recorder.record(ActivityLogEntry.new("CREATE", "centres")) is None


@pytest.mark.parametrize(
    "method,action",
    [
        ("POST", Action.CREATE),
        ("put", Action.UPDATE),
        ("PATCH", Action.UPDATE),
        ("DELETE", Action.DELETE),
        ("GET", Action.READ),
        ("TRACE", Action.UNKNOWN),
    ],
)
def test_action_for_method(method, action):
    assert action_for_method(method) is action


@pytest.mark.parametrize(
    "path,expected",
    [
        ("/api/centres/c-1", ("centres", "c-1")),
        ("/api/centres", ("centres", None)),
        ("/api/users/search", ("users", None)),
        ("/api/users/stats", ("users", None)),
        ("/api/cursos/k-1/assignatures/a-1", ("cursos", "k-1")),
        ("/api", ("unknown", None)),
        ("/api/auth/verify", ("auth", "verify")),
    ],
)
def test_derive_target(recorder, path, expected):
    assert recorder.derive_target(path) == expected


def test_scrub_snapshot_drops_credentials():
    body = {"email": "a@b.com", "password": "x", "newPassword": "y", "refreshToken": "z"}

    assert scrub_snapshot(body) == {"email": "a@b.com"}
    assert scrub_snapshot(["not", "a", "dict"]) is None


def test_entry_from_request_prefers_explicit_target(recorder):
    entry = recorder.entry_from_request(
        method="POST",
        path="/api/auth/register",
        user_id="u-1",
        body={"email": "n@b.com", "password": "secret123"},
        table="users",
        record_id="u-9",
    )

    assert entry.action == "CREATE"
    assert entry.table_name == "users"
    assert entry.record_id == "u-9"
    assert entry.new_data == {"email": "n@b.com"}


def test_entry_from_request_falls_back_to_path(recorder):
    entry = recorder.entry_from_request(
        method="DELETE", path="/api/centres/c-1", user_id="u-1", body={"x": 1}
    )

    assert entry.table_name == "centres"
    assert entry.record_id == "c-1"
    assert entry.new_data is None


def test_auth_events_target_the_user(recorder, store):
    recorder.log_auth_event("u-1", Action.LOGIN, ip_address="10.0.0.1", user_agent="pytest")
    recorder.log_password_change("u-1")

    entries = store.list_activity(user_id="u-1")
    assert {e.action for e in entries} == {"LOGIN", "PASSWORD_CHANGE"}
    assert all(e.table_name == "users" and e.record_id == "u-1" for e in entries)


def test_access_denied_and_system_error(recorder, store):
    recorder.log_access_denied("u-1", "centres", reason="centre")
    recorder.log_system_error(ValueError("boom"), path="/api/x")

    denied = store.list_activity(action="ACCESS_DENIED")[0]
    assert denied.table_name == "centres"
    assert denied.new_data == {"reason": "centre"}
    error = store.list_activity(action="SYSTEM_ERROR")[0]
    assert error.table_name == "system"
    assert error.new_data["error"] == "ValueError"
    assert error.new_data["path"] == "/api/x"


def test_cleanup_removes_entries_older_than_retention(recorder, store):
    store.append_activity(
        ActivityLogEntry.new("CREATE", "centres", timestamp=utcnow() - timedelta(days=31))
    )
    store.append_activity(ActivityLogEntry.new("CREATE", "centres"))

    assert recorder.cleanup(30) == 1
    assert len(recorder.list_recent()) == 1


@pytest.mark.parametrize(
    "table,record_id,body,expected",
    [
        ("centres", "c-1", None, ("c-1", None)),
        ("cursos", "k-1", {"centreId": "c-1"}, ("c-1", "k-1")),
        ("alumnes", "a-1", {"centreId": "c-2", "cursId": "k-2"}, ("c-2", "k-2")),
        ("centres", "c-1", {"centreId": "c-9"}, ("c-1", None)),
        ("users", None, {"centreId": 7}, (None, None)),
        ("users", None, ["not", "a", "dict"], (None, None)),
    ],
)
def test_derive_scope(table, record_id, body, expected):
    assert derive_scope(table, record_id, body) == expected


def test_entry_from_request_records_scope(recorder, store):
    from_path = recorder.entry_from_request(
        method="PUT", path="/api/cursos/k-1", user_id="u-1", body={"centreId": "c-1"}
    )
    tagged = recorder.entry_from_request(
        method="POST",
        path="/api/auth/register",
        user_id="u-1",
        body={"email": "n@b.com"},
        table="users",
        record_id="u-9",
        centre_id="c-2",
    )

    assert (from_path.centre_id, from_path.curs_id) == ("c-1", "k-1")
    assert (tagged.centre_id, tagged.curs_id) == ("c-2", None)


def test_list_recent_filters_by_centre(recorder, store):
    store.append_activity(ActivityLogEntry.new("CREATE", "cursos", centre_id="c-1"))
    store.append_activity(ActivityLogEntry.new("CREATE", "cursos", centre_id="c-2"))
    store.append_activity(ActivityLogEntry.new("LOGIN", "users"))

    entries = recorder.list_recent(centre_id="c-1")

    assert [e.centre_id for e in entries] == ["c-1"]
