from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from eventboard import database
from eventboard.documents import DocumentStore, parse_path
from eventboard.errors import InvalidPath, WriteFailure


def _event_fields(title: str = "Picnic", start_time: str = "2030-06-01T12:00"):
    return {
        "title": title,
        "description": None,
        "start_time": start_time,
        "created_by": "anon-tester",
    }


def test_parse_path_understands_collection_layout():
    events = parse_path("ns/events")
    assert events.collection == "events" and events.is_collection

    rsvp = parse_path("ns/events/e1/rsvps/u1")
    assert rsvp.collection == "rsvps"
    assert rsvp.event_id == "e1"
    assert rsvp.document_id == "u1"
    assert rsvp.collection_path == "ns/events/e1/rsvps"
    assert str(rsvp) == "ns/events/e1/rsvps/u1"

    banner = parse_path("/ns/banners/b1/")
    assert banner.collection == "banners" and banner.document_id == "b1"


@pytest.mark.parametrize(
    "path",
    ["", "ns", "ns/users", "ns/events/e1/comments", "ns//events", "ns/banners/b1/rsvps"],
)
def test_parse_path_rejects_unknown_shapes(path):
    with pytest.raises(InvalidPath):
        parse_path(path)


def test_store_rejects_paths_from_other_namespaces(store):
    with pytest.raises(InvalidPath):
        store.read("elsewhere/events")


def test_write_assigns_ids_and_reads_in_document_order(store):
    first = store.write(store.events_path(), _event_fields("First"))
    second = store.write(store.events_path(), _event_fields("Second"))

    assert first.id != second.id
    assert first.path == store.event_path(first.id)
    docs = store.read(store.events_path())
    assert [doc.get("title") for doc in docs] == ["First", "Second"]
    assert store.get(store.event_path(first.id)).get("start_time") == "2030-06-01T12:00"


def test_banners_are_served_newest_first(store):
    base = datetime(2030, 1, 1, 12, 0)
    store.write(
        store.banners_path(),
        {"image_url": "https://example.com/old.png", "created_at": base},
    )
    store.write(
        store.banners_path(),
        {
            "image_url": "https://example.com/new.png",
            "created_at": base + timedelta(minutes=5),
        },
    )
    urls = [doc.get("image_url") for doc in store.read(store.banners_path())]
    assert urls == ["https://example.com/new.png", "https://example.com/old.png"]


def test_rsvp_documents_are_keyed_by_user(store):
    event = store.write(store.events_path(), _event_fields())
    path = store.rsvp_path(event.id, "anon-alice")

    store.write(path, {"user_id": "anon-alice"})
    store.write(path, {"user_id": "anon-alice"})

    docs = store.read(store.rsvps_path(event.id))
    assert [doc.id for doc in docs] == ["anon-alice"]
    assert docs[0].get("user_id") == "anon-alice"


def test_rsvp_for_missing_event_is_a_write_failure(store):
    with pytest.raises(WriteFailure):
        store.write(store.rsvp_path("missing", "anon-alice"), {"user_id": "anon-alice"})


def test_deleting_an_event_removes_its_rsvps(store):
    event = store.write(store.events_path(), _event_fields())
    store.write(store.rsvp_path(event.id, "anon-alice"), {"user_id": "anon-alice"})

    assert store.delete(store.event_path(event.id)) is True
    assert store.read(store.events_path()) == []
    assert store.read(store.rsvps_path(event.id)) == []
    assert store.delete(store.event_path(event.id)) is False


def test_namespaces_do_not_see_each_other(store):
    other = DocumentStore("other")
    store.write(store.events_path(), _event_fields("Ours"))
    other.write(other.events_path(), _event_fields("Theirs"))

    assert [doc.get("title") for doc in store.read(store.events_path())] == ["Ours"]
    assert [doc.get("title") for doc in other.read(other.events_path())] == ["Theirs"]


def test_subscribe_emits_full_snapshots(store):
    snapshots: list[list[str]] = []
    unsubscribe = store.subscribe(
        store.events_path(),
        lambda docs: snapshots.append([doc.get("title") for doc in docs]),
    )

    store.write(store.events_path(), _event_fields("One"))
    store.write(store.events_path(), _event_fields("Two"))
    unsubscribe()
    unsubscribe()
    store.write(store.events_path(), _event_fields("Three"))

    assert snapshots == [[], ["One"], ["One", "Two"]]
    assert store.listener_count(store.events_path()) == 0


def test_subscribe_can_skip_initial_snapshot(store):
    event = store.write(store.events_path(), _event_fields())
    seen: list[int] = []
    store.subscribe(
        store.rsvps_path(event.id),
        lambda docs: seen.append(len(docs)),
        emit_initial=False,
    )
    assert seen == []

    store.write(store.rsvp_path(event.id, "anon-bob"), {"user_id": "anon-bob"})
    store.delete(store.event_path(event.id))
    assert seen == [1, 0]


def test_subscribe_requires_collection_path(store):
    with pytest.raises(InvalidPath):
        store.subscribe(store.event_path("e1"), lambda docs: None)


@contextmanager
def _locked_session():
    raise OperationalError("INSERT", {}, Exception("database is locked"))
    yield  # pragma: no cover


def test_database_errors_become_write_failures():
    broken = DocumentStore("test", session_scope=_locked_session)
    with pytest.raises(WriteFailure):
        broken.write(broken.events_path(), _event_fields())
    with pytest.raises(WriteFailure):
        broken.delete(broken.event_path("e1"))


class _FlakyScope:
    def __init__(self):
        self.broken = False

    def __call__(self):
        if self.broken:
            return _locked_session()
        return database.get_session()


def test_stream_errors_reach_the_error_callback():
    scope = _FlakyScope()
    flaky = DocumentStore("test", session_scope=scope)
    errors: list[Exception] = []
    flaky.subscribe(flaky.events_path(), lambda docs: None, errors.append)

    scope.broken = True
    flaky._notify(flaky.events_path())

    assert len(errors) == 1
    assert isinstance(errors[0], OperationalError)
