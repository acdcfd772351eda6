"""Namespaced document store with live collection subscriptions.

Documents are addressed by slash-separated paths under a namespace prefix::

    <ns>/events/<eventId>
    <ns>/events/<eventId>/rsvps/<userId>
    <ns>/banners/<bannerId>

Rows live in SQLAlchemy tables. Subscribers to a collection receive the full
current collection right away and again after every committed write or delete
touching it.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Mapping

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from . import database
from .errors import InvalidPath, WriteFailure
from .models import RSVP, Banner, Event
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")

EVENTS = "events"
RSVPS = "rsvps"
BANNERS = "banners"


@dataclass(frozen=True)
class Document:
    id: str
    path: str
    data: Mapping[str, Any]

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


SnapshotCallback = Callable[[list[Document]], None]
ErrorCallback = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class DocumentPath:
    namespace: str
    collection: str
    event_id: str | None = None
    document_id: str | None = None

    @property
    def is_collection(self) -> bool:
        return self.document_id is None

    @property
    def collection_path(self) -> str:
        if self.collection == RSVPS:
            return f"{self.namespace}/{EVENTS}/{self.event_id}/{RSVPS}"
        return f"{self.namespace}/{self.collection}"

    def child(self, document_id: str) -> "DocumentPath":
        return replace(self, document_id=document_id)

    def __str__(self) -> str:
        if self.document_id is None:
            return self.collection_path
        return f"{self.collection_path}/{self.document_id}"


def parse_path(path: str) -> DocumentPath:
    """Split a store path into its parts or raise ``InvalidPath``."""
    parts = (path or "").strip("/").split("/")
    if any(not part for part in parts):
        raise InvalidPath(f"Unsupported document path: {path!r}")
    if len(parts) in (2, 3) and parts[1] in (EVENTS, BANNERS):
        return DocumentPath(
            namespace=parts[0],
            collection=parts[1],
            document_id=parts[2] if len(parts) == 3 else None,
        )
    if len(parts) in (4, 5) and parts[1] == EVENTS and parts[3] == RSVPS:
        return DocumentPath(
            namespace=parts[0],
            collection=RSVPS,
            event_id=parts[2],
            document_id=parts[4] if len(parts) == 5 else None,
        )
    raise InvalidPath(f"Unsupported document path: {path!r}")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _require(fields: Mapping[str, Any], key: str) -> Any:
    value = fields.get(key)
    if value is None:
        raise ValueError(f"Missing required field {key!r}")
    return value


class _Subscription:
    def __init__(self, on_snapshot: SnapshotCallback, on_error: ErrorCallback | None):
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True

    def deliver(self, path: str, documents: list[Document]) -> None:
        if not self.active:
            return
        try:
            self.on_snapshot(list(documents))
        except Exception:
            logger.exception("Snapshot listener for %s raised", path)

    def fail(self, path: str, exc: Exception) -> None:
        if not self.active:
            return
        if self.on_error is None:
            logger.error("Snapshot stream for %s failed: %s", path, exc)
            return
        self.on_error(exc)


class DocumentStore:
    """Store scoped to one namespace, backed by the SQLAlchemy session factory."""

    def __init__(self, namespace: str, *, session_scope=None):
        self.namespace = namespace
        self._session_scope = session_scope
        self._listeners: dict[str, list[_Subscription]] = {}
        self._lock = threading.Lock()
        # Serializes read-then-deliver so subscribers see snapshots in commit order.
        self._emit_lock = threading.RLock()

    # -------- paths --------

    def events_path(self) -> str:
        return f"{self.namespace}/{EVENTS}"

    def event_path(self, event_id: str) -> str:
        return f"{self.events_path()}/{event_id}"

    def rsvps_path(self, event_id: str) -> str:
        return f"{self.event_path(event_id)}/{RSVPS}"

    def rsvp_path(self, event_id: str, user_id: str) -> str:
        return f"{self.rsvps_path(event_id)}/{user_id}"

    def banners_path(self) -> str:
        return f"{self.namespace}/{BANNERS}"

    def banner_path(self, banner_id: str) -> str:
        return f"{self.banners_path()}/{banner_id}"

    def _resolve(self, path: str | DocumentPath) -> DocumentPath:
        target = path if isinstance(path, DocumentPath) else parse_path(path)
        if target.namespace != self.namespace:
            raise InvalidPath(
                f"Path {target} is outside namespace {self.namespace!r}"
            )
        return target

    def _session(self):
        scope = self._session_scope or database.get_session
        return scope()

    # -------- reads --------

    def read(self, path: str) -> list[Document]:
        """Return every document in a collection."""
        target = self._resolve(path)
        if not target.is_collection:
            raise InvalidPath(f"read() expects a collection path, got {target}")
        with self._session() as session:
            return self._read_collection(session, target)

    def get(self, path: str) -> Document | None:
        """Return a single document or ``None`` when it does not exist."""
        target = self._resolve(path)
        if target.is_collection:
            raise InvalidPath(f"get() expects a document path, got {target}")
        with self._session() as session:
            row = self._get_row(session, target)
            return self._to_document(target, row) if row is not None else None

    def _read_collection(self, session, target: DocumentPath) -> list[Document]:
        if target.collection == EVENTS:
            stmt = (
                select(Event)
                .where(Event.namespace == self.namespace)
                .order_by(Event.created_at.asc(), Event.id.asc())
            )
        elif target.collection == BANNERS:
            stmt = (
                select(Banner)
                .where(Banner.namespace == self.namespace)
                .order_by(Banner.created_at.desc(), Banner.id.asc())
            )
        else:
            stmt = (
                select(RSVP)
                .join(RSVP.event)
                .where(Event.namespace == self.namespace)
                .where(RSVP.event_id == target.event_id)
                .order_by(RSVP.created_at.asc(), RSVP.user_id.asc())
            )
        return [
            self._to_document(target, row) for row in session.scalars(stmt).all()
        ]

    def _get_row(self, session, target: DocumentPath):
        if target.collection == EVENTS:
            row = session.get(Event, target.document_id)
            return row if row is not None and row.namespace == self.namespace else None
        if target.collection == BANNERS:
            row = session.get(Banner, target.document_id)
            return row if row is not None and row.namespace == self.namespace else None
        row = session.get(RSVP, (target.event_id, target.document_id))
        if row is None or row.event is None or row.event.namespace != self.namespace:
            return None
        return row

    def _to_document(self, target: DocumentPath, row) -> Document:
        if isinstance(row, Event):
            data = {
                "title": row.title,
                "description": row.description,
                "start_time": row.start_time,
                "created_by": row.created_by,
                "created_at": _iso(row.created_at),
            }
            doc_id = row.id
        elif isinstance(row, Banner):
            data = {"image_url": row.image_url, "created_at": _iso(row.created_at)}
            doc_id = row.id
        else:
            data = {"user_id": row.user_id, "created_at": _iso(row.created_at)}
            doc_id = row.user_id
        return Document(id=doc_id, path=str(target.child(doc_id)), data=data)

    # -------- writes --------

    def write(self, path: str, fields: Mapping[str, Any]) -> Document:
        """Create or replace a document.

        A collection path adds a new document with a store-assigned id; a
        document path sets that document, replacing any previous contents.
        """
        target = self._resolve(path)
        try:
            with self._session() as session:
                document = self._write(session, target, dict(fields))
        except SQLAlchemyError as exc:
            logger.warning("Write to %s failed: %s", target, exc)
            raise WriteFailure(f"Could not save {target.collection_path}") from exc
        self._notify(target.collection_path)
        return document

    def _write(self, session, target: DocumentPath, fields: dict[str, Any]) -> Document:
        created_at = fields.get("created_at") or utcnow()
        if target.collection == EVENTS:
            doc_id = target.document_id or str(uuid.uuid4())
            row = session.get(Event, doc_id)
            if row is None:
                row = Event(id=doc_id, namespace=self.namespace)
                session.add(row)
            elif row.namespace != self.namespace:
                raise WriteFailure(f"Event {doc_id} belongs to another namespace")
            row.title = _require(fields, "title")
            row.description = fields.get("description")
            row.start_time = str(_require(fields, "start_time"))
            row.created_by = _require(fields, "created_by")
            row.created_at = created_at
        elif target.collection == BANNERS:
            doc_id = target.document_id or str(uuid.uuid4())
            row = session.get(Banner, doc_id)
            if row is None:
                row = Banner(id=doc_id, namespace=self.namespace)
                session.add(row)
            elif row.namespace != self.namespace:
                raise WriteFailure(f"Banner {doc_id} belongs to another namespace")
            row.image_url = _require(fields, "image_url")
            row.created_at = created_at
        else:
            doc_id = target.document_id or _require(fields, "user_id")
            event = session.get(Event, target.event_id)
            if event is None or event.namespace != self.namespace:
                raise WriteFailure(f"Event {target.event_id} does not exist")
            row = session.get(RSVP, (target.event_id, doc_id))
            if row is None:
                row = RSVP(event_id=target.event_id, user_id=doc_id)
                session.add(row)
            row.created_at = created_at
        session.flush()
        return self._to_document(target, row)

    def delete(self, path: str) -> bool:
        """Delete a document; returns False when it did not exist."""
        target = self._resolve(path)
        if target.is_collection:
            raise InvalidPath(f"delete() expects a document path, got {target}")
        try:
            with self._session() as session:
                row = self._get_row(session, target)
                if row is None:
                    return False
                session.delete(row)
        except SQLAlchemyError as exc:
            logger.warning("Delete of %s failed: %s", target, exc)
            raise WriteFailure(f"Could not delete {target}") from exc
        self._notify(target.collection_path)
        if target.collection == EVENTS:
            self._notify(self.rsvps_path(target.document_id))
        return True

    # -------- subscriptions --------

    def subscribe(
        self,
        path: str,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
        *,
        emit_initial: bool = True,
    ) -> Unsubscribe:
        """Listen to a collection; returns an idempotent unsubscribe handle."""
        target = self._resolve(path)
        if not target.is_collection:
            raise InvalidPath(f"subscribe() expects a collection path, got {target}")
        key = str(target)
        subscription = _Subscription(on_snapshot, on_error)
        with self._lock:
            self._listeners.setdefault(key, []).append(subscription)
        if emit_initial:
            self._emit(key, [subscription])

        def unsubscribe() -> None:
            with self._lock:
                subscription.active = False
                listeners = self._listeners.get(key)
                if listeners and subscription in listeners:
                    listeners.remove(subscription)
                    if not listeners:
                        del self._listeners[key]

        return unsubscribe

    def listener_count(self, path: str) -> int:
        with self._lock:
            return len(self._listeners.get(str(self._resolve(path)), ()))

    def _notify(self, key: str) -> None:
        with self._lock:
            subscriptions = list(self._listeners.get(key, ()))
        if subscriptions:
            self._emit(key, subscriptions)

    def _emit(self, key: str, subscriptions: list[_Subscription]) -> None:
        with self._emit_lock:
            try:
                documents = self.read(key)
            except SQLAlchemyError as exc:
                for subscription in subscriptions:
                    subscription.fail(key, exc)
                return
            for subscription in subscriptions:
                subscription.deliver(key, documents)
