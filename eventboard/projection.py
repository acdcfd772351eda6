"""Live projection of events and attendance.

The engine listens to the events and banners collections. Each time the events
collection changes it re-reads every event's RSVP subcollection and rebuilds
the sorted event list from scratch.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Mapping, Sequence

from .documents import Document, DocumentStore, Unsubscribe
from .errors import MalformedEventTime
from .utils import to_naive_utc, utcnow

logger = logging.getLogger("uvicorn.error")

IMMINENT_WINDOW = timedelta(hours=48)


def parse_event_time(raw: object) -> datetime:
    """Parse a stored start time into a naive UTC datetime.

    Accepts ISO-8601 dates and datetimes, with a ``T`` or space separator, an
    optional ``Z`` suffix or numeric offset. Values whose UTC equivalent falls
    outside the representable range are malformed too.
    """
    if isinstance(raw, datetime):
        return _as_naive_utc(raw, raw)
    if not isinstance(raw, str) or not raw.strip():
        raise MalformedEventTime(raw)
    text = raw.strip()
    if text[-1] in "zZ":
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        pass
    else:
        return _as_naive_utc(parsed, raw)
    try:
        parsed_date = date.fromisoformat(text)
    except ValueError as exc:
        raise MalformedEventTime(raw) from exc
    return datetime(parsed_date.year, parsed_date.month, parsed_date.day)


def _as_naive_utc(value: datetime, raw: object) -> datetime:
    try:
        return to_naive_utc(value)
    except (ValueError, OverflowError) as exc:
        raise MalformedEventTime(raw) from exc


@dataclass(frozen=True)
class ProjectedEvent:
    id: str
    title: str
    description: str | None
    start_time: str
    starts_at: datetime
    created_by: str | None
    created_at: str | None
    attendee_ids: frozenset[str] = frozenset()
    viewer_attending: bool = False

    @property
    def attendee_count(self) -> int:
        return len(self.attendee_ids)

    def for_viewer(self, user_id: str | None) -> "ProjectedEvent":
        attending = user_id is not None and user_id in self.attendee_ids
        if attending == self.viewer_attending:
            return self
        return replace(self, viewer_attending=attending)


def project_events(
    event_docs: Iterable[Document],
    attendees_by_event: Mapping[str, Iterable[str]],
    viewer_id: str | None = None,
) -> list[ProjectedEvent]:
    """Combine event documents with attendee ids into a sorted list.

    Events whose start time does not parse are left out.
    """
    projected: list[ProjectedEvent] = []
    for doc in event_docs:
        try:
            starts_at = parse_event_time(doc.get("start_time"))
        except MalformedEventTime:
            logger.debug("Dropping event %s with unparseable start time", doc.id)
            continue
        attendees = frozenset(attendees_by_event.get(doc.id, ()))
        projected.append(
            ProjectedEvent(
                id=doc.id,
                title=doc.get("title") or "",
                description=doc.get("description"),
                start_time=str(doc.get("start_time")),
                starts_at=starts_at,
                created_by=doc.get("created_by"),
                created_at=doc.get("created_at"),
                attendee_ids=attendees,
                viewer_attending=viewer_id is not None and viewer_id in attendees,
            )
        )
    projected.sort(key=lambda event: event.starts_at)
    return projected


def imminent_events(
    events: Iterable[ProjectedEvent],
    *,
    now: datetime | None = None,
    window: timedelta = IMMINENT_WINDOW,
) -> list[ProjectedEvent]:
    """Events starting strictly after ``now`` and strictly before ``now + window``."""
    now = now or utcnow()
    horizon = now + window
    return [event for event in events if now < event.starts_at < horizon]


@dataclass(frozen=True)
class Projection:
    events: tuple[ProjectedEvent, ...] = ()
    sequence: int = 0
    projected_at: datetime = field(default_factory=utcnow)

    def for_viewer(self, user_id: str | None) -> list[ProjectedEvent]:
        return [event.for_viewer(user_id) for event in self.events]

    def find(self, event_id: str) -> ProjectedEvent | None:
        for event in self.events:
            if event.id == event_id:
                return event
        return None


ProjectionListener = Callable[[Projection], None]
BannerListener = Callable[[Sequence[Document]], None]


class ProjectionEngine:
    """Keeps the projected event list and banner list in step with the store."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        viewer_id: str | None = None,
        rsvp_read_timeout: float | None = 5.0,
        live_rsvp_refresh: bool = True,
        rsvp_watch_limit: int = 50,
    ):
        self.store = store
        self.viewer_id = viewer_id
        self.rsvp_read_timeout = rsvp_read_timeout
        self.live_rsvp_refresh = live_rsvp_refresh
        self.rsvp_watch_limit = rsvp_watch_limit
        self.last_error: Exception | None = None

        self._projection = Projection()
        self._banners: tuple[Document, ...] = ()
        self._event_docs: tuple[Document, ...] = ()
        self._sequence = 0
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending: set[Future] = set()
        self._unsubscribers: list[Unsubscribe] = []
        self._rsvp_watches: dict[str, Unsubscribe] = {}
        self._listeners: list[ProjectionListener] = []
        self._banner_listeners: list[BannerListener] = []

    # -------- state --------

    @property
    def projection(self) -> Projection:
        return self._projection

    @property
    def events(self) -> list[ProjectedEvent]:
        return self._projection.for_viewer(self.viewer_id)

    @property
    def banners(self) -> tuple[Document, ...]:
        return self._banners

    @property
    def running(self) -> bool:
        return bool(self._unsubscribers)

    def watched_events(self) -> set[str]:
        with self._lock:
            return set(self._rsvp_watches)

    def add_listener(self, callback: ProjectionListener) -> Unsubscribe:
        return self._register(self._listeners, callback)

    def add_banner_listener(self, callback: BannerListener) -> Unsubscribe:
        return self._register(self._banner_listeners, callback)

    @staticmethod
    def _register(registry: list, callback) -> Unsubscribe:
        registry.append(callback)

        def unsubscribe() -> None:
            if callback in registry:
                registry.remove(callback)

        return unsubscribe

    # -------- lifecycle --------

    async def start(self) -> None:
        """Subscribe to the events and banners collections."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self.last_error = None
        self._unsubscribers = [
            self.store.subscribe(
                self.store.events_path(),
                self._on_events_snapshot,
                self._on_stream_error,
            ),
            self.store.subscribe(
                self.store.banners_path(),
                self.apply_banners_snapshot,
                self._on_stream_error,
            ),
        ]
        logger.info("Projection engine started for namespace %s", self.store.namespace)

    def stop(self) -> None:
        """Drop every subscription, including RSVP watches."""
        with self._lock:
            unsubscribers = self._unsubscribers + list(self._rsvp_watches.values())
            self._unsubscribers = []
            self._rsvp_watches = {}
        for unsubscribe in unsubscribers:
            unsubscribe()
        logger.info("Projection engine stopped for namespace %s", self.store.namespace)

    async def settle(self) -> None:
        """Wait until every scheduled projection has finished."""
        while True:
            with self._lock:
                pending = [f for f in self._pending if not f.done()]
            if not pending:
                return
            await asyncio.gather(
                *(asyncio.wrap_future(f) for f in pending), return_exceptions=True
            )

    # -------- stream callbacks --------

    def _next_sequence(self) -> int:
        with self._lock:
            self._sequence += 1
            return self._sequence

    def _schedule(self, sequence: int, docs: Sequence[Document]) -> None:
        if self._loop is None or self._loop.is_closed():
            logger.warning("Dropping events snapshot %d: engine loop unavailable", sequence)
            return
        future = asyncio.run_coroutine_threadsafe(
            self._project(sequence, tuple(docs)), self._loop
        )
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error(
                "Projection failed: %s", future.exception(), exc_info=future.exception()
            )

    def _on_events_snapshot(self, docs: list[Document]) -> None:
        # The sequence is fixed on arrival, not on completion.
        sequence = self._next_sequence()
        with self._lock:
            self._event_docs = tuple(docs)
        self._schedule(sequence, docs)

    def _on_rsvp_snapshot(self, event_id: str, _docs: list[Document]) -> None:
        with self._lock:
            if event_id not in self._rsvp_watches:
                return
            docs = self._event_docs
        self._schedule(self._next_sequence(), docs)

    def _on_stream_error(self, exc: Exception) -> None:
        self.last_error = exc
        logger.error("Live stream for namespace %s failed: %s", self.store.namespace, exc)

    def apply_banners_snapshot(self, docs: list[Document]) -> None:
        """Replace the banner list verbatim, keeping server order."""
        self._banners = tuple(docs)
        for callback in list(self._banner_listeners):
            callback(self._banners)

    # -------- projection --------

    async def apply_events_snapshot(self, docs: Sequence[Document]) -> Projection | None:
        """Project one events snapshot; returns None when a newer one won."""
        sequence = self._next_sequence()
        with self._lock:
            self._event_docs = tuple(docs)
        return await self._project(sequence, tuple(docs))

    async def _read_attendees(self, event_id: str) -> frozenset[str]:
        path = self.store.rsvps_path(event_id)
        try:
            docs = await asyncio.wait_for(
                asyncio.to_thread(self.store.read, path), self.rsvp_read_timeout
            )
        except Exception as exc:
            logger.warning("RSVP read for event %s failed: %r", event_id, exc)
            return frozenset()
        return frozenset(
            doc.get("user_id") or doc.id for doc in docs
        )

    async def _project(
        self, sequence: int, docs: tuple[Document, ...]
    ) -> Projection | None:
        attendee_sets = await asyncio.gather(
            *(self._read_attendees(doc.id) for doc in docs)
        )
        attendees = {doc.id: ids for doc, ids in zip(docs, attendee_sets)}
        events = tuple(project_events(docs, attendees, viewer_id=None))
        projection = Projection(events=events, sequence=sequence)
        with self._lock:
            if sequence <= self._projection.sequence:
                logger.debug("Discarding superseded projection %d", sequence)
                return None
            self._projection = projection
        if self.live_rsvp_refresh and self.running:
            self._sync_rsvp_watches(events)
        for callback in list(self._listeners):
            callback(projection)
        return projection

    def _sync_rsvp_watches(self, events: Sequence[ProjectedEvent]) -> None:
        wanted = [event.id for event in events[: max(self.rsvp_watch_limit, 0)]]
        with self._lock:
            stale = {
                event_id: unsubscribe
                for event_id, unsubscribe in self._rsvp_watches.items()
                if event_id not in wanted
            }
            for event_id in stale:
                del self._rsvp_watches[event_id]
            missing = [event_id for event_id in wanted if event_id not in self._rsvp_watches]
        for unsubscribe in stale.values():
            unsubscribe()
        for event_id in missing:
            unsubscribe = self.store.subscribe(
                self.store.rsvps_path(event_id),
                lambda docs, event_id=event_id: self._on_rsvp_snapshot(event_id, docs),
                self._on_stream_error,
                emit_initial=False,
            )
            with self._lock:
                if event_id in self._rsvp_watches or not self.running:
                    duplicate = True
                else:
                    self._rsvp_watches[event_id] = unsubscribe
                    duplicate = False
            if duplicate:
                unsubscribe()
