"""Write actions for events, banners, and RSVPs."""

from __future__ import annotations

import logging

from .documents import Document, DocumentStore
from .utils import is_http_url, utcnow

logger = logging.getLogger("uvicorn.error")


def create_event(
    store: DocumentStore,
    *,
    title: str,
    description: str | None,
    start_time: str,
    created_by: str,
) -> Document:
    """Persist a new event.

    The start time is stored exactly as submitted; events whose time does not
    parse are kept in the store but never shown on the board.
    """
    cleaned_title = (title or "").strip()
    if not cleaned_title:
        raise ValueError("Title is required")
    cleaned_description = (description or "").strip() or None
    event = store.write(
        store.events_path(),
        {
            "title": cleaned_title,
            "description": cleaned_description,
            "start_time": (start_time or "").strip(),
            "created_by": created_by,
            "created_at": utcnow(),
        },
    )
    logger.info("Event %s created by %s", event.id, created_by)
    return event


def delete_event(store: DocumentStore, event_id: str) -> bool:
    deleted = store.delete(store.event_path(event_id))
    if deleted:
        logger.info("Event %s deleted", event_id)
    return deleted


def create_banner(store: DocumentStore, *, image_url: str) -> Document:
    cleaned = (image_url or "").strip()
    if not is_http_url(cleaned):
        raise ValueError("Banner image must be an http(s) URL")
    banner = store.write(
        store.banners_path(), {"image_url": cleaned, "created_at": utcnow()}
    )
    logger.info("Banner %s created", banner.id)
    return banner


def delete_banner(store: DocumentStore, banner_id: str) -> bool:
    deleted = store.delete(store.banner_path(banner_id))
    if deleted:
        logger.info("Banner %s deleted", banner_id)
    return deleted


def toggle_rsvp(
    store: DocumentStore,
    *,
    event_id: str,
    user_id: str,
    currently_attending: bool,
) -> bool:
    """Flip the viewer's RSVP based on the attendance they last saw.

    The write is unconditional: there is no re-read of the stored state, so
    two quick toggles resolve as last write wins. Returns the new state.
    """
    path = store.rsvp_path(event_id, user_id)
    if currently_attending:
        store.delete(path)
        return False
    store.write(path, {"user_id": user_id, "created_at": utcnow()})
    return True
