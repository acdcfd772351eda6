"""SQLAlchemy models backing the EventBoard document store."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Meta(Base):
    __tablename__ = "meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_uuid)
    namespace = Column(String(128), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    # Raw submitted value; parsed when projected.
    start_time = Column(String(64), nullable=False)
    created_by = Column(String(128), nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    rsvps = relationship(
        "RSVP",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="RSVP.created_at",
    )


class RSVP(Base):
    __tablename__ = "rsvps"

    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), primary_key=True
    )
    user_id = Column(String(128), primary_key=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    event = relationship("Event", back_populates="rsvps")


class Banner(Base):
    __tablename__ = "banners"

    id = Column(String(36), primary_key=True, default=_uuid)
    namespace = Column(String(128), nullable=False, index=True)
    image_url = Column(Text, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
