from __future__ import annotations

from eventboard import database
from eventboard.config import settings
from eventboard.models import Meta
from eventboard.storage import ensure_identity_secret, fetch_identity_secret


def test_identity_secret_is_created_once():
    first = ensure_identity_secret()
    assert isinstance(first, str) and len(first) >= 32
    assert ensure_identity_secret() == first
    assert fetch_identity_secret() == first


def test_fetch_identity_secret_creates_when_missing():
    with database.get_session() as session:
        assert session.get(Meta, settings.identity_secret_key) is None

    secret = fetch_identity_secret()

    with database.get_session() as session:
        assert session.get(Meta, settings.identity_secret_key).value == secret
