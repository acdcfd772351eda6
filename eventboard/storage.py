"""Database initialization and deployment secrets."""

from __future__ import annotations

import logging
import secrets
import shutil
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect

from . import database
from .config import settings
from .models import Meta
from .utils import utcnow

logger = logging.getLogger("uvicorn.error")


def init_db() -> None:
    upgrade_database(make_backup=False)
    ensure_identity_secret()


def _alembic_config() -> Config:
    package_dir = Path(__file__).resolve().parent
    script_location = package_dir / "alembic"
    ini_path = script_location.parent / "alembic.ini"

    config = Config(str(ini_path)) if ini_path.exists() else Config()
    config.set_main_option("script_location", str(script_location))
    config.set_main_option("sqlalchemy.url", str(database.engine.url))
    return config


def upgrade_database(*, make_backup: bool = True) -> list[str]:
    """Upgrade the database schema in-place.

    Returns a list of applied actions.
    """
    actions: list[str] = []
    db_path = Path(settings.database_path)

    if make_backup and db_path.exists():
        backup_path = db_path.with_suffix(db_path.suffix + ".bak")
        shutil.copy(db_path, backup_path)
        actions.append(f"Backup created at {backup_path}")

    inspector = inspect(database.engine)
    has_alembic = inspector.has_table("alembic_version")
    has_events = inspector.has_table("events")
    config = _alembic_config()

    if not has_alembic and not has_events:
        command.upgrade(config, "head")
        actions.append("Ran Alembic upgrade to head (fresh database)")
    elif not has_alembic:
        # Tables created outside Alembic (e.g. metadata.create_all): baseline them.
        command.stamp(config, "head")
        actions.append("Stamped existing database to Alembic head")
    else:
        command.upgrade(config, "head")
        actions.append("Applied Alembic migrations to head")

    for action in actions:
        logger.info("Database: %s", action)
    return actions


def ensure_identity_secret() -> str:
    """Return the key used to derive viewer ids from tokens, creating it once."""
    with database.get_session() as session:
        existing = session.get(Meta, settings.identity_secret_key)
        if existing:
            return existing.value
        secret = secrets.token_urlsafe(32)
        meta = Meta(key=settings.identity_secret_key, value=secret, updated_at=utcnow())
        session.merge(meta)
        return secret


def fetch_identity_secret() -> str:
    with database.get_session() as session:
        meta = session.get(Meta, settings.identity_secret_key)
        if not meta:
            return ensure_identity_secret()
        return meta.value
