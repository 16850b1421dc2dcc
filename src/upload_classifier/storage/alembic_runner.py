"""Programmatic Alembic migrations for the shared SQLite database."""

from __future__ import annotations

import threading
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

_PROJECT_ROOT = Path(__file__).resolve().parents[3]
_upgrade_lock = threading.Lock()


def alembic_config(db_path: Path) -> Config:
    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def current_revision(db_path: Path) -> str | None:
    """Revision stamped in ``db_path``; None for a database never migrated."""

    engine = create_engine(f"sqlite:///{db_path}", poolclass=NullPool)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def upgrade_head(db_path: Path) -> bool:
    """Bring ``db_path`` to the head revision; False when it was already there.

    Entity store and task runtime share one database file, so both call this
    and only the first one migrates.
    """

    config = alembic_config(db_path)
    head = ScriptDirectory.from_config(config).get_current_head()
    with _upgrade_lock:
        if current_revision(db_path) == head:
            return False
        command.upgrade(config, "head")
    return True
