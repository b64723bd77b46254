"""
Database configuration for the local note store.

SQLite only: a file under DATA_DIR by default, or ``sqlite://`` for an
in-memory store (tests). A file-backed store is single-process; the
StoreLock below enforces that with an advisory lock next to the database.
"""
from __future__ import annotations

import fcntl
import os
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shielded_pool.config import NOTE_STORE_URL
from shielded_pool.database.models import Base
from shielded_pool.errors import NoteStoreLocked
from shielded_pool.logging_config import get_logger

logger = get_logger("database.config")


# ============================================================================
# ENGINE
# ============================================================================

def sqlite_path(url: str) -> Optional[str]:
    """Filesystem path of a sqlite URL, or None for in-memory databases."""
    database = make_url(url).database
    if not database or database == ":memory:":
        return None
    return database


def create_store_engine(url: str = NOTE_STORE_URL, echo: bool = False) -> Engine:
    path = sqlite_path(url)
    if path is None:
        # one shared connection, otherwise every session sees an empty database
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    return create_engine(url, echo=echo, connect_args={"check_same_thread": False})


def init_database(engine: Engine) -> None:
    """Create tables if they do not exist."""
    Base.metadata.create_all(bind=engine)
    logger.debug(f"note store schema ready on {engine.url}")


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


# ============================================================================
# SINGLE-PROCESS LOCK
# ============================================================================

class StoreLock:
    """Exclusive advisory lock on ``<db>.lock``; raises NoteStoreLocked if held."""

    def __init__(self, db_path: str):
        self.path = db_path + ".lock"
        self._fh = None

    def acquire(self) -> None:
        fh = open(self.path, "a+")
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            fh.close()
            raise NoteStoreLocked(f"note store {self.path[:-5]} is in use by another process") from e
        self._fh = fh

    def release(self) -> None:
        if self._fh is None:
            return
        try:
            fcntl.flock(self._fh.fileno(), fcntl.LOCK_UN)
        finally:
            self._fh.close()
            self._fh = None

    @property
    def held(self) -> bool:
        return self._fh is not None
