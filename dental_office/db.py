from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from . import config


class Base(DeclarativeBase):
    """ORM base for every model."""
    pass


class Database:
    """
    Store handle passed explicitly to every component:
    - engine + session factory
    - transactional sessions (commit / rollback / close)
    - per-case locks for read-decide-write sequences
    """

    def __init__(self, url: str, echo: bool = False, **engine_kwargs: Any) -> None:
        if url.startswith("sqlite"):
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
            if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
                # a single shared connection, otherwise every session sees an empty DB
                engine_kwargs.setdefault("poolclass", StaticPool)

        self.engine: Engine = create_engine(url, echo=echo, future=True, **engine_kwargs)
        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
        self._locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def url(self):
        return self.engine.url

    def create_all(self) -> None:
        """Create tables if missing."""
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """
        Context manager for a unit of work:
        - commit if everything went fine
        - rollback on exceptions
        - always close
        """
        session: Session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def case_lock(self, case_id: int) -> Iterator[None]:
        """Serialises writers of the same case within this process."""
        with self._locks_guard:
            lock = self._locks.setdefault(case_id, threading.Lock())
        with lock:
            yield

    def dispose(self) -> None:
        self.engine.dispose()


_default: Database | None = None
_default_guard = threading.Lock()


def get_database() -> Database:
    """Process-wide database built from DATABASE_URL (FastAPI dependency)."""
    global _default
    with _default_guard:
        if _default is None:
            _default = Database(config.DATABASE_URL, echo=config.SQL_ECHO)
        return _default
