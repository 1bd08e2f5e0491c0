from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import QueuePool

from .errors import ConflictError

logger = logging.getLogger(__name__)

# Messages the drivers use for lock waits and serialization failures
_RETRYABLE_MARKERS = ("database is locked", "database is busy", "deadlock", "could not serialize")


class Base(DeclarativeBase):
    """ORM base for every entity."""

    def as_dict(self) -> dict[str, Any]:
        """Column values keyed by attribute name, plus derived values declared in __derived__."""
        data = {attr.key: getattr(self, attr.key) for attr in inspect(type(self)).column_attrs}
        for name in getattr(self, "__derived__", ()):
            data[name] = getattr(self, name)
        return data


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite+pysqlite://") or ":memory:" in url


def build_engine(url: str, *, echo: bool = False, busy_timeout: float = 5.0) -> Engine:
    """
    Engine for the store:
    - SQLite: foreign keys ON, WAL journal, bounded wait on the write lock
    - in-memory: one connection holds the database, sessions take turns on it
      and a wait longer than busy_timeout is a conflict
    """
    kwargs: dict[str, Any] = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"timeout": busy_timeout, "check_same_thread": False}
        if _is_memory_url(url):
            kwargs.update(poolclass=QueuePool, pool_size=1, max_overflow=0, pool_timeout=busy_timeout)

    engine = create_engine(url, echo=echo, future=True, **kwargs)
    if engine.dialect.name == "sqlite":
        _install_sqlite_hooks(engine)
    return engine


def _install_sqlite_hooks(engine: Engine) -> None:
    # pysqlite handles BEGIN on its own; take it over so write sessions can
    # grab the write lock up front (BEGIN IMMEDIATE).
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        mode = conn.get_execution_options().get("sqlite_begin", "DEFERRED")
        conn.exec_driver_sql(f"BEGIN {mode}")


def build_session_factories(engine: Engine) -> tuple[sessionmaker[Session], sessionmaker[Session]]:
    """(write, read) session factories. Writers serialize on SQLite, readers never block them."""
    writer = sessionmaker(
        bind=engine.execution_options(sqlite_begin="IMMEDIATE"),
        autoflush=False,
        expire_on_commit=False,
    )
    reader = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return writer, reader


def is_retryable(exc: Exception) -> bool:
    text = str(getattr(exc, "orig", exc)).lower()
    return any(marker in text for marker in _RETRYABLE_MARKERS)


@contextmanager
def db_session(factory: sessionmaker[Session]) -> Iterator[Session]:
    """
    Session scope:
    - commit on success
    - rollback on any exception
    - always close
    Lock timeouts and database-level integrity failures become ConflictError.
    """
    session: Session = factory()
    try:
        yield session
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        logger.warning("integrity failure raised by the database, reporting conflict: %s", exc.orig)
        raise ConflictError(f"Concurrent modification detected: {exc.orig}") from exc
    except OperationalError as exc:
        session.rollback()
        if is_retryable(exc):
            logger.warning("transaction conflict: %s", exc.orig)
            raise ConflictError(f"Transaction conflict: {exc.orig}") from exc
        raise
    except PoolTimeoutError as exc:
        session.rollback()
        logger.warning("no connection free within the timeout: %s", exc)
        raise ConflictError("Transaction conflict: database busy.") from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
