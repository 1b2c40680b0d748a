"""Resource factories and the connection handle they produce.

The transaction core only calls lifecycle verbs on a handle (``commit``,
``rollback``, ``set_autocommit``, savepoints) and never interprets the
statements a guarded operation runs through it. Driver specifics live in the
small dispatch helpers at the bottom of this module.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import timedelta
from itertools import count
from typing import Any, Protocol, runtime_checkable

import psycopg
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from .dsn import is_sqlite_dsn, normalize_postgres_dsn, sqlite_path
from .exceptions import DRIVER_ERRORS, TransactionError, translate_driver_errors

logger = logging.getLogger(__name__)

_SQLITE_BEGIN_MODES = frozenset({"DEFERRED", "IMMEDIATE", "EXCLUSIVE"})


class ConnectionHandle:
    """A live driver connection plus the bookkeeping the binder relies on.

    ``connection`` is what statements run against; ``driver`` is the raw
    DBAPI connection used for driver-specific switches. The two differ only
    for pooled SQLAlchemy connections.
    """

    def __init__(self, connection: Any, *, factory: "ResourceFactory", driver: Any = None) -> None:
        self.connection = connection
        self.driver = driver if driver is not None else connection
        self.factory = factory
        self.autocommit_suspended = False
        self.acquire_count = 0
        self.context_id: str | None = None
        self.closed = False
        self._savepoints = count(1)
        self._read_only = False

    def __repr__(self) -> str:
        return (
            f"<ConnectionHandle driver={type(self.driver).__name__} "
            f"context={self.context_id} closed={self.closed}>"
        )

    @property
    def is_bound(self) -> bool:
        return self.context_id is not None

    # Statement pass-through --------------------------------------------

    def cursor(self) -> Any:
        return self.connection.cursor()

    def execute(self, statement: str, params: Any = None) -> Any:
        """Run ``statement`` on a fresh cursor and return the cursor."""

        cursor = self.connection.cursor()
        if params is None:
            cursor.execute(statement)
        else:
            cursor.execute(statement, params)
        return cursor

    # Lifecycle verbs ----------------------------------------------------

    def commit(self) -> None:
        self.connection.commit()

    def rollback(self) -> None:
        self.connection.rollback()

    def set_autocommit(self, enabled: bool) -> None:
        _set_driver_autocommit(self.driver, enabled)
        self.autocommit_suspended = not enabled

    def configure(self, *, isolation: str | None, read_only: bool) -> None:
        """Apply isolation and read-only hints before the first statement."""

        if isolation is not None:
            _set_driver_isolation(self.driver, isolation)
        if read_only:
            _set_driver_read_only(self.driver, True)
            self._read_only = True

    def reset(self) -> None:
        """Undo session settings so a pooled connection goes back clean."""

        if self._read_only:
            _set_driver_read_only(self.driver, False)
            self._read_only = False
        if isinstance(self.driver, psycopg.Connection):
            self.driver.isolation_level = None

    # Savepoints ---------------------------------------------------------

    def savepoint(self) -> str:
        name = f"txbind_sp_{next(self._savepoints)}"
        if isinstance(self.driver, sqlite3.Connection) and not self.driver.in_transaction:
            # RELEASE of an outermost SQLite savepoint would commit.
            self.driver.execute("BEGIN")
        self.execute(f"SAVEPOINT {name}")
        return name

    def rollback_to_savepoint(self, name: str) -> None:
        self.execute(f"ROLLBACK TO SAVEPOINT {name}")

    def release_savepoint(self, name: str) -> None:
        self.execute(f"RELEASE SAVEPOINT {name}")


@runtime_checkable
class ResourceFactory(Protocol):
    """Collaborator that opens and closes raw resource handles."""

    def open(self) -> ConnectionHandle:
        ...

    def close(self, handle: ConnectionHandle) -> None:
        ...


class _DriverResourceFactory:
    """Shared open/close logic; subclasses only know how to connect."""

    label = "store"

    def open(self) -> ConnectionHandle:
        with translate_driver_errors(operation=f"open {self.label} connection"):
            handle = self._connect()
            handle.set_autocommit(True)
        logger.debug("opened %r", handle)
        return handle

    def close(self, handle: ConnectionHandle) -> None:
        if handle.closed:
            logger.debug("handle %r already closed", handle)
            return
        try:
            try:
                handle.reset()
            except DRIVER_ERRORS:
                logger.warning("failed to reset %r before close", handle, exc_info=True)
            handle.connection.close()
        except DRIVER_ERRORS:
            logger.warning("failed to close %r cleanly", handle, exc_info=True)
        finally:
            handle.closed = True
            handle.context_id = None
        logger.debug("closed %r", handle)

    def _connect(self) -> ConnectionHandle:
        raise NotImplementedError


class SQLiteResourceFactory(_DriverResourceFactory):
    """Opens stdlib ``sqlite3`` connections to a single database file."""

    label = "sqlite"

    def __init__(self, path: str, *, busy_timeout: timedelta = timedelta(seconds=5)) -> None:
        self.path = path
        self.busy_timeout = busy_timeout

    def _connect(self) -> ConnectionHandle:
        conn = sqlite3.connect(
            self.path,
            timeout=self.busy_timeout.total_seconds(),
            check_same_thread=False,
            uri=self.path.startswith("file:"),
        )
        return ConnectionHandle(conn, factory=self)


class PsycopgResourceFactory(_DriverResourceFactory):
    """Opens PostgreSQL connections through psycopg."""

    label = "postgres"

    def __init__(self, dsn: str, *, connect_timeout: timedelta | None = None) -> None:
        self.dsn = normalize_postgres_dsn(dsn).libpq
        self.connect_timeout = connect_timeout

    def _connect(self) -> ConnectionHandle:
        kwargs: dict[str, Any] = {"autocommit": True}
        if self.connect_timeout is not None:
            kwargs["connect_timeout"] = max(1, int(self.connect_timeout.total_seconds()))
        conn = psycopg.connect(self.dsn, **kwargs)
        return ConnectionHandle(conn, factory=self)


class EngineResourceFactory(_DriverResourceFactory):
    """Checks raw DBAPI connections out of a SQLAlchemy engine pool.

    Closing a handle returns the connection to the pool.
    """

    label = "engine"

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def _connect(self) -> ConnectionHandle:
        raw = self.engine.raw_connection()
        return ConnectionHandle(raw, factory=self, driver=raw.driver_connection)


def create_resource_factory(
    dsn: str,
    *,
    use_engine_pool: bool = False,
    connect_timeout: timedelta | None = None,
) -> ResourceFactory:
    """Pick a factory for ``dsn``: SQLite file, psycopg, or a pooled engine."""

    if use_engine_pool:
        if is_sqlite_dsn(dsn):
            url = f"sqlite:///{sqlite_path(dsn)}" if not dsn.startswith("sqlite://") else dsn
            engine = create_engine(url, future=True, connect_args={"check_same_thread": False})
        else:
            engine = create_engine(normalize_postgres_dsn(dsn).sqlalchemy, future=True)
        return EngineResourceFactory(engine)
    if is_sqlite_dsn(dsn):
        return SQLiteResourceFactory(sqlite_path(dsn))
    return PsycopgResourceFactory(dsn, connect_timeout=connect_timeout)


# Driver dispatch --------------------------------------------------------


def _set_driver_autocommit(driver: Any, enabled: bool) -> None:
    if isinstance(driver, sqlite3.Connection):
        if enabled:
            driver.isolation_level = None
        elif driver.isolation_level is None:
            driver.isolation_level = "DEFERRED"
        return
    driver.autocommit = enabled


def _set_driver_isolation(driver: Any, isolation: str) -> None:
    level = isolation.strip().upper().replace(" ", "_")
    if isinstance(driver, sqlite3.Connection):
        if level in _SQLITE_BEGIN_MODES:
            driver.isolation_level = level
        else:
            logger.debug("sqlite ignores isolation level %s", isolation)
        return
    if isinstance(driver, psycopg.Connection):
        try:
            driver.isolation_level = psycopg.IsolationLevel[level]
        except KeyError as exc:
            raise TransactionError(f"unknown isolation level {isolation!r}") from exc
        return
    logger.debug("driver %s ignores isolation level %s", type(driver).__name__, isolation)


def _set_driver_read_only(driver: Any, read_only: bool) -> None:
    if isinstance(driver, sqlite3.Connection):
        driver.execute(f"PRAGMA query_only = {'ON' if read_only else 'OFF'}")
        return
    if isinstance(driver, psycopg.Connection):
        driver.read_only = read_only if read_only else None
        return
    logger.debug("driver %s ignores read-only hint", type(driver).__name__)


__all__ = [
    "ConnectionHandle",
    "EngineResourceFactory",
    "PsycopgResourceFactory",
    "ResourceFactory",
    "SQLiteResourceFactory",
    "create_resource_factory",
]
