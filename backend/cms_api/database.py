"""Database engine and unit-of-work helpers.

`Database` is constructed once by the application factory (or a test
fixture) and handed to every service; nothing in the package holds a
module-level engine. It offers two ways in:

- `session()` for ad hoc reads,
- `unit_of_work()` for writes that must be all-or-nothing. The unit commits
  when the block exits normally and rolls back on any exception, and the
  pooled connection is released on every path.

SQLite is the default backend. Its transactions are started explicitly so
that a unit of work can take the write lock up front (``BEGIN IMMEDIATE``);
on PostgreSQL row locks are taken with ``SELECT ... FOR UPDATE`` and the
wait is bounded with ``lock_timeout``.
"""

import logging
import os
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlmodel import Session, create_engine

from .errors import AppError, LockTimeoutError, StorageError

logger = logging.getLogger("cms_api.database")

# PostgreSQL SQLSTATE for lock_timeout expiry (lock_not_available)
PG_LOCK_NOT_AVAILABLE = "55P03"
# PostgreSQL SQLSTATE for unique_violation
PG_UNIQUE_VIOLATION = "23505"


def normalize_url(url: str) -> str:
    """Point bare PostgreSQL URLs at the psycopg 3 driver."""
    if url and url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url and url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def _is_lock_timeout(exc: SQLAlchemyError) -> bool:
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    if getattr(orig, "sqlstate", None) == PG_LOCK_NOT_AVAILABLE:
        return True
    return "database is locked" in str(orig).lower()


def is_unique_violation(exc: SQLAlchemyError) -> bool:
    """True when `exc` is a primary-key or unique constraint violation."""
    if not isinstance(exc, IntegrityError):
        return False
    orig = exc.orig
    if getattr(orig, "sqlstate", None) == PG_UNIQUE_VIOLATION:
        return True
    return "unique constraint failed" in str(orig).lower()


def _install_sqlite_hooks(engine, in_memory: bool) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # pysqlite would otherwise emit its own deferred BEGIN lazily
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        mode = conn.get_execution_options().get("sqlite_begin", "DEFERRED")
        conn.exec_driver_sql(f"BEGIN {mode}")


class Database:
    """Storage gateway handed to services at construction time."""

    def __init__(self, url: str, lock_timeout: float = 5.0, echo: bool = False):
        self.url = normalize_url(url)
        self.lock_timeout = lock_timeout
        self.initialized = False
        self.data_dir = None
        parsed = make_url(self.url)
        self.dialect = parsed.get_backend_name()
        connect_args = {}
        if self.is_sqlite:
            in_memory = parsed.database in (None, "", ":memory:")
            if not in_memory:
                self.data_dir = os.path.dirname(os.path.abspath(parsed.database))
            # busy timeout doubles as the lock-wait timeout
            connect_args = {"check_same_thread": False, "timeout": lock_timeout}
        self.engine = create_engine(self.url, echo=echo, connect_args=connect_args, pool_pre_ping=True)
        if self.is_sqlite:
            _install_sqlite_hooks(self.engine, in_memory)

    @property
    def is_sqlite(self) -> bool:
        return self.dialect == "sqlite"

    @property
    def is_postgres(self) -> bool:
        return self.dialect == "postgresql"

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Yield a read session; driver failures surface as `StorageError`."""
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                yield session
        except SQLAlchemyError as exc:
            raise self._translate(exc) from exc

    @contextmanager
    def unit_of_work(self) -> Iterator[Session]:
        """Run the enclosed block as one atomic transaction.

        The transaction holds write intent from its first statement. Domain
        errors raised inside the block roll back and propagate unchanged;
        driver errors roll back and are re-raised as `StorageError`, or
        `LockTimeoutError` when the lock wait expired. Nothing is retried.
        """
        connection = None
        session = None
        try:
            connection = self.engine.connect()
            if self.is_sqlite:
                connection.execution_options(sqlite_begin="IMMEDIATE")
            session = Session(bind=connection, expire_on_commit=False)
            if self.is_postgres:
                session.execute(text(f"SET LOCAL lock_timeout = {int(self.lock_timeout * 1000)}"))
            yield session
            session.commit()
        except AppError:
            self._rollback(session)
            raise
        except SQLAlchemyError as exc:
            self._rollback(session)
            raise self._translate(exc) from exc
        except BaseException:
            self._rollback(session)
            raise
        finally:
            if session is not None:
                session.close()
            if connection is not None:
                connection.close()

    def ensure_storage(self) -> None:
        """Create the directory that holds the SQLite file, if any."""
        if self.data_dir:
            os.makedirs(self.data_dir, exist_ok=True)

    def ping(self) -> None:
        """Round-trip a trivial statement to the backend."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise self._translate(exc) from exc

    def dispose(self) -> None:
        self.engine.dispose()

    def _rollback(self, session) -> None:
        if session is None:
            return
        try:
            session.rollback()
        except SQLAlchemyError:
            # the original failure is what the caller needs to see
            logger.exception("rollback failed")

    def _translate(self, exc: SQLAlchemyError) -> StorageError:
        if _is_lock_timeout(exc):
            logger.warning("lock wait exceeded %.2fs: %s", self.lock_timeout, exc)
            return LockTimeoutError("timed out waiting for a database lock; retry the request")
        logger.error("storage failure: %s", exc)
        return StorageError("database operation failed")
