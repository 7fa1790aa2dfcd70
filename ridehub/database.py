# ridehub/database.py
from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Iterable, Optional, Protocol, TypeVar

from sqlalchemy import event, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.orm.exc import StaleDataError
from sqlmodel import SQLModel, Session, create_engine

from . import config
from .errors import StaleWrite, TransactionConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")

TOUCHED_KEY = "ridehub.touched"


def normalize_url(url: str) -> str:
    # Neon gives: postgresql://...
    # SQLAlchemy + psycopg = postgresql+psycopg://
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)

    # Always require TLS on hosted Postgres
    if url.startswith("postgresql+psycopg://") and "sslmode=" not in url:
        sep = "&" if "?" in url else "?"
        url = f"{url}{sep}sslmode=require"
    return url


def make_engine(url: Optional[str] = None) -> Engine:
    url = normalize_url((url or config.DATABASE_URL).strip())
    if not url:
        raise RuntimeError("DATABASE_URL env var is required")
    if url.startswith("sqlite"):
        # threads share the file; busy connections wait instead of failing fast
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(
        url,
        pool_pre_ping=True,   # auto-reconnect
        pool_size=5,
        max_overflow=10,
    )


def init_db(engine: Engine) -> None:
    # Creates tables that don't exist; does not drop/alter
    from . import models  # noqa: F401  (registers the tables)
    SQLModel.metadata.create_all(engine)


class Publisher(Protocol):
    def publish(self, collections: Iterable[str]) -> None: ...


def _track_flush(session: Session, flush_context: Any) -> None:
    touched = session.info.setdefault(TOUCHED_KEY, set())
    for obj in list(session.new) + list(session.dirty) + list(session.deleted):
        table = getattr(obj, "__tablename__", None)
        if table:
            touched.add(table)


def cas_update(session: Session, obj: SQLModel, **values: Any) -> None:
    """Compare-and-set ``values`` onto ``obj`` keyed on its id and version.

    Raises StaleWrite when another transaction bumped the version since
    ``obj`` was read.
    """
    model = type(obj)
    current = obj.version
    stmt = (
        update(model)
        .where(model.id == obj.id, model.version == current)
        .values(version=current + 1, **values)
    )
    result = session.connection().execute(stmt)
    if result.rowcount != 1:
        raise StaleWrite(f"{model.__tablename__}/{obj.id} changed (version {current})")
    # keep the in-session copy in step without marking it dirty
    for key, value in values.items():
        set_committed_value(obj, key, value)
    set_committed_value(obj, "version", current + 1)
    session.info.setdefault(TOUCHED_KEY, set()).add(model.__tablename__)


# serialization_failure, deadlock_detected, lock_not_available
CONTENTION_SQLSTATES = frozenset({"40001", "40P01", "55P03"})
SQLITE_BUSY_MESSAGES = ("database is locked", "database table is locked")


def is_contention(exc: Exception) -> bool:
    """True for a lost race; False for errors a retry cannot fix."""
    if not isinstance(exc, OperationalError):
        return True
    sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    if sqlstate:
        return sqlstate in CONTENTION_SQLSTATES
    message = str(exc.orig).lower()
    return any(m in message for m in SQLITE_BUSY_MESSAGES)


class Store:
    """Session factory plus the optimistic transaction runner.

    A unit of work is a callable taking a Session. It reads, validates and
    writes through ``cas_update``; on a lost race the session is rolled back
    and the unit re-run against fresh rows.
    """

    retryable = (StaleWrite, StaleDataError, OperationalError)

    def __init__(
        self,
        engine: Engine,
        max_attempts: int = config.TXN_MAX_ATTEMPTS,
        publisher: Optional[Publisher] = None,
    ) -> None:
        self.engine = engine
        self.max_attempts = max(1, max_attempts)
        self.publisher = publisher

    def session(self) -> Session:
        session = Session(self.engine, expire_on_commit=False)
        event.listen(session, "after_flush", _track_flush)
        return session

    def read(self, fn: Callable[[Session], T]) -> T:
        with self.session() as session:
            return fn(session)

    def run_transaction(self, fn: Callable[[Session], T]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            with self.session() as session:
                try:
                    result = fn(session)
                    session.commit()
                except self.retryable as exc:
                    session.rollback()
                    if not is_contention(exc):
                        raise
                    if attempt == self.max_attempts:
                        logger.warning("transaction gave up after %d attempts: %s", attempt, exc)
                        raise TransactionConflict("too much contention, try again") from exc
                    logger.info("transaction conflict (attempt %d): %s", attempt, exc)
                    time.sleep(random.uniform(0, 0.005 * attempt))
                    continue
                except Exception:
                    session.rollback()
                    raise
                touched = set(session.info.get(TOUCHED_KEY, ()))
            if self.publisher is not None and touched:
                self.publisher.publish(touched)
            return result
        raise AssertionError("unreachable")
