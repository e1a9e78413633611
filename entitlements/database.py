"""
Engine and transaction helpers.

PostgreSQL gets real row locks (SELECT ... FOR UPDATE) and per-transaction
lock/statement timeouts. SQLite has no row locks, so every transaction is
opened with BEGIN IMMEDIATE, which takes the database write lock up front and
gives the same read-lock-decide-mutate guarantee for a single node.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .tables import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str, *, tx_timeout_ms: int = 5000, echo: bool = False) -> Engine:
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={
                "check_same_thread": False,
                "timeout": max(tx_timeout_ms, 1000) / 1000.0,
            },
        )
        _install_sqlite_immediate_transactions(engine)
        return engine

    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def _install_sqlite_immediate_transactions(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        # let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def create_schema(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def dialect_name(session: Session) -> str:
    return session.get_bind().dialect.name


@contextmanager
def transaction(session_factory: sessionmaker, *, timeout_ms: Optional[int] = None) -> Iterator[Session]:
    """Open a session, commit on success, roll back on any exception."""
    session = session_factory()
    try:
        if timeout_ms and dialect_name(session) == "postgresql":
            session.execute(text(f"SET LOCAL lock_timeout = {int(timeout_ms)}"))
            session.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
