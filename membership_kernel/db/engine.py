"""
Module: membership_kernel.db.engine
Responsibility: SQLAlchemy engine initialization, session factory management,
    and transactional scope utilities.  Single point of database connection
    configuration for the kernel, the scheduler and the CLI.
Architecture position: Kernel > DB.  May import from db/base.py.  MUST NOT
    import from services/ or outer layers (create_tables imports models to
    register their tables).

Invariants enforced:
    - PostgreSQL runs at READ COMMITTED with explicit row-level locking
      (``FOR UPDATE``) plus conditional UPDATEs where lost updates matter.
    - SQLite (tests, local tooling) runs every transaction as
      ``BEGIN IMMEDIATE`` with the driver's own transaction handling turned
      off, so writers serialise and SAVEPOINTs behave.

Failure modes:
    - RuntimeError if get_engine/get_session/get_session_factory are called
      before init_engine_from_url().
    - OperationalError ("database is locked") on SQLite when a writer waits
      longer than ``sqlite_timeout`` seconds.
"""

import atexit
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from membership_kernel.logging_config import get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def _install_sqlite_transaction_recipe(engine: Engine) -> None:
    """Hand transaction control from pysqlite to SQLAlchemy.

    pysqlite's legacy implicit BEGIN breaks SAVEPOINT semantics and lets two
    writers deadlock on lock upgrade.  Emitting ``BEGIN IMMEDIATE`` ourselves
    takes the write lock up front.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    sqlite_timeout: float = 30.0,
) -> Engine:
    """
    Create an engine for ``database_url`` without touching module state.

    PostgreSQL URLs get a QueuePool at READ COMMITTED.  SQLite URLs get the
    immediate-transaction recipe; in-memory databases share one connection
    through a StaticPool so every session sees the same data.
    """
    url = make_url(database_url)

    if url.get_backend_name() == "sqlite":
        in_memory = url.database in (None, "", ":memory:")
        kwargs: dict = {
            "echo": echo,
            "connect_args": {"check_same_thread": False, "timeout": sqlite_timeout},
        }
        if in_memory:
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)
        _install_sqlite_transaction_recipe(engine)
        return engine

    return create_engine(
        database_url,
        echo=echo,
        poolclass=QueuePool,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=pool_pre_ping,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        isolation_level="READ COMMITTED",
    )


def init_engine_from_url(database_url: str, echo: bool = False, **engine_kwargs) -> Engine:
    """
    Initialize the module-level engine and session factory.

    Postconditions: all subsequent get_engine/get_session calls use this
        engine.  A second call replaces the first.

    Args:
        database_url: SQLAlchemy URL (``postgresql://...`` or ``sqlite:///...``).
        echo: If True, log all SQL statements.
        engine_kwargs: Forwarded to :func:`build_engine` (pool sizing etc.).

    Returns:
        SQLAlchemy Engine instance.
    """
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()

    _engine = build_engine(database_url, echo=echo, **engine_kwargs)
    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "echo": echo},
    )
    return _engine


def get_engine() -> Engine:
    """
    Get the current engine instance.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session() -> Session:
    """
    Get a new session instance.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory()


def get_session_factory() -> sessionmaker[Session]:
    """
    Get the session factory for creating sessions.

    Used by the scheduler and the conflict-retry helper, where each unit of
    work needs its own session.

    Raises:
        RuntimeError: If engine has not been initialized.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


@contextmanager
def session_scope(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """
    Provide a transactional scope around a series of operations.

    Postconditions: On normal exit, session is committed and closed.
        On exception, session is rolled back and closed, and the exception
        is re-raised to the caller.

    Usage:
        with session_scope() as session:
            MemberLifecycleService(session).change_status(...)
    """
    session = session_factory() if session_factory is not None else get_session()
    logger.debug("transaction_started")
    try:
        yield session
        session.commit()
        logger.debug("transaction_committed")
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine | None = None) -> None:
    """
    Create all tables defined in the models.

    All ORM models are imported first so Base.metadata discovers them.
    """
    from membership_kernel import models  # noqa: F401
    from membership_kernel.db.base import Base

    Base.metadata.create_all(engine or get_engine())


def drop_tables(engine: Engine | None = None) -> None:
    """
    Drop all tables. Use with caution - primarily for testing.
    """
    from membership_kernel import models  # noqa: F401
    from membership_kernel.db.base import Base

    Base.metadata.drop_all(engine or get_engine())


def reset_engine() -> None:
    """
    Reset the engine and session factory.

    Useful for test cleanup.
    """
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None

    _SessionFactory = None


def _atexit_dispose():
    """Dispose the engine on process exit to release all pooled connections."""
    if _engine is not None:
        _engine.dispose()


atexit.register(_atexit_dispose)
