"""
Module: magistral_kernel.db.engine
Responsibility: the process-wide SQLAlchemy engine and session factory, plus
    ``session_scope`` for callers outside the module services (scripts,
    fixtures, maintenance jobs).
Architecture position: Kernel > DB.  Imports db/base.py and db/immutability.py;
    ``create_tables`` additionally imports every mapped model module.

Dialects:
    - PostgreSQL (production): READ COMMITTED, QueuePool with pre-ping.
      Inventory rows and sequence counters are locked with FOR UPDATE.
    - SQLite (tests, single pharmacy installs): foreign keys on, transactions
      opened with an explicit BEGIN so that SAVEPOINTs behave.  FOR UPDATE
      is a no-op; the database-level write lock serializes writers.

Failure modes:
    - RuntimeError from every accessor until ``init_engine_from_url`` ran.
"""

import atexit
from contextlib import contextmanager
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from magistral_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _enable_sqlite_transactions(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def _postgres_options(pool_size: int, max_overflow: int) -> dict[str, Any]:
    return {
        "poolclass": QueuePool,
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_pre_ping": True,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "isolation_level": "READ COMMITTED",
    }


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 5,
) -> Engine:
    """
    Create the engine and session factory for ``database_url``.

    Calling it again replaces the previous engine without disposing it;
    use ``reset_engine`` first when that matters.  Pool sizes apply to
    PostgreSQL only.
    """
    global _engine, _session_factory

    dialect = make_url(database_url).get_backend_name()
    options = _postgres_options(pool_size, max_overflow) if dialect == "postgresql" else {}
    engine = create_engine(database_url, echo=echo, **options)
    if dialect == "sqlite":
        _enable_sqlite_transactions(engine)

    _engine = engine
    _session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    configure_logging()
    logger.info("engine_initialized", extra={"dialect": dialect, "echo": echo})
    return engine


def _require_initialized() -> tuple[Engine, sessionmaker[Session]]:
    if _engine is None or _session_factory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine, _session_factory


def get_engine() -> Engine:
    return _require_initialized()[0]


def get_session_factory() -> sessionmaker[Session]:
    """Each concurrent operator needs a session of its own from this factory."""
    return _require_initialized()[1]


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Commit on normal exit, roll back and re-raise on error, always close.

    Usage:
        with session_scope() as session:
            SequenceService(session).next_value("maintenance")
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("session_scope_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables() -> None:
    """Create every mapped table and register the immutability listeners."""
    import magistral_kernel.models  # noqa: F401
    import magistral_kernel.services.sequence_service  # noqa: F401
    from magistral_kernel.db.base import Base
    from magistral_kernel.db.immutability import register_immutability_listeners

    register_immutability_listeners()
    Base.metadata.create_all(get_engine())
    logger.info("tables_created", extra={"table_count": len(Base.metadata.tables)})


def drop_tables() -> None:
    """Drop every mapped table. Test databases only."""
    from magistral_kernel.db.base import Base

    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


@atexit.register
def _dispose_on_exit() -> None:
    if _engine is not None:
        _engine.dispose()
