"""
modqueue Database Session Management.

Single entry point for store initialisation plus a transaction context
manager. Every queue operation runs inside exactly one ``transaction_scope``.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy.orm import Session, sessionmaker

from modqueue.db.base import DEFAULT_ENGINE, Base, engine_registry

_session_factory: Optional[sessionmaker] = None


def init_queue_db(
    db_url: str,
    create_tables: bool = False,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    pool_pre_ping: bool = True,
) -> sessionmaker:
    """
    Initialise the queue database.

    1. Registers the "modqueue" engine in the EngineRegistry.
    2. Optionally runs ``Base.metadata.create_all()`` (dev / ``modqueue init``).
    3. Stores the session factory as the module-level default.

    Returns:
        The ``sessionmaker`` bound to the engine. Components take this
        factory explicitly so tests can run against throwaway databases.
    """
    global _session_factory

    import modqueue.db.models  # noqa: F401  registers tables on Base.metadata

    engine_registry.register(
        DEFAULT_ENGINE, db_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=pool_pre_ping,
    )
    engine = engine_registry.get(DEFAULT_ENGINE)

    if create_tables:
        Base.metadata.create_all(engine)

    _session_factory = engine_registry.get_session_factory(DEFAULT_ENGINE)
    return _session_factory


def init_from_settings(settings, create_tables: Optional[bool] = None) -> sessionmaker:
    """Initialise the store from a loaded ``QueueSettings``."""
    db = settings.database
    return init_queue_db(
        db.url,
        create_tables=db.create_tables if create_tables is None else create_tables,
        pool_size=db.pool_size,
        max_overflow=db.max_overflow,
        pool_timeout=db.pool_timeout,
        pool_recycle=db.pool_recycle,
        pool_pre_ping=db.pool_pre_ping,
    )


def get_session_factory() -> sessionmaker:
    """Get the default session factory set by init_queue_db()."""
    if _session_factory is None:
        raise RuntimeError("Queue DB not initialized. Call init_queue_db() first.")
    return _session_factory


@contextmanager
def transaction_scope(session_factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    One store transaction: commit on success, rollback on any exception.

    Usage:
        with transaction_scope(factory) as session:
            task = session.get(ModerationTask, task_id)
    """
    session = (session_factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()


def close_all_sessions() -> None:
    """Dispose all engines. Used during shutdown and between tests."""
    global _session_factory
    _session_factory = None
    engine_registry.dispose()
