"""SQLAlchemy engine and session factory."""

import os
from collections.abc import Generator
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(tz=UTC).replace(tzinfo=None)


def _get_database_url() -> str:
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL environment variable is not set")
    return url


def make_engine(database_url: str | None = None) -> Engine:
    url = database_url or _get_database_url()
    if url.startswith("sqlite"):
        # Worker threads share the engine; SQLite needs both flags for that.
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine
    return create_engine(url, pool_pre_ping=True)


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# Module-level singletons: created lazily on first access via _get_engine().
_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _get_engine() -> Engine:
    global _engine, _session_factory
    if _engine is None:
        _engine = make_engine()
        _session_factory = sessionmaker(bind=_engine, autocommit=False, autoflush=False)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    _get_engine()
    assert _session_factory is not None
    return _session_factory


def get_session() -> Generator[Session, None, None]:
    """Yield a database session and close it when the request is done."""
    session = get_session_factory()()
    try:
        yield session
    finally:
        session.close()


def create_tables(engine: Engine | None = None) -> None:
    """Create all tables. Idempotent: safe to run on every startup."""
    # Import models so Base.metadata includes them before create_all().
    import docbatch.models.batch_file  # noqa: F401
    import docbatch.models.batch_job  # noqa: F401
    import docbatch.models.batch_output  # noqa: F401
    import docbatch.models.owner_account  # noqa: F401

    Base.metadata.create_all(bind=engine or _get_engine())
