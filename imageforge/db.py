"""Persistence for build session history and the resource ledger.

The ledger commits one small transaction per registered resource and must
survive a crash right after the commit, so SQLite connections run with
``synchronous=FULL`` and write-ahead logging.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

# Seconds a writer waits for another connection's lock before failing
SQLITE_BUSY_TIMEOUT = 30


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _sqlite_path(db_url: str) -> Path | None:
    if not db_url.startswith("sqlite:///"):
        return None
    path = db_url.removeprefix("sqlite:///")
    if not path or path == ":memory:":
        return None
    return Path(path)


def _set_sqlite_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine(db_url: str) -> Engine:
    """Create an engine for the session database.

    File-backed SQLite databases get their parent directory created and
    durable-write pragmas applied on every connection.

    Args:
        db_url: Database URL (usually ``Settings.db_url``).

    Returns:
        SQLAlchemy Engine instance.
    """
    if not db_url.startswith("sqlite"):
        return create_engine(db_url, echo=False)

    path = _sqlite_path(db_url)
    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(
        db_url,
        connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
        echo=False,
    )
    event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Create a session factory bound to ``engine``."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Run a unit of work in its own transaction.

    Commits when the block exits normally and rolls back on any exception,
    which is re-raised.

    Args:
        session_factory: Factory from ``get_session_factory``.

    Yields:
        SQLAlchemy Session instance.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine) -> None:
    """Create the session and ledger tables if they do not exist."""
    # Registers the ledger models on Base.metadata
    from imageforge.ledger import models as ledger_models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def open_database(db_url: str) -> sessionmaker[Session]:
    """Create the engine and tables and return a session factory.

    Args:
        db_url: Database URL.

    Returns:
        Session factory for the ready-to-use database.
    """
    engine = get_engine(db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "open_database",
]
