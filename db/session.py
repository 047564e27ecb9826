"""
Database engine and session management.

One DatabaseManager owns an engine and a session factory. Services receive
the manager explicitly; `get_db()` hands out a process-wide default for the
command line and jobs.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from db.models import Base
from config import config


@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    """Enforce foreign keys on SQLite connections (off by default there)."""
    if type(dbapi_connection).__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class DatabaseManager:
    """
    Owns the engine and hands out transactional sessions.

    Usage:
        db = DatabaseManager("sqlite:///portfolio.db")
        db.create_tables()
        with db.session() as session:
            HoldingRepository(session).get_for_portfolio(1)
    """

    def __init__(self, db_url: Path | str | None = None):
        self.db_url = str(db_url) if db_url else config.database.url
        if self.db_url.startswith("sqlite:///"):
            Path(self.db_url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(self.db_url, echo=False, future=True)
        self._session_factory = sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
        )

    def create_tables(self) -> None:
        """Create all tables defined in models."""
        Base.metadata.create_all(self.engine)

    def drop_tables(self) -> None:
        """Drop all tables."""
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Transactional scope: commits on success, rolls back on any exception.

        Yields:
            SQLAlchemy Session object.
        """
        session: Session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()


_db_manager: DatabaseManager | None = None


def get_db(db_url: Path | str | None = None) -> DatabaseManager:
    """
    Get or create the process-wide database manager.

    Args:
        db_url: Optional custom URL (only used on first call).
    """
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager(db_url)
    return _db_manager


def init_db(db_url: Path | str | None = None, if_drop: bool = False) -> DatabaseManager:
    """
    Create all tables, optionally dropping existing ones first.

    Returns:
        Initialized DatabaseManager instance.
    """
    db = get_db(db_url)
    if if_drop:
        db.drop_tables()
    db.create_tables()
    return db
