"""Database connection and session management."""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .logger import get_logger
from .orm import Base

logger = get_logger("database")


class DatabaseManager:
    """Owns the SQLAlchemy engine and hands out transactional sessions.

    An in-memory SQLite URL (``sqlite:///:memory:``) shares a single
    connection across threads so tests and the harness see one database.
    """

    def __init__(self, database_url: str = "sqlite:///./convoflow.db", echo: bool = False) -> None:
        """Initialize the database manager.

        Args:
            database_url: SQLAlchemy database URL
            echo: Log emitted SQL statements
        """
        logger.info("Initializing database with URL: %s", database_url)
        self.url = database_url

        engine_kwargs: dict[str, Any] = {"echo": echo}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
                engine_kwargs["poolclass"] = StaticPool

        self._engine: Engine = create_engine(database_url, **engine_kwargs)
        self._session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self._engine,
        )

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_tables(self) -> None:
        """Create all tables if they don't exist."""
        logger.info("Creating database tables...")
        Base.metadata.create_all(bind=self._engine)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Get a session that commits on success and rolls back on error.

        Example:
            ```python
            db = DatabaseManager("sqlite:///:memory:")
            with db.session() as session:
                session.add(record)
            ```
        """
        session = self._session_factory()
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
        self._engine.dispose()


def init_database(
    database_url: str = "sqlite:///./convoflow.db", echo: bool = False
) -> DatabaseManager:
    """Initialize the database and create tables.

    Example:
        ```python
        db = init_database("sqlite:///:memory:")
        ```
    """
    db = DatabaseManager(database_url, echo=echo)
    db.create_tables()
    return db
