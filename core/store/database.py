"""Database engine and session management for the project store."""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .tables import Base

logger = structlog.get_logger(__name__)


def _is_memory_url(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


class Database:
    """Owns the SQLAlchemy engine and hands out transactional sessions.

    Attributes:
        url: SQLAlchemy database URL.
        engine: The engine.
    """

    def __init__(self, url: str = "sqlite:///knowledge.db", echo: bool = False) -> None:
        """Initialize the database.

        Args:
            url: SQLAlchemy database URL.
            echo: Log emitted SQL.
        """
        self.url = url
        kwargs: dict[str, Any] = {"echo": echo}

        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if _is_memory_url(url):
                kwargs["poolclass"] = StaticPool

        self.engine: Engine = create_engine(url, **kwargs)

        if url.startswith("sqlite"):
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

        self._session_factory = sessionmaker(self.engine, expire_on_commit=False)
        logger.debug("Database initialized", dialect=self.engine.dialect.name)

    def create_all(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Open a session wrapped in a transaction.

        Commits when the block exits normally and rolls back on error.

        Yields:
            A session bound to the engine.
        """
        with self._session_factory() as session, session.begin():
            yield session

    def dispose(self) -> None:
        self.engine.dispose()


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
