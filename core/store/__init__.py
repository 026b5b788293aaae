"""Transactional state store.

Projects, scans, the current file manifest and its chunks are kept in flat
SQLAlchemy tables. Files and chunks are keyed by surrogate ids; chunks point
at their file row through a foreign key.

Example:
    >>> from core.store import Database, ProjectStore
    >>> database = Database("sqlite:///kb.db")
    >>> database.create_all()
    >>> store = ProjectStore(database)
    >>> project = store.create_project("shop", "https://github.com/acme/shop.git")
"""

from .database import Database
from .repository import BATCH_SIZE, ProjectStore, ScanTotals
from .tables import Base, ChunkRow, FileRow, ProjectRow, ScanRow

__all__ = [
    "Database",
    "ProjectStore",
    "ScanTotals",
    "BATCH_SIZE",
    # Tables
    "Base",
    "ProjectRow",
    "ScanRow",
    "FileRow",
    "ChunkRow",
]
