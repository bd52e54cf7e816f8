"""
Database connection management.

Provides the SQLite connection backing the key/value store.
"""

import sqlite3
from pathlib import Path


def get_connection(db_path: str = "crystal_guide.db") -> sqlite3.Connection:
    """Create and return a SQLite connection for the key/value store.

    Parent directories are created on demand so a fresh install can point
    ``db_path`` at a not-yet-existing data directory.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA journal_mode = WAL")
    return conn
