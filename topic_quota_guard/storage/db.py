"""
Database connection management.

Provides the SQLite connection backing the local topic ledger.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


def get_connection(db_path: str = "topic_quota_guard.db") -> sqlite3.Connection:
    """Open the ledger database with foreign keys and named-column rows.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection whose rows support access by column name
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def connection(db_path: str) -> Iterator[sqlite3.Connection]:
    """Yield a connection that is always closed afterwards."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()
