"""
Database connection management.

Provides SQLite connection for data persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "menu_image_guard.db"

# Seconds a writer waits on a locked database before giving up
BUSY_TIMEOUT_SECONDS = 5.0


def get_connection(
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = BUSY_TIMEOUT_SECONDS,
) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Each request opens its own connection, so nothing is shared between
    concurrently served requests except the database file itself.

    Args:
        db_path: Path to SQLite database file
        timeout: Busy timeout in seconds for locked writes

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
