"""
Database connection management.

Provides SQLite connections for balance, ledger and usage persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "tale_forge_credits.db"

# Seconds a writer waits on a locked database before giving up
BUSY_TIMEOUT = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection in autocommit mode.

    Transactions are opened explicitly by callers (``BEGIN IMMEDIATE``) so
    that read-modify-write sequences hold the write lock from the first read.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
