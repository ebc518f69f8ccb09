"""Application-wide extensions registry and engine safeguards."""
from contextlib import contextmanager
from sqlite3 import Connection as SQLite3Connection

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine

# SQLAlchemy instance for database interactions
# Initialized in the application factory to keep the global state clean.
db = SQLAlchemy()

SQLITE_BUSY_TIMEOUT_MS = 5000


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):  # pragma: no cover - engine hook
    """Enforce foreign keys and wait on writer locks instead of failing fast."""
    if isinstance(dbapi_connection, SQLite3Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")
        cursor.close()


@contextmanager
def unit_of_work(commit: bool = True):
    """Commit once on success, roll back everything staged on any failure.

    With ``commit=False`` the caller owns the transaction boundary.
    """
    try:
        yield db.session
        if commit:
            db.session.commit()
    except Exception:
        if commit:
            db.session.rollback()
        raise
