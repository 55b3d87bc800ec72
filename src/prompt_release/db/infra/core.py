# db/infra/core.py
import json
import logging
import sqlite3

from contextlib import contextmanager

from prompt_release.config import MIGRATIONS_PATH, DB_BUSY_TIMEOUT_SECONDS
from prompt_release.db.infra.migrations import apply_migrations

logger = logging.getLogger(__name__)


def init_db(db_path: str):
    """
    Initialize the database:
    - open connection
    - apply migrations

    Returns the migrations applied by this call.
    """
    logger.info("Initializing database at %s", db_path)
    try:
        with get_conn(db_path) as conn:
            applied = apply_migrations(conn, MIGRATIONS_PATH)
    except Exception:
        logger.exception("Database initialization failed")
        raise
    return applied


def safe_json_loads(value: str | None, default):
    """
    Safely load JSON from DB fields.
    Returns default if value is None, empty, or invalid.
    """
    if not value or not value.strip():
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Invalid JSON in DB field")
        return default


# -----------------------
# Connection helper
# -----------------------

@contextmanager
def get_conn(path, immediate: bool = False):
    """
    Yield a connection that commits on success and rolls back on error.

    immediate=True starts the transaction with BEGIN IMMEDIATE, taking the
    database write lock before the first read. Read-then-write sequences that
    guard a shared invariant (quorum counters, the active deployment of an
    agent) must run under it so no competing writer can interleave.
    """
    conn = sqlite3.connect(
        path,
        detect_types=sqlite3.PARSE_DECLTYPES,
        timeout=DB_BUSY_TIMEOUT_SECONDS,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        if immediate:
            conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
