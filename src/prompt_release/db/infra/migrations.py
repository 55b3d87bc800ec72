# db/infra/migrations.py
import logging
import os
from datetime import datetime, UTC

logger = logging.getLogger(__name__)


def applied_migrations(conn) -> set[str]:
    rows = conn.execute("SELECT id FROM migrations").fetchall()
    return {row[0] for row in rows}


def apply_migrations(conn, migrations_dir: str) -> list[str]:
    """
    Apply SQL migrations exactly once, in filename order.

    Returns the ids of the migrations applied by this call.
    """

    # Ensure migrations table exists before reading history
    conn.execute("""
        CREATE TABLE IF NOT EXISTS migrations (
            id TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
    """)

    applied = applied_migrations(conn)
    newly_applied: list[str] = []

    for fname in sorted(os.listdir(migrations_dir)):
        if not fname.endswith(".sql"):
            continue

        migration_id = fname
        if migration_id in applied:
            continue

        path = os.path.join(migrations_dir, fname)
        with open(path, "r", encoding="utf-8") as f:
            sql = f.read()

        logger.info("Applying migration %s", migration_id)
        conn.executescript(sql)

        conn.execute(
            "INSERT INTO migrations (id, applied_at) VALUES (?, ?)",
            (migration_id, datetime.now(UTC).isoformat()),
        )

        conn.commit()
        newly_applied.append(migration_id)

    return newly_applied
