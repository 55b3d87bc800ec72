"""db/versions.py

Agents, branches, prompt versions and the parent/child edges between them.

Construction modes:

- VersionDAO(db_path="...")
- VersionDAO(conn=sqlite3.Connection)

Support for atomic multi-step operations:

with version_dao(db_path, immediate=True) as dao:
    number = dao.next_version_number(branch_id)
    dao.insert_version(...)
"""
import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from prompt_release.db.infra.core import get_conn
from prompt_release.models import (
    Branch,
    FitnessSummary,
    PromptContent,
    PromptVersion,
    VersionStatus,
    format_ts,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)

_VERSION_COLUMNS = """
    id, agent_id, branch_id, version_number, content_json, parent_ids_json,
    mutation_type, mutation_details_json, fitness_json, status, created_by,
    created_by_kind, created_at, deployed_at
"""


class VersionDAO:
    def __init__(self, db_path: Optional[str] = None, conn=None):
        if conn is None and db_path is None:
            raise ValueError("VersionDAO requires either db_path or conn")

        self._db_path = db_path
        self._conn = conn

    # -----------------------
    # internal helpers
    # -----------------------

    @contextmanager
    def _connection(self):
        """
        Yield a connection.
        If DAO was constructed with a connection, reuse it.
        Otherwise, open a new one.
        """
        if self._conn is not None:
            yield self._conn
        else:
            with get_conn(self._db_path) as conn:
                yield conn

    # -----------------------
    # Agents
    # -----------------------

    def ensure_agent(self, agent_id: str, name: Optional[str] = None) -> None:
        ts = format_ts(utcnow())
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO agents (id, name, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (agent_id, name or agent_id, ts, ts),
            )

    def get_agent(self, agent_id: str) -> Optional[dict]:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT id, name, description, current_production_version_id,
                       created_at, updated_at
                FROM agents WHERE id = ?
                """,
                (agent_id,),
            ).fetchone()
        return dict(row) if row else None

    def set_production_pointer(self, agent_id: str, version_id: Optional[str]) -> None:
        logger.info("Pointing agent %s at version %s", agent_id, version_id)
        try:
            with self._connection() as conn:
                conn.execute(
                    """
                    UPDATE agents
                    SET current_production_version_id = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (version_id, format_ts(utcnow()), agent_id),
                )
        except Exception:
            logger.exception("Failed to update production pointer for %s", agent_id)
            raise

    # -----------------------
    # Branches
    # -----------------------

    def create_branch(
        self,
        agent_id: str,
        name: str,
        *,
        is_main: bool = False,
        base_version_id: Optional[str] = None,
        parent_branch_id: Optional[str] = None,
    ) -> Branch:
        branch_id = new_id()
        ts = format_ts(utcnow())
        logger.info("Creating branch %s for agent %s", name, agent_id)
        try:
            with self._connection() as conn:
                conn.execute(
                    """
                    INSERT INTO branches
                        (id, agent_id, name, parent_branch_id, base_version_id,
                         is_main, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        branch_id,
                        agent_id,
                        name,
                        parent_branch_id,
                        base_version_id,
                        1 if is_main else 0,
                        ts,
                    ),
                )
        except Exception:
            logger.exception("Failed to create branch %s for agent %s", name, agent_id)
            raise
        return self.get_branch(branch_id)

    def get_branch(self, branch_id: str) -> Optional[Branch]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM branches WHERE id = ?",
                (branch_id,),
            ).fetchone()
        return Branch.from_row(row) if row else None

    def get_main_branch(self, agent_id: str) -> Optional[Branch]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM branches WHERE agent_id = ? AND is_main = 1",
                (agent_id,),
            ).fetchone()
        return Branch.from_row(row) if row else None

    def list_branches(self, agent_id: str, include_deleted: bool = False) -> List[Branch]:
        logger.debug("Loading branches for agent %s from DB", agent_id)
        query = "SELECT * FROM branches WHERE agent_id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        query += " ORDER BY is_main DESC, created_at DESC"
        with self._connection() as conn:
            rows = conn.execute(query, (agent_id,)).fetchall()
        return [Branch.from_row(row) for row in rows]

    def mark_branch_merged(self, branch_id: str, into_branch_id: str, merged_at: datetime) -> None:
        logger.info("Marking branch %s merged into %s", branch_id, into_branch_id)
        with self._connection() as conn:
            conn.execute(
                """
                UPDATE branches
                SET merged = 1, merged_at = ?, merged_into_branch_id = ?
                WHERE id = ?
                """,
                (format_ts(merged_at), into_branch_id, branch_id),
            )

    def soft_delete_branch(self, branch_id: str, deleted_at: datetime) -> None:
        logger.info("Deleting branch %s", branch_id)
        with self._connection() as conn:
            conn.execute(
                "UPDATE branches SET deleted_at = ? WHERE id = ?",
                (format_ts(deleted_at), branch_id),
            )

    def count_branch_blockers(self, branch_id: str, now: datetime) -> int:
        """Versions on the branch referenced by a live pending approval or an active deployment."""
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM prompt_versions pv
                WHERE pv.branch_id = ?
                  AND (
                    EXISTS (SELECT 1 FROM approval_requests ar
                            WHERE ar.version_id = pv.id AND ar.status = 'pending'
                              AND (ar.expires_at IS NULL OR ar.expires_at >= ?))
                    OR EXISTS (SELECT 1 FROM deployments d
                               WHERE d.version_id = pv.id AND d.status = 'active')
                  )
                """,
                (branch_id, format_ts(now)),
            ).fetchone()
        return row[0]

    # -----------------------
    # Versions: READ
    # -----------------------

    def get_version(self, version_id: str) -> Optional[PromptVersion]:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT {_VERSION_COLUMNS} FROM prompt_versions WHERE id = ?",
                (version_id,),
            ).fetchone()
        return PromptVersion.from_row(row) if row else None

    def get_versions(self, version_ids: Sequence[str]) -> Dict[str, PromptVersion]:
        if not version_ids:
            return {}
        placeholders = ",".join("?" for _ in version_ids)
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT {_VERSION_COLUMNS} FROM prompt_versions WHERE id IN ({placeholders})",
                tuple(version_ids),
            ).fetchall()
        return {row["id"]: PromptVersion.from_row(row) for row in rows}

    def list_versions(self, branch_id: str, status: Optional[str] = None) -> List[PromptVersion]:
        logger.debug("Loading versions for branch %s from DB", branch_id)
        query = f"SELECT {_VERSION_COLUMNS} FROM prompt_versions WHERE branch_id = ?"
        params: list = [branch_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY version_number DESC"
        try:
            with self._connection() as conn:
                rows = conn.execute(query, tuple(params)).fetchall()
        except Exception:
            logger.exception("Failed to load versions for branch %s from DB", branch_id)
            raise
        return [PromptVersion.from_row(row) for row in rows]

    def latest_version(self, branch_id: str) -> Optional[PromptVersion]:
        with self._connection() as conn:
            row = conn.execute(
                f"""
                SELECT {_VERSION_COLUMNS} FROM prompt_versions
                WHERE branch_id = ?
                ORDER BY version_number DESC
                LIMIT 1
                """,
                (branch_id,),
            ).fetchone()
        return PromptVersion.from_row(row) if row else None

    def list_agent_versions(self, agent_id: str) -> List[PromptVersion]:
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT {_VERSION_COLUMNS} FROM prompt_versions WHERE agent_id = ?",
                (agent_id,),
            ).fetchall()
        return [PromptVersion.from_row(row) for row in rows]

    def list_agent_edges(self, agent_id: str) -> List[tuple]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT e.parent_id, e.child_id, e.position
                FROM version_edges e
                JOIN prompt_versions pv ON pv.id = e.child_id
                WHERE pv.agent_id = ?
                """,
                (agent_id,),
            ).fetchall()
        return [(row[0], row[1], row[2]) for row in rows]

    def branch_stats(self, branch_id: str) -> dict:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_versions,
                    SUM(CASE WHEN status = 'candidate' THEN 1 ELSE 0 END) AS candidate_count,
                    SUM(CASE WHEN status = 'approved' THEN 1 ELSE 0 END) AS approved_count,
                    SUM(CASE WHEN status = 'production' THEN 1 ELSE 0 END) AS production_count,
                    AVG(json_extract(fitness_json, '$.win_rate')) AS avg_win_rate
                FROM prompt_versions
                WHERE branch_id = ?
                """,
                (branch_id,),
            ).fetchone()
        return {
            "total_versions": row["total_versions"] or 0,
            "candidate_count": row["candidate_count"] or 0,
            "approved_count": row["approved_count"] or 0,
            "production_count": row["production_count"] or 0,
            "avg_win_rate": row["avg_win_rate"],
        }

    # -----------------------
    # Versions: WRITE
    # -----------------------

    def next_version_number(self, branch_id: str) -> int:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT MAX(version_number) FROM prompt_versions WHERE branch_id = ?",
                (branch_id,),
            ).fetchone()
        return 1 if row[0] is None else row[0] + 1

    def insert_version(
        self,
        *,
        agent_id: str,
        branch_id: str,
        version_number: int,
        content: PromptContent,
        parent_ids: Sequence[str],
        created_by: str,
        created_by_kind: str = "manual",
        mutation_type: Optional[str] = None,
        mutation_details: Optional[dict] = None,
    ) -> PromptVersion:
        version_id = new_id()
        ts = format_ts(utcnow())
        logger.info(
            "Saving version %s of branch %s for agent %s to DB",
            version_number,
            branch_id,
            agent_id,
        )
        try:
            with self._connection() as conn:
                conn.execute(
                    f"""
                    INSERT INTO prompt_versions ({_VERSION_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        version_id,
                        agent_id,
                        branch_id,
                        version_number,
                        content.to_json(),
                        json.dumps(list(parent_ids)),
                        mutation_type,
                        json.dumps(mutation_details) if mutation_details is not None else None,
                        None,
                        VersionStatus.CANDIDATE.value,
                        created_by,
                        created_by_kind,
                        ts,
                        None,
                    ),
                )
                conn.executemany(
                    """
                    INSERT INTO version_edges (parent_id, child_id, position)
                    VALUES (?, ?, ?)
                    """,
                    [(parent_id, version_id, pos) for pos, parent_id in enumerate(parent_ids)],
                )
                row = conn.execute(
                    f"SELECT {_VERSION_COLUMNS} FROM prompt_versions WHERE id = ?",
                    (version_id,),
                ).fetchone()
        except Exception:
            logger.exception("Failed to save version for agent %s to DB", agent_id)
            raise
        return PromptVersion.from_row(row)

    def update_status(
        self,
        version_id: str,
        status: VersionStatus,
        *,
        deployed_at: Optional[datetime] = None,
    ) -> None:
        logger.info("Setting version %s status to %s", version_id, status.value)
        try:
            with self._connection() as conn:
                if deployed_at is not None:
                    conn.execute(
                        "UPDATE prompt_versions SET status = ?, deployed_at = ? WHERE id = ?",
                        (status.value, format_ts(deployed_at), version_id),
                    )
                else:
                    conn.execute(
                        "UPDATE prompt_versions SET status = ? WHERE id = ?",
                        (status.value, version_id),
                    )
        except Exception:
            logger.exception("Failed to update status of version %s", version_id)
            raise

    def update_fitness(self, version_id: str, fitness: FitnessSummary) -> None:
        logger.info("Updating fitness for version %s", version_id)
        with self._connection() as conn:
            conn.execute(
                "UPDATE prompt_versions SET fitness_json = ? WHERE id = ?",
                (json.dumps(fitness.to_dict()), version_id),
            )


# -----------------------
# Transaction-scoped DAO
# -----------------------

@contextmanager
def version_dao(db_path: str, immediate: bool = False):
    """
    Yield a VersionDAO bound to a single transaction.
    """
    with get_conn(db_path, immediate=immediate) as conn:
        yield VersionDAO(conn=conn)
