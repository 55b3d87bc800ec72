"""db/approvals.py

Construction modes:

- ApprovalDAO(db_path="...")
- ApprovalDAO(conn=sqlite3.Connection)

Atomic multi-step operations share one connection with the version DAO:

with get_conn(db_path, immediate=True) as conn:
    approvals = ApprovalDAO(conn=conn)
    request = approvals.latest_request(version_id)
    approvals.insert_vote(...)
    approvals.compare_and_set(...)
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

from prompt_release.db.infra.core import get_conn
from prompt_release.models import (
    ApprovalRequest,
    ApprovalVote,
    VoteKind,
    format_ts,
    new_id,
)

logger = logging.getLogger(__name__)


class ApprovalDAO:
    def __init__(self, db_path: Optional[str] = None, conn=None):
        if conn is None and db_path is None:
            raise ValueError("ApprovalDAO requires either db_path or conn")

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
    # READ operations
    # -----------------------

    def latest_request(self, version_id: str) -> Optional[ApprovalRequest]:
        """Most recent request for a version; the one votes and reads act on."""
        logger.debug("Loading approval request for version %s from DB", version_id)
        try:
            with self._connection() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM approval_requests
                    WHERE version_id = ?
                    ORDER BY (status = 'pending') DESC, requested_at DESC, rowid DESC
                    LIMIT 1
                    """,
                    (version_id,),
                ).fetchone()
        except Exception:
            logger.exception("Failed to load approval request for version %s", version_id)
            raise
        return ApprovalRequest.from_row(row) if row else None

    def get_request(self, request_id: str) -> Optional[ApprovalRequest]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM approval_requests WHERE id = ?",
                (request_id,),
            ).fetchone()
        return ApprovalRequest.from_row(row) if row else None

    def list_pending(self, agent_id: Optional[str] = None) -> List[ApprovalRequest]:
        query = "SELECT * FROM approval_requests WHERE status = 'pending'"
        params: tuple = ()
        if agent_id:
            query += " AND agent_id = ?"
            params = (agent_id,)
        query += " ORDER BY requested_at ASC"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [ApprovalRequest.from_row(row) for row in rows]

    def list_votes(self, request_id: str) -> List[ApprovalVote]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM approval_votes
                WHERE approval_request_id = ?
                ORDER BY voted_at ASC, rowid ASC
                """,
                (request_id,),
            ).fetchall()
        return [ApprovalVote.from_row(row) for row in rows]

    def has_voted(self, request_id: str, approver_id: str) -> bool:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM approval_votes
                WHERE approval_request_id = ? AND approver_id = ?
                """,
                (request_id, approver_id),
            ).fetchone()
        return row is not None

    # -----------------------
    # WRITE operations
    # -----------------------

    def create_request(
        self,
        *,
        version_id: str,
        agent_id: str,
        requested_by: str,
        required_approvals: int,
        requested_at: datetime,
        expires_at: Optional[datetime],
    ) -> ApprovalRequest:
        request_id = new_id()
        logger.info(
            "Creating approval request for version %s (quorum %s)",
            version_id,
            required_approvals,
        )
        try:
            with self._connection() as conn:
                conn.execute(
                    """
                    INSERT INTO approval_requests
                        (id, version_id, agent_id, requested_by, requested_at,
                         required_approvals, current_approvals, status, expires_at)
                    VALUES (?, ?, ?, ?, ?, ?, 0, 'pending', ?)
                    """,
                    (
                        request_id,
                        version_id,
                        agent_id,
                        requested_by,
                        format_ts(requested_at),
                        required_approvals,
                        format_ts(expires_at),
                    ),
                )
        except Exception:
            logger.exception("Failed to create approval request for version %s", version_id)
            raise
        return self.get_request(request_id)

    def insert_vote(
        self,
        *,
        request_id: str,
        approver_id: str,
        vote: VoteKind,
        reason: Optional[str],
        voted_at: datetime,
    ) -> ApprovalVote:
        vote_id = new_id()
        logger.info("Recording %s vote by %s on request %s", vote.value, approver_id, request_id)
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO approval_votes
                    (id, approval_request_id, approver_id, vote, reason, voted_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (vote_id, request_id, approver_id, vote.value, reason, format_ts(voted_at)),
            )
            conn.execute(
                "UPDATE reviewers SET last_active_at = ? WHERE id = ?",
                (format_ts(voted_at), approver_id),
            )
        return ApprovalVote(
            id=vote_id,
            approval_request_id=request_id,
            approver_id=approver_id,
            vote=vote,
            reason=reason,
            voted_at=voted_at,
        )

    def compare_and_set(self, current: ApprovalRequest, updated: ApprovalRequest) -> bool:
        """
        Persist `updated` only if the stored row still matches `current`.

        Returns False when another writer changed the request in between.
        """
        with self._connection() as conn:
            cur = conn.execute(
                """
                UPDATE approval_requests
                SET status = ?, current_approvals = ?
                WHERE id = ? AND status = ? AND current_approvals = ?
                """,
                (
                    updated.status.value,
                    updated.current_approvals,
                    current.id,
                    current.status.value,
                    current.current_approvals,
                ),
            )
        return cur.rowcount == 1

    def mark_expired(self, request: ApprovalRequest) -> bool:
        logger.info("Approval request %s expired", request.id)
        return self.compare_and_set(request, request.with_expiry())

