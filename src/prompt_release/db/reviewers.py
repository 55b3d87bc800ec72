"""db/reviewers.py

SQLite-backed reviewer directory: role lookup by reviewer id.
"""
import logging
from typing import List, Optional

from prompt_release.config import REVIEWER_ROLES
from prompt_release.db.infra.core import get_conn
from prompt_release.errors import Conflict, NotFound, ValidationError
from prompt_release.models import Reviewer, format_ts, new_id, utcnow

logger = logging.getLogger(__name__)


class ReviewerDAO:
    def __init__(self, db_path: str):
        self._db_path = db_path

    def get(self, reviewer_id: str) -> Optional[Reviewer]:
        with get_conn(self._db_path) as conn:
            row = conn.execute(
                "SELECT * FROM reviewers WHERE id = ?",
                (reviewer_id,),
            ).fetchone()
        return Reviewer.from_row(row) if row else None

    def list(self) -> List[Reviewer]:
        with get_conn(self._db_path) as conn:
            rows = conn.execute("SELECT * FROM reviewers ORDER BY created_at").fetchall()
        return [Reviewer.from_row(row) for row in rows]

    def add(self, email: str, name: str, role: str = "reviewer", reviewer_id: Optional[str] = None) -> Reviewer:
        if role not in REVIEWER_ROLES:
            raise ValidationError(f"Unknown reviewer role '{role}'", role=role)
        reviewer_id = reviewer_id or new_id()
        logger.info("Adding reviewer %s with role %s", email, role)
        with get_conn(self._db_path) as conn:
            exists = conn.execute(
                "SELECT 1 FROM reviewers WHERE email = ? OR id = ?",
                (email, reviewer_id),
            ).fetchone()
            if exists:
                raise Conflict(f"Reviewer '{email}' already exists", email=email)
            conn.execute(
                """
                INSERT INTO reviewers (id, email, name, role, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (reviewer_id, email, name, role, format_ts(utcnow())),
            )
        return self.get(reviewer_id)

    def set_role(self, reviewer_id: str, role: str) -> Reviewer:
        if role not in REVIEWER_ROLES:
            raise ValidationError(f"Unknown reviewer role '{role}'", role=role)
        logger.info("Changing role of reviewer %s to %s", reviewer_id, role)
        with get_conn(self._db_path) as conn:
            cur = conn.execute(
                "UPDATE reviewers SET role = ? WHERE id = ?",
                (role, reviewer_id),
            )
            if cur.rowcount == 0:
                raise NotFound(f"Reviewer {reviewer_id} not found", reviewer_id=reviewer_id)
        return self.get(reviewer_id)
