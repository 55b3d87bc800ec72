"""db/deployments.py

Deployments (the per-agent rollback chain) and their regression reports.

Construction modes:

- DeploymentDAO(db_path="...")
- DeploymentDAO(conn=sqlite3.Connection)

Atomic multi-step operations share one connection with the version DAO:

with get_conn(db_path, immediate=True) as conn:
    deployments = DeploymentDAO(conn=conn)
    current = deployments.active_for_agent(agent_id)
    deployments.set_status(current.id, DeploymentStatus.SUPERSEDED)
    deployments.insert(...)
"""
import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

from prompt_release.db.infra.core import get_conn, safe_json_loads
from prompt_release.models import (
    Deployment,
    DeploymentStatus,
    MetricsComparison,
    MetricsSnapshot,
    RegressionReport,
    Severity,
    format_ts,
    new_id,
    parse_ts,
)

logger = logging.getLogger(__name__)


class DeploymentDAO:
    def __init__(self, db_path: Optional[str] = None, conn=None):
        if conn is None and db_path is None:
            raise ValueError("DeploymentDAO requires either db_path or conn")

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

    def get(self, deployment_id: str) -> Optional[Deployment]:
        logger.debug("Loading deployment %s from DB", deployment_id)
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM deployments WHERE id = ?",
                (deployment_id,),
            ).fetchone()
        return Deployment.from_row(row) if row else None

    def active_for_agent(self, agent_id: str) -> Optional[Deployment]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM deployments WHERE agent_id = ? AND status = 'active'",
                (agent_id,),
            ).fetchall()
        if not rows:
            return None
        # the partial unique index guarantees at most one
        return Deployment.from_row(rows[0])

    def history(self, agent_id: str, limit: int = 20) -> List[Deployment]:
        logger.debug("Loading deployment history for agent %s from DB", agent_id)
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM deployments
                WHERE agent_id = ?
                ORDER BY seq DESC
                LIMIT ?
                """,
                (agent_id, limit),
            ).fetchall()
        return [Deployment.from_row(row) for row in rows]

    def count_active(self, agent_id: str) -> int:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM deployments WHERE agent_id = ? AND status = 'active'",
                (agent_id,),
            ).fetchone()
        return row[0]

    # -----------------------
    # WRITE operations
    # -----------------------

    def insert(
        self,
        *,
        version_id: str,
        agent_id: str,
        deployed_by: str,
        deployed_at: datetime,
        previous_deployment_id: Optional[str],
        metrics_before: Optional[MetricsSnapshot],
    ) -> Deployment:
        deployment_id = new_id()
        logger.info(
            "Saving deployment of version %s for agent %s (previous: %s)",
            version_id,
            agent_id,
            previous_deployment_id,
        )
        try:
            with self._connection() as conn:
                seq_row = conn.execute(
                    "SELECT COALESCE(MAX(seq), 0) + 1 FROM deployments WHERE agent_id = ?",
                    (agent_id,),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO deployments
                        (id, version_id, agent_id, deployed_by, deployed_at, status,
                         previous_deployment_id, metrics_before_json, regression_detected, seq)
                    VALUES (?, ?, ?, ?, ?, 'active', ?, ?, 0, ?)
                    """,
                    (
                        deployment_id,
                        version_id,
                        agent_id,
                        deployed_by,
                        format_ts(deployed_at),
                        previous_deployment_id,
                        json.dumps(metrics_before.to_dict()) if metrics_before else None,
                        seq_row[0],
                    ),
                )
        except Exception:
            logger.exception("Failed to save deployment for agent %s", agent_id)
            raise
        return self.get(deployment_id)

    def set_status(self, deployment_id: str, status: DeploymentStatus) -> None:
        logger.info("Setting deployment %s status to %s", deployment_id, status.value)
        with self._connection() as conn:
            conn.execute(
                "UPDATE deployments SET status = ? WHERE id = ?",
                (status.value, deployment_id),
            )

    def mark_rolled_back(
        self,
        deployment_id: str,
        *,
        rolled_back_by: str,
        rolled_back_at: datetime,
        reason: Optional[str],
    ) -> None:
        logger.info("Marking deployment %s rolled back by %s", deployment_id, rolled_back_by)
        with self._connection() as conn:
            conn.execute(
                """
                UPDATE deployments
                SET status = 'rolled_back',
                    rolled_back_at = ?,
                    rolled_back_by = ?,
                    rollback_reason = ?
                WHERE id = ? AND status = 'active'
                """,
                (format_ts(rolled_back_at), rolled_back_by, reason, deployment_id),
            )

    def update_metrics_after(
        self,
        deployment_id: str,
        metrics_after: MetricsSnapshot,
        regression_detected: bool,
    ) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                UPDATE deployments
                SET metrics_after_json = ?, regression_detected = ?
                WHERE id = ?
                """,
                (
                    json.dumps(metrics_after.to_dict()),
                    1 if regression_detected else 0,
                    deployment_id,
                ),
            )

    # -----------------------
    # Regression reports
    # -----------------------

    def save_report(self, report: RegressionReport) -> RegressionReport:
        """Store the report as the deployment's only report (latest wins)."""
        report_id = new_id()
        logger.info(
            "Saving regression report for deployment %s (detected=%s, severity=%s)",
            report.deployment_id,
            report.detected,
            report.severity.value if report.severity else None,
        )
        try:
            with self._connection() as conn:
                conn.execute(
                    "DELETE FROM regression_reports WHERE deployment_id = ?",
                    (report.deployment_id,),
                )
                conn.execute(
                    """
                    INSERT INTO regression_reports
                        (id, deployment_id, detected, severity, metrics_json,
                         recommendations_json, evaluated_at, auto_rollback_triggered)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        report_id,
                        report.deployment_id,
                        1 if report.detected else 0,
                        report.severity.value if report.severity else None,
                        json.dumps(report.metrics.to_dict()),
                        json.dumps(list(report.recommendations)),
                        format_ts(report.evaluated_at),
                        1 if report.auto_rollback_triggered else 0,
                    ),
                )
        except Exception:
            logger.exception("Failed to save regression report for %s", report.deployment_id)
            raise
        return self.get_report(report.deployment_id)

    def flag_auto_rollback(self, deployment_id: str) -> None:
        """Record on the stored report that the automatic rollback went through."""
        with self._connection() as conn:
            conn.execute(
                "UPDATE regression_reports SET auto_rollback_triggered = 1 WHERE deployment_id = ?",
                (deployment_id,),
            )

    def get_report(self, deployment_id: str) -> Optional[RegressionReport]:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM regression_reports
                WHERE deployment_id = ?
                ORDER BY evaluated_at DESC
                LIMIT 1
                """,
                (deployment_id,),
            ).fetchone()
        if not row:
            return None
        return RegressionReport(
            id=row["id"],
            deployment_id=row["deployment_id"],
            detected=bool(row["detected"]),
            severity=Severity(row["severity"]) if row["severity"] else None,
            metrics=MetricsComparison.from_dict(safe_json_loads(row["metrics_json"], {})),
            recommendations=safe_json_loads(row["recommendations_json"], []),
            evaluated_at=parse_ts(row["evaluated_at"]),
            auto_rollback_triggered=bool(row["auto_rollback_triggered"]),
        )

