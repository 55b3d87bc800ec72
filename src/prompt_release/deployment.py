# src/prompt_release/deployment.py
"""
Deployment pipeline: promote approved versions, evaluate regressions and
roll back along the per-agent deployment chain.

deploy and rollback each run in a single BEGIN IMMEDIATE transaction that
covers the chain link, the deployment statuses, both version statuses and
the agent's production pointer. Either all of it lands or none of it does.
"""
import logging
import sqlite3
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from prompt_release.approval import require_privileged
from prompt_release.config import (
    AUTO_ROLLBACK_ACTOR,
    BASELINE_WINDOW_MINUTES,
    DEPLOYMENT_HISTORY_LIMIT,
    EVALUATION_WINDOW_MINUTES,
    PRIVILEGED_ROLES,
)
from prompt_release.db.deployments import DeploymentDAO
from prompt_release.db.infra.core import get_conn
from prompt_release.db.reviewers import ReviewerDAO
from prompt_release.db.services import VersionStore
from prompt_release.db.versions import VersionDAO
from prompt_release.errors import (
    Conflict,
    DataIntegrityError,
    NoPriorDeployment,
    NotFound,
    ValidationError,
)
from prompt_release.metrics import MetricsService, StaticMetricsSource, compare_metrics
from prompt_release.models import (
    Deployment,
    DeploymentStatus,
    RegressionReport,
    VersionStatus,
    utcnow,
)
from prompt_release import notifications
from prompt_release.notifications import NotificationService
from prompt_release.regression import RegressionEvaluator

logger = logging.getLogger(__name__)


class DeploymentPipeline:
    def __init__(
        self,
        db_path: str,
        store: Optional[VersionStore] = None,
        reviewers: Optional[ReviewerDAO] = None,
        metrics: Optional[MetricsService] = None,
        evaluator: Optional[RegressionEvaluator] = None,
        notifier: Optional[NotificationService] = None,
        now_fn: Callable[[], datetime] = utcnow,
        privileged_roles: Iterable[str] = PRIVILEGED_ROLES,
        baseline_window_minutes: int = BASELINE_WINDOW_MINUTES,
        evaluation_window_minutes: int = EVALUATION_WINDOW_MINUTES,
        auto_rollback_actor: str = AUTO_ROLLBACK_ACTOR,
    ):
        self.db_path = db_path
        self.store = store or VersionStore(db_path)
        self.reviewers = reviewers or ReviewerDAO(db_path)
        self.metrics = metrics or MetricsService(StaticMetricsSource(), now_fn=now_fn)
        self.evaluator = evaluator or RegressionEvaluator()
        self.notifier = notifier or NotificationService()
        self.now_fn = now_fn
        self.privileged_roles = frozenset(privileged_roles)
        self.baseline_window_minutes = baseline_window_minutes
        self.evaluation_window_minutes = evaluation_window_minutes
        self.auto_rollback_actor = auto_rollback_actor

    # -----------------------
    # Deploy
    # -----------------------

    def deploy(self, version_id: str, deployed_by: str) -> Deployment:
        """
        Make an approved version the agent's active production version.

        Re-driving deploy for a version that is already live returns the
        existing deployment.
        """
        require_privileged(self.reviewers, deployed_by, "deploy", self.privileged_roles)

        version = self.store.get_version(version_id)
        existing = self._existing_deployment(DeploymentDAO(self.db_path), version)
        if existing is not None:
            return existing
        if version.status != VersionStatus.APPROVED:
            raise ValidationError(
                f"Only approved versions can be deployed (status: {version.status.value})",
                version_id=version_id,
                status=version.status.value,
            )

        # collaborator call stays outside the write transaction
        baseline = self.metrics.capture_baseline(version.agent_id, self.baseline_window_minutes)
        now = self.now_fn()

        try:
            with get_conn(self.db_path, immediate=True) as conn:
                deployments = DeploymentDAO(conn=conn)
                version = VersionDAO(conn=conn).get_version(version_id)
                existing = self._existing_deployment(deployments, version)
                if existing is not None:
                    return existing
                if version.status != VersionStatus.APPROVED:
                    raise Conflict(
                        f"Version changed to '{version.status.value}' before it could be deployed",
                        version_id=version_id,
                    )

                current = deployments.active_for_agent(version.agent_id)
                if current is not None:
                    deployments.set_status(current.id, current.status.transition(DeploymentStatus.SUPERSEDED))
                    self.store.update_status(current.version_id, VersionStatus.RETIRED, conn=conn)

                deployment = deployments.insert(
                    version_id=version_id,
                    agent_id=version.agent_id,
                    deployed_by=deployed_by,
                    deployed_at=now,
                    previous_deployment_id=current.id if current else None,
                    metrics_before=baseline,
                )
                self.store.update_status(version_id, VersionStatus.PRODUCTION, conn=conn, deployed_at=now)
                VersionDAO(conn=conn).set_production_pointer(version.agent_id, version_id)
        except sqlite3.IntegrityError as exc:
            raise Conflict(
                "Another deployment for this agent was created concurrently",
                agent_id=version.agent_id,
            ) from exc

        logger.info(
            "Deployed version %s of agent %s as %s (previous: %s)",
            version_id,
            version.agent_id,
            deployment.id,
            deployment.previous_deployment_id,
        )
        self.notifier.send(
            notifications.DEPLOYED,
            f"Version {version.version_number} of agent {version.agent_id} is live",
            deployment_id=deployment.id,
            version_id=version_id,
            agent_id=version.agent_id,
            deployed_by=deployed_by,
            previous_deployment_id=deployment.previous_deployment_id,
        )
        return deployment

    def _existing_deployment(self, deployments: DeploymentDAO, version) -> Optional[Deployment]:
        if version is None or version.status != VersionStatus.PRODUCTION:
            return None
        active = deployments.active_for_agent(version.agent_id)
        if active is not None and active.version_id == version.id:
            logger.info("Version %s already live as %s", version.id, active.id)
            return active
        return None

    # -----------------------
    # Regression
    # -----------------------

    def evaluate_regression(self, deployment_id: str) -> RegressionReport:
        """
        Compare post-deployment metrics with the stored baseline and persist
        the report. A critical regression on the active deployment rolls it
        back before returning; a failed rollback propagates.

        auto_rollback_triggered is written in the rollback transaction, so a
        stored report only claims a rollback that actually happened.
        """
        deployment = self.get_deployment(deployment_id)
        after = self.metrics.capture_post_deployment(deployment, self.evaluation_window_minutes)
        now = self.now_fn()
        baseline = deployment.metrics_before

        if baseline is None or baseline.sample_count == 0:
            report = RegressionReport(
                deployment_id=deployment_id,
                detected=False,
                severity=None,
                metrics=compare_metrics(after, after, self.evaluator.thresholds.min_sample_size),
                recommendations=["No baseline metrics available for comparison"],
                evaluated_at=now,
            )
            return self._store_report(report, after)

        outcome = self.evaluator.evaluate(baseline, after)
        recommendations = list(outcome.recommendations)
        auto_rollback = False
        if outcome.is_critical:
            if deployment.status != DeploymentStatus.ACTIVE:
                recommendations.append("Deployment is no longer active; automatic rollback skipped.")
            elif deployment.previous_deployment_id is None:
                recommendations.append(
                    "No earlier deployment to roll back to; manual intervention required."
                )
            else:
                auto_rollback = True

        report = self._store_report(
            RegressionReport(
                deployment_id=deployment_id,
                detected=outcome.detected,
                severity=outcome.severity,
                metrics=outcome.comparison,
                recommendations=recommendations,
                evaluated_at=now,
            ),
            after,
        )

        if report.detected:
            logger.warning(
                "Regression detected in deployment %s: %s",
                deployment_id,
                report.severity.value,
            )
            self.notifier.send(
                notifications.REGRESSION_DETECTED,
                f"Regression detected in deployment {deployment_id}: {report.severity.value} severity",
                deployment_id=deployment_id,
                severity=report.severity.value,
                success_rate_change=report.metrics.success_rate_change,
                error_rate_change=report.metrics.error_rate_change,
                efficiency_change=report.metrics.efficiency_change,
                auto_rollback_triggered=auto_rollback,
            )

        if auto_rollback:
            reason = f"Automatic rollback: {report.severity.value} regression detected"
            self.notifier.send(
                notifications.ROLLBACK,
                f"Rolling back deployment {deployment_id}",
                deployment_id=deployment_id,
                rolled_back_by=self.auto_rollback_actor,
                reason=reason,
            )
            self._rollback(deployment_id, self.auto_rollback_actor, reason, automatic=True)
            report = DeploymentDAO(self.db_path).get_report(deployment_id)
        return report

    def _store_report(self, report: RegressionReport, after) -> RegressionReport:
        with get_conn(self.db_path, immediate=True) as conn:
            deployments = DeploymentDAO(conn=conn)
            deployments.update_metrics_after(report.deployment_id, after, report.detected)
            return deployments.save_report(report)

    # -----------------------
    # Rollback
    # -----------------------

    def rollback(self, deployment_id: str, rolled_back_by: str, reason: Optional[str] = None) -> Deployment:
        """Step the agent back exactly one link and return the restored deployment."""
        require_privileged(self.reviewers, rolled_back_by, "roll back deployments", self.privileged_roles)
        return self._rollback(deployment_id, rolled_back_by, reason)

    def _rollback(
        self,
        deployment_id: str,
        rolled_back_by: str,
        reason: Optional[str],
        automatic: bool = False,
    ) -> Deployment:
        now = self.now_fn()
        try:
            with get_conn(self.db_path, immediate=True) as conn:
                deployments = DeploymentDAO(conn=conn)
                target = deployments.get(deployment_id)
                if target is None:
                    raise NotFound(f"Deployment {deployment_id} not found", deployment_id=deployment_id)
                if target.status == DeploymentStatus.ROLLED_BACK:
                    raise Conflict("Deployment is already rolled back", deployment_id=deployment_id)
                if target.status != DeploymentStatus.ACTIVE:
                    raise Conflict(
                        "Only the active deployment can be rolled back",
                        deployment_id=deployment_id,
                        status=target.status.value,
                    )
                if target.previous_deployment_id is None:
                    raise NoPriorDeployment(
                        "No earlier deployment to roll back to",
                        deployment_id=deployment_id,
                    )
                previous = deployments.get(target.previous_deployment_id)
                if previous is None or previous.status == DeploymentStatus.ROLLED_BACK:
                    raise DataIntegrityError(
                        "Deployment chain points at a deployment that cannot be restored",
                        deployment_id=deployment_id,
                        previous_deployment_id=target.previous_deployment_id,
                    )

                target.status.transition(DeploymentStatus.ROLLED_BACK)
                deployments.mark_rolled_back(
                    target.id,
                    rolled_back_by=rolled_back_by,
                    rolled_back_at=now,
                    reason=reason,
                )
                deployments.set_status(previous.id, previous.status.transition(DeploymentStatus.ACTIVE))
                self.store.update_status(target.version_id, VersionStatus.CANDIDATE, conn=conn)
                self.store.update_status(previous.version_id, VersionStatus.PRODUCTION, conn=conn)
                VersionDAO(conn=conn).set_production_pointer(target.agent_id, previous.version_id)
                if automatic:
                    deployments.flag_auto_rollback(deployment_id)
                restored = deployments.get(previous.id)
        except sqlite3.IntegrityError as exc:
            raise Conflict("Deployment chain changed during rollback", deployment_id=deployment_id) from exc

        logger.info(
            "Rolled back deployment %s for agent %s; %s active again (by %s)",
            deployment_id,
            target.agent_id,
            restored.id,
            rolled_back_by,
        )
        self.notifier.send(
            notifications.ROLLBACK_COMPLETE,
            f"Deployment {deployment_id} rolled back; version {restored.version_id} restored",
            deployment_id=deployment_id,
            restored_deployment_id=restored.id,
            rolled_back_by=rolled_back_by,
            reason=reason,
        )
        return restored

    # -----------------------
    # Reads
    # -----------------------

    def get_deployment(self, deployment_id: str) -> Deployment:
        deployment = DeploymentDAO(self.db_path).get(deployment_id)
        if deployment is None:
            raise NotFound(f"Deployment {deployment_id} not found", deployment_id=deployment_id)
        return deployment

    def get_deployment_with_report(self, deployment_id: str) -> Tuple[Deployment, Optional[RegressionReport]]:
        deployment = self.get_deployment(deployment_id)
        return deployment, DeploymentDAO(self.db_path).get_report(deployment_id)

    def get_history(self, agent_id: str, limit: int = DEPLOYMENT_HISTORY_LIMIT) -> List[Deployment]:
        """Newest first."""
        return DeploymentDAO(self.db_path).history(agent_id, limit)

    def get_current(self, agent_id: str) -> Optional[Deployment]:
        return DeploymentDAO(self.db_path).active_for_agent(agent_id)

    def is_deployed(self, version_id: str) -> bool:
        version = self.store.get_version(version_id)
        return self._existing_deployment(DeploymentDAO(self.db_path), version) is not None

    def get_rollback_chain(self, deployment_id: str) -> List[Deployment]:
        """The deployment followed by each predecessor, newest first."""
        dao = DeploymentDAO(self.db_path)
        chain: List[Deployment] = []
        seen = set()
        current = dao.get(deployment_id)
        if current is None:
            raise NotFound(f"Deployment {deployment_id} not found", deployment_id=deployment_id)
        while current is not None:
            if current.id in seen:
                raise DataIntegrityError("Cycle detected in deployment chain", deployment_id=current.id)
            seen.add(current.id)
            chain.append(current)
            if current.previous_deployment_id is None:
                break
            current = dao.get(current.previous_deployment_id)
        return chain
