# src/prompt_release/db/services.py
import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from prompt_release.db.infra.core import get_conn
from prompt_release.db.versions import VersionDAO, version_dao
from prompt_release.errors import Conflict, NotFound, ValidationError
from prompt_release.models import (
    Branch,
    FitnessSummary,
    PromptContent,
    PromptVersion,
    VersionStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

MAIN_BRANCH_NAME = "main"


# -----------------------
# Version Store
# -----------------------
class VersionStore:
    """
    Repository of prompt versions, branches and their parent edges.

    update_status is the only writer of a version's status. The approval
    workflow and the deployment pipeline call it with their own open
    connection so the status flip lands in the same transaction as the
    request or deployment change that caused it.
    """

    def __init__(self, db_path: str, now_fn: Callable[[], datetime] = utcnow):
        self.db_path = db_path
        self.now_fn = now_fn

    # -----------------------
    # Branches
    # -----------------------

    def get_main_branch(self, agent_id: str) -> Branch:
        """Return the agent's main branch, creating agent and branch on first use."""
        with version_dao(self.db_path, immediate=True) as dao:
            return self._main_branch(dao, agent_id)

    def _main_branch(self, dao: VersionDAO, agent_id: str) -> Branch:
        branch = dao.get_main_branch(agent_id)
        if branch is None:
            dao.ensure_agent(agent_id)
            branch = dao.create_branch(agent_id, MAIN_BRANCH_NAME, is_main=True)
        return branch

    def create_branch(
        self,
        agent_id: str,
        name: str,
        base_version_id: Optional[str] = None,
        parent_branch_id: Optional[str] = None,
    ) -> Branch:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Branch name is required")

        try:
            with version_dao(self.db_path, immediate=True) as dao:
                self._main_branch(dao, agent_id)
                if base_version_id is not None:
                    base = dao.get_version(base_version_id)
                    if base is None:
                        raise NotFound(f"Base version {base_version_id} not found", version_id=base_version_id)
                    if base.agent_id != agent_id:
                        raise ValidationError(
                            "Base version belongs to another agent",
                            version_id=base_version_id,
                            agent_id=agent_id,
                        )
                if parent_branch_id is not None:
                    parent = dao.get_branch(parent_branch_id)
                    if parent is None or parent.agent_id != agent_id:
                        raise NotFound(f"Parent branch {parent_branch_id} not found", branch_id=parent_branch_id)
                return dao.create_branch(
                    agent_id,
                    name,
                    base_version_id=base_version_id,
                    parent_branch_id=parent_branch_id,
                )
        except sqlite3.IntegrityError as exc:
            raise Conflict(f"Branch '{name}' already exists for agent {agent_id}", name=name) from exc

    def get_branch(self, branch_id: str) -> Branch:
        branch = VersionDAO(self.db_path).get_branch(branch_id)
        if branch is None:
            raise NotFound(f"Branch {branch_id} not found", branch_id=branch_id)
        return branch

    def list_branches(self, agent_id: str, include_deleted: bool = False) -> List[Branch]:
        return VersionDAO(self.db_path).list_branches(agent_id, include_deleted=include_deleted)

    def delete_branch(self, branch_id: str) -> None:
        """
        Soft-delete a branch that nothing in flight depends on.

        A pending request past its expiry no longer blocks the delete.
        """
        now = self.now_fn()
        with version_dao(self.db_path, immediate=True) as dao:
            branch = dao.get_branch(branch_id)
            if branch is None or branch.deleted_at is not None:
                raise NotFound(f"Branch {branch_id} not found", branch_id=branch_id)
            if branch.is_main:
                raise Conflict("The main branch cannot be deleted", branch_id=branch_id)
            if not branch.merged:
                blockers = dao.count_branch_blockers(branch_id, now)
                if blockers:
                    raise Conflict(
                        f"Branch '{branch.name}' has {blockers} unmerged version(s) "
                        "with a pending approval or an active deployment",
                        branch_id=branch_id,
                        blocking_versions=blockers,
                    )
            dao.soft_delete_branch(branch_id, now)

    def get_branch_stats(self, branch_id: str) -> Dict[str, Any]:
        branch = self.get_branch(branch_id)
        stats = VersionDAO(self.db_path).branch_stats(branch.id)
        stats["branch_id"] = branch.id
        stats["name"] = branch.name
        return stats

    # -----------------------
    # Versions
    # -----------------------

    def create_version(
        self,
        agent_id: str,
        branch_id: Optional[str],
        content,
        parent_ids: Optional[Sequence[str]] = None,
        created_by: str = "system",
        *,
        created_by_kind: str = "manual",
        mutation_type: Optional[str] = None,
        mutation_details: Optional[dict] = None,
    ) -> PromptVersion:
        """
        Create the next version on a branch.

        parent_ids=None means "continue the branch": the branch head, or the
        branch's base version when the branch is still empty. An explicit empty
        list creates a root version.
        """
        if not agent_id:
            raise ValidationError("agent_id is required")
        if not created_by:
            raise ValidationError("created_by is required")
        if created_by_kind not in ("manual", "evolution"):
            raise ValidationError(f"Unknown creator kind '{created_by_kind}'", created_by_kind=created_by_kind)
        try:
            prompt = PromptContent.coerce(content)
        except TypeError as exc:
            raise ValidationError(str(exc)) from exc

        try:
            with version_dao(self.db_path, immediate=True) as dao:
                return self._create_version(
                    dao,
                    agent_id,
                    branch_id,
                    prompt,
                    parent_ids,
                    created_by,
                    created_by_kind=created_by_kind,
                    mutation_type=mutation_type,
                    mutation_details=mutation_details,
                )
        except sqlite3.IntegrityError as exc:
            raise Conflict(f"Could not create version on branch {branch_id}: {exc}") from exc

    def _create_version(
        self,
        dao: VersionDAO,
        agent_id: str,
        branch_id: Optional[str],
        prompt: PromptContent,
        parent_ids: Optional[Sequence[str]],
        created_by: str,
        **extra,
    ) -> PromptVersion:
        if branch_id is None:
            branch = self._main_branch(dao, agent_id)
        else:
            branch = dao.get_branch(branch_id)
            if branch is None:
                raise ValidationError(f"Unknown branch {branch_id}", branch_id=branch_id)
        if branch.agent_id != agent_id:
            raise ValidationError(
                "Branch belongs to another agent",
                branch_id=branch.id,
                agent_id=agent_id,
            )
        if branch.deleted_at is not None:
            raise ValidationError(f"Branch '{branch.name}' is deleted", branch_id=branch.id)

        if parent_ids is None:
            head = dao.latest_version(branch.id)
            if head is not None:
                parent_ids = [head.id]
            elif branch.base_version_id:
                parent_ids = [branch.base_version_id]
            else:
                parent_ids = []

        # order-preserving dedupe
        parents = list(dict.fromkeys(parent_ids))
        found = dao.get_versions(parents)
        for parent_id in parents:
            parent = found.get(parent_id)
            if parent is None:
                raise ValidationError(f"Parent version {parent_id} does not exist", parent_id=parent_id)
            if parent.agent_id != agent_id:
                raise ValidationError(
                    f"Parent version {parent_id} belongs to another agent",
                    parent_id=parent_id,
                    agent_id=agent_id,
                )

        dao.ensure_agent(agent_id)
        number = dao.next_version_number(branch.id)
        return dao.insert_version(
            agent_id=agent_id,
            branch_id=branch.id,
            version_number=number,
            content=prompt,
            parent_ids=parents,
            created_by=created_by,
            **extra,
        )

    def list_versions(self, branch_id: str, status: Optional[str] = None) -> List[PromptVersion]:
        if status is not None:
            try:
                status = VersionStatus(status).value
            except ValueError as exc:
                raise ValidationError(f"Unknown version status '{status}'", status=status) from exc
        return VersionDAO(self.db_path).list_versions(branch_id, status)

    def get_version(self, version_id: str) -> PromptVersion:
        version = VersionDAO(self.db_path).get_version(version_id)
        if version is None:
            raise NotFound(f"Prompt version {version_id} not found", version_id=version_id)
        return version

    def get_latest_version(self, branch_id: str) -> Optional[PromptVersion]:
        return VersionDAO(self.db_path).latest_version(branch_id)

    def get_production_version(self, agent_id: str) -> Optional[PromptVersion]:
        dao = VersionDAO(self.db_path)
        agent = dao.get_agent(agent_id)
        if not agent or not agent["current_production_version_id"]:
            return None
        return dao.get_version(agent["current_production_version_id"])

    def update_fitness(self, version_id: str, fitness) -> PromptVersion:
        if isinstance(fitness, dict):
            fitness = FitnessSummary.from_dict(fitness)
        with version_dao(self.db_path) as dao:
            if dao.get_version(version_id) is None:
                raise NotFound(f"Prompt version {version_id} not found", version_id=version_id)
            dao.update_fitness(version_id, fitness)
            return dao.get_version(version_id)

    def update_status(
        self,
        version_id: str,
        new_status: VersionStatus,
        *,
        conn: Optional[sqlite3.Connection] = None,
        deployed_at=None,
    ) -> PromptVersion:
        """
        Move a version to new_status if its lifecycle allows it.

        Pass conn to join the caller's transaction.
        """
        new_status = VersionStatus(new_status)
        if conn is not None:
            return self._update_status(VersionDAO(conn=conn), version_id, new_status, deployed_at)
        with get_conn(self.db_path, immediate=True) as own_conn:
            return self._update_status(VersionDAO(conn=own_conn), version_id, new_status, deployed_at)

    def _update_status(
        self,
        dao: VersionDAO,
        version_id: str,
        new_status: VersionStatus,
        deployed_at,
    ) -> PromptVersion:
        version = dao.get_version(version_id)
        if version is None:
            raise NotFound(f"Prompt version {version_id} not found", version_id=version_id)
        version.status.transition(new_status)
        if version.status != new_status:
            logger.info(
                "Version %s: %s -> %s",
                version_id,
                version.status.value,
                new_status.value,
            )
        dao.update_status(version_id, new_status, deployed_at=deployed_at)
        return dao.get_version(version_id)
