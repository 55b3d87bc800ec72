# src/prompt_release/approval.py
"""
Quorum approval of prompt versions.

Request lifecycle: pending -> approved | rejected | expired (all terminal).
Every vote runs inside one BEGIN IMMEDIATE transaction, so reading the
counter, appending the vote, bumping the counter and flipping the version
to approved cannot interleave with a concurrent vote.

Expiry is lazy. A pending request past its expires_at is marked expired the
next time a vote or a new request touches it; read paths report it as
expired without writing.
"""
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from prompt_release.config import DEFAULT_REQUIRED_APPROVALS, PRIVILEGED_ROLES
from prompt_release.db.approvals import ApprovalDAO
from prompt_release.db.infra.core import get_conn
from prompt_release.db.reviewers import ReviewerDAO
from prompt_release.db.services import VersionStore
from prompt_release.db.versions import VersionDAO
from prompt_release.errors import (
    Conflict,
    Expired,
    Forbidden,
    NotFound,
    ValidationError,
)
from prompt_release.models import (
    ApprovalRequest,
    ApprovalStatus,
    ApprovalStatusView,
    ApprovalVote,
    Reviewer,
    VersionStatus,
    VoteKind,
    utcnow,
)
from prompt_release import notifications
from prompt_release.notifications import NotificationService

logger = logging.getLogger(__name__)


def require_privileged(reviewers: ReviewerDAO, reviewer_id: str, action: str,
                       privileged_roles: Iterable[str] = PRIVILEGED_ROLES) -> Reviewer:
    """Look up reviewer_id and fail with Forbidden unless its role may perform action."""
    reviewer = reviewers.get(reviewer_id) if reviewer_id else None
    if reviewer is None:
        raise Forbidden(f"Unknown reviewer '{reviewer_id}' may not {action}", reviewer_id=reviewer_id)
    if reviewer.role not in privileged_roles:
        raise Forbidden(
            f"Reviewer '{reviewer.email}' with role '{reviewer.role}' may not {action}",
            reviewer_id=reviewer_id,
            role=reviewer.role,
        )
    return reviewer


class ApprovalWorkflow:
    def __init__(
        self,
        db_path: str,
        store: Optional[VersionStore] = None,
        reviewers: Optional[ReviewerDAO] = None,
        notifier: Optional[NotificationService] = None,
        now_fn: Callable[[], datetime] = utcnow,
        privileged_roles: Iterable[str] = PRIVILEGED_ROLES,
    ):
        self.db_path = db_path
        self.store = store or VersionStore(db_path)
        self.reviewers = reviewers or ReviewerDAO(db_path)
        self.notifier = notifier or NotificationService()
        self.now_fn = now_fn
        self.privileged_roles = frozenset(privileged_roles)

    # -----------------------
    # Requests
    # -----------------------

    def request_approval(
        self,
        version_id: str,
        requested_by: str,
        required_approvals: int = DEFAULT_REQUIRED_APPROVALS,
        expires_in_hours: Optional[float] = None,
    ) -> ApprovalRequest:
        if not requested_by:
            raise ValidationError("requested_by is required")
        if not isinstance(required_approvals, int) or required_approvals < 1:
            raise ValidationError(
                "required_approvals must be an integer >= 1",
                required_approvals=required_approvals,
            )
        if expires_in_hours is not None and expires_in_hours <= 0:
            raise ValidationError("expires_in_hours must be positive", expires_in_hours=expires_in_hours)

        now = self.now_fn()
        expires_at = now + timedelta(hours=expires_in_hours) if expires_in_hours is not None else None

        try:
            with get_conn(self.db_path, immediate=True) as conn:
                approvals = ApprovalDAO(conn=conn)
                version = VersionDAO(conn=conn).get_version(version_id)
                if version is None:
                    raise NotFound(f"Prompt version {version_id} not found", version_id=version_id)
                if version.status != VersionStatus.CANDIDATE:
                    raise Conflict(
                        f"Only candidate versions can be submitted for approval (status: {version.status.value})",
                        version_id=version_id,
                        status=version.status.value,
                    )

                existing = approvals.latest_request(version_id)
                if existing is not None and existing.status == ApprovalStatus.PENDING:
                    if existing.is_expired(now):
                        approvals.mark_expired(existing)
                    else:
                        raise Conflict(
                            "An approval request is already pending for this version",
                            version_id=version_id,
                            approval_request_id=existing.id,
                        )

                request = approvals.create_request(
                    version_id=version_id,
                    agent_id=version.agent_id,
                    requested_by=requested_by,
                    required_approvals=required_approvals,
                    requested_at=now,
                    expires_at=expires_at,
                )
        except sqlite3.IntegrityError as exc:
            raise Conflict("An approval request is already pending for this version", version_id=version_id) from exc

        self.notifier.send(
            notifications.APPROVAL_NEEDED,
            f"Version {version.version_number} of agent {version.agent_id} needs "
            f"{required_approvals} approval(s)",
            version_id=version_id,
            agent_id=version.agent_id,
            requested_by=requested_by,
            required_approvals=required_approvals,
            expires_at=request.expires_at.isoformat() if request.expires_at else None,
        )
        return request

    # -----------------------
    # Votes
    # -----------------------

    def cast_approve_vote(self, version_id: str, approver_id: str, reason: Optional[str] = None) -> ApprovalStatusView:
        view = self._vote(version_id, approver_id, VoteKind.APPROVE, reason)
        request = view.request
        self.notifier.send(
            notifications.APPROVAL_RECEIVED,
            f"Approval {request.current_approvals}/{request.required_approvals} "
            f"received for version {version_id}",
            version_id=version_id,
            approver_id=approver_id,
            status=request.status.value,
        )
        return view

    def cast_reject_vote(self, version_id: str, approver_id: str, reason: str) -> ApprovalStatusView:
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to reject a version", version_id=version_id)
        view = self._vote(version_id, approver_id, VoteKind.REJECT, reason.strip())
        self.notifier.send(
            notifications.APPROVAL_REJECTED,
            f"Version {version_id} was rejected: {reason.strip()}",
            version_id=version_id,
            approver_id=approver_id,
        )
        return view

    def _vote(self, version_id: str, approver_id: str, vote: VoteKind, reason: Optional[str]) -> ApprovalStatusView:
        action = "approve versions" if vote == VoteKind.APPROVE else "reject versions"
        require_privileged(self.reviewers, approver_id, action, self.privileged_roles)

        now = self.now_fn()
        expired: Optional[ApprovalRequest] = None

        try:
            with get_conn(self.db_path, immediate=True) as conn:
                approvals = ApprovalDAO(conn=conn)
                if VersionDAO(conn=conn).get_version(version_id) is None:
                    raise NotFound(f"Prompt version {version_id} not found", version_id=version_id)

                request = approvals.latest_request(version_id)
                if request is None:
                    raise NotFound("No approval request exists for this version", version_id=version_id)

                if request.is_expired(now):
                    # commit the expiry before failing the vote
                    approvals.mark_expired(request)
                    expired = request
                else:
                    self._apply_vote(conn, approvals, request, approver_id, vote, reason, now)
        except sqlite3.IntegrityError as exc:
            raise Conflict(
                "Reviewer has already voted on this request",
                version_id=version_id,
                approver_id=approver_id,
            ) from exc

        if expired is not None:
            logger.info("Vote by %s on expired request %s refused", approver_id, expired.id)
            raise Expired(
                "Approval request has expired",
                expires_at=expired.expires_at,
                version_id=version_id,
                approval_request_id=expired.id,
            )
        return self.get_approval_status(version_id)

    def _apply_vote(
        self,
        conn,
        approvals: ApprovalDAO,
        request: ApprovalRequest,
        approver_id: str,
        vote: VoteKind,
        reason: Optional[str],
        now: datetime,
    ) -> ApprovalRequest:
        if request.status == ApprovalStatus.EXPIRED:
            raise Expired(
                "Approval request has expired",
                expires_at=request.expires_at,
                version_id=request.version_id,
                approval_request_id=request.id,
            )
        if request.status != ApprovalStatus.PENDING:
            raise Conflict(
                f"Approval request is already {request.status.value}",
                version_id=request.version_id,
                status=request.status.value,
            )
        if approvals.has_voted(request.id, approver_id):
            raise Conflict(
                "Reviewer has already voted on this request",
                version_id=request.version_id,
                approver_id=approver_id,
            )

        if vote == VoteKind.APPROVE:
            updated = request.with_approval()
        else:
            updated = request.with_rejection()

        approvals.insert_vote(
            request_id=request.id,
            approver_id=approver_id,
            vote=vote,
            reason=reason,
            voted_at=now,
        )
        if not approvals.compare_and_set(request, updated):
            raise Conflict(
                "Approval request changed while voting; retry the vote",
                approval_request_id=request.id,
            )

        if updated.status == ApprovalStatus.APPROVED:
            self.store.update_status(request.version_id, VersionStatus.APPROVED, conn=conn)
            logger.info(
                "Approval request %s reached quorum %s; version %s approved",
                request.id,
                updated.required_approvals,
                request.version_id,
            )
        elif updated.status == ApprovalStatus.REJECTED:
            self.store.update_status(request.version_id, VersionStatus.CANDIDATE, conn=conn)
            logger.info("Approval request %s rejected by %s", request.id, approver_id)
        else:
            logger.info(
                "Approval request %s at %s/%s",
                request.id,
                updated.current_approvals,
                updated.required_approvals,
            )
        return updated

    # -----------------------
    # Reads
    # -----------------------

    def get_approval_status(self, version_id: str) -> ApprovalStatusView:
        """Latest request for the version, its votes in order and whether it can ship."""
        with get_conn(self.db_path) as conn:
            version = VersionDAO(conn=conn).get_version(version_id)
            if version is None:
                raise NotFound(f"Prompt version {version_id} not found", version_id=version_id)
            approvals = ApprovalDAO(conn=conn)
            request = approvals.latest_request(version_id)
            if request is None:
                raise NotFound("No approval request exists for this version", version_id=version_id)
            votes = approvals.list_votes(request.id)

        request = request.effective(self.now_fn())
        can_deploy = request.status == ApprovalStatus.APPROVED and version.status == VersionStatus.APPROVED
        return ApprovalStatusView(request=request, votes=votes, can_deploy=can_deploy)

    def get_votes(self, version_id: str) -> List[ApprovalVote]:
        return self.get_approval_status(version_id).votes

    def can_deploy(self, version_id: str) -> bool:
        try:
            return self.get_approval_status(version_id).can_deploy
        except NotFound:
            return False

    def list_pending_approvals(self, agent_id: Optional[str] = None) -> List[ApprovalRequest]:
        now = self.now_fn()
        return [r for r in ApprovalDAO(self.db_path).list_pending(agent_id) if not r.is_expired(now)]
