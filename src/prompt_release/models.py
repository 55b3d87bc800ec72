# models.py
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field, replace, asdict
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from prompt_release.db.infra.core import safe_json_loads
from prompt_release.errors import Conflict, DataIntegrityError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_ts(value) -> Optional[datetime]:
    """Parse an ISO timestamp from the DB; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts


def format_ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


# -------------------------
# Status variants
# -------------------------

class VersionStatus(str, Enum):
    CANDIDATE = "candidate"
    APPROVED = "approved"
    PRODUCTION = "production"
    RETIRED = "retired"

    def can_become(self, target: "VersionStatus") -> bool:
        return target == self or target in _VERSION_TRANSITIONS[self]

    def transition(self, target: "VersionStatus") -> "VersionStatus":
        if not self.can_become(target):
            raise Conflict(
                f"Prompt version cannot move from '{self.value}' to '{target.value}'",
                current=self.value,
                requested=target.value,
            )
        return target


_VERSION_TRANSITIONS = {
    # approval quorum
    VersionStatus.CANDIDATE: {VersionStatus.APPROVED},
    # deploy
    VersionStatus.APPROVED: {VersionStatus.PRODUCTION},
    # superseded by a newer deployment, or rolled back
    VersionStatus.PRODUCTION: {VersionStatus.RETIRED, VersionStatus.CANDIDATE},
    # restored by rollback
    VersionStatus.RETIRED: {VersionStatus.PRODUCTION},
}


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self != ApprovalStatus.PENDING


class VoteKind(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class DeploymentStatus(str, Enum):
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    ROLLED_BACK = "rolled_back"

    def transition(self, target: "DeploymentStatus") -> "DeploymentStatus":
        if target not in _DEPLOYMENT_TRANSITIONS[self]:
            raise Conflict(
                f"Deployment cannot move from '{self.value}' to '{target.value}'",
                current=self.value,
                requested=target.value,
            )
        return target


_DEPLOYMENT_TRANSITIONS = {
    DeploymentStatus.ACTIVE: {DeploymentStatus.SUPERSEDED, DeploymentStatus.ROLLED_BACK},
    DeploymentStatus.SUPERSEDED: {DeploymentStatus.ACTIVE},
    DeploymentStatus.ROLLED_BACK: set(),
}


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# -------------------------
# Prompt content
# -------------------------

@dataclass(frozen=True)
class PromptContent:
    """
    Prompt payload of a version.
    A plain string is treated as a system prompt without tools.
    """
    system_prompt: str = ""
    tool_descriptions: Dict[str, str] = field(default_factory=dict)
    subagent_prompts: Optional[Dict[str, str]] = None

    @classmethod
    def coerce(cls, value) -> "PromptContent":
        if isinstance(value, PromptContent):
            return value
        if value is None:
            return cls()
        if isinstance(value, str):
            return cls(system_prompt=value)
        if isinstance(value, dict):
            subagents = value.get("subagent_prompts", value.get("subagentPrompts"))
            return cls(
                system_prompt=value.get("system_prompt", value.get("systemPrompt", "")) or "",
                tool_descriptions=dict(
                    value.get("tool_descriptions", value.get("toolDescriptions")) or {}
                ),
                subagent_prompts=dict(subagents) if subagents is not None else None,
            )
        raise TypeError(f"Unsupported prompt content type: {type(value).__name__}")

    def sections(self) -> List[Tuple[str, str]]:
        """Flatten into (label, text) pairs in a stable order."""
        out = [("system_prompt", self.system_prompt)]
        for name in sorted(self.tool_descriptions):
            out.append((f"tool_descriptions.{name}", self.tool_descriptions[name]))
        for name in sorted(self.subagent_prompts or {}):
            out.append((f"subagent_prompts.{name}", self.subagent_prompts[name]))
        return out

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "system_prompt": self.system_prompt,
            "tool_descriptions": dict(self.tool_descriptions),
        }
        if self.subagent_prompts is not None:
            data["subagent_prompts"] = dict(self.subagent_prompts)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)


@dataclass(frozen=True)
class FitnessSummary:
    win_rate: Optional[float] = None
    success_rate: Optional[float] = None
    avg_efficiency: Optional[float] = None
    comparison_count: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FitnessSummary":
        data = data or {}
        return cls(
            win_rate=data.get("win_rate"),
            success_rate=data.get("success_rate"),
            avg_efficiency=data.get("avg_efficiency"),
            comparison_count=int(data.get("comparison_count") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# -------------------------
# Version graph
# -------------------------

@dataclass(frozen=True)
class PromptVersion:
    id: str
    agent_id: str
    branch_id: str
    version_number: int
    content: PromptContent
    status: VersionStatus
    parent_ids: Tuple[str, ...]
    created_by: str
    created_at: datetime
    created_by_kind: str = "manual"
    mutation_type: Optional[str] = None
    mutation_details: Optional[Dict[str, Any]] = None
    fitness: Optional[FitnessSummary] = None
    deployed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "PromptVersion":
        fitness = safe_json_loads(row["fitness_json"], None)
        return cls(
            id=row["id"],
            agent_id=row["agent_id"],
            branch_id=row["branch_id"],
            version_number=row["version_number"],
            content=PromptContent.coerce(safe_json_loads(row["content_json"], {})),
            status=VersionStatus(row["status"]),
            parent_ids=tuple(safe_json_loads(row["parent_ids_json"], [])),
            created_by=row["created_by"],
            created_at=parse_ts(row["created_at"]),
            created_by_kind=row["created_by_kind"],
            mutation_type=row["mutation_type"],
            mutation_details=safe_json_loads(row["mutation_details_json"], None),
            fitness=FitnessSummary.from_dict(fitness) if fitness is not None else None,
            deployed_at=parse_ts(row["deployed_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "branch_id": self.branch_id,
            "version_number": self.version_number,
            "content": self.content.to_dict(),
            "status": self.status.value,
            "parent_ids": list(self.parent_ids),
            "created_by": self.created_by,
            "created_by_kind": self.created_by_kind,
            "created_at": format_ts(self.created_at),
            "mutation_type": self.mutation_type,
            "mutation_details": self.mutation_details,
            "fitness": self.fitness.to_dict() if self.fitness else None,
            "deployed_at": format_ts(self.deployed_at),
        }


@dataclass(frozen=True)
class Branch:
    id: str
    agent_id: str
    name: str
    created_at: datetime
    is_main: bool = False
    base_version_id: Optional[str] = None
    parent_branch_id: Optional[str] = None
    merged: bool = False
    merged_at: Optional[datetime] = None
    merged_into_branch_id: Optional[str] = None
    deleted_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Branch":
        return cls(
            id=row["id"],
            agent_id=row["agent_id"],
            name=row["name"],
            created_at=parse_ts(row["created_at"]),
            is_main=bool(row["is_main"]),
            base_version_id=row["base_version_id"],
            parent_branch_id=row["parent_branch_id"],
            merged=bool(row["merged"]),
            merged_at=parse_ts(row["merged_at"]),
            merged_into_branch_id=row["merged_into_branch_id"],
            deleted_at=parse_ts(row["deleted_at"]),
        )


@dataclass(frozen=True)
class LineageNode:
    """A version reached during a lineage walk, tagged with its hop distance."""
    version: PromptVersion
    distance: int
    relation: str  # "ancestor" | "self" | "descendant"


@dataclass(frozen=True)
class MergeAnalysis:
    can_merge: bool
    fast_forward: bool
    conflicts: List[str]
    source_head: Optional[PromptVersion]
    target_head: Optional[PromptVersion]
    common_ancestor: Optional[PromptVersion]
    reason: str = ""


@dataclass(frozen=True)
class Reviewer:
    id: str
    email: str
    name: str
    role: str
    created_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Reviewer":
        return cls(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            role=row["role"],
            created_at=parse_ts(row["created_at"]),
            last_active_at=parse_ts(row["last_active_at"]),
        )


# -------------------------
# Approval workflow
# -------------------------

@dataclass(frozen=True)
class ApprovalRequest:
    id: str
    version_id: str
    agent_id: str
    requested_by: str
    requested_at: datetime
    required_approvals: int
    current_approvals: int
    status: ApprovalStatus
    expires_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "ApprovalRequest":
        request = cls(
            id=row["id"],
            version_id=row["version_id"],
            agent_id=row["agent_id"],
            requested_by=row["requested_by"],
            requested_at=parse_ts(row["requested_at"]),
            required_approvals=row["required_approvals"],
            current_approvals=row["current_approvals"],
            status=ApprovalStatus(row["status"]),
            expires_at=parse_ts(row["expires_at"]),
        )
        if request.current_approvals < 0 or request.current_approvals > request.required_approvals:
            raise DataIntegrityError(
                f"Approval request {request.id} has an invalid approval counter",
                current_approvals=request.current_approvals,
                required_approvals=request.required_approvals,
            )
        return request

    def is_expired(self, now: datetime) -> bool:
        return (
            self.status == ApprovalStatus.PENDING
            and self.expires_at is not None
            and now > self.expires_at
        )

    def effective(self, now: datetime) -> "ApprovalRequest":
        """The request as every read path must see it: past-expiry pending reads as expired."""
        if self.is_expired(now):
            return replace(self, status=ApprovalStatus.EXPIRED)
        return self

    # Transition functions. Each returns the next variant or raises.

    def _require_pending(self, action: str) -> None:
        if self.status != ApprovalStatus.PENDING:
            raise Conflict(
                f"Cannot {action}: request is {self.status.value}",
                status=self.status.value,
            )

    def with_approval(self) -> "ApprovalRequest":
        self._require_pending("approve")
        if self.current_approvals >= self.required_approvals:
            raise DataIntegrityError(
                f"Approval request {self.id} is pending with a full quorum"
            )
        count = self.current_approvals + 1
        status = (
            ApprovalStatus.APPROVED if count >= self.required_approvals else ApprovalStatus.PENDING
        )
        return replace(self, current_approvals=count, status=status)

    def with_rejection(self) -> "ApprovalRequest":
        self._require_pending("reject")
        return replace(self, status=ApprovalStatus.REJECTED)

    def with_expiry(self) -> "ApprovalRequest":
        self._require_pending("expire")
        return replace(self, status=ApprovalStatus.EXPIRED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "version_id": self.version_id,
            "agent_id": self.agent_id,
            "requested_by": self.requested_by,
            "requested_at": format_ts(self.requested_at),
            "required_approvals": self.required_approvals,
            "current_approvals": self.current_approvals,
            "status": self.status.value,
            "expires_at": format_ts(self.expires_at),
        }


@dataclass(frozen=True)
class ApprovalVote:
    id: str
    approval_request_id: str
    approver_id: str
    vote: VoteKind
    reason: Optional[str]
    voted_at: datetime

    @classmethod
    def from_row(cls, row) -> "ApprovalVote":
        return cls(
            id=row["id"],
            approval_request_id=row["approval_request_id"],
            approver_id=row["approver_id"],
            vote=VoteKind(row["vote"]),
            reason=row["reason"],
            voted_at=parse_ts(row["voted_at"]),
        )


@dataclass(frozen=True)
class ApprovalStatusView:
    request: ApprovalRequest
    votes: List[ApprovalVote]
    can_deploy: bool


# -------------------------
# Metrics & deployments
# -------------------------

@dataclass(frozen=True)
class MetricsSnapshot:
    """Aggregate agent performance over a time window."""
    success_rate: float = 0.0
    error_rate: float = 0.0
    avg_steps: float = 0.0
    avg_duration_ms: float = 0.0
    avg_efficiency: float = 0.0
    sample_count: int = 0
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["MetricsSnapshot"]:
        if data is None:
            return None
        return cls(
            success_rate=float(data.get("success_rate") or 0.0),
            error_rate=float(data.get("error_rate") or 0.0),
            avg_steps=float(data.get("avg_steps") or 0.0),
            avg_duration_ms=float(data.get("avg_duration_ms") or 0.0),
            avg_efficiency=float(data.get("avg_efficiency") or 0.0),
            sample_count=int(data.get("sample_count") or 0),
            window_start=parse_ts(data.get("window_start")),
            window_end=parse_ts(data.get("window_end")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success_rate": self.success_rate,
            "error_rate": self.error_rate,
            "avg_steps": self.avg_steps,
            "avg_duration_ms": self.avg_duration_ms,
            "avg_efficiency": self.avg_efficiency,
            "sample_count": self.sample_count,
            "window_start": format_ts(self.window_start),
            "window_end": format_ts(self.window_end),
        }


@dataclass(frozen=True)
class MetricsComparison:
    baseline: MetricsSnapshot
    current: MetricsSnapshot
    success_rate_change: float
    efficiency_change: float
    error_rate_change: float
    sample_size_sufficient: bool
    statistically_significant: bool

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricsComparison":
        return cls(
            baseline=MetricsSnapshot.from_dict(data.get("baseline") or {}),
            current=MetricsSnapshot.from_dict(data.get("current") or {}),
            success_rate_change=float(data.get("success_rate_change") or 0.0),
            efficiency_change=float(data.get("efficiency_change") or 0.0),
            error_rate_change=float(data.get("error_rate_change") or 0.0),
            sample_size_sufficient=bool(data.get("sample_size_sufficient")),
            statistically_significant=bool(data.get("statistically_significant")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "baseline": self.baseline.to_dict(),
            "current": self.current.to_dict(),
            "success_rate_change": self.success_rate_change,
            "efficiency_change": self.efficiency_change,
            "error_rate_change": self.error_rate_change,
            "sample_size_sufficient": self.sample_size_sufficient,
            "statistically_significant": self.statistically_significant,
        }


@dataclass(frozen=True)
class Deployment:
    id: str
    version_id: str
    agent_id: str
    deployed_by: str
    deployed_at: datetime
    status: DeploymentStatus
    previous_deployment_id: Optional[str] = None
    metrics_before: Optional[MetricsSnapshot] = None
    metrics_after: Optional[MetricsSnapshot] = None
    regression_detected: bool = False
    rolled_back_at: Optional[datetime] = None
    rolled_back_by: Optional[str] = None
    rollback_reason: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Deployment":
        return cls(
            id=row["id"],
            version_id=row["version_id"],
            agent_id=row["agent_id"],
            deployed_by=row["deployed_by"],
            deployed_at=parse_ts(row["deployed_at"]),
            status=DeploymentStatus(row["status"]),
            previous_deployment_id=row["previous_deployment_id"],
            metrics_before=MetricsSnapshot.from_dict(safe_json_loads(row["metrics_before_json"], None)),
            metrics_after=MetricsSnapshot.from_dict(safe_json_loads(row["metrics_after_json"], None)),
            regression_detected=bool(row["regression_detected"]),
            rolled_back_at=parse_ts(row["rolled_back_at"]),
            rolled_back_by=row["rolled_back_by"],
            rollback_reason=row["rollback_reason"],
        )


@dataclass(frozen=True)
class RegressionReport:
    deployment_id: str
    detected: bool
    severity: Optional[Severity]
    metrics: MetricsComparison
    recommendations: List[str]
    evaluated_at: datetime
    auto_rollback_triggered: bool = False
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "deployment_id": self.deployment_id,
            "detected": self.detected,
            "severity": self.severity.value if self.severity else None,
            "metrics": self.metrics.to_dict(),
            "recommendations": list(self.recommendations),
            "evaluated_at": format_ts(self.evaluated_at),
            "auto_rollback_triggered": self.auto_rollback_triggered,
        }
