# src/prompt_release/metrics.py
"""
Metrics collaborator adapter.

Raw aggregation over trajectories lives outside this package. A
MetricsSource answers two windowed queries (by agent, by version) and
MetricsService turns them into the snapshots the deployment pipeline stores.
"""
from __future__ import annotations

import logging
import math
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol

from prompt_release.config import REGRESSION_THRESHOLDS
from prompt_release.models import Deployment, MetricsComparison, MetricsSnapshot, utcnow

logger = logging.getLogger(__name__)

# both samples need at least this many trajectories for the z-test
SIGNIFICANCE_MIN_SAMPLES = 30
Z_95 = 1.96

_Z_SCORES = {0.90: 1.645, 0.95: 1.96, 0.99: 2.576}


class MetricsSource(Protocol):
    def agent_window(self, agent_id: str, start: datetime, end: datetime) -> MetricsSnapshot:
        ...

    def version_window(self, version_id: str, start: datetime, end: datetime) -> MetricsSnapshot:
        ...


class StaticMetricsSource:
    """
    In-memory MetricsSource returning fixed snapshots per agent / version.

    Unknown keys yield an empty snapshot (sample_count 0). Window bounds of
    the returned snapshot are always the requested ones.
    """

    def __init__(
        self,
        agents: Optional[Dict[str, MetricsSnapshot]] = None,
        versions: Optional[Dict[str, MetricsSnapshot]] = None,
    ):
        self.agents: Dict[str, MetricsSnapshot] = dict(agents or {})
        self.versions: Dict[str, MetricsSnapshot] = dict(versions or {})
        self.calls: List[tuple] = []

    def set_agent(self, agent_id: str, snapshot: MetricsSnapshot) -> None:
        self.agents[agent_id] = snapshot

    def set_version(self, version_id: str, snapshot: MetricsSnapshot) -> None:
        self.versions[version_id] = snapshot

    def agent_window(self, agent_id: str, start: datetime, end: datetime) -> MetricsSnapshot:
        self.calls.append(("agent", agent_id, start, end))
        snapshot = self.agents.get(agent_id, MetricsSnapshot())
        return replace(snapshot, window_start=start, window_end=end)

    def version_window(self, version_id: str, start: datetime, end: datetime) -> MetricsSnapshot:
        self.calls.append(("version", version_id, start, end))
        snapshot = self.versions.get(version_id, MetricsSnapshot())
        return replace(snapshot, window_start=start, window_end=end)


# -------------------------
# Pure helpers
# -------------------------

def relative_change(before: float, after: float, unbounded_from_zero: bool = False) -> float:
    """
    (after - before) / before.

    From a zero base any increase counts as 1, or as infinity with
    unbounded_from_zero (error rates: any error after none is worse than doubling).
    """
    if before > 0:
        return (after - before) / before
    if after > 0:
        return math.inf if unbounded_from_zero else 1.0
    return 0.0


def is_statistically_significant(before: MetricsSnapshot, after: MetricsSnapshot) -> bool:
    """Two-proportion z-test on success rate at 95% confidence."""
    n1, n2 = before.sample_count, after.sample_count
    if n1 < SIGNIFICANCE_MIN_SAMPLES or n2 < SIGNIFICANCE_MIN_SAMPLES:
        return False
    p1, p2 = before.success_rate, after.success_rate
    pooled = (p1 * n1 + p2 * n2) / (n1 + n2)
    se = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))
    if se == 0:
        return False
    return abs(p1 - p2) / se > Z_95


def compare_metrics(
    before: MetricsSnapshot,
    after: MetricsSnapshot,
    min_sample_size: int = REGRESSION_THRESHOLDS["min_sample_size"],
) -> MetricsComparison:
    return MetricsComparison(
        baseline=before,
        current=after,
        success_rate_change=relative_change(before.success_rate, after.success_rate),
        efficiency_change=relative_change(before.avg_efficiency, after.avg_efficiency),
        error_rate_change=relative_change(before.error_rate, after.error_rate, unbounded_from_zero=True),
        sample_size_sufficient=after.sample_count >= min_sample_size,
        statistically_significant=is_statistically_significant(before, after),
    )


def aggregate_metrics(snapshots: List[MetricsSnapshot]) -> MetricsSnapshot:
    """Sample-weighted average of several windows."""
    if not snapshots:
        now = utcnow()
        return MetricsSnapshot(window_start=now, window_end=now)

    start = snapshots[0].window_start
    end = snapshots[-1].window_end
    total = sum(s.sample_count for s in snapshots)
    if total == 0:
        return MetricsSnapshot(window_start=start, window_end=end)

    def weighted(attr: str) -> float:
        return sum(getattr(s, attr) * s.sample_count for s in snapshots) / total

    return MetricsSnapshot(
        success_rate=weighted("success_rate"),
        error_rate=weighted("error_rate"),
        avg_steps=weighted("avg_steps"),
        avg_duration_ms=weighted("avg_duration_ms"),
        avg_efficiency=weighted("avg_efficiency"),
        sample_count=total,
        window_start=start,
        window_end=end,
    )


def confidence_interval(snapshot: MetricsSnapshot, level: float = 0.95) -> Dict[str, float]:
    """Normal-approximation interval for the success rate, clamped to [0, 1]."""
    n = snapshot.sample_count
    if n == 0:
        return {"lower": 0.0, "upper": 0.0}
    z = _Z_SCORES.get(level, _Z_SCORES[0.90])
    p = snapshot.success_rate
    margin = z * math.sqrt(p * (1 - p) / n)
    return {"lower": max(0.0, p - margin), "upper": min(1.0, p + margin)}


# -------------------------
# Service
# -------------------------

class MetricsService:
    def __init__(
        self,
        source: MetricsSource,
        min_sample_size: int = REGRESSION_THRESHOLDS["min_sample_size"],
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.source = source
        self.min_sample_size = min_sample_size
        self.now_fn = now_fn

    def capture_baseline(self, agent_id: str, window_minutes: int) -> MetricsSnapshot:
        """Agent-wide snapshot over the trailing window ending now."""
        end = self.now_fn()
        start = end - timedelta(minutes=window_minutes)
        logger.debug("Capturing baseline for agent %s over %s minutes", agent_id, window_minutes)
        return self.source.agent_window(agent_id, start, end)

    def capture_post_deployment(self, deployment: Deployment, window_minutes: int) -> MetricsSnapshot:
        """Snapshot of the deployed version over the window starting at deployment time."""
        start = deployment.deployed_at
        end = start + timedelta(minutes=window_minutes)
        logger.debug("Capturing post-deployment metrics for %s", deployment.id)
        return self.source.version_window(deployment.version_id, start, end)

    def get_current_metrics(self, deployment: Deployment) -> MetricsSnapshot:
        return self.source.version_window(deployment.version_id, deployment.deployed_at, self.now_fn())

    def compare_metrics(self, before: MetricsSnapshot, after: MetricsSnapshot) -> MetricsComparison:
        return compare_metrics(before, after, self.min_sample_size)

    aggregate_metrics = staticmethod(aggregate_metrics)
    confidence_interval = staticmethod(confidence_interval)
