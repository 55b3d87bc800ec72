# tests/test_metrics.py
import math
from datetime import timedelta

import pytest

from prompt_release.metrics import (
    MetricsService,
    StaticMetricsSource,
    aggregate_metrics,
    compare_metrics,
    confidence_interval,
    is_statistically_significant,
    relative_change,
)
from prompt_release.models import Deployment, DeploymentStatus, MetricsSnapshot


def test_relative_change_from_zero_base():
    assert relative_change(0.0, 0.0) == 0.0
    assert relative_change(0.0, 0.3) == 1.0
    assert relative_change(0.5, 0.25) == pytest.approx(-0.5)
    assert relative_change(0.0, 0.3, unbounded_from_zero=True) == math.inf
    assert relative_change(0.0, 0.0, unbounded_from_zero=True) == 0.0


def test_significance_needs_thirty_samples_each():
    before = MetricsSnapshot(success_rate=0.9, sample_count=29)
    after = MetricsSnapshot(success_rate=0.1, sample_count=1000)
    assert not is_statistically_significant(before, after)


def test_large_drop_is_significant():
    before = MetricsSnapshot(success_rate=0.9, sample_count=200)
    after = MetricsSnapshot(success_rate=0.7, sample_count=200)
    assert is_statistically_significant(before, after)
    assert not is_statistically_significant(before, MetricsSnapshot(success_rate=0.89, sample_count=200))


def test_compare_flags_sample_size_on_current_window():
    before = MetricsSnapshot(success_rate=0.8, sample_count=500)
    comparison = compare_metrics(before, MetricsSnapshot(success_rate=0.8, sample_count=49), min_sample_size=50)
    assert not comparison.sample_size_sufficient
    assert comparison.success_rate_change == 0.0


def test_aggregate_is_sample_weighted():
    a = MetricsSnapshot(success_rate=1.0, avg_steps=2.0, sample_count=30)
    b = MetricsSnapshot(success_rate=0.0, avg_steps=4.0, sample_count=10)
    merged = aggregate_metrics([a, b])
    assert merged.sample_count == 40
    assert merged.success_rate == pytest.approx(0.75)
    assert merged.avg_steps == pytest.approx(2.5)


def test_aggregate_of_empty_windows():
    assert aggregate_metrics([]).sample_count == 0
    assert aggregate_metrics([MetricsSnapshot(), MetricsSnapshot()]).success_rate == 0.0


def test_confidence_interval_is_clamped():
    ci = confidence_interval(MetricsSnapshot(success_rate=0.99, sample_count=10))
    assert ci["upper"] == 1.0
    assert 0.0 < ci["lower"] < 0.99
    assert confidence_interval(MetricsSnapshot()) == {"lower": 0.0, "upper": 0.0}


def test_service_windows(clock):
    source = StaticMetricsSource(agents={"agent-1": MetricsSnapshot(success_rate=0.9, sample_count=60)})
    service = MetricsService(source, now_fn=clock)

    baseline = service.capture_baseline("agent-1", 60)
    assert baseline.success_rate == 0.9
    assert baseline.window_end == clock()
    assert baseline.window_start == clock() - timedelta(minutes=60)

    deployment = Deployment(
        id="d1",
        version_id="v1",
        agent_id="agent-1",
        deployed_by="carol",
        deployed_at=clock(),
        status=DeploymentStatus.ACTIVE,
    )
    after = service.capture_post_deployment(deployment, 30)
    assert after.sample_count == 0
    assert after.window_end == deployment.deployed_at + timedelta(minutes=30)
    assert [c[0] for c in source.calls] == ["agent", "version"]


def test_current_metrics_run_from_deployment_to_now(clock):
    source = StaticMetricsSource(versions={"v1": MetricsSnapshot(success_rate=0.7, sample_count=40)})
    service = MetricsService(source, now_fn=clock)
    deployed_at = clock()
    clock.advance(minutes=45)

    deployment = Deployment(
        id="d1",
        version_id="v1",
        agent_id="agent-1",
        deployed_by="carol",
        deployed_at=deployed_at,
        status=DeploymentStatus.ACTIVE,
    )
    current = service.get_current_metrics(deployment)
    assert current.success_rate == 0.7
    assert current.window_start == deployed_at
    assert current.window_end == clock()
