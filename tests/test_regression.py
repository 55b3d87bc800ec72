# tests/test_regression.py
import math

import pytest

from prompt_release.models import MetricsSnapshot, Severity
from prompt_release.regression import RegressionEvaluator, RegressionThresholds, evaluate_regression


def snap(success=0.9, error=0.02, efficiency=0.8, n=100):
    return MetricsSnapshot(success_rate=success, error_rate=error, avg_efficiency=efficiency, sample_count=n)


@pytest.fixture
def evaluator():
    return RegressionEvaluator(RegressionThresholds())


def test_no_change_is_stable(evaluator):
    outcome = evaluator.evaluate(snap(), snap())
    assert not outcome.detected
    assert outcome.severity is None
    assert outcome.recommendations == ["No significant changes detected. Deployment is stable."]


def test_improvement_is_reported_as_success(evaluator):
    outcome = evaluator.evaluate(snap(success=0.5), snap(success=0.9))
    assert not outcome.detected
    assert outcome.recommendations[0].startswith("Success rate improved by 80.0%")


@pytest.mark.parametrize(
    "after, severity",
    [
        (snap(success=0.8), Severity.HIGH),  # -11% success
        (snap(success=0.84), Severity.MEDIUM),  # -6.7% success
        (snap(efficiency=0.7), Severity.MEDIUM),  # -12.5% efficiency
        (snap(error=0.0215), Severity.LOW),  # +7.5% errors
        (snap(error=0.05), Severity.CRITICAL),  # errors x2.5
        (snap(success=0.6), Severity.CRITICAL),  # -33% success
    ],
)
def test_severity_ladder(evaluator, after, severity):
    outcome = evaluator.evaluate(snap(), after)
    assert outcome.detected
    assert outcome.severity == severity


def test_critical_needs_enough_samples(evaluator):
    outcome = evaluator.evaluate(snap(), snap(error=0.5, n=10))
    assert outcome.detected
    assert outcome.severity == Severity.HIGH
    assert outcome.recommendations[0].startswith("Insufficient sample size (10/50)")
    assert not outcome.is_critical


def test_errors_appearing_from_a_clean_baseline_are_critical(evaluator):
    outcome = evaluator.evaluate(snap(error=0.0, n=1000), snap(error=0.9, n=1000))
    assert outcome.comparison.error_rate_change == math.inf
    assert outcome.severity == Severity.CRITICAL
    assert "Error rate rose from 0% to 90.0%. Review error logs for new failure patterns." in outcome.recommendations


def test_clean_baseline_with_few_samples_is_capped_at_high(evaluator):
    outcome = evaluator.evaluate(snap(error=0.0), snap(error=0.9, n=10))
    assert outcome.severity == Severity.HIGH


def test_critical_recommendations(evaluator):
    outcome = evaluator.evaluate(snap(), snap(success=0.6, error=0.1))
    recs = outcome.recommendations
    assert recs[0] == "CRITICAL: Immediate rollback recommended. Significant degradation detected."
    assert any(r.startswith("Success rate dropped by 33.3%") for r in recs)
    assert any(r.startswith("Error rate increased by 400.0%") for r in recs)


def test_thresholds_are_configurable():
    strict = RegressionThresholds.from_config({"success_rate_threshold": 0.01, "unknown": 1})
    outcome = evaluate_regression(snap(), snap(success=0.88), strict)
    assert outcome.detected
    assert evaluate_regression(snap(), snap(success=0.88)).detected is False


def test_evaluation_is_deterministic(evaluator):
    first = evaluator.evaluate(snap(), snap(success=0.7, efficiency=0.5))
    second = evaluator.evaluate(snap(), snap(success=0.7, efficiency=0.5))
    assert first == second
