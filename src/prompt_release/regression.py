# src/prompt_release/regression.py
"""
Regression classification of a deployment's before/after metrics.

Pure and deterministic: the same snapshots and thresholds always give the
same detected flag, severity and recommendations.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional

from prompt_release.config import REGRESSION_THRESHOLDS
from prompt_release.metrics import compare_metrics
from prompt_release.models import MetricsComparison, MetricsSnapshot, Severity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegressionThresholds:
    success_rate_threshold: float = 0.05
    efficiency_threshold: float = 0.10
    error_rate_threshold: float = 0.05
    high_threshold: float = 0.10
    critical_success_rate_drop: float = 0.20
    critical_error_rate_increase: float = 1.0
    min_sample_size: int = 50

    @classmethod
    def from_config(cls, overrides: Optional[Dict[str, Any]] = None) -> "RegressionThresholds":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in REGRESSION_THRESHOLDS.items() if k in known}
        values.update({k: v for k, v in (overrides or {}).items() if k in known})
        return cls(**values)


@dataclass(frozen=True)
class RegressionOutcome:
    detected: bool
    severity: Optional[Severity]
    comparison: MetricsComparison
    recommendations: List[str]

    @property
    def is_critical(self) -> bool:
        return self.severity == Severity.CRITICAL


def _pct(value: float) -> str:
    return f"{value * 100:.1f}%"


class RegressionEvaluator:
    def __init__(self, thresholds: Optional[RegressionThresholds] = None):
        self.thresholds = thresholds or RegressionThresholds.from_config()

    def evaluate(self, before: MetricsSnapshot, after: MetricsSnapshot) -> RegressionOutcome:
        comparison = compare_metrics(before, after, self.thresholds.min_sample_size)
        detected, severity = self.classify(comparison)
        recommendations = self.recommend(comparison, detected, severity)
        return RegressionOutcome(detected, severity, comparison, recommendations)

    def classify(self, comparison: MetricsComparison):
        t = self.thresholds
        success_drop = -comparison.success_rate_change
        efficiency_drop = -comparison.efficiency_change
        error_increase = comparison.error_rate_change

        detected = (
            success_drop > t.success_rate_threshold
            or efficiency_drop > t.efficiency_threshold
            or error_increase > t.error_rate_threshold
        )
        if not detected:
            return False, None

        critical = (
            error_increase > t.critical_error_rate_increase
            or success_drop > t.critical_success_rate_drop
        )
        if critical and comparison.sample_size_sufficient:
            return True, Severity.CRITICAL
        # too few samples to act on: never critical
        if critical or success_drop > t.high_threshold or error_increase > t.high_threshold:
            return True, Severity.HIGH
        if success_drop > t.success_rate_threshold or efficiency_drop > t.efficiency_threshold:
            return True, Severity.MEDIUM
        return True, Severity.LOW

    def recommend(self, comparison: MetricsComparison, detected: bool, severity: Optional[Severity]) -> List[str]:
        t = self.thresholds
        out: List[str] = []

        if not comparison.sample_size_sufficient:
            out.append(
                f"Insufficient sample size ({comparison.current.sample_count}/{t.min_sample_size}). "
                "Wait for more trajectories before making decisions."
            )

        if not detected:
            if comparison.success_rate_change > 0.05:
                out.append(
                    f"Success rate improved by {_pct(comparison.success_rate_change)}. "
                    "Consider this deployment successful."
                )
            if comparison.efficiency_change > 0.05:
                out.append(
                    f"Efficiency improved by {_pct(comparison.efficiency_change)}. "
                    "Performance is better than baseline."
                )
            if not out:
                out.append("No significant changes detected. Deployment is stable.")
            return out

        if severity == Severity.CRITICAL:
            out.append("CRITICAL: Immediate rollback recommended. Significant degradation detected.")
        elif severity == Severity.HIGH:
            out.append("HIGH: Consider immediate rollback. Substantial degradation in performance.")

        if comparison.success_rate_change < -t.success_rate_threshold:
            out.append(
                f"Success rate dropped by {_pct(-comparison.success_rate_change)}. "
                "Investigate task completion issues."
            )
        if comparison.efficiency_change < -t.efficiency_threshold:
            out.append(
                f"Efficiency dropped by {_pct(-comparison.efficiency_change)}. "
                "Check for increased step counts or longer execution times."
            )
        if math.isinf(comparison.error_rate_change):
            out.append(
                f"Error rate rose from 0% to {_pct(comparison.current.error_rate)}. "
                "Review error logs for new failure patterns."
            )
        elif comparison.error_rate_change > t.error_rate_threshold:
            out.append(
                f"Error rate increased by {_pct(comparison.error_rate_change)}. "
                "Review error logs for new failure patterns."
            )
        if not comparison.statistically_significant:
            out.append(
                "Note: Changes are not statistically significant. "
                "Consider gathering more data before taking action."
            )
        return out


def evaluate_regression(
    before: MetricsSnapshot,
    after: MetricsSnapshot,
    thresholds: Optional[RegressionThresholds] = None,
) -> RegressionOutcome:
    return RegressionEvaluator(thresholds).evaluate(before, after)
