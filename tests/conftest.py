# tests/conftest.py
from datetime import datetime, timedelta, UTC
from pathlib import Path

import pytest

from prompt_release.approval import ApprovalWorkflow
from prompt_release.db.infra.core import init_db
from prompt_release.db.reviewers import ReviewerDAO
from prompt_release.db.services import VersionStore
from prompt_release.deployment import DeploymentPipeline
from prompt_release.lineage import LineageEngine
from prompt_release.metrics import MetricsService, StaticMetricsSource
from prompt_release.notifications import NOTIFICATION_TYPES, NotificationService


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    path = str(tmp_path / "prompt_release.db")
    init_db(path)
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(db_path, clock):
    return VersionStore(db_path, now_fn=clock)


@pytest.fixture
def lineage(db_path, store):
    return LineageEngine(db_path, store)


@pytest.fixture
def reviewers(db_path):
    dao = ReviewerDAO(db_path)
    dao.add("alice@example.com", "Alice", "developer", reviewer_id="alice")
    dao.add("bob@example.com", "Bob", "developer", reviewer_id="bob")
    dao.add("carol@example.com", "Carol", "admin", reviewer_id="carol")
    dao.add("rita@example.com", "Rita", "reviewer", reviewer_id="rita")
    return dao


@pytest.fixture
def sent():
    """Notifications delivered to the recording handler, in order."""
    return []


@pytest.fixture
def notifier(sent):
    service = NotificationService()
    for notification_type in NOTIFICATION_TYPES:
        service.register_handler(notification_type, sent.append)
    return service


@pytest.fixture
def workflow(db_path, store, reviewers, notifier, clock):
    return ApprovalWorkflow(db_path, store=store, reviewers=reviewers, notifier=notifier, now_fn=clock)


@pytest.fixture
def metrics_source():
    return StaticMetricsSource()


@pytest.fixture
def pipeline(db_path, store, reviewers, notifier, clock, metrics_source):
    return DeploymentPipeline(
        db_path,
        store=store,
        reviewers=reviewers,
        metrics=MetricsService(metrics_source, now_fn=clock),
        notifier=notifier,
        now_fn=clock,
    )


@pytest.fixture
def approve(workflow):
    """Take a candidate version through a single-approver request."""
    def _approve(version_id, approver="alice"):
        workflow.request_approval(version_id, "dev@example.com", required_approvals=1)
        return workflow.cast_approve_vote(version_id, approver)
    return _approve
