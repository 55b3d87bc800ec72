# tests/test_version_store.py
import sqlite3
import threading

import pytest

from prompt_release.errors import Conflict, NotFound, ValidationError
from prompt_release.models import FitnessSummary, PromptContent, VersionStatus


def test_first_use_creates_main_branch(store):
    main = store.get_main_branch("agent-1")
    assert main.is_main
    assert main.name == "main"
    # idempotent
    assert store.get_main_branch("agent-1").id == main.id


def test_versions_are_numbered_sequentially_per_branch(store):
    main = store.get_main_branch("agent-1")
    feature = store.create_branch("agent-1", "feature")

    numbers_main = [store.create_version("agent-1", main.id, f"main {i}", created_by="dev").version_number
                    for i in range(3)]
    numbers_feature = [store.create_version("agent-1", feature.id, f"feat {i}", created_by="dev").version_number
                       for i in range(2)]

    assert numbers_main == [1, 2, 3]
    assert numbers_feature == [1, 2]


def test_default_parent_is_branch_head(store):
    v1 = store.create_version("agent-1", None, "first", created_by="dev")
    v2 = store.create_version("agent-1", None, "second", created_by="dev")
    root = store.create_version("agent-1", None, "fresh start", [], created_by="dev")

    assert v1.parent_ids == ()
    assert v2.parent_ids == (v1.id,)
    assert root.parent_ids == ()


def test_empty_branch_continues_from_base_version(store):
    v1 = store.create_version("agent-1", None, "first", created_by="dev")
    branch = store.create_branch("agent-1", "experiment", base_version_id=v1.id)
    v = store.create_version("agent-1", branch.id, "variant", created_by="dev")
    assert v.parent_ids == (v1.id,)


def test_parent_from_other_agent_is_rejected(store):
    other = store.create_version("agent-2", None, "theirs", created_by="dev")
    with pytest.raises(ValidationError):
        store.create_version("agent-1", None, "mine", [other.id], created_by="dev")


def test_missing_parent_is_rejected(store):
    with pytest.raises(ValidationError):
        store.create_version("agent-1", None, "mine", ["does-not-exist"], created_by="dev")


def test_unknown_branch_is_rejected(store):
    with pytest.raises(ValidationError):
        store.create_version("agent-1", "no-such-branch", "mine", created_by="dev")


def test_structured_content_round_trips(store):
    content = {
        "system_prompt": "You plan.",
        "tool_descriptions": {"search": "Search the web."},
        "subagent_prompts": {"critic": "Critique the plan."},
    }
    v = store.create_version("agent-1", None, content, created_by="dev")
    loaded = store.get_version(v.id)
    assert loaded.content == PromptContent.coerce(content)
    assert loaded.status == VersionStatus.CANDIDATE


def test_unsupported_content_type_is_a_validation_error(store):
    with pytest.raises(ValidationError):
        store.create_version("agent-1", None, 42, created_by="dev")


def test_list_versions_newest_first_with_status_filter(store):
    main = store.get_main_branch("agent-1")
    v1 = store.create_version("agent-1", main.id, "one", created_by="dev")
    v2 = store.create_version("agent-1", main.id, "two", created_by="dev")
    store.update_status(v1.id, VersionStatus.APPROVED)

    assert [v.id for v in store.list_versions(main.id)] == [v2.id, v1.id]
    assert [v.id for v in store.list_versions(main.id, "approved")] == [v1.id]
    with pytest.raises(ValidationError):
        store.list_versions(main.id, "shipped")


def test_get_version_not_found(store):
    with pytest.raises(NotFound):
        store.get_version("missing")


def test_update_status_rejects_illegal_transition(store):
    v = store.create_version("agent-1", None, "one", created_by="dev")
    with pytest.raises(Conflict):
        store.update_status(v.id, VersionStatus.PRODUCTION)
    assert store.get_version(v.id).status == VersionStatus.CANDIDATE


def test_duplicate_branch_name_conflicts(store):
    store.create_branch("agent-1", "feature")
    with pytest.raises(Conflict):
        store.create_branch("agent-1", "feature")


def test_list_branches_main_first(store):
    store.create_branch("agent-1", "a")
    store.create_branch("agent-1", "b")
    names = [b.name for b in store.list_branches("agent-1")]
    assert names[0] == "main"
    assert set(names) == {"main", "a", "b"}


def test_main_branch_cannot_be_deleted(store):
    main = store.get_main_branch("agent-1")
    with pytest.raises(Conflict):
        store.delete_branch(main.id)


def test_branch_with_pending_approval_cannot_be_deleted(store, workflow):
    branch = store.create_branch("agent-1", "feature")
    v = store.create_version("agent-1", branch.id, "x", created_by="dev")
    workflow.request_approval(v.id, "dev", required_approvals=1)

    with pytest.raises(Conflict):
        store.delete_branch(branch.id)


def test_expired_approval_does_not_block_branch_delete(store, workflow, clock):
    branch = store.create_branch("agent-1", "feature")
    v = store.create_version("agent-1", branch.id, "x", created_by="dev")
    workflow.request_approval(v.id, "dev", expires_in_hours=1)
    clock.advance(hours=5)

    # nobody touched the request since it lapsed
    assert workflow.list_pending_approvals("agent-1") == []
    store.delete_branch(branch.id)
    assert store.get_branch(branch.id).deleted_at == clock()


def test_idle_branch_is_soft_deleted(store):
    branch = store.create_branch("agent-1", "scratch")
    store.create_version("agent-1", branch.id, "x", created_by="dev")
    store.delete_branch(branch.id)

    assert "scratch" not in [b.name for b in store.list_branches("agent-1")]
    assert store.get_branch(branch.id).deleted_at is not None
    with pytest.raises(ValidationError):
        store.create_version("agent-1", branch.id, "y", created_by="dev")


def test_fitness_and_branch_stats(store):
    main = store.get_main_branch("agent-1")
    v1 = store.create_version("agent-1", main.id, "one", created_by="dev")
    v2 = store.create_version("agent-1", main.id, "two", created_by="dev")
    store.update_fitness(v1.id, FitnessSummary(win_rate=0.4, comparison_count=10))
    updated = store.update_fitness(v2.id, {"win_rate": 0.6, "comparison_count": 5})

    assert updated.fitness.win_rate == 0.6
    stats = store.get_branch_stats(main.id)
    assert stats["total_versions"] == 2
    assert stats["candidate_count"] == 2
    assert stats["avg_win_rate"] == pytest.approx(0.5)


def test_version_numbers_stay_gapless_under_concurrency(store):
    main = store.get_main_branch("agent-1")
    errors = []

    def worker(i):
        try:
            store.create_version("agent-1", main.id, f"v{i}", created_by="dev")
        except Exception as e:  # collected for the assertion below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    numbers = sorted(v.version_number for v in store.list_versions(main.id))
    assert numbers == list(range(1, 9))


def test_storage_rejects_duplicate_version_numbers(db_path, store):
    v = store.create_version("agent-1", None, "one", created_by="dev")
    conn = sqlite3.connect(db_path)
    try:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                """
                INSERT INTO prompt_versions (id, agent_id, branch_id, version_number, content_json,
                                             status, created_by, created_at)
                VALUES ('dup', 'agent-1', ?, 1, '{}', 'candidate', 'x', '2025-01-01T00:00:00+00:00')
                """,
                (v.branch_id,),
            )
    finally:
        conn.close()
