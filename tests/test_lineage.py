# tests/test_lineage.py
import sqlite3

import pytest

from prompt_release.errors import DataIntegrityError, MergeConflictError, NotFound, ValidationError


def _chain(store, agent, branch_id, *texts):
    return [store.create_version(agent, branch_id, t, created_by="dev") for t in texts]


def test_ancestors_and_descendants_carry_hop_distance(store, lineage):
    v1, v2, v3 = _chain(store, "a", None, "one", "two", "three")

    ancestors = lineage.get_ancestors(v3.id)
    assert [(n.version.id, n.distance) for n in ancestors] == [(v2.id, 1), (v1.id, 2)]
    assert all(n.relation == "ancestor" for n in ancestors)

    descendants = lineage.get_descendants(v1.id)
    assert [(n.version.id, n.distance) for n in descendants] == [(v2.id, 1), (v3.id, 2)]


def test_max_depth_limits_the_walk(store, lineage):
    v1, v2, v3, v4 = _chain(store, "a", None, "1", "2", "3", "4")
    assert [n.version.id for n in lineage.get_ancestors(v4.id, max_depth=2)] == [v3.id, v2.id]
    assert lineage.get_ancestors(v4.id, max_depth=0) == []


def test_lineage_is_ancestors_self_descendants(store, lineage):
    v1, v2, v3 = _chain(store, "a", None, "one", "two", "three")
    nodes = lineage.get_lineage(v2.id)

    assert [(n.relation, n.version.id, n.distance) for n in nodes] == [
        ("ancestor", v1.id, 1),
        ("self", v2.id, 0),
        ("descendant", v3.id, 1),
    ]


def test_diamond_ancestors_are_deduplicated(store, lineage):
    root = store.create_version("a", None, "root", created_by="dev")
    left = store.create_version("a", None, "left", [root.id], created_by="dev")
    right = store.create_version("a", None, "right", [root.id], created_by="dev")
    merge = store.create_version("a", None, "merge", [left.id, right.id], created_by="dev")

    ancestors = lineage.get_ancestors(merge.id)
    assert sorted((n.version.id, n.distance) for n in ancestors) == sorted(
        [(left.id, 1), (right.id, 1), (root.id, 2)]
    )


def test_unknown_version_is_not_found(lineage):
    with pytest.raises(NotFound):
        lineage.get_lineage("nope")


def test_cycle_is_a_data_integrity_error(db_path, store, lineage):
    v1, v2 = _chain(store, "a", None, "one", "two")
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("INSERT INTO version_edges (parent_id, child_id, position) VALUES (?, ?, 0)", (v2.id, v1.id))
        conn.commit()
    finally:
        conn.close()

    with pytest.raises(DataIntegrityError):
        lineage.get_ancestors(v2.id)


def test_common_ancestor_of_diverged_branches(store, lineage):
    base = store.create_version("a", None, "base", created_by="dev")
    feature = store.create_branch("a", "feature", base_version_id=base.id)
    main_head = store.create_version("a", None, "main edit", created_by="dev")
    feature_head = store.create_version("a", feature.id, "feature edit", created_by="dev")

    assert lineage.find_common_ancestor(main_head.id, feature_head.id).id == base.id
    assert lineage.find_common_ancestor(base.id, feature_head.id).id == base.id


def test_ambiguous_common_ancestor_picks_most_recent(store, lineage):
    # criss-cross history: x and y both merge p and q
    p = store.create_version("a", None, "p", [], created_by="dev")
    q = store.create_version("a", None, "q", [], created_by="dev")
    x = store.create_version("a", None, "x", [p.id, q.id], created_by="dev")
    y = store.create_version("a", None, "y", [q.id, p.id], created_by="dev")

    assert lineage.find_common_ancestor(x.id, y.id).id == q.id


def test_fast_forward_merge_copies_source_content(store, lineage):
    main = store.get_main_branch("a")
    base = store.create_version("a", main.id, "base", created_by="dev")
    feature = store.create_branch("a", "feature", base_version_id=base.id)
    head = store.create_version("a", feature.id, "base\nplus more", created_by="dev")

    analysis = lineage.can_merge(feature.id, main.id)
    assert analysis.can_merge and analysis.fast_forward

    merged = lineage.merge_branch(feature.id, main.id, approved_by="alice")
    assert merged.branch_id == main.id
    assert merged.content.system_prompt == head.content.system_prompt
    assert merged.parent_ids == (head.id, base.id)
    assert merged.mutation_details == {
        "type": "merge",
        "source_branch": "feature",
        "target_branch": "main",
        "approved_by": "alice",
    }
    assert store.get_branch(feature.id).merged


def test_merge_round_trip_has_both_heads_at_distance_one(store, lineage):
    main = store.get_main_branch("a")
    base = store.create_version("a", main.id, "intro\nbody\noutro", created_by="dev")
    feature = store.create_branch("a", "feature", base_version_id=base.id)
    main_head = store.create_version("a", main.id, "INTRO\nbody\noutro", created_by="dev")
    feature_head = store.create_version("a", feature.id, "intro\nbody\nOUTRO", created_by="dev")

    analysis = lineage.can_merge(feature.id, main.id)
    assert analysis.can_merge and not analysis.fast_forward
    assert analysis.common_ancestor.id == base.id

    merged = lineage.merge_branch(feature.id, main.id, approved_by="alice")
    parents = {n.version.id: n.distance for n in lineage.get_ancestors(merged.id)}
    assert parents[main_head.id] == 1
    assert parents[feature_head.id] == 1
    # non fast-forward merges keep the target content
    assert merged.content.system_prompt == main_head.content.system_prompt


def test_conflicting_merge_is_blocked_and_changes_nothing(store, lineage):
    main = store.get_main_branch("a")
    base = store.create_version("a", main.id, "intro\nbody", created_by="dev")
    feature = store.create_branch("a", "feature", base_version_id=base.id)
    store.create_version("a", main.id, "intro\nmain body", created_by="dev")
    store.create_version("a", feature.id, "intro\nfeature body", created_by="dev")

    analysis = lineage.can_merge(feature.id, main.id)
    assert not analysis.can_merge
    assert analysis.conflicts == ["system_prompt:lines 2-2"]

    with pytest.raises(MergeConflictError) as exc:
        lineage.merge_branch(feature.id, main.id, approved_by="alice")
    assert exc.value.conflicts == ["system_prompt:lines 2-2"]
    assert len(store.list_versions(main.id)) == 2
    assert not store.get_branch(feature.id).merged


def test_line_equal_heads_merge_trivially(store, lineage):
    main = store.get_main_branch("a")
    base = store.create_version("a", main.id, "base", created_by="dev")
    feature = store.create_branch("a", "feature", base_version_id=base.id)
    store.create_version("a", main.id, "same", created_by="dev")
    store.create_version("a", feature.id, "same\n", created_by="dev")

    analysis = lineage.can_merge(feature.id, main.id)
    assert analysis.can_merge and not analysis.fast_forward and analysis.conflicts == []


def test_merge_validation(store, lineage):
    main = store.get_main_branch("a")
    other_agent_main = store.get_main_branch("b")
    empty = store.create_branch("a", "empty")

    with pytest.raises(ValidationError):
        lineage.can_merge(main.id, main.id)
    with pytest.raises(ValidationError):
        lineage.can_merge(main.id, other_agent_main.id)
    with pytest.raises(NotFound):
        lineage.can_merge("missing", main.id)
    assert not lineage.can_merge(empty.id, main.id).can_merge
    with pytest.raises(ValidationError):
        lineage.merge_branch(empty.id, main.id, approved_by="alice")
