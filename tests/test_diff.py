# tests/test_diff.py
from prompt_release.diff import (
    apply_patch,
    content_conflicts,
    content_line_equal,
    diff_prompt_content,
    diff_text,
    format_unified_diff,
    get_diff_stats,
)


def test_identical_text_is_all_unchanged():
    text = "You are a helpful agent.\nAlways cite sources.\nBe brief."
    diff = diff_text(text, text)

    assert diff.type == "unchanged"
    assert [s.kind for s in diff.spans] == ["unchanged"]
    assert diff.spans[0].lines == text.splitlines()
    assert diff.hunks == []


def test_empty_to_text_is_all_added():
    diff = diff_text("", "line one\nline two")

    assert diff.type == "added"
    assert all(s.kind == "added" for s in diff.spans)
    assert sum(len(s.lines) for s in diff.spans) == 2


def test_both_empty_is_unchanged_with_no_spans():
    diff = diff_text("", "")
    assert diff.type == "unchanged"
    assert diff.spans == []


def test_text_to_empty_is_removed():
    diff = diff_text("a\nb", "")
    assert diff.type == "removed"
    assert get_diff_stats(diff) == {"additions": 0, "deletions": 2, "unchanged": 0}


def test_modified_spans_are_in_display_order():
    old = "intro\nstep one\nstep two\noutro"
    new = "intro\nstep 1\nstep two\nextra\noutro"
    diff = diff_text(old, new)

    assert diff.type == "modified"
    assert [(s.kind, s.lines) for s in diff.spans] == [
        ("unchanged", ["intro"]),
        ("removed", ["step one"]),
        ("added", ["step 1"]),
        ("unchanged", ["step two"]),
        ("added", ["extra"]),
        ("unchanged", ["outro"]),
    ]
    assert get_diff_stats(diff) == {"additions": 2, "deletions": 1, "unchanged": 3}


def test_patch_reproduces_new_text():
    old = "\n".join(f"line {i}" for i in range(20))
    new_lines = old.splitlines()
    new_lines[2] = "changed two"
    new_lines.insert(15, "inserted")
    del new_lines[-1]
    new = "\n".join(new_lines)

    diff = diff_text(old, new)
    assert len(diff.hunks) == 2
    assert apply_patch(old, diff.hunks) == new


def test_unified_diff_format():
    diff = diff_text("a\nb\nc", "a\nB\nc")
    text = format_unified_diff("old/system_prompt", "new/system_prompt", diff)

    assert text.splitlines() == [
        "--- old/system_prompt",
        "+++ new/system_prompt",
        "@@ -1,3 +1,3 @@",
        " a",
        "-b",
        "+B",
        " c",
    ]
    assert format_unified_diff("x", "y", diff_text("same", "same")) == ""


def test_prompt_content_diff_covers_every_section():
    old = {"system_prompt": "Be nice.", "tool_descriptions": {"search": "Find things."}}
    new = {
        "system_prompt": "Be nice.",
        "tool_descriptions": {"search": "Find things fast.", "fetch": "Fetch a URL."},
        "subagent_prompts": {"planner": "Plan first."},
    }
    diff = diff_prompt_content(old, new)

    assert diff.system_prompt.type == "unchanged"
    assert diff.tool_descriptions["search"].type == "modified"
    assert diff.tool_descriptions["fetch"].type == "added"
    assert diff.subagent_prompts["planner"].type == "added"
    assert diff.summary == {"additions": 3, "deletions": 1, "changes": 3}
    assert not diff.is_unchanged


def test_plain_strings_are_system_prompts():
    assert diff_prompt_content("same\ntext", "same\ntext").is_unchanged
    diff = diff_prompt_content("", "new prompt")
    assert diff.system_prompt.type == "added"


def test_line_equality_ignores_trailing_newline():
    assert content_line_equal("a\nb\n", "a\nb")
    assert not content_line_equal("a\nb", "a\nc")


def test_disjoint_edits_do_not_conflict():
    base = "one\ntwo\nthree\nfour\nfive"
    left = "ONE\ntwo\nthree\nfour\nfive"
    right = "one\ntwo\nthree\nfour\nFIVE"
    assert content_conflicts(base, left, right) == []


def test_overlapping_edits_conflict_with_region_label():
    base = "one\ntwo\nthree"
    left = "one\nTWO (left)\nthree"
    right = "one\nTWO (right)\nthree"
    assert content_conflicts(base, left, right) == ["system_prompt:lines 2-2"]


def test_identical_edits_on_both_sides_are_clean():
    base = "one\ntwo"
    both = "one\n2"
    assert content_conflicts(base, both, both) == []


def test_insertions_at_same_point_conflict():
    base = "head\ntail"
    left = "head\nleft insert\ntail"
    right = "head\nright insert\ntail"
    assert content_conflicts(base, left, right) == ["system_prompt:lines 2-2"]


def test_tool_sections_are_checked_separately():
    base = {"system_prompt": "s", "tool_descriptions": {"search": "find"}}
    left = {"system_prompt": "s changed", "tool_descriptions": {"search": "find"}}
    right = {"system_prompt": "s", "tool_descriptions": {"search": "locate"}}
    assert content_conflicts(base, left, right) == []

    right_conflicting = {"system_prompt": "s", "tool_descriptions": {"search": "seek"}}
    left_conflicting = {"system_prompt": "s", "tool_descriptions": {"search": "hunt"}}
    assert content_conflicts(base, left_conflicting, right_conflicting) == [
        "tool_descriptions.search:lines 1-1"
    ]
