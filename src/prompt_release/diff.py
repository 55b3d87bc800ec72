"""
Line-based diffs of prompt content.

Pure functions: nothing here touches storage. Built on difflib.SequenceMatcher
with autojunk disabled so repeated boilerplate lines in long prompts are still
matched exactly.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Dict, List, Optional, Tuple

from prompt_release.models import PromptContent

logger = logging.getLogger(__name__)

UNCHANGED = "unchanged"
ADDED = "added"
REMOVED = "removed"
MODIFIED = "modified"

DEFAULT_CONTEXT_LINES = 3


@dataclass(frozen=True)
class DiffSpan:
    """A run of consecutive lines sharing one kind, in display order."""
    kind: str  # unchanged | added | removed
    lines: List[str]
    old_start: int  # 0-based index into the old text
    new_start: int  # 0-based index into the new text


@dataclass(frozen=True)
class DiffLine:
    kind: str  # context | add | delete
    content: str
    old_line_number: Optional[int] = None
    new_line_number: Optional[int] = None


@dataclass(frozen=True)
class DiffHunk:
    old_start: int  # 1-based
    old_lines: int
    new_start: int  # 1-based
    new_lines: int
    lines: List[DiffLine]


@dataclass(frozen=True)
class TextDiff:
    type: str  # unchanged | added | removed | modified
    spans: List[DiffSpan]
    hunks: List[DiffHunk]
    original: str = ""
    modified: str = ""

    @property
    def additions(self) -> int:
        return sum(len(s.lines) for s in self.spans if s.kind == ADDED)

    @property
    def deletions(self) -> int:
        return sum(len(s.lines) for s in self.spans if s.kind == REMOVED)

    def to_dict(self) -> Dict:
        return {
            "type": self.type,
            "spans": [
                {"kind": s.kind, "lines": list(s.lines), "old_start": s.old_start, "new_start": s.new_start}
                for s in self.spans
            ],
            "additions": self.additions,
            "deletions": self.deletions,
        }


@dataclass(frozen=True)
class PromptDiff:
    system_prompt: TextDiff
    tool_descriptions: Dict[str, TextDiff] = field(default_factory=dict)
    subagent_prompts: Optional[Dict[str, TextDiff]] = None
    summary: Dict[str, int] = field(default_factory=dict)

    def sections(self) -> List[Tuple[str, TextDiff]]:
        out = [("system_prompt", self.system_prompt)]
        for name in sorted(self.tool_descriptions):
            out.append((f"tool_descriptions.{name}", self.tool_descriptions[name]))
        for name in sorted(self.subagent_prompts or {}):
            out.append((f"subagent_prompts.{name}", self.subagent_prompts[name]))
        return out

    @property
    def is_unchanged(self) -> bool:
        return all(d.type == UNCHANGED for _, d in self.sections())

    def to_dict(self) -> Dict:
        return {
            "sections": {label: d.to_dict() for label, d in self.sections()},
            "summary": dict(self.summary),
        }


def split_lines(text: Optional[str]) -> List[str]:
    # "" has no lines; a trailing newline does not add an empty line
    return (text or "").splitlines()


def _matcher(old_lines: List[str], new_lines: List[str]) -> SequenceMatcher:
    return SequenceMatcher(None, old_lines, new_lines, autojunk=False)


def diff_text(old: Optional[str], new: Optional[str], context: int = DEFAULT_CONTEXT_LINES) -> TextDiff:
    """Diff two texts line by line. Total for any pair of strings, including empty ones."""
    old = old or ""
    new = new or ""
    old_lines = split_lines(old)
    new_lines = split_lines(new)
    matcher = _matcher(old_lines, new_lines)

    spans: List[DiffSpan] = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            spans.append(DiffSpan(UNCHANGED, old_lines[i1:i2], i1, j1))
            continue
        if tag in ("delete", "replace"):
            spans.append(DiffSpan(REMOVED, old_lines[i1:i2], i1, j1))
        if tag in ("insert", "replace"):
            spans.append(DiffSpan(ADDED, new_lines[j1:j2], i2, j1))

    kinds = {s.kind for s in spans}
    if kinds <= {UNCHANGED}:
        diff_type = UNCHANGED
    elif not old_lines:
        diff_type = ADDED
    elif not new_lines:
        diff_type = REMOVED
    else:
        diff_type = MODIFIED

    hunks = [] if diff_type == UNCHANGED else _hunks(matcher, old_lines, new_lines, context)
    return TextDiff(type=diff_type, spans=spans, hunks=hunks, original=old, modified=new)


def _hunks(matcher: SequenceMatcher, old_lines, new_lines, context: int) -> List[DiffHunk]:
    hunks: List[DiffHunk] = []
    for group in matcher.get_grouped_opcodes(context):
        lines: List[DiffLine] = []
        for tag, i1, i2, j1, j2 in group:
            if tag == "equal":
                for offset, content in enumerate(old_lines[i1:i2]):
                    lines.append(DiffLine("context", content, i1 + offset + 1, j1 + offset + 1))
                continue
            if tag in ("delete", "replace"):
                for offset, content in enumerate(old_lines[i1:i2]):
                    lines.append(DiffLine("delete", content, old_line_number=i1 + offset + 1))
            if tag in ("insert", "replace"):
                for offset, content in enumerate(new_lines[j1:j2]):
                    lines.append(DiffLine("add", content, new_line_number=j1 + offset + 1))
        first, last = group[0], group[-1]
        hunks.append(
            DiffHunk(
                old_start=first[1] + 1,
                old_lines=last[2] - first[1],
                new_start=first[3] + 1,
                new_lines=last[4] - first[3],
                lines=lines,
            )
        )
    return hunks


def apply_patch(original: str, hunks: List[DiffHunk]) -> str:
    """Re-apply hunks produced by diff_text to the text they were computed from."""
    lines = split_lines(original)
    result: List[str] = []
    index = 0

    for hunk in hunks:
        start = hunk.old_start - 1
        if start < index or start > len(lines):
            raise ValueError(f"Hunk at line {hunk.old_start} does not apply")
        result.extend(lines[index:start])
        index = start
        for line in hunk.lines:
            if line.kind in ("context", "delete"):
                if index >= len(lines) or lines[index] != line.content:
                    raise ValueError(f"Hunk at line {hunk.old_start} does not match the original text")
                index += 1
            if line.kind in ("context", "add"):
                result.append(line.content)

    result.extend(lines[index:])
    return "\n".join(result)


def format_unified_diff(old_path: str, new_path: str, diff: TextDiff) -> str:
    if diff.type == UNCHANGED:
        return ""

    out = [f"--- {old_path}", f"+++ {new_path}"]
    for hunk in diff.hunks:
        out.append(f"@@ -{hunk.old_start},{hunk.old_lines} +{hunk.new_start},{hunk.new_lines} @@")
        for line in hunk.lines:
            prefix = {"add": "+", "delete": "-"}.get(line.kind, " ")
            out.append(prefix + line.content)
    return "\n".join(out)


def get_diff_stats(diff: TextDiff) -> Dict[str, int]:
    unchanged = sum(len(s.lines) for s in diff.spans if s.kind == UNCHANGED)
    return {"additions": diff.additions, "deletions": diff.deletions, "unchanged": unchanged}


def diff_prompt_content(a, b) -> PromptDiff:
    """
    Diff two prompt payloads section by section.

    Accepts plain strings (treated as system prompts), dicts or PromptContent.
    A tool or subagent present on one side only diffs against "".
    """
    old = PromptContent.coerce(a)
    new = PromptContent.coerce(b)

    system_prompt = diff_text(old.system_prompt, new.system_prompt)

    tool_descriptions = {
        name: diff_text(old.tool_descriptions.get(name, ""), new.tool_descriptions.get(name, ""))
        for name in sorted(set(old.tool_descriptions) | set(new.tool_descriptions))
    }

    subagent_prompts = None
    if old.subagent_prompts is not None or new.subagent_prompts is not None:
        old_sub = old.subagent_prompts or {}
        new_sub = new.subagent_prompts or {}
        subagent_prompts = {
            name: diff_text(old_sub.get(name, ""), new_sub.get(name, ""))
            for name in sorted(set(old_sub) | set(new_sub))
        }

    diff = PromptDiff(system_prompt, tool_descriptions, subagent_prompts)
    additions = deletions = changes = 0
    for _, section in diff.sections():
        if section.type != UNCHANGED:
            changes += 1
        additions += section.additions
        deletions += section.deletions
    summary = {"additions": additions, "deletions": deletions, "changes": changes}
    return PromptDiff(system_prompt, tool_descriptions, subagent_prompts, summary)


def content_line_equal(a, b) -> bool:
    """True when every section of both payloads has the same lines."""
    old = dict(PromptContent.coerce(a).sections())
    new = dict(PromptContent.coerce(b).sections())
    for label in set(old) | set(new):
        if split_lines(old.get(label, "")) != split_lines(new.get(label, "")):
            return False
    return True


# -------------------------
# Three-way conflict detection
# -------------------------

def _changes_against(base_lines: List[str], other_lines: List[str]) -> List[Tuple[int, int, Tuple[str, ...]]]:
    """Base ranges [i1, i2) rewritten by `other`, with their replacement lines."""
    return [
        (i1, i2, tuple(other_lines[j1:j2]))
        for tag, i1, i2, j1, j2 in _matcher(base_lines, other_lines).get_opcodes()
        if tag != "equal"
    ]


def _overlaps(a: Tuple[int, int], b: Tuple[int, int]) -> bool:
    a1, a2 = a
    b1, b2 = b
    if a1 == a2 and b1 == b2:
        # two insertions at the same point
        return a1 == b1
    if a1 == a2:
        return b1 < a1 < b2
    if b1 == b2:
        return a1 < b1 < a2
    return a1 < b2 and b1 < a2


def conflicting_regions(base: str, left: str, right: str, label: str = "") -> List[str]:
    """
    Regions of `base` that both `left` and `right` changed differently.

    Identical edits on both sides are not conflicts.
    """
    base_lines = split_lines(base)
    left_changes = _changes_against(base_lines, split_lines(left))
    right_changes = _changes_against(base_lines, split_lines(right))

    regions: List[str] = []
    for l1, l2, l_new in left_changes:
        for r1, r2, r_new in right_changes:
            if (l1, l2, l_new) == (r1, r2, r_new):
                continue
            if not _overlaps((l1, l2), (r1, r2)):
                continue
            start = min(l1, r1) + 1
            end = max(l2, r2, start)
            region = f"lines {start}-{end}"
            regions.append(f"{label}:{region}" if label else region)
    # stable and unique
    return list(dict.fromkeys(regions))


def content_conflicts(base, left, right) -> List[str]:
    """Per-section three-way conflicts between two payloads and their common base."""
    base_s = dict(PromptContent.coerce(base).sections())
    left_s = dict(PromptContent.coerce(left).sections())
    right_s = dict(PromptContent.coerce(right).sections())

    conflicts: List[str] = []
    for label in sorted(set(base_s) | set(left_s) | set(right_s), key=lambda l: (l != "system_prompt", l)):
        conflicts.extend(
            conflicting_regions(
                base_s.get(label, ""),
                left_s.get(label, ""),
                right_s.get(label, ""),
                label,
            )
        )
    if conflicts:
        logger.debug("Found %d conflicting region(s)", len(conflicts))
    return conflicts
