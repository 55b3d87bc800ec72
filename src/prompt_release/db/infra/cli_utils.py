# prompt_release/db/infra/cli_utils.py
"""
CLI message helpers for consistent, compact messages.

Provides:
 - print_user_message(summary, action=None, details=None, verbose=False, quiet=False)
 - print_error(error, verbose=False)

Pattern:
 - One-line summary always printed (unless --quiet).
 - Optional one-line actionable command (prefixed) shown next.
 - Optional details block printed only when verbose=True.
"""
from __future__ import annotations

import json
import sys
from typing import Optional

from prompt_release.errors import PromptReleaseError


def _indent(text: str, prefix: str = "  ") -> str:
    return "\n".join(prefix + line for line in text.splitlines())


def print_user_message(
    summary: str,
    action: Optional[str] = None,
    details: Optional[str] = None,
    verbose: bool = False,
    quiet: bool = False,
    stream=None,
) -> None:
    """
    Print a consistent CLI message.

    - summary: short human-facing one-line summary.
    - action: short actionable command or next step (printed on its own).
    - details: multi-line developer detail printed only with verbose=True.
    """
    if quiet:
        return
    stream = stream or sys.stdout

    first_line = summary.strip().splitlines()[0] if summary else ""
    print(first_line, file=stream)

    if action:
        print(file=stream)
        print("Actionable:", file=stream)
        for ln in action.strip().splitlines():
            print("  " + ln.rstrip(), file=stream)

    if verbose and details:
        print(file=stream)
        print("Details:", file=stream)
        print(_indent(details.strip(), prefix="  "), file=stream)


_ACTIONS = {
    "forbidden": "Ask an admin to grant your reviewer a developer or admin role.",
    "expired": "Submit a new approval request for the version.",
    "merge_conflict": "Resolve the conflicting regions on the source branch, then merge again.",
    "no_prior_deployment": "Deploy another approved version instead of rolling back.",
}


def print_error(error: PromptReleaseError, verbose: bool = False) -> None:
    """Render a domain error as a one-line message on stderr."""
    details = json.dumps(error.details, indent=2, default=str) if error.details else None
    print_user_message(
        f"Error ({error.code}): {error.message}",
        action=_ACTIONS.get(error.code),
        details=details,
        verbose=verbose,
        stream=sys.stderr,
    )
