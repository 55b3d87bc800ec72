# src/prompt_release/cli.py
"""
prompt-release: command line access to versions, approvals and deployments.

Every command applies pending migrations first, so a fresh database file
works without a separate init step.
"""
import argparse
import json
import logging
import sys
from pathlib import Path

from prompt_release.approval import ApprovalWorkflow
from prompt_release.config import DB_FILE_PATH, DEFAULT_REQUIRED_APPROVALS, DEPLOYMENT_HISTORY_LIMIT, configure_logging
from prompt_release.db.infra.cli_utils import print_error, print_user_message
from prompt_release.db.infra.core import init_db
from prompt_release.db.reviewers import ReviewerDAO
from prompt_release.db.services import VersionStore
from prompt_release.deployment import DeploymentPipeline
from prompt_release.diff import format_unified_diff
from prompt_release.errors import PromptReleaseError, ValidationError
from prompt_release.lineage import LineageEngine

logger = logging.getLogger(__name__)


def _load_content(args):
    if args.content_file:
        path = Path(args.content_file)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ValidationError(f"Cannot read content file: {e}", path=str(path)) from e
        if path.suffix == ".json":
            try:
                return json.loads(text)
            except json.JSONDecodeError as e:
                raise ValidationError(f"Invalid JSON in {path}: {e}", path=str(path)) from e
        return text
    if args.content is None:
        raise ValidationError("Provide --content or --content-file")
    return args.content


def _version_line(v) -> str:
    parents = ",".join(p[:8] for p in v.parent_ids) or "-"
    return f"{v.id}  v{v.version_number}  {v.status.value:<10}  parents={parents}  by={v.created_by}"


def _deployment_line(d) -> str:
    prev = d.previous_deployment_id or "-"
    return f"{d.id}  {d.status.value:<11}  version={d.version_id}  previous={prev}  by={d.deployed_by}"


# -----------------------
# Commands
# -----------------------

def cmd_init_db(args, db_path):
    applied = init_db(db_path)
    summary = f"Applied {len(applied)} migration(s) to {db_path}" if applied else f"Database {db_path} is up to date"
    print_user_message(summary, details="\n".join(applied), verbose=args.verbose, quiet=args.quiet)


def cmd_add_reviewer(args, db_path):
    reviewer = ReviewerDAO(db_path).add(args.email, args.name, args.role, reviewer_id=args.id)
    print_user_message(f"Added reviewer {reviewer.id} ({reviewer.email}, {reviewer.role})", quiet=args.quiet)


def cmd_list_reviewers(args, db_path):
    reviewers = ReviewerDAO(db_path).list()
    if not reviewers:
        print_user_message("No reviewers registered.", quiet=args.quiet)
    for r in reviewers:
        print(f"{r.id}  {r.role:<9}  {r.email}  {r.name}")


def cmd_set_role(args, db_path):
    reviewer = ReviewerDAO(db_path).set_role(args.reviewer, args.role)
    print_user_message(f"Reviewer {reviewer.id} is now {reviewer.role}", quiet=args.quiet)


def cmd_create_branch(args, db_path):
    branch = VersionStore(db_path).create_branch(
        args.agent, args.name, base_version_id=args.base_version, parent_branch_id=args.parent_branch
    )
    print_user_message(f"Created branch {branch.id} ({branch.name})", quiet=args.quiet)


def cmd_create_version(args, db_path):
    parents = [] if args.root else (args.parent or None)
    version = VersionStore(db_path).create_version(
        args.agent, args.branch, _load_content(args), parents, args.created_by
    )
    print_user_message(_version_line(version), quiet=args.quiet)


def cmd_list_versions(args, db_path):
    versions = VersionStore(db_path).list_versions(args.branch, args.status)
    if not versions:
        print_user_message("No versions found.", quiet=args.quiet)
    for v in versions:
        print(_version_line(v))


def cmd_lineage(args, db_path):
    for node in LineageEngine(db_path).get_lineage(args.version):
        print(f"{node.relation:<10}  {node.distance}  {_version_line(node.version)}")


def cmd_diff(args, db_path):
    store = VersionStore(db_path)
    old = store.get_version(args.old)
    new = store.get_version(args.new)
    diff = LineageEngine.diff_prompt_content(old.content, new.content)
    if diff.is_unchanged:
        print_user_message("No differences.", quiet=args.quiet)
        return
    for label, section in diff.sections():
        text = format_unified_diff(f"v{old.version_number}/{label}", f"v{new.version_number}/{label}", section)
        if text:
            print(text)
    s = diff.summary
    print_user_message(
        f"{s['changes']} section(s) changed, +{s['additions']} -{s['deletions']}", quiet=args.quiet
    )


def cmd_can_merge(args, db_path):
    analysis = LineageEngine(db_path).can_merge(args.source, args.target)
    verdict = "can merge" if analysis.can_merge else "cannot merge"
    kind = " (fast-forward)" if analysis.fast_forward else ""
    print_user_message(
        f"Branches {verdict}{kind}: {analysis.reason}",
        details="\n".join(analysis.conflicts),
        verbose=args.verbose or bool(analysis.conflicts),
        quiet=args.quiet,
    )


def cmd_merge(args, db_path):
    version = LineageEngine(db_path).merge_branch(args.source, args.target, args.approved_by)
    print_user_message(f"Merged as {_version_line(version)}", quiet=args.quiet)


def cmd_request_approval(args, db_path):
    request = ApprovalWorkflow(db_path).request_approval(
        args.version, args.requested_by, args.quorum, args.expires_in_hours
    )
    print_user_message(
        f"Approval request {request.id} pending ({request.current_approvals}/{request.required_approvals})",
        quiet=args.quiet,
    )


def _print_status(view, args):
    r = view.request
    print_user_message(
        f"Request {r.id}: {r.status.value} ({r.current_approvals}/{r.required_approvals}), "
        f"can deploy: {'yes' if view.can_deploy else 'no'}",
        quiet=args.quiet,
    )
    for vote in view.votes:
        reason = f"  {vote.reason}" if vote.reason else ""
        print(f"  {vote.voted_at.isoformat()}  {vote.approver_id}  {vote.vote.value}{reason}")


def cmd_approve(args, db_path):
    _print_status(ApprovalWorkflow(db_path).cast_approve_vote(args.version, args.approver, args.reason), args)


def cmd_reject(args, db_path):
    _print_status(ApprovalWorkflow(db_path).cast_reject_vote(args.version, args.approver, args.reason), args)


def cmd_approval_status(args, db_path):
    _print_status(ApprovalWorkflow(db_path).get_approval_status(args.version), args)


def cmd_deploy(args, db_path):
    deployment = DeploymentPipeline(db_path).deploy(args.version, args.deployed_by)
    print_user_message(f"Deployed: {_deployment_line(deployment)}", quiet=args.quiet)


def cmd_rollback(args, db_path):
    restored = DeploymentPipeline(db_path).rollback(args.deployment, args.by, args.reason)
    print_user_message(f"Rolled back; active again: {_deployment_line(restored)}", quiet=args.quiet)


def cmd_history(args, db_path):
    history = DeploymentPipeline(db_path).get_history(args.agent, args.limit)
    if not history:
        print_user_message("No deployments yet.", quiet=args.quiet)
    for d in history:
        print(_deployment_line(d))


# -----------------------
# Parser
# -----------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="prompt-release",
        description="Version, approve, deploy and roll back agent prompts.",
    )
    parser.add_argument(
        "--db",
        default=str(DB_FILE_PATH),
        help=f"Path to SQLite database file (default: {DB_FILE_PATH})",
    )
    parser.add_argument("--quiet", action="store_true", help="Suppress non-essential output")
    parser.add_argument("--verbose", action="store_true", help="Print extra developer detail")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create or migrate the database")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("add-reviewer", help="Register a reviewer")
    p.add_argument("email")
    p.add_argument("name")
    p.add_argument("--role", default="reviewer", choices=["reviewer", "developer", "admin"])
    p.add_argument("--id", default=None, help="Reviewer id (default: generated)")
    p.set_defaults(func=cmd_add_reviewer)

    p = sub.add_parser("list-reviewers", help="List registered reviewers")
    p.set_defaults(func=cmd_list_reviewers)

    p = sub.add_parser("set-role", help="Change a reviewer's role")
    p.add_argument("reviewer")
    p.add_argument("role", choices=["reviewer", "developer", "admin"])
    p.set_defaults(func=cmd_set_role)

    p = sub.add_parser("create-branch", help="Create a branch for an agent")
    p.add_argument("agent")
    p.add_argument("name")
    p.add_argument("--base-version", default=None)
    p.add_argument("--parent-branch", default=None)
    p.set_defaults(func=cmd_create_branch)

    p = sub.add_parser("create-version", help="Create a prompt version")
    p.add_argument("agent")
    p.add_argument("--branch", default=None, help="Branch id (default: main)")
    p.add_argument("--content", default=None, help="System prompt text")
    p.add_argument("--content-file", default=None, help="Text file, or .json with structured content")
    p.add_argument("--parent", action="append", help="Parent version id (repeatable)")
    p.add_argument("--root", action="store_true", help="Create a version without parents")
    p.add_argument("--created-by", default="cli")
    p.set_defaults(func=cmd_create_version)

    p = sub.add_parser("list-versions", help="List versions on a branch, newest first")
    p.add_argument("branch")
    p.add_argument("--status", default=None, choices=["candidate", "approved", "production", "retired"])
    p.set_defaults(func=cmd_list_versions)

    p = sub.add_parser("lineage", help="Show ancestors and descendants of a version")
    p.add_argument("version")
    p.set_defaults(func=cmd_lineage)

    p = sub.add_parser("diff", help="Unified diff between two versions")
    p.add_argument("old")
    p.add_argument("new")
    p.set_defaults(func=cmd_diff)

    for name, func, help_text in (
        ("can-merge", cmd_can_merge, "Check whether a branch merges cleanly"),
        ("merge", cmd_merge, "Merge a branch into another"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("source")
        p.add_argument("target")
        if name == "merge":
            p.add_argument("--approved-by", required=True)
        p.set_defaults(func=func)

    p = sub.add_parser("request-approval", help="Submit a candidate version for review")
    p.add_argument("version")
    p.add_argument("--requested-by", required=True)
    p.add_argument("--quorum", type=int, default=DEFAULT_REQUIRED_APPROVALS)
    p.add_argument("--expires-in-hours", type=float, default=None)
    p.set_defaults(func=cmd_request_approval)

    p = sub.add_parser("approve", help="Cast an approve vote")
    p.add_argument("version")
    p.add_argument("--approver", required=True)
    p.add_argument("--reason", default=None)
    p.set_defaults(func=cmd_approve)

    p = sub.add_parser("reject", help="Cast a reject vote")
    p.add_argument("version")
    p.add_argument("--approver", required=True)
    p.add_argument("--reason", required=True)
    p.set_defaults(func=cmd_reject)

    p = sub.add_parser("approval-status", help="Show the approval request and its votes")
    p.add_argument("version")
    p.set_defaults(func=cmd_approval_status)

    p = sub.add_parser("deploy", help="Deploy an approved version")
    p.add_argument("version")
    p.add_argument("--deployed-by", required=True)
    p.set_defaults(func=cmd_deploy)

    p = sub.add_parser("rollback", help="Roll back a deployment one step")
    p.add_argument("deployment")
    p.add_argument("--by", required=True)
    p.add_argument("--reason", default=None)
    p.set_defaults(func=cmd_rollback)

    p = sub.add_parser("history", help="Deployment history of an agent, newest first")
    p.add_argument("agent")
    p.add_argument("--limit", type=int, default=DEPLOYMENT_HISTORY_LIMIT)
    p.set_defaults(func=cmd_history)

    return parser


def main(argv=None) -> int:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    db_path = args.db

    try:
        if args.func is not cmd_init_db:
            init_db(db_path)
        args.func(args, db_path)
    except PromptReleaseError as e:
        print_error(e, verbose=args.verbose)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
