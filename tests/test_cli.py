# tests/test_cli.py
import json

import pytest

from prompt_release.cli import build_parser, main


@pytest.fixture
def cli_db(tmp_path):
    return str(tmp_path / "cli.db")


def run(cli_db, *argv):
    return main(["--db", cli_db, *argv])


def _created_id(capsys):
    return capsys.readouterr().out.split()[0]


def test_init_db_reports_applied_migrations(cli_db, capsys):
    assert run(cli_db, "init-db") == 0
    assert "Applied 1 migration(s)" in capsys.readouterr().out
    assert run(cli_db, "init-db") == 0
    assert "is up to date" in capsys.readouterr().out


def test_full_release_flow(cli_db, capsys):
    assert run(cli_db, "add-reviewer", "carol@example.com", "Carol", "--role", "admin", "--id", "carol") == 0
    capsys.readouterr()

    assert run(cli_db, "create-version", "agent-1", "--content", "Be helpful.", "--created-by", "dev") == 0
    version_id = _created_id(capsys)

    assert run(cli_db, "request-approval", version_id, "--requested-by", "dev", "--quorum", "1") == 0
    assert "pending (0/1)" in capsys.readouterr().out

    assert run(cli_db, "approve", version_id, "--approver", "carol") == 0
    assert "can deploy: yes" in capsys.readouterr().out

    assert run(cli_db, "deploy", version_id, "--deployed-by", "carol") == 0
    assert f"version={version_id}" in capsys.readouterr().out

    assert run(cli_db, "history", "agent-1") == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 1
    assert "active" in lines[0]


def test_domain_errors_exit_non_zero(cli_db, capsys):
    assert run(cli_db, "create-version", "agent-1", "--content", "draft") == 0
    version_id = _created_id(capsys)

    assert run(cli_db, "deploy", version_id, "--deployed-by", "nobody") == 1
    err = capsys.readouterr().err
    assert err.startswith("Error (forbidden):")
    assert "Actionable:" in err


def test_diff_between_versions(cli_db, capsys, tmp_path):
    content_file = tmp_path / "prompt.json"
    content_file.write_text(json.dumps({"system_prompt": "a\nb", "tool_descriptions": {}}), encoding="utf-8")

    assert run(cli_db, "create-version", "agent-1", "--content-file", str(content_file)) == 0
    old_id = _created_id(capsys)
    assert run(cli_db, "create-version", "agent-1", "--content", "a\nB") == 0
    new_id = _created_id(capsys)

    assert run(cli_db, "diff", old_id, new_id) == 0
    out = capsys.readouterr().out
    assert "--- v1/system_prompt" in out
    assert "-b" in out.splitlines()
    assert "+B" in out.splitlines()


def test_missing_content_is_a_validation_error(cli_db, capsys):
    assert run(cli_db, "create-version", "agent-1") == 1
    assert "Error (validation_error)" in capsys.readouterr().err


def test_reject_requires_reason_flag():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["reject", "v1", "--approver", "carol"])


def test_reviewer_roles_can_be_listed_and_changed(cli_db, capsys):
    assert run(cli_db, "list-reviewers") == 0
    assert "No reviewers registered." in capsys.readouterr().out

    assert run(cli_db, "add-reviewer", "rita@example.com", "Rita", "--id", "rita") == 0
    assert run(cli_db, "set-role", "rita", "developer") == 0
    assert "Reviewer rita is now developer" in capsys.readouterr().out

    assert run(cli_db, "list-reviewers") == 0
    line = capsys.readouterr().out.strip()
    assert line.split() == ["rita", "developer", "rita@example.com", "Rita"]


def test_set_role_of_unknown_reviewer_fails(cli_db, capsys):
    assert run(cli_db, "set-role", "ghost", "admin") == 1
    assert "Error (not_found)" in capsys.readouterr().err
