# tests/test_cli.py

from __future__ import annotations

from types import SimpleNamespace

import pytest

from mission_control.cli import main as cli
from mission_control.tasks.task_models import TaskStatus
from mission_control.tasks.task_store import TaskStore


@pytest.fixture()
def run(settings: SimpleNamespace, monkeypatch, capsys):
    monkeypatch.setattr(cli, "get_settings", lambda: settings)
    # Leave pytest's log capture handlers alone.
    monkeypatch.setattr(cli, "setup_logging", lambda **_: None)

    def _run(*argv: str) -> tuple[int, str]:
        code = cli.main(list(argv))
        return code, capsys.readouterr().out.strip()

    return _run


def test_parse_args_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        cli.parse_args([])

    args = cli.parse_args(["serve", "--port", "9001"])
    assert args.command == "serve" and args.port == 9001 and args.host is None


def test_issue_token_needs_exactly_one_owner() -> None:
    with pytest.raises(SystemExit):
        cli.parse_args(["issue-token"])
    with pytest.raises(SystemExit):
        cli.parse_args(["issue-token", "--user-id", "1", "--agent-id", "2"])


def test_provisioning_commands(run, settings: SimpleNamespace) -> None:
    code, out = run("create-user", "--email", "Ops@Example.com", "--admin")
    assert code == 0
    assert "email=ops@example.com" in out and "admin=True" in out

    code, out = run("create-agent", "--name", "Build Bot")
    assert code == 0
    assert "slug=build-bot" in out

    store = TaskStore(settings.db_path)
    agent = store.get_agent_by_slug("build-bot")
    assert agent is not None

    code, token = run("issue-token", "--agent-id", str(agent.id), "--name", "ci")
    assert code == 0
    assert store.resolve_token(token) == (None, agent.id)


def test_duplicate_agent_slug_exits_with_error(run) -> None:
    assert run("create-agent", "--name", "Bot")[0] == 0
    code, _ = run("create-agent", "--name", "Other", "--slug", "bot")
    assert code == 2


def test_archive_once(run, settings: SimpleNamespace) -> None:
    store = TaskStore(settings.db_path)
    user = store.add_user(email="owner@example.com")
    board = store.add_board(user_id=user.id, name="B")
    store.add_task(board_id=board.id, name="old", status=TaskStatus.DONE, now_ts=1.0)
    store.add_task(board_id=board.id, name="open", now_ts=1.0)

    code, out = run("archive-once")
    assert code == 0
    assert out == "archived 1 task(s)"
    assert run("archive-once")[1] == "archived 0 task(s)"
