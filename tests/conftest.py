# tests/conftest.py

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from types import SimpleNamespace

import pytest

from mission_control.auth.principal import AgentPrincipal, HumanPrincipal
from mission_control.tasks.task_models import Agent, Board, User
from mission_control.tasks.task_store import TaskStore

from .fakes import FakeClock, RecordingSink

T0 = 1_700_000_000.0


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with the composition root.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated from the developer's environment and .env file.
    """
    return SimpleNamespace(
        app_name="mission-control-test",
        log_level="DEBUG",
        host="127.0.0.1",
        port=0,
        # Paths (tmp per test run)
        data_dir=tmp_path,
        db_path=tmp_path / "mc.sqlite3",
        # Scheduler off by default; tests drive ticks explicitly.
        archive_enabled=False,
        archive_delay_hours=24.0,
        archive_interval_seconds=300.0,
        archive_batch_limit=200,
        channel_queue_size=64,
        agent_active_minutes=5,
        agent_idle_minutes=30,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def store(settings: SimpleNamespace) -> TaskStore:
    return TaskStore(settings.db_path)


@dataclass
class World:
    """A small seeded tenant: two users, an admin, three agents, one board."""

    owner: User
    stranger: User
    admin: User
    manager: Agent  # board.agent_id
    helper: Agent  # board participant
    outsider: Agent  # active, not on the board
    board: Board

    @property
    def as_owner(self) -> HumanPrincipal:
        return HumanPrincipal(self.owner)

    @property
    def as_stranger(self) -> HumanPrincipal:
        return HumanPrincipal(self.stranger)

    @property
    def as_admin(self) -> HumanPrincipal:
        return HumanPrincipal(self.admin)

    @property
    def as_manager(self) -> AgentPrincipal:
        return AgentPrincipal(self.manager)

    @property
    def as_helper(self) -> AgentPrincipal:
        return AgentPrincipal(self.helper)

    @property
    def as_outsider(self) -> AgentPrincipal:
        return AgentPrincipal(self.outsider)


@pytest.fixture()
def world(store: TaskStore) -> World:
    owner = store.add_user(email="owner@example.com", now_ts=T0)
    stranger = store.add_user(email="stranger@example.com", now_ts=T0)
    admin = store.add_user(email="admin@example.com", admin=True, now_ts=T0)
    manager = store.add_agent(name="Manager", slug="manager", now_ts=T0)
    helper = store.add_agent(name="Helper", slug="helper", now_ts=T0)
    outsider = store.add_agent(name="Outsider", slug="outsider", now_ts=T0)
    board = store.add_board(
        user_id=owner.id,
        name="Launch",
        agent_id=manager.id,
        participant_ids=[helper.id],
        now_ts=T0,
    )
    return World(
        owner=owner,
        stranger=stranger,
        admin=admin,
        manager=manager,
        helper=helper,
        outsider=outsider,
        board=board,
    )
