# tests/test_board_service.py

from __future__ import annotations

import pytest

from mission_control.errors import Forbidden, NotFound, ValidationFailed
from mission_control.tasks.board_service import BoardService
from mission_control.tasks.task_service import TaskService
from mission_control.tasks.task_store import TaskStore

from .conftest import T0, World
from .fakes import FakeClock, RecordingSink


@pytest.fixture()
def tasks(store: TaskStore, sink: RecordingSink, clock: FakeClock) -> TaskService:
    return TaskService(store, sink, clock=clock)


@pytest.fixture()
def boards(store: TaskStore, sink: RecordingSink, clock: FakeClock, tasks: TaskService) -> BoardService:
    return BoardService(store, sink, tasks=tasks, clock=clock)


def held_by_helper(tasks: TaskService, world: World) -> tuple[int, int]:
    """One task claimed by the helper and one assigned to it."""
    claimed = tasks.create_task(world.as_owner, board_id=world.board.id, name="claimed")
    assigned = tasks.create_task(world.as_owner, board_id=world.board.id, name="assigned")
    tasks.claim_task(world.as_helper, claimed.id)
    tasks.assign_task(world.as_owner, assigned.id, world.helper.id)
    return claimed.id, assigned.id


def test_taking_an_agent_off_a_board_releases_its_work(
    boards: BoardService, tasks: TaskService, sink: RecordingSink, store: TaskStore, world: World
) -> None:
    claimed_id, assigned_id = held_by_helper(tasks, world)

    updated = boards.update_board(world.as_owner, world.board.id, {"participant_ids": []})

    assert not updated.has_agent(world.helper.id)
    assert store.get_task(claimed_id).claimed_by is None
    assert store.get_task(assigned_id).assignee_id is None
    assert sink.kinds()[-2:] == ["unclaimed", "unassigned"]
    assert all(e.scope.board_id == world.board.id for e in sink.events[-2:])

    # The agent can no longer take the work back.
    assert tasks.next_task(world.as_helper) is None


def test_board_edit_that_keeps_an_agent_leaves_its_work_alone(
    boards: BoardService, tasks: TaskService, sink: RecordingSink, store: TaskStore, world: World
) -> None:
    claimed_id, _ = held_by_helper(tasks, world)
    before = len(sink.events)

    boards.update_board(world.as_owner, world.board.id, {"name": "Renamed"})

    assert store.get_task(claimed_id).claimed_by == world.helper.id
    assert len(sink.events) == before


def test_deactivating_an_agent_releases_its_work_everywhere(
    boards: BoardService, tasks: TaskService, sink: RecordingSink, store: TaskStore, world: World
) -> None:
    claimed_id, assigned_id = held_by_helper(tasks, world)
    other = boards.create_board(world.as_owner, name="Other", participant_ids=[world.helper.id])
    elsewhere = tasks.create_task(world.as_owner, board_id=other.id, name="elsewhere")
    tasks.claim_task(world.as_helper, elsewhere.id)

    agent = boards.set_agent_active(world.as_admin, world.helper.id, False)

    assert not agent.is_active
    assert store.get_task(claimed_id).claimed_by is None
    assert store.get_task(assigned_id).assignee_id is None
    assert store.get_task(elsewhere.id).claimed_by is None
    assert sink.kinds()[-3:] == ["unclaimed", "unassigned", "unclaimed"]


def test_archived_work_is_not_released(
    boards: BoardService, tasks: TaskService, store: TaskStore, world: World
) -> None:
    task = tasks.create_task(world.as_owner, board_id=world.board.id, name="shipped")
    tasks.claim_task(world.as_helper, task.id)
    tasks.update_task(world.as_helper, task.id, {"status": "done"})
    tasks.archive_task(world.as_owner, task.id)

    boards.set_agent_active(world.as_admin, world.helper.id, False)

    assert store.get_task(task.id).claimed_by == world.helper.id


def test_delete_agent_deactivates_and_releases(
    boards: BoardService, tasks: TaskService, sink: RecordingSink, store: TaskStore, world: World
) -> None:
    claimed_id, assigned_id = held_by_helper(tasks, world)

    with pytest.raises(Forbidden):
        boards.delete_agent(world.as_owner, world.helper.id)

    boards.delete_agent(world.as_admin, world.helper.id)

    assert not store.get_agent(world.helper.id).is_active
    assert store.get_task(claimed_id).claimed_by is None
    assert store.get_task(assigned_id).assignee_id is None
    assert sink.kinds()[-2:] == ["unclaimed", "unassigned"]

    with pytest.raises(NotFound):
        boards.delete_agent(world.as_admin, world.helper.id)
    with pytest.raises(NotFound):
        boards.delete_agent(world.as_admin, 9999)


def test_update_agent_is_admin_only_and_validated(
    boards: BoardService, clock: FakeClock, world: World
) -> None:
    with pytest.raises(Forbidden):
        boards.update_agent(world.as_owner, world.helper.id, {"name": "Nope"})
    with pytest.raises(Forbidden):
        boards.update_agent(world.as_helper, world.helper.id, {"name": "Nope"})

    clock.advance(30)
    agent = boards.update_agent(world.as_admin, world.helper.id, {"name": "Builder", "emoji": "🔧"})
    assert (agent.name, agent.slug, agent.emoji) == ("Builder", "helper", "🔧")
    assert agent.updated_at == T0 + 30

    with pytest.raises(ValidationFailed):
        boards.update_agent(world.as_admin, world.helper.id, {"is_active": False})
    with pytest.raises(ValidationFailed):
        boards.update_agent(world.as_admin, world.helper.id, {"slug": world.manager.slug})
    with pytest.raises(ValidationFailed):
        boards.update_agent(world.as_admin, world.helper.id, {"name": "   "})
    with pytest.raises(NotFound):
        boards.update_agent(world.as_admin, 9999, {"name": "Ghost"})


def test_set_agent_active_reports_an_agent_that_vanished(
    boards: BoardService, store: TaskStore, world: World, monkeypatch
) -> None:
    real_get = store.get_agent
    answers = [real_get(world.helper.id), None]

    # The row disappears between the write and the read back.
    monkeypatch.setattr(store, "get_agent", lambda agent_id: answers.pop(0))

    with pytest.raises(NotFound):
        boards.set_agent_active(world.as_admin, world.helper.id, False)
