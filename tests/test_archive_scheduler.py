# tests/test_archive_scheduler.py

from __future__ import annotations

import asyncio
import threading

import pytest

from mission_control.notify.fanout import NotificationHub
from mission_control.tasks.archive_scheduler import ArchiveScheduler
from mission_control.tasks.task_models import Board, Priority, Task, TaskStatus
from mission_control.tasks.task_store import TaskStore

from .conftest import T0, World
from .fakes import FakeChannel, FakeClock, FakeTaskRepo, RecordingSink

DAY = 86_400.0
BOARD = Board(id=10, name="B", user_id=1)


def done_task(task_id: int, completed_at: float | None, **kw) -> Task:
    base = dict(
        id=task_id,
        board_id=BOARD.id,
        name=f"t{task_id}",
        description=None,
        status=TaskStatus.DONE,
        priority=Priority.NONE,
        position=task_id,
        created_at=completed_at or T0,
        updated_at=completed_at or T0,
        completed_at=completed_at,
    )
    base.update(kw)
    return Task(**base)


def make_scheduler(repo, sink, clock, **kw) -> ArchiveScheduler:
    return ArchiveScheduler(repo, sink, clock=clock, retention_seconds=DAY, interval_seconds=60, **kw)


@pytest.mark.asyncio
async def test_tick_archives_only_past_retention() -> None:
    clock = FakeClock(T0)
    sink = RecordingSink()
    repo = FakeTaskRepo(
        [
            done_task(1, T0 - DAY - 1),
            done_task(2, T0 - DAY),
            done_task(3, T0 - DAY + 1),
            done_task(4, T0 - 2 * DAY, status=TaskStatus.IN_REVIEW),
            done_task(5, T0 - 2 * DAY, archived_at=T0 - DAY),
        ],
        [BOARD],
    )
    scheduler = make_scheduler(repo, sink, clock)

    archived = await scheduler.tick()
    assert sorted(t.id for t in archived) == [1, 2]
    assert all(t.archived_at == T0 for t in archived)
    assert sink.kinds() == ["archived", "archived"]

    # Nothing is archived twice.
    assert await scheduler.tick() == []
    assert len(sink.events) == 2

    clock.advance(2)
    assert [t.id for t in await scheduler.tick()] == [3]


@pytest.mark.asyncio
async def test_tick_drains_backlog_in_batches() -> None:
    sink = RecordingSink()
    repo = FakeTaskRepo([done_task(i, T0 - 2 * DAY) for i in range(1, 8)], [BOARD])
    scheduler = make_scheduler(repo, sink, FakeClock(T0), batch_limit=3)

    archived = await scheduler.tick()
    assert len(archived) == 7
    assert repo.calls == 3
    assert len(sink.events) == 7


@pytest.mark.asyncio
async def test_failed_tick_is_logged_and_next_tick_retries(caplog) -> None:
    sink = RecordingSink()
    repo = FakeTaskRepo([done_task(1, T0 - 2 * DAY)], [BOARD])
    repo.fail_next = 1
    scheduler = make_scheduler(repo, sink, FakeClock(T0))

    assert await scheduler.tick() is None
    assert "store unavailable" in caplog.text
    assert sink.events == []

    archived = await scheduler.tick()
    assert [t.id for t in archived] == [1]


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped() -> None:
    repo = FakeTaskRepo([done_task(1, T0 - 2 * DAY)], [BOARD])
    repo.gate = threading.Event()
    sink = RecordingSink()
    scheduler = make_scheduler(repo, sink, FakeClock(T0))

    first = asyncio.create_task(scheduler.tick())
    await asyncio.to_thread(repo.entered.wait, 5.0)

    assert await scheduler.tick() is None

    repo.gate.set()
    archived = await first
    assert [t.id for t in archived] == [1]
    assert repo.calls == 1

    # A later tick finds nothing left; task 1 was announced exactly once.
    assert await scheduler.tick() == []
    assert sink.kinds() == ["archived"]
    assert [e.task_id for e in sink.events] == [1]


@pytest.mark.asyncio
async def test_start_runs_immediately_and_stop_cancels() -> None:
    repo = FakeTaskRepo([done_task(1, T0 - 2 * DAY)], [BOARD])
    sink = RecordingSink()
    scheduler = make_scheduler(repo, sink, FakeClock(T0))

    scheduler.start()
    assert scheduler.running
    await asyncio.to_thread(repo.entered.wait, 5.0)
    for _ in range(50):
        if sink.events:
            break
        await asyncio.sleep(0.01)
    await scheduler.stop()

    assert not scheduler.running
    assert sink.kinds() == ["archived"]


@pytest.mark.asyncio
async def test_disabled_scheduler_does_not_start() -> None:
    scheduler = make_scheduler(FakeTaskRepo([], [BOARD]), RecordingSink(), FakeClock(T0), enabled=False)
    scheduler.start()
    assert not scheduler.running
    await scheduler.stop()


@pytest.mark.asyncio
async def test_archive_events_reach_entitled_channels(store: TaskStore, world: World) -> None:
    hub = NotificationHub()
    owner_ch = FakeChannel()
    stranger_ch = FakeChannel()
    await hub.register(world.as_owner, owner_ch)
    await hub.register(world.as_stranger, stranger_ch)

    task = store.add_task(board_id=world.board.id, name="old", status=TaskStatus.DONE, now_ts=T0 - 2 * DAY)
    scheduler = ArchiveScheduler(store, hub, clock=FakeClock(T0), retention_seconds=DAY)

    archived = await scheduler.tick()
    assert [t.id for t in archived] == [task.id]
    for _ in range(10):
        await asyncio.sleep(0)

    assert owner_ch.events() == ["task_archived"]
    assert owner_ch.sent[-1]["data"]["archived"] is True
    assert stranger_ch.events() == []
    await hub.close()


@pytest.mark.asyncio
async def test_scheduled_archive_is_recorded_in_history(store: TaskStore, world: World) -> None:
    task = store.add_task(board_id=world.board.id, name="old", status=TaskStatus.DONE, now_ts=T0 - 2 * DAY)
    scheduler = ArchiveScheduler(store, RecordingSink(), clock=FakeClock(T0), retention_seconds=DAY)

    await scheduler.tick()

    (row,) = store.list_activities(task.id)
    assert row.action == "archived"
    assert (row.actor_type, row.source) == ("system", "scheduler")
    assert (row.field_name, row.old_value, row.new_value) == ("archived", "false", "true")
    assert row.created_at == T0
