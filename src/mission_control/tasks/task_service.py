# src/mission_control/tasks/task_service.py

"""
Task lifecycle service.

Every mutation follows the same path:
  load (scoped) -> authorization gate -> state machine -> CAS write -> change event

Loads are scoped: a task on a board the principal cannot read is reported as
NotFound, the same as a task that does not exist. The CAS write is retried
from a fresh load when another writer wins, so check-then-set decisions
(claim exclusivity above all) are always made against the persisted row.

Write and publish happen under one per-task lock, so events for a task leave
this process in the order their writes committed. History rows are written
in the same transaction as the change they describe.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from ..auth import gate
from ..auth.gate import Operation
from ..auth.principal import AgentPrincipal, HumanPrincipal, Principal
from ..core.ports import Clock, EventSink
from ..errors import InvalidAgent, InvalidTransition, NotFound, StoreUnavailable, ValidationFailed
from ..notify.events import ChangeEvent, EventKind
from . import activity
from . import state_machine as sm
from .task_models import Activity, ActivityAction, Board, Priority, Task, TaskFilters, TaskStatus
from .task_store import TaskStore

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5

Transition = Callable[[Task, Board], Task]


@dataclass(slots=True)
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class TaskLocks:
    """
    One lock per task id, created on demand.

    An entry is dropped once nobody holds or waits on it, so the table only
    ever contains tasks that are being written right now.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[int, _LockEntry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    @contextlib.contextmanager
    def hold(self, task_id: int) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(task_id)
            if entry is None:
                entry = self._entries[task_id] = _LockEntry()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[task_id]


class TaskService:
    def __init__(self, store: TaskStore, events: EventSink, *, clock: Clock = time.time) -> None:
        self._store = store
        self._events = events
        self._clock = clock
        self.locks = TaskLocks()

    # ---- scoping helpers ----

    def visible_board_ids(self, principal: Principal) -> list[int] | None:
        """Board ids the principal may read; None means unrestricted (admin)."""
        if principal.is_admin:
            return None
        if isinstance(principal, HumanPrincipal):
            boards = self._store.list_boards(user_id=principal.user.id)
        else:
            boards = self._store.list_boards(agent_id=principal.agent.id)
        return [b.id for b in boards]

    def _load(self, principal: Principal, task_id: int) -> tuple[Task, Board]:
        task = self._store.get_task(task_id)
        if task is None:
            raise NotFound("task")
        board = self._store.get_board(task.board_id)
        if board is None or not gate.check(principal, Operation.READ, board):
            raise NotFound("task")
        return task, board

    def _board(self, principal: Principal, board_id: int) -> Board:
        board = self._store.get_board(board_id)
        if board is None or not gate.check(principal, Operation.READ, board):
            raise NotFound("board")
        return board

    def _emit(self, kind: EventKind, task: Task, board: Board) -> None:
        try:
            self._events.publish(ChangeEvent.for_task(kind, task, board))
        except Exception:
            # Delivery is best-effort; the write has already committed.
            logger.exception("Failed to publish %s event for task %s", kind.value, task.id)

    def _mutate(
        self,
        principal: Principal,
        task_id: int,
        operation: Operation,
        transition: Transition,
        *,
        action: ActivityAction,
        target_agent_id: int | None = None,
        note: str | None = None,
    ) -> tuple[Task, Task, Board]:
        """
        Returns (before, after, board). after is before when nothing changed.
        Callers hold the task's lock until they have published.
        """
        actor = activity.actor_of(principal)
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            task, board = self._load(principal, task_id)
            gate.require(principal, operation, board, task=task, target_agent_id=target_agent_id)

            updated = transition(task, board)
            if updated is task:
                return task, task, board

            rows = activity.changes(action, task, updated, actor, now_ts=updated.updated_at)
            if note is not None:
                rows.append(activity.note(task.id, note, actor, now_ts=updated.updated_at))
            stored = self._store.try_replace_task(updated, expected_version=task.version, activities=rows)
            if stored is not None:
                return task, stored, board

            logger.debug(
                "CAS conflict task=%s op=%s attempt=%s version=%s",
                task_id,
                operation.value,
                attempt,
                task.version,
            )
        raise StoreUnavailable("Task is being modified concurrently; retry the request")

    # ---- queries ----

    def get_task(self, principal: Principal, task_id: int) -> Task:
        task, _ = self._load(principal, task_id)
        return task

    def list_tasks(self, principal: Principal, filters: TaskFilters | None = None) -> list[Task]:
        return self._store.list_tasks(filters, board_scope=self.visible_board_ids(principal))

    def list_archived(
        self,
        principal: Principal,
        *,
        board_id: int | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[Task], int]:
        return self._store.list_archived_tasks(
            board_scope=self.visible_board_ids(principal),
            board_id=board_id,
            page=page,
            limit=limit,
        )

    def list_activities(self, principal: Principal, task_id: int, *, limit: int = 100) -> list[Activity]:
        """History of a task the principal can read, newest first."""
        task, _ = self._load(principal, task_id)
        return self._store.list_activities(task.id, limit=limit)

    def pending_attention(self, principal: Principal) -> list[Task]:
        """Claimed tasks still in progress: the caller's own claims for an agent."""
        if isinstance(principal, AgentPrincipal):
            return self._store.list_claimed_tasks(principal.agent.id, status=TaskStatus.IN_PROGRESS)
        if not (principal.is_admin or principal.user.auto_mode):
            return []
        tasks = self.list_tasks(principal, TaskFilters(status=TaskStatus.IN_PROGRESS))
        return [t for t in tasks if t.claimed_by is not None]

    def next_task(self, principal: Principal, agent_id: int | None = None) -> Task | None:
        """
        Best unclaimed task for an agent, or None.

        An agent asks for itself. A human in auto mode asks on behalf of an
        agent staffed on one of their boards; without auto mode the answer is
        always "nothing to do".
        """
        if isinstance(principal, AgentPrincipal):
            agent_id = principal.agent.id if agent_id is None else agent_id
        elif not (principal.is_admin or principal.user.auto_mode):
            return None

        gate.require(principal, Operation.NEXT, target_agent_id=agent_id)
        if agent_id is None:
            raise ValidationFailed("agent_id is required", field="agent_id")

        agent = self._store.get_agent(agent_id)
        if agent is None or not agent.is_active:
            raise InvalidAgent(agent_id, "Agent does not exist or is not active")

        boards = self._store.list_boards(agent_id=agent_id)
        if isinstance(principal, HumanPrincipal) and not principal.is_admin:
            boards = [b for b in boards if b.user_id == principal.user.id]
        if not boards:
            return None

        by_id = {b.id: b for b in boards}
        candidates = self._store.list_pickable_tasks(by_id.keys(), agent_id=agent_id)
        return sm.pick_next(candidates, agent_id, by_id)

    # ---- mutations ----

    def create_task(
        self,
        principal: Principal,
        *,
        board_id: int,
        name: str,
        description: str | None = None,
        status: TaskStatus | str = TaskStatus.INBOX,
        priority: Priority | str = Priority.NONE,
        tags: Iterable[str] = (),
    ) -> Task:
        board = self._board(principal, board_id)
        gate.require(principal, Operation.CREATE, board)

        try:
            status = TaskStatus(status)
        except ValueError:
            raise InvalidTransition("status", f"Unknown status {status!r}") from None
        try:
            priority = Priority(priority)
        except ValueError:
            raise InvalidTransition("priority", f"Unknown priority {priority!r}") from None

        now = self._clock()
        user_id = principal.user.id if isinstance(principal, HumanPrincipal) else board.user_id
        task = self._store.add_task(
            board_id=board.id,
            name=name,
            description=description,
            user_id=user_id,
            status=status,
            priority=priority,
            tags=tags,
            now_ts=now,
            activities=[activity.created(status, activity.actor_of(principal), now_ts=now)],
        )
        logger.info("Task created id=%s board=%s by=%s", task.id, board.id, principal.principal_id)
        self._emit(EventKind.CREATED, task, board)
        return task

    @staticmethod
    def _note(raw: Any) -> str | None:
        if raw is None:
            return None
        if not isinstance(raw, str):
            raise ValidationFailed("activity_note must be a string", field="activity_note")
        return raw.strip() or None

    def update_task(self, principal: Principal, task_id: int, patch: Mapping[str, Any]) -> Task:
        """
        Apply a field patch. `activity_note` is not a task field: it is kept in
        the task's history, even when the patch changes nothing else.
        """
        patch = dict(patch)
        note = self._note(patch.pop("activity_note", None))
        now = self._clock()
        with self.locks.hold(task_id):
            before, after, board = self._mutate(
                principal,
                task_id,
                Operation.UPDATE,
                lambda t, _b: sm.apply_update(t, patch, now_ts=now),
                action=ActivityAction.UPDATE,
                note=note,
            )
            if after is before:
                if note is not None:
                    self._store.add_activity(activity.note(after.id, note, activity.actor_of(principal), now_ts=now))
                return after
            kind = EventKind.COMPLETED if sm.became_completed(before, after) else EventKind.UPDATED
            logger.info("Task %s %s by=%s", after.id, kind.value, principal.principal_id)
            self._emit(kind, after, board)
        return after

    def claim_task(self, principal: Principal, task_id: int, agent_id: int | None = None) -> Task:
        if agent_id is None:
            if not isinstance(principal, AgentPrincipal):
                raise ValidationFailed("agent_id is required", field="agent_id")
            agent_id = principal.agent.id

        now = self._clock()
        claimant = agent_id

        def transition(task: Task, board: Board) -> Task:
            agent = self._store.get_agent(claimant)
            if agent is None or not agent.is_active:
                raise InvalidAgent(claimant, "Agent does not exist or is not active")
            if not board.has_agent(claimant):
                raise InvalidAgent(claimant)
            return sm.claim(task, claimant, now_ts=now)

        with self.locks.hold(task_id):
            before, after, board = self._mutate(
                principal,
                task_id,
                Operation.CLAIM,
                transition,
                action=ActivityAction.CLAIM,
                target_agent_id=claimant,
            )
            if after is not before:
                logger.info("Task %s claimed by agent=%s status=%s", after.id, claimant, after.status.value)
                self._emit(EventKind.CLAIMED, after, board)
        return after

    def unclaim_task(self, principal: Principal, task_id: int) -> Task:
        now = self._clock()
        with self.locks.hold(task_id):
            before, after, board = self._mutate(
                principal,
                task_id,
                Operation.UNCLAIM,
                lambda t, _b: sm.unclaim(t, now_ts=now),
                action=ActivityAction.UNCLAIM,
            )
            if after is not before:
                logger.info("Task %s unclaimed (was agent=%s)", after.id, before.claimed_by)
                self._emit(EventKind.UNCLAIMED, after, board)
        return after

    def assign_task(self, principal: Principal, task_id: int, agent_id: int) -> Task:
        now = self._clock()
        with self.locks.hold(task_id):
            before, after, board = self._mutate(
                principal,
                task_id,
                Operation.ASSIGN,
                lambda t, b: sm.assign(t, self._store.get_agent(agent_id), b, now_ts=now),
                action=ActivityAction.ASSIGN,
                target_agent_id=agent_id,
            )
            if after is not before:
                logger.info("Task %s assigned to agent=%s", after.id, agent_id)
                self._emit(EventKind.ASSIGNED, after, board)
        return after

    def unassign_task(self, principal: Principal, task_id: int) -> Task:
        now = self._clock()
        with self.locks.hold(task_id):
            before, after, board = self._mutate(
                principal,
                task_id,
                Operation.UNASSIGN,
                lambda t, _b: sm.unassign(t, now_ts=now),
                action=ActivityAction.UNASSIGN,
            )
            if after is not before:
                logger.info("Task %s unassigned", after.id)
                self._emit(EventKind.UNASSIGNED, after, board)
        return after

    def archive_task(self, principal: Principal, task_id: int) -> Task:
        """Archive a completed task now, without waiting for the retention window."""
        now = self._clock()
        with self.locks.hold(task_id):
            _, after, board = self._mutate(
                principal,
                task_id,
                Operation.ARCHIVE,
                lambda t, _b: sm.archive(t, now_ts=now),
                action=ActivityAction.ARCHIVED,
            )
            self._emit(EventKind.ARCHIVED, after, board)
        return after

    def unarchive_task(self, principal: Principal, task_id: int) -> Task:
        now = self._clock()
        with self.locks.hold(task_id):
            _, after, board = self._mutate(
                principal,
                task_id,
                Operation.ARCHIVE,
                lambda t, _b: sm.unarchive(t, now_ts=now),
                action=ActivityAction.UNARCHIVED,
            )
            self._emit(EventKind.UNARCHIVED, after, board)
        return after

    def delete_task(self, principal: Principal, task_id: int, *, archived_only: bool = False) -> None:
        """
        Delete a task. The DELETE is conditional on the version that was
        authorized, so the `deleted` event carries the row as it was removed.
        """
        with self.locks.hold(task_id):
            for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
                task, board = self._load(principal, task_id)
                gate.require(principal, Operation.DELETE, board, task=task)
                if archived_only and not task.archived:
                    raise InvalidTransition("archived_at", "Only archived tasks can be permanently deleted")

                if self._store.delete_task(task.id, expected_version=task.version):
                    logger.info("Task %s deleted by=%s", task.id, principal.principal_id)
                    self._emit(EventKind.DELETED, task, board)
                    return

                logger.debug("Delete conflict task=%s attempt=%s version=%s", task_id, attempt, task.version)
        raise StoreUnavailable("Task is being modified concurrently; retry the request")

    # ---- agent eligibility ----

    def release_agent(self, agent_id: int, *, board_id: int | None = None) -> list[Task]:
        """
        Drop the claims and assignments `agent_id` holds, on one board or on all.

        Called once the agent is no longer valid there (taken off the board,
        deactivated or deleted). The caller has already authorized that change,
        so this runs as the system. Archived tasks are left as they were.
        """
        released: list[Task] = []
        for held in self._store.list_tasks_held_by(agent_id, board_id=board_id):
            task = self._release(held.id, agent_id)
            if task is not None:
                released.append(task)
        if released:
            logger.info(
                "Released %s task(s) held by agent=%s board=%s",
                len(released),
                agent_id,
                board_id if board_id is not None else "*",
            )
        return released

    def _release(self, task_id: int, agent_id: int) -> Task | None:
        with self.locks.hold(task_id):
            for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
                task = self._store.get_task(task_id)
                board = self._store.get_board(task.board_id) if task is not None else None
                if task is None or board is None or task.archived:
                    return None

                now = self._clock()
                updated = task
                kinds: list[EventKind] = []
                rows: list[Activity] = []
                if task.claimed_by == agent_id:
                    step = sm.unclaim(updated, now_ts=now)
                    rows += activity.changes(ActivityAction.UNCLAIM, updated, step, activity.SYSTEM, now_ts=now)
                    updated = step
                    kinds.append(EventKind.UNCLAIMED)
                if task.assignee_id == agent_id:
                    step = sm.unassign(updated, now_ts=now)
                    rows += activity.changes(ActivityAction.UNASSIGN, updated, step, activity.SYSTEM, now_ts=now)
                    updated = step
                    kinds.append(EventKind.UNASSIGNED)
                if not kinds:
                    return None

                stored = self._store.try_replace_task(updated, expected_version=task.version, activities=rows)
                if stored is not None:
                    for kind in kinds:
                        self._emit(kind, stored, board)
                    return stored

                logger.debug("Release conflict task=%s attempt=%s version=%s", task_id, attempt, task.version)
        raise StoreUnavailable("Task is being modified concurrently; retry the request")
