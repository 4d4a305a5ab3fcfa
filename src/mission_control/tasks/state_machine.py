# src/mission_control/tasks/state_machine.py

"""
Task state machine.

Pure functions: each takes the current Task (as persisted) and returns the
next Task, or raises. Nothing here touches the store or the clock; the caller
passes `now_ts` and is responsible for writing the result with a
compare-and-swap on `Task.version`.

Status moves are not forward-only: any column may be set from any other.
What is enforced is field consistency:
- completed_at is set iff status == done (derived, never patched directly)
- archived_at is only set on completed tasks, and only by archive()
- claimed_by is exclusive: a different agent cannot take over a claim

A transition that changes nothing returns the *same* object, so callers can
skip the write and the change event with an identity check.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import replace
from typing import Any

from ..errors import AlreadyClaimed, InvalidAgent, InvalidTransition, ValidationFailed
from .task_models import CLAIM_ADVANCES_FROM, Agent, Board, Priority, Task, TaskStatus

EDITABLE_FIELDS = frozenset({"name", "description", "status", "priority", "tags", "blocked", "position"})

# Derived by the state machine only.
DERIVED_FIELDS = frozenset({"completed", "completed_at", "archived", "archived_at"})

# Owned by claim/assign operations.
MANAGED_FIELDS = frozenset({"claimed_by", "claimed_at", "assignee_id", "assigned_at"})


def _ensure_not_archived(task: Task) -> None:
    if task.archived:
        raise InvalidTransition("archived_at", "Archived tasks must be unarchived before they change")


def _coerce_status(raw: Any) -> TaskStatus:
    try:
        return TaskStatus(str(raw))
    except ValueError:
        raise InvalidTransition("status", f"Unknown status {raw!r}") from None


def _coerce_priority(raw: Any) -> Priority:
    try:
        return Priority(str(raw))
    except ValueError:
        raise InvalidTransition("priority", f"Unknown priority {raw!r}") from None


def _coerce_tags(raw: Any) -> tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str) or not isinstance(raw, Iterable):
        raise ValidationFailed("tags must be a list of strings", field="tags")
    out: list[str] = []
    for t in raw:
        s = str(t).strip()
        if s and s not in out:
            out.append(s)
    return tuple(out)


def apply_update(task: Task, patch: Mapping[str, Any], *, now_ts: float) -> Task:
    """
    Apply a field patch.

    Moving into `done` stamps completed_at (kept if it was already set);
    moving to any other column clears it.
    """
    _ensure_not_archived(task)

    for key in patch:
        if key in DERIVED_FIELDS:
            raise InvalidTransition(key, f"{key} is derived from status and cannot be set directly")
        if key in MANAGED_FIELDS:
            raise InvalidTransition(key, f"{key} is changed through claim/assign, not update")
        if key not in EDITABLE_FIELDS:
            raise ValidationFailed(f"Unknown task field {key!r}", field=key)

    changes: dict[str, Any] = {}

    if "name" in patch:
        name = str(patch["name"] or "").strip()
        if not name:
            raise ValidationFailed("name must not be empty", field="name")
        if name != task.name:
            changes["name"] = name

    if "description" in patch:
        desc = patch["description"]
        desc = None if desc is None else str(desc)
        if desc != task.description:
            changes["description"] = desc

    if "priority" in patch:
        priority = _coerce_priority(patch["priority"])
        if priority != task.priority:
            changes["priority"] = priority

    if "tags" in patch:
        tags = _coerce_tags(patch["tags"])
        if tags != task.tags:
            changes["tags"] = tags

    if "blocked" in patch:
        blocked = bool(patch["blocked"])
        if blocked != task.blocked:
            changes["blocked"] = blocked

    if "position" in patch:
        try:
            position = int(patch["position"])
        except (TypeError, ValueError):
            raise ValidationFailed("position must be an integer", field="position") from None
        if position != task.position:
            changes["position"] = position

    status = task.status
    if "status" in patch:
        status = _coerce_status(patch["status"])
        if status != task.status:
            changes["status"] = status

    if status == TaskStatus.DONE:
        if task.completed_at is None:
            changes["completed_at"] = now_ts
    elif task.completed_at is not None:
        changes["completed_at"] = None

    if not changes:
        return task
    return replace(task, **changes, updated_at=now_ts)


def became_completed(before: Task, after: Task) -> bool:
    return before.completed_at is None and after.completed_at is not None


def claim(task: Task, agent_id: int, *, now_ts: float) -> Task:
    """
    Mark `agent_id` as actively working the task.

    Claiming an inbox/up_next task moves it to in_progress. Claiming a task in
    any later column (including done) only records the claimant.
    Re-claiming by the same agent is a no-op.
    """
    _ensure_not_archived(task)

    if task.claimed_by is not None:
        if task.claimed_by != agent_id:
            raise AlreadyClaimed(task.claimed_by)
        return task

    status = TaskStatus.IN_PROGRESS if task.status in CLAIM_ADVANCES_FROM else task.status
    return replace(
        task,
        claimed_by=agent_id,
        claimed_at=now_ts,
        status=status,
        updated_at=now_ts,
    )


def unclaim(task: Task, *, now_ts: float) -> Task:
    """Release the claim. Status is left where it is: unclaiming does not undo progress."""
    _ensure_not_archived(task)
    if task.claimed_by is None:
        return task
    return replace(task, claimed_by=None, claimed_at=None, updated_at=now_ts)


def assign(task: Task, agent: Agent | None, board: Board, *, now_ts: float) -> Task:
    _ensure_not_archived(task)

    if agent is None:
        raise InvalidAgent(None, "Agent does not exist")
    if not agent.is_active:
        raise InvalidAgent(agent.id, "Agent is not active")
    if board.id != task.board_id or not board.has_agent(agent.id):
        raise InvalidAgent(agent.id)

    if task.assignee_id == agent.id:
        return task
    return replace(task, assignee_id=agent.id, assigned_at=now_ts, updated_at=now_ts)


def unassign(task: Task, *, now_ts: float) -> Task:
    _ensure_not_archived(task)
    if task.assignee_id is None:
        return task
    return replace(task, assignee_id=None, assigned_at=None, updated_at=now_ts)


# ---- archival ----


def is_archivable(task: Task, *, cutoff_ts: float) -> bool:
    """Done, not yet archived, and completed at or before the retention cutoff."""
    return (
        task.status == TaskStatus.DONE
        and task.completed_at is not None
        and task.archived_at is None
        and task.completed_at <= cutoff_ts
    )


def archive(task: Task, *, now_ts: float) -> Task:
    """Flip the archived flag on a completed task (manual archive skips the retention window)."""
    if task.archived:
        raise InvalidTransition("archived_at", "Task is already archived")
    if task.status != TaskStatus.DONE or task.completed_at is None:
        raise InvalidTransition("status", "Only completed tasks can be archived")
    return replace(task, archived_at=now_ts, updated_at=now_ts)


def unarchive(task: Task, *, now_ts: float) -> Task:
    if not task.archived:
        raise InvalidTransition("archived_at", "Task is not archived")
    return replace(task, archived_at=None, updated_at=now_ts)


# ---- work queue ----


def next_rank(task: Task, agent_id: int, board: Board) -> tuple[int, int, float, int]:
    """
    Sort key for an agent's work queue:
    1. board-assignment match: assigned to this agent, then boards it manages, then the rest
    2. pipeline order (inbox first)
    3. oldest first
    """
    if task.assignee_id == agent_id:
        match = 0
    elif board.agent_id == agent_id:
        match = 1
    else:
        match = 2
    return (match, task.status.rank, task.created_at, task.id)


def is_pickable(task: Task, agent_id: int, board: Board) -> bool:
    return (
        task.claimed_by is None
        and not task.archived
        and not task.blocked
        and task.status != TaskStatus.DONE
        and task.assignee_id in (None, agent_id)
        and board.has_agent(agent_id)
    )


def pick_next(tasks: Iterable[Task], agent_id: int, boards: Mapping[int, Board]) -> Task | None:
    """Highest-ranked pickable task, or None when the queue is empty or fully claimed."""
    best: Task | None = None
    best_key: tuple[int, int, float, int] | None = None
    for t in tasks:
        board = boards.get(t.board_id)
        if board is None or not is_pickable(t, agent_id, board):
            continue
        key = next_rank(t, agent_id, board)
        if best_key is None or key < best_key:
            best, best_key = t, key
    return best
