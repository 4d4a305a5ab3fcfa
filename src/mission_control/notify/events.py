# src/mission_control/notify/events.py

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from ..tasks.task_models import Board, Task


class EventKind(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    CLAIMED = "claimed"
    UNCLAIMED = "unclaimed"
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"
    COMPLETED = "completed"
    DELETED = "deleted"
    ARCHIVED = "archived"
    UNARCHIVED = "unarchived"


@dataclass(frozen=True, slots=True)
class EventScope:
    """Who may see an event: the board, its owner and the agents staffed on it."""

    board_id: int
    owner_id: int
    agent_ids: frozenset[int] = frozenset()

    @classmethod
    def of(cls, board: Board) -> EventScope:
        return cls(board_id=board.id, owner_id=board.user_id, agent_ids=board.agent_ids)


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """
    One committed task mutation.

    Built right after the write succeeds, handed to the fan-out, never stored.
    `task` is the post-mutation snapshot (for deletes: the last known state).
    """

    kind: EventKind
    task: Task
    scope: EventScope

    @property
    def task_id(self) -> int:
        return self.task.id

    @property
    def version(self) -> int:
        return self.task.version

    @classmethod
    def for_task(cls, kind: EventKind, task: Task, board: Board) -> ChangeEvent:
        return cls(kind=kind, task=task, scope=EventScope.of(board))

    def to_message(self) -> dict[str, Any]:
        if self.kind == EventKind.DELETED:
            data: dict[str, Any] = {"id": str(self.task.id), "board_id": str(self.task.board_id)}
        else:
            data = self.task.to_json()
        return {
            "type": "task_event",
            "event": f"task_{self.kind.value}",
            "board_id": str(self.scope.board_id),
            "data": data,
        }


def connected_message() -> dict[str, Any]:
    return {"type": "connected", "message": "WebSocket connection established"}
