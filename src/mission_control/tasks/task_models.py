# src/mission_control/tasks/task_models.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class TaskStatus(StrEnum):
    """
    Kanban column of a task.

    Members are declared in pipeline order; `rank` is used to sort work queues.
    Archival is not a status: it is the separate `archived_at` flag.
    """

    INBOX = "inbox"
    UP_NEXT = "up_next"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    DONE = "done"

    @property
    def rank(self) -> int:
        return _PIPELINE.index(self)

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.INBOX
        try:
            return cls(raw)
        except ValueError:
            return cls.INBOX


_PIPELINE: tuple[TaskStatus, ...] = tuple(TaskStatus)

# Claiming a task in one of these columns means work has started.
CLAIM_ADVANCES_FROM = frozenset({TaskStatus.INBOX, TaskStatus.UP_NEXT})


class Priority(StrEnum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AgentActivity(StrEnum):
    ACTIVE = "active"
    IDLE = "idle"
    OFFLINE = "offline"


def iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=UTC).isoformat().replace("+00:00", "Z")


@dataclass(slots=True, frozen=True)
class Task:
    id: int
    board_id: int
    name: str
    description: str | None
    status: TaskStatus
    priority: Priority
    position: int
    created_at: float
    updated_at: float

    user_id: int | None = None
    tags: tuple[str, ...] = ()
    blocked: bool = False

    assignee_id: int | None = None
    assigned_at: float | None = None
    claimed_by: int | None = None
    claimed_at: float | None = None

    completed_at: float | None = None
    archived_at: float | None = None

    # Bumped on every write; the store's compare-and-swap key.
    version: int = 1

    @property
    def completed(self) -> bool:
        return self.completed_at is not None

    @property
    def archived(self) -> bool:
        return self.archived_at is not None

    def to_json(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "position": self.position,
            "board_id": str(self.board_id),
            "user_id": str(self.user_id) if self.user_id is not None else None,
            "tags": list(self.tags),
            "blocked": self.blocked,
            "completed": self.completed,
            "completed_at": iso(self.completed_at),
            "archived": self.archived,
            "archived_at": iso(self.archived_at),
            "assignee_id": str(self.assignee_id) if self.assignee_id is not None else None,
            "assigned_to_agent": self.assignee_id is not None,
            "assigned_at": iso(self.assigned_at),
            "claimed_by": str(self.claimed_by) if self.claimed_by is not None else None,
            "agent_claimed_at": iso(self.claimed_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


@dataclass(slots=True, frozen=True)
class Board:
    id: int
    name: str
    user_id: int
    icon: str = "📋"
    color: str = "gray"
    position: int = 0
    agent_id: int | None = None
    participant_ids: frozenset[int] = field(default_factory=frozenset)
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def agent_ids(self) -> frozenset[int]:
        """Every agent staffed on the board: the managing agent plus participants."""
        if self.agent_id is None:
            return self.participant_ids
        return self.participant_ids | {self.agent_id}

    def has_agent(self, agent_id: int) -> bool:
        return agent_id == self.agent_id or agent_id in self.participant_ids

    def to_json(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "name": self.name,
            "icon": self.icon,
            "color": self.color,
            "position": self.position,
            "user_id": str(self.user_id),
            "agent_id": str(self.agent_id) if self.agent_id is not None else None,
            "participant_ids": sorted(str(a) for a in self.participant_ids),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


@dataclass(slots=True, frozen=True)
class Agent:
    id: int
    uuid: str
    name: str
    slug: str
    emoji: str = "🤖"
    color: str = "gray"
    description: str | None = None
    is_active: bool = True
    last_active_at: float | None = None
    position: int = 0
    created_at: float = 0.0
    updated_at: float = 0.0

    def activity(
        self,
        now_ts: float,
        *,
        active_minutes: int = 5,
        idle_minutes: int = 30,
    ) -> AgentActivity:
        """active: seen within active_minutes; idle: within idle_minutes; otherwise offline."""
        if self.last_active_at is None:
            return AgentActivity.OFFLINE
        minutes = int((now_ts - self.last_active_at) // 60)
        if minutes < active_minutes:
            return AgentActivity.ACTIVE
        if minutes < idle_minutes:
            return AgentActivity.IDLE
        return AgentActivity.OFFLINE

    def to_json(self, status: AgentActivity | None = None) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": str(self.id),
            "uuid": self.uuid,
            "name": self.name,
            "slug": self.slug,
            "emoji": self.emoji,
            "color": self.color,
            "description": self.description,
            "is_active": self.is_active,
            "last_active_at": iso(self.last_active_at),
            "position": self.position,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if status is not None:
            out["status"] = status.value
        return out


@dataclass(slots=True, frozen=True)
class User:
    id: int
    email: str
    admin: bool = False
    auto_mode: bool = True
    agent_name: str | None = None
    agent_emoji: str | None = None
    last_active_at: float | None = None
    created_at: float = 0.0

    def to_json(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "email": self.email,
            "admin": self.admin,
            "agent_auto_mode": self.auto_mode,
            "agent_name": self.agent_name,
            "agent_emoji": self.agent_emoji,
            "agent_last_active_at": iso(self.last_active_at),
            "created_at": iso(self.created_at),
        }


class ActivityAction(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    NOTE = "note"
    CLAIM = "claim"
    UNCLAIM = "unclaim"
    ASSIGN = "assign"
    UNASSIGN = "unassign"
    ARCHIVED = "archived"
    UNARCHIVED = "unarchived"


class ActorType(StrEnum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


@dataclass(slots=True, frozen=True)
class Activity:
    """
    One row of a task's history.

    Written in the same transaction as the task change it describes; one row
    per changed field, plus a `note` row when the caller attached a note.
    """

    task_id: int
    action: ActivityAction
    created_at: float
    actor_type: ActorType = ActorType.AGENT
    actor_name: str | None = None
    actor_emoji: str | None = None
    user_id: int | None = None
    field_name: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    note: str | None = None
    source: str = "api"
    id: int = 0

    def to_json(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "task_id": str(self.task_id),
            "user_id": str(self.user_id) if self.user_id is not None else None,
            "action": self.action.value,
            "actor_type": self.actor_type.value,
            "actor_name": self.actor_name,
            "actor_emoji": self.actor_emoji,
            "field_name": self.field_name,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "note": self.note,
            "source": self.source,
            "created_at": iso(self.created_at),
        }


@dataclass(slots=True, frozen=True)
class TaskFilters:
    """Query shape for listing tasks. None means "do not filter"."""

    assigned: bool | None = None
    status: TaskStatus | None = None
    board_ids: tuple[int, ...] | None = None
    archived: bool | None = False
