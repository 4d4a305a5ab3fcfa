# src/mission_control/api/schemas.py

from __future__ import annotations

from pydantic import BaseModel, Field

from ..tasks.task_models import Priority, TaskStatus


class TaskCreate(BaseModel):
    board_id: int
    name: str = Field(min_length=1, max_length=500)
    description: str | None = None
    status: TaskStatus = TaskStatus.INBOX
    priority: Priority = Priority.NONE
    tags: list[str] = Field(default_factory=list)


class ClaimRequest(BaseModel):
    # Omitted when an agent claims for itself.
    agent_id: int | None = None


class AssignRequest(BaseModel):
    agent_id: int


class BoardCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    icon: str | None = None
    color: str | None = None
    agent_id: int | None = None
    participant_ids: list[int] = Field(default_factory=list)


class AgentCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    slug: str | None = None
    emoji: str | None = None
    color: str | None = None
    description: str | None = None


class AgentUpdate(BaseModel):
    # Only the fields sent are changed.
    name: str | None = Field(default=None, min_length=1, max_length=100)
    slug: str | None = Field(default=None, min_length=1, max_length=100)
    emoji: str | None = None
    color: str | None = None
    description: str | None = None
    position: int | None = None


class AgentActiveRequest(BaseModel):
    is_active: bool
