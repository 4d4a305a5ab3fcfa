# src/mission_control/tasks/activity.py

"""
Task history rows.

Builders only: they turn (before, after) snapshots into Activity drafts, and
the store writes those together with the task change. Values are stored as
text, so a status reads "in_review" and tags read as a JSON list.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from ..auth.principal import AgentPrincipal, Principal
from .task_models import Activity, ActivityAction, ActorType, Task, TaskStatus

UPDATE_FIELDS = ("name", "description", "status", "priority", "tags", "blocked", "position")

# Fields compared for each kind of change.
_ACTION_FIELDS: dict[ActivityAction, tuple[str, ...]] = {
    ActivityAction.UPDATE: UPDATE_FIELDS,
    ActivityAction.CLAIM: ("claimed_by", "status"),
    ActivityAction.UNCLAIM: ("claimed_by",),
    ActivityAction.ASSIGN: ("assignee_id",),
    ActivityAction.UNASSIGN: ("assignee_id",),
    ActivityAction.ARCHIVED: ("archived",),
    ActivityAction.UNARCHIVED: ("archived",),
}


@dataclass(frozen=True, slots=True)
class Actor:
    type: ActorType
    name: str | None = None
    emoji: str | None = None
    user_id: int | None = None
    source: str = "api"


SYSTEM = Actor(ActorType.SYSTEM, source="system")


def actor_of(principal: Principal) -> Actor:
    if isinstance(principal, AgentPrincipal):
        return Actor(ActorType.AGENT, name=principal.agent.name, emoji=principal.agent.emoji)
    user = principal.user
    return Actor(
        ActorType.USER,
        name=user.agent_name or user.email,
        emoji=user.agent_emoji,
        user_id=user.id,
    )


def as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, tuple):
        return json.dumps(list(value), ensure_ascii=False)
    return str(value)


def _row(actor: Actor, task_id: int, action: ActivityAction, now_ts: float, **fields: Any) -> Activity:
    return Activity(
        task_id=task_id,
        action=action,
        created_at=now_ts,
        actor_type=actor.type,
        actor_name=actor.name,
        actor_emoji=actor.emoji,
        user_id=actor.user_id,
        source=actor.source,
        **fields,
    )


def created(status: TaskStatus, actor: Actor, *, now_ts: float, task_id: int = 0) -> Activity:
    # task_id stays 0 until the store has inserted the task.
    return _row(actor, task_id, ActivityAction.CREATE, now_ts, field_name="status", new_value=status.value)


def changes(action: ActivityAction, before: Task, after: Task, actor: Actor, *, now_ts: float) -> list[Activity]:
    """One row per field the action changed; a bare row if none of its fields moved."""
    out: list[Activity] = []
    for name in _ACTION_FIELDS[action]:
        old, new = getattr(before, name), getattr(after, name)
        if old != new:
            out.append(
                _row(actor, after.id, action, now_ts, field_name=name, old_value=as_text(old), new_value=as_text(new))
            )
    return out or [_row(actor, after.id, action, now_ts)]


def note(task_id: int, text: str, actor: Actor, *, now_ts: float) -> Activity:
    return _row(actor, task_id, ActivityAction.NOTE, now_ts, note=text)
