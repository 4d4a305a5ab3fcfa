# src/mission_control/tasks/board_service.py

from __future__ import annotations

import logging
import re
import time
from collections.abc import Iterable
from typing import Any

from ..auth import gate
from ..auth.gate import Operation
from ..auth.principal import AgentPrincipal, HumanPrincipal, Principal
from ..core.ports import Clock, EventSink
from ..errors import NotFound, ValidationFailed
from ..notify.events import ChangeEvent, EventKind
from .task_models import Agent, AgentActivity, Board, User
from .task_service import TaskService
from .task_store import TaskStore

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    return _SLUG_RE.sub("-", (name or "").strip().lower()).strip("-")


class BoardService:
    """
    Boards, the agent registry and admin reporting.

    An agent that stops being valid for a board (taken off it, deactivated,
    deleted) loses its claims and assignments there in the same call; the
    release goes through TaskService so it takes the task locks and emits
    `unclaimed` / `unassigned` like any other mutation.
    """

    def __init__(
        self,
        store: TaskStore,
        events: EventSink,
        *,
        tasks: TaskService | None = None,
        clock: Clock = time.time,
        active_minutes: int = 5,
        idle_minutes: int = 30,
    ) -> None:
        self._store = store
        self._events = events
        self._tasks = tasks or TaskService(store, events, clock=clock)
        self._clock = clock
        self._active_minutes = active_minutes
        self._idle_minutes = idle_minutes

    # ---- boards ----

    def _check_agents(self, agent_ids: Iterable[int]) -> None:
        for aid in agent_ids:
            agent = self._store.get_agent(aid)
            if agent is None:
                raise ValidationFailed(f"Agent {aid} does not exist", field="agent_id")

    def list_boards(self, principal: Principal) -> list[Board]:
        if principal.is_admin:
            return self._store.list_boards()
        if isinstance(principal, HumanPrincipal):
            return self._store.list_boards(user_id=principal.user.id)
        return self._store.list_boards(agent_id=principal.agent.id)

    def get_board(self, principal: Principal, board_id: int) -> Board:
        board = self._store.get_board(board_id)
        if board is None or not gate.check(principal, Operation.READ, board):
            raise NotFound("board")
        return board

    def create_board(
        self,
        principal: Principal,
        *,
        name: str,
        icon: str | None = None,
        color: str | None = None,
        agent_id: int | None = None,
        participant_ids: Iterable[int] = (),
    ) -> Board:
        if not isinstance(principal, HumanPrincipal):
            gate.require(principal, Operation.MANAGE_BOARD)
        participants = tuple(participant_ids)
        self._check_agents([*participants, *([agent_id] if agent_id is not None else [])])

        board = self._store.add_board(
            user_id=principal.user.id,
            name=name,
            icon=icon or "📋",
            color=color or "gray",
            agent_id=agent_id,
            participant_ids=participants,
            now_ts=self._clock(),
        )
        logger.info("Board created id=%s owner=%s", board.id, principal.user.id)
        return board

    def update_board(self, principal: Principal, board_id: int, changes: dict[str, Any]) -> Board:
        board = self.get_board(principal, board_id)
        gate.require(principal, Operation.MANAGE_BOARD, board)

        unknown = set(changes) - {"name", "icon", "color", "position", "agent_id", "participant_ids"}
        if unknown:
            raise ValidationFailed(f"Unknown board field(s): {', '.join(sorted(unknown))}")

        clear_agent = "agent_id" in changes and changes["agent_id"] is None
        agent_id = changes.get("agent_id")
        participants = changes.get("participant_ids")
        self._check_agents([*(participants or ()), *([agent_id] if agent_id is not None else [])])

        updated = self._store.update_board(
            board.id,
            name=changes.get("name"),
            icon=changes.get("icon"),
            color=changes.get("color"),
            position=changes.get("position"),
            agent_id=agent_id,
            clear_agent=clear_agent,
            participant_ids=participants,
        )
        if updated is None:
            raise NotFound("board")

        for agent_id in sorted(board.agent_ids - updated.agent_ids):
            self._tasks.release_agent(agent_id, board_id=updated.id)
        return updated

    def delete_board(self, principal: Principal, board_id: int) -> int:
        """Delete a board with all of its tasks. Returns how many tasks went with it."""
        board = self.get_board(principal, board_id)
        gate.require(principal, Operation.MANAGE_BOARD, board)

        removed = self._store.delete_board(board.id)
        for task in removed:
            try:
                self._events.publish(ChangeEvent.for_task(EventKind.DELETED, task, board))
            except Exception:
                logger.exception("Failed to publish deleted event for task %s", task.id)
        return len(removed)

    # ---- agents ----

    def activity_of(self, agent: Agent) -> AgentActivity:
        return agent.activity(
            self._clock(),
            active_minutes=self._active_minutes,
            idle_minutes=self._idle_minutes,
        )

    def list_agents(self, principal: Principal, *, include_inactive: bool = False) -> list[Agent]:
        if include_inactive:
            gate.require(principal, Operation.ADMIN)
        return self._store.list_agents(include_inactive=include_inactive)

    def get_agent(self, principal: Principal, agent_id: int) -> Agent:
        agent = self._store.get_agent(agent_id)
        if agent is None or (not agent.is_active and not principal.is_admin):
            raise NotFound("agent")
        return agent

    def create_agent(
        self,
        principal: Principal,
        *,
        name: str,
        slug: str | None = None,
        emoji: str | None = None,
        color: str | None = None,
        description: str | None = None,
    ) -> Agent:
        gate.require(principal, Operation.ADMIN)
        agent = self._store.add_agent(
            name=name,
            slug=slug or slugify(name),
            emoji=emoji or "🤖",
            color=color or "gray",
            description=description,
            now_ts=self._clock(),
        )
        logger.info("Agent registered id=%s slug=%s by=%s", agent.id, agent.slug, principal.principal_id)
        return agent

    def update_agent(self, principal: Principal, agent_id: int, changes: dict[str, Any]) -> Agent:
        gate.require(principal, Operation.ADMIN)

        unknown = set(changes) - {"name", "slug", "emoji", "color", "description", "position"}
        if unknown:
            raise ValidationFailed(f"Unknown agent field(s): {', '.join(sorted(unknown))}")

        agent = self._store.update_agent(
            agent_id,
            name=changes.get("name"),
            slug=changes.get("slug"),
            emoji=changes.get("emoji"),
            color=changes.get("color"),
            description=changes.get("description"),
            position=changes.get("position"),
            now_ts=self._clock(),
        )
        if agent is None:
            raise NotFound("agent")
        logger.info("Agent updated id=%s fields=%s by=%s", agent.id, sorted(changes), principal.principal_id)
        return agent

    def set_agent_active(self, principal: Principal, agent_id: int, is_active: bool) -> Agent:
        gate.require(principal, Operation.ADMIN)
        if self._store.get_agent(agent_id) is None:
            raise NotFound("agent")
        self._store.set_agent_active(agent_id, is_active)
        if not is_active:
            self._tasks.release_agent(agent_id)
        agent = self._store.get_agent(agent_id)
        if agent is None:
            raise NotFound("agent")
        return agent

    def delete_agent(self, principal: Principal, agent_id: int) -> None:
        """Soft delete: the agent is deactivated and lets go of all its work."""
        gate.require(principal, Operation.ADMIN)
        agent = self._store.get_agent(agent_id)
        if agent is None or not agent.is_active:
            raise NotFound("agent")
        self._store.set_agent_active(agent_id, False)
        released = self._tasks.release_agent(agent_id)
        logger.info(
            "Agent deleted id=%s slug=%s released=%s by=%s",
            agent.id,
            agent.slug,
            len(released),
            principal.principal_id,
        )

    # ---- admin ----

    def list_users(self, principal: Principal) -> list[User]:
        gate.require(principal, Operation.ADMIN)
        return self._store.list_users()

    def stats(self, principal: Principal) -> dict[str, Any]:
        gate.require(principal, Operation.ADMIN)
        by_status = self._store.count_tasks_by_status()
        agents = self._store.list_agents(include_inactive=True)
        activity = {a.value: 0 for a in AgentActivity}
        for agent in agents:
            if agent.is_active:
                activity[self.activity_of(agent).value] += 1
        return {
            "users": len(self._store.list_users()),
            "boards": len(self._store.list_boards()),
            "tasks": {"total": sum(by_status.values()), "by_status": by_status},
            "agents": {"total": len(agents), "by_activity": activity},
        }

    def whoami(self, principal: Principal) -> dict[str, Any]:
        if isinstance(principal, AgentPrincipal):
            return {
                "kind": principal.kind.value,
                "agent": principal.agent.to_json(self.activity_of(principal.agent)),
            }
        return {"kind": principal.kind.value, "user": principal.user.to_json()}
