# src/mission_control/auth/gate.py

"""
Authorization gate.

`check()` is pure: it looks only at the principal, the board (and task /
target agent where relevant) and returns a Decision. It never raises and
never touches the store; `require()` turns a denial into Forbidden.

Rules:
- read: board owner, admin, or an agent staffed on the board
- mutate (create/update/delete/assign/archive/board management):
  board owner or admin; an agent may only update a task it has claimed or
  is assigned to
- claim: owner/admin on behalf of any agent; an agent only for itself
- unclaim: owner/admin; an agent only its own claim
- next: an agent for itself; a human needs auto mode (or admin)
- admin: admin flag only
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from ..errors import Forbidden
from ..tasks.task_models import Board, Task
from .principal import AgentPrincipal, HumanPrincipal, Principal


class Operation(StrEnum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    CLAIM = "claim"
    UNCLAIM = "unclaim"
    ASSIGN = "assign"
    UNASSIGN = "unassign"
    ARCHIVE = "archive"
    MANAGE_BOARD = "manage_board"
    NEXT = "next"
    ADMIN = "admin"


# Owner-only mutations an agent can never perform.
_OWNER_ONLY = frozenset(
    {
        Operation.CREATE,
        Operation.DELETE,
        Operation.ASSIGN,
        Operation.UNASSIGN,
        Operation.ARCHIVE,
        Operation.MANAGE_BOARD,
    }
)


@dataclass(frozen=True, slots=True)
class Decision:
    admitted: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.admitted


ADMIT = Decision(True)


def deny(reason: str) -> Decision:
    return Decision(False, reason)


def _is_owner(principal: HumanPrincipal, board: Board | None) -> bool:
    return board is not None and board.user_id == principal.user.id


def _check_human(
    principal: HumanPrincipal,
    operation: Operation,
    board: Board | None,
) -> Decision:
    if operation == Operation.ADMIN:
        return ADMIT if principal.is_admin else deny("Admin access required")

    if operation == Operation.NEXT:
        if principal.is_admin or principal.user.auto_mode:
            return ADMIT
        return deny("Agent auto mode is disabled for this account")

    if principal.is_admin or _is_owner(principal, board):
        return ADMIT
    if operation == Operation.READ:
        return deny("Board is not shared with this user")
    return deny("Only the board owner or an admin may do this")


def _check_agent(
    principal: AgentPrincipal,
    operation: Operation,
    board: Board | None,
    task: Task | None,
    target_agent_id: int | None,
) -> Decision:
    me = principal.agent.id

    if operation == Operation.ADMIN:
        return deny("Admin access required")

    if operation == Operation.NEXT:
        if target_agent_id not in (None, me):
            return deny("An agent may only pull work for itself")
        return ADMIT

    if board is None or not board.has_agent(me):
        return deny("Agent is not a participant of this board")

    if operation == Operation.READ:
        return ADMIT

    if operation == Operation.CLAIM:
        if target_agent_id not in (None, me):
            return deny("An agent may not claim on behalf of another agent")
        return ADMIT

    if operation == Operation.UNCLAIM:
        if task is not None and task.claimed_by == me:
            return ADMIT
        return deny("An agent may only release its own claim")

    if operation == Operation.UPDATE:
        if task is not None and me in (task.claimed_by, task.assignee_id):
            return ADMIT
        return deny("An agent may only update tasks it has claimed or is assigned to")

    if operation in _OWNER_ONLY:
        return deny(f"Agents may not {operation.value.replace('_', ' ')}")

    return deny("Operation not permitted")


def check(
    principal: Principal,
    operation: Operation,
    board: Board | None = None,
    *,
    task: Task | None = None,
    target_agent_id: int | None = None,
) -> Decision:
    if isinstance(principal, HumanPrincipal):
        return _check_human(principal, operation, board)
    return _check_agent(principal, operation, board, task, target_agent_id)


def require(
    principal: Principal,
    operation: Operation,
    board: Board | None = None,
    *,
    task: Task | None = None,
    target_agent_id: int | None = None,
) -> None:
    decision = check(principal, operation, board, task=task, target_agent_id=target_agent_id)
    if not decision.admitted:
        raise Forbidden(decision.reason or "Forbidden")


def can_view_board(principal: Principal, owner_id: int, agent_ids: frozenset[int]) -> bool:
    """Entitlement check used by the notification fan-out (no Board row needed)."""
    if isinstance(principal, HumanPrincipal):
        return principal.is_admin or principal.user.id == owner_id
    return principal.agent.id in agent_ids
