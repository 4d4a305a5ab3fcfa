# tests/test_gate.py

from __future__ import annotations

import pytest

from mission_control.auth import gate
from mission_control.auth.gate import Operation
from mission_control.auth.principal import AgentPrincipal, HumanPrincipal
from mission_control.errors import Forbidden
from mission_control.tasks.task_models import Agent, Board, Priority, Task, TaskStatus, User

OWNER = HumanPrincipal(User(id=1, email="owner@example.com"))
STRANGER = HumanPrincipal(User(id=2, email="stranger@example.com"))
ADMIN = HumanPrincipal(User(id=3, email="admin@example.com", admin=True))
MANUAL = HumanPrincipal(User(id=4, email="manual@example.com", auto_mode=False))

MANAGER = AgentPrincipal(Agent(id=7, uuid="u7", name="Manager", slug="manager"))
HELPER = AgentPrincipal(Agent(id=8, uuid="u8", name="Helper", slug="helper"))
OUTSIDER = AgentPrincipal(Agent(id=9, uuid="u9", name="Outsider", slug="outsider"))

BOARD = Board(id=10, name="Launch", user_id=1, agent_id=7, participant_ids=frozenset({8}))


def task(**kw) -> Task:
    base = dict(
        id=1,
        board_id=10,
        name="t",
        description=None,
        status=TaskStatus.INBOX,
        priority=Priority.NONE,
        position=0,
        created_at=0.0,
        updated_at=0.0,
    )
    base.update(kw)
    return Task(**base)


@pytest.mark.parametrize("op", list(Operation))
def test_admin_is_admitted_everywhere(op: Operation) -> None:
    assert gate.check(ADMIN, op, BOARD, target_agent_id=7)


@pytest.mark.parametrize(
    "op",
    [Operation.READ, Operation.CREATE, Operation.UPDATE, Operation.DELETE, Operation.ASSIGN, Operation.ARCHIVE],
)
def test_owner_admitted_stranger_denied(op: Operation) -> None:
    assert gate.check(OWNER, op, BOARD)
    decision = gate.check(STRANGER, op, BOARD)
    assert not decision
    assert decision.reason


def test_agents_read_only_staffed_boards() -> None:
    assert gate.check(MANAGER, Operation.READ, BOARD)
    assert gate.check(HELPER, Operation.READ, BOARD)
    assert not gate.check(OUTSIDER, Operation.READ, BOARD)


def test_agent_claims_only_for_itself() -> None:
    assert gate.check(HELPER, Operation.CLAIM, BOARD, target_agent_id=8)
    assert not gate.check(HELPER, Operation.CLAIM, BOARD, target_agent_id=7)
    assert not gate.check(OUTSIDER, Operation.CLAIM, BOARD, target_agent_id=9)


def test_agent_unclaims_only_its_own_claim() -> None:
    mine = task(claimed_by=8)
    theirs = task(claimed_by=7)
    assert gate.check(HELPER, Operation.UNCLAIM, BOARD, task=mine)
    assert not gate.check(HELPER, Operation.UNCLAIM, BOARD, task=theirs)


def test_agent_updates_only_claimed_or_assigned_tasks() -> None:
    assert gate.check(HELPER, Operation.UPDATE, BOARD, task=task(claimed_by=8))
    assert gate.check(HELPER, Operation.UPDATE, BOARD, task=task(assignee_id=8))
    assert not gate.check(HELPER, Operation.UPDATE, BOARD, task=task())


@pytest.mark.parametrize(
    "op",
    [Operation.CREATE, Operation.DELETE, Operation.ASSIGN, Operation.ARCHIVE, Operation.MANAGE_BOARD, Operation.ADMIN],
)
def test_owner_only_operations_deny_agents(op: Operation) -> None:
    assert not gate.check(MANAGER, op, BOARD)


def test_next_rules() -> None:
    assert gate.check(HELPER, Operation.NEXT, target_agent_id=8)
    assert not gate.check(HELPER, Operation.NEXT, target_agent_id=7)
    assert gate.check(OWNER, Operation.NEXT, target_agent_id=7)
    assert not gate.check(MANUAL, Operation.NEXT, target_agent_id=7)


def test_require_raises_forbidden_with_reason() -> None:
    with pytest.raises(Forbidden) as ei:
        gate.require(STRANGER, Operation.DELETE, BOARD)
    assert ei.value.status_code == 403
    assert ei.value.reason


def test_principal_ids_and_admin_flag() -> None:
    assert OWNER.principal_id == "user:1"
    assert HELPER.principal_id == "agent:8"
    assert ADMIN.is_admin and not OWNER.is_admin and not HELPER.is_admin


def test_can_view_board_for_fanout() -> None:
    agents = frozenset({7, 8})
    assert gate.can_view_board(OWNER, 1, agents)
    assert gate.can_view_board(ADMIN, 1, agents)
    assert gate.can_view_board(HELPER, 1, agents)
    assert not gate.can_view_board(STRANGER, 1, agents)
    assert not gate.can_view_board(OUTSIDER, 1, agents)
