# src/mission_control/auth/principal.py

"""
Authenticated principals.

A principal is resolved once per request/connection and is one of:
- HumanPrincipal: a user account (admin flag and auto mode live on the user)
- AgentPrincipal: an agent acting with its own credential

Both expose principal_id, kind and is_admin.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from ..tasks.task_models import Agent, User


class PrincipalKind(StrEnum):
    HUMAN = "human"
    AGENT = "agent"


@dataclass(frozen=True, slots=True)
class HumanPrincipal:
    user: User

    @property
    def kind(self) -> PrincipalKind:
        return PrincipalKind.HUMAN

    @property
    def principal_id(self) -> str:
        return f"user:{self.user.id}"

    @property
    def is_admin(self) -> bool:
        return self.user.admin


@dataclass(frozen=True, slots=True)
class AgentPrincipal:
    agent: Agent

    @property
    def kind(self) -> PrincipalKind:
        return PrincipalKind.AGENT

    @property
    def principal_id(self) -> str:
        return f"agent:{self.agent.id}"

    @property
    def is_admin(self) -> bool:
        return False


Principal = HumanPrincipal | AgentPrincipal
