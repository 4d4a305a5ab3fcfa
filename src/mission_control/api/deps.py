# src/mission_control/api/deps.py

"""
FastAPI dependencies.

Every request authenticates exactly once here; handlers receive a resolved
principal and never look at headers themselves.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, Request

from ..auth.principal import Principal
from ..core.state import AppState


def get_state(request: Request) -> AppState:
    return request.app.state.mc


def get_principal(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    x_agent_name: Annotated[str | None, Header()] = None,
    x_agent_emoji: Annotated[str | None, Header()] = None,
) -> Principal:
    state = get_state(request)
    return state.authenticator.authenticate(
        authorization,
        agent_name=(x_agent_name or "").strip() or None,
        agent_emoji=(x_agent_emoji or "").strip() or None,
    )


StateDep = Annotated[AppState, Depends(get_state)]
PrincipalDep = Annotated[Principal, Depends(get_principal)]
