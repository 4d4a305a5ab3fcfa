# src/mission_control/auth/credentials.py

from __future__ import annotations

import logging
import secrets
import time

from ..core.ports import Clock
from ..errors import MissionControlError, Unauthorized
from ..tasks.task_store import TaskStore
from .principal import AgentPrincipal, HumanPrincipal, Principal

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


def new_token() -> str:
    return secrets.token_urlsafe(32)


def parse_bearer(header: str | None) -> str:
    if not header or not header.startswith(BEARER_PREFIX):
        raise Unauthorized("Missing bearer credential")
    token = header[len(BEARER_PREFIX):].strip()
    if not token:
        raise Unauthorized("Missing bearer credential")
    return token


class Authenticator:
    """
    Resolve a bearer credential to a principal.

    Tokens are opaque; the store keeps only their hash. Optional agent identity
    hints (name/emoji headers) refresh the principal's last-active metadata as
    a side effect. A failure there is logged and never fails the request.
    """

    def __init__(self, store: TaskStore, *, clock: Clock = time.time) -> None:
        self._store = store
        self._clock = clock

    def authenticate(
        self,
        authorization: str | None,
        *,
        agent_name: str | None = None,
        agent_emoji: str | None = None,
    ) -> Principal:
        return self.authenticate_token(
            parse_bearer(authorization), agent_name=agent_name, agent_emoji=agent_emoji
        )

    def authenticate_token(
        self,
        token: str,
        *,
        agent_name: str | None = None,
        agent_emoji: str | None = None,
    ) -> Principal:
        owner = self._store.resolve_token(token)
        if owner is None:
            raise Unauthorized("Invalid token")
        user_id, agent_id = owner

        principal: Principal
        if user_id is not None:
            user = self._store.get_user(user_id)
            if user is None:
                raise Unauthorized("Invalid token")
            principal = HumanPrincipal(user)
        else:
            agent = self._store.get_agent(int(agent_id or 0))
            if agent is None or not agent.is_active:
                raise Unauthorized("Invalid token")
            principal = AgentPrincipal(agent)

        self._record_activity(principal, agent_name, agent_emoji)
        return principal

    def _record_activity(
        self,
        principal: Principal,
        agent_name: str | None,
        agent_emoji: str | None,
    ) -> None:
        now = self._clock()
        try:
            if isinstance(principal, AgentPrincipal):
                self._store.touch_agent(principal.agent.id, now_ts=now)
            elif agent_name or agent_emoji:
                self._store.touch_user(
                    principal.user.id,
                    agent_name=agent_name or None,
                    agent_emoji=agent_emoji or None,
                    now_ts=now,
                )
        except MissionControlError:
            logger.warning("Failed to record activity for %s", principal.principal_id, exc_info=True)
