# src/mission_control/api/app.py

"""
HTTP + WebSocket transport.

Thin layer over the services: parse input, call one service operation,
render JSON. Every MissionControlError becomes `{"error", "detail", ...}`
with its status code; nothing else is caught here.

Handlers are plain `def` so blocking SQLite calls run in the threadpool;
the notification hub accepts publishes from any thread.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import APIRouter, Body, FastAPI, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..core.state import AppState
from ..errors import MissionControlError, Unauthorized, ValidationFailed
from ..tasks.task_models import Task, TaskFilters, TaskStatus
from .deps import PrincipalDep, StateDep
from .schemas import (
    AgentActiveRequest,
    AgentCreate,
    AgentUpdate,
    AssignRequest,
    BoardCreate,
    ClaimRequest,
    TaskCreate,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

# Application close codes for the push channel.
WS_UNAUTHORIZED = 4401


def _tasks_json(tasks: list[Task]) -> list[dict[str, Any]]:
    return [t.to_json() for t in tasks]


def _parse_board_ids(raw: str | None) -> tuple[int, ...] | None:
    if raw is None or not raw.strip():
        return None
    try:
        return tuple(int(part) for part in raw.split(",") if part.strip())
    except ValueError:
        raise ValidationFailed("board_ids must be a comma separated list of ids", field="board_ids") from None


class WebSocketChannel:
    """Adapts a Starlette WebSocket to the Channel port."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket

    async def send_json(self, data: dict[str, Any]) -> None:
        await self._ws.send_json(data)


# ---- tasks ----

tasks_router = APIRouter(prefix=f"{API_PREFIX}/tasks", tags=["tasks"])


@tasks_router.get("")
def list_tasks(
    state: StateDep,
    principal: PrincipalDep,
    assigned: bool | None = None,
    status_: Annotated[TaskStatus | None, Query(alias="status")] = None,
    board_id: int | None = None,
    board_ids: str | None = None,
    archived: bool = False,
) -> dict[str, Any]:
    ids = _parse_board_ids(board_ids)
    if board_id is not None:
        ids = (board_id,) if ids is None else tuple(i for i in ids if i == board_id)
    filters = TaskFilters(assigned=assigned, status=status_, board_ids=ids, archived=archived)
    tasks = state.tasks.list_tasks(principal, filters)
    return {"success": True, "data": _tasks_json(tasks)}


@tasks_router.get("/next", response_model=None)
def next_task(state: StateDep, principal: PrincipalDep, agent_id: int | None = None) -> dict[str, Any] | Response:
    task = state.tasks.next_task(principal, agent_id)
    if task is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return task.to_json()


@tasks_router.get("/pending_attention")
def pending_attention(state: StateDep, principal: PrincipalDep) -> list[dict[str, Any]]:
    return _tasks_json(state.tasks.pending_attention(principal))


@tasks_router.get("/{task_id}")
def get_task(task_id: int, state: StateDep, principal: PrincipalDep) -> dict[str, Any]:
    return state.tasks.get_task(principal, task_id).to_json()


@tasks_router.get("/{task_id}/activities")
def task_activities(
    task_id: int,
    state: StateDep,
    principal: PrincipalDep,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> dict[str, Any]:
    rows = state.tasks.list_activities(principal, task_id, limit=limit)
    return {"success": True, "data": [a.to_json() for a in rows]}


@tasks_router.post("", status_code=status.HTTP_201_CREATED)
def create_task(body: TaskCreate, state: StateDep, principal: PrincipalDep) -> dict[str, Any]:
    task = state.tasks.create_task(
        principal,
        board_id=body.board_id,
        name=body.name,
        description=body.description,
        status=body.status,
        priority=body.priority,
        tags=body.tags,
    )
    return task.to_json()


@tasks_router.patch("/{task_id}")
def update_task(
    task_id: int,
    patch: Annotated[dict[str, Any], Body()],
    state: StateDep,
    principal: PrincipalDep,
) -> dict[str, Any]:
    return state.tasks.update_task(principal, task_id, patch).to_json()


@tasks_router.patch("/{task_id}/claim")
def claim_task(
    task_id: int,
    state: StateDep,
    principal: PrincipalDep,
    body: ClaimRequest | None = None,
) -> dict[str, Any]:
    agent_id = body.agent_id if body is not None else None
    return state.tasks.claim_task(principal, task_id, agent_id).to_json()


@tasks_router.patch("/{task_id}/unclaim")
def unclaim_task(task_id: int, state: StateDep, principal: PrincipalDep) -> dict[str, Any]:
    return state.tasks.unclaim_task(principal, task_id).to_json()


@tasks_router.patch("/{task_id}/assign")
def assign_task(task_id: int, body: AssignRequest, state: StateDep, principal: PrincipalDep) -> dict[str, Any]:
    return state.tasks.assign_task(principal, task_id, body.agent_id).to_json()


@tasks_router.patch("/{task_id}/unassign")
def unassign_task(task_id: int, state: StateDep, principal: PrincipalDep) -> dict[str, Any]:
    return state.tasks.unassign_task(principal, task_id).to_json()


@tasks_router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(task_id: int, state: StateDep, principal: PrincipalDep) -> Response:
    state.tasks.delete_task(principal, task_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---- archives ----

archives_router = APIRouter(prefix=f"{API_PREFIX}/archives", tags=["archives"])


@archives_router.get("")
def list_archives(
    state: StateDep,
    principal: PrincipalDep,
    board_id: int | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> dict[str, Any]:
    tasks, total = state.tasks.list_archived(principal, board_id=board_id, page=page, limit=limit)
    return {
        "success": True,
        "data": _tasks_json(tasks),
        "meta": {"total": total, "page": page, "limit": limit, "pages": -(-total // limit)},
    }


@archives_router.patch("/{task_id}/schedule")
def archive_now(task_id: int, state: StateDep, principal: PrincipalDep) -> dict[str, Any]:
    return {"success": True, "data": state.tasks.archive_task(principal, task_id).to_json()}


@archives_router.patch("/{task_id}/unarchive")
def unarchive(task_id: int, state: StateDep, principal: PrincipalDep) -> dict[str, Any]:
    return {"success": True, "data": state.tasks.unarchive_task(principal, task_id).to_json()}


@archives_router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_archived(task_id: int, state: StateDep, principal: PrincipalDep) -> Response:
    state.tasks.delete_task(principal, task_id, archived_only=True)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---- boards ----

boards_router = APIRouter(prefix=f"{API_PREFIX}/boards", tags=["boards"])


@boards_router.get("")
def list_boards(state: StateDep, principal: PrincipalDep) -> dict[str, Any]:
    return {"success": True, "data": [b.to_json() for b in state.boards.list_boards(principal)]}


@boards_router.post("", status_code=status.HTTP_201_CREATED)
def create_board(body: BoardCreate, state: StateDep, principal: PrincipalDep) -> dict[str, Any]:
    board = state.boards.create_board(
        principal,
        name=body.name,
        icon=body.icon,
        color=body.color,
        agent_id=body.agent_id,
        participant_ids=body.participant_ids,
    )
    return board.to_json()


@boards_router.get("/{board_id}")
def get_board(board_id: int, state: StateDep, principal: PrincipalDep) -> dict[str, Any]:
    return state.boards.get_board(principal, board_id).to_json()


@boards_router.patch("/{board_id}")
def update_board(
    board_id: int,
    changes: Annotated[dict[str, Any], Body()],
    state: StateDep,
    principal: PrincipalDep,
) -> dict[str, Any]:
    return state.boards.update_board(principal, board_id, changes).to_json()


@boards_router.delete("/{board_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_board(board_id: int, state: StateDep, principal: PrincipalDep) -> Response:
    state.boards.delete_board(principal, board_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---- agents ----

agents_router = APIRouter(prefix=f"{API_PREFIX}/agents", tags=["agents"])


@agents_router.get("")
def list_agents(state: StateDep, principal: PrincipalDep, include_inactive: bool = False) -> dict[str, Any]:
    agents = state.boards.list_agents(principal, include_inactive=include_inactive)
    return {"success": True, "data": [a.to_json(state.boards.activity_of(a)) for a in agents]}


@agents_router.post("", status_code=status.HTTP_201_CREATED)
def create_agent(body: AgentCreate, state: StateDep, principal: PrincipalDep) -> dict[str, Any]:
    agent = state.boards.create_agent(
        principal,
        name=body.name,
        slug=body.slug,
        emoji=body.emoji,
        color=body.color,
        description=body.description,
    )
    return agent.to_json(state.boards.activity_of(agent))


@agents_router.get("/{agent_id}")
def get_agent(agent_id: int, state: StateDep, principal: PrincipalDep) -> dict[str, Any]:
    agent = state.boards.get_agent(principal, agent_id)
    return agent.to_json(state.boards.activity_of(agent))


@agents_router.patch("/{agent_id}")
def update_agent(agent_id: int, body: AgentUpdate, state: StateDep, principal: PrincipalDep) -> dict[str, Any]:
    agent = state.boards.update_agent(principal, agent_id, body.model_dump(exclude_none=True))
    return agent.to_json(state.boards.activity_of(agent))


@agents_router.delete("/{agent_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_agent(agent_id: int, state: StateDep, principal: PrincipalDep) -> Response:
    state.boards.delete_agent(principal, agent_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@agents_router.patch("/{agent_id}/active")
def set_agent_active(
    agent_id: int,
    body: AgentActiveRequest,
    state: StateDep,
    principal: PrincipalDep,
) -> dict[str, Any]:
    agent = state.boards.set_agent_active(principal, agent_id, body.is_active)
    return agent.to_json(state.boards.activity_of(agent))


# ---- admin / misc ----

admin_router = APIRouter(prefix=f"{API_PREFIX}/admin", tags=["admin"])


@admin_router.get("/users")
def admin_users(state: StateDep, principal: PrincipalDep) -> dict[str, Any]:
    return {"success": True, "data": [u.to_json() for u in state.boards.list_users(principal)]}


@admin_router.get("/stats")
def admin_stats(state: StateDep, principal: PrincipalDep) -> dict[str, Any]:
    return {"success": True, "data": state.boards.stats(principal)}


misc_router = APIRouter(tags=["misc"])


@misc_router.get(f"{API_PREFIX}/me")
def whoami(state: StateDep, principal: PrincipalDep) -> dict[str, Any]:
    return state.boards.whoami(principal)


@misc_router.get("/health")
def health(state: StateDep) -> dict[str, Any]:
    return {
        "status": "ok",
        "channels": state.hub.registry.count(),
        "archive_scheduler": state.scheduler.running,
    }


@misc_router.websocket("/ws")
async def push_channel(websocket: WebSocket, token: str | None = None) -> None:
    state: AppState = websocket.app.state.mc
    await websocket.accept()

    try:
        if not token:
            raise Unauthorized("Missing token")
        principal = await asyncio.to_thread(state.authenticator.authenticate_token, token)
    except MissionControlError as exc:
        logger.info("Push channel rejected: %s", exc.detail)
        await websocket.close(code=WS_UNAUTHORIZED, reason=exc.detail)
        return

    sub = await state.hub.register(principal, WebSocketChannel(websocket))
    try:
        while True:
            # Inbound frames carry nothing; reading only detects the disconnect.
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        state.hub.unregister(sub)


# ---- app factory ----


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(MissionControlError)
    async def _mission_control_error(_request: Request, exc: MissionControlError) -> JSONResponse:
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == status.HTTP_401_UNAUTHORIZED else None
        if exc.status_code >= 500:
            logger.warning("Request failed: %s %s", exc.code, exc.detail)
        return JSONResponse(jsonable_encoder(exc.to_dict()), status_code=exc.status_code, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        err = ValidationFailed("Request is malformed")
        body = {**err.to_dict(), "errors": jsonable_encoder(exc.errors())}
        return JSONResponse(body, status_code=err.status_code)


def create_app(state: AppState) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        state.scheduler.start()
        logger.info("%s ready", getattr(state.settings, "app_name", "mission-control"))
        try:
            yield
        finally:
            await state.scheduler.stop()
            await state.hub.close()
            state.store.close()

    app = FastAPI(title="Mission Control", lifespan=lifespan)
    app.state.mc = state

    _install_error_handlers(app)
    for router in (tasks_router, archives_router, boards_router, agents_router, admin_router, misc_router):
        app.include_router(router)
    return app
