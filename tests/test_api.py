# tests/test_api.py

from __future__ import annotations

from collections.abc import Iterator
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from mission_control.api.app import WS_UNAUTHORIZED, create_app
from mission_control.auth.credentials import new_token
from mission_control.cli.bootstrap import create_initial_state
from mission_control.core.state import AppState
from mission_control.tasks.task_store import TaskStore

from .conftest import World


@pytest.fixture()
def app_state(settings: SimpleNamespace, world: World) -> AppState:
    # `world` seeds the same database file the app opens.
    return create_initial_state(settings=settings)


@pytest.fixture()
def client(app_state: AppState) -> Iterator[TestClient]:
    with TestClient(create_app(app_state)) as c:
        yield c


def _token(store: TaskStore, **owner) -> str:
    token = new_token()
    store.add_api_token(token, **owner)
    return token


@pytest.fixture()
def auth(store: TaskStore, world: World) -> SimpleNamespace:
    def header(**owner) -> dict[str, str]:
        return {"Authorization": f"Bearer {_token(store, **owner)}"}

    return SimpleNamespace(
        owner=header(user_id=world.owner.id),
        stranger=header(user_id=world.stranger.id),
        admin=header(user_id=world.admin.id),
        manager=header(agent_id=world.manager.id),
        helper=header(agent_id=world.helper.id),
    )


def _create(client: TestClient, headers: dict[str, str], board_id: int, name: str = "Task") -> dict:
    r = client.post("/api/v1/tasks", json={"board_id": board_id, "name": name}, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()


def test_requests_without_credentials_are_unauthorized(client: TestClient) -> None:
    r = client.get("/api/v1/tasks")
    assert r.status_code == 401
    assert r.json()["error"] == "unauthorized"
    assert r.headers["www-authenticate"] == "Bearer"

    r = client.get("/api/v1/tasks", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401


def test_create_get_and_scoping(client: TestClient, auth, world: World) -> None:
    task = _create(client, auth.owner, world.board.id, "Write release notes")
    assert task["status"] == "inbox"
    assert task["board_id"] == str(world.board.id)
    assert task["completed"] is False and task["archived"] is False

    assert client.get(f"/api/v1/tasks/{task['id']}", headers=auth.helper).status_code == 200
    r = client.get(f"/api/v1/tasks/{task['id']}", headers=auth.stranger)
    assert r.status_code == 404
    assert r.json() == {"error": "not_found", "detail": "Task not found"}

    listed = client.get("/api/v1/tasks", headers=auth.owner).json()
    assert listed["success"] is True
    assert [t["id"] for t in listed["data"]] == [task["id"]]
    assert client.get("/api/v1/tasks", headers=auth.stranger).json()["data"] == []


def test_malformed_body_is_400(client: TestClient, auth, world: World) -> None:
    r = client.post("/api/v1/tasks", json={"board_id": world.board.id}, headers=auth.owner)
    assert r.status_code == 400
    assert r.json()["error"] == "validation_failed"

    r = client.get("/api/v1/tasks", params={"board_ids": "1,x"}, headers=auth.owner)
    assert r.status_code == 400


def test_claim_conflict_and_derived_fields(client: TestClient, auth, world: World) -> None:
    task = _create(client, auth.owner, world.board.id)
    url = f"/api/v1/tasks/{task['id']}"

    r = client.patch(f"{url}/claim", headers=auth.helper)
    assert r.status_code == 200
    body = r.json()
    assert body["claimed_by"] == str(world.helper.id)
    assert body["status"] == "in_progress"
    assert body["agent_claimed_at"] is not None

    r = client.patch(f"{url}/claim", headers=auth.manager)
    assert r.status_code == 409
    assert r.json()["error"] == "already_claimed"
    assert r.json()["claimed_by"] == world.helper.id

    r = client.patch(url, json={"completed_at": "2024-01-01T00:00:00Z"}, headers=auth.owner)
    assert r.status_code == 422
    assert r.json()["field"] == "completed_at"

    r = client.patch(url, json={"status": "done"}, headers=auth.manager)
    assert r.status_code == 403
    assert r.json()["reason"]

    r = client.patch(url, json={"status": "done"}, headers=auth.helper)
    assert r.status_code == 200
    assert r.json()["completed"] is True


def test_assign_next_and_pending_attention(client: TestClient, auth, world: World) -> None:
    assert client.get("/api/v1/tasks/next", headers=auth.helper).status_code == 204

    task = _create(client, auth.owner, world.board.id)
    r = client.patch(
        f"/api/v1/tasks/{task['id']}/assign", json={"agent_id": world.outsider.id}, headers=auth.owner
    )
    assert r.status_code == 422
    assert r.json()["error"] == "invalid_agent"

    r = client.patch(f"/api/v1/tasks/{task['id']}/assign", json={"agent_id": world.helper.id}, headers=auth.owner)
    assert r.json()["assigned_to_agent"] is True

    nxt = client.get("/api/v1/tasks/next", headers=auth.helper)
    assert nxt.status_code == 200
    assert nxt.json()["id"] == task["id"]

    client.patch(f"/api/v1/tasks/{task['id']}/claim", headers=auth.helper)
    pending = client.get("/api/v1/tasks/pending_attention", headers=auth.helper).json()
    assert [t["id"] for t in pending] == [task["id"]]

    r = client.get("/api/v1/tasks", params={"assigned": "true"}, headers=auth.owner)
    assert [t["id"] for t in r.json()["data"]] == [task["id"]]


def test_archive_routes(client: TestClient, auth, world: World) -> None:
    task = _create(client, auth.owner, world.board.id)
    tid = task["id"]

    r = client.patch(f"/api/v1/archives/{tid}/schedule", headers=auth.owner)
    assert r.status_code == 422

    client.patch(f"/api/v1/tasks/{tid}", json={"status": "done"}, headers=auth.owner)
    assert client.delete(f"/api/v1/archives/{tid}", headers=auth.owner).status_code == 422

    r = client.patch(f"/api/v1/archives/{tid}/schedule", headers=auth.owner)
    assert r.status_code == 200
    assert r.json()["data"]["archived"] is True

    assert client.get("/api/v1/tasks", headers=auth.owner).json()["data"] == []
    archived = client.get("/api/v1/tasks", params={"archived": "true"}, headers=auth.owner).json()["data"]
    assert [t["id"] for t in archived] == [tid]

    listing = client.get("/api/v1/archives", params={"limit": 10}, headers=auth.owner).json()
    assert listing["meta"] == {"total": 1, "page": 1, "limit": 10, "pages": 1}

    r = client.patch(f"/api/v1/archives/{tid}/unarchive", headers=auth.owner)
    assert r.json()["data"]["archived"] is False
    client.patch(f"/api/v1/archives/{tid}/schedule", headers=auth.owner)

    assert client.delete(f"/api/v1/archives/{tid}", headers=auth.owner).status_code == 204
    assert client.get(f"/api/v1/tasks/{tid}", headers=auth.owner).status_code == 404


def test_boards_and_cascade_delete(client: TestClient, auth, world: World) -> None:
    r = client.post(
        "/api/v1/boards",
        json={"name": "Ops", "participant_ids": [world.helper.id]},
        headers=auth.owner,
    )
    assert r.status_code == 201
    board = r.json()
    assert board["icon"] == "📋"
    assert board["participant_ids"] == [str(world.helper.id)]

    helper_boards = client.get("/api/v1/boards", headers=auth.helper).json()["data"]
    assert {b["id"] for b in helper_boards} == {str(world.board.id), board["id"]}

    task = _create(client, auth.owner, int(board["id"]))
    assert client.delete(f"/api/v1/boards/{board['id']}", headers=auth.helper).status_code == 403
    assert client.delete(f"/api/v1/boards/{board['id']}", headers=auth.owner).status_code == 204
    assert client.get(f"/api/v1/tasks/{task['id']}", headers=auth.owner).status_code == 404


def test_agents_registry_and_admin(client: TestClient, auth, world: World) -> None:
    # Any authenticated request from an agent marks it active.
    client.get("/api/v1/me", headers=auth.helper)
    agents = client.get("/api/v1/agents", headers=auth.owner).json()["data"]
    by_slug = {a["slug"]: a for a in agents}
    assert by_slug["helper"]["status"] == "active"
    assert by_slug["outsider"]["status"] == "offline"

    r = client.post("/api/v1/agents", json={"name": "Night Shift"}, headers=auth.owner)
    assert r.status_code == 403
    r = client.post("/api/v1/agents", json={"name": "Night Shift"}, headers=auth.admin)
    assert r.status_code == 201
    assert r.json()["slug"] == "night-shift"

    assert client.get("/api/v1/admin/stats", headers=auth.stranger).status_code == 403
    stats = client.get("/api/v1/admin/stats", headers=auth.admin).json()["data"]
    assert stats["users"] == 3
    assert stats["agents"]["total"] == 4
    assert set(stats["tasks"]["by_status"]) == {"inbox", "up_next", "in_progress", "in_review", "done"}


def test_agent_identity_headers_update_user(client: TestClient, auth, store: TaskStore, world: World) -> None:
    # Header values must stay ASCII on the wire.
    headers = {**auth.owner, "X-Agent-Name": "Claw", "X-Agent-Emoji": ":crab:"}
    assert client.get("/api/v1/me", headers=headers).json()["kind"] == "human"
    user = store.get_user(world.owner.id)
    assert (user.agent_name, user.agent_emoji) == ("Claw", ":crab:")
    assert user.last_active_at is not None


def test_push_channel_delivers_entitled_events(client: TestClient, store: TaskStore, auth, world: World) -> None:
    owner_token = _token(store, user_id=world.owner.id)
    with client.websocket_connect(f"/ws?token={owner_token}") as ws:
        assert ws.receive_json()["type"] == "connected"

        task = _create(client, auth.owner, world.board.id, "Live")
        msg = ws.receive_json()
        assert msg["type"] == "task_event"
        assert msg["event"] == "task_created"
        assert msg["data"]["id"] == task["id"]

        client.patch(f"/api/v1/tasks/{task['id']}/claim", headers=auth.helper)
        assert ws.receive_json()["event"] == "task_claimed"

        client.delete(f"/api/v1/tasks/{task['id']}", headers=auth.owner)
        assert ws.receive_json() == {
            "type": "task_event",
            "event": "task_deleted",
            "board_id": str(world.board.id),
            "data": {"id": task["id"], "board_id": str(world.board.id)},
        }


def test_push_channel_rejects_bad_token(client: TestClient) -> None:
    with pytest.raises(WebSocketDisconnect) as ei:
        with client.websocket_connect("/ws?token=bogus") as ws:
            ws.receive_json()
    assert ei.value.code == WS_UNAUTHORIZED


def test_health(client: TestClient) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_task_history_route(client: TestClient, auth, world: World) -> None:
    task = _create(client, auth.owner, world.board.id, "Draft")
    r = client.patch(
        f"/api/v1/tasks/{task['id']}",
        json={"name": "Final", "activity_note": "renamed after review"},
        headers=auth.owner,
    )
    assert r.status_code == 200, r.text

    r = client.get(f"/api/v1/tasks/{task['id']}/activities", headers=auth.owner)
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    rows = body["data"]
    assert [(a["action"], a["field_name"]) for a in rows] == [("note", None), ("update", "name"), ("create", "status")]
    assert rows[0]["note"] == "renamed after review"
    assert (rows[1]["old_value"], rows[1]["new_value"]) == ("Draft", "Final")
    assert rows[2]["actor_type"] == "user"
    assert rows[2]["user_id"] == str(world.owner.id)

    limited = client.get(f"/api/v1/tasks/{task['id']}/activities?limit=1", headers=auth.owner).json()["data"]
    assert len(limited) == 1
    assert client.get(f"/api/v1/tasks/{task['id']}/activities?limit=0", headers=auth.owner).status_code == 400
    assert client.get(f"/api/v1/tasks/{task['id']}/activities", headers=auth.stranger).status_code == 404


def test_agent_update_and_delete_routes(client: TestClient, auth, store: TaskStore, world: World) -> None:
    task = _create(client, auth.owner, world.board.id)
    client.patch(f"/api/v1/tasks/{task['id']}/claim", headers=auth.helper)

    r = client.patch(f"/api/v1/agents/{world.helper.id}", json={"name": "Builder"}, headers=auth.owner)
    assert r.status_code == 403
    r = client.patch(f"/api/v1/agents/{world.helper.id}", json={"name": "Builder", "color": "blue"}, headers=auth.admin)
    assert r.status_code == 200, r.text
    assert (r.json()["name"], r.json()["color"], r.json()["slug"]) == ("Builder", "blue", "helper")

    r = client.patch(f"/api/v1/agents/{world.helper.id}", json={"slug": "manager"}, headers=auth.admin)
    assert r.status_code == 400
    assert client.patch("/api/v1/agents/9999", json={"name": "Ghost"}, headers=auth.admin).status_code == 404

    assert client.delete(f"/api/v1/agents/{world.helper.id}", headers=auth.owner).status_code == 403
    assert client.delete(f"/api/v1/agents/{world.helper.id}", headers=auth.admin).status_code == 204
    assert client.delete(f"/api/v1/agents/{world.helper.id}", headers=auth.admin).status_code == 404

    assert not store.get_agent(world.helper.id).is_active
    assert store.get_task(int(task["id"])).claimed_by is None
