# src/mission_control/tasks/task_store.py

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import sqlite3
import time
import uuid
from collections.abc import Iterable, Iterator
from dataclasses import replace
from pathlib import Path
from typing import Any

from ..errors import StoreUnavailable, ValidationFailed
from .task_models import (
    Activity,
    ActivityAction,
    ActorType,
    Agent,
    Board,
    Priority,
    Task,
    TaskFilters,
    TaskStatus,
    User,
)

logger = logging.getLogger(__name__)

# Work-queue order in SQL; must agree with state_machine.next_rank.
_STATUS_RANK_SQL = (
    "CASE t.status "
    + " ".join(f"WHEN '{s.value}' THEN {s.rank}" for s in TaskStatus)
    + f" ELSE {len(TaskStatus)} END"
)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TaskStore:
    """
    SQLite store for users, API tokens, agents, boards, tasks and task history.

    The schema is migration-safe:
    - create tables if missing
    - use PRAGMA table_info to detect missing task columns
    - add columns with ALTER TABLE only when needed

    Concurrency:
    - each method opens its own SQLite connection (safe from any thread)
    - task read-modify-write goes through try_replace_task(), a conditional
      UPDATE on the row's version; a stale writer gets None, never a lost update
    - history rows are written in the same transaction as the change they describe
    - archival selects and flips rows inside one BEGIN IMMEDIATE transaction

    Failures of the database itself surface as StoreUnavailable.
    """

    def __init__(self, db_path: str | Path = "mission_control.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        try:
            total = self.count_tasks()
        except StoreUnavailable:
            total = -1
        logger.info("TaskStore ready db=%s tasks=%s", self._db_path, total)

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._get_conn()
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"Cannot open database: {exc}") from exc
        try:
            yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.DatabaseError as exc:
            logger.error("Database error on %s: %s", self._db_path, exc)
            raise StoreUnavailable(str(exc)) from exc
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            cur = conn.cursor()

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL UNIQUE,
                    admin INTEGER NOT NULL DEFAULT 0,
                    auto_mode INTEGER NOT NULL DEFAULT 1,
                    agent_name TEXT,
                    agent_emoji TEXT,
                    last_active_at REAL,
                    created_at REAL NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS agents (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    uuid TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL UNIQUE,
                    slug TEXT NOT NULL UNIQUE,
                    emoji TEXT NOT NULL DEFAULT '🤖',
                    color TEXT NOT NULL DEFAULT 'gray',
                    description TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    last_active_at REAL,
                    position INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS api_tokens (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    token_hash TEXT NOT NULL UNIQUE,
                    name TEXT,
                    user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
                    agent_id INTEGER REFERENCES agents(id) ON DELETE CASCADE,
                    last_used_at REAL,
                    created_at REAL NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS boards (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    icon TEXT NOT NULL DEFAULT '📋',
                    color TEXT NOT NULL DEFAULT 'gray',
                    position INTEGER NOT NULL DEFAULT 0,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    agent_id INTEGER REFERENCES agents(id) ON DELETE SET NULL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS board_agents (
                    board_id INTEGER NOT NULL REFERENCES boards(id) ON DELETE CASCADE,
                    agent_id INTEGER NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
                    PRIMARY KEY (board_id, agent_id)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    board_id INTEGER NOT NULL REFERENCES boards(id) ON DELETE CASCADE,
                    user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL DEFAULT 'inbox',
                    priority TEXT NOT NULL DEFAULT 'none',
                    position INTEGER NOT NULL DEFAULT 0,
                    tags TEXT NOT NULL DEFAULT '[]',
                    blocked INTEGER NOT NULL DEFAULT 0,
                    assignee_id INTEGER REFERENCES agents(id) ON DELETE SET NULL,
                    assigned_at REAL,
                    claimed_by INTEGER REFERENCES agents(id) ON DELETE SET NULL,
                    claimed_at REAL,
                    completed_at REAL,
                    archived_at REAL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1
                )
                """
            )

            # Migrations (safe): add missing task columns.
            cur.execute("PRAGMA table_info(tasks)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE tasks ADD COLUMN {name} {decl}")
                logger.info("TaskStore migration: added column %s", name)

            add_col("tags", "TEXT NOT NULL DEFAULT '[]'")
            add_col("blocked", "INTEGER NOT NULL DEFAULT 0")
            add_col("assignee_id", "INTEGER REFERENCES agents(id) ON DELETE SET NULL")
            add_col("assigned_at", "REAL")
            add_col("claimed_by", "INTEGER REFERENCES agents(id) ON DELETE SET NULL")
            add_col("claimed_at", "REAL")
            add_col("completed_at", "REAL")
            add_col("archived_at", "REAL")
            add_col("version", "INTEGER NOT NULL DEFAULT 1")

            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_board ON tasks(board_id, position)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)")
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_tasks_archive "
                "ON tasks(archived_at, status, completed_at)"
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_claimed ON tasks(claimed_by)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_boards_user ON boards(user_id, position)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_board_agents_agent ON board_agents(agent_id)")

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS task_activities (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
                    user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
                    action TEXT NOT NULL,
                    actor_type TEXT NOT NULL DEFAULT 'agent',
                    actor_name TEXT,
                    actor_emoji TEXT,
                    field_name TEXT,
                    old_value TEXT,
                    new_value TEXT,
                    note TEXT,
                    source TEXT NOT NULL DEFAULT 'api',
                    created_at REAL NOT NULL
                )
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_activities_task ON task_activities(task_id, id)")

            conn.commit()

    @staticmethod
    def _tags_to_str(tags: Iterable[str] | None) -> str:
        if not tags:
            return "[]"
        return json.dumps(list(tags), ensure_ascii=False)

    @staticmethod
    def _str_to_tags(s: str | None) -> tuple[str, ...]:
        if not s:
            return ()
        try:
            val = json.loads(s)
        except ValueError:
            return ()
        return tuple(str(v) for v in val) if isinstance(val, list) else ()

    @staticmethod
    def _opt_float(v: Any) -> float | None:
        return float(v) if v is not None else None

    @staticmethod
    def _opt_int(v: Any) -> int | None:
        return int(v) if v is not None else None

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task(
            id=int(row["id"]),
            board_id=int(row["board_id"]),
            user_id=self._opt_int(row["user_id"]),
            name=str(row["name"] or ""),
            description=row["description"],
            status=TaskStatus.from_db(row["status"]),
            priority=Priority(row["priority"] or "none"),
            position=int(row["position"] or 0),
            tags=self._str_to_tags(row["tags"]),
            blocked=bool(row["blocked"]),
            assignee_id=self._opt_int(row["assignee_id"]),
            assigned_at=self._opt_float(row["assigned_at"]),
            claimed_by=self._opt_int(row["claimed_by"]),
            claimed_at=self._opt_float(row["claimed_at"]),
            completed_at=self._opt_float(row["completed_at"]),
            archived_at=self._opt_float(row["archived_at"]),
            created_at=float(row["created_at"] or 0.0),
            updated_at=float(row["updated_at"] or 0.0),
            version=int(row["version"] or 1),
        )

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=int(row["id"]),
            email=str(row["email"]),
            admin=bool(row["admin"]),
            auto_mode=bool(row["auto_mode"]),
            agent_name=row["agent_name"],
            agent_emoji=row["agent_emoji"],
            last_active_at=row["last_active_at"],
            created_at=float(row["created_at"] or 0.0),
        )

    @staticmethod
    def _row_to_agent(row: sqlite3.Row) -> Agent:
        return Agent(
            id=int(row["id"]),
            uuid=str(row["uuid"]),
            name=str(row["name"]),
            slug=str(row["slug"]),
            emoji=str(row["emoji"]),
            color=str(row["color"]),
            description=row["description"],
            is_active=bool(row["is_active"]),
            last_active_at=row["last_active_at"],
            position=int(row["position"] or 0),
            created_at=float(row["created_at"] or 0.0),
            updated_at=float(row["updated_at"] or 0.0),
        )

    def _row_to_activity(self, row: sqlite3.Row) -> Activity:
        try:
            actor_type = ActorType(row["actor_type"])
        except ValueError:
            actor_type = ActorType.AGENT
        return Activity(
            id=int(row["id"]),
            task_id=int(row["task_id"]),
            action=ActivityAction(row["action"]),
            created_at=float(row["created_at"] or 0.0),
            actor_type=actor_type,
            actor_name=row["actor_name"],
            actor_emoji=row["actor_emoji"],
            user_id=self._opt_int(row["user_id"]),
            field_name=row["field_name"],
            old_value=row["old_value"],
            new_value=row["new_value"],
            note=row["note"],
            source=str(row["source"] or "api"),
        )

    @staticmethod
    def _row_to_board(row: sqlite3.Row, participant_ids: Iterable[int]) -> Board:
        return Board(
            id=int(row["id"]),
            name=str(row["name"]),
            user_id=int(row["user_id"]),
            icon=str(row["icon"]),
            color=str(row["color"]),
            position=int(row["position"] or 0),
            agent_id=row["agent_id"],
            participant_ids=frozenset(participant_ids),
            created_at=float(row["created_at"] or 0.0),
            updated_at=float(row["updated_at"] or 0.0),
        )

    # ---- users & tokens ----

    def add_user(
        self,
        *,
        email: str,
        admin: bool = False,
        auto_mode: bool = True,
        now_ts: float | None = None,
    ) -> User:
        email = (email or "").strip().lower()
        if not email:
            raise ValidationFailed("email is required", field="email")
        now = time.time() if now_ts is None else now_ts
        with self._connect() as conn:
            try:
                cur = conn.execute(
                    "INSERT INTO users(email, admin, auto_mode, created_at) VALUES (?, ?, ?, ?)",
                    (email, int(admin), int(auto_mode), now),
                )
                conn.commit()
            except sqlite3.IntegrityError:
                raise ValidationFailed("A user with this email already exists", field="email") from None
            user_id = int(cur.lastrowid or 0)
        logger.info("User added id=%s email=%s admin=%s", user_id, email, admin)
        return User(id=user_id, email=email, admin=admin, auto_mode=auto_mode, created_at=now)

    def get_user(self, user_id: int) -> User | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (int(user_id),)).fetchone()
            return self._row_to_user(row) if row else None

    def list_users(self) -> list[User]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY id ASC").fetchall()
            return [self._row_to_user(r) for r in rows]

    def touch_user(
        self,
        user_id: int,
        *,
        agent_name: str | None = None,
        agent_emoji: str | None = None,
        now_ts: float | None = None,
    ) -> None:
        now = time.time() if now_ts is None else now_ts
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE users
                SET agent_name = COALESCE(?, agent_name),
                    agent_emoji = COALESCE(?, agent_emoji),
                    last_active_at = ?
                WHERE id = ?
                """,
                (agent_name, agent_emoji, now, int(user_id)),
            )
            conn.commit()

    def add_api_token(
        self,
        token: str,
        *,
        user_id: int | None = None,
        agent_id: int | None = None,
        name: str | None = None,
    ) -> int:
        if (user_id is None) == (agent_id is None):
            raise ValidationFailed("A token belongs to exactly one user or one agent")
        with self._connect() as conn:
            try:
                cur = conn.execute(
                    """
                    INSERT INTO api_tokens(token_hash, name, user_id, agent_id, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (hash_token(token), name, user_id, agent_id, time.time()),
                )
                conn.commit()
            except sqlite3.IntegrityError:
                raise ValidationFailed("Token owner does not exist or token is already registered") from None
            return int(cur.lastrowid or 0)

    def resolve_token(self, token: str) -> tuple[int | None, int | None] | None:
        """Return (user_id, agent_id) for a bearer token, or None if unknown."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, user_id, agent_id FROM api_tokens WHERE token_hash = ?",
                (hash_token(token),),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "UPDATE api_tokens SET last_used_at = ? WHERE id = ?",
                (time.time(), int(row["id"])),
            )
            conn.commit()
            return self._opt_int(row["user_id"]), self._opt_int(row["agent_id"])

    # ---- agents ----

    def add_agent(
        self,
        *,
        name: str,
        slug: str,
        emoji: str = "🤖",
        color: str = "gray",
        description: str | None = None,
        position: int = 0,
        agent_uuid: str | None = None,
        now_ts: float | None = None,
    ) -> Agent:
        name = (name or "").strip()
        slug = (slug or "").strip().lower()
        if not name:
            raise ValidationFailed("name is required", field="name")
        if not slug:
            raise ValidationFailed("slug is required", field="slug")
        now = time.time() if now_ts is None else now_ts
        agent_uuid = agent_uuid or str(uuid.uuid4())
        with self._connect() as conn:
            try:
                cur = conn.execute(
                    """
                    INSERT INTO agents(uuid, name, slug, emoji, color, description, position,
                                       created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (agent_uuid, name, slug, emoji, color, description, int(position), now, now),
                )
                conn.commit()
            except sqlite3.IntegrityError:
                raise ValidationFailed("An agent with this name or slug already exists", field="slug") from None
            agent_id = int(cur.lastrowid or 0)
        logger.info("Agent added id=%s slug=%s", agent_id, slug)
        return Agent(
            id=agent_id,
            uuid=agent_uuid,
            name=name,
            slug=slug,
            emoji=emoji,
            color=color,
            description=description,
            position=int(position),
            created_at=now,
            updated_at=now,
        )

    def get_agent(self, agent_id: int) -> Agent | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM agents WHERE id = ?", (int(agent_id),)).fetchone()
            return self._row_to_agent(row) if row else None

    def get_agent_by_slug(self, slug: str) -> Agent | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM agents WHERE slug = ?", ((slug or "").strip().lower(),)
            ).fetchone()
            return self._row_to_agent(row) if row else None

    def list_agents(self, *, include_inactive: bool = False) -> list[Agent]:
        sql = "SELECT * FROM agents"
        if not include_inactive:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY position ASC, id ASC"
        with self._connect() as conn:
            return [self._row_to_agent(r) for r in conn.execute(sql).fetchall()]

    def set_agent_active(self, agent_id: int, is_active: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE agents SET is_active = ?, updated_at = ? WHERE id = ?",
                (int(is_active), time.time(), int(agent_id)),
            )
            conn.commit()

    def update_agent(
        self,
        agent_id: int,
        *,
        name: str | None = None,
        slug: str | None = None,
        emoji: str | None = None,
        color: str | None = None,
        description: str | None = None,
        position: int | None = None,
        now_ts: float | None = None,
    ) -> Agent | None:
        fields: list[str] = []
        params: list[Any] = []

        if name is not None:
            if not name.strip():
                raise ValidationFailed("name must not be empty", field="name")
            fields.append("name = ?")
            params.append(name.strip())
        if slug is not None:
            if not slug.strip():
                raise ValidationFailed("slug must not be empty", field="slug")
            fields.append("slug = ?")
            params.append(slug.strip().lower())
        if emoji is not None:
            fields.append("emoji = ?")
            params.append(emoji)
        if color is not None:
            fields.append("color = ?")
            params.append(color)
        if description is not None:
            fields.append("description = ?")
            params.append(description)
        if position is not None:
            fields.append("position = ?")
            params.append(int(position))

        fields.append("updated_at = ?")
        params.append(time.time() if now_ts is None else now_ts)
        params.append(int(agent_id))

        with self._connect() as conn:
            try:
                cur = conn.execute(f"UPDATE agents SET {', '.join(fields)} WHERE id = ?", params)
                conn.commit()
            except sqlite3.IntegrityError:
                raise ValidationFailed("An agent with this name or slug already exists", field="slug") from None
            if cur.rowcount != 1:
                return None
            row = conn.execute("SELECT * FROM agents WHERE id = ?", (int(agent_id),)).fetchone()
            return self._row_to_agent(row) if row else None

    def touch_agent(self, agent_id: int, *, now_ts: float | None = None) -> None:
        now = time.time() if now_ts is None else now_ts
        with self._connect() as conn:
            conn.execute("UPDATE agents SET last_active_at = ? WHERE id = ?", (now, int(agent_id)))
            conn.commit()

    # ---- boards ----

    def _participants(self, conn: sqlite3.Connection, board_ids: Iterable[int]) -> dict[int, set[int]]:
        ids = [int(b) for b in board_ids]
        out: dict[int, set[int]] = {b: set() for b in ids}
        if not ids:
            return out
        placeholders = ",".join("?" for _ in ids)
        rows = conn.execute(
            f"SELECT board_id, agent_id FROM board_agents WHERE board_id IN ({placeholders})",
            ids,
        ).fetchall()
        for r in rows:
            out[int(r["board_id"])].add(int(r["agent_id"]))
        return out

    def _boards_from_rows(self, conn: sqlite3.Connection, rows: list[sqlite3.Row]) -> list[Board]:
        parts = self._participants(conn, (r["id"] for r in rows))
        return [self._row_to_board(r, parts.get(int(r["id"]), ())) for r in rows]

    def add_board(
        self,
        *,
        user_id: int,
        name: str,
        icon: str = "📋",
        color: str = "gray",
        agent_id: int | None = None,
        participant_ids: Iterable[int] = (),
        now_ts: float | None = None,
    ) -> Board:
        name = (name or "").strip()
        if not name:
            raise ValidationFailed("name is required", field="name")
        now = time.time() if now_ts is None else now_ts
        with self._connect() as conn:
            try:
                (last,) = conn.execute(
                    "SELECT COALESCE(MAX(position), -1) FROM boards WHERE user_id = ?", (int(user_id),)
                ).fetchone()
                cur = conn.execute(
                    """
                    INSERT INTO boards(name, icon, color, position, user_id, agent_id, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (name, icon, color, int(last) + 1, int(user_id), agent_id, now, now),
                )
                board_id = int(cur.lastrowid or 0)
                for aid in set(participant_ids):
                    conn.execute(
                        "INSERT INTO board_agents(board_id, agent_id) VALUES (?, ?)", (board_id, int(aid))
                    )
                conn.commit()
            except sqlite3.IntegrityError:
                raise ValidationFailed("Board owner or agent does not exist") from None
            row = conn.execute("SELECT * FROM boards WHERE id = ?", (board_id,)).fetchone()
            return self._boards_from_rows(conn, [row])[0]

    def get_board(self, board_id: int) -> Board | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM boards WHERE id = ?", (int(board_id),)).fetchone()
            if row is None:
                return None
            return self._boards_from_rows(conn, [row])[0]

    def list_boards(
        self,
        *,
        user_id: int | None = None,
        agent_id: int | None = None,
    ) -> list[Board]:
        """
        Boards owned by user_id and/or staffed by agent_id (managing or participant).
        With neither filter, all boards.
        """
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(int(user_id))
        if agent_id is not None:
            clauses.append(
                "(agent_id = ? OR id IN (SELECT board_id FROM board_agents WHERE agent_id = ?))"
            )
            params.extend([int(agent_id), int(agent_id)])
        sql = "SELECT * FROM boards"
        if clauses:
            sql += " WHERE " + " OR ".join(clauses)
        sql += " ORDER BY position ASC, id ASC"
        with self._connect() as conn:
            return self._boards_from_rows(conn, conn.execute(sql, params).fetchall())

    def update_board(
        self,
        board_id: int,
        *,
        name: str | None = None,
        icon: str | None = None,
        color: str | None = None,
        position: int | None = None,
        agent_id: int | None = None,
        clear_agent: bool = False,
        participant_ids: Iterable[int] | None = None,
    ) -> Board | None:
        fields: list[str] = []
        params: list[Any] = []

        if name is not None:
            if not name.strip():
                raise ValidationFailed("name must not be empty", field="name")
            fields.append("name = ?")
            params.append(name.strip())
        if icon is not None:
            fields.append("icon = ?")
            params.append(icon)
        if color is not None:
            fields.append("color = ?")
            params.append(color)
        if position is not None:
            fields.append("position = ?")
            params.append(int(position))
        if clear_agent:
            fields.append("agent_id = NULL")
        elif agent_id is not None:
            fields.append("agent_id = ?")
            params.append(int(agent_id))

        fields.append("updated_at = ?")
        params.append(time.time())
        params.append(int(board_id))

        with self._connect() as conn:
            try:
                cur = conn.execute(f"UPDATE boards SET {', '.join(fields)} WHERE id = ?", params)
                if cur.rowcount != 1:
                    conn.rollback()
                    return None
                if participant_ids is not None:
                    conn.execute("DELETE FROM board_agents WHERE board_id = ?", (int(board_id),))
                    for aid in set(participant_ids):
                        conn.execute(
                            "INSERT INTO board_agents(board_id, agent_id) VALUES (?, ?)",
                            (int(board_id), int(aid)),
                        )
                conn.commit()
            except sqlite3.IntegrityError:
                raise ValidationFailed("Agent does not exist", field="agent_id") from None
            row = conn.execute("SELECT * FROM boards WHERE id = ?", (int(board_id),)).fetchone()
            return self._boards_from_rows(conn, [row])[0]

    def delete_board(self, board_id: int) -> list[Task]:
        """Delete a board and (cascade) its tasks. Returns the tasks that were removed."""
        with self._connect() as conn:
            conn.isolation_level = None
            conn.execute("BEGIN IMMEDIATE")
            try:
                rows = conn.execute(
                    "SELECT * FROM tasks WHERE board_id = ? ORDER BY id ASC", (int(board_id),)
                ).fetchall()
                removed = [self._row_to_task(r) for r in rows]
                conn.execute("DELETE FROM tasks WHERE board_id = ?", (int(board_id),))
                conn.execute("DELETE FROM boards WHERE id = ?", (int(board_id),))
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        logger.info("Board deleted id=%s tasks_removed=%s", board_id, len(removed))
        return removed

    # ---- tasks ----

    def count_tasks(self) -> int:
        with self._connect() as conn:
            (n,) = conn.execute("SELECT COUNT(*) FROM tasks").fetchone()
            return int(n)

    def count_tasks_by_status(self, *, user_id: int | None = None) -> dict[str, int]:
        sql = "SELECT t.status AS status, COUNT(*) AS n FROM tasks t"
        params: list[Any] = []
        if user_id is not None:
            sql += " JOIN boards b ON b.id = t.board_id WHERE b.user_id = ?"
            params.append(int(user_id))
        sql += " GROUP BY t.status"
        with self._connect() as conn:
            counts = {s.value: 0 for s in TaskStatus}
            for r in conn.execute(sql, params).fetchall():
                counts[str(r["status"])] = int(r["n"])
            return counts

    def add_task(
        self,
        *,
        board_id: int,
        name: str,
        description: str | None = None,
        user_id: int | None = None,
        status: TaskStatus = TaskStatus.INBOX,
        priority: Priority = Priority.NONE,
        tags: Iterable[str] = (),
        now_ts: float | None = None,
        activities: Iterable[Activity] = (),
    ) -> Task:
        name = (name or "").strip()
        if not name:
            raise ValidationFailed("name is required", field="name")

        now = time.time() if now_ts is None else now_ts
        completed_at = now if status == TaskStatus.DONE else None
        tags_t = tuple(tags)

        with self._connect() as conn:
            try:
                (last,) = conn.execute(
                    "SELECT COALESCE(MAX(position), -1) FROM tasks WHERE board_id = ?", (int(board_id),)
                ).fetchone()
                position = int(last) + 1
                cur = conn.execute(
                    """
                    INSERT INTO tasks(
                        board_id, user_id, name, description, status, priority, position,
                        tags, completed_at, created_at, updated_at, version
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                    """,
                    (
                        int(board_id),
                        user_id,
                        name,
                        description,
                        status.value,
                        priority.value,
                        position,
                        self._tags_to_str(tags_t),
                        completed_at,
                        now,
                        now,
                    ),
                )
                rowid = cur.lastrowid
                if rowid is None:
                    raise StoreUnavailable("SQLite did not return lastrowid for task insert")
                task_id = int(rowid)
                # Activities are drafted before the id exists.
                self._insert_activities(conn, (replace(a, task_id=task_id) for a in activities))
                conn.commit()
            except sqlite3.IntegrityError:
                raise ValidationFailed("Board does not exist", field="board_id") from None

        logger.debug("Task added id=%s board=%s status=%s", task_id, board_id, status.value)
        return Task(
            id=task_id,
            board_id=int(board_id),
            user_id=user_id,
            name=name,
            description=description,
            status=status,
            priority=priority,
            position=position,
            tags=tags_t,
            completed_at=completed_at,
            created_at=now,
            updated_at=now,
        )

    def get_task(self, task_id: int) -> Task | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (int(task_id),)).fetchone()
            return self._row_to_task(row) if row else None

    def list_tasks(
        self,
        filters: TaskFilters | None = None,
        *,
        board_scope: Iterable[int] | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        """
        Filtered listing.

        board_scope restricts results to the given boards (visibility); None means
        unrestricted (admin). filters.board_ids narrows further.
        """
        filters = filters or TaskFilters()
        clauses: list[str] = []
        params: list[Any] = []

        def in_clause(col: str, values: Iterable[int]) -> None:
            vals = [int(v) for v in values]
            if not vals:
                clauses.append("0")
                return
            clauses.append(f"{col} IN ({','.join('?' for _ in vals)})")
            params.extend(vals)

        if board_scope is not None:
            in_clause("board_id", board_scope)
        if filters.board_ids is not None:
            in_clause("board_id", filters.board_ids)
        if filters.status is not None:
            clauses.append("status = ?")
            params.append(filters.status.value)
        if filters.assigned is True:
            clauses.append("assignee_id IS NOT NULL")
        elif filters.assigned is False:
            clauses.append("assignee_id IS NULL")
        if filters.archived is True:
            clauses.append("archived_at IS NOT NULL")
        elif filters.archived is False:
            clauses.append("archived_at IS NULL")

        sql = "SELECT * FROM tasks"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY board_id ASC, position ASC, id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self._connect() as conn:
            return [self._row_to_task(r) for r in conn.execute(sql, params).fetchall()]

    def list_pickable_tasks(
        self,
        board_ids: Iterable[int],
        *,
        agent_id: int,
        limit: int = 50,
    ) -> list[Task]:
        """
        Unclaimed, unarchived, unblocked, not-done tasks on the given boards that
        `agent_id` may pick up, best first.

        Ordering happens here, over the whole candidate set, so `limit` only cuts
        the tail: assigned to the agent, then boards it manages, then pipeline
        order, then oldest.
        """
        ids = [int(b) for b in board_ids]
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        aid = int(agent_id)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT t.*
                FROM tasks t
                JOIN boards b ON b.id = t.board_id
                WHERE t.board_id IN ({placeholders})
                  AND t.claimed_by IS NULL
                  AND t.archived_at IS NULL
                  AND t.blocked = 0
                  AND t.status != 'done'
                  AND (t.assignee_id IS NULL OR t.assignee_id = ?)
                ORDER BY
                    CASE WHEN t.assignee_id = ? THEN 0 WHEN b.agent_id = ? THEN 1 ELSE 2 END,
                    {_STATUS_RANK_SQL},
                    t.created_at ASC,
                    t.id ASC
                    LIMIT ?
                """,
                (*ids, aid, aid, aid, int(limit)),
            ).fetchall()
            return [self._row_to_task(r) for r in rows]

    def list_claimed_tasks(self, agent_id: int, *, status: TaskStatus | None = None) -> list[Task]:
        sql = "SELECT * FROM tasks WHERE claimed_by = ? AND archived_at IS NULL"
        params: list[Any] = [int(agent_id)]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY claimed_at ASC, id ASC"
        with self._connect() as conn:
            return [self._row_to_task(r) for r in conn.execute(sql, params).fetchall()]

    def list_tasks_held_by(self, agent_id: int, *, board_id: int | None = None) -> list[Task]:
        """Unarchived tasks the agent has claimed or is assigned to, optionally on one board."""
        sql = "SELECT * FROM tasks WHERE (claimed_by = ? OR assignee_id = ?) AND archived_at IS NULL"
        params: list[Any] = [int(agent_id), int(agent_id)]
        if board_id is not None:
            sql += " AND board_id = ?"
            params.append(int(board_id))
        sql += " ORDER BY id ASC"
        with self._connect() as conn:
            return [self._row_to_task(r) for r in conn.execute(sql, params).fetchall()]

    def try_replace_task(
        self,
        task: Task,
        *,
        expected_version: int,
        activities: Iterable[Activity] = (),
    ) -> Task | None:
        """
        Compare-and-swap write of every mutable task column.

        Succeeds only if the row still carries `expected_version`; returns the
        stored task (with its new version) or None when another writer got there
        first or the row is gone. `activities` are committed with the row, or
        not at all.
        """
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE tasks
                SET name = ?, description = ?, status = ?, priority = ?, position = ?,
                    tags = ?, blocked = ?,
                    assignee_id = ?, assigned_at = ?, claimed_by = ?, claimed_at = ?,
                    completed_at = ?, archived_at = ?, updated_at = ?,
                    version = version + 1
                WHERE id = ?
                  AND version = ?
                """,
                (
                    task.name,
                    task.description,
                    task.status.value,
                    task.priority.value,
                    int(task.position),
                    self._tags_to_str(task.tags),
                    int(task.blocked),
                    task.assignee_id,
                    task.assigned_at,
                    task.claimed_by,
                    task.claimed_at,
                    task.completed_at,
                    task.archived_at,
                    task.updated_at,
                    int(task.id),
                    int(expected_version),
                ),
            )
            if cur.rowcount != 1:
                conn.rollback()
                return None
            self._insert_activities(conn, activities)
            conn.commit()
        return replace(task, version=int(expected_version) + 1)

    def delete_task(self, task_id: int, *, expected_version: int | None = None) -> bool:
        """
        Delete one task (its activities cascade). With expected_version the
        DELETE only matches that version, so a caller never reports a row state
        that was overwritten in between.
        """
        sql = "DELETE FROM tasks WHERE id = ?"
        params: list[Any] = [int(task_id)]
        if expected_version is not None:
            sql += " AND version = ?"
            params.append(int(expected_version))
        with self._connect() as conn:
            cur = conn.execute(sql, params)
            conn.commit()
            return cur.rowcount == 1

    # ---- activities ----

    @staticmethod
    def _insert_activities(conn: sqlite3.Connection, activities: Iterable[Activity]) -> None:
        conn.executemany(
            """
            INSERT INTO task_activities(
                task_id, user_id, action, actor_type, actor_name, actor_emoji,
                field_name, old_value, new_value, note, source, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    int(a.task_id),
                    a.user_id,
                    a.action.value,
                    a.actor_type.value,
                    a.actor_name,
                    a.actor_emoji,
                    a.field_name,
                    a.old_value,
                    a.new_value,
                    a.note,
                    a.source,
                    float(a.created_at),
                )
                for a in activities
            ],
        )

    def add_activity(self, activity: Activity) -> None:
        with self._connect() as conn:
            try:
                self._insert_activities(conn, [activity])
                conn.commit()
            except sqlite3.IntegrityError:
                raise ValidationFailed("Task does not exist", field="task_id") from None

    def list_activities(self, task_id: int, *, limit: int = 100) -> list[Activity]:
        """Newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM task_activities
                WHERE task_id = ?
                ORDER BY id DESC
                    LIMIT ?
                """,
                (int(task_id), max(1, int(limit))),
            ).fetchall()
            return [self._row_to_activity(r) for r in rows]

    # ---- archival ----

    def archive_completed_before(self, *, cutoff_ts: float, now_ts: float, limit: int = 200) -> list[Task]:
        """
        Archive up to `limit` done tasks completed at or before cutoff_ts.

        Selection and flip happen in one write transaction, and the UPDATE
        re-checks `archived_at IS NULL`, so a row is archived at most once even
        with several writers.
        """
        with self._connect() as conn:
            conn.isolation_level = None
            conn.execute("BEGIN IMMEDIATE")
            try:
                rows = conn.execute(
                    """
                    SELECT *
                    FROM tasks
                    WHERE status = 'done'
                      AND archived_at IS NULL
                      AND completed_at IS NOT NULL
                      AND completed_at <= ?
                    ORDER BY completed_at ASC, id ASC
                        LIMIT ?
                    """,
                    (float(cutoff_ts), int(limit)),
                ).fetchall()
                archived: list[Task] = []
                for r in rows:
                    task = self._row_to_task(r)
                    cur = conn.execute(
                        """
                        UPDATE tasks
                        SET archived_at = ?, updated_at = ?, version = version + 1
                        WHERE id = ?
                          AND archived_at IS NULL
                        """,
                        (float(now_ts), float(now_ts), task.id),
                    )
                    if cur.rowcount == 1:
                        archived.append(
                            replace(task, archived_at=now_ts, updated_at=now_ts, version=task.version + 1)
                        )
                self._insert_activities(
                    conn,
                    [
                        Activity(
                            task_id=t.id,
                            action=ActivityAction.ARCHIVED,
                            created_at=float(now_ts),
                            actor_type=ActorType.SYSTEM,
                            field_name="archived",
                            old_value="false",
                            new_value="true",
                            source="scheduler",
                        )
                        for t in archived
                    ],
                )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        return archived

    def list_archived_tasks(
        self,
        *,
        board_scope: Iterable[int] | None = None,
        board_id: int | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[Task], int]:
        clauses = ["archived_at IS NOT NULL"]
        params: list[Any] = []
        if board_scope is not None:
            ids = [int(b) for b in board_scope]
            if not ids:
                return [], 0
            clauses.append(f"board_id IN ({','.join('?' for _ in ids)})")
            params.extend(ids)
        if board_id is not None:
            clauses.append("board_id = ?")
            params.append(int(board_id))
        where = " AND ".join(clauses)
        page = max(1, int(page))
        limit = max(1, int(limit))
        with self._connect() as conn:
            (total,) = conn.execute(f"SELECT COUNT(*) FROM tasks WHERE {where}", params).fetchone()
            rows = conn.execute(
                f"""
                SELECT *
                FROM tasks
                WHERE {where}
                ORDER BY archived_at DESC, completed_at DESC, id DESC
                    LIMIT ? OFFSET ?
                """,
                (*params, limit, (page - 1) * limit),
            ).fetchall()
            return [self._row_to_task(r) for r in rows], int(total)
