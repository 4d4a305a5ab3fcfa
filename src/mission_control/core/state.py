# src/mission_control/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..auth.credentials import Authenticator
from ..notify.fanout import NotificationHub
from ..tasks.archive_scheduler import ArchiveScheduler
from ..tasks.board_service import BoardService
from ..tasks.task_service import TaskService
from ..tasks.task_store import TaskStore


@dataclass
class AppState:
    """Everything one running server needs, wired once by the composition root."""

    settings: Any

    store: TaskStore
    hub: NotificationHub
    authenticator: Authenticator
    tasks: TaskService
    boards: BoardService
    scheduler: ArchiveScheduler
