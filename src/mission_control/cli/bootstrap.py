# src/mission_control/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires the store, notification hub, services and archive scheduler into AppState.
"""

from __future__ import annotations

import logging
import time

from ..auth.credentials import Authenticator
from ..config import get_settings
from ..core.ports import Clock
from ..core.state import AppState
from ..notify.fanout import NotificationHub
from ..tasks.archive_scheduler import ArchiveScheduler
from ..tasks.board_service import BoardService
from ..tasks.task_service import TaskService
from ..tasks.task_store import TaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)


def create_initial_state(*, settings=None, clock: Clock = time.time) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings().
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    store = TaskStore(settings.db_path)
    hub = NotificationHub(queue_size=settings.channel_queue_size)
    # One TaskService, so board changes and task requests share the task locks.
    tasks = TaskService(store, hub, clock=clock)

    state = AppState(
        settings=settings,
        store=store,
        hub=hub,
        authenticator=Authenticator(store, clock=clock),
        tasks=tasks,
        boards=BoardService(
            store,
            hub,
            tasks=tasks,
            clock=clock,
            active_minutes=settings.agent_active_minutes,
            idle_minutes=settings.agent_idle_minutes,
        ),
        scheduler=ArchiveScheduler(
            store,
            hub,
            clock=clock,
            retention_seconds=settings.archive_delay_hours * 3600.0,
            interval_seconds=settings.archive_interval_seconds,
            batch_limit=settings.archive_batch_limit,
            enabled=settings.archive_enabled,
        ),
    )
    logger.debug("AppState wired db=%s", settings.db_path)
    return state
