# src/mission_control/tasks/archive_scheduler.py

from __future__ import annotations

"""
Archive scheduler.

A small polling loop that:
- asks the store to archive done tasks whose completion is older than the
  retention window (the store selects and flips them in one transaction),
- publishes one `archived` change event per task it archived.

A failing tick is logged and the loop keeps going; the next tick retries.
Ticks never overlap: a tick that finds the previous one still running is
skipped.

Single-instance: the at-most-once guarantee for events holds per process.
Several processes sharing one database still archive each row once (the
UPDATE re-checks archived_at), so only one of them reports it.
"""

import asyncio
import contextlib
import logging
import time

from ..core.ports import Clock, EventSink, TaskRepo
from ..errors import StoreUnavailable
from ..notify.events import ChangeEvent, EventKind
from .task_models import Task

logger = logging.getLogger(__name__)


class ArchiveScheduler:
    def __init__(
        self,
        store: TaskRepo,
        events: EventSink,
        *,
        clock: Clock = time.time,
        retention_seconds: float = 24 * 3600.0,
        interval_seconds: float = 300.0,
        batch_limit: int = 200,
        enabled: bool = True,
    ) -> None:
        self._store = store
        self._events = events
        self._clock = clock
        self.retention_seconds = max(0.0, float(retention_seconds))
        self.interval_seconds = max(0.5, float(interval_seconds))
        self.batch_limit = max(1, int(batch_limit))
        self.enabled = enabled

        self._busy = False
        self._runner: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def run_once(self) -> list[Task]:
        """One synchronous archive pass. Store errors propagate to the caller."""
        now = self._clock()
        cutoff = now - self.retention_seconds
        archived: list[Task] = []

        # Drain in batches so a large backlog is cleared in one tick.
        while True:
            batch = self._store.archive_completed_before(cutoff_ts=cutoff, now_ts=now, limit=self.batch_limit)
            archived.extend(batch)
            if len(batch) < self.batch_limit:
                break

        for task in archived:
            self._publish(task)
        if archived:
            logger.info("Archived %s task(s) completed before %s", len(archived), cutoff)
        return archived

    def _publish(self, task: Task) -> None:
        board = self._store.get_board(task.board_id)
        if board is None:
            # Board removed between flip and publish; nobody is entitled to it anymore.
            return
        try:
            self._events.publish(ChangeEvent.for_task(EventKind.ARCHIVED, task, board))
        except Exception:
            logger.exception("Failed to publish archived event for task %s", task.id)

    async def tick(self) -> list[Task] | None:
        """
        Run one pass off the event loop. Returns the archived tasks, or None when
        the tick was skipped (previous one still running) or failed.
        """
        if self._busy:
            logger.warning("Archive tick skipped: previous tick still running")
            return None
        self._busy = True
        try:
            return await asyncio.to_thread(self.run_once)
        except StoreUnavailable as exc:
            logger.error("Archive tick failed, store unavailable: %s", exc.detail)
            return None
        except Exception:
            logger.exception("Archive tick failed")
            return None
        finally:
            self._busy = False

    async def run_forever(self) -> None:
        """Tick immediately, then every interval_seconds. Cancel to stop."""
        logger.info(
            "Archive scheduler running: retention=%.0fs interval=%.0fs batch=%s",
            self.retention_seconds,
            self.interval_seconds,
            self.batch_limit,
        )
        while True:
            await self.tick()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if not self.enabled:
            logger.info("Archive scheduler disabled")
            return
        if self.running:
            return
        self._runner = asyncio.create_task(self.run_forever(), name="archive-scheduler")

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is None:
            return
        runner.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await runner
        logger.info("Archive scheduler stopped")
