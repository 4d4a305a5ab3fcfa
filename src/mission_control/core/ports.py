# src/mission_control/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The lifecycle core depends on Protocols instead of concrete implementations.
This keeps the store and the push transport swappable and makes testing easier.
"""

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Protocol

if TYPE_CHECKING:
    from ..notify.events import ChangeEvent
    from ..tasks.task_models import Activity, Board, Task, TaskFilters

Clock = Callable[[], float]
# Returns a unix timestamp; injected so tests can move time.


class Channel(Protocol):
    """
    Transport-side port: one live push connection.

    send_json() either delivers the message or raises; the fan-out treats any
    raise as a disconnect.
    """

    def send_json(self, data: dict[str, Any]) -> Awaitable[None]: ...


class EventSink(Protocol):
    """Where committed task mutations are announced."""

    def publish(self, event: ChangeEvent) -> None: ...


class TaskRepo(Protocol):
    # Lifecycle API
    def get_board(self, board_id: int) -> Board | None: ...
    def get_task(self, task_id: int) -> Task | None: ...
    def try_replace_task(
            self,
            task: Task,
            *,
            expected_version: int,
            activities: Iterable[Activity] = (),
    ) -> Task | None: ...
    def list_tasks(
            self,
            filters: TaskFilters | None = None,
            *,
            board_scope: Iterable[int] | None = None,
            limit: int | None = None,
    ) -> list[Task]: ...

    # Scheduler API
    def archive_completed_before(self, *, cutoff_ts: float, now_ts: float, limit: int = 200) -> list[Task]: ...
