# src/mission_control/notify/fanout.py

from __future__ import annotations

"""
Notification fan-out.

A process-scoped registry of live push channels, keyed by principal, and a hub
that turns committed task mutations into messages for every entitled channel.

Delivery model:
- broadcast() never awaits: it drops the message into each subscriber's
  bounded queue and returns, so the mutation that produced the event is never
  delayed or rolled back by a slow or dead client
- one sender task per subscription drains its queue in FIFO order, which keeps
  per-task event order as committed (no order across tasks is promised)
- each subscription remembers the newest task version it has queued; an
  event carrying an older version of that task is dropped, so a publisher
  that lost a race can never put a stale snapshot after a newer one
- a failed send or a full queue is treated as a disconnect: the subscription
  is dropped, nothing is retried, nothing is replayed later
"""

import asyncio
import contextlib
import itertools
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from ..auth.gate import can_view_board
from ..auth.principal import Principal
from ..core.ports import Channel
from .events import ChangeEvent, EventScope, connected_message

logger = logging.getLogger(__name__)

Entitlement = Callable[[Principal, EventScope], bool]

_sub_ids = itertools.count(1)


def default_entitlement(principal: Principal, scope: EventScope) -> bool:
    return can_view_board(principal, scope.owner_id, scope.agent_ids)


@dataclass(eq=False)
class Subscription:
    principal: Principal
    channel: Channel
    queue: asyncio.Queue[dict[str, Any]]
    loop: asyncio.AbstractEventLoop
    id: int = field(default_factory=lambda: next(_sub_ids))
    sender: asyncio.Task[None] | None = None
    closed: bool = False
    # task id -> newest version queued; touched only on the subscription's loop
    versions: dict[int, int] = field(default_factory=dict)

    @property
    def principal_id(self) -> str:
        return self.principal.principal_id


class ChannelRegistry:
    """
    principal_id -> live subscriptions.

    Mutated from many connection lifecycles; every access takes the lock and
    iteration works on a snapshot, so add/remove during a broadcast is safe.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_principal: dict[str, set[Subscription]] = {}

    def add(self, sub: Subscription) -> None:
        with self._lock:
            self._by_principal.setdefault(sub.principal_id, set()).add(sub)

    def remove(self, sub: Subscription) -> bool:
        with self._lock:
            subs = self._by_principal.get(sub.principal_id)
            if not subs or sub not in subs:
                return False
            subs.discard(sub)
            if not subs:
                del self._by_principal[sub.principal_id]
            return True

    def snapshot(self) -> list[Subscription]:
        with self._lock:
            return [s for subs in self._by_principal.values() for s in subs]

    def count(self, principal_id: str | None = None) -> int:
        with self._lock:
            if principal_id is not None:
                return len(self._by_principal.get(principal_id, ()))
            return sum(len(s) for s in self._by_principal.values())


class NotificationHub:
    """Owns the channel registry; implements the EventSink port."""

    def __init__(
        self,
        registry: ChannelRegistry | None = None,
        *,
        entitled: Entitlement = default_entitlement,
        queue_size: int = 256,
    ) -> None:
        self.registry = registry or ChannelRegistry()
        self._entitled = entitled
        self._queue_size = max(1, int(queue_size))

    # ---- connection lifecycle ----

    async def register(self, principal: Principal, channel: Channel) -> Subscription:
        """Add an authenticated channel and start its sender. Must run on the event loop."""
        sub = Subscription(
            principal=principal,
            channel=channel,
            queue=asyncio.Queue(maxsize=self._queue_size),
            loop=asyncio.get_running_loop(),
        )
        sub.queue.put_nowait(connected_message())
        self.registry.add(sub)
        sub.sender = asyncio.create_task(self._pump(sub), name=f"push-{sub.principal_id}-{sub.id}")
        logger.info(
            "Channel registered sub=%s principal=%s live=%s",
            sub.id,
            sub.principal_id,
            self.registry.count(sub.principal_id),
        )
        return sub

    def unregister(self, sub: Subscription) -> None:
        if sub.closed:
            return
        sub.closed = True
        removed = self.registry.remove(sub)
        sender = sub.sender
        if sender is not None and not sender.done() and sender is not _current_task():
            if _current_loop() is sub.loop:
                sender.cancel()
            else:
                sub.loop.call_soon_threadsafe(sender.cancel)
        if removed:
            logger.info("Channel removed sub=%s principal=%s", sub.id, sub.principal_id)

    async def close(self) -> None:
        subs = self.registry.snapshot()
        for sub in subs:
            self.unregister(sub)
        senders = [s.sender for s in subs if s.sender is not None]
        for t in senders:
            with contextlib.suppress(asyncio.CancelledError):
                await t

    # ---- delivery ----

    def publish(self, event: ChangeEvent) -> None:
        self.broadcast(event)

    def broadcast(self, event: ChangeEvent) -> int:
        """
        Queue `event` for every entitled live channel. Returns how many channels
        it was queued for. Never raises for delivery problems.
        """
        message = event.to_message()
        running = _current_loop()
        queued = 0
        for sub in self.registry.snapshot():
            if sub.closed or not self._entitled(sub.principal, event.scope):
                continue
            if running is sub.loop:
                if self._enqueue(sub, message, event.task_id, event.version):
                    queued += 1
            else:
                sub.loop.call_soon_threadsafe(self._enqueue, sub, message, event.task_id, event.version)
                queued += 1
        logger.debug(
            "Broadcast %s task=%s board=%s channels=%s",
            event.kind.value,
            event.task_id,
            event.scope.board_id,
            queued,
        )
        return queued

    def _enqueue(self, sub: Subscription, message: dict[str, Any], task_id: int, version: int) -> bool:
        if sub.closed:
            return False
        if version < sub.versions.get(task_id, 0):
            logger.debug(
                "Stale event dropped sub=%s task=%s version=%s newest=%s",
                sub.id,
                task_id,
                version,
                sub.versions[task_id],
            )
            return False
        try:
            sub.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Channel sub=%s is not keeping up; dropping it", sub.id)
            self.unregister(sub)
            return False
        sub.versions[task_id] = version
        return True

    async def _pump(self, sub: Subscription) -> None:
        while not sub.closed:
            message = await sub.queue.get()
            try:
                await sub.channel.send_json(message)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(
                    "Send failed on sub=%s principal=%s; treating as disconnect",
                    sub.id,
                    sub.principal_id,
                    exc_info=True,
                )
                self.unregister(sub)
                return


def _current_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _current_task() -> asyncio.Task[Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
