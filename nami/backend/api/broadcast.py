"""
api/broadcast.py

BroadcastHub — pushes the current Snapshot to every connected subscriber.

A subscriber is anything with `async send_text(str)` (a FastAPI WebSocket
in production, an AsyncMock in tests).

Every tick the hub builds one Snapshot, serializes it once and starts one
delivery task per subscriber. A subscriber whose previous delivery has not
finished is skipped for that tick, so it only ever has one snapshot in
flight and never accumulates a backlog. The snapshot sent on join counts as
that one. A delivery that raises removes the subscriber. Deliveries to one
subscriber complete in tick order, and a failing tick is logged and skipped.

Thread safety: designed to be called exclusively from asyncio coroutines.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Protocol

from ..metrics import METRICS
from ..models import Snapshot

logger = logging.getLogger(__name__)


class Subscriber(Protocol):
    async def send_text(self, data: str) -> Any: ...


class BroadcastHub:
    """
    Args:
        build_snapshot: Produces a fresh Snapshot (SnapshotAggregator.build).
        interval:       Seconds between broadcast ticks.
        prepare:        Optional coroutine awaited before each build
                        (SnapshotAggregator.prepare).
    """

    def __init__(
        self,
        build_snapshot: Callable[[], Snapshot],
        interval: float = 1.0,
        prepare: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._build_snapshot = build_snapshot
        self._interval = interval
        self._prepare = prepare
        self._subscribers: set[Subscriber] = set()
        self._in_flight: dict[Subscriber, asyncio.Task] = {}
        self.latest: Snapshot | None = None
        self.latest_message: str | None = None
        self.total_connections = 0

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def join(self, subscriber: Subscriber) -> None:
        """Register *subscriber* and send it a snapshot right away."""
        if self._prepare is not None:
            await self._prepare()
        self._subscribers.add(subscriber)
        self.total_connections += 1
        logger.debug("Subscriber joined — total=%d", len(self._subscribers))

        task = asyncio.create_task(self._deliver(subscriber, self._refresh()))
        self._in_flight[subscriber] = task
        await task

    def leave(self, subscriber: Subscriber) -> None:
        """Remove *subscriber* (no-op if not present)."""
        self._subscribers.discard(subscriber)
        task = self._in_flight.pop(subscriber, None)
        if task is not None and not task.done():
            task.cancel()
        logger.debug("Subscriber left — remaining=%d", len(self._subscribers))

    @property
    def connection_count(self) -> int:
        return len(self._subscribers)

    # ------------------------------------------------------------------
    # Broadcast
    # ------------------------------------------------------------------

    async def publish(self) -> list[asyncio.Task]:
        """
        Build, serialize and fan out one snapshot.

        Returns the delivery tasks started this tick; callers never need
        to await them.
        """
        if self._prepare is not None:
            await self._prepare()
        message = self._refresh()
        started: list[asyncio.Task] = []
        for sub in list(self._subscribers):
            pending = self._in_flight.get(sub)
            if pending is not None and not pending.done():
                METRICS.deliveries_skipped.inc()
                continue
            task = asyncio.create_task(self._deliver(sub, message))
            self._in_flight[sub] = task
            started.append(task)
        return started

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Publish every `interval` seconds while anyone is listening."""
        logger.info("Broadcast loop started (interval=%.1fs)", self._interval)
        while not shutdown_event.is_set():
            await asyncio.sleep(self._interval)
            if not self._subscribers:
                continue
            try:
                await self.publish()
            except Exception as exc:
                logger.exception("Snapshot broadcast failed, skipping tick: %s", exc)
        logger.info("Broadcast loop exiting")

    async def close(self) -> None:
        """Cancel outstanding deliveries."""
        tasks = [t for t in self._in_flight.values() if not t.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _refresh(self) -> str:
        snapshot = self._build_snapshot()
        self.latest = snapshot
        self.latest_message = json.dumps(snapshot.to_dict(), default=str)
        return self.latest_message

    async def _deliver(self, sub: Subscriber, message: str) -> None:
        try:
            await sub.send_text(message)
            METRICS.messages_delivered.inc()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("WS send failed: %s — removing", exc)
            self._drop(sub)
        finally:
            if self._in_flight.get(sub) is asyncio.current_task():
                del self._in_flight[sub]

    def _drop(self, sub: Subscriber) -> None:
        if sub in self._subscribers:
            self._subscribers.discard(sub)
            METRICS.subscribers_dropped.inc()
