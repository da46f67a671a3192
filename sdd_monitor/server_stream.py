"""Snapshot hub: holds the current snapshot and fans it out to live subscribers.

Scans are serialized. A trigger that arrives while a scan is in flight marks a
single follow-up scan; further triggers during that scan fold into the same
follow-up. Each subscriber owns a latest-only slot, so a slow reader skips
intermediate snapshots instead of queueing them.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, AsyncIterator, Callable

from .config import HEARTBEAT_SECONDS
from .log import error

ScanFn = Callable[[dict[str, Any] | None], dict[str, Any]]


def sse_frame(payload: str, event: str = "snapshot") -> str:
    return f"event: {event}\ndata: {payload}\n\n"


def keepalive_frame(now_ms: int | None = None) -> str:
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f": keepalive {stamp}\n\n"


class SubscriberClosed(Exception):
    pass


class Subscriber:
    """One live connection's delivery slot."""

    def __init__(self):
        self._payload: str | None = None
        self._ready = asyncio.Event()
        self.closed = False

    def offer(self, payload: str):
        if self.closed:
            raise SubscriberClosed()
        self._payload = payload
        self._ready.set()

    async def next(self, timeout: float | None = None) -> str | None:
        """Wait for the newest payload; ``None`` when ``timeout`` passes first."""
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
        except asyncio.TimeoutError:
            return None
        self._ready.clear()
        payload, self._payload = self._payload, None
        return payload

    def close(self):
        self.closed = True
        self._ready.set()


class SnapshotHub:
    def __init__(self, scan: ScanFn):
        self._scan = scan
        self.snapshot: dict[str, Any] | None = None
        self.payload = ""
        self.subscribers: set[Subscriber] = set()
        self.scan_count = 0
        self._in_flight = False
        self._pending = False
        self._waiters: list[asyncio.Future] = []

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def publish(self, snapshot: dict[str, Any]):
        """Swap in a new snapshot and offer it to every subscriber."""
        self.snapshot = snapshot
        self.payload = json.dumps(snapshot)
        dropped: set[Subscriber] = set()
        for subscriber in self.subscribers:
            try:
                subscriber.offer(self.payload)
            except Exception:
                dropped.add(subscriber)
        self.subscribers.difference_update(dropped)

    async def refresh(self, wait: bool = False) -> dict[str, Any] | None:
        """Trigger a scan.

        While a scan is in flight the trigger only marks the follow-up. With
        ``wait`` the caller is held until that follow-up has been published.
        """
        if self._in_flight:
            self._pending = True
            if wait:
                waiter = asyncio.get_running_loop().create_future()
                self._waiters.append(waiter)
                await waiter
            return self.snapshot

        self._in_flight = True
        try:
            while True:
                self._pending = False
                self.scan_count += 1
                try:
                    snapshot = await asyncio.to_thread(self._scan, self.snapshot)
                except Exception as exc:
                    error(f"Scan failed, keeping previous snapshot: {exc}")
                else:
                    self.publish(snapshot)
                if not self._pending:
                    break
        finally:
            self._in_flight = False
            waiters, self._waiters = self._waiters, []
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_result(None)
        return self.snapshot

    async def current(self) -> dict[str, Any] | None:
        """The held snapshot, scanning first (or joining the running scan) when there is none."""
        if self.snapshot is None:
            await self.refresh(wait=True)
        return self.snapshot

    def subscribe(self) -> Subscriber:
        subscriber = Subscriber()
        self.subscribers.add(subscriber)
        if self.payload:
            subscriber.offer(self.payload)
        return subscriber

    def unsubscribe(self, subscriber: Subscriber):
        subscriber.close()
        self.subscribers.discard(subscriber)


async def sse_events(
    hub: SnapshotHub,
    subscriber: Subscriber,
    heartbeat: float = HEARTBEAT_SECONDS,
) -> AsyncIterator[str]:
    """Snapshot frames for one subscriber, with a keep-alive comment every ``heartbeat`` seconds."""
    loop = asyncio.get_running_loop()
    next_beat = loop.time() + heartbeat
    try:
        while not subscriber.closed:
            payload = await subscriber.next(max(0.0, next_beat - loop.time()))
            if subscriber.closed:
                break
            if payload is not None:
                yield sse_frame(payload)
            # keep-alives run on their own clock, snapshots do not reset it
            if loop.time() >= next_beat:
                yield keepalive_frame()
                next_beat = loop.time() + heartbeat
    finally:
        hub.unsubscribe(subscriber)
