"""Monitor API routes: pull, push (SSE + WebSocket) and control actions."""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, StreamingResponse

from .config import HEARTBEAT_SECONDS
from .scanner import find_project
from .server_actions import ActionError
from .server_stream import SnapshotHub, Subscriber, sse_events
from .utils import to_iso, utc_now

HubGetter = Callable[[], SnapshotHub]
PathGetter = Callable[[], Path]
MetaGetter = Callable[[], dict[str, Any]]
ActionRunner = Callable[[str, dict[str, Any]], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class MonitorRouterContext:
    """Dependencies required to serve monitor routes."""

    get_hub: HubGetter
    get_workspace_root: PathGetter
    get_monitor_meta: MetaGetter
    run_action: ActionRunner
    heartbeat_seconds: float = HEARTBEAT_SECONDS


def create_monitor_router(ctx: MonitorRouterContext) -> APIRouter:
    """Build an APIRouter containing the monitor endpoints."""
    router = APIRouter()

    def _unavailable() -> JSONResponse:
        return JSONResponse({"ok": False, "error": "snapshot_unavailable"}, status_code=503)

    @router.get("/api/health")
    async def api_health():
        return {
            "ok": True,
            "workspaceRoot": str(ctx.get_workspace_root()),
            "at": to_iso(utc_now()),
            "monitor": ctx.get_monitor_meta(),
        }

    @router.get("/api/status")
    async def api_status():
        snapshot = await ctx.get_hub().current()
        if snapshot is None:
            return _unavailable()
        return snapshot

    @router.get("/api/project/{name}")
    async def api_project(name: str):
        snapshot = await ctx.get_hub().current()
        if snapshot is None:
            return _unavailable()
        project = find_project(snapshot, name)
        if project is None:
            return JSONResponse({"ok": False, "error": "project_not_found", "project": name}, status_code=404)
        return {
            "ok": True,
            "at": snapshot.get("at"),
            "workspaceRoot": snapshot.get("workspaceRoot"),
            "project": project,
            "monitor": ctx.get_monitor_meta(),
        }

    @router.post("/api/project/{name}/action")
    async def api_project_action(name: str, payload: dict[str, Any] | None = None):
        if await ctx.get_hub().current() is None:
            return _unavailable()
        try:
            return await ctx.run_action(name, payload or {})
        except ActionError as exc:
            return JSONResponse(exc.payload, status_code=exc.status_code)

    @router.get("/api/stream")
    async def api_stream():
        hub = ctx.get_hub()
        await hub.current()
        subscriber = hub.subscribe()
        return StreamingResponse(
            sse_events(hub, subscriber, ctx.heartbeat_seconds),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @router.websocket("/ws")
    async def websocket_snapshots(websocket: WebSocket):
        await websocket.accept()
        hub = ctx.get_hub()
        await hub.current()
        subscriber = hub.subscribe()

        async def _send_loop(sub: Subscriber):
            while not sub.closed:
                payload = await sub.next()
                if payload is None:
                    continue
                await websocket.send_text(f'{{"type":"snapshot","snapshot":{payload}}}')

        sender = asyncio.create_task(_send_loop(subscriber))
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            hub.unsubscribe(subscriber)
            sender.cancel()
            with suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                await sender

    return router
