"""
SDD Monitor Server: live health view of every suite project in a workspace.

No database. Reads project artifacts from the filesystem, rescans on a timer
and on file changes, and pushes each new snapshot to connected clients.

Usage:
    sdd-monitor serve [--port 4317] [--workspace PATH] [--refresh-ms 5000]
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Any

from fastapi import FastAPI
from watchfiles import DefaultFilter, awatch

from .config import (
    DEFAULT_REFRESH_MS,
    DEFAULT_THRESHOLDS,
    STREAM_MODE,
    SUITE_LOGS_DIR,
    WATCH_DEBOUNCE_MS,
    WATCH_STABILITY_MS,
    MonitorThresholds,
    clamp_refresh_ms,
    resolve_workspace_root,
)
from .log import log, warn
from .processes import ProcessLister, default_process_lister
from .scanner import scan_projects
from .server_actions import ActionRuntime, run_project_action
from .server_routes import MonitorRouterContext, create_monitor_router
from .server_stream import SnapshotHub

# ── In-memory state ─────────────────────────────────────────────

workspace_root: Path = resolve_workspace_root()
refresh_ms: int = DEFAULT_REFRESH_MS
thresholds: MonitorThresholds = DEFAULT_THRESHOLDS
process_lister: ProcessLister = default_process_lister()
hub: SnapshotHub


def _scan(previous: dict[str, Any] | None) -> dict[str, Any]:
    return scan_projects(
        workspace_root,
        process_lister=process_lister,
        previous=previous,
        thresholds=thresholds,
        refresh_ms=refresh_ms,
    )


hub = SnapshotHub(_scan)


def configure(
    workspace: str | Path | None = None,
    *,
    refresh: int | None = None,
    lister: ProcessLister | None = None,
    limits: MonitorThresholds | None = None,
):
    """Point the server at a workspace and reset the held snapshot."""
    global workspace_root, refresh_ms, thresholds, process_lister, hub
    workspace_root = resolve_workspace_root(workspace)
    refresh_ms = clamp_refresh_ms(refresh)
    thresholds = limits or MonitorThresholds.from_env()
    process_lister = lister or default_process_lister()
    hub = SnapshotHub(_scan)


def monitor_meta() -> dict[str, Any]:
    return {"refreshMs": refresh_ms, "stream": STREAM_MODE}


# ── Refresh triggers ────────────────────────────────────────────

class WorkspaceFilter(DefaultFilter):
    """Default noise filter plus the monitor's own suite logs."""

    def __init__(self):
        super().__init__(ignore_dirs=(*DefaultFilter.ignore_dirs, SUITE_LOGS_DIR))


async def refresh_loop():
    while True:
        await asyncio.sleep(refresh_ms / 1000)
        await hub.refresh()


async def watch_workspace():
    if not workspace_root.exists():
        warn(f"Workspace {workspace_root} does not exist, live file updates disabled")
        return

    log(f"Watching {workspace_root} for changes...")
    async for changes in awatch(
        workspace_root,
        watch_filter=WorkspaceFilter(),
        step=WATCH_STABILITY_MS,
        debounce=WATCH_DEBOUNCE_MS,
    ):
        # one rescan per settled batch
        if changes:
            await hub.refresh()


# ── Actions ─────────────────────────────────────────────────────

async def _run_action(name: str, payload: dict[str, Any]) -> dict[str, Any]:
    result = await asyncio.to_thread(
        run_project_action,
        name,
        payload,
        snapshot=hub.snapshot,
        workspace_root=workspace_root,
        runtime=ActionRuntime(process_lister=process_lister),
    )
    # a scan already running predates the action; wait for the follow-up
    await hub.refresh(wait=True)
    return result


# ── FastAPI app ─────────────────────────────────────────────────

@asynccontextmanager
async def _lifespan(_: FastAPI):
    snapshot = await hub.refresh() or {}
    summary = snapshot.get("summary", {})
    log(f"Workspace: {workspace_root}")
    log(
        f"Projects: {summary.get('total', 0)} | Healthy: {summary.get('healthy', 0)} | "
        f"Critical: {summary.get('critical', 0)} | Running: {summary.get('runningProcesses', 0)}"
    )
    tasks = [asyncio.create_task(refresh_loop()), asyncio.create_task(watch_workspace())]
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task


app = FastAPI(title="SDD Monitor", docs_url=None, redoc_url=None, lifespan=_lifespan)

app.include_router(create_monitor_router(MonitorRouterContext(
    get_hub=lambda: hub,
    get_workspace_root=lambda: workspace_root,
    get_monitor_meta=monitor_meta,
    run_action=_run_action,
)))
