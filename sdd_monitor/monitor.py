"""Read-only TUI monitor used by `sdd-monitor watch`."""

from __future__ import annotations

import platform
import threading
import time
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Deque

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .config import MonitorThresholds, clamp_refresh_ms
from .processes import ProcessLister, default_process_lister
from .scanner import scan_projects

CYAN = "cyan"
BRIGHT_CYAN = "bright_cyan"
DIM = "dim"
GREEN = "green"
YELLOW = "yellow"
RED = "red"

HEALTH_STYLES = {
    "healthy": GREEN,
    "in_progress": BRIGHT_CYAN,
    "recovering": YELLOW,
    "critical": RED,
    "dormant": DIM,
}

console = Console(force_terminal=True if platform.system() == "Windows" else None)


class LogBuffer:
    """Thread-safe ring buffer for monitor event lines."""

    def __init__(self, max_lines: int = 250):
        self._lines: Deque[str] = deque(maxlen=max_lines)
        self._lock = threading.Lock()

    def add(self, line: str):
        text = line.rstrip("\n")
        if not text:
            return
        with self._lock:
            self._lines.append(f"{datetime.now().strftime('%H:%M:%S')}  {text}")

    def recent(self, count: int = 12) -> list[str]:
        with self._lock:
            return list(self._lines)[-count:]


class MonitorState:
    """Latest snapshot plus counters rendered by the TUI."""

    def __init__(self, *, workspace_root: Path, refresh_ms: int):
        self.start_time = time.time()
        self.workspace_root = workspace_root
        self.refresh_ms = refresh_ms
        self.snapshot: dict[str, Any] = {}
        self.scans = 0

    def uptime(self) -> str:
        elapsed = int(time.time() - self.start_time)
        hours, remainder = divmod(elapsed, 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        return f"{minutes}m {seconds}s"


def health_changes(previous: dict[str, Any] | None, current: dict[str, Any]) -> list[str]:
    """Describe projects that appeared, vanished or changed health between snapshots."""
    before = {p["name"]: p["health"] for p in (previous or {}).get("projects", [])}
    after = {p["name"]: p["health"] for p in current.get("projects", [])}
    lines = []
    for name, health in after.items():
        if name not in before:
            lines.append(f"{name}: discovered ({health})")
        elif before[name] != health:
            lines.append(f"{name}: {before[name]} -> {health}")
    for name in before:
        if name not in after:
            lines.append(f"{name}: removed")
    return lines


def _render_header(state: MonitorState) -> Panel:
    return Panel(
        (
            f"  [{BRIGHT_CYAN}]{escape(str(state.workspace_root))}[/]  "
            f"[{DIM}]scans {state.scans} | every {state.refresh_ms / 1000:g}s | up {state.uptime()}[/]  "
            f"[{DIM}]({datetime.now().strftime('%H:%M:%S')})[/]"
        ),
        border_style=CYAN,
        title=f"[bold {BRIGHT_CYAN}]SDD MONITOR[/]",
    )


def _render_summary(state: MonitorState) -> Panel:
    summary = state.snapshot.get("summary", {})
    lines = [
        f"  [{BRIGHT_CYAN}]Projects[/]      {summary.get('total', 0)}",
        f"  [{GREEN}]Healthy[/]       {summary.get('healthy', 0)}",
        f"  [{BRIGHT_CYAN}]In progress[/]   {summary.get('inProgress', 0)}",
        f"  [{YELLOW}]Recovering[/]    {summary.get('recovering', 0)}",
        f"  [{RED}]Critical[/]      {summary.get('critical', 0)}",
        f"  [{DIM}]Dormant[/]       {summary.get('dormant', 0)}",
        f"  [{BRIGHT_CYAN}]Running[/]       {summary.get('runningProcesses', 0)}",
        f"  [{BRIGHT_CYAN}]Avg value[/]     {summary.get('avgValueScore', 0)}",
    ]
    return Panel("\n".join(lines), border_style=CYAN, title=f"[bold {BRIGHT_CYAN}]SUMMARY[/]")


def build_projects_table(snapshot: dict[str, Any]) -> Table:
    table = Table(expand=True, border_style=CYAN, header_style=f"bold {BRIGHT_CYAN}")
    table.add_column("Project", no_wrap=True)
    table.add_column("Health", no_wrap=True)
    table.add_column("Value", justify="right")
    table.add_column("Stage", no_wrap=True)
    table.add_column("Run", justify="center")
    table.add_column("Fresh", justify="right")
    table.add_column("Provider", no_wrap=True)
    table.add_column("Primary blocker")

    for project in snapshot.get("projects", []):
        health = project.get("health", "")
        style = HEALTH_STYLES.get(health, "")
        progress = project.get("stageProgress", {})
        running = project.get("running", {})
        freshness = project.get("activity", {}).get("freshnessMinutes", 9999)
        table.add_row(
            escape(project.get("name", "")),
            f"[{style}]{health}[/]" if style else health,
            str(project.get("valueScore", 0)),
            f"{project.get('stage', {}).get('current', '')} ({progress.get('completed', 0)}/{progress.get('total', 0)})",
            f"[{GREEN}]●[/]" if running.get("active") else f"[{DIM}]○[/]",
            "-" if freshness >= 9999 else f"{freshness}m",
            project.get("providerSignal", {}).get("state", ""),
            escape(project.get("primaryBlocker", {}).get("reason", "")),
        )
    return table


def _render_logs(logs: LogBuffer) -> Panel:
    lines = [escape(line) for line in logs.recent(12)]
    if not lines:
        lines = [f"[{DIM}]Waiting for changes...[/]"]
    return Panel("\n".join(lines), border_style=CYAN, title=f"[bold {BRIGHT_CYAN}]EVENTS[/]")


def _build_layout(state: MonitorState, logs: LogBuffer) -> Layout:
    layout = Layout()
    layout.split_column(
        Layout(name="header", size=3),
        Layout(name="top"),
        Layout(name="logs", size=14),
    )
    layout["top"].split_row(
        Layout(name="summary", size=30),
        Layout(name="projects"),
    )
    layout["header"].update(_render_header(state))
    layout["summary"].update(_render_summary(state))
    layout["projects"].update(
        Panel(build_projects_table(state.snapshot), border_style=CYAN, title=f"[bold {BRIGHT_CYAN}]PROJECTS[/]")
    )
    layout["logs"].update(_render_logs(logs))
    return layout


def _rescan(state: MonitorState, logs: LogBuffer, lister: ProcessLister, thresholds: MonitorThresholds):
    try:
        snapshot = scan_projects(
            state.workspace_root,
            process_lister=lister,
            previous=state.snapshot or None,
            thresholds=thresholds,
            refresh_ms=state.refresh_ms,
        )
    except Exception as exc:
        logs.add(f"Scan failed: {exc}")
        return
    for line in health_changes(state.snapshot or None, snapshot):
        logs.add(line)
    state.snapshot = snapshot
    state.scans += 1


def run_watch_tui(
    workspace_root: Path,
    refresh_ms: int | None = None,
    *,
    lister: ProcessLister | None = None,
    thresholds: MonitorThresholds | None = None,
):
    """Rescan the workspace locally and render a live dashboard until Ctrl+C."""
    state = MonitorState(workspace_root=workspace_root, refresh_ms=clamp_refresh_ms(refresh_ms))
    logs = LogBuffer()
    lister = lister or default_process_lister()
    thresholds = thresholds or MonitorThresholds.from_env()
    logs.add(f"Watching {workspace_root}")

    _rescan(state, logs, lister, thresholds)
    try:
        with Live(_build_layout(state, logs), console=console, refresh_per_second=2, screen=False) as live:
            next_scan = time.monotonic() + state.refresh_ms / 1000
            while True:
                if time.monotonic() >= next_scan:
                    _rescan(state, logs, lister, thresholds)
                    next_scan = time.monotonic() + state.refresh_ms / 1000
                live.update(_build_layout(state, logs))
                time.sleep(0.5)
    except KeyboardInterrupt:
        logs.add("Received interrupt, shutting down...")
