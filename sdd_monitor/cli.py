"""
SDD Monitor CLI: unified entry point for the monitor commands.

Usage:
    sdd-monitor serve [--host HOST] [--port PORT] [--workspace PATH] [--refresh-ms MS] [--pid-file PATH]
    sdd-monitor scan [--workspace PATH] [--json] [--project NAME]
    sdd-monitor watch [--workspace PATH] [--refresh-ms MS]
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from .config import (
    DEFAULT_HOST,
    DEFAULT_PID_FILE,
    DEFAULT_PORT,
    DEFAULT_REFRESH_MS,
    MonitorThresholds,
    clamp_refresh_ms,
    load_env_file,
    resolve_workspace_root,
)
from .log import warn
from .utils import save_json, to_iso, utc_now


def _add_serve_parser(subparsers: argparse._SubParsersAction):
    parser = subparsers.add_parser("serve", help="Start the monitor server (HTTP + SSE)")
    parser.add_argument("--host", type=str, default=DEFAULT_HOST)
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--workspace", type=str, default=None, help="Override workspace root")
    parser.add_argument("--refresh-ms", type=int, default=DEFAULT_REFRESH_MS, help="Rescan interval (min 1000)")
    parser.add_argument("--pid-file", type=str, default=None, help=f"Where to record the monitor pid (default: ./{DEFAULT_PID_FILE})")


def _add_scan_parser(subparsers: argparse._SubParsersAction):
    parser = subparsers.add_parser("scan", help="Scan the workspace once and print the result")
    parser.add_argument("--workspace", type=str, default=None, help="Override workspace root")
    parser.add_argument("--json", action="store_true", help="Print the full snapshot as JSON")
    parser.add_argument("--project", type=str, default=None, help="Only show one project")


def _add_watch_parser(subparsers: argparse._SubParsersAction):
    parser = subparsers.add_parser("watch", help="Live terminal dashboard without the HTTP server")
    parser.add_argument("--workspace", type=str, default=None, help="Override workspace root")
    parser.add_argument("--refresh-ms", type=int, default=DEFAULT_REFRESH_MS, help="Rescan interval (min 1000)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sdd-monitor",
        description="SDD Monitor: live health view of SDD suite projects",
    )
    subparsers = parser.add_subparsers(dest="mode", required=True)

    _add_serve_parser(subparsers)
    _add_scan_parser(subparsers)
    _add_watch_parser(subparsers)
    return parser


def write_pid_file(path: Path, *, host: str, port: int, workspace: Path):
    """Best-effort record of the running monitor."""
    try:
        save_json(path, {
            "writtenAt": to_iso(utc_now()),
            "monitorPid": os.getpid(),
            "url": f"http://{host}:{port}",
            "workspace": str(workspace),
        })
    except OSError as exc:
        warn(f"Could not write pid file {path}: {exc}")


def _handle_serve(args: argparse.Namespace):
    import uvicorn

    import sdd_monitor.server as srv
    from .server import app

    srv.configure(args.workspace, refresh=args.refresh_ms)
    write_pid_file(
        Path(args.pid_file) if args.pid_file else Path.cwd() / DEFAULT_PID_FILE,
        host=args.host,
        port=args.port,
        workspace=srv.workspace_root,
    )
    print(f"SDD monitor starting on http://{args.host}:{args.port}")
    print(f"Workspace: {srv.workspace_root}")
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning", access_log=False)


def _summary_table(snapshot: dict) -> Table:
    table = Table(title=f"Workspace: {snapshot.get('workspaceRoot', '')}")
    table.add_column("Project", no_wrap=True)
    table.add_column("Health")
    table.add_column("Value", justify="right")
    table.add_column("Stage")
    table.add_column("Running", justify="center")
    table.add_column("Next action")
    for project in snapshot.get("projects", []):
        table.add_row(
            project["name"],
            project["health"],
            str(project["valueScore"]),
            project["stage"].get("current", ""),
            "yes" if project["running"]["active"] else "no",
            project["recommendedNextAction"],
        )
    return table


def _handle_scan(args: argparse.Namespace):
    from .scanner import find_project, scan_projects

    workspace = resolve_workspace_root(args.workspace)
    snapshot = scan_projects(workspace, thresholds=MonitorThresholds.from_env())

    if args.project:
        project = find_project(snapshot, args.project)
        if project is None:
            print(json.dumps({"ok": False, "error": "project_not_found", "project": args.project}))
            raise SystemExit(1)
        snapshot = {**snapshot, "projects": [project]}

    if args.json:
        print(json.dumps(snapshot, indent=2, ensure_ascii=False))
        return

    summary = snapshot["summary"]
    console = Console()
    console.print(_summary_table(snapshot))
    console.print(
        f"Projects: {summary['total']} | Healthy: {summary['healthy']} | Unhealthy: {summary['unhealthy']} | "
        f"Running: {summary['runningProcesses']} | Avg value: {summary['avgValueScore']}"
    )


def _handle_watch(args: argparse.Namespace):
    from .monitor import run_watch_tui

    run_watch_tui(resolve_workspace_root(args.workspace), clamp_refresh_ms(args.refresh_ms))


def main(argv: list[str] | None = None):
    parsed_argv = list(argv) if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(parsed_argv)
    load_env_file(Path(args.workspace) if getattr(args, "workspace", None) else None)

    handlers = {
        "serve": _handle_serve,
        "scan": _handle_scan,
        "watch": _handle_watch,
    }
    handlers[args.mode](args)


if __name__ == "__main__":
    main()
