"""Project control actions (pause / resume / restart) for the FastAPI server.

Actions only touch external state: suite processes and the project's own
campaign-state file. The next scan re-derives the verdict from disk.
"""

from __future__ import annotations

import os
import re
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from .config import CAMPAIGN_STATE_FILE, SUITE_LOGS_DIR, get_node_binary, resolve_suite_tool_root
from .log import log, warn
from .processes import LivenessProbe, ProcessLister, is_process_alive, project_processes
from .scanner import find_project
from .utils import as_dict, clean_str, load_json_dict, safe_int, save_json, to_iso, utc_now

VALID_ACTIONS = ("pause", "resume", "restart")
DEFAULT_HINT = "continue delivery to final release with strict quality gates"


class ActionError(Exception):
    """Structured action error raised by project action handlers."""

    def __init__(self, status_code: int, payload: dict[str, Any]):
        super().__init__(payload.get("error", "Project action failed"))
        self.status_code = int(status_code)
        self.payload = payload


@dataclass
class SpawnResult:
    pid: int
    out_log: Path
    err_log: Path


Spawner = Callable[[dict[str, Any], Path], SpawnResult]
Stopper = Callable[[int], bool]


def sanitize_hint(text: Any) -> str:
    raw = clean_str(text)
    if not raw:
        return DEFAULT_HINT
    return re.sub(r"^hello\s+", "", raw, flags=re.IGNORECASE).strip()


def build_suite_args(project: dict[str, Any]) -> list[str]:
    """Suite CLI arguments reconstructed from the project's last recovery hint."""
    run_status = as_dict(project.get("runStatus"))
    raw = as_dict(run_status.get("raw"))
    recovery = as_dict(run_status.get("recovery"))
    campaign = as_dict(project.get("campaign"))

    provider = clean_str(raw.get("provider")) or "gemini"
    model = clean_str(raw.get("model")) or clean_str(campaign.get("model"))
    from_step = clean_str(recovery.get("fromStep")) or clean_str(campaign.get("nextFromStep")) or "finish"

    args = [
        "dist/cli.js", "--provider", provider, "--non-interactive",
        "--project", str(project.get("name", "")), "--iterations", "10",
    ]
    if model:
        args += ["--model", model]
    args += [
        "suite",
        "--campaign-autonomous",
        "--campaign-hours", "6",
        "--campaign-max-cycles", "500",
        "--campaign-sleep-seconds", "5",
        "--from-step", from_step,
        "hello", sanitize_hint(recovery.get("hint")),
    ]
    return args


def spawn_suite(project: dict[str, Any], workspace_root: Path) -> SpawnResult:
    """Start a detached suite run with output captured under ``_suite-logs``."""
    logs_dir = workspace_root / SUITE_LOGS_DIR
    logs_dir.mkdir(parents=True, exist_ok=True)
    stamp = re.sub(r"[:.]", "-", to_iso(utc_now()))
    name = str(project.get("name", "project"))
    out_log = logs_dir / f"{name}.monitor.{stamp}.out.log"
    err_log = logs_dir / f"{name}.monitor.{stamp}.err.log"

    cmd = [get_node_binary(), *build_suite_args(project)]
    with out_log.open("a", encoding="utf-8") as out, err_log.open("a", encoding="utf-8") as err:
        process = subprocess.Popen(
            cmd,
            cwd=str(resolve_suite_tool_root()),
            stdin=subprocess.DEVNULL,
            stdout=out,
            stderr=err,
            start_new_session=True,
        )
    log(f"Spawned suite for {name} (pid {process.pid})")
    return SpawnResult(pid=process.pid, out_log=out_log, err_log=err_log)


def stop_process(pid: int) -> bool:
    try:
        os.kill(pid, signal.SIGTERM)
    except (OSError, OverflowError) as exc:
        warn(f"Could not stop pid {pid}: {exc}")
        return False
    return True


def patch_campaign_state(project_root: Path, patch: dict[str, Any]):
    """Read-modify-write of the campaign file; a competing writer may win."""
    path = Path(project_root) / CAMPAIGN_STATE_FILE
    current = load_json_dict(path) or {}
    try:
        save_json(path, {**current, **patch})
    except OSError as exc:
        warn(f"Could not update {path}: {exc}")


@dataclass
class ActionRuntime:
    """OS-facing collaborators used by the actions."""

    process_lister: ProcessLister
    probe: LivenessProbe = is_process_alive
    stop: Stopper = stop_process
    spawn: Spawner = spawn_suite


def locate_processes(project: dict[str, Any], runtime: ActionRuntime) -> list[dict[str, Any]]:
    rows = project_processes(str(project.get("name", "")), runtime.process_lister.list_processes())
    campaign_pid = safe_int(as_dict(project.get("campaign")).get("suitePid"))
    if not rows and campaign_pid > 0 and runtime.probe(campaign_pid):
        rows = [{"pid": campaign_pid, "command": "from_campaign_state"}]
    return rows


def run_project_action(
    name: str,
    payload: dict[str, Any],
    *,
    snapshot: dict[str, Any] | None,
    workspace_root: Path,
    runtime: ActionRuntime,
) -> dict[str, Any]:
    """Execute a control action against one project and return the response payload."""
    project = find_project(snapshot, name)
    if project is None:
        raise ActionError(404, {"ok": False, "error": "project_not_found", "project": name})

    action = clean_str(as_dict(payload).get("action")).lower()
    if action not in VALID_ACTIONS:
        raise ActionError(400, {"ok": False, "error": "invalid_action", "details": "Use pause|resume|restart"})

    project_root = Path(str(project.get("projectRoot") or workspace_root / name))
    active = locate_processes(project, runtime)
    pids = [safe_int(row.get("pid")) for row in active]

    if action == "pause":
        stopped = [pid for pid in pids if runtime.stop(pid)]
        patch_campaign_state(project_root, {
            "running": False,
            "phase": "paused_by_monitor",
            "lastError": "" if stopped else "No active suite process found to pause.",
        })
        log(f"Paused {name}: stopped {stopped or 'nothing'}")
        return {"ok": True, "action": action, "project": name, "stoppedPids": stopped}

    if action == "resume" and active:
        return {
            "ok": True,
            "action": action,
            "project": name,
            "skipped": True,
            "details": "suite already running",
            "pids": pids,
        }

    if action == "restart":
        for pid in pids:
            runtime.stop(pid)
        patch_campaign_state(project_root, {"running": False, "phase": "restarting_by_monitor"})

    try:
        started = runtime.spawn(project, Path(workspace_root))
    except Exception as exc:
        warn(f"{action} failed for {name}: {exc}")
        raise ActionError(500, {"ok": False, "action": action, "error": "action_failed", "details": str(exc)}) from exc

    patch_campaign_state(project_root, {
        "running": True,
        "suitePid": started.pid,
        "phase": "restarted_by_monitor" if action == "restart" else "resumed_by_monitor",
        "lastError": "",
    })
    return {
        "ok": True,
        "action": action,
        "project": name,
        "suitePid": started.pid,
        "outLog": str(started.out_log),
        "errLog": str(started.err_log),
    }
