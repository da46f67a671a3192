"""Process discovery and running-state reconciliation.

A project's "running" claim can come from four independent places: a live
suite process whose command line names it, its own campaign state, the
workspace suite lock, or a freshly written run-status file. The helpers here
merge those into one claim per project and guarantee a PID never backs two
projects at once.
"""

from __future__ import annotations

import json
import os
import platform
import re
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from .config import DEFAULT_THRESHOLDS, PROCESS_LIST_TIMEOUT_SECONDS, MonitorThresholds
from .log import warn
from .utils import EPOCH, is_fresh, safe_int

SUITE_CLI_RE = re.compile(r"dist[\\/]cli\.js", re.IGNORECASE)
SUITE_TOKEN_RE = re.compile(r"(\s|^)suite(\s|$)")

LivenessProbe = Callable[[int], bool]


def idle_running() -> dict[str, Any]:
    return {"active": False, "pid": 0, "command": "", "source": ""}


# ── Process listers ───────────────────────────────────────────────────────────

class ProcessLister(ABC):
    """Lists suite CLI processes on the host as ``[{pid, command}]``."""

    timeout: float = PROCESS_LIST_TIMEOUT_SECONDS

    @abstractmethod
    def list_processes(self) -> list[dict[str, Any]]:
        ...

    @staticmethod
    def _keep(pid: int, command: str) -> bool:
        return pid > 0 and bool(command) and bool(SUITE_CLI_RE.search(command))


class PosixProcessLister(ProcessLister):
    args = ["ps", "-ax", "-o", "pid=", "-o", "command="]

    def list_processes(self) -> list[dict[str, Any]]:
        try:
            result = subprocess.run(self.args, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.SubprocessError) as exc:
            warn(f"Process listing failed: {exc}")
            return []
        if result.returncode != 0:
            warn(f"Process listing failed: ps exited with {result.returncode}")
            return []
        return self.parse(result.stdout or "")

    @classmethod
    def parse(cls, raw: str) -> list[dict[str, Any]]:
        rows = []
        for line in raw.splitlines():
            line = line.strip()
            pid_text, _, command = line.partition(" ")
            if not pid_text.isdigit():
                continue
            pid, command = int(pid_text), command.strip()
            if cls._keep(pid, command):
                rows.append({"pid": pid, "command": command})
        return rows


class WindowsProcessLister(ProcessLister):
    args = [
        "powershell",
        "-NoProfile",
        "-Command",
        "Get-CimInstance Win32_Process -Filter \"Name='node.exe'\" "
        "| Select-Object ProcessId,CommandLine | ConvertTo-Json -Compress",
    ]

    def list_processes(self) -> list[dict[str, Any]]:
        try:
            result = subprocess.run(self.args, capture_output=True, text=True, timeout=self.timeout)
        except (OSError, subprocess.SubprocessError) as exc:
            warn(f"Process listing failed: {exc}")
            return []
        return self.parse(result.stdout or "")

    @classmethod
    def parse(cls, raw: str) -> list[dict[str, Any]]:
        raw = raw.strip()
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            warn("Process listing returned unparsable JSON")
            return []
        items = parsed if isinstance(parsed, list) else [parsed]
        rows = []
        for item in items:
            if not isinstance(item, dict):
                continue
            pid = safe_int(item.get("ProcessId"))
            command = str(item.get("CommandLine") or "").strip()
            if cls._keep(pid, command):
                rows.append({"pid": pid, "command": command})
        return rows


class StaticProcessLister(ProcessLister):
    """Returns a fixed set of rows; used for embedding and tests."""

    def __init__(self, rows: list[dict[str, Any]] | None = None):
        self.rows = [dict(row) for row in rows or []]

    def list_processes(self) -> list[dict[str, Any]]:
        return [dict(row) for row in self.rows]


def default_process_lister() -> ProcessLister:
    if platform.system() == "Windows":
        return WindowsProcessLister()
    return PosixProcessLister()


# ── Liveness ──────────────────────────────────────────────────────────────────

def is_process_alive(pid: Any) -> bool:
    """Zero-signal liveness probe; permission errors count as not alive."""
    value = safe_int(pid)
    if value <= 0:
        return False
    if platform.system() == "Windows":
        # os.kill(pid, 0) terminates the target on Windows
        try:
            result = subprocess.run(
                ["tasklist", "/FI", f"PID eq {value}", "/NH"],
                capture_output=True,
                text=True,
                timeout=PROCESS_LIST_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.SubprocessError):
            return False
        return str(value) in (result.stdout or "")
    try:
        os.kill(value, 0)
    except (OSError, OverflowError):
        return False
    return True


# ── Project matching ──────────────────────────────────────────────────────────

def _normalize_command(command: Any) -> str:
    return re.sub(r"\s+", " ", str(command or "")).strip().lower()


def command_mentions_project(command: Any, project_name: str) -> bool:
    normalized = _normalize_command(command)
    target = str(project_name or "").strip().lower()
    if not normalized or not target:
        return False
    for form in (f'--project "{target}"', f"--project '{target}'", f"--project {target}"):
        if form in normalized:
            return True
    return target in normalized


def project_processes(project_name: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Suite invocations whose command line names the project."""
    return [
        row for row in rows
        if SUITE_TOKEN_RE.search(_normalize_command(row.get("command")))
        and command_mentions_project(row.get("command"), project_name)
    ]


def detect_running_process(project_name: str, rows: list[dict[str, Any]]) -> dict[str, Any]:
    hits = project_processes(project_name, rows)
    if not hits:
        return idle_running()
    hit = hits[0]
    return {
        "active": True,
        "pid": safe_int(hit.get("pid")),
        "command": str(hit.get("command") or "")[:400],
        "source": "process",
    }


def infer_project_running(
    project_name: str,
    rows: list[dict[str, Any]],
    campaign: dict[str, Any],
    run_status: dict[str, Any],
    now: datetime,
    thresholds: MonitorThresholds = DEFAULT_THRESHOLDS,
    probe: LivenessProbe = is_process_alive,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Per-project running claim.

    Returns ``(running, campaign)``; the campaign is a copy, downgraded to
    ``running=False`` when it claims a run whose PID is gone.
    """
    campaign = dict(campaign)
    running = detect_running_process(project_name, rows)
    suite_pid = safe_int(campaign.get("suitePid"))
    pid_alive = probe(suite_pid) if suite_pid > 0 else False

    if (
        not running["active"]
        and campaign.get("present")
        and campaign.get("running") is not False
        and not campaign.get("targetPassed")
        and pid_alive
        and is_fresh(campaign.get("updatedAt"), now, thresholds.campaign_inference_minutes)
    ):
        phase = str(campaign.get("phase") or "")
        running = {
            "active": True,
            "pid": suite_pid,
            "command": f"suite {phase}" if phase else "inferred from fresh campaign state",
            "source": "campaign",
        }

    if campaign.get("present") and campaign.get("running") and not pid_alive and not running["active"]:
        campaign["running"] = False
        if not campaign.get("lastError"):
            campaign["lastError"] = "campaign state was running=true but suitePid is not alive"

    if (
        not running["active"]
        and run_status.get("present")
        and (not campaign.get("present") or campaign.get("running") is not False)
        and is_fresh(run_status.get("raw", {}).get("at"), now, thresholds.run_status_inference_minutes)
    ):
        running = {
            "active": True,
            "pid": 0,
            "command": "inferred from fresh run-status activity",
            "source": "run-status",
        }
    return running, campaign


# ── Workspace-level reconciliation ────────────────────────────────────────────

@dataclass
class RunningClaim:
    """One project's running claim as seen by the workspace-level passes."""

    name: str
    running: dict[str, Any] = field(default_factory=idle_running)
    campaign_active: bool = False
    run_status_fresh: bool = False
    freshest: datetime = EPOCH

    def revoke(self):
        self.running = idle_running()


def apply_suite_lock(
    claims: list[RunningClaim],
    lock: dict[str, Any],
    probe: LivenessProbe = is_process_alive,
) -> str | None:
    """Hand the live lock PID to the most plausible project; return its name."""
    pid = safe_int(lock.get("pid"))
    if not lock.get("present") or not probe(pid):
        return None
    candidates = [c for c in claims if c.campaign_active or c.run_status_fresh]
    if not candidates:
        return None
    winner = sorted(candidates, key=lambda c: (c.run_status_fresh, c.freshest), reverse=True)[0]
    for claim in claims:
        if claim is not winner and safe_int(claim.running.get("pid")) == pid:
            claim.revoke()
    winner.running = {
        "active": True,
        "pid": pid,
        "command": "inferred from workspace suite lock",
        "source": "lock",
    }
    return winner.name


def _pick_holder(group: list[RunningClaim], previous_holder: str | None) -> RunningClaim:
    direct = [c for c in group if c.running.get("source") == "process"]
    if direct:
        # the longest name is the most specific match on a shared command line
        return max(direct, key=lambda c: len(c.name))
    for claim in group:
        if claim.name == previous_holder:
            return claim
    return max(group, key=lambda c: c.freshest)


def enforce_pid_exclusivity(claims: list[RunningClaim], previous_holders: dict[int, str] | None = None):
    """Leave at most one active claim per PID."""
    previous_holders = previous_holders or {}
    by_pid: dict[int, list[RunningClaim]] = {}
    for claim in claims:
        pid = safe_int(claim.running.get("pid"))
        if claim.running.get("active") and pid > 0:
            by_pid.setdefault(pid, []).append(claim)

    for pid, group in by_pid.items():
        if len(group) < 2:
            continue
        keep = _pick_holder(group, previous_holders.get(pid))
        for claim in group:
            if claim is not keep:
                claim.revoke()


def previous_pid_holders(snapshot: dict[str, Any] | None) -> dict[int, str]:
    holders: dict[int, str] = {}
    for project in (snapshot or {}).get("projects", []):
        running = project.get("running") or {}
        pid = safe_int(running.get("pid"))
        if running.get("active") and pid > 0:
            holders.setdefault(pid, str(project.get("name") or ""))
    return holders
