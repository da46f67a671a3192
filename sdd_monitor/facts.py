"""Fact providers: one reader per on-disk artifact a suite project emits.

Every provider returns a plain dict with neutral defaults. Missing and corrupt
files are indistinguishable to callers (``present: False``); nothing here raises.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import SUITE_LOCK_FILE, CAMPAIGN_STATE_FILE, resolve_state_base_dir
from .stages import current_stage
from .utils import (
    as_dict,
    as_list,
    clean_str,
    file_mtime_iso,
    load_json_dict,
    read_jsonl_tail,
    read_text,
    safe_float,
    safe_int,
    to_iso,
    to_str_list,
)

GEMINI_MODEL_PRIORITY = (
    "gemini-3-pro-preview",
    "gemini-2.5-pro",
    "gemini-3-flash-preview",
    "gemini-2.5-flash",
    "gemini-2.5-flash-lite",
    "gemini-2.0-flash",
)

LIFE_TRACKS = ("users", "stakeholders", "design", "marketing", "quality")

PROJECT_MARKERS = (
    "metadata.json",
    ".sdd-stage-state.json",
    "requirements",
    "sdd-run-status.json",
    "debug/provider-prompts.metadata.jsonl",
    CAMPAIGN_STATE_FILE,
)


def _deploy_dir(project_root: Path) -> Path:
    return project_root / "generated-app" / "deploy"


def looks_like_project(path: Path) -> bool:
    return any((path / marker).exists() for marker in PROJECT_MARKERS)


def discover_project_dirs(workspace_root: Path) -> list[Path]:
    """Immediate children of the workspace that carry any suite artifact."""
    root = Path(workspace_root)
    if not root.is_dir():
        return []
    try:
        children = sorted(root.iterdir(), key=lambda p: p.name.lower())
    except OSError:
        return []
    return [child for child in children if child.is_dir() and looks_like_project(child)]


# ── Lifecycle / review / stage ────────────────────────────────────────────────

def parse_lifecycle(project_root: Path) -> dict[str, Any]:
    report = load_json_dict(_deploy_dir(project_root) / "lifecycle-report.json")
    if report is not None:
        steps = [as_dict(step) for step in as_list(report.get("steps"))]
        fail_items = [
            f"{clean_str(step.get('command'))}: {clean_str(step.get('output'))}"
            for step in steps
            if not step.get("ok")
        ]
        skipped = sum(1 for line in as_list(report.get("summary")) if str(line).startswith("SKIP:"))
        return {
            "present": True,
            "ok": sum(1 for step in steps if step.get("ok")),
            "fail": len(fail_items),
            "skipped": skipped,
            "lastFailure": fail_items[-1] if fail_items else "",
            "failItems": fail_items,
        }

    raw = read_text(_deploy_dir(project_root) / "lifecycle-report.md")
    if not raw:
        return {"present": False, "ok": 0, "fail": 0, "skipped": 0, "lastFailure": "missing", "failItems": []}

    lines = [line.strip() for line in raw.splitlines()]
    fail_items = [re.sub(r"^- FAIL:\s*", "", line) for line in lines if line.startswith("- FAIL:")]
    return {
        "present": True,
        "ok": raw.count("- OK:"),
        "fail": raw.count("- FAIL:"),
        "skipped": raw.count("- SKIP:"),
        "lastFailure": fail_items[-1] if fail_items else "",
        "failItems": fail_items,
    }


def parse_review(project_root: Path) -> dict[str, Any]:
    report = load_json_dict(_deploy_dir(project_root) / "digital-review-report.json")
    if report is None:
        return {"present": False, "passed": False, "score": 0, "threshold": 0}
    return {
        "present": True,
        "passed": bool(report.get("passed")),
        "score": safe_float(report.get("score")),
        "threshold": safe_float(report.get("threshold")),
    }


def parse_stage(project_root: Path) -> dict[str, Any]:
    state = load_json_dict(project_root / ".sdd-stage-state.json") or {}
    stages = {str(k): str(v) for k, v in as_dict(state.get("stages")).items()}
    history = [as_dict(row) for row in as_list(state.get("history"))[-20:]]
    return {
        "present": bool(state),
        "stages": stages,
        "current": current_stage(stages),
        "history": history,
    }


# ── Campaign / run status ─────────────────────────────────────────────────────

def parse_campaign(project_root: Path) -> dict[str, Any]:
    path = project_root / CAMPAIGN_STATE_FILE
    state = load_json_dict(path)
    if state is None:
        return {
            "present": False,
            "cycle": 0,
            "elapsedMinutes": 0,
            "autonomous": False,
            "running": False,
            "suitePid": 0,
            "phase": "",
            "lastError": "",
            "targetPassed": False,
            "qualityPassed": False,
            "runtimePassed": False,
            "updatedAt": "",
        }
    return {
        "present": True,
        "cycle": safe_int(state.get("cycle")),
        "elapsedMinutes": safe_float(state.get("elapsedMinutes")),
        "autonomous": bool(state.get("autonomous")),
        "running": bool(state.get("running")),
        "suitePid": safe_int(state.get("suitePid")),
        "phase": clean_str(state.get("phase")),
        "lastError": clean_str(state.get("lastError")),
        "model": clean_str(state.get("model")),
        "nextFromStep": clean_str(state.get("nextFromStep")),
        "stallCount": safe_int(state.get("stallCount")),
        "targetPassed": bool(state.get("targetPassed")),
        "qualityPassed": bool(state.get("qualityPassed")),
        "runtimePassed": bool(state.get("runtimePassed")),
        "targetStage": clean_str(state.get("targetStage")),
        "recoveryActive": bool(state.get("recoveryActive")),
        "recoveryTier": clean_str(state.get("recoveryTier")),
        "lastRecoveryAction": clean_str(state.get("lastRecoveryAction")),
        "updatedAt": file_mtime_iso(path),
    }


def parse_run_status(project_root: Path) -> dict[str, Any]:
    status = load_json_dict(project_root / "sdd-run-status.json")
    if status is None:
        return {"present": False, "blockers": [], "recovery": None, "stageCurrent": "", "step": "", "raw": {}}

    def _optional_bool(section: str, key: str) -> bool | None:
        value = as_dict(status.get(section)).get(key)
        return value if isinstance(value, bool) else None

    recovery = status.get("recovery")
    return {
        "present": True,
        "blockers": [str(item) for item in as_list(status.get("blockers"))],
        "recovery": recovery if isinstance(recovery, dict) else None,
        "stageCurrent": clean_str(status.get("stageCurrent")),
        "step": clean_str(status.get("step")),
        "lifecyclePassed": _optional_bool("lifecycle", "passed"),
        "reviewApproved": _optional_bool("review", "approved"),
        "releaseFinal": clean_str(as_dict(status.get("release")).get("final")),
        "runtimeStarted": _optional_bool("runtime", "started"),
        "raw": status,
    }


# ── Provider prompts ──────────────────────────────────────────────────────────

def parse_prompt_history(project_root: Path) -> dict[str, Any]:
    rows = read_jsonl_tail(project_root / "debug" / "provider-prompts.metadata.jsonl", 20)
    if not rows:
        return {
            "present": False,
            "lastAt": "",
            "lastStage": "",
            "lastOk": False,
            "lastDurationMs": 0,
            "recentAvgDurationMs": 0,
            "recentMaxDurationMs": 0,
            "lastPromptPreview": "",
            "lastOutputPreview": "",
            "lastError": "",
            "lastFailureAt": "",
            "recentFailureCount": 0,
            "recent": [],
        }

    last = rows[-1]
    durations = [d for d in (safe_float(row.get("durationMs"), -1.0) for row in rows) if d >= 0]
    failures = [row for row in rows if not row.get("ok")]
    full = read_jsonl_tail(project_root / "debug" / "provider-prompts.jsonl", 3)
    last_full = full[-1] if full else {}
    return {
        "present": True,
        "lastAt": clean_str(last.get("at")),
        "lastStage": clean_str(last.get("stage")),
        "lastOk": bool(last.get("ok")),
        "lastDurationMs": max(0, safe_int(last.get("durationMs"))),
        "recentAvgDurationMs": round(sum(durations) / len(durations)) if durations else 0,
        "recentMaxDurationMs": round(max(durations)) if durations else 0,
        "lastPromptPreview": clean_str(last.get("promptPreview")),
        "lastOutputPreview": clean_str(last.get("outputPreview")),
        "lastError": clean_str(last.get("error")),
        "lastFailureAt": clean_str(failures[-1].get("at")) if failures else "",
        "recentFailureCount": len(failures),
        "lastPromptFull": last_full["prompt"][:3000] if isinstance(last_full.get("prompt"), str) else "",
        "lastOutputFull": last_full["output"][:3000] if isinstance(last_full.get("output"), str) else "",
        "recent": rows,
    }


# ── Journals / audit logs ─────────────────────────────────────────────────────

def parse_campaign_journal(project_root: Path) -> list[dict[str, Any]]:
    return read_jsonl_tail(project_root / "suite-campaign-journal.jsonl", 40)


def parse_recovery_audit(project_root: Path) -> list[dict[str, Any]]:
    return read_jsonl_tail(project_root / "autonomous-recovery-audit.jsonl", 40)


def parse_recovery_events(project_root: Path) -> list[dict[str, Any]]:
    return read_jsonl_tail(project_root / "life" / "recovery-events.jsonl", 60)


def parse_orchestration_journal(project_root: Path) -> list[dict[str, Any]]:
    return read_jsonl_tail(project_root / "orchestration-journal.jsonl", 20)[-8:]


# ── Releases / metrics / reports ──────────────────────────────────────────────

def parse_releases(project_root: Path) -> dict[str, Any]:
    history = load_json_dict(_deploy_dir(project_root) / "release-history.json") or {}
    releases = [as_dict(row) for row in as_list(history.get("releases"))]
    return {
        "total": len(releases),
        "candidates": sum(1 for row in releases if row.get("stage") == "candidate"),
        "finals": sum(1 for row in releases if row.get("stage") == "final"),
        "last": releases[-1] if releases else None,
    }


def parse_iteration_metrics(project_root: Path) -> dict[str, Any]:
    report = load_json_dict(_deploy_dir(project_root) / "iteration-metrics.json") or {}
    metrics = [as_dict(item) for item in as_list(report.get("metrics"))]
    if not metrics:
        return {"total": 0, "passed": 0, "failed": 0, "lastRound": 0, "lastPhase": "", "lastResult": "", "recent": []}
    last = metrics[-1]
    return {
        "total": len(metrics),
        "passed": sum(1 for item in metrics if item.get("result") == "passed"),
        "failed": sum(1 for item in metrics if item.get("result") == "failed"),
        "lastRound": safe_int(last.get("round")),
        "lastPhase": clean_str(last.get("phase")),
        "lastResult": clean_str(last.get("result")),
        "recent": metrics[-8:],
    }


def parse_autonomous_feedback(project_root: Path) -> dict[str, Any]:
    report = load_json_dict(_deploy_dir(project_root) / "autonomous-feedback-report.json")
    if report is None:
        return {"present": False, "summary": "", "rootCauses": [], "actions": []}
    return {
        "present": True,
        "summary": clean_str(report.get("summary")),
        "rootCauses": to_str_list(report.get("rootCauses")),
        "actions": [
            {
                "priority": clean_str(as_dict(row).get("priority")),
                "title": clean_str(as_dict(row).get("title")),
                "rationale": clean_str(as_dict(row).get("rationale")),
            }
            for row in as_list(report.get("actions"))[:8]
        ],
    }


def parse_runtime_visual_probe(project_root: Path) -> dict[str, Any]:
    report = load_json_dict(_deploy_dir(project_root) / "runtime-visual-probe.json")
    if report is None:
        return {"present": False, "ok": False, "captured": False, "blankLikely": False, "summary": ""}
    stats = report.get("stats")
    return {
        "present": True,
        "ok": bool(report.get("ok")),
        "captured": bool(report.get("captured")),
        "blankLikely": bool(report.get("blankLikely")),
        "staticLikely": bool(report.get("staticLikely")),
        "summary": clean_str(report.get("summary")),
        "screenshotPath": clean_str(report.get("screenshotPath")),
        "stats": stats if isinstance(stats, dict) else None,
    }


def parse_software_diagnostic(project_root: Path) -> dict[str, Any]:
    """Deployed-app diagnostic: HTTP reachability plus the scripted UI interaction pass."""
    report = load_json_dict(_deploy_dir(project_root) / "software-diagnostic-report.json")
    if report is None:
        return {
            "present": False,
            "summary": "",
            "qualityScore": 0,
            "blockingIssues": [],
            "httpStatus": "",
            "reachableUrl": "",
            "interactionStatus": "",
            "interactionRounds": 0,
            "clickableCount": 0,
            "clicksPerformed": 0,
            "uiLabels": [],
            "functionalChecks": [],
            "actionTimeline": [],
        }

    http = as_dict(report.get("http"))
    interaction = as_dict(report.get("interaction"))
    checks = [as_dict(row) for row in as_list(interaction.get("functionalChecks"))[:12]]
    timeline = [as_dict(row) for row in as_list(interaction.get("actionTimeline"))[-12:]]
    return {
        "present": True,
        "summary": clean_str(report.get("summary")),
        "qualityScore": safe_float(report.get("qualityScore")),
        "blockingIssues": to_str_list(report.get("blockingIssues")),
        "httpStatus": clean_str(http.get("status")),
        "reachableUrl": clean_str(http.get("reachableUrl")),
        "interactionStatus": clean_str(interaction.get("status")),
        "interactionRounds": safe_int(interaction.get("rounds")),
        "clickableCount": safe_int(interaction.get("clickableCount")),
        "clicksPerformed": safe_int(interaction.get("clicksPerformed")),
        "uiLabels": to_str_list(interaction.get("uiLabels"), limit=20),
        "functionalChecks": [
            {key: clean_str(row.get(key)) for key in ("name", "status", "detail")}
            for row in checks
        ],
        "actionTimeline": [
            {key: clean_str(row.get(key)) for key in ("at", "action", "target", "result", "detail")}
            for row in timeline
        ],
    }


def parse_life_artifacts(project_root: Path) -> dict[str, Any]:
    life_root = project_root / "life"
    tracks = {}
    for track in LIFE_TRACKS:
        rows = read_jsonl_tail(life_root / f"{track}-rounds.jsonl", 25)
        tracks[track] = {"count": len(rows), "last": rows[-1] if rows else None, "recent": rows[-8:]}
    summary_file = life_root / "summary.md"
    return {
        "present": life_root.is_dir(),
        "summaryPath": "life/summary.md" if summary_file.exists() else "",
        "summaryPreview": read_text(summary_file)[:1200],
        "tracks": tracks,
    }


def parse_campaign_debug(project_root: Path) -> dict[str, Any]:
    report = load_json_dict(project_root / "debug" / "campaign-debug-report.json")
    if report is None:
        return {"present": False, "providerIssue": "", "recoveryTier": "", "rootCauses": [], "recommendations": []}
    return {
        "present": True,
        "at": clean_str(report.get("at")),
        "cycle": safe_int(report.get("cycle")),
        "elapsedMinutes": safe_float(report.get("elapsedMinutes")),
        "providerIssue": clean_str(report.get("providerIssue")),
        "recoveryTier": clean_str(report.get("recoveryTier")),
        "recoveryAction": clean_str(report.get("recoveryAction")),
        "rootCauses": to_str_list(report.get("rootCauses")),
        "recommendations": to_str_list(report.get("recommendations")),
    }


# ── Workspace-level facts ─────────────────────────────────────────────────────

def parse_suite_lock(workspace_root: Path) -> dict[str, Any]:
    lock = load_json_dict(Path(workspace_root) / SUITE_LOCK_FILE) or {}
    pid = safe_int(lock.get("pid"))
    if pid <= 0:
        return {"present": False, "pid": 0, "startedAt": ""}
    return {"present": True, "pid": pid, "startedAt": clean_str(lock.get("startedAt"))}


def _model_catalog(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    catalog = []
    for model in GEMINI_MODEL_PRIORITY:
        blocked = next((e for e in entries if e["provider"] == "gemini" and e["model"] == model), None)
        catalog.append({
            "provider": "gemini",
            "model": model,
            "status": "blocked" if blocked else "ready",
            "remainingMinutes": blocked["remainingMinutes"] if blocked else 0,
            "reason": blocked["reason"] if blocked else "",
        })
    return catalog


def parse_model_cooldowns(now: datetime, cache_file: Path | None = None) -> dict[str, Any]:
    """Models the suite CLI has marked unavailable, nearest reset first."""
    path = cache_file or resolve_state_base_dir() / "state" / "model-availability-cache.json"
    cache = load_json_dict(path)
    if cache is None:
        return {
            "present": False,
            "file": str(path),
            "entries": [],
            "catalog": _model_catalog([]),
            "summary": {
                "totalUnavailable": 0,
                "activeProviders": 0,
                "nearestResetMinutes": None,
                "readyKnownModels": len(GEMINI_MODEL_PRIORITY),
            },
        }

    now_ms = now.timestamp() * 1000
    entries: list[dict[str, Any]] = []
    for provider, models in as_dict(cache.get("providers")).items():
        for model, row in as_dict(models).items():
            row = as_dict(row)
            until_ms = safe_float(row.get("unavailableUntilMs"))
            if until_ms <= now_ms:
                continue
            remaining_ms = until_ms - now_ms
            entries.append({
                "provider": str(provider),
                "model": str(model),
                "reason": clean_str(row.get("reason")),
                "hint": clean_str(row.get("hint")),
                "updatedAt": clean_str(row.get("updatedAt")),
                "unavailableUntilMs": int(until_ms),
                "unavailableUntil": to_iso(datetime.fromtimestamp(until_ms / 1000, tz=timezone.utc)),
                "remainingMs": int(remaining_ms),
                "remainingMinutes": -int(-remaining_ms // 60000),
            })
    entries.sort(key=lambda e: e["remainingMs"])
    catalog = _model_catalog(entries)
    return {
        "present": True,
        "file": str(path),
        "entries": entries,
        "catalog": catalog,
        "summary": {
            "totalUnavailable": len(entries),
            "activeProviders": len({e["provider"] for e in entries if e["provider"]}),
            "nearestResetMinutes": entries[0]["remainingMinutes"] if entries else None,
            "readyKnownModels": sum(1 for item in catalog if item["status"] == "ready"),
        },
    }
