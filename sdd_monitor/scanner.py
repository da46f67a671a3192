"""Snapshot builder.

A scan reads every project's facts, reconciles which projects are really
running, derives signals and verdicts, and returns one workspace snapshot.
Snapshots are plain dicts and are never modified after this module returns
them.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

from . import facts
from .config import DEFAULT_REFRESH_MS, DEFAULT_THRESHOLDS, STREAM_MODE, MonitorThresholds
from .health import (
    build_block_reasons,
    compute_value_score,
    primary_blocker,
    recommended_next_action,
    resolve_health,
    suggest_recovery_command,
)
from .processes import (
    LivenessProbe,
    ProcessLister,
    RunningClaim,
    apply_suite_lock,
    default_process_lister,
    enforce_pid_exclusivity,
    infer_project_running,
    is_process_alive,
    previous_pid_holders,
)
from .signals import (
    build_activity,
    classify_provider,
    detect_idle_before_minimum,
    infer_last_event,
    infer_recovery,
    rank_blockers,
)
from .stages import (
    build_stage_progress,
    build_stage_results,
    build_stage_timeline,
    collect_stage_artifacts,
    find_last_passed_stage,
)
from .utils import as_dict, file_mtime_iso, timestamp_or_epoch, to_iso, utc_now


def _gather(project_root: Path) -> dict[str, Any]:
    stage = facts.parse_stage(project_root)
    return {
        "stage": stage,
        "stageTimeline": build_stage_timeline(stage["history"]),
        "lifecycle": facts.parse_lifecycle(project_root),
        "review": facts.parse_review(project_root),
        "campaign": facts.parse_campaign(project_root),
        "prompt": facts.parse_prompt_history(project_root),
        "runStatus": facts.parse_run_status(project_root),
        "releases": facts.parse_releases(project_root),
        "iterationMetrics": facts.parse_iteration_metrics(project_root),
        "autonomousFeedback": facts.parse_autonomous_feedback(project_root),
        "runtimeVisualProbe": facts.parse_runtime_visual_probe(project_root),
        "softwareDiagnostic": facts.parse_software_diagnostic(project_root),
        "life": facts.parse_life_artifacts(project_root),
        "campaignDebug": facts.parse_campaign_debug(project_root),
        "campaignJournal": facts.parse_campaign_journal(project_root),
        "journal": facts.parse_orchestration_journal(project_root),
        "recoveryAudit": facts.parse_recovery_audit(project_root),
        "recoveryEvents": facts.parse_recovery_events(project_root),
    }


def build_verdict(
    name: str,
    project_root: Path,
    bag: dict[str, Any],
    running: dict[str, Any],
    now: datetime,
    thresholds: MonitorThresholds = DEFAULT_THRESHOLDS,
) -> dict[str, Any]:
    """Derive signals and the health verdict from one project's reconciled facts."""
    stage = bag["stage"]
    lifecycle = bag["lifecycle"]
    review = bag["review"]
    campaign = bag["campaign"]
    prompt = bag["prompt"]
    run_status = bag["runStatus"]
    timeline = bag["stageTimeline"]

    provider = classify_provider(prompt, campaign, run_status, bag["campaignJournal"], now, thresholds)
    activity = build_activity(run_status, prompt, campaign, timeline, running, now, thresholds)
    recovery_state = infer_recovery(campaign, run_status, bag["recoveryAudit"], activity, now, thresholds)
    idle = detect_idle_before_minimum(campaign, running, thresholds)
    health, blocked = resolve_health(
        stage=stage,
        lifecycle=lifecycle,
        review=review,
        run_status=run_status,
        campaign=campaign,
        running=running,
        activity=activity,
        recovery_state=recovery_state,
        idle_before_minimum=idle,
        thresholds=thresholds,
    )
    blockers = rank_blockers(lifecycle, run_status, provider)
    artifacts = collect_stage_artifacts(project_root, bag["releases"])

    return {
        "name": name,
        "projectRoot": str(project_root),
        "health": health,
        "valueScore": compute_value_score(stage, lifecycle, review, bag["releases"]),
        "stage": stage,
        "stageProgress": build_stage_progress(stage),
        "stageTimeline": timeline,
        "stageResults": build_stage_results(stage, artifacts),
        "stageArtifacts": artifacts,
        "blocked": blocked,
        "blockReasons": build_block_reasons(lifecycle, run_status, activity, provider, idle),
        "blockers": blockers,
        "primaryBlocker": primary_blocker(blockers),
        "recommendedNextAction": recommended_next_action(blockers, bag["autonomousFeedback"]),
        "running": running,
        "activity": activity,
        "providerSignal": provider,
        "recoveryState": recovery_state,
        "idleBeforeMinimum": idle,
        "lifecycle": lifecycle,
        "review": review,
        "campaign": campaign,
        "prompt": prompt,
        "runStatus": run_status,
        "releases": bag["releases"],
        "iterationMetrics": bag["iterationMetrics"],
        "life": bag["life"],
        "runtimeVisualProbe": bag["runtimeVisualProbe"],
        "softwareDiagnostic": bag["softwareDiagnostic"],
        "autonomousFeedback": bag["autonomousFeedback"],
        "campaignDebug": bag["campaignDebug"],
        "recoveryAudit": bag["recoveryAudit"][-10:],
        "recoveryEvents": bag["recoveryEvents"][-12:],
        "journal": bag["journal"],
        "campaignJournal": bag["campaignJournal"][-10:],
        "lastEvent": infer_last_event(timeline, bag["campaignJournal"], bag["journal"], prompt),
        "lastPassedStage": find_last_passed_stage(timeline),
        "recovery": str(as_dict(run_status.get("recovery")).get("command") or "")
        or suggest_recovery_command(name, stage, lifecycle),
        "updatedAt": file_mtime_iso(project_root),
    }


def build_summary(projects: list[dict[str, Any]]) -> dict[str, Any]:
    def count(predicate) -> int:
        return sum(1 for p in projects if predicate(p))

    total = len(projects)
    avg = sum(p["valueScore"] for p in projects) / total if total else 0
    return {
        "total": total,
        "healthy": count(lambda p: p["health"] == "healthy"),
        "recovering": count(lambda p: p["health"] == "recovering"),
        "critical": count(lambda p: p["health"] == "critical"),
        "dormant": count(lambda p: p["health"] == "dormant"),
        "inProgress": count(lambda p: p["health"] == "in_progress"),
        "unhealthy": count(lambda p: p["health"] != "healthy"),
        "runningCampaigns": count(lambda p: p["campaign"]["present"] and (p["campaign"]["running"] or p["running"]["active"])),
        "runningProcesses": count(lambda p: p["running"]["active"]),
        "idleBeforeMinimum": count(lambda p: bool((p["idleBeforeMinimum"] or {}).get("failed"))),
        "stalledProjects": count(lambda p: p["activity"]["stalled"]),
        "blockedProjects": count(lambda p: p["blocked"]),
        "avgValueScore": int(avg + 0.5),
    }


def scan_projects(
    workspace_root: str | Path,
    *,
    process_lister: ProcessLister | None = None,
    now: datetime | None = None,
    previous: dict[str, Any] | None = None,
    thresholds: MonitorThresholds = DEFAULT_THRESHOLDS,
    probe: LivenessProbe = is_process_alive,
    refresh_ms: int = DEFAULT_REFRESH_MS,
    model_cache_file: Path | None = None,
) -> dict[str, Any]:
    """Build a complete workspace snapshot.

    ``previous`` is consulted only to break ties when two projects claim the
    same live PID.
    """
    root = Path(workspace_root)
    now = now or utc_now()
    lister = process_lister or default_process_lister()
    rows = lister.list_processes()
    lock = facts.parse_suite_lock(root)

    # Facts and per-project running claims
    entries: list[tuple[Path, dict[str, Any], RunningClaim]] = []
    for project_root in facts.discover_project_dirs(root):
        bag = _gather(project_root)
        running, bag["campaign"] = infer_project_running(
            project_root.name, rows, bag["campaign"], bag["runStatus"], now, thresholds, probe
        )
        activity = build_activity(bag["runStatus"], bag["prompt"], bag["campaign"], bag["stageTimeline"],
                                  running, now, thresholds)
        claim = RunningClaim(
            name=project_root.name,
            running=running,
            campaign_active=bool(bag["campaign"]["present"] and bag["campaign"]["running"] is not False),
            run_status_fresh=bool(
                bag["runStatus"]["present"] and activity["freshnessMinutes"] <= thresholds.lock_fresh_minutes
            ),
            freshest=timestamp_or_epoch(activity["freshestAt"]),
        )
        entries.append((project_root, bag, claim))

    # Workspace-wide PID ownership
    claims = [claim for _, _, claim in entries]
    apply_suite_lock(claims, lock, probe)
    enforce_pid_exclusivity(claims, previous_pid_holders(previous))

    projects = [
        build_verdict(project_root.name, project_root, bag, claim.running, now, thresholds)
        for project_root, bag, claim in entries
    ]
    projects.sort(key=lambda p: p["name"])
    projects.sort(key=lambda p: timestamp_or_epoch(p["updatedAt"]), reverse=True)

    return {
        "at": to_iso(now),
        "workspaceRoot": str(root),
        "summary": build_summary(projects),
        "suiteLock": lock,
        "modelCooldowns": facts.parse_model_cooldowns(now, model_cache_file),
        "projects": projects,
        "monitor": {"refreshMs": refresh_ms, "stream": STREAM_MODE},
    }


def find_project(snapshot: dict[str, Any] | None, name: str) -> dict[str, Any] | None:
    for project in (snapshot or {}).get("projects", []):
        if project.get("name") == name:
            return project
    return None
