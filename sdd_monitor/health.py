"""Health resolution: one verdict per project from its facts and signals."""

from __future__ import annotations

from typing import Any

from .config import DEFAULT_THRESHOLDS, MonitorThresholds
from .signals import NEVER_FRESH_MINUTES, summarize_blocker_reason
from .utils import as_dict, as_list, clean_str, safe_float, safe_int

HEALTH_STATES = ("healthy", "in_progress", "recovering", "critical", "dormant")

NO_BLOCKER_REASON = "No critical blocker detected."
DEFAULT_NEXT_ACTION = "Continue lifecycle to next gate"


def _stage_passed(stage: dict[str, Any], name: str) -> bool:
    return as_dict(stage.get("stages")).get(name) == "passed"


def compute_value_score(
    stage: dict[str, Any],
    lifecycle: dict[str, Any],
    review: dict[str, Any],
    releases: dict[str, Any],
) -> int:
    """Weighted-penalty score in [0, 100]; more failures never raise it."""
    score = 100
    score -= max(0, safe_int(lifecycle.get("fail"))) * 12
    score -= max(0, safe_int(lifecycle.get("skipped"))) * 3
    if not review.get("present"):
        score -= 8
    elif not review.get("passed"):
        score -= 20
    if not _stage_passed(stage, "final_release"):
        score -= 10
    if not _stage_passed(stage, "runtime_start"):
        score -= 8
    if safe_int(releases.get("finals")) == 0:
        score -= 8
    return max(0, min(100, score))


def base_health(stage: dict[str, Any], lifecycle: dict[str, Any], review: dict[str, Any]) -> str:
    """Health of a project that is not blocked."""
    failures = safe_int(lifecycle.get("fail"))
    review_ok = bool(review.get("passed")) if review.get("present") else True
    if _stage_passed(stage, "final_release") and _stage_passed(stage, "runtime_start") and failures == 0 and review_ok:
        return "healthy"
    stages = as_dict(stage.get("stages"))
    if failures > 0 or stages.get("quality_validation") == "failed" or stages.get("role_review") == "failed":
        return "critical"
    return "in_progress"


def is_blocked(
    lifecycle: dict[str, Any],
    run_status: dict[str, Any],
    activity: dict[str, Any],
    idle_before_minimum: dict[str, Any] | None,
) -> bool:
    return bool(
        (idle_before_minimum or {}).get("failed")
        or activity.get("stalled")
        or safe_int(lifecycle.get("fail")) > 0
        or as_list(run_status.get("blockers"))
    )


def resolve_health(
    *,
    stage: dict[str, Any],
    lifecycle: dict[str, Any],
    review: dict[str, Any],
    run_status: dict[str, Any],
    campaign: dict[str, Any],
    running: dict[str, Any],
    activity: dict[str, Any],
    recovery_state: dict[str, Any],
    idle_before_minimum: dict[str, Any] | None,
    thresholds: MonitorThresholds = DEFAULT_THRESHOLDS,
) -> tuple[str, bool]:
    """Return ``(health, blocked)``.

    A blocked project outside the active window is ``dormant``; inside it,
    ``recovering`` while an automated recovery is believed active, else
    ``critical``.
    """
    blocked = is_blocked(lifecycle, run_status, activity, idle_before_minimum)
    if not blocked:
        return base_health(stage, lifecycle, review), False

    freshness = safe_float(activity.get("freshnessMinutes"), NEVER_FRESH_MINUTES)
    active_window = (
        freshness <= thresholds.active_window_minutes
        or bool(running.get("active"))
        or bool(campaign.get("running"))
    )
    if not active_window:
        return "dormant", True
    if recovery_state.get("active"):
        return "recovering", True
    return "critical", True


def build_block_reasons(
    lifecycle: dict[str, Any],
    run_status: dict[str, Any],
    activity: dict[str, Any],
    provider: dict[str, Any],
    idle_before_minimum: dict[str, Any] | None,
) -> list[str]:
    reasons = []
    if (idle_before_minimum or {}).get("failed"):
        reasons.append("idle-before-minimum-runtime")
    if activity.get("stalled"):
        reasons.append(f"stalled-no-heartbeat-{activity.get('freshnessMinutes')}m")
    if as_list(run_status.get("blockers")):
        reasons.append("run-status-blockers")
    if safe_int(lifecycle.get("fail")) > 0:
        reasons.append("lifecycle-failures")
    if provider.get("state") == "blocked":
        reasons.append("provider-delivery-blocked")
    elif provider.get("state") == "degraded":
        reasons.append("provider-delivery-degraded")
    return reasons


def primary_blocker(blockers: list[dict[str, Any]]) -> dict[str, Any]:
    if not blockers:
        return {"source": "", "reason": NO_BLOCKER_REASON, "actions": []}
    top = blockers[0]
    return {
        "source": clean_str(top.get("source")),
        "reason": summarize_blocker_reason(top.get("reason")),
        "actions": list(as_list(top.get("actions"))),
    }


def recommended_next_action(blockers: list[dict[str, Any]], autonomous_feedback: dict[str, Any]) -> str:
    """Feedback report action, then blocker remediation, then a generic next step."""
    feedback_actions = as_list(autonomous_feedback.get("actions"))
    if feedback_actions and clean_str(as_dict(feedback_actions[0]).get("title")):
        return clean_str(as_dict(feedback_actions[0]).get("title"))
    if blockers:
        actions = as_list(blockers[0].get("actions"))
        if actions:
            return str(actions[0])
        reason = clean_str(blockers[0].get("reason"))
        if reason:
            return f"Resolve blocker: {reason[:120]}"
    return DEFAULT_NEXT_ACTION


def suggest_recovery_command(name: str, stage: dict[str, Any], lifecycle: dict[str, Any]) -> str:
    """Suite invocation an operator can paste to resume the project from its current stage."""
    base = (
        f'node dist/cli.js --provider gemini --non-interactive --project "{name}" '
        f"--iterations 10 --max-runtime-minutes 120"
    )
    current = stage.get("current")
    failure = clean_str(lifecycle.get("lastFailure")).lower()

    if current == "quality_validation" or safe_int(lifecycle.get("fail")) > 0:
        hint = "continue improving quality; fix all lifecycle FAIL items, rerun tests/build/smoke, then progress release"
        if "smoke" in failure:
            hint = "add a real smoke script and make it pass with local runtime checks"
        if "readme" in failure:
            hint = "fix README root with Features/Run/Testing/Release sections and align docs to project"
        if "jest" in failure or "unexpected token" in failure:
            hint = "fix module format and jest config; make tests pass consistently"
        return f'{base} --from-step finish hello "{hint}"'
    if current == "role_review":
        return f'{base} --from-step finish hello "implement reviewer findings and convert them into prioritized user stories"'
    if current in ("release_candidate", "final_release"):
        return f'{base} --from-step finish hello "finalize release artifacts, push tags, and publish final release"'
    return f'{base} hello "continue delivery to final release and runtime start with production quality"'
