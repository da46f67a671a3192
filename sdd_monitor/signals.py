"""Signal classifiers.

Pure functions that turn one project's raw facts into derived signals:
provider delivery state, activity freshness, ranked blockers and recovery
state. Every function takes ``now`` explicitly so a scan is reproducible.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from .config import DEFAULT_THRESHOLDS, MonitorThresholds
from .utils import EPOCH, as_dict, as_list, clean_str, is_fresh, safe_float, timestamp_or_epoch, to_iso, truncate

NOISE_RE = re.compile(
    r"\bdep0040\b|punycode|loaded cached credentials|hook registry initialized",
    re.IGNORECASE,
)
BLOCKED_PHASE_RE = re.compile(r"provider_backoff|provider_blocked|provider_quota_recovery", re.IGNORECASE)
QUOTA_RE = re.compile(r"quota|capacity|429|terminalquotaerror", re.IGNORECASE)
JOURNAL_BLOCKED_RE = re.compile(r"campaign\.provider\.blocked", re.IGNORECASE)
UNUSABLE_RE = re.compile(
    r"unable to (proceed|fix|continue).*(tool|tools).*(not available|limitations)"
    r"|cannot .*tool|tool limitations|limitations in my current toolset",
    re.IGNORECASE,
)
QUOTA_EXHAUSTED_RE = re.compile(
    r"\bterminalquotaerror\b|\bretryablequotaerror\b|\bexhausted your capacity\b|\bcode:\s*429\b|\b429\b",
    re.IGNORECASE,
)
QUOTA_RESET_RE = re.compile(r"quota will reset after\s+([^.,]+)", re.IGNORECASE)
TIMEOUT_RE = re.compile(r"\betimedout\b|\btimed out\b", re.IGNORECASE)
EMPTY_PAYLOAD_RE = re.compile(r"\bempty output\b|ready for your command", re.IGNORECASE)
RECOVERY_PHASE_RE = re.compile(
    r"recovery|provider_backoff|provider_quota_recovery|runtime_enforced_continue",
    re.IGNORECASE,
)

NEVER_FRESH_MINUTES = 9999

PROVIDER_SUMMARIES = {
    "healthy": "Provider delivering responses.",
    "blocked": "Provider delivery blocked (quota/capacity or hard failure).",
    "degraded": "Provider is responding but not delivering usable payloads consistently.",
}

# (needles, action) in priority order
ACTION_KEYWORDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("terminalquotaerror", "exhausted your capacity", "429"),
     "rotate provider model and apply provider backoff"),
    (("ready for your command", "empty output"),
     "mark provider non-delivery and force regeneration retry"),
    (("jest encountered an unexpected token", "unexpected token 'export'"),
     "normalize module format and align jest config automatically"),
    (("eslint plugin", "eslint couldn't find"),
     "install missing eslint plugins/deps and regenerate lint config"),
    (("build for macos is supported only on macos",),
     "rewrite build scripts for host OS compatibility"),
    (("missing smoke/e2e npm script", "smoke"),
     "create cross-platform smoke script and wire package.json"),
    (("missing dummylocal integration doc",),
     "generate dummy-local.md integration artifact"),
    (("readme",),
     "normalize README sections and release artifact guidance"),
)

SEVERITY_RULES: tuple[tuple[re.Pattern[str], int], ...] = (
    (re.compile(r"quota|capacity|429|terminalquotaerror|provider", re.IGNORECASE), 5),
    (re.compile(r"build|test|lint|smoke|failed|error", re.IGNORECASE), 4),
    (re.compile(r"missing|pending|blocked", re.IGNORECASE), 3),
)


def _strip_noise(text: Any) -> str:
    lines = [line.strip() for line in str(text or "").splitlines()]
    return " ".join(line for line in lines if line and not NOISE_RE.search(line))


# ── Provider delivery ─────────────────────────────────────────────────────────

def summarize_provider_reason(text: Any) -> str:
    """Condense raw provider error text into one operator-facing sentence."""
    compact = _strip_noise(text)
    if QUOTA_EXHAUSTED_RE.search(compact):
        match = QUOTA_RESET_RE.search(compact)
        reset = match.group(1).strip() if match else ""
        if reset:
            return f"Provider quota exhausted (resets in {reset})."
        return "Provider quota exhausted (HTTP 429)."
    if TIMEOUT_RE.search(compact):
        return "Provider call timed out before response."
    if EMPTY_PAYLOAD_RE.search(compact):
        return "Provider returned non-delivery/empty payload."
    if not compact:
        return "Provider delivery blocked."
    return truncate(compact, 180)


def classify_provider(
    prompt: dict[str, Any],
    campaign: dict[str, Any],
    run_status: dict[str, Any],
    campaign_journal: list[dict[str, Any]],
    now: datetime,
    thresholds: MonitorThresholds = DEFAULT_THRESHOLDS,
) -> dict[str, Any]:
    window = thresholds.provider_window_minutes

    failures = []
    for row in as_list(prompt.get("recent")):
        row = as_dict(row)
        if row.get("ok") is not False:
            continue
        error = _strip_noise(row.get("error"))
        if not error and not clean_str(row.get("outputPreview")):
            continue
        if not is_fresh(row.get("at"), now, window):
            continue
        failures.append({**row, "error": error})
    last_failure = failures[-1] if failures else {}

    output_preview = str(prompt.get("lastOutputPreview") or "").lower()
    last_error = str(last_failure.get("error") or prompt.get("lastError") or campaign.get("lastError") or "").lower()
    state_fresh = (
        is_fresh(as_dict(run_status.get("raw")).get("at"), now, window)
        or is_fresh(campaign.get("updatedAt"), now, window)
    )
    effective_error = last_error if state_fresh else ""

    if prompt.get("present"):
        non_delivery = (
            "ready for your command" in output_preview
            or not output_preview.strip()
            or "empty output" in effective_error
        )
    else:
        non_delivery = "empty output" in effective_error
    unusable = bool(UNUSABLE_RE.search(output_preview) or UNUSABLE_RE.search(effective_error))

    phase_blocked = bool(BLOCKED_PHASE_RE.search(clean_str(campaign.get("phase"))))
    journal_blocked = any(JOURNAL_BLOCKED_RE.search(clean_str(as_dict(row).get("event"))) for row in campaign_journal)
    quota_like = bool(QUOTA_RE.search(effective_error))

    if phase_blocked or journal_blocked or quota_like:
        state = "blocked"
    elif non_delivery or unusable or len(failures) >= 2:
        state = "degraded"
    else:
        state = "healthy"

    blocking_reason = ""
    if state == "blocked":
        blocking_reason = summarize_provider_reason(
            effective_error or last_failure.get("error") or "provider delivery blocked"
        )

    return {
        "state": state,
        "summary": PROVIDER_SUMMARIES[state],
        "nonDelivery": non_delivery,
        "blockingReason": blocking_reason,
        "recentFailureCount": len(failures),
        "recentFailures": [
            {"at": clean_str(row.get("at")), "stage": clean_str(row.get("stage")), "error": row["error"]}
            for row in failures[-4:]
        ],
        "lastFailureAt": clean_str(last_failure.get("at")),
    }


# ── Activity ──────────────────────────────────────────────────────────────────

def build_activity(
    run_status: dict[str, Any],
    prompt: dict[str, Any],
    campaign: dict[str, Any],
    stage_timeline: list[dict[str, Any]],
    running: dict[str, Any],
    now: datetime,
    thresholds: MonitorThresholds = DEFAULT_THRESHOLDS,
) -> dict[str, Any]:
    last_run_status_at = clean_str(as_dict(run_status.get("raw")).get("at"))
    last_prompt_at = clean_str(prompt.get("lastAt"))
    last_campaign_at = clean_str(campaign.get("updatedAt"))
    last_stage_at = clean_str(stage_timeline[-1].get("at")) if stage_timeline else ""

    stamps = [timestamp_or_epoch(v) for v in (last_run_status_at, last_prompt_at, last_campaign_at, last_stage_at)]
    freshest = max((dt for dt in stamps if dt > EPOCH), default=None)
    if freshest is None:
        freshness = NEVER_FRESH_MINUTES
    else:
        freshness = int((now - freshest).total_seconds() // 60)

    active = bool(running.get("active") or campaign.get("running"))
    threshold = thresholds.stale_active_minutes if active else thresholds.stale_idle_minutes
    return {
        "lastRunStatusAt": last_run_status_at,
        "lastPromptAt": last_prompt_at,
        "lastCampaignAt": last_campaign_at,
        "freshestAt": to_iso(freshest) if freshest else "",
        "freshnessMinutes": freshness,
        "stalled": active and freshness >= threshold,
        "staleThresholdMinutes": threshold,
    }


# ── Blockers ──────────────────────────────────────────────────────────────────

def suggest_actions(text: Any) -> list[str]:
    """Map free-text failure output to at most three remediation actions."""
    lower = str(text or "").lower()
    actions: list[str] = []
    for needles, action in ACTION_KEYWORDS:
        if action not in actions and any(needle in lower for needle in needles):
            actions.append(action)
    return actions[:3]


def blocker_severity(reason: str) -> int:
    for pattern, severity in SEVERITY_RULES:
        if pattern.search(reason):
            return severity
    return 1


def rank_blockers(
    lifecycle: dict[str, Any],
    run_status: dict[str, Any],
    provider: dict[str, Any],
) -> list[dict[str, Any]]:
    candidates: list[tuple[str, str]] = []
    for reason in as_list(run_status.get("blockers"))[:8]:
        candidates.append(("run-status", str(reason or "")))
    for reason in as_list(lifecycle.get("failItems"))[:8]:
        candidates.append(("lifecycle", str(reason or "")))
    if provider.get("state") in ("blocked", "degraded"):
        reason = provider.get("blockingReason") or provider.get("summary") or "provider delivery degraded"
        candidates.append(("provider", str(reason)))

    scored = [
        {"source": source, "reason": reason, "actions": suggest_actions(reason), "severity": blocker_severity(reason)}
        for source, reason in candidates
    ]
    # sorted() is stable: equal severities keep candidate order
    scored = sorted(scored, key=lambda item: -item["severity"])

    top: list[dict[str, Any]] = []
    seen: set[str] = set()
    for item in scored:
        key = item["reason"][:120].lower()
        if key in seen:
            continue
        seen.add(key)
        top.append(item)
        if len(top) >= 3:
            break
    return top


def summarize_blocker_reason(reason: Any) -> str:
    text = str(reason or "")
    if not text:
        return "No blocker reason recorded."
    if re.search(r"quota|429|capacity", text, re.IGNORECASE):
        return text
    if re.search(r"timeout|timed out|etimedout", text, re.IGNORECASE):
        return "Provider timeout while waiting for model response."
    if re.search(r"empty output|non-delivery|ready for your command", text, re.IGNORECASE):
        return "Provider returned empty/non-actionable output."
    if re.search(r"lifecycle|build|test|lint|smoke", text, re.IGNORECASE):
        return "Quality gate failure in lifecycle checks."
    return truncate(text, 140)


# ── Recovery ──────────────────────────────────────────────────────────────────

def infer_recovery(
    campaign: dict[str, Any],
    run_status: dict[str, Any],
    recovery_audit: list[dict[str, Any]],
    activity: dict[str, Any],
    now: datetime,
    thresholds: MonitorThresholds = DEFAULT_THRESHOLDS,
) -> dict[str, Any]:
    latest_audit = as_dict(recovery_audit[-1]) if recovery_audit else {}
    recent_audit = is_fresh(latest_audit.get("at"), now, thresholds.recovery_audit_minutes)
    phase_recovery = bool(RECOVERY_PHASE_RE.search(clean_str(campaign.get("phase"))))
    campaign_recovery = bool(campaign.get("recoveryActive") or campaign.get("lastRecoveryAction"))
    run_status_recovery = bool(as_dict(run_status.get("recovery")).get("command"))
    freshness = safe_float(activity.get("freshnessMinutes"), NEVER_FRESH_MINUTES)
    fresh = freshness <= thresholds.recovery_fresh_minutes

    if campaign.get("lastRecoveryAction"):
        source = "campaign"
    elif latest_audit.get("action"):
        source = "audit"
    elif run_status_recovery:
        source = "run-status"
    else:
        source = ""

    return {
        "active": fresh and (phase_recovery or campaign_recovery or recent_audit or run_status_recovery),
        "tier": clean_str(campaign.get("recoveryTier") or latest_audit.get("tier")) or "none",
        "lastAction": clean_str(campaign.get("lastRecoveryAction") or latest_audit.get("action")),
        "lastAt": clean_str(campaign.get("updatedAt") or latest_audit.get("at")),
        "source": source,
    }


# ── Campaign runtime / last event ─────────────────────────────────────────────

def detect_idle_before_minimum(
    campaign: dict[str, Any],
    running: dict[str, Any],
    thresholds: MonitorThresholds = DEFAULT_THRESHOLDS,
) -> dict[str, Any] | None:
    """A campaign that stopped short of its minimum runtime without reaching its target."""
    if not campaign.get("present"):
        return None
    if campaign.get("running") is not False or running.get("active"):
        return None
    if campaign.get("targetPassed"):
        return None
    elapsed = safe_float(campaign.get("elapsedMinutes"))
    minimum = thresholds.min_runtime_minutes
    if elapsed >= minimum:
        return None
    shown = int(elapsed) if float(elapsed).is_integer() else elapsed
    return {
        "failed": True,
        "minMinutes": minimum,
        "elapsedMinutes": elapsed,
        "message": f"Campaign went idle before {minimum} minutes ({shown}m).",
    }


def _event_summary(row: dict[str, Any], fallback: str) -> str:
    event = clean_str(row.get("event")) or fallback
    details = clean_str(row.get("details"))
    return f"{event}: {details[:180]}" if details else event


def infer_last_event(
    stage_timeline: list[dict[str, Any]],
    campaign_journal: list[dict[str, Any]],
    journal: list[dict[str, Any]],
    prompt: dict[str, Any],
) -> dict[str, str]:
    candidates: list[dict[str, str]] = []
    if stage_timeline and stage_timeline[-1].get("at"):
        last = stage_timeline[-1]
        candidates.append({
            "at": clean_str(last.get("at")),
            "source": "stage",
            "summary": f"{clean_str(last.get('stage')) or 'stage'} -> {clean_str(last.get('status')) or 'unknown'}",
        })
    if campaign_journal and as_dict(campaign_journal[-1]).get("at"):
        last = as_dict(campaign_journal[-1])
        candidates.append({"at": clean_str(last.get("at")), "source": "campaign",
                           "summary": _event_summary(last, "campaign")})
    if journal and as_dict(journal[-1]).get("at"):
        last = as_dict(journal[-1])
        candidates.append({"at": clean_str(last.get("at")), "source": "orchestration",
                           "summary": _event_summary(last, "run")})
    if prompt.get("lastAt"):
        candidates.append({
            "at": clean_str(prompt.get("lastAt")),
            "source": "prompt",
            "summary": f"prompt {clean_str(prompt.get('lastStage')) or 'unknown'} {'ok' if prompt.get('lastOk') else 'fail'}",
        })
    if not candidates:
        return {"at": "", "source": "", "summary": ""}
    candidates.sort(key=lambda c: timestamp_or_epoch(c["at"]))
    return candidates[-1]
