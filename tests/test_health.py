"""Tests for health resolution and value scoring."""

from __future__ import annotations

import pytest

from sdd_monitor.health import (
    DEFAULT_NEXT_ACTION,
    NO_BLOCKER_REASON,
    base_health,
    build_block_reasons,
    compute_value_score,
    primary_blocker,
    recommended_next_action,
    resolve_health,
    suggest_recovery_command,
)


def _stage(**stages) -> dict:
    return {"stages": stages, "current": "implementation"}


def _lifecycle(fail: int = 0, skipped: int = 0, fail_items: list[str] | None = None) -> dict:
    return {"present": True, "ok": 4, "fail": fail, "skipped": skipped, "failItems": fail_items or [], "lastFailure": ""}


DONE = _stage(final_release="passed", runtime_start="passed")
PASSED_REVIEW = {"present": True, "passed": True}


def _resolve(**overrides) -> tuple[str, bool]:
    kwargs = {
        "stage": _stage(),
        "lifecycle": _lifecycle(),
        "review": {"present": False},
        "run_status": {"blockers": []},
        "campaign": {"present": False, "running": False},
        "running": {"active": False},
        "activity": {"freshnessMinutes": 10, "stalled": False},
        "recovery_state": {"active": False},
        "idle_before_minimum": None,
    }
    kwargs.update(overrides)
    return resolve_health(**kwargs)


def test_value_score_perfect_project():
    assert compute_value_score(DONE, _lifecycle(), PASSED_REVIEW, {"finals": 1}) == 100


def test_value_score_penalties_and_clamp():
    score = compute_value_score(_stage(), _lifecycle(fail=2, skipped=1), {"present": True, "passed": False}, {"finals": 0})
    assert score == 100 - 24 - 3 - 20 - 10 - 8 - 8

    assert compute_value_score(_stage(), _lifecycle(fail=20), {"present": False}, {"finals": 0}) == 0


@pytest.mark.parametrize("review", [{"present": False}, {"present": True, "passed": True}, {"present": True, "passed": False}])
def test_value_score_never_increases_with_more_failures(review):
    scores = [compute_value_score(_stage(), _lifecycle(fail=n), review, {"finals": 0}) for n in range(12)]
    assert all(later <= earlier for earlier, later in zip(scores, scores[1:]))


def test_base_health_classification():
    assert base_health(DONE, _lifecycle(), PASSED_REVIEW) == "healthy"
    assert base_health(DONE, _lifecycle(), {"present": False}) == "healthy"
    assert base_health(DONE, _lifecycle(), {"present": True, "passed": False}) == "in_progress"
    assert base_health(_stage(role_review="failed"), _lifecycle(), {"present": False}) == "critical"
    assert base_health(_stage(), _lifecycle(), {"present": False}) == "in_progress"


def test_unblocked_finished_project_is_healthy():
    assert _resolve(stage=DONE, review=PASSED_REVIEW) == ("healthy", False)


def test_blocked_inside_active_window_is_critical():
    assert _resolve(lifecycle=_lifecycle(fail=1)) == ("critical", True)


def test_blocked_with_active_recovery_is_recovering():
    health = _resolve(run_status={"blockers": ["missing smoke script"]}, recovery_state={"active": True})
    assert health == ("recovering", True)


def test_blocked_outside_active_window_is_dormant():
    health = _resolve(
        lifecycle=_lifecycle(fail=1),
        activity={"freshnessMinutes": 500, "stalled": False},
        recovery_state={"active": True},
    )
    assert health == ("dormant", True)


def test_running_process_keeps_stale_project_in_active_window():
    health = _resolve(
        activity={"freshnessMinutes": 500, "stalled": True},
        running={"active": True},
    )
    assert health == ("critical", True)


def test_idle_before_minimum_blocks():
    idle = {"failed": True, "minMinutes": 360, "elapsedMinutes": 120, "message": ""}
    assert _resolve(idle_before_minimum=idle) == ("critical", True)
    stale = {"freshnessMinutes": 200, "stalled": False}
    assert _resolve(idle_before_minimum=idle, activity=stale) == ("dormant", True)


def test_block_reason_labels():
    reasons = build_block_reasons(
        _lifecycle(fail=1),
        {"blockers": ["x"]},
        {"stalled": True, "freshnessMinutes": 12},
        {"state": "degraded"},
        {"failed": True},
    )
    assert reasons == [
        "idle-before-minimum-runtime",
        "stalled-no-heartbeat-12m",
        "run-status-blockers",
        "lifecycle-failures",
        "provider-delivery-degraded",
    ]


def test_primary_blocker_defaults_and_summarizes():
    assert primary_blocker([]) == {"source": "", "reason": NO_BLOCKER_REASON, "actions": []}
    top = primary_blocker([{"source": "lifecycle", "reason": "npm test failed", "actions": ["a"], "severity": 4}])
    assert top == {"source": "lifecycle", "reason": "Quality gate failure in lifecycle checks.", "actions": ["a"]}


def test_recommended_next_action_precedence():
    feedback = {"actions": [{"title": "Add integration tests", "priority": "high"}]}
    blockers = [{"reason": "something odd", "actions": []}]

    assert recommended_next_action(blockers, feedback) == "Add integration tests"
    assert recommended_next_action([{"reason": "smoke", "actions": ["fix smoke"]}], {}) == "fix smoke"
    assert recommended_next_action(blockers, {}) == "Resolve blocker: something odd"
    assert recommended_next_action([], {}) == DEFAULT_NEXT_ACTION


def test_suggest_recovery_command_by_stage():
    quality = suggest_recovery_command(
        "alpha",
        {"current": "quality_validation"},
        {"fail": 1, "lastFailure": "npm run smoke: missing script"},
    )
    assert quality.startswith('node dist/cli.js --provider gemini --non-interactive --project "alpha"')
    assert quality.endswith('--from-step finish hello "add a real smoke script and make it pass with local runtime checks"')

    review = suggest_recovery_command("alpha", {"current": "role_review"}, {"fail": 0})
    assert "implement reviewer findings" in review

    release = suggest_recovery_command("alpha", {"current": "final_release"}, {"fail": 0})
    assert "publish final release" in release

    early = suggest_recovery_command("alpha", {"current": "discovery"}, {"fail": 0})
    assert "--from-step" not in early
