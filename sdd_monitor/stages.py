"""Stage ordering and per-stage progress/artifact summaries."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from .utils import as_dict, as_list, clean_str

STAGE_ORDER = (
    "discovery",
    "functional_requirements",
    "technical_backlog",
    "implementation",
    "quality_validation",
    "role_review",
    "release_candidate",
    "final_release",
    "runtime_start",
)

REQUIREMENT_STATUS_DIRS = ("backlog", "wip", "in-progress", "done", "archived")
RUNTIME_MANIFESTS = ("package.json", "requirements.txt", "backend/pom.xml", "frontend/package.json")


def current_stage(stages: dict[str, Any]) -> str:
    """First stage in order that has not passed."""
    for name in STAGE_ORDER:
        if stages.get(name) != "passed":
            return name
    return STAGE_ORDER[-1]


def build_stage_progress(stage: dict[str, Any]) -> dict[str, Any]:
    stages = as_dict(stage.get("stages"))
    completed = sum(1 for name in STAGE_ORDER if stages.get(name) == "passed")
    current = stage.get("current")
    current_index = STAGE_ORDER.index(current) if current in STAGE_ORDER else 0
    return {
        "order": list(STAGE_ORDER),
        "completed": completed,
        "total": len(STAGE_ORDER),
        "currentIndex": current_index,
        "percent": round(completed / len(STAGE_ORDER) * 100),
    }


def build_stage_timeline(history: list[Any], limit: int = 10) -> list[dict[str, str]]:
    timeline = []
    for row in as_list(history)[-limit:]:
        row = as_dict(row)
        timeline.append({
            "at": clean_str(row.get("at")),
            "stage": clean_str(row.get("stage")),
            "status": clean_str(row.get("status") or row.get("state")),
        })
    return timeline


def find_last_passed_stage(timeline: list[dict[str, str]]) -> str:
    for row in reversed(timeline):
        if str(row.get("status", "")).lower() == "passed":
            return str(row.get("stage", ""))
    return ""


def _latest_requirement_dir(project_root: Path) -> Path | None:
    latest: tuple[float, Path] | None = None
    for status in REQUIREMENT_STATUS_DIRS:
        base = project_root / "requirements" / status
        if not base.is_dir():
            continue
        try:
            children = list(base.iterdir())
        except OSError:
            continue
        for child in children:
            if not child.is_dir():
                continue
            try:
                mtime = child.stat().st_mtime
            except OSError:
                mtime = 0.0
            if latest is None or mtime >= latest[0]:
                latest = (mtime, child)
    return latest[1] if latest else None


def _artifact(label: str, rel: str, present: bool) -> dict[str, Any]:
    return {"label": label, "path": rel, "present": bool(present)}


def collect_stage_artifacts(project_root: Path, releases: dict[str, Any]) -> dict[str, list[dict[str, Any]]]:
    """Expected artifacts per stage and whether each exists on disk."""
    app = project_root / "generated-app"
    deploy = app / "deploy"
    req_dir = _latest_requirement_dir(project_root)
    req_rel = req_dir.relative_to(project_root).as_posix() if req_dir else "requirements/**"

    def req(name: str) -> dict[str, Any]:
        return {"path": f"{req_rel}/{name}", "present": bool(req_dir and (req_dir / name).exists())}

    manifest = next((rel for rel in RUNTIME_MANIFESTS if (app / rel).exists()), "")
    life_summary = (project_root / "life" / "summary.md").exists()

    return {
        "discovery": [
            _artifact("Project metadata", "metadata.json", (project_root / "metadata.json").exists()),
            _artifact("Run status", "sdd-run-status.json", (project_root / "sdd-run-status.json").exists()),
            _artifact(
                "Orchestration journal",
                "orchestration-journal.jsonl",
                (project_root / "orchestration-journal.jsonl").exists(),
            ),
        ],
        "functional_requirements": [
            {"label": "Requirement document", **req("requirement.md")},
            {"label": "Functional spec", **req("functional-spec.md")},
        ],
        "technical_backlog": [
            {"label": "Technical spec", **req("technical-spec.md")},
            {"label": "Architecture", **req("architecture.md")},
            {"label": "Test plan", **req("test-plan.md")},
        ],
        "implementation": [
            _artifact("Generated app root", "generated-app/", app.exists()),
            _artifact(
                "Runtime manifest",
                f"generated-app/{manifest}" if manifest else "generated-app/{" + "|".join(RUNTIME_MANIFESTS) + "}",
                bool(manifest),
            ),
            _artifact("README", "generated-app/README.md", (app / "README.md").exists()),
        ],
        "quality_validation": [
            _artifact("Lifecycle report", "generated-app/deploy/lifecycle-report.json",
                      (deploy / "lifecycle-report.json").exists()),
            _artifact("Iteration metrics", "generated-app/deploy/iteration-metrics.json",
                      (deploy / "iteration-metrics.json").exists()),
            _artifact("Quality backlog", "generated-app/deploy/quality-backlog.json",
                      (deploy / "quality-backlog.json").exists()),
        ],
        "role_review": [
            _artifact("Digital review report", "generated-app/deploy/digital-review-report.json",
                      (deploy / "digital-review-report.json").exists()),
            _artifact("User stories backlog", "generated-app/deploy/digital-review-user-stories.md",
                      (deploy / "digital-review-user-stories.md").exists()),
            _artifact("Review rounds", "generated-app/deploy/digital-review-rounds.json",
                      (deploy / "digital-review-rounds.json").exists()),
            _artifact("Life review summary", "life/summary.md", life_summary),
        ],
        "release_candidate": [
            _artifact("Release history", "generated-app/deploy/release-history.json",
                      (deploy / "release-history.json").exists()),
            _artifact("Candidate releases", "generated-app/deploy/releases/", releases.get("candidates", 0) > 0),
        ],
        "final_release": [
            _artifact("Final release history", "generated-app/deploy/release-history.json",
                      releases.get("finals", 0) > 0),
            _artifact("Deployment report", "generated-app/deploy/deployment.md",
                      (deploy / "deployment.md").exists()),
            _artifact("Life summary", "life/summary.md", life_summary),
        ],
        "runtime_start": [
            _artifact("Runtime process metadata", "generated-app/deploy/runtime-processes.json",
                      (deploy / "runtime-processes.json").exists()),
            _artifact("Runtime visual probe", "generated-app/deploy/runtime-visual-probe.json",
                      (deploy / "runtime-visual-probe.json").exists()),
            _artifact("Software diagnostics", "generated-app/deploy/software-diagnostic-report.json",
                      (deploy / "software-diagnostic-report.json").exists()),
            _artifact("Campaign state", "suite-campaign-state.json",
                      (project_root / "suite-campaign-state.json").exists()),
        ],
    }


def build_stage_results(stage: dict[str, Any], artifacts: dict[str, list[dict[str, Any]]]) -> list[dict[str, Any]]:
    stages = as_dict(stage.get("stages"))
    results = []
    for name in STAGE_ORDER:
        products = artifacts.get(name, [])
        results.append({
            "stage": name,
            "status": str(stages.get(name) or "pending"),
            "artifactsPresent": sum(1 for item in products if item.get("present")),
            "artifactsTotal": len(products),
        })
    return results
