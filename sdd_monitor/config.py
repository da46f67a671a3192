"""
SDD monitor configuration: defaults, config file and environment handling.
"""

from __future__ import annotations

import os
import platform
import re
from dataclasses import dataclass, fields
from pathlib import Path

import yaml

# ── Server Defaults ───────────────────────────────────────────────────────────

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 4317
DEFAULT_REFRESH_MS = 5000
MIN_REFRESH_MS = 1000
HEARTBEAT_SECONDS = 15.0
WATCH_STABILITY_MS = 600  # wait for writes to settle before re-scanning
WATCH_DEBOUNCE_MS = 3000
PROCESS_LIST_TIMEOUT_SECONDS = 4.5
STREAM_MODE = "sse+fswatch"

# ── Paths ─────────────────────────────────────────────────────────────────────

APP_NAME = "sdd-cli"
ENV_PREFIX = "SDD_"
DEFAULT_PID_FILE = "monitor.pid.json"
SUITE_LOGS_DIR = "_suite-logs"
SUITE_LOCK_FILE = ".sdd-suite-lock.json"
CAMPAIGN_STATE_FILE = "suite-campaign-state.json"


@dataclass(frozen=True)
class MonitorThresholds:
    """Heuristic windows (minutes) used by the classifiers and resolver."""

    min_runtime_minutes: int = 360
    stale_active_minutes: int = 8
    stale_idle_minutes: int = 20
    active_window_minutes: int = 120
    recovery_fresh_minutes: int = 30
    recovery_audit_minutes: int = 20
    provider_window_minutes: int = 30
    campaign_inference_minutes: int = 5
    run_status_inference_minutes: int = 3
    lock_fresh_minutes: int = 5

    @classmethod
    def from_env(cls) -> "MonitorThresholds":
        """Override defaults with SDD_MONITOR_<FIELD> environment variables."""
        values: dict[str, int] = {}
        for field in fields(cls):
            raw = os.environ.get(f"SDD_MONITOR_{field.name.upper()}")
            if raw is None or not raw.strip():
                continue
            try:
                values[field.name] = max(0, int(raw.strip()))
            except ValueError:
                continue
        return cls(**values)


DEFAULT_THRESHOLDS = MonitorThresholds()


def clamp_refresh_ms(value: int | None) -> int:
    """Refresh interval in milliseconds, never below one second."""
    try:
        ms = int(value) if value is not None else DEFAULT_REFRESH_MS
    except (TypeError, ValueError):
        ms = DEFAULT_REFRESH_MS
    return max(MIN_REFRESH_MS, ms)


def default_config_path() -> Path:
    """Location of the suite CLI's YAML config file."""
    if platform.system() == "Windows":
        app_data = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
        return Path(app_data) / APP_NAME / "config.yml"
    return Path.home() / ".config" / APP_NAME / "config.yml"


def _resolve_tokens(value: str) -> str:
    home = Path.home()
    out = re.sub(r"\{\{home\}\}", lambda _: str(home), value, flags=re.IGNORECASE)
    return re.sub(r"\{\{user\}\}", lambda _: home.name, out, flags=re.IGNORECASE)


def load_config_file(path: Path | None = None) -> dict:
    """Load the YAML config, returning {} when missing or unparsable."""
    config_path = path or Path(os.environ.get("SDD_CONFIG_PATH") or default_config_path())
    if not config_path.exists():
        return {}
    try:
        parsed = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def resolve_workspace_root(override: str | Path | None = None) -> Path:
    """Resolve the workspace root from override, environment, config file or default."""
    if override and str(override).strip():
        return Path(str(override).strip()).expanduser().resolve()
    env = os.environ.get("SDD_MONITOR_WORKSPACE", "").strip()
    if env:
        return Path(env).expanduser().resolve()

    config = load_config_file()
    workspace = config.get("workspace") if isinstance(config.get("workspace"), dict) else {}
    root = workspace.get("default_root")
    if isinstance(root, str) and root.strip():
        return Path(_resolve_tokens(root.strip())).expanduser().resolve()

    return (Path.home() / "Documents" / "sdd-tool-projects").resolve()


def resolve_state_base_dir(app_name: str = APP_NAME) -> Path:
    """Per-user state directory of the suite CLI."""
    system = platform.system()
    if system == "Windows":
        app_data = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
        return Path(app_data) / app_name
    if system == "Darwin":
        return Path.home() / "Library" / "Application Support" / app_name
    xdg = (os.environ.get("XDG_STATE_HOME") or os.environ.get("XDG_CONFIG_HOME") or "").strip()
    if xdg:
        return Path(xdg) / app_name
    return Path.home() / ".local" / "state" / app_name


def resolve_suite_tool_root() -> Path:
    """Checkout of the suite CLI used when spawning replacement runs."""
    env = os.environ.get("SDD_TOOL_ROOT", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path(__file__).resolve().parent.parent.parent / "ssd-tool").resolve()


def get_node_binary() -> str:
    """Node executable used to launch the suite CLI."""
    return os.environ.get("SDD_NODE_BIN", "").strip() or "node"


def load_env_file(workspace: Path | None = None) -> Path | None:
    """Seed ``SDD_*`` settings from a ``.env`` in the workspace, else the cwd.

    Only the first file found is read. Variables already set in the
    environment win, and keys outside the ``SDD_`` namespace are ignored.
    """
    candidates = [Path(workspace) / ".env"] if workspace else []
    candidates.append(Path.cwd() / ".env")

    env_path = next((path for path in candidates if path.is_file()), None)
    if env_path is None:
        return None
    for raw in _env_lines(env_path):
        key, _, value = raw.partition("=")
        key = key.strip()
        if key.startswith(ENV_PREFIX):
            os.environ.setdefault(key, value.strip().strip("\"'"))
    return env_path


def _env_lines(path: Path) -> list[str]:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return []
    return [line.strip() for line in lines if "=" in line and not line.lstrip().startswith("#")]
