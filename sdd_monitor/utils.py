"""
SDD monitor shared utilities: safe file readers, timestamps and coercion helpers.

Readers never raise: a missing or unparsable file yields the caller's default.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

JSONL_TAIL_BYTES = 256 * 1024
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ── File Helpers ──────────────────────────────────────────────────────────────

def load_json(path: Path, default: Any = None) -> Any:
    """Safely load a JSON file, returning default on failure."""
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return default


def load_json_dict(path: Path) -> dict[str, Any] | None:
    """Load a JSON object; anything that is not a dict counts as absent."""
    payload = load_json(path)
    return payload if isinstance(payload, dict) else None


def read_text(path: Path) -> str:
    if not path.exists():
        return ""
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""


def read_jsonl_tail(path: Path, limit: int = 10) -> list[dict[str, Any]]:
    """Parse the last ``limit`` JSON lines of a file, skipping corrupt lines.

    Only the final 256 KiB are read so large append-only logs stay cheap.
    """
    if not path.exists():
        return []
    try:
        with path.open("rb") as f:
            f.seek(0, 2)
            size = f.tell()
            f.seek(max(0, size - JSONL_TAIL_BYTES))
            raw = f.read().decode("utf-8", errors="replace")
    except OSError:
        return []

    lines = [line for line in raw.splitlines() if line.strip()]
    rows: list[dict[str, Any]] = []
    for line in lines[-limit:] if limit > 0 else []:
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            rows.append(parsed)
    return rows


def save_json(path: Path, data: Any, indent: int = 2):
    """Save data as JSON, creating parent directories as needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=indent, ensure_ascii=False)


def file_mtime_iso(path: Path) -> str:
    try:
        return to_iso(datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc))
    except OSError:
        return ""


# ── Timestamps ────────────────────────────────────────────────────────────────

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string into an aware UTC datetime, or None."""
    if not isinstance(value, str):
        return None
    v = value.strip()
    if not v:
        return None

    for candidate in (v, v.replace("Z", "+00:00"), f"{v}T00:00:00"):
        try:
            dt = datetime.fromisoformat(candidate)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.astimezone(timezone.utc)
        except (ValueError, OverflowError):
            continue
    return None


def timestamp_or_epoch(value: Any) -> datetime:
    """Unparsable timestamps count as the epoch, i.e. maximally stale."""
    return parse_timestamp(value) or EPOCH


def is_fresh(value: Any, now: datetime, window_minutes: float) -> bool:
    dt = parse_timestamp(value)
    if dt is None:
        return False
    return (now - dt).total_seconds() <= window_minutes * 60


# ── Coercion ──────────────────────────────────────────────────────────────────

def clean_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default


def safe_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def to_str_list(value: Any, limit: int = 8) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value[:limit]]


def as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def truncate(text: str, limit: int, suffix: str = "...") -> str:
    return f"{text[:limit]}{suffix}" if len(text) > limit else text
