"""Tests for sdd_monitor.utils: JSON readers, timestamps and coercion."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

from sdd_monitor.utils import (
    EPOCH,
    is_fresh,
    load_json,
    load_json_dict,
    parse_timestamp,
    read_jsonl_tail,
    safe_int,
    save_json,
    timestamp_or_epoch,
    to_iso,
    truncate,
)


# ── JSON Files ────────────────────────────────────────────────────────────────

class TestLoadJson:
    def test_roundtrip(self, tmp_path: Path):
        path = tmp_path / "nested" / "state.json"
        save_json(path, {"running": True})
        assert load_json(path) == {"running": True}

    def test_missing_returns_default(self, tmp_path: Path):
        assert load_json(tmp_path / "nope.json", default={}) == {}

    def test_corrupt_returns_default(self, tmp_path: Path):
        path = tmp_path / "bad.json"
        path.write_text("{oops", encoding="utf-8")
        assert load_json(path) is None

    def test_dict_only(self, tmp_path: Path):
        path = tmp_path / "list.json"
        path.write_text("[1, 2]", encoding="utf-8")
        assert load_json_dict(path) is None


class TestReadJsonlTail:
    def test_tail_and_corrupt_lines(self, tmp_path: Path):
        path = tmp_path / "log.jsonl"
        path.write_text('{"i": 1}\nnot json\n\n[1]\n{"i": 2}\n{"i": 3}\n', encoding="utf-8")
        assert read_jsonl_tail(path, 3) == [{"i": 2}, {"i": 3}]

    def test_missing(self, tmp_path: Path):
        assert read_jsonl_tail(tmp_path / "none.jsonl") == []


# ── Timestamps ────────────────────────────────────────────────────────────────

class TestTimestamps:
    def test_zulu_and_offset(self):
        assert parse_timestamp("2026-03-01T12:00:00Z") == datetime(2026, 3, 1, 12, tzinfo=timezone.utc)
        assert parse_timestamp("2026-03-01T14:00:00+02:00") == datetime(2026, 3, 1, 12, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        assert parse_timestamp("2026-03-01T12:00:00") == datetime(2026, 3, 1, 12, tzinfo=timezone.utc)

    def test_garbage(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(1234) is None
        assert timestamp_or_epoch("") == EPOCH

    def test_offsets_past_datetime_range(self):
        assert parse_timestamp("0001-01-01T00:00:00+05:00") is None
        assert parse_timestamp("9999-12-31T23:59:59-05:00") is None
        assert timestamp_or_epoch("0001-01-01T00:00:00+05:00") == EPOCH

    def test_to_iso(self):
        assert to_iso(datetime(2026, 3, 1, 12, tzinfo=timezone.utc)) == "2026-03-01T12:00:00.000Z"

    def test_is_fresh(self):
        now = datetime(2026, 3, 1, 12, tzinfo=timezone.utc)
        assert is_fresh(to_iso(now - timedelta(minutes=5)), now, 5)
        assert not is_fresh(to_iso(now - timedelta(minutes=6)), now, 5)
        assert not is_fresh("", now, 5)


# ── Coercion ──────────────────────────────────────────────────────────────────

def test_safe_int():
    assert safe_int("42") == 42
    assert safe_int("4.9") == 4
    assert safe_int(None) == 0
    assert safe_int("x", default=-1) == -1


def test_truncate():
    assert truncate("abcdef", 3) == "abc..."
    assert truncate("abc", 3) == "abc"
