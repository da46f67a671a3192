"""Server route, action and streaming tests."""

from __future__ import annotations

import asyncio
import json
import threading
from contextlib import contextmanager, suppress
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from watchfiles import Change

import sdd_monitor.server as server
from sdd_monitor import server_actions
from sdd_monitor.config import MonitorThresholds
from sdd_monitor.processes import StaticProcessLister
from sdd_monitor.server_actions import DEFAULT_HINT
from sdd_monitor.server_stream import SnapshotHub, Subscriber, keepalive_frame, sse_events, sse_frame


def _write_json(path: Path, data: dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")


def _read_json(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


def _make_project(root: Path, **campaign):
    _write_json(root / "metadata.json", {"name": root.name})
    _write_json(root / "suite-campaign-state.json", {"running": False, "targetPassed": False, **campaign})


def _suite_row(pid: int, project: str) -> dict:
    return {"pid": pid, "command": f'node dist/cli.js suite --project "{project}"'}


@contextmanager
def _with_workspace(path: Path, rows: list | None = None):
    previous = (server.workspace_root, server.refresh_ms, server.thresholds, server.process_lister, server.hub)
    try:
        server.configure(path, lister=StaticProcessLister(rows), limits=MonitorThresholds())
        yield
    finally:
        (server.workspace_root, server.refresh_ms, server.thresholds, server.process_lister, server.hub) = previous


class _FakePopen:
    pid = 5150
    calls: list = []

    def __init__(self, cmd, **kwargs):
        _FakePopen.calls.append((cmd, kwargs))


class _CountingHub:
    def __init__(self):
        self.calls = 0

    async def refresh(self, wait=False):
        self.calls += 1


class _StopLoop(Exception):
    pass


# ── Routes ──────────────────────────────────────────────────────


def test_health_reports_workspace_and_stream_mode(tmp_path: Path):
    with _with_workspace(tmp_path):
        client = TestClient(server.app)
        response = client.get("/api/health")
        assert response.status_code == 200
        payload = response.json()
        assert payload["ok"] is True
        assert payload["workspaceRoot"] == str(tmp_path.resolve())
        assert payload["monitor"] == {"refreshMs": 5000, "stream": "sse+fswatch"}


def test_status_returns_snapshot(tmp_path: Path):
    _make_project(tmp_path / "alpha")
    _make_project(tmp_path / "beta")
    with _with_workspace(tmp_path):
        client = TestClient(server.app)
        payload = client.get("/api/status").json()
        assert payload["summary"]["total"] == 2
        assert sorted(p["name"] for p in payload["projects"]) == ["alpha", "beta"]
        assert server.hub.snapshot is not None


def test_project_route_and_not_found(tmp_path: Path):
    _make_project(tmp_path / "alpha")
    with _with_workspace(tmp_path):
        client = TestClient(server.app)
        response = client.get("/api/project/alpha")
        assert response.status_code == 200
        payload = response.json()
        assert payload["ok"] is True
        assert payload["project"]["name"] == "alpha"
        assert payload["monitor"]["stream"] == "sse+fswatch"

        missing = client.get("/api/project/ghost")
        assert missing.status_code == 404
        assert missing.json() == {"ok": False, "error": "project_not_found", "project": "ghost"}


def test_status_is_503_when_no_scan_has_succeeded(tmp_path: Path, monkeypatch):
    def _broken_scan(*args, **kwargs):
        raise RuntimeError("workspace unreadable")

    with _with_workspace(tmp_path):
        monkeypatch.setattr(server, "scan_projects", _broken_scan)
        client = TestClient(server.app)
        response = client.get("/api/status")
        assert response.status_code == 503
        assert response.json() == {"ok": False, "error": "snapshot_unavailable"}
        assert client.get("/api/project/alpha").status_code == 503
        assert server.hub.snapshot is None


def test_websocket_sends_current_snapshot(tmp_path: Path):
    _make_project(tmp_path / "alpha")
    with _with_workspace(tmp_path):
        client = TestClient(server.app)
        with client.websocket_connect("/ws") as websocket:
            event = websocket.receive_json()
            assert event["type"] == "snapshot"
            assert event["snapshot"]["projects"][0]["name"] == "alpha"


def test_configure_clamps_refresh_and_resets_hub(tmp_path: Path):
    with _with_workspace(tmp_path):
        asyncio.run(server.hub.current())
        server.configure(tmp_path, refresh=200, lister=StaticProcessLister(), limits=MonitorThresholds())
        assert server.refresh_ms == 1000
        assert server.hub.snapshot is None


def test_workspace_filter_ignores_suite_logs():
    watch_filter = server.WorkspaceFilter()
    assert watch_filter(Change.added, str(Path("/ws") / "_suite-logs" / "alpha.out.log")) is False
    assert watch_filter(Change.modified, str(Path("/ws") / "alpha" / "sdd-run-status.json")) is True


def test_watch_workspace_refreshes_once_per_batch(tmp_path: Path, monkeypatch):
    seen = {}

    async def fake_awatch(path, **kwargs):
        seen.update(kwargs, path=path)
        yield {
            (Change.modified, str(path / "alpha" / "sdd-run-status.json")),
            (Change.added, str(path / "alpha" / "debug" / "provider-prompts.metadata.jsonl")),
        }
        yield set()
        yield {(Change.deleted, str(path / "beta" / "metadata.json"))}

    with _with_workspace(tmp_path):
        counting = _CountingHub()
        server.hub = counting
        monkeypatch.setattr(server, "awatch", fake_awatch)
        asyncio.run(server.watch_workspace())

    assert counting.calls == 2
    assert seen["path"] == tmp_path.resolve()
    assert seen["step"] == 600
    assert seen["debounce"] == 3000
    assert isinstance(seen["watch_filter"], server.WorkspaceFilter)


def test_watch_workspace_skips_missing_root(tmp_path: Path, monkeypatch):
    def fail_awatch(*args, **kwargs):
        raise AssertionError("awatch should not start")

    with _with_workspace(tmp_path / "missing"):
        counting = _CountingHub()
        server.hub = counting
        monkeypatch.setattr(server, "awatch", fail_awatch)
        asyncio.run(server.watch_workspace())

    assert counting.calls == 0


def test_refresh_loop_sleeps_clamped_interval(tmp_path: Path, monkeypatch):
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)
        if len(delays) > 2:
            raise _StopLoop()

    with _with_workspace(tmp_path):
        server.configure(tmp_path, refresh=200, lister=StaticProcessLister(), limits=MonitorThresholds())
        counting = _CountingHub()
        server.hub = counting
        monkeypatch.setattr(server.asyncio, "sleep", fake_sleep)
        with pytest.raises(_StopLoop):
            asyncio.run(server.refresh_loop())

    assert delays == [1.0, 1.0, 1.0]
    assert counting.calls == 2


# ── Actions ─────────────────────────────────────────────────────


def test_action_unknown_project_is_404(tmp_path: Path):
    with _with_workspace(tmp_path):
        client = TestClient(server.app)
        response = client.post("/api/project/ghost/action", json={"action": "explode"})
        assert response.status_code == 404
        assert response.json()["error"] == "project_not_found"


def test_action_invalid_name_is_400(tmp_path: Path):
    _make_project(tmp_path / "alpha")
    with _with_workspace(tmp_path):
        client = TestClient(server.app)
        response = client.post("/api/project/alpha/action", json={"action": "explode"})
        assert response.status_code == 400
        assert response.json() == {"ok": False, "error": "invalid_action", "details": "Use pause|resume|restart"}

        empty = client.post("/api/project/alpha/action")
        assert empty.status_code == 400


def test_resume_skips_when_suite_already_running(tmp_path: Path, monkeypatch):
    _make_project(tmp_path / "alpha")

    def _no_spawn(*args, **kwargs):
        raise AssertionError("resume must not spawn while a suite process is running")

    monkeypatch.setattr(server_actions.subprocess, "Popen", _no_spawn)
    with _with_workspace(tmp_path, rows=[_suite_row(4321, "alpha")]):
        client = TestClient(server.app)
        response = client.post("/api/project/alpha/action", json={"action": "resume"})
        assert response.status_code == 200
        assert response.json() == {
            "ok": True,
            "action": "resume",
            "project": "alpha",
            "skipped": True,
            "details": "suite already running",
            "pids": [4321],
        }


def test_resume_spawns_suite_and_patches_campaign(tmp_path: Path, monkeypatch):
    _make_project(tmp_path / "alpha", cycle=4)
    _FakePopen.calls = []
    monkeypatch.delenv("SDD_NODE_BIN", raising=False)
    monkeypatch.setattr(server_actions.subprocess, "Popen", _FakePopen)
    with _with_workspace(tmp_path):
        client = TestClient(server.app)
        response = client.post("/api/project/alpha/action", json={"action": "Resume"})
        assert response.status_code == 200
        payload = response.json()
        assert payload["ok"] is True
        assert payload["suitePid"] == 5150
        assert Path(payload["outLog"]).parent == tmp_path.resolve() / "_suite-logs"

    cmd, kwargs = _FakePopen.calls[0]
    assert cmd[:2] == ["node", "dist/cli.js"]
    assert cmd[cmd.index("--project") + 1] == "alpha"
    assert cmd[-3:] == ["finish", "hello", DEFAULT_HINT]
    assert kwargs["start_new_session"] is True

    campaign = _read_json(tmp_path / "alpha" / "suite-campaign-state.json")
    assert campaign["running"] is True
    assert campaign["suitePid"] == 5150
    assert campaign["phase"] == "resumed_by_monitor"
    assert campaign["cycle"] == 4


def test_pause_stops_suite_processes(tmp_path: Path, monkeypatch):
    _make_project(tmp_path / "alpha", running=True)
    killed = []
    monkeypatch.setattr(server_actions.os, "kill", lambda pid, sig: killed.append(pid))
    with _with_workspace(tmp_path, rows=[_suite_row(4321, "alpha")]):
        client = TestClient(server.app)
        response = client.post("/api/project/alpha/action", json={"action": "pause"})
        assert response.status_code == 200
        assert response.json() == {"ok": True, "action": "pause", "project": "alpha", "stoppedPids": [4321]}

    assert killed == [4321]
    campaign = _read_json(tmp_path / "alpha" / "suite-campaign-state.json")
    assert campaign["running"] is False
    assert campaign["phase"] == "paused_by_monitor"
    assert campaign["lastError"] == ""


def test_pause_without_process_records_reason(tmp_path: Path):
    _make_project(tmp_path / "alpha")
    with _with_workspace(tmp_path):
        client = TestClient(server.app)
        response = client.post("/api/project/alpha/action", json={"action": "pause"})
        assert response.json()["stoppedPids"] == []

    campaign = _read_json(tmp_path / "alpha" / "suite-campaign-state.json")
    assert campaign["lastError"] == "No active suite process found to pause."


def test_restart_stops_then_spawns(tmp_path: Path, monkeypatch):
    _make_project(tmp_path / "alpha", running=True)
    killed = []
    _FakePopen.calls = []
    monkeypatch.setattr(server_actions.os, "kill", lambda pid, sig: killed.append(pid))
    monkeypatch.setattr(server_actions.subprocess, "Popen", _FakePopen)
    with _with_workspace(tmp_path, rows=[_suite_row(4321, "alpha")]):
        client = TestClient(server.app)
        response = client.post("/api/project/alpha/action", json={"action": "restart"})
        assert response.status_code == 200
        assert response.json()["suitePid"] == 5150

    assert killed == [4321]
    assert len(_FakePopen.calls) == 1
    assert _read_json(tmp_path / "alpha" / "suite-campaign-state.json")["phase"] == "restarted_by_monitor"


def test_spawn_failure_is_500(tmp_path: Path, monkeypatch):
    _make_project(tmp_path / "alpha")

    def _broken(*args, **kwargs):
        raise OSError("node: not found")

    monkeypatch.setattr(server_actions.subprocess, "Popen", _broken)
    with _with_workspace(tmp_path):
        client = TestClient(server.app)
        response = client.post("/api/project/alpha/action", json={"action": "resume"})
        assert response.status_code == 500
        payload = response.json()
        assert payload["ok"] is False
        assert payload["error"] == "action_failed"
        assert "node: not found" in payload["details"]


# ── Snapshot hub / streaming ────────────────────────────────────


def test_sse_frames():
    assert sse_frame('{"a":1}') == 'event: snapshot\ndata: {"a":1}\n\n'
    assert keepalive_frame(1700000000000) == ": keepalive 1700000000000\n\n"


def test_hub_coalesces_triggers_during_scan():
    gate = threading.Event()
    calls = []

    def scan(previous):
        calls.append(previous)
        if len(calls) == 1:
            gate.wait(5)
        return {"n": len(calls)}

    async def _run():
        hub = SnapshotHub(scan)
        first = asyncio.create_task(hub.refresh())
        while not hub.in_flight:
            await asyncio.sleep(0)
        await hub.refresh()
        await hub.refresh()
        await hub.refresh()
        gate.set()
        await first
        return hub

    hub = asyncio.run(_run())

    assert len(calls) == 2
    assert calls[1] == {"n": 1}
    assert hub.snapshot == {"n": 2}
    assert hub.in_flight is False


def test_current_joins_running_scan():
    gate = threading.Event()
    lock = threading.Lock()
    active = []
    peaks = []

    def scan(previous):
        with lock:
            active.append(1)
            peaks.append(len(active))
        gate.wait(5)
        with lock:
            active.pop()
        return {"n": len(peaks)}

    async def _run():
        hub = SnapshotHub(scan)
        first = asyncio.create_task(hub.refresh())
        while not hub.in_flight:
            await asyncio.sleep(0)
        reader = asyncio.create_task(hub.current())
        await asyncio.sleep(0.05)
        blocked = not reader.done()
        gate.set()
        await first
        return hub, blocked, await reader

    hub, blocked, snapshot = asyncio.run(_run())

    assert blocked is True
    assert max(peaks) == 1
    assert snapshot == hub.snapshot


def test_refresh_wait_returns_follow_up_snapshot():
    gate = threading.Event()
    calls = []

    def scan(previous):
        calls.append(previous)
        if len(calls) == 1:
            gate.wait(5)
        return {"n": len(calls)}

    async def _run():
        hub = SnapshotHub(scan)
        first = asyncio.create_task(hub.refresh())
        while not hub.in_flight:
            await asyncio.sleep(0)
        waiting = asyncio.create_task(hub.refresh(wait=True))
        await asyncio.sleep(0)
        gate.set()
        result = await waiting
        await first
        return result

    assert asyncio.run(_run()) == {"n": 2}


def test_failed_scan_keeps_previous_snapshot():
    def scan(previous):
        if previous is not None:
            raise RuntimeError("disk went away")
        return {"ok": 1}

    async def _run():
        hub = SnapshotHub(scan)
        await hub.refresh()
        await hub.refresh()
        return hub

    hub = asyncio.run(_run())

    assert hub.snapshot == {"ok": 1}
    assert hub.scan_count == 2


def test_subscriber_slot_keeps_latest_only():
    async def _run():
        subscriber = Subscriber()
        subscriber.offer("a")
        subscriber.offer("b")
        first = await subscriber.next(0.05)
        second = await subscriber.next(0.01)
        return first, second

    assert asyncio.run(_run()) == ("b", None)


def test_closed_subscriber_does_not_affect_others():
    async def _run():
        hub = SnapshotHub(lambda previous: {"v": 1})
        healthy = hub.subscribe()
        broken = hub.subscribe()
        broken.closed = True
        hub.publish({"v": 2})
        payload = await healthy.next(0.05)
        return hub, healthy, payload

    hub, healthy, payload = asyncio.run(_run())

    assert json.loads(payload) == {"v": 2}
    assert hub.subscribers == {healthy}


def test_sse_events_emit_snapshot_then_keepalive():
    async def _run():
        hub = SnapshotHub(lambda previous: {"v": 1})
        await hub.refresh()
        subscriber = hub.subscribe()
        events = sse_events(hub, subscriber, heartbeat=0.01)
        first = await events.__anext__()
        second = await events.__anext__()
        await events.aclose()
        return hub, first, second

    hub, first, second = asyncio.run(_run())

    assert first == sse_frame(json.dumps({"v": 1}))
    assert second.startswith(": keepalive ")
    assert hub.subscribers == set()


def test_sse_keepalive_keeps_pace_with_frequent_snapshots():
    async def _run():
        hub = SnapshotHub(lambda previous: {})
        subscriber = hub.subscribe()
        events = sse_events(hub, subscriber, heartbeat=0.2)

        async def _publish():
            for i in range(20):
                hub.publish({"v": i})
                await asyncio.sleep(0.05)

        publisher = asyncio.create_task(_publish())
        frames = []
        while not any(frame.startswith(": keepalive") for frame in frames):
            frames.append(await events.__anext__())
        publisher.cancel()
        with suppress(asyncio.CancelledError):
            await publisher
        await events.aclose()
        return frames

    frames = asyncio.run(_run())

    snapshots = [frame for frame in frames if frame.startswith("event: snapshot")]
    assert len(snapshots) >= 2
    assert frames[-1].startswith(": keepalive ")
