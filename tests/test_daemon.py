"""Tests for the consume daemon and its control port.

Uses real asyncio TCP sockets on 127.0.0.1 with a mocked browser backend
subprocess. Tests observable behaviors: attach handshake, runner
control, browser command round trips, broadcast, start failures.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import threading
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from fuel import protocol
from fuel.browser import BrowserBackend
from fuel.config import parse_config
from fuel.daemon import ConsumeDaemon, DaemonHandle, is_runner_alive, require_running_daemon
from fuel.daemon_client import ConsumeIpcClient
from fuel.errors import DaemonUnavailableError, RemoteOperationError
from fuel.health import FailureKind
from fuel.runner import Spawn, TickReport
from fuel.supervisor import Completion

DEAD_PID = 2**22 + 54321

# ---------------------------------------------------------------------------
# Fake browser backend subprocess
# ---------------------------------------------------------------------------


class FakeBrowserIO:
    """Answers every request written to the backend's stdin immediately."""

    def __init__(self) -> None:
        self.stdout: asyncio.Queue[bytes] = asyncio.Queue()
        self.requests: list[dict[str, Any]] = []
        self.results: dict[str, dict[str, Any]] = {"ping": {"status": "ok"}}
        self.errors: dict[str, dict[str, str]] = {}

    def write_stdin(self, data: bytes) -> None:
        msg = json.loads(data)
        self.requests.append(msg)
        method = msg["method"]
        if method in self.errors:
            reply = {"id": msg["id"], "ok": False, "error": self.errors[method]}
        else:
            reply = {"id": msg["id"], "ok": True, "result": self.results.get(method, {})}
        self.stdout.put_nowait(json.dumps(reply).encode() + b"\n")

    def methods(self) -> list[str]:
        return [r["method"] for r in self.requests]

    def params(self, method: str) -> dict[str, Any]:
        return next(r["params"] for r in self.requests if r["method"] == method)


def make_fake_process(io: FakeBrowserIO) -> MagicMock:
    proc = MagicMock()
    proc.pid = 23456
    proc.returncode = None

    proc.stdin = MagicMock()
    proc.stdin.write = MagicMock(side_effect=io.write_stdin)
    proc.stdin.drain = AsyncMock()
    proc.stdin.close = MagicMock()

    proc.stdout = MagicMock()
    proc.stdout.readline = AsyncMock(side_effect=io.stdout.get)

    proc.stderr = MagicMock()
    proc.stderr.readline = AsyncMock(return_value=b"")

    proc.wait = AsyncMock(return_value=0)
    return proc


class FakeHealth:
    def __init__(self, statuses: dict[str, str]) -> None:
        self.statuses = statuses

    def reset(self, agent: str) -> bool:
        if agent not in self.statuses:
            return False
        self.statuses[agent] = "healthy"
        return True

    def reset_all(self) -> int:
        for agent in self.statuses:
            self.statuses[agent] = "healthy"
        return len(self.statuses)

    def all_health_status(self) -> list[dict[str, Any]]:
        return [self.get_health_status(agent) for agent in sorted(self.statuses)]

    def get_health_status(self, agent: str) -> dict[str, Any]:
        return {"agent": agent, "status": self.statuses[agent]}


class FakeRunner:
    def __init__(self, reports: list[TickReport] | None = None) -> None:
        self.paused = False
        self.ticks = 0
        self.shut_down = False
        self.reports = list(reports or [])
        self.health = FakeHealth({"claude": "dead", "codex": "backoff"})
        self.threads: set[str] = set()

    def tick(self) -> TickReport:
        self.threads.add(threading.current_thread().name)
        self.ticks += 1
        return self.reports.pop(0) if self.reports else TickReport()

    def snapshot(self) -> dict[str, Any]:
        return {"paused": self.paused, "ticks": self.ticks}

    def shutdown(self) -> None:
        self.shut_down = True


class SlowRunner(FakeRunner):
    """Ticks once, then blocks inside the second tick until released."""

    def __init__(self) -> None:
        super().__init__()
        self.blocked = threading.Event()
        self.release = threading.Event()

    def tick(self) -> TickReport:
        if self.ticks:
            self.blocked.set()
            self.release.wait(10)
        return super().tick()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def browser_io() -> FakeBrowserIO:
    return FakeBrowserIO()


@pytest.fixture
def spawn(monkeypatch: pytest.MonkeyPatch, browser_io: FakeBrowserIO) -> AsyncMock:
    mock = AsyncMock(return_value=make_fake_process(browser_io))
    monkeypatch.setattr("fuel.browser.asyncio.create_subprocess_exec", mock)
    return mock


@pytest.fixture
def pid_path(tmp_path: Path) -> Path:
    return tmp_path / "consume-runner.pid"


@contextlib.asynccontextmanager
async def running_daemon(
    pid_path: Path, runner: FakeRunner | None = None
) -> AsyncIterator[ConsumeDaemon]:
    daemon = ConsumeDaemon(
        backend=BrowserBackend(["browser-daemon"]),
        runner=runner,  # type: ignore[arg-type]
        port=0,
        interval=0.01,
        pid_path=pid_path,
    )
    await daemon.start()
    try:
        yield daemon
    finally:
        await daemon.stop()


@contextlib.asynccontextmanager
async def attached_client(daemon: ConsumeDaemon) -> AsyncIterator[ConsumeIpcClient]:
    async with ConsumeIpcClient() as client:
        await client.connect(daemon.port)
        await client.attach(timeout=5)
        yield client


async def _read_event(reader: asyncio.StreamReader) -> dict[str, Any]:
    line = await asyncio.wait_for(reader.readline(), timeout=5)
    event = protocol.decode_message(line)
    assert event is not None
    return event


LOOP_EVENTS = (protocol.TASK_SPAWNED, protocol.TASK_COMPLETED, protocol.HEALTH_CHANGE)


async def _loop_events(client: ConsumeIpcClient, count: int) -> list[dict[str, Any]]:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + 5
    events: list[dict[str, Any]] = []
    while len(events) < count and loop.time() < deadline:
        events.extend(e for e in client.poll_events() if e["type"] in LOOP_EVENTS)
        await asyncio.sleep(0.01)
    return events


# ---------------------------------------------------------------------------
# PID file handle
# ---------------------------------------------------------------------------


class TestDaemonHandle:
    def test_missing_file(self, pid_path: Path) -> None:
        assert DaemonHandle.read(pid_path) is None
        assert not is_runner_alive(pid_path)

    def test_unreadable_file(self, pid_path: Path) -> None:
        pid_path.write_text("not json")
        assert DaemonHandle.read(pid_path) is None

    def test_invalid_port(self, pid_path: Path) -> None:
        pid_path.write_text(json.dumps({"pid": os.getpid(), "port": "9981"}))
        with pytest.raises(DaemonUnavailableError, match="Invalid port in PID file"):
            DaemonHandle.read(pid_path)
        assert not is_runner_alive(pid_path)

    def test_write_and_read(self, pid_path: Path) -> None:
        DaemonHandle(os.getpid(), 9981, "2026-01-01T00:00:00Z", pid_path).write()
        handle = DaemonHandle.read(pid_path)
        assert handle is not None
        assert (handle.pid, handle.port) == (os.getpid(), 9981)
        assert is_runner_alive(pid_path)
        assert require_running_daemon(pid_path) == handle

    def test_dead_pid_is_not_running(self, pid_path: Path) -> None:
        DaemonHandle(DEAD_PID, 9981, "2026-01-01T00:00:00Z", pid_path).write()
        assert not is_runner_alive(pid_path)
        with pytest.raises(DaemonUnavailableError, match="Start it with: fuel consume"):
            require_running_daemon(pid_path)

    def test_missing_started_at_stays_none(self, pid_path: Path) -> None:
        pid_path.write_text(json.dumps({"pid": os.getpid(), "port": 9981}))
        handle = DaemonHandle.read(pid_path)
        assert handle is not None
        assert handle.started_at is None

    def test_remove_only_own_handle(self, pid_path: Path) -> None:
        DaemonHandle(os.getpid(), 9981, "t", pid_path).write()
        DaemonHandle(DEAD_PID, 9981, "t", pid_path).remove()
        assert pid_path.exists()
        DaemonHandle(os.getpid(), 9981, "t", pid_path).remove()
        assert not pid_path.exists()


# ---------------------------------------------------------------------------
# Daemon
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_publishes_handle_and_stop_removes_it(self, pid_path: Path) -> None:
        async with running_daemon(pid_path) as daemon:
            handle = DaemonHandle.read(pid_path)
            assert handle is not None
            assert handle.pid == os.getpid()
            assert handle.port == daemon.port > 0
        assert not pid_path.exists()

    @pytest.mark.asyncio
    async def test_ticks_runner_and_shuts_it_down(self, pid_path: Path) -> None:
        runner = FakeRunner()
        async with running_daemon(pid_path, runner):
            for _ in range(100):
                if runner.ticks >= 2:
                    break
                await asyncio.sleep(0.01)
        assert runner.ticks >= 2
        assert runner.shut_down
        assert all(name.startswith("consume-runner") for name in runner.threads)

    @pytest.mark.asyncio
    async def test_slow_tick_does_not_block_clients(self, pid_path: Path) -> None:
        runner = SlowRunner()
        async with running_daemon(pid_path, runner) as daemon:
            try:
                assert await asyncio.to_thread(runner.blocked.wait, 5)
                async with attached_client(daemon) as client:
                    status = await client.request(protocol.GetStatus(), timeout=2)
                    browser = await client.request(protocol.BrowserStatus(), timeout=2)
            finally:
                runner.release.set()
        assert status["runner"] == {"paused": False, "ticks": 1}
        assert browser["browserLaunched"] is False

    @pytest.mark.asyncio
    async def test_open_runner_keeps_database_on_worker(
        self, pid_path: Path, db_conn_path
    ) -> None:
        _conn, db_path = db_conn_path
        config = parse_config({"primary": "claude", "agents": {"claude": {"driver": "claude"}}})
        daemon = ConsumeDaemon(
            backend=BrowserBackend(["browser-daemon"]), interval=0.01, pid_path=pid_path
        )
        await daemon.open_runner(config, db_path=db_path)
        await daemon.start()
        try:
            async with attached_client(daemon) as client:
                status = await client.request(protocol.GetStatus(), timeout=5)
        finally:
            await daemon.stop()
        assert status["runner"]["ready"] == 0
        assert status["runner"]["health"] == []



class TestControl:
    @pytest.mark.asyncio
    async def test_attach_says_hello(self, pid_path: Path) -> None:
        async with running_daemon(pid_path) as daemon, attached_client(daemon) as client:
            assert client.daemon_info["instanceId"] == client.instance_id
            assert client.daemon_info["pid"] == os.getpid()
            assert client.daemon_info["port"] == daemon.port

    @pytest.mark.asyncio
    async def test_status(self, pid_path: Path) -> None:
        async with running_daemon(pid_path) as daemon, attached_client(daemon) as client:
            status = await client.request(protocol.GetStatus(), timeout=5)
            assert status["clients"] == 1
            assert status["browser_running"] is False
            assert status["runner"] is None

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, pid_path: Path) -> None:
        runner = FakeRunner()
        async with running_daemon(pid_path, runner) as daemon, attached_client(daemon) as client:
            status = await client.request(protocol.PauseRunner(), timeout=5)
            assert runner.paused
            assert status["runner"]["paused"] is True

            status = await client.request(protocol.ResumeRunner(), timeout=5)
            assert not runner.paused
            assert status["runner"]["paused"] is False

    @pytest.mark.asyncio
    async def test_set_interval(self, pid_path: Path) -> None:
        async with running_daemon(pid_path) as daemon, attached_client(daemon) as client:
            status = await client.request(protocol.SetInterval(0.5), timeout=5)
        assert status["interval"] == 0.5

    @pytest.mark.asyncio
    async def test_health_reset_broadcasts_changes(self, pid_path: Path) -> None:
        runner = FakeRunner()
        async with running_daemon(pid_path, runner) as daemon, attached_client(daemon) as client:
            await client.request(protocol.HealthReset("claude"), timeout=5)
            first = [e for e in client.poll_events() if e["type"] == protocol.HEALTH_CHANGE]
            await client.request(protocol.HealthReset(), timeout=5)
            second = [e for e in client.poll_events() if e["type"] == protocol.HEALTH_CHANGE]

        assert [e["result"] for e in first] == [{"agent": "claude", "status": "healthy"}]
        assert [e["result"]["agent"] for e in second] == ["claude", "codex"]
        assert runner.health.statuses == {"claude": "healthy", "codex": "healthy"}

    @pytest.mark.asyncio
    async def test_health_reset_needs_runner(self, pid_path: Path) -> None:
        async with running_daemon(pid_path) as daemon, attached_client(daemon) as client:
            with pytest.raises(RemoteOperationError, match="No consume loop is running"):
                await client.request(protocol.HealthReset(), timeout=5)

    @pytest.mark.asyncio
    async def test_wrongly_typed_field_keeps_connection(self, pid_path: Path) -> None:
        async with running_daemon(pid_path) as daemon:
            reader, writer = await asyncio.open_connection("127.0.0.1", daemon.port)
            try:
                bad = {"kind": "browser_eval", "requestId": "r-2", "pageId": "p1", "expression": 5}
                writer.write(protocol.encode_message(bad))
                await writer.drain()
                error = await _read_event(reader)
                status_request = protocol.GetStatus(request_id="r-3")
                writer.write(protocol.encode_message(status_request.to_wire()))
                await writer.drain()
                status = await _read_event(reader)
            finally:
                writer.close()
        assert error["type"] == protocol.ERROR
        assert error["requestId"] == "r-2"
        assert error["errorCode"] == protocol.INVALID_COMMAND
        assert status["type"] == protocol.STATUS
        assert status["requestId"] == "r-3"

    @pytest.mark.asyncio
    async def test_invalid_command_gets_error_event(self, pid_path: Path) -> None:
        async with running_daemon(pid_path) as daemon:
            reader, writer = await asyncio.open_connection("127.0.0.1", daemon.port)
            try:
                writer.write(protocol.encode_message({"kind": "launch", "requestId": "r-1"}))
                await writer.drain()
                event = await _read_event(reader)
            finally:
                writer.close()
            assert event["type"] == protocol.ERROR
            assert event["requestId"] == "r-1"
            assert event["errorCode"] == protocol.INVALID_COMMAND
            assert "launch" in event["error"]


class TestBrowserCommands:
    @pytest.mark.asyncio
    async def test_status_does_not_start_backend(
        self, pid_path: Path, spawn: AsyncMock
    ) -> None:
        async with running_daemon(pid_path) as daemon, attached_client(daemon) as client:
            result = await client.request(protocol.BrowserStatus(), timeout=5)
        assert result["browserLaunched"] is False
        assert result["daemonRunning"] is False
        spawn.assert_not_called()

    @pytest.mark.asyncio
    async def test_scroll_defaults_amount(
        self, pid_path: Path, spawn: AsyncMock, browser_io: FakeBrowserIO
    ) -> None:
        browser_io.results["scroll"] = {"scrollX": 0, "scrollY": 100}
        async with running_daemon(pid_path) as daemon, attached_client(daemon) as client:
            result = await client.request(protocol.BrowserScroll("p1", "down"), timeout=5)

        assert result == {"scrollX": 0, "scrollY": 100, "direction": "down", "amount": 100}
        assert browser_io.methods()[:2] == ["ping", "scroll"]
        assert browser_io.params("scroll") == {"pageId": "p1", "direction": "down", "amount": 100}
        spawn.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_backend_started_once(
        self, pid_path: Path, spawn: AsyncMock, browser_io: FakeBrowserIO
    ) -> None:
        async with running_daemon(pid_path) as daemon, attached_client(daemon) as client:
            await client.request(protocol.BrowserEval("p1", "1 + 1"), timeout=5)
            await client.request(protocol.BrowserEval("p1", "2 + 2"), timeout=5)
            status = await client.request(protocol.GetStatus(), timeout=5)
        assert status["browser_running"] is True
        assert browser_io.methods().count("ping") == 1
        spawn.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_create_and_close_context(
        self, pid_path: Path, spawn: AsyncMock, browser_io: FakeBrowserIO
    ) -> None:
        async with running_daemon(pid_path) as daemon, attached_client(daemon) as client:
            created = await client.request(
                protocol.BrowserCreate("shop", viewport={"width": 800, "height": 600}), timeout=5
            )
            assert created["pageId"] == "shop-tab1"
            assert browser_io.params("newContext") == {
                "contextId": "shop",
                "viewport": {"width": 800, "height": 600},
            }
            assert browser_io.params("newPage") == {"contextId": "shop", "pageId": "shop-tab1"}

            await client.request(protocol.BrowserClose("shop"), timeout=5)
        assert browser_io.methods().count("closeContext") == 1

    @pytest.mark.asyncio
    async def test_wait_and_goto_params(
        self, pid_path: Path, spawn: AsyncMock, browser_io: FakeBrowserIO
    ) -> None:
        async with running_daemon(pid_path) as daemon, attached_client(daemon) as client:
            await client.request(
                protocol.BrowserGoto("p1", "https://example.com", timeout=5000), timeout=5
            )
            await client.request(protocol.BrowserWait("p1", text="Welcome"), timeout=5)
        assert browser_io.params("goto") == {
            "pageId": "p1",
            "url": "https://example.com",
            "waitUntil": "load",
            "timeoutMs": 5000,
        }
        assert browser_io.params("wait") == {
            "pageId": "p1",
            "state": "visible",
            "timeoutMs": 30000,
            "text": "Welcome",
        }

    @pytest.mark.asyncio
    async def test_fill_by_ref(
        self, pid_path: Path, spawn: AsyncMock, browser_io: FakeBrowserIO
    ) -> None:
        async with running_daemon(pid_path) as daemon, attached_client(daemon) as client:
            await client.request(protocol.BrowserFill("p1", "secret", ref="@e7"), timeout=5)
        assert browser_io.params("fill") == {"pageId": "p1", "value": "secret", "ref": "@e7"}

    @pytest.mark.asyncio
    async def test_backend_error_keeps_its_code(
        self, pid_path: Path, spawn: AsyncMock, browser_io: FakeBrowserIO
    ) -> None:
        browser_io.errors["text"] = {"code": "PAGE_NOT_FOUND", "message": "No page 'p9'"}
        async with running_daemon(pid_path) as daemon, attached_client(daemon) as client:
            with pytest.raises(RemoteOperationError, match="No page 'p9'") as excinfo:
                await client.request(protocol.BrowserText("p9", selector="h1"), timeout=5)
        assert excinfo.value.error_code == "PAGE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_start_failure(self, pid_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(
            "fuel.browser.asyncio.create_subprocess_exec",
            AsyncMock(side_effect=FileNotFoundError("node")),
        )
        async with running_daemon(pid_path) as daemon, attached_client(daemon) as client:
            with pytest.raises(RemoteOperationError, match="Failed to start browser") as excinfo:
                await client.request(protocol.BrowserScroll("p1", "up"), timeout=5)
        assert excinfo.value.error_code == protocol.BROWSER_START_FAILED

    @pytest.mark.asyncio
    async def test_responses_are_broadcast(
        self, pid_path: Path, spawn: AsyncMock, browser_io: FakeBrowserIO
    ) -> None:
        async with running_daemon(pid_path) as daemon, attached_client(daemon) as client:
            reader, writer = await asyncio.open_connection("127.0.0.1", daemon.port)
            try:
                attach = protocol.Attach(instance_id="observer")
                writer.write(protocol.encode_message(attach.to_wire()))
                await writer.drain()
                hello = await _read_event(reader)
                assert hello["type"] == protocol.HELLO

                command = protocol.BrowserEval("p1", "document.title")
                await client.request(command, timeout=5)
                event = await _read_event(reader)
            finally:
                writer.close()

        assert event["type"] == protocol.BROWSER_RESPONSE
        assert event["requestId"] == command.request_id
        assert event["instanceId"] == client.instance_id


class TestLoopEvents:
    @pytest.mark.asyncio
    async def test_tick_report_is_broadcast(self, pid_path: Path) -> None:
        runner = FakeRunner()
        report = TickReport(
            dispatched=["f-aaa111"],
            spawned=[Spawn("f-aaa111", "run-1", "claude")],
            completed=[
                Completion(
                    "f-bbb222", "codex", "run-2", 1, 3.0, "reset", failure=FailureKind.NETWORK
                )
            ],
            health_changes={"codex": "backoff"},
        )
        async with running_daemon(pid_path, runner) as daemon, attached_client(daemon) as client:
            runner.reports.append(report)
            events = await _loop_events(client, 3)

        assert [e["type"] for e in events] == list(LOOP_EVENTS)
        assert events[0]["result"] == {"taskId": "f-aaa111", "runId": "run-1", "agent": "claude"}
        assert events[1]["result"] == {
            "taskId": "f-bbb222",
            "runId": "run-2",
            "exitCode": 1,
            "completionType": "network_error",
        }
        assert events[2]["result"] == {"agent": "codex", "status": "backoff"}
        assert all(e["requestId"] is None for e in events)
