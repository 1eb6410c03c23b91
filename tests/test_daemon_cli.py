"""Tests for starting, stopping and inspecting the background consume daemon."""

from __future__ import annotations

import json
import os
import signal
from pathlib import Path

import click
import pytest
from click.testing import CliRunner, Result

from fuel import protocol
from fuel.cli import main
from fuel.daemon import DaemonHandle

MP = pytest.MonkeyPatch


def invoke(*args: str) -> Result:
    return CliRunner().invoke(main, list(args))


def _write_handle(fuel_dir: Path, pid: int | None = None, port: int = 9981) -> DaemonHandle:
    handle = DaemonHandle(
        pid or os.getpid(), port, "2026-01-01T00:00:00Z", fuel_dir / "consume-runner.pid"
    )
    handle.write()
    return handle


@pytest.fixture()
def no_sleep(monkeypatch: MP) -> None:
    monkeypatch.setattr("fuel.cli.time.sleep", lambda _s: None)


@pytest.fixture()
def configured(fuel_dir: Path) -> Path:
    assert invoke("init").exit_code == 0
    return fuel_dir


class FakePopen:
    """Stands in for the detached runner; optionally publishes a PID file."""

    calls: list[list[str]] = []
    publish: Path | None = None

    def __init__(self, argv: list[str], **kwargs) -> None:
        FakePopen.calls.append(argv)
        self.kwargs = kwargs
        if FakePopen.publish is not None:
            port = int(argv[argv.index("--port") + 1])
            DaemonHandle(os.getpid(), port, "2026-01-01T00:00:00Z", FakePopen.publish).write()


@pytest.fixture()
def popen(monkeypatch: MP) -> type[FakePopen]:
    FakePopen.calls = []
    FakePopen.publish = None
    monkeypatch.setattr("fuel.cli.subprocess.Popen", FakePopen)
    return FakePopen


class TestStart:
    def test_already_running(self, fuel_dir: Path, popen) -> None:
        _write_handle(fuel_dir, port=9990)
        result = invoke("consume", "--port", "9981")
        assert result.exit_code == 0, result.output
        assert f"already running (pid {os.getpid()}, port 9990)" in result.output
        assert popen.calls == []

    def test_already_running_json(self, fuel_dir: Path, popen) -> None:
        _write_handle(fuel_dir)
        data = json.loads(invoke("consume", "--port", "9981", "--json").output)
        assert data["status"] == "already_running"
        assert data["pid"] == os.getpid()

    def test_starts_detached_runner(self, configured: Path, popen, no_sleep) -> None:
        popen.publish = configured / "consume-runner.pid"
        result = invoke("consume", "--port", "9982", "--interval", "2", "--review", "--json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["ok"] is True
        assert data["port"] == 9982
        assert data["log"] == str(configured / "consume-runner.log")

        (argv,) = popen.calls
        assert argv[1:3] == ["-m", "fuel"]
        assert "consume:runner" in argv
        assert argv[argv.index("--interval") + 1] == "2.0"
        assert "--review" in argv

    def test_runner_never_publishes(self, configured: Path, popen, no_sleep) -> None:
        result = invoke("consume", "--port", "9981")
        assert result.exit_code == 1
        assert "Consume daemon failed to start. Check logs:" in result.output
        assert len(popen.calls) == 1

    def test_requires_agents(self, fuel_dir: Path, popen) -> None:
        result = invoke("consume", "--port", "9981")
        assert result.exit_code == 1
        assert "No agents configured" in result.output
        assert popen.calls == []

    def test_stale_pid_file_does_not_block_start(
        self, configured: Path, popen, no_sleep
    ) -> None:
        _write_handle(configured, pid=2**22 + 54321)
        popen.publish = configured / "consume-runner.pid"
        result = invoke("consume", "--port", "9981")
        assert result.exit_code == 0, result.output
        assert f"Consume daemon started (pid {os.getpid()}, port 9981)" in result.output


class FakeKill:
    """Process that exits on SIGTERM, or ignores it when ``stubborn``."""

    def __init__(self, stubborn: bool = False) -> None:
        self.stubborn = stubborn
        self.terminated = False
        self.signals: list[int] = []

    def __call__(self, pid: int, sig: int) -> None:
        self.signals.append(sig)
        if sig == signal.SIGTERM:
            self.terminated = not self.stubborn
        elif sig == 0 and self.terminated:
            raise ProcessLookupError(pid)


class TestStop:
    def test_not_running(self, fuel_dir: Path) -> None:
        result = invoke("consume:stop", "--json")
        assert json.loads(result.output) == {"ok": True, "status": "not_running"}

    def test_stops_daemon(self, fuel_dir: Path, monkeypatch: MP, no_sleep) -> None:
        kill = FakeKill()
        monkeypatch.setattr("fuel.cli.os.kill", kill)
        _write_handle(fuel_dir)
        result = invoke("consume:stop")
        assert result.exit_code == 0, result.output
        assert f"Stopped consume daemon (pid {os.getpid()})" in result.output
        assert kill.signals == [0, signal.SIGTERM, 0]

    def test_daemon_still_shutting_down(self, fuel_dir: Path, monkeypatch: MP, no_sleep) -> None:
        monkeypatch.setattr("fuel.cli.os.kill", FakeKill(stubborn=True))
        _write_handle(fuel_dir)
        data = json.loads(invoke("consume:stop", "--json").output)
        assert data == {"ok": True, "pid": os.getpid(), "stopped": False}


class TestStatus:
    def test_not_running(self, fuel_dir: Path) -> None:
        assert invoke("consume:status").output.strip() == "Consume daemon is not running"
        data = json.loads(invoke("consume:status", "--json").output)
        assert data["running"] is False

    def test_running(self, fuel_dir: Path, monkeypatch: MP) -> None:
        sent: list[protocol.Command] = []

        def fake_call(command, timeout=None):
            sent.append(command)
            return {
                "pid": os.getpid(),
                "runner": {
                    "paused": True,
                    "running": [{"task_id": "f-abc123", "agent": "claude", "pid": 42}],
                    "ready": 3,
                    "stuck": [],
                },
            }

        monkeypatch.setattr("fuel.cli._call_daemon", fake_call)
        _write_handle(fuel_dir)
        result = invoke("consume:status")
        assert result.exit_code == 0, result.output
        assert result.output.splitlines() == [
            f"Consume daemon running (pid {os.getpid()}, port 9981)",
            "  Loop:    paused",
            "  Running: 1",
            "  Ready:   3",
            "  Stuck:   0",
        ]
        assert isinstance(sent[0], protocol.GetStatus)

    def test_unreachable_daemon_is_reported(self, fuel_dir: Path, monkeypatch: MP) -> None:
        def fake_call(command, timeout=None):
            raise click.ClickException("Failed to communicate with daemon: refused")

        monkeypatch.setattr("fuel.cli._call_daemon", fake_call)
        _write_handle(fuel_dir)
        result = invoke("consume:status", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["running"] is True
        assert data["error"] == "Failed to communicate with daemon: refused"
        assert "daemon" not in data


class TestInterval:
    def test_sets_interval(self, fuel_dir: Path, monkeypatch: MP) -> None:
        sent: list[protocol.Command] = []

        def fake_call(command, timeout=None):
            sent.append(command)
            return {"interval": command.interval_seconds}

        monkeypatch.setattr("fuel.cli._call_daemon", fake_call)
        result = invoke("consume:interval", "2.5")
        assert result.exit_code == 0, result.output
        assert result.output.strip() == "Consume interval set to 2.5s"
        assert isinstance(sent[0], protocol.SetInterval)

    def test_rejects_non_positive_interval(self, fuel_dir: Path, monkeypatch: MP) -> None:
        sent: list[protocol.Command] = []
        monkeypatch.setattr(
            "fuel.cli._call_daemon", lambda command, timeout=None: sent.append(command)
        )
        result = invoke("consume:interval", "0", "--json")
        assert result.exit_code == 1
        assert "positive number" in json.loads(result.output)["error"]
        assert sent == []
