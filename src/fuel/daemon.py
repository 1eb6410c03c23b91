"""Headless consume daemon: the consume loop plus a local control port.

The daemon ticks a :class:`~fuel.runner.ConsumeRunner` on an interval and
listens on ``127.0.0.1:<port>`` for CLI clients.  Clients ``attach``,
send commands (see :mod:`fuel.protocol`), and read back events.  Browser
commands are executed against one shared
:class:`~fuel.browser.BrowserBackend`, started lazily on first use.

The runner and its database connection live on a single worker thread,
so a slow tick or a locked database never stalls the event loop.  Status
requests are answered from the snapshot taken after the latest tick.

Every ``browser_response`` is broadcast to all attached clients; each
client picks out its own by ``requestId``.  After each tick the daemon
also broadcasts ``task_spawned``, ``task_completed`` and
``health_change`` events.

The daemon advertises itself through a PID file holding
``{"pid": ..., "port": ..., "started_at": ...}``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import signal
import sqlite3
import uuid
from collections.abc import Awaitable, Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from fuel import db, protocol
from fuel.browser import BrowserBackend
from fuel.config import FuelConfig, load_config
from fuel.errors import DaemonUnavailableError, RemoteOperationError, ValidationError
from fuel.paths import FUEL_DIR
from fuel.protocol import (
    BrowserClose,
    BrowserCreate,
    BrowserEval,
    BrowserFill,
    BrowserGoto,
    BrowserScreenshot,
    BrowserScroll,
    BrowserText,
    BrowserWait,
    Command,
    decode_message,
    encode_message,
)
from fuel.runner import DEFAULT_INTERVAL, ConsumeRunner, TickReport
from fuel.supervisor import pid_alive

log = logging.getLogger(__name__)

# -- Paths ----------------------------------------------------------------

DEFAULT_PID_PATH = FUEL_DIR / "consume-runner.pid"
DEFAULT_LOG_PATH = FUEL_DIR / "consume-runner.log"
DEFAULT_HOST = "127.0.0.1"


# -- Daemon handle ----------------------------------------------------------


@dataclass(frozen=True)
class DaemonHandle:
    """Where a running daemon lives; read from and written to the PID file."""

    pid: int
    port: int
    started_at: str | None
    path: Path

    @classmethod
    def read(cls, path: Path | None = None) -> DaemonHandle | None:
        """Load the handle, or None when there is no readable PID file.

        Raises DaemonUnavailableError when the file names no usable port.
        """
        path = path or DEFAULT_PID_PATH
        try:
            data = json.loads(path.read_text())
        except (FileNotFoundError, json.JSONDecodeError, UnicodeDecodeError):
            return None
        if not isinstance(data, dict) or not isinstance(data.get("pid"), int):
            return None
        port = data.get("port")
        if not isinstance(port, int) or not 0 < port < 65536:
            raise DaemonUnavailableError("Invalid port in PID file")
        started_at = data.get("started_at")
        if not isinstance(started_at, str):
            started_at = None
        return cls(pid=data["pid"], port=port, started_at=started_at, path=path)

    def write(self) -> None:
        """Write atomically so readers never see a half-written file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        tmp.write_text(
            json.dumps({"pid": self.pid, "port": self.port, "started_at": self.started_at})
        )
        os.replace(tmp, self.path)

    def remove(self) -> None:
        # Only the owning daemon may remove its handle.
        with contextlib.suppress(FileNotFoundError):
            current = json.loads(self.path.read_text())
            if current.get("pid") == self.pid:
                self.path.unlink()

    def is_alive(self) -> bool:
        return pid_alive(self.pid)


def is_runner_alive(path: Path | None = None) -> bool:
    try:
        handle = DaemonHandle.read(path)
    except DaemonUnavailableError:
        return False
    return handle is not None and handle.is_alive()


def require_running_daemon(path: Path | None = None) -> DaemonHandle:
    """Return the live daemon's handle or raise DaemonUnavailableError."""
    handle = DaemonHandle.read(path)
    if handle is None or not handle.is_alive():
        raise DaemonUnavailableError("Consume daemon is not running. Start it with: fuel consume")
    return handle


# -- Client connection ------------------------------------------------------


class _Client:
    """State for one connected CLI client."""

    __slots__ = ("reader", "writer", "instance_id", "addr")

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self.instance_id: str | None = None
        self.addr = writer.get_extra_info("peername") or "unknown"

    @property
    def attached(self) -> bool:
        return self.instance_id is not None

    def send(self, msg: dict) -> None:
        """Queue a message to this client (non-blocking)."""
        try:
            self.writer.write(encode_message(msg))
        except Exception:
            log.debug("Failed to write to client %s", self.addr)

    def close(self) -> None:
        self.writer.close()


def _error_event(request_id: str | None, instance_id: str | None, message: str) -> dict:
    return protocol.make_event(
        protocol.ERROR,
        request_id=request_id,
        instance_id=instance_id,
        success=False,
        error=message,
        error_code=protocol.INVALID_COMMAND,
    )


# -- Daemon ---------------------------------------------------------------


class ConsumeDaemon:
    """Serves the control port and drives the consume loop."""

    def __init__(
        self,
        *,
        backend: BrowserBackend,
        runner: ConsumeRunner | None = None,
        host: str = DEFAULT_HOST,
        port: int = 0,
        interval: float = DEFAULT_INTERVAL,
        pid_path: Path | None = None,
    ) -> None:
        self._backend = backend
        self._runner = runner
        self._host = host
        self._port = port
        self._interval = interval
        self._pid_path = pid_path or DEFAULT_PID_PATH
        self._server: asyncio.AbstractServer | None = None
        self._clients: set[_Client] = set()
        self._tick_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="consume-runner")
        self._conn: sqlite3.Connection | None = None
        self._snapshot: dict[str, Any] | None = None
        self.handle: DaemonHandle | None = None

        self._browser_handlers: dict[str, Callable[[Any], Awaitable[dict[str, Any]]]] = {
            BrowserCreate.kind: self._browser_create,
            BrowserGoto.kind: self._browser_goto,
            BrowserFill.kind: self._browser_fill,
            BrowserScroll.kind: self._browser_scroll,
            BrowserWait.kind: self._browser_wait,
            BrowserEval.kind: self._browser_eval,
            BrowserText.kind: self._browser_text,
            BrowserScreenshot.kind: self._browser_screenshot,
            BrowserClose.kind: self._browser_close,
        }

    @property
    def port(self) -> int:
        return self.handle.port if self.handle else self._port

    # -- Consume loop ---------------------------------------------------------

    async def _on_worker(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run ``fn`` on the runner's thread; every runner call goes through here."""
        return await asyncio.get_running_loop().run_in_executor(self._worker, fn, *args)

    async def open_runner(
        self, config: FuelConfig, *, review: bool = False, db_path: Path | None = None
    ) -> ConsumeRunner:
        """Open the database and build the runner on the worker thread that will use them."""

        def build() -> ConsumeRunner:
            self._conn = db.get_connection(db_path or db.DEFAULT_DB_PATH)
            return ConsumeRunner(self._conn, config, review=review)

        self._runner = await self._on_worker(build)
        return self._runner

    def _tick(self) -> TickReport:
        assert self._runner is not None
        try:
            return self._runner.tick()
        finally:
            self._snapshot = self._runner.snapshot()

    async def _tick_loop(self) -> None:
        assert self._runner is not None
        while not self._stop_event.is_set():
            try:
                report = await self._on_worker(self._tick)
            except Exception:
                log.exception("Consume tick failed")
            else:
                self._broadcast_report(report)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)

    def _broadcast_report(self, report: TickReport) -> None:
        for spawn in report.spawned:
            self._broadcast_event(
                protocol.TASK_SPAWNED,
                {"taskId": spawn.task_id, "runId": spawn.run_id, "agent": spawn.agent},
            )
        for completion in report.completed:
            self._broadcast_event(
                protocol.TASK_COMPLETED,
                {
                    "taskId": completion.task_id,
                    "runId": completion.run_id,
                    "exitCode": completion.exit_code,
                    "completionType": completion.completion_type,
                },
            )
        for agent, status in report.health_changes.items():
            self._broadcast_event(protocol.HEALTH_CHANGE, {"agent": agent, "status": status})

    def _reset_health(self, agent: str | None) -> dict[str, str]:
        assert self._runner is not None
        health = self._runner.health
        if agent:
            agents = [agent] if health.reset(agent) else []
        else:
            agents = [h["agent"] for h in health.all_health_status()]
            health.reset_all()
        self._snapshot = self._runner.snapshot()
        return {name: health.get_health_status(name)["status"] for name in agents}

    # -- Client connection handling -----------------------------------------

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        client = _Client(reader, writer)
        self._clients.add(client)
        log.debug("Client connected: %s (total: %d)", client.addr, len(self._clients))
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                msg = decode_message(line)
                if msg is None:
                    continue
                await self._dispatch(client, msg)
                await writer.drain()
        except (asyncio.CancelledError, ConnectionResetError):
            pass
        finally:
            self._clients.discard(client)
            client.close()
            log.debug("Client disconnected: %s (total: %d)", client.addr, len(self._clients))

    async def _dispatch(self, client: _Client, msg: dict[str, Any]) -> None:
        try:
            command = protocol.parse_command(msg)
        except ValidationError as exc:
            client.send(_error_event(msg.get("requestId"), msg.get("instanceId"), str(exc)))
            return

        if isinstance(command, protocol.Attach):
            client.instance_id = command.instance_id or str(uuid.uuid4())
            client.send(
                protocol.make_event(
                    protocol.HELLO,
                    request_id=command.request_id,
                    instance_id=client.instance_id,
                    result={"instanceId": client.instance_id, **self._identity()},
                )
            )
        elif isinstance(command, protocol.Detach):
            client.instance_id = None
        elif protocol.is_browser_command(command):
            self._broadcast(await self._run_browser_command(command))
        else:
            await self._control(client, command)

    async def _control(self, client: _Client, command: Command) -> None:
        """Apply a runner command, then answer with the daemon status."""
        if isinstance(command, protocol.SetInterval):
            self._interval = command.interval_seconds
            log.info("Consume interval set to %ss by %s", self._interval, command.instance_id)
        elif isinstance(command, protocol.HealthReset):
            if self._runner is None:
                client.send(
                    _error_event(
                        command.request_id, command.instance_id, "No consume loop is running"
                    )
                )
                return
            changes = await self._on_worker(self._reset_health, command.agent)
            log.info(
                "Health reset for %s by %s", command.agent or "all agents", command.instance_id
            )
            for agent, status in changes.items():
                self._broadcast_event(protocol.HEALTH_CHANGE, {"agent": agent, "status": status})
        elif self._runner is not None and isinstance(command, protocol.PauseRunner):
            self._runner.paused = True
            log.info("Consume loop paused by %s", command.instance_id)
        elif self._runner is not None and isinstance(command, protocol.ResumeRunner):
            self._runner.paused = False
            log.info("Consume loop resumed by %s", command.instance_id)
        client.send(
            protocol.make_event(
                protocol.STATUS,
                request_id=command.request_id,
                instance_id=command.instance_id,
                result=await self.status(),
            )
        )

    def _broadcast(self, event: dict[str, Any]) -> None:
        for client in list(self._clients):
            if client.attached:
                client.send(event)

    def _broadcast_event(self, event_type: str, result: dict[str, Any]) -> None:
        self._broadcast(
            protocol.make_event(event_type, request_id=None, instance_id=None, result=result)
        )

    def _identity(self) -> dict[str, Any]:
        return {
            "pid": os.getpid(),
            "port": self.port,
            "started_at": self.handle.started_at if self.handle else None,
        }

    async def status(self) -> dict[str, Any]:
        runner = None
        if self._runner is not None:
            if self._snapshot is None:
                self._snapshot = await self._on_worker(self._runner.snapshot)
            runner = {**self._snapshot, "paused": self._runner.paused}
        return {
            **self._identity(),
            "clients": sum(1 for c in self._clients if c.attached),
            "browser_running": self._backend.is_running,
            "interval": self._interval,
            "runner": runner,
        }

    # -- Browser commands -----------------------------------------------------

    async def _run_browser_command(self, command: Command) -> dict[str, Any]:
        """Execute one browser command; always yields exactly one response."""
        if isinstance(command, protocol.BrowserStatus):
            return protocol.browser_response(
                command, success=True, result=await self._backend.status()
            )
        try:
            await self._backend.ensure_started()
        except RemoteOperationError as exc:
            log.error("Browser backend failed to start: %s", exc)
            return protocol.browser_response(
                command,
                success=False,
                error=str(exc),
                error_code=protocol.BROWSER_START_FAILED,
            )
        handler = self._browser_handlers[command.kind]
        try:
            result = await handler(command)
        except RemoteOperationError as exc:
            return protocol.browser_response(
                command,
                success=False,
                error=str(exc),
                error_code=exc.error_code or protocol.BROWSER_OPERATION_FAILED,
            )
        return protocol.browser_response(command, success=True, result=result)

    async def _browser_create(self, cmd: BrowserCreate) -> dict[str, Any]:
        assert cmd.page_id is not None
        return await self._backend.create_context(
            cmd.context_id, cmd.page_id, viewport=cmd.viewport, user_agent=cmd.user_agent
        )

    async def _browser_goto(self, cmd: BrowserGoto) -> dict[str, Any]:
        return await self._backend.request(
            "goto",
            {
                "pageId": cmd.page_id,
                "url": cmd.url,
                "waitUntil": cmd.wait_until,
                "timeoutMs": cmd.timeout,
            },
            timeout=cmd.timeout / 1000 + 5,
        )

    async def _browser_fill(self, cmd: BrowserFill) -> dict[str, Any]:
        params: dict[str, Any] = {"pageId": cmd.page_id, "value": cmd.value}
        if cmd.ref:
            params["ref"] = cmd.ref
        else:
            params["selector"] = cmd.selector
        return await self._backend.request("fill", params)

    async def _browser_scroll(self, cmd: BrowserScroll) -> dict[str, Any]:
        result = await self._backend.request(
            "scroll", {"pageId": cmd.page_id, "direction": cmd.direction, "amount": cmd.amount}
        )
        return {**result, "direction": cmd.direction, "amount": cmd.amount}

    async def _browser_wait(self, cmd: BrowserWait) -> dict[str, Any]:
        params: dict[str, Any] = {
            "pageId": cmd.page_id,
            "state": cmd.state,
            "timeoutMs": cmd.timeout,
        }
        for key in ("selector", "url", "text"):
            value = getattr(cmd, key)
            if value:
                params[key] = value
        return await self._backend.request("wait", params, timeout=cmd.timeout / 1000 + 5)

    async def _browser_eval(self, cmd: BrowserEval) -> dict[str, Any]:
        return await self._backend.request(
            "eval", {"pageId": cmd.page_id, "expression": cmd.expression}
        )

    async def _browser_text(self, cmd: BrowserText) -> dict[str, Any]:
        params: dict[str, Any] = {"pageId": cmd.page_id}
        if cmd.ref:
            params["ref"] = cmd.ref
        else:
            params["selector"] = cmd.selector
        return await self._backend.request("text", params)

    async def _browser_screenshot(self, cmd: BrowserScreenshot) -> dict[str, Any]:
        params: dict[str, Any] = {"pageId": cmd.page_id, "fullPage": cmd.full_page}
        if cmd.path:
            params["path"] = cmd.path
        return await self._backend.request("screenshot", params)

    async def _browser_close(self, cmd: BrowserClose) -> dict[str, Any]:
        return await self._backend.close_context(cmd.context_id)

    # -- Public API -------------------------------------------------------

    async def start(self) -> None:
        """Bind the control port, publish the PID file, start ticking."""
        self._server = await asyncio.start_server(self._handle_client, self._host, self._port)
        port = self._server.sockets[0].getsockname()[1]
        self.handle = DaemonHandle(
            pid=os.getpid(),
            port=port,
            started_at=datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
            path=self._pid_path,
        )
        self.handle.write()
        if self._runner is not None:
            self._tick_task = asyncio.create_task(self._tick_loop())
        log.info("Consume daemon listening on %s:%d", self._host, port)

    async def stop(self) -> None:
        """Stop ticking, close clients and the port, stop agents and the backend."""
        self._stop_event.set()
        if self._tick_task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._tick_task
            self._tick_task = None
        for client in list(self._clients):
            client.close()
        self._clients.clear()
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        await self._backend.stop()
        if self._runner is not None:
            await self._on_worker(self._runner.shutdown)
        if self._conn is not None:
            await self._on_worker(self._conn.close)
            self._conn = None
        self._worker.shutdown(wait=True)
        if self.handle:
            self.handle.remove()
        log.info("Consume daemon stopped")

    async def serve_forever(self) -> None:
        """Run until SIGTERM or SIGINT."""
        assert self._server is not None
        shutdown = asyncio.Event()

        def on_signal() -> None:
            log.info("Signal received, shutting down")
            shutdown.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)

        await shutdown.wait()
        await self.stop()


# -- Entry point ----------------------------------------------------------


async def _main(port: int, interval: float, review: bool) -> None:
    config = load_config()
    backend = BrowserBackend(config.browser_command, cwd=Path.cwd())
    daemon = ConsumeDaemon(backend=backend, port=port, interval=interval)
    await daemon.open_runner(config, review=review)
    await daemon.start()
    await daemon.serve_forever()


def main(port: int, interval: float = DEFAULT_INTERVAL, review: bool = False) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    asyncio.run(_main(port, interval, review))
