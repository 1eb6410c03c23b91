"""Client for the browser-automation backend subprocess.

The backend (by default ``node browser-daemon.js``) reads one JSON request
per line on stdin and writes one JSON response per line on stdout::

    -> {"id": 7, "method": "goto", "params": {"pageId": "p1", "url": "..."}}
    <- {"id": 7, "ok": true, "result": {"url": "...", "title": "..."}}
    <- {"id": 8, "ok": false, "error": {"code": "PAGE_NOT_FOUND", "message": "..."}}

Methods: ping, newContext, newPage, goto, eval, fill, scroll, wait, text,
screenshot, closeContext, status.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from fuel.errors import RemoteOperationError
from fuel.protocol import (
    BROWSER_OPERATION_FAILED,
    BROWSER_START_FAILED,
    decode_message,
    encode_message,
)

log = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0
_STOP_GRACE_SECONDS = 2.0


class BrowserBackend:
    """One long-lived backend process shared by every daemon client."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self._command = list(command)
        self._cwd = cwd
        self._request_timeout = request_timeout
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._next_id = 1
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._start_lock = asyncio.Lock()
        # context_id -> page ids
        self.contexts: dict[str, list[str]] = {}

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    # -- Lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Spawn the backend and verify it answers ``ping``.

        Raises RemoteOperationError(BROWSER_START_FAILED) on any failure.
        """
        log.info("Starting browser backend: %s", " ".join(self._command))
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._command,
                cwd=self._cwd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=10 * 1024 * 1024,
            )
        except OSError as exc:
            self._process = None
            raise RemoteOperationError(
                f"Failed to start browser daemon: {exc}", BROWSER_START_FAILED
            ) from exc
        self._reader_task = asyncio.create_task(self._read_loop())
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        try:
            result = await self.request("ping", {}, timeout=10)
            if result.get("status") != "ok":
                raise RemoteOperationError("Browser daemon ping failed", BROWSER_START_FAILED)
        except RemoteOperationError as exc:
            await self.stop()
            raise RemoteOperationError(
                f"Failed to start browser daemon: {exc}", BROWSER_START_FAILED
            ) from exc
        log.info("Browser backend ready (pid=%d)", self._process.pid or 0)

    async def ensure_started(self) -> None:
        async with self._start_lock:
            if not self.is_running:
                self.contexts.clear()
                await self.start()

    async def stop(self) -> None:
        if self.is_running:
            for context_id in list(self.contexts):
                with contextlib.suppress(RemoteOperationError, ConnectionError):
                    await self.request("closeContext", {"contextId": context_id}, timeout=5)
        if self._process and self._process.stdin:
            self._process.stdin.close()
        if self._process and self._process.returncode is None:
            self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=_STOP_GRACE_SECONDS)
            except TimeoutError:
                self._process.kill()
                await self._process.wait()
        for task in (self._reader_task, self._stderr_task):
            if task:
                task.cancel()
        self._process = None
        self._reader_task = None
        self._stderr_task = None
        self.contexts.clear()
        log.info("Browser backend stopped")

    # -- Requests ----------------------------------------------------------

    async def request(
        self, method: str, params: dict[str, Any], timeout: float | None = None
    ) -> dict[str, Any]:
        if not self._process or not self._process.stdin:
            raise RemoteOperationError("Browser daemon is not running", BROWSER_START_FAILED)

        req_id = self._next_id
        self._next_id += 1
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future

        message = {"id": req_id, "method": method, "params": params}
        self._process.stdin.write(encode_message(message))
        try:
            await self._process.stdin.drain()
            response = await asyncio.wait_for(future, timeout=timeout or self._request_timeout)
        except TimeoutError as exc:
            raise RemoteOperationError(
                "Timeout waiting for daemon response", BROWSER_OPERATION_FAILED
            ) from exc
        except ConnectionError as exc:
            raise RemoteOperationError(str(exc), BROWSER_OPERATION_FAILED) from exc
        finally:
            self._pending.pop(req_id, None)

        if not response.get("ok"):
            error = response.get("error") or {}
            code = error.get("code") or "ERR"
            raise RemoteOperationError(
                f"Daemon error: {error.get('message') or 'Unknown error'} (code: {code})",
                code,
            )
        return response.get("result") or {}

    async def _read_loop(self) -> None:
        assert self._process and self._process.stdout
        while True:
            line = await self._process.stdout.readline()
            if not line:
                self._handle_eof()
                break
            msg = decode_message(line)
            if msg is None:
                log.debug("Ignoring non-JSON backend line: %r", line[:200])
                continue
            future = self._pending.get(msg.get("id"))  # type: ignore[arg-type]
            if future is not None and not future.done():
                future.set_result(msg)

    async def _drain_stderr(self) -> None:
        assert self._process and self._process.stderr
        while True:
            line = await self._process.stderr.readline()
            if not line:
                break
            log.debug("browser stderr: %s", line.decode(errors="replace").rstrip())

    def _handle_eof(self) -> None:
        log.error("Browser backend exited")
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ConnectionError("Browser daemon exited"))
        self._pending.clear()
        self.contexts.clear()

    # -- Operations --------------------------------------------------------

    async def create_context(
        self,
        context_id: str,
        page_id: str,
        *,
        viewport: dict[str, int] | None = None,
        user_agent: str | None = None,
    ) -> dict[str, Any]:
        """Create a context plus its first page."""
        options: dict[str, Any] = {"contextId": context_id}
        if viewport is not None:
            options["viewport"] = viewport
        if user_agent is not None:
            options["userAgent"] = user_agent
        context = await self.request("newContext", options)
        self.contexts.setdefault(context_id, [])
        page = await self.request("newPage", {"contextId": context_id, "pageId": page_id})
        self.contexts[context_id].append(page_id)
        return {"contextId": context_id, "pageId": page_id, "context": context, "page": page}

    async def close_context(self, context_id: str) -> dict[str, Any]:
        result = await self.request("closeContext", {"contextId": context_id})
        self.contexts.pop(context_id, None)
        return result

    async def status(self) -> dict[str, Any]:
        if not self.is_running:
            return {
                "browserLaunched": False,
                "contexts": [],
                "pages": [],
                "daemonRunning": False,
            }
        try:
            result = await self.request("status", {})
        except RemoteOperationError as exc:
            return {
                "browserLaunched": False,
                "contexts": [],
                "pages": [],
                "daemonRunning": False,
                "error": str(exc),
            }
        return {**result, "daemonRunning": True}
