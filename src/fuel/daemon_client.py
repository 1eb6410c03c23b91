"""CLI-side client for the consume daemon's control port.

Events arrive on a background read loop and are queued; callers either
drain them with :meth:`ConsumeIpcClient.poll_events` or wait for the
response to one request with :meth:`ConsumeIpcClient.wait_for_response`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections import deque
from typing import Any

from fuel import protocol
from fuel.daemon import DEFAULT_HOST
from fuel.errors import DaemonUnavailableError, RemoteOperationError
from fuel.protocol import Command, decode_message, encode_message

log = logging.getLogger(__name__)

DEFAULT_RESPONSE_TIMEOUT = 10.0
POLL_INTERVAL = 0.05


class ConsumeIpcClient:
    """Attach to a running consume daemon and exchange commands with it."""

    def __init__(self, *, host: str = DEFAULT_HOST) -> None:
        self._host = host
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._events: deque[dict[str, Any]] = deque()
        self._closed = False
        self.instance_id: str | None = None
        self.daemon_info: dict[str, Any] = {}

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._closed

    async def connect(self, port: int) -> None:
        try:
            self._reader, self._writer = await asyncio.open_connection(self._host, port)
        except OSError as exc:
            raise DaemonUnavailableError(
                f"Cannot connect to consume daemon on port {port}: {exc}"
            ) from exc
        self._closed = False
        self._reader_task = asyncio.create_task(self._read_loop())

    async def disconnect(self) -> None:
        if self._reader_task:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        if self._writer:
            self._writer.close()
            with contextlib.suppress(Exception):
                await self._writer.wait_closed()
        self._reader = None
        self._writer = None
        self._reader_task = None
        self._closed = True

    async def send(self, command: Command) -> None:
        if not self._writer:
            raise DaemonUnavailableError("Not connected to consume daemon")
        if command.instance_id is None:
            command.instance_id = self.instance_id
        self._writer.write(encode_message(command.to_wire()))
        await self._writer.drain()

    async def attach(self, timeout: float = DEFAULT_RESPONSE_TIMEOUT) -> dict[str, Any]:
        """Register with the daemon; returns the hello payload."""
        command = protocol.Attach(instance_id=str(uuid.uuid4()))
        self.instance_id = command.instance_id
        await self.send(command)
        event = await self._wait_for(command.request_id, timeout, "Timeout waiting for attach")
        self.daemon_info = event.get("result") or {}
        return self.daemon_info

    async def detach(self) -> None:
        if self.connected and self.instance_id:
            with contextlib.suppress(ConnectionError):
                await self.send(protocol.Detach())
        self.instance_id = None

    def poll_events(self) -> list[dict[str, Any]]:
        """Return every event received so far without blocking."""
        events = list(self._events)
        self._events.clear()
        return events

    async def wait_for_response(
        self, request_id: str, timeout: float = DEFAULT_RESPONSE_TIMEOUT
    ) -> dict[str, Any]:
        """Wait for the event answering ``request_id`` and return its result.

        Raises RemoteOperationError when the daemon reports failure and
        TimeoutError when nothing arrives in time.
        """
        event = await self._wait_for(
            request_id, timeout, "Timeout waiting for browser response"
        )
        if not event.get("success"):
            raise RemoteOperationError.from_payload(event)
        return event.get("result") or {}

    async def request(
        self, command: Command, timeout: float = DEFAULT_RESPONSE_TIMEOUT
    ) -> dict[str, Any]:
        await self.send(command)
        return await self.wait_for_response(command.request_id, timeout)

    async def _wait_for(self, request_id: str, timeout: float, message: str) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            for event in list(self._events):
                if event.get("requestId") == request_id:
                    self._events.remove(event)
                    return event
            if self._closed:
                raise DaemonUnavailableError("Consume daemon closed the connection")
            if loop.time() >= deadline:
                raise TimeoutError(message)
            await asyncio.sleep(POLL_INTERVAL)

    async def _read_loop(self) -> None:
        assert self._reader is not None
        while True:
            line = await self._reader.readline()
            if not line:
                self._closed = True
                break
            msg = decode_message(line)
            if msg is None:
                continue
            # Broadcasts for other clients' requests are dropped here.
            if msg.get("instanceId") not in (None, self.instance_id) and (
                msg.get("type") == protocol.BROWSER_RESPONSE
            ):
                continue
            self._events.append(msg)

    async def __aenter__(self) -> ConsumeIpcClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        try:
            await self.detach()
        finally:
            await self.disconnect()
