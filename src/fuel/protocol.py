"""Wire protocol between CLI clients and the consume daemon.

Messages are newline-delimited JSON objects on a local TCP connection.
Clients send commands tagged by ``kind``::

    {"kind": "browser_scroll", "requestId": "...", "instanceId": "...",
     "timestamp": "...", "pageId": "p1", "direction": "down", "amount": 100}

The daemon answers with events tagged by ``type``; browser commands get
exactly one ``browser_response`` per ``requestId``::

    {"type": "browser_response", "success": true, "result": {...},
     "error": null, "errorCode": null, "timestamp": "...",
     "instanceId": "...", "requestId": "..."}

Command objects validate themselves on construction, so a bad flag
combination fails before any connection is opened.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from typing import Any, ClassVar

from fuel.errors import ValidationError

# Event types
HELLO = "hello"
BROWSER_RESPONSE = "browser_response"
STATUS = "status"
ERROR = "error"
TASK_SPAWNED = "task_spawned"
TASK_COMPLETED = "task_completed"
HEALTH_CHANGE = "health_change"

# Error codes
BROWSER_START_FAILED = "BROWSER_START_FAILED"
BROWSER_OPERATION_FAILED = "BROWSER_OPERATION_FAILED"
INVALID_COMMAND = "INVALID_COMMAND"

SCROLL_DIRECTIONS = ("up", "down", "left", "right")
WAIT_STATES = ("visible", "hidden", "attached", "detached")
WAIT_UNTIL = ("load", "domcontentloaded", "networkidle", "commit")
DEFAULT_SCROLL_AMOUNT = 100
DEFAULT_TIMEOUT_MS = 30000


def encode_message(msg: dict) -> bytes:
    return json.dumps(msg, separators=(",", ":")).encode() + b"\n"


def decode_message(line: bytes) -> dict[str, Any] | None:
    try:
        parsed = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def new_request_id() -> str:
    return str(uuid.uuid4())


def _timestamp() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _wire(name: str, **kwargs: Any) -> Any:
    return field(metadata={"wire": name}, **kwargs)


def _exactly_one(values: dict[str, Any], message: str) -> None:
    if sum(1 for v in values.values() if v not in (None, "")) != 1:
        raise ValidationError(message)


# -- Commands ---------------------------------------------------------------


@dataclass
class Command:
    """Base for every client-to-daemon message."""

    kind: ClassVar[str] = ""

    request_id: str = field(default_factory=new_request_id, kw_only=True)
    instance_id: str | None = field(default=None, kw_only=True)
    timestamp: str = field(default_factory=_timestamp, kw_only=True)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        pass

    def to_wire(self) -> dict[str, Any]:
        msg: dict[str, Any] = {
            "kind": self.kind,
            "requestId": self.request_id,
            "instanceId": self.instance_id,
            "timestamp": self.timestamp,
        }
        for f in fields(self):
            wire = f.metadata.get("wire")
            if wire:
                msg[wire] = getattr(self, f.name)
        return msg

    @classmethod
    def from_wire(cls, msg: dict[str, Any]) -> Command:
        kwargs = {
            f.name: msg[f.metadata["wire"]]
            for f in fields(cls)
            if f.metadata.get("wire") and msg.get(f.metadata["wire"]) is not None
        }
        try:
            return cls(
                **kwargs,
                request_id=msg.get("requestId") or new_request_id(),
                instance_id=msg.get("instanceId"),
                timestamp=msg.get("timestamp") or _timestamp(),
            )
        except (TypeError, AttributeError) as exc:
            raise ValidationError(f"Malformed {cls.kind} command: {exc}") from exc


@dataclass
class Attach(Command):
    kind: ClassVar[str] = "attach"


@dataclass
class Detach(Command):
    kind: ClassVar[str] = "detach"


@dataclass
class GetStatus(Command):
    kind: ClassVar[str] = "status"


@dataclass
class PauseRunner(Command):
    kind: ClassVar[str] = "pause"


@dataclass
class ResumeRunner(Command):
    kind: ClassVar[str] = "resume"


@dataclass
class SetInterval(Command):
    kind: ClassVar[str] = "set_interval"

    interval_seconds: float = _wire("intervalSeconds")

    def validate(self) -> None:
        if (
            not isinstance(self.interval_seconds, int | float)
            or isinstance(self.interval_seconds, bool)
            or self.interval_seconds <= 0
        ):
            raise ValidationError("Interval must be a positive number of seconds")


@dataclass
class HealthReset(Command):
    """Clear an agent's failure streak; no agent means every agent."""

    kind: ClassVar[str] = "health_reset"

    agent: str | None = _wire("agent", default=None)

    def validate(self) -> None:
        if self.agent is not None and not isinstance(self.agent, str):
            raise ValidationError("Agent must be a string")



@dataclass
class BrowserCreate(Command):
    kind: ClassVar[str] = "browser_create"

    context_id: str = _wire("contextId")
    page_id: str | None = _wire("pageId", default=None)
    viewport: dict[str, int] | None = _wire("viewport", default=None)
    user_agent: str | None = _wire("userAgent", default=None)

    def validate(self) -> None:
        if not self.context_id:
            raise ValidationError("Context ID is required")
        if self.viewport is not None:
            if not isinstance(self.viewport, dict) or not all(
                isinstance(self.viewport.get(k), int) for k in ("width", "height")
            ):
                raise ValidationError("Viewport must have integer width and height")
        if not self.page_id:
            self.page_id = f"{self.context_id}-tab1"


@dataclass
class BrowserGoto(Command):
    kind: ClassVar[str] = "browser_goto"

    page_id: str = _wire("pageId")
    url: str = _wire("url")
    wait_until: str = _wire("waitUntil", default="load")
    timeout: int = _wire("timeout", default=DEFAULT_TIMEOUT_MS)

    def validate(self) -> None:
        if self.wait_until not in WAIT_UNTIL:
            raise ValidationError(
                f"Invalid wait-until value. Must be one of: {', '.join(WAIT_UNTIL)}"
            )
        if self.timeout <= 0:
            raise ValidationError("Timeout must be a positive number")


@dataclass
class BrowserFill(Command):
    kind: ClassVar[str] = "browser_fill"

    page_id: str = _wire("pageId")
    value: str = _wire("value")
    selector: str | None = _wire("selector", default=None)
    ref: str | None = _wire("ref", default=None)

    def validate(self) -> None:
        if self.selector and self.ref:
            raise ValidationError("Cannot provide both selector and --ref option")
        if not self.selector and not self.ref:
            raise ValidationError("Must provide either a selector or --ref option")


@dataclass
class BrowserScroll(Command):
    kind: ClassVar[str] = "browser_scroll"

    page_id: str = _wire("pageId")
    direction: str = _wire("direction")
    amount: int = _wire("amount", default=DEFAULT_SCROLL_AMOUNT)

    def validate(self) -> None:
        if self.direction not in SCROLL_DIRECTIONS:
            raise ValidationError(
                f"Invalid direction. Must be one of: {', '.join(SCROLL_DIRECTIONS)}"
            )
        if not isinstance(self.amount, int) or isinstance(self.amount, bool) or self.amount <= 0:
            raise ValidationError("Amount must be a positive number")


@dataclass
class BrowserWait(Command):
    kind: ClassVar[str] = "browser_wait"

    page_id: str = _wire("pageId")
    selector: str | None = _wire("selector", default=None)
    url: str | None = _wire("url", default=None)
    text: str | None = _wire("text", default=None)
    state: str = _wire("state", default="visible")
    timeout: int = _wire("timeout", default=DEFAULT_TIMEOUT_MS)

    def validate(self) -> None:
        _exactly_one(
            {"selector": self.selector, "url": self.url, "text": self.text},
            "Must provide exactly one of: --selector, --url, or --text",
        )
        if self.state not in WAIT_STATES:
            raise ValidationError(f"Invalid state. Must be one of: {', '.join(WAIT_STATES)}")
        if self.timeout <= 0:
            raise ValidationError("Timeout must be a positive number")


@dataclass
class BrowserEval(Command):
    kind: ClassVar[str] = "browser_eval"

    page_id: str = _wire("pageId")
    expression: str = _wire("expression")

    def validate(self) -> None:
        if not self.expression.strip():
            raise ValidationError("Expression must not be empty")


@dataclass
class BrowserText(Command):
    kind: ClassVar[str] = "browser_text"

    page_id: str = _wire("pageId")
    selector: str | None = _wire("selector", default=None)
    ref: str | None = _wire("ref", default=None)

    def validate(self) -> None:
        if self.selector and self.ref:
            raise ValidationError("Cannot provide both selector and --ref option")
        if not self.selector and not self.ref:
            raise ValidationError("Must provide either a selector or --ref option")


@dataclass
class BrowserScreenshot(Command):
    kind: ClassVar[str] = "browser_screenshot"

    page_id: str = _wire("pageId")
    path: str | None = _wire("path", default=None)
    full_page: bool = _wire("fullPage", default=False)


@dataclass
class BrowserClose(Command):
    kind: ClassVar[str] = "browser_close"

    context_id: str = _wire("contextId")


@dataclass
class BrowserStatus(Command):
    kind: ClassVar[str] = "browser_status"


COMMANDS: dict[str, type[Command]] = {
    cls.kind: cls
    for cls in (
        Attach,
        Detach,
        GetStatus,
        PauseRunner,
        ResumeRunner,
        SetInterval,
        HealthReset,
        BrowserCreate,
        BrowserGoto,
        BrowserFill,
        BrowserScroll,
        BrowserWait,
        BrowserEval,
        BrowserText,
        BrowserScreenshot,
        BrowserClose,
        BrowserStatus,
    )
}


def parse_command(msg: dict[str, Any]) -> Command:
    """Build a validated Command from a decoded wire message."""
    kind = msg.get("kind")
    cls = COMMANDS.get(kind) if isinstance(kind, str) else None
    if cls is None:
        raise ValidationError(f"Unknown command kind '{kind}'")
    return cls.from_wire(msg)


def is_browser_command(command: Command) -> bool:
    return command.kind.startswith("browser_")


# -- Events -----------------------------------------------------------------


def make_event(
    event_type: str,
    *,
    request_id: str | None,
    instance_id: str | None,
    success: bool = True,
    result: Any = None,
    error: str | None = None,
    error_code: str | None = None,
) -> dict[str, Any]:
    return {
        "type": event_type,
        "success": success,
        "result": result,
        "error": error,
        "errorCode": error_code,
        "timestamp": _timestamp(),
        "instanceId": instance_id,
        "requestId": request_id,
    }


def browser_response(
    command: Command,
    *,
    success: bool,
    result: Any = None,
    error: str | None = None,
    error_code: str | None = None,
) -> dict[str, Any]:
    return make_event(
        BROWSER_RESPONSE,
        request_id=command.request_id,
        instance_id=command.instance_id,
        success=success,
        result=result,
        error=error,
        error_code=error_code,
    )
