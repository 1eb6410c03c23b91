"""Wire protocol tests.

Every command and event the daemon or CLI builds is checked against a
JSON schema here, so a renamed or mistyped field fails at test time
rather than against a live browser backend.
"""

from __future__ import annotations

from typing import Any

import jsonschema
import pytest

from fuel import protocol
from fuel.errors import ValidationError

COMMAND_ENVELOPE = {
    "type": "object",
    "required": ["kind", "requestId", "instanceId", "timestamp"],
    "properties": {
        "kind": {"enum": sorted(protocol.COMMANDS)},
        "requestId": {"type": "string", "minLength": 1},
        "instanceId": {"type": ["string", "null"]},
        "timestamp": {"type": "string", "pattern": r"^\d{4}-\d\d-\d\dT.*Z$"},
    },
}

EVENT_SCHEMA = {
    "type": "object",
    "required": [
        "type",
        "success",
        "result",
        "error",
        "errorCode",
        "timestamp",
        "instanceId",
        "requestId",
    ],
    "additionalProperties": False,
    "properties": {
        "type": {
            "enum": [
                protocol.HELLO,
                protocol.BROWSER_RESPONSE,
                protocol.STATUS,
                protocol.ERROR,
                protocol.TASK_SPAWNED,
                protocol.TASK_COMPLETED,
                protocol.HEALTH_CHANGE,
            ]
        },
        "result": {},
        "success": {"type": "boolean"},
        "error": {"type": ["string", "null"]},
        "errorCode": {"type": ["string", "null"]},
        "timestamp": {"type": "string"},
        "instanceId": {"type": ["string", "null"]},
        "requestId": {"type": ["string", "null"]},
    },
}

PAYLOAD_SCHEMAS: dict[str, dict[str, Any]] = {
    "set_interval": {
        "required": ["intervalSeconds"],
        "properties": {"intervalSeconds": {"type": "number", "exclusiveMinimum": 0}},
    },
    "health_reset": {"properties": {"agent": {"type": ["string", "null"]}}},
    "browser_create": {
        "required": ["contextId", "pageId"],
        "properties": {
            "contextId": {"type": "string"},
            "pageId": {"type": "string"},
            "viewport": {
                "type": ["object", "null"],
                "properties": {"width": {"type": "integer"}, "height": {"type": "integer"}},
            },
            "userAgent": {"type": ["string", "null"]},
        },
    },
    "browser_goto": {
        "required": ["pageId", "url", "waitUntil", "timeout"],
        "properties": {
            "waitUntil": {"enum": list(protocol.WAIT_UNTIL)},
            "timeout": {"type": "integer", "minimum": 1},
        },
    },
    "browser_scroll": {
        "required": ["pageId", "direction", "amount"],
        "properties": {
            "direction": {"enum": list(protocol.SCROLL_DIRECTIONS)},
            "amount": {"type": "integer", "minimum": 1},
        },
    },
    "browser_wait": {
        "required": ["pageId", "state", "timeout"],
        "properties": {"state": {"enum": list(protocol.WAIT_STATES)}},
    },
    "browser_screenshot": {
        "required": ["pageId", "path", "fullPage"],
        "properties": {"fullPage": {"type": "boolean"}},
    },
}


def _validate_command(msg: dict[str, Any]) -> None:
    jsonschema.validate(instance=msg, schema=COMMAND_ENVELOPE)
    payload = PAYLOAD_SCHEMAS.get(msg["kind"])
    if payload is not None:
        jsonschema.validate(instance=msg, schema={"type": "object", **payload})


SAMPLE_COMMANDS = [
    protocol.Attach(),
    protocol.Detach(),
    protocol.GetStatus(),
    protocol.PauseRunner(),
    protocol.ResumeRunner(),
    protocol.SetInterval(2.5),
    protocol.HealthReset("claude"),
    protocol.BrowserCreate("ctx", viewport={"width": 1280, "height": 720}),
    protocol.BrowserGoto("ctx-tab1", "https://example.com", wait_until="networkidle"),
    protocol.BrowserFill("ctx-tab1", "hello", ref="@e3"),
    protocol.BrowserScroll("ctx-tab1", "down"),
    protocol.BrowserWait("ctx-tab1", selector="#main", state="attached"),
    protocol.BrowserEval("ctx-tab1", "document.title"),
    protocol.BrowserText("ctx-tab1", selector="h1"),
    protocol.BrowserScreenshot("ctx-tab1", path="/tmp/shot.png", full_page=True),
    protocol.BrowserClose("ctx"),
    protocol.BrowserStatus(),
]


class TestCommandWire:
    @pytest.mark.parametrize("command", SAMPLE_COMMANDS, ids=lambda c: c.kind)
    def test_matches_schema(self, command: protocol.Command) -> None:
        _validate_command(command.to_wire())

    @pytest.mark.parametrize("command", SAMPLE_COMMANDS, ids=lambda c: c.kind)
    def test_parse_restores_command(self, command: protocol.Command) -> None:
        command.instance_id = "inst-1"
        line = protocol.encode_message(command.to_wire())
        parsed = protocol.parse_command(protocol.decode_message(line))
        assert parsed == command

    def test_every_kind_is_sampled(self) -> None:
        assert {c.kind for c in SAMPLE_COMMANDS} == set(protocol.COMMANDS)

    def test_scroll_amount_defaults(self) -> None:
        msg = protocol.BrowserScroll("p1", "up").to_wire()
        assert msg["amount"] == protocol.DEFAULT_SCROLL_AMOUNT == 100

    def test_scroll_amount_defaults_when_absent_on_wire(self) -> None:
        parsed = protocol.parse_command(
            {"kind": "browser_scroll", "requestId": "r1", "pageId": "p1", "direction": "left"}
        )
        assert parsed.amount == 100
        assert parsed.request_id == "r1"

    def test_create_derives_page_id(self) -> None:
        assert protocol.BrowserCreate("shop").page_id == "shop-tab1"
        assert protocol.BrowserCreate("shop", page_id="main").page_id == "main"

    def test_encoded_messages_are_single_lines(self) -> None:
        data = protocol.encode_message(protocol.BrowserEval("p", "'a\\nb'").to_wire())
        assert data.endswith(b"\n")
        assert data.count(b"\n") == 1

    def test_request_ids_are_unique(self) -> None:
        assert protocol.GetStatus().request_id != protocol.GetStatus().request_id


class TestValidation:
    def test_wait_requires_exactly_one_condition(self) -> None:
        message = "Must provide exactly one of: --selector, --url, or --text"
        with pytest.raises(ValidationError, match=message):
            protocol.BrowserWait("p1")
        with pytest.raises(ValidationError, match=message):
            protocol.BrowserWait("p1", selector="#a", url="https://example.com")

    def test_wait_state(self) -> None:
        with pytest.raises(ValidationError, match="Invalid state"):
            protocol.BrowserWait("p1", text="Hi", state="glowing")

    @pytest.mark.parametrize("cls", [protocol.BrowserFill, protocol.BrowserText])
    def test_selector_and_ref_are_exclusive(self, cls) -> None:
        kwargs = {"value": "v"} if cls is protocol.BrowserFill else {}
        with pytest.raises(ValidationError, match="Cannot provide both"):
            cls("p1", selector="#a", ref="@e1", **kwargs)
        with pytest.raises(ValidationError, match="Must provide either"):
            cls("p1", **kwargs)

    def test_scroll_direction_and_amount(self) -> None:
        with pytest.raises(ValidationError, match="Invalid direction"):
            protocol.BrowserScroll("p1", "sideways")
        with pytest.raises(ValidationError, match="Amount must be a positive number"):
            protocol.BrowserScroll("p1", "down", 0)

    def test_goto_wait_until(self) -> None:
        with pytest.raises(ValidationError, match="Invalid wait-until"):
            protocol.BrowserGoto("p1", "https://example.com", wait_until="eventually")

    def test_viewport_needs_integer_dimensions(self) -> None:
        with pytest.raises(ValidationError, match="Viewport"):
            protocol.BrowserCreate("ctx", viewport={"width": "wide", "height": 10})

    def test_unknown_kind(self) -> None:
        with pytest.raises(ValidationError, match="Unknown command kind 'launch'"):
            protocol.parse_command({"kind": "launch"})

    def test_missing_required_field(self) -> None:
        with pytest.raises(ValidationError, match="Malformed browser_goto"):
            protocol.parse_command({"kind": "browser_goto", "pageId": "p1"})

    def test_invalid_wire_values_are_rejected(self) -> None:
        with pytest.raises(ValidationError):
            protocol.parse_command(
                {"kind": "browser_scroll", "pageId": "p1", "direction": "down", "amount": -5}
            )

    def test_wrongly_typed_wire_values_are_rejected(self) -> None:
        with pytest.raises(ValidationError, match="Malformed browser_eval"):
            protocol.parse_command({"kind": "browser_eval", "pageId": "p1", "expression": 5})
        with pytest.raises(ValidationError, match="Agent must be a string"):
            protocol.parse_command({"kind": "health_reset", "agent": ["claude"]})

    @pytest.mark.parametrize("seconds", [0, -1, True, "5"])
    def test_interval_must_be_positive_number(self, seconds: Any) -> None:
        with pytest.raises(ValidationError, match="Interval must be a positive number"):
            protocol.parse_command({"kind": "set_interval", "intervalSeconds": seconds})

    def test_health_reset_without_agent(self) -> None:
        parsed = protocol.parse_command({"kind": "health_reset"})
        assert parsed.agent is None

    @pytest.mark.parametrize("line", [b"not json\n", b"[1, 2]\n", b"\x80abc\n"])
    def test_decode_rejects_non_objects(self, line: bytes) -> None:
        assert protocol.decode_message(line) is None


class TestEvents:
    def test_browser_response_echoes_ids(self) -> None:
        command = protocol.BrowserScroll("p1", "down", instance_id="inst-9")
        event = protocol.browser_response(command, success=True, result={"scrolled": True})
        jsonschema.validate(instance=event, schema=EVENT_SCHEMA)
        assert event["type"] == protocol.BROWSER_RESPONSE
        assert event["requestId"] == command.request_id
        assert event["instanceId"] == "inst-9"
        assert event["errorCode"] is None

    def test_failed_response_carries_code(self) -> None:
        command = protocol.BrowserStatus(instance_id="inst-1")
        event = protocol.browser_response(
            command,
            success=False,
            error="Browser failed to start",
            error_code=protocol.BROWSER_START_FAILED,
        )
        jsonschema.validate(instance=event, schema=EVENT_SCHEMA)
        assert not event["success"]
        assert event["errorCode"] == "BROWSER_START_FAILED"

    def test_hello_event(self) -> None:
        event = protocol.make_event(
            protocol.HELLO, request_id="r1", instance_id="i1", result={"pid": 1, "port": 9981}
        )
        jsonschema.validate(instance=event, schema=EVENT_SCHEMA)

    def test_is_browser_command(self) -> None:
        assert protocol.is_browser_command(protocol.BrowserStatus())
        assert not protocol.is_browser_command(protocol.GetStatus())

    @pytest.mark.parametrize(
        ("event_type", "result"),
        [
            (protocol.TASK_SPAWNED, {"taskId": "f-abc123", "runId": "run-1", "agent": "claude"}),
            (
                protocol.TASK_COMPLETED,
                {"taskId": "f-abc123", "runId": "run-1", "exitCode": 1, "completionType": "failed"},
            ),
            (protocol.HEALTH_CHANGE, {"agent": "claude", "status": "backoff"}),
        ],
    )
    def test_loop_events(self, event_type: str, result: dict[str, Any]) -> None:
        event = protocol.make_event(event_type, request_id=None, instance_id=None, result=result)
        jsonschema.validate(instance=event, schema=EVENT_SCHEMA)
