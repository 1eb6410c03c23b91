"""Agent configuration loaded from ``.fuel/config.toml``.

Example::

    primary = "claude"
    review = "claude"
    max_concurrent = 4
    port = 9981

    [agents.claude]
    driver = "claude"
    model = "opus"
    max_concurrent = 2

    [agents.local]
    command = "my-agent"
    prompt_args = ["--task"]
    args = ["--quiet"]
    env = { MY_AGENT_MODE = "batch" }

    [complexity]
    trivial = "claude"
    complex = { agent = "claude", model = "opus", args = ["--think"] }

    [browser]
    command = ["node", "browser-daemon.js"]

``driver`` fills in the command line defaults for a known agent CLI;
any explicit key overrides the driver's value.
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Any

from fuel.db import VALID_COMPLEXITIES
from fuel.errors import ValidationError
from fuel.paths import CONFIG_PATH

log = logging.getLogger(__name__)

DEFAULT_AGENT_MAX_CONCURRENT = 2
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MAX_RETRIES = 5
DEFAULT_GLOBAL_MAX_CONCURRENT = 50
DEFAULT_PORT = 9981
DEFAULT_BROWSER_COMMAND = ("node", "browser-daemon.js")

DRIVERS: dict[str, dict[str, Any]] = {
    "claude": {
        "command": "claude",
        "prompt_args": ["-p"],
        "model_arg": "--model",
        "args": [
            "--dangerously-skip-permissions",
            "--output-format",
            "stream-json",
            "--verbose",
        ],
    },
    "codex": {
        "command": "codex",
        "prompt_args": ["exec"],
        "model_arg": "--model",
        "args": [
            "--dangerously-bypass-approvals-and-sandbox",
            "--json",
            "--skip-git-repo-check",
            "--color=never",
        ],
    },
    "cursor": {
        "command": "cursor-agent",
        "prompt_args": ["-p"],
        "model_arg": "--model",
        "args": ["--force", "--output-format", "stream-json"],
    },
    "amp": {
        "command": "amp",
        "prompt_args": ["--execute"],
        "model_arg": "-m",
        "args": ["--stream-json", "--dangerously-allow-all", "--no-notifications"],
    },
    "opencode": {
        "command": "opencode",
        "prompt_args": ["run"],
        "model_arg": "--model",
        "args": [],
    },
}


@dataclass
class AgentDefinition:
    """How to launch one agent CLI and how hard to push it."""

    name: str
    command: str
    prompt_args: list[str] = field(default_factory=list)
    model: str | None = None
    model_arg: str = "--model"
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    max_concurrent: int = DEFAULT_AGENT_MAX_CONCURRENT
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    max_retries: int = DEFAULT_MAX_RETRIES

    def build_command(
        self, prompt: str, *, model: str | None = None, args: list[str] | None = None
    ) -> list[str]:
        """[command, *prompt_args, prompt, model_arg, model, *args]"""
        cmd = [self.command, *self.prompt_args, prompt]
        chosen_model = model if model is not None else self.model
        if chosen_model:
            cmd += [self.model_arg, chosen_model]
        cmd += args if args is not None else self.args
        return cmd


@dataclass
class ComplexityRoute:
    agent: str
    model: str | None = None
    args: list[str] | None = None


@dataclass
class FuelConfig:
    agents: dict[str, AgentDefinition] = field(default_factory=dict)
    complexity: dict[str, ComplexityRoute] = field(default_factory=dict)
    primary: str | None = None
    review: str | None = None
    max_concurrent: int = DEFAULT_GLOBAL_MAX_CONCURRENT
    port: int = DEFAULT_PORT
    browser_command: list[str] = field(default_factory=lambda: list(DEFAULT_BROWSER_COMMAND))

    def agent_for(self, task: dict[str, Any]) -> str | None:
        """Explicit task agent, else the complexity route, else the primary agent."""
        if task.get("agent"):
            return task["agent"]
        route = self.complexity.get(task.get("complexity") or "simple")
        if route is not None:
            return route.agent
        return self.primary

    def command_for(
        self, task: dict[str, Any], prompt: str
    ) -> tuple[AgentDefinition, list[str], str | None]:
        """Return (agent, argv, model) for dispatching ``task``.

        Complexity-route overrides apply only when the route chose the agent.
        """
        name = self.agent_for(task)
        if name is None or name not in self.agents:
            raise ValidationError(f"Agent '{name}' is not defined")
        agent = self.agents[name]
        route = self.complexity.get(task.get("complexity") or "simple")
        if route is not None and route.agent == name and not task.get("agent"):
            model = route.model if route.model is not None else agent.model
            return agent, agent.build_command(prompt, model=model, args=route.args), model
        return agent, agent.build_command(prompt), agent.model

    @property
    def review_agent(self) -> str | None:
        return self.review or self.primary


def _require_type(value: Any, expected: type | tuple[type, ...], where: str) -> Any:
    if not isinstance(value, expected) or isinstance(value, bool) and expected is int:
        names = (
            " or ".join(t.__name__ for t in expected)
            if isinstance(expected, tuple)
            else expected.__name__
        )
        raise ValidationError(f"{where} must be {names}")
    return value


def _string_list(value: Any, where: str) -> list[str]:
    _require_type(value, list, where)
    if not all(isinstance(item, str) for item in value):
        raise ValidationError(f"{where} must be a list of strings")
    return list(value)


def _parse_agent(name: str, raw: Any) -> AgentDefinition:
    _require_type(raw, dict, f"Agent '{name}' config")
    merged: dict[str, Any] = {}
    driver = raw.get("driver")
    if driver is not None:
        if driver not in DRIVERS:
            raise ValidationError(
                f"Agent '{name}' references unknown driver '{driver}'. "
                f"Available drivers: {', '.join(sorted(DRIVERS))}"
            )
        merged.update(DRIVERS[driver])
    merged.update({k: v for k, v in raw.items() if k != "driver"})

    command = merged.get("command")
    if not isinstance(command, str) or not command:
        raise ValidationError(f"Agent '{name}' must have a 'command' string or a 'driver'")
    agent = AgentDefinition(name=name, command=command)
    if "prompt_args" in merged:
        agent.prompt_args = _string_list(merged["prompt_args"], f"Agent '{name}' prompt_args")
    if "args" in merged:
        agent.args = _string_list(merged["args"], f"Agent '{name}' args")
    if merged.get("model") is not None:
        agent.model = _require_type(merged["model"], str, f"Agent '{name}' model")
    if "model_arg" in merged:
        agent.model_arg = _require_type(merged["model_arg"], str, f"Agent '{name}' model_arg")
    if "env" in merged:
        env = _require_type(merged["env"], dict, f"Agent '{name}' env")
        agent.env = {str(k): str(v) for k, v in env.items()}
    for key in ("max_concurrent", "max_attempts", "max_retries"):
        if key in merged:
            value = _require_type(merged[key], int, f"Agent '{name}' {key}")
            if value < 1:
                raise ValidationError(f"Agent '{name}' {key} must be a positive integer")
            setattr(agent, key, value)
    return agent


def _parse_route(level: str, raw: Any, agents: dict[str, AgentDefinition]) -> ComplexityRoute:
    if level not in VALID_COMPLEXITIES:
        raise ValidationError(
            f"Invalid complexity '{level}'. Must be one of: "
            f"{', '.join(sorted(VALID_COMPLEXITIES))}"
        )
    if isinstance(raw, str):
        route = ComplexityRoute(agent=raw)
    elif isinstance(raw, dict) and isinstance(raw.get("agent"), str):
        route = ComplexityRoute(agent=raw["agent"], model=raw.get("model"))
        if "args" in raw:
            route.args = _string_list(raw["args"], f"Complexity '{level}' args")
    else:
        raise ValidationError(
            f"Complexity '{level}' must be a string (agent name) or a table with 'agent' key"
        )
    if route.agent not in agents:
        raise ValidationError(f"Complexity '{level}' references undefined agent '{route.agent}'")
    return route


def parse_config(document: dict[str, Any]) -> FuelConfig:
    """Validate a parsed TOML document and build a FuelConfig.

    Raises ValidationError naming the offending key.
    """
    config = FuelConfig()
    agents_raw = document.get("agents", {})
    _require_type(agents_raw, dict, "Config 'agents'")
    for name, raw in agents_raw.items():
        config.agents[name] = _parse_agent(name, raw)

    complexity_raw = document.get("complexity", {})
    _require_type(complexity_raw, dict, "Config 'complexity'")
    for level, raw in complexity_raw.items():
        config.complexity[level] = _parse_route(level, raw, config.agents)

    for key in ("primary", "review"):
        value = document.get(key)
        if value is None:
            continue
        _require_type(value, str, f"Config '{key}'")
        if value not in config.agents:
            raise ValidationError(f"{key.capitalize()} agent '{value}' is not defined in agents")
        setattr(config, key, value)

    if "port" in document:
        port = _require_type(document["port"], int, "Config 'port'")
        if not 1 <= port <= 65535:
            raise ValidationError("Config port must be an integer between 1 and 65535")
        config.port = port
    if "max_concurrent" in document:
        limit = _require_type(document["max_concurrent"], int, "Config 'max_concurrent'")
        if limit < 1:
            raise ValidationError("Config max_concurrent must be a positive integer")
        config.max_concurrent = limit

    browser = document.get("browser", {})
    _require_type(browser, dict, "Config 'browser'")
    if "command" in browser:
        command = _string_list(browser["command"], "Config 'browser.command'")
        if not command:
            raise ValidationError("Config 'browser.command' must not be empty")
        config.browser_command = command
    return config


def load_config(path: Path | None = None) -> FuelConfig:
    """Load and validate the config file; a missing file yields defaults."""
    path = path or CONFIG_PATH
    if not path.exists():
        log.debug("No config at %s, using defaults", path)
        return FuelConfig()
    try:
        with path.open("rb") as handle:
            document = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ValidationError(f"Failed to parse {path}: {exc}") from exc
    return parse_config(document)


_SCAFFOLD = Template(
    """\
# fuel consume configuration
primary = "${primary}"
max_concurrent = ${max_concurrent}
port = ${port}

[agents.${primary}]
driver = "${primary}"
max_concurrent = ${agent_max_concurrent}
max_attempts = ${max_attempts}
max_retries = ${max_retries}

[complexity]
trivial = "${primary}"
simple = "${primary}"
moderate = "${primary}"
complex = "${primary}"
"""
)


def build_config_scaffold(primary: str = "claude") -> str:
    if primary not in DRIVERS:
        raise ValidationError(
            f"Unknown driver '{primary}'. Available drivers: {', '.join(sorted(DRIVERS))}"
        )
    return _SCAFFOLD.substitute(
        primary=primary,
        max_concurrent=DEFAULT_GLOBAL_MAX_CONCURRENT,
        port=DEFAULT_PORT,
        agent_max_concurrent=DEFAULT_AGENT_MAX_CONCURRENT,
        max_attempts=DEFAULT_MAX_ATTEMPTS,
        max_retries=DEFAULT_MAX_RETRIES,
    )
