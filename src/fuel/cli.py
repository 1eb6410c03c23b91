from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import subprocess
import sys
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from fuel import __version__, db, protocol
from fuel.daemon_client import DEFAULT_RESPONSE_TIMEOUT, ConsumeIpcClient
from fuel.errors import (
    DaemonUnavailableError,
    FuelError,
    RemoteOperationError,
    ValidationError,
)
from fuel.health import AgentHealthTracker, format_backoff
from fuel.supervisor import pid_alive

log = logging.getLogger(__name__)

STOP_WAIT_SECONDS = 35.0
START_WAIT_SECONDS = 5.0
SLOW_RESPONSE_TIMEOUT = 30.0


def _wants_json(args: list[str] | tuple[str, ...] | None) -> bool:
    argv = sys.argv[1:] if args is None else args
    return "--json" in argv


class _JsonAwareGroup(click.Group):
    """Group that renders every failure the same way and exits 1.

    With ``--json`` anywhere on the command line the error is a JSON object
    on stdout; otherwise it is ``Error: ...`` on stderr.  Domain errors
    (:class:`~fuel.errors.FuelError`) are converted here, so commands just
    let them propagate.  Unknown commands get fuzzy-matched suggestions via
    ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        as_json = _wants_json(args)
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except (click.ClickException, FuelError) as e:
            message = e.format_message() if isinstance(e, click.ClickException) else str(e)
            if as_json:
                click.echo(json.dumps({"ok": False, "error": message}))
            else:
                click.echo(f"Error: {message}", err=True)
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


json_option = click.option("--json", "as_json", is_flag=True, help="Output as JSON.")


def _emit(as_json: bool, payload: Any, text: str | Callable[[], None]) -> None:
    if as_json:
        click.echo(json.dumps(payload, default=str))
    elif callable(text):
        text()
    else:
        click.echo(text)


def _task_line(task: dict[str, Any]) -> str:
    return f"{task['short_id']}  [{task['status']}] P{task['priority']}  {task['title']}"


def _echo_tasks(tasks: list[Any], empty: str) -> None:
    if not tasks:
        click.echo(empty)
    for task in tasks:
        click.echo(_task_line(task))


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
def main():
    """Dispatch tasks to AI coding agents and keep an eye on them.

    \b
    Quick start:
      fuel init                       Write .fuel/config.toml for your agent
      fuel add "Fix the login bug"    Queue a task
      fuel ready                      Show what can run next
      fuel consume                    Dispatch ready tasks until stopped
      fuel consume --port 9981        Same, headless, with a control port

    \b
    Key concepts:
      task    A unit of work for one agent; may be blocked by other tasks
      epic    A group of tasks that can be paused together
      health  Per-agent circuit breaker; failing agents back off
    """


# -- init --


@main.command()
@click.option("--agent", "primary", default="claude", help="Primary agent driver.")
@click.option("--force", is_flag=True, help="Overwrite an existing config file.")
@json_option
def init(primary: str, force: bool, as_json: bool) -> None:
    """Create .fuel/config.toml and the task database."""
    from fuel import config as config_mod

    path = config_mod.CONFIG_PATH
    created = False
    if force or not path.exists():
        scaffold = config_mod.build_config_scaffold(primary)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(scaffold)
        created = True
    with db.connect():
        pass
    _emit(
        as_json,
        {"ok": True, "config": str(path), "created": created},
        f"{'Wrote' if created else 'Kept existing'} {path}",
    )


# -- tasks --


@main.command()
@click.argument("title")
@click.option("--description", "-d", default=None, help="Longer task description.")
@click.option("--priority", "-p", type=click.IntRange(0, 4), default=db.DEFAULT_PRIORITY)
@click.option(
    "--complexity",
    "-c",
    type=click.Choice(sorted(db.VALID_COMPLEXITIES)),
    default="simple",
)
@click.option("--agent", default=None, help="Pin the task to one agent.")
@click.option("--blocked-by", "-b", multiple=True, help="Task id this task waits on.")
@click.option("--epic", "-e", default=None, help="Epic id to file the task under.")
@json_option
def add(
    title: str,
    description: str | None,
    priority: int,
    complexity: str,
    agent: str | None,
    blocked_by: tuple[str, ...],
    epic: str | None,
    as_json: bool,
) -> None:
    """Add a task."""
    with db.connect() as conn:
        blockers = [db.resolve_task_id(conn, b) for b in blocked_by]
        epic_id = db.resolve_epic_id(conn, epic) if epic else None
        task = db.create_task(
            conn,
            title=title,
            description=description,
            priority=priority,
            complexity=complexity,
            agent=agent,
            blocked_by=blockers,
            epic_id=epic_id,
        )
    _emit(as_json, task, f"Created task: {task['short_id']}")


@main.command()
@click.argument("task_id")
@json_option
def show(task_id: str, as_json: bool) -> None:
    """Show one task with its blockers, runs and reviews."""
    with db.connect() as conn:
        task = db.require_task(conn, task_id)
        blockers = db.get_blockers(conn, task["short_id"])
        runs = db.list_runs(conn, task["short_id"])
        reviews = db.list_reviews(conn, task["short_id"])
        stuck = any(t["short_id"] == task["short_id"] for t in db.list_stuck_tasks(conn, pid_alive))

    payload = {
        **task,
        "stuck": stuck,
        "unresolved_blockers": [b["short_id"] for b in blockers],
        "runs": runs,
        "reviews": reviews,
    }

    def text() -> None:
        click.echo(f"{task['short_id']}: {task['title']}")
        click.echo(f"  Status:     {task['status']}{' (stuck)' if stuck else ''}")
        click.echo(f"  Priority:   P{task['priority']}")
        click.echo(f"  Complexity: {task['complexity']}")
        if task["agent"]:
            click.echo(f"  Agent:      {task['agent']}")
        if task["epic_id"]:
            click.echo(f"  Epic:       {task['epic_id']}")
        if task["blocked_by"]:
            click.echo(f"  Blocked by: {', '.join(task['blocked_by'])}")
        if task["reason"]:
            click.echo(f"  Reason:     {task['reason']}")
        if task["description"]:
            click.echo("")
            click.echo(task["description"])
        if runs:
            click.echo("")
            click.echo(f"Runs ({len(runs)}):")
            for run in runs:
                click.echo(
                    f"  {run['short_id']}  {run['agent']}  exit={run['exit_code']}  "
                    f"{run['started_at']}"
                )

    _emit(as_json, payload, text)


@main.command()
@json_option
def ready(as_json: bool) -> None:
    """List tasks that can be dispatched now."""
    with db.connect() as conn:
        tasks = db.ready_tasks(conn)
    _emit(as_json, tasks, lambda: _echo_tasks(tasks, "No ready tasks."))


@main.command()
@json_option
@click.pass_context
def available(ctx: click.Context, as_json: bool) -> None:
    """Print the ready-task count; exits 1 when there is nothing to do."""
    with db.connect() as conn:
        count = len(db.ready_tasks(conn))
    _emit(as_json, {"count": count, "available": count > 0}, str(count))
    if count == 0:
        ctx.exit(1)


def _single_transition(
    task_id: str, as_json: bool, action: Callable[..., Any], verb: str, **kwargs: Any
) -> None:
    with db.connect() as conn:
        resolved = db.resolve_task_id(conn, task_id)
        task = action(conn, resolved, **kwargs)
    _emit(as_json, task, f"{verb} task: {task['short_id']}")


@main.command()
@click.argument("task_id")
@json_option
def start(task_id: str, as_json: bool) -> None:
    """Mark a task in progress (open only)."""
    _single_transition(task_id, as_json, db.start_task, "Started")


def _batch(
    ids: tuple[str, ...],
    as_json: bool,
    action: Callable[[Any, str], Any],
    verb: str,
) -> None:
    done_tasks: list[Any] = []
    errors: list[dict[str, str]] = []
    with db.connect() as conn:
        for query in ids:
            try:
                resolved = db.resolve_task_id(conn, query)
                done_tasks.append(action(conn, resolved))
            except FuelError as exc:
                errors.append({"id": query, "error": str(exc)})

    if as_json:
        payload: Any = done_tasks[0] if len(ids) == 1 and done_tasks else done_tasks
        if errors:
            payload = {"ok": False, "tasks": done_tasks, "errors": errors}
        click.echo(json.dumps(payload, default=str))
    else:
        for task in done_tasks:
            click.echo(f"{verb} task: {task['short_id']}")
        for error in errors:
            click.echo(f"Error: {error['error']}", err=True)
    if errors:
        raise SystemExit(1)


@main.command()
@click.argument("task_ids", nargs=-1, required=True)
@click.option("--reason", default=None, help="Why the task is done.")
@click.option("--commit", "commit_hash", default=None, help="Commit that implements it.")
@json_option
def done(task_ids: tuple[str, ...], reason: str | None, commit_hash: str | None, as_json: bool):
    """Mark one or more tasks done."""
    _batch(
        task_ids,
        as_json,
        lambda conn, tid: db.complete_task(conn, tid, reason=reason, commit_hash=commit_hash),
        "Completed",
    )


@main.command()
@click.argument("task_ids", nargs=-1, required=True)
@json_option
def reopen(task_ids: tuple[str, ...], as_json: bool) -> None:
    """Reopen tasks and clear their consumption results."""
    _batch(task_ids, as_json, db.reopen_task, "Reopened")


def _is_epic_id(query: str) -> bool:
    return query.startswith("e-")


@main.command()
@click.argument("item_id")
@json_option
def pause(item_id: str, as_json: bool) -> None:
    """Pause a task, or an epic (ids starting with e-)."""
    if _is_epic_id(item_id):
        with db.connect() as conn:
            epic = db.set_epic_paused(conn, db.resolve_epic_id(conn, item_id), True)
        _emit(as_json, epic, f"Paused epic: {epic['short_id']}")
        return
    _single_transition(item_id, as_json, db.pause_task, "Paused")


@main.command()
@click.argument("item_id")
@json_option
def unpause(item_id: str, as_json: bool) -> None:
    """Resume a paused task or epic."""
    if _is_epic_id(item_id):
        with db.connect() as conn:
            epic = db.set_epic_paused(conn, db.resolve_epic_id(conn, item_id), False)
        _emit(as_json, epic, f"Unpaused epic: {epic['short_id']}")
        return
    _single_transition(item_id, as_json, db.unpause_task, "Unpaused")


@main.command()
@click.argument("task_id")
@json_option
def defer(task_id: str, as_json: bool) -> None:
    """Park a task in the someday backlog."""
    _single_transition(task_id, as_json, db.defer_task, "Deferred")


@main.command()
@click.argument("task_id")
@json_option
def undefer(task_id: str, as_json: bool) -> None:
    """Bring a someday task back to open."""
    _single_transition(task_id, as_json, db.undefer_task, "Undeferred")


@main.command()
@click.argument("task_id")
@click.option("--reason", default=None, help="Why the task was cancelled.")
@json_option
def cancel(task_id: str, reason: str | None, as_json: bool) -> None:
    """Cancel a task."""
    _single_transition(task_id, as_json, db.cancel_task, "Cancelled", reason=reason)


@main.command()
@json_option
def stuck(as_json: bool) -> None:
    """List tasks whose agent died or failed without finishing them."""
    with db.connect() as conn:
        tasks = db.list_stuck_tasks(conn, pid_alive)

    def text() -> None:
        if not tasks:
            click.echo("No stuck tasks.")
        for task in tasks:
            code = task["consumed_exit_code"]
            detail = f"pid {task['consume_pid']} gone" if code is None else f"exit {code}"
            click.echo(f"{_task_line(task)}  ({detail})")

    _emit(as_json, tasks, text)


# -- dependencies --


@main.command("dep:add")
@click.argument("task_id")
@click.argument("blocker_id")
@json_option
def dep_add(task_id: str, blocker_id: str, as_json: bool) -> None:
    """Make TASK_ID wait for BLOCKER_ID."""
    with db.connect() as conn:
        dependent = db.resolve_task_id(conn, task_id)
        blocker = db.resolve_task_id(conn, blocker_id)
        task = db.add_dependency(conn, dependent, blocker)
    _emit(as_json, task, f"Added dependency: {dependent} blocked by {blocker}")


@main.command("dep:remove")
@click.argument("task_id")
@click.argument("blocker_id")
@json_option
def dep_remove(task_id: str, blocker_id: str, as_json: bool) -> None:
    """Remove a dependency added with dep:add."""
    with db.connect() as conn:
        dependent = db.resolve_task_id(conn, task_id)
        blocker = db.resolve_task_id(conn, blocker_id)
        task = db.remove_dependency(conn, dependent, blocker)
    _emit(as_json, task, f"Removed dependency: {dependent} no longer blocked by {blocker}")


# -- epics --


@main.command("epic:add")
@click.argument("title")
@click.option("--description", "-d", default=None)
@click.option("--self-guided", is_flag=True, help="Let one agent iterate on the whole epic.")
@json_option
def epic_add(title: str, description: str | None, self_guided: bool, as_json: bool) -> None:
    """Create an epic."""
    with db.connect() as conn:
        epic = db.create_epic(conn, title=title, description=description, self_guided=self_guided)
    _emit(as_json, epic, f"Created epic: {epic['short_id']}")


@main.command()
@json_option
def epics(as_json: bool) -> None:
    """List epics with their computed status."""
    with db.connect() as conn:
        rows = [db.epic_with_status(conn, epic) for epic in db.list_epics(conn)]

    def text() -> None:
        if not rows:
            click.echo("No epics.")
        for epic in rows:
            click.echo(
                f"{epic['short_id']}  [{epic['status']}]  {epic['title']}  "
                f"({epic['task_count']} tasks)"
            )

    _emit(as_json, rows, text)


@main.command()
@click.argument("task_id")
@json_option
def runs(task_id: str, as_json: bool) -> None:
    """Show the dispatch history of a task."""
    with db.connect() as conn:
        task = db.require_task(conn, task_id)
        rows = db.list_runs(conn, task["short_id"])

    def text() -> None:
        if not rows:
            click.echo(f"No runs for {task['short_id']}.")
        for run in rows:
            ended = run["ended_at"] or "running"
            click.echo(
                f"{run['short_id']}  {run['agent']}  model={run['model'] or '-'}  "
                f"exit={run['exit_code']}  {run['started_at']} -> {ended}"
            )

    _emit(as_json, rows, text)


# -- health --


@main.command()
@click.argument("agent", required=False)
@json_option
def health(agent: str | None, as_json: bool) -> None:
    """Show agent health (circuit breaker state)."""
    with db.connect() as conn:
        tracker = AgentHealthTracker(conn)
        rows = [tracker.get_health_status(agent)] if agent else tracker.all_health_status()

    def text() -> None:
        if not rows:
            click.echo("No agent health data yet.")
        for row in rows:
            line = (
                f"{row['agent']}  {row['status']}  failures={row['consecutive_failures']}  "
                f"success={row['success_rate']}% of {row['total_runs']}"
            )
            if row["backoff_remaining_seconds"]:
                line += f"  backoff={format_backoff(row['backoff_remaining_seconds'])}"
            click.echo(line)

    _emit(as_json, rows[0] if agent else rows, text)


@main.command("health:reset")
@click.argument("agent", required=False)
@click.option("--all", "reset_all", is_flag=True, help="Reset every agent.")
@json_option
def health_reset(agent: str | None, reset_all: bool, as_json: bool) -> None:
    """Clear an agent's failures and backoff."""
    if bool(agent) == reset_all:
        raise click.UsageError("Provide an agent name or --all (not both).")
    with db.connect() as conn:
        tracker = AgentHealthTracker(conn)
        if reset_all:
            count = tracker.reset_all()
            _emit(as_json, {"ok": True, "reset": count}, f"Reset health for {count} agent(s)")
            return
        assert agent is not None
        found = tracker.reset(agent)
        status = tracker.get_health_status(agent)
    _emit(
        as_json,
        {"ok": True, "found": found, **status},
        f"Reset health for {agent}" if found else f"No health record for {agent}; nothing to reset",
    )


# -- consume --


def _load_config():
    from fuel.config import load_config

    config = load_config()
    if not config.agents:
        raise ValidationError("No agents configured. Run: fuel init")
    return config


@main.command()
@click.option("--once", is_flag=True, help="Run a single pass and wait for its agents.")
@click.option("--interval", type=click.FloatRange(min=0.1), default=None, help="Seconds per tick.")
@click.option("--review", is_flag=True, help="Send finished work to review instead of done.")
@click.option(
    "--port",
    type=click.IntRange(1, 65535),
    default=None,
    help="Run headless in the background with a control port.",
)
@click.option("--verbose", "-v", is_flag=True, help="Log loop activity to stderr.")
@json_option
def consume(
    once: bool,
    interval: float | None,
    review: bool,
    port: int | None,
    verbose: bool,
    as_json: bool,
) -> None:
    """Dispatch ready tasks to agents until stopped."""
    from fuel.runner import DEFAULT_INTERVAL, ConsumeRunner

    interval = interval or DEFAULT_INTERVAL
    if port is not None:
        if once:
            raise click.UsageError("--once cannot be combined with --port.")
        _start_background_runner(port, interval, review, as_json)
        return

    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    config = _load_config()
    with db.connect() as conn:
        runner = ConsumeRunner(conn, config, review=review)
        if once:
            report = runner.run_once()
            data = report.to_dict()
            _emit(
                as_json,
                data,
                f"Dispatched {len(data['dispatched'])}, completed {len(data['completed'])}, "
                f"stuck {len(data['stuck'])}",
            )
            return

        def on_signal(signum: int, _frame: object) -> None:
            log.info("Signal %d received, stopping", signum)
            runner.request_stop()

        signal.signal(signal.SIGTERM, on_signal)
        signal.signal(signal.SIGINT, on_signal)
        if not as_json:
            click.echo(f"Consuming every {interval}s (Ctrl-C to stop)")
        runner.run_forever(interval)
    _emit(as_json, {"ok": True, "stopped": True}, "Stopped")


def _start_background_runner(port: int, interval: float, review: bool, as_json: bool) -> None:
    from fuel.daemon import DEFAULT_LOG_PATH, DaemonHandle, is_runner_alive

    if is_runner_alive():
        handle = DaemonHandle.read()
        assert handle is not None
        _emit(
            as_json,
            {"ok": True, "status": "already_running", "pid": handle.pid, "port": handle.port},
            f"Consume daemon already running (pid {handle.pid}, port {handle.port})",
        )
        return

    _load_config()
    argv = [sys.executable, "-m", "fuel", "consume:runner", "--port", str(port)]
    argv += ["--interval", str(interval)]
    if review:
        argv.append("--review")

    DEFAULT_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    log_file = open(DEFAULT_LOG_PATH, "a")  # noqa: SIM115
    subprocess.Popen(
        argv,
        stdout=log_file,
        stderr=subprocess.STDOUT,
        start_new_session=True,
    )
    log_file.close()

    # Ready once the PID file names a live process
    for _ in range(int(START_WAIT_SECONDS * 10)):
        time.sleep(0.1)
        if is_runner_alive():
            break

    handle = DaemonHandle.read() if is_runner_alive() else None
    if handle is None:
        raise click.ClickException(
            f"Consume daemon failed to start. Check logs: {DEFAULT_LOG_PATH}"
        )
    _emit(
        as_json,
        {"ok": True, "pid": handle.pid, "port": handle.port, "log": str(DEFAULT_LOG_PATH)},
        f"Consume daemon started (pid {handle.pid}, port {handle.port})",
    )


@main.command("consume:runner", hidden=True)
@click.option("--port", type=click.IntRange(0, 65535), required=True)
@click.option("--interval", type=click.FloatRange(min=0.1), default=None)
@click.option("--review", is_flag=True)
def consume_runner(port: int, interval: float | None, review: bool) -> None:
    """Headless consume loop with a control port (spawned by consume --port)."""
    from fuel.daemon import main as daemon_main
    from fuel.runner import DEFAULT_INTERVAL

    daemon_main(port, interval or DEFAULT_INTERVAL, review)


@main.command("consume:stop")
@json_option
def consume_stop(as_json: bool) -> None:
    """Stop the background consume daemon."""
    from fuel.daemon import DaemonHandle

    handle = DaemonHandle.read()
    if handle is None or not handle.is_alive():
        _emit(as_json, {"ok": True, "status": "not_running"}, "Consume daemon is not running")
        return

    os.kill(handle.pid, signal.SIGTERM)

    # Agents get a grace period before the daemon kills them
    stopped = False
    for _ in range(int(STOP_WAIT_SECONDS * 10)):
        time.sleep(0.1)
        try:
            os.kill(handle.pid, 0)
        except ProcessLookupError:
            stopped = True
            break

    _emit(
        as_json,
        {"ok": True, "pid": handle.pid, "stopped": stopped},
        f"Stopped consume daemon (pid {handle.pid})"
        if stopped
        else f"Sent SIGTERM to pid {handle.pid}; still shutting down",
    )


async def _exchange(port: int, command: protocol.Command, timeout: float) -> dict[str, Any]:
    async with ConsumeIpcClient() as client:
        await client.connect(port)
        await client.attach()
        return await client.request(command, timeout)


def _call_daemon(
    command: protocol.Command, timeout: float = DEFAULT_RESPONSE_TIMEOUT
) -> dict[str, Any]:
    """Send one command to the running daemon and return the response result."""
    from fuel.daemon import require_running_daemon

    handle = require_running_daemon()
    try:
        return asyncio.run(_exchange(handle.port, command, timeout))
    except (RemoteOperationError, TimeoutError) as exc:
        raise click.ClickException(str(exc)) from exc
    except (DaemonUnavailableError, OSError) as exc:
        raise click.ClickException(f"Failed to communicate with daemon: {exc}") from exc


@main.command("consume:status")
@json_option
def consume_status(as_json: bool) -> None:
    """Show whether the background consume daemon is running."""
    from fuel.daemon import DEFAULT_LOG_PATH, DaemonHandle

    handle = DaemonHandle.read()
    if handle is None or not handle.is_alive():
        _emit(
            as_json,
            {"running": False, "log": str(DEFAULT_LOG_PATH)},
            "Consume daemon is not running",
        )
        return
    payload: dict[str, Any] = {
        "running": True,
        "pid": handle.pid,
        "port": handle.port,
        "started_at": handle.started_at,
        "log": str(DEFAULT_LOG_PATH),
    }
    try:
        payload["daemon"] = _call_daemon(protocol.GetStatus())
    except click.ClickException as exc:
        payload["error"] = exc.format_message()

    def text() -> None:
        click.echo(f"Consume daemon running (pid {handle.pid}, port {handle.port})")
        runner = (payload.get("daemon") or {}).get("runner")
        if runner:
            state = "paused" if runner["paused"] else "active"
            click.echo(f"  Loop:    {state}")
            click.echo(f"  Running: {len(runner['running'])}")
            click.echo(f"  Ready:   {runner['ready']}")
            click.echo(f"  Stuck:   {len(runner['stuck'])}")
        if "error" in payload:
            click.echo(f"  Error:   {payload['error']}")

    _emit(as_json, payload, text)


@main.command("consume:interval")
@click.argument("seconds", type=float)
@json_option
def consume_interval(seconds: float, as_json: bool) -> None:
    """Change how often the running consume daemon ticks."""
    status = _call_daemon(protocol.SetInterval(seconds))
    _emit(
        as_json,
        {"ok": True, "interval": status["interval"]},
        f"Consume interval set to {status['interval']}s",
    )


# -- browser --



def _response_timeout(timeout_ms: int) -> float:
    # Leave room for the backend's own timeout plus a cold browser start.
    return max(DEFAULT_RESPONSE_TIMEOUT, timeout_ms / 1000 + 10)


def _echo_result(result: Any) -> None:
    if result:
        click.echo("Result: " + json.dumps(result, indent=4))


def _split_target(target: str) -> tuple[str | None, str | None]:
    """Return (selector, ref); ``@e3`` style targets are element refs."""
    if target.startswith("@"):
        return None, target
    return target, None


@main.command("browser:create")
@click.argument("context_id")
@click.option("--page-id", default=None, help="Id for the first page (default CONTEXT-tab1).")
@click.option("--viewport", default=None, help='Viewport as JSON, e.g. {"width":1280,"height":720}')
@click.option("--user-agent", default=None, help="Custom user agent string.")
@json_option
def browser_create(
    context_id: str,
    page_id: str | None,
    viewport: str | None,
    user_agent: str | None,
    as_json: bool,
) -> None:
    """Create a browser context with one page."""
    parsed_viewport = None
    if viewport is not None:
        try:
            parsed_viewport = json.loads(viewport)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid viewport JSON: {exc.msg}") from exc
    command = protocol.BrowserCreate(
        context_id=context_id,
        page_id=page_id,
        viewport=parsed_viewport,
        user_agent=user_agent,
    )
    result = _call_daemon(command)

    def text() -> None:
        click.echo(f"Browser context '{context_id}' created successfully")
        _echo_result(result)

    _emit(
        as_json,
        {"success": True, "context_id": context_id, "page_id": command.page_id, "result": result},
        text,
    )


@main.command("browser:goto")
@click.argument("page_id")
@click.argument("url")
@click.option(
    "--wait-until",
    default="load",
    help="Wait for this event: load, domcontentloaded, networkidle or commit.",
)
@click.option("--timeout", type=int, default=protocol.DEFAULT_TIMEOUT_MS, help="Milliseconds.")
@json_option
def browser_goto(page_id: str, url: str, wait_until: str, timeout: int, as_json: bool) -> None:
    """Navigate a page to a URL."""
    command = protocol.BrowserGoto(page_id=page_id, url=url, wait_until=wait_until, timeout=timeout)
    result = _call_daemon(command, _response_timeout(timeout))

    def text() -> None:
        click.echo(f"Page '{page_id}' navigated to '{url}' successfully")
        _echo_result(result)

    _emit(as_json, {"success": True, "page_id": page_id, "url": url, "result": result}, text)


@main.command("browser:fill")
@click.argument("page_id")
@click.argument("selector", required=False)
@click.option("--value", required=True, help="Value to fill into the input.")
@click.option("--ref", default=None, help="Element ref from a snapshot (e.g. @e2).")
@json_option
def browser_fill(
    page_id: str, selector: str | None, value: str, ref: str | None, as_json: bool
) -> None:
    """Fill an input by CSS selector or element ref."""
    command = protocol.BrowserFill(page_id=page_id, value=value, selector=selector, ref=ref)
    _call_daemon(command)
    message = f"Filled {ref or selector} with: {value}"
    _emit(as_json, {"success": True, "message": message}, message)


@main.command("browser:scroll")
@click.argument("page_id")
@click.argument("direction")
@click.argument("amount", type=int, default=protocol.DEFAULT_SCROLL_AMOUNT, required=False)
@json_option
def browser_scroll(page_id: str, direction: str, amount: int, as_json: bool) -> None:
    """Scroll a page up, down, left or right by AMOUNT pixels (default 100)."""
    command = protocol.BrowserScroll(page_id=page_id, direction=direction, amount=amount)
    result = _call_daemon(command)
    direction = result.get("direction", direction)
    amount = result.get("amount", amount)
    message = f"Scrolled {direction} {amount}px"
    _emit(
        as_json,
        {"success": True, "message": message, "direction": direction, "amount": amount},
        message,
    )


@main.command("browser:wait")
@click.argument("page_id")
@click.option("--selector", default=None, help="Wait for a CSS selector.")
@click.option("--url", default=None, help="Wait for navigation to a URL.")
@click.option("--text", "text_", default=None, help="Wait for text to appear.")
@click.option("--state", default="visible", help="visible, hidden, attached or detached.")
@click.option("--timeout", type=int, default=protocol.DEFAULT_TIMEOUT_MS, help="Milliseconds.")
@json_option
def browser_wait(
    page_id: str,
    selector: str | None,
    url: str | None,
    text_: str | None,
    state: str,
    timeout: int,
    as_json: bool,
) -> None:
    """Wait for exactly one of a selector, a URL or some text."""
    command = protocol.BrowserWait(
        page_id=page_id, selector=selector, url=url, text=text_, state=state, timeout=timeout
    )
    result = _call_daemon(command, _response_timeout(timeout))

    def text() -> None:
        click.echo("Wait completed successfully")
        kind = result.get("type")
        if kind == "selector":
            click.echo(f"Found selector: {result.get('selector', 'N/A')}")
        elif kind == "url":
            click.echo(f"Navigated to: {result.get('url', 'N/A')}")
        elif kind == "text":
            click.echo(f"Found text: {result.get('text', 'N/A')}")

    _emit(
        as_json,
        {"success": True, "message": "Wait completed successfully", "data": result},
        text,
    )


@main.command("browser:eval")
@click.argument("page_id")
@click.argument("expression")
@json_option
def browser_eval(page_id: str, expression: str, as_json: bool) -> None:
    """Evaluate a JavaScript expression in a page."""
    command = protocol.BrowserEval(page_id=page_id, expression=expression)
    result = _call_daemon(command, SLOW_RESPONSE_TIMEOUT)

    def text() -> None:
        click.echo(f"Expression evaluated successfully on page '{page_id}'")
        _echo_result(result)

    _emit(as_json, {"success": True, "page_id": page_id, "result": result}, text)


@main.command("browser:text")
@click.argument("page_id")
@click.argument("target")
@json_option
def browser_text(page_id: str, target: str, as_json: bool) -> None:
    """Print the text of an element (CSS selector or @ref)."""
    selector, ref = _split_target(target)
    command = protocol.BrowserText(page_id=page_id, selector=selector, ref=ref)
    result = _call_daemon(command)
    _emit(
        as_json,
        {"success": True, "data": result},
        result.get("text") or "No text content found",
    )


@main.command("browser:screenshot")
@click.argument("page_id")
@click.option("--path", default=None, help="Save to this file instead of returning base64.")
@click.option("--full-page", is_flag=True, help="Capture the full scrollable page.")
@json_option
def browser_screenshot(page_id: str, path: str | None, full_page: bool, as_json: bool) -> None:
    """Take a screenshot of a page."""
    if path:
        path = str(Path(path).expanduser().resolve())
    command = protocol.BrowserScreenshot(page_id=page_id, path=path, full_page=full_page)
    result = _call_daemon(command, SLOW_RESPONSE_TIMEOUT)

    def text() -> None:
        if path:
            click.echo(f"Screenshot of page '{page_id}' saved to '{path}'")
        else:
            click.echo(f"Screenshot of page '{page_id}' captured successfully")
            _echo_result(result)

    _emit(as_json, {"success": True, "page_id": page_id, "path": path, "result": result}, text)


@main.command("browser:close")
@click.argument("context_id")
@json_option
def browser_close(context_id: str, as_json: bool) -> None:
    """Close a browser context and its pages."""
    result = _call_daemon(protocol.BrowserClose(context_id=context_id))

    def text() -> None:
        click.echo(f"Browser context '{context_id}' closed successfully")
        _echo_result(result)

    _emit(as_json, {"success": True, "context_id": context_id, "result": result}, text)


@main.command("browser:status")
@json_option
def browser_status(as_json: bool) -> None:
    """Show the browser backend's state."""
    result = _call_daemon(protocol.BrowserStatus())
    contexts = result.get("contexts") or []
    pages = result.get("pages") or []
    launched = bool(result.get("browserLaunched"))

    def text() -> None:
        click.echo("Browser Daemon Status:")
        click.echo(f"  Browser Launched: {'Yes' if launched else 'No'}")
        click.echo(f"  Contexts: {len(contexts)}")
        click.echo(f"  Pages: {len(pages)}")

    _emit(
        as_json,
        {
            "success": True,
            "browserLaunched": launched,
            "contexts": contexts,
            "pages": pages,
            "daemonRunning": bool(result.get("daemonRunning")),
        },
        text,
    )
