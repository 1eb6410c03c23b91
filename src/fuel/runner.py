"""The consume loop: DISPATCH ready work, MONITOR liveness, RECONCILE exits.

One ``tick()`` runs the three phases in order; ticks never overlap.
Each task and agent is handled in isolation, so a bad task, a dead pid
or an unhealthy agent never aborts the rest of the iteration.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Any

from fuel import db
from fuel.config import FuelConfig
from fuel.errors import StuckTaskError
from fuel.graph import TERMINAL_STATUSES
from fuel.health import AgentHealthTracker, FailureKind
from fuel.supervisor import Completion, ProcessSupervisor, pid_alive

log = logging.getLogger(__name__)

DEFAULT_INTERVAL = 5.0
AUTO_COMPLETE_REASON = "Auto-completed by consume (agent exit 0)"
PERMISSION_TASK_TITLE = "Configure agent permissions for {agent}"

_PROMPT = Template(
    """\
You are working on task ${task_id} in ${cwd}.

== TASK ==
Title: ${title}
Priority: P${priority}  Complexity: ${complexity}

${description}

== CLOSING PROTOCOL ==
Before exiting you MUST:
1. Make sure your changes pass the project's linters and tests.
2. Stage only the files YOU modified and commit them.
3. Run: fuel done ${task_id} --commit=<hash>
4. Record follow-up work with: fuel add "..." (do not work on it).
"""
)


def build_prompt(task: dict[str, Any], cwd: Path) -> str:
    return _PROMPT.substitute(
        task_id=task["short_id"],
        cwd=cwd,
        title=task["title"],
        priority=task["priority"],
        complexity=task["complexity"],
        description=task.get("description") or "(no description)",
    )


@dataclass(frozen=True)
class Spawn:
    task_id: str
    run_id: str | None
    agent: str


@dataclass
class TickReport:
    dispatched: list[str] = field(default_factory=list)
    stuck: list[str] = field(default_factory=list)
    completed: list[Completion] = field(default_factory=list)
    spawned: list[Spawn] = field(default_factory=list)
    health_changes: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dispatched": self.dispatched,
            "stuck": self.stuck,
            "completed": [
                {
                    "task_id": c.task_id,
                    "agent": c.agent,
                    "exit_code": c.exit_code,
                    "failure": c.failure.value if c.failure else None,
                }
                for c in self.completed
            ],
        }


class ConsumeRunner:
    """Drives agents through the task graph against one record store."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: FuelConfig,
        *,
        supervisor: ProcessSupervisor | None = None,
        health: AgentHealthTracker | None = None,
        review: bool = False,
        cwd: Path | None = None,
        is_alive: Callable[[int], bool] = pid_alive,
    ) -> None:
        self.conn = conn
        self.config = config
        self.cwd = cwd or Path.cwd()
        self.supervisor = supervisor or ProcessSupervisor(cwd=self.cwd)
        self.health = health or AgentHealthTracker(conn)
        self.review = review
        self.paused = False
        self._is_alive = is_alive
        self._stop = threading.Event()

    # -- Tick --------------------------------------------------------------

    def tick(self) -> TickReport:
        before = self._health_statuses()
        report = TickReport()
        report.dispatched = self.dispatch()
        procs = {proc.task_id: proc for proc in self.supervisor.active()}
        report.spawned = [
            Spawn(task_id, procs[task_id].run_id, procs[task_id].agent)
            for task_id in report.dispatched
            if task_id in procs
        ]
        report.stuck = self.monitor()
        report.completed = self.reconcile()
        report.health_changes = {
            agent: status
            for agent, status in self._health_statuses().items()
            if before.get(agent, "healthy") != status
        }
        return report

    def _health_statuses(self) -> dict[str, str]:
        return {h["agent"]: h["status"] for h in self.health.all_health_status()}

    # -- DISPATCH ----------------------------------------------------------

    def dispatch(self) -> list[str]:
        if self.paused:
            return []
        slots = self.config.max_concurrent - len(db.list_dispatched_tasks(self.conn))
        spawned: list[str] = []
        for task in db.ready_tasks(self.conn):
            if slots <= 0:
                break
            try:
                if self._dispatch_one(task):
                    spawned.append(task["short_id"])
                    slots -= 1
            except Exception:
                log.exception("Dispatch failed for %s", task["short_id"])
        return spawned

    def _skip_reason(self, task: db.TaskRow, agent_name: str | None) -> str | None:
        if task["epic_id"] and db.epic_blocks_dispatch(db.get_epic(self.conn, task["epic_id"])):
            return "epic is paused or its mirror is not ready"
        if agent_name is None or agent_name not in self.config.agents:
            return f"agent '{agent_name}' is not configured"
        agent = self.config.agents[agent_name]
        if not self.supervisor.can_spawn(agent_name, agent.max_concurrent):
            return f"agent '{agent_name}' is at capacity"
        if self.health.is_dead(agent_name, agent.max_retries):
            return f"agent '{agent_name}' is dead"
        if not self.health.is_available(agent_name):
            seconds = self.health.get_backoff_seconds(agent_name)
            return f"agent '{agent_name}' is in backoff for {seconds}s"
        return None

    def _dispatch_one(self, task: db.TaskRow) -> bool:
        task_id = task["short_id"]
        agent_name = self.config.agent_for(dict(task))
        reason = self._skip_reason(task, agent_name)
        if reason:
            log.debug("Skipping %s: %s", task_id, reason)
            return False
        assert agent_name is not None

        prompt = build_prompt(dict(task), self.cwd)
        agent, command, model = self.config.command_for(dict(task), prompt)
        run = db.create_run(self.conn, task_id, agent=agent_name, model=model)
        try:
            proc = self.supervisor.spawn(
                task_id, agent_name, command, env=agent.env, run_id=run["short_id"]
            )
        except OSError as exc:
            log.error("Failed to spawn %s for %s: %s", agent_name, task_id, exc)
            db.finish_run(self.conn, run["short_id"], exit_code=-1, output=str(exc))
            self.health.record_failure(agent_name, FailureKind.CRASH)
            return False

        if not db.mark_dispatched(self.conn, task_id, proc.pid):
            log.warning("Task %s was claimed elsewhere; stopping pid %d", task_id, proc.pid)
            self.supervisor.terminate(task_id)
            db.finish_run(self.conn, run["short_id"], exit_code=-1, output="dispatch lost race")
            return False
        return True

    # -- MONITOR -----------------------------------------------------------

    def _check_alive(self, task: db.TaskRow) -> None:
        """Raise StuckTaskError when a dispatched task's pid has vanished."""
        pid = task["consume_pid"]
        if pid is None or self._is_alive(pid):
            return
        raise StuckTaskError(task["short_id"], pid, "agent exited without reporting")

    def monitor(self) -> list[str]:
        """Check pids this runner does not own (left over from an earlier runner)."""
        stuck: list[str] = []
        for task in db.list_dispatched_tasks(self.conn):
            if self.supervisor.is_supervising(task["short_id"]):
                continue
            try:
                self._check_alive(task)
            except StuckTaskError as exc:
                if task["status"] in TERMINAL_STATUSES:
                    db.clear_consume_pid(self.conn, task["short_id"])
                    continue
                log.warning("%s", exc)
                output = task["consumed_output"] or str(exc)
                db.record_consumption(self.conn, task["short_id"], exit_code=-1, output=output)
                run = db.latest_run(self.conn, task["short_id"])
                if run is not None:
                    db.finish_run(self.conn, run["short_id"], exit_code=-1, output=output)
                stuck.append(task["short_id"])
            except Exception:
                log.exception("Liveness check failed for %s", task["short_id"])
        return stuck

    # -- RECONCILE ---------------------------------------------------------

    def reconcile(self) -> list[Completion]:
        completions = self.supervisor.poll()
        for completion in completions:
            try:
                self._reconcile_one(completion)
            except Exception:
                log.exception("Failed to reconcile %s", completion.task_id)
        return completions

    def _reconcile_one(self, completion: Completion) -> None:
        task_id = completion.task_id
        task = db.get_task(self.conn, task_id)
        if completion.run_id:
            db.finish_run(
                self.conn,
                completion.run_id,
                exit_code=completion.exit_code,
                output=completion.output,
                session_id=completion.session_id,
                commit_hash=task["commit_hash"] if task else None,
            )
        if task is None:
            log.warning("Task %s vanished while its agent was running", task_id)
            return
        db.record_consumption(
            self.conn, task_id, exit_code=completion.exit_code, output=completion.output
        )

        if completion.success:
            self.health.record_success(completion.agent)
            self._on_success(task_id, completion)
            return

        kind = completion.failure or FailureKind.CRASH
        self.health.record_failure(completion.agent, kind)
        if kind is FailureKind.NETWORK:
            self._on_network_failure(task_id, completion)
        elif kind is FailureKind.PERMISSION:
            self._on_permission_failure(task_id, completion)
        else:
            log.warning(
                "Agent %s crashed on %s (exit %d); task left for operator",
                completion.agent,
                task_id,
                completion.exit_code,
            )

    def _on_success(self, task_id: str, completion: Completion) -> None:
        task = db.get_task(self.conn, task_id)
        if task is None or task["status"] != "in_progress":
            # Finalized by the agent itself (fuel done) or moved by an operator.
            return
        if self.review:
            db.update_task_status(self.conn, task_id, "review", from_statuses={"in_progress"})
            db.create_review(
                self.conn,
                task_id,
                run_id=completion.run_id,
                agent=self.config.review_agent or completion.agent,
            )
            log.info("Task %s moved to review", task_id)
        else:
            db.complete_task(self.conn, task_id, reason=AUTO_COMPLETE_REASON)
            log.info("Task %s auto-completed", task_id)

    def _max_attempts(self, agent_name: str) -> int:
        agent = self.config.agents.get(agent_name)
        return agent.max_attempts if agent else 1

    def _on_network_failure(self, task_id: str, completion: Completion) -> None:
        attempts = db.consecutive_failed_runs(self.conn, task_id)
        limit = self._max_attempts(completion.agent)
        task = db.get_task(self.conn, task_id)
        if task is None or task["status"] in TERMINAL_STATUSES:
            return
        if attempts < limit:
            db.reopen_task(self.conn, task_id)
            log.info("Network failure on %s, retrying (%d/%d)", task_id, attempts, limit)
        else:
            log.warning("Network failure on %s, %d attempts used; giving up", task_id, attempts)

    def _on_permission_failure(self, task_id: str, completion: Completion) -> None:
        title = PERMISSION_TASK_TITLE.format(agent=completion.agent)
        blocker = db.find_open_task_by_title(self.conn, title)
        if blocker is None:
            blocker = db.create_task(
                self.conn,
                title=title,
                description=(
                    f"Agent '{completion.agent}' was blocked by a permission prompt while "
                    f"working on {task_id}. Update its configuration so it can run "
                    "unattended, then close this task."
                ),
                priority=1,
                complexity="trivial",
            )
            # A human has to act; keep the loop from dispatching it to an agent.
            db.update_task_status(self.conn, blocker["short_id"], "someday")
        db.add_dependency(self.conn, task_id, blocker["short_id"])
        db.reopen_task(self.conn, task_id)
        log.warning(
            "Agent %s needs permissions; %s blocked by %s",
            completion.agent,
            task_id,
            blocker["short_id"],
        )

    # -- Modes -------------------------------------------------------------

    def run_once(self, *, poll_interval: float = 0.5) -> TickReport:
        """One full pass: tick, then wait for the agents it started and reconcile them."""
        report = self.tick()
        while self.supervisor.running_count() and not self._stop.is_set():
            self._stop.wait(poll_interval)
            report.completed.extend(self.reconcile())
        return report

    def run_forever(self, interval: float = DEFAULT_INTERVAL) -> None:
        log.info("Consume loop started (interval=%ss)", interval)
        try:
            while not self._stop.is_set():
                try:
                    self.tick()
                except sqlite3.Error:
                    log.exception("Consume tick failed")
                self._stop.wait(interval)
        finally:
            self.shutdown()

    def request_stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def shutdown(self) -> None:
        if self.supervisor.running_count():
            log.info("Stopping %d agent process(es)", self.supervisor.running_count())
        self.supervisor.shutdown()

    # -- Introspection -----------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        now = time.monotonic()
        return {
            "paused": self.paused,
            "review": self.review,
            "max_concurrent": self.config.max_concurrent,
            "running": [
                {
                    "task_id": proc.task_id,
                    "agent": proc.agent,
                    "pid": proc.pid,
                    "run_id": proc.run_id,
                    "elapsed_seconds": int(now - proc.started_at),
                }
                for proc in self.supervisor.active()
            ],
            "ready": len(db.ready_tasks(self.conn)),
            "stuck": [t["short_id"] for t in db.list_stuck_tasks(self.conn, self._is_alive)],
            "health": self.health.all_health_status(),
        }
