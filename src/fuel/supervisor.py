"""Agent subprocess supervision: spawn, capture output, poll, classify, shut down."""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path

from fuel.health import FailureKind
from fuel.paths import PROCESSES_DIR

log = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 8000
GRACEFUL_SHUTDOWN_SECONDS = 30.0

_NETWORK_RE = re.compile(r"(network|connection|timeout|api.*error)", re.IGNORECASE)
_PERMISSION_RE = re.compile(
    r"(permission.*denied|blocked.*tool|require.*approval)", re.IGNORECASE
)
_SESSION_RES = (
    re.compile(r"Session ID:\s*([a-f0-9-]{36})", re.IGNORECASE),
    re.compile(r"session_id[\"']?\s*[:=]\s*[\"']?([a-f0-9-]{36})", re.IGNORECASE),
)


def pid_alive(pid: int) -> bool:
    """Check a pid with signal 0."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user.
        return True
    return True


def classify_failure(exit_code: int, output: str) -> FailureKind:
    """Map a non-zero exit and its output to a failure kind."""
    if exit_code == 1:
        if _NETWORK_RE.search(output):
            return FailureKind.NETWORK
        if _PERMISSION_RE.search(output):
            return FailureKind.PERMISSION
    return FailureKind.CRASH


def extract_session_id(output: str) -> str | None:
    for pattern in _SESSION_RES:
        match = pattern.search(output)
        if match:
            return match.group(1)
    return None


def _tail(path: Path, limit: int = OUTPUT_TAIL_CHARS) -> str:
    try:
        text = path.read_text(errors="replace")
    except FileNotFoundError:
        return ""
    return text[-limit:]


@dataclass
class AgentProcess:
    task_id: str
    agent: str
    run_id: str | None
    process: subprocess.Popen
    started_at: float
    stdout_path: Path
    stderr_path: Path

    @property
    def pid(self) -> int:
        return self.process.pid

    def output(self) -> str:
        stdout = _tail(self.stdout_path)
        stderr = _tail(self.stderr_path)
        if stderr:
            return f"{stdout}\n{stderr}".strip()[-OUTPUT_TAIL_CHARS:]
        return stdout


@dataclass
class Completion:
    """One finished agent process."""

    task_id: str
    agent: str
    run_id: str | None
    exit_code: int
    duration: float
    output: str
    session_id: str | None = None
    failure: FailureKind | None = field(default=None)

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def completion_type(self) -> str:
        if self.success:
            return "success"
        if self.failure is FailureKind.NETWORK:
            return "network_error"
        if self.failure is FailureKind.PERMISSION:
            return "permission_blocked"
        return "failed"


class ProcessSupervisor:
    """Owns the agent processes spawned by one consume runner."""

    def __init__(self, *, cwd: Path | None = None, output_dir: Path | None = None) -> None:
        self._cwd = cwd
        self._output_dir = output_dir or PROCESSES_DIR
        self._active: dict[str, AgentProcess] = {}

    # -- Capacity ----------------------------------------------------------

    def running_count(self, agent: str | None = None) -> int:
        if agent is None:
            return len(self._active)
        return sum(1 for proc in self._active.values() if proc.agent == agent)

    def can_spawn(self, agent: str, limit: int) -> bool:
        return self.running_count(agent) < limit

    def is_supervising(self, task_id: str) -> bool:
        return task_id in self._active

    def active(self) -> list[AgentProcess]:
        return list(self._active.values())

    # -- Spawn -------------------------------------------------------------

    def spawn(
        self,
        task_id: str,
        agent: str,
        command: list[str],
        *,
        env: dict[str, str] | None = None,
        run_id: str | None = None,
    ) -> AgentProcess:
        """Start an agent process with stdout/stderr written to per-task files.

        Raises OSError if the executable cannot be started.
        """
        task_dir = self._output_dir / task_id
        task_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = task_dir / "stdout.log"
        stderr_path = task_dir / "stderr.log"
        with open(stdout_path, "w") as out, open(stderr_path, "w") as err:
            process = subprocess.Popen(
                command,
                cwd=self._cwd,
                env={**os.environ, **(env or {})},
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=err,
                start_new_session=True,
            )
        proc = AgentProcess(
            task_id=task_id,
            agent=agent,
            run_id=run_id,
            process=process,
            started_at=time.monotonic(),
            stdout_path=stdout_path,
            stderr_path=stderr_path,
        )
        self._active[task_id] = proc
        log.info("Spawned %s for %s (pid=%d)", agent, task_id, process.pid)
        return proc

    def terminate(self, task_id: str) -> None:
        """Stop and forget a process whose dispatch could not be recorded."""
        proc = self._active.pop(task_id, None)
        if proc is None:
            return
        if proc.process.poll() is None:
            proc.process.terminate()
            try:
                proc.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.process.kill()
                proc.process.wait()

    # -- Poll --------------------------------------------------------------

    def poll(self) -> list[Completion]:
        """Return completions for every process that has exited since last poll."""
        completions: list[Completion] = []
        for task_id, proc in list(self._active.items()):
            exit_code = proc.process.poll()
            if exit_code is None:
                continue
            del self._active[task_id]
            output = proc.output()
            completion = Completion(
                task_id=task_id,
                agent=proc.agent,
                run_id=proc.run_id,
                exit_code=exit_code,
                duration=time.monotonic() - proc.started_at,
                output=output,
                session_id=extract_session_id(output),
            )
            if exit_code != 0:
                completion.failure = classify_failure(exit_code, output)
            log.info("Agent %s for %s exited with %d", proc.agent, task_id, exit_code)
            completions.append(completion)
        return completions

    # -- Shutdown ----------------------------------------------------------

    def shutdown(self, timeout: float = GRACEFUL_SHUTDOWN_SECONDS) -> None:
        """SIGTERM every running agent, wait up to ``timeout``, then SIGKILL."""
        running = [p for p in self._active.values() if p.process.poll() is None]
        for proc in running:
            log.info("Sending SIGTERM to %s (pid=%d)", proc.task_id, proc.pid)
            try:
                proc.process.send_signal(signal.SIGTERM)
            except ProcessLookupError:
                continue

        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if all(p.process.poll() is not None for p in running):
                break
            time.sleep(0.1)

        for proc in running:
            if proc.process.poll() is None:
                log.warning("Killing %s (pid=%d) after %ss", proc.task_id, proc.pid, timeout)
                proc.process.kill()
                proc.process.wait()
