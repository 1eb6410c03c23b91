"""SQLite record store for fuel state: tasks, epics, runs, reviews, agent health."""

from __future__ import annotations

import contextlib
import json
import sqlite3
import uuid
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypedDict, cast

from fuel import graph
from fuel.errors import NotFoundError, ValidationError
from fuel.paths import DEFAULT_DB_PATH

VALID_TASK_STATUSES = {
    "open",
    "in_progress",
    "review",
    "paused",
    "someday",
    "done",
    "cancelled",
}
TASK_TERMINAL_STATUSES = set(graph.TERMINAL_STATUSES)
VALID_COMPLEXITIES = {"trivial", "simple", "moderate", "complex"}
VALID_REVIEW_STATUSES = {"pending", "passed", "failed"}
# Epics whose mirror is in one of these states cannot take new dispatches.
MIRROR_BLOCKING_STATUSES = {"pending", "creating", "merge_failed"}
DEFAULT_PRIORITY = 2
TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def _utcnow() -> str:
    """ISO 8601 UTC timestamp matching SQLite strftime format."""
    return datetime.now(UTC).strftime(TS_FORMAT)


def format_ts(moment: datetime) -> str:
    return moment.astimezone(UTC).strftime(TS_FORMAT)


def parse_ts(value: str) -> datetime:
    return datetime.strptime(value, TS_FORMAT).replace(tzinfo=UTC)


def _short_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:6]}"


# Bump when adding migrations. 0 = legacy (pre-versioning).
SCHEMA_VERSION = 3

SCHEMA = """\
CREATE TABLE IF NOT EXISTS epics (
    short_id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT,
    self_guided INTEGER NOT NULL DEFAULT 0,
    paused_at TEXT,
    mirror_status TEXT,
    mirror_path TEXT,
    mirror_branch TEXT,
    mirror_base_commit TEXT,
    reviewed_at TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    short_id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT NOT NULL DEFAULT 'open',
    priority INTEGER NOT NULL DEFAULT 2,
    complexity TEXT NOT NULL DEFAULT 'simple',
    agent TEXT,
    blocked_by TEXT NOT NULL DEFAULT '[]',
    consumed INTEGER NOT NULL DEFAULT 0,
    consumed_at TEXT,
    consumed_exit_code INTEGER,
    consumed_output TEXT,
    consume_pid INTEGER,
    commit_hash TEXT,
    reason TEXT,
    epic_id TEXT REFERENCES epics(short_id),
    selfguided_iteration INTEGER NOT NULL DEFAULT 0,
    selfguided_stuck_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS runs (
    short_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(short_id),
    agent TEXT,
    model TEXT,
    started_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    ended_at TEXT,
    exit_code INTEGER,
    output TEXT,
    session_id TEXT,
    commit_hash TEXT
);

CREATE TABLE IF NOT EXISTS reviews (
    short_id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(short_id),
    run_id TEXT REFERENCES runs(short_id),
    agent TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    issues TEXT NOT NULL DEFAULT '[]',
    started_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS agent_health (
    agent TEXT PRIMARY KEY,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    last_success_at TEXT,
    last_failure_at TEXT,
    total_runs INTEGER NOT NULL DEFAULT 0,
    total_successes INTEGER NOT NULL DEFAULT 0,
    backoff_until TEXT
);
"""


class EpicRow(TypedDict):
    short_id: str
    title: str
    description: str | None
    self_guided: int
    paused_at: str | None
    mirror_status: str | None
    mirror_path: str | None
    mirror_branch: str | None
    mirror_base_commit: str | None
    reviewed_at: str | None
    created_at: str
    updated_at: str


class TaskRow(TypedDict):
    short_id: str
    title: str
    description: str | None
    status: str
    priority: int
    complexity: str
    agent: str | None
    blocked_by: list[str]
    consumed: int
    consumed_at: str | None
    consumed_exit_code: int | None
    consumed_output: str | None
    consume_pid: int | None
    commit_hash: str | None
    reason: str | None
    epic_id: str | None
    selfguided_iteration: int
    selfguided_stuck_count: int
    created_at: str
    updated_at: str


class RunRow(TypedDict):
    short_id: str
    task_id: str
    agent: str | None
    model: str | None
    started_at: str
    ended_at: str | None
    exit_code: int | None
    output: str | None
    session_id: str | None
    commit_hash: str | None


class ReviewRow(TypedDict):
    short_id: str
    task_id: str
    run_id: str | None
    agent: str | None
    status: str
    issues: list[str]
    started_at: str
    completed_at: str | None


class AgentHealthRow(TypedDict):
    agent: str
    consecutive_failures: int
    last_success_at: str | None
    last_failure_at: str | None
    total_runs: int
    total_successes: int
    backoff_until: str | None


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.executescript(SCHEMA)

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        _migrate(conn, current_version)
        _create_indexes(conn)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    return conn


@contextlib.contextmanager
def connect(db_path: Path | None = None):
    """Context manager wrapper for get_connection().

    Usage:
        with connect() as conn:
            do_stuff(conn)
    """
    conn = get_connection(db_path or DEFAULT_DB_PATH)
    try:
        yield conn
    finally:
        conn.close()


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _add_column_if_missing(
    conn: sqlite3.Connection, table: str, column: str, col_def: str, cols: set[str]
) -> None:
    if column not in cols:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_def}")


def _migrate_to_v1(conn: sqlite3.Connection) -> None:
    """Pre-v1 task tables lacked liveness probing and self-guided counters."""
    cols = _table_columns(conn, "tasks")
    _add_column_if_missing(conn, "tasks", "consume_pid", "INTEGER", cols)
    _add_column_if_missing(
        conn, "tasks", "selfguided_iteration", "INTEGER NOT NULL DEFAULT 0", cols
    )
    _add_column_if_missing(
        conn, "tasks", "selfguided_stuck_count", "INTEGER NOT NULL DEFAULT 0", cols
    )


def _migrate_to_v2(conn: sqlite3.Connection) -> None:
    cols = _table_columns(conn, "agent_health")
    _add_column_if_missing(conn, "agent_health", "backoff_until", "TEXT", cols)
    epic_cols = _table_columns(conn, "epics")
    for column in ("mirror_status", "mirror_path", "mirror_branch", "mirror_base_commit"):
        _add_column_if_missing(conn, "epics", column, "TEXT", epic_cols)


def _migrate_to_v3(conn: sqlite3.Connection) -> None:
    """Primary keys were called ``id`` before v3."""
    for table in ("epics", "tasks", "runs", "reviews"):
        cols = _table_columns(conn, table)
        if "id" in cols and "short_id" not in cols:
            conn.execute(f"ALTER TABLE {table} RENAME COLUMN id TO short_id")


_MIGRATIONS: list[tuple[int, Callable[[sqlite3.Connection], None]]] = [
    (1, _migrate_to_v1),
    (2, _migrate_to_v2),
    (3, _migrate_to_v3),
]


def _migrate(conn: sqlite3.Connection, from_version: int) -> None:
    """Run schema migrations from from_version to SCHEMA_VERSION.

    Each migration checks column existence first, so it is a no-op on
    fresh databases created from SCHEMA. Commit is handled by the caller.
    """
    for version, migration_fn in _MIGRATIONS:
        if from_version < version:
            migration_fn(conn)


def _create_indexes(conn: sqlite3.Connection) -> None:
    """Create non-PK indexes for common query patterns. Idempotent."""
    conn.executescript("""
        CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
        CREATE INDEX IF NOT EXISTS idx_tasks_epic_id ON tasks(epic_id);
        CREATE INDEX IF NOT EXISTS idx_runs_task_id ON runs(task_id, started_at);
        CREATE INDEX IF NOT EXISTS idx_reviews_task_id ON reviews(task_id);
    """)


# -- Tasks --


def _task_from_row(row: sqlite3.Row) -> TaskRow:
    data = dict(row)
    data["blocked_by"] = json.loads(data.get("blocked_by") or "[]")
    return cast(TaskRow, data)


def _validate_priority(priority: int) -> int:
    if not isinstance(priority, int) or not 0 <= priority <= 4:
        raise ValidationError(f"Invalid priority '{priority}'. Must be an integer 0-4.")
    return priority


def _validate_complexity(complexity: str) -> str:
    if complexity not in VALID_COMPLEXITIES:
        raise ValidationError(
            f"Invalid complexity '{complexity}'. Must be one of: "
            f"{', '.join(sorted(VALID_COMPLEXITIES))}"
        )
    return complexity


def create_task(
    conn: sqlite3.Connection,
    *,
    title: str,
    description: str | None = None,
    priority: int = DEFAULT_PRIORITY,
    complexity: str = "simple",
    agent: str | None = None,
    blocked_by: Sequence[str] = (),
    epic_id: str | None = None,
    status: str = "open",
) -> TaskRow:
    if not title.strip():
        raise ValidationError("Task title must not be empty.")
    if status not in VALID_TASK_STATUSES:
        raise ValidationError(
            f"Invalid task status '{status}'. Must be one of: {sorted(VALID_TASK_STATUSES)}"
        )
    _validate_priority(priority)
    _validate_complexity(complexity)
    for blocker_id in blocked_by:
        if get_task(conn, blocker_id) is None:
            raise NotFoundError(f"Dependency target '{blocker_id}' not found")
    if epic_id is not None and get_epic(conn, epic_id) is None:
        raise NotFoundError(f"Epic '{epic_id}' not found")

    task_id = _short_id("f")
    now = _utcnow()
    conn.execute(
        "INSERT INTO tasks (short_id, title, description, status, priority, complexity, agent, "
        "blocked_by, epic_id, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            task_id,
            title,
            description,
            status,
            priority,
            complexity,
            agent,
            json.dumps(list(dict.fromkeys(blocked_by))),
            epic_id,
            now,
            now,
        ),
    )
    conn.commit()
    task = get_task(conn, task_id)
    assert task is not None
    return task


def get_task(conn: sqlite3.Connection, task_id: str) -> TaskRow | None:
    row = conn.execute("SELECT * FROM tasks WHERE short_id = ?", (task_id,)).fetchone()
    return _task_from_row(row) if row else None


def list_tasks(
    conn: sqlite3.Connection,
    *,
    statuses: Iterable[str] | None = None,
    epic_id: str | None = None,
) -> list[TaskRow]:
    query = "SELECT * FROM tasks"
    conditions: list[str] = []
    params: list[Any] = []
    if statuses is not None:
        wanted = list(statuses)
        placeholders = ",".join("?" for _ in wanted)
        conditions.append(f"status IN ({placeholders})")
        params.extend(wanted)
    if epic_id is not None:
        conditions.append("epic_id = ?")
        params.append(epic_id)
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY created_at, rowid"
    return [_task_from_row(row) for row in conn.execute(query, params).fetchall()]


def resolve_task_id(conn: sqlite3.Connection, query: str) -> str:
    ids = [row[0] for row in conn.execute("SELECT short_id FROM tasks").fetchall()]
    return graph.resolve_id(ids, query, kind="task", prefix="f-")


def require_task(conn: sqlite3.Connection, query: str) -> TaskRow:
    task = get_task(conn, resolve_task_id(conn, query))
    assert task is not None
    return task


def ready_tasks(conn: sqlite3.Connection) -> list[TaskRow]:
    return cast(list[TaskRow], graph.compute_ready(list_tasks(conn)))


def update_task_status(
    conn: sqlite3.Connection,
    task_id: str,
    status: str,
    *,
    from_statuses: Iterable[str] | None = None,
) -> bool:
    """Compare-and-set status transition. Returns False when nothing changed."""
    if status not in VALID_TASK_STATUSES:
        raise ValidationError(
            f"Invalid task status '{status}'. Must be one of: {sorted(VALID_TASK_STATUSES)}"
        )
    current = conn.execute("SELECT status FROM tasks WHERE short_id = ?", (task_id,)).fetchone()
    if not current:
        return False
    old_status = current["status"]
    if old_status == status:
        return False
    if from_statuses is not None and old_status not in set(from_statuses):
        return False

    cursor = conn.execute(
        "UPDATE tasks SET status = ?, updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') "
        "WHERE short_id = ? AND status = ?",
        (status, task_id, old_status),
    )
    conn.commit()
    return cursor.rowcount > 0


def _transition(
    conn: sqlite3.Connection,
    task_id: str,
    target: str,
    *,
    allowed_from: set[str],
    verb: str,
) -> TaskRow:
    """Move a task to ``target``; a no-op when it is already there."""
    task = get_task(conn, task_id)
    if task is None:
        raise NotFoundError(f"Task '{task_id}' not found")
    if task["status"] == target:
        return task
    if task["status"] not in allowed_from:
        raise ValidationError(f"Cannot {verb} task {task_id}: status is '{task['status']}'")
    update_task_status(conn, task_id, target, from_statuses=allowed_from)
    updated = get_task(conn, task_id)
    assert updated is not None
    return updated


_NON_TERMINAL = VALID_TASK_STATUSES - TASK_TERMINAL_STATUSES


def start_task(conn: sqlite3.Connection, task_id: str) -> TaskRow:
    return _transition(conn, task_id, "in_progress", allowed_from={"open"}, verb="start")


def pause_task(conn: sqlite3.Connection, task_id: str) -> TaskRow:
    return _transition(conn, task_id, "paused", allowed_from=_NON_TERMINAL, verb="pause")


def unpause_task(conn: sqlite3.Connection, task_id: str) -> TaskRow:
    """paused -> open. Any other status is left alone."""
    task = get_task(conn, task_id)
    if task is None:
        raise NotFoundError(f"Task '{task_id}' not found")
    if task["status"] != "paused":
        return task
    return _transition(conn, task_id, "open", allowed_from={"paused"}, verb="unpause")


def defer_task(conn: sqlite3.Connection, task_id: str) -> TaskRow:
    return _transition(conn, task_id, "someday", allowed_from=_NON_TERMINAL, verb="defer")


def undefer_task(conn: sqlite3.Connection, task_id: str) -> TaskRow:
    task = get_task(conn, task_id)
    if task is None:
        raise NotFoundError(f"Task '{task_id}' not found")
    if task["status"] != "someday":
        return task
    return _transition(conn, task_id, "open", allowed_from={"someday"}, verb="undefer")


def complete_task(
    conn: sqlite3.Connection,
    task_id: str,
    *,
    reason: str | None = None,
    commit_hash: str | None = None,
) -> TaskRow:
    """Mark a task done. Completing an already-done task only updates reason/commit."""
    task = get_task(conn, task_id)
    if task is None:
        raise NotFoundError(f"Task '{task_id}' not found")
    if task["status"] == "cancelled":
        raise ValidationError(f"Cannot complete task {task_id}: it was cancelled")
    conn.execute(
        "UPDATE tasks SET status = 'done', "
        "reason = COALESCE(?, reason), commit_hash = COALESCE(?, commit_hash), "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE short_id = ?",
        (reason, commit_hash, task_id),
    )
    conn.commit()
    updated = get_task(conn, task_id)
    assert updated is not None
    return updated


def cancel_task(conn: sqlite3.Connection, task_id: str, *, reason: str | None = None) -> TaskRow:
    task = get_task(conn, task_id)
    if task is None:
        raise NotFoundError(f"Task '{task_id}' not found")
    if task["status"] == "done":
        raise ValidationError(f"Cannot cancel task {task_id}: it is already done")
    conn.execute(
        "UPDATE tasks SET status = 'cancelled', reason = COALESCE(?, reason), "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE short_id = ?",
        (reason, task_id),
    )
    conn.commit()
    updated = get_task(conn, task_id)
    assert updated is not None
    return updated


def reopen_task(conn: sqlite3.Connection, task_id: str) -> TaskRow:
    """Return a task to open and wipe every consumption-result field."""
    task = get_task(conn, task_id)
    if task is None:
        raise NotFoundError(f"Task '{task_id}' not found")
    conn.execute(
        "UPDATE tasks SET status = 'open', reason = NULL, consumed = 0, consumed_at = NULL, "
        "consumed_exit_code = NULL, consumed_output = NULL, consume_pid = NULL, "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE short_id = ?",
        (task_id,),
    )
    conn.commit()
    updated = get_task(conn, task_id)
    assert updated is not None
    return updated


# -- Dependencies --


def _blocked_by_map(conn: sqlite3.Connection) -> dict[str, list[str]]:
    rows = conn.execute("SELECT short_id, blocked_by FROM tasks").fetchall()
    return {row["short_id"]: json.loads(row["blocked_by"] or "[]") for row in rows}


def add_dependency(conn: sqlite3.Connection, dependent_id: str, blocker_id: str) -> TaskRow:
    """Record that ``dependent_id`` is blocked by ``blocker_id``.

    Raises CycleError (graph unchanged) if the edge would close a cycle.
    Adding an existing edge is a no-op.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        edges = _blocked_by_map(conn)
        if dependent_id not in edges:
            raise NotFoundError(f"Task '{dependent_id}' not found")
        if blocker_id not in edges:
            raise NotFoundError(f"Dependency target '{blocker_id}' not found")
        graph.check_new_dependency(edges, dependent_id, blocker_id)
        current = edges[dependent_id]
        if blocker_id not in current:
            conn.execute(
                "UPDATE tasks SET blocked_by = ?, "
                "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE short_id = ?",
                (json.dumps([*current, blocker_id]), dependent_id),
            )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    task = get_task(conn, dependent_id)
    assert task is not None
    return task


def remove_dependency(conn: sqlite3.Connection, dependent_id: str, blocker_id: str) -> TaskRow:
    task = get_task(conn, dependent_id)
    if task is None:
        raise NotFoundError(f"Task '{dependent_id}' not found")
    if blocker_id not in task["blocked_by"]:
        raise NotFoundError("No dependency exists between these tasks")
    remaining = [b for b in task["blocked_by"] if b != blocker_id]
    conn.execute(
        "UPDATE tasks SET blocked_by = ?, updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') "
        "WHERE short_id = ?",
        (json.dumps(remaining), dependent_id),
    )
    conn.commit()
    updated = get_task(conn, dependent_id)
    assert updated is not None
    return updated


def get_blockers(conn: sqlite3.Connection, task_id: str) -> list[TaskRow]:
    """Blockers of a task that are not yet done or cancelled."""
    task = get_task(conn, task_id)
    if task is None:
        raise NotFoundError(f"Task '{task_id}' not found")
    by_id = {t["short_id"]: t for t in list_tasks(conn)}
    return [by_id[b] for b in graph.unresolved_blockers(task, by_id)]


# -- Consumption --


def mark_dispatched(conn: sqlite3.Connection, task_id: str, pid: int) -> bool:
    """Claim an open, undispatched task for an agent process."""
    cursor = conn.execute(
        "UPDATE tasks SET status = 'in_progress', consumed = 1, consumed_at = ?, "
        "consume_pid = ?, consumed_exit_code = NULL, consumed_output = NULL, "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') "
        "WHERE short_id = ? AND status = 'open' AND consume_pid IS NULL",
        (_utcnow(), pid, task_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def record_consumption(
    conn: sqlite3.Connection, task_id: str, *, exit_code: int, output: str | None
) -> None:
    """Store an agent's exit result and release the task's pid."""
    conn.execute(
        "UPDATE tasks SET consumed = 1, consumed_exit_code = ?, consumed_output = ?, "
        "consume_pid = NULL, updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE short_id = ?",
        (exit_code, output, task_id),
    )
    conn.commit()


def clear_consume_pid(conn: sqlite3.Connection, task_id: str) -> None:
    conn.execute(
        "UPDATE tasks SET consume_pid = NULL, "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE short_id = ?",
        (task_id,),
    )
    conn.commit()


def find_open_task_by_title(conn: sqlite3.Connection, title: str) -> TaskRow | None:
    row = conn.execute(
        "SELECT * FROM tasks WHERE title = ? AND status NOT IN ('done', 'cancelled') "
        "ORDER BY created_at LIMIT 1",
        (title,),
    ).fetchone()
    return _task_from_row(row) if row else None


def list_dispatched_tasks(conn: sqlite3.Connection) -> list[TaskRow]:
    rows = conn.execute(
        "SELECT * FROM tasks WHERE consume_pid IS NOT NULL ORDER BY consumed_at"
    ).fetchall()
    return [_task_from_row(row) for row in rows]


def list_stuck_tasks(
    conn: sqlite3.Connection, pid_alive: Callable[[int], bool]
) -> list[TaskRow]:
    """Non-terminal tasks whose agent died or exited non-zero, newest first."""
    candidates = conn.execute(
        "SELECT * FROM tasks WHERE status NOT IN ('done', 'cancelled') "
        "AND (consumed = 1 OR consume_pid IS NOT NULL)"
    ).fetchall()
    stuck = [t for t in map(_task_from_row, candidates) if graph.is_stuck(t, pid_alive)]
    return sorted(stuck, key=lambda t: t.get("consumed_at") or "", reverse=True)


# -- Epics --


def _epic_from_row(row: sqlite3.Row) -> EpicRow:
    return cast(EpicRow, dict(row))


def create_epic(
    conn: sqlite3.Connection,
    *,
    title: str,
    description: str | None = None,
    self_guided: bool = False,
) -> EpicRow:
    if not title.strip():
        raise ValidationError("Epic title must not be empty.")
    epic_id = _short_id("e")
    conn.execute(
        "INSERT INTO epics (short_id, title, description, self_guided) VALUES (?, ?, ?, ?)",
        (epic_id, title, description, int(self_guided)),
    )
    conn.commit()
    epic = get_epic(conn, epic_id)
    assert epic is not None
    return epic


def get_epic(conn: sqlite3.Connection, epic_id: str) -> EpicRow | None:
    row = conn.execute("SELECT * FROM epics WHERE short_id = ?", (epic_id,)).fetchone()
    return _epic_from_row(row) if row else None


def list_epics(conn: sqlite3.Connection) -> list[EpicRow]:
    rows = conn.execute("SELECT * FROM epics ORDER BY created_at, rowid").fetchall()
    return [_epic_from_row(row) for row in rows]


def resolve_epic_id(conn: sqlite3.Connection, query: str) -> str:
    ids = [row[0] for row in conn.execute("SELECT short_id FROM epics").fetchall()]
    return graph.resolve_id(ids, query, kind="epic", prefix="e-")


def epic_with_status(conn: sqlite3.Connection, epic: EpicRow) -> dict[str, Any]:
    tasks = list_tasks(conn, epic_id=epic["short_id"])
    return {**epic, "status": graph.epic_status(epic, tasks), "task_count": len(tasks)}


def set_epic_paused(conn: sqlite3.Connection, epic_id: str, paused: bool) -> EpicRow:
    """Pause or unpause an epic. Repeating the current state is a no-op."""
    if get_epic(conn, epic_id) is None:
        raise NotFoundError(f"Epic '{epic_id}' not found")
    if paused:
        conn.execute(
            "UPDATE epics SET paused_at = COALESCE(paused_at, ?), "
            "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE short_id = ?",
            (_utcnow(), epic_id),
        )
    else:
        conn.execute(
            "UPDATE epics SET paused_at = NULL, "
            "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE short_id = ?",
            (epic_id,),
        )
    conn.commit()
    epic = get_epic(conn, epic_id)
    assert epic is not None
    return epic


def mark_epic_reviewed(conn: sqlite3.Connection, epic_id: str) -> EpicRow:
    if get_epic(conn, epic_id) is None:
        raise NotFoundError(f"Epic '{epic_id}' not found")
    conn.execute(
        "UPDATE epics SET reviewed_at = COALESCE(reviewed_at, ?), "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE short_id = ?",
        (_utcnow(), epic_id),
    )
    conn.commit()
    epic = get_epic(conn, epic_id)
    assert epic is not None
    return epic


def epic_blocks_dispatch(epic: EpicRow | None) -> bool:
    if epic is None:
        return False
    return bool(epic["paused_at"]) or epic["mirror_status"] in MIRROR_BLOCKING_STATUSES


# -- Runs --


def create_run(
    conn: sqlite3.Connection, task_id: str, *, agent: str | None, model: str | None
) -> RunRow:
    run_id = _short_id("run")
    conn.execute(
        "INSERT INTO runs (short_id, task_id, agent, model, started_at) VALUES (?, ?, ?, ?, ?)",
        (run_id, task_id, agent, model, _utcnow()),
    )
    conn.commit()
    run = get_run(conn, run_id)
    assert run is not None
    return run


def get_run(conn: sqlite3.Connection, run_id: str) -> RunRow | None:
    row = conn.execute("SELECT * FROM runs WHERE short_id = ?", (run_id,)).fetchone()
    return cast(RunRow, dict(row)) if row else None


def finish_run(
    conn: sqlite3.Connection,
    run_id: str,
    *,
    exit_code: int,
    output: str | None,
    session_id: str | None = None,
    commit_hash: str | None = None,
) -> bool:
    """Close a run. Closed runs are immutable, so a second call is a no-op."""
    cursor = conn.execute(
        "UPDATE runs SET ended_at = ?, exit_code = ?, output = ?, session_id = ?, "
        "commit_hash = ? WHERE short_id = ? AND ended_at IS NULL",
        (_utcnow(), exit_code, output, session_id, commit_hash, run_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def list_runs(conn: sqlite3.Connection, task_id: str) -> list[RunRow]:
    rows = conn.execute(
        "SELECT * FROM runs WHERE task_id = ? ORDER BY started_at, rowid", (task_id,)
    ).fetchall()
    return [cast(RunRow, dict(row)) for row in rows]


def latest_run(conn: sqlite3.Connection, task_id: str) -> RunRow | None:
    runs = list_runs(conn, task_id)
    return runs[-1] if runs else None


def consecutive_failed_runs(conn: sqlite3.Connection, task_id: str) -> int:
    """Closed runs with a non-zero exit since the task's last successful run."""
    count = 0
    for run in reversed(list_runs(conn, task_id)):
        if run["exit_code"] is None:
            continue
        if run["exit_code"] == 0:
            break
        count += 1
    return count


# -- Reviews --


def _review_from_row(row: sqlite3.Row) -> ReviewRow:
    data = dict(row)
    data["issues"] = json.loads(data.get("issues") or "[]")
    return cast(ReviewRow, data)


def create_review(
    conn: sqlite3.Connection,
    task_id: str,
    *,
    run_id: str | None,
    agent: str | None,
) -> ReviewRow:
    review_id = _short_id("r")
    conn.execute(
        "INSERT INTO reviews (short_id, task_id, run_id, agent, started_at) VALUES (?, ?, ?, ?, ?)",
        (review_id, task_id, run_id, agent, _utcnow()),
    )
    conn.commit()
    row = conn.execute("SELECT * FROM reviews WHERE short_id = ?", (review_id,)).fetchone()
    return _review_from_row(row)


def list_reviews(conn: sqlite3.Connection, task_id: str) -> list[ReviewRow]:
    rows = conn.execute(
        "SELECT * FROM reviews WHERE task_id = ? ORDER BY started_at, rowid", (task_id,)
    ).fetchall()
    return [_review_from_row(row) for row in rows]


def complete_review(
    conn: sqlite3.Connection, review_id: str, *, passed: bool, issues: Sequence[str] = ()
) -> bool:
    cursor = conn.execute(
        "UPDATE reviews SET status = ?, issues = ?, completed_at = ? "
        "WHERE short_id = ? AND status = 'pending'",
        ("passed" if passed else "failed", json.dumps(list(issues)), _utcnow(), review_id),
    )
    conn.commit()
    return cursor.rowcount > 0
