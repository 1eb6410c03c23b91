"""Pure task-graph logic: readiness, cycle checks, id resolution, epic status.

All functions are pure data transformations over task/epic rows.
No sqlite, no Click, no stdout/stderr output.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from fuel.errors import AmbiguousError, CycleError, NotFoundError

TERMINAL_STATUSES = frozenset({"done", "cancelled"})
ACTIVE_STATUSES = frozenset({"open", "in_progress"})


def blocker_ids(task: Mapping[str, Any]) -> list[str]:
    return list(task.get("blocked_by") or [])


def unresolved_blockers(
    task: Mapping[str, Any], by_id: Mapping[str, Mapping[str, Any]]
) -> list[str]:
    """Blocker ids that still hold the task back.

    A blocker that no longer exists does not block.
    """
    pending = []
    for blocker_id in blocker_ids(task):
        blocker = by_id.get(blocker_id)
        if blocker is not None and blocker.get("status") not in TERMINAL_STATUSES:
            pending.append(blocker_id)
    return pending


def is_ready(task: Mapping[str, Any], by_id: Mapping[str, Mapping[str, Any]]) -> bool:
    if task.get("status") != "open":
        return False
    if task.get("consume_pid") is not None:
        return False
    return not unresolved_blockers(task, by_id)


def compute_ready(tasks: Sequence[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    """Ready tasks ordered by priority, then creation time.

    ``sorted`` is stable, so input order breaks any remaining tie.
    """
    by_id = {t["short_id"]: t for t in tasks}
    ready = [t for t in tasks if is_ready(t, by_id)]
    return sorted(ready, key=lambda t: (int(t.get("priority", 2)), t.get("created_at") or ""))


def reaches(
    blocked_by: Mapping[str, Iterable[str]], start: str, target: str
) -> bool:
    """True when ``target`` is reachable from ``start`` along blocked_by edges."""
    seen = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        if current == target:
            return True
        for nxt in blocked_by.get(current, ()):
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return False


def check_new_dependency(
    blocked_by: Mapping[str, Iterable[str]], dependent: str, blocker: str
) -> None:
    """Raise CycleError if ``dependent`` blocked by ``blocker`` closes a cycle."""
    if dependent == blocker:
        raise CycleError("A task cannot depend on itself")
    if reaches(blocked_by, blocker, dependent):
        raise CycleError(
            "Circular dependency detected! Adding this dependency would create a cycle."
        )


def resolve_id(
    ids: Iterable[str], query: str, *, kind: str = "task", prefix: str = "f-"
) -> str:
    """Resolve a possibly-partial id: exact, then prefix, then substring.

    Never guesses: several matches at the first level that has any raise
    AmbiguousError.
    """
    candidates = list(ids)
    if query in candidates:
        return query

    matchers: list[Callable[[str], bool]] = [
        lambda cid: cid.startswith(query) or cid.startswith(prefix + query),
        lambda cid: query in cid,
    ]
    for match in matchers:
        hits = [cid for cid in candidates if match(cid)]
        if len(hits) == 1:
            return hits[0]
        if hits:
            raise AmbiguousError(kind, query, sorted(hits))
    raise NotFoundError(f"{kind.capitalize()} '{query}' not found")


def epic_status(epic: Mapping[str, Any], tasks: Sequence[Mapping[str, Any]]) -> str:
    """Derive an epic's status from its own flags and its tasks' statuses."""
    if epic.get("paused_at"):
        return "paused"
    if epic.get("reviewed_at"):
        return "done"
    if not tasks:
        return "planning"
    statuses = {t.get("status") for t in tasks}
    if statuses & ACTIVE_STATUSES:
        return "in_progress"
    if statuses <= TERMINAL_STATUSES:
        return "review_pending"
    return "in_progress"


def is_stuck(task: Mapping[str, Any], pid_alive: Callable[[int], bool]) -> bool:
    """A non-terminal task whose agent died or exited non-zero."""
    if task.get("status") in TERMINAL_STATUSES:
        return False
    exit_code = task.get("consumed_exit_code")
    if task.get("consumed") and exit_code is not None and exit_code != 0:
        return True
    pid = task.get("consume_pid")
    return task.get("status") == "in_progress" and pid is not None and not pid_alive(pid)
