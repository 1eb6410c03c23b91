"""Per-agent circuit breaker backed by the ``agent_health`` table.

Every recorded outcome updates one row inside a ``BEGIN IMMEDIATE``
transaction, so concurrent consume processes writing the same agent
serialize on the database write lock instead of losing increments.

The cooldown curve is a plain callable ``(kind, consecutive_failures) ->
seconds | None`` so callers and tests can swap it out; the default
doubles from 30s and caps at 480s.
"""

from __future__ import annotations

import enum
import logging
import math
import sqlite3
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TypedDict, cast

from fuel.db import AgentHealthRow, format_ts, parse_ts

log = logging.getLogger(__name__)

DEFAULT_DEAD_THRESHOLD = 5
BACKOFF_SECONDS = (30, 60, 120, 240, 480)


class FailureKind(enum.StrEnum):
    NETWORK = "network"
    PERMISSION = "permission"
    CRASH = "crash"


BackoffFn = Callable[[FailureKind, int], "int | None"]


def default_backoff(kind: FailureKind, consecutive_failures: int) -> int | None:
    """Seconds of cooldown after the Nth consecutive failure.

    Permission failures need a human to change agent settings, so waiting
    would not help; they get no cooldown.
    """
    if kind is FailureKind.PERMISSION:
        return None
    index = min(max(consecutive_failures, 1) - 1, len(BACKOFF_SECONDS) - 1)
    return BACKOFF_SECONDS[index]


def format_backoff(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds}s"
    return f"{seconds // 60}m {seconds % 60}s"


class AgentHealth(TypedDict):
    agent: str
    status: str
    consecutive_failures: int
    backoff_remaining_seconds: int
    success_rate: float
    last_success_at: str | None
    last_failure_at: str | None
    total_runs: int
    total_successes: int


def _utc_now() -> datetime:
    return datetime.now(UTC)


class AgentHealthTracker:
    """Tracks run outcomes per agent and decides dispatch eligibility."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        backoff: BackoffFn = default_backoff,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._conn = conn
        self._backoff = backoff
        self._clock = clock

    def _row(self, agent: str) -> AgentHealthRow | None:
        row = self._conn.execute(
            "SELECT * FROM agent_health WHERE agent = ?", (agent,)
        ).fetchone()
        return cast(AgentHealthRow, dict(row)) if row else None

    def _write(self, agent: str, sql: str, params: tuple) -> None:
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            self._conn.execute("INSERT OR IGNORE INTO agent_health (agent) VALUES (?)", (agent,))
            self._conn.execute(sql, params)
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def record_success(self, agent: str) -> None:
        self._write(
            agent,
            "UPDATE agent_health SET last_success_at = ?, consecutive_failures = 0, "
            "total_runs = total_runs + 1, total_successes = total_successes + 1, "
            "backoff_until = NULL WHERE agent = ?",
            (format_ts(self._clock()), agent),
        )

    def record_failure(self, agent: str, kind: FailureKind = FailureKind.CRASH) -> None:
        now = self._clock()
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            self._conn.execute("INSERT OR IGNORE INTO agent_health (agent) VALUES (?)", (agent,))
            failures = self._conn.execute(
                "SELECT consecutive_failures FROM agent_health WHERE agent = ?", (agent,)
            ).fetchone()[0] + 1
            seconds = self._backoff(kind, failures)
            backoff_until = format_ts(now + timedelta(seconds=seconds)) if seconds else None
            self._conn.execute(
                "UPDATE agent_health SET last_failure_at = ?, consecutive_failures = ?, "
                "total_runs = total_runs + 1, backoff_until = ? WHERE agent = ?",
                (format_ts(now), failures, backoff_until, agent),
            )
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise
        log.info(
            "Agent %s failed (%s), %d consecutive, backoff %ss",
            agent,
            kind.value,
            failures,
            seconds or 0,
        )

    def get_backoff_seconds(self, agent: str) -> int:
        row = self._row(agent)
        if row is None or row["backoff_until"] is None:
            return 0
        remaining = (parse_ts(row["backoff_until"]) - self._clock()).total_seconds()
        return max(0, math.ceil(remaining))

    def is_available(self, agent: str) -> bool:
        return self.get_backoff_seconds(agent) == 0

    def is_dead(self, agent: str, threshold: int = DEFAULT_DEAD_THRESHOLD) -> bool:
        row = self._row(agent)
        return row is not None and row["consecutive_failures"] >= threshold

    def get_health_status(self, agent: str) -> AgentHealth:
        row = self._row(agent)
        if row is None:
            row = {
                "agent": agent,
                "consecutive_failures": 0,
                "last_success_at": None,
                "last_failure_at": None,
                "total_runs": 0,
                "total_successes": 0,
                "backoff_until": None,
            }
        remaining = self.get_backoff_seconds(agent)
        if row["consecutive_failures"] >= DEFAULT_DEAD_THRESHOLD:
            status = "dead"
        elif remaining > 0:
            status = "backoff"
        else:
            status = "healthy"
        total = row["total_runs"]
        rate = round(row["total_successes"] / total * 100, 1) if total else 0.0
        return {
            "agent": agent,
            "status": status,
            "consecutive_failures": row["consecutive_failures"],
            "backoff_remaining_seconds": remaining,
            "success_rate": rate,
            "last_success_at": row["last_success_at"],
            "last_failure_at": row["last_failure_at"],
            "total_runs": total,
            "total_successes": row["total_successes"],
        }

    def all_health_status(self) -> list[AgentHealth]:
        agents = [
            row[0]
            for row in self._conn.execute("SELECT agent FROM agent_health ORDER BY agent")
        ]
        return [self.get_health_status(agent) for agent in agents]

    def reset(self, agent: str) -> bool:
        """Clear failures and cooldown; historical totals are kept.

        Returns False when the agent has no health record yet.
        """
        cursor = self._conn.execute(
            "UPDATE agent_health SET consecutive_failures = 0, backoff_until = NULL "
            "WHERE agent = ?",
            (agent,),
        )
        self._conn.commit()
        return cursor.rowcount > 0

    def reset_all(self) -> int:
        cursor = self._conn.execute(
            "UPDATE agent_health SET consecutive_failures = 0, backoff_until = NULL"
        )
        self._conn.commit()
        return cursor.rowcount
