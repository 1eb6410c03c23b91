"""Exception taxonomy shared by the store, the consume loop, and the CLI.

The CLI converts these into ``click.ClickException`` at its boundary;
nothing below the CLI prints or exits.
"""

from __future__ import annotations

from typing import Any


class FuelError(Exception):
    """Base class for user-facing fuel failures."""


class NotFoundError(FuelError):
    pass


class AmbiguousError(NotFoundError):
    """A partial id matched more than one record."""

    def __init__(self, kind: str, query: str, matches: list[str]) -> None:
        self.matches = matches
        super().__init__(f"Ambiguous {kind} ID '{query}'. Matches: {', '.join(matches)}")


class ValidationError(FuelError):
    pass


class CycleError(ValidationError):
    pass


class DaemonUnavailableError(FuelError):
    pass


class RemoteOperationError(FuelError):
    """The daemon (or the browser backend behind it) reported a failure."""

    def __init__(self, message: str, error_code: str | None = None) -> None:
        self.error_code = error_code
        super().__init__(message)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> RemoteOperationError:
        return cls(
            payload.get("error") or "Browser operation failed",
            payload.get("errorCode"),
        )


class StuckTaskError(FuelError):
    def __init__(self, task_id: str, pid: int | None, detail: str = "") -> None:
        self.task_id = task_id
        self.pid = pid
        msg = f"Task {task_id} is stuck"
        if pid is not None:
            msg += f" (pid {pid} is gone)"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
