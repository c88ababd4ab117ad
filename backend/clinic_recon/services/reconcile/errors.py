from __future__ import annotations

from typing import Any


class ReconcileError(Exception):
    """Base class for reconciliation failures."""


class NetworkError(ReconcileError):
    """Source or store unreachable; the whole batch is aborted."""

    def __init__(self, message: str, *, status_code: int | None = None, endpoint: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class ValidationError(ReconcileError):
    """A row is missing a required key; the row is skipped and counted."""

    def __init__(self, message: str, *, position: int | None = None, missing: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.position = position
        self.missing = missing


class ConflictError(ReconcileError):
    """Irreconcilable identity fields; escalate to manual review."""

    def __init__(self, message: str, *, conflicts: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.conflicts = conflicts or []


class PartialFailure(ReconcileError):
    """An executor step failed; forward progress for the operation is halted.

    ``completed`` lists the steps that were committed before the failure so
    an operator can confirm a re-run is safe.
    """

    def __init__(
        self,
        message: str,
        *,
        state: str,
        completed: list[dict[str, Any]] | None = None,
        failed_table: str | None = None,
    ) -> None:
        super().__init__(message)
        self.state = state
        self.completed = completed or []
        self.failed_table = failed_table

    def as_dict(self) -> dict[str, Any]:
        return {
            "error": str(self),
            "state": self.state,
            "completed": self.completed,
            "failed_table": self.failed_table,
        }
