from __future__ import annotations


class TaskpilotError(RuntimeError):
    """Base class for errors surfaced through the command envelope."""

    kind = "error"


class NotFoundError(TaskpilotError):
    """Raised for an unknown task, subtask, workflow or session id."""

    kind = "not_found"


class InvalidTransitionError(TaskpilotError):
    """Raised when a status change is not allowed from the current status."""

    kind = "invalid_transition"


class InvalidArgumentError(TaskpilotError):
    """Raised for missing or malformed operation arguments."""

    kind = "invalid_argument"


class PersistenceError(TaskpilotError):
    """Raised when the state store cannot read or write."""

    kind = "persistence"
