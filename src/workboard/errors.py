# errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class WorkboardError(Exception):
    """
    Structured error with enough context for:
      - clean CLI output
      - HTTP error bodies
      - debugging without full tracebacks

    `kind` names the failure class, `message` is the human readable part.
    """
    kind = "WorkboardError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


# ----------------------------------------------------------------------
# Remote side (SSH session + scheduler + remote filesystem)
# ----------------------------------------------------------------------

class RemoteError(WorkboardError):
    kind = "RemoteError"


class AuthError(RemoteError):
    """Opening an SSH session failed (bad credentials, host unreachable)."""
    kind = "AuthError"


class TransportError(RemoteError):
    """The session existed but a command could not complete (broken pipe, timeout)."""
    kind = "TransportError"


class SchedulerError(RemoteError):
    """A scheduler command ran but reported failure."""
    kind = "SchedulerError"


class SubmissionError(SchedulerError):
    kind = "SubmissionError"


class RemoteIOError(RemoteError):
    """A remote filesystem operation failed."""
    kind = "RemoteIOError"

    def __init__(
        self,
        message: str,
        *,
        path: str,
        reason: str = "failed",
        exit_status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = {"path": path, "reason": reason}
        if exit_status is not None:
            merged["exit_status"] = exit_status
        merged.update(details or {})
        super().__init__(message, merged)
        self.path = path
        self.reason = reason
        self.exit_status = exit_status


# ----------------------------------------------------------------------
# Local graph / state machine
# ----------------------------------------------------------------------

class WorkflowError(WorkboardError):
    kind = "WorkflowError"


class InvalidConnection(WorkflowError):
    kind = "InvalidConnection"


class InvalidConfiguration(WorkflowError):
    kind = "InvalidConfiguration"


class InvalidTransition(WorkflowError):
    kind = "InvalidTransition"


class NotFound(WorkflowError):
    kind = "NotFound"


class NodeNotFound(NotFound):
    kind = "NodeNotFound"


class EdgeNotFound(NotFound):
    kind = "EdgeNotFound"


class SnapshotError(WorkflowError):
    kind = "SnapshotError"
