# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class StageType(str, Enum):
    DATASET = "dataset"
    AUGMENTATION = "augmentation"
    NETWORK = "network"
    FINETUNE = "finetune"
    INFERENCE = "inference"


class NodeStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    BUSY = "busy"
    SUCCESS = "success"
    ERROR = "error"


class JobState(str, Enum):
    """Scheduler reported job state, case normalised."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"

    @property
    def is_finished(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


# Pipeline partial order: (source type, target type) pairs that may be connected.
VALID_CONNECTIONS: frozenset[tuple[StageType, StageType]] = frozenset({
    (StageType.DATASET, StageType.AUGMENTATION),
    (StageType.DATASET, StageType.NETWORK),
    (StageType.AUGMENTATION, StageType.NETWORK),
    (StageType.NETWORK, StageType.INFERENCE),
    (StageType.NETWORK, StageType.FINETUNE),
    (StageType.DATASET, StageType.FINETUNE),
    (StageType.AUGMENTATION, StageType.FINETUNE),
    (StageType.FINETUNE, StageType.FINETUNE),
})

# Stages that write into a path they own; deleting the node removes it remotely.
OWNS_ARTIFACTS: frozenset[StageType] = frozenset({
    StageType.DATASET,
    StageType.AUGMENTATION,
    StageType.NETWORK,
})


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Position:
    x: float = 0.0
    y: float = 0.0


@dataclass
class StageNode:
    """
    A vertex of the workflow graph.

    `form` is the stage specific configuration (see forms.py); it is None
    until the user fills it in. Everything else is owned by the state
    machine in store.py and only changes through its transitions.
    """
    id: str
    type: StageType
    workspace_path: str
    position: Position = field(default_factory=Position)
    form: Optional[Any] = None
    status: NodeStatus = NodeStatus.INACTIVE
    job_id: Optional[str] = None
    job_state: Optional[JobState] = None
    remote_path: Optional[str] = None
    message: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def owns_artifacts(self) -> bool:
        return self.type in OWNS_ARTIFACTS


@dataclass(frozen=True)
class Edge:
    """Directed relation: `target` consumes the output of `source`."""
    id: str
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None


@dataclass(frozen=True)
class JobInfo:
    job_id: str
    state: JobState
    stdout_path: str
    stderr_path: str


def job_log_paths(workspace_path: str, job_id: str, job_name: str) -> tuple[str, str]:
    """Default stdout/stderr paths of a batch job: <ws>/logs/<id>-<name>.{out,err}."""
    base = f"{workspace_path.rstrip('/')}/logs/{job_id}-{job_name}"
    return f"{base}.out", f"{base}.err"
