from .model import Edge, JobState, NodeStatus, Position, StageNode, StageType
from .store import WorkflowStore
from .snapshot import dump_snapshot, load_snapshot
from .remote.cache import SessionCache
from .remote.client import RemoteJobClient
from .remote.session import SSHIdentity
from .runner import WorkflowRunner

__all__ = [
    "Edge",
    "JobState",
    "NodeStatus",
    "Position",
    "StageNode",
    "StageType",
    "WorkflowStore",
    "dump_snapshot",
    "load_snapshot",
    "SessionCache",
    "RemoteJobClient",
    "SSHIdentity",
    "WorkflowRunner",
]
