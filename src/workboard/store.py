# store.py
"""
Workflow store: the in-memory DAG of stage nodes and the per-node state
machine.

    inactive -> active -> busy -> success | error
    success | error -> inactive   (reset)

Every public mutation validates first and mutates second, so a rejected
call leaves nodes, edges and `snapshot` untouched. `snapshot` is refreshed
after every successful structural or status change.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from .dag import is_acyclic, topological_order
from .errors import (
    EdgeNotFound,
    InvalidConnection,
    InvalidTransition,
    NodeNotFound,
    WorkflowError,
)
from .forms import remote_path_for, validate_form
from .model import (
    VALID_CONNECTIONS,
    Edge,
    JobState,
    NodeStatus,
    Position,
    StageNode,
    StageType,
    now_iso,
)
from .snapshot import dump_snapshot, load_snapshot

logger = logging.getLogger(__name__)

FINETUNE_NETWORK_HANDLE = "network-target"
FINETUNE_DATASET_HANDLE = "dataset-target"
FINETUNE_SOURCE_HANDLE = "finetune-source"

_NETWORK_LIKE = (StageType.NETWORK, StageType.FINETUNE)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class WorkflowStore:
    """Graph of stage nodes for one workspace. Single owner, not thread safe."""

    def __init__(self, workspace_path: str, *, id_factory: Callable[[], str] = _new_id):
        self.workspace_path = workspace_path.rstrip("/")
        self._new_id = id_factory
        self._nodes: Dict[str, StageNode] = {}
        self._edges: Dict[str, Edge] = {}
        self._snapshot = dump_snapshot([], [])
        self.revision = 0

    @classmethod
    def from_snapshot(
        cls,
        workspace_path: str,
        text: Optional[str],
        *,
        id_factory: Callable[[], str] = _new_id,
    ) -> "WorkflowStore":
        store = cls(workspace_path, id_factory=id_factory)
        nodes, edges = load_snapshot(text)
        store._nodes = {n.id: n for n in nodes}
        store._edges = {e.id: e for e in edges}
        store._snapshot = dump_snapshot(nodes, edges)
        return store

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> str:
        return self._snapshot

    @property
    def nodes(self) -> List[StageNode]:
        return [replace(n) for n in self._nodes.values()]

    @property
    def edges(self) -> List[Edge]:
        return list(self._edges.values())

    def node(self, node_id: str) -> StageNode:
        return replace(self._get(node_id))

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def busy_nodes(self) -> List[StageNode]:
        return [replace(n) for n in self._nodes.values() if n.status is NodeStatus.BUSY]

    def incoming(self, node_id: str) -> List[Edge]:
        self._get(node_id)
        return [e for e in self._edges.values() if e.target == node_id]

    def outgoing(self, node_id: str) -> List[Edge]:
        self._get(node_id)
        return [e for e in self._edges.values() if e.source == node_id]

    def sources_of(self, node_id: str) -> List[StageNode]:
        return [replace(self._nodes[e.source]) for e in self.incoming(node_id)]

    def targets_of(self, node_id: str) -> List[StageNode]:
        return [replace(self._nodes[e.target]) for e in self.outgoing(node_id)]

    def topological_order(self) -> List[str]:
        return topological_order(self._nodes, self._pairs())

    def _get(self, node_id: str) -> StageNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise NodeNotFound(f"No node with id '{node_id}'", {"node": node_id}) from None

    def _pairs(self, extra: Optional[Edge] = None) -> List[tuple]:
        pairs = [(e.source, e.target) for e in self._edges.values()]
        if extra is not None:
            pairs.append((extra.source, extra.target))
        return pairs

    def _commit(self) -> None:
        self._snapshot = dump_snapshot(list(self._nodes.values()), list(self._edges.values()))
        self.revision += 1

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def add_node(
        self,
        stage_type: StageType | str,
        position: Optional[Position] = None,
        *,
        node_id: Optional[str] = None,
    ) -> StageNode:
        stage_type = StageType(stage_type)
        node_id = node_id or self._new_id()
        if node_id in self._nodes:
            raise WorkflowError(f"Node id '{node_id}' already exists", {"node": node_id})
        node = StageNode(
            id=node_id,
            type=stage_type,
            workspace_path=self.workspace_path,
            position=position or Position(),
            updated_at=now_iso(),
        )
        self._nodes[node_id] = node
        self._commit()
        return replace(node)

    def move_node(self, node_id: str, position: Position) -> StageNode:
        node = self._get(node_id)
        node.position = position
        self._commit()
        return replace(node)

    def remove_node(self, node_id: str) -> StageNode:
        """
        Remove a node and every edge touching it. Remote cleanup is the
        caller's business (see runner.WorkflowRunner.delete_node).
        """
        node = self._get(node_id)
        if node.status is NodeStatus.BUSY:
            raise InvalidTransition(
                f"Node '{node_id}' has a running job; cancel it before deleting",
                {"node": node_id, "job_id": node.job_id},
            )
        del self._nodes[node_id]
        for edge_id in [e.id for e in self._edges.values() if node_id in (e.source, e.target)]:
            del self._edges[edge_id]
        self._commit()
        return node

    def check_connection(self, source_id: str, target_id: str) -> None:
        """
        Raises:
            InvalidConnection: when source -> target is not a legal edge
        """
        source = self._nodes.get(source_id)
        target = self._nodes.get(target_id)
        if source is None or target is None:
            raise InvalidConnection(
                "Source or target node not found",
                {"source": source_id, "target": target_id},
            )
        if source_id == target_id:
            raise InvalidConnection("A node cannot be connected to itself", {"node": source_id})
        if (source.type, target.type) not in VALID_CONNECTIONS:
            raise InvalidConnection(
                f"Invalid connection pair: {source.type.value} -> {target.type.value}",
                {"source": source_id, "target": target_id},
            )
        if source.status is not NodeStatus.SUCCESS:
            raise InvalidConnection(
                f"Source node is not ready (status={source.status.value})",
                {"source": source_id},
            )

        existing = [self._nodes[e.source] for e in self._edges.values() if e.target == target_id]
        if any(n.id == source_id for n in existing):
            raise InvalidConnection("Nodes are already connected", {"source": source_id, "target": target_id})
        if existing:
            if target.type is not StageType.FINETUNE:
                raise InvalidConnection("Target node already has a source", {"target": target_id})
            # finetune takes a network (or finetune) plus an optional dataset
            if len(existing) >= 2:
                raise InvalidConnection("Finetune node already has two sources", {"target": target_id})
            if _source_slot(existing[0].type) == _source_slot(source.type):
                raise InvalidConnection(
                    "Finetune node already has a source of the same kind",
                    {"target": target_id},
                )

        candidate = Edge(id="?", source=source_id, target=target_id)
        if not is_acyclic(self._nodes, self._pairs(candidate)):
            raise InvalidConnection("Connection would create a cycle", {"source": source_id, "target": target_id})

    def is_valid_connection(self, source_id: str, target_id: str) -> bool:
        try:
            self.check_connection(source_id, target_id)
        except InvalidConnection as e:
            logger.debug("Rejected connection %s -> %s: %s", source_id, target_id, e.message)
            return False
        return True

    def add_edge(self, source_id: str, target_id: str, *, edge_id: Optional[str] = None) -> Edge:
        self.check_connection(source_id, target_id)
        edge_id = edge_id or self._new_id()
        if edge_id in self._edges:
            raise InvalidConnection(f"Edge id '{edge_id}' already exists", {"edge": edge_id})

        source_handle = target_handle = None
        if self._nodes[target_id].type is StageType.FINETUNE:
            # finetune nodes have named target handles
            if self._nodes[source_id].type in _NETWORK_LIKE:
                target_handle = FINETUNE_NETWORK_HANDLE
                source_handle = FINETUNE_SOURCE_HANDLE
            else:
                target_handle = FINETUNE_DATASET_HANDLE

        edge = Edge(
            id=edge_id,
            source=source_id,
            target=target_id,
            source_handle=source_handle,
            target_handle=target_handle,
        )
        self._edges[edge_id] = edge
        self._commit()
        return edge

    def remove_edge(self, edge_id: str) -> Edge:
        try:
            edge = self._edges[edge_id]
        except KeyError:
            raise EdgeNotFound(f"No edge with id '{edge_id}'", {"edge": edge_id}) from None
        target = self._nodes[edge.target]
        if target.status in (NodeStatus.BUSY, NodeStatus.SUCCESS):
            raise InvalidConnection(
                f"Cannot remove the input of a {target.status.value} node",
                {"edge": edge_id, "target": target.id},
            )
        del self._edges[edge_id]
        self._commit()
        return edge

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _require(self, node: StageNode, *allowed: NodeStatus, action: str) -> None:
        if node.status not in allowed:
            raise InvalidTransition(
                f"Cannot {action} node '{node.id}' while it is {node.status.value}",
                {"node": node.id, "status": node.status.value},
            )

    def _touch(self, node: StageNode, message: Optional[str]) -> None:
        node.message = message
        node.updated_at = now_iso()

    def configure(self, node_id: str, raw_form: Any) -> StageNode:
        """inactive|active -> active, once the stage form validates."""
        node = self._get(node_id)
        self._require(node, NodeStatus.INACTIVE, NodeStatus.ACTIVE, action="configure")
        form = validate_form(node.type, raw_form)
        node.form = form
        node.remote_path = remote_path_for(node.type, form, self.workspace_path)
        node.status = NodeStatus.ACTIVE
        self._touch(node, None)
        self._commit()
        return replace(node)

    def mark_submitted(self, node_id: str, job_id: str, *, remote_path: Optional[str] = None) -> StageNode:
        """active -> busy."""
        node = self._get(node_id)
        self._require(node, NodeStatus.ACTIVE, action="submit")
        if not job_id:
            raise InvalidTransition("A submitted node needs a job id", {"node": node_id})
        node.status = NodeStatus.BUSY
        node.job_id = job_id
        node.job_state = JobState.PENDING
        if remote_path is not None:
            node.remote_path = remote_path
        self._touch(node, f"Job {job_id} submitted")
        self._commit()
        return replace(node)

    def apply_job_state(self, node_id: str, state: JobState, *, job_id: Optional[str] = None) -> StageNode:
        """
        Feed a scheduler state into a busy node.

        PENDING / RUNNING / UNKNOWN keep the node busy, COMPLETED moves it to
        success, FAILED / CANCELLED to error. `job_id`, when given, must match
        the node's current job.
        """
        node = self._get(node_id)
        self._require(node, NodeStatus.BUSY, action="update")
        if job_id is not None and job_id != node.job_id:
            raise InvalidTransition(
                f"State for job {job_id} does not belong to node '{node_id}'",
                {"node": node_id, "job_id": node.job_id},
            )
        state = JobState(state)
        node.job_state = state
        if state is JobState.COMPLETED:
            node.status = NodeStatus.SUCCESS
            self._touch(node, f"Job {node.job_id} finished successfully")
        elif state in (JobState.FAILED, JobState.CANCELLED):
            node.status = NodeStatus.ERROR
            self._touch(node, f"Job {node.job_id} {state.value.lower()}")
        elif state is JobState.UNKNOWN:
            self._touch(node, f"Job {node.job_id} reported an unrecognised state")
        else:
            self._touch(node, f"Job {node.job_id} is {state.value.lower()}")
        self._commit()
        return replace(node)

    def mark_failed(self, node_id: str, message: str) -> StageNode:
        """active|busy -> error (submission, transport or auth failure)."""
        node = self._get(node_id)
        self._require(node, NodeStatus.ACTIVE, NodeStatus.BUSY, action="fail")
        node.status = NodeStatus.ERROR
        self._touch(node, message)
        self._commit()
        return replace(node)

    def mark_cancelled(self, node_id: str) -> StageNode:
        """busy -> error; a cancelled job is not a success."""
        node = self._get(node_id)
        self._require(node, NodeStatus.BUSY, action="cancel")
        node.status = NodeStatus.ERROR
        node.job_state = JobState.CANCELLED
        self._touch(node, f"Job {node.job_id} cancelled")
        self._commit()
        return replace(node)

    def reset(self, node_id: str) -> StageNode:
        """success|error -> inactive. Keeps the form so the stage can be re-run."""
        node = self._get(node_id)
        self._require(node, NodeStatus.SUCCESS, NodeStatus.ERROR, action="reset")
        node.status = NodeStatus.INACTIVE
        node.job_id = None
        node.job_state = None
        node.remote_path = None
        self._touch(node, None)
        self._commit()
        return replace(node)


def _source_slot(stage_type: StageType) -> str:
    return "network" if stage_type in _NETWORK_LIKE else "dataset"
