# snapshot.py
"""
Workspace snapshot: the single string written to durable storage.

    {"version": 1,
     "nodes": [{"id", "type", "position": {"x", "y"}, "data": {...}}],
     "edges": [{"id", "source", "target", "sourceHandle", "targetHandle"}]}

`data` carries the node state (status, jobId, ...) and the stage form.
Documents without a "version" key were written before the schema was
versioned; they are migrated on load.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .dag import is_acyclic
from .errors import InvalidConfiguration, SnapshotError
from .forms import validate_form
from .model import Edge, JobState, NodeStatus, Position, StageNode, StageType
from .remote.slurm import JOB_ID_RE

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PositionModel(_Wire):
    x: float = 0.0
    y: float = 0.0


class NodeDataModel(_Wire):
    workspace_path: str
    status: NodeStatus = NodeStatus.INACTIVE
    job_id: Optional[str] = Field(default=None, pattern=JOB_ID_RE.pattern)
    job_state: Optional[JobState] = None
    remote_path: Optional[str] = None
    message: Optional[str] = None
    updated_at: Optional[str] = None
    form: Optional[Dict[str, Any]] = None


class NodeModel(_Wire):
    id: str
    type: StageType
    position: PositionModel = Field(default_factory=PositionModel)
    data: NodeDataModel


class EdgeModel(_Wire):
    id: str
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None


class SnapshotModel(_Wire):
    version: int = SNAPSHOT_VERSION
    nodes: List[NodeModel] = Field(default_factory=list)
    edges: List[EdgeModel] = Field(default_factory=list)


# ----------------------------------------------------------------------
# Dump
# ----------------------------------------------------------------------

def _node_to_model(node: StageNode) -> NodeModel:
    return NodeModel(
        id=node.id,
        type=node.type,
        position=PositionModel(x=node.position.x, y=node.position.y),
        data=NodeDataModel(
            workspace_path=node.workspace_path,
            status=node.status,
            job_id=node.job_id,
            job_state=node.job_state,
            remote_path=node.remote_path,
            message=node.message,
            updated_at=node.updated_at,
            form=node.form.to_wire() if node.form is not None else None,
        ),
    )


def _edge_to_model(edge: Edge) -> EdgeModel:
    return EdgeModel(
        id=edge.id,
        source=edge.source,
        target=edge.target,
        source_handle=edge.source_handle,
        target_handle=edge.target_handle,
    )


def node_to_dict(node: StageNode) -> Dict[str, Any]:
    return _node_to_model(node).model_dump(mode="json", by_alias=True)


def edge_to_dict(edge: Edge) -> Dict[str, Any]:
    return _edge_to_model(edge).model_dump(mode="json", by_alias=True)


def dump_snapshot(nodes: List[StageNode], edges: List[Edge]) -> str:
    doc = SnapshotModel(
        nodes=[_node_to_model(n) for n in nodes],
        edges=[_edge_to_model(e) for e in edges],
    )
    return doc.model_dump_json(by_alias=True)


# ----------------------------------------------------------------------
# Load
# ----------------------------------------------------------------------

def _legacy_job_state(raw: Any) -> Optional[str]:
    if not raw:
        return None
    word = str(raw).strip().split(" ")[0].upper()
    return word if word in JobState.__members__ else JobState.UNKNOWN.value


def migrate_unversioned(doc: Dict[str, Any]) -> Dict[str, Any]:
    """
    Migrate the pre-versioning document.

    Old nodes kept their form under "<type>Data.form", had no "inactive"
    status (a node without a form was "active") and stored the raw
    scheduler text as "jobStatus".
    """
    nodes = []
    for raw in doc.get("nodes") or []:
        if not isinstance(raw, dict):
            raise SnapshotError("Node entries must be objects")
        data = dict(raw.get("data") or {})
        stage = raw.get("type")
        stage_data = data.get(f"{stage}Data") or {}
        form = stage_data.get("form") if isinstance(stage_data, dict) else None
        status = data.get("status") or NodeStatus.INACTIVE.value
        if status == NodeStatus.ACTIVE.value and form is None:
            status = NodeStatus.INACTIVE.value
        nodes.append({
            "id": raw.get("id"),
            "type": stage,
            "position": raw.get("position") or {},
            "data": {
                "workspacePath": data.get("workspacePath", ""),
                "status": status,
                "jobId": data.get("jobId") or None,
                "jobState": _legacy_job_state(data.get("jobStatus")),
                "remotePath": data.get("remotePath") or None,
                "message": data.get("message"),
                "updatedAt": data.get("updatedAt"),
                "form": form,
            },
        })
    edges = [
        {
            "id": e.get("id"),
            "source": e.get("source"),
            "target": e.get("target"),
            "sourceHandle": e.get("sourceHandle"),
            "targetHandle": e.get("targetHandle"),
        }
        for e in doc.get("edges") or []
        if isinstance(e, dict)
    ]
    return {"version": SNAPSHOT_VERSION, "nodes": nodes, "edges": edges}


def _model_to_node(model: NodeModel, legacy: bool) -> StageNode:
    data = model.data
    status = data.status
    form = None
    if data.form is not None:
        try:
            form = validate_form(model.type, data.form)
        except InvalidConfiguration as e:
            if not legacy:
                raise SnapshotError(
                    f"Node {model.id} carries an invalid {model.type.value} form",
                    {"errors": e.details.get("errors", [])},
                ) from e
            logger.warning("Dropping invalid legacy form of node %s: %s", model.id, e.message)
            if status is NodeStatus.ACTIVE:
                status = NodeStatus.INACTIVE
    if status is NodeStatus.ACTIVE and form is None:
        raise SnapshotError(f"Node {model.id} is active but has no form")
    if status is NodeStatus.BUSY and not data.job_id:
        raise SnapshotError(f"Node {model.id} is busy but has no job id")

    return StageNode(
        id=model.id,
        type=model.type,
        workspace_path=data.workspace_path,
        position=Position(model.position.x, model.position.y),
        form=form,
        status=status,
        job_id=data.job_id,
        job_state=data.job_state,
        remote_path=data.remote_path,
        message=data.message,
        updated_at=data.updated_at,
    )


def load_snapshot(text: Optional[str]) -> Tuple[List[StageNode], List[Edge]]:
    """
    Parse and validate a snapshot string.

    Empty input is an empty graph.

    Raises:
        SnapshotError: malformed JSON, unknown version, schema violation,
            duplicate ids, dangling edges or a cycle
    """
    if text is None or not text.strip():
        return [], []

    try:
        doc = json.loads(text)
    except json.JSONDecodeError as e:
        raise SnapshotError(f"Snapshot is not valid JSON: {e}") from e
    if not isinstance(doc, dict):
        raise SnapshotError("Snapshot must be a JSON object")

    version = doc.get("version")
    legacy = version is None
    if legacy:
        doc = migrate_unversioned(doc)
    elif not isinstance(version, int) or isinstance(version, bool) or version > SNAPSHOT_VERSION or version < 1:
        raise SnapshotError(f"Unsupported snapshot version: {version!r}", {"supported": SNAPSHOT_VERSION})

    try:
        parsed = SnapshotModel.model_validate(doc)
    except ValidationError as e:
        raise SnapshotError("Snapshot does not match the schema", {"errors": str(e)}) from e

    nodes = [_model_to_node(n, legacy) for n in parsed.nodes]
    edges = [
        Edge(
            id=e.id,
            source=e.source,
            target=e.target,
            source_handle=e.source_handle,
            target_handle=e.target_handle,
        )
        for e in parsed.edges
    ]

    ids = [n.id for n in nodes]
    if len(set(ids)) != len(ids):
        raise SnapshotError("Snapshot contains duplicate node ids")
    edge_ids = [e.id for e in edges]
    if len(set(edge_ids)) != len(edge_ids):
        raise SnapshotError("Snapshot contains duplicate edge ids")
    known = set(ids)
    for e in edges:
        if e.source not in known or e.target not in known:
            raise SnapshotError(f"Edge {e.id} references a missing node", {"source": e.source, "target": e.target})
    if not is_acyclic(ids, [(e.source, e.target) for e in edges]):
        raise SnapshotError("Snapshot graph contains a cycle")

    return nodes, edges
