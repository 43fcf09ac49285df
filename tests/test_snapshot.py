import json

import pytest

from workboard.errors import SnapshotError
from workboard.model import JobState, NodeStatus, StageType
from workboard.snapshot import SNAPSHOT_VERSION, dump_snapshot, load_snapshot

from conftest import FORMS, WS, busy_node, dataset_form, finished_node


def _doc(store):
    return json.loads(store.snapshot)


def test_empty_input_is_empty_graph():
    assert load_snapshot("") == ([], [])
    assert load_snapshot(None) == ([], [])
    assert load_snapshot("   ") == ([], [])


def test_dump_shape(store):
    finished_node(store, "dataset", "11")
    doc = _doc(store)
    assert doc["version"] == SNAPSHOT_VERSION
    node = doc["nodes"][0]
    assert set(node) == {"id", "type", "position", "data"}
    assert node["data"]["jobId"] == "11"
    assert node["data"]["jobState"] == "COMPLETED"
    assert node["data"]["form"]["datasetName"] == "train"


def test_round_trip_is_byte_identical(store):
    d = finished_node(store, "dataset", "1")
    n = store.add_node("network")
    store.add_edge(d.id, n.id)
    nodes, edges = load_snapshot(store.snapshot)
    assert dump_snapshot(nodes, edges) == store.snapshot


@pytest.mark.parametrize("text", ["{not json", "[]", "42"])
def test_malformed(text):
    with pytest.raises(SnapshotError):
        load_snapshot(text)


@pytest.mark.parametrize("version", [2, 0, "1", True, 1.5])
def test_unsupported_versions(version):
    with pytest.raises(SnapshotError):
        load_snapshot(json.dumps({"version": version, "nodes": [], "edges": []}))


def test_duplicate_node_ids(store):
    finished_node(store, "dataset", "1")
    doc = _doc(store)
    doc["nodes"].append(doc["nodes"][0])
    with pytest.raises(SnapshotError, match="duplicate node"):
        load_snapshot(json.dumps(doc))


def test_dangling_edge(store):
    store.add_node("dataset")
    doc = _doc(store)
    doc["edges"].append({"id": "e1", "source": doc["nodes"][0]["id"], "target": "ghost"})
    with pytest.raises(SnapshotError, match="missing node"):
        load_snapshot(json.dumps(doc))


def test_cycle(store):
    a = finished_node(store, "finetune", "1")
    b = finished_node(store, "finetune", "2")
    doc = _doc(store)
    doc["edges"] = [
        {"id": "e1", "source": a.id, "target": b.id},
        {"id": "e2", "source": b.id, "target": a.id},
    ]
    with pytest.raises(SnapshotError, match="cycle"):
        load_snapshot(json.dumps(doc))


def test_form_must_match_node_type(store):
    node = store.add_node("network")
    doc = _doc(store)
    doc["nodes"][0]["data"]["form"] = dataset_form()
    doc["nodes"][0]["data"]["status"] = "active"
    with pytest.raises(SnapshotError, match="invalid network form"):
        load_snapshot(json.dumps(doc))


def test_busy_without_job_id(store):
    store.add_node("dataset")
    doc = _doc(store)
    doc["nodes"][0]["data"]["status"] = "busy"
    with pytest.raises(SnapshotError, match="no job id"):
        load_snapshot(json.dumps(doc))


@pytest.mark.parametrize("job_id", ["abc", "12; rm -rf ~", "7_"])
def test_job_id_must_be_a_slurm_id(store, job_id):
    busy_node(store, "dataset", "7")
    doc = _doc(store)
    doc["nodes"][0]["data"]["jobId"] = job_id
    with pytest.raises(SnapshotError):
        load_snapshot(json.dumps(doc))


def test_unknown_stage_type(store):
    store.add_node("dataset")
    doc = _doc(store)
    doc["nodes"][0]["type"] = "gallery"
    with pytest.raises(SnapshotError, match="schema"):
        load_snapshot(json.dumps(doc))


# ============================================================================
# Documents written before versioning
# ============================================================================

def _legacy_node(node_id, stage, status, form=None, **extra):
    data = {"workspacePath": WS, "status": status, **extra}
    if form is not None:
        data[f"{stage}Data"] = {"form": form}
    return {"id": node_id, "type": stage, "position": {"x": 1, "y": 2}, "data": data}


def test_legacy_document_is_migrated():
    doc = {
        "nodes": [
            _legacy_node("d1", "dataset", "success", dataset_form(), jobId="55", jobStatus="COMPLETED",
                         remotePath=f"{WS}/datasets/train.h5"),
            _legacy_node("n1", "network", "busy", FORMS["network"](), jobId="56", jobStatus="RUNNING"),
            _legacy_node("i1", "inference", "active"),
        ],
        "edges": [{"id": "e1", "source": "d1", "target": "n1"}],
    }
    nodes, edges = load_snapshot(json.dumps(doc))
    by_id = {n.id: n for n in nodes}

    assert by_id["d1"].status is NodeStatus.SUCCESS
    assert by_id["d1"].job_state is JobState.COMPLETED
    assert by_id["d1"].form.dataset_name == "train"
    assert by_id["n1"].status is NodeStatus.BUSY
    assert by_id["n1"].job_state is JobState.RUNNING
    # an "active" node without a form was never configured
    assert by_id["i1"].status is NodeStatus.INACTIVE
    assert by_id["i1"].type is StageType.INFERENCE
    assert edges[0].source == "d1"

    # once loaded, the document is written in the current format
    assert json.loads(dump_snapshot(nodes, edges))["version"] == SNAPSHOT_VERSION


def test_legacy_invalid_form_is_dropped():
    bad = dataset_form()
    bad["classes"] = 0
    doc = {"nodes": [_legacy_node("d1", "dataset", "active", bad)], "edges": []}
    nodes, _ = load_snapshot(json.dumps(doc))
    assert nodes[0].form is None
    assert nodes[0].status is NodeStatus.INACTIVE


def test_legacy_unrecognised_job_status():
    doc = {"nodes": [_legacy_node("d1", "dataset", "busy", dataset_form(), jobId="9", jobStatus="weird")],
           "edges": []}
    nodes, _ = load_snapshot(json.dumps(doc))
    assert nodes[0].job_state is JobState.UNKNOWN
