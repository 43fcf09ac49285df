"""
Shared fakes and fixtures.

Nothing here talks to a real cluster: SSH sessions, timers and the remote
job client are replaced with in-memory fakes that record what they were
asked to do.
"""
from __future__ import annotations

import itertools
from typing import Callable, Dict, List, Optional

import pytest

from workboard.errors import RemoteIOError, TransportError
from workboard.model import JobState, NodeStatus
from workboard.remote.session import CommandResult, SSHIdentity
from workboard.remote.slurm import JobReport, Partition
from workboard.store import WorkflowStore

WS = "/data/ws1"


# ============================================================================
# Timers
# ============================================================================

class FakeTimer:
    def __init__(self, delay: float, fn: Callable[[], None]):
        self.delay = delay
        self.fn = fn
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        """Run the callback the way threading.Timer would, even if cancelled too late."""
        self.fn()


class FakeTimerFactory:
    def __init__(self):
        self.timers: List[FakeTimer] = []

    def __call__(self, delay: float, fn: Callable[[], None]) -> FakeTimer:
        t = FakeTimer(delay, fn)
        self.timers.append(t)
        return t

    @property
    def last(self) -> FakeTimer:
        return self.timers[-1]


# ============================================================================
# SSH sessions
# ============================================================================

class FakeSession:
    """
    Scripted session: `responder(command)` returns a CommandResult or raises.
    """

    def __init__(self, identity=None, responder: Optional[Callable[[str], CommandResult]] = None):
        self.identity = identity
        self.responder = responder or (lambda cmd: CommandResult("", "", 0))
        self.commands: List[str] = []
        self.active = True
        self.closed = 0
        self.close_error: Optional[Exception] = None
        self.sftp_client = None

    def is_active(self) -> bool:
        return self.active and not self.closed

    def run(self, command: str, *, timeout=None) -> CommandResult:
        self.commands.append(command)
        return self.responder(command)

    def sftp(self):
        return self.sftp_client

    def close(self) -> None:
        self.closed += 1
        if self.close_error is not None:
            raise self.close_error


class FakeOpener:
    def __init__(self, responder=None):
        self.responder = responder
        self.opened: List[FakeSession] = []
        self.fail_with: Optional[Exception] = None

    def __call__(self, identity) -> FakeSession:
        if self.fail_with is not None:
            raise self.fail_with
        s = FakeSession(identity, self.responder)
        self.opened.append(s)
        return s


def ok(stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(stdout, stderr, 0)


def fail(stderr: str = "", exit_status: int = 1, stdout: str = "") -> CommandResult:
    return CommandResult(stdout, stderr, exit_status)


# ============================================================================
# Remote job client
# ============================================================================

class FakeJobClient:
    """Stands in for RemoteJobClient in runner / API / CLI tests."""

    def __init__(self):
        self._ids = itertools.count(1000)
        self.scripts: List[str] = []
        self.states: Dict[str, JobState] = {}
        self.cancelled: List[str] = []
        self.removed: List[str] = []
        self.poll_calls: List[str] = []
        self.submit_error: Optional[Exception] = None
        self.poll_errors: List[Exception] = []
        self.cancel_error: Optional[Exception] = None
        self.remove_error: Optional[Exception] = None
        self.created_dirs: List[str] = []
        self.mkdir_error: Optional[Exception] = None
        self.identity = SSHIdentity(host="cluster", username="alice")

    def submit(self, script: str) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.scripts.append(script)
        job_id = str(next(self._ids))
        self.states[job_id] = JobState.PENDING
        return job_id

    def poll(self, job_id: str) -> JobState:
        self.poll_calls.append(job_id)
        if self.poll_errors:
            raise self.poll_errors.pop(0)
        return self.states.get(job_id, JobState.UNKNOWN)

    def cancel(self, job_id: str) -> None:
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append(job_id)
        if not self.states.get(job_id, JobState.UNKNOWN).is_finished:
            self.states[job_id] = JobState.CANCELLED

    def remove_remote_files(self, path: str) -> None:
        if self.remove_error is not None:
            raise self.remove_error
        self.removed.append(path)

    def make_dirs(self, path: str) -> None:
        if self.mkdir_error is not None:
            raise self.mkdir_error
        self.created_dirs.append(path)

    def partitions(self) -> List[Partition]:
        return [
            Partition("cpu", available=True, nodes=4, cpus_free=100, cpus_total=128),
            Partition("gpu", available=True, nodes=2, cpus_free=10, cpus_total=64, gpus_total=8),
        ]

    def report(self, job_id: str) -> JobReport:
        state = self.states.get(job_id, JobState.UNKNOWN)
        return JobReport(job_id=job_id, state=state, raw_state=state.value, partition="gpu")

    def head(self, path: str, lines: int = 20) -> str:
        return f"{path}\n"

    def list_dir(self, path: str):
        if path == "/missing":
            raise RemoteIOError("No such directory: /missing", path=path, reason="not_found")
        return [{"name": "datasets", "type": "directory"}, {"name": "notes.txt", "type": "file"}]

    def check_connection(self) -> None:
        pass


def transport_error() -> TransportError:
    return TransportError("Connection to alice@cluster:22 failed during poll", {"cause": "timeout"})


# ============================================================================
# Forms
# ============================================================================

def dataset_form(name: str = "train") -> dict:
    return {
        "slurmOptions": {"partition": "cpu"},
        "datasetName": name,
        "data": [{"image": "/data/img1.tif", "label": "/data/lbl1.tif"}],
        "patchSize": 64,
        "sampleSize": 10,
        "strategy": "uniform",
        "classes": 2,
    }


def augmentation_form(name: str = "train_aug") -> dict:
    return {
        "slurmOptions": {"partition": "gpu", "nGPU": "1"},
        "augmentedDatasetName": name,
        "augmentationArgs": {
            "rot90": {"select": True},
            "elastic": {"select": True, "alpha": [1, 5], "sigma": [2, 4]},
        },
    }


def network_form(label: str = "unet_a") -> dict:
    return {
        "slurmOptions": {"partition": "gpu", "nGPU": "2"},
        "networkUserLabel": label,
        "networkTypeName": "unet2d",
        "iterations": 1000,
        "learningRate": 0.001,
        "optimizer": "adam",
        "lossFunction": "dice",
        "patchSize": 128,
        "batchSize": 8,
    }


def finetune_form() -> dict:
    return {
        "slurmOptions": {"partition": "gpu", "nGPU": "1"},
        "iterations": 200,
        "learningRate": 0.0001,
    }


def inference_form(output_dir: str = "/data/ws1/inference/run1/") -> dict:
    return {
        "slurmOptions": {"partition": "gpu", "nGPU": "1"},
        "outputDir": output_dir,
        "inputImages": [{"name": "vol.tif", "path": "/data/vol.tif"}],
        "saveProbMap": True,
        "normalize": False,
        "paddingSize": 2,
        "patchSize": 4,
    }


FORMS = {
    "dataset": dataset_form,
    "augmentation": augmentation_form,
    "network": network_form,
    "finetune": finetune_form,
    "inference": inference_form,
}


# ============================================================================
# Store helpers
# ============================================================================

def finished_node(store: WorkflowStore, stage: str, job_id: str, node_id: Optional[str] = None,
                  form: Optional[dict] = None):
    """Add a node and drive it to success with the given job id."""
    node = store.add_node(stage, node_id=node_id)
    store.configure(node.id, form if form is not None else FORMS[stage]())
    store.mark_submitted(node.id, job_id)
    store.apply_job_state(node.id, JobState.COMPLETED, job_id=job_id)
    return store.node(node.id)


def busy_node(store: WorkflowStore, stage: str, job_id: str, node_id: Optional[str] = None):
    node = store.add_node(stage, node_id=node_id)
    store.configure(node.id, FORMS[stage]())
    store.mark_submitted(node.id, job_id)
    assert store.node(node.id).status is NodeStatus.BUSY
    return store.node(node.id)


class Ids:
    def __init__(self, prefix: str = "n"):
        self._c = itertools.count(1)
        self.prefix = prefix

    def __call__(self) -> str:
        return f"{self.prefix}{next(self._c)}"


@pytest.fixture
def store() -> WorkflowStore:
    return WorkflowStore(WS, id_factory=Ids())


@pytest.fixture
def timers() -> FakeTimerFactory:
    return FakeTimerFactory()


@pytest.fixture
def fake_client() -> FakeJobClient:
    return FakeJobClient()


@pytest.fixture
def identity() -> SSHIdentity:
    return SSHIdentity(host="cluster", username="alice", key_path="/keys/id_rsa", passphrase="s3cret")
