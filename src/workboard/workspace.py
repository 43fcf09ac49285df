# workspace.py
"""
Workspace trees on the cluster.

A workspace is the directory every stage of one graph writes into. Creating
it lays out `<path>/logs` (all SLURM output goes there) and submits the
processing CLI's `create_workspace` job; removing it deletes the whole tree.

Both functions block on SSH; async callers run them with asyncio.to_thread.
"""
from __future__ import annotations

import logging

from .errors import RemoteIOError
from .remote.client import RemoteJobClient
from .scripts import Container, build_workspace_job

logger = logging.getLogger(__name__)


def create_remote_workspace(
    client: RemoteJobClient,
    workspace_path: str,
    partition: str,
    container: Container,
) -> str:
    """
    Create the log directory and submit the workspace job. Returns its job id.

    Raises:
        InvalidConfiguration: bad partition or workspace path (nothing ran)
        RemoteIOError: the log directory could not be created
        SubmissionError: sbatch refused the job
    """
    ws = workspace_path.rstrip("/")
    job = build_workspace_job(ws, partition, container)
    client.make_dirs(f"{ws}/logs")
    job_id = client.submit(job.script)
    logger.info("Submitted workspace job %s for %s", job_id, ws)
    return job_id


def remove_remote_workspace(client: RemoteJobClient, workspace_path: str) -> bool:
    """
    Delete the workspace tree. Returns False when it was already gone.

    Raises:
        RemoteIOError: removal failed for any other reason
    """
    ws = workspace_path.rstrip("/")
    try:
        client.remove_remote_files(ws)
    except RemoteIOError as e:
        if e.reason != "not_found":
            raise
        logger.warning("Workspace %s was not found on the cluster", ws)
        return False
    return True
