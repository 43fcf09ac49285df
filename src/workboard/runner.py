# runner.py
"""
WorkflowRunner: drives a WorkflowStore against the cluster.

All remote calls are blocking (paramiko) and run in worker threads via
asyncio.to_thread; every store mutation happens on the event loop. Each busy
node gets its own poll task so a slow poll never holds up another node.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from .errors import AuthError, InvalidTransition, RemoteError, RemoteIOError, SchedulerError
from .locks import JobLocks, LocalJobLocks
from .model import Edge, JobInfo, JobState, NodeStatus, Position, StageNode, StageType, job_log_paths
from .remote.client import RemoteJobClient
from .remote.slurm import JobReport
from .scripts import Container, build_batch_job, resolve_inputs
from .store import WorkflowStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 30.0


class SnapshotRepository(Protocol):
    """Persistence boundary: one snapshot string per workspace path."""

    async def load_snapshot(self, workspace_path: str) -> str: ...
    async def save_snapshot(self, workspace_path: str, snapshot: str) -> None: ...


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff for transient failures while polling."""
    base: float = 2.0
    factor: float = 2.0
    max_failures: int = 3

    def delay(self, failures: int, cap: float) -> float:
        return min(self.base * self.factor ** max(failures - 1, 0), cap)


class WorkflowRunner:
    def __init__(
        self,
        store: WorkflowStore,
        client: Optional[RemoteJobClient],
        *,
        container: Container,
        repository: Optional[SnapshotRepository] = None,
        locks: Optional[JobLocks] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        retry: RetryPolicy = RetryPolicy(),
        lock_timeout: float = 60.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.client = client
        self.container = container
        self.repository = repository
        self.locks = locks or LocalJobLocks()
        self.poll_interval = poll_interval
        self.retry = retry
        self.lock_timeout = lock_timeout
        self._sleep = sleep
        self.owner = uuid.uuid4().hex
        self._pollers: Dict[str, asyncio.Task] = {}
        self._submitting: set = set()
        self._saved_revision = store.revision

    @property
    def workspace_path(self) -> str:
        return self.store.workspace_path

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def persist(self) -> None:
        """Save the snapshot if the store changed since the last save."""
        if self.repository is None:
            return
        revision = self.store.revision
        if revision == self._saved_revision:
            return
        await self.repository.save_snapshot(self.workspace_path, self.store.snapshot)
        self._saved_revision = max(self._saved_revision, revision)

    # ------------------------------------------------------------------
    # Local graph edits
    # ------------------------------------------------------------------

    async def add_node(self, stage_type: StageType | str, position: Optional[Position] = None) -> StageNode:
        node = self.store.add_node(stage_type, position)
        await self.persist()
        return node

    async def move_node(self, node_id: str, position: Position) -> StageNode:
        node = self.store.move_node(node_id, position)
        await self.persist()
        return node

    async def configure(self, node_id: str, raw_form: Any) -> StageNode:
        self._not_submitting(node_id, "configure")
        node = self.store.configure(node_id, raw_form)
        await self.persist()
        return node

    async def add_edge(self, source_id: str, target_id: str) -> Edge:
        self._not_submitting(target_id, "connect")
        edge = self.store.add_edge(source_id, target_id)
        await self.persist()
        return edge

    async def remove_edge(self, edge_id: str) -> Edge:
        for edge in self.store.edges:
            if edge.id == edge_id:
                self._not_submitting(edge.target, "disconnect")
        edge = self.store.remove_edge(edge_id)
        await self.persist()
        return edge

    # ------------------------------------------------------------------
    # Remote operations
    # ------------------------------------------------------------------

    async def submit(self, node_id: str) -> StageNode:
        """
        Submit the batch job of an active node and start polling it.

        Raises:
            InvalidTransition: node not active, or already being submitted
            InvalidConfiguration: missing form or upstream input
            RemoteError: submission failed (the node is moved to error first)
        """
        node = self.store.node(node_id)
        if node.status is not NodeStatus.ACTIVE or node_id in self._submitting:
            raise InvalidTransition(
                f"Node '{node_id}' cannot be submitted now (status={node.status.value})",
                {"node": node_id, "status": node.status.value},
            )
        job = build_batch_job(node, resolve_inputs(node, self.store.sources_of), self.container)

        self._submitting.add(node_id)
        try:
            try:
                job_id = await asyncio.to_thread(self._remote().submit, job.script)
            except RemoteError as e:
                if self._still(node_id, NodeStatus.ACTIVE):
                    self.store.mark_failed(node_id, e.message)
                    await self.persist()
                raise
        finally:
            self._submitting.discard(node_id)

        if not self._still(node_id, NodeStatus.ACTIVE) or self.store.node(node_id).form != node.form:
            logger.warning("Node %s changed while job %s was being submitted, cancelling it", node_id, job_id)
            await asyncio.to_thread(self._remote().cancel, job_id)
            raise InvalidTransition(f"Node '{node_id}' changed during submission", {"job_id": job_id})

        node = self.store.mark_submitted(node_id, job_id, remote_path=job.remote_path)
        await self.persist()
        self._start_poller(node_id, job_id)
        return node

    async def poll_once(self, node_id: str) -> Optional[StageNode]:
        """
        One poll of a busy node's job.

        Returns the updated node, or None when there was nothing to do: the
        node is not busy, another operation holds the job, or the node moved
        on while the poll was in flight.
        """
        if not self._still(node_id, NodeStatus.BUSY):
            return None
        job_id = self.store.node(node_id).job_id
        async with self.locks.hold(job_id, self.owner) as got:
            if not got:
                logger.debug("Job %s is locked by another operation, skipping poll", job_id)
                return None
            state = await asyncio.to_thread(self._remote().poll, job_id)
            return await self._apply(node_id, job_id, state)

    async def poll_all(self) -> List[StageNode]:
        """Poll every busy node concurrently."""
        results = await asyncio.gather(*(self.poll_once(n.id) for n in self.store.busy_nodes()))
        return [r for r in results if r is not None]

    async def cancel(self, node_id: str) -> StageNode:
        """
        Cancel the job of a busy node; the node ends in error with job state
        CANCELLED, even when scancel refuses. On transport failure the node
        stays busy.
        """
        node = self.store.node(node_id)
        if node.status is not NodeStatus.BUSY:
            raise InvalidTransition(
                f"Node '{node_id}' has no running job",
                {"node": node_id, "status": node.status.value},
            )
        job_id = node.job_id
        async with self.locks.hold(job_id, self.owner, wait=True, timeout=self.lock_timeout) as got:
            if not got:
                raise InvalidTransition(f"Job {job_id} is busy, try again", {"node": node_id, "job_id": job_id})
            try:
                await asyncio.to_thread(self._remote().cancel, job_id)
            except SchedulerError as e:
                logger.warning("scancel refused job %s of node %s: %s", job_id, node_id, e.message)
            if not self._still(node_id, NodeStatus.BUSY, job_id):
                return self.store.node(node_id)
            self._stop_poller(node_id)
            node = self.store.mark_cancelled(node_id)
        await self.persist()
        return node

    async def reset(self, node_id: str) -> StageNode:
        self._stop_poller(node_id)
        node = self.store.reset(node_id)
        await self.persist()
        return node

    async def delete_node(self, node_id: str) -> Optional[RemoteError]:
        """
        Delete a node, removing its artifacts on the cluster when it owns
        them. A failed cleanup is logged and returned; the node is removed
        anyway.
        """
        node = self.store.node(node_id)
        if node.status is NodeStatus.BUSY:
            raise InvalidTransition(
                f"Node '{node_id}' has a running job; cancel it before deleting",
                {"node": node_id, "job_id": node.job_id},
            )

        cleanup_error: Optional[RemoteError] = None
        if node.owns_artifacts and node.remote_path and node.job_id:
            try:
                await asyncio.to_thread(self._remote().remove_remote_files, node.remote_path)
            except RemoteIOError as e:
                if e.reason == "not_found":
                    logger.info("Artifacts of node %s were already gone: %s", node_id, node.remote_path)
                else:
                    logger.warning("Could not remove artifacts of node %s: %s", node_id, e.message)
                    cleanup_error = e
            except RemoteError as e:
                logger.warning("Could not remove artifacts of node %s: %s", node_id, e.message)
                cleanup_error = e

        self._stop_poller(node_id)
        self.store.remove_node(node_id)
        await self.persist()
        return cleanup_error

    async def report(self, node_id: str) -> JobReport:
        node = self.store.node(node_id)
        if not node.job_id:
            raise InvalidTransition(f"Node '{node_id}' has no job", {"node": node_id})
        return await asyncio.to_thread(self._remote().report, node.job_id)

    def job_info(self, node_id: str) -> JobInfo:
        node = self.store.node(node_id)
        if not node.job_id:
            raise InvalidTransition(f"Node '{node_id}' has no job", {"node": node_id})
        out, err = job_log_paths(self.workspace_path, node.job_id, f"workboard-{node.type.value}")
        return JobInfo(job_id=node.job_id, state=node.job_state or JobState.UNKNOWN, stdout_path=out, stderr_path=err)

    async def job_log(self, node_id: str, lines: int = 50, *, stderr: bool = False) -> str:
        info = self.job_info(node_id)
        path = info.stderr_path if stderr else info.stdout_path
        return await asyncio.to_thread(self._remote().head, path, lines)

    # ------------------------------------------------------------------
    # Pollers
    # ------------------------------------------------------------------

    def resume(self) -> int:
        """Start polling every busy node (after loading a snapshot). Returns how many."""
        if self.client is None:
            logger.warning("No remote client, not resuming pollers of %s", self.workspace_path)
            return 0
        busy = self.store.busy_nodes()
        for node in busy:
            self._start_poller(node.id, node.job_id)
        return len(busy)

    async def shutdown(self) -> None:
        tasks = list(self._pollers.values())
        self._pollers.clear()
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.persist()

    def polling(self, node_id: str) -> bool:
        task = self._pollers.get(node_id)
        return task is not None and not task.done()

    def _start_poller(self, node_id: str, job_id: str) -> None:
        self._stop_poller(node_id)
        task = asyncio.create_task(self._poll_loop(node_id, job_id), name=f"poll-{node_id}")
        self._pollers[node_id] = task
        task.add_done_callback(partial(self._poller_done, node_id))

    def _stop_poller(self, node_id: str) -> None:
        task = self._pollers.pop(node_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _poller_done(self, node_id: str, task: asyncio.Task) -> None:
        if self._pollers.get(node_id) is task:
            del self._pollers[node_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Poller of node %s crashed", node_id, exc_info=exc)

    async def _poll_loop(self, node_id: str, job_id: str) -> None:
        failures = 0
        delay = self.poll_interval
        while True:
            await self._sleep(delay)
            if not self._still(node_id, NodeStatus.BUSY, job_id):
                return
            try:
                node = await self.poll_once(node_id)
            except RemoteError as e:
                failures += 1
                if failures >= self.retry.max_failures:
                    logger.error("Giving up on job %s of node %s after %d failures: %s",
                                 job_id, node_id, failures, e.message)
                    if self._still(node_id, NodeStatus.BUSY, job_id):
                        self.store.mark_failed(node_id, f"Lost track of job {job_id}: {e.message}")
                        await self.persist()
                    return
                delay = self.retry.delay(failures, self.poll_interval)
                logger.warning("Poll of job %s failed (%d/%d), retrying in %.1fs: %s",
                               job_id, failures, self.retry.max_failures, delay, e.message)
                continue

            failures = 0
            delay = self.poll_interval
            if node is not None and node.status is not NodeStatus.BUSY:
                logger.info("Job %s of node %s finished: %s", job_id, node_id, node.job_state.value)
                return

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _remote(self) -> RemoteJobClient:
        if self.client is None:
            raise AuthError("No SSH identity configured for this workspace", {"workspace": self.workspace_path})
        return self.client

    def _not_submitting(self, node_id: str, action: str) -> None:
        if node_id in self._submitting:
            raise InvalidTransition(
                f"Cannot {action} node '{node_id}' while its job is being submitted",
                {"node": node_id},
            )

    def _still(self, node_id: str, status: NodeStatus, job_id: Optional[str] = None) -> bool:
        if not self.store.has_node(node_id):
            return False
        node = self.store.node(node_id)
        return node.status is status and (job_id is None or node.job_id == job_id)

    async def _apply(self, node_id: str, job_id: str, state: JobState) -> Optional[StageNode]:
        if not self._still(node_id, NodeStatus.BUSY, job_id):
            logger.debug("Discarding stale state %s for job %s", state.value, job_id)
            return None
        node = self.store.node(node_id)
        if state is node.job_state:
            return node
        node = self.store.apply_job_state(node_id, state, job_id=job_id)
        await self.persist()
        return node
