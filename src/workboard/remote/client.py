# remote/client.py
from __future__ import annotations

import logging
import posixpath
import socket
import stat
from typing import Any, Callable, Dict, List, Optional, TypeVar

import paramiko

from ..errors import RemoteIOError, SchedulerError, SubmissionError, TransportError
from ..model import JobState
from . import slurm
from .cache import SessionCache
from .session import CommandResult, SSHIdentity

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSPORT_ERRORS = (socket.timeout, paramiko.SSHException, EOFError, OSError)

DEFAULT_COMMAND_TIMEOUT = 60.0


class RemoteJobClient:
    """
    Submit / poll / cancel batch jobs and touch remote files for one identity.

    Each call acquires the cached session and runs exactly one remote
    command. Transport failures evict the session (the next call reopens
    it) and surface as TransportError; there are no retries at this level.
    """

    def __init__(
        self,
        cache: SessionCache,
        identity: SSHIdentity,
        *,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ):
        self.cache = cache
        self.identity = identity
        self.command_timeout = command_timeout

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _with_session(self, what: str, fn: Callable[[Any], T]) -> T:
        session = self.cache.acquire(self.identity)
        try:
            return fn(session)
        except TRANSPORT_ERRORS as e:
            logger.warning("Transport failure during %s on %s: %s", what, self.identity, e)
            self.cache.evict(self.identity, session)
            raise TransportError(
                f"Connection to {self.identity} failed during {what}",
                {"operation": what, "cause": str(e) or type(e).__name__},
            ) from e

    def run(self, command: str, *, what: str = "command") -> CommandResult:
        return self._with_session(what, lambda s: s.run(command, timeout=self.command_timeout))

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    def check_connection(self) -> None:
        result = self.run("true", what="check")
        if not result.ok:
            raise TransportError(
                f"Remote shell on {self.identity} is not usable",
                {"exit_status": result.exit_status, "stderr": result.stderr.strip()},
            )

    def submit(self, script: str) -> str:
        """
        Submit a batch script, return the job id.

        Raises:
            SubmissionError: sbatch exited non-zero or printed no job id
            TransportError: the session broke
        """
        result = self.run(slurm.sbatch_command(script), what="submit")
        if not result.ok:
            raise SubmissionError(
                "sbatch rejected the job",
                {"exit_status": result.exit_status, "stderr": result.stderr.strip()},
            )
        job_id = slurm.parse_submit_output(result.stdout)
        if job_id is None:
            raise SubmissionError("Could not read a job id from sbatch output", {"stdout": result.stdout.strip()})
        logger.info("Submitted job %s on %s", job_id, self.identity)
        return job_id

    def poll(self, job_id: str) -> JobState:
        """
        Current state of a job. Falls back to accounting once the job has
        left the queue; UNKNOWN when neither source knows it.
        """
        result = self.run(slurm.squeue_command(job_id), what="poll")
        if result.ok:
            state = slurm.first_state(result.stdout)
            if state is not None:
                return state
        else:
            logger.debug("squeue for %s exited %s: %s", job_id, result.exit_status, result.stderr.strip())

        result = self.run(slurm.sacct_state_command(job_id), what="poll")
        if not result.ok:
            logger.info("sacct for %s exited %s: %s", job_id, result.exit_status, result.stderr.strip())
            return JobState.UNKNOWN
        return slurm.first_state(result.stdout) or JobState.UNKNOWN

    def cancel(self, job_id: str) -> None:
        """
        Cancel a job. A job that already finished counts as cancelled.

        Raises:
            SchedulerError: scancel refused for any other reason
        """
        result = self.run(slurm.scancel_command(job_id), what="cancel")
        if result.ok:
            logger.info("Cancelled job %s", job_id)
            return
        if slurm.cancel_is_noop(result.stderr):
            logger.info("Job %s had already finished: %s", job_id, result.stderr.strip())
            return
        raise SchedulerError(
            f"scancel failed for job {job_id}",
            {"exit_status": result.exit_status, "stderr": result.stderr.strip()},
        )

    def report(self, job_id: str) -> slurm.JobReport:
        result = self.run(slurm.sacct_report_command(job_id), what="report")
        if not result.ok:
            raise SchedulerError(
                f"sacct failed for job {job_id}",
                {"exit_status": result.exit_status, "stderr": result.stderr.strip()},
            )
        report = slurm.parse_report(job_id, result.stdout)
        if report is None:
            raise SchedulerError(f"No accounting record for job {job_id}")
        return report

    def partitions(self) -> List[slurm.Partition]:
        """
        Partitions visible to this account, with node, CPU and GPU counts.

        Raises:
            SchedulerError: sinfo failed
        """
        result = self.run(slurm.sinfo_command(), what="partitions")
        if not result.ok:
            raise SchedulerError(
                "sinfo failed",
                {"exit_status": result.exit_status, "stderr": result.stderr.strip()},
            )
        return slurm.parse_partitions(result.stdout)

    # ------------------------------------------------------------------
    # Remote files
    # ------------------------------------------------------------------

    def remove_remote_files(self, path: str) -> None:
        """
        Recursively remove `path`.

        Raises:
            RemoteIOError: reason is not_found, permission or failed
        """
        _check_removable(path)
        result = self.run(slurm.rm_command(path), what="remove")
        if result.ok:
            logger.info("Removed remote path %s", path)
            return
        raise RemoteIOError(
            f"Could not remove {path}",
            path=path,
            reason=_io_reason(result.stderr),
            exit_status=result.exit_status,
            details={"stderr": result.stderr.strip()},
        )

    def make_dirs(self, path: str) -> None:
        """
        Create `path` and its parents; an existing directory is fine.

        Raises:
            RemoteIOError: reason is refused, permission or failed
        """
        if not posixpath.isabs(path):
            raise RemoteIOError("Refusing to create a relative path", path=path, reason="refused")
        result = self.run(slurm.mkdir_command(path), what="mkdir")
        if not result.ok:
            raise RemoteIOError(
                f"Could not create {path}",
                path=path,
                reason=_io_reason(result.stderr),
                exit_status=result.exit_status,
                details={"stderr": result.stderr.strip()},
            )

    def head(self, path: str, lines: int = 20) -> str:
        if lines < 1:
            raise ValueError("lines must be >= 1")
        result = self.run(slurm.head_command(path, lines), what="head")
        if not result.ok:
            reason = "not_found" if "no such file" in result.stderr.lower() else "failed"
            raise RemoteIOError(
                f"Could not read {path}",
                path=path,
                reason=reason,
                exit_status=result.exit_status,
                details={"stderr": result.stderr.strip()},
            )
        return result.stdout

    def list_dir(self, path: str) -> List[Dict[str, str]]:
        """Non-hidden entries of a remote directory as {name, type} dicts, sorted by name."""

        def _list(session) -> List[Dict[str, str]]:
            sftp = session.sftp()
            try:
                try:
                    attrs = sftp.listdir_attr(path)
                except FileNotFoundError as e:
                    raise RemoteIOError(f"No such directory: {path}", path=path, reason="not_found") from e
                except PermissionError as e:
                    raise RemoteIOError(f"Permission denied: {path}", path=path, reason="permission") from e
            finally:
                sftp.close()
            entries = [
                {
                    "name": a.filename,
                    "type": "directory" if stat.S_ISDIR(a.st_mode or 0) else "file",
                }
                for a in attrs
                if not a.filename.startswith(".")
            ]
            return sorted(entries, key=lambda e: e["name"])

        return self._with_session("list", _list)


def _io_reason(stderr: str) -> str:
    lowered = stderr.lower()
    if "no such file" in lowered:
        return "not_found"
    if "permission denied" in lowered or "operation not permitted" in lowered:
        return "permission"
    return "failed"


def _check_removable(path: Optional[str]) -> None:
    if not path or not path.strip():
        raise RemoteIOError("Refusing to remove an empty path", path=path or "", reason="refused")
    if not posixpath.isabs(path):
        raise RemoteIOError("Refusing to remove a relative path", path=path, reason="refused")
    if posixpath.normpath(path).strip("/") == "":
        raise RemoteIOError("Refusing to remove the filesystem root", path=path, reason="refused")
