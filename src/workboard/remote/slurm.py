# remote/slurm.py
"""
SLURM command lines and the parsers for their output.

Everything here is pure text in / text out so it can be tested without a
cluster.
"""
from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..model import JobState

HEREDOC_MARKER = "WORKBOARD_EOF"

JOB_ID_RE = re.compile(r"^\d+(_\d+)?$")
_PARSABLE_RE = re.compile(r"^(\d+)(;\S+)?$")
_SUBMITTED_RE = re.compile(r"Submitted batch job (\d+)")

# partition, availability, node count, CPUs allocated/idle/other/total, GRES per node
SINFO_FIELDS = ("%R", "%a", "%D", "%C", "%G")
_GPU_GRES_RE = re.compile(r"^gpu(?::[\w.-]+)?:(\d+)")

REPORT_FIELDS = (
    "State",
    "Submit",
    "Start",
    "End",
    "Elapsed",
    "Partition",
    "NodeList",
    "AllocGRES",
    "NCPUS",
    "Reason",
    "ExitCode",
)

_STATE_WORDS: Dict[str, JobState] = {
    "PENDING": JobState.PENDING,
    "CONFIGURING": JobState.PENDING,
    "REQUEUED": JobState.PENDING,
    "REQUEUE_HOLD": JobState.PENDING,
    "REQUEUE_FED": JobState.PENDING,
    "RESV_DEL_HOLD": JobState.PENDING,
    "RUNNING": JobState.RUNNING,
    "COMPLETING": JobState.RUNNING,
    "SUSPENDED": JobState.RUNNING,
    "STAGE_OUT": JobState.RUNNING,
    "SIGNALING": JobState.RUNNING,
    "RESIZING": JobState.RUNNING,
    "STOPPED": JobState.RUNNING,
    "COMPLETED": JobState.COMPLETED,
    "FAILED": JobState.FAILED,
    "TIMEOUT": JobState.FAILED,
    "NODE_FAIL": JobState.FAILED,
    "OUT_OF_MEMORY": JobState.FAILED,
    "BOOT_FAIL": JobState.FAILED,
    "DEADLINE": JobState.FAILED,
    "PREEMPTED": JobState.FAILED,
    "SPECIAL_EXIT": JobState.FAILED,
    "REVOKED": JobState.FAILED,
    "CANCELLED": JobState.CANCELLED,
}

_STATE_CODES: Dict[str, JobState] = {
    "PD": JobState.PENDING,
    "CF": JobState.PENDING,
    "RQ": JobState.PENDING,
    "R": JobState.RUNNING,
    "CG": JobState.RUNNING,
    "S": JobState.RUNNING,
    "SO": JobState.RUNNING,
    "ST": JobState.RUNNING,
    "CD": JobState.COMPLETED,
    "F": JobState.FAILED,
    "TO": JobState.FAILED,
    "NF": JobState.FAILED,
    "OOM": JobState.FAILED,
    "BF": JobState.FAILED,
    "DL": JobState.FAILED,
    "PR": JobState.FAILED,
    "CA": JobState.CANCELLED,
}

# scancel answers that mean "nothing left to cancel"
_CANCEL_NOOP_RE = re.compile(
    r"already (completed|completing|finished|done)|job is completing|invalid job id",
    re.IGNORECASE,
)


def check_job_id(job_id: str) -> str:
    job_id = str(job_id).strip()
    if not JOB_ID_RE.match(job_id):
        raise ValueError(f"Invalid job id: {job_id!r}")
    return job_id


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

def sbatch_command(script: str) -> str:
    """sbatch reading the script from a quoted heredoc (no expansion of $vars)."""
    if any(line.strip() == HEREDOC_MARKER for line in script.splitlines()):
        raise ValueError(f"Script may not contain the line {HEREDOC_MARKER}")
    body = script if script.endswith("\n") else script + "\n"
    return f"sbatch --parsable <<'{HEREDOC_MARKER}'\n{body}{HEREDOC_MARKER}\n"


def squeue_command(job_id: str) -> str:
    return f"squeue -h -j {check_job_id(job_id)} -o %T"


def sacct_state_command(job_id: str) -> str:
    return f"sacct -j {check_job_id(job_id)} -X -n -P -o State"


def sacct_report_command(job_id: str) -> str:
    return f"sacct -j {check_job_id(job_id)} -X -n -P -o {','.join(REPORT_FIELDS)}"


def scancel_command(job_id: str) -> str:
    return f"scancel {check_job_id(job_id)}"


def rm_command(path: str) -> str:
    return f"rm -r -- {shlex.quote(path)}"


def head_command(path: str, lines: int) -> str:
    return f"head -n {int(lines)} -- {shlex.quote(path)}"


def mkdir_command(path: str) -> str:
    return f"mkdir -p -- {shlex.quote(path)}"


def sinfo_command() -> str:
    return f"sinfo -h -o {shlex.quote('|'.join(SINFO_FIELDS))}"


# ----------------------------------------------------------------------
# Parsers
# ----------------------------------------------------------------------

def parse_submit_output(stdout: str) -> Optional[str]:
    """Job id from `sbatch --parsable` (`N` or `N;cluster`) or plain sbatch output."""
    for line in stdout.splitlines():
        line = line.strip()
        m = _PARSABLE_RE.match(line)
        if m:
            return m.group(1)
        m = _SUBMITTED_RE.search(line)
        if m:
            return m.group(1)
    return None


def parse_state(text: str) -> JobState:
    """
    Map one scheduler state to a JobState.

    Accepts long names, suffixed forms ("CANCELLED by 1234", "COMPLETED+")
    and squeue short codes. Anything else is UNKNOWN.
    """
    text = (text or "").strip().upper()
    if not text:
        return JobState.UNKNOWN
    word = text.split()[0].rstrip("+")
    if word in _STATE_WORDS:
        return _STATE_WORDS[word]
    return _STATE_CODES.get(word, JobState.UNKNOWN)


def first_state(stdout: str) -> Optional[JobState]:
    """State of the first non-empty output line, None for empty output."""
    for line in stdout.splitlines():
        if line.strip():
            return parse_state(line)
    return None


def cancel_is_noop(stderr: str) -> bool:
    return bool(_CANCEL_NOOP_RE.search(stderr or ""))


@dataclass(frozen=True)
class JobReport:
    job_id: str
    state: JobState
    raw_state: str
    submit: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None
    elapsed: Optional[str] = None
    partition: Optional[str] = None
    node_list: Optional[str] = None
    alloc_gres: Optional[str] = None
    ncpus: Optional[int] = None
    reason: Optional[str] = None
    exit_code: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "jobId": self.job_id,
            "state": self.state.value,
            "rawState": self.raw_state,
            "submit": self.submit,
            "start": self.start,
            "end": self.end,
            "elapsed": self.elapsed,
            "partition": self.partition,
            "nodeList": self.node_list,
            "allocGres": self.alloc_gres,
            "ncpus": self.ncpus,
            "reason": self.reason,
            "exitCode": self.exit_code,
        }


def _blank(value: str) -> Optional[str]:
    value = value.strip()
    return None if value in ("", "Unknown", "None", "(null)") else value


def parse_report(job_id: str, stdout: str) -> Optional[JobReport]:
    """First sacct line with the expected field count, None when sacct printed nothing usable."""
    for line in stdout.splitlines():
        parts = line.split("|")
        if len(parts) != len(REPORT_FIELDS):
            continue
        row = dict(zip(REPORT_FIELDS, parts))
        ncpus = row["NCPUS"].strip()
        return JobReport(
            job_id=job_id,
            state=parse_state(row["State"]),
            raw_state=row["State"].strip(),
            submit=_blank(row["Submit"]),
            start=_blank(row["Start"]),
            end=_blank(row["End"]),
            elapsed=_blank(row["Elapsed"]),
            partition=_blank(row["Partition"]),
            node_list=_blank(row["NodeList"]),
            alloc_gres=_blank(row["AllocGRES"]),
            ncpus=int(ncpus) if ncpus.isdigit() else None,
            reason=_blank(row["Reason"]),
            exit_code=_blank(row["ExitCode"]),
        )
    return None


@dataclass
class Partition:
    name: str
    available: bool = False
    nodes: int = 0
    cpus_free: int = 0
    cpus_total: int = 0
    gpus_total: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "partition": self.name,
            "available": self.available,
            "nodes": self.nodes,
            "cpus": {"free": self.cpus_free, "max": self.cpus_total},
            "gpus": {"max": self.gpus_total},
        }


def _gpus_per_node(gres: str) -> int:
    total = 0
    for item in gres.split(","):
        m = _GPU_GRES_RE.match(item.strip())
        if m:
            total += int(m.group(1))
    return total


def parse_partitions(stdout: str) -> List[Partition]:
    """
    Partitions from `sinfo_command()` output, in the order sinfo lists them.

    sinfo prints one line per group of alike nodes, so a partition can span
    several lines; their counts are summed. Malformed lines are skipped.
    """
    partitions: Dict[str, Partition] = {}
    for line in stdout.splitlines():
        parts = [p.strip() for p in line.split("|")]
        if len(parts) != len(SINFO_FIELDS) or not parts[0]:
            continue
        name, avail, nodes, cpus, gres = parts
        counts = cpus.split("/")
        if not nodes.isdigit() or len(counts) != 4 or not all(c.isdigit() for c in counts):
            continue
        p = partitions.setdefault(name, Partition(name))
        p.available = p.available or avail == "up"
        p.nodes += int(nodes)
        p.cpus_free += int(counts[1])
        p.cpus_total += int(counts[3])
        p.gpus_total += _gpus_per_node(gres) * int(nodes)
    return list(partitions.values())
