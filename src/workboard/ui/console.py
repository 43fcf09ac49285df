"""Console output formatting for the workboard CLI."""

from __future__ import annotations

import sys
from typing import Iterable, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_connected(self, target: str) -> None:
        print(f"CONNECTED: {target}")

    def print_submitted(self, job_id: str, target: str) -> None:
        """Print job submission message."""
        print(f"SUBMITTED: job {job_id} on {target}")

    def print_job_state(self, job_id: str, state: str) -> None:
        print(f"JOB {job_id}: {state}")

    def print_cancelled(self, job_id: str) -> None:
        print(f"CANCELLED: job {job_id}")

    def print_removed(self, path: str) -> None:
        print(f"REMOVED: {path}")

    def print_report(self, report: dict) -> None:
        """Print a job accounting record, skipping empty fields."""
        self.print_header(f"JOB {report.get('jobId')}")
        for key, value in report.items():
            if key == "jobId" or value is None:
                continue
            print(f"  {key}: {value}")

    def print_listing(self, path: str, entries: Iterable[dict]) -> None:
        self.print_header(path)
        for entry in entries:
            suffix = "/" if entry.get("type") == "directory" else ""
            print(f"  {entry.get('name')}{suffix}")

    def print_partitions(self, partitions: Iterable[dict]) -> None:
        self.print_header("PARTITIONS")
        for p in partitions:
            state = "up" if p.get("available") else "down"
            cpus, gpus = p.get("cpus", {}), p.get("gpus", {})
            print(
                f"  {p.get('partition')} ({state}) nodes={p.get('nodes')} "
                f"cpus={cpus.get('free')}/{cpus.get('max')} gpus={gpus.get('max')}"
            )

    def print_node(self, node: dict) -> None:
        """Print one workflow node line."""
        data = node.get("data", {})
        line = f"  {node.get('id')} [{node.get('type')}] {data.get('status')}"
        if data.get("jobId"):
            line += f" job={data['jobId']}"
            if data.get("jobState"):
                line += f" ({data['jobState']})"
        print(line)
        if data.get("message") and self.debug:
            print(f"      {data['message']}")

    def print_graph(self, workspace: str, nodes: list, edges: list, order: list) -> None:
        """Print nodes in topological order followed by their edges."""
        self.print_header(f"WORKSPACE {workspace}")
        by_id = {n.get("id"): n for n in nodes}
        for node_id in order:
            self.print_node(by_id[node_id])
        if edges:
            print("\nEDGES")
            for e in edges:
                print(f"  {e.get('source')} -> {e.get('target')}")

    def print_results(self, results: dict[str, str]) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for job, status in results.items():
            print(f"  {job}: {status.upper()}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
