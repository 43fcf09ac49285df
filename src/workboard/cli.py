# cli.py
from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import contextmanager
from dataclasses import replace
from typing import Iterator

import click

from .errors import WorkboardError
from .remote.cache import SessionCache
from .remote.client import RemoteJobClient
from .remote.session import open_ssh_session, split_identity
from .runner import WorkflowRunner
from .server.db import make_engine, make_sessionmaker
from .server.persistence import SqlSnapshotRepository, init_db
from .server.settings import Settings, load_settings
from .snapshot import edge_to_dict, node_to_dict
from .store import WorkflowStore
from .ui.console import Console, get_console, set_console
from .workspace import create_remote_workspace


@contextmanager
def handle_errors() -> Iterator[None]:
    """Turn library errors into console output and an exit code."""
    console = get_console()
    try:
        yield
    except WorkboardError as e:
        console.print_error(
            e.kind,
            e.message,
            details=[f"{k}: {v}" for k, v in e.details.items()],
        )
        if console.debug:
            console.print_exception(e)
        sys.exit(1)
    except ValueError as e:
        console.print_error("Invalid argument", str(e))
        sys.exit(2)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)


@contextmanager
def remote_client(settings: Settings) -> Iterator[RemoteJobClient]:
    with SessionCache(open_ssh_session, ttl=settings.ssh_session_ttl) as cache:
        yield RemoteJobClient(cache, settings.identity(), command_timeout=settings.ssh_command_timeout)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--ssh", "target", default=None, help="user@host[:port] (defaults to WORKBOARD_SSH_* variables)")
@click.option("--key", "key_path", default=None, type=click.Path(dir_okay=False), help="Private key file")
@click.option("--database-url", default=None, help="Snapshot database (defaults to WORKBOARD_DATABASE_URL)")
@click.pass_context
def cli(ctx, debug, target, key_path, database_url):
    """workboard: run pipeline stages as SLURM jobs over SSH."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = load_settings()
    if target:
        try:
            user, host, port = split_identity(target, settings.ssh_port)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--ssh") from e
        settings = replace(settings, ssh_user=user, ssh_host=host, ssh_port=port)
    if key_path:
        settings = replace(settings, ssh_key_path=key_path)
    if database_url:
        settings = replace(settings, database_url=database_url)

    if settings.ssh_host:
        console.print_debug(f"SSH target {settings.ssh_user}@{settings.ssh_host}:{settings.ssh_port}")

    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = settings


# -------------------- Remote commands --------------------

@cli.command()
@click.pass_context
def check(ctx):
    """Open an SSH session and run a no-op command."""
    settings = ctx.obj["settings"]
    with handle_errors(), remote_client(settings) as client:
        client.check_connection()
        get_console().print_connected(str(client.identity))


@cli.command()
@click.argument("script", type=click.File("r"))
@click.pass_context
def submit(ctx, script):
    """Submit a batch SCRIPT file ('-' for stdin)."""
    settings = ctx.obj["settings"]
    text = script.read()
    with handle_errors(), remote_client(settings) as client:
        job_id = client.submit(text)
        get_console().print_submitted(job_id, str(client.identity))


@cli.command()
@click.argument("job_ids", nargs=-1, required=True)
@click.pass_context
def status(ctx, job_ids):
    """Print the scheduler state of JOB_IDS."""
    settings = ctx.obj["settings"]
    console = get_console()
    with handle_errors(), remote_client(settings) as client:
        for job_id in job_ids:
            console.print_job_state(job_id, client.poll(job_id).value)


@cli.command()
@click.argument("job_id")
@click.pass_context
def cancel(ctx, job_id):
    """Cancel JOB_ID. Already finished jobs are not an error."""
    settings = ctx.obj["settings"]
    with handle_errors(), remote_client(settings) as client:
        client.cancel(job_id)
        get_console().print_cancelled(job_id)


@cli.command()
@click.argument("job_id")
@click.pass_context
def report(ctx, job_id):
    """Show the accounting record of JOB_ID."""
    settings = ctx.obj["settings"]
    with handle_errors(), remote_client(settings) as client:
        get_console().print_report(client.report(job_id).to_dict())


@cli.command()
@click.argument("path")
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation")
@click.pass_context
def rm(ctx, path, yes):
    """Recursively remove a remote PATH."""
    settings = ctx.obj["settings"]
    if not yes:
        click.confirm(f"Remove {path} on the cluster?", abort=True)
    with handle_errors(), remote_client(settings) as client:
        client.remove_remote_files(path)
        get_console().print_removed(path)


@cli.command()
@click.argument("path")
@click.pass_context
def ls(ctx, path):
    """List a remote directory."""
    settings = ctx.obj["settings"]
    with handle_errors(), remote_client(settings) as client:
        get_console().print_listing(path, client.list_dir(path))


@cli.command()
@click.argument("path")
@click.option("-n", "--lines", default=20, show_default=True, type=click.IntRange(min=1))
@click.pass_context
def head(ctx, path, lines):
    """Print the first lines of a remote file (e.g. a job log)."""
    settings = ctx.obj["settings"]
    with handle_errors(), remote_client(settings) as client:
        click.echo(client.head(path, lines), nl=False)


@cli.command()
@click.pass_context
def partitions(ctx):
    """List the SLURM partitions with free CPUs and GPU counts."""
    settings = ctx.obj["settings"]
    with handle_errors(), remote_client(settings) as client:
        get_console().print_partitions(p.to_dict() for p in client.partitions())


# -------------------- Workspace commands --------------------

@cli.command()
@click.argument("workspace")
@click.option("--partition", required=True, help="Partition that runs the setup job")
@click.pass_context
def init(ctx, workspace, partition):
    """Create WORKSPACE on the cluster (log directory plus setup job)."""
    settings = ctx.obj["settings"]
    with handle_errors(), remote_client(settings) as client:
        job_id = create_remote_workspace(client, workspace, partition, settings.container())
        get_console().print_submitted(job_id, str(client.identity))


async def _load_store(settings: Settings, workspace: str):
    engine = make_engine(settings.database_url)
    await init_db(engine)
    repo = SqlSnapshotRepository(make_sessionmaker(engine))
    store = WorkflowStore.from_snapshot(workspace, await repo.load_snapshot(workspace))
    return engine, repo, store


async def _graph(settings: Settings, workspace: str) -> None:
    engine, _repo, store = await _load_store(settings, workspace)
    try:
        get_console().print_graph(
            workspace,
            [node_to_dict(n) for n in store.nodes],
            [edge_to_dict(e) for e in store.edges],
            store.topological_order(),
        )
    finally:
        await engine.dispose()


async def _watch(settings: Settings, workspace: str, interval: float) -> None:
    console = get_console()
    engine, repo, store = await _load_store(settings, workspace)
    try:
        with remote_client(settings) as client:
            runner = WorkflowRunner(
                store,
                client,
                container=settings.container(),
                repository=repo,
                poll_interval=interval,
            )
            console.print_info(f"Watching {len(store.busy_nodes())} running node(s) in {workspace}")
            while store.busy_nodes():
                for node in await runner.poll_all():
                    console.print_node(node_to_dict(node))
                if store.busy_nodes():
                    await asyncio.sleep(interval)
            await runner.persist()
        console.print_results({n.id: n.status.value for n in store.nodes if n.job_id})
    finally:
        await engine.dispose()


@cli.command()
@click.argument("workspace")
@click.pass_context
def graph(ctx, workspace):
    """Print the stage graph stored for WORKSPACE."""
    settings = ctx.obj["settings"]
    with handle_errors():
        asyncio.run(_graph(settings, workspace))


@cli.command()
@click.argument("workspace")
@click.option("--interval", default=None, type=float, help="Seconds between polls (defaults to WORKBOARD_POLL_INTERVAL)")
@click.pass_context
def watch(ctx, workspace, interval):
    """Poll the running stages of WORKSPACE until they all finish."""
    settings = ctx.obj["settings"]
    with handle_errors():
        asyncio.run(_watch(settings, workspace, interval or settings.poll_interval))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
