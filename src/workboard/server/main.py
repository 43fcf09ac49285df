from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..errors import (
    AuthError,
    InvalidConfiguration,
    InvalidConnection,
    NotFound,
    RemoteError,
    WorkboardError,
)
from ..locks import JobLocks, LocalJobLocks, RedisJobLocks
from ..model import Position, StageType
from ..remote.cache import SessionCache
from ..remote.client import RemoteJobClient
from ..remote.session import open_ssh_session
from ..runner import RetryPolicy, WorkflowRunner
from ..snapshot import edge_to_dict, node_to_dict
from ..store import WorkflowStore
from ..workspace import create_remote_workspace, remove_remote_workspace
from .db import make_engine, make_sessionmaker
from .persistence import SqlSnapshotRepository, init_db
from .settings import Settings, load_settings

logger = logging.getLogger(__name__)

# -------------------- Schemas --------------------

class CreateWorkspaceRequest(BaseModel):
    path: str = Field(min_length=2)
    name: Optional[str] = None
    # also create the tree on the cluster, running the setup job on this partition
    partition: Optional[str] = None

class FavoriteRequest(BaseModel):
    path: str
    favorite: bool

class WorkspaceResponse(BaseModel):
    path: str
    name: str
    favorite: bool
    created_at: str
    updated_at: str

class CreatedWorkspaceResponse(WorkspaceResponse):
    job_id: Optional[str] = Field(default=None, serialization_alias="jobId")

class PositionBody(BaseModel):
    x: float = 0.0
    y: float = 0.0

class CreateNodeRequest(BaseModel):
    type: StageType
    position: PositionBody = Field(default_factory=PositionBody)

class ConfigureRequest(BaseModel):
    form: Dict[str, Any]

class CreateEdgeRequest(BaseModel):
    source: str
    target: str


def status_for(exc: WorkboardError) -> int:
    if isinstance(exc, AuthError):
        return 401
    if isinstance(exc, RemoteError):
        return 502
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, (InvalidConfiguration, InvalidConnection)):
        return 400
    return 409


def _workspace(info) -> WorkspaceResponse:
    return WorkspaceResponse(
        path=info.path,
        name=info.name,
        favorite=info.favorite,
        created_at=info.created_at.isoformat(),
        updated_at=info.updated_at.isoformat(),
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    client: Optional[RemoteJobClient] = None,
    repository: Optional[SqlSnapshotRepository] = None,
    locks: Optional[JobLocks] = None,
) -> FastAPI:
    """
    Build the HTTP app. Remote client, repository and locks default to the
    ones described by `settings`; tests pass their own.
    """
    settings = settings or load_settings()
    cache = SessionCache(open_ssh_session, ttl=settings.ssh_session_ttl)
    engine = None
    if repository is None:
        engine = make_engine(settings.database_url)
        repository = SqlSnapshotRepository(make_sessionmaker(engine))
    if locks is None:
        if settings.redis_url:
            locks = RedisJobLocks.from_url(settings.redis_url, lease_seconds=settings.job_lock_seconds)
        else:
            locks = LocalJobLocks()

    runners: Dict[str, WorkflowRunner] = {}
    runners_lock = asyncio.Lock()

    def remote() -> RemoteJobClient:
        nonlocal client
        if client is None:
            try:
                identity = settings.identity()
            except ValueError as e:
                raise AuthError("No SSH identity configured", {"cause": str(e)}) from e
            client = RemoteJobClient(cache, identity, command_timeout=settings.ssh_command_timeout)
        return client

    def remote_or_none() -> Optional[RemoteJobClient]:
        if client is None and not (settings.ssh_host and settings.ssh_user):
            return None
        return remote()

    async def runner_for(path: str) -> WorkflowRunner:
        async with runners_lock:
            runner = runners.get(path)
            if runner is None:
                await repository.get_workspace(path)
                store = WorkflowStore.from_snapshot(path, await repository.load_snapshot(path))
                runner = WorkflowRunner(
                    store,
                    remote_or_none(),
                    container=settings.container(),
                    repository=repository,
                    locks=locks,
                    poll_interval=settings.poll_interval,
                    retry=RetryPolicy(max_failures=settings.poll_max_failures),
                )
                resumed = runner.resume()
                if resumed:
                    logger.info("Resumed polling of %d job(s) in %s", resumed, path)
                runners[path] = runner
            return runner

    async def drop_runner(path: str) -> None:
        async with runners_lock:
            runner = runners.pop(path, None)
        if runner is not None:
            await runner.shutdown()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if engine is not None:
            await init_db(engine)
        with cache:
            yield
            for path in list(runners):
                await drop_runner(path)
        if isinstance(locks, RedisJobLocks):
            await locks.close()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title="Workboard", lifespan=lifespan)
    app.state.settings = settings
    app.state.cache = cache
    app.state.repository = repository
    app.state.runners = runners

    @app.exception_handler(WorkboardError)
    async def workboard_error(request: Request, exc: WorkboardError):
        return JSONResponse(status_code=status_for(exc), content=exc.to_dict())

    # -------------------- Workspaces --------------------

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.get("/workspaces", response_model=list[WorkspaceResponse])
    async def list_workspaces():
        return [_workspace(w) for w in await repository.list_workspaces()]

    @app.post("/workspaces", response_model=CreatedWorkspaceResponse, status_code=201)
    async def create_workspace(req: CreateWorkspaceRequest):
        path = req.path.rstrip("/")
        info = await repository.create_workspace(path, req.name)
        job_id = None
        if req.partition is not None:
            try:
                job_id = await asyncio.to_thread(
                    create_remote_workspace, remote(), path, req.partition, settings.container()
                )
            except WorkboardError:
                await repository.delete_workspace(path)
                raise
        return CreatedWorkspaceResponse(**_workspace(info).model_dump(), job_id=job_id)

    @app.post("/workspaces/favorite", response_model=WorkspaceResponse)
    async def set_favorite(req: FavoriteRequest):
        return _workspace(await repository.set_favorite(req.path, req.favorite))

    @app.delete("/workspaces")
    async def delete_workspace(path: str = Query(...), keep_files: bool = Query(False, alias="keepFiles")):
        await repository.get_workspace(path)
        await drop_runner(path)
        found = True
        if not keep_files:
            found = await asyncio.to_thread(remove_remote_workspace, remote(), path)
        await repository.delete_workspace(path)
        warning = None if found else "Workspace path not found on the cluster. State removed from database."
        return {"ok": True, "warning": warning}

    # -------------------- Graph --------------------

    @app.get("/graph")
    async def get_graph(path: str = Query(...)):
        store = (await runner_for(path)).store
        return {
            "nodes": [node_to_dict(n) for n in store.nodes],
            "edges": [edge_to_dict(e) for e in store.edges],
            "order": store.topological_order(),
        }

    @app.post("/nodes", status_code=201)
    async def add_node(req: CreateNodeRequest, path: str = Query(...)):
        runner = await runner_for(path)
        node = await runner.add_node(req.type, Position(req.position.x, req.position.y))
        return node_to_dict(node)

    @app.put("/nodes/{node_id}/position")
    async def move_node(node_id: str, req: PositionBody, path: str = Query(...)):
        runner = await runner_for(path)
        return node_to_dict(await runner.move_node(node_id, Position(req.x, req.y)))

    @app.put("/nodes/{node_id}/form")
    async def configure_node(node_id: str, req: ConfigureRequest, path: str = Query(...)):
        runner = await runner_for(path)
        return node_to_dict(await runner.configure(node_id, req.form))

    @app.post("/nodes/{node_id}/submit")
    async def submit_node(node_id: str, path: str = Query(...)):
        runner = await runner_for(path)
        return node_to_dict(await runner.submit(node_id))

    @app.post("/nodes/{node_id}/poll")
    async def poll_node(node_id: str, path: str = Query(...)):
        runner = await runner_for(path)
        await runner.poll_once(node_id)
        return node_to_dict(runner.store.node(node_id))

    @app.post("/nodes/{node_id}/cancel")
    async def cancel_node(node_id: str, path: str = Query(...)):
        runner = await runner_for(path)
        return node_to_dict(await runner.cancel(node_id))

    @app.post("/nodes/{node_id}/reset")
    async def reset_node(node_id: str, path: str = Query(...)):
        runner = await runner_for(path)
        return node_to_dict(await runner.reset(node_id))

    @app.delete("/nodes/{node_id}")
    async def delete_node(node_id: str, path: str = Query(...)):
        runner = await runner_for(path)
        cleanup_error = await runner.delete_node(node_id)
        return {
            "ok": True,
            "cleanupError": cleanup_error.to_dict() if cleanup_error is not None else None,
        }

    @app.get("/nodes/{node_id}/report")
    async def node_report(node_id: str, path: str = Query(...)):
        runner = await runner_for(path)
        return (await runner.report(node_id)).to_dict()

    @app.get("/nodes/{node_id}/log")
    async def node_log(
        node_id: str,
        path: str = Query(...),
        lines: int = Query(50, ge=1, le=5000),
        stderr: bool = False,
    ):
        runner = await runner_for(path)
        return {"text": await runner.job_log(node_id, lines, stderr=stderr)}

    @app.post("/edges", status_code=201)
    async def add_edge(req: CreateEdgeRequest, path: str = Query(...)):
        runner = await runner_for(path)
        return edge_to_dict(await runner.add_edge(req.source, req.target))

    @app.delete("/edges/{edge_id}")
    async def delete_edge(edge_id: str, path: str = Query(...)):
        runner = await runner_for(path)
        await runner.remove_edge(edge_id)
        return {"ok": True}

    # -------------------- Remote filesystem --------------------

    @app.get("/partitions")
    async def list_partitions():
        partitions = await asyncio.to_thread(remote().partitions)
        return {"partitions": [p.to_dict() for p in partitions]}

    @app.get("/remote/ls")
    async def list_remote(dir: str = Query(..., min_length=1)):
        return {"path": dir, "entries": await asyncio.to_thread(remote().list_dir, dir)}

    return app
