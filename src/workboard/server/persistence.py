from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ..errors import NotFound, WorkflowError
from .models import Base, WorkspaceState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkspaceInfo:
    path: str
    name: str
    favorite: bool
    created_at: datetime
    updated_at: datetime


def _info(row: WorkspaceState) -> WorkspaceInfo:
    return WorkspaceInfo(
        path=row.path,
        name=row.name,
        favorite=row.favorite,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _default_name(path: str) -> str:
    return posixpath.basename(path.rstrip("/")) or path


async def init_db(engine: AsyncEngine) -> None:
    """Create tables if they don't exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class SqlSnapshotRepository:
    """One snapshot string per workspace path, in the workspace_states table."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self.SessionLocal = sessionmaker

    async def load_snapshot(self, workspace_path: str) -> str:
        async with self.SessionLocal() as s:
            row = await s.get(WorkspaceState, workspace_path)
            return row.state if row is not None and row.state else ""

    async def save_snapshot(self, workspace_path: str, snapshot: str) -> None:
        async with self.SessionLocal() as s:
            async with s.begin():
                row = await s.get(WorkspaceState, workspace_path)
                if row is None:
                    s.add(WorkspaceState(path=workspace_path, name=_default_name(workspace_path), state=snapshot))
                else:
                    row.state = snapshot
        logger.debug("Saved snapshot of %s (%d bytes)", workspace_path, len(snapshot))

    async def create_workspace(self, workspace_path: str, name: Optional[str] = None) -> WorkspaceInfo:
        async with self.SessionLocal() as s:
            async with s.begin():
                if await s.get(WorkspaceState, workspace_path) is not None:
                    raise WorkflowError(f"Workspace {workspace_path} already exists", {"path": workspace_path})
                row = WorkspaceState(path=workspace_path, name=name or _default_name(workspace_path), state="")
                s.add(row)
            await s.refresh(row)
            return _info(row)

    async def get_workspace(self, workspace_path: str) -> WorkspaceInfo:
        async with self.SessionLocal() as s:
            row = await s.get(WorkspaceState, workspace_path)
            if row is None:
                raise NotFound(f"Workspace {workspace_path} not found", {"path": workspace_path})
            return _info(row)

    async def list_workspaces(self) -> List[WorkspaceInfo]:
        async with self.SessionLocal() as s:
            rows = (await s.execute(
                sa.select(WorkspaceState).order_by(WorkspaceState.favorite.desc(), WorkspaceState.updated_at.desc())
            )).scalars().all()
            return [_info(r) for r in rows]

    async def set_favorite(self, workspace_path: str, favorite: bool) -> WorkspaceInfo:
        async with self.SessionLocal() as s:
            async with s.begin():
                row = await s.get(WorkspaceState, workspace_path)
                if row is None:
                    raise NotFound(f"Workspace {workspace_path} not found", {"path": workspace_path})
                row.favorite = favorite
            await s.refresh(row)
            return _info(row)

    async def delete_workspace(self, workspace_path: str) -> None:
        async with self.SessionLocal() as s:
            async with s.begin():
                row = await s.get(WorkspaceState, workspace_path)
                if row is None:
                    raise NotFound(f"Workspace {workspace_path} not found", {"path": workspace_path})
                await s.delete(row)
