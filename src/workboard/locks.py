# locks.py
"""
Per-job mutual exclusion for submit / poll / cancel.

Polls use `try_acquire` and simply skip a round when the job is busy;
cancel uses `acquire` and waits. `RedisJobLocks` is a lease
(`SET key owner NX EX ttl`) so several server processes driving the same
cluster account do not interleave operations on one job, and a crashed
holder cannot block a job forever.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 120


def job_lock_key(job_id: str) -> str:
    return f"workboard:job_lock:{job_id}"


class JobLocks:
    async def try_acquire(self, job_id: str, owner: str) -> bool:
        raise NotImplementedError

    async def release(self, job_id: str, owner: str) -> None:
        raise NotImplementedError

    async def acquire(self, job_id: str, owner: str, timeout: Optional[float] = None) -> bool:
        """Wait for the lock. Returns False if `timeout` elapsed first."""
        deadline = None if timeout is None else time.monotonic() + timeout
        delay = 0.05
        while not await self.try_acquire(job_id, owner):
            if deadline is not None and time.monotonic() >= deadline:
                return False
            await asyncio.sleep(delay)
            delay = min(delay * 2, 1.0)
        return True

    @asynccontextmanager
    async def hold(
        self,
        job_id: str,
        owner: str,
        *,
        wait: bool = False,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[bool]:
        """
        Hold the job lock for the body. Yields False (and holds nothing)
        when the lock could not be taken.
        """
        if wait:
            got = await self.acquire(job_id, owner, timeout)
        else:
            got = await self.try_acquire(job_id, owner)
        try:
            yield got
        finally:
            if got:
                await self.release(job_id, owner)


class LocalJobLocks(JobLocks):
    """In-process locks, for a single server process."""

    def __init__(self):
        self._holders: Dict[str, str] = {}

    async def try_acquire(self, job_id: str, owner: str) -> bool:
        if job_id in self._holders:
            return False
        self._holders[job_id] = owner
        return True

    async def release(self, job_id: str, owner: str) -> None:
        if self._holders.get(job_id) == owner:
            del self._holders[job_id]

    def held(self, job_id: str) -> bool:
        return job_id in self._holders


class RedisJobLocks(JobLocks):
    """Redis leases shared by every process using the same Redis."""

    def __init__(self, client, *, lease_seconds: int = DEFAULT_LEASE_SECONDS):
        self.r = client
        self.lease_seconds = lease_seconds

    @classmethod
    def from_url(cls, url: str, *, lease_seconds: int = DEFAULT_LEASE_SECONDS) -> "RedisJobLocks":
        return cls(redis.from_url(url, decode_responses=True), lease_seconds=lease_seconds)

    async def try_acquire(self, job_id: str, owner: str) -> bool:
        got = await self.r.set(job_lock_key(job_id), owner, nx=True, ex=self.lease_seconds)
        return bool(got)

    async def release(self, job_id: str, owner: str) -> None:
        key = job_lock_key(job_id)
        holder = await self.r.get(key)
        if holder == owner:
            await self.r.delete(key)
        elif holder is not None:
            logger.warning("Job lock %s is held by %s, not releasing for %s", key, holder, owner)

    async def close(self) -> None:
        await self.r.aclose()
