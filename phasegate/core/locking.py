"""Per-project single-writer locks.

A phase transition is a read-modify-write over project state, so every
advance/rollback for one project runs under that project's lock. Different
projects never contend.

This module provides:
- InMemoryProjectLock: asyncio locks for a single orchestrator process
- RedisProjectLock: distributed lock with owner token and a TTL refreshed while held
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import UTC, datetime
from typing import Protocol

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from phasegate.core.exceptions import ProjectLockTimeoutError

logger = structlog.get_logger(__name__)


class ProjectLock(Protocol):
    """Mutual exclusion boundary keyed by project id."""

    def lock(self, project_id: str, owner: str) -> AbstractAsyncContextManager[None]:
        """Async context manager holding the project lock.

        Raises:
            ProjectLockTimeoutError: If the lock is not acquired within the wait budget
        """
        ...


class InMemoryProjectLock:
    """One asyncio.Lock per project id, for single-process deployments.

    A project's lock is dropped once its last holder or waiter leaves.
    """

    def __init__(self, wait_timeout: float = 30.0):
        self.wait_timeout = wait_timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def is_locked(self, project_id: str) -> bool:
        lock = self._locks.get(project_id)
        return lock is not None and lock.locked()

    def tracked_projects(self) -> set[str]:
        """Project ids that currently have a holder or a waiter."""
        return set(self._locks)

    @asynccontextmanager
    async def lock(self, project_id: str, owner: str) -> AsyncGenerator[None, None]:
        project_lock = self._locks.setdefault(project_id, asyncio.Lock())
        self._users[project_id] = self._users.get(project_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(project_lock.acquire(), timeout=self.wait_timeout)
            except TimeoutError as e:
                logger.warning("project_lock_timeout", project_id=project_id, owner=owner)
                raise ProjectLockTimeoutError(project_id, self.wait_timeout) from e

            try:
                yield
            finally:
                project_lock.release()
        finally:
            self._users[project_id] -= 1
            if not self._users[project_id]:
                del self._users[project_id]
                del self._locks[project_id]


class RedisProjectLock:
    """Distributed project lock using Redis SET NX EX.

    The TTL bounds how long a crashed holder can block a project. A live
    holder keeps extending it every ``refresh_interval`` seconds (a third of
    the TTL by default), so a long advance never outlives its lock.
    """

    LOCK_PREFIX = "phasegate:project-lock:"
    DEFAULT_TTL = 600  # 10 minutes

    def __init__(
        self,
        redis: Redis,
        ttl: int | None = None,
        wait_timeout: float = 30.0,
        poll_interval: float = 0.1,
        refresh_interval: float | None = None,
    ):
        self.redis = redis
        self.ttl = ttl or self.DEFAULT_TTL
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval
        self.refresh_interval = refresh_interval or self.ttl / 3

    def _lock_key(self, project_id: str) -> str:
        return f"{self.LOCK_PREFIX}{project_id}"

    @staticmethod
    def _decode(value) -> str | None:
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def acquire(self, project_id: str, owner: str) -> bool:
        """Attempt to acquire the project lock once.

        Returns:
            True if acquired (or already held by this owner), False otherwise
        """
        key = self._lock_key(project_id)
        lock_value = f"{owner}|{datetime.now(UTC).isoformat()}"
        result = await self.redis.set(key, lock_value, nx=True, ex=self.ttl)

        if result:
            return True

        return await self.extend(project_id, owner)

    async def extend(self, project_id: str, owner: str) -> bool:
        """Reset the lock's TTL.

        Returns:
            True if extended, False if the lock is not held by owner
        """
        key = self._lock_key(project_id)
        current = self._decode(await self.redis.get(key))
        if current and current.startswith(f"{owner}|"):
            await self.redis.expire(key, self.ttl)
            return True
        return False

    async def release(self, project_id: str, owner: str) -> bool:
        """Release the lock if held by owner."""
        key = self._lock_key(project_id)
        current = self._decode(await self.redis.get(key))
        if current and current.startswith(f"{owner}|"):
            await self.redis.delete(key)
            return True
        return False

    async def holder(self, project_id: str) -> str | None:
        """Owner currently holding the lock, if any."""
        current = self._decode(await self.redis.get(self._lock_key(project_id)))
        if not current:
            return None
        return current.split("|", 1)[0]

    async def _keep_alive(self, project_id: str, owner: str) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval)
            try:
                extended = await self.extend(project_id, owner)
            except RedisError as e:
                logger.warning("project_lock_refresh_failed", project_id=project_id, owner=owner, error=str(e))
                continue
            if not extended:
                logger.error("project_lock_lost", project_id=project_id, owner=owner)
                return

    @asynccontextmanager
    async def lock(self, project_id: str, owner: str) -> AsyncGenerator[None, None]:
        deadline = time.monotonic() + self.wait_timeout
        acquired = await self.acquire(project_id, owner)
        while not acquired:
            if time.monotonic() >= deadline:
                logger.warning("project_lock_timeout", project_id=project_id, owner=owner)
                raise ProjectLockTimeoutError(project_id, self.wait_timeout)
            await asyncio.sleep(self.poll_interval)
            acquired = await self.acquire(project_id, owner)

        keep_alive = asyncio.create_task(self._keep_alive(project_id, owner))
        try:
            yield
        finally:
            keep_alive.cancel()
            await asyncio.gather(keep_alive, return_exceptions=True)
            await self.release(project_id, owner)
