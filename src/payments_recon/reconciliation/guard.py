"""Exclusivity guards allowing one active run per (period, county) window."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database import RunLockRepository
from .errors import StorageError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 3600


class RunGuard(ABC):
    """Mutual exclusion over reconciliation windows."""

    @abstractmethod
    async def acquire(self, window_key: str, run_id: str) -> bool:
        """Try to take the window for a run. Never blocks on a held window.

        Returns:
            True if taken, False if another run holds it.
        """
        raise NotImplementedError

    @abstractmethod
    async def release(self, window_key: str, run_id: str) -> None:
        """Release the window if the run holds it."""
        raise NotImplementedError

    async def holder(self, window_key: str) -> Optional[str]:
        """Return the run currently holding the window, if known."""
        return None


class InMemoryRunGuard(RunGuard):
    """Process-local guard."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._holders: Dict[str, str] = {}

    async def acquire(self, window_key: str, run_id: str) -> bool:
        async with self._lock:
            if window_key in self._holders:
                return False
            self._holders[window_key] = run_id
            return True

    async def release(self, window_key: str, run_id: str) -> None:
        async with self._lock:
            if self._holders.get(window_key) == run_id:
                del self._holders[window_key]

    async def holder(self, window_key: str) -> Optional[str]:
        async with self._lock:
            return self._holders.get(window_key)


class DatabaseRunGuard(RunGuard):
    """Guard backed by leases in the ``reconciliation_locks`` table.

    Works across processes sharing the database. A lease that is never
    released (crashed holder) lapses after ``ttl_seconds``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
    ):
        self._session_factory = session_factory
        self.ttl_seconds = ttl_seconds

    async def acquire(self, window_key: str, run_id: str) -> bool:
        try:
            async with self._session_factory() as session:
                try:
                    acquired = await RunLockRepository(session).acquire(
                        window_key, run_id, self.ttl_seconds
                    )
                    await session.commit()
                except IntegrityError:
                    # Another process inserted the lease first
                    await session.rollback()
                    logger.warning(f"Lost lease race on {window_key} for run {run_id}")
                    return False
        except SQLAlchemyError as e:
            logger.error(f"Failed to acquire lease on {window_key}: {type(e).__name__}")
            raise StorageError(f"Unable to acquire run lease: {e}") from e
        return acquired

    async def release(self, window_key: str, run_id: str) -> None:
        try:
            async with self._session_factory() as session:
                await RunLockRepository(session).release(window_key, run_id)
                await session.commit()
        except SQLAlchemyError as e:
            # The lease lapses on its own after the TTL
            logger.error(
                f"Failed to release lease on {window_key} for run {run_id}: {type(e).__name__}"
            )

    async def holder(self, window_key: str) -> Optional[str]:
        async with self._session_factory() as session:
            lock = await RunLockRepository(session).get_by_key(window_key)
        if lock is None or lock.is_expired():
            return None
        return lock.run_id
