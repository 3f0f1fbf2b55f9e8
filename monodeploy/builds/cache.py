"""Cache store for build results.

This module maps (target id, fingerprint) to the last successful
BuildResult, persisted across runs in the cache_entries table.

A lookup miss is not an error; it means the target must be built.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from monodeploy.builds.models import CacheEntry
from monodeploy.db import get_session
from monodeploy.types import BuildResult

logger = logging.getLogger(__name__)


class CacheStore(Protocol):
    """Read/write contract used by the resolver and the build adapter."""

    def get(self, target_id: str, fingerprint: str) -> BuildResult | None:
        """Return the cached result for this fingerprint, or None on a miss."""
        ...

    def put(self, target_id: str, fingerprint: str, result: BuildResult) -> None:
        """Record a result, replacing any previous entry for the target."""
        ...


class SqlCacheStore:
    """CacheStore backed by a SQLAlchemy database.

    Operations are serialized with a lock; each runs in its own transaction
    so results survive a failure later in the run.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory
        self._lock = threading.Lock()

    def get(self, target_id: str, fingerprint: str) -> BuildResult | None:
        """Return the successful result recorded for this fingerprint.

        Args:
            target_id: Target label.
            fingerprint: Current fingerprint of the target.

        Returns:
            BuildResult, or None if nothing matches.
        """
        with self._lock, get_session(self._session_factory) as session:
            entry = session.get(CacheEntry, target_id)
            if entry is None or entry.fingerprint != fingerprint or not entry.success:
                return None
            return entry.to_result()

    def put(self, target_id: str, fingerprint: str, result: BuildResult) -> None:
        """Record a result, replacing any previous entry for the target.

        Args:
            target_id: Target label.
            fingerprint: Fingerprint the result was produced from.
            result: Result to record.
        """
        with self._lock, get_session(self._session_factory) as session:
            entry = session.get(CacheEntry, target_id)
            if entry is None:
                entry = CacheEntry(target_id=target_id)
                session.add(entry)
            entry.fingerprint = fingerprint
            entry.reference = result.reference
            entry.built_at = result.built_at
            entry.success = result.success
        logger.debug("Cached %s -> %s", target_id, result.reference)

    def entries(self) -> list[CacheEntry]:
        """Return all cache entries ordered by target id."""
        with self._lock, get_session(self._session_factory) as session:
            stmt = select(CacheEntry).order_by(CacheEntry.target_id)
            return list(session.execute(stmt).scalars().all())

    def invalidate(self, target_id: str) -> bool:
        """Drop the entry for one target.

        Returns:
            True if an entry was removed.
        """
        with self._lock, get_session(self._session_factory) as session:
            result = session.execute(
                delete(CacheEntry).where(CacheEntry.target_id == target_id)
            )
            removed = bool(result.rowcount)
        if removed:
            logger.info("Invalidated cache entry for %s", target_id)
        return removed

    def clear(self) -> int:
        """Drop all entries.

        Returns:
            Number of entries removed.
        """
        with self._lock, get_session(self._session_factory) as session:
            result = session.execute(delete(CacheEntry))
            count = result.rowcount or 0
        logger.info("Cleared %d cache entries", count)
        return count


__all__ = ["CacheStore", "SqlCacheStore"]
