"""
PermissionCache -- process-local TTL cache of effective access sets.

Responsibility:
    Holds each user's effective role names and permission names for a
    bounded time so that hot paths (every workflow call authorizes) do not
    re-query the role tables.

Architecture position:
    Kernel > Services.  Owned by the process (the workflow facade keeps one
    instance) and shared by every PermissionEvaluator it creates.

Invariants enforced:
    - An entry is never served after ``ttl_seconds`` have elapsed on the
      injected clock.
    - ``invalidate`` removes the entry synchronously; the next read
      recomputes from the database.
    - All operations are thread-safe.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable
from uuid import UUID

from funding_kernel.domain.clock import Clock, SystemClock
from funding_kernel.logging_config import get_logger

logger = get_logger("services.permission_cache")

DEFAULT_TTL_SECONDS = 300


@dataclass(frozen=True)
class AccessSet:
    """Effective roles and permissions of one user at one moment."""

    user_id: UUID
    roles: frozenset[str]
    permissions: frozenset[str]


@dataclass(frozen=True)
class _Entry:
    access: AccessSet
    expires_at: datetime


class PermissionCache:
    """Thread-safe per-user cache with time-based expiry."""

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock: Clock | None = None):
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or SystemClock()
        self._entries: dict[UUID, _Entry] = {}
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    def get(self, user_id: UUID) -> AccessSet | None:
        """Return the cached access set, or None if absent or expired."""
        now = self._clock.now()
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            if now >= entry.expires_at:
                del self._entries[user_id]
                return None
            return entry.access

    def put(self, access: AccessSet) -> None:
        expires_at = self._clock.now() + self._ttl
        with self._lock:
            self._entries[access.user_id] = _Entry(access=access, expires_at=expires_at)

    def invalidate(self, user_id: UUID) -> None:
        with self._lock:
            removed = self._entries.pop(user_id, None)
        if removed is not None:
            logger.debug("permission_cache_invalidated", extra={"user_id": str(user_id)})

    def invalidate_many(self, user_ids: Iterable[UUID]) -> None:
        for user_id in user_ids:
            self.invalidate(user_id)

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("permission_cache_cleared", extra={"entries": count})

    def __contains__(self, user_id: UUID) -> bool:
        return self.get(user_id) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
