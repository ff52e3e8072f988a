"""Lock Manager — advisory, non-blocking locks per (project, session, operation).

Locks are never persisted: a process restart clears them all.  A lock
older than its ``stale_after`` is treated as abandoned and reclaimed by
the next acquisition attempt or by :meth:`LockManager.cleanup_stale`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Generator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from .errors import LockBusy, LockTimeout
from .telemetry import trace_lock

_log = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = 300.0


class OperationKind(StrEnum):
    COMPRESSION = "compression"
    IMPORT = "import"
    EXPORT = "export"
    COMPOSITION = "composition"


def resource_key(project_id: str, session_id: str, operation: OperationKind | str) -> str:
    return f"{project_id}:{session_id}:{OperationKind(operation).value}"


@dataclass
class LockToken:
    """Proof of holding a lock; pass it back to :meth:`LockManager.release`."""

    resource_key: str
    project_id: str
    session_id: str
    operation: OperationKind
    holder: str
    acquired_at: float
    stale_after: float
    pid: int = field(default_factory=os.getpid)
    token_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def age(self, now: float) -> float:
        return max(0.0, now - self.acquired_at)

    def is_stale(self, now: float) -> bool:
        return self.age(now) >= self.stale_after


@dataclass
class LockInfo:
    token: LockToken
    age_sec: float
    stale: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource_key": self.token.resource_key,
            "project_id": self.token.project_id,
            "session_id": self.token.session_id,
            "operation": self.token.operation.value,
            "holder": self.token.holder,
            "pid": self.token.pid,
            "acquired_at": self.token.acquired_at,
            "age_sec": round(self.age_sec, 3),
            "stale": self.stale,
        }


@dataclass
class LockStatus:
    locks: list[LockInfo] = field(default_factory=list)

    @property
    def stale_locks(self) -> list[LockInfo]:
        return [info for info in self.locks if info.stale]

    @property
    def total_active(self) -> int:
        return sum(1 for info in self.locks if not info.stale)

    @property
    def total_stale(self) -> int:
        return len(self.stale_locks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "locks": [info.to_dict() for info in self.locks],
            "total_active": self.total_active,
            "total_stale": self.total_stale,
        }


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class LockManager(ABC):
    """Abstract lock registry.  Swap in a lease-store backend for multi-host use."""

    @abstractmethod
    def acquire(
        self,
        project_id: str,
        session_id: str,
        operation: OperationKind | str,
        holder: str | None = None,
        stale_after: float | None = None,
    ) -> LockToken:
        """Take the lock or raise :class:`LockBusy` immediately (never queues)."""

    @abstractmethod
    def release(self, token: LockToken) -> bool:
        """Release *token*.  Returns False if it was no longer the holder."""

    @abstractmethod
    def status(self) -> LockStatus:
        """Snapshot of every registered lock, stale ones included."""

    @abstractmethod
    def cleanup_stale(self, max_age: float | None = None) -> int:
        """Drop stale locks (or locks older than *max_age*). Returns count reclaimed."""

    @abstractmethod
    def force_release(self, key: str) -> bool:
        """Drop the lock on *key* regardless of holder."""

    @abstractmethod
    def active_operations(
        self, project_id: str | None = None, session_id: str | None = None
    ) -> list[LockToken]:
        """Non-stale locks, optionally filtered by project and session."""

    def is_locked(
        self,
        project_id: str,
        session_id: str,
        operation: OperationKind | str | None = None,
    ) -> bool:
        ops = self.active_operations(project_id, session_id)
        if operation is None:
            return bool(ops)
        return any(t.operation == OperationKind(operation) for t in ops)

    @contextlib.contextmanager
    def hold(
        self,
        project_id: str,
        session_id: str,
        operation: OperationKind | str,
        holder: str | None = None,
    ) -> Generator[LockToken, None, None]:
        """Acquire for the duration of the block; released on every exit path."""
        token = self.acquire(project_id, session_id, operation, holder=holder)
        try:
            with trace_lock(token.resource_key):
                yield token
        finally:
            self.release(token)

    async def acquire_with_timeout(
        self,
        project_id: str,
        session_id: str,
        operation: OperationKind | str,
        timeout: float = 30.0,
        holder: str | None = None,
        initial_delay: float = 0.1,
        max_delay: float = 2.0,
    ) -> LockToken:
        """Retry :meth:`acquire` with exponential backoff until *timeout*."""
        deadline = time.monotonic() + timeout
        delay = initial_delay
        while True:
            try:
                return self.acquire(project_id, session_id, operation, holder=holder)
            except LockBusy as exc:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    key = resource_key(project_id, session_id, operation)
                    raise LockTimeout(key, timeout) from exc
                await asyncio.sleep(min(delay, remaining))
                delay = min(delay * 2, max_delay)


# ---------------------------------------------------------------------------
# In-process implementation
# ---------------------------------------------------------------------------


class InProcessLockManager(LockManager):
    """Mutex-guarded in-memory registry, suitable for a single host."""

    def __init__(
        self,
        stale_after: float = DEFAULT_STALE_AFTER,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._stale_after = stale_after
        self._clock = clock
        self._mutex = threading.Lock()
        self._locks: dict[str, LockToken] = {}

    @property
    def stale_after(self) -> float:
        return self._stale_after

    def acquire(
        self,
        project_id: str,
        session_id: str,
        operation: OperationKind | str,
        holder: str | None = None,
        stale_after: float | None = None,
    ) -> LockToken:
        op = OperationKind(operation)
        key = resource_key(project_id, session_id, op)
        with self._mutex:
            now = self._clock()
            existing = self._locks.get(key)
            if existing is not None:
                if not existing.is_stale(now):
                    raise LockBusy(key, existing.holder, existing.age(now))
                _log.warning(
                    "Reclaiming stale lock %s held by %s for %.1fs",
                    key, existing.holder, existing.age(now),
                )
            token = LockToken(
                resource_key=key,
                project_id=project_id,
                session_id=session_id,
                operation=op,
                holder=holder or f"pid-{os.getpid()}",
                acquired_at=now,
                stale_after=stale_after if stale_after is not None else self._stale_after,
            )
            self._locks[key] = token
        _log.debug("Acquired lock %s for %s", key, token.holder)
        return token

    def release(self, token: LockToken) -> bool:
        with self._mutex:
            current = self._locks.get(token.resource_key)
            if current is None or current.token_id != token.token_id:
                return False
            del self._locks[token.resource_key]
        _log.debug("Released lock %s", token.resource_key)
        return True

    def status(self) -> LockStatus:
        with self._mutex:
            now = self._clock()
            tokens = list(self._locks.values())
        return LockStatus(
            locks=[LockInfo(token=t, age_sec=t.age(now), stale=t.is_stale(now)) for t in tokens]
        )

    def cleanup_stale(self, max_age: float | None = None) -> int:
        with self._mutex:
            now = self._clock()
            doomed = [
                key
                for key, t in self._locks.items()
                if (t.age(now) >= max_age if max_age is not None else t.is_stale(now))
            ]
            for key in doomed:
                del self._locks[key]
        if doomed:
            _log.info("Reclaimed %d stale lock(s): %s", len(doomed), ", ".join(doomed))
        return len(doomed)

    def force_release(self, key: str) -> bool:
        with self._mutex:
            removed = self._locks.pop(key, None)
        if removed is not None:
            _log.warning("Force-released lock %s held by %s", key, removed.holder)
        return removed is not None

    def active_operations(
        self, project_id: str | None = None, session_id: str | None = None
    ) -> list[LockToken]:
        with self._mutex:
            now = self._clock()
            return [
                t
                for t in self._locks.values()
                if not t.is_stale(now)
                and (project_id is None or t.project_id == project_id)
                and (session_id is None or t.session_id == session_id)
            ]
