"""Tests for the in-process lock manager."""

from __future__ import annotations

import threading

import pytest
from conftest import FakeClock

from convmem.errors import LockBusy, LockTimeout
from convmem.locks import InProcessLockManager, LockManager, OperationKind, resource_key


def test_resource_key() -> None:
    assert resource_key("p", "s", "compression") == "p:s:compression"


def test_second_acquire_is_busy(clock: FakeClock) -> None:
    locks = InProcessLockManager(stale_after=60, clock=clock)
    token = locks.acquire("p", "s", OperationKind.COMPRESSION, holder="first")
    with pytest.raises(LockBusy, match="first"):
        locks.acquire("p", "s", OperationKind.COMPRESSION)
    assert locks.release(token) is True
    locks.acquire("p", "s", OperationKind.COMPRESSION)


def test_locks_are_per_session_and_operation(clock: FakeClock) -> None:
    locks = InProcessLockManager(clock=clock)
    locks.acquire("p", "a", "compression")
    locks.acquire("p", "b", "compression")
    locks.acquire("p", "a", "import")
    assert len(locks.active_operations("p")) == 3
    assert len(locks.active_operations("p", "a")) == 2


def test_stale_lock_is_reclaimed(clock: FakeClock) -> None:
    locks = InProcessLockManager(stale_after=60, clock=clock)
    old = locks.acquire("p", "s", "compression", holder="crashed")
    clock.advance(60)
    new = locks.acquire("p", "s", "compression", holder="fresh")
    assert new.holder == "fresh"
    # The crashed holder no longer owns the lock.
    assert locks.release(old) is False
    assert locks.release(new) is True


def test_concurrent_acquire_has_one_winner(clock: FakeClock) -> None:
    locks = InProcessLockManager(clock=clock)
    outcomes: list[str] = []
    barrier = threading.Barrier(8)

    def worker() -> None:
        barrier.wait()
        try:
            locks.acquire("p", "s", "compression")
            outcomes.append("ok")
        except LockBusy:
            outcomes.append("busy")

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert outcomes.count("ok") == 1
    assert outcomes.count("busy") == 7


def test_status_and_cleanup(clock: FakeClock) -> None:
    locks = InProcessLockManager(stale_after=60, clock=clock)
    locks.acquire("p", "a", "compression")
    clock.advance(61)
    locks.acquire("p", "b", "compression")
    status = locks.status()
    assert status.total_active == 1
    assert status.total_stale == 1
    assert status.to_dict()["locks"][0]["stale"] is True
    assert locks.cleanup_stale() == 1
    assert locks.status().total_stale == 0


def test_cleanup_with_max_age(clock: FakeClock) -> None:
    locks = InProcessLockManager(stale_after=600, clock=clock)
    locks.acquire("p", "a", "compression")
    clock.advance(30)
    assert locks.cleanup_stale(max_age=10) == 1


def test_force_release(clock: FakeClock) -> None:
    locks = InProcessLockManager(clock=clock)
    locks.acquire("p", "s", "export")
    assert locks.force_release("p:s:export") is True
    assert locks.force_release("p:s:export") is False
    assert not locks.is_locked("p", "s")


def test_hold_releases_on_error(clock: FakeClock) -> None:
    locks = InProcessLockManager(clock=clock)
    with pytest.raises(RuntimeError):
        with locks.hold("p", "s", "compression"):
            assert locks.is_locked("p", "s", "compression")
            raise RuntimeError("boom")
    assert not locks.is_locked("p", "s")


def test_in_process_manager_is_a_lock_manager() -> None:
    assert isinstance(InProcessLockManager(), LockManager)


@pytest.mark.asyncio
async def test_acquire_with_timeout(clock: FakeClock) -> None:
    locks = InProcessLockManager(clock=clock)
    locks.acquire("p", "s", "compression")
    with pytest.raises(LockTimeout):
        await locks.acquire_with_timeout("p", "s", "compression", timeout=0.05)


@pytest.mark.asyncio
async def test_acquire_with_timeout_waits_for_release(clock: FakeClock) -> None:
    import asyncio

    locks = InProcessLockManager(clock=clock)
    token = locks.acquire("p", "s", "compression")

    async def release_soon() -> None:
        await asyncio.sleep(0.05)
        locks.release(token)

    task = asyncio.create_task(release_soon())
    acquired = await locks.acquire_with_timeout("p", "s", "compression", timeout=2)
    await task
    assert acquired.resource_key == "p:s:compression"
