"""
Unit tests for impact_pool.orchestration.lock.CollectionLock.

Lock and store share one manual clock so staleness and TTL expiry can be
driven without sleeping.
"""
import dataclasses

import pytest

from impact_pool.config import DEFAULT_CONFIG
from impact_pool.errors import LockHeld
from impact_pool.orchestration.lock import LOCK_KEY, CollectionLock
from impact_pool.storage.store import FileStore


class ManualClock:
    def __init__(self, t: float = 5_000_000.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def lock(tmp_path, clock):
    config = dataclasses.replace(DEFAULT_CONFIG, lock_ttl_seconds=600, lock_stale_after_seconds=300)
    return CollectionLock(FileStore(str(tmp_path), clock=clock), config, clock=clock)


def test_acquire_is_exclusive(lock):
    """Only one holder at a time."""
    assert lock.acquire("run-a") is True
    assert lock.acquire("run-b") is False
    assert lock.get().holder == "run-a"


def test_release_by_non_holder_is_refused(lock):
    """A run that does not own the lock cannot release it."""
    lock.acquire("run-a")
    assert lock.release("run-b") is False
    assert lock.is_held()
    assert lock.release("run-a") is True
    assert not lock.is_held()


def test_lock_expires_after_ttl(lock, clock):
    """A crashed holder frees the lock once the TTL lapses."""
    lock.acquire("run-a")
    clock.t += 601
    assert lock.get() is None
    assert lock.acquire("run-b") is True


def test_extend_refreshes_ttl_for_holder_only(lock, clock):
    """Heartbeats keep a long run's lock alive; strangers cannot extend it."""
    lock.acquire("run-a")
    clock.t += 500
    assert lock.extend("run-b") is False
    assert lock.extend("run-a") is True
    clock.t += 500
    assert lock.get().holder == "run-a"


def test_staleness_and_clear_if_stale(lock, clock):
    """clear_if_stale is a no-op while fresh and reclaims once stale."""
    lock.acquire("run-a")
    clock.t += 100
    assert lock.is_stale() is False
    assert lock.clear_if_stale() is False

    clock.t += 250
    info = lock.get()
    assert info.stale is True
    assert info.age_seconds == pytest.approx(350)
    assert lock.clear_if_stale() is True
    assert lock.acquire("run-b") is True


def test_heartbeating_holder_is_not_stale(lock, clock):
    """A run that keeps extending stays fresh however long it has held the lock."""
    lock.acquire("run-a")
    for _ in range(4):
        clock.t += 100
        assert lock.extend("run-a") is True

    info = lock.get()
    assert info.age_seconds == pytest.approx(400)
    assert info.idle_seconds == pytest.approx(0)
    assert lock.is_stale() is False
    assert lock.clear_if_stale() is False

    clock.t += 301
    assert lock.is_stale() is True
    assert lock.clear_if_stale() is True
    assert not lock.is_held()


def test_force_clear_ignores_holder(lock):
    """Operators can always clear the lock."""
    lock.acquire("run-a")
    assert lock.force_clear() is True
    assert lock.force_clear() is False
    assert lock.acquire("run-b") is True


def test_hold_context_releases_on_error(lock):
    """The lock is released even when the body raises."""
    with pytest.raises(RuntimeError):
        with lock.hold("run-a"):
            assert lock.get().holder == "run-a"
            raise RuntimeError("boom")
    assert not lock.is_held()


def test_hold_raises_lock_held(lock):
    """hold() refuses to enter while another run holds the lock."""
    lock.acquire("run-a")
    with pytest.raises(LockHeld) as excinfo:
        with lock.hold("run-b"):
            pass
    assert excinfo.value.holder == "run-a"


def test_lock_record_shape(lock, tmp_path, clock):
    """The stored value carries holder and acquisition time."""
    lock.acquire("run-a")
    value = FileStore(str(tmp_path), clock=clock).get(LOCK_KEY)
    assert value["holder"] == "run-a"
    assert "acquired_at" in value
    assert value["heartbeat_at"] == value["acquired_at"]
