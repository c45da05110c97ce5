"""
impact_pool/orchestration/lock.py — System-wide collection lock.

A single store key holds ``{holder, acquired_at, heartbeat_at}`` with a
bounded TTL, so a crashed run frees the lock on its own after
``lock_ttl_seconds``. The active run extends the TTL and stamps
``heartbeat_at`` as it makes progress. Staleness is measured from the last
heartbeat, not from acquisition, so a long run that keeps heartbeating is
never reclaimed. Operators can inspect the lock, reclaim it once it is
stale, or force-clear it.

Exclusivity rests on the store's atomic create-if-absent (flock-guarded
write for the file store, SET NX EX for Redis). Release and extend are conditional on the
caller still being the holder.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from impact_pool.config import DEFAULT_CONFIG, ImpactPoolConfig
from impact_pool.errors import LockHeld
from impact_pool.storage.store import KeyValueStore

logger = logging.getLogger(__name__)

LOCK_KEY = "lock:collection"


@dataclass
class LockInfo:
    """Snapshot of the current lock."""

    holder: str
    acquired_at: float
    heartbeat_at: float
    age_seconds: float
    idle_seconds: float
    stale: bool

    def to_dict(self) -> dict:
        return {
            "holder": self.holder,
            "acquired_at": self.acquired_at,
            "heartbeat_at": self.heartbeat_at,
            "age_seconds": round(self.age_seconds, 1),
            "idle_seconds": round(self.idle_seconds, 1),
            "stale": self.stale,
        }


class CollectionLock:
    """TTL-bounded mutual exclusion over one store key.

    Args:
        store:  Shared KeyValueStore.
        config: lock_ttl_seconds and lock_stale_after_seconds.
        clock:  Epoch-seconds time source (must match the store's clock).
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: ImpactPoolConfig = DEFAULT_CONFIG,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._ttl = config.lock_ttl_seconds
        self._stale_after = config.lock_stale_after_seconds
        self._clock = clock

    def acquire(self, holder: str) -> bool:
        """Atomically take the lock for *holder*; False if already held."""
        now = self._clock()
        acquired = self._store.set_if_absent(
            LOCK_KEY,
            {"holder": holder, "acquired_at": now, "heartbeat_at": now},
            ttl_seconds=self._ttl,
        )
        if acquired:
            logger.info("Collection lock acquired by %s (ttl %ds)", holder, self._ttl)
        else:
            logger.info("Collection lock busy — %s not acquired", holder)
        return acquired

    def release(self, holder: str) -> bool:
        """Release the lock only if *holder* still owns it."""
        released = self._store.delete_if_field(LOCK_KEY, "holder", holder)
        if released:
            logger.info("Collection lock released by %s", holder)
        else:
            logger.warning("Lock release by %s ignored — not the current holder", holder)
        return released

    def extend(self, holder: str) -> bool:
        """Refresh the TTL for the current holder (heartbeat)."""
        return self._store.expire_if_field(
            LOCK_KEY, "holder", holder, self._ttl, updates={"heartbeat_at": self._clock()},
        )

    def get(self) -> Optional[LockInfo]:
        value = self._store.get(LOCK_KEY)
        if not value:
            return None
        now = self._clock()
        acquired_at = float(value.get("acquired_at", 0.0))
        heartbeat_at = float(value.get("heartbeat_at", acquired_at))
        idle = max(0.0, now - heartbeat_at)
        return LockInfo(
            holder=str(value.get("holder", "")),
            acquired_at=acquired_at,
            heartbeat_at=heartbeat_at,
            age_seconds=max(0.0, now - acquired_at),
            idle_seconds=idle,
            stale=idle > self._stale_after,
        )

    def is_held(self) -> bool:
        return self.get() is not None

    def is_stale(self) -> bool:
        """True if a lock exists and has not heartbeated within the stale threshold."""
        info = self.get()
        return info is not None and info.stale

    def force_clear(self) -> bool:
        """Operator override: delete the lock regardless of holder."""
        info = self.get()
        cleared = self._store.delete(LOCK_KEY)
        if cleared:
            logger.warning(
                "Collection lock force-cleared (holder=%s, age=%.0fs)",
                info.holder if info else "unknown",
                info.age_seconds if info else 0.0,
            )
        return cleared

    def clear_if_stale(self) -> bool:
        """Reclaim an abandoned lock; no-op while the holder is fresh."""
        info = self.get()
        if info is None or not info.stale:
            return False
        return self._store.delete_if_field(LOCK_KEY, "holder", info.holder)

    @contextmanager
    def hold(self, holder: str) -> Iterator[str]:
        """Scoped acquisition: released on every exit path.

        Raises:
            LockHeld: If the lock is already taken.
        """
        if not self.acquire(holder):
            info = self.get()
            raise LockHeld(info.holder if info else None)
        try:
            yield holder
        finally:
            self.release(holder)
