"""
impact_pool/storage/repository.py — Typed access to the durable store.

Key layout (all JSON values):

    activity:{owner/name}            ActivityRecord            no expiry
    metrics:{owner/name}             ComputedMetrics           metrics_cache_ttl_seconds
    status:{run_id}                  CollectionStatus          status_ttl_seconds
    status:latest                    {"run_id": ...}           status_ttl_seconds
    errors:{run_id}                  [CollectionError, ...]    status_ttl_seconds
    allocation:{allocation_id}       QuarterlyAllocation       no expiry, write-once
    allocation:period:{period}       {"allocation_id": ...}    latest run in the period
    allocation:latest                {"allocation_id": ...}
    scores:{period}                  {library: {ef..ma}}       smoothing baseline
    meta:last_updated                {"timestamp": ...}

Decoding failures of stored records are reported as PersistenceError.
"""

import logging
from typing import Optional

from impact_pool.config import DEFAULT_CONFIG, ImpactPoolConfig
from impact_pool.errors import PersistenceError
from impact_pool.ingestion.activity import ActivityRecord
from impact_pool.metrics.allocation import QuarterlyAllocation
from impact_pool.metrics.window import ComputedMetrics
from impact_pool.orchestration.status import CollectionStatus
from impact_pool.storage.store import KeyValueStore

logger = logging.getLogger(__name__)


class ImpactRepository:
    """Engine-level persistence over a KeyValueStore.

    Args:
        store:  Backend shared by every engine process.
        config: TTLs for cached and transient records.
    """

    def __init__(self, store: KeyValueStore, config: ImpactPoolConfig = DEFAULT_CONFIG) -> None:
        self.store = store
        self._config = config

    # ── Activity records ──────────────────────────────────────────────────────

    def get_activity(self, library: str) -> Optional[ActivityRecord]:
        data = self.store.get(f"activity:{library}")
        if data is None:
            return None
        try:
            return ActivityRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Stored activity for {library} is unreadable: {exc}") from exc

    def put_activity(self, record: ActivityRecord) -> None:
        self.store.set(f"activity:{record.library}", record.to_dict())

    # ── Metrics cache ─────────────────────────────────────────────────────────

    def get_metrics(self, library: str) -> Optional[ComputedMetrics]:
        """Cached metrics, or None. A corrupt entry is a cache miss."""
        data = self.store.get(f"metrics:{library}")
        if data is None:
            return None
        try:
            return ComputedMetrics.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding unreadable cached metrics for %s", library)
            return None

    def put_metrics(self, metrics: ComputedMetrics) -> None:
        self.store.set(
            f"metrics:{metrics.library}",
            metrics.to_dict(),
            ttl_seconds=self._config.metrics_cache_ttl_seconds,
        )

    # ── Run status & errors ───────────────────────────────────────────────────

    def put_status(self, status: CollectionStatus) -> None:
        ttl = self._config.status_ttl_seconds
        self.store.set(f"status:{status.run_id}", status.to_dict(), ttl_seconds=ttl)
        self.store.set("status:latest", {"run_id": status.run_id}, ttl_seconds=ttl)

    def get_status(self, run_id: Optional[str] = None) -> Optional[CollectionStatus]:
        """Status of *run_id*, or of the most recent run when None."""
        if run_id is None:
            pointer = self.store.get("status:latest")
            if not pointer:
                return None
            run_id = pointer.get("run_id")
        data = self.store.get(f"status:{run_id}")
        return CollectionStatus.from_dict(data) if data else None

    def put_errors(self, run_id: str, errors: list[dict]) -> None:
        self.store.set(f"errors:{run_id}", errors, ttl_seconds=self._config.status_ttl_seconds)

    def get_errors(self, run_id: str) -> list[dict]:
        return self.store.get(f"errors:{run_id}") or []

    # ── Allocations ───────────────────────────────────────────────────────────

    def put_allocation(self, allocation: QuarterlyAllocation) -> None:
        """Persist a new allocation. Existing allocations are never replaced.

        Raises:
            PersistenceError: If the allocation id already exists.
        """
        created = self.store.set_if_absent(
            f"allocation:{allocation.allocation_id}", allocation.to_dict()
        )
        if not created:
            raise PersistenceError(f"Allocation {allocation.allocation_id} already exists")
        pointer = {"allocation_id": allocation.allocation_id}
        self.store.set(f"allocation:period:{allocation.period}", pointer)
        self.store.set("allocation:latest", pointer)

    def get_allocation(self, allocation_id: str) -> Optional[QuarterlyAllocation]:
        data = self.store.get(f"allocation:{allocation_id}")
        return QuarterlyAllocation.from_dict(data) if data else None

    def latest_allocation(self, period: Optional[str] = None) -> Optional[QuarterlyAllocation]:
        """Most recent allocation overall, or within *period*."""
        key = f"allocation:period:{period}" if period else "allocation:latest"
        pointer = self.store.get(key)
        if not pointer:
            return None
        return self.get_allocation(pointer["allocation_id"])

    # ── Smoothing baseline ────────────────────────────────────────────────────

    def put_period_scores(self, period: str, components: dict[str, dict[str, float]]) -> None:
        self.store.set(f"scores:{period}", components)

    def get_period_scores(self, period: str) -> dict[str, dict[str, float]]:
        return self.store.get(f"scores:{period}") or {}

    # ── Metadata ──────────────────────────────────────────────────────────────

    def mark_updated(self, timestamp: str) -> None:
        self.store.set("meta:last_updated", {"timestamp": timestamp})

    def last_updated(self) -> Optional[str]:
        data = self.store.get("meta:last_updated")
        return data.get("timestamp") if data else None
