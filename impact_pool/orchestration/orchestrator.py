"""
impact_pool/orchestration/orchestrator.py — End-to-end collection run.

State machine:  idle → running → completed | failed

    begin()    acquire the lock (LockHeld if taken, status untouched), write
               status "running" with total = catalog size.
    execute()  sequential per-library loop:
                   cache hit  → reuse cached ComputedMetrics, no upstream call
                   otherwise  → collect → persist record → window → cache
               per-library errors are recorded and the loop continues;
               progress is written after every library and the lock TTL is
               extended. After the loop: score the cohort, allocate, persist.
               The lock is released on every exit path, then the status is
               finalized as completed or failed.
    run()              begin + execute in the caller's thread.
    start_background() begin + execute on a daemon thread; returns the run id.

Features:
    - Libraries without a stored record are processed first, so a run cut
      short still covers the newest catalog entries.
    - Failures never roll back: records already persisted stay.
    - AllocationInvariantViolation fails the run; nothing is persisted for it.
"""

import dataclasses
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from impact_pool.catalog import Library
from impact_pool.config import DEFAULT_CONFIG, ImpactPoolConfig
from impact_pool.errors import LockHeld, NormalizationError
from impact_pool.ingestion.collector import ActivityCollector
from impact_pool.metrics.allocation import AllocationEngine, QuarterlyAllocation
from impact_pool.metrics.normalizer import MetricsNormalizer
from impact_pool.metrics.window import ComputedMetrics, compute_window_metrics, metrics_age_hours
from impact_pool.orchestration.lock import CollectionLock, LockInfo
from impact_pool.orchestration.status import (
    COMPLETED,
    FAILED,
    IDLE,
    RUNNING,
    CollectionStatus,
    utc_now_iso,
)
from impact_pool.period import current_period, previous_period
from impact_pool.storage.repository import ImpactRepository

logger = logging.getLogger(__name__)


@dataclass
class RunHandle:
    """Everything execute() needs for a run that already holds the lock."""

    run_id: str
    force: bool
    max_age_hours: float
    period: str
    libraries: list[Library]
    started_at: datetime


@dataclass
class RunSummary:
    """Outcome of a finished run (the synchronous trigger response)."""

    run_id: str
    status: str
    mode: str
    collected: int
    cached: int
    failed: int
    total: int
    period: str
    timestamp: str
    message: str = ""
    allocation_id: Optional[str] = None
    errors: list[dict] = field(default_factory=list)

    def to_response(self) -> dict:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "mode": self.mode,
            "collected": self.collected,
            "cached": self.cached,
            "failed": self.failed,
            "total": self.total,
            "period": self.period,
            "timestamp": self.timestamp,
            "message": self.message,
            "allocation_id": self.allocation_id,
        }


class CollectionOrchestrator:
    """Drives collection, scoring and allocation for the whole catalog.

    Args:
        repository:      Durable store access.
        collector:       ActivityCollector wired to upstream clients.
        catalog:         Callable returning the current library list.
        config:          Engine configuration.
        lock:            CollectionLock (defaults to one over the repository's store).
        total_pool_usd:  Override of config.total_pool_usd.
        clock:           Aware-datetime time source; injectable for tests.
    """

    def __init__(
        self,
        repository: ImpactRepository,
        collector: ActivityCollector,
        catalog: Callable[[], list[Library]],
        config: ImpactPoolConfig = DEFAULT_CONFIG,
        lock: Optional[CollectionLock] = None,
        total_pool_usd: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.repository = repository
        self.collector = collector
        self._catalog = catalog
        self._config = config
        self.lock = lock or CollectionLock(repository.store, config)
        self._pool_usd = total_pool_usd
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))
        self._normalizer = MetricsNormalizer(config)
        self._engine = AllocationEngine(config)

    # ── Readers ───────────────────────────────────────────────────────────────

    def get_status(self, run_id: Optional[str] = None) -> CollectionStatus:
        """Status for *run_id* (latest when None); idle if nothing is known."""
        status = self.repository.get_status(run_id)
        if status is None:
            return CollectionStatus(run_id=run_id or "", status=IDLE, message="No collection has run")
        return status

    def latest_allocation(self, period: Optional[str] = None) -> Optional[QuarterlyAllocation]:
        return self.repository.latest_allocation(period)

    def recent_errors(self, run_id: Optional[str] = None) -> list[dict]:
        status = self.repository.get_status(run_id)
        return self.repository.get_errors(status.run_id) if status else []

    def lock_info(self) -> Optional[LockInfo]:
        return self.lock.get()

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def begin(self, force: bool = False, max_age_hours: Optional[float] = None) -> RunHandle:
        """Acquire the lock and mark a new run as running.

        Raises:
            LockHeld: If another run holds the lock. Status is not changed.
        """
        run_id = uuid.uuid4().hex[:12]
        if not self.lock.acquire(run_id):
            info = self.lock.get()
            raise LockHeld(info.holder if info else None)

        try:
            libraries = list(self._catalog())
            now = self._clock()
            handle = RunHandle(
                run_id=run_id,
                force=force,
                max_age_hours=self._config.default_max_age_hours if max_age_hours is None else max_age_hours,
                period=current_period(now),
                libraries=libraries,
                started_at=now,
            )
            self.collector.reset()
            self.repository.put_status(CollectionStatus(
                run_id=run_id,
                status=RUNNING,
                total=len(libraries),
                mode="full" if force else "incremental",
                period=handle.period,
                message=f"Collecting {len(libraries)} libraries",
                started_at=now.isoformat(),
                updated_at=now.isoformat(),
            ))
        except Exception:
            self.lock.release(run_id)
            raise
        return handle

    def run(self, force: bool = False, max_age_hours: Optional[float] = None) -> RunSummary:
        """Run synchronously to completion (raises LockHeld if busy)."""
        return self.execute(self.begin(force=force, max_age_hours=max_age_hours))

    def start_background(self, force: bool = False, max_age_hours: Optional[float] = None) -> str:
        """Start a run on a daemon thread and return its run id immediately."""
        handle = self.begin(force=force, max_age_hours=max_age_hours)
        thread = threading.Thread(
            target=self.execute, args=(handle,), name=f"collection-{handle.run_id}", daemon=True
        )
        thread.start()
        return handle.run_id

    # ── Execution ─────────────────────────────────────────────────────────────

    def _ordered(self, libraries: list[Library]) -> list[Library]:
        """Libraries with no stored record first; catalog order otherwise."""
        missing, known = [], []
        for lib in libraries:
            (known if self.repository.get_activity(lib.key) else missing).append(lib)
        return missing + known

    def _process_library(
        self, library: Library, handle: RunHandle, status: CollectionStatus
    ) -> ComputedMetrics:
        """Cache hit, or collect → persist → window → cache. Raises on failure."""
        now = self._clock()
        if not handle.force:
            cached = self.repository.get_metrics(library.key)
            if cached is not None and metrics_age_hours(cached, now) < handle.max_age_hours:
                status.cached += 1
                return cached

        previous = None if handle.force else self.repository.get_activity(library.key)
        record = self.collector.collect(library, previous)
        self.repository.put_activity(record)
        metrics = compute_window_metrics(record, now, self._config)
        self.repository.put_metrics(metrics)
        status.collected += 1
        return metrics

    def execute(self, handle: RunHandle) -> RunSummary:
        """Process every library, allocate and finalize. Always releases the lock."""
        total = len(handle.libraries)
        status = CollectionStatus(
            run_id=handle.run_id,
            status=RUNNING,
            total=total,
            period=handle.period,
            mode="full" if handle.force else "incremental",
            started_at=handle.started_at.isoformat(),
        )
        scored: dict[str, ComputedMetrics] = {}
        carried: set[str] = set()
        allocation: Optional[QuarterlyAllocation] = None
        t0 = time.monotonic()

        logger.info("=" * 60)
        logger.info("Impact Pool — Collection Run %s", handle.run_id)
        logger.info("  Period     : %s", handle.period)
        logger.info("  Mode       : %s", "full (forced)" if handle.force else "incremental")
        logger.info("  Max age    : %.1fh", handle.max_age_hours)
        logger.info("  Libraries  : %d", total)
        logger.info("=" * 60)

        try:
            stored = self.repository.get_status(handle.run_id)
            if stored is not None:
                status = stored

            for i, library in enumerate(self._ordered(handle.libraries), start=1):
                try:
                    metrics = self._process_library(library, handle, status)
                    scored[library.key] = metrics
                    outcome = "ok"
                except Exception as exc:  # noqa: BLE001
                    self.collector.record_failure(library, exc, run_id=handle.run_id, position=i)
                    status.failed += 1
                    outcome = f"failed ({type(exc).__name__})"
                    if self._config.carry_forward_failed:
                        stale = self.repository.get_metrics(library.key)
                        if stale is not None:
                            scored[library.key] = stale
                            carried.add(library.key)
                            outcome += ", carried forward"

                status.progress = i
                status.updated_at = utc_now_iso()
                status.message = f"Processed {library.key}"
                self._write_status(status)
                if not self.lock.extend(handle.run_id):
                    logger.warning("Run %s no longer holds the collection lock", handle.run_id)
                logger.info(
                    "[%d/%d] (%.0f%%) %s — %s", i, total, 100.0 * i / total, library.key, outcome
                )

            allocation = self._allocate(handle, scored, carried, status)
            status.status = COMPLETED
            status.allocation_id = allocation.allocation_id
            status.message = (
                f"Collected {status.collected}, cached {status.cached}, failed {status.failed} "
                f"of {total}. {allocation.message}"
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Collection run %s failed: %s", handle.run_id, exc)
            status.status = FAILED
            status.message = (
                f"Run failed after {status.progress}/{total} libraries: {type(exc).__name__}: {exc}"
            )
        finally:
            self.lock.release(handle.run_id)

        status.completed_at = utc_now_iso()
        status.updated_at = status.completed_at
        self._write_status(status)
        errors = [e.to_dict() for e in self.collector.errors]
        try:
            self.repository.put_errors(handle.run_id, errors)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not persist error log for run %s: %s", handle.run_id, exc)

        elapsed = time.monotonic() - t0
        logger.info("=" * 60)
        logger.info("Run %s %s in %.1fs", handle.run_id, status.status.upper(), elapsed)
        logger.info("  Collected : %d", status.collected)
        logger.info("  Cached    : %d", status.cached)
        logger.info("  Failed    : %d", status.failed)
        logger.info("=" * 60)

        return RunSummary(
            run_id=handle.run_id,
            status=status.status,
            mode=status.mode or ("full" if handle.force else "incremental"),
            collected=status.collected,
            cached=status.cached,
            failed=status.failed,
            total=total,
            period=handle.period,
            timestamp=status.completed_at,
            message=status.message,
            allocation_id=allocation.allocation_id if allocation and status.status == COMPLETED else None,
            errors=errors,
        )

    def _write_status(self, status: CollectionStatus) -> None:
        try:
            self.repository.put_status(status)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Status write failed for run %s: %s", status.run_id, exc)

    def _allocate(
        self,
        handle: RunHandle,
        scored: dict[str, ComputedMetrics],
        carried: set[str],
        status: CollectionStatus,
    ) -> QuarterlyAllocation:
        """Score the cohort, allocate, and persist the immutable result.

        Libraries the normalizer drops are recorded as failures of this run.
        """
        previous = self.repository.get_period_scores(previous_period(handle.period))
        scores = self._normalizer.score_libraries(handle.libraries, scored, handle.period, previous)

        kept = {s.library for s in scores}
        for library in handle.libraries:
            if library.key in scored and library.key not in kept:
                self.collector.record_failure(
                    library,
                    NormalizationError(f"{library.key}: non-finite or negative sub-metrics"),
                    run_id=handle.run_id,
                    stage="normalize",
                )
                if library.key not in carried:
                    status.failed += 1
        scores = [dataclasses.replace(s, carried_forward=s.library in carried) for s in scores]

        allocation = self._engine.allocate(
            handle.period, scores, total_pool_usd=self._pool_usd, run_id=handle.run_id
        )
        self.repository.put_allocation(allocation)
        self.repository.put_period_scores(
            handle.period, {s.library: dict(s.components) for s in allocation.libraries}
        )
        self.repository.mark_updated(allocation.created_at)
        return allocation
