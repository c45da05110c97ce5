"""
impact_pool/metrics/allocation.py — Quarterly fund allocation under floor/cap.

Algorithm:
    1. reserve = reserve_fraction × pool; distributable = pool − reserve.
    2. Proportional baseline: share_i = RIS_effective_i / Σ RIS_effective ×
       distributable (equal weights if every RIS_effective is zero).
    3. Floor pass: libraries whose proportional share is below floor_usd are
       pinned at the floor; the deficit comes out of the libraries still
       sharing proportionally.
    4. Cap pass: libraries above cap_usd are pinned at the cap; the surplus
       goes back to the libraries still sharing proportionally.
    5. Release pass: a pinned library whose proportional share has moved back
       inside [floor, cap] rejoins the proportional set.
    6. Repeat 3–5 until a pass changes nothing (bounded by
       max_allocation_iterations). The result is the fixed point
           alloc_i = clip(λ · RIS_effective_i, floor, cap),  Σ alloc_i = distributable.
    7. Round to cents; the rounding remainder goes to the reserve.

Degraded cases (never hidden, always reported in the message):
    - floor × n > distributable (or floor > cap): the floor cannot be honored
      for everyone and is not enforced this cycle.
    - cap × n < distributable: not all money can be placed without breaking
      the cap; the unplaceable surplus returns to the reserve.

The conservation check |Σ alloc + reserve − pool| ≤ 0.01 × n and the floor/cap
guarantees are verified after rounding. Any failure, or non-convergence,
raises AllocationInvariantViolation and no allocation is produced.
"""

import dataclasses
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from impact_pool.config import DEFAULT_CONFIG, ImpactPoolConfig
from impact_pool.errors import AllocationInvariantViolation

logger = logging.getLogger(__name__)

# Tolerance for comparing unrounded dollar amounts.
_EPS = 1e-6


def round_cents(amount: float) -> float:
    """Round half-up to the cent."""
    return float(Decimal(repr(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


@dataclass
class LibraryScore:
    """Per-library composite score and its dollar allocation.

    Fields:
        library:                ``owner/name`` key.
        components:             Smoothed ef/cq/mh/cb/ma in [0, 1].
        components_raw:         This cycle's unsmoothed components.
        inputs:                 Normalized sub-metric inputs per component.
        ris:                    Stored (unadjusted) Repository Impact Score.
        ris_effective:          RIS × eligibility × proration; drives money.
        allocation_usd:         Final cents-rounded allocation.
        floor_applied/cap_applied: Constraint that pinned the allocation.
        eligible:               False when excluded by the eligibility gate.
        carried_forward:        Scored from stale cached metrics this cycle.
    """

    library: str
    category: str = ""
    components: dict = field(default_factory=dict)
    components_raw: dict = field(default_factory=dict)
    inputs: dict = field(default_factory=dict)
    ris: float = 0.0
    ris_unsmoothed: float = 0.0
    eligibility_adjustment: float = 1.0
    proration_factor: float = 1.0
    ris_effective: float = 0.0
    allocation_usd: float = 0.0
    floor_applied: bool = False
    cap_applied: bool = False
    eligible: bool = True
    carried_forward: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LibraryScore":
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class QuarterlyAllocation:
    """Immutable result of one completed run."""

    allocation_id: str
    period: str
    total_pool_usd: float
    reserve_usd: float
    floor_usd: float
    cap_usd: float
    libraries: list[LibraryScore] = field(default_factory=list)
    iterations: int = 0
    degraded_floor: bool = False
    degraded_cap: bool = False
    message: str = ""
    created_at: str = ""
    run_id: Optional[str] = None

    @property
    def allocated_usd(self) -> float:
        return round(sum(s.allocation_usd for s in self.libraries), 2)

    @property
    def funded_count(self) -> int:
        return sum(1 for s in self.libraries if s.eligible)

    def conservation_error(self) -> float:
        return abs(self.allocated_usd + self.reserve_usd - self.total_pool_usd)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["allocated_usd"] = self.allocated_usd
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "QuarterlyAllocation":
        known = {f.name for f in dataclasses.fields(cls)}
        payload = {k: v for k, v in data.items() if k in known}
        payload["libraries"] = [LibraryScore.from_dict(s) for s in data.get("libraries", [])]
        return cls(**payload)


class AllocationEngine:
    """Turns RIS_effective scores into a pool-constrained dollar allocation.

    Args:
        config: Pool size, reserve, floor, cap, iteration bound and the
                eligibility threshold.
    """

    def __init__(self, config: ImpactPoolConfig = DEFAULT_CONFIG) -> None:
        self._config = config

    # ── Fixed point ───────────────────────────────────────────────────────────

    @staticmethod
    def _lambda(free: set, weights: dict[str, float], remaining: float) -> Optional[float]:
        total = sum(weights[k] for k in free)
        if not free or total <= 0:
            return None
        return remaining / total

    def _solve(
        self,
        weights: dict[str, float],
        budget: float,
        floor: Optional[float],
        cap: float,
    ) -> tuple[dict[str, float], set, set, int]:
        """Iterate floor/cap/release passes to the fixed point.

        Returns:
            (unrounded shares, floored keys, capped keys, iterations used)
        """
        free = set(weights)
        floored: set = set()
        capped: set = set()

        def remaining() -> float:
            return budget - (floor or 0.0) * len(floored) - cap * len(capped)

        def shares_of_free() -> dict[str, float]:
            lam = self._lambda(free, weights, remaining())
            if lam is None:
                equal = remaining() / len(free) if free else 0.0
                return {k: equal for k in free}
            return {k: lam * weights[k] for k in free}

        for iteration in range(1, self._config.max_allocation_iterations + 1):
            changed = False

            if floor is not None:
                shares = shares_of_free()
                low = {k for k, v in shares.items() if v < floor - _EPS}
                if low:
                    free -= low
                    floored |= low
                    changed = True

            shares = shares_of_free()
            high = {k for k, v in shares.items() if v > cap + _EPS}
            if high:
                free -= high
                capped |= high
                changed = True

            left = remaining()
            lam = self._lambda(free, weights, left)
            if lam is not None:
                release = {k for k in floored if lam * weights[k] > floor + _EPS}
                release |= {k for k in capped if lam * weights[k] < cap - _EPS}
            elif not free and left > _EPS:
                release = set(floored)
            elif not free and left < -_EPS:
                release = set(capped)
            else:
                release = set()
            if release:
                floored -= release
                capped -= release
                free |= release
                changed = True

            if not changed:
                shares = shares_of_free()
                shares.update({k: floor for k in floored})
                shares.update({k: cap for k in capped})
                return shares, floored, capped, iteration

        raise AllocationInvariantViolation(
            f"Floor/cap reconciliation did not converge within "
            f"{self._config.max_allocation_iterations} iterations"
        )

    # ── Public API ────────────────────────────────────────────────────────────

    def allocate(
        self,
        period: str,
        scores: list[LibraryScore],
        total_pool_usd: Optional[float] = None,
        run_id: Optional[str] = None,
    ) -> QuarterlyAllocation:
        """Compute the quarterly allocation for *scores*.

        The input LibraryScore objects are not modified; the returned
        allocation holds updated copies.

        Raises:
            AllocationInvariantViolation: On non-convergence, a conservation
                failure, or a broken floor/cap guarantee.
        """
        cfg = self._config
        pool = float(cfg.total_pool_usd if total_pool_usd is None else total_pool_usd)
        if pool < 0:
            raise ValueError(f"total_pool_usd must be non-negative, got {pool}")

        reserve_target = round_cents(cfg.reserve_fraction * pool)
        distributable = pool - reserve_target
        cap = round_cents(cfg.cap_fraction * pool)
        floor = round_cents(cfg.floor_usd)

        entries = [dataclasses.replace(s, allocation_usd=0.0, floor_applied=False, cap_applied=False)
                   for s in scores]
        for entry in entries:
            entry.eligible = (
                entry.eligibility_adjustment > 0
                and entry.proration_factor > 0
                and entry.ris_effective >= cfg.eligibility_threshold
            )
        eligible = [e for e in entries if e.eligible]
        n = len(eligible)
        notes: list[str] = []

        weights = {e.library: max(0.0, e.ris_effective) for e in eligible}
        if n and sum(weights.values()) <= 0:
            weights = {k: 1.0 for k in weights}
            notes.append("all RIS_effective are zero; splitting equally")

        degraded_floor = n > 0 and (floor * n > distributable + _EPS or floor > cap)
        degraded_cap = n > 0 and cap * n < distributable - _EPS
        if degraded_floor:
            notes.append(
                f"DEGRADED: floor ${floor:,.2f} × {n} libraries exceeds distributable "
                f"${distributable:,.2f} (or the cap); floor not enforced"
            )
        if degraded_cap:
            notes.append(
                f"DEGRADED: cap ${cap:,.2f} × {n} libraries is below distributable "
                f"${distributable:,.2f}; surplus returned to reserve"
            )

        iterations = 0
        if n:
            shares, floored, capped, iterations = self._solve(
                weights, distributable, None if degraded_floor else floor, cap
            )
            for entry in eligible:
                entry.allocation_usd = round_cents(shares[entry.library])
                entry.floor_applied = entry.library in floored
                entry.cap_applied = entry.library in capped
        else:
            notes.append("no eligible libraries; entire pool held in reserve")

        allocated = sum(e.allocation_usd for e in entries)
        reserve = round_cents(pool - allocated)

        allocation = QuarterlyAllocation(
            allocation_id=f"{period}-{run_id or uuid.uuid4().hex[:12]}",
            period=period,
            total_pool_usd=pool,
            reserve_usd=reserve,
            floor_usd=floor,
            cap_usd=cap,
            libraries=sorted(entries, key=lambda e: (-e.allocation_usd, e.library)),
            iterations=iterations,
            degraded_floor=degraded_floor,
            degraded_cap=degraded_cap,
            created_at=datetime.now(tz=timezone.utc).isoformat(),
            run_id=run_id,
        )
        self._verify(allocation)

        summary = (
            f"Allocated ${allocation.allocated_usd:,.2f} to {n} libraries "
            f"({sum(e.floor_applied for e in entries)} at floor, "
            f"{sum(e.cap_applied for e in entries)} at cap); reserve ${reserve:,.2f}"
        )
        allocation.message = "; ".join([summary, *notes])
        for note in notes:
            logger.warning("%s: %s", period, note)
        logger.info("%s: %s (%d iterations)", period, summary, iterations)
        return allocation

    def _verify(self, allocation: QuarterlyAllocation) -> None:
        n = max(1, allocation.funded_count)
        error = allocation.conservation_error()
        if error > 0.01 * n:
            raise AllocationInvariantViolation(
                f"Conservation failed: allocated ${allocation.allocated_usd:,.2f} + reserve "
                f"${allocation.reserve_usd:,.2f} ≠ pool ${allocation.total_pool_usd:,.2f} "
                f"(off by ${error:,.2f})"
            )
        for entry in allocation.libraries:
            if not entry.eligible:
                continue
            if entry.allocation_usd > allocation.cap_usd + 0.005:
                raise AllocationInvariantViolation(
                    f"{entry.library} allocated ${entry.allocation_usd:,.2f} above cap "
                    f"${allocation.cap_usd:,.2f}"
                )
            if not allocation.degraded_floor and entry.allocation_usd < allocation.floor_usd - 0.005:
                raise AllocationInvariantViolation(
                    f"{entry.library} allocated ${entry.allocation_usd:,.2f} below floor "
                    f"${allocation.floor_usd:,.2f}"
                )
