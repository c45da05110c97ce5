"""
impact_pool/orchestration/status.py — Durable, pollable run status.

Each run writes its CollectionStatus under ``status:{run_id}`` with an expiry,
and points ``status:latest`` at itself. Any process sharing the store can
poll it; only the run holding the collection lock writes it.
"""

import dataclasses
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

IDLE = "idle"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"

TERMINAL_STATES = (COMPLETED, FAILED)


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


@dataclass
class CollectionStatus:
    """Progress of one collection run.

    Fields:
        run_id:       Identifier returned to the trigger caller.
        status:       idle → running → completed | failed.
        progress:     Libraries processed so far (any outcome).
        total:        Libraries in the catalog for this run.
        collected:    Libraries fetched from upstream this run.
        cached:       Libraries served from cached metrics.
        failed:       Libraries excluded after an error.
        mode:         "full" (forced) or "incremental".
        period:       Funding period id, e.g. "2025-Q3".
        allocation_id: Set when the run persisted a QuarterlyAllocation.
    """

    run_id: str = ""
    status: str = IDLE
    progress: int = 0
    total: int = 0
    message: str = ""
    collected: int = 0
    cached: int = 0
    failed: int = 0
    mode: str = ""
    period: str = ""
    started_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    allocation_id: Optional[str] = None

    @property
    def percent(self) -> float:
        return 100.0 * self.progress / self.total if self.total else 0.0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def to_dict(self) -> dict:
        data = asdict(self)
        data["percent"] = round(self.percent, 1)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CollectionStatus":
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})
