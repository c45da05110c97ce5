"""
impact_pool/errors.py — Exception hierarchy for the collection run.

Per-library errors (UpstreamFetchError, NormalizationError, PersistenceError)
are caught by the orchestrator and only exclude one library from the cycle.
LockHeld and AuthError surface to the caller. AllocationInvariantViolation is
fatal to the run.
"""

from typing import Optional


class ImpactPoolError(Exception):
    """Base class for all engine errors."""


class AuthError(ImpactPoolError):
    """Missing (401) or insufficient (403) admin credentials."""

    def __init__(self, message: str, status_code: int = 401) -> None:
        super().__init__(message)
        self.status_code = status_code


class LockHeld(ImpactPoolError):
    """Another collection run currently holds the lock."""

    def __init__(self, holder: Optional[str] = None) -> None:
        super().__init__(f"Collection already running (holder={holder or 'unknown'})")
        self.holder = holder


class UpstreamFetchError(ImpactPoolError):
    """Network, HTTP or payload failure from an external metrics source."""

    def __init__(self, message: str, source: str = "", url: str = "") -> None:
        super().__init__(message)
        self.source = source
        self.url = url


class UpstreamRateLimited(UpstreamFetchError):
    """Every upstream credential is cooling down."""

    def __init__(self, message: str, reset_at: Optional[float] = None, source: str = "") -> None:
        super().__init__(message, source=source)
        self.reset_at = reset_at


class NormalizationError(ImpactPoolError):
    """Malformed or missing counters in an ActivityRecord."""


class PersistenceError(ImpactPoolError):
    """A store read or write failed."""


class AllocationInvariantViolation(ImpactPoolError):
    """Floor/cap fixed point did not converge, or conservation failed."""
