"""
impact_pool/ingestion/token_pool.py — Rotating pool of upstream credentials.

GitHub grants each token 5,000 requests/hour. Collecting a few dozen
libraries with full history can exceed that, so calls rotate across several
tokens. Each Credential tracks its own quota and cooldown; a selection
strategy picks among the ones that are currently usable.

Usage:
    pool = TokenPool.from_env()
    cred = pool.acquire()
    ...
    pool.record_quota(cred, remaining=4999, reset_at=1735689600)
    pool.mark_rate_limited(cred, reset_at=1735689600)
"""

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from impact_pool.config import parse_token_list
from impact_pool.errors import UpstreamRateLimited

logger = logging.getLogger(__name__)


@dataclass
class Credential:
    """One upstream API credential and its observed rate-limit state.

    Fields:
        token:          Secret sent as a Bearer token (None = anonymous).
        label:          Log-safe identifier, never the token itself.
        remaining:      Last observed remaining quota (None until known).
        cooldown_until: Epoch seconds before which the credential is unusable.
        last_used:      Epoch seconds of the last acquire().
        uses:           Number of times acquired.
    """

    token: Optional[str]
    label: str
    remaining: Optional[int] = None
    cooldown_until: float = 0.0
    last_used: float = 0.0
    uses: int = 0

    def is_available(self, now: float) -> bool:
        return self.cooldown_until <= now


SelectionStrategy = Callable[[Sequence[Credential]], Credential]


def least_recently_used(candidates: Sequence[Credential]) -> Credential:
    """Pick the credential idle the longest; ties go to list order."""
    return min(candidates, key=lambda c: c.last_used)


def most_remaining_quota(candidates: Sequence[Credential]) -> Credential:
    """Pick the credential with the most known quota; unknown counts as full."""
    return max(
        candidates,
        key=lambda c: (c.remaining if c.remaining is not None else float("inf"), -c.last_used),
    )


class TokenPool:
    """Thread-safe pool of credentials with pluggable selection.

    Args:
        tokens:   Credential secrets. Empty → one anonymous credential.
        strategy: Callable choosing one of the available credentials.
        clock:    Epoch-seconds time source (injectable for tests).
    """

    def __init__(
        self,
        tokens: Sequence[str] = (),
        strategy: SelectionStrategy = least_recently_used,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._strategy = strategy
        self._lock = threading.Lock()
        if tokens:
            self._credentials = [
                Credential(token=token, label=f"token-{i + 1}")
                for i, token in enumerate(tokens)
            ]
        else:
            logger.warning(
                "No GitHub tokens configured. Unauthenticated rate limit is 60 req/hr. "
                "Set GITHUB_TOKENS (comma separated) or GITHUB_TOKEN."
            )
            self._credentials = [Credential(token=None, label="anonymous")]

    @classmethod
    def from_env(cls, environ: Optional[dict] = None, **kwargs) -> "TokenPool":
        """Build a pool from GITHUB_TOKENS, falling back to GITHUB_TOKEN."""
        env = os.environ if environ is None else environ
        tokens = parse_token_list(env.get("GITHUB_TOKENS"))
        if not tokens and env.get("GITHUB_TOKEN"):
            tokens = [env["GITHUB_TOKEN"].strip()]
        return cls(tokens, **kwargs)

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def credentials(self) -> list[Credential]:
        return list(self._credentials)

    def acquire(self) -> Credential:
        """Select a usable credential and stamp it as used.

        Raises:
            UpstreamRateLimited: If every credential is cooling down.
        """
        with self._lock:
            now = self._clock()
            available = [c for c in self._credentials if c.is_available(now)]
            if not available:
                reset_at = min(c.cooldown_until for c in self._credentials)
                raise UpstreamRateLimited(
                    f"All {len(self._credentials)} credentials rate limited; "
                    f"earliest reset in {max(0.0, reset_at - now):.0f}s",
                    reset_at=reset_at,
                    source="github",
                )
            chosen = self._strategy(available)
            chosen.last_used = now
            chosen.uses += 1
            return chosen

    def mark_rate_limited(self, credential: Credential, reset_at: Optional[float]) -> None:
        """Put *credential* on cooldown until *reset_at* (epoch seconds)."""
        with self._lock:
            now = self._clock()
            until = reset_at if reset_at and reset_at > now else now + 60.0
            credential.cooldown_until = until
            credential.remaining = 0
        logger.warning(
            "Credential %s rate limited — cooling down for %.0fs",
            credential.label, until - now,
        )

    def record_quota(
        self,
        credential: Credential,
        remaining: Optional[int],
        reset_at: Optional[float],
    ) -> None:
        """Record rate-limit headers observed on a response."""
        if remaining is None:
            return
        with self._lock:
            credential.remaining = remaining
            if remaining <= 0 and reset_at:
                credential.cooldown_until = max(credential.cooldown_until, reset_at)

    def next_reset_at(self) -> Optional[float]:
        """Earliest cooldown end among cooling credentials, or None."""
        now = self._clock()
        cooling = [c.cooldown_until for c in self._credentials if not c.is_available(now)]
        return min(cooling) if cooling else None

    def summary(self) -> list[dict]:
        """Log-safe view of per-credential state."""
        now = self._clock()
        return [
            {
                "label": c.label,
                "remaining": c.remaining,
                "available": c.is_available(now),
                "uses": c.uses,
            }
            for c in self._credentials
        ]
