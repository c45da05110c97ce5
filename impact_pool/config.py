"""
impact_pool/config.py — All tunable parameters for the Impact Pool engine.

No weight, threshold or TTL should ever be hardcoded in a scoring or
allocation module. Every knob lives here so that calibration changes are a
single-file diff. Runtime wiring (store location, credentials, API tokens)
comes from the environment through load_settings().
"""

import os
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class ImpactPoolConfig:
    """
    Immutable configuration for the collection, scoring and allocation run.

    Override by constructing a new ImpactPoolConfig with the desired values,
    or with dataclasses.replace(DEFAULT_CONFIG, ...).
    """

    # ── RIS Component Weights ─────────────────────────────────────────────────
    component_weights: dict = field(
        default_factory=lambda: {
            "ef": 0.30,  # Ecosystem Footprint
            "cq": 0.25,  # Contribution Quality
            "mh": 0.20,  # Maintainer Health
            "cb": 0.15,  # Community Benefit
            "ma": 0.10,  # Mission Alignment
        }
    )
    # Must sum to 1.0 so that RIS stays on [0, 1].

    # ── Rolling Window ────────────────────────────────────────────────────────
    window_days: int = 365
    # Trailing window for ComputedMetrics. Older activity stays in the
    # durable ActivityRecord but is ignored for the current cycle.

    history_days: int = 3 * 365
    # How far back a first (or forced) collection reaches.

    active_maintainer_min_commits: int = 12
    # Authors with at least this many commits in the window count as
    # active maintainers (roughly one per month).

    # ── Normalization ─────────────────────────────────────────────────────────
    winsor_lower_pct: float = 5.0
    winsor_upper_pct: float = 95.0
    # Cohort percentile bounds applied before min-max scaling.

    smoothing_alpha: float = 0.4
    # EMA weight of the current cycle: new = α·raw + (1−α)·previous.

    # ── Allocation ────────────────────────────────────────────────────────────
    total_pool_usd: float = 1_000_000.0
    reserve_fraction: float = 0.10
    floor_usd: float = 5_000.0
    cap_fraction: float = 0.12
    # Cap is a fraction of total_pool_usd (0.12 × $1M = $120,000).

    max_allocation_iterations: int = 100
    # Bound on floor/cap passes before the fixed point is declared divergent.

    eligibility_threshold: float = 0.0
    # Libraries whose RIS_effective falls below this get $0 and are left
    # out of the pool. 0.0 disables the gate.

    carry_forward_failed: bool = False
    # When True, a library whose collection fails this cycle is scored from
    # its last cached ComputedMetrics instead of being dropped from the pool.

    # ── Caching & Coordination ────────────────────────────────────────────────
    default_max_age_hours: float = 24.0
    # Cached ComputedMetrics younger than this are reused without any
    # upstream call unless the run is forced.

    metrics_cache_ttl_seconds: int = 7 * 24 * 3600
    # Hard expiry of cached ComputedMetrics in the store.

    lock_ttl_seconds: int = 600
    # Natural expiry of the collection lock. A crashed run frees it after this.

    lock_stale_after_seconds: int = 300
    # Age after which an operator may treat the lock as abandoned.

    status_ttl_seconds: int = 7 * 24 * 3600
    # CollectionStatus records are kept this long after their last update.

    # ── Upstream API Limits ───────────────────────────────────────────────────
    github_per_page: int = 100
    github_max_pages: int = 10
    # GitHub REST pagination: 100 items/page, at most 10 pages per listing.

    github_max_retries: int = 3
    # Transient 5xx/network retries per request (rate limits rotate tokens).

    max_pr_detail_fetches: int = 50
    # Newly merged PRs whose size (lines changed) is fetched per library per
    # run. PRs beyond this budget are stored with an unknown size.

    max_response_fetches: int = 50
    # Issue/PR comment listings fetched per library per run to find the
    # first maintainer response. Items beyond this budget keep no response
    # time and are left out of the latency medians.

    deps_dev_rate_limit_per_min: int = 100
    # deps.dev enforces 100 req/min per IP.

    npm_min_interval_sec: float = 1.0
    # Self-imposed courtesy interval for the npm registry APIs.

    jsdelivr_min_interval_sec: float = 1.0
    # Self-imposed courtesy interval for the jsDelivr stats API.

    request_timeout_sec: float = 30.0


# Singleton default — import this everywhere instead of constructing anew.
DEFAULT_CONFIG = ImpactPoolConfig()


# ---------------------------------------------------------------------------
# Runtime settings (environment)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Settings:
    """Deployment wiring read from the environment.

    Attributes:
        store_url:      Directory path for FileStore, or a redis:// URL.
        catalog_path:   CSV file listing the curated libraries.
        github_tokens:  Upstream credentials for the TokenPool.
        api_tokens:     Bearer token → role map for the HTTP API.
        total_pool_usd: Override of the quarterly pool size.
    """

    store_url: str = ".impact_pool"
    catalog_path: str = "data/libraries.csv"
    github_tokens: tuple = ()
    api_tokens: dict = field(default_factory=dict)
    total_pool_usd: Optional[float] = None


def parse_token_list(raw: Optional[str]) -> list[str]:
    """Split a comma-separated credential list, tolerating JSON-ish brackets.

    Examples:
        >>> parse_token_list("a, b,,c")
        ['a', 'b', 'c']
        >>> parse_token_list('["a","b"]')
        ['a', 'b']
    """
    if not raw:
        return []
    cleaned = raw.strip().lstrip("[").rstrip("]")
    tokens = []
    for part in cleaned.split(","):
        token = part.strip().strip('"').strip("'").strip()
        if token:
            tokens.append(token)
    return tokens


def parse_api_tokens(raw: Optional[str]) -> dict[str, str]:
    """Parse ``token:role`` pairs; a bare token is treated as a viewer."""
    result: dict[str, str] = {}
    for entry in parse_token_list(raw):
        token, _, role = entry.partition(":")
        result[token.strip()] = (role.strip() or "viewer").lower()
    return result


def load_settings(environ: Optional[dict] = None) -> Settings:
    """Build Settings from environment variables (os.environ by default)."""
    env = os.environ if environ is None else environ

    tokens = parse_token_list(env.get("GITHUB_TOKENS"))
    if not tokens and env.get("GITHUB_TOKEN"):
        tokens = [env["GITHUB_TOKEN"].strip()]

    pool = env.get("IMPACT_POOL_TOTAL_USD")
    return Settings(
        store_url=env.get("IMPACT_POOL_STORE", Settings.store_url),
        catalog_path=env.get("IMPACT_POOL_CATALOG", Settings.catalog_path),
        github_tokens=tuple(tokens),
        api_tokens=parse_api_tokens(env.get("IMPACT_POOL_API_TOKENS")),
        total_pool_usd=float(pool) if pool else None,
    )
