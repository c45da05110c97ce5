"""
impact_pool/cli.py — Command-line interface for the Impact Pool engine.

Provides a single entry point that:
  1. Loads GITHUB_TOKENS / IMPACT_POOL_* settings from a .env file
  2. Runs a collection cycle (collect → score → allocate → persist)
  3. Shows run status, allocations and the collection lock
  4. Serves the HTTP API

Usage:
    python -m impact_pool collect              # incremental run
    python -m impact_pool collect --force      # ignore cached metrics
    python -m impact_pool status               # latest run status
    python -m impact_pool allocation           # latest allocation table
    python -m impact_pool lock --clear-stale   # reclaim an abandoned lock
    python -m impact_pool serve --port 8000    # FastAPI via uvicorn

All commands read settings from .env in the working directory (or the path
given by --env-file) before falling back to the process environment.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path

from impact_pool.catalog import load_libraries
from impact_pool.config import DEFAULT_CONFIG, ImpactPoolConfig, Settings, load_settings
from impact_pool.errors import ImpactPoolError, LockHeld
from impact_pool.ingestion.collector import ActivityCollector
from impact_pool.ingestion.deps_dev_client import DepsDotDevClient
from impact_pool.ingestion.github_client import GitHubClient
from impact_pool.ingestion.jsdelivr_client import JsDelivrClient
from impact_pool.ingestion.npm_client import NpmRegistryClient
from impact_pool.ingestion.token_pool import TokenPool
from impact_pool.orchestration.orchestrator import CollectionOrchestrator
from impact_pool.storage.repository import ImpactRepository
from impact_pool.storage.store import open_store


# ── .env loader (stdlib only — no python-dotenv required) ────────────────────

def _load_dotenv(env_file: str | None = None) -> dict[str, str]:
    """Load key=value pairs from a .env file into the environment.

    Existing environment values are NOT overwritten. Returns the dict of
    values that were newly loaded.

    Args:
        env_file: Explicit path. If None, searches for .env starting from the
                  current directory up to the filesystem root.
    """
    if env_file is None:
        start = Path.cwd()
        for directory in [start, *start.parents]:
            candidate = directory / ".env"
            if candidate.is_file():
                env_file = str(candidate)
                break

    if not env_file or not Path(env_file).is_file():
        return {}

    loaded: dict[str, str] = {}
    with open(env_file, encoding="utf-8") as fh:
        for raw_line in fh:
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                value = value[1:-1]
            if key and key not in os.environ:
                os.environ[key] = value
                loaded[key] = value

    return loaded


# ── Logging setup ─────────────────────────────────────────────────────────────

def _setup_logging(level: str = "INFO") -> None:
    """Configure root logger with timestamps and padded level names."""
    numeric = getattr(logging, level.upper(), logging.INFO)
    fmt = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
    datefmt = "%H:%M:%S"
    logging.basicConfig(level=numeric, format=fmt, datefmt=datefmt, stream=sys.stderr)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("urllib.request").setLevel(logging.WARNING)


logger = logging.getLogger("impact_pool.cli")


# ── Wiring ────────────────────────────────────────────────────────────────────

def build_orchestrator(
    settings: Settings, config: ImpactPoolConfig = DEFAULT_CONFIG
) -> CollectionOrchestrator:
    """Assemble store, upstream clients and collector from *settings*."""
    repository = ImpactRepository(open_store(settings.store_url), config)
    github = GitHubClient(TokenPool(settings.github_tokens), config)
    collector = ActivityCollector(
        github,
        npm=NpmRegistryClient(
            min_interval_sec=config.npm_min_interval_sec, timeout_sec=config.request_timeout_sec
        ),
        deps_dev=DepsDotDevClient(
            rate_limit_per_min=config.deps_dev_rate_limit_per_min,
            timeout_sec=config.request_timeout_sec,
        ),
        cdn=JsDelivrClient(
            min_interval_sec=config.jsdelivr_min_interval_sec, timeout_sec=config.request_timeout_sec
        ),
        config=config,
    )
    return CollectionOrchestrator(
        repository,
        collector,
        catalog=lambda: load_libraries(settings.catalog_path),
        config=config,
        total_pool_usd=settings.total_pool_usd,
    )


def _prepare(args: argparse.Namespace) -> Settings:
    _load_dotenv(args.env_file)
    _setup_logging(args.log_level)
    return load_settings()


# ── Subcommand: collect ───────────────────────────────────────────────────────

def cmd_collect(args: argparse.Namespace) -> int:
    """Run one collection cycle and print the summary."""
    settings = _prepare(args)
    if not settings.github_tokens:
        logger.warning(
            "No GITHUB_TOKENS set. Unauthenticated GitHub rate limit is 60 req/hr. "
            "Set GITHUB_TOKENS (comma-separated) in .env."
        )

    orchestrator = build_orchestrator(settings)
    t0 = time.monotonic()
    try:
        summary = orchestrator.run(force=args.force, max_age_hours=args.max_age)
    except LockHeld as exc:
        logger.error("Collection already running (holder=%s)", exc.holder)
        return 2
    elapsed = time.monotonic() - t0

    print()
    print("=" * 60)
    print(f"  IMPACT POOL — RUN {summary.status.upper()}")
    print("=" * 60)
    print(f"  Run id     : {summary.run_id}")
    print(f"  Period     : {summary.period}")
    print(f"  Mode       : {summary.mode}")
    print(f"  Elapsed    : {elapsed:.0f}s ({elapsed/60:.1f} min)")
    print(f"  Collected  : {summary.collected}")
    print(f"  Cached     : {summary.cached}")
    print(f"  Failed     : {summary.failed}")
    print(f"  Allocation : {summary.allocation_id or '—'}")
    print()
    print(f"  {summary.message}")
    if summary.errors:
        print("\n  Errors encountered:")
        for err in summary.errors[:10]:
            print(f"    [{err['context'].get('kind', '?')}] {err['library']}: {err['message']}")
        if len(summary.errors) > 10:
            print(f"    ... and {len(summary.errors) - 10} more (see `status --errors`)")
    print("=" * 60)

    return 0 if summary.status == "completed" else 1


# ── Subcommand: status ────────────────────────────────────────────────────────

def cmd_status(args: argparse.Namespace) -> int:
    """Show the latest (or a specific) run status."""
    settings = _prepare(args)
    orchestrator = build_orchestrator(settings)
    status = orchestrator.get_status(args.run_id)

    if args.json:
        print(json.dumps(status.to_dict(), indent=2))
        return 0

    print("\nImpact Pool — Status Report")
    print("=" * 40)
    print(f"  Run id     : {status.run_id or '—'}")
    print(f"  Status     : {status.status}")
    print(f"  Progress   : {status.progress}/{status.total} ({status.percent:.0f}%)")
    print(f"  Collected  : {status.collected}   Cached: {status.cached}   Failed: {status.failed}")
    print(f"  Updated at : {status.updated_at or '—'}")
    print(f"  Message    : {status.message}")
    info = orchestrator.lock_info()
    print(f"  Lock       : {'held by ' + info.holder if info else 'free'}")

    if args.errors and status.run_id:
        errors = orchestrator.recent_errors(status.run_id)
        print(f"\n  Errors ({len(errors)}):")
        for err in errors:
            print(f"    {err['library']}: {err['message']}")
    print()
    return 0


# ── Subcommand: allocation ────────────────────────────────────────────────────

def cmd_allocation(args: argparse.Namespace) -> int:
    """Print the latest allocation (optionally for one period)."""
    settings = _prepare(args)
    orchestrator = build_orchestrator(settings)
    allocation = orchestrator.latest_allocation(args.period)
    if allocation is None:
        print("No allocation found.")
        return 1

    if args.json:
        print(json.dumps(allocation.to_dict(), indent=2))
        return 0

    print()
    print("=" * 72)
    print(f"  ALLOCATION {allocation.allocation_id}  ({allocation.period})")
    print("=" * 72)
    print(f"  Pool      : ${allocation.total_pool_usd:,.2f}")
    print(f"  Allocated : ${allocation.allocated_usd:,.2f} to {allocation.funded_count} libraries")
    print(f"  Reserve   : ${allocation.reserve_usd:,.2f}")
    print(f"  Floor/Cap : ${allocation.floor_usd:,.2f} / ${allocation.cap_usd:,.2f}")
    print()
    print(f"  {'Library':<36} {'RIS':>7} {'USD':>14}  Flags")
    for entry in sorted(allocation.libraries, key=lambda s: s.allocation_usd, reverse=True):
        flags = ",".join(
            f for f, on in (
                ("floor", entry.floor_applied),
                ("cap", entry.cap_applied),
                ("carried", entry.carried_forward),
                ("ineligible", not entry.eligible),
            ) if on
        )
        print(f"  {entry.library:<36} {entry.ris:>7.4f} {entry.allocation_usd:>14,.2f}  {flags}")
    print()
    print(f"  {allocation.message}")
    print("=" * 72)
    return 0


# ── Subcommand: lock ──────────────────────────────────────────────────────────

def cmd_lock(args: argparse.Namespace) -> int:
    """Inspect or clear the collection lock."""
    settings = _prepare(args)
    orchestrator = build_orchestrator(settings)
    info = orchestrator.lock_info()

    if args.clear:
        cleared = orchestrator.lock.force_clear()
        print("Lock cleared." if cleared else "No lock to clear.")
        return 0
    if args.clear_stale:
        cleared = orchestrator.lock.clear_if_stale()
        print("Stale lock reclaimed." if cleared else "Lock is free or still fresh; nothing done.")
        return 0

    if info is None:
        print("Collection lock: free")
    else:
        print(
            f"Collection lock: held by {info.holder} for {info.age_seconds:.0f}s,"
            f" last heartbeat {info.idle_seconds:.0f}s ago"
            f"{' (stale)' if info.stale else ''}"
        )
    return 0


# ── Subcommand: serve ─────────────────────────────────────────────────────────

def cmd_serve(args: argparse.Namespace) -> int:
    """Serve the HTTP API with uvicorn."""
    settings = _prepare(args)

    import uvicorn

    from impact_pool.api.endpoints import TokenAuthorizer, create_app

    if not any(role == "admin" for role in settings.api_tokens.values()):
        logger.warning("No admin token in IMPACT_POOL_API_TOKENS — collection cannot be triggered over HTTP.")

    app = create_app(build_orchestrator(settings), TokenAuthorizer(settings.api_tokens))
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


# ── Argument parser ───────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="impact-pool",
        description=(
            "Impact Pool — impact scoring and quarterly fund allocation for\n"
            "curated open-source libraries. Reads settings from .env automatically."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Incremental collection + allocation
  python -m impact_pool collect

  # Full refresh, ignoring cached metrics
  python -m impact_pool collect --force

  # Reuse metrics younger than 6 hours
  python -m impact_pool collect --max-age 6

  # Latest allocation for a specific quarter
  python -m impact_pool allocation --period 2025-Q3

  # Reclaim a lock left behind by a crashed run
  python -m impact_pool lock --clear-stale
        """,
    )

    parser.add_argument(
        "--env-file",
        default=None,
        metavar="PATH",
        help="Path to .env file (default: auto-detect .env from the working directory up)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    # collect
    p_collect = subparsers.add_parser("collect", help="Collect → score → allocate → persist")
    p_collect.add_argument(
        "--force", action="store_true",
        help="Ignore cached metrics and re-collect every library from scratch",
    )
    p_collect.add_argument(
        "--max-age", type=float, default=None, metavar="HOURS",
        help=f"Reuse cached metrics younger than this (default: {DEFAULT_CONFIG.default_max_age_hours}h)",
    )
    p_collect.set_defaults(func=cmd_collect)

    # status
    p_status = subparsers.add_parser("status", help="Show the latest run status")
    p_status.add_argument("--run-id", default=None, metavar="ID")
    p_status.add_argument("--errors", action="store_true", help="List per-library errors")
    p_status.add_argument("--json", action="store_true", help="Print raw JSON")
    p_status.set_defaults(func=cmd_status)

    # allocation
    p_alloc = subparsers.add_parser("allocation", help="Show the latest allocation")
    p_alloc.add_argument("--period", default=None, metavar="YYYY-QN")
    p_alloc.add_argument("--json", action="store_true", help="Print raw JSON")
    p_alloc.set_defaults(func=cmd_allocation)

    # lock
    p_lock = subparsers.add_parser("lock", help="Inspect or clear the collection lock")
    group = p_lock.add_mutually_exclusive_group()
    group.add_argument("--clear", action="store_true", help="Force-clear regardless of holder")
    group.add_argument("--clear-stale", action="store_true", help="Clear only if stale")
    p_lock.set_defaults(func=cmd_lock)

    # serve
    p_serve = subparsers.add_parser("serve", help="Serve the HTTP API (uvicorn)")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except ImpactPoolError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
