"""
impact_pool/api/endpoints.py — FastAPI surface for collection and allocations.

Dashboards read allocations and run status; admins trigger collection runs
and manage the lock. Session handling lives elsewhere: this API only checks a
bearer token against a configured token → role map (TokenAuthorizer).

Endpoint summary:
    GET  /api/v1/health                       — Liveness probe.
    POST /api/v1/collect                      — Trigger a run (admin).
                                                ?force=&maxAge=&background=
    GET  /api/v1/collect/status               — CollectionStatus (?run_id=).
    GET  /api/v1/collect/errors               — Structured errors of a run.
    GET  /api/v1/collect/lock                 — Current lock holder/age.
    POST /api/v1/collect/lock/release         — Force-clear the lock (admin).
    GET  /api/v1/allocations/latest           — Most recent QuarterlyAllocation.
    GET  /api/v1/allocations/{period}         — Latest allocation for a period.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from impact_pool import __version__
from impact_pool.errors import AuthError, LockHeld
from impact_pool.orchestration.orchestrator import CollectionOrchestrator
from impact_pool.orchestration.status import FAILED

logger = logging.getLogger(__name__)


# ── Request / Response models ─────────────────────────────────────────────────

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    last_updated: Optional[str] = None


class CollectResponse(BaseModel):
    """Summary of a synchronous collection run."""
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


class CollectAccepted(BaseModel):
    """Background run started; poll the status endpoint."""
    run_id: str
    status: str
    status_url: str


class LockReleaseResponse(BaseModel):
    cleared: bool
    holder: Optional[str] = None
    was_stale: bool = False


# ── Authorization ─────────────────────────────────────────────────────────────

class TokenAuthorizer:
    """Bearer-token check against a static token → role map.

    Args:
        tokens: Mapping of API token to role ("admin", "viewer", …).
    """

    def __init__(self, tokens: dict[str, str]) -> None:
        self._tokens = dict(tokens)

    def authorize(self, authorization: Optional[str], required_role: str = "admin") -> str:
        """Return the caller's role.

        Raises:
            AuthError: 401 when the token is missing or unknown,
                       403 when the role is insufficient.
        """
        if not authorization or not authorization.lower().startswith("bearer "):
            raise AuthError("Missing bearer token", status_code=401)
        token = authorization[7:].strip()
        role = self._tokens.get(token)
        if role is None:
            raise AuthError("Invalid or expired token", status_code=401)
        if role != required_role:
            raise AuthError(f"Role '{role}' is not allowed; '{required_role}' required", status_code=403)
        return role


def create_app(orchestrator: CollectionOrchestrator, authorizer: TokenAuthorizer) -> FastAPI:
    """
    Create and return the Impact Pool FastAPI application.

    The orchestrator and authorizer are injected so that tests can wire a
    file store and fake upstream sources without changing endpoint logic.

    Args:
        orchestrator: CollectionOrchestrator bound to the shared store.
        authorizer:   TokenAuthorizer guarding admin routes.

    Returns:
        Configured FastAPI application instance.
    """
    app = FastAPI(
        title="Impact Pool API",
        version=__version__,
        description=(
            "Collection trigger, run status and quarterly allocations for the "
            "open-source impact funding pool."
        ),
    )

    def _require_admin(authorization: Optional[str]) -> None:
        try:
            authorizer.authorize(authorization, required_role="admin")
        except AuthError as exc:
            logger.info("Rejected admin request: %s", exc)
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    # ── Routes ────────────────────────────────────────────────────────────────

    @app.get("/api/v1/health", response_model=HealthResponse, tags=["system"])
    async def health() -> dict:
        """Liveness probe — returns service status, version and last update."""
        return {
            "status": "ok",
            "version": __version__,
            "last_updated": orchestrator.repository.last_updated(),
        }

    @app.post(
        "/api/v1/collect",
        response_model=CollectResponse,
        responses={202: {"model": CollectAccepted}},
        tags=["collection"],
    )
    async def collect(
        force: bool = False,
        maxAge: Optional[float] = Query(None, ge=0, description="Cache max age in hours"),  # noqa: N803
        background: bool = False,
        authorization: Optional[str] = Header(None),
    ):
        """
        Trigger a collection run.

        Returns:
            200 with the run summary (synchronous), or 202 with the run id
            when ``background=true``.

        Raises:
            401/403: Missing or non-admin credentials.
            409: Another run holds the collection lock.
        """
        _require_admin(authorization)
        try:
            if background:
                run_id = orchestrator.start_background(force=force, max_age_hours=maxAge)
                return JSONResponse(
                    status_code=202,
                    content={
                        "run_id": run_id,
                        "status": "running",
                        "status_url": f"/api/v1/collect/status?run_id={run_id}",
                    },
                )
            summary = await run_in_threadpool(orchestrator.run, force, maxAge)
        except LockHeld as exc:
            raise HTTPException(
                status_code=409,
                detail={"message": "Collection already running", "holder": exc.holder},
            ) from exc

        if summary.status == FAILED:
            return JSONResponse(status_code=500, content=summary.to_response())
        return summary.to_response()

    @app.get("/api/v1/collect/status", tags=["collection"])
    async def collect_status(run_id: Optional[str] = None) -> dict:
        """Current (or a specific run's) CollectionStatus, for polling UIs."""
        return orchestrator.get_status(run_id).to_dict()

    @app.get("/api/v1/collect/errors", tags=["collection"])
    async def collect_errors(run_id: Optional[str] = None) -> dict:
        """Structured per-library errors of the latest (or given) run."""
        errors = orchestrator.recent_errors(run_id)
        return {"errors": errors, "total": len(errors)}

    @app.get("/api/v1/collect/lock", tags=["collection"])
    async def lock_status() -> dict:
        """Whether a run holds the lock, who holds it, and for how long."""
        info = orchestrator.lock_info()
        return {"locked": info is not None, "lock": info.to_dict() if info else None}

    @app.post("/api/v1/collect/lock/release", response_model=LockReleaseResponse, tags=["collection"])
    async def release_lock(authorization: Optional[str] = Header(None)) -> dict:
        """Force-clear an abandoned lock (admin)."""
        _require_admin(authorization)
        info = orchestrator.lock_info()
        cleared = orchestrator.lock.force_clear()
        return {
            "cleared": cleared,
            "holder": info.holder if info else None,
            "was_stale": info.stale if info else False,
        }

    @app.get("/api/v1/allocations/latest", tags=["allocations"])
    async def latest_allocation() -> dict:
        """Most recent QuarterlyAllocation (read-only)."""
        allocation = orchestrator.latest_allocation()
        if allocation is None:
            raise HTTPException(status_code=404, detail="No allocation has been computed yet.")
        return allocation.to_dict()

    @app.get("/api/v1/allocations/{period}", tags=["allocations"])
    async def allocation_for_period(period: str) -> dict:
        """Latest QuarterlyAllocation for ``period`` (e.g. 2025-Q3)."""
        allocation = orchestrator.latest_allocation(period)
        if allocation is None:
            raise HTTPException(status_code=404, detail=f"No allocation for period '{period}'.")
        return allocation.to_dict()

    logger.info("Impact Pool API application created")
    return app
