"""
deps.dev API Client — Dependents and OpenSSF Scorecard for curated libraries.

Two signals come from deps.dev:

    dependents       GET /v3alpha/systems/npm/packages/{name}/versions/{v}:dependents
                     for the package's default version.
    scorecard_score  GET /v3alpha/projects/github.com%2F{owner}%2F{repo}
                     OpenSSF Scorecard overall score (0–10).

Rate limit: 100 requests/minute enforced via a minimum request interval.
Uses only Python stdlib (urllib.request) — no third-party HTTP libraries.
"""
import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Optional

from impact_pool.errors import UpstreamFetchError
from impact_pool.ingestion.schemas import (
    DepsDevDependentsPayload,
    DepsDevPackagePayload,
    DepsDevProjectPayload,
    parse_payload,
)

logger = logging.getLogger(__name__)

DEPS_DEV_BASE = "https://api.deps.dev/v3alpha"


class DepsDotDevClient:
    """Rate-limited client for the deps.dev REST API.

    Enforces a minimum interval between requests to stay within the 100
    requests/minute API limit. A 404 yields None (package or project unknown
    to deps.dev); other failures raise UpstreamFetchError.

    Args:
        rate_limit_per_min: Maximum requests per minute (default: 100).
        timeout_sec:        Per-request timeout.
    """

    def __init__(self, rate_limit_per_min: int = 100, timeout_sec: float = 30.0) -> None:
        self._min_interval = 60.0 / rate_limit_per_min
        self._timeout = timeout_sec
        self._last_call: float = 0.0

    def _get(self, url: str) -> Optional[Any]:
        """Rate-limited GET request to deps.dev.

        Returns:
            Parsed JSON, or None when deps.dev answers 404.
        """
        now = time.monotonic()
        elapsed = now - self._last_call
        if elapsed < self._min_interval:
            time.sleep(self._min_interval - elapsed)
        self._last_call = time.monotonic()

        try:
            req = urllib.request.Request(url, headers={"Accept": "application/json"})
            with urllib.request.urlopen(req, timeout=self._timeout) as resp:
                return json.loads(resp.read())
        except urllib.error.HTTPError as exc:
            if exc.code == 404:
                logger.debug("deps.dev: not found — %s", url)
                return None
            raise UpstreamFetchError(f"deps.dev HTTP {exc.code}", source="deps.dev", url=url) from exc
        except urllib.error.URLError as exc:
            raise UpstreamFetchError(
                f"deps.dev network error: {exc.reason}", source="deps.dev", url=url
            ) from exc
        except json.JSONDecodeError as exc:
            raise UpstreamFetchError("deps.dev returned invalid JSON", source="deps.dev", url=url) from exc

    def get_default_version(self, name: str, system: str = "npm") -> Optional[str]:
        """Version deps.dev marks as default (usually the latest stable)."""
        encoded_name = urllib.parse.quote(name, safe="")
        url = f"{DEPS_DEV_BASE}/systems/{system}/packages/{encoded_name}"
        data = self._get(url)
        if data is None:
            return None
        package = parse_payload(DepsDevPackagePayload, data, "deps.dev", url)
        for version in package.versions:
            if version.isDefault:
                return version.versionKey.version
        return package.versions[-1].versionKey.version if package.versions else None

    def get_dependent_count(self, name: str, system: str = "npm") -> Optional[int]:
        """Total dependents (direct + indirect) of the default version."""
        version = self.get_default_version(name, system)
        if version is None:
            return None
        encoded_name = urllib.parse.quote(name, safe="")
        encoded_version = urllib.parse.quote(version, safe="")
        url = (
            f"{DEPS_DEV_BASE}/systems/{system}/packages/"
            f"{encoded_name}/versions/{encoded_version}:dependents"
        )
        data = self._get(url)
        if data is None:
            return None
        return parse_payload(DepsDevDependentsPayload, data, "deps.dev", url).dependentCount

    def get_scorecard_score(self, owner: str, repo: str) -> Optional[float]:
        """OpenSSF Scorecard overall score for github.com/{owner}/{repo}."""
        encoded_key = urllib.parse.quote(f"github.com/{owner}/{repo}", safe="")
        url = f"{DEPS_DEV_BASE}/projects/{encoded_key}"
        data = self._get(url)
        if data is None:
            return None
        project = parse_payload(DepsDevProjectPayload, data, "deps.dev", url)
        return project.scorecard.overallScore if project.scorecard else None
