"""
npm Registry Client — Download counts and type declarations for npm packages.

Feeds two ActivityRecord point-in-time signals:

    downloads_12mo  GET https://api.npmjs.org/downloads/point/last-year/{package}
    ships_types     GET https://registry.npmjs.org/{package}/latest  ("types"/"typings")

Rate limit: 1 request/second (self-imposed, API is generous).
Uses only Python stdlib (urllib.request).
"""
import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Optional

from impact_pool.errors import UpstreamFetchError
from impact_pool.ingestion.schemas import NpmDownloadsPayload, NpmManifestPayload, parse_payload

logger = logging.getLogger(__name__)

NPM_DOWNLOADS_BASE = "https://api.npmjs.org/downloads/point"
NPM_REGISTRY_BASE = "https://registry.npmjs.org"

# Trailing twelve months, matching the scoring window.
_DEFAULT_PERIOD = "last-year"


class NpmRegistryClient:
    """Rate-limited client for the npm downloads and registry APIs.

    A 404 means the package is not published and yields None; every other
    failure raises UpstreamFetchError for the collector to handle.

    Args:
        min_interval_sec: Minimum seconds between requests (default 1.0).
        timeout_sec:      Per-request timeout.
    """

    def __init__(self, min_interval_sec: float = 1.0, timeout_sec: float = 30.0) -> None:
        self._min_interval = min_interval_sec
        self._timeout = timeout_sec
        self._last_call: float = 0.0

    def _get(self, url: str) -> Optional[Any]:
        """Rate-limited GET returning parsed JSON, or None on 404."""
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
                logger.debug("npm: package not found — %s", url)
                return None
            raise UpstreamFetchError(f"npm HTTP {exc.code}", source="npm", url=url) from exc
        except urllib.error.URLError as exc:
            raise UpstreamFetchError(f"npm network error: {exc.reason}", source="npm", url=url) from exc
        except json.JSONDecodeError as exc:
            raise UpstreamFetchError("npm returned invalid JSON", source="npm", url=url) from exc

    def get_downloads(self, package_name: str, period: str = _DEFAULT_PERIOD) -> Optional[int]:
        """Download count for *package_name* over *period*.

        Scoped packages (e.g. @tanstack/query-core) are URL-encoded so the
        leading '@' becomes '%40' and the '/' becomes '%2F'.

        Returns:
            Integer download count, or None if the package does not exist.
        """
        encoded_name = urllib.parse.quote(package_name, safe="")
        url = f"{NPM_DOWNLOADS_BASE}/{period}/{encoded_name}"
        data = self._get(url)
        if data is None:
            return None
        return parse_payload(NpmDownloadsPayload, data, "npm", url).downloads

    def ships_types(self, package_name: str) -> Optional[bool]:
        """Whether the latest published manifest declares TypeScript types."""
        encoded_name = urllib.parse.quote(package_name, safe="@")
        url = f"{NPM_REGISTRY_BASE}/{encoded_name}/latest"
        data = self._get(url)
        if data is None:
            return None
        return parse_payload(NpmManifestPayload, data, "npm", url).ships_types
