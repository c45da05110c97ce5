"""
jsDelivr Client — CDN hit counts for npm packages.

Feeds one ActivityRecord point-in-time signal:

    cdn_hits_12mo  GET https://data.jsdelivr.com/v1/stats/packages/npm/{package}?period=year

A package jsDelivr has never served answers 404; that is zero hits, not an
error.

Rate limit: 1 request/second (self-imposed).
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
from impact_pool.ingestion.schemas import JsDelivrStatsPayload, parse_payload

logger = logging.getLogger(__name__)

JSDELIVR_STATS_BASE = "https://data.jsdelivr.com/v1/stats/packages/npm"


class JsDelivrClient:
    """Rate-limited client for the jsDelivr package statistics API.

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
                logger.debug("jsDelivr: package not served — %s", url)
                return None
            raise UpstreamFetchError(f"jsDelivr HTTP {exc.code}", source="jsdelivr", url=url) from exc
        except urllib.error.URLError as exc:
            raise UpstreamFetchError(
                f"jsDelivr network error: {exc.reason}", source="jsdelivr", url=url
            ) from exc
        except json.JSONDecodeError as exc:
            raise UpstreamFetchError("jsDelivr returned invalid JSON", source="jsdelivr", url=url) from exc

    def get_hits(self, package_name: str, period: str = "year") -> int:
        """Total CDN hits for *package_name* over *period* (day … year).

        Scoped names keep their '@' and '/' (jsDelivr paths mirror npm's).
        """
        encoded_name = urllib.parse.quote(package_name, safe="@/")
        url = f"{JSDELIVR_STATS_BASE}/{encoded_name}?{urllib.parse.urlencode({'period': period})}"
        data = self._get(url)
        if data is None:
            return 0
        return parse_payload(JsDelivrStatsPayload, data, "jsdelivr", url).hits.total
