"""
impact_pool/ingestion/github_client.py — GitHub REST client with token rotation.

Fetches the source-hosting side of an ActivityRecord: repository stats,
community profile, merged pull requests, issues, first responses, commits
and releases.
Every request goes through the TokenPool:

    - 403/429 with an exhausted quota (or a secondary-limit Retry-After):
      the credential is put on cooldown and the request is retried with the
      next credential. When none is left the pool raises UpstreamRateLimited.
    - 404 and other 4xx: UpstreamFetchError, no retry.
    - 5xx and network errors: exponential backoff, then UpstreamFetchError.

Uses only Python stdlib (urllib.request) for HTTP.
"""

import json
import logging
import re
import time
import urllib.error
import urllib.parse
import urllib.request
from datetime import datetime
from typing import Any, Optional

from impact_pool.config import DEFAULT_CONFIG, ImpactPoolConfig
from impact_pool.errors import UpstreamFetchError
from impact_pool.ingestion.schemas import (
    CommitPayload,
    CommunityProfilePayload,
    IssueCommentPayload,
    IssuePayload,
    PullRequestDetailPayload,
    PullRequestPayload,
    ReleasePayload,
    RepoPayload,
    parse_payload,
    parse_payload_list,
)
from impact_pool.ingestion.token_pool import TokenPool

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"
GITHUB_USER_AGENT = "impact-pool-collector/0.1"


def parse_github_path(url: str) -> Optional[str]:
    """Extract 'owner/repo' from a GitHub URL.

    Handles http/https, trailing slashes, and .git suffixes.
    Returns None if the URL is not a parseable GitHub repo URL.

    Examples:
        >>> parse_github_path("https://github.com/vercel/swr.git")
        'vercel/swr'
        >>> parse_github_path("https://notgithub.com/foo/bar")
    """
    if not url:
        return None
    url = url.strip().rstrip("/")
    if url.endswith(".git"):
        url = url[:-4]
    match = re.match(r"^https?://github\.com/([^/]+/[^/]+)$", url, re.IGNORECASE)
    return match.group(1) if match else None


def _iso(ts: datetime) -> str:
    return ts.strftime("%Y-%m-%dT%H:%M:%SZ")


def _int_header(headers: Any, name: str) -> Optional[int]:
    value = headers.get(name) if headers is not None else None
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class GitHubClient:
    """GitHub REST API client drawing credentials from a TokenPool.

    Args:
        token_pool: Rotating credentials.
        config:     Pagination and retry limits.
    """

    def __init__(self, token_pool: TokenPool, config: ImpactPoolConfig = DEFAULT_CONFIG) -> None:
        self._pool = token_pool
        self._config = config

    # ── Transport ─────────────────────────────────────────────────────────────

    def _send(self, url: str, headers: dict) -> tuple[int, Any, bytes]:
        """Perform one GET. Returns (status, headers, body) for any HTTP status.

        Raises:
            urllib.error.URLError: On network failure.
        """
        req = urllib.request.Request(url, headers=headers)
        try:
            with urllib.request.urlopen(req, timeout=self._config.request_timeout_sec) as resp:
                return resp.status, resp.headers, resp.read()
        except urllib.error.HTTPError as exc:
            return exc.code, exc.headers, exc.read() if exc.fp is not None else b""

    @staticmethod
    def _is_rate_limited(status: int, headers: Any, body: bytes) -> bool:
        if status == 429:
            return True
        if status != 403:
            return False
        if _int_header(headers, "x-ratelimit-remaining") == 0:
            return True
        if headers is not None and headers.get("retry-after"):
            return True
        return b"rate limit" in body.lower()

    @staticmethod
    def _reset_at(headers: Any) -> Optional[float]:
        reset = _int_header(headers, "x-ratelimit-reset")
        if reset:
            return float(reset)
        retry_after = _int_header(headers, "retry-after")
        if retry_after is not None:
            return time.time() + retry_after
        return None

    def request(self, path: str) -> Any:
        """GET *path* (starting with '/') and return the decoded JSON body.

        Raises:
            UpstreamRateLimited: Every credential is cooling down.
            UpstreamFetchError:  Any other non-2xx outcome.
        """
        url = f"{GITHUB_API_BASE}{path}"
        transient_attempt = 0
        backoff = 1.0

        while True:
            credential = self._pool.acquire()
            headers = {
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": GITHUB_USER_AGENT,
            }
            if credential.token:
                headers["Authorization"] = f"Bearer {credential.token}"

            try:
                status, resp_headers, body = self._send(url, headers)
            except urllib.error.URLError as exc:
                if transient_attempt < self._config.github_max_retries:
                    wait = backoff * (2 ** transient_attempt)
                    logger.warning(
                        "Network error on %s (%s) — sleeping %.1fs before retry %d/%d",
                        path, exc.reason, wait, transient_attempt + 1, self._config.github_max_retries,
                    )
                    time.sleep(wait)
                    transient_attempt += 1
                    continue
                raise UpstreamFetchError(f"Network error: {exc.reason}", source="github", url=url) from exc

            self._pool.record_quota(
                credential,
                _int_header(resp_headers, "x-ratelimit-remaining"),
                _int_header(resp_headers, "x-ratelimit-reset"),
            )

            if self._is_rate_limited(status, resp_headers, body):
                self._pool.mark_rate_limited(credential, self._reset_at(resp_headers))
                continue
            if status == 404:
                raise UpstreamFetchError(f"Not found: {path}", source="github", url=url)
            if status >= 500 and transient_attempt < self._config.github_max_retries:
                wait = backoff * (2 ** transient_attempt)
                logger.warning(
                    "HTTP %d on %s — sleeping %.1fs before retry %d/%d",
                    status, path, wait, transient_attempt + 1, self._config.github_max_retries,
                )
                time.sleep(wait)
                transient_attempt += 1
                continue
            if status >= 400:
                raise UpstreamFetchError(f"HTTP {status} on {path}", source="github", url=url)

            try:
                return json.loads(body) if body else None
            except json.JSONDecodeError as exc:
                raise UpstreamFetchError(f"Invalid JSON from {path}", source="github", url=url) from exc

    def _paginate(self, path: str, params: dict) -> list:
        """Collect up to github_max_pages pages of a list endpoint."""
        items: list = []
        per_page = self._config.github_per_page
        for page in range(1, self._config.github_max_pages + 1):
            query = urllib.parse.urlencode({**params, "per_page": per_page, "page": page})
            data = self.request(f"{path}?{query}")
            if not isinstance(data, list):
                raise UpstreamFetchError(f"Expected a list from {path}", source="github", url=path)
            items.extend(data)
            if len(data) < per_page:
                break
        return items

    # ── Resources ─────────────────────────────────────────────────────────────

    def get_repo(self, owner: str, repo: str) -> RepoPayload:
        path = f"/repos/{owner}/{repo}"
        return parse_payload(RepoPayload, self.request(path), "github", path)

    def get_community_health(self, owner: str, repo: str) -> int:
        """Community profile health percentage (README, CONTRIBUTING, …)."""
        path = f"/repos/{owner}/{repo}/community/profile"
        return parse_payload(CommunityProfilePayload, self.request(path), "github", path).health_percentage

    def list_merged_pull_requests(self, owner: str, repo: str, since: datetime) -> list[PullRequestPayload]:
        """Closed PRs updated since *since* that were actually merged.

        Pages are sorted by update time (newest first), so paging stops at the
        first page that reaches past *since*.
        """
        path = f"/repos/{owner}/{repo}/pulls"
        per_page = self._config.github_per_page
        merged: list[PullRequestPayload] = []
        for page in range(1, self._config.github_max_pages + 1):
            query = urllib.parse.urlencode({
                "state": "closed", "sort": "updated", "direction": "desc",
                "per_page": per_page, "page": page,
            })
            data = self.request(f"{path}?{query}")
            prs = parse_payload_list(PullRequestPayload, data, "github", path)
            reached_since = False
            for pr in prs:
                if pr.updated_at < since:
                    reached_since = True
                    break
                if pr.merged_at is not None:
                    merged.append(pr)
            if reached_since or len(prs) < per_page:
                break
        return merged

    def get_pull_request_size(self, owner: str, repo: str, number: int) -> int:
        """Lines changed (additions + deletions) in one pull request."""
        path = f"/repos/{owner}/{repo}/pulls/{number}"
        detail = parse_payload(PullRequestDetailPayload, self.request(path), "github", path)
        return detail.additions + detail.deletions

    def list_issues(self, owner: str, repo: str, since: datetime) -> list[IssuePayload]:
        """Issues (pull requests filtered out) updated since *since*."""
        path = f"/repos/{owner}/{repo}/issues"
        raw = self._paginate(path, {"state": "all", "since": _iso(since)})
        issues = parse_payload_list(IssuePayload, raw, "github", path)
        return [issue for issue in issues if not issue.is_pull_request]

    def get_first_response(self, owner: str, repo: str, number: int, author: str) -> Optional[datetime]:
        """Time of the first comment on issue/PR *number* by someone other than *author*.

        Bot accounts do not count as a response. Only the first page of
        comments (oldest first) is inspected; None when nobody has replied
        there yet.
        """
        path = f"/repos/{owner}/{repo}/issues/{number}/comments"
        query = urllib.parse.urlencode({"per_page": self._config.github_per_page})
        comments = parse_payload_list(IssueCommentPayload, self.request(f"{path}?{query}"), "github", path)
        replies = [c.created_at for c in comments if not c.is_bot and c.user.login != author]
        return min(replies, default=None)

    def list_commits(self, owner: str, repo: str, since: datetime) -> list[CommitPayload]:
        path = f"/repos/{owner}/{repo}/commits"
        raw = self._paginate(path, {"since": _iso(since)})
        return parse_payload_list(CommitPayload, raw, "github", path)

    def list_releases(self, owner: str, repo: str, since: datetime) -> list[ReleasePayload]:
        """Releases published (or created, for drafts) since *since*."""
        path = f"/repos/{owner}/{repo}/releases"
        per_page = self._config.github_per_page
        releases: list[ReleasePayload] = []
        for page in range(1, self._config.github_max_pages + 1):
            query = urllib.parse.urlencode({"per_page": per_page, "page": page})
            data = self.request(f"{path}?{query}")
            batch = parse_payload_list(ReleasePayload, data, "github", path)
            releases.extend(r for r in batch if (r.published_at or r.created_at) >= since)
            oldest = min(((r.published_at or r.created_at) for r in batch), default=None)
            if len(batch) < per_page or (oldest is not None and oldest < since):
                break
        return releases
