"""
Unit tests for impact_pool.ingestion.github_client and the npm/deps.dev/jsDelivr clients.

All tests are fully offline: GitHubClient._send is replaced by a scripted
responder, so rotation, retries and payload validation run without network.
"""
import json
import urllib.error
from datetime import datetime, timezone

import pytest

from impact_pool.config import DEFAULT_CONFIG
from impact_pool.errors import UpstreamFetchError, UpstreamRateLimited
from impact_pool.ingestion.deps_dev_client import DepsDotDevClient
from impact_pool.ingestion.github_client import GITHUB_API_BASE, GitHubClient, parse_github_path
from impact_pool.ingestion.jsdelivr_client import JSDELIVR_STATS_BASE, JsDelivrClient
from impact_pool.ingestion.npm_client import NPM_DOWNLOADS_BASE, NpmRegistryClient
from impact_pool.ingestion.token_pool import TokenPool


class Responder:
    """Replays (status, headers, body) tuples and records the tokens used."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.auth = []
        self.urls = []

    def __call__(self, url, headers):
        self.urls.append(url)
        self.auth.append(headers.get("Authorization"))
        status, resp_headers, payload = self.responses.pop(0)
        if isinstance(payload, Exception):
            raise payload
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        return status, resp_headers, body


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr("impact_pool.ingestion.github_client.time.sleep", lambda s: None)


def _client(responses, tokens=("t1", "t2")):
    client = GitHubClient(TokenPool(list(tokens)), DEFAULT_CONFIG)
    responder = Responder(responses)
    client._send = responder
    return client, responder


REPO = {"full_name": "acme/alpha", "stargazers_count": 12, "forks_count": 3, "archived": False}


# ---------------------------------------------------------------------------
# parse_github_path
# ---------------------------------------------------------------------------


def test_parse_github_path_variants():
    """Trailing slashes and .git suffixes are tolerated."""
    assert parse_github_path("https://github.com/acme/alpha") == "acme/alpha"
    assert parse_github_path("https://github.com/acme/alpha.git") == "acme/alpha"
    assert parse_github_path("https://github.com/acme/alpha/") == "acme/alpha"
    assert parse_github_path("https://gitlab.com/acme/alpha") is None
    assert parse_github_path("") is None


# ---------------------------------------------------------------------------
# GitHubClient.request
# ---------------------------------------------------------------------------


def test_request_sends_bearer_token():
    """Authenticated requests carry the pooled token."""
    client, responder = _client([(200, {}, REPO)], tokens=("t1",))
    repo = client.get_repo("acme", "alpha")
    assert repo.stargazers_count == 12
    assert responder.auth == ["Bearer t1"]
    assert responder.urls == [f"{GITHUB_API_BASE}/repos/acme/alpha"]


def test_rate_limit_rotates_to_next_token():
    """A 403 with exhausted quota moves on to another credential."""
    limited = (403, {"x-ratelimit-remaining": "0", "x-ratelimit-reset": "9999999999"}, {"message": "API rate limit exceeded"})
    client, responder = _client([limited, (200, {}, REPO)])
    client.get_repo("acme", "alpha")
    assert responder.auth[0] != responder.auth[1]


def test_all_tokens_limited_raises_rate_limited():
    """When every token is cooling down the request fails fast."""
    limited = (429, {"retry-after": "600"}, {"message": "slow down"})
    client, _ = _client([limited, limited])
    with pytest.raises(UpstreamRateLimited) as excinfo:
        client.get_repo("acme", "alpha")
    assert excinfo.value.reset_at is not None


def test_not_found_is_not_retried():
    """404 raises UpstreamFetchError immediately."""
    client, responder = _client([(404, {}, {"message": "Not Found"})])
    with pytest.raises(UpstreamFetchError) as excinfo:
        client.get_repo("acme", "missing")
    assert excinfo.value.source == "github"
    assert len(responder.urls) == 1


def test_server_errors_are_retried():
    """5xx responses are retried with backoff before succeeding."""
    client, responder = _client([(502, {}, b""), (503, {}, b""), (200, {}, REPO)])
    assert client.get_repo("acme", "alpha").full_name == "acme/alpha"
    assert len(responder.urls) == 3


def test_network_errors_exhaust_retries():
    """Persistent network failure surfaces as UpstreamFetchError."""
    err = urllib.error.URLError("connection refused")
    client, _ = _client([(0, {}, err)] * (DEFAULT_CONFIG.github_max_retries + 1))
    with pytest.raises(UpstreamFetchError):
        client.get_repo("acme", "alpha")


def test_malformed_payload_is_rejected():
    """Missing required fields fail validation at the boundary."""
    client, _ = _client([(200, {}, {"full_name": "acme/alpha", "stargazers_count": -1, "forks_count": 0})])
    with pytest.raises(UpstreamFetchError, match="Malformed github payload"):
        client.get_repo("acme", "alpha")


# ---------------------------------------------------------------------------
# GitHubClient resources
# ---------------------------------------------------------------------------


def test_merged_pull_requests_stop_at_since():
    """Unmerged PRs are dropped and paging stops once past *since*."""
    prs = [
        {"id": 1, "number": 1, "user": {"login": "a"}, "updated_at": "2025-07-30T00:00:00Z",
         "merged_at": "2025-07-30T00:00:00Z"},
        {"id": 2, "number": 2, "user": {"login": "b"}, "updated_at": "2025-07-20T00:00:00Z",
         "merged_at": None},
        {"id": 3, "number": 3, "user": {"login": "c"}, "updated_at": "2025-01-01T00:00:00Z",
         "merged_at": "2025-01-01T00:00:00Z"},
    ]
    client, responder = _client([(200, {}, prs)])
    since = datetime(2025, 6, 1, tzinfo=timezone.utc)
    merged = client.list_merged_pull_requests("acme", "alpha", since)
    assert [p.id for p in merged] == [1]
    assert len(responder.urls) == 1


def test_list_issues_filters_pull_requests():
    """The issues endpoint also returns PRs; they are filtered out."""
    issues = [
        {"id": 10, "number": 1, "user": {"login": "a"}, "created_at": "2025-07-01T00:00:00Z"},
        {"id": 11, "number": 2, "user": {"login": "b"}, "created_at": "2025-07-02T00:00:00Z",
         "pull_request": {"url": "x"}},
    ]
    client, responder = _client([(200, {}, issues)])
    result = client.list_issues("acme", "alpha", datetime(2025, 6, 1, tzinfo=timezone.utc))
    assert [i.id for i in result] == [10]
    assert "since=2025-06-01T00%3A00%3A00Z" in responder.urls[0]


def test_commit_author_identity_falls_back_to_git_name():
    """Commits without a linked account use the git author name."""
    commits = [
        {"sha": "a" * 40, "commit": {"author": {"name": "Jane", "date": "2025-07-01T00:00:00Z"}},
         "author": None},
        {"sha": "b" * 40, "commit": {"author": {"name": "Joe", "date": "2025-07-02T00:00:00Z"}},
         "author": {"login": "joe-gh"}},
    ]
    client, _ = _client([(200, {}, commits)])
    result = client.list_commits("acme", "alpha", datetime(2025, 6, 1, tzinfo=timezone.utc))
    assert [c.author_identity for c in result] == ["Jane", "joe-gh"]


def test_pull_request_size_sums_additions_and_deletions():
    client, _ = _client([(200, {}, {"id": 1, "additions": 40, "deletions": 9})])
    assert client.get_pull_request_size("acme", "alpha", 1) == 49


def test_first_response_skips_author_and_bots():
    """The earliest comment by someone else, ignoring bots, is the first response."""
    comments = [
        {"user": {"login": "reporter"}, "created_at": "2025-07-01T01:00:00Z"},
        {"user": {"login": "dependabot[bot]"}, "created_at": "2025-07-01T02:00:00Z"},
        {"user": {"login": "maintainer"}, "created_at": "2025-07-01T09:30:00Z"},
        {"user": {"login": "helper"}, "created_at": "2025-07-01T12:00:00Z"},
    ]
    client, responder = _client([(200, {}, comments)])
    first = client.get_first_response("acme", "alpha", 42, "reporter")
    assert first == datetime(2025, 7, 1, 9, 30, tzinfo=timezone.utc)
    assert "/repos/acme/alpha/issues/42/comments?per_page=" in responder.urls[0]


def test_first_response_none_without_replies():
    client, _ = _client([(200, {}, [{"user": {"login": "reporter"}, "created_at": "2025-07-01T01:00:00Z"}])])
    assert client.get_first_response("acme", "alpha", 7, "reporter") is None


# ---------------------------------------------------------------------------
# npm / deps.dev clients
# ---------------------------------------------------------------------------


def test_npm_client_instantiation():
    """NpmRegistryClient keeps the configured minimum interval."""
    client = NpmRegistryClient(min_interval_sec=0.5)
    assert client._min_interval == 0.5
    assert NPM_DOWNLOADS_BASE.startswith("https://api.npmjs.org")


def test_npm_scoped_package_is_encoded(monkeypatch):
    """Scoped names are URL-encoded for the downloads API."""
    client = NpmRegistryClient(min_interval_sec=0)
    seen = []

    def fake_get(url):
        seen.append(url)
        return {"downloads": 1234, "package": "@tanstack/query-core"}

    monkeypatch.setattr(client, "_get", fake_get)
    assert client.get_downloads("@tanstack/query-core") == 1234
    assert seen[0].endswith("/last-year/%40tanstack%2Fquery-core")


def test_npm_missing_package_returns_none(monkeypatch):
    client = NpmRegistryClient(min_interval_sec=0)
    monkeypatch.setattr(client, "_get", lambda url: None)
    assert client.get_downloads("does-not-exist") is None
    assert client.ships_types("does-not-exist") is None


def test_npm_ships_types(monkeypatch):
    client = NpmRegistryClient(min_interval_sec=0)
    monkeypatch.setattr(client, "_get", lambda url: {"name": "zod", "types": "index.d.ts"})
    assert client.ships_types("zod") is True


def test_deps_dev_default_rate_limit():
    """Default rate limit (100/min) produces 0.6s minimum interval."""
    client = DepsDotDevClient()
    assert abs(client._min_interval - 0.6) < 1e-9


def test_deps_dev_dependents_use_default_version(monkeypatch):
    """Dependents are read for the version deps.dev marks as default."""
    client = DepsDotDevClient()
    responses = {
        "package": {"versions": [
            {"versionKey": {"version": "1.0.0"}},
            {"versionKey": {"version": "2.1.0"}, "isDefault": True},
        ]},
        "dependents": {"dependentCount": 321},
    }
    seen = []

    def fake_get(url):
        seen.append(url)
        return responses["dependents"] if url.endswith(":dependents") else responses["package"]

    monkeypatch.setattr(client, "_get", fake_get)
    assert client.get_dependent_count("swr") == 321
    assert "/versions/2.1.0:dependents" in seen[-1]


def test_deps_dev_scorecard(monkeypatch):
    client = DepsDotDevClient()
    monkeypatch.setattr(client, "_get", lambda url: {"scorecard": {"overallScore": 6.4}})
    assert client.get_scorecard_score("vercel", "swr") == 6.4
    monkeypatch.setattr(client, "_get", lambda url: {})
    assert client.get_scorecard_score("vercel", "swr") is None


def test_jsdelivr_hits_for_scoped_package(monkeypatch):
    """Scoped names keep their '@' and '/'; the yearly total is returned."""
    client = JsDelivrClient(min_interval_sec=0)
    seen = []

    def fake_get(url):
        seen.append(url)
        return {"hits": {"total": 98765, "rank": 120}}

    monkeypatch.setattr(client, "_get", fake_get)
    assert client.get_hits("@tanstack/query-core") == 98765
    assert seen == [f"{JSDELIVR_STATS_BASE}/@tanstack/query-core?period=year"]


def test_jsdelivr_unknown_package_has_zero_hits(monkeypatch):
    client = JsDelivrClient(min_interval_sec=0)
    monkeypatch.setattr(client, "_get", lambda url: None)
    assert client.get_hits("not-on-cdn") == 0


def test_jsdelivr_malformed_payload_raises(monkeypatch):
    client = JsDelivrClient(min_interval_sec=0)
    monkeypatch.setattr(client, "_get", lambda url: {"hits": {"total": -1}})
    with pytest.raises(UpstreamFetchError) as excinfo:
        client.get_hits("swr")
    assert excinfo.value.source == "jsdelivr"


@pytest.mark.integration
def test_npm_real_downloads():
    """Live npm API returns a positive download count for a popular package."""
    assert NpmRegistryClient().get_downloads("react") > 0
