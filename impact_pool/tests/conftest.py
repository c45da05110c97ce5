"""
impact_pool/tests/conftest.py — Shared pytest fixtures for the Impact Pool suite.

Upstream sources are replaced by small in-memory fakes that return the same
pydantic payloads the real clients produce, so the collector, orchestrator
and API run end-to-end without any network access.

Fixtures:
    now            — Fixed aware datetime inside 2025-Q3.
    store          — FileStore rooted in tmp_path.
    repository     — ImpactRepository over ``store``.
    libraries      — Four catalog libraries with different activity levels.
    fake_github    — FakeGitHub serving deterministic activity.
    fake_cdn       — FakeCdn serving jsDelivr hit counts.
    collector      — ActivityCollector over the fakes, clocked at ``now``.
    orchestrator   — CollectionOrchestrator wiring all of the above.
"""

import dataclasses
import zlib
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from impact_pool.catalog import Library
from impact_pool.config import DEFAULT_CONFIG
from impact_pool.errors import UpstreamFetchError
from impact_pool.ingestion.collector import ActivityCollector
from impact_pool.ingestion.schemas import (
    CommitPayload,
    IssuePayload,
    PullRequestPayload,
    ReleasePayload,
    RepoPayload,
)
from impact_pool.orchestration.orchestrator import CollectionOrchestrator
from impact_pool.storage.repository import ImpactRepository
from impact_pool.storage.store import FileStore


# ── Pytest configuration hooks ────────────────────────────────────────────────

def pytest_configure(config):
    """Register custom markers and add --run-integration CLI option support."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests that call real external APIs (deselected by default, "
        "pass --run-integration or -m integration to enable)",
    )


def pytest_addoption(parser):
    """Add --run-integration CLI flag to enable integration tests."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests that call real external APIs.",
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --run-integration is passed or -m integration is used."""
    markexpr = config.getoption("-m", default="")
    if "integration" in markexpr:
        return

    if config.getoption("--run-integration"):
        return

    skip_integration = pytest.mark.skip(
        reason="Integration test -- pass --run-integration or -m integration to run"
    )
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


NOW = datetime(2025, 8, 1, 12, 0, tzinfo=timezone.utc)


def _ts(days_ago: float) -> str:
    return (NOW - timedelta(days=days_ago)).strftime("%Y-%m-%dT%H:%M:%SZ")


# ── Fake upstream sources ─────────────────────────────────────────────────────

def make_repo_activity(scale: int, prefix: str = "") -> dict:
    """Deterministic activity for one repository; larger *scale* = busier.

    Event ids are offset by a checksum of *prefix* so repos never share ids.
    """
    base = zlib.crc32(prefix.encode()) % 1_000_000 * 1000
    authors = [f"{prefix}dev{i}" for i in range(1, scale + 2)]
    prs = [
        {
            "id": base + i,
            "number": i,
            "user": {"login": authors[i % len(authors)]},
            "created_at": _ts(2 * i + 2),
            "updated_at": _ts(2 * i + 1),
            "merged_at": _ts(2 * i + 1),
        }
        for i in range(1, 3 * scale + 1)
    ]
    issues = [
        {
            "id": base + 500 + i,
            "number": 100 + i,
            "user": {"login": f"{prefix}user{i}"},
            "created_at": _ts(10 * i),
            "closed_at": _ts(10 * i - 3) if i % 2 == 0 else None,
            "comments": i % 3,
        }
        for i in range(1, 2 * scale + 1)
    ]
    commits = [
        {
            "sha": f"{prefix}-{i:04d}",
            "commit": {"author": {"name": authors[0], "date": _ts(i)}},
            "author": {"login": authors[0] if i % 3 else authors[-1]},
        }
        for i in range(1, 15 * scale + 1)
    ]
    releases = [
        {"id": base + 900 + i, "created_at": _ts(45 * i), "published_at": _ts(45 * i)}
        for i in range(1, scale + 1)
    ]
    return {
        "stars": 40 * scale ** 2,
        "health": min(100, 20 * scale),
        "prs": prs,
        "issues": issues,
        "commits": commits,
        "releases": releases,
    }


class FakeGitHub:
    """In-memory GitHubClient stand-in; records every call."""

    def __init__(self, activity: dict[str, dict], fail: Optional[set] = None) -> None:
        self.activity = activity
        self.fail = set(fail or ())
        self.calls: list[tuple[str, str]] = []

    def _data(self, owner: str, repo: str, what: str) -> dict:
        key = f"{owner}/{repo}"
        self.calls.append((what, key))
        if key in self.fail:
            raise UpstreamFetchError(f"GitHub unavailable for {key}", source="github", url=f"/repos/{key}")
        return self.activity[key]

    def get_repo(self, owner, repo):
        data = self._data(owner, repo, "repo")
        return RepoPayload.model_validate({
            "full_name": f"{owner}/{repo}",
            "stargazers_count": data["stars"],
            "forks_count": data["stars"] // 10,
            "archived": False,
            "pushed_at": _ts(1),
        })

    def get_community_health(self, owner, repo):
        return self._data(owner, repo, "community")["health"]

    def list_merged_pull_requests(self, owner, repo, since):
        data = self._data(owner, repo, "pulls")
        prs = [PullRequestPayload.model_validate(p) for p in data["prs"]]
        return [p for p in prs if p.updated_at >= since]

    def get_pull_request_size(self, owner, repo, number):
        self._data(owner, repo, "pull_size")
        return 10 * number

    def list_issues(self, owner, repo, since):
        data = self._data(owner, repo, "issues")
        return [IssuePayload.model_validate(i) for i in data["issues"]]

    def get_first_response(self, owner, repo, number, author):
        """Reply *number* % 7 + 1 hours after creation; every fourth item is unanswered."""
        data = self._data(owner, repo, "first_response")
        if number % 4 == 0:
            return None
        items = {p["number"]: p["created_at"] for p in data["prs"]}
        items.update({i["number"]: i["created_at"] for i in data["issues"]})
        created = datetime.fromisoformat(items[number].replace("Z", "+00:00"))
        return created + timedelta(hours=number % 7 + 1)

    def list_commits(self, owner, repo, since):
        data = self._data(owner, repo, "commits")
        commits = [CommitPayload.model_validate(c) for c in data["commits"]]
        return [c for c in commits if c.commit.author.date >= since]

    def list_releases(self, owner, repo, since):
        data = self._data(owner, repo, "releases")
        return [ReleasePayload.model_validate(r) for r in data["releases"]]

    def count(self, what: str) -> int:
        return sum(1 for w, _ in self.calls if w == what)


class FakeNpm:
    def __init__(self, downloads: dict[str, int], typed: Optional[set] = None) -> None:
        self.downloads = downloads
        self.typed = set(typed or ())

    def get_downloads(self, package):
        return self.downloads.get(package)

    def ships_types(self, package):
        return package in self.typed


class FakeCdn:
    def __init__(self, hits: dict[str, int]) -> None:
        self.hits = hits

    def get_hits(self, package):
        return self.hits.get(package, 0)


class FakeDepsDev:
    def __init__(self, dependents: dict[str, int], scorecards: dict[str, float]) -> None:
        self.dependents = dependents
        self.scorecards = scorecards

    def get_dependent_count(self, package):
        return self.dependents.get(package)

    def get_scorecard_score(self, owner, repo):
        return self.scorecards.get(f"{owner}/{repo}")


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def store(tmp_path) -> FileStore:
    return FileStore(str(tmp_path / "store"))


@pytest.fixture
def repository(store) -> ImpactRepository:
    return ImpactRepository(store, DEFAULT_CONFIG)


@pytest.fixture
def libraries() -> list[Library]:
    return [
        Library("acme", "alpha", category="http"),
        Library("acme", "beta", category="http"),
        Library("zen", "gamma", category="state", npm_package="@zen/gamma"),
        Library("zen", "delta", category="state", eligibility_adjustment=0.5),
    ]


@pytest.fixture
def fake_github(libraries) -> FakeGitHub:
    scales = {"acme/alpha": 4, "acme/beta": 1, "zen/gamma": 3, "zen/delta": 2}
    return FakeGitHub({lib.key: make_repo_activity(scales[lib.key], lib.name) for lib in libraries})


@pytest.fixture
def fake_npm() -> FakeNpm:
    return FakeNpm(
        {"alpha": 5_000_000, "beta": 20_000, "@zen/gamma": 800_000, "delta": 90_000},
        typed={"alpha", "@zen/gamma"},
    )


@pytest.fixture
def fake_deps_dev() -> FakeDepsDev:
    return FakeDepsDev(
        {"alpha": 1200, "beta": 15, "@zen/gamma": 300, "delta": 40},
        {"acme/alpha": 7.5, "acme/beta": 4.0, "zen/gamma": 6.1},
    )


@pytest.fixture
def fake_cdn() -> FakeCdn:
    return FakeCdn({"alpha": 2_000_000, "@zen/gamma": 150_000})


@pytest.fixture
def collector(fake_github, fake_npm, fake_deps_dev, fake_cdn, now) -> ActivityCollector:
    return ActivityCollector(
        fake_github,
        npm=fake_npm,
        deps_dev=fake_deps_dev,
        cdn=fake_cdn,
        config=DEFAULT_CONFIG,
        clock=lambda: now,
    )


@pytest.fixture
def orchestrator(repository, collector, libraries, now) -> CollectionOrchestrator:
    return CollectionOrchestrator(
        repository,
        collector,
        catalog=lambda: list(libraries),
        config=DEFAULT_CONFIG,
        clock=lambda: now,
    )


@pytest.fixture
def small_pool_config():
    """Pool sized so a four-library cohort exercises floor and cap."""
    return dataclasses.replace(DEFAULT_CONFIG, total_pool_usd=100_000.0, floor_usd=5_000.0, cap_fraction=0.40)
