"""
impact_pool/ingestion/collector.py — Per-library activity collection.

ActivityCollector.collect() fetches everything new for one library since its
watermark and merges it into the durable ActivityRecord:

    GitHub (required)  repo stats, community profile, merged PRs, issues,
                       commits, releases. Any failure fails the library.
                       First-response times (issue comments) are fetched
                       softly within max_response_fetches.
    npm (optional)     12-month downloads, shipped type declarations.
    deps.dev (opt.)    dependent count, OpenSSF Scorecard.
    jsDelivr (opt.)    12-month CDN hits.

Optional sources degrade softly: a failure is logged and the previously
stored value is kept. Failures that exclude a library are recorded through
record_failure() as structured CollectionError entries.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from impact_pool.catalog import Library
from impact_pool.config import DEFAULT_CONFIG, ImpactPoolConfig
from impact_pool.errors import UpstreamFetchError, UpstreamRateLimited
from impact_pool.ingestion.activity import (
    ActivityDelta,
    ActivityRecord,
    CommitEvent,
    IssueEvent,
    PullRequestEvent,
    ReleaseEvent,
    merge_activity,
)

logger = logging.getLogger(__name__)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class CollectionError:
    """Structured record of one library excluded from a cycle.

    Fields:
        library:     ``owner/name`` key.
        message:     Human-readable cause.
        context:     Error kind, source, URL and any run-specific details.
        occurred_at: ISO timestamp (UTC).
    """

    library: str
    message: str
    context: dict = field(default_factory=dict)
    occurred_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


class ActivityCollector:
    """Fetches and merges activity for one library at a time.

    Args:
        github:   GitHubClient (or compatible) backed by a TokenPool.
        npm:      NpmRegistryClient, or None to skip registry signals.
        deps_dev: DepsDotDevClient, or None to skip dependents/scorecard.
        cdn:      JsDelivrClient, or None to skip CDN hits.
        config:   Window lengths and PR-size / first-response fetch limits.
        clock:    Returns the current aware datetime; injectable for tests.
    """

    def __init__(
        self,
        github: Any,
        npm: Any = None,
        deps_dev: Any = None,
        cdn: Any = None,
        config: ImpactPoolConfig = DEFAULT_CONFIG,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._github = github
        self._npm = npm
        self._deps_dev = deps_dev
        self._cdn = cdn
        self._config = config
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))
        self.failures = 0
        self.errors: list[CollectionError] = []
        self._response_budget = 0

    # ── Failure bookkeeping ───────────────────────────────────────────────────

    def reset(self) -> None:
        """Clear failure state at the start of a run."""
        self.failures = 0
        self.errors = []

    def record_failure(self, library: Library, exc: BaseException, **context: Any) -> CollectionError:
        """Log a structured error for *library* and bump the failure counter."""
        details = {"kind": type(exc).__name__, **context}
        if isinstance(exc, UpstreamFetchError):
            details["source"] = exc.source
            if exc.url:
                details["url"] = exc.url
        if isinstance(exc, UpstreamRateLimited) and exc.reset_at:
            details["reset_at"] = exc.reset_at

        error = CollectionError(
            library=library.key,
            message=str(exc),
            context=details,
            occurred_at=_iso(self._clock()),
        )
        self.failures += 1
        self.errors.append(error)
        logger.warning("Collection failed for %s: %s (%s)", library.key, error.message, details)
        return error

    # ── Collection ────────────────────────────────────────────────────────────

    def _soft(self, library: Library, source: str, fn: Callable, *args: Any) -> Any:
        """Call an optional source; None (keep previous value) on failure."""
        try:
            return fn(*args)
        except UpstreamFetchError as exc:
            logger.warning(
                "%s: %s unavailable, keeping previous value — %s", library.key, source, exc
            )
            return None

    def _first_response(self, library: Library, number: int, author: str) -> Optional[datetime]:
        """First non-author reply on issue/PR *number*, within this run's fetch budget."""
        if self._response_budget <= 0:
            return None
        self._response_budget -= 1
        return self._soft(
            library, f"#{number} first response",
            self._github.get_first_response, library.owner, library.name, number, author,
        )

    def _since(self, previous: Optional[ActivityRecord], now: datetime) -> datetime:
        if previous is not None and previous.watermark:
            return _parse_iso(previous.watermark)
        return now - timedelta(days=self._config.history_days)

    def collect(self, library: Library, previous: Optional[ActivityRecord] = None) -> ActivityRecord:
        """Fetch activity since the last watermark and merge it into *previous*.

        Pass previous=None for a first collection or an explicit forced
        refresh; the full history window is then fetched and a fresh record
        is built.

        Returns:
            The merged ActivityRecord (not yet persisted).

        Raises:
            UpstreamFetchError: GitHub data could not be fetched or validated
                                (UpstreamRateLimited when every token is
                                cooling down).
        """
        now = self._clock()
        since = self._since(previous, now)
        owner, name = library.owner, library.name
        logger.debug("Collecting %s since %s", library.key, _iso(since))

        repo = self._github.get_repo(owner, name)
        community = self._soft(library, "community profile", self._github.get_community_health, owner, name)

        known_prs = {pr.id for pr in previous.pull_requests} if previous else set()
        answered_issues = (
            {i.id for i in previous.issues if i.first_response_at} if previous else set()
        )
        delta = ActivityDelta(watermark=_iso(now))

        pr_detail_budget = self._config.max_pr_detail_fetches
        self._response_budget = self._config.max_response_fetches
        for pr in self._github.list_merged_pull_requests(owner, name, since):
            author = pr.user.login if pr.user else "ghost"
            lines: Optional[int] = None
            responded: Optional[datetime] = None
            if pr.id not in known_prs:
                if pr_detail_budget > 0:
                    pr_detail_budget -= 1
                    lines = self._soft(
                        library, f"PR #{pr.number} size", self._github.get_pull_request_size, owner, name, pr.number
                    )
                responded = self._first_response(library, pr.number, author)
            delta.pull_requests.append(
                PullRequestEvent(
                    id=pr.id,
                    merged_at=_iso(pr.merged_at),
                    author=author,
                    lines_changed=lines,
                    created_at=_iso(pr.created_at),
                    first_response_at=_iso(responded),
                )
            )

        for issue in self._github.list_issues(owner, name, since):
            author = issue.user.login if issue.user else "ghost"
            responded = None
            if issue.comments > 0 and issue.id not in answered_issues:
                responded = self._first_response(library, issue.number, author)
            delta.issues.append(
                IssueEvent(
                    id=issue.id,
                    created_at=_iso(issue.created_at),
                    author=author,
                    closed_at=_iso(issue.closed_at),
                    first_response_at=_iso(responded),
                )
            )

        for commit in self._github.list_commits(owner, name, since):
            delta.commits.append(
                CommitEvent(
                    sha=commit.sha,
                    committed_at=_iso(commit.commit.author.date),
                    author=commit.author_identity,
                )
            )

        for release in self._github.list_releases(owner, name, since):
            delta.releases.append(
                ReleaseEvent(
                    id=release.id,
                    published_at=_iso(release.published_at or release.created_at),
                    prerelease=release.prerelease,
                    draft=release.draft,
                )
            )

        delta.signals.update({
            "stars": repo.stargazers_count,
            "forks": repo.forks_count,
            "archived": repo.archived,
            "pushed_at": _iso(repo.pushed_at),
            "community_health": community,
        })

        if self._npm is not None:
            package = library.package_name
            delta.signals["downloads_12mo"] = self._soft(library, "npm downloads", self._npm.get_downloads, package)
            delta.signals["ships_types"] = self._soft(library, "npm manifest", self._npm.ships_types, package)

        if self._deps_dev is not None:
            delta.signals["dependents"] = self._soft(
                library, "deps.dev dependents", self._deps_dev.get_dependent_count, library.package_name
            )
            delta.signals["scorecard_score"] = self._soft(
                library, "OpenSSF scorecard", self._deps_dev.get_scorecard_score, owner, name
            )

        if self._cdn is not None:
            delta.signals["cdn_hits_12mo"] = self._soft(
                library, "jsDelivr hits", self._cdn.get_hits, library.package_name
            )

        record = merge_activity(previous, delta, library.key, now=_iso(now))
        logger.debug(
            "%s: +%d PRs, +%d issues, +%d commits, +%d releases",
            library.key, len(delta.pull_requests), len(delta.issues),
            len(delta.commits), len(delta.releases),
        )
        return record
