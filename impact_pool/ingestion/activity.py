"""
impact_pool/ingestion/activity.py — Durable per-library activity record.

An ActivityRecord accumulates everything ever collected for a library:

    events       pull requests, issues, commits and releases, deduplicated by
                 id (sha for commits). Kept beyond the scoring window so the
                 window can shift forward without refetching history.
    counters     cumulative totals of newly seen events. Monotonic: a merge
                 never decreases any counter.
    signals      point-in-time values (stars, downloads, scorecard, …)
                 replaced by each successful fetch. A None in the incoming
                 delta means "source unavailable" and keeps the old value.

merge_activity() is the only way a record changes after creation. It never
mutates its inputs.
"""

import copy
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

COUNTER_KEYS = ("commits", "prs_merged", "issues_opened", "issues_closed", "releases")

SIGNAL_KEYS = (
    "stars",
    "forks",
    "archived",
    "pushed_at",
    "community_health",
    "downloads_12mo",
    "dependents",
    "ships_types",
    "scorecard_score",
    "cdn_hits_12mo",
)


@dataclass
class PullRequestEvent:
    id: int
    merged_at: str
    author: str
    lines_changed: Optional[int] = None
    created_at: Optional[str] = None
    first_response_at: Optional[str] = None


@dataclass
class IssueEvent:
    id: int
    created_at: str
    author: str
    closed_at: Optional[str] = None
    first_response_at: Optional[str] = None


@dataclass
class CommitEvent:
    sha: str
    committed_at: str
    author: str


@dataclass
class ReleaseEvent:
    id: int
    published_at: str
    prerelease: bool = False
    draft: bool = False


@dataclass
class ActivityDelta:
    """What one collection pass fetched for a library.

    Fields:
        pull_requests/issues/commits/releases: Events seen in this pass.
        signals:   Point-in-time values; None marks an unavailable source.
        watermark: Newest instant covered by this pass (ISO 8601).
    """

    pull_requests: list[PullRequestEvent] = field(default_factory=list)
    issues: list[IssueEvent] = field(default_factory=list)
    commits: list[CommitEvent] = field(default_factory=list)
    releases: list[ReleaseEvent] = field(default_factory=list)
    signals: dict[str, Any] = field(default_factory=dict)
    watermark: Optional[str] = None


@dataclass
class ActivityRecord:
    """Durable, merge-only raw data for one library."""

    library: str
    first_collected_at: str
    last_updated_at: str
    watermark: Optional[str] = None
    pull_requests: list[PullRequestEvent] = field(default_factory=list)
    issues: list[IssueEvent] = field(default_factory=list)
    commits: list[CommitEvent] = field(default_factory=list)
    releases: list[ReleaseEvent] = field(default_factory=list)
    counters: dict[str, int] = field(default_factory=lambda: {k: 0 for k in COUNTER_KEYS})
    signals: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ActivityRecord":
        """Rebuild a record from its stored JSON form.

        Raises:
            KeyError/TypeError: If required fields are missing or mistyped.
        """
        counters = {k: 0 for k in COUNTER_KEYS}
        counters.update({k: int(v) for k, v in (data.get("counters") or {}).items()})
        return cls(
            library=data["library"],
            first_collected_at=data["first_collected_at"],
            last_updated_at=data["last_updated_at"],
            watermark=data.get("watermark"),
            pull_requests=[PullRequestEvent(**e) for e in data.get("pull_requests", [])],
            issues=[IssueEvent(**e) for e in data.get("issues", [])],
            commits=[CommitEvent(**e) for e in data.get("commits", [])],
            releases=[ReleaseEvent(**e) for e in data.get("releases", [])],
            counters=counters,
            signals=dict(data.get("signals") or {}),
        )

    @property
    def has_activity(self) -> bool:
        return bool(self.pull_requests or self.issues or self.commits or self.releases)


def _utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _later(a: Optional[str], b: Optional[str]) -> Optional[str]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b, key=lambda s: datetime.fromisoformat(s.replace("Z", "+00:00")))


def merge_activity(
    previous: Optional[ActivityRecord],
    delta: ActivityDelta,
    library: str,
    now: Optional[str] = None,
) -> ActivityRecord:
    """Merge one collection pass into the durable record.

    Rules:
        - Events are unioned by id (commits by sha). A known issue that is
          now closed gets its closed_at updated, and a known issue or PR
          without a first response takes one from the delta; nothing is
          ever removed or overwritten.
        - Each counter grows by the number of events that are new to the
          record (and issues_closed by newly observed closures).
        - Non-None signals replace the stored value; None keeps it.
        - The watermark only moves forward.

    Args:
        previous: Stored record, or None for a first/forced collection.
        delta:    Events and signals from this pass.
        library:  ``owner/name`` key.
        now:      ISO timestamp for last_updated_at (defaults to now, UTC).

    Returns:
        A new ActivityRecord; *previous* is left untouched.
    """
    now = now or _utc_now_iso()
    if previous is None:
        merged = ActivityRecord(library=library, first_collected_at=now, last_updated_at=now)
    else:
        merged = copy.deepcopy(previous)
        merged.last_updated_at = now
    counters = {k: merged.counters.get(k, 0) for k in COUNTER_KEYS}

    prs_by_id = {pr.id: pr for pr in merged.pull_requests}
    for pr in delta.pull_requests:
        known = prs_by_id.get(pr.id)
        if known is None:
            fresh = copy.copy(pr)
            merged.pull_requests.append(fresh)
            prs_by_id[pr.id] = fresh
            counters["prs_merged"] += 1
        elif pr.first_response_at and not known.first_response_at:
            known.first_response_at = pr.first_response_at

    issues_by_id = {issue.id: issue for issue in merged.issues}
    for issue in delta.issues:
        existing = issues_by_id.get(issue.id)
        if existing is None:
            fresh = copy.copy(issue)
            merged.issues.append(fresh)
            issues_by_id[issue.id] = fresh
            counters["issues_opened"] += 1
            if fresh.closed_at:
                counters["issues_closed"] += 1
        else:
            if issue.closed_at and not existing.closed_at:
                existing.closed_at = issue.closed_at
                counters["issues_closed"] += 1
            if issue.first_response_at and not existing.first_response_at:
                existing.first_response_at = issue.first_response_at

    known_shas = {c.sha for c in merged.commits}
    for commit in delta.commits:
        if commit.sha not in known_shas:
            merged.commits.append(copy.copy(commit))
            known_shas.add(commit.sha)
            counters["commits"] += 1

    known_releases = {r.id for r in merged.releases}
    for release in delta.releases:
        if release.id not in known_releases:
            merged.releases.append(copy.copy(release))
            known_releases.add(release.id)
            counters["releases"] += 1

    for key, value in delta.signals.items():
        if value is not None:
            merged.signals[key] = value

    merged.counters = counters
    merged.watermark = _later(merged.watermark, delta.watermark)

    merged.pull_requests.sort(key=lambda e: (e.merged_at, e.id))
    merged.issues.sort(key=lambda e: (e.created_at, e.id))
    merged.commits.sort(key=lambda e: (e.committed_at, e.sha))
    merged.releases.sort(key=lambda e: (e.published_at, e.id))
    return merged

