"""
impact_pool/metrics/window.py — Trailing-window metrics from an ActivityRecord.

compute_window_metrics() is a pure function of (record, window_end): the same
inputs always yield the same ComputedMetrics, which is what makes the metrics
cache safe to lose. Events older than the window stay in the record but are
ignored here.

Raw sub-metrics produced (one row per library for the cohort normalizer):

    downloads_12mo, dependents, stars,     ecosystem footprint
    cdn_hits
    pr_points                              Σ log10(1 + lines changed) over merged PRs
    issue_resolution_rate                  closed / opened in window, capped at 1
    unique_contributors                    distinct authors of PRs, issues, commits
    median_first_response_hours            median hours to first reply, issues + PRs
    triage_latency_hours                   median hours to first reply, issues only
    active_maintainers                     authors with ≥ N commits in window
    top_author_share                       largest single-author share of commits
    release_cadence_days                   median gap between stable releases
    maintainer_activity                    recency/archival heuristic in [0, 1]
    docs_completeness                      GitHub community health / 100
    tutorial_refs                          stars / 10 (reference proxy)
    helpful_events                         issues closed in window
    type_safety                            1.0 if the package ships types
    security_practices                     OpenSSF Scorecard / 10
"""

import math
import statistics
from collections import Counter
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta, timezone
from typing import Optional

from impact_pool.config import DEFAULT_CONFIG, ImpactPoolConfig
from impact_pool.errors import NormalizationError
from impact_pool.ingestion.activity import COUNTER_KEYS, ActivityRecord

# Points credited to a merged PR whose size was not fetched (≈ a 10-line change).
UNKNOWN_PR_POINTS = 1.0


@dataclass
class ComputedMetrics:
    """Raw window metrics for one library. Recomputable, safe to cache."""

    library: str
    computed_at: str
    window_start: str
    window_end: str
    downloads_12mo: float = 0.0
    dependents: float = 0.0
    stars: float = 0.0
    forks: float = 0.0
    pr_points: float = 0.0
    prs_merged: int = 0
    issues_opened: int = 0
    issues_closed: int = 0
    issue_resolution_rate: float = 0.0
    unique_contributors: int = 0
    active_maintainers: int = 0
    top_author_share: float = 0.0
    release_cadence_days: float = 0.0
    releases: int = 0
    maintainer_activity: float = 0.0
    docs_completeness: float = 0.0
    tutorial_refs: float = 0.0
    helpful_events: float = 0.0
    type_safety: float = 0.0
    security_practices: float = 0.0
    cdn_hits: float = 0.0
    median_first_response_hours: float = 0.0
    triage_latency_hours: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ComputedMetrics":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def sub_metrics(self) -> dict[str, float]:
        """Numeric fields only, keyed by name (the normalizer's input row)."""
        skip = {"library", "computed_at", "window_start", "window_end"}
        return {f.name: float(getattr(self, f.name)) for f in fields(self) if f.name not in skip}


def _parse(ts: str) -> datetime:
    parsed = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _number(signals: dict, key: str, default: float = 0.0) -> float:
    value = signals.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise NormalizationError(f"Signal {key!r} is not numeric: {value!r}")
    if value < 0:
        raise NormalizationError(f"Signal {key!r} is negative: {value!r}")
    return float(value)


def _median_hours(pairs: list[tuple[datetime, datetime]], default: float) -> float:
    """Median of (responded - created) in hours; *default* when there are no pairs."""
    if not pairs:
        return default
    return float(statistics.median(
        max(0.0, (responded - created).total_seconds() / 3600.0) for created, responded in pairs
    ))


def _maintainer_activity(archived: bool, last_activity: Optional[datetime], has_releases: bool,
                         window_end: datetime) -> float:
    """Heuristic in [0, 1]: archived → 0, otherwise decays with inactivity."""
    if archived or last_activity is None:
        return 0.0
    idle_days = (window_end - last_activity).days
    if idle_days <= 30:
        score = 1.0
    elif idle_days <= 90:
        score = 0.75
    elif idle_days <= 180:
        score = 0.5
    elif idle_days <= 365:
        score = 0.25
    else:
        score = 0.0
    return score if has_releases else score * 0.8


def compute_window_metrics(
    record: ActivityRecord,
    window_end: datetime,
    config: ImpactPoolConfig = DEFAULT_CONFIG,
) -> ComputedMetrics:
    """Extract the trailing ``config.window_days`` window from *record*.

    Args:
        record:     Durable activity record.
        window_end: Aware datetime closing the window (usually "now").
        config:     Window length and maintainer threshold.

    Returns:
        ComputedMetrics for the window.

    Raises:
        NormalizationError: If the record carries malformed counters,
                            signals or timestamps.
    """
    if not record.library:
        raise NormalizationError("ActivityRecord has no library key")
    for key in COUNTER_KEYS:
        if record.counters.get(key, 0) < 0:
            raise NormalizationError(f"{record.library}: counter {key!r} is negative")

    window_end = window_end if window_end.tzinfo else window_end.replace(tzinfo=timezone.utc)
    window_start = window_end - timedelta(days=config.window_days)

    def in_window(ts: Optional[str]) -> bool:
        return ts is not None and window_start <= _parse(ts) <= window_end

    try:
        prs = [pr for pr in record.pull_requests if in_window(pr.merged_at)]
        opened = [i for i in record.issues if in_window(i.created_at)]
        closed = [i for i in record.issues if in_window(i.closed_at)]
        commits = [c for c in record.commits if in_window(c.committed_at)]
        stable_releases = sorted(
            _parse(r.published_at)
            for r in record.releases
            if in_window(r.published_at) and not r.prerelease and not r.draft
        )
        issue_replies = [
            (_parse(i.created_at), _parse(i.first_response_at)) for i in opened if i.first_response_at
        ]
        pr_replies = [
            (_parse(pr.created_at), _parse(pr.first_response_at))
            for pr in prs
            if pr.created_at and pr.first_response_at
        ]
        last_commit = max((_parse(c.committed_at) for c in record.commits), default=None)
        pushed_at = record.signals.get("pushed_at")
        if pushed_at:
            pushed = _parse(pushed_at)
            last_commit = pushed if last_commit is None else max(last_commit, pushed)
    except (TypeError, ValueError) as exc:
        raise NormalizationError(f"{record.library}: malformed event timestamp — {exc}") from exc

    pr_points = 0.0
    for pr in prs:
        if pr.lines_changed is None:
            pr_points += UNKNOWN_PR_POINTS
        else:
            pr_points += math.log10(1 + max(0, pr.lines_changed))

    resolution = 0.0
    if opened:
        resolution = min(1.0, len(closed) / len(opened))

    contributors = {pr.author for pr in prs} | {i.author for i in opened} | {c.author for c in commits}
    contributors.discard("ghost")

    commit_counts = Counter(c.author for c in commits)
    active = sum(1 for n in commit_counts.values() if n >= config.active_maintainer_min_commits)
    top_share = max(commit_counts.values()) / len(commits) if commits else 0.0

    if len(stable_releases) >= 2:
        gaps = [
            (later - earlier).total_seconds() / 86400.0
            for earlier, later in zip(stable_releases, stable_releases[1:])
        ]
        cadence = float(statistics.median(gaps))
    else:
        cadence = float(config.window_days)

    # No replies in the window counts as the slowest possible response.
    unanswered_hours = float(config.window_days * 24)
    first_response = _median_hours(issue_replies + pr_replies, unanswered_hours)
    triage = _median_hours(issue_replies, unanswered_hours)

    signals = record.signals
    stars = _number(signals, "stars")
    health = _number(signals, "community_health")
    scorecard = _number(signals, "scorecard_score")
    archived = bool(signals.get("archived", False))

    return ComputedMetrics(
        library=record.library,
        computed_at=window_end.isoformat(),
        window_start=window_start.isoformat(),
        window_end=window_end.isoformat(),
        downloads_12mo=_number(signals, "downloads_12mo"),
        dependents=_number(signals, "dependents"),
        stars=stars,
        forks=_number(signals, "forks"),
        pr_points=round(pr_points, 6),
        prs_merged=len(prs),
        issues_opened=len(opened),
        issues_closed=len(closed),
        issue_resolution_rate=resolution,
        unique_contributors=len(contributors),
        active_maintainers=active,
        top_author_share=top_share,
        release_cadence_days=cadence,
        releases=len(stable_releases),
        maintainer_activity=_maintainer_activity(archived, last_commit, bool(stable_releases), window_end),
        docs_completeness=min(1.0, health / 100.0),
        tutorial_refs=stars / 10.0,
        helpful_events=float(len(closed)),
        type_safety=1.0 if signals.get("ships_types") else 0.0,
        security_practices=min(1.0, scorecard / 10.0),
        cdn_hits=_number(signals, "cdn_hits_12mo"),
        median_first_response_hours=round(first_response, 6),
        triage_latency_hours=round(triage, 6),
    )


def metrics_age_hours(metrics: ComputedMetrics, now: datetime) -> float:
    """Hours since *metrics* were computed."""
    return (now - _parse(metrics.computed_at)).total_seconds() / 3600.0

