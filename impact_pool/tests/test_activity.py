"""
Unit tests for impact_pool.ingestion.activity (merge) and the ActivityCollector.
"""
import copy

from conftest import FakeGitHub, make_repo_activity

from impact_pool.catalog import Library
from impact_pool.errors import UpstreamFetchError
from impact_pool.ingestion.activity import (
    COUNTER_KEYS,
    ActivityDelta,
    CommitEvent,
    IssueEvent,
    PullRequestEvent,
    ReleaseEvent,
    merge_activity,
)
from impact_pool.ingestion.collector import ActivityCollector


def _delta(watermark="2025-07-01T00:00:00+00:00", **signals):
    return ActivityDelta(
        pull_requests=[PullRequestEvent(id=1, merged_at="2025-06-01T00:00:00+00:00", author="a", lines_changed=30)],
        issues=[IssueEvent(id=10, created_at="2025-06-02T00:00:00+00:00", author="b")],
        commits=[CommitEvent(sha="abc", committed_at="2025-06-03T00:00:00+00:00", author="a")],
        releases=[ReleaseEvent(id=100, published_at="2025-06-04T00:00:00+00:00")],
        signals=signals,
        watermark=watermark,
    )


# ---------------------------------------------------------------------------
# merge_activity
# ---------------------------------------------------------------------------


def test_first_merge_counts_every_event():
    """A new record starts with counters equal to the events seen."""
    record = merge_activity(None, _delta(stars=5), "acme/alpha", now="2025-07-01T00:00:00+00:00")
    assert record.counters == {"commits": 1, "prs_merged": 1, "issues_opened": 1, "issues_closed": 0, "releases": 1}
    assert record.signals == {"stars": 5}
    assert record.first_collected_at == "2025-07-01T00:00:00+00:00"


def test_remerging_same_delta_is_idempotent():
    """Events already in the record are not counted twice."""
    first = merge_activity(None, _delta(), "acme/alpha")
    second = merge_activity(first, _delta(), "acme/alpha")
    assert second.counters == first.counters
    assert len(second.commits) == 1


def test_counters_never_decrease():
    """An empty pass leaves every counter unchanged."""
    first = merge_activity(None, _delta(), "acme/alpha")
    second = merge_activity(first, ActivityDelta(), "acme/alpha")
    for key in COUNTER_KEYS:
        assert second.counters[key] >= first.counters[key]
    assert second.has_activity


def test_issue_closure_is_recorded_once():
    """A known issue observed closed updates closed_at and counts one closure."""
    first = merge_activity(None, _delta(), "acme/alpha")
    closing = ActivityDelta(issues=[IssueEvent(id=10, created_at="2025-06-02T00:00:00+00:00", author="b",
                                               closed_at="2025-06-20T00:00:00+00:00")])
    second = merge_activity(first, closing, "acme/alpha")
    third = merge_activity(second, closing, "acme/alpha")
    assert second.issues[0].closed_at == "2025-06-20T00:00:00+00:00"
    assert second.counters["issues_closed"] == 1
    assert third.counters["issues_closed"] == 1
    assert second.counters["issues_opened"] == 1


def test_none_signal_keeps_previous_value():
    """An unavailable source (None) does not wipe the stored signal."""
    first = merge_activity(None, _delta(downloads_12mo=900), "acme/alpha")
    second = merge_activity(first, ActivityDelta(signals={"downloads_12mo": None, "stars": 7}), "acme/alpha")
    assert second.signals == {"downloads_12mo": 900, "stars": 7}


def test_watermark_only_moves_forward():
    """An older watermark never rewinds the record."""
    first = merge_activity(None, _delta(watermark="2025-07-10T00:00:00+00:00"), "acme/alpha")
    second = merge_activity(first, ActivityDelta(watermark="2025-07-01T00:00:00+00:00"), "acme/alpha")
    assert second.watermark == "2025-07-10T00:00:00+00:00"


def test_merge_does_not_mutate_inputs():
    """The previous record and the delta are left untouched."""
    first = merge_activity(None, _delta(), "acme/alpha")
    snapshot = copy.deepcopy(first)
    closing = ActivityDelta(issues=[IssueEvent(id=10, created_at="2025-06-02T00:00:00+00:00", author="b",
                                               closed_at="2025-06-20T00:00:00+00:00")])
    merge_activity(first, closing, "acme/alpha")
    assert first == snapshot


# ---------------------------------------------------------------------------
# ActivityCollector
# ---------------------------------------------------------------------------


def test_collect_builds_record_with_signals(collector, now):
    """A first collection pulls GitHub events plus npm and deps.dev signals."""
    record = collector.collect(Library("acme", "alpha"))
    assert record.library == "acme/alpha"
    assert record.counters["prs_merged"] == 12
    assert record.counters["commits"] == 60
    assert record.signals["downloads_12mo"] == 5_000_000
    assert record.signals["dependents"] == 1200
    assert record.signals["scorecard_score"] == 7.5
    assert record.signals["ships_types"] is True
    assert record.signals["cdn_hits_12mo"] == 2_000_000
    assert record.watermark == now.isoformat()
    assert all(pr.lines_changed is not None for pr in record.pull_requests)


def test_collect_uses_watermark_for_incremental_fetch(collector, fake_github):
    """A second pass does not refetch sizes of PRs already in the record."""
    library = Library("acme", "alpha")
    first = collector.collect(library)
    sizes_after_first = fake_github.count("pull_size")
    second = collector.collect(library, first)
    assert fake_github.count("pull_size") == sizes_after_first
    assert second.counters == first.counters


def test_pr_size_fetches_are_budgeted(fake_npm, fake_deps_dev, now):
    """Only max_pr_detail_fetches new PRs get a size lookup per pass."""
    import dataclasses

    from impact_pool.config import DEFAULT_CONFIG

    github = FakeGitHub({"acme/alpha": make_repo_activity(4, "alpha")})
    config = dataclasses.replace(DEFAULT_CONFIG, max_pr_detail_fetches=5)
    collector = ActivityCollector(github, fake_npm, fake_deps_dev, config=config, clock=lambda: now)
    record = collector.collect(Library("acme", "alpha"))
    assert github.count("pull_size") == 5
    assert sum(1 for pr in record.pull_requests if pr.lines_changed is None) == 7


def test_soft_source_failure_keeps_previous_value(collector, fake_npm):
    """A failing npm call logs and keeps the stored downloads."""
    library = Library("acme", "alpha")
    first = collector.collect(library)

    def broken(package):
        raise UpstreamFetchError("npm down", source="npm")

    fake_npm.get_downloads = broken
    second = collector.collect(library, first)
    assert second.signals["downloads_12mo"] == 5_000_000


def test_record_failure_is_structured(collector):
    """Failures carry kind, source and URL context."""
    exc = UpstreamFetchError("boom", source="github", url="/repos/acme/alpha")
    error = collector.record_failure(Library("acme", "alpha"), exc, run_id="r1")
    assert collector.failures == 1
    assert error.to_dict()["context"] == {
        "kind": "UpstreamFetchError", "run_id": "r1", "source": "github", "url": "/repos/acme/alpha",
    }
    collector.reset()
    assert collector.errors == []


def test_merge_fills_missing_first_response_only():
    """A later pass may supply a first response; an existing one is never replaced."""
    first = merge_activity(None, _delta(), "acme/alpha")
    answered = ActivityDelta(
        pull_requests=[PullRequestEvent(id=1, merged_at="2025-06-01T00:00:00+00:00", author="a",
                                        first_response_at="2025-05-30T00:00:00+00:00")],
        issues=[IssueEvent(id=10, created_at="2025-06-02T00:00:00+00:00", author="b",
                           first_response_at="2025-06-02T05:00:00+00:00")],
    )
    second = merge_activity(first, answered, "acme/alpha")
    assert second.issues[0].first_response_at == "2025-06-02T05:00:00+00:00"
    assert second.pull_requests[0].first_response_at == "2025-05-30T00:00:00+00:00"
    assert second.counters == first.counters

    later = ActivityDelta(
        issues=[IssueEvent(id=10, created_at="2025-06-02T00:00:00+00:00", author="b",
                           first_response_at="2025-06-09T00:00:00+00:00")],
    )
    third = merge_activity(second, later, "acme/alpha")
    assert third.issues[0].first_response_at == "2025-06-02T05:00:00+00:00"


def test_collect_records_first_responses(collector, fake_github):
    """New PRs and commented issues get a first-response time; silent issues do not."""
    record = collector.collect(Library("acme", "alpha"))
    prs = {pr.id % 1000: pr for pr in record.pull_requests}
    assert prs[1].created_at is not None
    assert prs[1].first_response_at is not None
    assert prs[4].first_response_at is None

    issues = {issue.id % 1000 - 500: issue for issue in record.issues}
    assert issues[1].first_response_at is not None
    # issue 3 has no comments, so nobody was asked
    assert issues[3].first_response_at is None
    # 12 new PRs + 6 issues with comments
    assert fake_github.count("first_response") == 18


def test_first_response_fetches_are_budgeted(fake_npm, fake_deps_dev, now):
    """Only max_response_fetches comment listings are requested per pass."""
    import dataclasses

    from impact_pool.config import DEFAULT_CONFIG

    github = FakeGitHub({"acme/alpha": make_repo_activity(4, "alpha")})
    config = dataclasses.replace(DEFAULT_CONFIG, max_response_fetches=3)
    collector = ActivityCollector(github, fake_npm, fake_deps_dev, config=config, clock=lambda: now)
    record = collector.collect(Library("acme", "alpha"))
    assert github.count("first_response") == 3
    assert sum(1 for pr in record.pull_requests if pr.first_response_at) == 3
    assert all(issue.first_response_at is None for issue in record.issues)


def test_cdn_failure_keeps_previous_hits(collector, fake_cdn):
    """jsDelivr is a soft source: an outage keeps the stored hit count."""
    library = Library("acme", "alpha")
    first = collector.collect(library)

    def broken(package):
        raise UpstreamFetchError("jsDelivr HTTP 503", source="jsdelivr")

    fake_cdn.get_hits = broken
    second = collector.collect(library, first)
    assert second.signals["cdn_hits_12mo"] == 2_000_000
