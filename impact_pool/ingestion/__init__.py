"""
impact_pool.ingestion — Upstream data collection.

Modules:
    token_pool       — Credential rotation across upstream rate limits.
    github_client    — GitHub REST client (repo, PRs, issues, commits, releases).
    npm_client       — npm downloads and published type declarations.
    deps_dev_client  — deps.dev dependents and OpenSSF scorecard.
    schemas          — pydantic models validating upstream payloads.
    activity         — ActivityRecord and the incremental merge.
    collector        — Per-library collection with soft and hard sources.
"""
