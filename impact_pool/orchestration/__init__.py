"""
impact_pool.orchestration — Collection runs.

Modules:
    lock          — TTL-bounded system-wide collection lock.
    status        — Pollable CollectionStatus records.
    orchestrator  — Lock → collect → score → allocate → persist.
"""
