"""
impact_pool — Impact scoring and quarterly fund allocation for a curated
catalog of open-source libraries.

Pipeline: upstream activity (GitHub, npm, deps.dev) → incremental activity
records → trailing-window metrics → cohort-normalized component scores →
Release Impact Score → floor/cap-constrained dollar allocation.

Subpackages:
- ingestion:     Rate-limited upstream clients, token pool, activity collector.
- metrics:       Window metrics, normalization + smoothing, allocation engine.
- storage:       Key-value backends (file, Redis) and the typed repository.
- orchestration: Collection lock, run status, end-to-end orchestrator.
- api:           FastAPI surface for triggers, status and allocations.
"""

__version__ = "0.1.0"
