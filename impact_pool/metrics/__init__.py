"""
impact_pool.metrics — Scoring and allocation.

Modules:
    window      — Trailing-window raw sub-metrics from an ActivityRecord.
    normalizer  — Winsorize, min-max/log scale, EMA smoothing, RIS.
    allocation  — Proportional split under a floor and a cap.

All weights and thresholds live in impact_pool.config.ImpactPoolConfig.
"""
