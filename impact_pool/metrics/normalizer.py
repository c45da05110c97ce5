"""
impact_pool/metrics/normalizer.py — Cohort normalization and RIS scoring.

Algorithm:
    1. Build a DataFrame with one row per library's ComputedMetrics.
    2. For every sub-metric that needs cohort scaling, winsorize: clip to the
       cohort's [P5, P95] (linear-interpolation percentiles), then
       optionally log10(1 + x), then min-max scale to [0, 1]. A column with
       no spread scales to 0.5 for everyone. Ratios already on [0, 1] are
       only clamped.
    3. "Lower is better" sub-metrics (release gap, top-author share,
       response latencies) are inverted: 1 − x.
    4. Each component is the fixed weighted sum of its sub-metrics.
    5. Components are smoothed against the previous period's stored values:
           new = α·raw + (1 − α)·previous
    6. RIS = 0.30·EF + 0.25·CQ + 0.20·MH + 0.15·CB + 0.10·MA.
    7. RIS_effective = RIS × eligibility_adjustment × proration_factor,
       used only by the allocation engine. RIS itself stays the stored score.

Notes:
    - Percentile bounds come from the current cohort only, so one outlier
      library cannot stretch the scale for everybody else.
    - A cohort of one library scores 0.5 on every scaled sub-metric.
    - Libraries whose raw sub-metrics are non-finite or negative are dropped
      from the cohort; callers see them missing from the result.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np
import pandas as pd

from impact_pool.catalog import Library
from impact_pool.config import DEFAULT_CONFIG, ImpactPoolConfig
from impact_pool.metrics.allocation import LibraryScore
from impact_pool.metrics.window import ComputedMetrics
from impact_pool.period import proration_factor

logger = logging.getLogger(__name__)

COMPONENTS = ("ef", "cq", "mh", "cb", "ma")


@dataclass(frozen=True)
class SubMetricSpec:
    """How one raw sub-metric feeds a component.

    Fields:
        column: ComputedMetrics field name.
        weight: Share within its component (a component's weights sum to 1).
        scale:  "log" (log10 then min-max), "linear" (min-max), or
                "ratio" (already on [0, 1], clamp only).
        invert: True when lower raw values are better.
    """

    column: str
    weight: float
    scale: str
    invert: bool = False


SUB_METRICS: dict[str, tuple[SubMetricSpec, ...]] = {
    # Ecosystem Footprint: how much of the ecosystem depends on the library.
    "ef": (
        SubMetricSpec("downloads_12mo", 0.45, "log"),
        SubMetricSpec("dependents", 0.35, "log"),
        SubMetricSpec("stars", 0.15, "log"),
        SubMetricSpec("cdn_hits", 0.05, "log"),
    ),
    # Contribution Quality: merged work, issue resolution, contributor
    # diversity, responsiveness.
    "cq": (
        SubMetricSpec("pr_points", 0.45, "linear"),
        SubMetricSpec("issue_resolution_rate", 0.20, "ratio"),
        SubMetricSpec("unique_contributors", 0.25, "log"),
        SubMetricSpec("median_first_response_hours", 0.10, "log", invert=True),
    ),
    # Maintainer Health: bus factor, release rhythm, triage speed.
    "mh": (
        SubMetricSpec("active_maintainers", 0.30, "log"),
        SubMetricSpec("release_cadence_days", 0.25, "linear", invert=True),
        SubMetricSpec("top_author_share", 0.20, "ratio", invert=True),
        SubMetricSpec("triage_latency_hours", 0.15, "log", invert=True),
        SubMetricSpec("maintainer_activity", 0.10, "ratio"),
    ),
    # Community Benefit: documentation and help given to users.
    "cb": (
        SubMetricSpec("docs_completeness", 0.40, "ratio"),
        SubMetricSpec("tutorial_refs", 0.35, "log"),
        SubMetricSpec("helpful_events", 0.25, "log"),
    ),
    # Mission Alignment: type safety and security practices.
    "ma": (
        SubMetricSpec("type_safety", 0.50, "ratio"),
        SubMetricSpec("security_practices", 0.50, "ratio"),
    ),
}


@dataclass
class ComponentScores:
    """Five component scores for one library plus their audit trail.

    Fields:
        smoothed: Component → EMA-smoothed score in [0, 1] (used for RIS).
        raw:      Component → this cycle's unsmoothed score.
        inputs:   Component → {sub-metric: normalized value in [0, 1]}.
    """

    smoothed: dict[str, float]
    raw: dict[str, float]
    inputs: dict[str, dict[str, float]]

    @property
    def ef(self) -> float:
        return self.smoothed["ef"]

    @property
    def cq(self) -> float:
        return self.smoothed["cq"]

    @property
    def mh(self) -> float:
        return self.smoothed["mh"]

    @property
    def cb(self) -> float:
        return self.smoothed["cb"]

    @property
    def ma(self) -> float:
        return self.smoothed["ma"]


# ---------------------------------------------------------------------------
# Column transforms
# ---------------------------------------------------------------------------

def winsorize(series: pd.Series, lower_pct: float = 5.0, upper_pct: float = 95.0) -> pd.Series:
    """Clip *series* to its own [lower_pct, upper_pct] percentile bounds."""
    if series.empty:
        return series
    lo, hi = np.percentile(series.to_numpy(dtype=float), [lower_pct, upper_pct])
    return series.clip(lower=lo, upper=hi)


def min_max(series: pd.Series) -> pd.Series:
    """Scale to [0, 1]; a constant series maps to 0.5."""
    if series.empty:
        return series
    lo, hi = float(series.min()), float(series.max())
    if np.isclose(hi, lo):
        return pd.Series(0.5, index=series.index)
    return (series - lo) / (hi - lo)


def normalize_column(series: pd.Series, sub: SubMetricSpec, config: ImpactPoolConfig = DEFAULT_CONFIG) -> pd.Series:
    """Apply a sub-metric's winsorize/scale/invert pipeline to one raw column."""
    if sub.scale == "ratio":
        scaled = series.clip(lower=0.0, upper=1.0)
    elif sub.scale in ("log", "linear"):
        clipped = winsorize(series, config.winsor_lower_pct, config.winsor_upper_pct)
        if sub.scale == "log":
            clipped = np.log10(1.0 + clipped.clip(lower=0.0))
        scaled = min_max(clipped)
    else:
        raise ValueError(f"Unknown scale {sub.scale!r} for {sub.column}")
    return 1.0 - scaled if sub.invert else scaled


def ema(raw: float, previous: Optional[float], alpha: float) -> float:
    """Exponential moving average; no previous value → raw."""
    if previous is None:
        return raw
    return alpha * raw + (1.0 - alpha) * previous


def compute_ris(components: dict[str, float], weights: dict[str, float]) -> float:
    """Weighted sum of the five components, clamped to [0, 1]."""
    total = sum(weights[c] * components[c] for c in COMPONENTS)
    return float(min(1.0, max(0.0, total)))


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------

class MetricsNormalizer:
    """Turns a cohort of ComputedMetrics into component scores and RIS.

    Args:
        config: Percentile bounds, smoothing α and RIS component weights.
    """

    def __init__(self, config: ImpactPoolConfig = DEFAULT_CONFIG) -> None:
        weight_total = sum(config.component_weights.get(c, 0.0) for c in COMPONENTS)
        if not np.isclose(weight_total, 1.0):
            raise ValueError(f"RIS component weights must sum to 1.0, got {weight_total:.4f}")
        self._config = config

    def normalize_cohort(self, metrics: Iterable[ComputedMetrics]) -> pd.DataFrame:
        """Normalized sub-metrics, one row per library (index = library key).

        Rows carrying NaN/inf or negative values are dropped with a warning;
        those libraries are left out of the cohort rather than failing it.
        """
        rows = {m.library: m.sub_metrics() for m in metrics}
        columns = [sub.column for subs in SUB_METRICS.values() for sub in subs]
        if not rows:
            return pd.DataFrame(columns=columns, dtype=float)
        df_raw = pd.DataFrame.from_dict(rows, orient="index")[columns].astype(float)

        invalid = ~np.isfinite(df_raw.to_numpy()).all(axis=1) | (df_raw < 0).any(axis=1).to_numpy()
        if invalid.any():
            logger.warning(
                "Excluding %s: non-finite or negative sub-metrics",
                ", ".join(sorted(df_raw.index[invalid])),
            )
            df_raw = df_raw[~invalid]

        normalized = pd.DataFrame(index=df_raw.index)
        for subs in SUB_METRICS.values():
            for sub in subs:
                normalized[sub.column] = normalize_column(df_raw[sub.column], sub, self._config)
        return normalized

    def score_cohort(
        self,
        metrics: Iterable[ComputedMetrics],
        previous: Optional[dict[str, dict[str, float]]] = None,
    ) -> dict[str, ComponentScores]:
        """Component scores for every library in the cohort.

        Args:
            metrics:  ComputedMetrics of all libraries scored this cycle.
            previous: library → {component: smoothed score} from the prior
                      period, used for EMA smoothing. Missing → unsmoothed.
        """
        previous = previous or {}
        normalized = self.normalize_cohort(metrics)
        alpha = self._config.smoothing_alpha

        results: dict[str, ComponentScores] = {}
        for library, row in normalized.iterrows():
            inputs: dict[str, dict[str, float]] = {}
            raw: dict[str, float] = {}
            for component, subs in SUB_METRICS.items():
                inputs[component] = {sub.column: round(float(row[sub.column]), 6) for sub in subs}
                raw[component] = float(sum(sub.weight * row[sub.column] for sub in subs))

            prior = previous.get(library, {})
            smoothed = {
                c: round(min(1.0, max(0.0, ema(raw[c], prior.get(c), alpha))), 6)
                for c in COMPONENTS
            }
            results[library] = ComponentScores(
                smoothed=smoothed,
                raw={c: round(v, 6) for c, v in raw.items()},
                inputs=inputs,
            )
        return results

    def score_libraries(
        self,
        libraries: Iterable[Library],
        metrics: dict[str, ComputedMetrics],
        period: str,
        previous: Optional[dict[str, dict[str, float]]] = None,
    ) -> list[LibraryScore]:
        """Build LibraryScore entries (allocation not yet filled in).

        Only libraries present in *metrics* are scored; the rest were
        excluded from this cycle.
        """
        catalog = {lib.key: lib for lib in libraries}
        scored = [m for key, m in metrics.items() if key in catalog]
        components = self.score_cohort(scored, previous)
        weights = self._config.component_weights

        scores: list[LibraryScore] = []
        for key, comp in components.items():
            library = catalog[key]
            ris = compute_ris(comp.smoothed, weights)
            proration = proration_factor(library.approved_at, period)
            scores.append(
                LibraryScore(
                    library=key,
                    category=library.category,
                    components=dict(comp.smoothed),
                    components_raw=dict(comp.raw),
                    inputs=comp.inputs,
                    ris=round(ris, 6),
                    ris_unsmoothed=round(compute_ris(comp.raw, weights), 6),
                    eligibility_adjustment=library.eligibility_adjustment,
                    proration_factor=round(proration, 6),
                    ris_effective=round(ris * library.eligibility_adjustment * proration, 6),
                )
            )
        logger.info("Scored %d libraries for %s", len(scores), period)
        return scores
