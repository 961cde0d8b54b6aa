#!/usr/bin/env python3
"""
S3 (scoring) — Benchmark statistics
join_with_gold_standard, correlations, absolute_metrics, correlation_table,
spillover_matrix, detection_limit, score_benchmark

All functions take long tables and return new DataFrames; inputs are never
modified. Missing statistics are NaN and rendered as "n/a" downstream.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats

logger = logging.getLogger(__name__)

CI_LEVEL = 0.95
ALL_CELL_TYPES = "all"
SCORED_COLUMNS = ["method", "sample", "cell_type", "estimate", "true_fraction", "substitute"]
CORRELATION_COLUMNS = ["method", "cell_type", "n", "pearson_r", "ci_low", "ci_high", "p_value", "substitute"]
ABSOLUTE_COLUMNS = [
    "method", "cell_type", "n", "slope", "slope_ci_low", "slope_ci_high", "intercept", "rmse", "substitute",
]


# ---------------------------------------------------------------------
# Join
# ---------------------------------------------------------------------
def join_with_gold_standard(predictions: pd.DataFrame, gold: pd.DataFrame) -> pd.DataFrame:
    """
    Inner join of normalized predictions and gold standard on (sample, cell_type).

    A pair missing on either side is dropped for that method only; the
    method's other pairs are kept. Rows without an estimate are excluded.
    """
    pred = predictions.dropna(subset=["estimate"]).copy()
    pred["sample"] = pred["sample"].astype(str)
    pred["cell_type"] = pred["cell_type"].astype(str)
    if "substitute" not in pred.columns:
        pred["substitute"] = False

    truth = gold[["sample", "cell_type", "true_fraction"]].copy()
    truth["sample"] = truth["sample"].astype(str)
    truth["cell_type"] = truth["cell_type"].astype(str)
    truth = truth.dropna(subset=["true_fraction"]).drop_duplicates(["sample", "cell_type"], keep="first")

    scored = pred.merge(truth, on=["sample", "cell_type"], how="inner")
    n_lost = len(pred) - len(scored)
    if n_lost:
        logger.debug(f"{n_lost} prediction(s) without a gold-standard counterpart dropped")
    scored["substitute"] = scored["substitute"].astype(bool)
    return scored[SCORED_COLUMNS].sort_values(["method", "cell_type", "sample"]).reset_index(drop=True)


# ---------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------
def pearson_with_ci(x: np.ndarray, y: np.ndarray, level: float = CI_LEVEL) -> Dict[str, float]:
    """
    Pearson r with a Fisher-z confidence interval.

    NaN for n < 3 or a constant input. For n == 3 the interval is [-1, 1].
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    n = int(len(x))
    nan = {"n": n, "pearson_r": np.nan, "ci_low": np.nan, "ci_high": np.nan, "p_value": np.nan}
    if n < 3 or np.ptp(x) == 0 or np.ptp(y) == 0:
        return nan

    r, p = stats.pearsonr(x, y)
    r = float(r)
    if n == 3:
        lo, hi = -1.0, 1.0
    else:
        z = np.arctanh(np.clip(r, -1 + 1e-15, 1 - 1e-15))
        half = stats.norm.ppf(0.5 + level / 2) / np.sqrt(n - 3)
        lo, hi = float(np.tanh(z - half)), float(np.tanh(z + half))
    return {"n": n, "pearson_r": r, "ci_low": lo, "ci_high": hi, "p_value": float(p)}


def correlations(scored: pd.DataFrame, level: float = CI_LEVEL) -> pd.DataFrame:
    """Per (method, cell_type) Pearson r, CI and p-value between estimate and true fraction."""
    rows = []
    for (method, ct), g in scored.groupby(["method", "cell_type"], sort=True):
        res = pearson_with_ci(g["true_fraction"].to_numpy(), g["estimate"].to_numpy(), level=level)
        rows.append({"method": method, "cell_type": ct, **res, "substitute": bool(g["substitute"].any())})
    return pd.DataFrame(rows, columns=CORRELATION_COLUMNS)


def correlation_table(
    corr: pd.DataFrame,
    methods: Optional[Sequence[str]] = None,
    cell_types: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Wide Pearson-r table: first column `method`, then one column per cell type
    in sorted order. Methods listed in `methods` without statistics (failed
    methods) appear as all-NaN rows; cell types listed in `cell_types` that no
    method estimated appear as all-NaN columns.
    """
    if corr.empty:
        wide = pd.DataFrame(index=pd.Index([], name="method"))
    else:
        wide = corr.pivot(index="method", columns="cell_type", values="pearson_r")
        wide = wide.reindex(columns=sorted(wide.columns))
    if cell_types is not None:
        wide = wide.reindex(columns=sorted(set(map(str, cell_types))))
    if methods is not None:
        order = list(dict.fromkeys(list(methods) + list(wide.index)))
        wide = wide.reindex(order)
    wide.index.name = "method"
    wide.columns.name = None
    return wide.reset_index()


# ---------------------------------------------------------------------
# Absolute scale
# ---------------------------------------------------------------------
def slope_with_ci(x: np.ndarray, y: np.ndarray, level: float = CI_LEVEL) -> Dict[str, float]:
    """Least-squares y = slope * x + intercept, slope CI from t with n - 2 df, and RMSE of y vs x."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    n = int(len(x))
    out = {"n": n, "slope": np.nan, "slope_ci_low": np.nan, "slope_ci_high": np.nan,
           "intercept": np.nan, "rmse": float(np.sqrt(np.mean((y - x) ** 2))) if n else np.nan}
    if n < 3 or np.ptp(x) == 0:
        return out
    fit = stats.linregress(x, y)
    t = stats.t.ppf(0.5 + level / 2, df=n - 2)
    out.update({
        "slope": float(fit.slope),
        "slope_ci_low": float(fit.slope - t * fit.stderr),
        "slope_ci_high": float(fit.slope + t * fit.stderr),
        "intercept": float(fit.intercept),
    })
    return out


def absolute_metrics(
    scored: pd.DataFrame,
    absolute_methods: Sequence[str],
    level: float = CI_LEVEL,
) -> pd.DataFrame:
    """
    Slope, slope CI, intercept and RMSE for methods on the absolute fraction
    scale, per cell type plus one pooled row (`cell_type == "all"`) per method.
    """
    rows = []
    sub = scored[scored["method"].isin(list(absolute_methods))]
    for method, g in sub.groupby("method", sort=True):
        for ct, gc in g.groupby("cell_type", sort=True):
            res = slope_with_ci(gc["true_fraction"].to_numpy(), gc["estimate"].to_numpy(), level=level)
            rows.append({"method": method, "cell_type": ct, **res, "substitute": bool(gc["substitute"].any())})
        res = slope_with_ci(g["true_fraction"].to_numpy(), g["estimate"].to_numpy(), level=level)
        rows.append({"method": method, "cell_type": ALL_CELL_TYPES, **res, "substitute": bool(g["substitute"].any())})
    return pd.DataFrame(rows, columns=ABSOLUTE_COLUMNS)


# ---------------------------------------------------------------------
# Control cohorts
# ---------------------------------------------------------------------
def true_type_of_pure_samples(gold: pd.DataFrame) -> pd.Series:
    """sample → the single cell type making up the whole sample."""
    wide = gold.pivot_table(index="sample", columns="cell_type", values="true_fraction", aggfunc="first")
    return wide.idxmax(axis=1).rename("true_cell_type")


def spillover_matrix(predictions: pd.DataFrame, true_type: pd.Series) -> pd.DataFrame:
    """
    Mean estimate per (method, true cell type, predicted cell type) on samples
    consisting of one cell type, plus `fraction`: the estimate normalized to
    sum 1 over predicted cell types within (method, true cell type).
    """
    cols = ["method", "true_cell_type", "cell_type", "estimate", "fraction"]
    pred = predictions.dropna(subset=["estimate"]).copy()
    pred["true_cell_type"] = pred["sample"].astype(str).map(true_type)
    pred = pred.dropna(subset=["true_cell_type"])
    if pred.empty:
        return pd.DataFrame(columns=cols)
    mat = pred.groupby(["method", "true_cell_type", "cell_type"], sort=True)["estimate"].mean().reset_index()
    totals = mat.groupby(["method", "true_cell_type"])["estimate"].transform(lambda s: s.clip(lower=0).sum())
    mat["fraction"] = np.where(totals > 0, mat["estimate"].clip(lower=0) / totals.replace(0, np.nan), np.nan)
    return mat[cols]


def detection_limit(
    predictions: pd.DataFrame,
    design: pd.DataFrame,
    alpha: float = 0.05,
) -> pd.DataFrame:
    """
    Smallest spike-in fraction at which a method's estimate for the spiked
    cell type is significantly above the zero-spike background (one-sided
    Mann–Whitney U). NaN when no tested fraction reaches significance.
    """
    cols = ["method", "cell_type", "detection_limit", "n_background", "p_value"]
    d = design[["sample", "cell_type", "spike_fraction"]].copy()
    d["sample"] = d["sample"].astype(str)
    pred = predictions.dropna(subset=["estimate"])
    rows = []
    for method, pm in pred.groupby("method", sort=True):
        for ct, dd in d.groupby("cell_type", sort=True):
            est = pm[pm["cell_type"] == ct].set_index("sample")["estimate"]
            est = est[~est.index.duplicated(keep="first")]
            vals = dd.assign(estimate=dd["sample"].map(est)).dropna(subset=["estimate"])
            background = vals.loc[vals["spike_fraction"] == 0, "estimate"].to_numpy()
            limit, p_at = np.nan, np.nan
            if len(background) >= 2:
                for spike, grp in vals[vals["spike_fraction"] > 0].groupby("spike_fraction", sort=True):
                    x = grp["estimate"].to_numpy()
                    if len(x) < 2:
                        continue
                    p = stats.mannwhitneyu(x, background, alternative="greater").pvalue
                    if np.isfinite(p) and p < alpha:
                        limit, p_at = float(spike), float(p)
                        break
            rows.append({"method": method, "cell_type": ct, "detection_limit": limit,
                         "n_background": int(len(background)), "p_value": p_at})
    return pd.DataFrame(rows, columns=cols)


# ---------------------------------------------------------------------
# Result record
# ---------------------------------------------------------------------
@dataclass
class BenchmarkResult:
    """Everything plotting and reporting need, passed explicitly."""
    scored: pd.DataFrame
    correlations: pd.DataFrame
    correlation_table: pd.DataFrame
    absolute: pd.DataFrame
    methods: List[str]
    cell_types: List[str]
    failures: Dict[str, str] = field(default_factory=dict)
    spillover: Optional[pd.DataFrame] = None
    detection_limit: Optional[pd.DataFrame] = None

    @property
    def absolute_methods(self) -> List[str]:
        return sorted(set(self.absolute["method"])) if not self.absolute.empty else []

    def summary(self) -> Dict[str, object]:
        corr = self.correlations
        best = {}
        for ct, g in corr.dropna(subset=["pearson_r"]).groupby("cell_type"):
            top = g.sort_values("pearson_r", ascending=False).iloc[0]
            best[ct] = {"method": top["method"], "pearson_r": float(top["pearson_r"])}
        return {
            "n_methods": len(self.methods),
            "methods": self.methods,
            "cell_types": self.cell_types,
            "n_scored_pairs": int(self.scored.shape[0]),
            "n_missing_statistics": int(corr["pearson_r"].isna().sum()) if not corr.empty else 0,
            "failed_methods": self.failures,
            "best_method_per_cell_type": best,
            "absolute_methods": self.absolute_methods,
        }


def score_benchmark(
    predictions: pd.DataFrame,
    gold: pd.DataFrame,
    methods: Optional[Sequence[str]] = None,
    absolute_methods: Optional[Sequence[str]] = None,
    failures: Optional[Dict[str, str]] = None,
    spillover_predictions: Optional[pd.DataFrame] = None,
    spillover_gold: Optional[pd.DataFrame] = None,
    detection_predictions: Optional[pd.DataFrame] = None,
    detection_design: Optional[pd.DataFrame] = None,
    level: float = CI_LEVEL,
) -> BenchmarkResult:
    """Join, correlate, and (where inputs are given) compute absolute, spillover and detection-limit scores."""
    failures = dict(failures or {})
    if methods is None:
        methods = sorted(set(predictions["method"]) | {k.split(":")[0] for k in failures})
    methods = list(methods)

    cell_types = sorted(set(gold["cell_type"].astype(str)))
    scored = join_with_gold_standard(predictions, gold)
    corr = correlations(scored, level=level)
    table = correlation_table(corr, methods=methods, cell_types=cell_types)
    if absolute_methods is None:
        from ..s2.methods import absolute_methods as _registered_absolute
        absolute_methods = _registered_absolute(methods)
    absolute = absolute_metrics(scored, absolute_methods, level=level)

    spill = None
    if spillover_predictions is not None and spillover_gold is not None:
        spill = spillover_matrix(spillover_predictions, true_type_of_pure_samples(spillover_gold))
    dl = None
    if detection_predictions is not None and detection_design is not None:
        dl = detection_limit(detection_predictions, detection_design)

    logger.info(f"Scored {scored.shape[0]:,} pairs across {len(methods)} method(s) and {len(cell_types)} cell type(s)")
    return BenchmarkResult(
        scored=scored,
        correlations=corr,
        correlation_table=table,
        absolute=absolute,
        methods=methods,
        cell_types=cell_types,
        failures=failures,
        spillover=spill,
        detection_limit=dl,
    )


__all__ = [
    "BenchmarkResult",
    "join_with_gold_standard",
    "pearson_with_ci",
    "correlations",
    "correlation_table",
    "slope_with_ci",
    "absolute_metrics",
    "true_type_of_pure_samples",
    "spillover_matrix",
    "detection_limit",
    "score_benchmark",
]
