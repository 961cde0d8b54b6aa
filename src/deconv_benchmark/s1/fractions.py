#!/usr/bin/env python3
"""
S1 (simulation) — Fraction vectors with known ground truth

cancer_fraction_per_sample, fit_cancer_fraction, assign_cancer_types,
clamp_fraction, distribute_remaining, make_fractions, validate_fractions

A fraction vector holds, for one simulated sample, the share of every cell
type. The cancer share is drawn from a Normal fitted to the reference cohort
and clamped to [0, cap]; it goes entirely to the sample's cancer sub-type.
The remainder is split over the non-cancer types with random integer weights.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd
from scipy import stats

from ..errors import FractionSumError, InputFormatError
from ..taxonomy import Taxonomy

# Integer weights for the non-cancer split are drawn from [WEIGHT_LOW, WEIGHT_HIGH].
WEIGHT_LOW = 1
WEIGHT_HIGH = 100


@dataclass(frozen=True)
class SimulationVariant:
    name: str
    cap: float
    atol: float


SIMULATION_VARIANTS: Dict[str, SimulationVariant] = {
    "benchmark": SimulationVariant("benchmark", cap=1.0, atol=1e-4),
    "capped": SimulationVariant("capped", cap=0.99, atol=1e-10),
}


def get_variant(name: str) -> SimulationVariant:
    try:
        return SIMULATION_VARIANTS[name]
    except KeyError:
        raise ValueError(
            f"Unknown simulation variant '{name}'. Choose from {sorted(SIMULATION_VARIANTS)}"
        ) from None


# -------------------- Fit the cancer fraction --------------------
def cancer_fraction_per_sample(
    adata: ad.AnnData,
    taxonomy: Taxonomy,
    sample_key: str = "sample",
    cell_type_key: str = "cell_type",
) -> pd.Series:
    """Empirical share of cancer cells per reference sample."""
    for k in (sample_key, cell_type_key):
        if k not in adata.obs.columns:
            raise InputFormatError(f"Reference obs is missing column '{k}'.")
    labels = adata.obs[cell_type_key].astype(str)
    is_cancer = labels.isin(taxonomy.cancer)
    props = is_cancer.groupby(adata.obs[sample_key].astype(str), observed=True).mean()
    props.name = "cancer_fraction"
    return props.astype(float)


def fit_cancer_fraction(proportions: Sequence[float]) -> Tuple[float, float]:
    """Maximum-likelihood Normal(mu, sigma) fit of per-sample cancer proportions."""
    x = np.asarray(proportions, dtype=float)
    x = x[np.isfinite(x)]
    if x.size == 0:
        raise InputFormatError("Cannot fit cancer fraction distribution: no samples.")
    mu, sigma = stats.norm.fit(x)
    return float(mu), float(sigma)


# -------------------- Building blocks --------------------
def assign_cancer_types(n_samples: int, cancer_types: Sequence[str]) -> List[str]:
    """
    Contiguous, equal-size blocks of cancer sub-types: with two types and 100
    samples the first 50 get type A and the last 50 type B. Leftover samples
    go to the last blocks, so for odd n type A gets n // 2.
    """
    if n_samples < 0:
        raise ValueError("n_samples must be >= 0")
    if not cancer_types:
        raise InputFormatError("At least one cancer cell type is required.")
    k = len(cancer_types)
    base, rem = divmod(n_samples, k)
    out: List[str] = []
    for i, ct in enumerate(cancer_types):
        out.extend([ct] * (base + (1 if i >= k - rem else 0)))
    return out


def clamp_fraction(x: float, cap: float = 1.0) -> float:
    """Clamp a drawn cancer fraction into the closed range [0, cap]."""
    if not 0.0 <= cap <= 1.0:
        raise ValueError(f"cap must lie in [0, 1], got {cap}")
    return float(min(max(x, 0.0), cap))


def distribute_remaining(remaining: float, n_types: int, rng: np.random.Generator) -> np.ndarray:
    """Split `remaining` over `n_types` with one random integer weight per type."""
    if n_types == 0:
        return np.zeros(0)
    weights = rng.integers(WEIGHT_LOW, WEIGHT_HIGH, size=n_types, endpoint=True).astype(float)
    return remaining * weights / weights.sum()


# -------------------- Fraction table --------------------
def make_fractions(
    n_samples: int,
    taxonomy: Taxonomy,
    mu: float,
    sigma: float,
    rng: np.random.Generator,
    cap: float = 1.0,
    sample_prefix: str = "sim",
) -> Tuple[pd.DataFrame, pd.Series]:
    """
    Build the samples × cell-types fraction table and the per-sample indication.

    Column order is cancer types followed by non-cancer types, as listed in the
    taxonomy. Draws happen sample by sample (one Normal draw, then the integer
    weights), so the table is fully determined by the generator state.
    """
    cancer_types = list(taxonomy.cancer)
    others = list(taxonomy.non_cancer)
    columns = cancer_types + others

    indications = assign_cancer_types(n_samples, cancer_types)
    width = max(3, len(str(n_samples)))
    samples = [f"{sample_prefix}_{i:0{width}d}" for i in range(1, n_samples + 1)]

    values = np.zeros((n_samples, len(columns)), dtype=float)
    for i, ct in enumerate(indications):
        cancer_fraction = clamp_fraction(rng.normal(mu, sigma), cap)
        values[i, cancer_types.index(ct)] = cancer_fraction
        values[i, len(cancer_types):] = distribute_remaining(1.0 - cancer_fraction, len(others), rng)

    fractions = pd.DataFrame(values, index=pd.Index(samples, name="sample"), columns=columns)
    fractions.columns.name = "cell_type"
    indication = pd.Series(indications, index=fractions.index, name="indication")
    return fractions, indication


def validate_fractions(fractions: pd.DataFrame, atol: float = 1e-4) -> None:
    """
    Abort on a broken fraction table. Every entry must be >= 0 and every row
    must sum to 1 within `atol`; anything else is a logic error upstream.
    """
    vals = fractions.to_numpy(dtype=float)
    if np.isnan(vals).any():
        raise FractionSumError("Fraction table contains NaN values.")
    neg = (vals < 0).any(axis=1)
    if neg.any():
        bad = list(fractions.index[neg][:5])
        raise FractionSumError(f"Negative fractions in samples: {bad}")
    sums = vals.sum(axis=1)
    off = np.abs(sums - 1.0) > atol
    if off.any():
        bad = {str(s): float(v) for s, v in zip(fractions.index[off][:5], sums[off][:5])}
        raise FractionSumError(f"Fraction vectors do not sum to 1 (atol={atol}): {bad}")


def fractions_to_long(fractions: pd.DataFrame, value_name: str = "true_fraction") -> pd.DataFrame:
    """Wide samples × cell types → long (sample, cell_type, value)."""
    long = fractions.copy()
    long.index.name = "sample"
    long.columns.name = "cell_type"
    return long.stack().rename(value_name).reset_index()


def summarize_fractions(fractions: pd.DataFrame, indication: Optional[pd.Series] = None) -> Dict:
    summary = {
        "n_samples": int(fractions.shape[0]),
        "cell_types": list(map(str, fractions.columns)),
        "mean_fraction": {str(k): float(v) for k, v in fractions.mean().items()},
        "max_abs_sum_deviation": float(np.abs(fractions.sum(axis=1) - 1.0).max()) if len(fractions) else 0.0,
    }
    if indication is not None:
        summary["indication_counts"] = {str(k): int(v) for k, v in indication.value_counts().items()}
    return summary


__all__ = [
    "SimulationVariant",
    "SIMULATION_VARIANTS",
    "get_variant",
    "cancer_fraction_per_sample",
    "fit_cancer_fraction",
    "assign_cancer_types",
    "clamp_fraction",
    "distribute_remaining",
    "make_fractions",
    "validate_fractions",
    "fractions_to_long",
    "summarize_fractions",
]
