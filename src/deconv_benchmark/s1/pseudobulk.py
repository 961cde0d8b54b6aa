#!/usr/bin/env python3
"""
S1 (simulation) — Pseudo-bulk construction
cells_per_type, cell_index_by_type, simulate_bulk
"""

from __future__ import annotations

from typing import Dict, Optional, Tuple

import anndata as ad
import numpy as np
import pandas as pd
from scipy import sparse

from ..errors import InputFormatError, MissingReferenceCellsError

TPM_SCALE = 1e6


def cells_per_type(fractions: pd.DataFrame, n_cells: int) -> pd.DataFrame:
    """Number of single cells to draw per sample and cell type: round(fraction * n_cells)."""
    if n_cells <= 0:
        raise ValueError("n_cells must be positive")
    counts = np.rint(fractions.to_numpy(dtype=float) * n_cells).astype(int)
    return pd.DataFrame(counts, index=fractions.index, columns=fractions.columns)


def cell_index_by_type(
    adata: ad.AnnData,
    cell_types,
    cell_type_key: str = "cell_type",
) -> Dict[str, np.ndarray]:
    """
    Map each requested cell type to the positional indices of its reference cells.
    Any requested type without cells aborts the run.
    """
    if cell_type_key not in adata.obs.columns:
        raise InputFormatError(f"Reference obs is missing column '{cell_type_key}'.")
    labels = adata.obs[cell_type_key].astype(str).to_numpy()
    index: Dict[str, np.ndarray] = {}
    missing = []
    for ct in cell_types:
        idx = np.flatnonzero(labels == ct)
        if idx.size == 0:
            missing.append(ct)
        index[ct] = idx
    if missing:
        raise MissingReferenceCellsError(
            f"No reference cells for requested cell type(s): {missing}"
        )
    return index


def _draw_cells(pool: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    """k cells from `pool`; with replacement only when k exceeds the pool."""
    if k <= 0:
        return np.empty(0, dtype=int)
    return rng.choice(pool, size=k, replace=k > pool.size)


def simulate_bulk(
    adata: ad.AnnData,
    fractions: pd.DataFrame,
    n_cells: int,
    rng: np.random.Generator,
    cell_type_key: str = "cell_type",
    normalize: bool = True,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Aggregate single cells into one synthetic bulk profile per sample.

    Returns
    -------
    (expression, counts)
        expression : genes × samples, summed over the drawn cells and, when
                     `normalize`, rescaled so every column sums to 1e6 (TPM).
        counts     : samples × cell types, number of cells drawn.
    """
    counts = cells_per_type(fractions, n_cells)
    pools = cell_index_by_type(adata, list(fractions.columns), cell_type_key=cell_type_key)

    X = adata.X
    if sparse.issparse(X):
        X = X.tocsr()

    profiles = np.zeros((adata.n_vars, fractions.shape[0]), dtype=np.float64)
    for j, sample in enumerate(fractions.index):
        drawn = [_draw_cells(pools[ct], int(counts.at[sample, ct]), rng) for ct in fractions.columns]
        cells = np.concatenate(drawn) if drawn else np.empty(0, dtype=int)
        if cells.size == 0:
            continue
        summed = X[cells].sum(axis=0)
        profiles[:, j] = np.asarray(summed).ravel()

    if normalize:
        totals = profiles.sum(axis=0)
        totals[totals == 0] = 1.0
        profiles = profiles / totals * TPM_SCALE

    expression = pd.DataFrame(profiles, index=adata.var_names.astype(str), columns=fractions.index)
    expression.index.name = "gene_symbol"
    return expression, counts


def mrna_content(
    adata: ad.AnnData,
    cell_type_key: str = "cell_type",
    cell_types: Optional[list] = None,
) -> pd.Series:
    """Mean total counts per cell, per cell type (used for mRNA-content scaling)."""
    X = adata.X
    totals = np.asarray(X.sum(axis=1)).ravel()
    labels = adata.obs[cell_type_key].astype(str).to_numpy()
    s = pd.Series(totals, index=labels).groupby(level=0).mean()
    if cell_types is not None:
        s = s.reindex(list(cell_types))
    s.name = "mrna_content"
    return s


__all__ = ["cells_per_type", "cell_index_by_type", "simulate_bulk", "mrna_content", "TPM_SCALE"]
