#!/usr/bin/env python3
"""
S1 (simulation) — Source-tissue restriction
guess_tissue_keys, make_tissue_mask, restrict_to_tissues
"""

from __future__ import annotations

import logging
from typing import List, Optional

import anndata as ad
import numpy as np

from ..errors import InputFormatError

logger = logging.getLogger(__name__)


def guess_tissue_keys(adata: ad.AnnData) -> List[str]:
    """
    Try to discover tissue/organ columns in `adata.obs`.
    Priority list first; then any column containing 'tissue' or 'organ' (excluding 'organism').
    """
    pri = ["tissue", "source_tissue", "organ", "tissue_general", "tissue_label"]
    keys = [k for k in pri if k in adata.obs.columns]
    if not keys:
        keys = [
            c for c in adata.obs.columns
            if ("tissue" in c.lower()) or ("organ" in c.lower() and "organism" not in c.lower())
        ]
    return keys


def make_tissue_mask(
    adata: ad.AnnData,
    allowed: List[str],
    keys: Optional[List[str]] = None,
    mode: str = "exact",
    case_sensitive: bool = False,
) -> np.ndarray:
    """
    Boolean mask over cells whose tissue annotation matches `allowed`.

    Parameters
    ----------
    allowed : list[str]
        Tissue names/keywords to keep. Empty → keep all cells.
    keys : list[str] | None
        Columns in `obs` to search. If None/empty, auto-guess via `guess_tissue_keys`.
    mode : {'exact','substring'}
        Exact matching or substring containment.
    case_sensitive : bool
        Whether to treat comparisons as case-sensitive.
    """
    if mode not in {"exact", "substring"}:
        raise ValueError("tissue_match_mode must be 'exact' or 'substring'")
    if not allowed:
        return np.ones(adata.n_obs, dtype=bool)

    keys = list(keys) if keys else guess_tissue_keys(adata)
    keys = [k for k in keys if k in adata.obs.columns]
    if not keys:
        raise InputFormatError(
            f"Tissue restriction {allowed} requested but no tissue column found in reference obs."
        )

    allowed_set = {a if case_sensitive else a.lower() for a in map(str, allowed)}
    mask = np.zeros(adata.n_obs, dtype=bool)

    for k in keys:
        col = adata.obs[k].astype(str).fillna("")
        if not case_sensitive:
            col = col.str.lower()
        if mode == "exact":
            mask |= col.isin(allowed_set).to_numpy()
        else:
            for a in allowed_set:
                mask |= col.str.contains(a, na=False, regex=False).to_numpy()
    return mask


def restrict_to_tissues(
    adata: ad.AnnData,
    include: Optional[List[str]],
    keys: Optional[List[str]] = None,
    mode: str = "exact",
    case_sensitive: bool = False,
) -> ad.AnnData:
    """Keep only cells from the requested source tissues; no-op when `include` is empty."""
    if not include:
        return adata
    m = make_tissue_mask(adata, allowed=list(include), keys=keys, mode=mode, case_sensitive=case_sensitive)
    n_keep = int(m.sum())
    logger.info(f"Tissue filter: kept {n_keep:,} / {adata.n_obs:,} cells (allowed={list(include)})")
    if n_keep == 0:
        raise InputFormatError("Tissue filter removed all cells. Check tissue_include or column names.")
    return adata[m].copy()


__all__ = ["guess_tissue_keys", "make_tissue_mask", "restrict_to_tissues"]
