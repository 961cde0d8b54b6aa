#!/usr/bin/env python3
"""
S2 (deconvolution) — Cell-type name normalization
load_mapping, normalize_cell_types

Methods report cell types under their own names. A mapping table with columns
(method, method_cell_type, cell_type, substitute) translates them into the
canonical taxonomy:

- many-to-one: several method labels map to one canonical type → summed
- one-to-many: one method label maps to several canonical types → duplicated
- substitute: the method label is a narrower/broader stand-in for the
  canonical type (e.g. "Macrophage" used for "Macrophage/Monocyte")

Method "*" applies to every method without a more specific row.
Labels already equal to a canonical type map to themselves.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

import pandas as pd

from ..errors import InputFormatError

logger = logging.getLogger(__name__)

MAPPING_COLUMNS = ["method", "method_cell_type", "cell_type", "substitute"]

DEFAULT_MAPPING = [
    # generic immunedeconv labels
    ("*", "B cell", "B cell", False),
    ("*", "B cell naive", "B cell", False),
    ("*", "B cell memory", "B cell", False),
    ("*", "NK cell", "NK cell", False),
    ("*", "NK cell resting", "NK cell", False),
    ("*", "NK cell activated", "NK cell", False),
    ("*", "T cell CD8+", "T cell CD8+", False),
    ("*", "T cell CD4+", "T cell CD4+", False),
    ("*", "T cell regulatory (Tregs)", "T cell regulatory (Tregs)", False),
    ("*", "Myeloid dendritic cell", "Dendritic cell", True),
    ("*", "Dendritic cell", "Dendritic cell", False),
    ("*", "Macrophage/Monocyte", "Macrophage/Monocyte", False),
    ("*", "Macrophage", "Macrophage/Monocyte", True),
    ("*", "Cancer associated fibroblast", "Cancer associated fibroblast", False),
    ("*", "Endothelial cell", "Endothelial cell", False),
    # quanTIseq: CD4+ gold standard includes Tregs
    ("quantiseq", "T cell CD4+ (non-regulatory)", "T cell CD4+", False),
    ("quantiseq", "T cell regulatory (Tregs)", "T cell CD4+", False),
    ("quantiseq", "T cell regulatory (Tregs)", "T cell regulatory (Tregs)", False),
    ("quantiseq", "Macrophage M1", "Macrophage/Monocyte", False),
    ("quantiseq", "Macrophage M2", "Macrophage/Monocyte", False),
    ("quantiseq", "Monocyte", "Macrophage/Monocyte", False),
    # CIBERSORT
    ("cibersort", "T cell CD4+ naive", "T cell CD4+", False),
    ("cibersort", "T cell CD4+ memory resting", "T cell CD4+", False),
    ("cibersort", "T cell CD4+ memory activated", "T cell CD4+", False),
    ("cibersort", "T cell regulatory (Tregs)", "T cell CD4+", False),
    ("cibersort", "T cell regulatory (Tregs)", "T cell regulatory (Tregs)", False),
    ("cibersort", "Macrophage M0", "Macrophage/Monocyte", False),
    ("cibersort", "Macrophage M1", "Macrophage/Monocyte", False),
    ("cibersort", "Macrophage M2", "Macrophage/Monocyte", False),
    ("cibersort", "Monocyte", "Macrophage/Monocyte", False),
    ("cibersort", "Myeloid dendritic cell resting", "Dendritic cell", True),
    ("cibersort", "Myeloid dendritic cell activated", "Dendritic cell", True),
    ("cibersort_abs", "T cell CD4+ naive", "T cell CD4+", False),
    ("cibersort_abs", "T cell CD4+ memory resting", "T cell CD4+", False),
    ("cibersort_abs", "T cell CD4+ memory activated", "T cell CD4+", False),
    ("cibersort_abs", "T cell regulatory (Tregs)", "T cell CD4+", False),
    ("cibersort_abs", "T cell regulatory (Tregs)", "T cell regulatory (Tregs)", False),
    ("cibersort_abs", "Macrophage M0", "Macrophage/Monocyte", False),
    ("cibersort_abs", "Macrophage M1", "Macrophage/Monocyte", False),
    ("cibersort_abs", "Macrophage M2", "Macrophage/Monocyte", False),
    ("cibersort_abs", "Monocyte", "Macrophage/Monocyte", False),
    # MCP-counter reports Monocyte and Macrophage/Monocyte separately
    ("mcp_counter", "Macrophage/Monocyte", "Macrophage/Monocyte", False),
    # EPIC and TIMER have no monocyte signature
    ("epic", "Macrophage", "Macrophage/Monocyte", True),
    ("timer", "Macrophage", "Macrophage/Monocyte", True),
]


def default_mapping() -> pd.DataFrame:
    return pd.DataFrame(DEFAULT_MAPPING, columns=MAPPING_COLUMNS)


def load_mapping(path: Optional[str] = None) -> pd.DataFrame:
    """Mapping table from a TSV/CSV, or the built-in default when `path` is empty."""
    if not path:
        return default_mapping()
    from ..s3.loader import load_table_auto

    df = load_table_auto(path)
    missing = [c for c in MAPPING_COLUMNS[:3] if c not in df.columns]
    if missing:
        raise InputFormatError(f"Cell-type mapping is missing columns {missing}: {path}")
    if "substitute" not in df.columns:
        df["substitute"] = False
    df["substitute"] = df["substitute"].astype(str).str.lower().isin({"1", "true", "yes", "t"})
    return df[MAPPING_COLUMNS].astype({"method": str, "method_cell_type": str, "cell_type": str})


def _rules_for(method: str, mapping: pd.DataFrame) -> pd.DataFrame:
    """Method-specific rows override wildcard rows for the same method label."""
    own = mapping[mapping["method"] == method]
    generic = mapping[(mapping["method"] == "*") & ~mapping["method_cell_type"].isin(own["method_cell_type"])]
    return pd.concat([own, generic], ignore_index=True)


def normalize_cell_types(
    predictions: pd.DataFrame,
    mapping: Optional[pd.DataFrame] = None,
    canonical: Optional[Iterable[str]] = None,
) -> pd.DataFrame:
    """
    Translate a long prediction table (method, sample, method_cell_type,
    estimate) into canonical cell types.

    Returns columns (method, sample, cell_type, estimate, substitute).
    Method labels without a rule (and not already canonical) are dropped.
    """
    mapping = default_mapping() if mapping is None else mapping
    canonical = set(canonical) if canonical is not None else None
    out_cols = ["method", "sample", "cell_type", "estimate", "substitute"]
    if predictions.empty:
        return pd.DataFrame(columns=out_cols)

    parts = []
    for method, block in predictions.groupby("method", sort=False):
        rules = _rules_for(str(method), mapping)
        labels = block["method_cell_type"].unique()
        identity = [
            lab for lab in labels
            if lab not in set(rules["method_cell_type"]) and (canonical is None or lab in canonical)
        ]
        if identity:
            extra = pd.DataFrame({"method": method, "method_cell_type": identity,
                                  "cell_type": identity, "substitute": False})
            rules = pd.concat([rules, extra], ignore_index=True)

        merged = block.merge(rules[["method_cell_type", "cell_type", "substitute"]], on="method_cell_type", how="inner")
        if canonical is not None:
            merged = merged[merged["cell_type"].isin(canonical)]
        dropped = sorted(set(labels) - set(merged["method_cell_type"]))
        if dropped:
            logger.debug(f"{method}: unmapped cell types dropped: {dropped}")
        if merged.empty:
            logger.warning(f"{method}: no estimate maps onto the canonical cell types")
            continue

        agg = (
            merged.groupby(["method", "sample", "cell_type"], sort=False)
            .agg(estimate=("estimate", lambda s: s.sum(min_count=1)), substitute=("substitute", "any"))
            .reset_index()
        )
        parts.append(agg)

    if not parts:
        return pd.DataFrame(columns=out_cols)
    out = pd.concat(parts, ignore_index=True)
    out["substitute"] = out["substitute"].astype(bool)
    return out[out_cols]


__all__ = ["DEFAULT_MAPPING", "MAPPING_COLUMNS", "default_mapping", "load_mapping", "normalize_cell_types"]
