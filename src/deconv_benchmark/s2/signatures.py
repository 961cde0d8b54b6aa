#!/usr/bin/env python3
"""
S2 (deconvolution) — Reference signatures
build_signature_set, compute_markers, harmonize_genes

The built-in methods need a cell-type signature derived from the single-cell
reference: a mean TPM profile per cell type, the per-type mRNA content, and a
set of marker genes per type.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc

from ..adata_utils import to_dense
from ..errors import InputFormatError
from ..s1.io import strip_ens_version
from ..s1.pseudobulk import TPM_SCALE, mrna_content

logger = logging.getLogger(__name__)

DEF_TOP_N_MARKERS = 25
DEF_MIN_CELLS_PER_GROUP = 3


@dataclass
class SignatureSet:
    """Per-cell-type reference quantities shared by the built-in methods."""
    profiles: pd.DataFrame                         # genes × cell types, mean TPM
    mrna: pd.Series                                # cell type → mean counts per cell
    markers: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def cell_types(self) -> List[str]:
        return list(self.profiles.columns)

    def subset(self, cell_types: Optional[Sequence[str]]) -> "SignatureSet":
        if not cell_types:
            return self
        keep = [c for c in self.profiles.columns if c in set(cell_types)]
        if not keep:
            raise InputFormatError(f"None of the expected cell types are in the signature: {list(cell_types)}")
        return SignatureSet(
            self.profiles[keep],
            self.mrna.reindex(keep),
            {k: v for k, v in self.markers.items() if k in keep},
        )

    def to_files(self, outdir: str) -> Dict[str, str]:
        import os
        os.makedirs(outdir, exist_ok=True)
        paths = {
            "signature_matrix": os.path.join(outdir, "signature_matrix.tsv"),
            "mrna_content": os.path.join(outdir, "mrna_content.tsv"),
            "markers": os.path.join(outdir, "markers.tsv"),
        }
        self.profiles.to_csv(paths["signature_matrix"], sep="\t")
        self.mrna.to_frame().to_csv(paths["mrna_content"], sep="\t")
        rows = [(g, ct) for ct, genes in self.markers.items() for g in genes]
        pd.DataFrame(rows, columns=["gene", "cell_type"]).to_csv(paths["markers"], sep="\t", index=False)
        return paths


def compute_markers(
    adata: ad.AnnData,
    cell_type_key: str,
    top_n: int = DEF_TOP_N_MARKERS,
    min_cells_per_group: int = DEF_MIN_CELLS_PER_GROUP,
) -> Dict[str, List[str]]:
    """
    Per–cell-type marker genes from Scanpy's rank_genes_groups (Wilcoxon),
    keeping only genes with a positive score.
    """
    if cell_type_key not in adata.obs.columns:
        return {}

    counts = adata.obs[cell_type_key].value_counts()
    valid_groups = counts[counts >= min_cells_per_group].index.astype(str).tolist()
    if len(valid_groups) < 2:
        return {}

    tmp = adata[adata.obs[cell_type_key].astype(str).isin(valid_groups)].copy()
    tmp.obs[cell_type_key] = tmp.obs[cell_type_key].astype(str).astype("category")
    tmp.raw = None
    sc.pp.normalize_total(tmp, target_sum=1e4)
    sc.pp.log1p(tmp)
    sc.tl.rank_genes_groups(
        tmp,
        groupby=cell_type_key,
        method="wilcoxon",
        n_genes=top_n,
        use_raw=False,
    )

    rgg = tmp.uns["rank_genes_groups"]
    names, scores = rgg["names"], rgg["scores"]
    markers: Dict[str, List[str]] = {}
    for grp in names.dtype.names:
        gnames = np.array(names[grp]).astype(str)[:top_n]
        gscores = np.array(scores[grp], dtype=float)[:top_n]
        markers[grp] = [g for g, s in zip(gnames, gscores) if s > 0]
    return markers


def build_signature_set(
    adata: ad.AnnData,
    cell_type_key: str = "cell_type",
    cell_types: Optional[Sequence[str]] = None,
    top_n_markers: int = DEF_TOP_N_MARKERS,
) -> SignatureSet:
    """Mean TPM profile, mRNA content and markers per cell type."""
    if cell_type_key not in adata.obs.columns:
        raise InputFormatError(f"Reference obs is missing column '{cell_type_key}'.")
    labels = adata.obs[cell_type_key].astype(str)
    wanted = list(cell_types) if cell_types else sorted(labels.unique())

    X = to_dense(adata.X).astype(np.float64)
    totals = X.sum(axis=1, keepdims=True)
    totals[totals == 0] = 1.0
    tpm = X / totals * TPM_SCALE

    cols = {}
    for ct in wanted:
        m = (labels == ct).to_numpy()
        if not m.any():
            logger.warning(f"No reference cells for '{ct}'; left out of the signature.")
            continue
        cols[ct] = tpm[m].mean(axis=0)
    profiles = pd.DataFrame(cols, index=harmonize_index(adata.var_names))
    profiles = profiles[~profiles.index.duplicated(keep="first")]

    mrna = mrna_content(adata, cell_type_key=cell_type_key, cell_types=list(profiles.columns))
    markers = compute_markers(adata, cell_type_key, top_n=top_n_markers)
    markers = {ct: [g.upper() for g in genes] for ct, genes in markers.items() if ct in profiles.columns}
    logger.info(f"Signature: {profiles.shape[0]:,} genes × {profiles.shape[1]} cell types")
    return SignatureSet(profiles, mrna, markers)


def harmonize_index(genes) -> pd.Index:
    return pd.Index(strip_ens_version(pd.Series(list(map(str, genes)))).values, name="gene_symbol")


def harmonize_genes(
    expression: pd.DataFrame,
    signature: pd.DataFrame,
    warn_min_overlap: int = 100,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Align a bulk matrix and a signature on their shared gene identifiers
    (version-stripped, upper-cased). Returns both subset to the overlap in the
    same order.
    """
    bulk = expression.copy()
    bulk.index = harmonize_index(bulk.index)
    bulk = bulk[~bulk.index.duplicated(keep="first")]
    inter = bulk.index.intersection(signature.index)
    if len(inter) == 0:
        raise InputFormatError("Bulk expression and signature share no genes.")
    if len(inter) < warn_min_overlap:
        logger.warning(f"Small overlap between bulk and signature genes: {len(inter)}")
    return bulk.loc[inter], signature.loc[inter]


__all__ = ["SignatureSet", "build_signature_set", "compute_markers", "harmonize_genes", "harmonize_index"]
