# src/deconv_benchmark/s1/io.py
from __future__ import annotations
import logging
import os
from typing import Optional, Tuple

import anndata as ad
import numpy as np
import pandas as pd

from ..adata_utils import adata_from_tables, concat_adatas, find_h5ad_files, read_h5ad
from ..errors import InputFormatError

logger = logging.getLogger(__name__)

GENE_COL_CANDIDATES = [
    "gene_symbol", "gene_symbols", "symbol", "gene_name", "hgnc_symbol",
    "gene", "genes", "ensembl_gene_id", "ensembl", "ensembl_id", "gene_id",
    "ID", "Name", "Gene", "GeneID", "Gene_Symbol", "Gene.Name",
]


def _sep_for(path: str) -> str:
    ext = os.path.splitext(path[:-3] if path.endswith(".gz") else path)[1].lower()
    return "\t" if ext in (".tsv", ".txt") else ","


def load_reference(
    path: str,
    annotations: Optional[str] = None,
    cell_type_key: str = "cell_type",
) -> ad.AnnData:
    """
    Load the single-cell reference.

    - `.h5ad` file or a directory of `.h5ad` files (concatenated), or
    - a genes × cells expression TSV plus a cells × fields `annotations` TSV.
    """
    if annotations:
        expr = pd.read_csv(path, sep=_sep_for(path), index_col=0)
        meta = pd.read_csv(annotations, sep=_sep_for(annotations), index_col=0)
        adata = adata_from_tables(expr, meta)
    else:
        files = find_h5ad_files(path)
        if not files:
            raise FileNotFoundError(f"No .h5ad files found under: {path}")
        adata = concat_adatas([read_h5ad(p) for p in files])

    if cell_type_key not in adata.obs.columns:
        raise InputFormatError(f"Reference obs is missing the cell-type column '{cell_type_key}'.")
    adata.obs[cell_type_key] = adata.obs[cell_type_key].astype(str)
    adata.var_names = adata.var_names.astype(str)
    adata.var_names_make_unique()
    logger.info(f"Reference: {adata.n_obs:,} cells × {adata.n_vars:,} genes")
    return adata


def _read_bulk_any(path: str, gene_col: Optional[str] = None) -> Tuple[pd.DataFrame, str]:
    """
    Read a bulk expression table (CSV/TSV). Return (dataframe, detected_gene_col).
    """
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Bulk file not found: {path}")

    df = pd.read_csv(path, sep=_sep_for(path), encoding="utf-8")

    if gene_col and gene_col in df.columns:
        gcol = gene_col
    else:
        gcol = next((c for c in GENE_COL_CANDIDATES if c in df.columns), None)
        if gcol is None:
            # first non-numeric column; else first column
            nonnum = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
            gcol = nonnum[0] if nonnum else df.columns[0]
    return df, gcol


def strip_ens_version(s: pd.Series) -> pd.Series:
    """Drop Ensembl version suffix (.10 etc.) and normalize to upper-case strings."""
    return s.astype(str).str.replace(r"\.\d+$", "", regex=True).str.upper().str.strip()


def read_bulk_expression(path: str, gene_col: Optional[str] = None) -> pd.DataFrame:
    """
    Numeric genes × samples matrix indexed by cleaned gene IDs.
    Non-numeric sample columns are dropped; duplicate genes keep the first occurrence.
    """
    df, gcol = _read_bulk_any(path, gene_col=gene_col)

    for c in df.columns:
        if c != gcol:
            df[c] = pd.to_numeric(df[c], errors="coerce")
    num = df.drop(columns=[gcol], errors="ignore").select_dtypes(include=[np.number])
    num = num.loc[:, num.notna().any(axis=0)]
    if num.shape[1] == 0:
        raise InputFormatError("No numeric sample columns found in bulk file.")

    counts = num.copy()
    counts.index = strip_ens_version(df[gcol]).values
    counts = counts[~counts.index.duplicated(keep="first")]
    counts.index.name = "gene_symbol"
    counts.columns = counts.columns.astype(str)
    return counts.fillna(0.0)


def read_gold_standard(path: str) -> pd.DataFrame:
    """
    Gold-standard fractions in long form (sample, cell_type, true_fraction).
    A wide table (first column = sample, one column per cell type) is melted.
    """
    from ..s3.loader import load_table_auto  # shared delimiter sniffing

    df = load_table_auto(path)
    cols = {c.lower(): c for c in df.columns}
    if {"sample", "cell_type", "true_fraction"} <= set(cols):
        out = df.rename(columns={cols["sample"]: "sample", cols["cell_type"]: "cell_type",
                                 cols["true_fraction"]: "true_fraction"})
        out = out[["sample", "cell_type", "true_fraction"]]
    else:
        first = df.columns[0]
        out = df.melt(id_vars=[first], var_name="cell_type", value_name="true_fraction")
        out = out.rename(columns={first: "sample"})
    out["sample"] = out["sample"].astype(str)
    out["cell_type"] = out["cell_type"].astype(str)
    out["true_fraction"] = pd.to_numeric(out["true_fraction"], errors="coerce")
    out = out.dropna(subset=["true_fraction"])
    if out.empty:
        raise InputFormatError(f"Gold standard has no numeric fractions: {path}")
    return out.reset_index(drop=True)


def read_indications(path: str) -> pd.Series:
    """Two-column table (sample, indication) → Series indexed by sample."""
    from ..s3.loader import load_table_auto

    df = load_table_auto(path)
    if df.shape[1] < 2:
        raise InputFormatError(f"Indication table needs two columns: {path}")
    s = df.iloc[:, 1].astype(str)
    s.index = df.iloc[:, 0].astype(str)
    s.index.name = "sample"
    s.name = "indication"
    return s


__all__ = [
    "load_reference",
    "read_bulk_expression",
    "read_gold_standard",
    "read_indications",
    "strip_ens_version",
]
