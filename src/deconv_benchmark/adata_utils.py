# src/deconv_benchmark/adata_utils.py
from __future__ import annotations
from pathlib import Path
from typing import Iterable, List

import anndata as ad
import numpy as np
import pandas as pd
from scipy import sparse

from .errors import InputFormatError


def find_h5ad_files(root_or_file: str) -> List[str]:
    """
    If given a .h5ad file, return [that file].
    If given a directory, return all *.h5ad files under it (non-recursive).
    """
    p = Path(root_or_file)
    if p.is_file() and p.suffix.lower() == ".h5ad":
        return [str(p.resolve())]
    if p.is_dir():
        return [str(q.resolve()) for q in sorted(p.glob("*.h5ad"))]
    raise FileNotFoundError(f"Not a file/dir or missing: {root_or_file}")


def read_h5ad(path: str) -> ad.AnnData:
    """Read a single .h5ad and return an AnnData."""
    return ad.read_h5ad(path)


def concat_adatas(adatas: Iterable[ad.AnnData]) -> ad.AnnData:
    """Concatenate multiple AnnData objects along observations (outer join on genes)."""
    adatas = list(adatas)
    if not adatas:
        raise ValueError("concat_adatas() received no AnnData objects.")
    if len(adatas) == 1:
        return adatas[0]
    return ad.concat(adatas, axis=0, join="outer", label=None, merge="unique")


def adata_from_tables(expression: pd.DataFrame, annotations: pd.DataFrame) -> ad.AnnData:
    """
    Build an AnnData from a genes × cells expression table and a cells × fields
    annotation table. Cells present on only one side are dropped.
    """
    cells = [c for c in expression.columns.astype(str) if c in set(annotations.index.astype(str))]
    if not cells:
        raise InputFormatError("Expression columns and annotation index share no cell barcodes.")
    expression = expression.copy()
    expression.columns = expression.columns.astype(str)
    annotations = annotations.copy()
    annotations.index = annotations.index.astype(str)

    X = expression[cells].T.to_numpy(dtype=np.float64)
    obs = annotations.loc[cells].copy()
    var = pd.DataFrame(index=expression.index.astype(str))
    return ad.AnnData(X=X, obs=obs, var=var)


def to_dense(X) -> np.ndarray:
    """Dense float view of AnnData.X (sparse or not)."""
    return X.toarray() if sparse.issparse(X) else np.asarray(X)


__all__ = ["find_h5ad_files", "read_h5ad", "concat_adatas", "adata_from_tables", "to_dense"]
