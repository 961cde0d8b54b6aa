#!/usr/bin/env python3
"""
S3 (scoring) — Loader helpers
load_table_auto, load_predictions, load_failures
"""

from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Dict, Optional, Sequence

import pandas as pd

from ..errors import InputFormatError

PREDICTION_COLUMNS = ["method", "sample", "cell_type", "estimate", "substitute"]


def load_table_auto(path: str, index_col: Optional[int] = None) -> pd.DataFrame:
    """
    Load a delimited table, picking the delimiter from the extension.

    - .csv → comma; .tsv / .txt → tab (also behind a '.gz' suffix)
    - other extensions → sniff between [',', '\\t', ';', '|']
    - lines starting with '#' are comments
    - UTF-8 first, latin-1 as fallback
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Table not found: {path}")

    suffixes = [s.lower() for s in p.suffixes]
    ext = suffixes[-2] if suffixes and suffixes[-1] == ".gz" and len(suffixes) > 1 else p.suffix.lower()
    sep: Optional[str]
    if ext == ".csv":
        sep = ","
    elif ext in {".tsv", ".txt"}:
        sep = "\t"
    else:
        with p.open("r", encoding="utf-8", errors="ignore", newline="") as f:
            sample = f.read(8192)
        try:
            sep = csv.Sniffer().sniff(sample, delimiters=[",", "\t", ";", "|"]).delimiter
        except csv.Error:
            sep = ","

    try:
        return pd.read_csv(path, sep=sep, index_col=index_col, comment="#", low_memory=False)
    except UnicodeDecodeError:
        return pd.read_csv(path, sep=sep, index_col=index_col, comment="#", low_memory=False, encoding="latin-1")


def require_columns(df: pd.DataFrame, columns: Sequence[str], what: str) -> pd.DataFrame:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise InputFormatError(f"{what} is missing columns {missing}; found {list(df.columns)}")
    return df


def load_predictions(path: str) -> pd.DataFrame:
    """Normalized prediction table written by S2 (method, sample, cell_type, estimate, substitute)."""
    df = require_columns(load_table_auto(path), PREDICTION_COLUMNS[:4], f"Prediction table {path}")
    if "substitute" not in df.columns:
        df["substitute"] = False
    df = df[PREDICTION_COLUMNS].copy()
    for c in ("method", "sample", "cell_type"):
        df[c] = df[c].astype(str)
    df["estimate"] = pd.to_numeric(df["estimate"], errors="coerce")
    df["substitute"] = df["substitute"].astype(str).str.lower().isin({"1", "true", "yes", "t"})
    return df


def load_failures(path: Optional[str]) -> Dict[str, str]:
    if not path or not Path(path).exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return {str(k): str(v) for k, v in json.load(f).items()}


__all__ = ["PREDICTION_COLUMNS", "load_table_auto", "require_columns", "load_predictions", "load_failures"]
