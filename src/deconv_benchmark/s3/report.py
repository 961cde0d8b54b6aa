#!/usr/bin/env python3
"""
S3 (scoring) — Markdown report
render_report
"""

from __future__ import annotations

import os
from datetime import datetime
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from .scoring import BenchmarkResult

NA = "n/a"


def _fmt(v, spec: str = ".3f") -> str:
    if v is None or (isinstance(v, float) and pd.isna(v)):
        return NA
    if isinstance(v, (bool, np.bool_)):
        return str(bool(v))
    if isinstance(v, (int, np.integer)):
        return str(int(v))
    if isinstance(v, (float, np.floating)):
        return format(float(v), spec)
    return str(v)


def _md_table(df: pd.DataFrame, spec: str = ".3f") -> List[str]:
    if df.empty:
        return ["_no data_", ""]
    cols = list(df.columns)
    lines = ["| " + " | ".join(map(str, cols)) + " |", "|" + "---|" * len(cols)]
    for _, row in df.iterrows():
        lines.append("| " + " | ".join(_fmt(row[c], spec) for c in cols) + " |")
    lines.append("")
    return lines


def render_report(
    result: BenchmarkResult,
    out_path: str,
    plot_files: Optional[Dict[str, List[str]]] = None,
    meta: Optional[Dict[str, object]] = None,
) -> str:
    """Write the benchmark summary as Markdown; figure links are relative to the report."""
    meta = meta or {}
    base = os.path.dirname(os.path.abspath(out_path))
    lines: List[str] = [
        "# Deconvolution benchmark report",
        "",
        f"Analysis date: {meta.get('analysis_date', datetime.now().isoformat())}",
        "",
        "## Overview",
        "",
        f"- Methods: {', '.join(result.methods) or NA}",
        f"- Cell types: {', '.join(result.cell_types) or NA}",
        f"- Scored (method, sample, cell type) pairs: {result.scored.shape[0]:,}",
        "",
    ]

    if result.failures:
        lines += ["## Failed methods", "", "These runs produced no estimates; their cells read n/a.", ""]
        for tag, msg in sorted(result.failures.items()):
            first = msg.strip().splitlines()[0] if msg.strip() else ""
            lines.append(f"- **{tag}**: {first}")
        lines.append("")

    lines += ["## Pearson correlation with the gold standard", ""]
    lines += _md_table(result.correlation_table, ".2f")

    subs = result.correlations[result.correlations["substitute"]]
    if not subs.empty:
        lines += ["Substitute signatures (method estimates a related cell type):", ""]
        for _, r in subs.iterrows():
            lines.append(f"- {r['method']}: {r['cell_type']}")
        lines.append("")

    lines += ["## Correlation statistics", ""]
    lines += _md_table(result.correlations[["method", "cell_type", "n", "pearson_r", "ci_low", "ci_high", "p_value"]])

    if not result.absolute.empty:
        lines += ["## Absolute-scale methods", ""]
        lines += _md_table(result.absolute[["method", "cell_type", "n", "slope", "slope_ci_low", "slope_ci_high", "rmse"]])

    if result.detection_limit is not None and not result.detection_limit.empty:
        lines += ["## Detection limit", "", "Smallest spike-in fraction detected above background.", ""]
        lines += _md_table(result.detection_limit[["method", "cell_type", "detection_limit", "p_value"]])

    if plot_files:
        lines += ["## Figures", ""]
        for name, paths in plot_files.items():
            for p in paths:
                if p.endswith(".jpg"):
                    lines.append(f"![{name}]({os.path.relpath(p, base)})")
        lines.append("")

    os.makedirs(base, exist_ok=True)
    with open(out_path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines))
    return out_path


__all__ = ["render_report"]
