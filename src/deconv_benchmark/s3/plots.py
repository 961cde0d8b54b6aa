#!/usr/bin/env python3
"""
S3 (scoring) — Figures
make_default_panel and the individual plotters it calls.

Every figure is written twice (PDF + JPG). Panels or cells without a
statistic show "n/a"; substitute cell types are drawn in grey.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Sequence

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from .scoring import ALL_CELL_TYPES, BenchmarkResult

logger = logging.getLogger(__name__)

FORMATS = ("pdf", "jpg")
SUBSTITUTE_COLOR = "#9e9e9e"


def _save(fig, out_base: Path) -> List[str]:
    paths = []
    for ext in FORMATS:
        p = out_base.with_suffix(f".{ext}")
        fig.savefig(p, dpi=300, bbox_inches="tight")
        paths.append(str(p))
    plt.close(fig)
    return paths


def _short(label: str, n: int = 18) -> str:
    return label[:n] + "..." if len(label) > n else label


def plot_scatter_grid(
    scored: pd.DataFrame,
    corr: pd.DataFrame,
    methods: Sequence[str],
    cell_types: Sequence[str],
    out_base: Path,
) -> List[str]:
    """Predicted vs true fraction, one panel per (method, cell type)."""
    n_r, n_c = max(1, len(methods)), max(1, len(cell_types))
    fig, axes = plt.subplots(n_r, n_c, figsize=(2.6 * n_c, 2.4 * n_r), squeeze=False)
    r_lookup = corr.set_index(["method", "cell_type"])["pearson_r"].to_dict() if not corr.empty else {}
    palette = sns.color_palette("husl", n_colors=n_c)

    for i, m in enumerate(methods):
        for j, ct in enumerate(cell_types):
            ax = axes[i, j]
            g = scored[(scored["method"] == m) & (scored["cell_type"] == ct)]
            if g.empty:
                ax.text(0.5, 0.5, "n/a", ha="center", va="center", transform=ax.transAxes, color="grey")
                ax.set_xticks([]); ax.set_yticks([])
            else:
                sub = bool(g["substitute"].any())
                ax.scatter(g["true_fraction"], g["estimate"], s=12,
                           color=SUBSTITUTE_COLOR if sub else palette[j], alpha=0.4 if sub else 0.8)
                r = r_lookup.get((m, ct), np.nan)
                ax.text(0.04, 0.92, "r = n/a" if pd.isna(r) else f"r = {r:.2f}",
                        transform=ax.transAxes, fontsize=7, va="top")
                ax.tick_params(labelsize=6)
            if i == 0:
                ax.set_title(_short(ct), fontsize=8)
            if j == 0:
                ax.set_ylabel(m, fontsize=8)
    fig.supxlabel("true fraction")
    fig.supylabel("estimate")
    fig.tight_layout()
    return _save(fig, out_base)


def plot_correlation_heatmap(table: pd.DataFrame, out_base: Path) -> List[str]:
    """Methods × cell types Pearson r; missing cells annotated with "n/a"."""
    data = table.set_index("method").astype(float)
    if data.empty:
        logger.warning("Correlation table is empty; heatmap skipped")
        return []
    fig, ax = plt.subplots(figsize=(1.1 * max(3, data.shape[1]) + 2, 0.5 * max(2, data.shape[0]) + 1.5))
    sns.heatmap(data, mask=data.isna(), annot=True, fmt=".2f", vmin=-1, vmax=1, cmap="RdBu_r",
                cbar_kws={"label": "Pearson r"}, ax=ax, linewidths=0.5, linecolor="white")
    for i in range(data.shape[0]):
        for j in range(data.shape[1]):
            if pd.isna(data.iat[i, j]):
                ax.text(j + 0.5, i + 0.5, "n/a", ha="center", va="center", fontsize=8, color="grey")
    ax.set_xlim(0, data.shape[1]); ax.set_ylim(data.shape[0], 0)
    ax.set_xticks(np.arange(data.shape[1]) + 0.5)
    ax.set_xticklabels([_short(c) for c in data.columns], rotation=45, ha="right")
    ax.set_yticks(np.arange(data.shape[0]) + 0.5)
    ax.set_yticklabels(data.index, rotation=0)
    ax.set_xlabel(""); ax.set_ylabel("")
    ax.set_title("Correlation with gold standard", fontweight="bold")
    fig.tight_layout()
    return _save(fig, out_base)


def plot_absolute_metrics(absolute: pd.DataFrame, out_base: Path) -> List[str]:
    """Pooled slope (with CI) and RMSE per absolute-scale method."""
    pooled = absolute[absolute["cell_type"] == ALL_CELL_TYPES].sort_values("method")
    if pooled.empty:
        return []
    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(10, 4))
    x = np.arange(len(pooled))
    slope = pooled["slope"].to_numpy(dtype=float)
    err = np.vstack([slope - pooled["slope_ci_low"].to_numpy(dtype=float),
                     pooled["slope_ci_high"].to_numpy(dtype=float) - slope])
    ax1.bar(x, np.nan_to_num(slope), yerr=np.nan_to_num(err), capsize=4, alpha=0.8)
    ax1.axhline(1.0, color="black", linestyle="--", linewidth=0.8)
    ax2.bar(x, np.nan_to_num(pooled["rmse"].to_numpy(dtype=float)), alpha=0.8, color="#ff7f0e")
    for ax, col in ((ax1, "slope"), (ax2, "rmse")):
        for k, v in enumerate(pooled[col]):
            if pd.isna(v):
                ax.text(k, 0, "n/a", ha="center", va="bottom", color="grey")
        ax.set_xticks(x)
        ax.set_xticklabels(pooled["method"], rotation=45, ha="right")
        ax.grid(axis="y", alpha=0.3)
    ax1.set_ylabel("slope (estimate ~ true)"); ax1.set_title("Slope", fontweight="bold")
    ax2.set_ylabel("RMSE"); ax2.set_title("RMSE", fontweight="bold")
    fig.tight_layout()
    return _save(fig, out_base)


def plot_spillover(spill: pd.DataFrame, out_base: Path) -> List[str]:
    """One heatmap per method: true cell type (rows) × predicted cell type (cols)."""
    if spill is None or spill.empty:
        return []
    methods = sorted(spill["method"].unique())
    fig, axes = plt.subplots(1, len(methods), figsize=(4.5 * len(methods), 4), squeeze=False)
    for ax, m in zip(axes[0], methods):
        mat = spill[spill["method"] == m].pivot(index="true_cell_type", columns="cell_type", values="fraction")
        sns.heatmap(mat, vmin=0, vmax=1, cmap="viridis", ax=ax, cbar=ax is axes[0, -1])
        ax.set_title(m, fontweight="bold")
        ax.set_xlabel("predicted"); ax.set_ylabel("true")
        ax.tick_params(labelsize=6)
    fig.tight_layout()
    return _save(fig, out_base)


def make_default_panel(result: BenchmarkResult, out_dir: str) -> Dict[str, List[str]]:
    """Render all figures the result has data for into `out_dir`."""
    sns.set_theme(style="whitegrid", palette="husl")
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    files: Dict[str, List[str]] = {
        "scatter_grid": plot_scatter_grid(result.scored, result.correlations, result.methods,
                                          result.cell_types, out / "scatter_grid"),
        "correlation_heatmap": plot_correlation_heatmap(result.correlation_table, out / "correlation_heatmap"),
    }
    if not result.absolute.empty:
        files["absolute_metrics"] = plot_absolute_metrics(result.absolute, out / "absolute_metrics")
    if result.spillover is not None and not result.spillover.empty:
        files["spillover"] = plot_spillover(result.spillover, out / "spillover")
    logger.info(f"Wrote {sum(len(v) for v in files.values())} figure file(s) to {out}")
    return {k: v for k, v in files.items() if v}


__all__ = [
    "make_default_panel",
    "plot_scatter_grid",
    "plot_correlation_heatmap",
    "plot_absolute_metrics",
    "plot_spillover",
]
