#!/usr/bin/env python3
"""
S1 (simulation) — Control cohorts
make_spillover_fractions, make_detection_limit_fractions

Fraction designs that complement the random cohort:
- spillover: "pure" samples made of a single cell type; any estimate for
  another type is signal spilling over from the true one.
- detection limit: a non-immune background with one immune type spiked in at
  increasing fractions.
Both feed the same `simulate_bulk` routine.
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..taxonomy import Taxonomy

DEF_SPIKE_FRACTIONS = (0.0, 0.005, 0.01, 0.02, 0.03, 0.05, 0.1, 0.2, 0.3, 0.5)


def make_spillover_fractions(
    cell_types: Sequence[str],
    n_replicates: int = 5,
) -> Tuple[pd.DataFrame, pd.Series]:
    """
    One block of `n_replicates` pure samples per cell type.

    Returns (fractions, true_type) where `true_type` names the only cell type
    present in each sample.
    """
    cell_types = list(cell_types)
    rows, index, labels = [], [], []
    for ct in cell_types:
        for r in range(1, n_replicates + 1):
            vec = np.zeros(len(cell_types))
            vec[cell_types.index(ct)] = 1.0
            rows.append(vec)
            index.append(f"pure_{_slug(ct)}_{r:02d}")
            labels.append(ct)
    fractions = pd.DataFrame(rows, index=pd.Index(index, name="sample"), columns=cell_types)
    fractions.columns.name = "cell_type"
    return fractions, pd.Series(labels, index=fractions.index, name="true_cell_type")


def make_detection_limit_fractions(
    taxonomy: Taxonomy,
    spike_fractions: Sequence[float] = DEF_SPIKE_FRACTIONS,
    n_replicates: int = 5,
    rng: Optional[np.random.Generator] = None,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Spike each immune type into a background of cancer + other (non-immune) cells.

    The background composition is drawn once per replicate with random integer
    weights and shared across the spike-in grid, so replicate r differs between
    spike levels only by the amount of the spiked type.

    Returns (fractions, design) where `design` has columns
    `sample, cell_type, spike_fraction, replicate`.
    """
    rng = rng or np.random.default_rng(0)
    background_types = list(taxonomy.cancer) + list(taxonomy.other)
    columns = background_types + list(taxonomy.immune)

    backgrounds = []
    for _ in range(n_replicates):
        w = rng.integers(1, 100, size=len(background_types), endpoint=True).astype(float)
        backgrounds.append(w / w.sum())

    rows, index, design = [], [], []
    for ct in taxonomy.immune:
        for spike in spike_fractions:
            for r, bg in enumerate(backgrounds, start=1):
                vec = np.zeros(len(columns))
                vec[: len(background_types)] = bg * (1.0 - spike)
                vec[columns.index(ct)] = spike
                name = f"dl_{_slug(ct)}_{spike:.3f}_{r:02d}"
                rows.append(vec)
                index.append(name)
                design.append({"sample": name, "cell_type": ct, "spike_fraction": float(spike), "replicate": r})

    fractions = pd.DataFrame(rows, index=pd.Index(index, name="sample"), columns=columns)
    fractions.columns.name = "cell_type"
    return fractions, pd.DataFrame(design)


def _slug(label: str) -> str:
    keep = [c if c.isalnum() else "_" for c in label]
    return "".join(keep).strip("_").lower()


__all__ = ["make_spillover_fractions", "make_detection_limit_fractions", "DEF_SPIKE_FRACTIONS"]
