# src/deconv_benchmark/s1/run.py
#!/usr/bin/env python3
"""
S1 (simulation) — Entrypoint
simulate_cohort, s1_simulate
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd

from ..errors import InputFormatError
from ..taxonomy import DEFAULT_CANCER_TYPES, Taxonomy
from ..utils import write_json
from .controls import DEF_SPIKE_FRACTIONS, make_detection_limit_fractions, make_spillover_fractions
from .fractions import (
    cancer_fraction_per_sample,
    fit_cancer_fraction,
    fractions_to_long,
    get_variant,
    make_fractions,
    summarize_fractions,
    validate_fractions,
)
from .io import load_reference
from .pseudobulk import simulate_bulk
from .tissue import restrict_to_tissues

logger = logging.getLogger(__name__)

# -------------------- Defaults --------------------
DEF_SEED = 42
DEF_N_SAMPLES = 100
DEF_N_CELLS = 500
DEF_VARIANT = "benchmark"
DEF_CELL_TYPE_KEY = "cell_type"
DEF_SAMPLE_KEY = "sample"


@dataclass
class SimulatedCohort:
    """Synthetic bulk samples together with their ground truth."""
    expression: pd.DataFrame            # genes × samples (TPM)
    fractions: pd.DataFrame             # samples × cell types
    indications: pd.Series              # sample → indication code (or true type for controls)
    cell_counts: pd.DataFrame           # samples × cell types, cells drawn
    seed: int
    params: Dict[str, Any] = field(default_factory=dict)
    cancer_type: Optional[pd.Series] = None  # sample → cancer sub-type, main cohort only

    @property
    def gold_standard(self) -> pd.DataFrame:
        return fractions_to_long(self.fractions)


def build_taxonomy(
    adata: ad.AnnData,
    cancer_types: Sequence[str],
    immune_types: Optional[Sequence[str]] = None,
    other_types: Optional[Sequence[str]] = None,
    cell_type_key: str = DEF_CELL_TYPE_KEY,
    indication_codes: Optional[Dict[str, str]] = None,
) -> Taxonomy:
    """
    Taxonomy from explicit lists; when no immune/other lists are given, every
    non-cancer label present in the reference counts as immune. Known cancer
    labels that were not requested are left out of that list.
    """
    if immune_types or other_types:
        return Taxonomy.from_lists(cancer_types, immune_types or [], other_types or [], indication_codes)
    present = sorted(set(adata.obs[cell_type_key].astype(str)))
    known_cancer = set(DEFAULT_CANCER_TYPES) | set(indication_codes or {})
    unrequested = [c for c in present if c in known_cancer and c not in set(cancer_types)]
    if unrequested:
        logger.warning(f"Ignoring cancer cell types not listed in --cancer_types: {unrequested}")
    immune = [c for c in present if c not in set(cancer_types) and c not in unrequested]
    return Taxonomy.from_lists(cancer_types, immune, [], indication_codes)


def _seed_streams(seed: int) -> Tuple[np.random.Generator, np.random.Generator, np.random.Generator]:
    """Independent generators for fractions, cell sampling and control cohorts."""
    frac_ss, cell_ss, ctrl_ss = np.random.SeedSequence(seed).spawn(3)
    return (np.random.default_rng(frac_ss), np.random.default_rng(cell_ss), np.random.default_rng(ctrl_ss))


def simulate_cohort(
    adata: ad.AnnData,
    taxonomy: Taxonomy,
    n_samples: int = DEF_N_SAMPLES,
    n_cells: int = DEF_N_CELLS,
    seed: int = DEF_SEED,
    variant: str = DEF_VARIANT,
    cap: Optional[float] = None,
    atol: Optional[float] = None,
    mu: Optional[float] = None,
    sigma: Optional[float] = None,
    sample_key: str = DEF_SAMPLE_KEY,
    cell_type_key: str = DEF_CELL_TYPE_KEY,
) -> SimulatedCohort:
    """
    Simulate `n_samples` bulk profiles with known composition.

    The cancer fraction distribution is fitted on the reference unless both
    `mu` and `sigma` are supplied. `cap`/`atol` default to the chosen variant.
    """
    v = get_variant(variant)
    cap = v.cap if cap is None else float(cap)
    atol = v.atol if atol is None else float(atol)

    if mu is None or sigma is None:
        props = cancer_fraction_per_sample(adata, taxonomy, sample_key=sample_key, cell_type_key=cell_type_key)
        fit_mu, fit_sigma = fit_cancer_fraction(props.values)
        mu = fit_mu if mu is None else mu
        sigma = fit_sigma if sigma is None else sigma
        logger.info(f"Cancer fraction fit on {len(props)} reference samples: mu={mu:.4f}, sigma={sigma:.4f}")

    frac_rng, cell_rng, _ = _seed_streams(seed)
    fractions, cancer_type = make_fractions(n_samples, taxonomy, mu, sigma, frac_rng, cap=cap)
    validate_fractions(fractions, atol=atol)

    expression, counts = simulate_bulk(adata, fractions, n_cells, cell_rng, cell_type_key=cell_type_key)
    params = {
        "n_samples": int(n_samples),
        "n_cells": int(n_cells),
        "variant": v.name,
        "cap": cap,
        "atol": atol,
        "cancer_fraction_mu": float(mu),
        "cancer_fraction_sigma": float(sigma),
        "taxonomy": taxonomy.to_dict(),
    }
    indications = cancer_type.map(taxonomy.indication_of).rename("indication")
    return SimulatedCohort(expression, fractions, indications, counts, int(seed), params, cancer_type=cancer_type)


def simulate_spillover(
    adata: ad.AnnData,
    cell_types: Sequence[str],
    n_cells: int = DEF_N_CELLS,
    n_replicates: int = 5,
    seed: int = DEF_SEED,
    cell_type_key: str = DEF_CELL_TYPE_KEY,
) -> SimulatedCohort:
    _, _, rng = _seed_streams(seed)
    fractions, true_type = make_spillover_fractions(cell_types, n_replicates=n_replicates)
    validate_fractions(fractions)
    expression, counts = simulate_bulk(adata, fractions, n_cells, rng, cell_type_key=cell_type_key)
    return SimulatedCohort(expression, fractions, true_type, counts, int(seed),
                           {"design": "spillover", "n_replicates": n_replicates, "n_cells": n_cells})


def simulate_detection_limit(
    adata: ad.AnnData,
    taxonomy: Taxonomy,
    spike_fractions: Sequence[float] = DEF_SPIKE_FRACTIONS,
    n_cells: int = DEF_N_CELLS,
    n_replicates: int = 5,
    seed: int = DEF_SEED,
    cell_type_key: str = DEF_CELL_TYPE_KEY,
) -> Tuple[SimulatedCohort, pd.DataFrame]:
    _, _, rng = _seed_streams(seed + 1)
    fractions, design = make_detection_limit_fractions(
        taxonomy, spike_fractions=spike_fractions, n_replicates=n_replicates, rng=rng
    )
    validate_fractions(fractions)
    expression, counts = simulate_bulk(adata, fractions, n_cells, rng, cell_type_key=cell_type_key)
    spiked = design.set_index("sample")["cell_type"]
    cohort = SimulatedCohort(expression, fractions, spiked, counts, int(seed),
                             {"design": "detection_limit", "n_replicates": n_replicates, "n_cells": n_cells})
    return cohort, design


def write_cohort(cohort: SimulatedCohort, outdir: str, prefix: str = "") -> Dict[str, str]:
    """Write expression/fractions/gold standard/indications/cell counts TSVs."""
    os.makedirs(outdir, exist_ok=True)
    paths = {
        "bulk_expression": os.path.join(outdir, f"{prefix}bulk_expression.tsv"),
        "fractions": os.path.join(outdir, f"{prefix}fractions.tsv"),
        "gold_standard": os.path.join(outdir, f"{prefix}gold_standard.tsv"),
        "indications": os.path.join(outdir, f"{prefix}indications.tsv"),
        "cell_counts": os.path.join(outdir, f"{prefix}cell_counts.tsv"),
    }
    cohort.expression.to_csv(paths["bulk_expression"], sep="\t", encoding="utf-8")
    cohort.fractions.to_csv(paths["fractions"], sep="\t", encoding="utf-8", float_format="%.10g")
    cohort.gold_standard.to_csv(paths["gold_standard"], sep="\t", index=False, encoding="utf-8", float_format="%.10g")
    ind = cohort.indications.rename_axis("sample").to_frame()
    if cohort.cancer_type is not None:
        ind["cancer_type"] = cohort.cancer_type.reindex(ind.index)
    ind.to_csv(paths["indications"], sep="\t", encoding="utf-8")
    cohort.cell_counts.to_csv(paths["cell_counts"], sep="\t", encoding="utf-8")
    return paths


def s1_simulate(
    reference: str,
    outdir: str,
    annotations: Optional[str] = None,
    cancer_types: Optional[List[str]] = None,
    immune_types: Optional[List[str]] = None,
    other_types: Optional[List[str]] = None,
    tissue_include: Optional[List[str]] = None,
    tissue_keys: Optional[List[str]] = None,
    tissue_match_mode: str = "exact",
    n_samples: int = DEF_N_SAMPLES,
    n_cells: int = DEF_N_CELLS,
    seed: int = DEF_SEED,
    variant: str = DEF_VARIANT,
    cap: Optional[float] = None,
    atol: Optional[float] = None,
    mu: Optional[float] = None,
    sigma: Optional[float] = None,
    sample_key: str = DEF_SAMPLE_KEY,
    cell_type_key: str = DEF_CELL_TYPE_KEY,
    indication_codes: Optional[Dict[str, str]] = None,
    spillover: bool = False,
    detection_limit: bool = False,
    n_replicates: int = 5,
) -> Tuple[Dict[str, str], Dict[str, Any]]:
    os.makedirs(outdir, exist_ok=True)

    # 1) Reference + source tissues
    adata = load_reference(reference, annotations=annotations, cell_type_key=cell_type_key)
    adata = restrict_to_tissues(adata, tissue_include, keys=tissue_keys, mode=tissue_match_mode)
    print(f"[S1] Reference after tissue filter: {adata.n_obs:,} cells")

    # 2) Taxonomy
    if not cancer_types:
        raise InputFormatError("At least one cancer cell type is required (--cancer_types).")
    taxonomy = build_taxonomy(adata, cancer_types, immune_types, other_types, cell_type_key=cell_type_key,
                              indication_codes=indication_codes)

    # 3) Main cohort
    cohort = simulate_cohort(
        adata, taxonomy,
        n_samples=n_samples, n_cells=n_cells, seed=seed, variant=variant,
        cap=cap, atol=atol, mu=mu, sigma=sigma,
        sample_key=sample_key, cell_type_key=cell_type_key,
    )
    paths = write_cohort(cohort, outdir)
    summaries: Dict[str, Any] = {
        "simulation": {**cohort.params, "seed": cohort.seed, "reference": reference},
        "fractions": summarize_fractions(cohort.fractions, cohort.indications),
    }

    # 4) Optional control cohorts
    if spillover:
        spill = simulate_spillover(adata, list(taxonomy.all_types), n_cells=n_cells,
                                   n_replicates=n_replicates, seed=seed, cell_type_key=cell_type_key)
        paths.update({f"spillover_{k}": v for k, v in write_cohort(spill, outdir, prefix="spillover_").items()})
        summaries["spillover"] = spill.params
    if detection_limit:
        dl, design = simulate_detection_limit(adata, taxonomy, n_cells=n_cells,
                                              n_replicates=n_replicates, seed=seed, cell_type_key=cell_type_key)
        paths.update({f"detection_limit_{k}": v for k, v in write_cohort(dl, outdir, prefix="detection_limit_").items()})
        design_path = os.path.join(outdir, "detection_limit_design.tsv")
        design.to_csv(design_path, sep="\t", index=False, encoding="utf-8")
        paths["detection_limit_design"] = design_path
        summaries["detection_limit"] = dl.params

    paths["simulation_summary"] = write_json(os.path.join(outdir, "simulation_summary.json"), summaries)

    print(f"[S1] Simulated {cohort.fractions.shape[0]} samples × {cohort.expression.shape[0]:,} genes")
    print("[S1] TSVs written to:", outdir)
    return paths, summaries


__all__ = [
    "SimulatedCohort",
    "build_taxonomy",
    "simulate_cohort",
    "simulate_spillover",
    "simulate_detection_limit",
    "write_cohort",
    "s1_simulate",
]
