#!/usr/bin/env python3
"""
deconv_benchmark.config

Contains:
- USER_DEFAULTS: baseline defaults for CLI & drivers
- resolve_paths(args): expand user paths, normalize relative ones
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from .utils import abspath_any


# -------------------------------------------------------------
# Default user-configurable parameters (used by CLI & drivers)
# -------------------------------------------------------------
# Every key the CLI reads must exist here. Tuning values are strings on
# purpose; drivers.py normalizes them.
USER_DEFAULTS = {
    # Inputs
    "reference":     "",           # .h5ad file, folder of .h5ad files, or genes×cells TSV
    "annotations":   "",           # cells×fields TSV when `reference` is a TSV
    "bulk":          "",           # real bulk matrix; empty = use the S1 simulation
    "bulk_gene_col": "",           # "" or "None" means auto-detect
    "gold_standard": "",           # e.g. FACS fractions for real bulk; empty = S1 gold standard
    "indications":   "",
    "mapping":       "",           # cell-type mapping TSV; empty = built-in table

    # Outputs
    "s1_outdir": "",
    "s2_outdir": "",
    "s3_outdir": "",

    # Cell-type taxonomy
    "cancer_types": ["Melanoma cell", "Ovarian carcinoma cell"],
    "immune_types": [],            # empty = every non-cancer type of the reference
    "other_types":  [],
    "indication_codes": [],        # "Cell type=code" pairs; merged over the built-in skcm/ov codes
    "sample_key":    "sample",
    "cell_type_key": "cell_type",

    # Tissue filter
    "tissue_include": [],
    "tissue_keys": ["tissue"],
    "tissue_match_mode": "exact",  # exact | substring

    # S1 simulation
    "n_samples": "100",
    "n_cells": "500",
    "seed": "42",
    "variant": "benchmark",        # benchmark | capped
    "cap": "",                     # overrides the variant's cap
    "atol": "",                    # overrides the variant's tolerance
    "mu": "",                      # skip the Normal fit when both mu and sigma are set
    "sigma": "",
    "spillover": "false",
    "detection_limit": "false",
    "n_replicates": "5",

    # S2 deconvolution
    "methods": ["nnls", "marker_mean"],
    "scale_mrna": "false",
    "tumor": "true",
    "top_markers_per_ct": "25",
    "n_jobs": "",                  # empty = min(#methods, #cpus)
    "r_timeout": "",               # seconds per Rscript call; empty = no limit

    # S3 scoring
    "absolute_methods": [],        # empty = registry flag
    "plots": "true",
    "ci_level": "0.95",
}

# -------------------------------------------------------------
# Helper: normalize and expand paths
# -------------------------------------------------------------
PATH_KEYS = [
    "reference", "annotations", "bulk", "gold_standard", "indications", "mapping",
    "s1_outdir", "s2_outdir", "s3_outdir",
]


def resolve_paths(args: Any) -> Dict[str, Optional[str]]:
    """
    Normalize all input/output paths in a CLI namespace or dict.

    Works with argparse.Namespace or plain dict. Returns a dict of resolved
    absolute paths (None for blank entries).

    Examples
    --------
    >>> resolve_paths({"reference": "", "bulk": None})["bulk"] is None
    True
    """
    if hasattr(args, "__dict__"):
        items = vars(args)
    elif isinstance(args, dict):
        items = args
    else:
        raise TypeError("resolve_paths() expects dict or argparse.Namespace")
    return {k: abspath_any(str(items.get(k) or "").strip()) for k in PATH_KEYS}


if __name__ == "__main__":
    import json
    print(json.dumps(USER_DEFAULTS, indent=2))
