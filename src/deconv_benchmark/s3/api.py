#!/usr/bin/env python3
"""
S3 (scoring) — Public wrapper
s3_score
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

from .analyzer import BenchmarkAnalyzer

__all__ = ["s3_score"]


def s3_score(
    predictions_tsv: str,
    gold_standard_tsv: str,
    failures_json: Optional[str] = None,
    methods: Optional[Sequence[str]] = None,
    absolute_methods: Optional[Sequence[str]] = None,
    spillover_predictions_tsv: Optional[str] = None,
    spillover_gold_tsv: Optional[str] = None,
    detection_predictions_tsv: Optional[str] = None,
    detection_design_tsv: Optional[str] = None,
    out_dir: str = "benchmark_analysis",
    plots: bool = True,
    ci_level: float = 0.95,
) -> Dict[str, Any]:
    """
    High-level convenience API for S3 scoring.

    Parameters
    ----------
    predictions_tsv : str
        Normalized long prediction table from S2 (`predictions.tsv`).
    gold_standard_tsv : str
        Long (sample, cell_type, true_fraction) or wide (sample × cell types) table.
    failures_json : str | None
        `failures.json` from S2; failed methods are listed in the report and
        shown as n/a rows.
    methods : sequence of str | None
        Row order of the correlation table. Defaults to every method seen.
    absolute_methods : sequence of str | None
        Methods scored for slope/RMSE. Defaults to the registry's absolute flag.
    spillover_predictions_tsv, spillover_gold_tsv : str | None
        Optional pure-sample cohort for the spillover matrix.
    detection_predictions_tsv, detection_design_tsv : str | None
        Optional spike-in cohort for detection limits.
    out_dir : str
        Output directory root for plots/, data/, reports/.
    plots : bool
        If False, figures are skipped.
    ci_level : float
        Confidence level of the r and slope intervals.

    Returns
    -------
    Dict[str, Any]
        Result dictionary from `BenchmarkAnalyzer.analyze(...)`.
    """
    analyzer = BenchmarkAnalyzer(output_dir=out_dir, plots_enabled=plots, ci_level=ci_level)
    return analyzer.analyze(
        predictions_file=predictions_tsv,
        gold_standard_file=gold_standard_tsv,
        failures_file=failures_json,
        methods=methods,
        absolute_methods=absolute_methods,
        spillover_predictions_file=spillover_predictions_tsv,
        spillover_gold_file=spillover_gold_tsv,
        detection_predictions_file=detection_predictions_tsv,
        detection_design_file=detection_design_tsv,
    )
