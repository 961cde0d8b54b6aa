#!/usr/bin/env python3
"""
S3 (scoring) — BenchmarkAnalyzer
Loads S1/S2 outputs, scores them, and writes data/, plots/ and reports/.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from .loader import load_failures, load_predictions, load_table_auto, require_columns
from .report import render_report
from .scoring import BenchmarkResult, score_benchmark

logger = logging.getLogger(__name__)


@dataclass
class BenchmarkAnalyzer:
    """Score deconvolution predictions against a gold standard and produce plots + reports."""
    output_dir: str = "benchmark_analysis"
    plots_enabled: bool = True
    ci_level: float = 0.95
    results: Dict[str, Any] = field(default_factory=dict)

    _meta: Dict[str, Any] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        self.out = Path(self.output_dir)
        (self.out / "plots").mkdir(parents=True, exist_ok=True)
        (self.out / "data").mkdir(exist_ok=True)
        (self.out / "reports").mkdir(exist_ok=True)
        self._meta = {
            "analysis_date": datetime.now().isoformat(),
            "ci_level": self.ci_level,
        }

    # ---------------- IO & validation ----------------
    def load_gold_standard(self, path: str) -> pd.DataFrame:
        from ..s1.io import read_gold_standard

        logger.info(f"Loading gold standard from: {path}")
        gold = read_gold_standard(path)
        if (gold["true_fraction"] < 0).any():
            logger.warning("Negative gold-standard fractions detected.")
        self._meta["gold_standard_path"] = str(path)
        return gold

    def load_predictions(self, path: str) -> pd.DataFrame:
        logger.info(f"Loading predictions from: {path}")
        pred = load_predictions(path)
        self._meta["predictions_path"] = str(path)
        self._meta["n_prediction_rows"] = int(pred.shape[0])
        return pred

    # ---------------- Save artifacts ----------------
    def save_data_outputs(self, result: BenchmarkResult) -> Dict[str, str]:
        data_dir = self.out / "data"
        files: Dict[str, str] = {}

        tables = {
            "correlations": result.correlation_table,
            "correlation_stats": result.correlations,
            "absolute_metrics": result.absolute,
            "scored": result.scored,
        }
        if result.spillover is not None:
            tables["spillover"] = result.spillover
        if result.detection_limit is not None:
            tables["detection_limit"] = result.detection_limit

        for name, df in tables.items():
            p = data_dir / f"{name}.tsv"
            df.to_csv(p, sep="\t", index=False, na_rep="NA")
            files[name] = str(p)

        s_json = self.out / "reports" / "analysis_summary.json"
        with open(s_json, "w", encoding="utf-8") as f:
            json.dump({"summary": result.summary(), "metadata": self._meta}, f, indent=2, default=str)
        files["summary_json"] = str(s_json)
        return files

    # ---------------- Orchestrator ----------------
    def analyze(
        self,
        predictions_file: str,
        gold_standard_file: str,
        failures_file: Optional[str] = None,
        methods: Optional[Sequence[str]] = None,
        absolute_methods: Optional[Sequence[str]] = None,
        spillover_predictions_file: Optional[str] = None,
        spillover_gold_file: Optional[str] = None,
        detection_predictions_file: Optional[str] = None,
        detection_design_file: Optional[str] = None,
    ) -> Dict[str, Any]:
        """High-level API: load → score → plots → save → report."""
        logger.info(f"Output directory: {self.out}")
        pred = self.load_predictions(predictions_file)
        gold = self.load_gold_standard(gold_standard_file)
        failures = load_failures(failures_file)

        spill_pred = spill_gold = dl_pred = dl_design = None
        if spillover_predictions_file and spillover_gold_file:
            spill_pred = load_predictions(spillover_predictions_file)
            from ..s1.io import read_gold_standard
            spill_gold = read_gold_standard(spillover_gold_file)
        if detection_predictions_file and detection_design_file:
            dl_pred = load_predictions(detection_predictions_file)
            dl_design = require_columns(load_table_auto(detection_design_file),
                                        ["sample", "cell_type", "spike_fraction"],
                                        f"Detection-limit design {detection_design_file}")

        result = score_benchmark(
            pred, gold,
            methods=methods,
            absolute_methods=absolute_methods,
            failures=failures,
            spillover_predictions=spill_pred,
            spillover_gold=spill_gold,
            detection_predictions=dl_pred,
            detection_design=dl_design,
            level=self.ci_level,
        )

        plot_files: Dict[str, List[str]] = {}
        if self.plots_enabled:
            from . import plots
            plot_files = plots.make_default_panel(result, str(self.out / "plots"))

        data_files = self.save_data_outputs(result)
        report_file = render_report(result, str(self.out / "reports" / "benchmark_report.md"),
                                    plot_files=plot_files, meta=self._meta)

        self.results = {
            "analysis_successful": True,
            "output_directory": str(self.out),
            "summary": result.summary(),
            "data_files": data_files,
            "plot_files": plot_files,
            "report_file": report_file,
            "metadata": self._meta,
            "result": result,
        }
        logger.info("S3 scoring complete.")
        return self.results


__all__ = ["BenchmarkAnalyzer"]
