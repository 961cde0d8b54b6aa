# src/deconv_benchmark/s3/run.py
from __future__ import annotations
import os
from pathlib import Path
from typing import Optional, Sequence
from .api import s3_score


def _optional(base: str, name: str) -> Optional[str]:
    p = Path(base) / name
    return str(p) if p.exists() else None


def _require(base: str, name: str, stage: str) -> str:
    p = Path(base) / name
    if not p.exists():
        raise FileNotFoundError(f"[S3] Expected {stage} output not found: {p}")
    return str(p)


def run_s3(
    *,
    out_s1: str,
    out_s2: str,
    out_s3: str,
    gold_standard: str | None = None,
    methods: Sequence[str] | None = None,
    absolute_methods: Sequence[str] | None = None,
    plots: bool = True,
    ci_level: float = 0.95,
):
    """
    Stage 3: Score S2 predictions against the S1 gold standard (or an
    explicit gold-standard table, e.g. FACS fractions for real bulk data).
    """
    os.makedirs(out_s3, exist_ok=True)
    print(f"[S3] Starting scoring. Inputs: {out_s1} (S1), {out_s2} (S2)")

    preds = _require(out_s2, "predictions.tsv", "S2")
    gold = gold_standard or _require(out_s1, "gold_standard.tsv", "S1")
    print(f"[S3] Using predictions:   {preds}")
    print(f"[S3] Using gold standard: {gold}")

    result = s3_score(
        predictions_tsv=preds,
        gold_standard_tsv=gold,
        failures_json=_optional(out_s2, "failures.json"),
        methods=methods,
        absolute_methods=absolute_methods,
        spillover_predictions_tsv=_optional(out_s2, "spillover_predictions.tsv"),
        spillover_gold_tsv=_optional(out_s1, "spillover_gold_standard.tsv"),
        detection_predictions_tsv=_optional(out_s2, "detection_limit_predictions.tsv"),
        detection_design_tsv=_optional(out_s1, "detection_limit_design.tsv"),
        out_dir=out_s3,
        plots=plots,
        ci_level=ci_level,
    )
    print(f"[S3] Scoring outputs in: {out_s3}")
    return result
