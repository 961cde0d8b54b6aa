# src/deconv_benchmark/s2/deconv.py
from __future__ import annotations

import json
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd

from ..errors import InputFormatError, UnknownMethodError
from .mapping import load_mapping, normalize_cell_types
from .methods import METHODS, deconvolute, get_method
from .signatures import SignatureSet

logger = logging.getLogger(__name__)

RAW_COLUMNS = ["method", "sample", "method_cell_type", "estimate"]


@dataclass
class DeconvolutionRun:
    """Raw and normalized predictions of one adapter loop plus per-method failures."""
    raw: pd.DataFrame
    predictions: pd.DataFrame
    failures: Dict[str, str] = field(default_factory=dict)
    methods: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> List[str]:
        return sorted(set(self.raw["method"])) if not self.raw.empty else []


def _to_long(method: str, est: pd.DataFrame) -> pd.DataFrame:
    long = est.copy()
    long.index.name = "method_cell_type"
    long = long.reset_index().melt(id_vars="method_cell_type", var_name="sample", value_name="estimate")
    long.insert(0, "method", method)
    return long[RAW_COLUMNS].dropna(subset=["estimate"])


def _tasks(
    methods: Sequence[str],
    samples: Sequence[str],
    indications: Optional[pd.Series],
) -> List[Tuple[str, Optional[str], List[str]]]:
    """(method, indication, samples) jobs; indication-aware methods run per indication."""
    tasks = []
    for m in methods:
        spec = get_method(m)
        if spec.indication_aware and indications is not None:
            ind = indications.reindex(samples)
            for label, group in ind.groupby(ind, sort=True):
                tasks.append((m, str(label), list(group.index)))
        else:
            tasks.append((m, None, list(samples)))
    return tasks


def run_methods(
    expression: pd.DataFrame,
    methods: Sequence[str],
    *,
    column: str = "gene_symbol",
    indications: Optional[pd.Series] = None,
    scale_mrna: bool = False,
    tumor: bool = True,
    expected_cell_types: Optional[Sequence[str]] = None,
    signature: Optional[SignatureSet] = None,
    mapping: Optional[pd.DataFrame] = None,
    n_jobs: Optional[int] = None,
    log_dir: Optional[str] = None,
    log_prefix: str = "",
) -> DeconvolutionRun:
    """
    Call every method on the same expression matrix.

    Methods run independently; one that raises is logged, recorded in
    `failures` and left out of the prediction table. Nothing here aborts the
    loop except an unknown method name.

    With `log_dir`, each run writes its tool logs to its own sub-directory
    named `{log_prefix}{method}` or `{log_prefix}{method}_{indication}`.
    """
    unknown = [m for m in methods if m not in METHODS]
    if unknown:
        raise UnknownMethodError(f"Unknown deconvolution method(s) {unknown}. Available: {sorted(METHODS)}")

    samples = [str(c) for c in expression.columns if str(c) != column]
    if indications is not None:
        indications = indications.copy()
        indications.index = indications.index.astype(str)
    tasks = _tasks(methods, samples, indications)

    def _run(task: Tuple[str, Optional[str], List[str]]):
        method, indication, subset = task
        tag = method if indication is None else f"{method}:{indication}"
        cols = [column] + subset if column in expression.columns else subset
        run_log_dir = None
        if log_dir:
            run_log_dir = os.path.join(log_dir, f"{log_prefix}{method}" + (f"_{indication}" if indication else ""))
        try:
            est = deconvolute(
                expression[cols],
                method,
                column=column,
                indications=indications.reindex(subset) if indications is not None else None,
                scale_mrna=scale_mrna,
                tumor=tumor,
                expected_cell_types=expected_cell_types,
                signature=signature,
                log_dir=run_log_dir,
            )
        except Exception as e:  # isolate per-method failures
            logger.warning(f"{tag} failed: {e}")
            return tag, None, str(e)
        logger.info(f"{tag}: {est.shape[0]} cell types × {est.shape[1]} samples")
        return tag, _to_long(method, est), None

    if n_jobs is None:
        n_jobs = min(len(tasks), os.cpu_count() or 1)
    n_jobs = max(1, int(n_jobs))
    if n_jobs == 1 or len(tasks) <= 1:
        results = [_run(t) for t in tasks]
    else:
        with ThreadPoolExecutor(max_workers=n_jobs) as pool:
            results = list(pool.map(_run, tasks))

    frames, failures = [], {}
    for tag, frame, err in results:
        if err is not None:
            failures[tag] = err
        elif frame is not None and not frame.empty:
            frames.append(frame)
        else:
            failures[tag] = "no estimates returned"

    raw = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=RAW_COLUMNS)
    predictions = normalize_cell_types(raw, mapping=mapping, canonical=expected_cell_types)
    return DeconvolutionRun(raw=raw, predictions=predictions, failures=failures, methods=list(methods))


def write_run(run: DeconvolutionRun, outdir: str, prefix: str = "") -> Dict[str, str]:
    os.makedirs(outdir, exist_ok=True)
    paths = {
        "predictions_raw": os.path.join(outdir, f"{prefix}predictions_raw.tsv"),
        "predictions": os.path.join(outdir, f"{prefix}predictions.tsv"),
        "failures": os.path.join(outdir, f"{prefix}failures.json"),
    }
    run.raw.to_csv(paths["predictions_raw"], sep="\t", index=False, encoding="utf-8")
    run.predictions.to_csv(paths["predictions"], sep="\t", index=False, encoding="utf-8")
    with open(paths["failures"], "w", encoding="utf-8") as f:
        json.dump(run.failures, f, indent=2)
    return paths


def s2_deconvolute(
    *,
    s1_dir: str,
    out_dir: str,
    methods: Sequence[str],
    reference: Optional[str] = None,
    annotations: Optional[str] = None,
    cell_type_key: str = "cell_type",
    bulk: Optional[str] = None,
    bulk_gene_col: Optional[str] = None,
    indications_file: Optional[str] = None,
    mapping_file: Optional[str] = None,
    column: str = "gene_symbol",
    scale_mrna: bool = False,
    tumor: bool = True,
    expected_cell_types: Optional[Sequence[str]] = None,
    top_markers_per_ct: int = 25,
    n_jobs: Optional[int] = None,
) -> Dict[str, str]:
    """
    Stage 2: run the configured methods on the S1 cohort (or on a real bulk
    matrix when `bulk` is given) and write normalized prediction tables.
    """
    from ..s1.io import load_reference, read_bulk_expression, read_indications

    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    print(f"[S2] Methods:    {', '.join(methods)}")
    print(f"[S2] Writing to: {out_dir}")

    # --- Canonical cell types default to those of the simulated gold standard ---
    gold_path = Path(s1_dir) / "gold_standard.tsv"
    if expected_cell_types is None and not bulk and gold_path.exists():
        expected_cell_types = sorted(pd.read_csv(gold_path, sep="\t")["cell_type"].astype(str).unique())
        logger.info(f"Expected cell types from {gold_path}: {expected_cell_types}")

    # --- Reference signature (only if a built-in method needs it) ---
    signature = None
    if any(get_method(m).needs_signature for m in methods):
        if not reference:
            raise InputFormatError("Methods " + ", ".join(m for m in methods if get_method(m).needs_signature)
                                   + " need a single-cell reference (--reference).")
        from .signatures import build_signature_set

        adata = load_reference(reference, annotations=annotations, cell_type_key=cell_type_key)
        signature = build_signature_set(adata, cell_type_key=cell_type_key, top_n_markers=top_markers_per_ct)
        signature.to_files(str(out))

    mapping = load_mapping(mapping_file)

    # --- Cohorts: main (+ optional control cohorts written by S1) ---
    if bulk:
        cohorts = {"": (read_bulk_expression(bulk, gene_col=bulk_gene_col),
                        read_indications(indications_file) if indications_file else None)}
    else:
        cohorts = {}
        for prefix in ("", "spillover_", "detection_limit_"):
            expr_path = Path(s1_dir) / f"{prefix}bulk_expression.tsv"
            if not expr_path.exists():
                if not prefix:
                    raise FileNotFoundError(f"[S2] Expected S1 output not found: {expr_path}")
                continue
            expr = pd.read_csv(expr_path, sep="\t", index_col=0)
            ind_path = Path(indications_file) if (indications_file and not prefix) else Path(s1_dir) / "indications.tsv"
            ind = read_indications(str(ind_path)) if (not prefix and ind_path.exists()) else None
            cohorts[prefix] = (expr, ind)

    paths: Dict[str, str] = {}
    summary: Dict[str, Dict] = {}
    for prefix, (expr, ind) in cohorts.items():
        label = prefix.rstrip("_") or "main"
        print(f"[S2] Cohort '{label}': {expr.shape[0]:,} genes × {expr.shape[1]} samples")
        run = run_methods(
            expr, methods,
            column=column,
            indications=ind,
            scale_mrna=scale_mrna,
            tumor=tumor,
            expected_cell_types=expected_cell_types,
            signature=signature,
            mapping=mapping,
            n_jobs=n_jobs,
            log_dir=str(out / "R_logs"),
            log_prefix=prefix,
        )
        for k, v in write_run(run, str(out), prefix=prefix).items():
            paths[f"{prefix}{k}"] = v
        summary[label] = {
            "methods": list(methods),
            "succeeded": run.succeeded,
            "failures": run.failures,
            "n_predictions": int(run.predictions.shape[0]),
        }
        if run.failures:
            print(f"[S2] {len(run.failures)} method run(s) failed; reported as n/a: {sorted(run.failures)}")

    summary_path = out / "deconvolution_summary.json"
    with open(summary_path, "w", encoding="utf-8") as f:
        json.dump({"s1_dir": str(Path(s1_dir).resolve()), "cohorts": summary}, f, indent=2)
    paths["deconvolution_summary"] = str(summary_path)
    print(f"[S2] Wrote {paths['predictions']}")
    return paths


__all__ = ["DeconvolutionRun", "run_methods", "write_run", "s2_deconvolute"]
