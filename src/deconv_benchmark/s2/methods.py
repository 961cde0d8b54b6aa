#!/usr/bin/env python3
"""
S2 (deconvolution) — Method registry

Every deconvolution method is a plain function with one fixed signature:

    fn(expression, *, column, indications, scale_mrna, tumor,
       expected_cell_types, signature, log_dir) -> DataFrame (cell types × samples)

registered under a string identifier in `METHODS`. `deconvolute()` looks the
method up and calls it. Built-in methods run in Python; the immunedeconv
methods are delegated to R through `Rscript`.
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from scipy.optimize import nnls

from ..errors import InputFormatError, MethodError, UnknownMethodError
from .signatures import SignatureSet, harmonize_genes, harmonize_index

logger = logging.getLogger(__name__)

MethodFn = Callable[..., pd.DataFrame]


@dataclass(frozen=True)
class MethodSpec:
    name: str
    fn: MethodFn
    absolute: bool = False            # estimates are cell fractions, comparable across cell types
    indication_aware: bool = False    # uses per-sample indication labels
    needs_signature: bool = False
    description: str = ""


METHODS: Dict[str, MethodSpec] = {}


def register_method(
    name: str,
    *,
    absolute: bool = False,
    indication_aware: bool = False,
    needs_signature: bool = False,
    description: str = "",
) -> Callable[[MethodFn], MethodFn]:
    """Decorator: add a function to the registry under `name`."""
    def wrap(fn: MethodFn) -> MethodFn:
        METHODS[name] = MethodSpec(name, fn, absolute, indication_aware, needs_signature, description)
        return fn
    return wrap


def get_method(name: str) -> MethodSpec:
    try:
        return METHODS[name]
    except KeyError:
        raise UnknownMethodError(f"Unknown deconvolution method '{name}'. Available: {sorted(METHODS)}") from None


def absolute_methods(names: Optional[Sequence[str]] = None) -> List[str]:
    names = list(names) if names is not None else list(METHODS)
    return [n for n in names if n in METHODS and METHODS[n].absolute]


def deconvolute(
    expression: pd.DataFrame,
    method: str,
    column: str = "gene_symbol",
    indications: Optional[pd.Series] = None,
    scale_mrna: bool = True,
    tumor: bool = True,
    expected_cell_types: Optional[Sequence[str]] = None,
    signature: Optional[SignatureSet] = None,
    log_dir: Optional[str] = None,
) -> pd.DataFrame:
    """
    Run one registered method on a genes × samples matrix.

    `column` names the gene-identifier column; if the matrix carries it as a
    regular column it becomes the index. `log_dir` receives console output of
    external tools. Returns cell types × samples.
    """
    spec = get_method(method)
    expr = _as_gene_indexed(expression, column)
    if spec.needs_signature and signature is None:
        raise MethodError(method, "requires a reference signature but none was given")

    out = spec.fn(
        expr,
        column=column,
        indications=indications,
        scale_mrna=scale_mrna,
        tumor=tumor,
        expected_cell_types=list(expected_cell_types) if expected_cell_types else None,
        signature=signature,
        log_dir=log_dir,
    )
    if not isinstance(out, pd.DataFrame) or out.empty:
        raise MethodError(method, "returned no estimates")
    out = out.apply(pd.to_numeric, errors="coerce")
    out.index = out.index.astype(str)
    out.columns = out.columns.astype(str)
    out.index.name = "method_cell_type"
    return out


def _as_gene_indexed(expression: pd.DataFrame, column: str) -> pd.DataFrame:
    if column in expression.columns:
        expression = expression.set_index(column)
    expr = expression.apply(pd.to_numeric, errors="coerce")
    empty = [str(c) for c in expr.columns if expr[c].isna().all()]
    if empty:
        raise InputFormatError(f"Samples without any numeric expression values: {empty[:5]}")
    expr = expr.fillna(0.0)
    expr.index = expr.index.astype(str)
    expr.columns = expr.columns.astype(str)
    return expr


# =====================================================================
# Built-in methods
# =====================================================================
@register_method(
    "nnls",
    absolute=True,
    needs_signature=True,
    description="Non-negative least squares against the reference mean profiles.",
)
def _nnls_method(
    expression: pd.DataFrame,
    *,
    column: str,
    indications: Optional[pd.Series],
    scale_mrna: bool,
    tumor: bool,
    expected_cell_types: Optional[List[str]],
    signature: SignatureSet,
    log_dir: Optional[str] = None,
) -> pd.DataFrame:
    sig = signature.subset(expected_cell_types)
    bulk, ref = harmonize_genes(expression, sig.profiles)
    A = ref.to_numpy(dtype=float)
    B = bulk.to_numpy(dtype=float)
    silent = [str(s) for s, col in zip(bulk.columns, B.T) if not np.any(col)]
    if silent:
        raise MethodError("nnls", f"no expression over signature genes in samples {silent[:5]}")
    coefs = np.zeros((A.shape[1], B.shape[1]))
    for j in range(B.shape[1]):
        coefs[:, j], _ = nnls(A, B[:, j])
    if not coefs.any(axis=0).all():
        bad = [str(s) for s, c in zip(bulk.columns, coefs.T) if not c.any()]
        raise MethodError("nnls", f"all coefficients are zero for samples {bad[:5]}")

    if scale_mrna:
        content = sig.mrna.reindex(ref.columns).to_numpy(dtype=float)
        content[~np.isfinite(content) | (content <= 0)] = 1.0
        coefs = coefs / (content[:, None] / content.mean())

    totals = coefs.sum(axis=0)
    return pd.DataFrame(coefs / totals, index=ref.columns, columns=bulk.columns)


@register_method(
    "marker_mean",
    absolute=False,
    needs_signature=True,
    description="Mean log2(TPM+1) of each cell type's marker genes (relative score).",
)
def _marker_mean_method(
    expression: pd.DataFrame,
    *,
    column: str,
    indications: Optional[pd.Series],
    scale_mrna: bool,
    tumor: bool,
    expected_cell_types: Optional[List[str]],
    signature: SignatureSet,
    log_dir: Optional[str] = None,
) -> pd.DataFrame:
    sig = signature.subset(expected_cell_types)
    bulk = expression.copy()
    bulk.index = harmonize_index(bulk.index)
    bulk = bulk[~bulk.index.duplicated(keep="first")]
    logx = np.log2(bulk.clip(lower=0) + 1.0)

    rows = {}
    for ct, genes in sig.markers.items():
        present = [g for g in genes if g in logx.index]
        if not present:
            logger.debug(f"marker_mean: no markers of '{ct}' in bulk; skipped")
            continue
        rows[ct] = logx.loc[present].mean(axis=0)
    if not rows:
        raise MethodError("marker_mean", "no marker genes overlap the bulk matrix")
    return pd.DataFrame(rows).T


# =====================================================================
# immunedeconv (R) methods
# =====================================================================
R_SCRIPT = Path(__file__).with_name("immunedeconv.R")
R_TIMEOUT_ENV = "DECONV_BENCHMARK_R_TIMEOUT"


def run_immunedeconv(
    expression: pd.DataFrame,
    method: str,
    *,
    column: str = "gene_symbol",
    indications: Optional[pd.Series] = None,
    scale_mrna: bool = True,
    tumor: bool = True,
    expected_cell_types: Optional[List[str]] = None,
    log_dir: Optional[str] = None,
    timeout: Optional[float] = None,
) -> pd.DataFrame:
    """
    Call `immunedeconv::deconvolute` through Rscript. Inputs and outputs are
    exchanged as TSV files; options travel as environment variables.
    """
    if not R_SCRIPT.exists():
        raise MethodError(method, f"missing R script: {R_SCRIPT}")
    if timeout is None and os.environ.get(R_TIMEOUT_ENV):
        timeout = float(os.environ[R_TIMEOUT_ENV])

    with tempfile.TemporaryDirectory(prefix=f"immunedeconv_{method}_") as tmp:
        tmp_path = Path(tmp)
        expr_file = tmp_path / "expression.tsv"
        out_file = tmp_path / "estimates.tsv"
        expr = expression.copy()
        expr.index.name = column
        expr.to_csv(expr_file, sep="\t")

        env = os.environ.copy()
        env.update({
            "EXPR_FILE_PY": str(expr_file),
            "OUT_FILE_PY": str(out_file),
            "METHOD_PY": method,
            "COLUMN_PY": column,
            "SCALE_MRNA_PY": "true" if scale_mrna else "false",
            "TUMOR_PY": "true" if tumor else "false",
        })
        if indications is not None:
            ind_file = tmp_path / "indications.tsv"
            indications.reindex(expr.columns).rename_axis("sample").to_frame("indication").to_csv(ind_file, sep="\t")
            env["INDICATIONS_FILE_PY"] = str(ind_file)
        if expected_cell_types:
            env["EXPECTED_CELL_TYPES_PY"] = "|".join(expected_cell_types)

        cmd = ["Rscript", str(R_SCRIPT)]
        logger.debug(f"Running: {' '.join(cmd)} (method={method})")
        try:
            result = subprocess.run(cmd, check=True, env=env, capture_output=True, text=True, timeout=timeout)
        except FileNotFoundError:
            raise MethodError(method, "Rscript not found on PATH. Install R and ensure 'Rscript' is available.")
        except subprocess.TimeoutExpired:
            raise MethodError(method, f"R call exceeded timeout of {timeout}s")
        except subprocess.CalledProcessError as e:
            _save_r_logs(log_dir, method, e.stdout, e.stderr)
            tail = "\n".join((e.stderr or "").splitlines()[-20:])
            raise MethodError(method, f"R step failed (exit {e.returncode}):\n{tail}")
        _save_r_logs(log_dir, method, result.stdout, result.stderr)

        if not out_file.exists():
            raise MethodError(method, f"R finished but wrote no output: {out_file}")
        est = pd.read_csv(out_file, sep="\t", index_col=0)
    return est


def _save_r_logs(log_dir: Optional[str], method: str, stdout: Optional[str], stderr: Optional[str]) -> None:
    if not log_dir:
        return
    os.makedirs(log_dir, exist_ok=True)
    Path(log_dir, f"{method}_R_console.log").write_text(stdout or "")
    Path(log_dir, f"{method}_R_stderr.log").write_text(stderr or "")


def _register_r_method(name: str, *, absolute: bool, indication_aware: bool = False, description: str = "") -> None:
    def fn(expression, *, column, indications, scale_mrna, tumor, expected_cell_types, signature, log_dir=None):
        return run_immunedeconv(
            expression, name,
            column=column,
            indications=indications if indication_aware else None,
            scale_mrna=scale_mrna,
            tumor=tumor,
            expected_cell_types=expected_cell_types,
            log_dir=log_dir,
        )
    fn.__name__ = f"_{name}_method"
    register_method(name, absolute=absolute, indication_aware=indication_aware, description=description)(fn)


_register_r_method("quantiseq", absolute=True, description="quanTIseq (immunedeconv)")
_register_r_method("epic", absolute=True, description="EPIC (immunedeconv)")
_register_r_method("cibersort_abs", absolute=False, description="CIBERSORT absolute mode (immunedeconv)")
_register_r_method("cibersort", absolute=False, description="CIBERSORT (immunedeconv)")
_register_r_method("mcp_counter", absolute=False, description="MCP-counter (immunedeconv)")
_register_r_method("xcell", absolute=False, description="xCell (immunedeconv)")
_register_r_method("timer", absolute=False, indication_aware=True, description="TIMER (immunedeconv)")


__all__ = [
    "MethodSpec",
    "METHODS",
    "register_method",
    "get_method",
    "absolute_methods",
    "deconvolute",
    "run_immunedeconv",
]
