# src/deconv_benchmark/cli.py
from __future__ import annotations

import argparse
import logging
import sys

from .config import USER_DEFAULTS, resolve_paths
from .errors import BenchmarkError
from .utils import timestamped_run_root


def _D(key: str, fallback):
    """pull from USER_DEFAULTS with a safe fallback"""
    return USER_DEFAULTS.get(key, fallback)


def _parse_args(argv=None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        "deconv-benchmark",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        description="Benchmark immune-cell deconvolution methods: simulate (S1) → deconvolute (S2) → score (S3).",
    )

    # ---------- Inputs ----------
    ap.add_argument("--reference",     default=_D("reference", ""),
                    help=".h5ad file, folder of .h5ad files, or genes×cells TSV")
    ap.add_argument("--annotations",   default=_D("annotations", ""), help="cells×fields TSV for a TSV reference")
    ap.add_argument("--bulk",          default=_D("bulk", ""), help="Real bulk matrix (skips the S1 cohort in S2)")
    ap.add_argument("--bulk_gene_col", default=_D("bulk_gene_col", ""))
    ap.add_argument("--gold_standard", default=_D("gold_standard", ""))
    ap.add_argument("--indications",   default=_D("indications", ""))
    ap.add_argument("--mapping",       default=_D("mapping", ""))

    # ---------- Outputs ----------
    ap.add_argument("--s1_outdir", default=_D("s1_outdir", ""))
    ap.add_argument("--s2_outdir", default=_D("s2_outdir", ""))
    ap.add_argument("--s3_outdir", default=_D("s3_outdir", ""))

    # ---------- Taxonomy ----------
    ap.add_argument("--cancer_types", nargs="*", default=_D("cancer_types", []))
    ap.add_argument("--immune_types", nargs="*", default=_D("immune_types", []))
    ap.add_argument("--other_types",  nargs="*", default=_D("other_types", []))
    ap.add_argument("--indication_codes", nargs="*", default=_D("indication_codes", []),
                    help="Cancer type to TCGA indication code, e.g. 'Melanoma cell=skcm'")
    ap.add_argument("--sample_key",    default=_D("sample_key", "sample"))
    ap.add_argument("--cell_type_key", default=_D("cell_type_key", "cell_type"))

    # ---------- Tissue filter ----------
    ap.add_argument("--tissue_include",    nargs="*", default=_D("tissue_include", []))
    ap.add_argument("--tissue_keys",       nargs="*", default=_D("tissue_keys", ["tissue"]))
    ap.add_argument("--tissue_match_mode", default=_D("tissue_match_mode", "exact"),
                    choices=["exact", "substring"])

    # ---------- S1 simulation (strings on purpose; drivers normalize) ----------
    ap.add_argument("--n_samples",       default=_D("n_samples", "100"))
    ap.add_argument("--n_cells",         default=_D("n_cells", "500"))
    ap.add_argument("--seed",            default=_D("seed", "42"))
    ap.add_argument("--variant",         default=_D("variant", "benchmark"), choices=["benchmark", "capped"])
    ap.add_argument("--cap",             default=_D("cap", ""))
    ap.add_argument("--atol",            default=_D("atol", ""))
    ap.add_argument("--mu",              default=_D("mu", ""))
    ap.add_argument("--sigma",           default=_D("sigma", ""))
    ap.add_argument("--spillover",       default=_D("spillover", "false"))
    ap.add_argument("--detection_limit", default=_D("detection_limit", "false"))
    ap.add_argument("--n_replicates",    default=_D("n_replicates", "5"))

    # ---------- S2 deconvolution ----------
    ap.add_argument("--methods", nargs="+", default=_D("methods", ["nnls"]))
    ap.add_argument("--scale_mrna",         default=_D("scale_mrna", "false"))
    ap.add_argument("--tumor",              default=_D("tumor", "true"))
    ap.add_argument("--top_markers_per_ct", default=_D("top_markers_per_ct", "25"))
    ap.add_argument("--n_jobs",             default=_D("n_jobs", ""))
    ap.add_argument("--r_timeout",          default=_D("r_timeout", ""))

    # ---------- S3 scoring ----------
    ap.add_argument("--absolute_methods", nargs="*", default=_D("absolute_methods", []))
    ap.add_argument("--plots",    default=_D("plots", "true"))
    ap.add_argument("--ci_level", default=_D("ci_level", "0.95"))

    # ---------- Orchestration toggles ----------
    ap.add_argument("--skip_s1", action="store_true", help="Skip S1")
    ap.add_argument("--skip_s2", action="store_true", help="Skip S2")
    ap.add_argument("--skip_s3", action="store_true", help="Skip S3")
    ap.add_argument("--verbose", action="store_true", help="DEBUG logging")

    return ap.parse_args(argv)


def main(argv=None) -> None:
    a = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if a.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    # --- resolve paths ---
    paths = resolve_paths(a)
    reference_abs = paths["reference"]
    bulk_abs      = paths["bulk"]

    if not a.skip_s1 and not reference_abs:
        raise SystemExit("Single-cell reference required for S1 (--reference).")

    out_s1, out_s2, out_s3 = paths["s1_outdir"], paths["s2_outdir"], paths["s3_outdir"]

    if not (out_s1 and out_s2 and out_s3):
        rr = timestamped_run_root()
        out_s1 = out_s1 or f"{rr}/s1"
        out_s2 = out_s2 or f"{rr}/s2"
        out_s3 = out_s3 or f"{rr}/s3"

    from .drivers import run_s1, run_s2, run_s3

    expected = list(a.cancer_types) + list(a.immune_types) + list(a.other_types) if a.immune_types else None

    try:
        # --- S1 ---
        if not a.skip_s1:
            run_s1(
                reference=reference_abs,
                out_s1=out_s1,
                annotations=paths["annotations"],
                cancer_types=a.cancer_types,
                immune_types=a.immune_types,
                other_types=a.other_types,
                indication_codes=a.indication_codes,
                tissue_include=a.tissue_include,
                tissue_keys=a.tissue_keys,
                tissue_match_mode=a.tissue_match_mode,
                n_samples=a.n_samples,
                n_cells=a.n_cells,
                seed=a.seed,
                variant=a.variant,
                cap=a.cap,
                atol=a.atol,
                mu=a.mu,
                sigma=a.sigma,
                sample_key=a.sample_key,
                cell_type_key=a.cell_type_key,
                spillover=a.spillover,
                detection_limit=a.detection_limit,
                n_replicates=a.n_replicates,
            )
        else:
            print("[CLI] Skipping S1")

        # --- S2 ---
        if not a.skip_s2:
            run_s2(
                out_s1=out_s1,
                out_s2=out_s2,
                methods=a.methods,
                reference=reference_abs,
                annotations=paths["annotations"],
                cell_type_key=a.cell_type_key,
                bulk=bulk_abs,
                bulk_gene_col=a.bulk_gene_col,
                indications=paths["indications"],
                mapping=paths["mapping"],
                scale_mrna=a.scale_mrna,
                tumor=a.tumor,
                expected_cell_types=expected,
                top_markers_per_ct=a.top_markers_per_ct,
                n_jobs=a.n_jobs,
                r_timeout=a.r_timeout,
            )
        else:
            print("[CLI] Skipping S2")

        # --- S3 ---
        if not a.skip_s3:
            run_s3(
                out_s1=out_s1,
                out_s2=out_s2,
                out_s3=out_s3,
                gold_standard=paths["gold_standard"],
                methods=a.methods,
                absolute_methods=a.absolute_methods,
                plots=a.plots,
                ci_level=a.ci_level,
            )
        else:
            print("[CLI] Skipping S3")
    except (BenchmarkError, FileNotFoundError) as e:
        raise SystemExit(f"[CLI] {type(e).__name__}: {e}")


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.exit(130)
