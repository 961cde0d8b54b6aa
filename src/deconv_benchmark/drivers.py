from __future__ import annotations

from typing import List, Optional, Sequence

from .taxonomy import parse_indication_codes
from .utils import as_bool


def _none_if_blank(v) -> Optional[str]:
    return None if v is None or str(v).strip().lower() in {"", "none"} else str(v)


def _opt_float(v) -> Optional[float]:
    v = _none_if_blank(v)
    return None if v is None else float(v)


def _opt_int(v) -> Optional[int]:
    v = _none_if_blank(v)
    return None if v is None else int(v)


def _list_or_none(v: Optional[Sequence[str]]) -> Optional[List[str]]:
    return list(v) if v else None


def run_s1(*, reference, out_s1, annotations, cancer_types, immune_types, other_types, indication_codes,
           tissue_include, tissue_keys, tissue_match_mode, n_samples, n_cells, seed, variant,
           cap, atol, mu, sigma, sample_key, cell_type_key, spillover, detection_limit, n_replicates):
    from .s1.run import s1_simulate  # import late
    return s1_simulate(
        reference=reference,
        outdir=out_s1,
        annotations=_none_if_blank(annotations),
        cancer_types=_list_or_none(cancer_types),
        immune_types=_list_or_none(immune_types),
        other_types=_list_or_none(other_types),
        indication_codes=parse_indication_codes(indication_codes),
        tissue_include=_list_or_none(tissue_include),
        tissue_keys=_list_or_none(tissue_keys),
        tissue_match_mode=tissue_match_mode,
        n_samples=int(n_samples),
        n_cells=int(n_cells),
        seed=int(seed),
        variant=variant,
        cap=_opt_float(cap),
        atol=_opt_float(atol),
        mu=_opt_float(mu),
        sigma=_opt_float(sigma),
        sample_key=sample_key,
        cell_type_key=cell_type_key,
        spillover=as_bool(spillover),
        detection_limit=as_bool(detection_limit),
        n_replicates=int(n_replicates),
    )


def run_s2(*, out_s1, out_s2, methods, reference, annotations, cell_type_key, bulk, bulk_gene_col,
           indications, mapping, scale_mrna, tumor, expected_cell_types, top_markers_per_ct, n_jobs, r_timeout):
    import os
    from .s2.deconv import s2_deconvolute  # import late
    from .s2.methods import R_TIMEOUT_ENV

    timeout = _opt_float(r_timeout)
    if timeout is not None:
        os.environ[R_TIMEOUT_ENV] = str(timeout)
    return s2_deconvolute(
        s1_dir=out_s1,
        out_dir=out_s2,
        methods=list(methods),
        reference=_none_if_blank(reference),
        annotations=_none_if_blank(annotations),
        cell_type_key=cell_type_key,
        bulk=_none_if_blank(bulk),
        bulk_gene_col=_none_if_blank(bulk_gene_col),
        indications_file=_none_if_blank(indications),
        mapping_file=_none_if_blank(mapping),
        scale_mrna=as_bool(scale_mrna),
        tumor=as_bool(tumor),
        expected_cell_types=_list_or_none(expected_cell_types),
        top_markers_per_ct=int(top_markers_per_ct),
        n_jobs=_opt_int(n_jobs),
    )


def run_s3(*, out_s1, out_s2, out_s3, gold_standard, methods, absolute_methods, plots, ci_level):
    from .s3.run import run_s3 as _run_s3  # import late
    return _run_s3(
        out_s1=out_s1,
        out_s2=out_s2,
        out_s3=out_s3,
        gold_standard=_none_if_blank(gold_standard),
        methods=_list_or_none(methods),
        absolute_methods=_list_or_none(absolute_methods),
        plots=as_bool(plots),
        ci_level=float(ci_level),
    )
