import json
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from deconv_benchmark.s1.run import build_taxonomy, s1_simulate, simulate_cohort
from deconv_benchmark.s1.io import read_indications
from deconv_benchmark.s2.deconv import run_methods, s2_deconvolute
from deconv_benchmark.s2.methods import METHODS, register_method
from deconv_benchmark.s3.run import run_s3

CANCER = ["Melanoma cell"]


def test_two_immune_one_cancer_is_reproducible(reference):
    tax = build_taxonomy(reference, CANCER)
    assert tax.immune == ("B cell", "T cell CD8+")

    a = simulate_cohort(reference, tax, n_samples=10, n_cells=500, seed=42)
    b = simulate_cohort(reference, tax, n_samples=10, n_cells=500, seed=42)
    pd.testing.assert_frame_equal(a.fractions, b.fractions)
    pd.testing.assert_frame_equal(a.expression, b.expression)

    fr = a.fractions
    assert fr.shape == (10, 3)
    assert (fr.to_numpy() >= 0).all()
    np.testing.assert_allclose(fr.sum(axis=1), 1.0, atol=1e-4)
    np.testing.assert_allclose(a.expression.sum(axis=0), 1e6)
    assert (a.indications == "skcm").all()
    assert (a.cancer_type == "Melanoma cell").all()
    assert set(a.gold_standard.columns) == {"sample", "cell_type", "true_fraction"}


def test_seed_42_fractions_follow_documented_draw_order(reference):
    tax = build_taxonomy(reference, CANCER)
    cohort = simulate_cohort(reference, tax, n_samples=10, n_cells=500, seed=42, mu=0.3, sigma=0.1)

    # fraction stream: first child of SeedSequence(42); per sample one Normal
    # draw, then one integer weight in [1, 100] per non-cancer type
    rng = np.random.default_rng(np.random.SeedSequence(42).spawn(3)[0])
    expected = []
    for _ in range(10):
        c = min(max(rng.normal(0.3, 0.1), 0.0), 1.0)
        w = rng.integers(1, 100, size=2, endpoint=True).astype(float)
        expected.append([c, *((1.0 - c) * w / w.sum())])

    fr = cohort.fractions
    assert list(fr.columns) == ["Melanoma cell", "B cell", "T cell CD8+"]
    assert list(fr.index) == [f"sim_{i:03d}" for i in range(1, 11)]
    np.testing.assert_allclose(fr.to_numpy(), np.array(expected), rtol=0, atol=1e-12)
    np.testing.assert_allclose(fr.iloc[[0, -1]].to_numpy(), np.array(expected)[[0, -1]], rtol=0, atol=1e-12)


def test_unrequested_cancer_cells_are_not_immune(reference):
    ref = reference.copy()
    labels = ref.obs["cell_type"].astype(str).to_numpy()
    labels[np.flatnonzero(labels == "B cell")[:5]] = "Ovarian carcinoma cell"
    ref.obs["cell_type"] = labels
    tax = build_taxonomy(ref, CANCER)
    assert tax.immune == ("B cell", "T cell CD8+")
    assert "Ovarian carcinoma cell" not in tax.all_types


def test_indications_file_carries_indication_codes(tmp_path, reference_h5ad):
    s1 = str(tmp_path / "s1")
    paths, summary = s1_simulate(reference=reference_h5ad, outdir=s1, cancer_types=CANCER,
                                 n_samples=6, n_cells=100, seed=42)
    written = pd.read_csv(paths["indications"], sep="\t")
    assert list(written.columns) == ["sample", "indication", "cancer_type"]
    assert set(written["indication"]) == {"skcm"}
    assert set(written["cancer_type"]) == {"Melanoma cell"}
    assert summary["simulation"]["taxonomy"]["indication_codes"] == {"Melanoma cell": "skcm"}

    seen = []

    def records_indications(expression, *, indications, **kw):
        seen.extend(indications)
        return pd.DataFrame(0.5, index=["B cell"], columns=expression.columns)

    register_method("records_indications", indication_aware=True)(records_indications)
    try:
        expr = pd.read_csv(paths["bulk_expression"], sep="\t", index_col=0)
        run_methods(expr, ["records_indications"], indications=read_indications(paths["indications"]), n_jobs=1)
    finally:
        METHODS.pop("records_indications", None)
    assert seen and set(seen) == {"skcm"}


def test_indication_code_override(reference):
    tax = build_taxonomy(reference, CANCER, indication_codes={"Melanoma cell": "uvm"})
    c = simulate_cohort(reference, tax, n_samples=4, n_cells=50, seed=1, mu=0.3, sigma=0.1)
    assert (c.indications == "uvm").all()


def test_fixed_mu_sigma_skips_fit(reference):
    tax = build_taxonomy(reference, CANCER)
    c = simulate_cohort(reference, tax, n_samples=10, n_cells=100, seed=1, mu=0.3, sigma=0.0)
    np.testing.assert_allclose(c.fractions["Melanoma cell"], 0.3)
    assert c.params["cancer_fraction_mu"] == pytest.approx(0.3)


def test_pipeline_writes_benchmark_outputs(tmp_path, reference_h5ad):
    s1, s2, s3 = (str(tmp_path / d) for d in ("s1", "s2", "s3"))

    paths, summary = s1_simulate(
        reference=reference_h5ad, outdir=s1, cancer_types=CANCER,
        n_samples=10, n_cells=500, seed=42,
        tissue_include=["skin"], spillover=True, detection_limit=True, n_replicates=4,
    )
    assert Path(paths["gold_standard"]).exists()
    assert summary["simulation"]["seed"] == 42

    s2_paths = s2_deconvolute(s1_dir=s1, out_dir=s2, methods=["nnls", "marker_mean"],
                              reference=reference_h5ad, n_jobs=1)
    pred = pd.read_csv(s2_paths["predictions"], sep="\t")
    assert set(pred["method"]) == {"nnls", "marker_mean"}
    assert set(pred["cell_type"]) == {"B cell", "T cell CD8+", "Melanoma cell"}
    assert json.loads(Path(s2_paths["failures"]).read_text()) == {}

    result = run_s3(out_s1=s1, out_s2=s2, out_s3=s3, plots=True)
    corr = pd.read_csv(Path(s3) / "data" / "correlations.tsv", sep="\t")
    assert list(corr.columns) == ["method", "B cell", "Melanoma cell", "T cell CD8+"]
    assert set(corr["method"]) == {"nnls", "marker_mean"}
    # well separated signatures: nnls tracks the truth closely
    assert corr.set_index("method").loc["nnls"].min() > 0.8

    absolute = pd.read_csv(Path(s3) / "data" / "absolute_metrics.tsv", sep="\t")
    assert set(absolute["method"]) == {"nnls"}
    assert (Path(s3) / "data" / "spillover.tsv").exists()
    assert (Path(s3) / "data" / "detection_limit.tsv").exists()
    assert (Path(s3) / "reports" / "benchmark_report.md").exists()
    assert (Path(s3) / "plots" / "correlation_heatmap.pdf").exists()
    assert (Path(s3) / "plots" / "scatter_grid.jpg").exists()
    assert result["summary"]["n_methods"] == 2
