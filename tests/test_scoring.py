import numpy as np
import pandas as pd
import pytest
from scipy import stats

from deconv_benchmark.s3.scoring import (
    absolute_metrics,
    correlation_table,
    correlations,
    detection_limit,
    join_with_gold_standard,
    pearson_with_ci,
    score_benchmark,
    slope_with_ci,
    spillover_matrix,
    true_type_of_pure_samples,
)

SAMPLES = ["s1", "s2", "s3", "s4", "s5"]
TRUE = {"A": [0.1, 0.2, 0.3, 0.4, 0.5], "B": [0.5, 0.3, 0.4, 0.1, 0.2]}


def _gold():
    return pd.DataFrame(
        [(s, ct, v[i]) for ct, v in TRUE.items() for i, s in enumerate(SAMPLES)],
        columns=["sample", "cell_type", "true_fraction"],
    )


def _pred(method, fn):
    return pd.DataFrame(
        [(method, s, ct, fn(v[i]), False) for ct, v in TRUE.items() for i, s in enumerate(SAMPLES)],
        columns=["method", "sample", "cell_type", "estimate", "substitute"],
    )


def test_join_drops_only_the_missing_pair():
    pred = pd.concat([_pred("m1", lambda x: x), _pred("m2", lambda x: 2 * x)], ignore_index=True)
    gold = _gold()
    gold = gold[~((gold["sample"] == "s2") & (gold["cell_type"] == "B"))]
    scored = join_with_gold_standard(pred, gold)
    assert set(scored["method"]) == {"m1", "m2"}
    assert (scored["method"] == "m1").sum() == 9
    assert not ((scored["sample"] == "s2") & (scored["cell_type"] == "B")).any()
    assert list(scored.columns) == ["method", "sample", "cell_type", "estimate", "true_fraction", "substitute"]


def test_join_excludes_missing_estimates():
    pred = _pred("m1", lambda x: x)
    pred.loc[0, "estimate"] = np.nan
    scored = join_with_gold_standard(pred, _gold())
    assert len(scored) == 9


def test_pearson_with_ci_matches_fisher_z():
    x = np.array([0.1, 0.2, 0.3, 0.4, 0.5, 0.6])
    y = np.array([0.15, 0.1, 0.35, 0.3, 0.6, 0.5])
    res = pearson_with_ci(x, y)
    r = stats.pearsonr(x, y)[0]
    half = 1.959963984540054 / np.sqrt(len(x) - 3)
    assert res["pearson_r"] == pytest.approx(r)
    assert res["ci_low"] == pytest.approx(np.tanh(np.arctanh(r) - half))
    assert res["ci_high"] == pytest.approx(np.tanh(np.arctanh(r) + half))
    assert res["ci_low"] < res["pearson_r"] < res["ci_high"]


def test_pearson_undefined_cases():
    assert np.isnan(pearson_with_ci([0.1, 0.2], [0.3, 0.4])["pearson_r"])
    assert np.isnan(pearson_with_ci([0.1, 0.2, 0.3], [0.5, 0.5, 0.5])["pearson_r"])


def test_correlations_and_table():
    pred = pd.concat([_pred("m1", lambda x: x), _pred("m2", lambda x: 0.3)], ignore_index=True)
    scored = join_with_gold_standard(pred, _gold())
    corr = correlations(scored)
    m1 = corr[corr["method"] == "m1"].set_index("cell_type")
    assert m1.loc["A", "pearson_r"] == pytest.approx(1.0)
    assert corr[corr["method"] == "m2"]["pearson_r"].isna().all()

    table = correlation_table(corr, methods=["m1", "m2", "failed"])
    assert list(table.columns) == ["method", "A", "B"]
    assert list(table["method"]) == ["m1", "m2", "failed"]
    assert table.set_index("method").loc["failed"].isna().all()


def test_slope_and_rmse():
    x = np.array([0.1, 0.2, 0.3, 0.4])
    res = slope_with_ci(x, 2 * x + 0.1)
    assert res["slope"] == pytest.approx(2.0)
    assert res["intercept"] == pytest.approx(0.1)
    assert res["slope_ci_low"] == pytest.approx(2.0)

    noisy = slope_with_ci(x, np.array([0.12, 0.18, 0.33, 0.39]))
    assert noisy["slope_ci_low"] < noisy["slope"] < noisy["slope_ci_high"]
    assert slope_with_ci(x, x + 0.1)["rmse"] == pytest.approx(0.1)


def test_absolute_metrics_only_for_absolute_methods():
    pred = pd.concat([_pred("abs", lambda x: x + 0.05), _pred("rel", lambda x: 10 * x)], ignore_index=True)
    scored = join_with_gold_standard(pred, _gold())
    metrics = absolute_metrics(scored, ["abs"])
    assert set(metrics["method"]) == {"abs"}
    assert set(metrics["cell_type"]) == {"A", "B", "all"}
    pooled = metrics[metrics["cell_type"] == "all"].iloc[0]
    assert pooled["n"] == 10
    assert pooled["rmse"] == pytest.approx(0.05)
    assert pooled["slope"] == pytest.approx(1.0)


def test_spillover_matrix():
    gold = pd.DataFrame(
        [("p1", "A", 1.0), ("p1", "B", 0.0), ("p2", "A", 0.0), ("p2", "B", 1.0)],
        columns=["sample", "cell_type", "true_fraction"],
    )
    true_type = true_type_of_pure_samples(gold)
    assert true_type.to_dict() == {"p1": "A", "p2": "B"}
    pred = pd.DataFrame(
        [("m", "p1", "A", 0.8), ("m", "p1", "B", 0.2), ("m", "p2", "A", 0.1), ("m", "p2", "B", 0.3)],
        columns=["method", "sample", "cell_type", "estimate"],
    )
    mat = spillover_matrix(pred, true_type).set_index(["true_cell_type", "cell_type"])
    assert mat.loc[("A", "A"), "fraction"] == pytest.approx(0.8)
    assert mat.loc[("B", "A"), "fraction"] == pytest.approx(0.25)


def test_detection_limit():
    design, rows = [], []
    for spike, base in ((0.0, 0.001), (0.1, 0.1), (0.5, 0.5)):
        for r in range(4):
            name = f"dl_{spike}_{r}"
            design.append({"sample": name, "cell_type": "A", "spike_fraction": spike, "replicate": r})
            rows.append(("m", name, "A", base + 0.001 * r))
    res = detection_limit(pd.DataFrame(rows, columns=["method", "sample", "cell_type", "estimate"]),
                          pd.DataFrame(design))
    row = res.iloc[0]
    assert row["detection_limit"] == pytest.approx(0.1)
    assert row["n_background"] == 4
    assert row["p_value"] < 0.05


def test_score_benchmark_record():
    pred = pd.concat([_pred("abs", lambda x: x), _pred("rel", lambda x: 3 * x)], ignore_index=True)
    result = score_benchmark(pred, _gold(), absolute_methods=["abs"], failures={"broken": "boom"})
    assert result.methods == ["abs", "broken", "rel"]
    assert result.cell_types == ["A", "B"]
    assert result.absolute_methods == ["abs"]
    summary = result.summary()
    assert summary["failed_methods"] == {"broken": "boom"}
    assert summary["best_method_per_cell_type"]["A"]["pearson_r"] == pytest.approx(1.0)
    assert result.spillover is None and result.detection_limit is None


def test_table_keeps_gold_cell_types_no_method_estimated():
    pred = _pred("m1", lambda x: x)
    pred = pred[pred["cell_type"] == "A"]
    result = score_benchmark(pred, _gold(), absolute_methods=[])
    assert result.cell_types == ["A", "B"]
    assert list(result.correlation_table.columns) == ["method", "A", "B"]
    row = result.correlation_table.set_index("method").loc["m1"]
    assert row["A"] == pytest.approx(1.0)
    assert pd.isna(row["B"])


def test_table_when_every_method_failed():
    empty = pd.DataFrame(columns=["method", "sample", "cell_type", "estimate", "substitute"])
    result = score_benchmark(empty, _gold(), failures={"m1": "boom", "m2:ov": "boom"})
    assert result.methods == ["m1", "m2"]
    assert result.cell_types == ["A", "B"]
    table = result.correlation_table
    assert list(table.columns) == ["method", "A", "B"]
    assert list(table["method"]) == ["m1", "m2"]
    assert table.set_index("method").isna().all().all()
    assert result.scored.empty and result.absolute.empty


def test_figures_for_all_failed_run(tmp_path):
    from deconv_benchmark.s3.plots import make_default_panel

    empty = pd.DataFrame(columns=["method", "sample", "cell_type", "estimate", "substitute"])
    result = score_benchmark(empty, _gold(), failures={"m1": "boom"})
    files = make_default_panel(result, str(tmp_path))
    assert set(files) == {"scatter_grid", "correlation_heatmap"}
    assert (tmp_path / "correlation_heatmap.jpg").exists()
