import numpy as np
import pandas as pd
import pytest

from deconv_benchmark.errors import InputFormatError, MethodError, UnknownMethodError
from deconv_benchmark.s2.deconv import run_methods
from deconv_benchmark.s2.methods import METHODS, absolute_methods, deconvolute, get_method, register_method
from deconv_benchmark.s2.signatures import SignatureSet

GENES = [f"G{i}" for i in range(6)]
TYPES = ["B cell", "T cell CD8+"]


@pytest.fixture
def signature():
    profiles = pd.DataFrame(
        {"B cell": [10, 8, 6, 0, 1, 0], "T cell CD8+": [0, 1, 0, 9, 7, 12]},
        index=GENES, dtype=float,
    )
    mrna = pd.Series({"B cell": 1.0, "T cell CD8+": 1.0})
    markers = {"B cell": ["G0", "G1", "G2"], "T cell CD8+": ["G3", "G4", "G5"]}
    return SignatureSet(profiles, mrna, markers)


@pytest.fixture
def expression(signature):
    truth = pd.DataFrame({"s1": [0.2, 0.8], "s2": [0.7, 0.3], "s3": [0.5, 0.5]}, index=TYPES)
    return signature.profiles.to_numpy() @ truth.to_numpy(), truth


@pytest.fixture
def temp_methods():
    added = []

    def add(name, fn, **kw):
        register_method(name, **kw)(fn)
        added.append(name)

    yield add
    for name in added:
        METHODS.pop(name, None)


def _bulk(expression):
    values, truth = expression
    return pd.DataFrame(values, index=GENES, columns=truth.columns)


def test_registry_contents():
    for name in ("nnls", "marker_mean", "quantiseq", "epic", "mcp_counter", "xcell", "timer", "cibersort"):
        assert name in METHODS
    assert get_method("nnls").absolute
    assert not get_method("mcp_counter").absolute
    assert get_method("timer").indication_aware
    assert set(absolute_methods(["nnls", "marker_mean", "quantiseq"])) == {"nnls", "quantiseq"}


def test_unknown_method():
    with pytest.raises(UnknownMethodError):
        get_method("does_not_exist")
    with pytest.raises(KeyError):
        get_method("does_not_exist")


def test_nnls_recovers_mixture(signature, expression):
    est = deconvolute(_bulk(expression), "nnls", scale_mrna=False, signature=signature)
    _, truth = expression
    np.testing.assert_allclose(est.loc[TYPES, truth.columns].to_numpy(), truth.to_numpy(), atol=1e-6)
    assert est.index.name == "method_cell_type"


def test_marker_mean_ranks_samples(signature, expression):
    est = deconvolute(_bulk(expression), "marker_mean", signature=signature)
    assert est.loc["B cell", "s2"] > est.loc["B cell", "s1"]
    assert est.loc["T cell CD8+", "s1"] > est.loc["T cell CD8+", "s2"]


def test_signature_required(expression):
    with pytest.raises(MethodError):
        deconvolute(_bulk(expression), "nnls", signature=None)


def test_gene_column_is_accepted(signature, expression):
    bulk = _bulk(expression).rename_axis("gene_symbol").reset_index()
    est = deconvolute(bulk, "nnls", column="gene_symbol", scale_mrna=False, signature=signature)
    assert list(est.columns) == ["s1", "s2", "s3"]


def test_failing_method_is_isolated(signature, expression, temp_methods):
    def boom(expression, **kw):
        raise RuntimeError("simulated crash")

    temp_methods("always_fails", boom)
    run = run_methods(_bulk(expression), ["nnls", "always_fails"], signature=signature,
                      expected_cell_types=TYPES, n_jobs=2)
    assert "always_fails" in run.failures
    assert "simulated crash" in run.failures["always_fails"]
    assert set(run.predictions["method"]) == {"nnls"}
    assert run.succeeded == ["nnls"]
    assert set(run.predictions["cell_type"]) == set(TYPES)


def test_empty_output_is_a_failure(expression, temp_methods):
    temp_methods("returns_nothing", lambda expression, **kw: pd.DataFrame())
    run = run_methods(_bulk(expression), ["returns_nothing"])
    assert "returns_nothing" in run.failures
    assert run.predictions.empty


def test_indication_aware_runs_per_indication(expression, temp_methods):
    def picky(expression, *, indications, **kw):
        if set(indications) == {"ov"}:
            raise MethodError("picky", "no signature for ov")
        return pd.DataFrame(0.5, index=TYPES, columns=expression.columns)

    temp_methods("picky", picky, indication_aware=True)
    ind = pd.Series({"s1": "skcm", "s2": "skcm", "s3": "ov"})
    run = run_methods(_bulk(expression), ["picky"], indications=ind, n_jobs=1)
    assert list(run.failures) == ["picky:ov"]
    assert set(run.predictions["sample"]) == {"s1", "s2"}


def test_run_methods_rejects_unknown(expression):
    with pytest.raises(UnknownMethodError):
        run_methods(_bulk(expression), ["nnls", "nope"])


def test_bulk_fixture_carries_values(expression):
    bulk = _bulk(expression)
    assert not bulk.isna().any().any()
    assert (bulk.sum(axis=0) > 0).all()


def test_nnls_rejects_silent_sample(signature, expression):
    bulk = _bulk(expression)
    bulk["s2"] = 0.0
    with pytest.raises(MethodError, match="s2"):
        deconvolute(bulk, "nnls", scale_mrna=False, signature=signature)


def test_non_numeric_sample_is_rejected(signature, expression):
    bulk = _bulk(expression).astype(object)
    bulk["s3"] = "n/a"
    with pytest.raises(InputFormatError, match="s3"):
        deconvolute(bulk, "nnls", scale_mrna=False, signature=signature)


def test_zero_fit_is_reported_as_failure(signature, expression):
    bulk = _bulk(expression)
    bulk["s1"] = 0.0
    run = run_methods(bulk, ["nnls"], signature=signature, n_jobs=1)
    assert "nnls" in run.failures
    assert run.predictions.empty


def test_each_run_gets_its_own_log_dir(tmp_path, expression, temp_methods):
    seen = {}

    def logging_method(expression, *, indications, log_dir, **kw):
        seen[tuple(sorted(set(indications)))] = log_dir
        return pd.DataFrame(0.5, index=TYPES, columns=expression.columns)

    temp_methods("logs_to_disk", logging_method, indication_aware=True)
    ind = pd.Series({"s1": "skcm", "s2": "skcm", "s3": "ov"})
    run_methods(_bulk(expression), ["logs_to_disk"], indications=ind, n_jobs=2,
                log_dir=str(tmp_path), log_prefix="spillover_")
    assert seen[("skcm",)] == str(tmp_path / "spillover_logs_to_disk_skcm")
    assert seen[("ov",)] == str(tmp_path / "spillover_logs_to_disk_ov")


def test_log_dir_defaults_to_none(expression, temp_methods):
    seen = []
    temp_methods("no_logs", lambda expression, *, log_dir, **kw: seen.append(log_dir)
                 or pd.DataFrame(0.5, index=TYPES, columns=expression.columns))
    run_methods(_bulk(expression), ["no_logs"], n_jobs=1)
    assert seen == [None]
