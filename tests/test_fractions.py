import numpy as np
import pandas as pd
import pytest

from deconv_benchmark.errors import FractionSumError, InputFormatError
from deconv_benchmark.s1.fractions import (
    SIMULATION_VARIANTS,
    assign_cancer_types,
    cancer_fraction_per_sample,
    clamp_fraction,
    distribute_remaining,
    fit_cancer_fraction,
    fractions_to_long,
    get_variant,
    make_fractions,
    validate_fractions,
)
from deconv_benchmark.taxonomy import Taxonomy, parse_indication_codes

TAX = Taxonomy.from_lists(
    ["Melanoma cell", "Ovarian carcinoma cell"],
    ["B cell", "T cell CD8+", "NK cell"],
    ["Endothelial cell"],
)


def _fractions(seed, n=100, **kw):
    return make_fractions(n, TAX, mu=0.5, sigma=0.3, rng=np.random.default_rng(seed), **kw)


def test_fraction_vectors_are_valid():
    fr, _ = _fractions(1)
    assert (fr.to_numpy() >= 0).all()
    np.testing.assert_allclose(fr.sum(axis=1), 1.0, atol=1e-4)
    validate_fractions(fr)
    assert list(fr.columns) == list(TAX.cancer) + list(TAX.non_cancer)
    assert fr.index[0] == "sim_001" and fr.index[-1] == "sim_100"


def test_same_seed_same_fractions():
    a, ia = _fractions(7)
    b, ib = _fractions(7)
    pd.testing.assert_frame_equal(a, b)
    pd.testing.assert_series_equal(ia, ib)
    c, _ = _fractions(8)
    assert not np.allclose(a.to_numpy(), c.to_numpy())


@pytest.mark.parametrize(
    "x,cap,expected",
    [(-1.0, 1.0, 0.0), (0.0, 1.0, 0.0), (1.0, 1.0, 1.0), (2.0, 1.0, 1.0),
     (0.99, 0.99, 0.99), (1.99, 0.99, 0.99), (0.5, 0.99, 0.5),
     (0.98, 0.99, 0.98), (0.99, 1.0, 0.99), (1.01, 1.0, 1.0), (-0.01, 0.99, 0.0)],
)
def test_clamp_fraction(x, cap, expected):
    assert clamp_fraction(x, cap) == pytest.approx(expected)


def test_clamp_rejects_bad_cap():
    with pytest.raises(ValueError):
        clamp_fraction(0.5, cap=1.5)


def test_block_assignment_100_samples():
    labels = assign_cancer_types(100, ["A", "B"])
    assert labels[:50] == ["A"] * 50
    assert labels[50:] == ["B"] * 50

    fr, ind = _fractions(3)
    first, last = fr.iloc[:50], fr.iloc[50:]
    assert (first["Ovarian carcinoma cell"] == 0).all()
    assert (last["Melanoma cell"] == 0).all()
    assert (ind.iloc[:50] == "Melanoma cell").all()


def test_block_assignment_odd():
    labels = assign_cancer_types(5, ["A", "B"])
    assert labels == ["A", "A", "B", "B", "B"]


def test_cap_variant_bounds_cancer_share():
    fr, _ = make_fractions(200, TAX, mu=1.5, sigma=0.01, rng=np.random.default_rng(0),
                           cap=SIMULATION_VARIANTS["capped"].cap)
    cancer = fr[list(TAX.cancer)].sum(axis=1)
    assert cancer.max() == pytest.approx(0.99)
    validate_fractions(fr, atol=SIMULATION_VARIANTS["capped"].atol)


def test_get_variant_unknown():
    assert get_variant("benchmark").cap == 1.0
    with pytest.raises(ValueError):
        get_variant("nope")


def test_distribute_remaining():
    rng = np.random.default_rng(0)
    parts = distribute_remaining(0.4, 4, rng)
    assert parts.shape == (4,)
    assert parts.sum() == pytest.approx(0.4)
    assert (parts > 0).all()
    assert distribute_remaining(0.4, 0, rng).size == 0


def test_validate_fractions_rejects_bad_rows():
    bad_sum = pd.DataFrame({"a": [0.5], "b": [0.4]})
    with pytest.raises(FractionSumError):
        validate_fractions(bad_sum)
    negative = pd.DataFrame({"a": [1.2], "b": [-0.2]})
    with pytest.raises(FractionSumError):
        validate_fractions(negative)


def test_fit_cancer_fraction_mle():
    mu, sigma = fit_cancer_fraction([0.2, 0.4])
    assert mu == pytest.approx(0.3)
    assert sigma == pytest.approx(0.1)


def test_cancer_fraction_per_sample(reference):
    tax = Taxonomy.from_lists(["Melanoma cell"], ["B cell", "T cell CD8+"])
    props = cancer_fraction_per_sample(reference, tax)
    assert props["p1"] == pytest.approx(10 / 40)
    assert props["p3"] == pytest.approx(30 / 50)


def test_fractions_to_long():
    fr, _ = _fractions(0, n=3)
    long = fractions_to_long(fr)
    assert list(long.columns) == ["sample", "cell_type", "true_fraction"]
    assert len(long) == 3 * fr.shape[1]


def test_taxonomy_is_hashable():
    a = Taxonomy.from_lists(["Melanoma cell"], ["B cell"])
    b = Taxonomy.from_lists(["Melanoma cell"], ["B cell"])
    assert hash(a) == hash(b)
    assert hash(Taxonomy()) == hash(Taxonomy())


def test_indication_codes():
    tax = Taxonomy.from_lists(["Melanoma cell", "Glioma cell"], ["B cell"],
                              indication_codes={"Melanoma cell": "uvm"})
    assert tax.indication_of("Melanoma cell") == "uvm"
    assert tax.indication_of("Ovarian carcinoma cell") == "ov"
    assert tax.indication_of("Glioma cell") == "glioma cell"
    assert parse_indication_codes(["Glioma cell=GBM", "Melanoma cell = skcm"]) == {
        "Glioma cell": "gbm", "Melanoma cell": "skcm"}
    with pytest.raises(InputFormatError):
        parse_indication_codes(["no code"])
