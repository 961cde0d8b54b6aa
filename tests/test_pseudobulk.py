import numpy as np
import pandas as pd
import pytest

from deconv_benchmark.errors import MissingReferenceCellsError
from deconv_benchmark.s1.pseudobulk import TPM_SCALE, _draw_cells, cells_per_type, mrna_content, simulate_bulk


def _fractions():
    return pd.DataFrame(
        {"B cell": [0.3, 0.0], "T cell CD8+": [0.2, 0.5], "Melanoma cell": [0.5, 0.5]},
        index=pd.Index(["s1", "s2"], name="sample"),
    )


def test_cells_per_type_rounds():
    counts = cells_per_type(_fractions(), 10)
    assert counts.loc["s1"].tolist() == [3, 2, 5]
    assert counts.loc["s2"].tolist() == [0, 5, 5]


def test_simulate_bulk_is_tpm(reference):
    expr, counts = simulate_bulk(reference, _fractions(), 100, np.random.default_rng(0))
    assert expr.shape == (reference.n_vars, 2)
    np.testing.assert_allclose(expr.sum(axis=0), TPM_SCALE)
    assert counts.loc["s1", "B cell"] == 30
    assert expr.index.name == "gene_symbol"


def test_simulate_bulk_reflects_composition(reference):
    expr, _ = simulate_bulk(reference, _fractions(), 200, np.random.default_rng(0))
    b_genes = [f"GENE{i}" for i in range(20)]
    # s2 has no B cells, so its B-cell block is lower than in s1
    assert expr.loc[b_genes, "s1"].sum() > expr.loc[b_genes, "s2"].sum()


def test_simulate_bulk_is_reproducible(reference):
    a, _ = simulate_bulk(reference, _fractions(), 50, np.random.default_rng(5))
    b, _ = simulate_bulk(reference, _fractions(), 50, np.random.default_rng(5))
    pd.testing.assert_frame_equal(a, b)


def test_missing_reference_cells(reference):
    fr = _fractions().assign(**{"NK cell": 0.0})
    with pytest.raises(MissingReferenceCellsError):
        simulate_bulk(reference, fr, 10, np.random.default_rng(0))


def test_draw_without_replacement_when_possible():
    pool = np.arange(10)
    drawn = _draw_cells(pool, 10, np.random.default_rng(0))
    assert sorted(drawn.tolist()) == list(range(10))
    assert len(_draw_cells(pool, 25, np.random.default_rng(0))) == 25
    assert _draw_cells(pool, 0, np.random.default_rng(0)).size == 0


def test_mrna_content(reference):
    m = mrna_content(reference, cell_types=["B cell", "Melanoma cell"])
    assert list(m.index) == ["B cell", "Melanoma cell"]
    assert (m > 0).all()
