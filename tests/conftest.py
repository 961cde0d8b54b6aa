import anndata as ad
import numpy as np
import pandas as pd
import pytest

CELL_TYPES = ["B cell", "T cell CD8+", "Melanoma cell"]
GENES_PER_TYPE = 20


def make_reference(seed: int = 0) -> ad.AnnData:
    """Small reference: each cell type over-expresses its own block of 20 genes."""
    rng = np.random.default_rng(seed)
    n_genes = GENES_PER_TYPE * len(CELL_TYPES)
    layout = {  # sample → (tissue, cells per type)
        "p1": ("skin", {"B cell": 15, "T cell CD8+": 15, "Melanoma cell": 10}),
        "p2": ("skin", {"B cell": 12, "T cell CD8+": 18, "Melanoma cell": 20}),
        "p3": ("skin", {"B cell": 10, "T cell CD8+": 10, "Melanoma cell": 30}),
        "p4": ("lymph node", {"B cell": 20, "T cell CD8+": 20, "Melanoma cell": 5}),
    }
    blocks, obs = [], []
    for sample, (tissue, counts) in layout.items():
        for k, ct in enumerate(CELL_TYPES):
            lam = np.ones(n_genes)
            lam[k * GENES_PER_TYPE:(k + 1) * GENES_PER_TYPE] = 20.0
            blocks.append(rng.poisson(lam, size=(counts[ct], n_genes)))
            obs += [{"sample": sample, "tissue": tissue, "cell_type": ct}] * counts[ct]
    X = np.vstack(blocks).astype(np.float32)
    obs = pd.DataFrame(obs, index=[f"cell{i}" for i in range(X.shape[0])])
    var = pd.DataFrame(index=[f"GENE{i}" for i in range(n_genes)])
    return ad.AnnData(X=X, obs=obs, var=var)


@pytest.fixture
def reference() -> ad.AnnData:
    return make_reference()


@pytest.fixture
def reference_h5ad(tmp_path, reference) -> str:
    path = tmp_path / "reference.h5ad"
    reference.write_h5ad(path)
    return str(path)
