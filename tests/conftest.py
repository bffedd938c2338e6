import anndata as ad
import numpy as np
import pandas as pd
import pytest


# ----------------------------------------------------------------------
# Synthetic allelic data generator
# ----------------------------------------------------------------------
def synthetic_allelic_adata(
    ratios,
    n_cells=20,
    n_genes=5,
    total=40,
    seed=0,
    copy_from=None,
    extra_genes=2,
):
    """
    Cells x genes AnnData with layers 'ratio' / 'counts', obs 'x' and var 'cluster'.

    ``ratios`` maps category -> true allelic ratio. Genes of cluster 1 follow
    those ratios; ``extra_genes`` genes of cluster 2 are pure noise.
    ``copy_from`` maps category -> category whose cell values are reused verbatim.
    """
    rng = np.random.default_rng(seed)
    cats = list(ratios)
    copy_from = copy_from or {}
    n_var = n_genes + extra_genes

    blocks_ratio, blocks_counts = {}, {}
    for c in cats:
        counts = np.full((n_cells, n_var), total, dtype=float)
        p = np.full(n_var, ratios[c], dtype=float)
        p[n_genes:] = 0.5
        alt = rng.binomial(total, p, size=(n_cells, n_var)).astype(float)
        blocks_ratio[c] = alt / counts
        blocks_counts[c] = counts
    for c, src in copy_from.items():
        blocks_ratio[c] = blocks_ratio[src].copy()
        blocks_counts[c] = blocks_counts[src].copy()

    ratio = np.vstack([blocks_ratio[c] for c in cats])
    counts = np.vstack([blocks_counts[c] for c in cats])

    obs = pd.DataFrame(
        {"x": pd.Categorical(np.repeat(cats, n_cells), categories=cats)},
        index=[f"cell{i}" for i in range(len(cats) * n_cells)],
    )
    var = pd.DataFrame(
        {"cluster": [1] * n_genes + [2] * extra_genes},
        index=[f"gene{j}" for j in range(n_var)],
    )
    adata = ad.AnnData(X=counts.copy(), obs=obs, var=var)
    adata.layers["ratio"] = ratio
    adata.layers["counts"] = counts
    return adata


@pytest.fixture
def make_adata():
    return synthetic_allelic_adata


@pytest.fixture
def two_pair_adata():
    """A == B and C == D verbatim; the pairs differ strongly."""
    return synthetic_allelic_adata(
        {"A": 0.2, "B": 0.2, "C": 0.8, "D": 0.8},
        n_cells=15,
        copy_from={"B": "A", "D": "C"},
    )


@pytest.fixture
def three_state_adata():
    return synthetic_allelic_adata({"A": 0.2, "B": 0.5, "C": 0.8}, n_cells=20, total=50)
