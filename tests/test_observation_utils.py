import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

from allelicpart.config import ModelSpec, TermSpec
from allelicpart.errors import DesignDegenerateError, MissingParameterError
from allelicpart.glm_utils import build_fused_design
from allelicpart.observation_utils import (
    build_observation_table,
    category_levels,
    check_design_rank,
)


def test_table_shape_and_columns(make_adata):
    adata = make_adata({"A": 0.3, "B": 0.7}, n_cells=4, n_genes=3, extra_genes=2)
    table = build_observation_table(adata, 1)

    # 8 cells x 3 genes of cluster 1
    assert table.n_obs == 24
    assert table.n_genes == 3
    assert table.categories == ["A", "B"]
    assert table.nct == 2
    assert list(table.data.columns) == ["ratio", "x", "cts", "gene"]
    assert table.adata.n_vars == 3


def test_rows_are_cell_major(make_adata):
    adata = make_adata({"A": 0.3, "B": 0.7}, n_cells=2, n_genes=3)
    table = build_observation_table(adata, 1)

    first_cell = adata.layers["ratio"][0, :3]
    assert np.allclose(table.data["ratio"].to_numpy()[:3], first_cell)
    assert list(table.data["gene"].astype(str)[:3]) == ["gene0", "gene1", "gene2"]
    assert list(table.data["x"].astype(str)[:3]) == ["A", "A", "A"]


def test_undefined_ratios_dropped(make_adata):
    adata = make_adata({"A": 0.3, "B": 0.7}, n_cells=3, n_genes=2, extra_genes=0)
    adata.layers["ratio"][0, 0] = np.nan
    adata.layers["counts"][0, 0] = 0

    table = build_observation_table(adata, 1)
    assert table.n_obs == 11
    assert not table.data["ratio"].isna().any()


def test_sparse_layers_supported(make_adata):
    adata = make_adata({"A": 0.3, "B": 0.7}, n_cells=3, n_genes=2, extra_genes=0)
    adata.layers["counts"] = sp.csr_matrix(adata.layers["counts"])
    table = build_observation_table(adata, 1)
    assert table.data["cts"].eq(40).all()


def test_string_cluster_id_matches(make_adata):
    adata = make_adata({"A": 0.3, "B": 0.7}, n_cells=2, n_genes=2, extra_genes=1)
    table = build_observation_table(adata, "2")
    assert table.n_genes == 1


def test_missing_inputs_raise(make_adata):
    adata = make_adata({"A": 0.3, "B": 0.7}, n_cells=2)

    with pytest.raises(MissingParameterError, match="No gene cluster number"):
        build_observation_table(adata, None)
    with pytest.raises(MissingParameterError):
        build_observation_table(adata, 99)
    with pytest.raises(MissingParameterError):
        build_observation_table(adata, 1, category_key="celltype")

    del adata.layers["counts"]
    with pytest.raises(MissingParameterError):
        build_observation_table(adata, 1)


def test_category_without_observations_is_degenerate(make_adata):
    adata = make_adata({"A": 0.3, "B": 0.5, "C": 0.7}, n_cells=3, n_genes=2, extra_genes=0)
    is_c = (adata.obs["x"] == "C").to_numpy()
    adata.layers["ratio"][is_c, :] = np.nan

    with pytest.raises(DesignDegenerateError, match=r"\['C'\]"):
        build_observation_table(adata, 1)

    # rank check can be skipped
    table = build_observation_table(adata, 1, check_rank=False)
    assert table.categories == ["A", "B", "C"]


def test_single_category_is_degenerate(make_adata):
    adata = make_adata({"A": 0.3}, n_cells=3)
    with pytest.raises(DesignDegenerateError):
        build_observation_table(adata, 1)


def test_extra_terms(make_adata):
    adata = make_adata({"A": 0.3, "B": 0.7}, n_cells=4, n_genes=3, extra_genes=0)
    adata.obs["batch"] = pd.Categorical(["b1", "b2"] * 4)
    adata.var["chrom"] = ["chr1", "chr1", "chr2"]

    table = build_observation_table(
        adata, 1, extra_terms=["batch", TermSpec(name="chrom", level="gene"), TermSpec(name="gene")]
    )
    d = table.data
    assert list(d.columns) == ["ratio", "x", "cts", "gene", "batch", "chrom"]
    # first cell: batch b1 for each of its genes
    assert list(d["batch"].astype(str)[:3]) == ["b1", "b1", "b1"]
    assert list(d["chrom"].astype(str)[:3]) == ["chr1", "chr1", "chr2"]

    with pytest.raises(MissingParameterError):
        build_observation_table(adata, 1, extra_terms=["donor"])


def test_category_levels_order(make_adata):
    adata = make_adata({"T2": 0.3, "T1": 0.7}, n_cells=2)
    assert category_levels(adata, "x") == ["T2", "T1"]

    adata.obs["plain"] = adata.obs["x"].astype(str)
    assert category_levels(adata, "plain") == ["T1", "T2"]


def test_check_design_rank_full():
    check_design_rank(pd.Categorical(["a", "b", "c", "a"], categories=["a", "b", "c"]))
    with pytest.raises(DesignDegenerateError):
        check_design_rank(pd.Categorical(["a", "a"], categories=["a", "b"]))


def test_unlabelled_cells_are_dropped(make_adata):
    adata = make_adata({"A": 0.3, "B": 0.7}, n_cells=5, n_genes=5, extra_genes=0)
    adata.obs.loc["cell5", "x"] = np.nan  # first B cell

    table = build_observation_table(adata, 1)
    assert table.n_obs == 45
    assert table.data["x"].notna().all()

    design = build_fused_design(table.data, table.categories, ModelSpec(), "binomial")
    # reference category keeps exactly its own 25 observations
    assert design.category_counts().tolist() == [25.0, 20.0]
