import logging

import numpy as np
import pandas as pd
import pytest

import allelicpart.wilcoxon as wx
from allelicpart.adjacency_utils import label_adj_matrix, make_full_adj_mat, validate_adj_matrix
from allelicpart.config import WilcoxonConfig
from allelicpart.observation_utils import build_observation_table
from allelicpart.wilcoxon import (
    bic_loss,
    pairwise_wilcoxon_pvalues,
    partition_at_threshold,
    run_wilcoxon,
    select_threshold,
)

CATS = ["A", "B", "C", "D"]


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def designed_pvalues():
    """A~B and C~D at p=0.1, every cross pair at p=0.03."""
    p = np.full((4, 4), 0.03)
    p[0, 1] = p[1, 0] = 0.1
    p[2, 3] = p[3, 2] = 0.1
    np.fill_diagonal(p, 1.0)
    return pd.DataFrame(p, index=CATS, columns=CATS)


def partition_groups(out):
    part = out.uns["partition"].set_index("x")["part"]
    return {frozenset(part.index[part == g]) for g in part.unique()}


def assert_valid_partition(out, cats):
    part = out.uns["partition"]
    assert sorted(part["x"]) == sorted(cats)
    labels = sorted(part["part"].unique())
    assert labels == list(range(1, len(labels) + 1))
    assert len(labels) <= len(cats)


# ----------------------------------------------------------------------
# Pairwise tests
# ----------------------------------------------------------------------
def test_pvalue_matrix(two_pair_adata):
    table = build_observation_table(two_pair_adata, 1, check_rank=False)
    p = pairwise_wilcoxon_pvalues(table.data, table.categories)

    assert list(p.index) == CATS
    assert np.allclose(p.to_numpy(), p.to_numpy().T)
    assert np.all(np.diag(p) == 1.0)
    # identical samples are indistinguishable
    assert p.loc["A", "B"] == 1.0
    assert p.loc["C", "D"] == 1.0
    assert p.loc["A", "C"] < 1e-6


def test_pvalue_adjustment_is_monotone(two_pair_adata):
    table = build_observation_table(two_pair_adata, 1, check_rank=False)
    raw = pairwise_wilcoxon_pvalues(table.data, table.categories)
    adj = pairwise_wilcoxon_pvalues(table.data, table.categories, p_adjust_method="bonferroni")
    assert np.all(adj.to_numpy() >= raw.to_numpy() - 1e-15)
    assert adj.loc["A", "C"] == pytest.approx(min(1.0, raw.loc["A", "C"] * 6))


def test_empty_category_gets_pvalue_one():
    table = pd.DataFrame(
        {
            "ratio": [0.1, 0.2, 0.8, 0.9],
            "x": pd.Categorical(["A", "A", "B", "B"], categories=["A", "B", "C"]),
        }
    )
    p = pairwise_wilcoxon_pvalues(table, ["A", "B", "C"])
    assert p.loc["A", "C"] == 1.0
    assert p.loc["B", "C"] == 1.0


# ----------------------------------------------------------------------
# Single threshold
# ----------------------------------------------------------------------
def test_partition_at_threshold_cuts_at_zero():
    adj = validate_adj_matrix(None, CATS)
    assert list(partition_at_threshold(designed_pvalues(), adj, 0.01)) == [1, 1, 1, 1]
    assert list(partition_at_threshold(designed_pvalues(), adj, 0.05)) == [1, 1, 2, 2]
    assert list(partition_at_threshold(designed_pvalues(), adj, 0.2)) == [1, 2, 3, 4]


def test_partition_at_threshold_needs_full_agreement():
    # A~B, B~C but A differs from C: complete linkage keeps A and C apart
    p = pd.DataFrame(
        [[1.0, 0.5, 0.001], [0.5, 1.0, 0.5], [0.001, 0.5, 1.0]],
        index=["A", "B", "C"], columns=["A", "B", "C"],
    )
    labels = partition_at_threshold(p, validate_adj_matrix(None, ["A", "B", "C"]), 0.05)
    assert labels[0] != labels[2]


def test_disallowed_pair_is_dissimilar():
    adj = label_adj_matrix(make_full_adj_mat(4), CATS)
    adj.loc["A", "B"] = adj.loc["B", "A"] = 0
    labels = partition_at_threshold(designed_pvalues(), adj, 0.05)
    assert labels[0] != labels[1]


def test_bic_loss_formula():
    table = pd.DataFrame({"ratio": [0.1, 0.3, 0.6, 1.0], "x": ["A", "A", "B", "B"]})
    labels = pd.Series([1, 2], index=["A", "B"])
    # group means 0.2, 0.8; RSS = 0.01 + 0.01 + 0.04 + 0.04
    expected = 4 * np.log(0.1 / 4) + 2 * np.log(4)
    assert bic_loss(table, labels) == pytest.approx(expected)


# ----------------------------------------------------------------------
# Threshold path
# ----------------------------------------------------------------------
def test_select_threshold_path_table(two_pair_adata):
    table = build_observation_table(two_pair_adata, 1, check_rank=False)
    adj = validate_adj_matrix(None, CATS)
    thr, labels, path = select_threshold(
        table.data, table.categories, designed_pvalues(), adj, [0.01, 0.05, 0.2], n_jobs=3
    )
    assert thr == 0.05
    assert list(labels) == [1, 1, 2, 2]
    assert list(path.columns) == ["threshold", "loss", "n_groups"]
    assert list(path["n_groups"]) == [1, 2, 4]
    assert path["loss"].idxmin() == 1


def test_scenario_winner_strictly_inside(two_pair_adata, monkeypatch, caplog):
    monkeypatch.setattr(wx, "pairwise_wilcoxon_pvalues", lambda *a, **k: designed_pvalues())
    cfg = WilcoxonConfig(genecluster=1, thresholds=[0.01, 0.05, 0.2], n_jobs=1)

    with caplog.at_level(logging.WARNING):
        out = run_wilcoxon(two_pair_adata, cfg)

    assert partition_groups(out) == {frozenset("AB"), frozenset("CD")}
    assert out.uns["threshold"] == 0.05
    assert out.uns["partition_method"] == "wilcoxon"
    assert "end of the candidate path" not in caplog.text
    assert_valid_partition(out, CATS)


def test_scenario_real_tests(two_pair_adata):
    cfg = WilcoxonConfig(genecluster=1, thresholds=[0.01, 0.05, 0.2], n_jobs=2)
    out = run_wilcoxon(two_pair_adata, cfg)

    assert partition_groups(out) == {frozenset("AB"), frozenset("CD")}
    assert out.uns["threshold"] in cfg.thresholds
    # every cell carries its group label
    assert out.obs.loc[out.obs["x"] == "B", "part"].eq(out.uns["partition"]["part"][0]).all()
    assert_valid_partition(out, CATS)


def test_boundary_optimum_warns(two_pair_adata, caplog):
    cfg = WilcoxonConfig(genecluster=1, n_jobs=1)
    with caplog.at_level(logging.WARNING):
        out = run_wilcoxon(two_pair_adata, cfg)
    # every default threshold gives the same partition -> first one wins
    assert out.uns["threshold"] == cfg.thresholds[0]
    assert "end of the candidate path" in caplog.text


def test_single_threshold_does_not_warn(two_pair_adata, caplog):
    cfg = WilcoxonConfig(genecluster=1, thresholds=[0.05], n_jobs=1)
    with caplog.at_level(logging.WARNING):
        run_wilcoxon(two_pair_adata, cfg)
    assert "end of the candidate path" not in caplog.text


def test_rerun_at_selected_threshold_is_stable(make_adata):
    adata = make_adata({"A": 0.3, "B": 0.35, "C": 0.6, "D": 0.7}, n_cells=12, seed=7)
    first = run_wilcoxon(adata, WilcoxonConfig(genecluster=1, n_jobs=1))
    again = run_wilcoxon(
        adata, WilcoxonConfig(genecluster=1, thresholds=[first.uns["threshold"]], n_jobs=1)
    )
    assert list(again.uns["partition"]["part"]) == list(first.uns["partition"]["part"])


def test_threshold_extremes(two_pair_adata):
    tiny = run_wilcoxon(two_pair_adata, WilcoxonConfig(genecluster=1, thresholds=[1e-300]))
    assert tiny.uns["partition"]["part"].nunique() == 1

    top = run_wilcoxon(two_pair_adata, WilcoxonConfig(genecluster=1, thresholds=[1.0]))
    assert partition_groups(top) == {frozenset("AB"), frozenset("CD")}


def test_adjacency_constraint(two_pair_adata):
    adj = label_adj_matrix(make_full_adj_mat(4), CATS)
    adj.loc["A", "B"] = adj.loc["B", "A"] = 0

    out = run_wilcoxon(two_pair_adata, WilcoxonConfig(genecluster=1, n_jobs=1), adj_matrix=adj)
    part = out.uns["partition"].set_index("x")["part"]
    assert part["A"] != part["B"]
    assert part["C"] == part["D"]
    assert_valid_partition(out, CATS)


def test_bic_loss_ignores_unlabelled_rows():
    table = pd.DataFrame(
        {"ratio": [0.1, 0.3, 0.6, 1.0, 0.5], "x": ["A", "A", "B", "B", "C"]}
    )
    labels = pd.Series([1, 2], index=["A", "B"])
    expected = 4 * np.log(0.1 / 4) + 2 * np.log(4)
    assert bic_loss(table, labels) == pytest.approx(expected)
