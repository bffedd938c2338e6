import numpy as np
import pandas as pd
import pytest

from allelicpart.adjacency_utils import (
    adjacency_edges,
    label_adj_matrix,
    make_full_adj_mat,
    make_off_by_one_adj_mat,
    validate_adj_matrix,
)


def test_off_by_one_is_a_chain():
    mat = make_off_by_one_adj_mat(4)
    expected = np.array(
        [
            [0, 1, 0, 0],
            [1, 0, 1, 0],
            [0, 1, 0, 1],
            [0, 0, 1, 0],
        ],
        dtype=float,
    )
    assert np.array_equal(mat, expected)
    assert np.array_equal(mat, mat.T)


def test_off_by_one_rejects_tiny():
    with pytest.raises(ValueError):
        make_off_by_one_adj_mat(1)


def test_full_adj_mat():
    mat = make_full_adj_mat(3)
    assert np.array_equal(np.diag(mat), np.zeros(3))
    assert mat.sum() == 6


def test_label_adj_matrix_shape_checked():
    adj = label_adj_matrix(make_full_adj_mat(2), ["A", "B"])
    assert list(adj.index) == ["A", "B"]
    with pytest.raises(ValueError):
        label_adj_matrix(make_full_adj_mat(2), ["A", "B", "C"])


def test_validate_default_is_fully_connected():
    adj = validate_adj_matrix(None, ["A", "B", "C"])
    assert adjacency_edges(adj) == [(0, 1), (0, 2), (1, 2)]


def test_validate_reorders_to_category_order():
    adj = label_adj_matrix(make_off_by_one_adj_mat(3), ["C", "B", "A"])
    out = validate_adj_matrix(adj, ["A", "B", "C"])
    assert list(out.index) == ["A", "B", "C"]
    # chain C-B-A is the chain A-B-C
    assert adjacency_edges(out) == [(0, 1), (1, 2)]


def test_validate_rejects_bad_matrices():
    cats = ["A", "B", "C"]

    with pytest.raises(ValueError, match="labels"):
        validate_adj_matrix(make_full_adj_mat(3), cats)

    asym = label_adj_matrix(make_full_adj_mat(3), cats)
    asym.loc["A", "B"] = 0
    with pytest.raises(ValueError, match="symmetric"):
        validate_adj_matrix(asym, cats)

    nonbinary = label_adj_matrix(make_full_adj_mat(3), cats) * 2
    with pytest.raises(ValueError, match="zero/one"):
        validate_adj_matrix(nonbinary, cats)

    wrong = label_adj_matrix(make_full_adj_mat(3), ["A", "B", "D"])
    with pytest.raises(ValueError, match="do not match"):
        validate_adj_matrix(wrong, cats)

    rect = pd.DataFrame(np.ones((2, 3)), index=["A", "B"], columns=cats)
    with pytest.raises(ValueError, match="square"):
        validate_adj_matrix(rect, cats)


def test_diagonal_is_ignored():
    adj = label_adj_matrix(np.eye(3) * 5 + make_off_by_one_adj_mat(3), ["A", "B", "C"])
    out = validate_adj_matrix(adj, ["A", "B", "C"])
    assert adjacency_edges(out) == [(0, 1), (1, 2)]
