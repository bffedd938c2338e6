"""
Category adjacency matrices.

An adjacency matrix is a symmetric 0/1 ``pandas.DataFrame`` indexed by the
category labels on both axes. A 1 at (i, j) means categories i and j may be
grouped directly; the diagonal is ignored.
"""
from __future__ import annotations

from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd


def make_off_by_one_adj_mat(nct: int) -> np.ndarray:
    """
    Chain graph over ``nct`` ordered categories: each category is adjacent
    only to its immediate predecessor (and hence its successor).

    Suited to time or spatial orderings of cell states. Attach labels with
    :func:`label_adj_matrix` before handing it to an engine.
    """
    if nct < 2:
        raise ValueError(f"nct must be >= 2, got {nct}")
    mat = np.zeros((nct, nct), dtype=float)
    idx = np.arange(1, nct)
    mat[idx, idx - 1] = 1.0
    return mat + mat.T


def make_full_adj_mat(nct: int) -> np.ndarray:
    if nct < 2:
        raise ValueError(f"nct must be >= 2, got {nct}")
    return np.ones((nct, nct), dtype=float) - np.eye(nct)


def label_adj_matrix(mat: np.ndarray, categories: Sequence[str]) -> pd.DataFrame:
    labels = [str(c) for c in categories]
    mat = np.asarray(mat, dtype=float)
    if mat.shape != (len(labels), len(labels)):
        raise ValueError(
            f"Adjacency matrix shape {mat.shape} does not match {len(labels)} categories"
        )
    return pd.DataFrame(mat, index=labels, columns=labels)


def validate_adj_matrix(
    adj: Optional[Union[pd.DataFrame, np.ndarray]],
    categories: Sequence[str],
) -> pd.DataFrame:
    """
    Check an adjacency matrix against the category set and return it in
    category order. ``None`` yields the fully connected default.
    """
    labels = [str(c) for c in categories]
    if adj is None:
        return label_adj_matrix(make_full_adj_mat(len(labels)), labels)

    if not isinstance(adj, pd.DataFrame):
        raise ValueError(
            "Adjacency matrix must carry the category labels as row and column names "
            "(pass a pandas DataFrame, e.g. via label_adj_matrix)."
        )

    adj = adj.copy()
    adj.index = adj.index.astype(str)
    adj.columns = adj.columns.astype(str)

    if adj.shape[0] != adj.shape[1]:
        raise ValueError(f"Adjacency matrix must be square, got shape {adj.shape}")
    if set(adj.index) != set(adj.columns):
        raise ValueError("Adjacency matrix row and column names differ")
    if set(adj.index) != set(labels) or len(adj.index) != len(labels):
        raise ValueError(
            f"Adjacency matrix labels {list(adj.index)} do not match categories {labels}"
        )

    adj = adj.loc[labels, labels].astype(float)
    vals = adj.to_numpy()
    off = ~np.eye(len(labels), dtype=bool)
    if not np.isin(vals[off], (0.0, 1.0)).all():
        raise ValueError("Adjacency matrix must be zero/one valued off the diagonal")
    if not np.array_equal(vals[off], vals.T[off]):
        raise ValueError("Adjacency matrix must be symmetric")
    return adj


def adjacency_edges(adj: pd.DataFrame) -> List[Tuple[int, int]]:
    """Index pairs (i, j), i < j, joined by an edge."""
    vals = np.asarray(adj, dtype=float)
    rows, cols = np.nonzero(np.triu(vals, k=1) == 1.0)
    return [(int(i), int(j)) for i, j in zip(rows, cols)]
