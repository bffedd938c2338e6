from __future__ import annotations

import logging
from itertools import combinations
from typing import List, Optional

import anndata as ad
import numpy as np
import pandas as pd
from sklearn.cluster import AgglomerativeClustering

from .config import ConsensusConfig
from .errors import ConsensusFailure
from .projection import project_partition, relabel_first_appearance, store_partition

LOGGER = logging.getLogger(__name__)


def co_clustering_matrix(partitions: pd.DataFrame) -> pd.DataFrame:
    """
    Fraction of runs in which each pair of categories shares a label.

    ``partitions`` has one row per category and one column per run.
    """
    labels = partitions.to_numpy()
    n_cat, n_runs = labels.shape
    if n_runs == 0:
        raise ValueError("At least one partition is required")
    co = np.zeros((n_cat, n_cat), dtype=float)
    for r in range(n_runs):
        col = labels[:, r]
        co += (col[:, None] == col[None, :]).astype(float)
    co /= n_runs
    return pd.DataFrame(co, index=partitions.index, columns=partitions.index)


def disagreement(labels: np.ndarray, co: np.ndarray) -> float:
    """Expected number of pairwise disagreements with the input runs."""
    cost = 0.0
    for i, j in combinations(range(len(labels)), 2):
        cost += (1.0 - co[i, j]) if labels[i] == labels[j] else co[i, j]
    return cost


def _merges_separated_pair(labels: np.ndarray, co: np.ndarray) -> bool:
    same = labels[:, None] == labels[None, :]
    return bool(np.any(same & (co == 0.0)))


def _agglomerative_consensus(co: np.ndarray, linkage: str) -> np.ndarray:
    n = co.shape[0]
    dist = 1.0 - co
    np.fill_diagonal(dist, 0.0)

    best: Optional[np.ndarray] = None
    best_cost = np.inf
    for k in range(1, n + 1):
        if k == 1:
            labels = np.zeros(n, dtype=int)
        else:
            try:
                labels = AgglomerativeClustering(
                    n_clusters=k, metric="precomputed", linkage=linkage
                ).fit_predict(dist)
            except ValueError as e:
                raise ConsensusFailure(f"Agglomerative consensus failed at k={k}: {e}") from e
        if _merges_separated_pair(labels, co):
            continue
        cost = disagreement(labels, co)
        # ties go to the larger k
        if cost <= best_cost:
            best, best_cost = labels, cost

    if best is None:
        raise ConsensusFailure("No candidate consensus partition respects the co-clustering bounds")
    return best


def _majority_fallback(co: np.ndarray, threshold: float) -> np.ndarray:
    """A category joins the first group whose every member it co-clusters with above ``threshold``."""
    groups: List[List[int]] = []
    labels = np.empty(co.shape[0], dtype=int)
    for i in range(co.shape[0]):
        for g, members in enumerate(groups):
            if all(co[i, m] > threshold for m in members):
                members.append(i)
                labels[i] = g
                break
        else:
            groups.append([i])
            labels[i] = len(groups) - 1
    return labels


def consensus_partition(
    partitions: pd.DataFrame,
    *,
    linkage: str = "average",
    fallback_threshold: float = 0.5,
) -> pd.Series:
    """
    Single partition summarising several runs over the same categories.

    Agglomerative clustering on ``1 - co-clustering`` for each group count;
    the count minimizing disagreement with the runs wins. Falls back to a
    majority rule if clustering fails.
    """
    co = co_clustering_matrix(partitions).to_numpy()
    try:
        labels = _agglomerative_consensus(co, linkage)
    except ConsensusFailure as e:
        LOGGER.warning("%s; falling back to majority co-clustering rule", e)
        labels = _majority_fallback(co, fallback_threshold)

    out = pd.Series(relabel_first_appearance(labels.tolist()), index=partitions.index, name="part")
    LOGGER.info(
        "Consensus over %d runs: %d group(s) for %d categories",
        partitions.shape[1], out.nunique(), out.shape[0],
    )
    return out


def run_consensus(adata: ad.AnnData, cfg: ConsensusConfig) -> ad.AnnData:
    """
    Replace the per-run partitions (``part1``, ``part2``, ...) of a multi-run
    fused lasso result by one consensus ``part`` column; ``coef`` becomes the
    mean of the per-run effects.
    """
    if "partition" not in adata.uns:
        raise ValueError("adata.uns['partition'] not found; run an engine first")
    table = pd.DataFrame(adata.uns["partition"]).copy()
    key = cfg.category_key

    run_cols = [c for c in table.columns if c.startswith("part") and c[4:].isdigit()]
    if len(run_cols) < 2:
        raise ValueError(f"Consensus needs at least two per-run partitions, found {run_cols}")
    coef_cols = [c for c in table.columns if c.startswith("coef") and c[4:].isdigit()]

    runs = table.set_index(table[key].astype(str))[run_cols]
    part = consensus_partition(
        runs, linkage=cfg.linkage, fallback_threshold=cfg.fallback_threshold
    )

    out = pd.DataFrame({"part": part.to_numpy(), key: table[key].astype(str).to_numpy()})
    columns = ["part"]
    if coef_cols:
        out["coef"] = table[coef_cols].astype(float).mean(axis=1).to_numpy()
        columns.append("coef")

    stale = [c for c in run_cols + coef_cols if c in adata.obs]
    adata.obs = adata.obs.drop(columns=stale)
    project_partition(adata, out, category_key=key, columns=columns)

    tuning = adata.uns.get("lambda", {})
    store_partition(adata, out, tuning_key="lambda", tuning_value=tuning, method="consensus")
    return adata
