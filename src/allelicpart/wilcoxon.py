"""
Nonparametric partitioning.

Pairwise two-sided Mann-Whitney U tests between categories, thresholded into
a 0/1 dissimilarity matrix and clustered hierarchically at height 0. The
threshold is chosen by a BIC-like loss over the candidate path.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from itertools import combinations
from typing import Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd
from scipy import stats
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import squareform

from .adjacency_utils import validate_adj_matrix
from .config import WilcoxonConfig
from .observation_utils import build_observation_table
from .projection import project_partition, relabel_first_appearance, store_partition

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Pairwise tests
# ---------------------------------------------------------------------
def pairwise_wilcoxon_pvalues(
    table: pd.DataFrame,
    categories: Sequence[str],
    *,
    category_key: str = "x",
    p_adjust_method: str = "none",
    method: str = "auto",
    use_continuity: bool = True,
) -> pd.DataFrame:
    """
    Symmetric ``nct x nct`` matrix of two-sided rank-sum p-values on the
    (unweighted) ratios. Undefined p-values become 1; the diagonal is 1.
    """
    from statsmodels.stats.multitest import multipletests

    cats = [str(c) for c in categories]
    groups = table[category_key].astype(str)
    ratio = table["ratio"].to_numpy(dtype=float)
    samples = {c: ratio[(groups == c).to_numpy()] for c in cats}

    pairs = list(combinations(range(len(cats)), 2))
    pvals = np.full(len(pairs), np.nan)
    for n, (i, j) in enumerate(pairs):
        a, b = samples[cats[i]], samples[cats[j]]
        if a.size == 0 or b.size == 0:
            continue
        try:
            pvals[n] = stats.mannwhitneyu(
                a, b, alternative="two-sided", method=method, use_continuity=use_continuity
            )[1]
        except ValueError as e:
            LOGGER.debug("Rank-sum test %s vs %s undefined: %s", cats[i], cats[j], e)

    ok = np.isfinite(pvals)
    if p_adjust_method != "none" and ok.any():
        _, adjusted, _, _ = multipletests(pvals[ok], method=p_adjust_method)
        pvals[ok] = adjusted

    mat = np.ones((len(cats), len(cats)), dtype=float)
    for n, (i, j) in enumerate(pairs):
        p = pvals[n] if np.isfinite(pvals[n]) else 1.0
        mat[i, j] = mat[j, i] = p
    return pd.DataFrame(mat, index=cats, columns=cats)


# ---------------------------------------------------------------------
# Partition for one threshold
# ---------------------------------------------------------------------
def partition_at_threshold(
    pvalues: pd.DataFrame,
    adjacency: pd.DataFrame,
    threshold: float,
) -> np.ndarray:
    """
    Binarize ``p < threshold`` (disallowed pairs always dissimilar) and cut a
    complete-linkage tree at height 0. Labels are numbered by first appearance.
    """
    p = pvalues.to_numpy(dtype=float).copy()
    p[adjacency.to_numpy(dtype=float) == 0] = 0.0
    bb = (p < threshold).astype(float)
    np.fill_diagonal(bb, 0.0)

    if bb.shape[0] < 2:
        return np.ones(bb.shape[0], dtype=int)
    tree = linkage(squareform(bb, checks=False), method="complete")
    return relabel_first_appearance(fcluster(tree, t=0.0, criterion="distance").tolist())


def bic_loss(table: pd.DataFrame, labels: pd.Series, *, category_key: str = "x") -> float:
    """
    ``n * log(RSS / n) + G * log(n)`` with RSS around the per-group mean ratio.
    Rows whose category has no label are not scored.
    """
    groups = table[category_key].astype(str).map(labels)
    scored = groups.notna() & table["ratio"].notna()
    groups = groups[scored]
    ratio = table["ratio"].astype(float)[scored]
    resid = ratio - ratio.groupby(groups).transform("mean")
    n = float(ratio.shape[0])
    rss = float((resid ** 2).sum())
    with np.errstate(divide="ignore"):
        return float(n * np.log(rss / n) + labels.nunique() * np.log(n))


def select_threshold(
    table: pd.DataFrame,
    categories: Sequence[str],
    pvalues: pd.DataFrame,
    adjacency: pd.DataFrame,
    thresholds: Sequence[float],
    *,
    category_key: str = "x",
    n_jobs: int = 1,
) -> Tuple[float, np.ndarray, pd.DataFrame]:
    """
    Evaluate every threshold and keep the first one with minimal loss.

    Returns ``(threshold, labels, path)`` where ``path`` has one row per
    threshold with columns ``threshold``, ``loss`` and ``n_groups``.
    """
    cats = [str(c) for c in categories]

    def _evaluate(thr: float):
        labels = partition_at_threshold(pvalues, adjacency, thr)
        loss = bic_loss(table, pd.Series(labels, index=cats), category_key=category_key)
        return labels, loss

    results = [None] * len(thresholds)
    with ThreadPoolExecutor(max_workers=max(1, min(n_jobs, len(thresholds)))) as ex:
        futures = {ex.submit(_evaluate, float(t)): n for n, t in enumerate(thresholds)}
        for fut in as_completed(futures):
            results[futures[fut]] = fut.result()

    losses = np.array([r[1] for r in results], dtype=float)
    best = int(np.argmin(losses))
    path = pd.DataFrame(
        {
            "threshold": [float(t) for t in thresholds],
            "loss": losses,
            "n_groups": [int(np.max(r[0])) for r in results],
        }
    )

    if len(thresholds) > 1 and best in (0, len(thresholds) - 1):
        LOGGER.warning(
            "Selected threshold %.4g is at the end of the candidate path; "
            "consider widening the thresholds.",
            thresholds[best],
        )
    return float(thresholds[best]), results[best][0], path


# ---------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------
def run_wilcoxon(
    adata: ad.AnnData,
    cfg: WilcoxonConfig,
    adj_matrix: Optional[pd.DataFrame] = None,
) -> ad.AnnData:
    """
    Partition categories by thresholded pairwise rank-sum tests.

    Returns the gene-cluster subset with ``part`` in ``.obs``; the partition,
    the selected ``threshold`` and the loss path are stored in ``.uns``.
    """
    table = build_observation_table(
        adata,
        cfg.genecluster,
        category_key=cfg.category_key,
        cluster_key=cfg.cluster_key,
        ratio_layer=cfg.ratio_layer,
        counts_layer=cfg.counts_layer,
        check_rank=False,
    )
    adjacency = validate_adj_matrix(adj_matrix, table.categories)

    pvalues = pairwise_wilcoxon_pvalues(
        table.data,
        table.categories,
        category_key=cfg.category_key,
        p_adjust_method=cfg.p_adjust_method,
        method=cfg.test_method,
        use_continuity=cfg.use_continuity,
    )
    LOGGER.info(
        "Pairwise rank-sum tests over %d categories; %d candidate threshold(s)",
        table.nct, len(cfg.thresholds),
    )

    threshold, labels, path = select_threshold(
        table.data,
        table.categories,
        pvalues,
        adjacency,
        cfg.thresholds,
        category_key=cfg.category_key,
        n_jobs=cfg.n_jobs,
    )

    partition = pd.DataFrame({"part": labels, cfg.category_key: table.categories})
    out = table.adata
    project_partition(out, partition, category_key=cfg.category_key, columns=["part"])
    store_partition(out, partition, tuning_key="threshold", tuning_value=threshold, method="wilcoxon")
    out.uns["threshold_path"] = path
    return out
