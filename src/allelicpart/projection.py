from __future__ import annotations

import logging
from typing import Any, Sequence

import anndata as ad
import numpy as np
import pandas as pd

LOGGER = logging.getLogger(__name__)


# -------------------------------------------------------------------------
# Partition helpers
# -------------------------------------------------------------------------
def relabel_first_appearance(values: Sequence[Any]) -> np.ndarray:
    """
    Integer labels 1, 2, ... assigned in order of first appearance,
    so equal values share a label and label order says nothing about magnitude.
    """
    seen: dict = {}
    out = np.empty(len(values), dtype=int)
    for i, v in enumerate(values):
        if v not in seen:
            seen[v] = len(seen) + 1
        out[i] = seen[v]
    return out


def partition_from_effects(effects: pd.Series) -> pd.Series:
    """
    Partition categories by exactly equal fitted effects.

    Fused categories carry bit-identical re-estimated effects, so float
    equality is the equivalence test here.
    """
    labels = relabel_first_appearance([float(v) for v in effects.to_numpy()])
    return pd.Series(labels, index=effects.index, name="part")


def check_partition(partition: pd.Series, categories: Sequence[str]) -> None:
    idx = [str(c) for c in partition.index]
    if sorted(idx) != sorted(str(c) for c in categories) or len(set(idx)) != len(idx):
        raise ValueError("Partition must assign every category exactly once")
    if partition.isna().any():
        raise ValueError("Partition contains missing labels")


# -------------------------------------------------------------------------
# Projection onto AnnData
# -------------------------------------------------------------------------
def project_partition(
    adata: ad.AnnData,
    partition: pd.DataFrame,
    *,
    category_key: str,
    columns: Sequence[str],
) -> ad.AnnData:
    """
    Broadcast per-category columns of ``partition`` onto every cell in ``adata.obs``.
    Partition label columns (``part*``) are stored as categoricals.
    """
    lookup = partition.set_index(partition[category_key].astype(str))
    cats = adata.obs[category_key].astype(str)
    for col in columns:
        values = cats.map(lookup[col]).to_numpy()
        if col.startswith("part"):
            levels = sorted(pd.unique(lookup[col]))
            adata.obs[col] = pd.Categorical(values, categories=levels)
        else:
            adata.obs[col] = values.astype(float)
    return adata


def store_partition(
    adata: ad.AnnData,
    partition: pd.DataFrame,
    *,
    tuning_key: str,
    tuning_value: Any,
    method: str,
) -> ad.AnnData:
    """Package the partition table and its tuning value(s) in ``adata.uns``."""
    adata.uns["partition"] = partition.reset_index(drop=True)
    adata.uns[tuning_key] = tuning_value
    adata.uns["partition_method"] = method
    LOGGER.info(
        "Stored %s partition (%s=%s) with %d categories",
        method, tuning_key, tuning_value, partition.shape[0],
    )
    return adata
