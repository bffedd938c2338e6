from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from .config import TermSpec
from .errors import DesignDegenerateError, MissingParameterError

LOGGER = logging.getLogger(__name__)


@dataclass
class ObservationTable:
    """
    Long-format (cell, gene) table for one gene cluster.

    ``data`` columns: ``ratio``, ``<category_key>``, ``cts``, ``gene`` and one
    categorical column per extra term. Rows are cell-major (all genes of the
    first cell, then the second cell, ...), with undefined ratios and cells
    without a category label removed.
    """

    data: pd.DataFrame
    categories: List[str]
    category_key: str
    adata: ad.AnnData
    n_genes: int

    @property
    def nct(self) -> int:
        return len(self.categories)

    @property
    def n_obs(self) -> int:
        return int(self.data.shape[0])


def category_levels(adata: ad.AnnData, category_key: str) -> List[str]:
    """Ordered category set of the full dataset (not of a gene-cluster subset)."""
    col = adata.obs[category_key]
    if isinstance(col.dtype, pd.CategoricalDtype):
        return [str(c) for c in col.cat.categories]
    return sorted({str(v) for v in col.dropna()})


def _dense(mat) -> np.ndarray:
    if sp.issparse(mat):
        return np.asarray(mat.toarray(), dtype=float)
    return np.asarray(mat, dtype=float)


def _validate_inputs(
    adata: ad.AnnData,
    genecluster,
    *,
    category_key: str,
    cluster_key: str,
    ratio_layer: str,
    counts_layer: str,
) -> None:
    if genecluster is None:
        raise MissingParameterError("No gene cluster number")
    missing = [k for k in (ratio_layer, counts_layer) if k not in adata.layers]
    if missing:
        raise MissingParameterError(f"Missing layers in adata.layers: {missing}")
    if category_key not in adata.obs:
        raise MissingParameterError(f"Category column '{category_key}' not found in adata.obs")
    if cluster_key not in adata.var:
        raise MissingParameterError(f"Gene cluster column '{cluster_key}' not found in adata.var")


def _cluster_mask(adata: ad.AnnData, cluster_key: str, genecluster) -> np.ndarray:
    clusters = adata.var[cluster_key]
    mask = (clusters == genecluster).to_numpy()
    if not mask.any():
        # ids read back from h5ad / CLI are often strings
        mask = (clusters.astype(str) == str(genecluster)).to_numpy()
    if not mask.any():
        raise MissingParameterError(
            f"No genes in adata.var['{cluster_key}'] belong to gene cluster {genecluster!r}"
        )
    return mask


def _term_values(
    sub: ad.AnnData,
    term: TermSpec,
    n_cells: int,
    n_genes: int,
) -> np.ndarray:
    if term.name == "gene":
        return np.tile(np.asarray(sub.var_names, dtype=str), n_cells)
    if term.level == "gene":
        if term.name not in sub.var:
            raise MissingParameterError(f"Gene-level covariate '{term.name}' not found in adata.var")
        return np.tile(sub.var[term.name].astype(str).to_numpy(), n_cells)
    if term.name not in sub.obs:
        raise MissingParameterError(f"Covariate '{term.name}' not found in adata.obs")
    return np.repeat(sub.obs[term.name].astype(str).to_numpy(), n_genes)


def check_design_rank(x: pd.Categorical) -> None:
    """
    Verify the treatment-coded design ``~ x`` has full column rank.
    Fails when a category has no observation left.
    """
    codes = np.asarray(x.codes)
    nct = len(x.categories)
    design = np.zeros((codes.size, nct), dtype=float)
    design[:, 0] = 1.0
    for j in range(1, nct):
        design[:, j] = codes == j
    rank = np.linalg.matrix_rank(design) if codes.size else 0
    if rank != nct:
        counts = pd.Series(codes).value_counts().reindex(range(nct), fill_value=0)
        empty = [str(x.categories[i]) for i, c in counts.items() if c == 0]
        raise DesignDegenerateError(
            f"Category design is rank deficient (rank {rank} < {nct}); "
            f"categories without observations: {empty}"
        )


def build_observation_table(
    adata: ad.AnnData,
    genecluster: Optional[Union[int, str]],
    *,
    category_key: str = "x",
    cluster_key: str = "cluster",
    ratio_layer: str = "ratio",
    counts_layer: str = "counts",
    extra_terms: Sequence[Union[TermSpec, str]] = (),
    check_rank: bool = True,
) -> ObservationTable:
    _validate_inputs(
        adata,
        genecluster,
        category_key=category_key,
        cluster_key=cluster_key,
        ratio_layer=ratio_layer,
        counts_layer=counts_layer,
    )

    categories = category_levels(adata, category_key)
    if len(categories) < 2:
        raise DesignDegenerateError(
            f"At least two categories are required in adata.obs['{category_key}'], found {categories}"
        )

    mask = _cluster_mask(adata, cluster_key, genecluster)
    sub = adata[:, mask].copy()
    n_cells, n_genes = sub.n_obs, sub.n_vars

    # cells x genes -> cell-major long vectors
    ratio = _dense(sub.layers[ratio_layer]).ravel()
    cts = _dense(sub.layers[counts_layer]).ravel()
    cell_cat = sub.obs[category_key].astype(str).to_numpy()

    data = pd.DataFrame(
        {
            "ratio": ratio,
            category_key: pd.Categorical(np.repeat(cell_cat, n_genes), categories=categories),
            "cts": cts,
            "gene": pd.Categorical(np.tile(np.asarray(sub.var_names, dtype=str), n_cells)),
        }
    )

    terms = [TermSpec(name=t) if isinstance(t, str) else t for t in extra_terms]
    for term in terms:
        if term.name == category_key:
            continue
        data[term.name] = pd.Categorical(_term_values(sub, term, n_cells, n_genes))

    finite = np.isfinite(data["ratio"].to_numpy())
    labelled = data[category_key].notna().to_numpy()
    keep = finite & labelled
    n_dropped = int((~finite).sum())
    n_unlabelled = int((finite & ~labelled).sum())
    data = data.loc[keep].reset_index(drop=True)
    for term in terms:
        if term.name in data and term.name != category_key:
            data[term.name] = data[term.name].cat.remove_unused_categories()
    data["gene"] = data["gene"].cat.remove_unused_categories()

    LOGGER.info(
        "Gene cluster %s: %d genes x %d cells -> %d observations (%d undefined ratios dropped)",
        genecluster, n_genes, n_cells, data.shape[0], n_dropped,
    )
    if n_unlabelled:
        LOGGER.warning(
            "Dropped %d observations of cells without a '%s' label",
            n_unlabelled, category_key,
        )

    if check_rank:
        check_design_rank(data[category_key].array)

    return ObservationTable(
        data=data,
        categories=categories,
        category_key=category_key,
        adata=sub,
        n_genes=n_genes,
    )
