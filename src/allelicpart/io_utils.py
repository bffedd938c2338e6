from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import anndata as ad
import pandas as pd

LOGGER = logging.getLogger(__name__)


def load_adata(path: Path) -> ad.AnnData:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input dataset not found: {path}")
    if path.suffix != ".h5ad":
        raise ValueError(f"Expected an .h5ad file, got {path}")
    adata = ad.read_h5ad(str(path))
    LOGGER.info("Loaded %s (%d cells x %d genes)", path, adata.n_obs, adata.n_vars)
    return adata


def save_adata(adata: ad.AnnData, out_path: Path) -> None:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    adata.write(str(out_path), compression="gzip")
    LOGGER.info("Wrote %s", out_path)


def export_partition(adata: ad.AnnData, out_path: Path) -> None:
    """Write the per-category partition table stored in ``adata.uns['partition']``."""
    df = pd.DataFrame(adata.uns["partition"])
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_path, index=False)
    LOGGER.info("Exported partition → %s", out_path)


def read_adj_matrix(path: Optional[Path]) -> Optional[pd.DataFrame]:
    """Labelled adjacency matrix from CSV (first column holds the row labels)."""
    if path is None:
        return None
    adj = pd.read_csv(path, index_col=0)
    adj.index = adj.index.astype(str)
    adj.columns = adj.columns.astype(str)
    return adj


def write_adj_matrix(adj: pd.DataFrame, out_path: Path) -> None:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    adj.astype(int).to_csv(out_path)
    LOGGER.info("Wrote adjacency matrix → %s", out_path)
