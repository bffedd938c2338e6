from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, List, Optional

import anndata as ad
import cvxpy as cp
import numpy as np
import pandas as pd

from .adjacency_utils import validate_adj_matrix
from .config import FusedLassoConfig
from .errors import FusedLassoError, MissingParameterError, PenaltyPathError
from .glm_utils import (
    INTERCEPT,
    FusedFit,
    SolverConfig,
    build_fused_design,
    fit_path,
    penalty_weights,
)
from .observation_utils import ObservationTable, build_observation_table
from .projection import partition_from_effects, project_partition, store_partition

LOGGER = logging.getLogger(__name__)

_FAILURE_HINTS = {
    "binomial": "Failed determining max lambda, try other lambda, weights or gaussian model",
    "gaussian": "Failed determining max lambda, try other lambda or weights",
}


@dataclass
class RunResult:
    run_index: int
    seed: int
    effects: pd.Series
    lambda_: float
    coefficients: pd.Series


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def derive_run_seed(base_seed: int, run_index: int) -> int:
    """Deterministic, independent seed for run ``run_index``."""
    ss = np.random.SeedSequence([int(base_seed), int(run_index)])
    return int(ss.generate_state(1)[0])


def recenter_effects(coefficients: pd.Series, category_columns: Dict[str, Optional[str]]) -> pd.Series:
    """
    Absolute per-category effects on the link scale: the reference keeps the raw
    intercept, every other category gets intercept + its coefficient.
    """
    intercept = float(coefficients[INTERCEPT])
    effects = {
        cat: intercept if col is None else intercept + float(coefficients[col])
        for cat, col in category_columns.items()
    }
    return pd.Series(effects, name="coef", dtype=float)


# ---------------------------------------------------------------------
# Single run
# ---------------------------------------------------------------------
def fit_fused_lasso_run(
    table: ObservationTable,
    cfg: FusedLassoConfig,
    adj_matrix: Optional[pd.DataFrame],
    run_index: int,
) -> RunResult:
    """
    One penalized fit: lambda path with CV, adaptive SE rule for few categories,
    re-centred category effects. Raises PenaltyPathError on failure.
    """
    seed = derive_run_seed(cfg.seed, run_index)
    solver_cfg = SolverConfig(solver=cfg.solver)

    design = build_fused_design(
        table.data, table.categories, cfg.model, cfg.family, adjacency=adj_matrix
    )
    adaptive = cfg.cv_based and table.nct <= cfg.se_rule_nct

    try:
        design.pen_weights = penalty_weights(design, cfg.pen_weights)
        fit: FusedFit = fit_path(
            design,
            cfg.lambda_selection,
            k=cfg.k,
            lambda_length=cfg.lambda_length,
            lambda_min_ratio=cfg.lambda_min_ratio,
            tol=cfg.fuse_tol,
            seed=seed,
            solver_cfg=solver_cfg,
            max_lambda_search=cfg.max_lambda_search,
            adaptive_se_mult=cfg.se_rule_mult if adaptive else None,
        )
    except (ValueError, np.linalg.LinAlgError, cp.error.SolverError) as e:
        raise PenaltyPathError(f"Run {run_index}: {e}") from e

    effects = recenter_effects(fit.coefficients, fit.category_columns)
    LOGGER.info(
        "Run %d: lambda=%.4g, %d group(s) over %d categories",
        run_index, fit.lambda_, fit.n_groups, table.nct,
    )
    return RunResult(
        run_index=run_index,
        seed=seed,
        effects=effects,
        lambda_=fit.lambda_,
        coefficients=fit.coefficients,
    )


def _run_all(
    table: ObservationTable,
    cfg: FusedLassoConfig,
    adj_matrix: Optional[pd.DataFrame],
) -> List[RunResult]:
    results: List[RunResult] = []
    failed: List[int] = []

    with ThreadPoolExecutor(max_workers=min(cfg.n_jobs, cfg.niter)) as ex:
        futures = {
            ex.submit(fit_fused_lasso_run, table, cfg, adj_matrix, i): i
            for i in range(1, cfg.niter + 1)
        }
        for fut in as_completed(futures):
            i = futures[fut]
            try:
                results.append(fut.result())
            except PenaltyPathError as e:
                LOGGER.warning("Run %d failed: %s", i, e)
                failed.append(i)

    if not results:
        raise FusedLassoError(_FAILURE_HINTS[cfg.family])
    if failed:
        LOGGER.warning("%d of %d runs failed: %s", len(failed), cfg.niter, sorted(failed))
    return sorted(results, key=lambda r: r.run_index)


# ---------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------
def run_fused_lasso(
    adata: ad.AnnData,
    cfg: FusedLassoConfig,
    adj_matrix: Optional[pd.DataFrame] = None,
) -> ad.AnnData:
    """
    Partition the categories of ``adata.obs[cfg.category_key]`` by a fused lasso
    GLM on the allelic ratios of gene cluster ``cfg.genecluster``.

    Returns the gene-cluster subset with the partition in ``.obs`` and
    ``.uns["partition"]``, and the chosen lambda(s) in ``.uns["lambda"]``.
    """
    if cfg.model.penalty_kind == "ggflasso" and adj_matrix is None:
        raise MissingParameterError("Graph-guided fused lasso requires an adjacency matrix")

    table = build_observation_table(
        adata,
        cfg.genecluster,
        category_key=cfg.category_key,
        cluster_key=cfg.cluster_key,
        ratio_layer=cfg.ratio_layer,
        counts_layer=cfg.counts_layer,
        extra_terms=cfg.model.extra_terms,
    )
    if adj_matrix is not None:
        adj_matrix = validate_adj_matrix(adj_matrix, table.categories)

    LOGGER.info(
        "Fused lasso (%s, %s, %s): %d categories, %d run(s)",
        cfg.model.penalty_kind, cfg.family, cfg.lambda_selection, table.nct, cfg.niter,
    )
    results = _run_all(table, cfg, adj_matrix)

    key = cfg.category_key
    partition = pd.DataFrame({key: table.categories})
    if cfg.niter == 1:
        run = results[0]
        effects = run.effects.reindex(table.categories)
        partition.insert(0, "part", partition_from_effects(effects).to_numpy())
        partition["coef"] = effects.to_numpy()
        columns = ["part", "coef"]
        tuning = run.lambda_
    else:
        columns, tuning = [], {}
        for run in results:
            effects = run.effects.reindex(table.categories)
            partition[f"part{run.run_index}"] = partition_from_effects(effects).to_numpy()
            columns.append(f"part{run.run_index}")
        for run in results:
            partition[f"coef{run.run_index}"] = run.effects.reindex(table.categories).to_numpy()
            columns.append(f"coef{run.run_index}")
            tuning[f"part{run.run_index}"] = run.lambda_

    out = table.adata
    project_partition(out, partition, category_key=key, columns=columns)
    store_partition(out, partition, tuning_key="lambda", tuning_value=tuning, method="fused_lasso")
    return out
