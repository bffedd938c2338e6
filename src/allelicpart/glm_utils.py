"""
Fused lasso GLM solver.

Fits ``-loglik / N + lambda * sum_e w_e |theta_i - theta_j|`` over the category
effects ``theta`` (reference category fixed at 0 on the treatment-coded scale)
with cvxpy, for a binomial (logit link, weighted by total counts) or gaussian
family. Unpenalized refits go through statsmodels.

Coefficients are always reported by name: ``(Intercept)``, ``<term>[<level>]``.
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import cvxpy as cp
import numpy as np
import pandas as pd
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components
from scipy.special import expit, xlogy
from sklearn.model_selection import KFold

from .adjacency_utils import adjacency_edges
from .config import ModelSpec
from .errors import PenaltyPathError

LOGGER = logging.getLogger(__name__)

INTERCEPT = "(Intercept)"

# |logit| beyond this means a fitted ratio within 1e-13 of 0 or 1
_MAX_ABS_ETA = 30.0
_MIN_ABS_DIFF = 1e-6


def coef_name(term: str, level: str) -> str:
    return f"{term}[{level}]"


@dataclass(frozen=True)
class SolverConfig:
    solver: str = "CLARABEL"
    warm_start: bool = True
    verbose: bool = False


# -----------------------------------------------------------------------------
# Design
# -----------------------------------------------------------------------------
@dataclass
class FusedDesign:
    """
    Treatment-coded design for one fused lasso fit.

    ``X`` holds the category dummies (all categories but the reference)
    followed by covariate dummies; there is no intercept column.
    """

    X: np.ndarray
    y: np.ndarray
    weights: np.ndarray
    family: str
    categories: List[str]
    columns: List[str]
    category_columns: Dict[str, Optional[str]]
    edges: List[Tuple[int, int]]
    pen_weights: np.ndarray = field(default_factory=lambda: np.zeros(0))

    @property
    def nct(self) -> int:
        return len(self.categories)

    @property
    def n_obs(self) -> int:
        return int(self.X.shape[0])

    @property
    def n_covariate_columns(self) -> int:
        return len(self.columns) - (self.nct - 1)

    @property
    def coef_names(self) -> List[str]:
        return [INTERCEPT, *self.columns]

    def difference_matrix(self) -> np.ndarray:
        """Rows map the category dummy coefficients to theta_i - theta_j per edge."""
        D = np.zeros((len(self.edges), self.nct - 1), dtype=float)
        for r, (i, j) in enumerate(self.edges):
            if i > 0:
                D[r, i - 1] = 1.0
            if j > 0:
                D[r, j - 1] = -1.0
        return D

    def category_counts(self) -> np.ndarray:
        counts = np.empty(self.nct, dtype=float)
        counts[0] = self.n_obs - self.X[:, : self.nct - 1].sum()
        counts[1:] = self.X[:, : self.nct - 1].sum(axis=0)
        return counts

    def subset(self, rows: np.ndarray) -> "FusedDesign":
        return FusedDesign(
            X=self.X[rows],
            y=self.y[rows],
            weights=self.weights[rows],
            family=self.family,
            categories=self.categories,
            columns=self.columns,
            category_columns=self.category_columns,
            edges=self.edges,
            pen_weights=self.pen_weights,
        )


def _dummy_block(values: pd.Categorical, term: str) -> Tuple[np.ndarray, List[str]]:
    levels = [str(c) for c in values.categories]
    codes = np.asarray(values.codes)
    block = np.zeros((codes.size, max(len(levels) - 1, 0)), dtype=float)
    for j in range(1, len(levels)):
        block[:, j - 1] = codes == j
    return block, [coef_name(term, lvl) for lvl in levels[1:]]


def penalty_edges(
    nct: int,
    penalty_kind: str,
    adjacency: Optional[pd.DataFrame] = None,
) -> List[Tuple[int, int]]:
    if penalty_kind == "flasso":
        return [(i, i + 1) for i in range(nct - 1)]
    if penalty_kind == "gflasso":
        return [(i, j) for i in range(nct) for j in range(i + 1, nct)]
    if penalty_kind == "ggflasso":
        if adjacency is None:
            raise ValueError("Graph-guided fused lasso requires an adjacency matrix")
        return adjacency_edges(adjacency)
    raise ValueError(f"Unknown penalty kind: {penalty_kind!r}")


def build_fused_design(
    table: pd.DataFrame,
    categories: Sequence[str],
    model: ModelSpec,
    family: str,
    adjacency: Optional[pd.DataFrame] = None,
) -> FusedDesign:
    term = model.grouping_term
    x = pd.Categorical(table[term].astype(str), categories=list(categories))
    X_cat, cat_cols = _dummy_block(x, term)

    blocks = [X_cat]
    columns = list(cat_cols)
    for spec in model.extra_terms:
        values = table[spec.name]
        if not isinstance(values.dtype, pd.CategoricalDtype):
            values = values.astype("category")
        block, names = _dummy_block(values.array, spec.name)
        blocks.append(block)
        columns.extend(names)

    y = table["ratio"].to_numpy(dtype=float)
    if family == "binomial":
        weights = table["cts"].to_numpy(dtype=float)
    elif family == "gaussian":
        weights = np.ones_like(y)
    else:
        raise ValueError(f"Unsupported family: {family!r} (supported: binomial, gaussian)")

    category_columns: Dict[str, Optional[str]] = {str(categories[0]): None}
    category_columns.update({str(c): name for c, name in zip(categories[1:], cat_cols)})

    return FusedDesign(
        X=np.hstack(blocks),
        y=y,
        weights=weights,
        family=family,
        categories=[str(c) for c in categories],
        columns=columns,
        category_columns=category_columns,
        edges=penalty_edges(len(categories), model.penalty_kind, adjacency),
    )


# -----------------------------------------------------------------------------
# Likelihood pieces
# -----------------------------------------------------------------------------
def _collapse(X: np.ndarray, y: np.ndarray, w: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Sufficient statistics per distinct design row: (rows, sum w, sum w*y)."""
    if X.shape[1] == 0:
        return np.zeros((1, 0)), np.array([w.sum()]), np.array([(w * y).sum()])
    keys, inverse = np.unique(X, axis=0, return_inverse=True)
    inverse = np.asarray(inverse).reshape(-1)
    n = np.bincount(inverse, weights=w, minlength=keys.shape[0])
    s = np.bincount(inverse, weights=w * y, minlength=keys.shape[0])
    return keys, n, s


def _log_likelihood(family: str, eta: cp.Expression, n: np.ndarray, s: np.ndarray) -> cp.Expression:
    if family == "binomial":
        return cp.sum(cp.multiply(s, eta) - cp.multiply(n, cp.logistic(eta)))
    if family == "gaussian":
        # -0.5 * sum (y - eta)^2 up to a constant
        return cp.sum(cp.multiply(s, eta)) - 0.5 * cp.sum(cp.multiply(n, cp.square(eta)))
    raise ValueError(f"Unsupported family: {family!r}")


def linear_predictor(design: FusedDesign, coef: np.ndarray) -> np.ndarray:
    return design.X @ coef[1:] + coef[0]


def mean_response(family: str, eta: np.ndarray) -> np.ndarray:
    return expit(eta) if family == "binomial" else eta


def glm_deviance(family: str, y: np.ndarray, mu: np.ndarray, w: np.ndarray) -> float:
    """Total deviance."""
    if family == "binomial":
        mu = np.clip(mu, 1e-12, 1.0 - 1e-12)
        dev = 2.0 * w * (xlogy(y, y / mu) + xlogy(1.0 - y, (1.0 - y) / (1.0 - mu)))
    else:
        dev = w * (y - mu) ** 2
    return float(dev.sum())


def mean_deviance(design: FusedDesign, coef: np.ndarray) -> float:
    """Deviance per unit weight, comparable across folds of different size."""
    mu = mean_response(design.family, linear_predictor(design, coef))
    total_w = float(design.weights.sum())
    return glm_deviance(design.family, design.y, mu, design.weights) / max(total_w, 1e-12)


# -----------------------------------------------------------------------------
# Penalized problem
# -----------------------------------------------------------------------------
class FusedLassoProblem:
    """cvxpy problem with lambda as a Parameter, reused along a path."""

    def __init__(self, design: FusedDesign, solver_cfg: SolverConfig):
        self.design = design
        self.solver_cfg = solver_cfg

        keys, n, s = _collapse(design.X, design.y, design.weights)
        total = float(n.sum())
        if total <= 0:
            raise PenaltyPathError("No weight left to fit (all total counts are zero)")

        self.beta = cp.Variable(design.X.shape[1])
        self.intercept = cp.Variable()
        self.lam = cp.Parameter(nonneg=True, name="lambda")

        eta = keys @ self.beta + self.intercept
        ll = _log_likelihood(design.family, eta, n, s)

        D = design.difference_matrix()
        if D.shape[0] > 0:
            pen_w = design.pen_weights if design.pen_weights.size else np.ones(D.shape[0])
            theta = self.beta[: design.nct - 1]
            penalty = cp.norm1(cp.multiply(pen_w, D @ theta))
            objective = -ll / total + self.lam * penalty
        else:
            objective = -ll / total
        self.problem = cp.Problem(cp.Minimize(objective))

    def solve(self, lam: float) -> np.ndarray:
        """Return ``[intercept, beta...]`` at ``lam``."""
        self.lam.value = float(lam)
        try:
            self.problem.solve(
                solver=self.solver_cfg.solver,
                warm_start=self.solver_cfg.warm_start,
                verbose=self.solver_cfg.verbose,
            )
        except cp.SolverError as e:
            raise PenaltyPathError(f"Solver failed at lambda={lam:.4g}: {e}") from e

        if self.problem.status not in (cp.OPTIMAL, cp.OPTIMAL_INACCURATE):
            raise PenaltyPathError(
                f"Solver returned status '{self.problem.status}' at lambda={lam:.4g}"
            )
        return np.concatenate(([float(self.intercept.value)], np.asarray(self.beta.value, dtype=float)))


def category_effects_raw(design: FusedDesign, coef: np.ndarray) -> np.ndarray:
    """theta on the treatment-coded scale: reference 0, others their dummy coefficient."""
    return np.concatenate(([0.0], coef[1: design.nct]))


def fused_groups(design: FusedDesign, coef: np.ndarray, tol: float) -> np.ndarray:
    """
    Group categories joined by a penalized edge whose coefficient difference
    is below ``tol``. Returns first-appearance labels starting at 0.
    """
    theta = category_effects_raw(design, coef)
    rows, cols = [], []
    for i, j in design.edges:
        if abs(theta[i] - theta[j]) < tol:
            rows.append(i)
            cols.append(j)
    graph = coo_matrix(
        (np.ones(len(rows)), (np.asarray(rows, dtype=int), np.asarray(cols, dtype=int))), shape=(design.nct, design.nct)
    )
    _, labels = connected_components(graph, directed=False)
    _, first = np.unique(labels, return_index=True)
    order = {lab: k for k, lab in enumerate(labels[np.sort(first)])}
    return np.array([order[lab] for lab in labels], dtype=int)


def all_fused(design: FusedDesign, coef: np.ndarray, tol: float) -> bool:
    theta = category_effects_raw(design, coef)
    return all(abs(theta[i] - theta[j]) < tol for i, j in design.edges)


# -----------------------------------------------------------------------------
# Unpenalized refits (statsmodels)
# -----------------------------------------------------------------------------
def fit_unpenalized(
    design: FusedDesign,
    X: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Unpenalized GLM ``[intercept, coef...]`` on ``X`` (default: the full design),
    fitted on collapsed sufficient statistics.
    """
    import statsmodels.api as sm
    from statsmodels.tools.sm_exceptions import PerfectSeparationError

    X = design.X if X is None else X
    keys, n, s = _collapse(X, design.y, design.weights)
    keep = n > 0
    keys, n, s = keys[keep], n[keep], s[keep]
    exog = np.column_stack([np.ones(keys.shape[0]), keys])
    fam = sm.families.Binomial() if design.family == "binomial" else sm.families.Gaussian()

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        try:
            fit = sm.GLM(s / n, exog, family=fam, var_weights=n).fit()
        except (ValueError, np.linalg.LinAlgError, PerfectSeparationError) as e:
            raise PenaltyPathError(f"Unpenalized GLM failed: {e}") from e

    params = np.asarray(fit.params, dtype=float)
    if not np.all(np.isfinite(params)):
        raise PenaltyPathError("Unpenalized GLM produced non-finite estimates")
    if design.family == "binomial":
        eta = exog @ params
        if np.max(np.abs(eta)) > _MAX_ABS_ETA:
            raise PenaltyPathError(
                "Unpenalized GLM diverged (fitted ratios at 0 or 1; separable data)"
            )
    return params


def penalty_weights(design: FusedDesign, kind: str) -> np.ndarray:
    n_edges = len(design.edges)
    if kind == "eq" or n_edges == 0:
        return np.ones(n_edges)

    counts = design.category_counts()
    n = float(counts.sum())
    stand = np.array([np.sqrt((counts[i] + counts[j]) / n) for i, j in design.edges])
    if kind == "stand":
        return stand
    if kind == "glm.stand":
        theta = category_effects_raw(design, fit_unpenalized(design))
        diff = np.array([abs(theta[i] - theta[j]) for i, j in design.edges])
        return stand / np.maximum(diff, _MIN_ABS_DIFF)
    raise ValueError(f"Unknown penalty weights: {kind!r}")


def reestimate(design: FusedDesign, groups: np.ndarray) -> np.ndarray:
    """
    Unpenalized refit on the fused design, expanded back to one coefficient per
    original column. Categories in one group get bit-identical effects.
    """
    n_groups = int(groups.max()) + 1
    ref_group = int(groups[0])
    cat_X = design.X[:, : design.nct - 1]
    cov_X = design.X[:, design.nct - 1:]

    # per-row category index
    cat_idx = np.zeros(design.n_obs, dtype=int)
    hit = cat_X.any(axis=1)
    cat_idx[hit] = np.argmax(cat_X[hit], axis=1) + 1
    row_group = groups[cat_idx]

    other = [g for g in range(n_groups) if g != ref_group]
    grp_X = np.column_stack([(row_group == g).astype(float) for g in other]) if other else np.zeros((design.n_obs, 0))
    params = fit_unpenalized(design, np.hstack([grp_X, cov_X]))

    intercept = params[0]
    gamma = dict(zip(other, params[1: 1 + len(other)]))
    gamma[ref_group] = 0.0
    cov = params[1 + len(other):]

    theta = np.array([gamma[int(g)] for g in groups])
    return np.concatenate(([intercept], theta[1:] - theta[0], cov))


# -----------------------------------------------------------------------------
# Lambda path
# -----------------------------------------------------------------------------
def find_lambda_max(
    problem: FusedLassoProblem,
    tol: float,
    *,
    start: float = 1e-3,
    max_steps: int = 12,
    n_bisect: int = 8,
) -> float:
    """
    Smallest lambda (up to a log-scale bisection) at which every penalized
    edge is fused. Raises PenaltyPathError if no such lambda is found.
    """
    design = problem.design
    if not design.edges:
        raise PenaltyPathError("No penalized category pairs; cannot determine max lambda")

    lam = float(start)
    fused = all_fused(design, problem.solve(lam), tol)
    step = 0
    if fused:
        while fused and step < max_steps:
            lam /= 10.0
            fused = all_fused(design, problem.solve(lam), tol)
            step += 1
        if fused:
            # fused even at a vanishing penalty
            return lam
        lo, hi = lam, lam * 10.0
    else:
        while not fused and step < max_steps:
            lam *= 10.0
            fused = all_fused(design, problem.solve(lam), tol)
            step += 1
        if not fused:
            raise PenaltyPathError(
                f"Failed determining max lambda (no full fusion up to lambda={lam:.3g})"
            )
        lo, hi = lam / 10.0, lam

    for _ in range(n_bisect):
        mid = float(np.sqrt(lo * hi))
        if all_fused(design, problem.solve(mid), tol):
            hi = mid
        else:
            lo = mid
    return hi


def lambda_path(lambda_max: float, length: int, min_ratio: float) -> np.ndarray:
    """Descending, log-spaced path from lambda_max."""
    return np.geomspace(lambda_max, lambda_max * min_ratio, num=int(length))


def cross_validate(
    design: FusedDesign,
    path: np.ndarray,
    k: int,
    seed: int,
    solver_cfg: SolverConfig,
) -> np.ndarray:
    """Mean held-out deviance, shape ``(len(path), k)``."""
    if design.n_obs < int(k):
        raise PenaltyPathError(
            f"Cannot run {int(k)}-fold cross-validation on {design.n_obs} observations"
        )
    folds = KFold(n_splits=int(k), shuffle=True, random_state=int(seed)).split(design.X)
    dev = np.empty((len(path), int(k)), dtype=float)
    for f, (train_idx, test_idx) in enumerate(folds):
        train, test = design.subset(train_idx), design.subset(test_idx)
        problem = FusedLassoProblem(train, solver_cfg)
        for i, lam in enumerate(path):
            dev[i, f] = mean_deviance(test, problem.solve(lam))
    return dev


def adaptive_se_index(cv_deviance: np.ndarray, k: int, mult: float) -> int:
    """
    First (largest lambda) path index whose mean CV deviance lies within
    ``mult * SE`` of the minimum, with SE = mean of the per-lambda fold SDs / sqrt(k).
    """
    dev = np.asarray(cv_deviance, dtype=float)
    mean_dev = dev.mean(axis=1)
    se = float(np.mean(dev.std(axis=1, ddof=1))) / np.sqrt(k)
    return int(np.flatnonzero(mean_dev <= mean_dev.min() + mult * se)[0])


def select_lambda_index(
    rule: str,
    path: np.ndarray,
    *,
    cv_deviance: Optional[np.ndarray] = None,
    ic: Optional[np.ndarray] = None,
) -> int:
    if rule in ("cv.dev", "cv1se.dev"):
        mean = cv_deviance.mean(axis=1)
        best = int(np.argmin(mean))
        if rule == "cv.dev":
            return best
        k = cv_deviance.shape[1]
        se = float(np.std(cv_deviance[best], ddof=1)) / np.sqrt(k)
        # path is descending: the first admissible index is the largest lambda
        return int(np.flatnonzero(mean <= mean[best] + se)[0])
    if rule in ("is.aic", "is.bic"):
        return int(np.argmin(ic))
    raise ValueError(f"Unknown lambda selection rule: {rule!r}")


# -----------------------------------------------------------------------------
# Fits
# -----------------------------------------------------------------------------
@dataclass
class FusedFit:
    coefficients: pd.Series
    lambda_: float
    groups: np.ndarray
    category_columns: Dict[str, Optional[str]]
    lambda_vector: Optional[np.ndarray] = None
    cv_deviance: Optional[np.ndarray] = None
    ic: Optional[np.ndarray] = None

    @property
    def n_groups(self) -> int:
        return int(self.groups.max()) + 1


def _finalize(
    design: FusedDesign,
    problem: FusedLassoProblem,
    lam: float,
    tol: float,
) -> Tuple[pd.Series, np.ndarray]:
    groups = fused_groups(design, problem.solve(lam), tol)
    coef = reestimate(design, groups)
    return pd.Series(coef, index=design.coef_names, dtype=float), groups


def fit_fixed_lambda(
    design: FusedDesign,
    lam: float,
    *,
    tol: float,
    solver_cfg: SolverConfig,
) -> FusedFit:
    problem = FusedLassoProblem(design, solver_cfg)
    coef, groups = _finalize(design, problem, lam, tol)
    return FusedFit(
        coefficients=coef,
        lambda_=float(lam),
        groups=groups,
        category_columns=design.category_columns,
    )


def information_criteria(
    design: FusedDesign,
    problem: FusedLassoProblem,
    path: np.ndarray,
    tol: float,
    rule: str,
) -> np.ndarray:
    penalty = 2.0 if rule == "is.aic" else np.log(design.n_obs)
    out = np.empty(len(path), dtype=float)
    for i, lam in enumerate(path):
        coef = problem.solve(lam)
        df = fused_groups(design, coef, tol).max() + 1 + design.n_covariate_columns
        mu = mean_response(design.family, linear_predictor(design, coef))
        dev = glm_deviance(design.family, design.y, mu, design.weights)
        if design.family == "gaussian":
            # profile likelihood, variance unknown
            dev = design.n_obs * np.log(dev / design.n_obs)
        out[i] = dev + penalty * df
    return out


def fit_path(
    design: FusedDesign,
    lambda_selection: Union[str, float],
    *,
    k: int,
    lambda_length: int,
    lambda_min_ratio: float,
    tol: float,
    seed: int,
    solver_cfg: SolverConfig,
    max_lambda_search: int = 12,
    adaptive_se_mult: Optional[float] = None,
) -> FusedFit:
    """
    Fit along an automatic lambda path and select lambda by ``lambda_selection``
    (a number fits that lambda directly).

    With ``adaptive_se_mult`` set, CV rules pick lambda by
    :func:`adaptive_se_index` instead; only the selected lambda is refitted.
    """
    if not isinstance(lambda_selection, str):
        return fit_fixed_lambda(design, float(lambda_selection), tol=tol, solver_cfg=solver_cfg)

    problem = FusedLassoProblem(design, solver_cfg)
    lam_max = find_lambda_max(problem, tol, max_steps=max_lambda_search)
    path = lambda_path(lam_max, lambda_length, lambda_min_ratio)
    LOGGER.debug("lambda max %.4g, path of %d values", lam_max, len(path))

    cv_dev = ic = None
    if lambda_selection.startswith("cv"):
        cv_dev = cross_validate(design, path, k, seed, solver_cfg)
        if adaptive_se_mult is not None:
            idx = adaptive_se_index(cv_dev, k, adaptive_se_mult)
            LOGGER.debug("adaptive %.2g SE rule picks path index %d", adaptive_se_mult, idx)
        else:
            idx = select_lambda_index(lambda_selection, path, cv_deviance=cv_dev)
    else:
        ic = information_criteria(design, problem, path, tol, lambda_selection)
        idx = select_lambda_index(lambda_selection, path, ic=ic)

    lam = float(path[idx])
    coef, groups = _finalize(design, problem, lam, tol)
    return FusedFit(
        coefficients=coef,
        lambda_=lam,
        groups=groups,
        category_columns=design.category_columns,
        lambda_vector=path,
        cv_deviance=cv_dev,
        ic=ic,
    )
