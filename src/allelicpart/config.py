from __future__ import annotations

import multiprocessing
from pathlib import Path
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


PenaltyKind = Literal["flasso", "gflasso", "ggflasso"]
Family = Literal["binomial", "gaussian"]
LambdaRule = Literal["cv1se.dev", "cv.dev", "is.aic", "is.bic"]
PenWeights = Literal["eq", "stand", "glm.stand"]

# statsmodels.stats.multitest method names, plus "none"
PAdjustMethod = Literal[
    "none",
    "bonferroni",
    "sidak",
    "holm-sidak",
    "holm",
    "simes-hochberg",
    "hommel",
    "fdr_bh",
    "fdr_by",
]


def default_thresholds() -> List[float]:
    """Raw p-value cut-offs 10^-2, 10^-1.8, ..., 10^-0.4."""
    return [float(10 ** (-2.0 + 0.2 * i)) for i in range(9)]


# ---------------------------------------------------------------------
# MODEL SPECIFICATION
# ---------------------------------------------------------------------
class TermSpec(BaseModel):
    """An additional categorical covariate besides the grouping term."""

    name: str
    level: Literal["cell", "gene"] = Field(
        "cell",
        description="'cell' reads adata.obs[name]; 'gene' reads adata.var[name] "
                    "(the name 'gene' always means gene identity).",
    )

    @model_validator(mode="after")
    def gene_identity_is_gene_level(self):
        if self.name == "gene":
            self.level = "gene"
        return self


class ModelSpec(BaseModel):
    """
    Declares the fused lasso model structurally:
    one penalized grouping term plus unpenalized categorical terms.
    """

    grouping_term: str = "x"
    penalty_kind: PenaltyKind = Field(
        "gflasso",
        description="flasso: consecutive categories; gflasso: all pairs; "
                    "ggflasso: pairs allowed by an adjacency matrix.",
    )
    extra_terms: List[TermSpec] = Field(default_factory=list)

    @field_validator("extra_terms", mode="before")
    def coerce_term_names(cls, v):
        if v is None:
            return []
        return [{"name": t} if isinstance(t, str) else t for t in v]

    @model_validator(mode="after")
    def check_terms(self):
        names = [t.name for t in self.extra_terms]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate extra terms: {names}")
        if self.grouping_term in names:
            raise ValueError(
                f"Grouping term '{self.grouping_term}' cannot also be an extra term"
            )
        return self


# ---------------------------------------------------------------------
# SHARED DATA KEYS
# ---------------------------------------------------------------------
class _PartitionInputConfig(BaseModel):

    # ---- I/O ----
    input_path: Optional[Path] = None
    output_path: Optional[Path] = None
    partition_csv: Optional[Path] = None

    # ---- Data keys ----
    category_key: str = "x"
    cluster_key: str = "cluster"
    ratio_layer: str = "ratio"
    counts_layer: str = "counts"

    # ---- Logging ----
    logfile: Optional[Path] = None


# ---------------------------------------------------------------------
# FUSED LASSO CONFIG
# ---------------------------------------------------------------------
class FusedLassoConfig(_PartitionInputConfig):

    genecluster: Union[int, str] = Field(..., description="Gene cluster to partition on")

    model: ModelSpec = Field(default_factory=ModelSpec)
    family: Family = "binomial"

    # ---- Runs ----
    niter: int = Field(1, ge=1)
    seed: int = 0
    n_jobs: int = Field(1, ge=1)

    # ---- Lambda path / selection ----
    lambda_selection: Union[LambdaRule, float] = Field(
        "cv1se.dev",
        description="Fixed lambda (> 0) or a selection rule.",
    )
    k: int = Field(5, ge=2, description="Cross-validation folds")
    lambda_length: int = Field(25, ge=2)
    lambda_min_ratio: float = Field(1e-4, gt=0.0, lt=1.0)

    # ---- Adaptive SE rule ----
    se_rule_nct: int = Field(
        8,
        ge=0,
        description="Use the se_rule_mult SE rule when the number of categories is at most this.",
    )
    se_rule_mult: float = Field(0.5, ge=0.0)

    # ---- Solver ----
    pen_weights: PenWeights = "glm.stand"
    fuse_tol: float = Field(1e-4, gt=0.0)
    solver: str = "CLARABEL"
    max_lambda_search: int = Field(12, ge=1)

    @field_validator("lambda_selection")
    def check_lambda(cls, v):
        if isinstance(v, float) and not v > 0:
            raise ValueError("A fixed lambda must be > 0")
        return v

    @model_validator(mode="after")
    def check_grouping_key(self):
        if self.model.grouping_term != self.category_key:
            # the grouping term is the category column by construction
            self.model = self.model.model_copy(update={"grouping_term": self.category_key})
        return self

    @property
    def cv_based(self) -> bool:
        return isinstance(self.lambda_selection, str) and self.lambda_selection.startswith("cv")


# ---------------------------------------------------------------------
# WILCOXON CONFIG
# ---------------------------------------------------------------------
class WilcoxonConfig(_PartitionInputConfig):

    genecluster: Union[int, str] = Field(..., description="Gene cluster to partition on")

    thresholds: List[float] = Field(
        default_factory=default_thresholds,
        description="Candidate raw p-value cut-offs",
    )
    p_adjust_method: PAdjustMethod = "none"

    # scipy.stats.mannwhitneyu options
    test_method: Literal["auto", "asymptotic", "exact"] = "auto"
    use_continuity: bool = True

    n_jobs: int = Field(
        default_factory=lambda: max(1, min(4, multiprocessing.cpu_count() - 1)),
        ge=1,
    )

    @field_validator("thresholds")
    def check_thresholds(cls, v: List[float]):
        if not v:
            raise ValueError("At least one threshold is required")
        bad = [t for t in v if not (0.0 < t <= 1.0)]
        if bad:
            raise ValueError(f"Thresholds must be in (0, 1], got {bad}")
        return [float(t) for t in v]


# ---------------------------------------------------------------------
# CONSENSUS CONFIG
# ---------------------------------------------------------------------
class ConsensusConfig(_PartitionInputConfig):

    linkage: Literal["average", "complete", "single"] = "average"
    fallback_threshold: float = Field(
        0.5,
        ge=0.0,
        lt=1.0,
        description="Co-clustering frequency a category must exceed with every group member "
                    "in the fallback rule.",
    )
