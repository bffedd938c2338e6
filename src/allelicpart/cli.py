from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import Callable, List, Optional, Union

import typer

from .adjacency_utils import label_adj_matrix, make_full_adj_mat, make_off_by_one_adj_mat
from .config import (
    ConsensusConfig,
    FusedLassoConfig,
    ModelSpec,
    TermSpec,
    WilcoxonConfig,
    default_thresholds,
)
from .consensus import run_consensus
from .fused_lasso import run_fused_lasso
from .io_utils import export_partition, load_adata, read_adj_matrix, save_adata, write_adj_matrix
from .logging_utils import init_logging
from .observation_utils import category_levels
from .wilcoxon import run_wilcoxon

LOGGER = logging.getLogger(__name__)

LAMBDA_RULES = {"cv1se.dev", "cv.dev", "is.aic", "is.bic"}

app = typer.Typer(help="allelicpart CLI — partition cell states by allelic ratio.")

warnings.filterwarnings("ignore", message="Variable names are not unique", category=UserWarning, module="anndata")


# ---------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------
def _parse_lambda(value: str) -> Union[str, float]:
    """A selection rule name or a fixed positive lambda."""
    if value in LAMBDA_RULES:
        return value
    try:
        lam = float(value)
    except ValueError:
        raise typer.BadParameter(
            f"--lambda must be a number or one of {', '.join(sorted(LAMBDA_RULES))}"
        )
    if lam <= 0:
        raise typer.BadParameter("--lambda must be > 0")
    return lam


def _parse_terms(terms: Optional[List[str]], gene_terms: Optional[List[str]]) -> List[TermSpec]:
    """Supports --term a,b --term c; gene-level covariates via --gene-term."""
    out: List[TermSpec] = []
    for values, level in ((terms, "cell"), (gene_terms, "gene")):
        for v in values or []:
            out.extend(TermSpec(name=t.strip(), level=level) for t in v.split(",") if t.strip())
    return out


def _default_output(input_path: Path, output_path: Optional[Path], tag: str) -> Path:
    if output_path is not None:
        return output_path
    return input_path.with_name(f"{input_path.stem}.{tag}.h5ad")


def _run_and_write(engine: Callable, cfg, *args) -> None:
    adata = load_adata(cfg.input_path)
    out = engine(adata, cfg, *args)
    save_adata(out, cfg.output_path)
    export_partition(out, cfg.partition_csv)


# ---------------------------------------------------------------------
# fused-lasso
# ---------------------------------------------------------------------
@app.command("fused-lasso", help="Partition cell states with a fused lasso GLM on allelic ratios.")
def fused_lasso(
    # --- I/O ---
    input_path: Path = typer.Option(
        ..., "--input", "-i", exists=True,
        help="[I/O] h5ad with layers 'ratio' and 'counts', obs category and var cluster columns.",
    ),
    output_path: Optional[Path] = typer.Option(
        None, "--out", "-o",
        help="[I/O] Output h5ad. Defaults to <input>.fused_lasso.h5ad",
    ),
    partition_csv: Optional[Path] = typer.Option(
        None, "--partition-csv",
        help="[I/O] Partition table CSV. Defaults to <out>.partition.csv",
    ),
    adj_matrix_csv: Optional[Path] = typer.Option(
        None, "--adj-matrix", "-a", exists=True,
        help="[I/O] Labelled adjacency matrix CSV (required for ggflasso).",
    ),

    # --- Data keys ---
    genecluster: str = typer.Option(..., "--genecluster", "-g", help="Gene cluster to partition on."),
    category_key: str = typer.Option("x", "--category-key", help="Cell state column in adata.obs."),
    cluster_key: str = typer.Option("cluster", "--cluster-key", help="Gene cluster column in adata.var."),

    # --- Model ---
    penalty: str = typer.Option("gflasso", "--penalty", help="flasso | gflasso | ggflasso"),
    family: str = typer.Option("binomial", "--family", help="binomial | gaussian"),
    terms: Optional[List[str]] = typer.Option(None, "--term", help="Extra cell-level covariate(s) in adata.obs."),
    gene_terms: Optional[List[str]] = typer.Option(None, "--gene-term", help="Extra gene-level covariate(s) in adata.var ('gene' = gene identity)."),

    # --- Lambda ---
    lambda_: str = typer.Option("cv1se.dev", "--lambda", help="Fixed lambda or cv1se.dev | cv.dev | is.aic | is.bic"),
    k: int = typer.Option(5, "--k", help="Cross-validation folds."),
    lambda_length: int = typer.Option(25, "--lambda-length"),
    se_rule_nct: int = typer.Option(8, "--se-rule-nct"),
    se_rule_mult: float = typer.Option(0.5, "--se-rule-mult"),
    pen_weights: str = typer.Option("glm.stand", "--pen-weights", help="eq | stand | glm.stand"),

    # --- Runs ---
    niter: int = typer.Option(1, "--niter", help="Number of independent runs."),
    seed: int = typer.Option(0, "--seed"),
    n_jobs: int = typer.Option(1, "--n-jobs", help="Runs executed in parallel."),
    log_level: str = typer.Option("INFO", "--log-level"),
):
    """
    Run the fused lasso partition engine.
    """
    output_path = _default_output(input_path, output_path, "fused_lasso")
    init_logging(output_path.parent / "fused-lasso.log", level=log_level)

    cfg = FusedLassoConfig(
        input_path=input_path,
        output_path=output_path,
        partition_csv=partition_csv or output_path.with_suffix(".partition.csv"),
        genecluster=genecluster,
        category_key=category_key,
        cluster_key=cluster_key,
        model=ModelSpec(
            grouping_term=category_key,
            penalty_kind=penalty,
            extra_terms=_parse_terms(terms, gene_terms),
        ),
        family=family,
        lambda_selection=_parse_lambda(lambda_),
        k=k,
        lambda_length=lambda_length,
        se_rule_nct=se_rule_nct,
        se_rule_mult=se_rule_mult,
        pen_weights=pen_weights,
        niter=niter,
        seed=seed,
        n_jobs=n_jobs,
        logfile=output_path.parent / "fused-lasso.log",
    )
    _run_and_write(run_fused_lasso, cfg, read_adj_matrix(adj_matrix_csv))


# ---------------------------------------------------------------------
# wilcoxon
# ---------------------------------------------------------------------
@app.command("wilcoxon", help="Partition cell states by thresholded pairwise Wilcoxon tests.")
def wilcoxon(
    # --- I/O ---
    input_path: Path = typer.Option(..., "--input", "-i", exists=True, help="[I/O] Input h5ad."),
    output_path: Optional[Path] = typer.Option(
        None, "--out", "-o",
        help="[I/O] Output h5ad. Defaults to <input>.wilcoxon.h5ad",
    ),
    partition_csv: Optional[Path] = typer.Option(None, "--partition-csv"),
    adj_matrix_csv: Optional[Path] = typer.Option(
        None, "--adj-matrix", "-a", exists=True,
        help="[I/O] Labelled adjacency matrix CSV (default: fully connected).",
    ),

    # --- Data keys ---
    genecluster: str = typer.Option(..., "--genecluster", "-g"),
    category_key: str = typer.Option("x", "--category-key"),
    cluster_key: str = typer.Option("cluster", "--cluster-key"),

    # --- Tests ---
    thresholds: Optional[List[float]] = typer.Option(
        None, "--threshold", "-t",
        help="Candidate raw p-value cut-off (repeatable). Default 10^seq(-2, -0.4, 0.2).",
    ),
    p_adjust_method: str = typer.Option("none", "--p-adjust-method"),
    n_jobs: Optional[int] = typer.Option(None, "--n-jobs", help="Thresholds evaluated in parallel."),
    log_level: str = typer.Option("INFO", "--log-level"),
):
    """
    Run the nonparametric partition engine.
    """
    output_path = _default_output(input_path, output_path, "wilcoxon")
    init_logging(output_path.parent / "wilcoxon.log", level=log_level)

    kwargs = dict(
        input_path=input_path,
        output_path=output_path,
        partition_csv=partition_csv or output_path.with_suffix(".partition.csv"),
        genecluster=genecluster,
        category_key=category_key,
        cluster_key=cluster_key,
        thresholds=thresholds or default_thresholds(),
        p_adjust_method=p_adjust_method,
        logfile=output_path.parent / "wilcoxon.log",
    )
    # Only insert explicitly if user provided it
    if n_jobs is not None:
        kwargs["n_jobs"] = n_jobs

    cfg = WilcoxonConfig(**kwargs)
    _run_and_write(run_wilcoxon, cfg, read_adj_matrix(adj_matrix_csv))


# ---------------------------------------------------------------------
# consensus
# ---------------------------------------------------------------------
@app.command("consensus", help="Merge the per-run partitions of a multi-run fused lasso result.")
def consensus(
    input_path: Path = typer.Option(
        ..., "--input", "-i", exists=True,
        help="[I/O] h5ad written by `allelicpart fused-lasso --niter N` (N >= 2).",
    ),
    output_path: Optional[Path] = typer.Option(
        None, "--out", "-o",
        help="[I/O] Output h5ad. Defaults to <input>.consensus.h5ad",
    ),
    partition_csv: Optional[Path] = typer.Option(None, "--partition-csv"),
    category_key: str = typer.Option("x", "--category-key"),
    linkage: str = typer.Option("average", "--linkage", help="average | complete | single"),
    fallback_threshold: float = typer.Option(0.5, "--fallback-threshold"),
    log_level: str = typer.Option("INFO", "--log-level"),
):
    """
    Resolve several partitions into one consensus partition.
    """
    output_path = _default_output(input_path, output_path, "consensus")
    init_logging(output_path.parent / "consensus.log", level=log_level)

    cfg = ConsensusConfig(
        input_path=input_path,
        output_path=output_path,
        partition_csv=partition_csv or output_path.with_suffix(".partition.csv"),
        category_key=category_key,
        linkage=linkage,
        fallback_threshold=fallback_threshold,
        logfile=output_path.parent / "consensus.log",
    )
    _run_and_write(run_consensus, cfg)


# ---------------------------------------------------------------------
# adj-matrix
# ---------------------------------------------------------------------
@app.command("adj-matrix", help="Write a labelled adjacency matrix CSV.")
def adj_matrix(
    output_path: Path = typer.Option(..., "--out", "-o", help="[I/O] Output CSV."),
    input_path: Optional[Path] = typer.Option(
        None, "--input", "-i", exists=True,
        help="[I/O] h5ad to read the cell states from.",
    ),
    categories: Optional[str] = typer.Option(
        None, "--categories", "-c",
        help="Comma-separated cell states, in order (instead of --input).",
    ),
    category_key: str = typer.Option("x", "--category-key"),
    kind: str = typer.Option("chain", "--kind", help="chain (off-by-one) | full"),
):
    """
    Build an adjacency matrix over the cell states.
    """
    if categories:
        labels = [c.strip() for c in categories.split(",") if c.strip()]
    elif input_path is not None:
        labels = category_levels(load_adata(input_path), category_key)
    else:
        raise typer.BadParameter("Provide --categories or --input")

    if kind == "chain":
        mat = make_off_by_one_adj_mat(len(labels))
    elif kind == "full":
        mat = make_full_adj_mat(len(labels))
    else:
        raise typer.BadParameter("--kind must be 'chain' or 'full'")

    write_adj_matrix(label_adj_matrix(mat, labels), output_path)


if __name__ == "__main__":
    app()
