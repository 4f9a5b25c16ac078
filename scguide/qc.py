import logging
import re
from typing import Tuple

import numpy as np
import pandas as pd

from .config import QCConfig
from .errors import ConfigError, DegenerateResultError
from .matrix import ExpressionMatrix


logger = logging.getLogger("scguide.qc")


def mito_mask(gene_ids: pd.Index, pattern: str) -> np.ndarray:
    try:
        rx = re.compile(pattern)
    except re.error as e:
        raise ConfigError(f"invalid regular expression {pattern!r}: {e}", stage="qc", param="mito_pattern") from e
    return np.fromiter((bool(rx.search(str(g))) for g in gene_ids), dtype=bool, count=len(gene_ids))


def compute_qc_metrics(matrix: ExpressionMatrix, mito_pattern: str = "^MT-") -> pd.DataFrame:
    """Per-cell total counts, detected features and mitochondrial fraction."""
    X = matrix.X
    n_counts = np.asarray(X.sum(axis=1)).ravel()
    n_features = np.asarray((X > 0).sum(axis=1)).ravel()
    mt = mito_mask(matrix.gene_ids, mito_pattern)
    mt_counts = np.asarray(X[:, np.flatnonzero(mt)].sum(axis=1)).ravel() if mt.any() else np.zeros(matrix.n_cells)
    with np.errstate(divide="ignore", invalid="ignore"):
        mito_fraction = np.where(n_counts > 0, mt_counts / np.where(n_counts > 0, n_counts, 1.0), 0.0)
    meta = pd.DataFrame(
        {
            "n_counts": n_counts,
            "n_features": n_features.astype(np.int64),
            "mito_fraction": mito_fraction,
        },
        index=matrix.cell_ids,
    )
    logger.info("QC metrics: %d mitochondrial genes matched %r", int(mt.sum()), mito_pattern)
    return meta


def filter_genes(matrix: ExpressionMatrix, min_cells: int = 3) -> ExpressionMatrix:
    """Drop genes detected in fewer than `min_cells` cells (0 disables)."""
    if min_cells < 0:
        raise ConfigError(f"must be >= 0, got {min_cells}", stage="qc", param="min_cells")
    if not min_cells:
        return matrix
    detected = np.bincount(matrix.X.indices[matrix.X.data > 0], minlength=matrix.n_genes)
    keep = detected >= min_cells
    if not keep.any():
        raise DegenerateResultError(
            f"no gene is detected in at least {min_cells} cells", stage="qc", param="min_cells"
        )
    logger.info("Gene filter: kept %d / %d genes detected in >= %d cells", int(keep.sum()), matrix.n_genes, min_cells)
    return matrix.subset_genes(keep)


def cell_pass_mask(cell_meta: pd.DataFrame, config: QCConfig) -> np.ndarray:
    """Boolean mask of cells within every enabled bound; a bound of 0 is disabled."""
    nf = cell_meta["n_features"].to_numpy()
    nc = cell_meta["n_counts"].to_numpy()
    mt = cell_meta["mito_fraction"].to_numpy()
    keep = np.ones(len(cell_meta), dtype=bool)
    if config.min_features:
        keep &= nf >= config.min_features
    if config.max_features:
        keep &= nf <= config.max_features
    if config.min_counts:
        keep &= nc >= config.min_counts
    if config.max_counts:
        keep &= nc <= config.max_counts
    if config.max_mito_fraction:
        keep &= mt < config.max_mito_fraction
    return keep


def filter_cells(
    matrix: ExpressionMatrix, cell_meta: pd.DataFrame, config: QCConfig
) -> Tuple[ExpressionMatrix, pd.DataFrame]:
    """Return the matrix and QC annotations restricted to cells passing every bound."""
    config.validate()
    cell_meta = cell_meta.reindex(matrix.cell_ids)
    keep = cell_pass_mask(cell_meta, config)
    n_keep = int(keep.sum())
    if n_keep == 0:
        raise DegenerateResultError(
            f"all {matrix.n_cells} cells were removed (features in [{config.min_features}, {config.max_features}], "
            f"mito_fraction < {config.max_mito_fraction})",
            stage="qc",
        )
    logger.info("Cell filter: kept %d / %d cells", n_keep, matrix.n_cells)
    return matrix.subset_cells(keep), cell_meta.loc[keep].copy()


def run_qc(matrix: ExpressionMatrix, config: QCConfig) -> Tuple[ExpressionMatrix, pd.DataFrame]:
    """Gene pre-filter, QC metrics and cell filter, repeated until neither removes anything.

    Dropping cells can leave a gene under `min_cells`, which in turn lowers
    the remaining cells' `n_features`; the output is a fixed point, so running
    QC again with the same bounds returns it unchanged.
    """
    config.validate()
    n_pass = 0
    while True:
        n_pass += 1
        shape = matrix.shape
        matrix = filter_genes(matrix, config.min_cells)
        cell_meta = compute_qc_metrics(matrix, config.mito_pattern)
        matrix, cell_meta = filter_cells(matrix, cell_meta, config)
        if matrix.shape == shape:
            break
    if n_pass > 2:
        logger.info("QC converged after %d passes: %d cells x %d genes", n_pass, matrix.n_cells, matrix.n_genes)
    return matrix, cell_meta
