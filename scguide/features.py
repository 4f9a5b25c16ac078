import logging
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from statsmodels.nonparametric.smoothers_lowess import lowess

from .config import FeatureConfig
from .errors import DegenerateResultError
from .matrix import ExpressionMatrix


logger = logging.getLogger("scguide.features")


def _gene_mean_var(X) -> Tuple[np.ndarray, np.ndarray]:
    n = X.shape[0]
    mean = np.asarray(X.mean(axis=0)).ravel()
    sq = np.asarray(X.multiply(X).mean(axis=0)).ravel()
    var = (sq - mean ** 2) * (n / max(n - 1, 1))
    return mean, np.clip(var, 0.0, None)


def _standardized_variance(X, mean: np.ndarray, sd: np.ndarray, clip_max: float) -> np.ndarray:
    """Variance of min((x - mean) / sd, clip_max) per gene, zeros included, without densifying."""
    n = X.shape[0]
    Xc = X.tocsc()
    col = np.repeat(np.arange(Xc.shape[1]), np.diff(Xc.indptr))
    z = np.minimum((Xc.data - mean[col]) / sd[col], clip_max)
    n_nz = np.diff(Xc.indptr)
    z0 = np.minimum(-mean / sd, clip_max)
    s1 = np.bincount(col, weights=z, minlength=Xc.shape[1]) + (n - n_nz) * z0
    s2 = np.bincount(col, weights=z * z, minlength=Xc.shape[1]) + (n - n_nz) * z0 * z0
    return np.clip((s2 - s1 * s1 / n) / max(n - 1, 1), 0.0, None)


def variance_stabilizing_scores(counts: ExpressionMatrix, span: float = 0.3) -> pd.DataFrame:
    """Fit log10(variance) on log10(mean) and score each gene by its standardized variance.

    Constant genes get a score of 0 and no expected variance.
    """
    X = counts.X
    n = counts.n_cells
    mean, var = _gene_mean_var(X)
    not_const = var > 0
    if not not_const.any():
        raise DegenerateResultError("every gene has zero variance", stage="features")

    expected = np.full(counts.n_genes, np.nan)
    fit = lowess(
        np.log10(var[not_const]),
        np.log10(mean[not_const]),
        frac=float(span),
        it=0,
        return_sorted=False,
    )
    expected[not_const] = 10 ** fit

    score = np.zeros(counts.n_genes)
    idx = np.flatnonzero(not_const)
    sd = np.sqrt(expected[idx])
    sub = X[:, idx]
    score[idx] = _standardized_variance(sub, mean[idx], sd, clip_max=np.sqrt(n))

    return pd.DataFrame(
        {
            "n_cells": np.asarray((X > 0).sum(axis=0)).ravel(),
            "mean": mean,
            "variance": var,
            "variance_expected": expected,
            "variance_standardized": score,
        },
        index=counts.gene_ids,
    )


def rank_genes(scores: pd.Series) -> np.ndarray:
    """Positions sorted by descending score; equal scores keep their original order."""
    return np.argsort(-scores.to_numpy(), kind="stable")


def select_variable_features(
    counts: ExpressionMatrix,
    config: FeatureConfig = FeatureConfig(),
    gene_meta: Optional[pd.DataFrame] = None,
) -> Tuple[pd.Index, pd.DataFrame]:
    """Return the top-N variable gene ids and the updated gene annotations."""
    config.validate()
    stats = variance_stabilizing_scores(counts, span=config.span)
    order = rank_genes(stats["variance_standardized"])
    n_top = min(int(config.n_top_genes), counts.n_genes)
    rank = np.empty(counts.n_genes, dtype=np.int64)
    rank[order] = np.arange(counts.n_genes)
    stats["variable_rank"] = rank
    stats["highly_variable"] = rank < n_top
    selected = counts.gene_ids[order[:n_top]]

    if gene_meta is not None:
        out = gene_meta.reindex(counts.gene_ids).copy()
        for c in stats.columns:
            out[c] = stats[c]
    else:
        out = stats
    logger.info(
        "Selected %d / %d variable features (top: %s)",
        n_top,
        counts.n_genes,
        ", ".join(map(str, selected[:10])),
    )
    return selected, out
