import logging
import warnings
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from .config import ScaleConfig
from .errors import ConfigError, DegenerateResultError, NumericInstabilityWarning
from .matrix import ExpressionMatrix


logger = logging.getLogger("scguide.scale")


@dataclass(frozen=True)
class ScaledMatrix:
    """Dense cells x genes z-scores with the statistics used to produce them."""

    values: np.ndarray
    cell_ids: pd.Index
    gene_ids: pd.Index
    mean: np.ndarray
    std: np.ndarray

    @property
    def zero_variance(self) -> np.ndarray:
        return self.std == 0

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.values, index=self.cell_ids, columns=self.gene_ids)


def regress_out(Y: np.ndarray, covariates: np.ndarray) -> np.ndarray:
    """Residuals of an ordinary least squares fit of every column of Y on [1, covariates]."""
    design = np.column_stack([np.ones(Y.shape[0]), covariates])
    beta, *_ = np.linalg.lstsq(design, Y, rcond=None)
    return Y - design @ beta


def scale_data(
    normalized: ExpressionMatrix,
    features: Optional[Sequence] = None,
    config: ScaleConfig = ScaleConfig(),
    cell_meta: Optional[pd.DataFrame] = None,
) -> ScaledMatrix:
    """Center and scale each gene to unit variance, optionally after regressing out covariates.

    Zero-variance genes are zero-filled and reported with a
    NumericInstabilityWarning rather than divided by zero.
    """
    config.validate()
    mat = normalized
    if features is not None and not config.use_all_genes:
        mat = normalized.subset_genes(pd.Index(features))
    if mat.n_genes == 0:
        raise DegenerateResultError("no genes left to scale", stage="scale", param="features")
    if mat.n_cells < 2:
        raise DegenerateResultError("at least two cells are needed to scale", stage="scale")

    Y = mat.to_dense().astype(np.float64)
    if config.regress_out:
        if cell_meta is None:
            raise ConfigError("covariates requested but no cell annotations given", stage="scale", param="regress_out")
        missing = [c for c in config.regress_out if c not in cell_meta.columns]
        if missing:
            raise ConfigError(f"unknown cell annotation(s) {missing}", stage="scale", param="regress_out")
        cov = cell_meta.reindex(mat.cell_ids)[list(config.regress_out)].to_numpy(dtype=np.float64)
        if np.isnan(cov).any():
            raise ConfigError("covariates contain missing values", stage="scale", param="regress_out")
        Y = regress_out(Y, cov)
        logger.info("Regressed out %s from %d genes", ", ".join(config.regress_out), mat.n_genes)

    mean = Y.mean(axis=0)
    std = Y.std(axis=0, ddof=1)
    # residuals of constant columns carry only rounding noise
    std[std <= 1e-12 * np.maximum(1.0, np.abs(mean))] = 0.0
    zero = std == 0
    Z = np.zeros_like(Y)
    ok = ~zero
    Z[:, ok] = (Y[:, ok] - mean[ok]) / std[ok]
    if zero.any():
        names = list(mat.gene_ids[zero][:5])
        msg = f"{int(zero.sum())} zero-variance gene(s) left at 0 (e.g. {names})"
        logger.warning(msg)
        warnings.warn(msg, NumericInstabilityWarning, stacklevel=2)
    if config.max_value is not None:
        np.clip(Z, None, float(config.max_value), out=Z)
    logger.info("Scaled %d cells x %d genes", mat.n_cells, mat.n_genes)
    return ScaledMatrix(Z, mat.cell_ids, mat.gene_ids, mean, std)
