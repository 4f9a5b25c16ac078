import logging

import numpy as np
import scipy.sparse as sp

from .config import NormalizeConfig
from .matrix import ExpressionMatrix


logger = logging.getLogger("scguide.normalize")


def log_normalize(counts: ExpressionMatrix, config: NormalizeConfig = NormalizeConfig()) -> ExpressionMatrix:
    """ln(1 + count / cell_total * scale_factor), computed on the non-zero entries only.

    Cells with a zero total are left as all-zero rows.
    """
    config.validate()
    X = counts.X.astype(np.float64)
    totals = np.asarray(X.sum(axis=1)).ravel()
    inv = np.zeros_like(totals)
    nz = totals > 0
    inv[nz] = float(config.scale_factor) / totals[nz]
    if (~nz).any():
        logger.warning("%d cells have zero total counts; left unnormalized", int((~nz).sum()))
    Y = sp.diags(inv) @ X
    Y = sp.csr_matrix(Y)
    Y.data = np.log1p(Y.data)
    logger.info("Log-normalized %d cells (scale_factor=%g)", counts.n_cells, config.scale_factor)
    return counts.with_values(Y)
