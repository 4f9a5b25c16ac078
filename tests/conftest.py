from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

from scguide.io import write_10x_mtx
from scguide.logging_utils import teardown_logger
from scguide.matrix import ExpressionMatrix


BLOCK_GENES = 50


def make_block_counts(n_cells=100, n_genes=500, n_blocks=3, seed=0, base_rate=1.5, block_rate=12.0):
    """Poisson counts where block b over-expresses genes [b*50, (b+1)*50)."""
    rng = np.random.default_rng(seed)
    truth = np.arange(n_cells) % n_blocks
    lam = np.full((n_cells, n_genes), base_rate)
    for b in range(n_blocks):
        lam[np.ix_(truth == b, np.arange(b * BLOCK_GENES, (b + 1) * BLOCK_GENES))] = block_rate
    counts = rng.poisson(lam).astype(np.float64)
    cells = pd.Index([f"CELL{i:04d}" for i in range(n_cells)])
    genes = pd.Index([f"GENE{j}" for j in range(n_genes)])
    return ExpressionMatrix(sp.csr_matrix(counts), cells, genes), pd.Series(truth, index=cells)


@pytest.fixture(autouse=True)
def _reset_logger():
    yield
    teardown_logger()


@pytest.fixture
def block_counts():
    return make_block_counts()


@pytest.fixture
def tenx_dir(tmp_path, block_counts):
    matrix, _ = block_counts
    d = tmp_path / "filtered_feature_bc_matrix"
    write_10x_mtx(matrix, str(d))
    return d


def small_matrix(dense, cells=None, genes=None) -> ExpressionMatrix:
    dense = np.asarray(dense, dtype=np.float64)
    cells = cells if cells is not None else [f"c{i}" for i in range(dense.shape[0])]
    genes = genes if genes is not None else [f"g{j}" for j in range(dense.shape[1])]
    return ExpressionMatrix(sp.csr_matrix(dense), pd.Index(cells), pd.Index(genes))
