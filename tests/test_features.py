from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from scguide.config import FeatureConfig
from scguide.errors import DegenerateResultError
from scguide.features import rank_genes, select_variable_features, variance_stabilizing_scores

from conftest import small_matrix


def test_output_size_and_subset(block_counts):
    matrix, _ = block_counts
    sel, meta = select_variable_features(matrix, FeatureConfig(n_top_genes=100))
    assert len(sel) == 100
    assert set(sel) <= set(matrix.gene_ids)
    assert int(meta["highly_variable"].sum()) == 100
    sel_all, _ = select_variable_features(matrix, FeatureConfig(n_top_genes=2000))
    assert len(sel_all) == matrix.n_genes


def test_increasing_n_is_monotonic(block_counts):
    matrix, _ = block_counts
    small, _ = select_variable_features(matrix, FeatureConfig(n_top_genes=50))
    large, _ = select_variable_features(matrix, FeatureConfig(n_top_genes=200))
    assert set(small) <= set(large)
    assert list(large[:50]) == list(small)


def test_bimodal_genes_rank_above_poisson_background():
    rng = np.random.default_rng(7)
    rates = np.logspace(-1, 1, 400)
    dense = rng.poisson(np.broadcast_to(rates, (100, 400))).astype(float)
    half = np.arange(100) < 50
    markers = np.where(half[:, None], rng.poisson(8.0, size=(100, 10)), rng.poisson(0.5, size=(100, 10)))
    m = small_matrix(np.hstack([dense, markers]))
    sel, meta = select_variable_features(m, FeatureConfig(n_top_genes=10))
    marker_ids = {f"g{j}" for j in range(400, 410)}
    assert len(set(sel) & marker_ids) >= 9
    assert meta.loc[list(marker_ids), "variance_standardized"].min() > 2.0


def test_constant_gene_scores_zero():
    rng = np.random.default_rng(1)
    dense = rng.poisson(2.0, size=(60, 20)).astype(float)
    dense[:, 3] = 4.0
    scores = variance_stabilizing_scores(small_matrix(dense))
    assert scores.iloc[3]["variance_standardized"] == 0.0
    assert np.isnan(scores.iloc[3]["variance_expected"])
    assert (scores["variance_standardized"] >= 0).all()


def test_all_constant_is_degenerate():
    with pytest.raises(DegenerateResultError):
        select_variable_features(small_matrix(np.ones((10, 4))))


def test_rank_ties_keep_gene_order():
    order = rank_genes(pd.Series([1.0, 3.0, 1.0, 3.0, 2.0]))
    assert list(order) == [1, 3, 4, 0, 2]
