from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

from scguide.clustering import louvain, modularity
from scguide.config import ClusterConfig
from scguide.errors import ConfigError


def _cliques(sizes, bridge=0.0):
    n = sum(sizes)
    A = np.zeros((n, n))
    start = 0
    starts = []
    for s in sizes:
        A[start:start + s, start:start + s] = 1.0
        starts.append(start)
        start += s
    np.fill_diagonal(A, 0)
    if bridge:
        for a, b in zip(starts, starts[1:]):
            A[a, b] = A[b, a] = bridge
    return sp.csr_matrix(A)


def test_every_cell_gets_one_label_and_cliques_are_found():
    A = _cliques([12, 10, 8], bridge=0.1)
    res = louvain(A, ClusterConfig(resolution=0.5), seed=0)
    assert len(res.labels) == 30
    assert res.labels.notna().all()
    assert res.n_clusters == 3
    # largest cluster is labeled 0
    assert (res.labels.iloc[:12] == 0).all()
    assert (res.labels.iloc[12:22] == 1).all()
    assert (res.labels.iloc[22:] == 2).all()


def test_cluster_count_non_decreasing_in_resolution():
    A = _cliques([10, 10, 10, 10], bridge=1.0)
    counts = [louvain(A, ClusterConfig(resolution=r, group_singletons=False), seed=1).n_clusters for r in (0.01, 0.5, 1.0, 5.0)]
    assert counts == sorted(counts)
    assert counts[0] < counts[-1]


def test_disconnected_components_never_merge():
    A = _cliques([6, 6, 6])
    for r in (0.2, 0.5, 1.0, 5.0):
        assert louvain(A, ClusterConfig(resolution=r), seed=0).n_clusters >= 3


def test_deterministic_for_fixed_seed():
    rng = np.random.default_rng(9)
    M = (rng.random((50, 50)) < 0.15).astype(float)
    A = sp.csr_matrix(np.triu(M, 1) + np.triu(M, 1).T)
    a = louvain(A, ClusterConfig(resolution=1.0), seed=3)
    b = louvain(A, ClusterConfig(resolution=1.0), seed=3)
    pd.testing.assert_series_equal(a.labels, b.labels)
    assert a.modularity == b.modularity


def test_modularity_two_disjoint_edges():
    A = sp.csr_matrix(np.array([[0, 1, 0, 0], [1, 0, 0, 0], [0, 0, 0, 1], [0, 0, 1, 0]], dtype=float))
    assert modularity(A, np.array([0, 0, 1, 1])) == pytest.approx(0.5)
    assert modularity(A, np.array([0, 0, 0, 0])) == pytest.approx(0.0)


def test_singletons_grouped():
    # at this resolution only the pendant node 10 joins another node
    A = _cliques([5, 5]).toarray()
    A = np.pad(A, ((0, 1), (0, 1)))
    A[10, 0] = A[0, 10] = 0.05
    A = sp.csr_matrix(A)
    alone = louvain(A, ClusterConfig(resolution=5.0, group_singletons=False), seed=0)
    assert alone.n_clusters == 10
    assert alone.sizes().min() == 1
    grouped = louvain(A, ClusterConfig(resolution=5.0, group_singletons=True), seed=0)
    assert grouped.sizes().min() > 1
    assert grouped.labels.iloc[10] == grouped.labels.iloc[0]


def test_cell_ids_and_invalid_input():
    A = _cliques([3, 3])
    ids = pd.Index([f"cell{i}" for i in range(6)])
    res = louvain(A, seed=0, cell_ids=ids)
    assert list(res.labels.index) == list(ids)
    with pytest.raises(ConfigError):
        louvain(A, ClusterConfig(resolution=-1.0))
    with pytest.raises(ConfigError):
        louvain(sp.csr_matrix(np.array([[0, 1.0], [0, 0]])))
