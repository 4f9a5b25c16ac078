from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from scguide.config import MarkerConfig
from scguide.errors import ConfigError
from scguide.markers import MARKER_COLUMNS, ROC_COLUMNS, find_all_markers, find_markers, top_markers

from conftest import small_matrix


def _two_groups(seed=0, n=12, n_genes=30):
    """Gene g0 is high in the first n cells and absent from the rest; g1 the reverse."""
    rng = np.random.default_rng(seed)
    X = np.log1p(rng.poisson(1.0, size=(2 * n, n_genes)).astype(float))
    X[:n, 0] = 3.0 + rng.uniform(0, 0.1, size=n)
    X[n:, 0] = 0.0
    X[:n, 1] = 0.0
    X[n:, 1] = 2.5
    m = small_matrix(X)
    return m, list(m.cell_ids[:n]), list(m.cell_ids[n:])


def test_exclusive_gene_ranks_first():
    m, a, b = _two_groups()
    res = find_markers(m, a, b)
    assert list(res.columns) == MARKER_COLUMNS
    top = res.iloc[0]
    assert top["gene"] == "g0"
    assert top["pct_1"] == 1.0
    assert top["pct_2"] == 0.0
    assert res.sort_values("avg_log2FC", ascending=False).iloc[0]["gene"] == "g0"
    # only_pos drops the gene that is higher in the second group
    assert "g1" not in set(res["gene"])


def test_negative_markers_kept_when_only_pos_off():
    m, a, b = _two_groups()
    res = find_markers(m, a, b, MarkerConfig(only_pos=False))
    row = res.set_index("gene").loc["g1"]
    assert row["avg_log2FC"] < 0
    assert row["pct_1"] == 0.0 and row["pct_2"] == 1.0


def test_group2_defaults_to_remaining_cells():
    m, a, b = _two_groups()
    pd.testing.assert_frame_equal(find_markers(m, a), find_markers(m, a, b))


def test_table_sorted_and_bonferroni_over_all_genes():
    m, a, b = _two_groups()
    res = find_markers(m, a, b, MarkerConfig(min_pct=0.0, logfc_threshold=0.0))
    assert res["p_val"].is_monotonic_increasing
    np.testing.assert_allclose(res["p_val_adj"], np.minimum(res["p_val"] * m.n_genes, 1.0))


def test_fdr_adjustment():
    m, a, b = _two_groups()
    res = find_markers(m, a, b, MarkerConfig(p_adjust="fdr_bh", min_pct=0.0, logfc_threshold=0.0))
    assert (res["p_val_adj"] >= res["p_val"] - 1e-15).all()
    assert (res["p_val_adj"] <= 1.0).all()
    assert res["p_val_adj"].is_monotonic_increasing


def test_t_and_roc_tests():
    m, a, b = _two_groups()
    t = find_markers(m, a, b, MarkerConfig(test="t"))
    assert t.iloc[0]["gene"] == "g0"
    roc = find_markers(m, a, b, MarkerConfig(test="roc"))
    assert list(roc.columns) == ROC_COLUMNS
    assert roc.iloc[0]["gene"] == "g0"
    assert roc.iloc[0]["auc"] == pytest.approx(1.0)
    assert roc.iloc[0]["power"] == pytest.approx(1.0)


def test_min_pct_filter():
    m, a, b = _two_groups()
    X = m.to_dense()
    X[:, 2] = 0.0
    X[0, 2] = 5.0
    sparse_gene = small_matrix(X)
    res = find_markers(sparse_gene, a, b, MarkerConfig(min_pct=0.25, logfc_threshold=0.0))
    assert "g2" not in set(res["gene"])
    res = find_markers(sparse_gene, a, b, MarkerConfig(min_pct=0.0, logfc_threshold=0.0))
    assert "g2" in set(res["gene"])


def test_invalid_groups():
    m, a, b = _two_groups()
    with pytest.raises(ConfigError, match="disjoint"):
        find_markers(m, a, a[:3] + b)
    with pytest.raises(ConfigError):
        find_markers(m, ["nope"], b)
    with pytest.raises(ConfigError):
        find_markers(m, [], b)
    with pytest.raises(ConfigError):
        find_markers(m, a, b, MarkerConfig(test="bogus"))


def _three_clusters(seed=1, per=10, n_genes=40):
    rng = np.random.default_rng(seed)
    n = 3 * per
    X = np.log1p(rng.poisson(0.5, size=(n, n_genes)).astype(float))
    labels = np.repeat([0, 1, 2], per)
    for c in range(3):
        X[labels == c, c] = 3.0 + rng.uniform(0, 0.2, size=per)
        X[labels != c, c] = 0.0
    m = small_matrix(X)
    return m, pd.Series(labels, index=m.cell_ids, name="cluster")


def test_find_all_markers_one_vs_rest():
    m, labels = _three_clusters()
    res = find_all_markers(m, labels)
    assert list(res.columns) == ["gene", "cluster"] + MARKER_COLUMNS[1:]
    assert list(pd.unique(res["cluster"])) == [0, 1, 2]
    for c in range(3):
        assert res[res["cluster"] == c].iloc[0]["gene"] == f"g{c}"


def test_find_all_markers_same_for_any_n_jobs():
    m, labels = _three_clusters()
    serial = find_all_markers(m, labels, MarkerConfig(n_jobs=1))
    parallel = find_all_markers(m, labels, MarkerConfig(n_jobs=2))
    pd.testing.assert_frame_equal(serial, parallel)


def test_find_all_markers_needs_two_clusters():
    m, labels = _three_clusters()
    with pytest.raises(ConfigError):
        find_all_markers(m, pd.Series(0, index=m.cell_ids))


def test_top_markers_per_cluster():
    m, labels = _three_clusters()
    top = top_markers(find_all_markers(m, labels), n=1)
    assert list(top["cluster"]) == [0, 1, 2]
    assert list(top["gene"]) == ["g0", "g1", "g2"]
