import logging
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import scipy.sparse as sp
from joblib import Parallel, delayed
from scipy import stats
from statsmodels.stats.multitest import multipletests

from .config import MarkerConfig
from .errors import ConfigError
from .matrix import ExpressionMatrix


logger = logging.getLogger("scguide.markers")

MARKER_COLUMNS = ["gene", "p_val", "avg_log2FC", "pct_1", "pct_2", "p_val_adj"]
ROC_COLUMNS = ["gene", "auc", "power", "avg_log2FC", "pct_1", "pct_2"]


def _expm1(X: sp.csr_matrix) -> sp.csr_matrix:
    E = X.copy()
    E.data = np.expm1(E.data)
    return E


def _group_summaries(X: sp.csr_matrix, labels: np.ndarray, n_groups: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Per-group sums of expm1(x), detected-cell counts and sizes, from one pass over X."""
    n = X.shape[0]
    G = sp.csr_matrix((np.ones(n), (labels, np.arange(n))), shape=(n_groups, n))
    sums = np.asarray((G @ _expm1(X)).todense())
    detected = np.asarray((G @ (X > 0).astype(np.float64)).todense())
    sizes = np.bincount(labels, minlength=n_groups).astype(np.float64)
    return sums, detected, sizes


def _adjust(p: np.ndarray, method: str, n_total_genes: int) -> np.ndarray:
    if p.size == 0:
        return p
    if method == "bonferroni":
        return np.minimum(p * n_total_genes, 1.0)
    return multipletests(p, method="fdr_bh")[1]


def _run_test(
    X: sp.csr_matrix,
    pos1: np.ndarray,
    pos2: np.ndarray,
    sum1: np.ndarray,
    det1: np.ndarray,
    sum2: np.ndarray,
    det2: np.ndarray,
    gene_ids: pd.Index,
    config: MarkerConfig,
) -> pd.DataFrame:
    n1, n2 = float(pos1.size), float(pos2.size)
    pct1 = det1 / n1
    pct2 = det2 / n2
    fc = np.log2(sum1 / n1 + 1.0) - np.log2(sum2 / n2 + 1.0)

    keep = np.maximum(pct1, pct2) >= config.min_pct
    if config.only_pos:
        keep &= fc >= config.logfc_threshold
    else:
        keep &= np.abs(fc) >= config.logfc_threshold
    genes = np.flatnonzero(keep)
    columns = ROC_COLUMNS if config.test == "roc" else MARKER_COLUMNS
    if genes.size == 0:
        return pd.DataFrame(columns=columns)

    X1 = np.asarray(X[pos1][:, genes].todense())
    X2 = np.asarray(X[pos2][:, genes].todense())
    out = pd.DataFrame(
        {
            "gene": gene_ids[genes],
            "avg_log2FC": fc[genes],
            "pct_1": pct1[genes],
            "pct_2": pct2[genes],
        }
    )
    if config.test == "roc":
        u = stats.mannwhitneyu(X1, X2, alternative="two-sided", axis=0).statistic
        auc = np.asarray(u, dtype=np.float64) / (n1 * n2)
        out["auc"] = auc
        out["power"] = 2.0 * np.abs(auc - 0.5)
        out = out.sort_values(["power", "avg_log2FC"], ascending=[False, False], kind="mergesort")
        return out[columns].reset_index(drop=True)

    if config.test == "wilcox":
        p = stats.mannwhitneyu(X1, X2, alternative="two-sided", axis=0).pvalue
    else:
        p = stats.ttest_ind(X1, X2, equal_var=False, axis=0).pvalue
    p = np.nan_to_num(np.asarray(p, dtype=np.float64), nan=1.0)
    out["p_val"] = p
    out["p_val_adj"] = _adjust(p, config.p_adjust, X.shape[1])
    out = out.sort_values(["p_val", "avg_log2FC"], ascending=[True, False], kind="mergesort")
    return out[columns].reset_index(drop=True)


def _positions(ids: pd.Index, cells: Sequence, what: str) -> np.ndarray:
    pos = ids.get_indexer(pd.Index(cells))
    if (pos < 0).any():
        raise ConfigError(f"{int((pos < 0).sum())} unknown cell id(s)", stage="markers", param=what)
    if pos.size == 0:
        raise ConfigError("group is empty", stage="markers", param=what)
    return pos


def find_markers(
    normalized: ExpressionMatrix,
    group1: Sequence,
    group2: Optional[Sequence] = None,
    config: MarkerConfig = MarkerConfig(),
) -> pd.DataFrame:
    """Differential expression of `group1` against `group2` (default: every other cell).

    Genes must be detected in at least `min_pct` of one group and pass the
    log2 fold-change threshold before testing.
    """
    config.validate()
    pos1 = _positions(normalized.cell_ids, group1, "group1")
    if group2 is None:
        mask = np.ones(normalized.n_cells, dtype=bool)
        mask[pos1] = False
        pos2 = np.flatnonzero(mask)
        if pos2.size == 0:
            raise ConfigError("group1 covers every cell; nothing to compare against", stage="markers", param="group2")
    else:
        pos2 = _positions(normalized.cell_ids, group2, "group2")
    if np.intersect1d(pos1, pos2).size:
        raise ConfigError("groups must be disjoint", stage="markers", param="group2")

    X = normalized.X
    labels = np.full(normalized.n_cells, 2)
    labels[pos1] = 0
    labels[pos2] = 1
    sums, detected, _ = _group_summaries(X, labels, 3)
    return _run_test(X, pos1, pos2, sums[0], detected[0], sums[1], detected[1], normalized.gene_ids, config)


def find_all_markers(
    normalized: ExpressionMatrix,
    clusters: pd.Series,
    config: MarkerConfig = MarkerConfig(),
) -> pd.DataFrame:
    """One-vs-rest markers for every cluster, concatenated in cluster order.

    Group sums are computed once for all clusters; the per-cluster tests run
    through joblib and give the same table for any `n_jobs`.
    """
    config.validate()
    clusters = clusters.reindex(normalized.cell_ids)
    if clusters.isna().any():
        raise ConfigError(f"{int(clusters.isna().sum())} cells have no cluster", stage="markers", param="clusters")
    codes, uniques = pd.factorize(clusters, sort=True)
    if uniques.size < 2:
        raise ConfigError("need at least two clusters to find markers", stage="markers", param="clusters")
    X = normalized.X
    sums, detected, sizes = _group_summaries(X, codes, uniques.size)
    total_sum = sums.sum(axis=0)
    total_det = detected.sum(axis=0)

    def _one(c: int) -> pd.DataFrame:
        pos1 = np.flatnonzero(codes == c)
        pos2 = np.flatnonzero(codes != c)
        res = _run_test(
            X, pos1, pos2,
            sums[c], detected[c],
            total_sum - sums[c], total_det - detected[c],
            normalized.gene_ids, config,
        )
        res.insert(1, "cluster", uniques[c])
        return res

    parts = Parallel(n_jobs=int(config.n_jobs))(delayed(_one)(c) for c in range(uniques.size))
    for c, part in zip(uniques, parts):
        logger.info("Cluster %s: %d markers", c, len(part))
    non_empty = [p for p in parts if len(p)]
    if not non_empty:
        return pd.DataFrame(columns=parts[0].columns)
    return pd.concat(non_empty, ignore_index=True)


def top_markers(table: pd.DataFrame, n: int = 2, by: str = "avg_log2FC") -> pd.DataFrame:
    """Top `n` rows per cluster by `by`, the usual heatmap / summary selection."""
    if table.empty:
        return table
    return (
        table.sort_values(["cluster", by], ascending=[True, False], kind="mergesort")
        .groupby("cluster", sort=True)
        .head(n)
        .reset_index(drop=True)
    )
