import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd
import scipy.sparse as sp

from .config import ClusterConfig
from .errors import ConfigError, DegenerateResultError


logger = logging.getLogger("scguide.clustering")


@dataclass(frozen=True)
class ClusterResult:
    labels: pd.Series             # cell id -> integer cluster
    modularity: float
    resolution: float

    @property
    def n_clusters(self) -> int:
        return int(self.labels.nunique())

    def sizes(self) -> pd.Series:
        return self.labels.value_counts().sort_index()


def _symmetric_csr(A: sp.spmatrix) -> sp.csr_matrix:
    A = sp.csr_matrix(A, dtype=np.float64)
    if A.shape[0] != A.shape[1]:
        raise ConfigError(f"adjacency must be square, got {A.shape}", stage="cluster", param="graph")
    if A.nnz and A.data.min() < 0:
        raise ConfigError("edge weights must be non-negative", stage="cluster", param="graph")
    diff = A - A.T
    if diff.nnz and np.abs(diff.data).max() > 1e-10:
        raise ConfigError("adjacency must be symmetric", stage="cluster", param="graph")
    A.sort_indices()
    return A


def modularity(A: sp.csr_matrix, labels: np.ndarray, resolution: float = 1.0) -> float:
    """Newman modularity with a resolution factor on the null-model term."""
    A = sp.csr_matrix(A)
    two_m = float(A.sum())
    if two_m == 0:
        return 0.0
    labels = np.asarray(labels)
    k = np.asarray(A.sum(axis=1)).ravel()
    coo = A.tocoo()
    same = labels[coo.row] == labels[coo.col]
    internal = float(coo.data[same].sum())
    tot = np.bincount(labels, weights=k)
    return internal / two_m - resolution * float(np.sum((tot / two_m) ** 2))


def _local_moving(
    A: sp.csr_matrix, resolution: float, rng: np.random.Generator, max_passes: int = 1000
) -> Tuple[np.ndarray, bool]:
    """One Louvain level: move nodes to the neighboring community with the best gain.

    Returns the community of each node and whether any node moved.
    """
    n = A.shape[0]
    k = np.asarray(A.sum(axis=1)).ravel()
    two_m = float(k.sum())
    comm = np.arange(n)
    tot = k.copy()
    indptr, indices, data = A.indptr, A.indices, A.data
    moved_any = False
    for _ in range(max_passes):
        moved = 0
        for i in rng.permutation(n):
            start, end = indptr[i], indptr[i + 1]
            nbrs = indices[start:end]
            w = data[start:end]
            mask = nbrs != i
            nbrs, w = nbrs[mask], w[mask]
            ci = comm[i]
            tot[ci] -= k[i]
            if nbrs.size == 0:
                tot[ci] += k[i]
                continue
            links = {}
            for c, wt in zip(comm[nbrs], w):
                links[c] = links.get(c, 0.0) + wt
            best_c = ci
            best_gain = links.get(ci, 0.0) - resolution * tot[ci] * k[i] / two_m
            for c in sorted(links):
                gain = links[c] - resolution * tot[c] * k[i] / two_m
                if gain > best_gain + 1e-12:
                    best_gain = gain
                    best_c = c
            comm[i] = best_c
            tot[best_c] += k[i]
            if best_c != ci:
                moved += 1
        if moved == 0:
            break
        moved_any = True
    _, comm = np.unique(comm, return_inverse=True)
    return comm, moved_any


def _aggregate(A: sp.csr_matrix, comm: np.ndarray) -> sp.csr_matrix:
    n_c = int(comm.max()) + 1
    P = sp.csr_matrix((np.ones(A.shape[0]), (np.arange(A.shape[0]), comm)), shape=(A.shape[0], n_c))
    return sp.csr_matrix(P.T @ A @ P)


def _louvain_once(A: sp.csr_matrix, resolution: float, rng: np.random.Generator, max_levels: int) -> np.ndarray:
    labels = np.arange(A.shape[0])
    G = A
    for _ in range(max_levels):
        comm, moved = _local_moving(G, resolution, rng)
        labels = comm[labels]
        if not moved:
            break
        G = _aggregate(G, comm)
    return labels


def _group_singletons(A: sp.csr_matrix, labels: np.ndarray) -> np.ndarray:
    """Merge size-1 clusters into the cluster they share the most edge weight with."""
    labels = labels.copy()
    sizes = np.bincount(labels)
    for i in np.flatnonzero(sizes[labels] == 1):
        if sizes[labels[i]] != 1:
            continue
        start, end = A.indptr[i], A.indptr[i + 1]
        nbrs, w = A.indices[start:end], A.data[start:end]
        mask = nbrs != i
        if not mask.any():
            continue
        link = np.bincount(labels[nbrs[mask]], weights=w[mask], minlength=sizes.size)
        link[labels[i]] = -1.0
        target = int(np.argmax(link))
        if link[target] > 0:
            sizes[labels[i]] -= 1
            sizes[target] += 1
            labels[i] = target
    return labels


def _relabel_by_size(labels: np.ndarray) -> np.ndarray:
    """Renumber clusters 0..c-1 by decreasing size; equal sizes by first member."""
    uniq, first, inverse, counts = np.unique(labels, return_index=True, return_inverse=True, return_counts=True)
    order = np.lexsort((first, -counts))
    new_id = np.empty_like(order)
    new_id[order] = np.arange(order.size)
    return new_id[inverse]


def louvain(
    adjacency: sp.spmatrix,
    config: ClusterConfig = ClusterConfig(),
    seed: int = 0,
    cell_ids: Optional[pd.Index] = None,
) -> ClusterResult:
    """Partition a weighted undirected graph by Louvain modularity optimization.

    `n_starts` random node orders are drawn from one seeded generator and
    the partition with the highest modularity is kept, the earliest start
    winning ties. Results are reproducible for a fixed seed; different
    seeds may yield different (equally valid) partitions.

    On an AnnData object the library route is `sc.tl.louvain` / `sc.tl.leiden`
    with `adjacency=` set to this graph; this version keeps the restart and
    tie rules above under our own seed.
    """
    config.validate()
    A = _symmetric_csr(adjacency)
    n = A.shape[0]
    if n == 0:
        raise DegenerateResultError("graph has no nodes", stage="cluster")
    if cell_ids is None:
        cell_ids = pd.RangeIndex(n)
    elif len(cell_ids) != n:
        raise ConfigError(f"{len(cell_ids)} cell ids for a graph of {n} nodes", stage="cluster", param="cell_ids")
    resolution = float(config.resolution)
    rng = np.random.default_rng(seed)

    best_labels = np.arange(n)
    best_q = -np.inf
    for s in range(int(config.n_starts)):
        labels = _louvain_once(A, resolution, rng, max_levels=int(config.max_iter))
        q = modularity(A, labels, resolution)
        logger.debug("Louvain start %d: %d clusters, modularity %.5f", s, np.unique(labels).size, q)
        if q > best_q + 1e-12:
            best_q, best_labels = q, labels
    if config.group_singletons:
        best_labels = _group_singletons(A, best_labels)
    best_labels = _relabel_by_size(best_labels)
    q = modularity(A, best_labels, resolution)
    result = ClusterResult(pd.Series(best_labels, index=cell_ids, name="cluster"), q, resolution)
    logger.info(
        "Louvain: %d clusters at resolution %.3f (modularity %.4f, %d starts, seed %d)",
        result.n_clusters,
        resolution,
        q,
        config.n_starts,
        seed,
    )
    return result
