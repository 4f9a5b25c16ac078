import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np
import pandas as pd
import scipy.sparse as sp
from sklearn.neighbors import NearestNeighbors

from .config import NeighborConfig
from .errors import ConfigError, DegenerateResultError
from .pca import ReducedEmbedding


logger = logging.getLogger("scguide.neighbors")

# extra candidates fetched so ties at the K-th neighbor can be re-sorted by index
_TIE_PAD = 8


@dataclass(frozen=True)
class NeighborGraph:
    knn_indices: np.ndarray       # cells x K, column 0 is the cell itself
    knn_distances: np.ndarray     # cells x K
    snn: sp.csr_matrix            # symmetric Jaccard weights, zero diagonal
    cell_ids: pd.Index

    @property
    def n_neighbors(self) -> int:
        return self.knn_indices.shape[1]

    def knn_adjacency(self) -> sp.csr_matrix:
        """Binary cells x cells matrix, row i marking the neighbor set of cell i."""
        n, k = self.knn_indices.shape
        rows = np.repeat(np.arange(n), k)
        return sp.csr_matrix((np.ones(n * k), (rows, self.knn_indices.ravel())), shape=(n, n))


def nearest_neighbors(X: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
    """Each cell followed by its k-1 nearest other cells by Euclidean distance.

    Equal distances are ordered by ascending cell index.
    """
    n = X.shape[0]
    n_other = k - 1
    n_fetch = min(n - 1, n_other + _TIE_PAD)
    nn = NearestNeighbors(n_neighbors=n_fetch, metric="euclidean")
    nn.fit(X)
    dist, ind = nn.kneighbors()  # query points themselves are excluded
    order = np.lexsort((ind, dist), axis=-1)
    ind = np.take_along_axis(ind, order, axis=1)[:, :n_other]
    dist = np.take_along_axis(dist, order, axis=1)[:, :n_other]
    self_idx = np.arange(n)[:, None]
    return (
        np.hstack([self_idx, ind]).astype(np.int64),
        np.hstack([np.zeros((n, 1)), dist]),
    )


def jaccard_weights(knn_indices: np.ndarray) -> sp.csr_matrix:
    """Jaccard index of neighbor sets for every symmetrized KNN pair."""
    n, k = knn_indices.shape
    rows = np.repeat(np.arange(n), k)
    M = sp.csr_matrix((np.ones(n * k), (rows, knn_indices.ravel())), shape=(n, n))
    pattern = ((M + M.T) > 0).astype(np.float64).tocsr()
    pattern.setdiag(0)
    pattern.eliminate_zeros()
    shared = (M @ M.T).multiply(pattern).tocsr()
    shared.eliminate_zeros()
    W = shared.copy()
    W.data = shared.data / (2.0 * k - shared.data)
    return W


def build_snn_graph(embedding: ReducedEmbedding, config: NeighborConfig = NeighborConfig()) -> NeighborGraph:
    config.validate()
    n_dims = int(config.n_dims)
    if n_dims > embedding.n_comps:
        raise ConfigError(
            f"requested {n_dims} dimensions but the embedding has {embedding.n_comps}",
            stage="neighbors",
            param="n_dims",
        )
    n = embedding.scores.shape[0]
    if n < 2:
        raise DegenerateResultError("at least two cells are needed for a neighbor graph", stage="neighbors")
    k = int(config.n_neighbors)
    if k > n:
        logger.warning("neighbors.n_neighbors=%d exceeds %d cells; using %d", k, n, n)
        k = n
    X = np.ascontiguousarray(embedding.scores[:, :n_dims])
    ind, dist = nearest_neighbors(X, k)
    W = jaccard_weights(ind)
    if config.prune_snn > 0:
        W.data[W.data < config.prune_snn] = 0.0
        W.eliminate_zeros()
    logger.info(
        "SNN graph: %d cells, K=%d on %d dims, %d edges after pruning at %.4f",
        n,
        k,
        n_dims,
        W.nnz // 2,
        config.prune_snn,
    )
    return NeighborGraph(ind, dist, W, embedding.cell_ids)
