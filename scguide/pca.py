import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA

from .config import PCAConfig
from .errors import DegenerateResultError
from .scale import ScaledMatrix


logger = logging.getLogger("scguide.pca")


@dataclass(frozen=True)
class ReducedEmbedding:
    scores: np.ndarray            # cells x k
    loadings: np.ndarray          # genes x k
    mean: np.ndarray              # per-gene centering used by the projection
    explained_variance: np.ndarray
    explained_variance_ratio: np.ndarray
    cell_ids: pd.Index
    gene_ids: pd.Index

    @property
    def n_comps(self) -> int:
        return self.scores.shape[1]

    @property
    def component_names(self):
        return [f"PC_{i + 1}" for i in range(self.n_comps)]

    def scores_frame(self, n_dims=None) -> pd.DataFrame:
        k = self.n_comps if n_dims is None else int(n_dims)
        return pd.DataFrame(self.scores[:, :k], index=self.cell_ids, columns=self.component_names[:k])

    def variance_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "component": self.component_names,
                "explained_variance": self.explained_variance,
                "explained_variance_ratio": self.explained_variance_ratio,
            }
        )


def run_pca(scaled: ScaledMatrix, config: PCAConfig = PCAConfig()) -> ReducedEmbedding:
    """Project cells onto the top principal components of the scaled matrix.

    Full SVD is deterministic for a given input. Components whose singular
    values tie are defined only up to a rotation inside their shared
    subspace; signs are fixed by scikit-learn's svd_flip convention.
    """
    config.validate()
    n, p = scaled.values.shape
    max_k = min(n, p)
    if max_k < 1:
        raise DegenerateResultError("empty scaled matrix", stage="pca")
    k = int(config.n_comps)
    if k > max_k:
        logger.warning("pca.n_comps=%d exceeds min(n_cells, n_genes)=%d; using %d", k, max_k, max_k)
        k = max_k
    model = PCA(n_components=k, svd_solver="full")
    scores = model.fit_transform(scaled.values)
    emb = ReducedEmbedding(
        scores=scores,
        loadings=model.components_.T,
        mean=model.mean_,
        explained_variance=model.explained_variance_,
        explained_variance_ratio=model.explained_variance_ratio_,
        cell_ids=scaled.cell_ids,
        gene_ids=scaled.gene_ids,
    )
    logger.info(
        "PCA: %d components, first 5 explain %.1f%% of variance",
        k,
        100.0 * float(np.sum(emb.explained_variance_ratio[:5])),
    )
    return emb


def reconstruct(embedding: ReducedEmbedding, n_comps=None) -> np.ndarray:
    """Rank-k approximation of the scaled matrix from the first `n_comps` components."""
    k = embedding.n_comps if n_comps is None else int(n_comps)
    return embedding.scores[:, :k] @ embedding.loadings[:, :k].T + embedding.mean


def top_loadings(embedding: ReducedEmbedding, n_genes: int = 5, n_comps: int = 5) -> pd.DataFrame:
    """Genes with the most positive and most negative loadings on each component."""
    rows = []
    for j in range(min(n_comps, embedding.n_comps)):
        col = embedding.loadings[:, j]
        order = np.argsort(col, kind="stable")
        for direction, idx in (("positive", order[::-1][:n_genes]), ("negative", order[:n_genes])):
            for r, i in enumerate(idx):
                rows.append(
                    {
                        "component": f"PC_{j + 1}",
                        "direction": direction,
                        "rank": r + 1,
                        "gene": embedding.gene_ids[i],
                        "loading": float(col[i]),
                    }
                )
    return pd.DataFrame(rows, columns=["component", "direction", "rank", "gene", "loading"])
