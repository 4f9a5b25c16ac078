import logging

import numpy as np
import pandas as pd

from .config import UMAPConfig
from .errors import ConfigError, DegenerateResultError
from .pca import ReducedEmbedding


logger = logging.getLogger("scguide.embedding")


def run_umap(embedding: ReducedEmbedding, config: UMAPConfig = UMAPConfig(), seed: int = 42) -> pd.DataFrame:
    """2-D UMAP of the first `n_dims` principal components, for plotting only."""
    import umap

    config.validate()
    if config.n_dims > embedding.n_comps:
        raise ConfigError(
            f"requested {config.n_dims} dimensions but the embedding has {embedding.n_comps}",
            stage="umap",
            param="n_dims",
        )
    n = embedding.scores.shape[0]
    if n < 3:
        raise DegenerateResultError("UMAP needs at least three cells", stage="umap")
    n_neighbors = min(int(config.n_neighbors), n - 1)
    if n_neighbors < config.n_neighbors:
        logger.warning("umap.n_neighbors=%d exceeds %d cells; using %d", config.n_neighbors, n, n_neighbors)
    reducer = umap.UMAP(
        n_neighbors=n_neighbors,
        n_components=2,
        min_dist=float(config.min_dist),
        metric=config.metric,
        random_state=int(seed),
    )
    coords = reducer.fit_transform(np.ascontiguousarray(embedding.scores[:, : config.n_dims]))
    logger.info("UMAP: %d cells embedded from %d dims (n_neighbors=%d)", n, config.n_dims, n_neighbors)
    return pd.DataFrame(coords, index=embedding.cell_ids, columns=["UMAP_1", "UMAP_2"])
