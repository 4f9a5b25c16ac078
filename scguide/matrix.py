from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd
import scipy.sparse as sp


IndexLike = Union[Sequence, np.ndarray, pd.Index]


@dataclass(frozen=True)
class ExpressionMatrix:
    """Cells x genes sparse matrix with its row and column identifiers.

    Instances are never modified in place: every pipeline stage derives a
    new matrix, and per-cell / per-gene annotations live in separate
    DataFrames indexed by `cell_ids` / `gene_ids`.
    """

    X: sp.csr_matrix
    cell_ids: pd.Index
    gene_ids: pd.Index

    def __post_init__(self):
        X = self.X
        if not isinstance(X, sp.csr_matrix):
            X = sp.csr_matrix(X)
            object.__setattr__(self, "X", X)
        object.__setattr__(self, "cell_ids", pd.Index(self.cell_ids, name="cell"))
        object.__setattr__(self, "gene_ids", pd.Index(self.gene_ids, name="gene"))
        if X.shape != (len(self.cell_ids), len(self.gene_ids)):
            raise ValueError(
                f"Matrix shape {X.shape} does not match {len(self.cell_ids)} cells x {len(self.gene_ids)} genes"
            )
        if not self.cell_ids.is_unique:
            raise ValueError("cell_ids must be unique")
        if not self.gene_ids.is_unique:
            raise ValueError("gene_ids must be unique")

    @property
    def shape(self):
        return self.X.shape

    @property
    def n_cells(self) -> int:
        return self.X.shape[0]

    @property
    def n_genes(self) -> int:
        return self.X.shape[1]

    def _positions(self, index: pd.Index, keys: IndexLike) -> np.ndarray:
        keys = np.asarray(keys)
        if keys.dtype == bool:
            if keys.shape[0] != len(index):
                raise ValueError(f"Boolean mask of length {keys.shape[0]} does not match {len(index)} entries")
            return np.flatnonzero(keys)
        pos = index.get_indexer(keys)
        if (pos < 0).any():
            missing = list(keys[pos < 0][:5])
            raise KeyError(f"Unknown identifiers: {missing}")
        return pos

    def subset_cells(self, cells: IndexLike) -> "ExpressionMatrix":
        """Derive a matrix restricted to `cells` (ids or boolean mask), in the given order."""
        pos = self._positions(self.cell_ids, cells)
        return ExpressionMatrix(self.X[pos, :].tocsr(), self.cell_ids[pos], self.gene_ids)

    def subset_genes(self, genes: IndexLike) -> "ExpressionMatrix":
        pos = self._positions(self.gene_ids, genes)
        return ExpressionMatrix(self.X[:, pos].tocsr(), self.cell_ids, self.gene_ids[pos])

    def with_values(self, X: sp.spmatrix) -> "ExpressionMatrix":
        """Same identifiers, new values (e.g. normalized counts)."""
        return ExpressionMatrix(sp.csr_matrix(X), self.cell_ids, self.gene_ids)

    def to_dense(self) -> np.ndarray:
        return np.asarray(self.X.todense())

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.to_dense(), index=self.cell_ids, columns=self.gene_ids)

    def to_anndata(self, cell_meta: Optional[pd.DataFrame] = None, gene_meta: Optional[pd.DataFrame] = None):
        """Hand the matrix and its annotations to anndata (plotting / h5ad storage)."""
        import anndata as ad

        obs = pd.DataFrame(index=self.cell_ids.astype(str))
        if cell_meta is not None:
            obs = cell_meta.reindex(self.cell_ids).set_axis(obs.index)
        var = pd.DataFrame(index=self.gene_ids.astype(str))
        if gene_meta is not None:
            var = gene_meta.reindex(self.gene_ids).set_axis(var.index)
        return ad.AnnData(X=self.X.copy(), obs=obs, var=var)
