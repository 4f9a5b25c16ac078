import logging
import os
from typing import Literal, Optional, Tuple

import numpy as np
import pandas as pd
import scipy.sparse as sp
from anndata.utils import make_index_unique
from scipy import io as spio

from .errors import InputError
from .matrix import ExpressionMatrix


logger = logging.getLogger("scguide.io")

_MATRIX_NAMES = ("matrix.mtx.gz", "matrix.mtx")
_FEATURE_NAMES = ("features.tsv.gz", "features.tsv", "genes.tsv.gz", "genes.tsv")
_BARCODE_NAMES = ("barcodes.tsv.gz", "barcodes.tsv")


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def _find_file(data_dir: str, names: Tuple[str, ...], what: str) -> str:
    for n in names:
        p = os.path.join(data_dir, n)
        if os.path.isfile(p):
            return p
    raise InputError(f"No {what} file in {data_dir} (looked for {', '.join(names)})", stage="load_inputs")


def read_10x_mtx(
    data_dir: str,
    var_names: Literal["gene_symbols", "gene_ids"] = "gene_symbols",
) -> Tuple[ExpressionMatrix, pd.DataFrame]:
    """Read a 10x Market Exchange directory into a cells x genes count matrix.

    Returns the matrix and a gene annotation frame carrying the original
    feature ids (and feature types when present).
    """
    if not os.path.isdir(data_dir):
        raise InputError(f"Data directory does not exist: {data_dir}", stage="load_inputs")
    if var_names not in ("gene_symbols", "gene_ids"):
        raise InputError(f"var_names must be 'gene_symbols' or 'gene_ids', got {var_names!r}", stage="load_inputs")
    mtx_path = _find_file(data_dir, _MATRIX_NAMES, "matrix")
    feat_path = _find_file(data_dir, _FEATURE_NAMES, "features/genes")
    bc_path = _find_file(data_dir, _BARCODE_NAMES, "barcodes")

    try:
        M = spio.mmread(mtx_path)
    except (ValueError, OSError) as e:
        raise InputError(f"Cannot parse {mtx_path}: {e}", stage="load_inputs") from e
    if not sp.issparse(M):
        M = sp.coo_matrix(M)
    try:
        feats = pd.read_csv(feat_path, sep="\t", header=None, dtype=str)
        barcodes = pd.read_csv(bc_path, sep="\t", header=None, dtype=str).iloc[:, 0]
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise InputError(f"Cannot parse id files in {data_dir}: {e}", stage="load_inputs") from e

    n_genes, n_cells = M.shape
    if feats.shape[0] != n_genes:
        raise InputError(
            f"{os.path.basename(feat_path)} lists {feats.shape[0]} features but the matrix has {n_genes} rows",
            stage="load_inputs",
        )
    if barcodes.shape[0] != n_cells:
        raise InputError(
            f"{os.path.basename(bc_path)} lists {barcodes.shape[0]} barcodes but the matrix has {n_cells} columns",
            stage="load_inputs",
        )
    if not barcodes.is_unique:
        raise InputError("Duplicate barcodes in barcode file", stage="load_inputs")

    X = M.T.tocsr()
    X.sum_duplicates()
    data = X.data
    if data.size and (np.any(data < 0) or np.any(data != np.round(data))):
        raise InputError("Counts must be non-negative integers", stage="load_inputs")
    X = X.astype(np.float64)

    feature_ids = feats.iloc[:, 0].astype(str)
    symbols = feats.iloc[:, 1].astype(str) if feats.shape[1] > 1 else feature_ids
    gene_ids = pd.Index(symbols if var_names == "gene_symbols" else feature_ids)
    gene_ids = make_index_unique(gene_ids)

    gene_meta = pd.DataFrame({"feature_id": feature_ids.values}, index=gene_ids)
    if feats.shape[1] > 2:
        gene_meta["feature_type"] = feats.iloc[:, 2].values
    gene_meta.index.name = "gene"

    matrix = ExpressionMatrix(X, pd.Index(barcodes.values), gene_ids)
    logger.info("Loaded %d cells x %d genes from %s (%d non-zero)", matrix.n_cells, matrix.n_genes, data_dir, X.nnz)
    return matrix, gene_meta


def write_10x_mtx(matrix: ExpressionMatrix, out_dir: str, feature_ids: Optional[pd.Series] = None) -> None:
    """Write a matrix back out in the 10x exchange layout (uncompressed)."""
    ensure_dir(out_dir)
    counts = sp.coo_matrix(matrix.X.T)
    counts = sp.coo_matrix((np.rint(counts.data).astype(np.int64), (counts.row, counts.col)), shape=counts.shape)
    spio.mmwrite(os.path.join(out_dir, "matrix.mtx"), counts, field="integer")
    ids = feature_ids.reindex(matrix.gene_ids).values if feature_ids is not None else matrix.gene_ids.values
    pd.DataFrame({"id": ids, "name": matrix.gene_ids.values, "type": "Gene Expression"}).to_csv(
        os.path.join(out_dir, "features.tsv"), sep="\t", header=False, index=False
    )
    pd.Series(matrix.cell_ids.values).to_csv(
        os.path.join(out_dir, "barcodes.tsv"), sep="\t", header=False, index=False
    )


def write_table(df: pd.DataFrame, out_dir: str, name: str, final_format: str = "csv", index: bool = False) -> str:
    ensure_dir(out_dir)
    if final_format == "parquet":
        path = os.path.join(out_dir, f"{name}.parquet")
        df.to_parquet(path, index=index)
    else:
        path = os.path.join(out_dir, f"{name}.csv")
        df.to_csv(path, index=index)
    logger.info("Saved %s", path)
    return path


def write_h5ad(adata, path: str, compression: str = "lzf") -> str:
    ensure_dir(os.path.dirname(path) or ".")
    adata.write_h5ad(path, compression=compression)
    logger.info("Saved %s", path)
    return path


def read_h5ad(path: str):
    import anndata as ad

    if not os.path.isfile(path):
        raise InputError(f"No such h5ad file: {path}", stage="load_inputs")
    return ad.read_h5ad(path)
