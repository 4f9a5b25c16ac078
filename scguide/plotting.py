import logging
import os
from typing import Optional, Sequence

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from .pca import ReducedEmbedding


logger = logging.getLogger("scguide.plotting")


def _save_fig(fig, out_dir: str, name: str) -> str:
    os.makedirs(out_dir, exist_ok=True)
    p = os.path.join(out_dir, f"{name}.png")
    fig.savefig(p, bbox_inches='tight', dpi=150)
    plt.close(fig)
    logger.info("Saved figure %s", p)
    return p


def plot_qc_violin(cell_meta: pd.DataFrame):
    cols = [c for c in ("n_features", "n_counts", "mito_fraction") if c in cell_meta.columns]
    fig, axes = plt.subplots(1, len(cols), figsize=(4 * len(cols), 4))
    axes = np.atleast_1d(axes)
    for ax, c in zip(axes, cols):
        sns.violinplot(y=cell_meta[c], ax=ax, color='#4C72B0', inner=None, cut=0)
        sns.stripplot(y=cell_meta[c], ax=ax, color='k', size=1, alpha=0.4, jitter=0.3)
        ax.set_title(c)
        ax.set_ylabel('')
    fig.tight_layout()
    return fig


def plot_variable_features(gene_meta: pd.DataFrame, n_label: int = 10):
    """Mean vs standardized variance; highlighted points are the selected features."""
    df = gene_meta.loc[gene_meta['mean'] > 0, ['mean', 'variance_standardized', 'highly_variable', 'variable_rank']]
    fig, ax = plt.subplots(figsize=(6, 4.5))
    sns.scatterplot(
        x=df['mean'], y=df['variance_standardized'], hue=df['highly_variable'].map({True: 'variable', False: 'other'}),
        palette={'variable': '#C44E52', 'other': '#8C8C8C'}, s=6, linewidth=0, ax=ax,
    )
    ax.set_xscale('log')
    ax.set_xlabel('Average expression')
    ax.set_ylabel('Standardized variance')
    for gene, row in df.nsmallest(n_label, 'variable_rank').iterrows():
        ax.annotate(str(gene), (row['mean'], row['variance_standardized']), fontsize=7)
    ax.legend(title=None, frameon=False)
    fig.tight_layout()
    return fig


def plot_elbow(embedding: ReducedEmbedding, n_comps: Optional[int] = None):
    k = embedding.n_comps if n_comps is None else min(int(n_comps), embedding.n_comps)
    fig, ax = plt.subplots(figsize=(5, 4))
    ax.plot(np.arange(1, k + 1), np.sqrt(embedding.explained_variance[:k]), 'o', color='#4C72B0', ms=4)
    ax.set_xlabel('PC')
    ax.set_ylabel('Standard deviation')
    ax.set_title('Elbow plot')
    fig.tight_layout()
    return fig


def _umap_adata(umap_df: pd.DataFrame, labels: pd.Series):
    import anndata as ad

    obs = pd.DataFrame({'cluster': pd.Categorical(labels.reindex(umap_df.index).astype(str))},
                       index=umap_df.index.astype(str))
    adata = ad.AnnData(X=np.zeros((len(umap_df), 1), dtype=np.float32), obs=obs)
    adata.obsm['X_umap'] = umap_df.to_numpy()
    return adata


def plot_umap(umap_df: pd.DataFrame, labels: pd.Series, title: str = 'cluster'):
    import scanpy as sc

    adata = _umap_adata(umap_df, labels)
    fig = sc.pl.umap(adata, color=['cluster'], return_fig=True, legend_loc='on data', title=title, show=False)
    return fig


def plot_marker_heatmap(scaled_df: pd.DataFrame, labels: pd.Series, genes: Sequence[str]):
    """Heatmap of scaled expression for marker genes, cells grouped by cluster."""
    import anndata as ad
    import scanpy as sc

    genes = [g for g in dict.fromkeys(genes) if g in scaled_df.columns]
    if not genes:
        return None
    obs = pd.DataFrame({'cluster': pd.Categorical(labels.reindex(scaled_df.index).astype(str))},
                       index=scaled_df.index.astype(str))
    adata = ad.AnnData(X=scaled_df[genes].to_numpy(dtype=np.float32), obs=obs,
                       var=pd.DataFrame(index=pd.Index(genes).astype(str)))
    sc.pl.heatmap(adata, var_names=list(adata.var_names), groupby='cluster', cmap='RdBu_r', vmin=-2.5, vmax=2.5,
                  show=False)
    return plt.gcf()


def save_figures(result, out_dir: str) -> list:
    """Write the walkthrough figures for a finished run; a failing figure is logged and skipped."""
    fig_dir = os.path.join(out_dir, 'figures')
    saved = []
    jobs = [
        ('qc_violin', lambda: plot_qc_violin(result.qc_metrics)),
        ('variable_features', lambda: plot_variable_features(result.gene_meta)),
        ('elbow', lambda: plot_elbow(result.pca)),
    ]
    if result.umap is not None:
        jobs.append(('umap_clusters', lambda: plot_umap(result.umap, result.clusters.labels)))
        if result.cell_types is not None:
            jobs.append(('umap_cell_types', lambda: plot_umap(result.umap, result.cell_types, title='cell_type')))
    if result.markers is not None and not result.markers.empty:
        from .markers import top_markers

        genes = top_markers(result.markers, n=5)['gene'].tolist()
        jobs.append(('marker_heatmap', lambda: plot_marker_heatmap(result.scaled.to_frame(), result.clusters.labels, genes)))
    for name, make in jobs:
        try:
            fig = make()
            if fig is not None:
                saved.append(_save_fig(fig, fig_dir, name))
        except Exception as e:
            logger.warning("Figure %s skipped: %s", name, e)
    return saved
