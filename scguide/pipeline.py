from typing import Optional, Callable, Dict, Any, Union
from dataclasses import dataclass
import os
import json
import time
import logging

import numpy as np
import pandas as pd

from .annotate import rename_clusters
from .clustering import ClusterResult, louvain
from .config import (
    PipelineConfig,
    STAGE_ORDER,
    changed_stages,
    deep_update,
    first_changed_stage,
    fingerprint_stages,
    load_params_yaml,
)
from .errors import ScguideError
from .features import select_variable_features
from .io import ensure_dir, read_10x_mtx, write_h5ad, write_table
from .logging_utils import setup_logger
from .matrix import ExpressionMatrix
from .neighbors import NeighborGraph, build_snn_graph
from .normalize import log_normalize
from .pca import ReducedEmbedding, run_pca, top_loadings
from .qc import run_qc
from .scale import ScaledMatrix, scale_data


logger = logging.getLogger("scguide")


@dataclass(frozen=True)
class PipelineResult:
    counts: ExpressionMatrix
    normalized: ExpressionMatrix
    qc_metrics: pd.DataFrame
    gene_meta: pd.DataFrame
    variable_features: pd.Index
    scaled: ScaledMatrix
    pca: ReducedEmbedding
    graph: NeighborGraph
    clusters: ClusterResult
    umap: Optional[pd.DataFrame]
    markers: Optional[pd.DataFrame]
    cell_types: Optional[pd.Series]

    def cell_table(self) -> pd.DataFrame:
        df = self.qc_metrics.copy()
        df["cluster"] = self.clusters.labels.reindex(df.index)
        if self.cell_types is not None:
            df["cell_type"] = self.cell_types.reindex(df.index)
        return df

    def to_anndata(self):
        """Full analysis state as AnnData (log-normalized X, raw counts layer, embeddings)."""
        adata = self.normalized.to_anndata(self.cell_table(), self.gene_meta)
        adata.layers["counts"] = self.counts.X.copy()
        adata.obs["cluster"] = adata.obs["cluster"].astype(str).astype("category")
        adata.obsm["X_pca"] = self.pca.scores
        if self.umap is not None:
            adata.obsm["X_umap"] = self.umap.reindex(self.counts.cell_ids).to_numpy()
        adata.obsp["snn"] = self.graph.snn
        adata.uns["pca_variance_ratio"] = np.asarray(self.pca.explained_variance_ratio)
        return adata


def _state_path(out_dir: str) -> str:
    return os.path.join(out_dir, "pipeline_state.json")


def _load_state(out_dir: str) -> Optional[dict]:
    p = _state_path(out_dir)
    if not os.path.exists(p):
        return None
    try:
        with open(p, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable state file %s: %s", p, e)
        return None


def _save_state(out_dir: str, last_completed: str, extra: Optional[dict] = None) -> None:
    state = {"last_completed": last_completed, "ts": time.time()}
    if extra:
        state.update(extra)
    with open(_state_path(out_dir), "w", encoding="utf-8") as f:
        json.dump(state, f, ensure_ascii=False, indent=2)


def _resolve_config(config: Union[None, str, Dict[str, Any], PipelineConfig]) -> PipelineConfig:
    if isinstance(config, PipelineConfig):
        return config.validate()
    if config is None or isinstance(config, str):
        return PipelineConfig.from_dict(load_params_yaml(config)).validate()
    base = load_params_yaml()
    return PipelineConfig.from_dict(deep_update(base, dict(config))).validate()


def analyze(
    counts: ExpressionMatrix,
    config: PipelineConfig,
    gene_meta: Optional[pd.DataFrame] = None,
    show_internal_progress: bool = False,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> PipelineResult:
    """Run every analysis stage on an in-memory count matrix."""
    from .embedding import run_umap
    from .markers import find_all_markers

    def _notify(desc: str):
        if progress_callback:
            progress_callback(desc)

    def _step_start(name: str) -> float:
        if show_internal_progress:
            print(f">> Start: {name}")
        _notify(name)
        logger.info("Stage %s: start", name)
        return time.perf_counter()

    def _step_done(name: str, t0: float):
        dt = time.perf_counter() - t0
        if show_internal_progress:
            print(f"<< Done:  {name} in {dt:0.2f}s")
        logger.info("Stage %s: done in %.2fs", name, dt)

    current = "qc"
    try:
        t0 = _step_start("qc")
        filtered, qc_metrics = run_qc(counts, config.qc)
        _step_done("qc", t0)

        current = "normalize"
        t0 = _step_start(current)
        normalized = log_normalize(filtered, config.normalize)
        _step_done(current, t0)

        current = "features"
        t0 = _step_start(current)
        base_meta = gene_meta.reindex(filtered.gene_ids) if gene_meta is not None else None
        variable, gmeta = select_variable_features(filtered, config.features, base_meta)
        _step_done(current, t0)

        current = "scale"
        t0 = _step_start(current)
        scaled = scale_data(normalized, variable, config.scale, qc_metrics)
        gmeta = gmeta.copy()
        gmeta["scale_mean"] = pd.Series(scaled.mean, index=scaled.gene_ids)
        gmeta["scale_std"] = pd.Series(scaled.std, index=scaled.gene_ids)
        gmeta["zero_variance"] = pd.Series(scaled.zero_variance, index=scaled.gene_ids).reindex(gmeta.index, fill_value=False)
        _step_done(current, t0)

        current = "pca"
        t0 = _step_start(current)
        pca = run_pca(scaled, config.pca)
        _step_done(current, t0)

        current = "neighbors"
        t0 = _step_start(current)
        graph = build_snn_graph(pca, config.neighbors)
        _step_done(current, t0)

        current = "cluster"
        t0 = _step_start(current)
        clusters = louvain(graph.snn, config.cluster, seed=config.seed, cell_ids=graph.cell_ids)
        _step_done(current, t0)

        current = "umap"
        umap_df = None
        if config.umap.enable:
            t0 = _step_start(current)
            umap_df = run_umap(pca, config.umap, seed=config.seed)
            _step_done(current, t0)

        current = "markers"
        markers = None
        if config.markers.enable and clusters.n_clusters > 1:
            t0 = _step_start(current)
            markers = find_all_markers(normalized, clusters.labels, config.markers)
            _step_done(current, t0)
        elif config.markers.enable:
            logger.warning("Only one cluster found; marker detection skipped")

        current = "annotation"
        cell_types = None
        if config.annotation.cell_types:
            cell_types = rename_clusters(clusters.labels, config.annotation.cell_types)
            if markers is not None and not markers.empty:
                markers = markers.copy()
                markers["cell_type"] = rename_clusters(markers["cluster"], config.annotation.cell_types).values
    except ScguideError as e:
        logger.error("Stage %s failed: %s", current, e)
        raise

    return PipelineResult(
        counts=filtered,
        normalized=normalized,
        qc_metrics=qc_metrics,
        gene_meta=gmeta,
        variable_features=variable,
        scaled=scaled,
        pca=pca,
        graph=graph,
        clusters=clusters,
        umap=umap_df,
        markers=markers,
        cell_types=cell_types,
    )


def write_outputs(result: PipelineResult, out_dir: str, config: PipelineConfig) -> Dict[str, str]:
    fmt = config.io.final_format
    outputs: Dict[str, str] = {}
    outputs["qc_metrics"] = write_table(result.qc_metrics.rename_axis("cell").reset_index(), out_dir, "qc_metrics", fmt)
    vf = result.gene_meta.loc[result.variable_features].rename_axis("gene").reset_index()
    outputs["variable_features"] = write_table(vf, out_dir, "variable_features", fmt)
    outputs["pca_variance"] = write_table(result.pca.variance_frame(), out_dir, "pca_variance", fmt)
    outputs["pca_loadings_top"] = write_table(top_loadings(result.pca), out_dir, "pca_loadings_top", fmt)
    clusters = result.clusters.labels.rename("cluster").rename_axis("cell").reset_index()
    if result.cell_types is not None:
        clusters["cell_type"] = result.cell_types.reindex(result.clusters.labels.index).values
    outputs["clusters"] = write_table(clusters, out_dir, "clusters", fmt)
    if result.umap is not None:
        outputs["umap"] = write_table(result.umap.rename_axis("cell").reset_index(), out_dir, "umap", fmt)
    if result.markers is not None:
        outputs["markers"] = write_table(result.markers, out_dir, "markers", fmt)
    if config.io.write_h5ad:
        outputs["h5ad"] = write_h5ad(result.to_anndata(), os.path.join(out_dir, "analysis.h5ad"))
    if config.io.write_figures:
        from .plotting import save_figures

        for p in save_figures(result, out_dir):
            outputs[os.path.splitext(os.path.basename(p))[0]] = p
    return outputs


def run_pipeline(
    data_dir: str,
    out_dir: str,
    config: Union[None, str, Dict[str, Any], PipelineConfig] = None,
    show_internal_progress: bool = False,
    dry_run_diff: bool = False,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> dict:
    """
    Load a 10x directory, run the analysis and write tables/figures into `out_dir`.

    `config` may be a PipelineConfig, a mapping deep-merged over
    config/params.yaml, or a path to a YAML file. Returns a dict with the
    output paths and the in-memory PipelineResult under "result".
    """
    ensure_dir(out_dir)
    setup_logger(out_dir)
    logger.info("scguide pipeline start")
    cfg = _resolve_config(config)
    cfg_dict = cfg.to_dict()

    cur_fps = fingerprint_stages(cfg_dict)
    st = _load_state(out_dir) or {}
    prev_fps = st.get("fingerprints") or {}
    if prev_fps:
        first = first_changed_stage(prev_fps, cur_fps)
        if first:
            logger.info("Config changed since last run; results from stage %s onward differ", first)
        else:
            logger.info("Config unchanged since last run")
    if dry_run_diff:
        changes = changed_stages(prev_fps, cur_fps)
        logger.info("Dry-run diff: changed stages=%s", ",".join(changes) if changes else "(none)")
        return {
            "dry_run": True,
            "changed_stages": changes,
            "start_from": first_changed_stage(prev_fps, cur_fps) or STAGE_ORDER[0],
            "state_file": _state_path(out_dir),
        }

    if progress_callback:
        progress_callback("load_inputs")
    try:
        counts, gene_meta = read_10x_mtx(data_dir)
    except ScguideError as e:
        logger.error("Stage load_inputs failed: %s", e)
        raise
    _save_state(out_dir, "load_inputs", {"fingerprints": prev_fps})

    result = analyze(
        counts,
        cfg,
        gene_meta=gene_meta,
        show_internal_progress=show_internal_progress,
        progress_callback=progress_callback,
    )
    if result.markers is not None:
        last_stage = "markers"
    elif result.umap is not None:
        last_stage = "umap"
    else:
        last_stage = "cluster"
    _save_state(out_dir, last_stage, {"fingerprints": prev_fps})

    if progress_callback:
        progress_callback("write_outputs")
    outputs: Dict[str, Any] = write_outputs(result, out_dir, cfg)
    _save_state(out_dir, "write_outputs", {"fingerprints": cur_fps, "n_clusters": result.clusters.n_clusters})
    logger.info(
        "scguide pipeline done: %d cells, %d clusters, outputs in %s",
        result.counts.n_cells,
        result.clusters.n_clusters,
        out_dir,
    )
    outputs["result"] = result
    return outputs
