import os
import yaml
import json
import hashlib
from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, List, Optional, Tuple

from .errors import ConfigError


def _workspace_root() -> str:
    return os.path.dirname(os.path.dirname(__file__))


def _params_path() -> str:
    root = _workspace_root()
    return os.path.join(root, 'config', 'params.yaml')


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}, got {type(data).__name__}")
    return data


def deep_update(base: Dict[str, Any], upd: Dict[str, Any]) -> Dict[str, Any]:
    for k, v in upd.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            deep_update(base[k], v)
        else:
            base[k] = v
    return base


def load_params_yaml(path: Optional[str] = None) -> Dict[str, Any]:
    """Load `config/params.yaml` and deep-merge an optional user file on top."""
    cfg: Dict[str, Any] = {}
    p = _params_path()
    if os.path.isfile(p):
        cfg = _read_yaml(p)
    if path:
        if not os.path.isfile(path):
            raise ConfigError(f"Config file not found: {path}")
        deep_update(cfg, _read_yaml(path))
    return cfg


def _check(cond: bool, stage: str, param: str, msg: str) -> None:
    if not cond:
        raise ConfigError(msg, stage=stage, param=param)


@dataclass(frozen=True)
class QCConfig:
    min_cells: int = 3
    min_features: int = 200
    max_features: int = 2500
    min_counts: int = 0
    max_counts: int = 0
    max_mito_fraction: float = 0.05
    mito_pattern: str = "^MT-"

    def validate(self) -> "QCConfig":
        for name in ("min_cells", "min_features", "max_features", "min_counts", "max_counts"):
            _check(int(getattr(self, name)) >= 0, "qc", name, f"must be >= 0, got {getattr(self, name)}")
        _check(0.0 <= float(self.max_mito_fraction) <= 1.0, "qc", "max_mito_fraction",
               f"must lie in [0, 1], got {self.max_mito_fraction}")
        if self.min_features and self.max_features:
            _check(self.min_features <= self.max_features, "qc", "min_features",
                   f"min_features={self.min_features} exceeds max_features={self.max_features}")
        if self.min_counts and self.max_counts:
            _check(self.min_counts <= self.max_counts, "qc", "min_counts",
                   f"min_counts={self.min_counts} exceeds max_counts={self.max_counts}")
        return self


@dataclass(frozen=True)
class NormalizeConfig:
    scale_factor: float = 1e4

    def validate(self) -> "NormalizeConfig":
        _check(float(self.scale_factor) > 0, "normalize", "scale_factor",
               f"must be > 0, got {self.scale_factor}")
        return self


@dataclass(frozen=True)
class FeatureConfig:
    n_top_genes: int = 2000
    span: float = 0.3

    def validate(self) -> "FeatureConfig":
        _check(int(self.n_top_genes) >= 1, "features", "n_top_genes", f"must be >= 1, got {self.n_top_genes}")
        _check(0.0 < float(self.span) <= 1.0, "features", "span", f"must lie in (0, 1], got {self.span}")
        return self


@dataclass(frozen=True)
class ScaleConfig:
    use_all_genes: bool = False
    regress_out: Tuple[str, ...] = ()
    max_value: Optional[float] = None

    def validate(self) -> "ScaleConfig":
        if self.max_value is not None:
            _check(float(self.max_value) > 0, "scale", "max_value", f"must be > 0, got {self.max_value}")
        return self


@dataclass(frozen=True)
class PCAConfig:
    n_comps: int = 50

    def validate(self) -> "PCAConfig":
        _check(int(self.n_comps) >= 1, "pca", "n_comps", f"must be >= 1, got {self.n_comps}")
        return self


@dataclass(frozen=True)
class NeighborConfig:
    n_neighbors: int = 20
    n_dims: int = 10
    prune_snn: float = 1.0 / 15.0

    def validate(self) -> "NeighborConfig":
        _check(int(self.n_neighbors) >= 2, "neighbors", "n_neighbors",
               f"must be >= 2 (the cell itself counts as a neighbor), got {self.n_neighbors}")
        _check(int(self.n_dims) >= 1, "neighbors", "n_dims", f"must be >= 1, got {self.n_dims}")
        _check(0.0 <= float(self.prune_snn) < 1.0, "neighbors", "prune_snn",
               f"must lie in [0, 1), got {self.prune_snn}")
        return self


@dataclass(frozen=True)
class ClusterConfig:
    resolution: float = 0.5
    n_starts: int = 10
    max_iter: int = 10
    group_singletons: bool = True

    def validate(self) -> "ClusterConfig":
        _check(float(self.resolution) >= 0, "cluster", "resolution", f"must be >= 0, got {self.resolution}")
        _check(int(self.n_starts) >= 1, "cluster", "n_starts", f"must be >= 1, got {self.n_starts}")
        _check(int(self.max_iter) >= 1, "cluster", "max_iter", f"must be >= 1, got {self.max_iter}")
        return self


@dataclass(frozen=True)
class UMAPConfig:
    enable: bool = True
    n_dims: int = 10
    n_neighbors: int = 30
    min_dist: float = 0.3
    metric: str = "cosine"

    def validate(self) -> "UMAPConfig":
        _check(int(self.n_dims) >= 1, "umap", "n_dims", f"must be >= 1, got {self.n_dims}")
        _check(int(self.n_neighbors) >= 2, "umap", "n_neighbors", f"must be >= 2, got {self.n_neighbors}")
        _check(float(self.min_dist) >= 0, "umap", "min_dist", f"must be >= 0, got {self.min_dist}")
        return self


MARKER_TESTS = ("wilcox", "t", "roc")
P_ADJUST_METHODS = ("bonferroni", "fdr_bh")


@dataclass(frozen=True)
class MarkerConfig:
    enable: bool = True
    test: str = "wilcox"
    min_pct: float = 0.25
    logfc_threshold: float = 0.25
    only_pos: bool = True
    p_adjust: str = "bonferroni"
    n_jobs: int = 1

    def validate(self) -> "MarkerConfig":
        _check(self.test in MARKER_TESTS, "markers", "test", f"must be one of {MARKER_TESTS}, got {self.test!r}")
        _check(0.0 <= float(self.min_pct) <= 1.0, "markers", "min_pct", f"must lie in [0, 1], got {self.min_pct}")
        _check(float(self.logfc_threshold) >= 0, "markers", "logfc_threshold",
               f"must be >= 0, got {self.logfc_threshold}")
        _check(self.p_adjust in P_ADJUST_METHODS, "markers", "p_adjust",
               f"must be one of {P_ADJUST_METHODS}, got {self.p_adjust!r}")
        _check(int(self.n_jobs) != 0, "markers", "n_jobs", "must be non-zero")
        return self


@dataclass(frozen=True)
class AnnotationConfig:
    cell_types: Dict[Any, str] = field(default_factory=dict)

    def validate(self) -> "AnnotationConfig":
        _check(isinstance(self.cell_types, dict), "annotation", "cell_types", "must be a mapping")
        return self


@dataclass(frozen=True)
class IOConfig:
    final_format: str = "csv"
    write_h5ad: bool = False
    write_figures: bool = True

    def validate(self) -> "IOConfig":
        _check(self.final_format in ("csv", "parquet"), "io", "final_format",
               f"must be 'csv' or 'parquet', got {self.final_format!r}")
        return self


_SECTIONS = {
    'qc': QCConfig,
    'normalize': NormalizeConfig,
    'features': FeatureConfig,
    'scale': ScaleConfig,
    'pca': PCAConfig,
    'neighbors': NeighborConfig,
    'cluster': ClusterConfig,
    'umap': UMAPConfig,
    'markers': MarkerConfig,
    'annotation': AnnotationConfig,
    'io': IOConfig,
}


@dataclass(frozen=True)
class PipelineConfig:
    qc: QCConfig = field(default_factory=QCConfig)
    normalize: NormalizeConfig = field(default_factory=NormalizeConfig)
    features: FeatureConfig = field(default_factory=FeatureConfig)
    scale: ScaleConfig = field(default_factory=ScaleConfig)
    pca: PCAConfig = field(default_factory=PCAConfig)
    neighbors: NeighborConfig = field(default_factory=NeighborConfig)
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    umap: UMAPConfig = field(default_factory=UMAPConfig)
    markers: MarkerConfig = field(default_factory=MarkerConfig)
    annotation: AnnotationConfig = field(default_factory=AnnotationConfig)
    io: IOConfig = field(default_factory=IOConfig)
    seed: int = 0

    @classmethod
    def from_dict(cls, cfg: Optional[Dict[str, Any]]) -> "PipelineConfig":
        cfg = dict(cfg or {})
        kwargs: Dict[str, Any] = {}
        if 'seed' in cfg:
            seed = cfg.pop('seed')
            _check(isinstance(seed, int) and seed >= 0, "pipeline", "seed", f"must be a non-negative integer, got {seed!r}")
            kwargs['seed'] = seed
        for section, section_cls in _SECTIONS.items():
            raw = cfg.pop(section, None) or {}
            _check(isinstance(raw, dict), section, "*", f"section must be a mapping, got {type(raw).__name__}")
            known = {f.name for f in fields(section_cls)}
            unknown = sorted(set(raw) - known)
            if unknown:
                raise ConfigError(f"unknown option(s) {unknown}", stage=section, param=unknown[0])
            values = dict(raw)
            if section == 'scale' and 'regress_out' in values:
                values['regress_out'] = tuple(values['regress_out'] or ())
            kwargs[section] = section_cls(**values)
        if cfg:
            raise ConfigError(f"unknown section(s) {sorted(cfg)}", stage="pipeline", param=sorted(cfg)[0])
        return cls(**kwargs)

    def validate(self) -> "PipelineConfig":
        for section in _SECTIONS:
            getattr(self, section).validate()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Config keys each pipeline stage depends on; used to report which stage a
# config change invalidates relative to the previous run.
STAGE_PARAM_MAP: Dict[str, Tuple[str, ...]] = {
    'load_inputs': (),
    'qc': (
        'qc.min_cells', 'qc.min_features', 'qc.max_features', 'qc.min_counts', 'qc.max_counts',
        'qc.max_mito_fraction', 'qc.mito_pattern',
    ),
    'normalize': ('normalize.scale_factor',),
    'features': ('features.n_top_genes', 'features.span'),
    'scale': ('scale.use_all_genes', 'scale.regress_out', 'scale.max_value'),
    'pca': ('pca.n_comps',),
    'neighbors': ('neighbors.n_neighbors', 'neighbors.n_dims', 'neighbors.prune_snn'),
    'cluster': ('cluster.resolution', 'cluster.n_starts', 'cluster.max_iter', 'cluster.group_singletons', 'seed'),
    'umap': ('umap.enable', 'umap.n_dims', 'umap.n_neighbors', 'umap.min_dist', 'umap.metric', 'seed'),
    'markers': (
        'markers.enable', 'markers.test', 'markers.min_pct', 'markers.logfc_threshold', 'markers.only_pos',
        'markers.p_adjust',
    ),
    'write_outputs': ('annotation.cell_types', 'io.final_format', 'io.write_h5ad', 'io.write_figures'),
}

STAGE_ORDER: Tuple[str, ...] = tuple(STAGE_PARAM_MAP)


def _get_by_path(cfg: Dict[str, Any], dotted: str) -> Any:
    cur: Any = cfg
    for part in dotted.split('.'):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return None
    return cur


def stage_config_subset(cfg: Dict[str, Any], stage: str) -> Dict[str, Any]:
    keys = STAGE_PARAM_MAP.get(stage, ())
    sub: Dict[str, Any] = {}
    for k in keys:
        sub[k] = _get_by_path(cfg, k)
    return sub


def fingerprint_stage(cfg: Dict[str, Any], stage: str) -> str:
    sub = stage_config_subset(cfg, stage)
    payload = json.dumps(sub, ensure_ascii=False, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


def fingerprint_stages(cfg: Dict[str, Any]) -> Dict[str, str]:
    return {s: fingerprint_stage(cfg, s) for s in STAGE_ORDER}


def first_changed_stage(prev: Dict[str, str], cur: Dict[str, str]) -> Optional[str]:
    """Earliest stage whose fingerprint differs; everything after it is stale too."""
    for s in STAGE_ORDER:
        if prev.get(s) != cur.get(s):
            return s
    return None


def changed_stages(prev: Dict[str, str], cur: Dict[str, str]) -> List[str]:
    return [s for s in STAGE_ORDER if prev.get(s) != cur.get(s)]
