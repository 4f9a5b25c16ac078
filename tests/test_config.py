from __future__ import annotations

import pytest
import yaml

from scguide.config import (
    STAGE_ORDER,
    ClusterConfig,
    NeighborConfig,
    PipelineConfig,
    changed_stages,
    fingerprint_stages,
    first_changed_stage,
    load_params_yaml,
)
from scguide.errors import ConfigError


def test_default_params_yaml_is_valid():
    cfg = PipelineConfig.from_dict(load_params_yaml()).validate()
    assert cfg.neighbors.n_neighbors == 20
    assert cfg.cluster.resolution == 0.5
    assert cfg.features.n_top_genes == 2000
    assert cfg.qc.max_mito_fraction == 0.05
    assert cfg.scale.regress_out == ()


def test_user_file_is_deep_merged(tmp_path):
    p = tmp_path / "user.yaml"
    p.write_text(yaml.safe_dump({"cluster": {"resolution": 1.2}, "scale": {"regress_out": ["n_counts"]}}))
    raw = load_params_yaml(str(p))
    cfg = PipelineConfig.from_dict(raw).validate()
    assert cfg.cluster.resolution == 1.2
    assert cfg.cluster.n_starts == 10
    assert cfg.scale.regress_out == ("n_counts",)


def test_missing_or_malformed_file(tmp_path):
    with pytest.raises(ConfigError):
        load_params_yaml(str(tmp_path / "absent.yaml"))
    bad = tmp_path / "bad.yaml"
    bad.write_text("cluster: [unclosed\n")
    with pytest.raises(ConfigError):
        load_params_yaml(str(bad))


def test_unknown_keys_are_rejected():
    with pytest.raises(ConfigError) as exc:
        PipelineConfig.from_dict({"cluster": {"resolutoin": 1.0}})
    assert exc.value.stage == "cluster"
    assert exc.value.param == "resolutoin"
    assert "[cluster.resolutoin]" in str(exc.value)
    with pytest.raises(ConfigError):
        PipelineConfig.from_dict({"clustering": {}})


@pytest.mark.parametrize(
    "section, bad",
    [
        ("qc", {"max_mito_fraction": 1.5}),
        ("qc", {"min_features": 300, "max_features": 200}),
        ("features", {"span": 0.0}),
        ("neighbors", {"n_neighbors": 1}),
        ("cluster", {"resolution": -0.1}),
        ("markers", {"test": "bogus"}),
        ("markers", {"p_adjust": "holm"}),
        ("io", {"final_format": "xlsx"}),
    ],
)
def test_out_of_range_values(section, bad):
    with pytest.raises(ConfigError) as exc:
        PipelineConfig.from_dict({section: bad}).validate()
    assert exc.value.stage == section


def test_seed_must_be_non_negative_int():
    with pytest.raises(ConfigError):
        PipelineConfig.from_dict({"seed": -1})
    assert PipelineConfig.from_dict({"seed": 7}).seed == 7


def test_config_error_is_value_error():
    with pytest.raises(ValueError):
        ClusterConfig(n_starts=0).validate()
    assert NeighborConfig().validate().n_dims == 10


def test_fingerprints_track_stage_dependencies():
    base = PipelineConfig().to_dict()
    changed = PipelineConfig(cluster=ClusterConfig(resolution=1.0)).to_dict()
    prev, cur = fingerprint_stages(base), fingerprint_stages(changed)
    assert set(prev) == set(STAGE_ORDER)
    assert changed_stages(prev, cur) == ["cluster"]
    assert first_changed_stage(prev, cur) == "cluster"
    assert first_changed_stage(prev, prev) is None
    assert first_changed_stage({}, cur) == STAGE_ORDER[0]
