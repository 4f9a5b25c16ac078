from __future__ import annotations

import os

import pandas as pd
import yaml
from click.testing import CliRunner

from scguide.cli import main


def _fast_config(tmp_path, **extra):
    cfg = {"neighbors": {"n_neighbors": 10}}
    cfg.update(extra)
    p = tmp_path / "fast.yaml"
    p.write_text(yaml.safe_dump(cfg))
    return str(p)


def test_cli_runs_and_writes_clusters(tenx_dir, tmp_path):
    out = tmp_path / "out"
    runner = CliRunner()
    res = runner.invoke(
        main,
        ["--data-dir", str(tenx_dir), "--out-dir", str(out), "--config", _fast_config(tmp_path), "--no-umap", "--no-figures"],
    )
    assert res.exit_code == 0, res.output
    assert "Done." in res.output
    clusters = pd.read_csv(out / "clusters.csv")
    assert len(clusters) == 100
    assert not os.path.exists(out / "umap.csv")


def test_cli_dry_run_without_previous_state(tenx_dir, tmp_path):
    out = tmp_path / "out"
    res = CliRunner().invoke(main, ["--data-dir", str(tenx_dir), "--out-dir", str(out), "--dry-run-diff"])
    assert res.exit_code == 0, res.output
    assert "Results differ from stage: load_inputs" in res.output
    assert not os.path.exists(out / "clusters.csv")


def test_cli_reports_config_errors(tenx_dir, tmp_path):
    bad = _fast_config(tmp_path, cluster={"resolutoin": 2.0})
    res = CliRunner().invoke(main, ["--data-dir", str(tenx_dir), "--out-dir", str(tmp_path / "out"), "--config", bad])
    assert res.exit_code == 1
    assert "Error" in res.output
    assert "resolutoin" in res.output


def test_cli_reports_missing_matrix(tmp_path):
    empty = tmp_path / "empty"
    empty.mkdir()
    res = CliRunner().invoke(main, ["--data-dir", str(empty), "--out-dir", str(tmp_path / "out")])
    assert res.exit_code == 1
    assert "Error" in res.output
