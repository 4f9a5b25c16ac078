import sys
import os
import warnings as _warnings

# Silence noisy third-party modules early
_warnings.filterwarnings("ignore", category=FutureWarning, module=r"anndata.*")
_warnings.filterwarnings("ignore", category=FutureWarning, module=r"sklearn.utils.deprecation")
_warnings.filterwarnings("ignore", category=UserWarning, module=r"umap.*")

import click
from rich.console import Console
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, BarColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from .pipeline import run_pipeline
from .config import load_params_yaml, deep_update
from .errors import ScguideError
from .logging_utils import teardown_logger
from . import __version__


console = Console()


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="scguide", message="%(prog)s %(version)s")
@click.option("--data-dir", required=True, type=click.Path(exists=True, file_okay=False), help="10x directory with matrix.mtx, features.tsv and barcodes.tsv (optionally gzipped).")
@click.option("--out-dir", required=True, type=click.Path(), help="Output directory.")
@click.option("--config", type=click.Path(exists=True, dir_okay=False), help="YAML file deep-merged over config/params.yaml.")
@click.option("--seed", type=int, help="Random seed for clustering and UMAP (overrides the config).")
@click.option("--no-umap", is_flag=True, help="Skip the UMAP embedding.")
@click.option("--no-figures", is_flag=True, help="Do not write PNG figures.")
@click.option("--internal-progress/--no-internal-progress", default=False, show_default=True, help="Show internal step prints and per-step timing.")
@click.option("--dry-run-diff", is_flag=True, help="Only report which stages changed since the last run in OUT_DIR; do not execute.")
def main(data_dir, out_dir, config, seed, no_umap, no_figures, internal_progress, dry_run_diff):
    """scguide CLI: cluster a 10x count matrix and write tables and figures."""
    os.makedirs(out_dir, exist_ok=True)

    # params.yaml + optional user YAML, then CLI overrides
    try:
        cfg = load_params_yaml(config)
    except ScguideError as e:
        console.print(f"[red]Error: {escape(str(e))}")
        sys.exit(2)
    overrides = {}
    if seed is not None:
        overrides["seed"] = seed
    if no_umap:
        overrides["umap"] = {"enable": False}
    if no_figures:
        overrides["io"] = {"write_figures": False}
    deep_update(cfg, overrides)

    with Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        t = progress.add_task("Starting pipeline", total=None)

        def _cb(desc: str):
            progress.update(t, description=desc)

        try:
            outputs = run_pipeline(
                data_dir=data_dir,
                out_dir=out_dir,
                config=cfg,
                show_internal_progress=internal_progress,
                dry_run_diff=dry_run_diff,
                progress_callback=_cb,
            )
            progress.update(t, description="Finished")
        except ScguideError as e:
            progress.update(t, description="Error")
            console.print(f"[red]Error: {escape(str(e))}")
            teardown_logger()
            sys.exit(1)

    if outputs.get("dry_run"):
        changes = outputs["changed_stages"]
        console.print(f"Changed stages: {', '.join(changes) if changes else '(none)'}")
        console.print(f"Results differ from stage: {outputs['start_from']}")
        teardown_logger()
        return

    console.print("[green]Done.")
    result = outputs.pop("result")
    sizes = result.clusters.sizes()
    table = Table(title=f"Clusters (resolution {result.clusters.resolution:g}, modularity {result.clusters.modularity:.3f})")
    table.add_column("cluster")
    if result.cell_types is not None:
        table.add_column("cell_type")
    table.add_column("cells", justify="right")
    table.add_column("markers", justify="right")
    for cl, n in sizes.items():
        n_markers = 0
        if result.markers is not None and not result.markers.empty:
            n_markers = int((result.markers["cluster"] == cl).sum())
        row = [str(cl)]
        if result.cell_types is not None:
            row.append(str(result.cell_types[result.clusters.labels == cl].iloc[0]))
        row += [str(n), str(n_markers)]
        table.add_row(*row)
    console.print(table)
    # Print only existing artifacts
    for name, path in outputs.items():
        if isinstance(path, str) and os.path.exists(path):
            console.print(f"- {name}: {path}")
    teardown_logger()


if __name__ == "__main__":
    main()
