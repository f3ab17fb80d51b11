#!/usr/bin/env python3
"""
CTSSpy: Python CLI for CAGE tag clustering

Groups CAGE transcription start site (CTSS) signal into per-sample tag
clusters and cross-sample consensus clusters (candidate promoters).

Main features:
- Tag clustering by distance (distclu) or density (paraclu)
- Cumulative signal and quantile-based cluster width
- Consensus clusters across samples with a dense signal matrix
- Promoter shape analysis (PSS/SI)
- Sample merging and TPM normalization

Usage:
    ctsspy <command> [options]

Commands:
    clustering       - Cluster CTSS of every sample into tag clusters
    consensusCluster - Create consensus clusters across samples
    shapeCluster     - Calculate promoter shape scores (PSS/SI)
    mergeSamples     - Merge samples and normalize
"""

import logging

import typer

from CTSSpy import clustering
from CTSSpy import consensus_cluster
from CTSSpy import merge_samples
from CTSSpy import shape_cluster

__version__ = "0.1.0"

app = typer.Typer(
    name="ctsspy",
    help=f"CTSSpy: Python CLI for CAGE tag clustering (v{__version__})",
    add_completion=False,
)

app.add_typer(clustering.app, name="clustering", help="Cluster CTSS into tag clusters")
app.add_typer(consensus_cluster.app, name="consensusCluster", help="Consensus clustering across samples")
app.add_typer(shape_cluster.app, name="shapeCluster", help="Calculate promoter shape scores")
app.add_typer(merge_samples.app, name="mergeSamples", help="Merge samples and normalize")


@app.command()
def version():
    """Show version information."""
    typer.echo(f"CTSSpy version {__version__}")
    typer.echo("A Python CLI for CAGE tag clustering")


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
):
    """
    CTSSpy: Python CLI for CAGE tag clustering

    Tag clusters, consensus clusters and promoter width from CTSS tables.
    """
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
