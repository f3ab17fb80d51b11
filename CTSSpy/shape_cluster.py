#!/usr/bin/env python3
"""
Shape Cluster - Calculate core promoter shape scores (PSS and SI)

PSS (Promoter Shape Score): Lu and Lin 2019
SI (Shape Index): Hoskins et al. 2011
"""

import typer
import pandas as pd
import numpy as np
from dataclasses import replace
from typing import Dict, List, Optional
from pathlib import Path
import logging

from CTSSpy.clustering import TagCluster, tag_clusters_from_frame
from CTSSpy.config import ClusteringConfig, ParallelConfig, check_quantiles
from CTSSpy.cumulative import QuantileWidth, iter_cluster_signal, quantile_widths
from CTSSpy.errors import ConfigurationError, CTSSpyError
from CTSSpy.parallel import map_samples
from CTSSpy.signal_table import SignalTable

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

__version__ = "0.2.0"

app = typer.Typer(help=f"Calculate core promoter shape scores (v{__version__})")

SHAPE_METHODS = ('PSS', 'SI')


def _entropy_bits(tags) -> float:
    """Shannon entropy in bits of the signal distribution over positions with signal."""
    signal = np.asarray(tags, dtype=float)
    signal = signal[signal > 0]
    if len(signal) < 2:
        return 0.0
    p = signal / signal.sum()
    return float(-(p * np.log2(p)).sum())


def calculate_pss(tags: np.ndarray, interquantile_width: int) -> float:
    """
    Promoter Shape Score: entropy of the interquantile signal times log2 of its length in bases.

    A region of a single base, or one with signal at a single CTSS, scores 0.
    Lower is sharper.
    """
    if interquantile_width <= 1:
        return 0.0
    return _entropy_bits(tags) * float(np.log2(interquantile_width))


def calculate_si(tags: np.ndarray) -> float:
    """
    Shape Index: 2 minus the entropy of the signal, so one dominant CTSS gives 2.

    Clusters without any signal get 0. Higher is sharper.
    """
    if not np.any(np.asarray(tags, dtype=float) > 0):
        return 0.0
    return 2.0 - _entropy_bits(tags)


def shape_scores(ctss: pd.DataFrame, sample: str, clusters: List[TagCluster],
                 widths: List[QuantileWidth], method: str = 'PSS') -> Dict[int, float]:
    """
    Shape score of each cluster that has a quantile width.

    Only CTSS between the lower and upper quantile positions are used.

    Returns:
        cluster id -> shape score
    """
    method = method.upper()
    if method not in SHAPE_METHODS:
        raise ConfigurationError(f"Unknown shape method '{method}', expected one of {SHAPE_METHODS}",
                                 sample=sample, stage='shape')
    by_id = {c.cluster_id: c for c in clusters}
    regions = [
        replace(by_id[w.cluster_id], start=min(w.lower, w.upper), end=max(w.lower, w.upper) + 1)
        for w in widths if w.cluster_id in by_id
    ]
    width_by_id = {w.cluster_id: w.width for w in widths}

    scores = {}
    for region, _, tpm, _ in iter_cluster_signal(ctss, regions):
        if method == 'PSS':
            scores[region.cluster_id] = calculate_pss(tpm, width_by_id[region.cluster_id] + 1)
        else:
            scores[region.cluster_id] = calculate_si(tpm)
    return scores


def _shape_task(payload, sample: str, method: str, q_low: float, q_up: float) -> Dict[int, float]:
    ctss, clusters = payload
    widths = quantile_widths(ctss, clusters, sample, q_low, q_up)
    return shape_scores(ctss, sample, clusters, widths, method)


def calculate_shape_scores(cluster_df: pd.DataFrame,
                           table: SignalTable,
                           method: str = 'PSS',
                           q_low: float = 0.1,
                           q_up: float = 0.9,
                           n_processes: int = 1) -> pd.DataFrame:
    """
    Calculate shape scores for all clusters of a tag cluster table.

    Args:
        cluster_df: Tag cluster table (sample, cluster, chr, start, end, strand, ...)
        table: CTSS signal
        method: 'PSS' or 'SI'
        q_low, q_up: Quantiles delimiting the region used for the score
        n_processes: Number of processes (one sample per task)

    Returns:
        cluster_df with a shape_score column added
    """
    if method.upper() not in SHAPE_METHODS:
        raise ConfigurationError(f"Unknown shape method '{method}', expected one of {SHAPE_METHODS}",
                                 stage='shape')
    check_quantiles(q_low, q_up)
    tag_clusters = tag_clusters_from_frame(cluster_df, table)
    payloads = {s: (table.sample_ctss(s), clusters) for s, clusters in tag_clusters.items()}
    scores = map_samples(_shape_task, payloads, 'shape', n_processes, args=(method, q_low, q_up))

    rows = [(sample, cluster_id, score)
            for sample, per_cluster in scores.items()
            for cluster_id, score in per_cluster.items()]
    score_df = pd.DataFrame(rows, columns=['sample', 'cluster', 'shape_score']).astype(
        {'sample': str, 'cluster': 'int64', 'shape_score': float})
    result = cluster_df.copy()
    result['sample'] = result['sample'].astype(str)
    return result.merge(score_df, on=['sample', 'cluster'], how='left')


def classify_promoters(scores: pd.Series, method: str = 'PSS', threshold: Optional[float] = None) -> pd.Series:
    """
    Label promoters 'sharp' or 'broad'.

    Default thresholds:
        - PSS: < 5 = sharp, >= 5 = broad
        - SI: > 1.5 = sharp, <= 1.5 = broad
    """
    if method.upper() == 'PSS':
        threshold = 5.0 if threshold is None else threshold
        sharp = scores < threshold
    else:
        threshold = 1.5 if threshold is None else threshold
        sharp = scores > threshold
    return pd.Series(np.where(sharp, 'sharp', 'broad'), index=scores.index)


@app.command("calculate")
def calculate_command(
    cluster_file: Path = typer.Option(
        ..., "-c", "--clusters",
        help="Input tag cluster file (from clustering)"
    ),
    input_file: Path = typer.Option(
        ..., "-i", "--input",
        help="CTSS raw count table"
    ),
    tpm_file: Optional[Path] = typer.Option(
        None, "-t", "--tpm",
        help="Normalized CTSS table; raw counts are normalized to TPM if omitted"
    ),
    output_file: Path = typer.Option(
        ..., "-o", "--output",
        help="Output file with shape scores"
    ),
    method: str = typer.Option(
        "PSS", "-m", "--method",
        help="Shape calculation method: PSS or SI"
    ),
    q_low: float = typer.Option(0.1, "--q-low", help="Lower quantile"),
    q_up: float = typer.Option(0.9, "--q-up", help="Upper quantile"),
    threshold: float = typer.Option(1.0, "--threshold", help="Minimum CTSS signal (as used for clustering)"),
    threshold_is_tpm: bool = typer.Option(True, "--threshold-is-tpm/--threshold-is-count", help="Apply threshold to TPM or raw counts"),
    nr_pass_threshold: int = typer.Option(1, "--nr-pass-threshold", help="Number of samples that must pass the threshold"),
    processes: Optional[int] = typer.Option(
        None, "-p", "--processes",
        help="Number of processes (default: all CPU cores)"
    ),
):
    """
    Calculate promoter shape scores for tag clusters.

    PSS (Promoter Shape Score):
        - Combines entropy and interquantile width
        - Lower value = sharper promoter
        - PSS = 0 for singletons

    SI (Shape Index):
        - Based on Shannon entropy
        - Higher value = sharper promoter
        - SI = 2 for singletons

    Example:
        ctsspy shapeCluster calculate -c tagClusters.tsv -i ctss.tsv -o shape.tsv -m PSS
    """
    from CTSSpy.pipeline import apply_threshold_mask

    n_processes = ParallelConfig(enabled=processes != 1, workers=processes).n_workers
    clustering_config = ClusteringConfig(threshold=threshold, threshold_is_tpm=threshold_is_tpm,
                                         nr_pass_threshold=nr_pass_threshold)
    try:
        clustering_config.validate()
    except ConfigurationError as e:
        raise typer.BadParameter(str(e))

    logger.info(f"Loading cluster file: {cluster_file}")
    cluster_df = pd.read_csv(cluster_file, sep='\t')
    table = apply_threshold_mask(SignalTable.read(input_file, tpm_file), clustering_config)

    logger.info(f"Calculating {method} shape scores for {len(cluster_df)} clusters")
    try:
        result_df = calculate_shape_scores(cluster_df, table, method, q_low, q_up, n_processes)
    except ConfigurationError as e:
        raise typer.BadParameter(str(e))
    except CTSSpyError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    result_df.to_csv(output_file, sep='\t', index=False)
    logger.info(f"Saved results to {output_file}")

    scores = result_df['shape_score'].dropna()
    if not scores.empty:
        logger.info(f"Shape score statistics ({method}):")
        logger.info(f"  Mean: {scores.mean():.4f}")
        logger.info(f"  Median: {scores.median():.4f}")
        logger.info(f"  Min: {scores.min():.4f}")
        logger.info(f"  Max: {scores.max():.4f}")


@app.command("classify")
def classify_command(
    shape_file: Path = typer.Option(
        ..., "-i", "--input",
        help="Input shape score file"
    ),
    output_file: Path = typer.Option(
        ..., "-o", "--output",
        help="Output classified file"
    ),
    method: str = typer.Option(
        "PSS", "-m", "--method",
        help="Method used for shape scores (PSS or SI)"
    ),
    threshold: Optional[float] = typer.Option(
        None, "--threshold",
        help="Custom threshold for sharp/broad classification"
    ),
):
    """
    Classify promoters as sharp or broad based on shape scores.

    Example:
        ctsspy shapeCluster classify -i shape.tsv -o classified.tsv -m PSS
    """
    logger.info(f"Loading shape file: {shape_file}")
    df = pd.read_csv(shape_file, sep='\t')

    if 'shape_score' not in df.columns:
        raise typer.BadParameter("Input file must have 'shape_score' column")

    df['promoter_class'] = classify_promoters(df['shape_score'], method, threshold)

    df.to_csv(output_file, sep='\t', index=False)
    logger.info(f"Saved classified results to {output_file}")

    for cls, count in df['promoter_class'].value_counts().items():
        pct = count / len(df) * 100
        logger.info(f"  {cls}: {count} ({pct:.1f}%)")


if __name__ == '__main__':
    app()
