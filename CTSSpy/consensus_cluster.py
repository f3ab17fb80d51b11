#!/usr/bin/env python3
"""
Consensus Cluster - Aggregate tag clusters across samples into consensus clusters

Tag cluster intervals of all samples are merged per chromosome and strand:
overlapping or touching intervals always merge, and so do intervals separated
by at most max_dist bases. The signal of every sample is then re-measured
over each consensus interval from the sample's CTSS, giving a dense
consensus cluster x sample matrix.
"""

import typer
import pandas as pd
from bisect import bisect_left
from dataclasses import dataclass
from typing import Optional, List, Dict, Iterable, Sequence, Tuple
from pathlib import Path
import logging

from CTSSpy.clustering import TagCluster
from CTSSpy.config import AggregationConfig
from CTSSpy.cumulative import QuantileWidth, build_cumulative_profile, iter_cluster_signal, quantile_width
from CTSSpy.errors import ConfigurationError, CTSSpyError, DataError
from CTSSpy.signal_table import STRAND_ORDER

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

__version__ = "0.2.0"

app = typer.Typer(help=f"Consensus clustering across samples (v{__version__})")


@dataclass(frozen=True)
class ConsensusCluster:
    """A cross-sample interval [start, end) and the tag clusters it was built from."""
    cluster_id: int
    chromosome: str
    strand: str
    start: int
    end: int
    tag_clusters: Tuple[Tuple[str, TagCluster], ...]

    @property
    def width(self) -> int:
        return self.end - self.start

    @property
    def samples(self) -> Tuple[str, ...]:
        return tuple(sorted({sample for sample, _ in self.tag_clusters}))


@dataclass(frozen=True)
class SampleProjection:
    """Signal of one sample over every consensus cluster, in cluster order."""
    sample: str
    signal: Tuple[float, ...]
    counts: Tuple[float, ...]
    widths: Tuple[QuantileWidth, ...]


def merge_intervals(intervals: Iterable, max_dist: int = 0) -> List[list]:
    """
    Group intervals whose union, extended across gaps of at most max_dist
    bases, is contiguous.

    Intervals need chromosome, strand, start and end (half-open). A gap is
    next.start - current.end, so touching intervals have gap 0 and a gap of
    exactly max_dist still merges.

    Returns:
        Groups of intervals ordered by chromosome, strand and start
    """
    if max_dist < 0:
        raise ConfigurationError(f"aggregationMaxDist must be >= 0, got {max_dist}", stage='aggregation')
    ordered = sorted(intervals, key=lambda iv: (iv.chromosome, STRAND_ORDER[iv.strand], iv.start, iv.end))

    groups = []
    current_key = None
    current_end = None
    for iv in ordered:
        key = (iv.chromosome, iv.strand)
        if key == current_key and iv.start - current_end <= max_dist:
            groups[-1].append(iv)
            current_end = max(current_end, iv.end)
        else:
            groups.append([iv])
            current_key = key
            current_end = iv.end
    return groups


def aggregate_tag_clusters(tag_clusters: Dict[str, Sequence[TagCluster]],
                           config: AggregationConfig) -> List[ConsensusCluster]:
    """
    Build consensus clusters from the tag clusters of all samples.

    Only tag clusters with signal >= config.tpm_threshold define the
    consensus intervals. Weaker tag clusters are then attached to the
    consensus cluster they overlap most (lowest id on ties) without changing
    its bounds; those overlapping none stay unassigned. No tag cluster
    belongs to more than one consensus cluster.

    Args:
        tag_clusters: sample name -> tag clusters of that sample
        config: aggregation settings

    Returns:
        Consensus clusters numbered from 1 in chromosome, strand, start order
    """
    config.validate()
    seeds, weak = [], []
    for sample in tag_clusters:
        for tc in tag_clusters[sample]:
            (seeds if tc.total_signal >= config.tpm_threshold else weak).append(tc)

    groups = merge_intervals(seeds, config.max_dist)
    bounds = [(g[0].chromosome, g[0].strand, min(tc.start for tc in g), max(tc.end for tc in g))
              for g in groups]

    by_key = {}
    for i, (chrom, strand, start, _) in enumerate(bounds):
        by_key.setdefault((chrom, strand), ([], []))
        by_key[(chrom, strand)][0].append(start)
        by_key[(chrom, strand)][1].append(i)

    n_attached = 0
    for tc in weak:
        starts, indices = by_key.get((tc.chromosome, tc.strand), ([], []))
        # candidates start before tc.end; bounds within a key are disjoint and sorted
        hi = bisect_left(starts, tc.end)
        best, best_overlap = None, 0
        for i in reversed(indices[:hi]):
            if bounds[i][3] <= tc.start:
                break
            overlap = min(bounds[i][3], tc.end) - max(bounds[i][2], tc.start)
            if overlap >= best_overlap:
                best, best_overlap = i, overlap
        if best is not None:
            groups[best].append(tc)
            n_attached += 1

    if weak:
        logger.info(f"{len(weak)} of {len(seeds) + len(weak)} tag clusters below {config.tpm_threshold} TPM; "
                    f"{n_attached} attached to overlapping consensus clusters")

    consensus = []
    for cluster_id, (group, (chrom, strand, start, end)) in enumerate(zip(groups, bounds), start=1):
        members = sorted(group, key=lambda tc: (tc.sample, tc.start, tc.cluster_id))
        consensus.append(ConsensusCluster(
            cluster_id=cluster_id,
            chromosome=chrom,
            strand=strand,
            start=start,
            end=end,
            tag_clusters=tuple((tc.sample, tc) for tc in members),
        ))
    return consensus


def project_sample(ctss: pd.DataFrame, sample: str, consensus: Sequence[ConsensusCluster],
                   q_low: float = 0.1, q_up: float = 0.9) -> SampleProjection:
    """
    Signal of one sample over each consensus cluster.

    The signal is measured from all CTSS of the sample inside the interval,
    not only those that belonged to its tag clusters. Clusters without signal
    in the sample get 0 and no quantile width.
    """
    signal, counts, widths = [], [], []
    for cluster, pos, tpm, cnt in iter_cluster_signal(ctss, consensus):
        counts.append(float(cnt.sum()))
        try:
            profile = build_cumulative_profile(pos, tpm, cluster.strand, cluster.start, cluster.end,
                                               cluster.cluster_id, sample)
        except DataError as e:
            logger.debug(f"No signal: {e}")
            signal.append(0.0)
            continue
        signal.append(profile.total_signal)
        widths.append(quantile_width(profile, q_low, q_up))
    return SampleProjection(sample=sample, signal=tuple(signal), counts=tuple(counts), widths=tuple(widths))


def build_signal_matrix(consensus: Sequence[ConsensusCluster], projections: Dict[str, SampleProjection],
                        config: AggregationConfig) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Dense consensus cluster x sample matrices of normalized signal and raw
    counts. With exclude_signal_below_threshold, entries below
    tpm_threshold are set to 0 in both.
    """
    index = pd.Index([c.cluster_id for c in consensus], name='consensus_cluster')
    signal = pd.DataFrame({s: list(p.signal) for s, p in projections.items()}, index=index, dtype=float)
    counts = pd.DataFrame({s: list(p.counts) for s, p in projections.items()}, index=index, dtype=float)
    if config.exclude_signal_below_threshold:
        below = signal < config.tpm_threshold
        signal = signal.mask(below, 0.0)
        counts = counts.mask(below, 0.0)
    return signal, counts


def consensus_clusters_to_frame(consensus: Sequence[ConsensusCluster],
                                signal: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    """Consensus cluster table, with per-sample signal columns when given."""
    df = pd.DataFrame([{
        'consensus_cluster': c.cluster_id,
        'chr': c.chromosome,
        'start': c.start,
        'end': c.end,
        'strand': c.strand,
        'width': c.width,
        'n_tag_clusters': len(c.tag_clusters),
        'n_samples': len(c.samples),
    } for c in consensus], columns=['consensus_cluster', 'chr', 'start', 'end', 'strand',
                                    'width', 'n_tag_clusters', 'n_samples'])
    if signal is None:
        return df
    df['tags_TPM'] = signal.sum(axis=1).to_numpy()
    for sample in signal.columns:
        df[f'{sample}.tags_TPM'] = signal[sample].to_numpy()
    return df


def _write_outputs(result, output_file: Path, matrix_file: Optional[Path], widths_file: Optional[Path]):
    consensus_df = result.consensus_table()
    consensus_df.to_csv(output_file, sep='\t', index=False)
    logger.info(f"Saved {len(consensus_df)} consensus clusters to {output_file}")
    if matrix_file:
        result.signal_matrix.to_csv(matrix_file, sep='\t')
        logger.info(f"Saved signal matrix to {matrix_file}")
    if widths_file:
        result.consensus_width_table().to_csv(widths_file, sep='\t', index=False)
        logger.info(f"Saved quantile widths to {widths_file}")


@app.command("cluster")
def consensus_cluster_command(
    cluster_file: Path = typer.Option(
        ..., "-c", "--clusters",
        help="Tag cluster table (from clustering)"
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
        help="Output consensus cluster file"
    ),
    matrix_file: Optional[Path] = typer.Option(
        None, "--matrix",
        help="Output consensus cluster x sample signal matrix"
    ),
    widths_file: Optional[Path] = typer.Option(
        None, "--widths",
        help="Output per-sample quantile widths of consensus clusters"
    ),
    threshold: float = typer.Option(1.0, "--threshold", help="Minimum CTSS signal (as used for clustering)"),
    threshold_is_tpm: bool = typer.Option(True, "--threshold-is-tpm/--threshold-is-count", help="Apply threshold to TPM or raw counts"),
    nr_pass_threshold: int = typer.Option(1, "--nr-pass-threshold", help="Number of samples that must pass the threshold"),
    distance: int = typer.Option(
        100, "-d", "--distance",
        help="Merge tag clusters separated by at most this many bases"
    ),
    tpm_threshold: float = typer.Option(
        5.0, "--tpm-threshold",
        help="Ignore tag clusters below this signal"
    ),
    exclude_below: bool = typer.Option(
        True, "--exclude-below/--keep-below",
        help="Set per-sample signal below --tpm-threshold to 0"
    ),
    q_low: float = typer.Option(0.1, "--q-low", help="Lower quantile"),
    q_up: float = typer.Option(0.9, "--q-up", help="Upper quantile"),
    processes: Optional[int] = typer.Option(
        None, "-p", "--processes",
        help="Number of processes (default: all CPU cores)"
    ),
):
    """
    Create consensus clusters from an existing tag cluster table.

    Example:
        ctsspy consensusCluster cluster -c tagClusters.tsv -i ctss.tsv -o consensus.tsv -d 100
    """
    from CTSSpy.clustering import tag_clusters_from_frame
    from CTSSpy.config import ClusteringConfig, PipelineConfig, QuantileConfig, ParallelConfig
    from CTSSpy.pipeline import aggregate_with_signal, apply_threshold_mask
    from CTSSpy.signal_table import SignalTable

    config = PipelineConfig(
        clustering=ClusteringConfig(threshold=threshold, threshold_is_tpm=threshold_is_tpm,
                                    nr_pass_threshold=nr_pass_threshold),
        quantiles=QuantileConfig(q_low=q_low, q_up=q_up),
        aggregation=AggregationConfig(max_dist=distance, tpm_threshold=tpm_threshold,
                                      exclude_signal_below_threshold=exclude_below),
        parallel=ParallelConfig(enabled=processes != 1, workers=processes),
    )
    try:
        config.validate()
    except ConfigurationError as e:
        raise typer.BadParameter(str(e))

    table = apply_threshold_mask(SignalTable.read(input_file, tpm_file), config.clustering)
    logger.info(f"Loading tag clusters: {cluster_file}")
    tag_clusters = tag_clusters_from_frame(pd.read_csv(cluster_file, sep='\t'), table)
    tag_clusters = {s: tag_clusters.get(s, []) for s in table.samples}

    logger.info(f"Finding consensus clusters (distance threshold: {distance} bp)")
    try:
        result = aggregate_with_signal(table, tag_clusters, config)
    except CTSSpyError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    if not result.consensus_clusters:
        logger.error("No consensus clusters found")
        raise typer.Exit(1)

    _write_outputs(result, output_file, matrix_file, widths_file)


@app.command("from-tss")
def consensus_from_tss_command(
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
        help="Output consensus cluster file"
    ),
    tag_cluster_file: Optional[Path] = typer.Option(
        None, "--tag-clusters",
        help="Output per-sample tag cluster table"
    ),
    matrix_file: Optional[Path] = typer.Option(
        None, "--matrix",
        help="Output consensus cluster x sample signal matrix"
    ),
    widths_file: Optional[Path] = typer.Option(
        None, "--widths",
        help="Output per-sample quantile widths of consensus clusters"
    ),
    method: str = typer.Option("distclu", "-m", "--method", help="Clustering method: distclu or paraclu"),
    max_dist: int = typer.Option(20, "--max-dist", help="Maximum distance between neighbouring CTSS (distclu)"),
    threshold: float = typer.Option(1.0, "--threshold", help="Minimum CTSS signal"),
    threshold_is_tpm: bool = typer.Option(True, "--threshold-is-tpm/--threshold-is-count", help="Apply threshold to TPM or raw counts"),
    nr_pass_threshold: int = typer.Option(1, "--nr-pass-threshold", help="Number of samples that must pass the threshold"),
    remove_singletons: bool = typer.Option(False, "--remove-singletons", help="Remove single-CTSS clusters"),
    keep_singletons_above: float = typer.Option(float('inf'), "--keep-singletons-above", help="Keep singletons with signal above this value"),
    min_stability: float = typer.Option(1.0, "--min-stability", help="Minimum cluster stability (paraclu)"),
    max_length: int = typer.Option(500, "--max-length", help="Maximum cluster length (paraclu)"),
    q_low: float = typer.Option(0.1, "--q-low", help="Lower quantile"),
    q_up: float = typer.Option(0.9, "--q-up", help="Upper quantile"),
    consensus_distance: int = typer.Option(
        100, "--consensus-distance",
        help="Merge tag clusters separated by at most this many bases"
    ),
    tpm_threshold: float = typer.Option(5.0, "--tpm-threshold", help="Ignore tag clusters below this signal"),
    exclude_below: bool = typer.Option(
        True, "--exclude-below/--keep-below",
        help="Set per-sample signal below --tpm-threshold to 0"
    ),
    processes: Optional[int] = typer.Option(
        None, "-p", "--processes",
        help="Number of processes (default: all CPU cores)"
    ),
):
    """
    Cluster each sample and then create consensus clusters.

    Example:
        ctsspy consensusCluster from-tss -i ctss.tsv -o consensus.tsv --matrix matrix.tsv
    """
    from CTSSpy.config import ClusteringConfig, PipelineConfig, ParallelConfig, QuantileConfig
    from CTSSpy.pipeline import run_pipeline
    from CTSSpy.signal_table import SignalTable

    config = PipelineConfig(
        clustering=ClusteringConfig(
            method=method, max_dist=max_dist, threshold=threshold, threshold_is_tpm=threshold_is_tpm,
            nr_pass_threshold=nr_pass_threshold, remove_singletons=remove_singletons,
            keep_singletons_above=keep_singletons_above, min_stability=min_stability, max_length=max_length),
        quantiles=QuantileConfig(q_low=q_low, q_up=q_up),
        aggregation=AggregationConfig(max_dist=consensus_distance, tpm_threshold=tpm_threshold,
                                      exclude_signal_below_threshold=exclude_below),
        parallel=ParallelConfig(enabled=processes != 1, workers=processes),
    )
    try:
        config.validate()
    except ConfigurationError as e:
        raise typer.BadParameter(str(e))

    table = SignalTable.read(input_file, tpm_file)
    logger.info(f"Samples: {table.samples}")

    try:
        result = run_pipeline(table, config)
    except CTSSpyError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    if tag_cluster_file:
        result.tag_cluster_table().to_csv(tag_cluster_file, sep='\t', index=False)
        logger.info(f"Saved tag clusters to {tag_cluster_file}")

    if not result.consensus_clusters:
        logger.error("No consensus clusters found")
        raise typer.Exit(1)

    _write_outputs(result, output_file, matrix_file, widths_file)


if __name__ == '__main__':
    app()
