"""
Clustering - group CTSS of one sample into tag clusters

Two methods are available behind the same interface:

- distclu: a new cluster starts whenever the distance to the previous CTSS on
  the same chromosome and strand exceeds max_dist.
- paraclu: density-based parametric clustering (see CTSSpy.paraclu).

Both produce non-overlapping TagCluster records of the same shape.
"""

import typer
import pandas as pd
import numpy as np
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Tuple
from pathlib import Path
import logging

from CTSSpy.config import ClusteringConfig, QuantileConfig
from CTSSpy.cumulative import iter_cluster_signal
from CTSSpy.errors import ConfigurationError, DataError
from CTSSpy.paraclu import paraclu_segments
from CTSSpy.signal_table import STRAND_ORDER, SignalTable

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

__version__ = "0.3.0"

app = typer.Typer(help=f"Cluster CTSS into tag clusters (v{__version__})")

TAG_CLUSTER_COLS = ['sample', 'cluster', 'chr', 'start', 'end', 'strand', 'nr_ctss',
                    'dominant_tss', 'tags', 'tags_TPM', 'tags_TPM.dominant_tss']


@dataclass(frozen=True)
class TagCluster:
    """A cluster of CTSS in one sample; the interval [start, end) is half-open."""
    sample: str
    cluster_id: int
    chromosome: str
    strand: str
    start: int
    end: int
    member_positions: Tuple[int, ...]
    total_signal: float
    raw_count: float
    dominant_position: int
    dominant_signal: float

    @property
    def nr_ctss(self) -> int:
        return len(self.member_positions)

    @property
    def width(self) -> int:
        return self.end - self.start


def distclu_segments(positions: np.ndarray, max_dist: int) -> List[Tuple[int, int]]:
    """
    Index ranges [i, j) of positions separated by gaps of at most max_dist.

    positions must be sorted ascending.
    """
    if max_dist < 0:
        raise ConfigurationError(f"maxDist must be >= 0, got {max_dist}", stage='clustering')
    n = len(positions)
    if n == 0:
        return []
    breaks = np.flatnonzero(np.diff(positions) > max_dist) + 1
    bounds = np.concatenate(([0], breaks, [n]))
    return [(int(i), int(j)) for i, j in zip(bounds[:-1], bounds[1:])]


def _distclu(positions, signal, config: ClusteringConfig):
    return distclu_segments(positions, config.max_dist)


def _paraclu(positions, signal, config: ClusteringConfig):
    return paraclu_segments(positions, signal, config.min_stability, config.max_length)


CLUSTERING_STRATEGIES = {
    'distclu': _distclu,
    'paraclu': _paraclu,
}


def make_tag_cluster(sample: str, chrom: str, strand: str, positions: np.ndarray,
                     tpm: np.ndarray, counts: np.ndarray, cluster_id: int = 0) -> TagCluster:
    """
    Build a TagCluster from its member CTSS (sorted by position).

    The dominant CTSS is the one with the highest signal; ties go to the
    lowest coordinate.
    """
    dominant_idx = int(np.argmax(tpm))
    return TagCluster(
        sample=sample,
        cluster_id=cluster_id,
        chromosome=chrom,
        strand=strand,
        start=int(positions[0]),
        end=int(positions[-1]) + 1,
        member_positions=tuple(int(p) for p in positions),
        total_signal=float(tpm.sum()),
        raw_count=float(counts.sum()),
        dominant_position=int(positions[dominant_idx]),
        dominant_signal=float(tpm[dominant_idx]),
    )


def cluster_sample(ctss: pd.DataFrame, sample: str, config: ClusteringConfig) -> List[TagCluster]:
    """
    Cluster the included CTSS of one sample.

    Args:
        ctss: sample CTSS with chr, pos, strand, count, tpm and optionally
            included (see SignalTable.sample_ctss)
        sample: sample name
        config: clustering settings

    Returns:
        Tag clusters ordered by chromosome, strand and start, numbered from 1

    Raises:
        ConfigurationError: invalid settings
        DataError: no CTSS of the sample pass the inclusion filter
    """
    config.validate()
    strategy = CLUSTERING_STRATEGIES[config.method]

    keep = ctss['tpm'] > 0
    if 'included' in ctss.columns:
        keep &= ctss['included'].astype(bool)
    ctss = ctss[keep]
    if ctss.empty:
        raise DataError("No CTSS pass the inclusion filter", sample=sample, stage='clustering')

    clusters = []
    for (chrom, strand), group in ctss.groupby(['chr', 'strand']):
        group = group.sort_values('pos')
        pos = group['pos'].to_numpy(dtype=np.int64)
        tpm = group['tpm'].to_numpy(dtype=float)
        counts = group['count'].to_numpy(dtype=float)
        for i, j in strategy(pos, tpm, config):
            cluster = make_tag_cluster(sample, chrom, strand, pos[i:j], tpm[i:j], counts[i:j])
            if config.remove_singletons and cluster.nr_ctss == 1 \
                    and not cluster.total_signal > config.keep_singletons_above:
                continue
            clusters.append(cluster)

    clusters.sort(key=lambda c: (c.chromosome, STRAND_ORDER[c.strand], c.start))
    logger.debug(f"Sample {sample}: {len(clusters)} tag clusters ({config.method})")
    return [replace(c, cluster_id=i) for i, c in enumerate(clusters, start=1)]


def tag_clusters_to_frame(clusters: Iterable[TagCluster], widths: Optional[Iterable] = None,
                          quantiles: Optional[QuantileConfig] = None) -> pd.DataFrame:
    """
    Tag cluster table; quantile columns are added when widths are given.

    The quantile columns are named after `quantiles`, or after the widths
    themselves, falling back to the default quantiles for an empty list.
    """
    rows = [{
        'sample': c.sample,
        'cluster': c.cluster_id,
        'chr': c.chromosome,
        'start': c.start,
        'end': c.end,
        'strand': c.strand,
        'nr_ctss': c.nr_ctss,
        'dominant_tss': c.dominant_position,
        'tags': c.raw_count,
        'tags_TPM': c.total_signal,
        'tags_TPM.dominant_tss': c.dominant_signal,
    } for c in clusters]
    df = pd.DataFrame(rows, columns=TAG_CLUSTER_COLS)
    if widths is None:
        return df

    widths = list(widths)
    q_df = pd.DataFrame({
        'sample': [w.sample for w in widths],
        'cluster': [w.cluster_id for w in widths],
        'q_low': [w.lower for w in widths],
        'q_up': [w.upper for w in widths],
        'interquantile_width': [w.width for w in widths],
    }).astype({'sample': str, 'cluster': 'int64'})
    df = df.astype({'sample': str, 'cluster': 'int64'})
    if quantiles is None:
        quantiles = QuantileConfig(widths[0].q_low, widths[0].q_up) if widths else QuantileConfig()
    q_df = q_df.rename(columns={'q_low': f'q_{quantiles.q_low}', 'q_up': f'q_{quantiles.q_up}'})
    return df.merge(q_df, on=['sample', 'cluster'], how='left')


def tag_clusters_from_frame(df: pd.DataFrame, table: SignalTable) -> Dict[str, List[TagCluster]]:
    """
    Rebuild TagCluster records from a tag cluster table.

    Member CTSS and signal are taken from the included CTSS of the table
    inside each interval, so the records match what clustering produced.
    """
    required = ['sample', 'cluster', 'chr', 'start', 'end', 'strand']
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise DataError(f"Tag cluster table is missing columns {missing}")

    result = {}
    for sample, sample_df in df.groupby('sample', sort=False):
        sample = str(sample)
        ctss = table.sample_ctss(sample)
        intervals = [
            _Interval(int(r.cluster), str(r.chr), str(r.strand), int(r.start), int(r.end))
            for r in sample_df.itertuples(index=False)
        ]
        clusters = []
        for interval, pos, tpm, counts in iter_cluster_signal(ctss, intervals):
            if len(pos) == 0:
                logger.warning(f"Sample {sample}: no CTSS inside cluster {interval.cluster_id}, skipping")
                continue
            clusters.append(make_tag_cluster(sample, interval.chromosome, interval.strand,
                                             pos, tpm, counts, interval.cluster_id))
        result[sample] = clusters
    return result


@dataclass(frozen=True)
class _Interval:
    cluster_id: int
    chromosome: str
    strand: str
    start: int
    end: int


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    input_file: Path = typer.Option(None, "-i", "--input", help="Input CTSS raw count table (chr, pos, strand, one column per sample)"),
    tpm_file: Optional[Path] = typer.Option(None, "-t", "--tpm", help="Normalized CTSS table; raw counts are normalized to TPM if omitted"),
    output_file: Path = typer.Option(None, "-o", "--output", help="Output tag cluster table"),
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
    processes: Optional[int] = typer.Option(None, "-p", "--processes", help="Number of processes (default: all CPU cores)"),
):
    """
    Cluster CTSS of every sample into tag clusters.

    Coordinates are half-open: a cluster covers start <= pos < end.

    Example:
        ctsspy clustering -i ctss.tsv -o tagClusters.tsv --max-dist 20 --threshold 1
    """
    from CTSSpy.config import PipelineConfig, QuantileConfig, ParallelConfig
    from CTSSpy.pipeline import cluster_tag_clusters

    if ctx.invoked_subcommand is not None:
        return
    if not (input_file and output_file):
        print(ctx.get_help())
        raise typer.Exit(0)

    config = PipelineConfig(
        clustering=ClusteringConfig(
            method=method, max_dist=max_dist, threshold=threshold, threshold_is_tpm=threshold_is_tpm,
            nr_pass_threshold=nr_pass_threshold, remove_singletons=remove_singletons,
            keep_singletons_above=keep_singletons_above, min_stability=min_stability, max_length=max_length),
        quantiles=QuantileConfig(q_low=q_low, q_up=q_up),
        parallel=ParallelConfig(enabled=processes != 1, workers=processes),
    )
    try:
        config.validate()
    except ConfigurationError as e:
        raise typer.BadParameter(str(e))

    table = SignalTable.read(input_file, tpm_file)
    logger.info(f"Samples: {table.samples}")

    tag_clusters, widths = cluster_tag_clusters(table, config)
    all_clusters = [c for s in table.samples for c in tag_clusters[s]]
    all_widths = [w for s in table.samples for w in widths[s]]

    out_df = tag_clusters_to_frame(all_clusters, all_widths, config.quantiles)
    out_df.to_csv(output_file, sep='\t', index=False)
    logger.info(f"Saved {len(out_df)} tag clusters to {output_file}")


if __name__ == '__main__':
    app()
