"""
Cumulative Profile - cumulative CTSS signal along clusters and quantile positions

The cumulative signal always runs 5' to 3' along the transcript: ascending
genomic coordinates on the plus strand, descending on the minus strand.
Quantile positions are the first CTSS at which the cumulative fraction
reaches the requested quantile; there is no interpolation between bases.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Sequence, Tuple

import numpy as np
import pandas as pd

from CTSSpy.config import check_quantiles
from CTSSpy.errors import DataError

logger = logging.getLogger(__name__)

# tolerance for cumulative fractions that should equal a quantile exactly
_EPS = 1e-12


@dataclass(frozen=True)
class CumulativeProfile:
    cluster_id: int
    sample: str
    strand: str
    positions: Tuple[int, ...]
    relative_positions: Tuple[int, ...]
    fractions: Tuple[float, ...]
    total_signal: float

    def quantile_position(self, q: float) -> int:
        """Genomic position where the cumulative fraction first reaches q."""
        fractions = np.asarray(self.fractions)
        idx = int(np.argmax(fractions >= q - _EPS))
        return self.positions[idx]

    def quantile_relative_position(self, q: float) -> int:
        fractions = np.asarray(self.fractions)
        idx = int(np.argmax(fractions >= q - _EPS))
        return self.relative_positions[idx]


@dataclass(frozen=True)
class QuantileWidth:
    cluster_id: int
    sample: str
    q_low: float
    q_up: float
    lower: int
    upper: int
    width: int


def build_cumulative_profile(positions: Sequence[int], signal: Sequence[float], strand: str,
                             start: int, end: int, cluster_id: int = 0,
                             sample: str = None) -> CumulativeProfile:
    """
    Cumulative signal fractions over the CTSS of a cluster.

    Args:
        positions: CTSS positions inside [start, end)
        signal: normalized signal at each position
        strand: '+' or '-'
        start, end: half-open cluster interval

    Raises:
        DataError: if the cluster has no signal in the sample
    """
    positions = np.asarray(positions, dtype=np.int64)
    signal = np.asarray(signal, dtype=float)
    total = float(signal.sum())
    if len(positions) == 0 or total <= 0:
        raise DataError("Cluster has zero total signal", sample=sample, cluster=cluster_id,
                        stage='cumulative')

    order = np.argsort(positions, kind='mergesort')
    if strand == '-':
        order = order[::-1]
    positions = positions[order]
    fractions = np.cumsum(signal[order]) / total
    fractions[-1] = 1.0

    if strand == '-':
        relative = (end - 1) - positions
    else:
        relative = positions - start

    return CumulativeProfile(
        cluster_id=cluster_id,
        sample=sample,
        strand=strand,
        positions=tuple(int(p) for p in positions),
        relative_positions=tuple(int(r) for r in relative),
        fractions=tuple(float(f) for f in fractions),
        total_signal=total,
    )


def quantile_width(profile: CumulativeProfile, q_low: float = 0.1, q_up: float = 0.9) -> QuantileWidth:
    """Lower/upper quantile positions of a profile and the distance between them."""
    check_quantiles(q_low, q_up)
    lower_rel = profile.quantile_relative_position(q_low)
    upper_rel = profile.quantile_relative_position(q_up)
    return QuantileWidth(
        cluster_id=profile.cluster_id,
        sample=profile.sample,
        q_low=q_low,
        q_up=q_up,
        lower=profile.quantile_position(q_low),
        upper=profile.quantile_position(q_up),
        width=int(upper_rel - lower_rel),
    )


def iter_cluster_signal(ctss: pd.DataFrame, clusters: Iterable) -> Iterator[tuple]:
    """
    Yield (cluster, positions, tpm, counts) for each cluster, restricted to
    the sample's CTSS inside the cluster interval.

    ctss must be sorted by position within each chromosome/strand (as
    returned by SignalTable.sample_ctss); clusters need chromosome, strand,
    start and end attributes.
    """
    partitions = {
        key: (group['pos'].to_numpy(dtype=np.int64),
              group['tpm'].to_numpy(dtype=float),
              group['count'].to_numpy(dtype=float))
        for key, group in ctss.groupby(['chr', 'strand'], sort=False)
    }
    empty = (np.empty(0, dtype=np.int64), np.empty(0), np.empty(0))
    for cluster in clusters:
        pos, tpm, counts = partitions.get((cluster.chromosome, cluster.strand), empty)
        lo = np.searchsorted(pos, cluster.start, side='left')
        hi = np.searchsorted(pos, cluster.end, side='left')
        yield cluster, pos[lo:hi], tpm[lo:hi], counts[lo:hi]


def cluster_profiles(ctss: pd.DataFrame, clusters: Iterable, sample: str) -> List[CumulativeProfile]:
    """Cumulative profiles for every cluster with signal in the sample."""
    profiles = []
    for cluster, pos, tpm, _ in iter_cluster_signal(ctss, clusters):
        try:
            profiles.append(build_cumulative_profile(
                pos, tpm, cluster.strand, cluster.start, cluster.end, cluster.cluster_id, sample))
        except DataError as e:
            logger.debug(f"Skipping cluster: {e}")
    return profiles


def quantile_widths(ctss: pd.DataFrame, clusters: Iterable, sample: str,
                    q_low: float = 0.1, q_up: float = 0.9) -> List[QuantileWidth]:
    """Quantile widths for every cluster with signal in the sample."""
    check_quantiles(q_low, q_up)
    return [quantile_width(p, q_low, q_up) for p in cluster_profiles(ctss, clusters, sample)]


def quantile_widths_to_frame(widths: Iterable[QuantileWidth]) -> pd.DataFrame:
    columns = ['cluster', 'sample', 'q_low', 'q_up', 'lower', 'upper', 'interquantile_width']
    rows = [(w.cluster_id, w.sample, w.q_low, w.q_up, w.lower, w.upper, w.width) for w in widths]
    return pd.DataFrame(rows, columns=columns)
