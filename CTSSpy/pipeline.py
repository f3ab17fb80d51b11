"""
Pipeline - tag clusters, quantile widths and consensus clusters for all samples

    table = SignalTable.read("ctss.tsv")
    result = run_pipeline(table, PipelineConfig())
    result.consensus_table().to_csv("consensus.tsv", sep="\t", index=False)

Per-sample steps run on a process pool; consensus clustering waits for all
of them. Nothing is modified in place: every step returns new values and the
caller keeps whichever it needs.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import pandas as pd

from CTSSpy.clustering import TagCluster, cluster_sample, tag_clusters_to_frame
from CTSSpy.config import ClusteringConfig, PipelineConfig, QuantileConfig
from CTSSpy.consensus_cluster import (ConsensusCluster, aggregate_tag_clusters, build_signal_matrix,
                                      consensus_clusters_to_frame, project_sample)
from CTSSpy.cumulative import QuantileWidth, quantile_widths, quantile_widths_to_frame
from CTSSpy.errors import DataError
from CTSSpy.parallel import map_samples
from CTSSpy.signal_table import SignalTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineResult:
    samples: Tuple[str, ...]
    tag_clusters: Dict[str, List[TagCluster]]
    tag_cluster_widths: Dict[str, List[QuantileWidth]]
    consensus_clusters: List[ConsensusCluster]
    signal_matrix: pd.DataFrame
    count_matrix: pd.DataFrame
    consensus_widths: Dict[str, List[QuantileWidth]]
    quantiles: QuantileConfig = field(default_factory=QuantileConfig)

    def tag_cluster_table(self) -> pd.DataFrame:
        clusters = [c for s in self.samples for c in self.tag_clusters.get(s, [])]
        widths = [w for s in self.samples for w in self.tag_cluster_widths.get(s, [])]
        return tag_clusters_to_frame(clusters, widths, self.quantiles)

    def consensus_table(self) -> pd.DataFrame:
        return consensus_clusters_to_frame(self.consensus_clusters, self.signal_matrix)

    def consensus_width_table(self) -> pd.DataFrame:
        return quantile_widths_to_frame(w for s in self.samples for w in self.consensus_widths.get(s, []))


def apply_threshold_mask(table: SignalTable, config: ClusteringConfig) -> SignalTable:
    """Restrict the table to CTSS passing the signal threshold in enough samples."""
    mask = table.pass_threshold_mask(config.threshold, config.nr_pass_threshold, config.threshold_is_tpm)
    logger.info(f"{int(mask.sum())} of {len(table)} CTSS pass threshold {config.threshold} "
                f"in >= {config.nr_pass_threshold} samples")
    return table.with_mask(mask)


def _cluster_task(ctss: pd.DataFrame, sample: str, config: ClusteringConfig) -> List[TagCluster]:
    try:
        clusters = cluster_sample(ctss, sample, config)
    except DataError as e:
        logger.warning(f"Skipping sample: {e}")
        return []
    logger.info(f"Sample {sample}: {len(clusters)} tag clusters")
    return clusters


def _width_task(payload: Tuple[pd.DataFrame, List[TagCluster]], sample: str,
                q_low: float, q_up: float) -> List[QuantileWidth]:
    ctss, clusters = payload
    return quantile_widths(ctss, clusters, sample, q_low, q_up)


def cluster_tag_clusters(table: SignalTable, config: PipelineConfig
                         ) -> Tuple[Dict[str, List[TagCluster]], Dict[str, List[QuantileWidth]]]:
    """
    Tag clusters and their quantile widths for every sample.

    The threshold mask is applied to the table first.
    """
    config.validate()
    table = apply_threshold_mask(table, config.clustering)
    return _cluster_masked(table, config)


def _cluster_masked(table: SignalTable, config: PipelineConfig):
    processes = config.parallel.n_workers
    ctss = {s: table.sample_ctss(s) for s in table.samples}

    tag_clusters = map_samples(_cluster_task, ctss, 'clustering', processes, args=(config.clustering,))
    widths = map_samples(_width_task, {s: (ctss[s], tag_clusters[s]) for s in table.samples},
                         'tagClusterWidths', processes,
                         args=(config.quantiles.q_low, config.quantiles.q_up))
    return tag_clusters, widths


def aggregate_with_signal(table: SignalTable, tag_clusters: Dict[str, List[TagCluster]],
                          config: PipelineConfig,
                          tag_cluster_widths: Dict[str, List[QuantileWidth]] = None) -> PipelineResult:
    """
    Consensus clusters from finished tag clusters, and the signal of every
    sample of the table over them.
    """
    config.validate()
    consensus = aggregate_tag_clusters(tag_clusters, config.aggregation)
    logger.info(f"{len(consensus)} consensus clusters from "
                f"{sum(len(v) for v in tag_clusters.values())} tag clusters")

    ctss = {s: table.sample_ctss(s) for s in table.samples}
    projections = map_samples(project_sample, ctss, 'consensusProfiles', config.parallel.n_workers,
                              args=(consensus, config.quantiles.q_low, config.quantiles.q_up))
    signal, counts = build_signal_matrix(consensus, projections, config.aggregation)

    return PipelineResult(
        samples=tuple(table.samples),
        tag_clusters={s: list(tag_clusters.get(s, [])) for s in table.samples},
        tag_cluster_widths=dict(tag_cluster_widths or {}),
        consensus_clusters=consensus,
        signal_matrix=signal,
        count_matrix=counts,
        consensus_widths={s: list(p.widths) for s, p in projections.items()},
        quantiles=config.quantiles,
    )


def run_pipeline(table: SignalTable, config: PipelineConfig = None) -> PipelineResult:
    """
    Cluster every sample, aggregate into consensus clusters and measure each
    sample's signal over them.

    Raises:
        ConfigurationError: before any computation, for invalid settings
        ExecutionError: a per-sample task failed; no partial result
    """
    config = (config or PipelineConfig()).validate()
    table = apply_threshold_mask(table, config.clustering)
    tag_clusters, widths = _cluster_masked(table, config)
    return aggregate_with_signal(table, tag_clusters, config, widths)
