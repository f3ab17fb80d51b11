"""
Configuration for clustering, quantile positions, aggregation and parallel
execution.

All settings are validated before any computation starts; invalid values
raise ConfigurationError.
"""

import math
from dataclasses import dataclass, field
from multiprocessing import cpu_count
from typing import Any, Dict, Optional

from CTSSpy.errors import ConfigurationError

CLUSTERING_METHODS = ('distclu', 'paraclu')


@dataclass(frozen=True)
class ClusteringConfig:
    method: str = 'distclu'
    max_dist: int = 20
    threshold: float = 1.0
    threshold_is_tpm: bool = True
    nr_pass_threshold: int = 1
    remove_singletons: bool = False
    keep_singletons_above: float = math.inf
    # paraclu only
    min_stability: float = 1.0
    max_length: int = 500

    def validate(self):
        if self.method not in CLUSTERING_METHODS:
            raise ConfigurationError(
                f"Unknown clustering method '{self.method}', expected one of {CLUSTERING_METHODS}",
                stage='clustering')
        if self.max_dist < 0:
            raise ConfigurationError(f"maxDist must be >= 0, got {self.max_dist}", stage='clustering')
        if self.threshold < 0:
            raise ConfigurationError(f"threshold must be >= 0, got {self.threshold}", stage='clustering')
        if self.nr_pass_threshold < 1:
            raise ConfigurationError(
                f"nrPassThreshold must be >= 1, got {self.nr_pass_threshold}", stage='clustering')
        if self.min_stability < 0:
            raise ConfigurationError(
                f"minStability must be >= 0, got {self.min_stability}", stage='clustering')
        if self.max_length < 0:
            raise ConfigurationError(f"maxLength must be >= 0, got {self.max_length}", stage='clustering')
        return self


@dataclass(frozen=True)
class QuantileConfig:
    q_low: float = 0.1
    q_up: float = 0.9

    def validate(self):
        check_quantiles(self.q_low, self.q_up)
        return self


def check_quantiles(q_low: float, q_up: float):
    """Raise ConfigurationError unless 0 <= q_low < 0.5 < q_up <= 1."""
    if q_low >= q_up:
        raise ConfigurationError(f"qLow ({q_low}) must be smaller than qUp ({q_up})", stage='quantiles')
    if not 0 <= q_low < 0.5:
        raise ConfigurationError(f"qLow must be in [0, 0.5), got {q_low}", stage='quantiles')
    if not 0.5 < q_up <= 1:
        raise ConfigurationError(f"qUp must be in (0.5, 1], got {q_up}", stage='quantiles')


@dataclass(frozen=True)
class AggregationConfig:
    max_dist: int = 100
    tpm_threshold: float = 5.0
    exclude_signal_below_threshold: bool = True

    def validate(self):
        if self.max_dist < 0:
            raise ConfigurationError(
                f"aggregationMaxDist must be >= 0, got {self.max_dist}", stage='aggregation')
        if self.tpm_threshold < 0:
            raise ConfigurationError(
                f"tpmThreshold must be >= 0, got {self.tpm_threshold}", stage='aggregation')
        return self


@dataclass(frozen=True)
class ParallelConfig:
    enabled: bool = True
    workers: Optional[int] = None

    def validate(self):
        if self.workers is not None and self.workers < 1:
            raise ConfigurationError(f"workerCount must be >= 1, got {self.workers}", stage='parallel')
        return self

    @property
    def n_workers(self) -> int:
        """Number of worker processes to use; 1 means serial execution."""
        if not self.enabled:
            return 1
        return self.workers if self.workers is not None else cpu_count()


@dataclass(frozen=True)
class PipelineConfig:
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    quantiles: QuantileConfig = field(default_factory=QuantileConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    parallel: ParallelConfig = field(default_factory=ParallelConfig)

    def validate(self):
        self.clustering.validate()
        self.quantiles.validate()
        self.aggregation.validate()
        self.parallel.validate()
        return self

    @classmethod
    def from_dict(cls, options: Dict[str, Any]) -> 'PipelineConfig':
        """
        Build a configuration from the camelCase option names, e.g.

            {'method': 'distclu', 'maxDist': 20, 'qLow': 0.1,
             'parallel': {'enabled': True, 'workerCount': 4}}

        Unknown keys raise ConfigurationError. The result is validated.
        """
        options = dict(options)
        parallel = dict(options.pop('parallel', None) or {})

        sections = {'clustering': {}, 'quantiles': {}, 'aggregation': {}}
        for key, value in options.items():
            if key not in _OPTION_NAMES:
                raise ConfigurationError(f"Unknown configuration option '{key}'")
            section, name = _OPTION_NAMES[key]
            sections[section][name] = value

        parallel_kwargs = {}
        for key, value in parallel.items():
            if key not in _PARALLEL_OPTION_NAMES:
                raise ConfigurationError(f"Unknown parallel option '{key}'")
            parallel_kwargs[_PARALLEL_OPTION_NAMES[key]] = value

        config = cls(
            clustering=ClusteringConfig(**sections['clustering']),
            quantiles=QuantileConfig(**sections['quantiles']),
            aggregation=AggregationConfig(**sections['aggregation']),
            parallel=ParallelConfig(**parallel_kwargs),
        )
        return config.validate()


_OPTION_NAMES = {
    'method': ('clustering', 'method'),
    'maxDist': ('clustering', 'max_dist'),
    'threshold': ('clustering', 'threshold'),
    'thresholdIsTpm': ('clustering', 'threshold_is_tpm'),
    'nrPassThreshold': ('clustering', 'nr_pass_threshold'),
    'removeSingletons': ('clustering', 'remove_singletons'),
    'keepSingletonsAbove': ('clustering', 'keep_singletons_above'),
    'minStability': ('clustering', 'min_stability'),
    'maxLength': ('clustering', 'max_length'),
    'qLow': ('quantiles', 'q_low'),
    'qUp': ('quantiles', 'q_up'),
    'aggregationMaxDist': ('aggregation', 'max_dist'),
    'tpmThreshold': ('aggregation', 'tpm_threshold'),
    'excludeSignalBelowThreshold': ('aggregation', 'exclude_signal_below_threshold'),
}

_PARALLEL_OPTION_NAMES = {
    'enabled': 'enabled',
    'workerCount': 'workers',
}
