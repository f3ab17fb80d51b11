import pytest

from CTSSpy.config import AggregationConfig, ClusteringConfig, ParallelConfig, PipelineConfig
from CTSSpy.signal_table import SignalTable

from common_test_utils import example_long_table


@pytest.fixture
def example_table() -> SignalTable:
    return SignalTable.from_long(example_long_table())


@pytest.fixture
def example_config() -> PipelineConfig:
    """distclu at 20 bp, no CTSS threshold, consensus merging of overlapping intervals only"""
    return PipelineConfig(
        clustering=ClusteringConfig(method='distclu', max_dist=20, threshold=0),
        aggregation=AggregationConfig(max_dist=0, tpm_threshold=0, exclude_signal_below_threshold=True),
        parallel=ParallelConfig(enabled=False),
    )


@pytest.fixture
def counts_tsv(tmp_path):
    """Raw count table: A has 20 tags at 100-200, B has 10 tags at 105-114."""
    path = tmp_path / "ctss.tsv"
    path.write_text(
        "chr\tpos\tstrand\tA\tB\n"
        "chr1\t100\t+\t5\t0\n"
        "chr1\t105\t+\t3\t4\n"
        "chr1\t110\t+\t2\t0\n"
        "chr1\t114\t+\t0\t6\n"
        "chr1\t200\t+\t10\t0\n"
    )
    return path
