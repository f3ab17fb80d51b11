import numpy
import pandas
import pytest

from CTSSpy.clustering import cluster_sample
from CTSSpy.config import ClusteringConfig
from CTSSpy.cumulative import (build_cumulative_profile, cluster_profiles, iter_cluster_signal,
                               quantile_width, quantile_widths, quantile_widths_to_frame)
from CTSSpy.errors import ConfigurationError, DataError

from common_test_utils import make_tag_cluster, random_signal_table


def test_plus_strand_example():
    profile = build_cumulative_profile([100, 105, 110], [5.0, 3.0, 2.0], "+", 100, 111, cluster_id=1, sample="A")
    assert profile.fractions == pytest.approx((0.5, 0.8, 1.0))
    assert profile.relative_positions == (0, 5, 10)
    assert profile.total_signal == 10.0

    width = quantile_width(profile, 0.1, 0.9)
    assert (width.lower, width.upper, width.width) == (100, 110, 10)
    assert (width.cluster_id, width.sample) == (1, "A")


def test_quantile_reached_exactly_uses_that_position():
    profile = build_cumulative_profile([100, 105, 110], [5.0, 3.0, 2.0], "+", 100, 111)
    assert profile.quantile_position(0.5) == 100
    assert profile.quantile_position(0.8) == 105
    assert profile.quantile_position(0.81) == 110


def test_minus_strand_runs_from_highest_coordinate():
    profile = build_cumulative_profile([100, 105, 110], [5.0, 3.0, 2.0], "-", 100, 111)
    assert profile.positions == (110, 105, 100)
    assert profile.relative_positions == (0, 5, 10)
    assert profile.fractions == pytest.approx((0.2, 0.5, 1.0))

    width = quantile_width(profile, 0.1, 0.9)
    assert (width.lower, width.upper, width.width) == (110, 100, 10)
    assert quantile_width(profile, 0.3, 0.9).width == 5


def test_single_position_has_zero_width():
    profile = build_cumulative_profile([42], [7.0], "+", 42, 43)
    width = quantile_width(profile, 0.1, 0.9)
    assert (width.lower, width.upper, width.width) == (42, 42, 0)


def test_unsorted_input_is_sorted():
    profile = build_cumulative_profile([110, 100, 105], [2.0, 5.0, 3.0], "+", 100, 111)
    assert profile.positions == (100, 105, 110)
    assert profile.fractions == pytest.approx((0.5, 0.8, 1.0))


@pytest.mark.parametrize("positions, signal", [
    ([], []),
    ([100, 101], [0.0, 0.0]),
])
def test_no_signal_raises(positions, signal):
    with pytest.raises(DataError) as exc_info:
        build_cumulative_profile(positions, signal, "+", 100, 102, cluster_id=4, sample="S")
    assert exc_info.value.cluster == 4
    assert exc_info.value.sample == "S"


@pytest.mark.parametrize("q_low, q_up", [(0.6, 0.5), (0.3, 0.3), (-0.1, 0.9), (0.1, 1.1)])
def test_invalid_quantiles(q_low, q_up):
    profile = build_cumulative_profile([1, 2], [1.0, 1.0], "+", 1, 3)
    with pytest.raises(ConfigurationError):
        quantile_width(profile, q_low, q_up)


def test_fractions_are_monotone_and_end_at_one():
    rng = numpy.random.default_rng(7)
    for strand in ("+", "-"):
        positions = numpy.unique(rng.integers(0, 400, size=60))
        signal = rng.gamma(0.5, 2.0, size=len(positions))
        profile = build_cumulative_profile(positions, signal, strand, int(positions[0]), int(positions[-1]) + 1)
        assert all(numpy.diff(profile.fractions) >= 0)
        assert profile.fractions[-1] == 1.0
        assert all(r >= 0 for r in profile.relative_positions)
        assert quantile_width(profile, 0.1, 0.9).width >= 0


def test_iter_cluster_signal_restricts_to_interval(example_table):
    ctss = example_table.sample_ctss("A")
    intervals = [make_tag_cluster("A", 100, 106), make_tag_cluster("A", 111, 200),
                 make_tag_cluster("A", 100, 300, strand="-")]
    result = [(pos.tolist(), tpm.tolist()) for _, pos, tpm, _ in iter_cluster_signal(ctss, intervals)]
    assert result == [([100, 105], [5.0, 3.0]), ([], []), ([], [])]


def test_cluster_profiles_skip_clusters_without_signal(example_table):
    ctss = example_table.sample_ctss("B")
    intervals = [make_tag_cluster("B", 100, 111, cluster_id=1), make_tag_cluster("B", 200, 201, cluster_id=2)]
    profiles = cluster_profiles(ctss, intervals, "B")
    assert [p.cluster_id for p in profiles] == [1]
    assert profiles[0].positions == (105,)


def test_quantile_widths_table():
    table = random_signal_table(num_samples=1, seed=9)
    ctss = table.sample_ctss("S0")
    clusters = cluster_sample(ctss, "S0", ClusteringConfig(threshold=0))
    widths = quantile_widths(ctss, clusters, "S0", 0.1, 0.9)
    assert len(widths) == len(clusters)
    df = quantile_widths_to_frame(widths)
    assert list(df.columns) == ["cluster", "sample", "q_low", "q_up", "lower", "upper", "interquantile_width"]
    assert (df["interquantile_width"] >= 0).all()
    by_id = {c.cluster_id: c for c in clusters}
    for w in widths:
        assert by_id[w.cluster_id].start <= min(w.lower, w.upper)
        assert max(w.lower, w.upper) < by_id[w.cluster_id].end
        assert w.width <= by_id[w.cluster_id].width - 1


def test_quantile_widths_validates_quantiles():
    with pytest.raises(ConfigurationError):
        quantile_widths(pandas.DataFrame(columns=["chr", "pos", "strand", "count", "tpm"]), [], "S", 0.9, 0.1)
