import numpy
import pandas
import pytest

from CTSSpy.clustering import cluster_sample, tag_clusters_to_frame
from CTSSpy.config import ClusteringConfig
from CTSSpy.cumulative import quantile_widths
from CTSSpy.errors import ConfigurationError
from CTSSpy.shape_cluster import (calculate_pss, calculate_shape_scores, calculate_si, classify_promoters,
                                  shape_scores)


def test_si():
    assert calculate_si(numpy.array([7.0])) == 2.0
    assert calculate_si(numpy.array([1.0, 1.0])) == pytest.approx(1.0)
    assert calculate_si(numpy.array([1.0, 1.0, 1.0, 1.0])) == pytest.approx(0.0)
    assert calculate_si(numpy.array([])) == 0.0


def test_pss():
    assert calculate_pss(numpy.array([7.0]), 1) == 0.0
    assert calculate_pss(numpy.array([1.0, 1.0]), 2) == pytest.approx(1.0)
    assert calculate_pss(numpy.array([1.0, 0.0, 1.0]), 4) == pytest.approx(2.0)
    assert calculate_pss(numpy.array([0.0, 0.0]), 4) == 0.0


def test_scores_ignore_positions_without_signal():
    assert calculate_si(numpy.array([0.0, 3.0, 0.0])) == 2.0
    assert calculate_si(numpy.array([2.0, 0.0, 1.0])) == calculate_si(numpy.array([2.0, 1.0]))
    # p = 2/3, 1/3
    assert calculate_si(numpy.array([2.0, 1.0])) == pytest.approx(2.0 - 0.9182958340544896)
    assert calculate_pss(numpy.array([0.0, 5.0]), 8) == 0.0
    assert calculate_pss(numpy.array([1.0, 1.0, 1.0, 1.0]), 1) == 0.0
    assert calculate_pss([1.0, 1.0, 1.0, 1.0], 8) == pytest.approx(6.0)


@pytest.mark.parametrize("method", ["PSS", "SI"])
def test_shape_scores_per_cluster(example_table, method):
    ctss = example_table.sample_ctss("A")
    clusters = cluster_sample(ctss, "A", ClusteringConfig())
    widths = quantile_widths(ctss, clusters, "A", 0.1, 0.9)
    scores = shape_scores(ctss, "A", clusters, widths, method)
    tags = numpy.array([5.0, 3.0, 2.0])
    if method == "PSS":
        assert scores == pytest.approx({1: calculate_pss(tags, 11), 2: 0.0})
    else:
        assert scores == pytest.approx({1: calculate_si(tags), 2: 2.0})


def test_unknown_shape_method(example_table):
    with pytest.raises(ConfigurationError):
        shape_scores(example_table.sample_ctss("A"), "A", [], [], "entropy")
    with pytest.raises(ConfigurationError):
        calculate_shape_scores(pandas.DataFrame(), example_table, "entropy")


def test_calculate_shape_scores_adds_column(example_table):
    frames = [tag_clusters_to_frame(cluster_sample(example_table.sample_ctss(s), s, ClusteringConfig()))
              for s in example_table.samples]
    cluster_df = pandas.concat(frames, ignore_index=True)
    result = calculate_shape_scores(cluster_df, example_table, "SI", n_processes=1)
    assert len(result) == 3
    assert result["shape_score"].tolist() == pytest.approx([calculate_si(numpy.array([5.0, 3.0, 2.0])), 2.0,
                                                            calculate_si(numpy.array([4.0, 6.0]))])


def test_classify_promoters():
    pss = pandas.Series([1.0, 5.0, 6.0])
    assert classify_promoters(pss, "PSS").tolist() == ["sharp", "broad", "broad"]
    assert classify_promoters(pss, "PSS", threshold=5.5).tolist() == ["sharp", "sharp", "broad"]
    si = pandas.Series([2.0, 1.5, 1.0])
    assert classify_promoters(si, "SI").tolist() == ["sharp", "broad", "broad"]
