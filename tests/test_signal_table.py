import pandas
import pytest

from CTSSpy.errors import DataError
from CTSSpy.signal_table import SignalTable, sort_ctss

from common_test_utils import example_long_table


def _wide_counts():
    return pandas.DataFrame({
        "chr": ["chr1", "chr1", "chr2"],
        "pos": [10, 20, 5],
        "strand": ["+", "-", "+"],
        "S1": [1, 3, 0],
        "S2": [0, 2, 2],
    })


def test_from_long_samples_in_input_order(example_table):
    assert example_table.samples == ["A", "B"]
    assert len(example_table) == 5


def test_sample_ctss_only_observed_positions(example_table):
    ctss = example_table.sample_ctss("B")
    assert ctss["pos"].tolist() == [105, 114]
    assert ctss["tpm"].tolist() == [4.0, 6.0]
    assert list(ctss.columns) == ["chr", "pos", "strand", "count", "tpm", "included"]


def test_sample_ctss_unknown_sample(example_table):
    with pytest.raises(DataError) as exc_info:
        example_table.sample_ctss("C")
    assert exc_info.value.sample == "C"


def test_from_wide_normalizes_counts_to_tpm():
    table = SignalTable.from_wide(_wide_counts())
    s1 = table.sample_ctss("S1")
    assert s1["pos"].tolist() == [10, 20]
    assert s1["tpm"].tolist() == pytest.approx([250000.0, 750000.0])
    assert table.library_sizes().to_dict() == {"S1": 4, "S2": 4}


def test_from_wide_uses_given_tpm_table():
    counts = _wide_counts()
    tpm = counts.copy()
    tpm["S1"] = [0.5, 1.5, 0.0]
    tpm["S2"] = [0.0, 7.0, 3.0]
    table = SignalTable.from_wide(counts, tpm.iloc[::-1])
    assert table.tpm_frame()["S2"].tolist() == [0.0, 7.0, 3.0]
    assert table.counts_frame()["S1"].tolist() == [1, 3, 0]


def test_from_wide_without_samples():
    with pytest.raises(DataError):
        SignalTable.from_wide(_wide_counts()[["chr", "pos", "strand"]])


@pytest.mark.parametrize("column, values", [
    ("strand", ["+", "*", "+"]),
    ("pos", [10, 10, 5]),
    ("S1", [1, -3, 0]),
])
def test_invalid_tables_raise(column, values):
    counts = _wide_counts()
    if column == "pos":
        counts["strand"] = ["+", "+", "+"]
        counts["chr"] = ["chr1", "chr1", "chr2"]
    counts[column] = values
    with pytest.raises(DataError):
        SignalTable.from_wide(counts, counts.copy())


def test_pass_threshold_mask(example_table):
    # positions 100, 105, 110, 114, 200
    assert example_table.pass_threshold_mask(0).all()
    assert example_table.pass_threshold_mask(5).tolist() == [True, False, False, True, True]
    assert example_table.pass_threshold_mask(4, nr_pass_threshold=2).tolist() == [False] * 5
    assert example_table.pass_threshold_mask(3, nr_pass_threshold=2).tolist() == [False, True, False, False, False]


def test_pass_threshold_mask_caps_required_samples(example_table):
    assert example_table.pass_threshold_mask(3, nr_pass_threshold=10).tolist() == \
        example_table.pass_threshold_mask(3, nr_pass_threshold=2).tolist()


def test_pass_threshold_mask_on_counts():
    table = SignalTable.from_wide(_wide_counts())
    assert table.pass_threshold_mask(2, threshold_is_tpm=False).tolist() == [False, True, True]


def test_with_mask_combines_with_existing_mask(example_table):
    first = example_table.with_mask(pandas.Series([True, True, False, True, True]))
    second = first.with_mask(pandas.Series([False, True, True, True, True]))
    assert second.sample_ctss("A")["pos"].tolist() == [105, 200]
    assert second.n_included().to_dict() == {"A": 2, "B": 2}
    # the original table is unchanged
    assert example_table.sample_ctss("A")["pos"].tolist() == [100, 105, 110, 200]


def test_sample_ctss_keeps_excluded_when_asked(example_table):
    masked = example_table.with_mask(pandas.Series([False] * 5))
    assert masked.sample_ctss("A").empty
    ctss = masked.sample_ctss("A", included_only=False)
    assert ctss["pos"].tolist() == [100, 105, 110, 200]
    assert not ctss["included"].any()


def test_from_long_included_column():
    df = example_long_table()
    df["included"] = [True, False, True, True, True, True]
    table = SignalTable.from_long(df)
    assert table.sample_ctss("A")["pos"].tolist() == [100, 110, 200]
    assert table.sample_ctss("B")["pos"].tolist() == [105, 114]


def test_read_tab_delimited(counts_tsv):
    table = SignalTable.read(counts_tsv)
    assert table.samples == ["A", "B"]
    assert table.sample_ctss("B")["tpm"].tolist() == pytest.approx([400000.0, 600000.0])


def test_sort_ctss_plus_strand_first():
    df = pandas.DataFrame({"chr": ["chr1"] * 3, "pos": [5, 1, 3], "strand": ["-", "+", "+"]})
    assert sort_ctss(df)[["pos", "strand"]].values.tolist() == [[1, "+"], [3, "+"], [5, "-"]]
