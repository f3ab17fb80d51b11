import pickle

import pytest

from CTSSpy.errors import DataError, ExecutionError
from CTSSpy.parallel import map_samples


def _scaled_sum(payload, sample, factor):
    return sample, sum(payload) * factor


def _fail_on_b(payload, sample):
    if sample == "B":
        raise ValueError("bad payload")
    return payload


def _no_signal(payload, sample):
    raise DataError("no signal", sample=sample, cluster=3)


PAYLOADS = {"C": [1, 2], "A": [3], "B": [], "D": [4, 5, 6]}


@pytest.mark.parametrize("processes", [1, 2, 8])
def test_results_keyed_by_sample_in_input_order(processes):
    result = map_samples(_scaled_sum, PAYLOADS, "sum", processes, args=(2,))
    assert list(result) == ["C", "A", "B", "D"]
    assert result == {"C": ("C", 6), "A": ("A", 6), "B": ("B", 0), "D": ("D", 30)}


def test_worker_count_does_not_change_results():
    assert map_samples(_scaled_sum, PAYLOADS, "sum", 1, args=(3,)) == \
        map_samples(_scaled_sum, PAYLOADS, "sum", 2, args=(3,))


def test_no_samples():
    assert map_samples(_scaled_sum, {}, "sum", 4, args=(1,)) == {}


@pytest.mark.parametrize("processes", [1, 2])
def test_failure_names_sample_and_stage(processes):
    with pytest.raises(ExecutionError) as exc_info:
        map_samples(_fail_on_b, {"A": 1, "B": 2, "C": 3}, "clustering", processes)
    assert exc_info.value.sample == "B"
    assert exc_info.value.stage == "clustering"
    assert "ValueError" in str(exc_info.value)


@pytest.mark.parametrize("processes", [1, 2])
def test_data_error_keeps_cluster(processes):
    with pytest.raises(ExecutionError) as exc_info:
        map_samples(_no_signal, {"A": 1, "B": 2}, "consensusProfiles", processes)
    assert exc_info.value.sample == "A"
    assert exc_info.value.cluster == 3
    assert exc_info.value.stage == "consensusProfiles"


def test_errors_survive_pickling():
    error = ExecutionError("failed", sample="S", cluster=2, stage="shape")
    restored = pickle.loads(pickle.dumps(error))
    assert type(restored) is ExecutionError
    assert (restored.sample, restored.cluster, restored.stage) == ("S", 2, "shape")
    assert str(restored) == "[stage=shape, sample=S, cluster=2] failed"
