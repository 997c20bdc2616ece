import threading
import time
from concurrent.futures import ThreadPoolExecutor
import pytest
import numpy as np
from numpy.testing import assert_allclose

from fast_mattes import PartitionedAccumulator
from fast_mattes.accumulator import run_and_join


@pytest.fixture(scope="module")
def executor():
    with ThreadPoolExecutor(max_workers=4) as pool:
        yield pool


@pytest.fixture
def buffers():
    rng = np.random.RandomState(0)
    return [rng.rand(7, 5, 3) for _ in range(8)]


@pytest.mark.parametrize("strategy", ["locked", "reduction"])
@pytest.mark.parametrize("n_sections", [1, 3, 4, 16])
def test_merge_equals_plain_sum(executor, buffers, strategy, n_sections):
    accumulator = PartitionedAccumulator((7, 5, 3), n_sections)
    total = accumulator.merge(buffers, executor, strategy)
    assert total is accumulator.total
    assert_allclose(total, np.sum(buffers, axis=0), rtol=1e-12)


def test_sections_are_disjoint_and_cover_target():
    accumulator = PartitionedAccumulator((10, 10), 3)
    covered = np.zeros(100, dtype=int)
    for start, stop in accumulator.sections:
        covered[start:stop] += 1
    assert np.all(covered == 1)
    assert accumulator.n_sections == 3


def test_more_sections_than_elements():
    accumulator = PartitionedAccumulator((3,), 8)
    assert accumulator.n_sections == 3


def test_empty_target_merges_nothing(executor):
    accumulator = PartitionedAccumulator((0, 0, 4), 4)
    assert accumulator.n_sections == 0
    accumulator.merge([accumulator.new_buffer(), accumulator.new_buffer()], executor, "locked")
    assert accumulator.total.shape == (0, 0, 4)


def test_repeated_locked_merges_under_contention(executor):
    """Many workers hammering few sections must not lose updates."""
    accumulator = PartitionedAccumulator((64, 64), 2)
    ones = [np.ones((64, 64)) for _ in range(32)]
    for _ in range(5):
        accumulator.merge(ones, executor, "locked")
    assert_allclose(accumulator.total, np.full((64, 64), 160.0))


def test_shape_mismatch_is_rejected(executor):
    accumulator = PartitionedAccumulator((4, 4), 2)
    with pytest.raises(ValueError):
        accumulator.merge([np.zeros((4, 5))], executor, "locked")


def test_unknown_strategy(executor, buffers):
    accumulator = PartitionedAccumulator((7, 5, 3), 2)
    with pytest.raises(ValueError):
        accumulator.merge(buffers, executor, "atomic")


def test_run_and_join_waits_for_all_tasks_before_raising(executor):
    finished = []
    lock = threading.Lock()

    def task(i):
        if i == 1:
            raise RuntimeError("task 1 failed")
        time.sleep(0.05)
        with lock:
            finished.append(i)
        return i

    with pytest.raises(RuntimeError, match="task 1 failed"):
        run_and_join(executor, task, [(i,) for i in range(4)])
    assert sorted(finished) == [0, 2, 3]


def test_run_and_join_returns_results_in_order(executor):
    assert run_and_join(executor, lambda a, b: a * b, [(i, 2) for i in range(6)]) == [0, 2, 4, 6, 8, 10]
