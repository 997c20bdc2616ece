from __future__ import annotations
from math import ceil
import numpy as np


def _chunk_bounds(length: int, n_workers: int) -> list[tuple[int, int]]:
    """Contiguous [start, stop) ranges of ceil(length / n_workers) items each."""
    if n_workers < 1:
        raise ValueError(f"n_workers must be a positive integer, got {n_workers}.")
    if length == 0:
        return []
    chunk = ceil(length / n_workers)
    return [(start, min(start + chunk, length)) for start in range(0, length, chunk)]


class DenseRegionPartitioner:
    """
    Splits a full N-dimensional sampling region into contiguous sub-regions.

    The region is cut along axis 0, the slowest varying axis in C order, so
    every sub-region is also a contiguous run of flat sample ids.

    Parameters
    ----------
    shape : tuple of int
        Shape of the virtual (fixed) image domain.
    """

    kind = "dense"

    def __init__(self, shape):
        self.shape = tuple(int(s) for s in shape)
        if len(self.shape) == 0:
            raise ValueError("A dense region needs at least one dimension.")

    @property
    def n_samples(self) -> int:
        return int(np.prod(self.shape))

    def regions(self, n_workers: int) -> list[tuple[slice, ...]]:
        """Sub-regions as slice tuples, at most one per worker."""
        tail = tuple(slice(0, s) for s in self.shape[1:])
        return [(slice(start, stop),) + tail for start, stop in _chunk_bounds(self.shape[0], n_workers)]

    def partition(self, n_workers: int) -> list[np.ndarray]:
        """Flat sample ids of each sub-region."""
        stride = self.n_samples // self.shape[0] if self.shape[0] else 0
        return [
            np.arange(start * stride, stop * stride, dtype=np.int64)
            for start, stop in _chunk_bounds(self.shape[0], n_workers)
        ]

    def __repr__(self):
        return f"DenseRegionPartitioner(shape={self.shape})"


class SparseIndexPartitioner:
    """
    Splits a pre-selected, ordered list of sample points into contiguous ranges.

    Ids returned by `partition` are positions in the sample list, which is also
    the row order of the `SampleSet` evaluated against it.

    Parameters
    ----------
    n_points : int
        Length of the sample list.
    """

    kind = "sparse"

    def __init__(self, n_points: int):
        self.n_points = int(n_points)

    @property
    def n_samples(self) -> int:
        return self.n_points

    def partition(self, n_workers: int) -> list[np.ndarray]:
        return [np.arange(start, stop, dtype=np.int64) for start, stop in _chunk_bounds(self.n_points, n_workers)]

    def __repr__(self):
        return f"SparseIndexPartitioner(n_points={self.n_points})"
