from __future__ import annotations
import threading
from concurrent.futures import wait
from math import ceil
import numpy as np
from numba import njit

MERGE_STRATEGIES = ("locked", "reduction")


@njit(cache=True, nogil=True)
def _add_range(dst, src, start, stop):  # pragma: no cover
    """dst[start:stop] += src[start:stop] without holding the GIL."""
    for k in range(start, stop):
        dst[k] += src[k]


def run_and_join(executor, fn, arg_list):
    """
    Run ``fn(*args)`` for every entry of `arg_list` on `executor` and wait for all of them.

    This is a full barrier: nothing is raised before every task has finished.
    Afterwards the exception of the first failing task (in submission order)
    is re-raised, otherwise the results are returned in submission order.
    """
    futures = [executor.submit(fn, *args) for args in arg_list]
    wait(futures)
    for future in futures:
        exc = future.exception()
        if exc is not None:
            raise exc
    return [future.result() for future in futures]


class PartitionedAccumulator:
    """
    Shared reduction target for thread-private buffers.

    The flattened target is cut into contiguous, disjoint sections, each with
    its own lock. Buffers can be folded in two ways:

    - ``merge_locked``: every worker adds its own buffer section by section,
      starting at a section picked from its worker id so that workers begin
      on different sections. Only the lock of the section being written is held.
    - ``reduce_section``: one task per section sums all buffers over that
      section. Sections are disjoint so no lock is needed, and the summation
      order is fixed by the buffer order.

    Parameters
    ----------
    shape : tuple of int
        Shape of the target (and of every private buffer).
    n_sections : int
        Requested number of sections. Fewer are used when the target is small.
    """

    def __init__(self, shape, n_sections: int):
        self.shape = tuple(int(s) for s in shape)
        self.total = np.zeros(self.shape, dtype=np.float64)
        self._flat = self.total.reshape(-1)
        size = self._flat.shape[0]
        if size == 0:
            self.sections = []
        else:
            step = ceil(size / max(1, min(int(n_sections), size)))
            self.sections = [(start, min(start + step, size)) for start in range(0, size, step)]
        self._locks = [threading.Lock() for _ in self.sections]

    @property
    def n_sections(self) -> int:
        return len(self.sections)

    def new_buffer(self) -> np.ndarray:
        return np.zeros(self.shape, dtype=np.float64)

    def _flat_view(self, buffer):
        if buffer.shape != self.shape:
            raise ValueError(f"Buffer of shape {buffer.shape} cannot merge into {self.shape}.")
        return np.ascontiguousarray(buffer).reshape(-1)

    def merge_locked(self, buffer, worker_id: int):
        src = self._flat_view(buffer)
        n = len(self.sections)
        for step in range(n):
            section = (worker_id + step) % n
            start, stop = self.sections[section]
            with self._locks[section]:
                _add_range(self._flat, src, start, stop)

    def reduce_section(self, buffers, section: int):
        start, stop = self.sections[section]
        for buffer in buffers:
            _add_range(self._flat, self._flat_view(buffer), start, stop)

    def merge(self, buffers, executor, strategy: str = "locked"):
        """Fold every buffer into `total` on `executor`, returning after a full barrier."""
        if strategy == "locked":
            run_and_join(executor, self.merge_locked, [(buffer, wid) for wid, buffer in enumerate(buffers)])
        elif strategy == "reduction":
            run_and_join(executor, self.reduce_section, [(buffers, s) for s in range(self.n_sections)])
        else:
            raise ValueError(f"Unsupported merge strategy: '{strategy}'. Choose one of {MERGE_STRATEGIES}.")
        return self.total

    def __repr__(self):
        return f"PartitionedAccumulator(shape={self.shape}, n_sections={self.n_sections})"
