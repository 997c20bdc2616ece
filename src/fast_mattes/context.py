from __future__ import annotations
import numpy as np

from .accumulator import PartitionedAccumulator
from .exceptions import InvalidSampleError
from .histogram import accumulate_joint_pdf, accumulate_ratio_derivative

_NO_GRADIENTS = np.zeros((0, 0), dtype=np.float64)
_NO_JACOBIANS = np.zeros((0, 0, 0), dtype=np.float64)


class EvaluationContext:
    """
    Scratch state of a single evaluation.

    Created fresh for every call and handed explicitly to the worker tasks.
    Worker ``w`` only ever writes ``thread_joint_pdf[w]``,
    ``thread_joint_pdf_derivatives[w]`` and ``thread_derivative[w]``; the shared
    accumulators are only written through their partitioned merge.

    Parameters
    ----------
    config : HistogramConfiguration
    partitions : list of ndarray
        Sample ids handled by each worker.
    n_parameters : int
        Transform parameter count.
    n_sections : int
        Number of lock sections of the shared accumulators.
    with_derivative : bool
        Whether a derivative is requested.
    explicit_pdf_derivatives : bool
        Accumulate the joint PDF derivative volume during the first pass
        (True) or run a second pass against the ratio table (False).
    """

    def __init__(self, config, partitions, n_parameters, n_sections, with_derivative, explicit_pdf_derivatives):
        self.config = config
        self.partitions = partitions
        self.n_parameters = n_parameters
        self.with_derivative = with_derivative
        self.with_volume = with_derivative and explicit_pdf_derivatives
        self.with_ratio_pass = with_derivative and not explicit_pdf_derivatives

        n_workers = len(partitions)
        self.joint_pdf = PartitionedAccumulator(config.joint_shape, n_sections)
        self.thread_joint_pdf = [self.joint_pdf.new_buffer() for _ in range(n_workers)]

        self.joint_pdf_derivatives = None
        self.thread_joint_pdf_derivatives = [_NO_JACOBIANS] * n_workers
        if self.with_volume:
            self.joint_pdf_derivatives = PartitionedAccumulator(config.joint_shape + (n_parameters,), n_sections)
            self.thread_joint_pdf_derivatives = [
                self.joint_pdf_derivatives.new_buffer() for _ in range(n_workers)
            ]

        self.derivative = None
        self.thread_derivative = []
        if self.with_ratio_pass:
            self.derivative = PartitionedAccumulator((n_parameters,), n_sections)
            self.thread_derivative = [self.derivative.new_buffer() for _ in range(n_workers)]

        self.n_valid = 0
        self.ratio = None
        self.fixed_marginal = None
        self.moving_marginal = None

    def _histogram_args(self):
        c = self.config
        return (
            c.fixed_bin_size, c.fixed_normalized_min, c.n_fixed_bins,
            c.moving_bin_size, c.moving_normalized_min, c.n_moving_bins,
            c.padding,
        )

    def accumulate_partition(self, worker_id, samples):
        """First pass over one partition. Returns the number of valid samples seen."""
        if self.with_volume:
            gradients, jacobians = samples.moving_gradients, samples.jacobians
        else:
            gradients, jacobians = _NO_GRADIENTS, _NO_JACOBIANS
        n_valid, bad = accumulate_joint_pdf(
            self.partitions[worker_id],
            samples.fixed_values, samples.moving_values, samples.valid,
            gradients, jacobians,
            *self._histogram_args(),
            self.thread_joint_pdf[worker_id],
            self.thread_joint_pdf_derivatives[worker_id],
            self.with_volume,
        )
        if bad >= 0:
            raise InvalidSampleError(int(bad))
        return n_valid

    def accumulate_ratio_partition(self, worker_id, samples):
        """Second pass over one partition, contracting kernel slopes with the ratio table."""
        bad = accumulate_ratio_derivative(
            self.partitions[worker_id],
            samples.fixed_values, samples.moving_values, samples.valid,
            samples.moving_gradients, samples.jacobians,
            *self._histogram_args(),
            self.ratio,
            self.thread_derivative[worker_id],
        )
        if bad >= 0:
            raise InvalidSampleError(int(bad))

    def release_thread_buffers(self):
        self.thread_joint_pdf = []
        self.thread_joint_pdf_derivatives = []
        self.thread_derivative = []
