from __future__ import annotations
from dataclasses import dataclass
import numpy as np
from numba import njit

from .kernels import (
    cubic_bspline,
    cubic_bspline_derivative,
    fixed_parzen_index,
    moving_parzen_window,
)


@dataclass(frozen=True)
class HistogramConfiguration:
    """
    Bin layout and intensity scaling shared by every evaluation.

    Intensities are mapped to continuous bin coordinates with
    ``term = value / bin_size - normalized_min``. The observed range
    ``[true_min, true_max]`` lands on ``[padding, n_bins - padding]`` so the
    cubic window of any in-range sample stays inside the histogram.
    """

    n_fixed_bins: int
    n_moving_bins: int
    padding: int
    fixed_true_min: float
    fixed_true_max: float
    moving_true_min: float
    moving_true_max: float
    fixed_bin_size: float
    moving_bin_size: float
    fixed_normalized_min: float
    moving_normalized_min: float

    @classmethod
    def from_intensities(cls, fixed_values, moving_values, n_fixed_bins, n_moving_bins, padding):
        fixed_min, fixed_max = float(np.min(fixed_values)), float(np.max(fixed_values))
        moving_min, moving_max = float(np.min(moving_values)), float(np.max(moving_values))
        fixed_bin_size = _bin_size(fixed_min, fixed_max, n_fixed_bins, padding)
        moving_bin_size = _bin_size(moving_min, moving_max, n_moving_bins, padding)
        return cls(
            n_fixed_bins=int(n_fixed_bins),
            n_moving_bins=int(n_moving_bins),
            padding=int(padding),
            fixed_true_min=fixed_min,
            fixed_true_max=fixed_max,
            moving_true_min=moving_min,
            moving_true_max=moving_max,
            fixed_bin_size=fixed_bin_size,
            moving_bin_size=moving_bin_size,
            fixed_normalized_min=fixed_min / fixed_bin_size - padding,
            moving_normalized_min=moving_min / moving_bin_size - padding,
        )

    @property
    def joint_shape(self) -> tuple[int, int]:
        return (self.n_fixed_bins, self.n_moving_bins)

    def fixed_term(self, value):
        return np.asarray(value, dtype=np.float64) / self.fixed_bin_size - self.fixed_normalized_min

    def moving_term(self, value):
        return np.asarray(value, dtype=np.float64) / self.moving_bin_size - self.moving_normalized_min


def _bin_size(true_min, true_max, n_bins, padding):
    size = (true_max - true_min) / (n_bins - 2 * padding)
    # Constant image: any positive width puts every value in the same bin.
    if not size > 0.0:
        return 1.0
    return size


@njit(cache=True, nogil=True)
def _jacobian_gradient_product(moving_gradients, jacobians, i, out):  # pragma: no cover
    """out[mu] = sum_d gradient[i, d] * jacobian[i, d, mu]"""
    n_dims = jacobians.shape[1]
    for mu in range(out.shape[0]):
        acc = 0.0
        for d in range(n_dims):
            acc += moving_gradients[i, d] * jacobians[i, d, mu]
        out[mu] = acc


@njit(cache=True, nogil=True)
def accumulate_joint_pdf(
    sample_ids, fixed_values, moving_values, valid, moving_gradients, jacobians,
    fixed_bin_size, fixed_normalized_min, n_fixed_bins,
    moving_bin_size, moving_normalized_min, n_moving_bins,
    padding, joint_pdf, joint_pdf_derivatives, with_derivatives,
):  # pragma: no cover
    """
    Splat the samples of one partition into a worker's private buffers.

    Each valid sample adds one unit of mass to row ``f`` of ``joint_pdf``,
    spread over ``2 * padding`` moving bins by the cubic B-spline. With
    ``with_derivatives`` the unnormalized derivative of that mass with respect
    to the moving bin coordinate, chained through ``gradient . jacobian``, is
    subtracted into ``joint_pdf_derivatives``.

    Returns
    -------
    tuple[int, int]
        Number of valid samples accumulated, and the index of the first
        non-finite sample (-1 when every sample was usable). Accumulation stops
        at a non-finite sample.
    """
    n_parameters = joint_pdf_derivatives.shape[2]
    inner = np.zeros(n_parameters, dtype=np.float64)
    n_valid = 0
    for k in range(sample_ids.shape[0]):
        i = sample_ids[k]
        if not valid[i]:
            continue
        fixed_value = fixed_values[i]
        moving_value = moving_values[i]
        if not (np.isfinite(fixed_value) and np.isfinite(moving_value)):
            return n_valid, i

        f = fixed_parzen_index(fixed_value / fixed_bin_size - fixed_normalized_min, n_fixed_bins, padding)
        term, first = moving_parzen_window(
            moving_value / moving_bin_size - moving_normalized_min, n_moving_bins, padding
        )
        if with_derivatives:
            _jacobian_gradient_product(moving_gradients, jacobians, i, inner)

        for w in range(2 * padding):
            b = first + w
            if b < 0 or b >= n_moving_bins:
                continue
            arg = b - term
            joint_pdf[f, b] += cubic_bspline(arg)
            if with_derivatives:
                slope = cubic_bspline_derivative(arg)
                for mu in range(n_parameters):
                    joint_pdf_derivatives[f, b, mu] -= slope * inner[mu]
        n_valid += 1
    return n_valid, -1


@njit(cache=True, nogil=True)
def accumulate_ratio_derivative(
    sample_ids, fixed_values, moving_values, valid, moving_gradients, jacobians,
    fixed_bin_size, fixed_normalized_min, n_fixed_bins,
    moving_bin_size, moving_normalized_min, n_moving_bins,
    padding, ratio, derivative,
):  # pragma: no cover
    """
    Second pass: contract each sample's kernel slope with the ratio table.

    ``derivative[mu] += cubic'(b - t) * ratio[f, b] * (gradient . jacobian)[mu]``
    summed over the window bins ``b`` of every valid sample. Returns the index
    of the first non-finite sample, or -1.
    """
    n_parameters = derivative.shape[0]
    inner = np.zeros(n_parameters, dtype=np.float64)
    for k in range(sample_ids.shape[0]):
        i = sample_ids[k]
        if not valid[i]:
            continue
        fixed_value = fixed_values[i]
        moving_value = moving_values[i]
        if not (np.isfinite(fixed_value) and np.isfinite(moving_value)):
            return i

        f = fixed_parzen_index(fixed_value / fixed_bin_size - fixed_normalized_min, n_fixed_bins, padding)
        term, first = moving_parzen_window(
            moving_value / moving_bin_size - moving_normalized_min, n_moving_bins, padding
        )
        _jacobian_gradient_product(moving_gradients, jacobians, i, inner)

        for w in range(2 * padding):
            b = first + w
            if b < 0 or b >= n_moving_bins:
                continue
            weight = cubic_bspline_derivative(b - term) * ratio[f, b]
            if weight == 0.0:
                continue
            for mu in range(n_parameters):
                derivative[mu] += weight * inner[mu]
    return -1
