from __future__ import annotations
import numpy as np
from numba import njit, vectorize, float64

from .exceptions import ConfigurationError

# Half width of the cubic B-spline support. Also the number of padding bins
# kept empty on each side of the histogram.
CUBIC_SUPPORT_HALF_WIDTH = 2


@njit(cache=True, nogil=True)
def box_kernel(u: float) -> float:  # pragma: no cover
    """Zero-order B-spline (box car) weight."""
    if abs(u) < 0.5:
        return 1.0
    return 0.0


@njit(cache=True, nogil=True)
def cubic_bspline(u: float) -> float:  # pragma: no cover
    """Third-order B-spline weight, support |u| < 2."""
    a = abs(u)
    if a < 1.0:
        return (4.0 - 6.0 * a * a + 3.0 * a * a * a) / 6.0
    elif a < 2.0:
        b = 2.0 - a
        return b * b * b / 6.0
    return 0.0


@njit(cache=True, nogil=True)
def cubic_bspline_derivative(u: float) -> float:  # pragma: no cover
    """Derivative of the third-order B-spline with respect to u."""
    a = abs(u)
    if a < 1.0:
        return -2.0 * u + 1.5 * u * a
    elif a < 2.0:
        b = 2.0 - a
        if u < 0.0:
            return 0.5 * b * b
        return -0.5 * b * b
    return 0.0


@njit(cache=True, nogil=True)
def fixed_parzen_index(term: float, n_bins: int, padding: int) -> int:  # pragma: no cover
    """
    Bin selected by the box kernel for a continuous fixed-image bin coordinate.

    Bin ``f`` is centred at ``f + 0.5`` so the box kernel picks ``floor(term)``.
    The result is clamped to the non-padding bins.
    """
    index = int(np.floor(term))
    if index < padding:
        index = padding
    elif index > n_bins - padding - 1:
        index = n_bins - padding - 1
    return index


@njit(cache=True, nogil=True)
def moving_parzen_window(term: float, n_bins: int, padding: int):  # pragma: no cover
    """
    Clamp a moving-image bin coordinate and locate the first bin of its window.

    Returns
    -------
    tuple[float, int]
        The clamped coordinate and the first of the ``2 * padding`` bins the
        cubic kernel touches.
    """
    if term < padding:
        term = float(padding)
    elif term > n_bins - padding:
        term = float(n_bins - padding)
    index = int(term)
    if index < padding:
        index = padding
    elif index > n_bins - padding - 1:
        index = n_bins - padding - 1
    return term, index - 1


@vectorize([float64(float64)], cache=True)
def _box_ufunc(u):  # pragma: no cover
    return box_kernel(u)


@vectorize([float64(float64)], cache=True)
def _cubic_ufunc(u):  # pragma: no cover
    return cubic_bspline(u)


@vectorize([float64(float64)], cache=True)
def _cubic_derivative_ufunc(u):  # pragma: no cover
    return cubic_bspline_derivative(u)


class KernelPair:
    """
    Parzen kernels used for the two histogram axes.

    The fixed axis only needs a bin assignment, so a zero-order box kernel is
    used there. The moving axis must be differentiable, so samples are spread
    over neighbouring bins with a cubic B-spline.

    The Numba accumulators in `fast_mattes.histogram` are specialized to this
    cubic pair and call `cubic_bspline` and `cubic_bspline_derivative`
    directly. The metric takes only the padding (`support_half_width`) and
    `min_bins` from the pair. The weight and window methods evaluate the same
    kernels outside Numba.

    Attributes
    ----------
    name : str
        Registry name of the pair.
    support_half_width : int
        Half width of the moving kernel support, in bins. Used as histogram padding.
    window_width : int
        Number of moving bins touched by a single sample.
    """

    name = "cubic"
    fixed_order = 0
    moving_order = 3
    support_half_width = CUBIC_SUPPORT_HALF_WIDTH

    @property
    def window_width(self) -> int:
        return 2 * self.support_half_width

    def min_bins(self) -> int:
        """Smallest bin count leaving at least one bin between the paddings."""
        return 2 * self.support_half_width + 1

    def fixed_weight(self, u):
        return _box_ufunc(np.asarray(u, dtype=np.float64))

    def moving_weight(self, u):
        return _cubic_ufunc(np.asarray(u, dtype=np.float64))

    def moving_derivative(self, u):
        return _cubic_derivative_ufunc(np.asarray(u, dtype=np.float64))

    def fixed_bin(self, term: float, n_bins: int) -> int:
        return fixed_parzen_index(float(term), n_bins, self.support_half_width)

    def moving_window(self, term: float, n_bins: int) -> tuple[np.ndarray, np.ndarray]:
        """
        Bins and cubic weights a moving coordinate is splatted into.

        Parameters
        ----------
        term : float
            Continuous moving-image bin coordinate.
        n_bins : int
            Number of moving bins.

        Returns
        -------
        tuple[np.ndarray, np.ndarray]
            The ``window_width`` bin indices and their weights. Weights sum to one.
        """
        clamped, first = moving_parzen_window(float(term), n_bins, self.support_half_width)
        bins = first + np.arange(self.window_width)
        return bins, self.moving_weight(bins - clamped)

    def __repr__(self):
        return f"{type(self).__name__}(fixed_order={self.fixed_order}, moving_order={self.moving_order})"


KERNEL_PAIRS = {KernelPair.name: KernelPair}


def make_kernel_pair(name: str) -> KernelPair:
    """Instantiate a registered kernel pair by name."""
    try:
        return KERNEL_PAIRS[name]()
    except KeyError:
        raise ConfigurationError(
            f"Unsupported kernel: '{name}'. Choose one of {sorted(KERNEL_PAIRS)}."
        ) from None
