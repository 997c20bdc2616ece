from __future__ import annotations
import numpy as np
from numba import njit, prange

from .exceptions import ConfigurationError


class TransformInfo:
    """
    What the metric needs to know about a transform.

    Parameters
    ----------
    number_of_parameters : int
        Length of the parameter (and derivative) vector.
    has_local_support : bool, default=False
        True for transforms whose effective parameters differ from point to
        point, such as dense displacement fields. Those are not supported.
    """

    def __init__(self, number_of_parameters: int, has_local_support: bool = False):
        self.number_of_parameters = int(number_of_parameters)
        self.has_local_support = bool(has_local_support)

    def __repr__(self):
        return (
            f"{type(self).__name__}(number_of_parameters={self.number_of_parameters}, "
            f"has_local_support={self.has_local_support})"
        )


class TranslationTransform(TransformInfo):
    """Pure translation. The jacobian is the identity at every point."""

    def __init__(self, dim: int):
        self.dim = int(dim)
        super().__init__(self.dim)

    def jacobians(self, points: np.ndarray) -> np.ndarray:
        points = np.atleast_2d(np.asarray(points, dtype=np.float64))
        return np.broadcast_to(np.eye(self.dim), (points.shape[0], self.dim, self.dim)).copy()


@njit(parallel=True, cache=True)
def _affine_jacobians(points, center):  # pragma: no cover
    n_points, dim = points.shape
    out = np.zeros((n_points, dim, dim * dim + dim), dtype=np.float64)
    for i in prange(n_points):
        for d in range(dim):
            for k in range(dim):
                out[i, d, d * dim + k] = points[i, k] - center[k]
            out[i, d, dim * dim + d] = 1.0
    return out


class AffineTransform(TransformInfo):
    """
    Affine transform ``x -> A (x - c) + t + c``.

    Parameters are the matrix ``A`` in row-major order followed by the
    translation ``t``, giving ``dim * (dim + 1)`` parameters.
    """

    def __init__(self, dim: int, center=None):
        self.dim = int(dim)
        self.center = np.zeros(self.dim) if center is None else np.asarray(center, dtype=np.float64)
        super().__init__(self.dim * (self.dim + 1))

    def jacobians(self, points: np.ndarray) -> np.ndarray:
        points = np.ascontiguousarray(np.atleast_2d(points), dtype=np.float64)
        if points.shape[1] != self.dim:
            raise ValueError(f"Expected points of dimension {self.dim}, got {points.shape[1]}.")
        return _affine_jacobians(points, self.center)


def as_transform_info(transform) -> TransformInfo:
    """Accept a transform object or a bare parameter count."""
    if isinstance(transform, (int, np.integer)):
        transform = TransformInfo(int(transform))
    try:
        n_parameters = int(transform.number_of_parameters)
        local = bool(transform.has_local_support)
    except AttributeError:
        raise ConfigurationError(
            "transform must expose 'number_of_parameters' and 'has_local_support', "
            f"got {type(transform).__name__}."
        ) from None
    if n_parameters < 1:
        raise ConfigurationError(f"The transform must have at least one parameter, got {n_parameters}.")
    if local:
        raise ConfigurationError(
            "Transforms with local support (per-point parameters) are not supported. "
            "Use a global transform such as a translation or an affine transform."
        )
    return TransformInfo(n_parameters)
