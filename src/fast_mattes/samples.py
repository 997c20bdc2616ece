from __future__ import annotations
from dataclasses import dataclass
import numpy as np
from sklearn.utils import check_consistent_length


@dataclass(frozen=True)
class SampleSet:
    """
    Per-point inputs of one metric evaluation.

    Row ``i`` holds everything the histogram needs about sample point ``i``: the
    fixed image intensity, the moving image intensity interpolated at the
    transformed point, the moving image gradient there and the transform
    jacobian with respect to its parameters.

    Attributes
    ----------
    fixed_values : ndarray of shape (n_samples,)
    moving_values : ndarray of shape (n_samples,)
    moving_gradients : ndarray of shape (n_samples, n_dims) or None
        Only needed for derivative evaluations.
    jacobians : ndarray of shape (n_samples, n_dims, n_parameters) or None
        Only needed for derivative evaluations.
    valid : ndarray of shape (n_samples,), dtype bool
        False for points that map outside the moving image buffer. Those
        points are skipped rather than treated as errors. Defaults to all True.
    """

    fixed_values: np.ndarray
    moving_values: np.ndarray
    moving_gradients: np.ndarray | None = None
    jacobians: np.ndarray | None = None
    valid: np.ndarray | None = None

    def __post_init__(self):
        # Frozen dataclass: coerced arrays are written with object.__setattr__.
        fixed_values = np.ascontiguousarray(self.fixed_values, dtype=np.float64).ravel()
        moving_values = np.ascontiguousarray(self.moving_values, dtype=np.float64).ravel()
        check_consistent_length(fixed_values, moving_values)
        n_samples = fixed_values.shape[0]

        valid = self.valid
        if valid is None:
            valid = np.ones(n_samples, dtype=np.bool_)
        else:
            valid = np.ascontiguousarray(valid, dtype=np.bool_).ravel()
            check_consistent_length(fixed_values, valid)

        moving_gradients, jacobians = self.moving_gradients, self.jacobians
        if (moving_gradients is None) != (jacobians is None):
            raise ValueError("moving_gradients and jacobians must be given together.")
        if moving_gradients is not None:
            moving_gradients = np.ascontiguousarray(moving_gradients, dtype=np.float64)
            if moving_gradients.ndim == 1:
                moving_gradients = moving_gradients.reshape(-1, 1)
            jacobians = np.ascontiguousarray(jacobians, dtype=np.float64)
            if moving_gradients.ndim != 2:
                raise ValueError(
                    f"moving_gradients must have shape (n_samples, n_dims), got {moving_gradients.shape}."
                )
            if jacobians.ndim != 3:
                raise ValueError(
                    f"jacobians must have shape (n_samples, n_dims, n_parameters), got {jacobians.shape}."
                )
            check_consistent_length(fixed_values, moving_gradients, jacobians)
            if jacobians.shape[1] != moving_gradients.shape[1]:
                raise ValueError(
                    f"jacobians cover {jacobians.shape[1]} dimensions but gradients have "
                    f"{moving_gradients.shape[1]}."
                )

        object.__setattr__(self, "fixed_values", fixed_values)
        object.__setattr__(self, "moving_values", moving_values)
        object.__setattr__(self, "moving_gradients", moving_gradients)
        object.__setattr__(self, "jacobians", jacobians)
        object.__setattr__(self, "valid", valid)

    @classmethod
    def from_arrays(cls, fixed_values, moving_values, moving_gradients=None, jacobians=None, valid=None):
        """
        Build a sample set, coercing every array to a contiguous float64/bool layout.

        Equivalent to calling the class directly. Non-finite intensities are
        accepted here. They are reported by the worker that meets them during
        evaluation.
        """
        return cls(fixed_values, moving_values, moving_gradients, jacobians, valid)

    @property
    def n_samples(self) -> int:
        return self.fixed_values.shape[0]

    @property
    def n_parameters(self) -> int:
        return 0 if self.jacobians is None else self.jacobians.shape[2]

    @property
    def has_derivative_inputs(self) -> bool:
        return self.jacobians is not None

    def with_moving_values(self, moving_values) -> SampleSet:
        """Same points with re-interpolated moving intensities (e.g. after a parameter update)."""
        return SampleSet.from_arrays(
            self.fixed_values, moving_values, self.moving_gradients, self.jacobians, self.valid
        )
