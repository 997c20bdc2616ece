import pytest
import numpy as np
from numpy.testing import assert_allclose, assert_array_equal

from fast_mattes import (
    AffineTransform,
    ConfigurationError,
    SampleSet,
    TransformInfo,
    TranslationTransform,
)
from fast_mattes.transforms import as_transform_info


def test_translation_jacobian_is_identity():
    jac = TranslationTransform(3).jacobians(np.zeros((4, 3)))
    assert jac.shape == (4, 3, 3)
    for j in jac:
        assert_array_equal(j, np.eye(3))


def test_affine_jacobian_layout():
    """Matrix parameters in row-major order, then the translation."""
    transform = AffineTransform(2, center=[1.0, -1.0])
    assert transform.number_of_parameters == 6
    jac = transform.jacobians([[3.0, 4.0]])
    expected = np.array([
        [2.0, 5.0, 0.0, 0.0, 1.0, 0.0],
        [0.0, 0.0, 2.0, 5.0, 0.0, 1.0],
    ])
    assert_allclose(jac[0], expected)


def test_affine_jacobian_matches_finite_differences():
    rng = np.random.RandomState(0)
    points = rng.normal(size=(5, 3))
    transform = AffineTransform(3)
    params = rng.normal(size=12)

    def apply(p):
        matrix = p[:9].reshape(3, 3)
        return points @ matrix.T + p[9:]

    h = 1e-6
    numeric = np.zeros((5, 3, 12))
    for k in range(12):
        step = np.zeros(12)
        step[k] = h
        numeric[:, :, k] = (apply(params + step) - apply(params - step)) / (2 * h)
    assert_allclose(transform.jacobians(points), numeric, atol=1e-6)


def test_affine_rejects_wrong_point_dimension():
    with pytest.raises(ValueError):
        AffineTransform(2).jacobians(np.zeros((3, 3)))


def test_as_transform_info_accepts_parameter_count():
    info = as_transform_info(6)
    assert info.number_of_parameters == 6
    assert not info.has_local_support


@pytest.mark.parametrize("transform", [0, TransformInfo(0), TransformInfo(50, has_local_support=True), object()])
def test_as_transform_info_rejects_unsupported(transform):
    with pytest.raises(ConfigurationError):
        as_transform_info(transform)


def test_sample_set_coerces_layout():
    samples = SampleSet.from_arrays(
        [[1, 2], [3, 4]], [1, 2, 3, 4],
        moving_gradients=[1.0, 2.0, 3.0, 4.0],
        jacobians=np.ones((4, 1, 3)),
    )
    assert samples.fixed_values.dtype == np.float64
    assert samples.fixed_values.shape == (4,)
    assert samples.moving_gradients.shape == (4, 1)
    assert samples.n_parameters == 3
    assert samples.valid.all()
    assert samples.has_derivative_inputs


def test_sample_set_accepts_non_finite_values():
    samples = SampleSet.from_arrays([0.0, np.nan], [np.inf, 1.0])
    assert samples.n_samples == 2


def test_sample_set_length_mismatch():
    with pytest.raises(ValueError):
        SampleSet.from_arrays(np.zeros(4), np.zeros(5))
    with pytest.raises(ValueError):
        SampleSet.from_arrays(np.zeros(4), np.zeros(4), valid=np.ones(3, dtype=bool))


def test_sample_set_needs_gradients_and_jacobians_together():
    with pytest.raises(ValueError):
        SampleSet.from_arrays(np.zeros(4), np.zeros(4), moving_gradients=np.zeros((4, 2)))


def test_sample_set_dimension_mismatch():
    with pytest.raises(ValueError):
        SampleSet.from_arrays(np.zeros(4), np.zeros(4), np.zeros((4, 2)), np.zeros((4, 3, 6)))


def test_with_moving_values_keeps_everything_else():
    samples = SampleSet.from_arrays(np.arange(3.0), np.zeros(3), np.ones((3, 2)), np.ones((3, 2, 2)),
                                    valid=[True, False, True])
    moved = samples.with_moving_values([5.0, 6.0, 7.0])
    assert_array_equal(moved.moving_values, [5.0, 6.0, 7.0])
    assert_array_equal(moved.fixed_values, samples.fixed_values)
    assert_array_equal(moved.valid, [True, False, True])
    assert moved.jacobians is samples.jacobians or np.array_equal(moved.jacobians, samples.jacobians)


def test_direct_construction_coerces_like_from_arrays():
    samples = SampleSet([[1, 2], [3, 4]], [1, 2, 3, 4], [1.0, 2.0, 3.0, 4.0], np.ones((4, 1, 3)))
    assert samples.fixed_values.dtype == np.float64
    assert samples.fixed_values.shape == (4,)
    assert samples.moving_gradients.shape == (4, 1)
    assert samples.valid.dtype == np.bool_
    assert samples.valid.all()
    with pytest.raises(ValueError):
        SampleSet(np.zeros(4), np.zeros(5))
    with pytest.raises(ValueError):
        SampleSet(np.zeros(4), np.zeros(4), jacobians=np.zeros((4, 1, 2)))
