import pytest
import numpy as np
from numpy.testing import assert_allclose

from fast_mattes import MattesMutualInformation, SampleSet, TransformInfo, AffineTransform


@pytest.fixture(scope="module")
def linear_model():
    """
    1D samples whose moving intensity depends linearly on two parameters:

        moving(p) = moving0 + gradient * (p0 + p1 * x)

    which is exactly what a first-order expansion of a moving image under a
    shift-and-scale transform gives. The gradient and jacobian handed to the
    metric are then exact, so its derivative can be checked against finite
    differences of its value.
    """
    rng = np.random.RandomState(42)
    n = 400
    x = rng.uniform(-1.0, 1.0, size=n)
    fixed = rng.uniform(0.0, 1.0, size=n)
    moving0 = fixed + 0.15 * rng.uniform(-1.0, 1.0, size=n)
    gradients = rng.uniform(0.5, 1.5, size=(n, 1))
    jacobians = np.zeros((n, 1, 2))
    jacobians[:, 0, 0] = 1.0
    jacobians[:, 0, 1] = x
    # Range of the moving image, wide enough that no perturbed value is clamped.
    moving_image = np.array([-1.0, 2.5])

    def samples_at(params):
        moving = moving0 + gradients[:, 0] * (params[0] + params[1] * x)
        return SampleSet.from_arrays(fixed, moving, gradients, jacobians)

    return fixed, moving_image, samples_at


@pytest.mark.parametrize("explicit_pdf_derivatives", [True, False])
def test_derivative_matches_finite_differences(linear_model, explicit_pdf_derivatives):
    fixed, moving_image, samples_at = linear_model
    params = np.array([0.02, -0.01])
    h = 1e-5
    with MattesMutualInformation(
            n_bins=16, n_jobs=4, explicit_pdf_derivatives=explicit_pdf_derivatives,
    ).initialize(fixed, moving_image, TransformInfo(2)) as metric:
        value, derivative = metric.get_value_and_derivative(samples_at(params))
        assert_allclose(value, metric.get_value(samples_at(params)), rtol=1e-12)

        numeric = np.zeros(2)
        for k in range(2):
            step = np.zeros(2)
            step[k] = h
            numeric[k] = (metric.get_value(samples_at(params + step))
                          - metric.get_value(samples_at(params - step))) / (2 * h)
    assert_allclose(derivative, numeric, rtol=1e-4, atol=1e-7)


def test_pdf_derivative_volume_and_ratio_pass_agree(linear_model):
    fixed, moving_image, samples_at = linear_model
    samples = samples_at(np.array([0.05, 0.03]))
    with MattesMutualInformation(n_bins=20, n_jobs=3, explicit_pdf_derivatives=True).initialize(
            fixed, moving_image, TransformInfo(2)) as volume, \
            MattesMutualInformation(n_bins=20, n_jobs=3, explicit_pdf_derivatives=False).initialize(
                fixed, moving_image, TransformInfo(2)) as ratio_pass:
        v1, d1 = volume.get_value_and_derivative(samples)
        v2, d2 = ratio_pass.get_value_and_derivative(samples)
        assert_allclose(v1, v2, rtol=1e-12)
        assert_allclose(d1, d2, rtol=1e-9, atol=1e-12)
        assert volume.joint_pdf_derivatives_.shape == (20, 20, 2)
        assert ratio_pass.joint_pdf_derivatives_ is None


def test_pdf_derivative_rows_sum_to_zero(linear_model):
    """Each sample adds unit mass to its fixed row whatever the parameters, so row sums of dP vanish."""
    fixed, moving_image, samples_at = linear_model
    with MattesMutualInformation(n_bins=12, n_jobs=2).initialize(fixed, moving_image, TransformInfo(2)) as metric:
        metric.get_derivative(samples_at(np.zeros(2)))
        row_sums = metric.joint_pdf_derivatives_.sum(axis=1)
        assert_allclose(row_sums, 0.0, atol=1e-12)


def test_step_against_derivative_decreases_value(linear_model):
    fixed, moving_image, samples_at = linear_model
    params = np.array([0.1, -0.08])
    with MattesMutualInformation(n_bins=16, n_jobs=2).initialize(fixed, moving_image, TransformInfo(2)) as metric:
        value, derivative = metric.get_value_and_derivative(samples_at(params))
        stepped = params - 1e-3 * derivative / np.linalg.norm(derivative)
        assert metric.get_value(samples_at(stepped)) < value


def test_get_derivative_matches_combined_call(linear_model):
    fixed, moving_image, samples_at = linear_model
    samples = samples_at(np.array([0.01, 0.02]))
    with MattesMutualInformation(n_bins=10, n_jobs=2).initialize(fixed, moving_image, TransformInfo(2)) as metric:
        _, combined = metric.get_value_and_derivative(samples)
        assert_allclose(metric.get_derivative(samples), combined, rtol=1e-10, atol=1e-14)


def test_value_only_evaluation_does_not_build_derivative_volume(linear_model):
    fixed, moving_image, samples_at = linear_model
    with MattesMutualInformation(n_bins=10, n_jobs=2).initialize(fixed, moving_image, TransformInfo(2)) as metric:
        metric.get_value(samples_at(np.zeros(2)))
        assert metric.joint_pdf_derivatives_ is None


def test_affine_jacobians_drive_a_2d_derivative():
    rng = np.random.RandomState(5)
    points = rng.uniform(-5.0, 5.0, size=(300, 2))
    fixed = np.sin(points[:, 0]) + 0.5 * points[:, 1]
    moving = fixed + rng.normal(0.0, 0.05, size=300)
    gradients = rng.normal(size=(300, 2))
    transform = AffineTransform(2)
    samples = SampleSet.from_arrays(fixed, moving, gradients, transform.jacobians(points))
    with MattesMutualInformation(n_bins=12, n_jobs=4).initialize(fixed, moving, transform) as metric:
        value, derivative = metric.get_value_and_derivative(samples)
    assert derivative.shape == (6,)
    assert np.all(np.isfinite(derivative))
    assert value < 0.0


def test_derivative_needs_gradients_and_jacobians(linear_model):
    fixed, moving_image, samples_at = linear_model
    samples = samples_at(np.zeros(2))
    with MattesMutualInformation(n_bins=10, n_jobs=2).initialize(fixed, moving_image, TransformInfo(2)) as metric:
        with pytest.raises(ValueError, match="moving_gradients and jacobians"):
            metric.get_derivative(SampleSet.from_arrays(samples.fixed_values, samples.moving_values))


def test_jacobian_parameter_count_must_match_transform(linear_model):
    fixed, moving_image, samples_at = linear_model
    with MattesMutualInformation(n_bins=10, n_jobs=2).initialize(fixed, moving_image, TransformInfo(3)) as metric:
        with pytest.raises(ValueError, match="parameters"):
            metric.get_derivative(samples_at(np.zeros(2)))
