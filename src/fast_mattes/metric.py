from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from math import log
import time
import warnings
import numpy as np
from numba import njit, config
from sklearn.base import BaseEstimator
from sklearn.exceptions import NotFittedError
from sklearn.utils.validation import check_array, check_is_fitted

from .accumulator import MERGE_STRATEGIES, run_and_join
from .context import EvaluationContext
from .exceptions import ConfigurationError, InsufficientSamplesError
from .histogram import HistogramConfiguration
from .kernels import make_kernel_pair
from .partitioning import DenseRegionPartitioner, SparseIndexPartitioner
from .samples import SampleSet
from .transforms import as_transform_info

# Joint PDF cells at or below this are treated as empty, in the value and in the ratio table.
PDF_EPSILON = float(np.finfo(np.float64).eps)


@njit(cache=True, nogil=True)
def _mutual_information(joint_pdf, fixed_marginal, moving_marginal, ratio, epsilon):  # pragma: no cover
    """
    Mutual information of a normalized joint PDF.

    Fills ``ratio[f, m] = log(p(f, m) / p_m(m))`` for every non-empty cell as a
    side product; empty cells keep a ratio of zero.
    """
    n_fixed, n_moving = joint_pdf.shape
    mi = 0.0
    for f in range(n_fixed):
        p_f = fixed_marginal[f]
        for m in range(n_moving):
            p_fm = joint_pdf[f, m]
            p_m = moving_marginal[m]
            if p_fm > epsilon and p_m > epsilon:
                r = log(p_fm / p_m)
                ratio[f, m] = r
                if p_f > epsilon:
                    mi += p_fm * (r - log(p_f))
    return mi


@njit(cache=True, nogil=True)
def _contract_pdf_derivatives(joint_pdf_derivatives, ratio):  # pragma: no cover
    """sum_{f,m} dP[f, m, :] * ratio[f, m]"""
    n_fixed, n_moving, n_parameters = joint_pdf_derivatives.shape
    out = np.zeros(n_parameters, dtype=np.float64)
    for f in range(n_fixed):
        for m in range(n_moving):
            r = ratio[f, m]
            if r == 0.0:
                continue
            for mu in range(n_parameters):
                out[mu] += joint_pdf_derivatives[f, m, mu] * r
    return out


class MattesMutualInformation(BaseEstimator):
    """
    Multi-threaded Mattes mutual information between a fixed and a moving image.

    Probability densities are estimated with Parzen windowing: a zero-order
    (box) B-spline on the fixed axis, which needs no smoothness since it does
    not depend on the transform, and a cubic B-spline on the moving axis so the
    metric is differentiable with respect to the transform parameters.

    Sample points are split between a fixed pool of worker threads. Each worker
    fills private histograms with Numba kernels that release the GIL, then the
    private histograms are merged into a shared one through a section-locked
    accumulator.

    The value is the **negated** mutual information and the derivative is its
    gradient with respect to the transform parameters, so both can be handed
    directly to a minimizer.

    Parameters
    ----------
    n_bins : int, default=50
        Number of fixed-image histogram bins. At least 5 because two bins of
        padding are needed on each side by the cubic kernel.

    n_moving_bins : int or None, default=None
        Number of moving-image bins. Defaults to `n_bins`.

    explicit_pdf_derivatives : bool, default=True
        If True, the derivative of the joint PDF with respect to every
        parameter is accumulated during the histogram pass. This is fast for
        transforms with few parameters but needs ``n_bins**2 * n_parameters``
        values per thread. If False, a second pass over the samples uses the
        ratio table instead, needing only ``n_parameters`` values per thread.

    merge : {'locked', 'reduction'}, default='locked'
        How thread-private histograms are merged. 'locked' lets each worker add
        its buffer into lock-protected sections of the shared histogram;
        'reduction' sums all buffers section by section without locks, in a
        fixed buffer order.

    kernel : {'cubic'}, default='cubic'
        Parzen kernel pair.

    n_jobs : int, default=-1
        Number of worker threads. -1 uses Numba's configured thread count.

    verbose : bool, default=False
        Print progress and timings.

    Attributes
    ----------
    histogram_config_ : HistogramConfiguration
        Bin layout and intensity scaling computed by `initialize`.

    kernels_ : KernelPair
        Kernel strategy in use.

    partitioner_ : DenseRegionPartitioner or SparseIndexPartitioner
        Splits the sample domain between workers.

    n_threads_ : int
        Size of the worker pool.

    number_of_parameters_ : int
        Transform parameter count.

    joint_pdf_ : ndarray of shape (n_bins, n_moving_bins) or None
        Normalized joint PDF of the last successful evaluation.

    joint_pdf_derivatives_ : ndarray of shape (n_bins, n_moving_bins, n_parameters) or None
        Derivative of `joint_pdf_` with respect to the transform parameters,
        from the last successful derivative evaluation with
        ``explicit_pdf_derivatives=True``.

    fixed_marginal_pdf_, moving_marginal_pdf_ : ndarray or None
        Marginals of `joint_pdf_`.

    number_of_valid_points_ : int
        Valid samples used by the last successful evaluation.
    """

    def __init__(
        self,
        n_bins: int = 50,
        n_moving_bins: int | None = None,
        explicit_pdf_derivatives: bool = True,
        merge: str = "locked",
        kernel: str = "cubic",
        n_jobs: int = -1,
        verbose: bool = False,
    ):
        self.n_bins = n_bins
        self.n_moving_bins = n_moving_bins
        self.explicit_pdf_derivatives = explicit_pdf_derivatives
        self.merge = merge
        self.kernel = kernel
        self.n_jobs = n_jobs
        self.verbose = verbose

    def initialize(self, fixed_image, moving_image, transform, sample_indices=None):
        """
        Validate the configuration and prepare everything reused across evaluations.

        Parameters
        ----------
        fixed_image : array-like of any dimension
            Fixed image intensities. Its shape is the dense sampling domain.

        moving_image : array-like of any dimension
            Moving image intensities. Only its range is used, to scale the
            moving axis of the histogram.

        transform : TransformInfo-like or int
            Object exposing ``number_of_parameters`` and ``has_local_support``,
            or a bare parameter count.

        sample_indices : array-like of int or None, default=None
            Flat (C-order) indices into `fixed_image` of pre-selected sample
            points. If given, evaluations expect one sample per index, in this
            order, and the fixed intensity range is taken from these points only.

        Returns
        -------
        self : object
            Returns the instance itself.

        Raises
        ------
        ConfigurationError
            If a bin count is below the minimum, a parameter is unsupported, the
            transform has local support, or a sample index is out of range.
        """
        kernels = make_kernel_pair(self.kernel)
        n_fixed_bins = self.n_bins
        n_moving_bins = self.n_bins if self.n_moving_bins is None else self.n_moving_bins
        for name, value in (("n_bins", n_fixed_bins), ("n_moving_bins", n_moving_bins)):
            if not isinstance(value, (int, np.integer)) or value < kernels.min_bins():
                raise ConfigurationError(
                    f"{name} must be an integer of at least {kernels.min_bins()}, got {value!r}."
                )
        if self.merge not in MERGE_STRATEGIES:
            raise ConfigurationError(f"merge must be one of {MERGE_STRATEGIES}, got '{self.merge}'.")
        if self.n_jobs == 0 or self.n_jobs < -1:
            raise ConfigurationError(f"n_jobs must be -1 or a positive integer, got {self.n_jobs}.")

        transform_info = as_transform_info(transform)

        fixed_image = check_array(fixed_image, dtype=np.float64, ensure_2d=False, allow_nd=True)
        moving_image = check_array(moving_image, dtype=np.float64, ensure_2d=False, allow_nd=True)

        if sample_indices is None:
            partitioner = DenseRegionPartitioner(fixed_image.shape)
            fixed_range_values = fixed_image
        else:
            sample_indices = np.asarray(sample_indices, dtype=np.int64).ravel()
            if sample_indices.size == 0:
                raise ConfigurationError("sample_indices must select at least one point.")
            if sample_indices.min() < 0 or sample_indices.max() >= fixed_image.size:
                raise ConfigurationError(
                    f"sample_indices must lie in [0, {fixed_image.size}), got "
                    f"[{sample_indices.min()}, {sample_indices.max()}]."
                )
            partitioner = SparseIndexPartitioner(sample_indices.size)
            fixed_range_values = fixed_image.ravel()[sample_indices]

        histogram_config = HistogramConfiguration.from_intensities(
            fixed_range_values, moving_image, n_fixed_bins, n_moving_bins, kernels.support_half_width
        )

        n_threads = config.NUMBA_NUM_THREADS if self.n_jobs == -1 else int(self.n_jobs)
        partitions = partitioner.partition(n_threads)

        if partitioner.n_samples < n_fixed_bins * n_moving_bins:
            warnings.warn(
                f"Only {partitioner.n_samples} sample points for a {n_fixed_bins}x{n_moving_bins} "
                f"joint histogram. The density estimate will be sparse.",
                UserWarning,
            )
        if len(partitions) < n_threads:
            warnings.warn(
                f"Only {len(partitions)} of {n_threads} worker threads receive samples; "
                f"the rest stay idle.",
                UserWarning,
            )

        self.close()
        self._executor = ThreadPoolExecutor(max_workers=n_threads, thread_name_prefix="fast_mattes")

        self.kernels_ = kernels
        self.partitioner_ = partitioner
        self.partitions_ = partitions
        self.sample_indices_ = sample_indices
        self.n_threads_ = n_threads
        self.number_of_parameters_ = transform_info.number_of_parameters
        self.histogram_config_ = histogram_config
        self._discard_results()

        if self.verbose:
            print(
                f"Initialized {n_fixed_bins}x{n_moving_bins} Mattes MI over {partitioner.n_samples} "
                f"{partitioner.kind} samples, {len(partitions)} partitions on {n_threads} threads."
            )
        return self

    def fit(self, fixed_image, moving_image, transform, sample_indices=None):
        """Alias of `initialize`."""
        return self.initialize(fixed_image, moving_image, transform, sample_indices)

    def get_value(self, samples: SampleSet) -> float:
        """
        Negated mutual information of the given samples.

        Parameters
        ----------
        samples : SampleSet
            One row per point of the initialized sampling domain.

        Returns
        -------
        float
            ``-MI``. Lower values mean better alignment.
        """
        value, _ = self._evaluate(samples, with_derivative=False)
        return value

    def get_derivative(self, samples: SampleSet) -> np.ndarray:
        """Gradient of `get_value` with respect to the transform parameters."""
        _, derivative = self._evaluate(samples, with_derivative=True)
        return derivative

    def get_value_and_derivative(self, samples: SampleSet) -> tuple[float, np.ndarray]:
        """
        Value and derivative from a single histogram pass.

        Returns
        -------
        value : float
            ``-MI``.
        derivative : ndarray of shape (n_parameters,)
            ``d(-MI) / d(parameters)``.
        """
        return self._evaluate(samples, with_derivative=True)

    def close(self):
        """Shut down the worker pool. The metric must be re-initialized before further use."""
        executor = getattr(self, "_executor", None)
        if executor is not None:
            executor.shutdown(wait=True)
        self._executor = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
        return False

    def _discard_results(self):
        self.joint_pdf_ = None
        self.joint_pdf_derivatives_ = None
        self.fixed_marginal_pdf_ = None
        self.moving_marginal_pdf_ = None
        self.number_of_valid_points_ = 0

    def _check_samples(self, samples, with_derivative):
        if not isinstance(samples, SampleSet):
            raise TypeError(f"samples must be a SampleSet, got {type(samples).__name__}.")
        expected = self.partitioner_.n_samples
        if samples.n_samples != expected:
            raise ValueError(
                f"Expected {expected} samples for the initialized {self.partitioner_.kind} domain, "
                f"got {samples.n_samples}."
            )
        if with_derivative:
            if not samples.has_derivative_inputs:
                raise ValueError("Derivative evaluation needs moving_gradients and jacobians.")
            if samples.n_parameters != self.number_of_parameters_:
                raise ValueError(
                    f"jacobians have {samples.n_parameters} parameters, but the transform has "
                    f"{self.number_of_parameters_}."
                )

    def _evaluate(self, samples, with_derivative):
        check_is_fitted(self, "histogram_config_")
        if getattr(self, "_executor", None) is None:
            raise NotFittedError("The metric has been closed. Call 'initialize' again before evaluating.")
        self._check_samples(samples, with_derivative)
        self._discard_results()

        histogram_config = self.histogram_config_
        context = EvaluationContext(
            histogram_config,
            self.partitions_,
            self.number_of_parameters_,
            n_sections=self.n_threads_,
            with_derivative=with_derivative,
            explicit_pdf_derivatives=self.explicit_pdf_derivatives,
        )
        workers = [(worker_id, samples) for worker_id in range(len(self.partitions_))]
        try:
            start = time.perf_counter()
            counts = run_and_join(self._executor, context.accumulate_partition, workers)
            context.n_valid = int(sum(counts))
            if context.n_valid == 0:
                raise InsufficientSamplesError(
                    "No valid sample points: all samples map outside the moving image buffer."
                )

            context.joint_pdf.merge(context.thread_joint_pdf, self._executor, self.merge)
            if context.with_volume:
                context.joint_pdf_derivatives.merge(
                    context.thread_joint_pdf_derivatives, self._executor, self.merge
                )
            if self.verbose:
                print(f"Accumulated {context.n_valid} samples in {time.perf_counter() - start:.4f}s")

            joint_pdf = context.joint_pdf.total
            joint_pdf /= context.n_valid
            context.fixed_marginal = np.sum(joint_pdf, axis=1)
            context.moving_marginal = np.sum(joint_pdf, axis=0)
            context.ratio = np.zeros_like(joint_pdf)
            mi = _mutual_information(
                joint_pdf, context.fixed_marginal, context.moving_marginal, context.ratio, PDF_EPSILON
            )

            derivative = None
            joint_pdf_derivatives = None
            if with_derivative:
                scale = 1.0 / (context.n_valid * histogram_config.moving_bin_size)
                if context.with_volume:
                    joint_pdf_derivatives = context.joint_pdf_derivatives.total
                    joint_pdf_derivatives *= scale
                    derivative = -_contract_pdf_derivatives(joint_pdf_derivatives, context.ratio)
                else:
                    start = time.perf_counter()
                    run_and_join(self._executor, context.accumulate_ratio_partition, workers)
                    derivative = context.derivative.merge(context.thread_derivative, self._executor, self.merge)
                    derivative = derivative * scale
                    if self.verbose:
                        print(f"Ratio derivative pass in {time.perf_counter() - start:.4f}s")
        finally:
            context.release_thread_buffers()

        self.joint_pdf_ = joint_pdf
        self.joint_pdf_derivatives_ = joint_pdf_derivatives
        self.fixed_marginal_pdf_ = context.fixed_marginal
        self.moving_marginal_pdf_ = context.moving_marginal
        self.number_of_valid_points_ = context.n_valid
        return -mi, derivative
