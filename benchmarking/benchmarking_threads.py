import time
import warnings

import numpy as np
import pandas as pd
from numba import config

from fast_mattes import MattesMutualInformation, SampleSet, AffineTransform

# --- Benchmark Configuration ---
IMAGE_SIDES = [64, 128, 256, 512]
THREAD_COUNTS = sorted({1, 2, 4, 8, config.NUMBA_NUM_THREADS})
N_BINS = 50
N_REPEATS = 3

# --- Metric variants to test ---
variants = {
    "locked merge, explicit dP": dict(merge="locked", explicit_pdf_derivatives=True),
    "reduction merge, explicit dP": dict(merge="reduction", explicit_pdf_derivatives=True),
    "locked merge, ratio pass": dict(merge="locked", explicit_pdf_derivatives=False),
}


def make_image_pair(side, seed=42):
    """A smooth 2D fixed image and a noisy, intensity-remapped moving image."""
    rng = np.random.RandomState(seed)
    yy, xx = np.mgrid[0:side, 0:side] / side
    fixed = np.sin(6 * xx) * np.cos(4 * yy) + 0.1 * rng.normal(size=(side, side))
    moving = np.exp(fixed) + 0.05 * rng.normal(size=(side, side))
    gy, gx = np.gradient(moving)
    points = np.stack([yy.ravel(), xx.ravel()], axis=1) * side
    transform = AffineTransform(2, center=[side / 2, side / 2])
    samples = SampleSet.from_arrays(
        fixed.ravel(), moving.ravel(),
        moving_gradients=np.stack([gy.ravel(), gx.ravel()], axis=1),
        jacobians=transform.jacobians(points),
    )
    return fixed, moving, transform, samples


def run_single_benchmark(metric, samples):
    """Measures the runtime of a single value-and-derivative evaluation."""
    start_time = time.perf_counter()
    metric.get_value_and_derivative(samples)
    end_time = time.perf_counter()
    return end_time - start_time


def warmup_jit_compilers():
    """Performs a 'warm-up' run on a small image to compile JIT functions."""
    print("\n--- Warming up JIT compilers ---")
    fixed, moving, transform, samples = make_image_pair(16)
    for name, params in variants.items():
        print(f"  Warming up {name}...")
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", UserWarning)
                with MattesMutualInformation(n_bins=N_BINS, n_jobs=2, **params).initialize(
                        fixed, moving, transform) as metric:
                    metric.get_value_and_derivative(samples)
        except Exception as e:
            warnings.warn(f"  > Warm-up FAILED for {name}. Reason: {e}")
    print("--- Warm-up complete ---")


def main():
    """Main function to run all benchmark scenarios."""
    results = []
    warmup_jit_compilers()

    for side in IMAGE_SIDES:
        print(f"\nGenerating data: {side}x{side} image")
        fixed, moving, transform, samples = make_image_pair(side)

        for name, params in variants.items():
            for n_jobs in THREAD_COUNTS:
                with MattesMutualInformation(n_bins=N_BINS, n_jobs=n_jobs, **params).initialize(
                        fixed, moving, transform) as metric:
                    for i in range(N_REPEATS):
                        print(f"  Benchmarking {name} on {n_jobs} threads (Run {i+1}/{N_REPEATS})...")
                        try:
                            runtime = run_single_benchmark(metric, samples)
                            results.append(
                                {
                                    "variant": name,
                                    "n_threads": n_jobs,
                                    "n_samples": side * side,
                                    "runtime": runtime,
                                }
                            )
                        except Exception as e:
                            warnings.warn(f"  > FAILED: {name} on {side}x{side}. Reason: {e}")

    # --- Save results to CSV ---
    df = pd.DataFrame(results)
    output_file = "benchmark_results_threads.csv"
    df.to_csv(output_file, index=False)
    print(f"\nBenchmarking complete. Results saved to '{output_file}'")


if __name__ == "__main__":
    main()
