# plot_benchmarks.py

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns


def plot_scaling(df, n_samples, filename):
    """Runtime against thread count for every metric variant at one image size."""

    size_df = df[df["n_samples"] == n_samples].copy()

    plt.figure(figsize=(12, 8))

    sns.lineplot(
        data=size_df,
        x="n_threads",
        y="runtime",
        hue="variant",
        marker="o",
        linewidth=2.5,
        errorbar="sd",
    )

    plt.title(
        f"Mattes MI value and derivative: runtime vs. threads\n({n_samples} samples)",
        fontsize=18, fontweight="bold", pad=20,
    )
    plt.xlabel("Threads", fontsize=14)
    plt.ylabel("Runtime (seconds, log scale)", fontsize=14)
    plt.xscale("log", base=2)
    plt.yscale("log")
    plt.xticks(fontsize=12)
    plt.yticks(fontsize=12)
    plt.grid(True, which="both", ls="--", c="0.7")
    plt.legend(title="Variant", fontsize=11, title_fontsize=13)
    plt.tight_layout()

    plt.savefig(filename, dpi=300, bbox_inches="tight")
    print(f"Plot saved to '{filename}'")


def plot_speedup(df, filename):
    """Speed-up over the single-threaded run of the same variant and image size."""

    mean_df = df.groupby(["variant", "n_samples", "n_threads"], as_index=False)["runtime"].mean()
    baseline = mean_df[mean_df["n_threads"] == 1].set_index(["variant", "n_samples"])["runtime"]
    mean_df["speedup"] = [
        baseline.get((v, n), float("nan")) / t
        for v, n, t in zip(mean_df["variant"], mean_df["n_samples"], mean_df["runtime"])
    ]

    plt.figure(figsize=(12, 8))
    sns.lineplot(data=mean_df, x="n_threads", y="speedup", hue="n_samples", style="variant", marker="o")
    max_threads = mean_df["n_threads"].max()
    plt.plot([1, max_threads], [1, max_threads], ls=":", c="0.4", label="linear")

    plt.title("Parallel speed-up", fontsize=18, fontweight="bold", pad=20)
    plt.xlabel("Threads", fontsize=14)
    plt.ylabel("Speed-up", fontsize=14)
    plt.grid(True, which="both", ls="--", c="0.7")
    plt.legend(fontsize=10)
    plt.tight_layout()

    plt.savefig(filename, dpi=300, bbox_inches="tight")
    print(f"Plot saved to '{filename}'")


def main():
    """Main function to load results and generate plots."""
    try:
        df = pd.read_csv("benchmark_results_threads.csv")
    except FileNotFoundError:
        print("Error: 'benchmark_results_threads.csv' not found.")
        print("Please run 'benchmarking_threads.py' first.")
        return

    sns.set_theme(style="whitegrid")

    for n_samples in sorted(df["n_samples"].unique()):
        plot_scaling(df, n_samples, filename=f"benchmark_threads_{n_samples}.png")

    plot_speedup(df, filename="benchmark_speedup.png")


if __name__ == "__main__":
    main()
