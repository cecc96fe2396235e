"""
Example: fitting a Gaussian mixture by gradient ascent on partitioned data

Builds an RDD of row blocks on a local SparkContext from synthetic clusters
and fits it with each of the three optimizers, printing the fitted parameters.
"""

import logging

import numpy as np
import torch
from pyspark import SparkConf, SparkContext

from gradient_gmm import (
    Adam,
    GradientAscent,
    GradientGaussianMixture,
    MomentumGradientAscent,
    parallelize_rows,
)

logging.basicConfig(level=logging.INFO, format="%(name)s %(levelname)s %(message)s")

# Generate synthetic data
np.random.seed(123)
torch.manual_seed(123)

N_PER, D, K = 1500, 2, 3
centers = np.array([[-6.0, 0.0], [0.0, 6.0], [6.0, 0.0]])
X = np.concatenate([c + np.random.randn(N_PER, D) for c in centers])
X = torch.from_numpy(X).to(torch.float64)

sc = SparkContext(conf=SparkConf().setMaster("local[4]").setAppName("two-clusters-example"))
sc.setLogLevel("WARN")
data = parallelize_rows(sc, X, n_partitions=8, block_size=256).cache()

print("=" * 80)
print("Gradient ascent Gaussian mixture")
print("=" * 80)
print()
print(f"Data: {X.shape[0]} samples, {D} dimensions, {K} components, {data.getNumPartitions()} partitions")
print()

optimizers = {
    "gradient ascent": GradientAscent(max_iter=200),
    "momentum": MomentumGradientAscent(beta=0.5, max_iter=200),
    "adam (batch 500)": Adam(learning_rate=0.1, batch_size=500, batch_floor="expected", max_iter=200),
}

for name, optimizer in optimizers.items():
    print(f"{name}")
    print("-" * 80)
    gmm = GradientGaussianMixture.fit(
        data, optimizer, n_components=K, init_sample_count=300, init_iterations=20, seed=7
    )
    order = torch.argsort(gmm.means[:, 0])
    print(f"Converged: {gmm.converged_}")
    print(f"Iterations: {gmm.n_iter_}")
    print(f"Final log-likelihood: {gmm.lower_bound_:.4f}")
    print(f"Weights: {gmm.weights[order].numpy().round(3)}")
    print(f"Means:\n{gmm.means[order].numpy().round(3)}")
    print(f"Mean log-likelihood on all rows: {gmm.score(X):.4f}")
    print()

sc.stop()
