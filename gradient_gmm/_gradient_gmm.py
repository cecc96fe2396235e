# gradient_gmm/_gradient_gmm.py
"""Gaussian Mixture Model fitted by gradient ascent on partitioned data.

Each iteration:
1. draws a Bernoulli subsample of rows (full batch when no batch size is set),
2. aggregates per-component sufficient statistics across partitions
   (sum_n r_nk y_n y_n^T and the sample log-likelihood, y = [x, 1]),
3. moves every component and the weights along the optimizer's direction,
4. decays the learning rate and checks the change in log-likelihood.

The dataset is a PySpark RDD whose elements are row blocks (m, D); see
``parallelize_rows``. Only RDD methods are used, so the numerics run in the
workers and the driver keeps the parameters.

Exposed attributes after step/fit:
- weights, means, covariances
- converged_, n_iter_, lower_bound_
- lower_bounds_ (per-iteration history)
"""

from __future__ import annotations

import copy
import logging
import math
import operator
from dataclasses import dataclass
from functools import partial
from typing import Iterator, List, Optional, Sequence

import numpy as np
import torch
from sklearn.cluster import KMeans

from ._algebra import MATRIX_ALGEBRA, VECTOR_ALGEBRA
from ._components import (
    GaussianComponent,
    _weighted_log_prob,
    augment,
    components_from_arrays,
    stack_parameters,
)
from ._optim import Optimizer
from ._weights import MixtureWeights

log = logging.getLogger(__name__)

# Largest tolerated probability of drawing an empty minibatch
_EMPTY_BATCH_PROB = 1e-3

# Above this value of ((K-1)/K) * D, component updates are farmed out to workers
_DISTRIBUTE_THRESHOLD = 25.0


# ---------------------------
# Sufficient statistics
# ---------------------------

@dataclass
class SampleAggregator:
    """Per-component posterior-weighted outer products of augmented points.

    outer[k] = sum_n r_nk y_n y_n^T, so outer[k][-1, -1] is the posterior mass
    of component k. ``loglik`` is sum_n log p(x_n).
    """

    outer: torch.Tensor
    loglik: float = 0.0

    @classmethod
    def zero(cls, k: int, d: int) -> "SampleAggregator":
        return cls(outer=torch.zeros((k, d + 1, d + 1), dtype=torch.float64))

    @property
    def posterior_mass(self) -> torch.Tensor:
        return self.outer[:, -1, -1]

    def add(
        self,
        Y: torch.Tensor,
        weights: torch.Tensor,
        means: torch.Tensor,
        precisions_chol: torch.Tensor,
    ) -> "SampleAggregator":
        """Accumulate a block of augmented rows Y (m, D+1)."""
        if Y.shape[0] == 0:
            return self
        weighted = _weighted_log_prob(Y[:, :-1], weights, means, precisions_chol)  # (m,K)
        log_norm = torch.logsumexp(weighted, dim=1)  # (m,)
        resp = torch.exp(weighted - log_norm.unsqueeze(1))  # (m,K)

        self.outer += torch.einsum('nk,ni,nj->kij', resp, Y, Y)
        self.loglik += float(log_norm.sum())
        return self

    def merge(self, other: "SampleAggregator") -> "SampleAggregator":
        self.outer += other.outer
        self.loglik += other.loglik
        return self

    __iadd__ = merge


def _add_block(params, agg: SampleAggregator, Y: torch.Tensor) -> SampleAggregator:
    weights, means, precisions_chol = params.value
    return agg.add(Y, weights, means, precisions_chol)


def _to_float_block(block) -> torch.Tensor:
    return torch.atleast_2d(torch.as_tensor(block, dtype=torch.float64))


def _augment_block(block) -> torch.Tensor:
    return augment(_to_float_block(block))


def _count_rows(n: int, Y: torch.Tensor) -> int:
    return n + Y.shape[0]


class _RowSampler:
    """Bernoulli row subsampling inside every block (sampling without replacement)."""

    def __init__(self, fraction: float, seed: int) -> None:
        self.fraction = fraction
        self.seed = seed

    def __call__(self, index: int, blocks: Iterator[torch.Tensor]) -> Iterator[torch.Tensor]:
        gen = torch.Generator().manual_seed(self.seed + index)
        for Y in blocks:
            mask = torch.rand(Y.shape[0], generator=gen) < self.fraction
            yield Y[mask]


# ---------------------------
# Parameter updates
# ---------------------------

def _update_component(optimizer: Optimizer, n: float, task) -> tuple:
    """Penalty value and updated component for one (statistic, mass, component) task."""
    statistic, mass, component = task
    penalty = optimizer.component_penalty(component)
    grad = optimizer.gradient_for_component(component, statistic, mass)
    new_param_mat = optimizer.update(
        component.param_mat, MATRIX_ALGEBRA.scale(grad, 1.0 / n), component.state, MATRIX_ALGEBRA
    )
    component.update(new_param_mat)
    return penalty, component


def _update_component_remote(optimizer_bc, n: float, task) -> tuple:
    return _update_component(optimizer_bc.value, n, task)


def _should_distribute(k: int, d: int) -> bool:
    return ((k - 1.0) / k) * d > _DISTRIBUTE_THRESHOLD


# ---------------------------
# Model
# ---------------------------

class GradientGaussianMixture:
    """Full-covariance Gaussian mixture trained by (stochastic) gradient ascent."""

    def __init__(
        self,
        weights,
        components: Sequence[GaussianComponent],
        optimizer: Optimizer,
        seed: Optional[int] = None,
    ) -> None:
        mixture_weights = weights if isinstance(weights, MixtureWeights) else MixtureWeights(weights)
        components = list(components)
        if len(components) != len(mixture_weights):
            raise ValueError(
                f"got {len(mixture_weights)} weights for {len(components)} components"
            )
        if len({c.dim for c in components}) != 1:
            raise ValueError("all components must have the same dimension")

        self.mixture_weights = mixture_weights
        self.components: List[GaussianComponent] = components
        self.optimizer = optimizer
        self.batch_fraction = 1.0

        self._rng = torch.Generator()
        if seed is None:
            self._rng.seed()
        else:
            self._rng.manual_seed(seed)

        self.converged_: bool = False
        self.n_iter_: int = 0
        self.lower_bound_: float = float("-inf")
        self.lower_bounds_: List[float] = []

    @classmethod
    def from_parameters(cls, weights, means, covariances, optimizer: Optimizer, seed: Optional[int] = None):
        return cls(weights, components_from_arrays(means, covariances), optimizer, seed=seed)

    # -----------------------
    # Parameters
    # -----------------------

    @property
    def n_components(self) -> int:
        return len(self.components)

    @property
    def dim(self) -> int:
        return self.components[0].dim

    @property
    def weights(self) -> torch.Tensor:
        return self.mixture_weights.weights

    @property
    def means(self) -> torch.Tensor:
        return torch.stack([c.mean for c in self.components], dim=0)

    @property
    def covariances(self) -> torch.Tensor:
        return torch.stack([c.covariance for c in self.components], dim=0)

    # -----------------------
    # Initialization
    # -----------------------

    @classmethod
    def fit(
        cls,
        data,
        optimizer: Optimizer,
        n_components: int,
        init_sample_count: int,
        init_iterations: int,
        seed: int = 0,
    ) -> "GradientGaussianMixture":
        """Bootstrap a model with k-means on a data sample, then run ``step``."""
        model = cls.initialize(data, optimizer, n_components, init_sample_count, init_iterations, seed)
        model.step(data)
        return model

    @classmethod
    @torch.no_grad()
    def initialize(
        cls,
        data,
        optimizer: Optimizer,
        n_components: int,
        init_sample_count: int,
        init_iterations: int,
        seed: int = 0,
    ) -> "GradientGaussianMixture":
        if n_components <= 0:
            raise ValueError("n_components must be positive")
        if init_sample_count <= 0:
            raise ValueError("init_sample_count must be positive")
        if init_iterations <= 0:
            raise ValueError("init_iterations must be positive")

        K = n_components
        data = data.map(_to_float_block)
        N = data.treeAggregate(0, _count_rows, operator.add)
        if N < K:
            raise ValueError(f"need at least {K} rows to initialize {K} components, got {N}")

        # oversample, then shuffle and keep n rows
        n = min(max(init_sample_count, 2 * K), N)
        fraction = min(1.0, 2.0 * n / N)
        blocks = data.mapPartitionsWithIndex(_RowSampler(fraction, seed)).collect()
        X = torch.cat(blocks, dim=0)
        if X.shape[0] < n:
            X = torch.cat(data.collect(), dim=0)
        gen = torch.Generator().manual_seed(seed)
        X = X[torch.randperm(X.shape[0], generator=gen)[:n]]
        D = X.shape[1]

        kmeans = KMeans(n_clusters=K, max_iter=init_iterations, n_init=1, random_state=seed).fit(X.numpy())
        means = torch.from_numpy(kmeans.cluster_centers_).to(torch.float64)  # (K,D)
        labels = torch.from_numpy(kmeans.labels_.astype(np.int64))  # (n,)

        # each center counts as one extra member of its cluster, so no cluster is empty
        counts = torch.bincount(labels, minlength=K).to(torch.float64) + 1.0  # (K,)

        resp = torch.zeros((X.shape[0], K), dtype=torch.float64)
        resp[torch.arange(X.shape[0]), labels] = 1.0
        diff = X.unsqueeze(1) - means.unsqueeze(0)  # (n,K,D)
        cov = torch.einsum('nk,nkd,nke->kde', resp, diff, diff) / counts.view(K, 1, 1)  # (K,D,D)

        # scaled identity keeps the starting covariances non-singular
        avg_variance = torch.diagonal(cov, dim1=1, dim2=2).sum(dim=1).clamp_min(1e-4) / D  # (K,)
        eye = torch.eye(D, dtype=torch.float64)
        cov = cov + avg_variance.view(K, 1, 1) * eye.unsqueeze(0)

        weights = counts / counts.sum()
        log.info("initialized %d components from %d sampled rows (of %d)", K, X.shape[0], N)
        return cls.from_parameters(weights, means, cov, optimizer, seed=seed)

    # -----------------------
    # Training
    # -----------------------

    def _batch_fraction(self, N: int) -> float:
        batch_size = self.optimizer.batch_size
        if batch_size is None:
            return 1.0
        if self.optimizer.batch_floor == "expected":
            # expected batch for which P(empty batch) == _EMPTY_BATCH_PROB
            min_safe_batch_size = N * (1.0 - math.exp(math.log(_EMPTY_BATCH_PROB) / N))
        else:
            min_safe_batch_size = N * (1.0 - math.exp(math.log(_EMPTY_BATCH_PROB / N)))
        return min(1.0, max(float(batch_size), min_safe_batch_size) / N)

    def _batch(self, data, seed: int):
        if self.batch_fraction < 1.0:
            return data.mapPartitionsWithIndex(_RowSampler(self.batch_fraction, seed))
        return data

    @torch.no_grad()
    def step(self, data, distribute: Optional[bool] = None) -> "GradientGaussianMixture":
        """Run gradient ascent on ``data`` until convergence or ``max_iter``.

        ``distribute`` forces (True) or forbids (False) sending component
        updates to workers; by default it is decided from K and D.
        """
        sc = data.context
        optimizer = self.optimizer
        K, D = self.n_components, self.dim

        initial_rate = optimizer.learning_rate
        history: List[float] = []
        converged = False
        it = 0

        g_concave_data = data.map(_augment_block).cache()  # y = [x 1]
        try:
            N = g_concave_data.treeAggregate(0, _count_rows, operator.add)
            if N == 0:
                raise ValueError("cannot fit on an empty dataset")

            self.batch_fraction = self._batch_fraction(N)
            if distribute is None:
                distribute = _should_distribute(K, D)

            log.info(
                "gradient ascent: N=%d in %d blocks, K=%d, D=%d, batch_fraction=%.7g, distribute=%s, optimizer=%r",
                N, g_concave_data.count(), K, D, self.batch_fraction, distribute, optimizer,
            )

            while it < optimizer.max_iter:
                if log.isEnabledFor(logging.DEBUG):
                    log.debug("means: %s", self.means.tolist())
                    log.debug("weights: %s", self.weights.tolist())

                seed = int(torch.randint(0, 2 ** 31 - 1, (1,), generator=self._rng))
                ll = self._iterate(g_concave_data, sc, distribute, seed)
                it += 1
                if ll is None:
                    log.warning("iteration %d drew an empty batch; parameters left unchanged", it)
                    continue

                log.debug("iteration %d: loglik=%.10g lr=%.4g", it, ll, optimizer.learning_rate)
                history.append(ll)
                if len(history) > 1 and abs(history[-1] - history[-2]) <= optimizer.convergence_tol:
                    converged = True
                    break
        finally:
            optimizer.learning_rate = initial_rate
            g_concave_data.unpersist()

        self.converged_ = converged
        self.n_iter_ = it
        self.lower_bounds_ = history
        self.lower_bound_ = history[-1] if history else float("-inf")

        if converged:
            log.info("converged after %d iterations, loglik=%.6f", it, self.lower_bound_)
        else:
            log.info("stopped after max_iter=%d iterations, loglik=%.6f", it, self.lower_bound_)
        return self

    def _iterate(self, data, sc, distribute: bool, seed: int) -> Optional[float]:
        """One gradient step. Returns the regularized mean log-likelihood, or
        None when the batch was empty."""
        optimizer = self.optimizer
        K, D = self.n_components, self.dim
        mixture_weights = self.mixture_weights

        means, prec_chol = stack_parameters(self.components)
        params = sc.broadcast((mixture_weights.weights.clone(), means, prec_chol))
        try:
            stats = self._batch(data, seed).treeAggregate(
                SampleAggregator.zero(K, D),
                partial(_add_block, params),
                SampleAggregator.merge,
            )
        finally:
            params.destroy()

        mass = stats.posterior_mass  # (K,)
        n = float(mass.sum())
        if n <= 0.0:
            return None

        # weights first: a step leaving the simplex aborts before anything is mutated
        weights = mixture_weights.weights
        weights_state = copy.deepcopy(mixture_weights.state)
        weights_penalty = optimizer.weights_penalty(weights)
        current = optimizer.to_unconstrained(weights)
        grad = optimizer.gradient_for_weights(mass.clone(), weights)
        soft = optimizer.update(current, VECTOR_ALGEBRA.scale(grad, 1.0 / n), weights_state, VECTOR_ALGEBRA)
        new_weights = optimizer.from_unconstrained(soft)
        if not mixture_weights.is_in_simplex(new_weights):
            raise ValueError(f"weights update left the probability simplex: {new_weights.tolist()}")

        tasks = []
        for k, component in enumerate(self.components):
            m_k = float(mass[k])
            statistic = stats.outer[k] / m_k if m_k > 0.0 else component.param_mat
            tasks.append((statistic, m_k, component))

        if distribute:
            optimizer_bc = sc.broadcast(optimizer.frozen())
            try:
                results = (
                    sc.parallelize(tasks, min(K, 1024))
                    .map(partial(_update_component_remote, optimizer_bc, n))
                    .collect()
                )
            finally:
                optimizer_bc.destroy()
        else:
            results = [_update_component(optimizer, n, task) for task in tasks]

        penalties = [penalty for penalty, _ in results]
        self.components = [component for _, component in results]
        mixture_weights.update(new_weights)
        mixture_weights.state = weights_state

        optimizer.decay_learning_rate()
        return (stats.loglik + sum(penalties) + weights_penalty) / n

    # -----------------------
    # Public API
    # -----------------------

    def _as_tensor(self, X) -> torch.Tensor:
        X = torch.as_tensor(X, dtype=torch.float64)
        if X.dim() != 2 or X.shape[1] != self.dim:
            raise ValueError(f"X must have shape (N, {self.dim}), got {tuple(X.shape)}")
        return X

    @torch.no_grad()
    def score_samples(self, X) -> torch.Tensor:
        """Per-sample log-likelihood (N,)."""
        X = self._as_tensor(X)
        means, prec_chol = stack_parameters(self.components)
        return torch.logsumexp(_weighted_log_prob(X, self.weights, means, prec_chol), dim=1)

    @torch.no_grad()
    def score(self, X) -> float:
        """Mean log-likelihood."""
        return float(self.score_samples(X).mean())

    @torch.no_grad()
    def predict_proba(self, X) -> torch.Tensor:
        """Posterior responsibilities (N,K)."""
        X = self._as_tensor(X)
        means, prec_chol = stack_parameters(self.components)
        weighted = _weighted_log_prob(X, self.weights, means, prec_chol)
        return torch.exp(weighted - torch.logsumexp(weighted, dim=1, keepdim=True))

    @torch.no_grad()
    def predict(self, X) -> torch.Tensor:
        return torch.argmax(self.predict_proba(X), dim=1)

    def __repr__(self) -> str:
        return f"GradientGaussianMixture(n_components={self.n_components}, dim={self.dim}, optimizer={self.optimizer!r})"
