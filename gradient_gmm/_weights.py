# gradient_gmm/_weights.py
"""Mixture weights and the simplex <-> R^K reparameterization.

Gradient ascent runs on unconstrained coordinates ``p``; the weights are
recovered with a softmax. The last coordinate is pinned to 0, which removes
the one redundant degree of freedom of the softmax.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import torch

from ._algebra import OptimizerState


class WeightsTransform(ABC):
    """Bijection between the probability simplex and unconstrained space."""

    @abstractmethod
    def to_unconstrained(self, weights: torch.Tensor) -> torch.Tensor:
        ...

    @abstractmethod
    def from_unconstrained(self, p: torch.Tensor) -> torch.Tensor:
        ...

    @abstractmethod
    def gradient(self, posterior_counts: torch.Tensor, weights: torch.Tensor) -> torch.Tensor:
        """Gradient of sum_k c_k log w_k in unconstrained coordinates."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class SoftmaxWeightsTransform(WeightsTransform):
    """w = softmax(p), with p_K = 0."""

    def to_unconstrained(self, weights: torch.Tensor) -> torch.Tensor:
        tiny = torch.finfo(weights.dtype).tiny
        logw = torch.log(weights.clamp_min(tiny))
        return logw - logw[-1]

    def from_unconstrained(self, p: torch.Tensor) -> torch.Tensor:
        # shift by the max to avoid overflow in exp
        e = torch.exp(p - p.max())
        return e / e.sum()

    def gradient(self, posterior_counts: torch.Tensor, weights: torch.Tensor) -> torch.Tensor:
        return posterior_counts - weights * posterior_counts.sum()


class MixtureWeights:
    """Weights vector kept on the simplex.

    Construction rejects non-positive entries; ``update`` rejects vectors that
    do not sum to one within ``simplex_tol`` and leaves the current weights in
    place when it does.
    """

    def __init__(self, weights, simplex_tol: float = 1e-8) -> None:
        w = torch.as_tensor(weights, dtype=torch.float64)
        if w.dim() != 1 or w.numel() == 0:
            raise ValueError(f"weights must be a non-empty 1-d vector, got shape {tuple(w.shape)}")
        if not bool((w > 0).all()):
            raise ValueError("some weights are negative or equal to zero")
        if simplex_tol <= 0:
            raise ValueError("simplex_tol must be positive")
        self.simplex_tol = simplex_tol
        if not self.is_in_simplex(w):
            raise ValueError(f"weights must sum to 1, got {float(w.sum()):.12g}")
        self.weights = w
        self.state = OptimizerState.like(w)

    def __len__(self) -> int:
        return self.weights.numel()

    def is_in_simplex(self, w: torch.Tensor) -> bool:
        if not bool(torch.isfinite(w).all()) or bool((w < 0).any()):
            return False
        return abs(float(w.sum()) - 1.0) <= self.simplex_tol

    def update(self, new_weights: torch.Tensor) -> None:
        new_weights = torch.as_tensor(new_weights, dtype=self.weights.dtype)
        if new_weights.shape != self.weights.shape:
            raise ValueError(
                f"new weights must have shape {tuple(self.weights.shape)}, got {tuple(new_weights.shape)}"
            )
        if not self.is_in_simplex(new_weights):
            raise ValueError("new weights are not on the probability simplex")
        self.weights = new_weights

    def __repr__(self) -> str:
        return f"MixtureWeights({self.weights.tolist()})"
