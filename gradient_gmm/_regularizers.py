# gradient_gmm/_regularizers.py
"""Regularization terms added to the log-likelihood objective.

Component gradients are ascent directions that are summed with the data term
0.5 * w * (stat - S). ``ConjugatePrior`` and ``LogBarrier`` return the same
preconditioned form as the data term, S * dR/dS * S. ``FrobeniusPenalty``
returns the plain gradient -scale * S, whose preconditioned form -scale * S^3
grows too fast to step along. The optimizer zeroes the trailing entry.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import torch

from ._components import GaussianComponent


class Regularizer(ABC):
    """Additive penalty on the mixture components and weights."""

    @abstractmethod
    def gradient_for_component(self, component: GaussianComponent) -> torch.Tensor:
        ...

    @abstractmethod
    def gradient_for_weights(self, weights: torch.Tensor) -> torch.Tensor:
        """Gradient in unconstrained (softmax) coordinates."""

    @abstractmethod
    def evaluate_component(self, component: GaussianComponent) -> float:
        ...

    @abstractmethod
    def evaluate_weights(self, weights: torch.Tensor) -> float:
        ...


class ConjugatePrior(Regularizer):
    """Inverse-Wishart-type prior on each augmented block plus a symmetric
    Dirichlet prior on the weights.

    For a block S the log-prior is

        -0.5 * (df * logdet(S) + tr(Psi S^-1))

    with Psi = df * [[Sigma0 + mu0 mu0^T, mu0], [mu0^T, 1]], whose maximizer is
    the prior block itself. Its preconditioned gradient is 0.5 * (Psi - df * S).
    The weights term is concentration * sum_k log w_k.
    """

    def __init__(
        self,
        df: float,
        prior_mean,
        prior_covariance,
        weights_concentration: float = 1.0,
    ) -> None:
        if df <= 0:
            raise ValueError("df must be positive")
        if weights_concentration < 0:
            raise ValueError("weights_concentration must be non-negative")
        self.df = float(df)
        self.weights_concentration = float(weights_concentration)
        prior = GaussianComponent.from_mean_covariance(prior_mean, prior_covariance)
        self.psi = prior.param_mat * self.df

    def gradient_for_component(self, component: GaussianComponent) -> torch.Tensor:
        return 0.5 * (self.psi - self.df * component.param_mat)

    def gradient_for_weights(self, weights: torch.Tensor) -> torch.Tensor:
        # d/dp of c * sum_k log softmax(p)_k
        return self.weights_concentration * (1.0 - weights.numel() * weights)

    def evaluate_component(self, component: GaussianComponent) -> float:
        S = component.param_mat
        _, logdet = torch.linalg.slogdet(S)
        trace_term = torch.trace(torch.linalg.solve(S, self.psi))
        return float(-0.5 * (self.df * logdet + trace_term))

    def evaluate_weights(self, weights: torch.Tensor) -> float:
        return float(self.weights_concentration * torch.log(weights).sum())

    def __repr__(self) -> str:
        return f"ConjugatePrior(df={self.df}, weights_concentration={self.weights_concentration})"


class LogBarrier(Regularizer):
    """scale * logdet(S); pushes blocks away from singularity. No weights term."""

    def __init__(self, scale: float = 1.0) -> None:
        if scale <= 0:
            raise ValueError("scale must be positive")
        self.scale = float(scale)

    def gradient_for_component(self, component: GaussianComponent) -> torch.Tensor:
        # S * inv(S) * S
        return self.scale * component.param_mat

    def gradient_for_weights(self, weights: torch.Tensor) -> torch.Tensor:
        return torch.zeros_like(weights)

    def evaluate_component(self, component: GaussianComponent) -> float:
        _, logdet = torch.linalg.slogdet(component.param_mat)
        return float(self.scale * logdet)

    def evaluate_weights(self, weights: torch.Tensor) -> float:
        return 0.0

    def __repr__(self) -> str:
        return f"LogBarrier(scale={self.scale})"


class FrobeniusPenalty(Regularizer):
    """-0.5 * scale * ||S||_F^2; shrinks large blocks toward zero.

    ``weights_scale`` optionally adds -0.5 * weights_scale * ||w||^2, which
    favors balanced weights.
    """

    def __init__(self, scale: float = 1.0, weights_scale: Optional[float] = None) -> None:
        if scale <= 0:
            raise ValueError("scale must be positive")
        if weights_scale is not None and weights_scale < 0:
            raise ValueError("weights_scale must be non-negative")
        self.scale = float(scale)
        self.weights_scale = 0.0 if weights_scale is None else float(weights_scale)

    def gradient_for_component(self, component: GaussianComponent) -> torch.Tensor:
        return -self.scale * component.param_mat

    def gradient_for_weights(self, weights: torch.Tensor) -> torch.Tensor:
        # softmax Jacobian applied to -c * w: -c * w * (w - |w|^2)
        sq = torch.dot(weights, weights)
        return -self.weights_scale * weights * (weights - sq)

    def evaluate_component(self, component: GaussianComponent) -> float:
        return float(-0.5 * self.scale * torch.sum(component.param_mat ** 2))

    def evaluate_weights(self, weights: torch.Tensor) -> float:
        return float(-0.5 * self.weights_scale * torch.dot(weights, weights))

    def __repr__(self) -> str:
        return f"FrobeniusPenalty(scale={self.scale}, weights_scale={self.weights_scale})"
