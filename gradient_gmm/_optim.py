# gradient_gmm/_optim.py
"""Gradient-ascent optimizers for Gaussian mixture parameters.

An ``Optimizer`` holds the shared hyperparameters of a training run and turns
gradients into ascent directions. Direction algorithms are written against
``ParameterAlgebra`` so the same code updates augmented Gaussian blocks
(matrices) and unconstrained weights (vectors). All per-quantity memory lives
in the ``OptimizerState`` passed in; the optimizer itself holds none, so one
instance can serve every component and the weights vector of a model.

Algorithms:
- GradientAscent:          direction = g
- MomentumGradientAscent:  m <- beta * m + g;                    direction = m
- Adam:                    bias-corrected adaptive moments (Kingma & Ba, 2014)
"""

from __future__ import annotations

import copy
import math
from abc import ABC, abstractmethod
from typing import Optional

import torch

from ._algebra import OptimizerState, ParameterAlgebra
from ._components import GaussianComponent
from ._regularizers import Regularizer
from ._weights import SoftmaxWeightsTransform, WeightsTransform


class Optimizer(ABC):
    """Base class: hyperparameters, gradient assembly and the update rule.

    ``batch_floor`` picks the lower bound applied to ``batch_size``:

    - "conservative" (default): N * (1 - exp(log(1e-3 / N))), which is N - 1e-3
      rows, so any smaller batch size effectively means the full dataset
    - "expected": N * (1 - exp(log(1e-3) / N)), the expected batch size whose
      chance of drawing an empty batch is 1e-3 (about 7 rows)
    """

    BATCH_FLOORS = ("conservative", "expected")

    def __init__(
        self,
        learning_rate: float = 0.9,
        shrinkage_rate: float = 0.95,
        min_learning_rate: float = 1e-2,
        batch_size: Optional[int] = None,
        batch_floor: str = "conservative",
        convergence_tol: float = 1e-6,
        max_iter: int = 100,
        regularizer: Optional[Regularizer] = None,
        weights_transform: Optional[WeightsTransform] = None,
    ) -> None:
        if learning_rate <= 0:
            raise ValueError("learning_rate must be positive")
        if not 0.0 < shrinkage_rate <= 1.0:
            raise ValueError("shrinkage_rate must be in (0,1]")
        if min_learning_rate < 0:
            raise ValueError("min_learning_rate must be non-negative")
        if batch_size is not None and batch_size <= 0:
            raise ValueError("batch_size must be a positive integer")
        if batch_floor not in self.BATCH_FLOORS:
            raise ValueError(f"batch_floor must be one of {self.BATCH_FLOORS}, got {batch_floor!r}")
        if convergence_tol <= 0:
            raise ValueError("convergence_tol must be positive")
        if max_iter <= 0:
            raise ValueError(f"max_iter needs to be a positive integer; got {max_iter}")

        self.learning_rate = float(learning_rate)
        self.shrinkage_rate = float(shrinkage_rate)
        self.min_learning_rate = float(min_learning_rate)
        self.batch_size = batch_size
        self.batch_floor = batch_floor
        self.convergence_tol = float(convergence_tol)
        self.max_iter = int(max_iter)
        self.regularizer = regularizer
        self.weights_transform = weights_transform if weights_transform is not None else SoftmaxWeightsTransform()

    # -----------------------
    # Learning rate schedule
    # -----------------------

    def decay_learning_rate(self) -> None:
        """Shrink the learning rate by ``shrinkage_rate``, down to ``min_learning_rate``."""
        self.learning_rate = max(self.shrinkage_rate * self.learning_rate, self.min_learning_rate)

    # -----------------------
    # Weights reparameterization
    # -----------------------

    def to_unconstrained(self, weights: torch.Tensor) -> torch.Tensor:
        return self.weights_transform.to_unconstrained(weights)

    def from_unconstrained(self, p: torch.Tensor) -> torch.Tensor:
        return self.weights_transform.from_unconstrained(p)

    # -----------------------
    # Gradients
    # -----------------------

    def gradient_for_component(
        self,
        component: GaussianComponent,
        sufficient_statistic: torch.Tensor,
        responsibility: float,
    ) -> torch.Tensor:
        """0.5 * r * (stat - S), plus the regularizer's gradient.

        ``sufficient_statistic`` is the posterior-weighted mean of y y^T and
        ``responsibility`` the posterior mass of the component.
        """
        grad = 0.5 * responsibility * (sufficient_statistic - component.param_mat)
        if self.regularizer is not None:
            grad = grad + self.regularizer.gradient_for_component(component)
        grad[-1, -1] = 0.0
        return grad

    def gradient_for_weights(self, posterior_counts: torch.Tensor, weights: torch.Tensor) -> torch.Tensor:
        grad = self.weights_transform.gradient(posterior_counts, weights)
        if self.regularizer is not None:
            grad = grad + self.regularizer.gradient_for_weights(weights)
        grad[-1] = 0.0
        return grad

    def component_penalty(self, component: GaussianComponent) -> float:
        if self.regularizer is None:
            return 0.0
        return self.regularizer.evaluate_component(component)

    def weights_penalty(self, weights: torch.Tensor) -> float:
        if self.regularizer is None:
            return 0.0
        return self.regularizer.evaluate_weights(weights)

    # -----------------------
    # Update rule
    # -----------------------

    def update(
        self,
        current: torch.Tensor,
        gradient: torch.Tensor,
        state: OptimizerState,
        algebra: ParameterAlgebra,
    ) -> torch.Tensor:
        """current + learning_rate * direction(gradient)."""
        return algebra.sum(current, algebra.scale(self.direction(gradient, state, algebra), self.learning_rate))

    @abstractmethod
    def direction(self, gradient: torch.Tensor, state: OptimizerState, algebra: ParameterAlgebra) -> torch.Tensor:
        """Ascent direction for one quantity; may mutate ``state``."""

    def frozen(self) -> "Optimizer":
        """Independent copy, used as the read-only snapshot shipped to workers."""
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(learning_rate={self.learning_rate}, shrinkage_rate={self.shrinkage_rate}, "
            f"min_learning_rate={self.min_learning_rate}, batch_size={self.batch_size}, "
            f"batch_floor={self.batch_floor!r}, convergence_tol={self.convergence_tol}, max_iter={self.max_iter}, "
            f"regularizer={self.regularizer!r}, weights_transform={self.weights_transform!r})"
        )


class GradientAscent(Optimizer):
    """Plain (stochastic) gradient ascent."""

    def direction(self, gradient, state, algebra):
        return gradient


class MomentumGradientAscent(Optimizer):
    """Gradient ascent with momentum.

    See Goh, "Why Momentum Really Works", Distill, 2017. ``beta = 0`` gives
    plain gradient ascent.
    """

    def __init__(self, beta: float = 0.5, **kwargs) -> None:
        super().__init__(**kwargs)
        if beta < 0:
            raise ValueError("beta must be non-negative")
        self.beta = float(beta)

    def direction(self, gradient, state, algebra):
        if state.momentum is None:
            state.initialize_momentum()

        state.set_momentum(algebra.sum(algebra.scale(state.momentum, self.beta), gradient))
        return state.momentum


class Adam(Optimizer):
    """Adam: adaptive moment estimation.

    ``moment_update`` selects how the moments accumulate:

    - "ema" (default): m <- b1 m + (1-b1) g,  v <- b2 v + (1-b2) g*g
    - "raw":           m <- b1 m + g,         v <- b2 v + g*g

    Both use the same step: alpha_t * m / (sqrt(v) + eps_hat) with
    alpha_t = sqrt(1-b2^t) / (1-b1^t) and eps_hat = eps * sqrt(1-b2^t).
    The step counter t is kept per quantity in its ``OptimizerState``.
    In both modes alpha_t tends to 1 as t grows (not to 1/(1-b1)); it starts
    at sqrt(1-b2)/(1-b1).
    """

    MOMENT_UPDATES = ("ema", "raw")

    def __init__(
        self,
        beta1: float = 0.5,
        beta2: float = 0.1,
        eps: float = 1e-8,
        moment_update: str = "ema",
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        if not 0.0 < beta1 < 1.0:
            raise ValueError("beta1 must be in (0,1)")
        if not 0.0 < beta2 < 1.0:
            raise ValueError("beta2 must be in (0,1)")
        if eps < 0:
            raise ValueError("eps must be non-negative")
        if moment_update not in self.MOMENT_UPDATES:
            raise ValueError(f"moment_update must be one of {self.MOMENT_UPDATES}, got {moment_update!r}")
        self.beta1 = float(beta1)
        self.beta2 = float(beta2)
        self.eps = float(eps)
        self.moment_update = moment_update

    def bias_correction(self, t: int):
        """(alpha_t, eps_hat) for step t >= 1."""
        alpha_t = math.sqrt(1.0 - self.beta2 ** t) / (1.0 - self.beta1 ** t)
        eps_hat = self.eps * math.sqrt(1.0 - self.beta2 ** t)
        return alpha_t, eps_hat

    @staticmethod
    def reset(*states: OptimizerState) -> None:
        """Restart the step counter; accumulators are kept."""
        for state in states:
            state.t = 0

    def direction(self, gradient, state, algebra):
        state.t += 1

        if state.momentum is None:
            state.initialize_momentum()

        if state.adaptive_info is None:
            state.initialize_adaptive_info()

        g2 = algebra.elementwise_product(gradient, gradient)
        if self.moment_update == "ema":
            g, g2 = algebra.scale(gradient, 1.0 - self.beta1), algebra.scale(g2, 1.0 - self.beta2)
        else:
            g = gradient

        state.set_momentum(algebra.sum(algebra.scale(state.momentum, self.beta1), g))
        state.set_adaptive_info(algebra.sum(algebra.scale(state.adaptive_info, self.beta2), g2))

        alpha_t, eps_hat = self.bias_correction(state.t)

        ratio = algebra.elementwise_divide(
            state.momentum,
            algebra.add_scalar(algebra.elementwise_sqrt(state.adaptive_info), eps_hat),
        )
        # eps == 0 turns never-moved coordinates into 0/0
        ratio = torch.nan_to_num(ratio, nan=0.0)
        return algebra.scale(ratio, alpha_t)
