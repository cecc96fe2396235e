# gradient_gmm/_algebra.py
"""Elementwise algebra over parameter tensors, and per-parameter optimizer state.

The direction algorithms in ``_optim`` are written once against
``ParameterAlgebra`` and run unchanged for both parameter shapes we optimize:

- matrix: an augmented Gaussian block, shape (D+1, D+1)
- vector: the unconstrained mixture weights, shape (K,)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import torch


# ---------------------------
# Parameter algebra
# ---------------------------

@dataclass(frozen=True)
class ParameterAlgebra:
    """Pure elementwise operations for tensors of a fixed rank."""

    name: str
    ndim: int

    def _check(self, p: torch.Tensor) -> torch.Tensor:
        if p.dim() != self.ndim:
            raise ValueError(f"{self.name} algebra expects a {self.ndim}-d tensor, got shape {tuple(p.shape)}")
        return p

    def scale(self, p: torch.Tensor, c: float) -> torch.Tensor:
        return self._check(p) * c

    def sum(self, p: torch.Tensor, q: torch.Tensor) -> torch.Tensor:
        return self._check(p) + self._check(q)

    def elementwise_product(self, p: torch.Tensor, q: torch.Tensor) -> torch.Tensor:
        return self._check(p) * self._check(q)

    def elementwise_divide(self, p: torch.Tensor, q: torch.Tensor) -> torch.Tensor:
        return self._check(p) / self._check(q)

    def elementwise_sqrt(self, p: torch.Tensor) -> torch.Tensor:
        return torch.sqrt(self._check(p))

    def add_scalar(self, p: torch.Tensor, c: float) -> torch.Tensor:
        return self._check(p) + c

    def zeros_like(self, p: torch.Tensor) -> torch.Tensor:
        return torch.zeros_like(self._check(p))


MATRIX_ALGEBRA = ParameterAlgebra("matrix", 2)
VECTOR_ALGEBRA = ParameterAlgebra("vector", 1)


# ---------------------------
# Optimizer state
# ---------------------------

class OptimizerState:
    """Accelerated-ascent accumulators bound to one optimized quantity.

    Both accumulators stay ``None`` until a direction algorithm asks for them;
    ``initialize_*`` then creates zeros shaped like the owning parameter.
    ``t`` counts Adam steps for this quantity.
    """

    def __init__(self, shape: torch.Size, dtype: torch.dtype = torch.float64, device=None) -> None:
        self.shape = torch.Size(shape)
        self.dtype = dtype
        self.device = device
        self.momentum: Optional[torch.Tensor] = None
        self.adaptive_info: Optional[torch.Tensor] = None
        self.t = 0

    @classmethod
    def like(cls, p: torch.Tensor) -> "OptimizerState":
        return cls(p.shape, dtype=p.dtype, device=p.device)

    def _zeros(self) -> torch.Tensor:
        return torch.zeros(self.shape, dtype=self.dtype, device=self.device)

    def set_momentum(self, p: torch.Tensor) -> None:
        self.momentum = p

    def set_adaptive_info(self, p: torch.Tensor) -> None:
        self.adaptive_info = p

    def initialize_momentum(self) -> None:
        self.momentum = self._zeros()

    def initialize_adaptive_info(self) -> None:
        self.adaptive_info = self._zeros()

    def reset(self) -> None:
        """Zero both accumulators and the step counter."""
        if self.momentum is not None:
            self.momentum = self._zeros()
        if self.adaptive_info is not None:
            self.adaptive_info = self._zeros()
        self.t = 0

    def __repr__(self) -> str:
        return (
            f"OptimizerState(shape={tuple(self.shape)}, momentum={self.momentum is not None}, "
            f"adaptive_info={self.adaptive_info is not None}, t={self.t})"
        )
