# gradient_gmm/_components.py
"""Gaussian mixture components in augmented ("g-concave") form.

A component with mean mu and covariance Sigma is stored as one matrix

    S = [[Sigma + mu mu^T, mu],
         [mu^T,            1 ]]          shape (D+1, D+1)

so a single matrix-valued step updates mean and covariance together. For an
augmented point y = [x, 1], the per-point gradient in this parameterization is
0.5 * (y y^T - S), and its trailing diagonal entry is always zero.

Log-densities are evaluated through precisions_cholesky, sklearn-style.
"""

from __future__ import annotations

import math
from typing import List, Sequence, Tuple

import torch

from ._algebra import OptimizerState


# ---------------------------
# Precision-Cholesky helpers (sklearn-style)
# ---------------------------

@torch.no_grad()
def _compute_precisions_cholesky(cov: torch.Tensor) -> torch.Tensor:
    """Precision Cholesky factors for full covariances (K, D, D).

    cov = L L^T (L lower).  precision_chol = inv(L) (lower).
    precision = inv(cov) = precision_chol^T precision_chol.
    """
    K, D, _ = cov.shape
    L = torch.linalg.cholesky(cov)  # (K, D, D) batched
    I = torch.eye(D, device=cov.device, dtype=cov.dtype).unsqueeze(0).expand(K, D, D)
    return torch.linalg.solve_triangular(L, I, upper=False)


def _estimate_log_gaussian_prob(
    X: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
) -> torch.Tensor:
    """Full-cov log N(X | means, cov) using precision_cholesky (K,D,D lower). Returns (N,K)."""
    N, D = X.shape
    K, D2 = means.shape
    assert D == D2
    assert precisions_chol.shape == (K, D, D)

    diff = X.unsqueeze(1) - means.unsqueeze(0)  # (N,K,D)

    # 0.5 * logdet(precision) = sum log diag(prec_chol)
    log_det_term = torch.sum(torch.log(torch.diagonal(precisions_chol, dim1=1, dim2=2)), dim=1)  # (K,)

    # y[n,k,:] = diff[n,k,:] @ P[k]^T
    y = torch.einsum('nkd,kde->nke', diff, precisions_chol.transpose(-1, -2))  # (N,K,D)
    mahal = torch.sum(y * y, dim=2)  # (N,K)

    return -0.5 * (D * math.log(2 * math.pi) + mahal) + log_det_term.unsqueeze(0)


def _safe_log(x: torch.Tensor) -> torch.Tensor:
    tiny = torch.finfo(x.dtype).tiny
    return torch.log(x.clamp_min(tiny))


def _weighted_log_prob(
    X: torch.Tensor,
    weights: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
) -> torch.Tensor:
    """log w_k + log N(x_n | k), shape (N,K)."""
    return _estimate_log_gaussian_prob(X, means, precisions_chol) + _safe_log(weights).unsqueeze(0)


# ---------------------------
# Component
# ---------------------------

def augment(X: torch.Tensor) -> torch.Tensor:
    """Append a constant 1 column: x -> [x, 1]."""
    ones = torch.ones((X.shape[0], 1), device=X.device, dtype=X.dtype)
    return torch.cat([X, ones], dim=1)


class GaussianComponent:
    """One mixture component held as its augmented parameter matrix."""

    def __init__(self, param_mat: torch.Tensor, tol: float = 1e-8) -> None:
        param_mat = torch.as_tensor(param_mat, dtype=torch.float64)
        self._check(param_mat, tol)
        self.tol = tol
        self.param_mat = param_mat
        self.state = OptimizerState.like(param_mat)

    @staticmethod
    def _check(param_mat: torch.Tensor, tol: float) -> None:
        if param_mat.dim() != 2 or param_mat.shape[0] != param_mat.shape[1] or param_mat.shape[0] < 2:
            raise ValueError(f"param_mat must be square with side >= 2, got shape {tuple(param_mat.shape)}")
        if not bool(torch.isfinite(param_mat).all()):
            raise ValueError("param_mat contains NaN/Inf")
        if abs(float(param_mat[-1, -1]) - 1.0) > tol:
            raise ValueError(f"trailing entry of param_mat must be 1, got {float(param_mat[-1, -1])}")

    @classmethod
    def from_mean_covariance(cls, mean, covariance) -> "GaussianComponent":
        mu = torch.as_tensor(mean, dtype=torch.float64).reshape(-1)
        cov = torch.as_tensor(covariance, dtype=torch.float64)
        D = mu.numel()
        if cov.shape != (D, D):
            raise ValueError(f"covariance must have shape {(D, D)}, got {tuple(cov.shape)}")
        S = torch.empty((D + 1, D + 1), dtype=torch.float64)
        S[:D, :D] = cov + torch.outer(mu, mu)
        S[:D, D] = mu
        S[D, :D] = mu
        S[D, D] = 1.0
        return cls(S)

    @property
    def dim(self) -> int:
        return self.param_mat.shape[0] - 1

    @property
    def mean(self) -> torch.Tensor:
        return self.param_mat[:-1, -1].clone()

    @property
    def covariance(self) -> torch.Tensor:
        mu = self.param_mat[:-1, -1]
        return self.param_mat[:-1, :-1] - torch.outer(mu, mu)

    def update(self, new_param_mat: torch.Tensor) -> None:
        if new_param_mat.shape != self.param_mat.shape:
            raise ValueError(
                f"new param_mat must have shape {tuple(self.param_mat.shape)}, got {tuple(new_param_mat.shape)}"
            )
        self._check(new_param_mat, self.tol)
        self.param_mat = new_param_mat

    def __repr__(self) -> str:
        return f"GaussianComponent(dim={self.dim}, mean={self.mean.tolist()})"


def stack_parameters(components: Sequence[GaussianComponent]) -> Tuple[torch.Tensor, torch.Tensor]:
    """Means (K,D) and precision Cholesky factors (K,D,D) of a component list."""
    means = torch.stack([c.mean for c in components], dim=0)
    cov = torch.stack([c.covariance for c in components], dim=0)
    return means, _compute_precisions_cholesky(cov)


def components_from_arrays(means, covariances) -> List[GaussianComponent]:
    means = torch.as_tensor(means, dtype=torch.float64)
    covariances = torch.as_tensor(covariances, dtype=torch.float64)
    if means.dim() != 2 or covariances.dim() != 3 or covariances.shape[0] != means.shape[0]:
        raise ValueError("means must be (K,D) and covariances (K,D,D)")
    return [GaussianComponent.from_mean_covariance(m, c) for m, c in zip(means, covariances)]
