"""Gaussian mixture models fitted by gradient ascent on partitioned data."""

from ._algebra import MATRIX_ALGEBRA, VECTOR_ALGEBRA, OptimizerState, ParameterAlgebra
from ._components import GaussianComponent
from ._gradient_gmm import GradientGaussianMixture, SampleAggregator
from ._optim import Adam, GradientAscent, MomentumGradientAscent, Optimizer
from ._rdd import parallelize_rows
from ._regularizers import ConjugatePrior, FrobeniusPenalty, LogBarrier, Regularizer
from ._weights import MixtureWeights, SoftmaxWeightsTransform, WeightsTransform

__all__ = [
    "Adam",
    "ConjugatePrior",
    "FrobeniusPenalty",
    "GaussianComponent",
    "GradientAscent",
    "GradientGaussianMixture",
    "LogBarrier",
    "MATRIX_ALGEBRA",
    "MixtureWeights",
    "MomentumGradientAscent",
    "Optimizer",
    "OptimizerState",
    "ParameterAlgebra",
    "Regularizer",
    "SampleAggregator",
    "SoftmaxWeightsTransform",
    "VECTOR_ALGEBRA",
    "WeightsTransform",
    "parallelize_rows",
]
