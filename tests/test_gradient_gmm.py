# tests/test_gradient_gmm.py
import numpy as np
import pytest
import torch

from gradient_gmm import (
    Adam,
    FrobeniusPenalty,
    GaussianComponent,
    GradientAscent,
    GradientGaussianMixture,
    MomentumGradientAscent,
    Optimizer,
    SampleAggregator,
    SoftmaxWeightsTransform,
    parallelize_rows,
)
from gradient_gmm._components import augment, stack_parameters
from gradient_gmm._gradient_gmm import _should_distribute


def _random_seed():
    """Generate a random seed between 1 and 1000."""
    return np.random.default_rng().integers(1, 1001)


class RandomData:
    """Well-separated Gaussian clusters with unit covariance."""

    def __init__(self, rng, centers, n_per_cluster=1000):
        self.centers = np.asarray(centers, dtype=np.float64)
        K, D = self.centers.shape
        X = np.concatenate([c + rng.randn(n_per_cluster, D) for c in self.centers], axis=0)
        self.X = torch.from_numpy(X[rng.permutation(X.shape[0])])
        self.n_samples, self.n_features = self.X.shape
        self.n_components = K

    def collection(self, sc, n_partitions=4, block_size=None):
        return parallelize_rows(sc, self.X, n_partitions=n_partitions, block_size=block_size)


def _model(weights, means, covariances, optimizer, seed=0):
    return GradientGaussianMixture.from_parameters(
        torch.tensor(np.asarray(weights), dtype=torch.float64),
        torch.tensor(np.asarray(means), dtype=torch.float64),
        torch.tensor(np.asarray(covariances), dtype=torch.float64),
        optimizer,
        seed=seed,
    )


def _aggregate(model, data):
    weights = model.weights.clone()
    means, prec_chol = stack_parameters(model.components)
    K, D = model.n_components, model.dim

    def seq(agg, block):
        return agg.add(augment(torch.as_tensor(block)), weights, means, prec_chol)

    return data.treeAggregate(SampleAggregator.zero(K, D), seq, SampleAggregator.merge)


# ---------------------------
# Components
# ---------------------------

def test_component_round_trip():
    rng = np.random.RandomState(_random_seed())
    mu = rng.randn(3)
    A = rng.randn(3, 3)
    cov = A @ A.T + np.eye(3)

    comp = GaussianComponent.from_mean_covariance(mu, cov)

    assert comp.param_mat.shape == (4, 4)
    assert comp.param_mat[-1, -1] == 1.0
    assert torch.allclose(comp.mean, torch.from_numpy(mu))
    assert torch.allclose(comp.covariance, torch.from_numpy(cov))


def test_component_rejects_bad_blocks():
    comp = GaussianComponent.from_mean_covariance([0.0], [[1.0]])
    with pytest.raises(ValueError):
        comp.update(torch.eye(3, dtype=torch.float64))
    with pytest.raises(ValueError):
        comp.update(torch.tensor([[1.0, 0.0], [0.0, 2.0]], dtype=torch.float64))
    with pytest.raises(ValueError):
        GaussianComponent.from_mean_covariance([0.0, 1.0], [[1.0]])


# ---------------------------
# Sufficient statistics
# ---------------------------

def test_aggregation_is_partition_invariant(sc):
    rng = np.random.RandomState(_random_seed())
    rand_data = RandomData(rng, [[-3.0, 0.0], [3.0, 1.0]], n_per_cluster=300)
    model = _model([0.4, 0.6], [[-2.0, 0.0], [2.0, 0.0]], [np.eye(2), np.eye(2)], GradientAscent())

    one = _aggregate(model, rand_data.collection(sc, n_partitions=1))
    many = _aggregate(model, rand_data.collection(sc, n_partitions=7, block_size=37))

    assert torch.allclose(one.outer, many.outer, rtol=1e-10, atol=1e-8)
    assert one.loglik == pytest.approx(many.loglik, rel=1e-10)


def test_aggregation_matches_direct_likelihood(sc):
    rng = np.random.RandomState(_random_seed())
    rand_data = RandomData(rng, [[-3.0], [3.0]], n_per_cluster=200)
    model = _model([0.5, 0.5], [[-1.0], [1.0]], [[[2.0]], [[2.0]]], GradientAscent())

    stats = _aggregate(model, rand_data.collection(sc, n_partitions=3))

    assert float(stats.posterior_mass.sum()) == pytest.approx(rand_data.n_samples)
    assert stats.loglik == pytest.approx(float(model.score_samples(rand_data.X).sum()))
    assert torch.allclose(stats.outer, stats.outer.transpose(1, 2))


# ---------------------------
# Training
# ---------------------------

@pytest.mark.parametrize("optimizer", [GradientAscent(max_iter=200), MomentumGradientAscent(beta=0.5, max_iter=200)])
def test_fit_two_separated_clusters(sc, optimizer):
    rng = np.random.RandomState(_random_seed())
    rand_data = RandomData(rng, [[-5.0], [5.0]], n_per_cluster=1000)

    model = GradientGaussianMixture.fit(
        rand_data.collection(sc, n_partitions=4),
        optimizer,
        n_components=2,
        init_sample_count=200,
        init_iterations=20,
        seed=int(_random_seed()),
    )

    order = torch.argsort(model.means[:, 0])
    means = model.means[order, 0]
    weights = model.weights[order]
    print(f"\nmeans={means.tolist()} weights={weights.tolist()} iterations={model.n_iter_}")

    assert torch.allclose(means, torch.tensor([-5.0, 5.0], dtype=torch.float64), atol=0.2)
    assert torch.allclose(weights, torch.tensor([0.5, 0.5], dtype=torch.float64), atol=0.05)
    assert torch.allclose(model.covariances[:, 0, 0], torch.ones(2, dtype=torch.float64), atol=0.5)
    assert torch.allclose(model.weights.sum(), torch.tensor(1.0, dtype=torch.float64))


@pytest.mark.parametrize("convergence_tol", [1e-12, 1e12])
def test_single_iteration_cap(sc, convergence_tol):
    rng = np.random.RandomState(_random_seed())
    rand_data = RandomData(rng, [[-5.0], [5.0]], n_per_cluster=200)
    model = _model([0.5, 0.5], [[-4.0], [4.0]], [[[2.0]], [[2.0]]], GradientAscent(max_iter=1, convergence_tol=convergence_tol))

    model.step(rand_data.collection(sc))

    assert model.n_iter_ == 1
    assert len(model.lower_bounds_) == 1
    assert not model.converged_


def test_step_converges_and_restores_learning_rate(sc, broadcasts):
    rng = np.random.RandomState(_random_seed())
    rand_data = RandomData(rng, [[-5.0, 0.0], [5.0, 0.0]], n_per_cluster=300)
    optimizer = GradientAscent(learning_rate=0.9, max_iter=500, convergence_tol=1e-6)
    model = _model([0.5, 0.5], [[-4.0, 0.5], [4.0, -0.5]], [2.0 * np.eye(2), 2.0 * np.eye(2)], optimizer)

    model.step(rand_data.collection(sc))

    assert model.converged_
    assert model.n_iter_ < 500
    assert optimizer.learning_rate == 0.9
    assert broadcasts.live == []
    assert len(broadcasts.values) == model.n_iter_
    assert broadcasts.count(Optimizer) == 0
    assert model.lower_bound_ == model.lower_bounds_[-1]
    assert model.lower_bounds_[-1] > model.lower_bounds_[0]


@pytest.mark.parametrize("max_iter", [1, 5])
def test_norm_penalty_shrinks_components(sc, max_iter):
    rng = np.random.RandomState(_random_seed())
    rand_data = RandomData(rng, [[-5.0], [5.0]], n_per_cluster=1000)
    init = ([0.5, 0.5], [[-4.0], [4.0]], [[[2.0]], [[2.0]]])
    penalty = FrobeniusPenalty(scale=50.0)

    plain = _model(*init, GradientAscent(max_iter=max_iter, convergence_tol=1e-12))
    regularized = _model(*init, GradientAscent(max_iter=max_iter, convergence_tol=1e-12, regularizer=penalty))
    plain.step(rand_data.collection(sc))
    regularized.step(rand_data.collection(sc))

    for reg_comp, plain_comp in zip(regularized.components, plain.components):
        assert penalty.evaluate_component(reg_comp) > penalty.evaluate_component(plain_comp)


@pytest.mark.parametrize("batch_size", [None, 150])
def test_distributed_and_local_updates_agree(sc, broadcasts, batch_size):
    rng = np.random.RandomState(_random_seed())
    rand_data = RandomData(rng, [[-2.0, 0.0, 1.0], [2.0, 1.0, 0.0], [0.0, -2.0, -2.0]], n_per_cluster=150)
    init = (
        [0.3, 0.3, 0.4],
        [[-1.5, 0.0, 0.5], [1.5, 0.5, 0.0], [0.0, -1.5, -1.5]],
        [2.0 * np.eye(3)] * 3,
    )
    data = rand_data.collection(sc, n_partitions=3)

    def run(distribute):
        optimizer = Adam(
            learning_rate=0.01, batch_size=batch_size, batch_floor="expected", max_iter=3, convergence_tol=1e-12
        )
        model = _model(*init, optimizer, seed=11)
        model.step(data, distribute=distribute)
        assert broadcasts.live == []
        return model

    remote = run(True)
    assert broadcasts.count(Optimizer) == 3
    local = run(False)
    assert broadcasts.count(Optimizer) == 3

    assert torch.allclose(remote.means, local.means, atol=1e-10)
    assert torch.allclose(remote.covariances, local.covariances, atol=1e-10)
    assert torch.allclose(remote.weights, local.weights, atol=1e-12)
    assert remote.lower_bounds_ == pytest.approx(local.lower_bounds_)
    assert all(c.state.t == 3 for c in remote.components)


@pytest.mark.parametrize(
    "K, D, expected",
    [
        (1, 1000, False),
        (2, 50, False),
        (2, 51, True),
        (2, 52, True),
        (6, 29, False),
        (6, 31, True),
        (100, 25, False),
        (100, 26, True),
    ],
)
def test_should_distribute_threshold(K, D, expected):
    assert _should_distribute(K, D) is expected


def test_step_distributes_high_dimensional_components(sc, broadcasts):
    rng = np.random.RandomState(_random_seed())
    D = 52
    centers = np.zeros((2, D))
    centers[0, 0], centers[1, 0] = -5.0, 5.0
    rand_data = RandomData(rng, centers, n_per_cluster=200)
    model = _model(
        [0.5, 0.5], centers + 0.5, [2.0 * np.eye(D)] * 2,
        GradientAscent(learning_rate=0.5, max_iter=2, convergence_tol=1e-12),
    )

    model.step(rand_data.collection(sc))

    assert model.n_iter_ == 2
    assert broadcasts.count(Optimizer) == 2
    assert broadcasts.live == []
    assert all(torch.isfinite(c.param_mat).all() for c in model.components)


def test_batch_fraction(sc):
    rng = np.random.RandomState(_random_seed())
    rand_data = RandomData(rng, [[-5.0], [5.0]], n_per_cluster=1000)
    data = rand_data.collection(sc)
    init = ([0.5, 0.5], [[-4.0], [4.0]], [[[2.0]], [[2.0]]])

    # default floor: N * (1 - exp(log(1e-3 / N))) = N - 1e-3 rows
    for batch_size in (1, 100):
        model = _model(*init, GradientAscent(batch_size=batch_size, max_iter=1))
        model.step(data)
        assert model.batch_fraction == pytest.approx(1.0 - 1e-3 / 2000, rel=1e-12)

    model = _model(*init, GradientAscent(batch_size=100, batch_floor="expected", max_iter=3))
    model.step(data)
    assert model.batch_fraction == pytest.approx(100 / 2000)

    # the empty-batch floor takes over for tiny batch sizes
    model = _model(*init, GradientAscent(batch_size=1, batch_floor="expected", max_iter=1))
    model.step(data)
    assert 6.0 / 2000 < model.batch_fraction < 7.0 / 2000

    for floor in ("conservative", "expected"):
        model = _model(*init, GradientAscent(batch_size=10_000, batch_floor=floor, max_iter=1))
        model.step(data)
        assert model.batch_fraction == 1.0

    model = _model(*init, GradientAscent(max_iter=1))
    model.step(data)
    assert model.batch_fraction == 1.0


def test_weights_leaving_simplex_abort_before_any_update(sc, broadcasts):
    class BrokenTransform(SoftmaxWeightsTransform):
        def from_unconstrained(self, p):
            return torch.exp(p)

    rng = np.random.RandomState(_random_seed())
    rand_data = RandomData(rng, [[-5.0], [5.0]], n_per_cluster=100)
    optimizer = Adam(learning_rate=0.5, weights_transform=BrokenTransform())
    model = _model([0.3, 0.7], [[-4.0], [4.0]], [[[2.0]], [[2.0]]], optimizer)
    before = [c.param_mat.clone() for c in model.components]

    with pytest.raises(ValueError):
        model.step(rand_data.collection(sc))

    assert all(torch.equal(c.param_mat, b) for c, b in zip(model.components, before))
    assert torch.equal(model.weights, torch.tensor([0.3, 0.7], dtype=torch.float64))
    assert model.mixture_weights.state.t == 0
    assert model.mixture_weights.state.momentum is None
    assert optimizer.learning_rate == 0.5
    assert broadcasts.live == []


def test_invalid_model_construction():
    with pytest.raises(ValueError):
        _model([0.0, 1.0], [[-1.0], [1.0]], [[[1.0]], [[1.0]]], GradientAscent())
    with pytest.raises(ValueError):
        _model([0.5, 0.6], [[-1.0], [1.0]], [[[1.0]], [[1.0]]], GradientAscent())
    with pytest.raises(ValueError):
        _model([0.5, 0.5], [[-1.0], [1.0], [2.0]], [[[1.0]], [[1.0]], [[1.0]]], GradientAscent())


def test_empty_dataset_raises(sc):
    model = _model([0.5, 0.5], [[-1.0], [1.0]], [[[1.0]], [[1.0]]], GradientAscent())
    with pytest.raises(ValueError):
        model.step(parallelize_rows(sc, torch.empty((0, 1), dtype=torch.float64), n_partitions=2))


def test_single_row_elements_are_accepted(sc):
    rng = np.random.RandomState(_random_seed())
    rand_data = RandomData(rng, [[-5.0, 0.0], [5.0, 0.0]], n_per_cluster=50)
    init = ([0.5, 0.5], [[-4.0, 0.0], [4.0, 0.0]], [2.0 * np.eye(2)] * 2)

    by_row = _model(*init, GradientAscent(max_iter=2, convergence_tol=1e-12))
    by_block = _model(*init, GradientAscent(max_iter=2, convergence_tol=1e-12))
    by_row.step(sc.parallelize(list(rand_data.X.numpy()), 3))
    by_block.step(rand_data.collection(sc))

    assert torch.allclose(by_row.means, by_block.means, atol=1e-10)
    assert by_row.lower_bounds_ == pytest.approx(by_block.lower_bounds_)


def test_fit_rejects_too_few_rows(sc):
    data = parallelize_rows(sc, torch.zeros((2, 1), dtype=torch.float64), n_partitions=2)
    with pytest.raises(ValueError):
        GradientGaussianMixture.fit(data, GradientAscent(), n_components=3, init_sample_count=10, init_iterations=5)


# ---------------------------
# Prediction
# ---------------------------

def test_predict_and_score():
    rng = np.random.RandomState(_random_seed())
    rand_data = RandomData(rng, [[-10.0, 0.0], [10.0, 0.0]], n_per_cluster=100)
    model = _model([0.5, 0.5], [[-10.0, 0.0], [10.0, 0.0]], [np.eye(2), np.eye(2)], GradientAscent())

    proba = model.predict_proba(rand_data.X)
    labels = model.predict(rand_data.X)

    assert proba.shape == (200, 2)
    assert torch.allclose(proba.sum(dim=1), torch.ones(200, dtype=torch.float64))
    assert torch.equal(labels, (rand_data.X[:, 0] > 0).long())
    assert model.score(rand_data.X) == pytest.approx(float(model.score_samples(rand_data.X).mean()))
    with pytest.raises(ValueError):
        model.score(torch.zeros((3, 5)))
