"""
Pytest configuration and shared fixtures for mcstep tests.
"""

import pytest
import numpy as np
from scipy import stats

from mcstep import Stochastic, Deterministic, Potential
from mcstep.registry import reset_registry


@pytest.fixture
def rng_seed():
    """Default RNG seed for reproducible tests."""
    return 42


@pytest.fixture
def rng(rng_seed):
    return np.random.default_rng(rng_seed)


@pytest.fixture(autouse=True)
def default_registry():
    """Every test starts and ends with the built-in step methods registered."""
    reset_registry()
    yield
    reset_registry()


@pytest.fixture
def normal_data(rng):
    """50 observations from N(1.5, 1)."""
    return rng.normal(1.5, 1.0, size=50)


@pytest.fixture
def normal_nodes(normal_data):
    """
    mu ~ N(0, 10), y ~ N(mu, 1) observed, shifted = mu + 1 deterministic.

    Returns:
        dict of nodes
    """
    mu = Stochastic(
        'mu',
        logp=lambda value: stats.norm.logpdf(value, 0.0, 10.0),
        value=0.0,
        random=lambda rng: rng.normal(0.0, 10.0),
    )
    shifted = Deterministic('shifted', eval=lambda mu: mu + 1.0, parents={'mu': mu})
    y = Stochastic(
        'y',
        logp=lambda value, mu: stats.norm.logpdf(value, mu, 1.0),
        value=normal_data,
        parents={'mu': mu},
        observed=True,
    )
    return {'mu': mu, 'shifted': shifted, 'y': y}


@pytest.fixture
def mixed_nodes():
    """One float, one integer, one boolean stochastic, plus a potential."""
    x = Stochastic('x', logp=lambda value: stats.norm.logpdf(value), value=0.5,
                   random=lambda rng: rng.normal())
    k = Stochastic('k', logp=lambda value: stats.poisson.logpmf(value, 4.0), value=3,
                   random=lambda rng: rng.poisson(4.0))
    b = Stochastic('b', logp=lambda value: np.log(0.3) if value else np.log(0.7), value=False,
                   random=lambda rng: rng.random() < 0.3)
    penalty = Potential('penalty', logp=lambda x, k: -0.01 * (x - k) ** 2, parents={'x': x, 'k': k})
    return {'x': x, 'k': k, 'b': b, 'penalty': penalty}
