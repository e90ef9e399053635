"""Shared fixtures for the SIR forecast test suite."""

import numpy as np
import pandas as pd
import pytest

from models import Ensemble


# =============================================================================
# Random streams
# =============================================================================

@pytest.fixture
def seed() -> int:
    return 20240501


@pytest.fixture
def rng(seed) -> np.random.Generator:
    return np.random.default_rng(seed)


# =============================================================================
# Epidemic settings
# =============================================================================

@pytest.fixture
def population() -> int:
    return 10000


@pytest.fixture
def prior_info():
    """Priors centred on r = 1/7 and beta = 5e-5."""
    return {
        'I0': {'prior': [1, 50, 10, 0, 'poisson']},
        'r': {'prior': [0, 1, np.log(1 / 7), 0.2, 'lognormal']},
        'beta': {'prior': [1e-7, 1, np.log(5e-5), 0.2, 'lognormal']},
    }


@pytest.fixture(params=[1, 16, 64])
def num_particles(request) -> int:
    return request.param


@pytest.fixture
def small_ensemble(population, num_particles, rng) -> Ensemble:
    """Ensemble with a handful of initial infections and spread-out parameters."""
    I0 = rng.integers(1, 20, size=num_particles)
    S0 = population - I0
    R0 = np.zeros(num_particles, dtype=int)
    r = rng.uniform(0.1, 0.2, size=num_particles)
    beta = rng.uniform(3e-5, 7e-5, size=num_particles)
    return Ensemble(S0, I0, R0, r, beta)


@pytest.fixture
def observed_data():
    """Weekly-ish reports with one missing value."""
    return pd.DataFrame({
        'time': [5, 10, 15, 20, 25],
        'obs': [10.0, np.nan, 40.0, 60.0, 70.0],
    })
