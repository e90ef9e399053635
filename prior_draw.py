################################################################################################################
# Random variate sampler and prior draws for the SIR ensemble
#
#  Prior information follows the dictionary format used by the scenario scripts:
#       {'name': {'prior': [lower, upper, loc, scale, family]}}
#  How each family reads the list:
#       'lognormal'  : loc = mean-log, scale = sd-log
#       'normal'     : loc = mean, scale = sd
#       'truncnorm'  : lower, upper, loc = mean, scale = sd
#       'uniform'    : lower, upper
#       'poisson'    : loc = lambda
#       'binomial'   : upper = n, loc = p
#       'constant'   : loc
#  Draws are clipped to [lower, upper] (truncnorm is bounded already).
################################################################################################################

import numpy as np
from scipy.stats import truncnorm

from models import Ensemble


FAMILIES = ('lognormal', 'normal', 'truncnorm', 'uniform', 'poisson', 'binomial', 'constant')


def spawn_streams(seed, n):
    """
    Split a root seed into `n` independent child seed sequences.

    Child `i` only depends on the root seed and on `i`, so the streams handed
    to particles do not depend on how the work is scheduled.
    """
    if isinstance(seed, np.random.SeedSequence):
        # spawn() mutates the parent counter, copy it to keep the call pure
        root = np.random.SeedSequence(seed.entropy, spawn_key=seed.spawn_key)
    else:
        root = np.random.SeedSequence(seed)
    return root.spawn(n)


def make_rng(seed):
    if isinstance(seed, np.random.Generator):
        return seed
    return np.random.default_rng(seed)


def draw(family, params, size, rng):
    """
    Draw `size` independent samples from a named parametric family.

    Parameters:
    ----------
    family : str
        One of 'lognormal', 'normal', 'truncnorm', 'uniform', 'poisson',
        'binomial', 'constant'.
    params : dict
        Family parameters: meanlog/sdlog, mean/sd, low/high/mean/sd, low/high,
        lam, n/p, value.
    size : int
        Number of draws.
    rng : np.random.Generator
        Random stream used for the draws.

    Returns:
    -------
    np.ndarray
    """
    if family == 'lognormal':
        return rng.lognormal(mean=params['meanlog'], sigma=params['sdlog'], size=size)
    elif family == 'normal':
        return rng.normal(loc=params['mean'], scale=params['sd'], size=size)
    elif family == 'truncnorm':
        a = (params['low'] - params['mean']) / params['sd']
        b = (params['high'] - params['mean']) / params['sd']
        return truncnorm.rvs(a, b, loc=params['mean'], scale=params['sd'], size=size, random_state=rng)
    elif family == 'uniform':
        return rng.uniform(low=params['low'], high=params['high'], size=size)
    elif family == 'poisson':
        return rng.poisson(lam=params['lam'], size=size)
    elif family == 'binomial':
        return rng.binomial(n=int(params['n']), p=params['p'], size=size)
    elif family == 'constant':
        return np.full(size, params['value'], dtype=float)
    raise ValueError(f"Unknown distribution family '{family}'. Use one of {FAMILIES}.")


def draw_mvnorm(mean, cov, size, rng):
    """
    Multivariate normal draws, shape (size, len(mean)).

    Sampled through an eigendecomposition of `cov`. Eigenvalues below 1e-12
    times the largest one (including slightly negative values from round-off)
    are set to zero, so singular covariances give draws confined to the
    supported directions instead of failing.
    """
    mean = np.atleast_1d(np.asarray(mean, dtype=float))
    cov = np.atleast_2d(np.asarray(cov, dtype=float))
    if cov.shape != (mean.size, mean.size):
        raise ValueError(f"Covariance shape {cov.shape} does not match mean of length {mean.size}")
    cov = 0.5 * (cov + cov.T)
    eigval, eigvec = np.linalg.eigh(cov)
    top = max(eigval.max(), 0.0)
    eigval = np.where(eigval > 1e-12 * top, eigval, 0.0)
    Z = rng.standard_normal((size, mean.size))
    return mean + Z @ (eigvec * np.sqrt(eigval)).T


def prior_params(prior):
    """Translate a `[lower, upper, loc, scale, family]` list into `draw` parameters."""
    lower, upper, loc, scale, family = prior[:5]
    if family == 'lognormal':
        return family, {'meanlog': loc, 'sdlog': scale}
    elif family == 'normal':
        return family, {'mean': loc, 'sd': scale}
    elif family == 'truncnorm':
        return family, {'low': lower, 'high': upper, 'mean': loc, 'sd': scale}
    elif family == 'uniform':
        return family, {'low': lower, 'high': upper}
    elif family == 'poisson':
        return family, {'lam': loc}
    elif family == 'binomial':
        return family, {'n': upper, 'p': loc}
    elif family == 'constant':
        return family, {'value': loc}
    raise ValueError(f"Unknown distribution family '{family}'. Use one of {FAMILIES}.")


def draw_prior(prior, size, rng):
    """Draw from one prior-info entry and clip the draws to its bounds."""
    family, params = prior_params(prior)
    values = draw(family, params, size, rng).astype(float)
    lower, upper = prior[0], prior[1]
    return np.clip(values, lower, upper)


def initial_ensemble(prior_info, N, num_particles, rng):
    """
    Draw the prior ensemble of (S, I, R, r, beta).

    Parameters:
    - prior_info (dict): prior-info entries for 'I0', 'r' and 'beta'.
    - N (int): total population.
    - num_particles (int): ensemble size.
    - rng: random stream (Generator or seed).

    Returns:
    - Ensemble with S0 = N - I0 and R0 = 0.
    """
    missing = [key for key in ('I0', 'r', 'beta') if key not in prior_info]
    if missing:
        raise ValueError(f"prior_info is missing entries for {missing}")
    rng = make_rng(rng)

    I0 = np.clip(np.rint(draw_prior(prior_info['I0']['prior'], num_particles, rng)), 0, N).astype(np.int64)
    r = np.clip(draw_prior(prior_info['r']['prior'], num_particles, rng), 0.0, 1.0)
    beta = draw_prior(prior_info['beta']['prior'], num_particles, rng)
    if np.any(beta <= 0):
        raise ValueError("The beta prior produced non-positive values; set a positive lower bound.")

    S0 = N - I0
    R0 = np.zeros(num_particles, dtype=np.int64)
    return Ensemble(S0, I0, R0, r, beta)
