################################################################################################################
# Observation distribution linking the latent infected count to the reported count
#  Each of the I infected individuals is detected independently with probability theta:
#       z | I ~ Binomial(I, theta)
#  A missing observation (None or NaN) means no analysis step at that time.
##################################################################################################################
import numpy as np
from scipy.stats import binom


def is_missing(z):
    return z is None or (np.ndim(z) == 0 and bool(np.isnan(z)))


def check_count(z):
    """Raise ValueError unless `z` is a finite, non-negative whole number."""
    if not np.isfinite(z) or z < 0 or z != np.floor(z):
        raise ValueError(f"Observed count must be a non-negative integer, got {z}")


def obs_dist_binomial(z, I, theta, pred=False, rng=None):
    """
    Binomial observation log-likelihood, one value per particle.

    Parameters:
    ----------
    z : int, float or None
        Observed count; None or NaN marks a missing observation.
    I : np.ndarray
        Latent infected count of every particle at the observation time.
    theta : float
        Detection probability, in (0, 1).
    pred : bool
        If True, draw predicted observations Binomial(I, theta) instead.
    rng : np.random.Generator
        Random stream for the predicted observations.

    Returns:
    -------
    np.ndarray or None
        log Pr(z | I, theta) per particle (-inf where z > I), predicted counts
        when `pred` is set, or None for a missing observation.
    """
    if not 0 < theta < 1:
        raise ValueError(f"Detection probability theta must be in (0, 1), got {theta}")
    I = np.asarray(I)
    if np.any(I < 0):
        raise ValueError("Latent infected counts must be non-negative")

    if pred:
        rng = np.random.default_rng(rng)
        return rng.binomial(I.astype(np.int64), theta)

    if is_missing(z):
        return None
    check_count(z)

    log_likelihoods = np.atleast_1d(binom.logpmf(int(z), I.astype(np.int64), theta)).astype(float)
    log_likelihoods[np.isnan(log_likelihoods)] = -np.inf
    return log_likelihoods
