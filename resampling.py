################################################################################################################
# Weight normalisation and resampling schemes for the bootstrap filter
##################################################################################################################
import logging
import warnings

import numpy as np
from scipy.special import logsumexp

from exceptions import DegenerateWeights, ShapeMismatch


logger = logging.getLogger(__name__)

RESAMPLING_METHODS = ('multinomial', 'stratified', 'systematic', 'residual')


def normalize_log_weights(log_weights):
    """
    Normalise log-likelihoods into weights with the log-sum-exp trick.

    Returns:
    - weights (np.ndarray): non-negative, summing to 1.
    - degenerate (bool): True when every particle had zero likelihood, in
      which case the weights fall back to uniform.
    """
    log_weights = np.asarray(log_weights, dtype=float)
    num_particles = log_weights.size
    if num_particles == 0:
        raise ValueError("Cannot normalise an empty weight vector")

    log_weights = np.where(np.isnan(log_weights), -np.inf, log_weights)
    A = np.max(log_weights)
    if not np.isfinite(A):
        message = f"All {num_particles} particles have zero likelihood, using uniform weights"
        logger.warning("%s: %s", DegenerateWeights.__name__, message)
        warnings.warn(message, DegenerateWeights, stacklevel=2)
        return np.full(num_particles, 1.0 / num_particles), True

    weights = np.exp(log_weights - A)
    return weights / np.sum(weights), False


def effective_sample_size(weights):
    weights = np.asarray(weights, dtype=float)
    return 1.0 / np.sum(weights ** 2)


def log_evidence_increment(log_weights):
    """log of the mean likelihood across particles (the marginal likelihood increment)."""
    log_weights = np.asarray(log_weights, dtype=float)
    log_weights = np.where(np.isnan(log_weights), -np.inf, log_weights)
    with warnings.catch_warnings():
        # logsumexp of an all -inf vector warns and returns -inf
        warnings.simplefilter('ignore', RuntimeWarning)
        return float(logsumexp(log_weights) - np.log(log_weights.size))


def resampling_style(weights, method='multinomial', rng=None):
    """
    Draw ancestor indices proportional to `weights`.

    Parameters:
    - weights (np.ndarray): normalised weights.
    - method (str): 'multinomial', 'stratified', 'systematic' or 'residual'.
    - rng: random stream (Generator or seed).

    Returns:
    - np.ndarray of len(weights) indices in [0, len(weights)).
    """
    weights = np.asarray(weights, dtype=float)
    num_particles = weights.size
    rng = np.random.default_rng(rng)

    if method == 'multinomial':
        return rng.choice(num_particles, size=num_particles, replace=True, p=weights)
    elif method == 'stratified':
        positions = (rng.random(num_particles) + np.arange(num_particles)) / num_particles
        return _search(weights, positions)
    elif method == 'systematic':
        positions = (rng.random() + np.arange(num_particles)) / num_particles
        return _search(weights, positions)
    elif method == 'residual':
        counts = np.floor(num_particles * weights).astype(int)
        indices = np.repeat(np.arange(num_particles), counts)
        num_left = num_particles - counts.sum()
        if num_left > 0:
            residual = num_particles * weights - counts
            residual /= residual.sum()
            indices = np.concatenate([indices, rng.choice(num_particles, size=num_left, replace=True, p=residual)])
        return indices
    raise ValueError(f"Unknown resampling method '{method}'. Use one of {RESAMPLING_METHODS}.")


def _search(weights, positions):
    cumulative = np.cumsum(weights)
    cumulative[-1] = 1.0
    return np.searchsorted(cumulative, positions, side='right')


class ResampleResult:
    """Diagnostics of one analysis step."""

    def __init__(self, indices, weights, ess, degenerate, log_evidence):
        self.indices = indices
        self.weights = weights
        self.ess = ess
        self.degenerate = degenerate
        self.log_evidence = log_evidence

    def __repr__(self):
        return (f"ResampleResult(ess={self.ess:.1f}, degenerate={self.degenerate}, "
                f"log_evidence={self.log_evidence:.3f})")


def bootstrap_resample(ensemble, log_weights, rng=None, method='multinomial'):
    """
    Resample an ensemble with probability proportional to its likelihoods.

    States, parameters and mutation trajectories are sliced by the same
    ancestor indices so the joint structure of the ensemble is preserved.

    Returns:
    - (Ensemble, ResampleResult)
    """
    log_weights = np.asarray(log_weights, dtype=float)
    if log_weights.shape != (len(ensemble),):
        raise ShapeMismatch(f"Expected {len(ensemble)} log-likelihoods, got shape {log_weights.shape}")

    weights, degenerate = normalize_log_weights(log_weights)
    indices = resampling_style(weights, method, rng)
    result = ResampleResult(
        indices=indices,
        weights=weights,
        ess=effective_sample_size(weights),
        degenerate=degenerate,
        log_evidence=log_evidence_increment(log_weights),
    )
    return ensemble.take(indices), result
