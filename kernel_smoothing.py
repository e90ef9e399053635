################################################################################################################
# Kernel smoothing of a resampled ensemble
#  X' = Xbar + h (X - Xbar) + (1 - h) dX * Xbar,   dX ~ MVN(0, cov(X / Xbar))
#  Restores continuous diversity lost by duplicating particles during resampling.
##################################################################################################################
import numpy as np

from models import Ensemble
from prior_draw import draw_mvnorm


BETA_FLOOR = 1e-12


def kernel_smooth(X, h, rng, integer_columns=(0, 1, 2)):
    """
    Jitter an ensemble matrix around its mean.

    Parameters:
    ----------
    X : np.ndarray
        Resampled ensemble, rows = particles, columns = joint state+parameter dimensions.
    h : float
        Shrinkage factor in (0, 1]; h = 1 leaves the ensemble unchanged.
    rng : np.random.Generator
        Random stream for the perturbations.
    integer_columns : tuple
        Columns rounded to the nearest integer after smoothing.

    Returns:
    -------
    np.ndarray
        Smoothed ensemble with the same shape as `X`.
    """
    if not 0 < h <= 1:
        raise ValueError(f"Smoothing factor h must be in (0, 1], got {h}")
    X = np.asarray(X, dtype=float)
    num_particles, num_dims = X.shape

    Xbar = X.mean(axis=0)
    # columns with a zero mean have no scale to perturb around
    scale = np.where(Xbar != 0, Xbar, 1.0)
    Xnorm = np.where(Xbar != 0, X / scale, 0.0)

    if num_particles > 1:
        SIGMA = np.atleast_2d(np.cov(Xnorm, rowvar=False))
    else:
        SIGMA = np.zeros((num_dims, num_dims))
    dX = draw_mvnorm(np.zeros(num_dims), SIGMA, num_particles, rng)

    X_new = Xbar + h * (X - Xbar) + (1 - h) * dX * Xbar
    columns = list(integer_columns)
    X_new[:, columns] = np.rint(X_new[:, columns])
    return X_new


def smooth_ensemble(ensemble, h, rng):
    """
    Kernel-smooth an Ensemble and restore its physical constraints.

    S and I are kept in [0, N] with S + I <= N, R takes up the rest of the
    population, r is clipped to [0, 1] and beta to a positive floor.
    Mutation trajectories are carried over unchanged.
    """
    N = ensemble.N
    X = kernel_smooth(ensemble.matrix(), h, rng)

    S = np.clip(X[:, 0], 0, N)
    I = np.clip(X[:, 1], 0, N)
    S = np.minimum(S, N - I)
    R = N - S - I
    r = np.clip(X[:, 3], 0.0, 1.0)
    beta = np.maximum(X[:, 4], BETA_FLOOR)
    return Ensemble(S.astype(np.int64), I.astype(np.int64), R.astype(np.int64), r, beta,
                    mutation=ensemble.mutation)
