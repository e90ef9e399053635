# Ensemble Forecaster
# ================================
# Propagates every particle of an ensemble through the stochastic SIR model
# over a fixed horizon. Particles never interact, so the work is split in
# chunks and run with joblib; each particle owns a random stream derived from
# the root seed and its index.

import logging

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from exceptions import ShapeMismatch
from models import STATE_NAMES, Constant, TimeVarying, as_channel, stochastic_sir_model
from prior_draw import spawn_streams


logger = logging.getLogger(__name__)

QUANTILES = (2.5, 50, 97.5)


def forecast_particle(S0, I0, R0, r, beta, num_steps, seed):
    """
    Simulate one particle over `num_steps` rows.

    Row 0 holds the initial state and row k the state after k transitions.
    `r` and `beta` are scalars, `Constant` or `TimeVarying` channels; the
    value of step t drives the transition from row t to row t + 1.

    Returns:
    - np.ndarray of shape (num_steps, 3) with columns S, I, R.
    """
    r, beta = as_channel(r), as_channel(beta)
    r.check_length(num_steps)
    beta.check_length(num_steps)
    rng = np.random.default_rng(seed)

    traj = np.empty((num_steps, 3), dtype=np.int64)
    S, I, R = S0, I0, R0
    traj[0] = (S, I, R)
    for t in range(1, num_steps):
        S, I, R = stochastic_sir_model(S, I, R, r.at(t - 1), beta.at(t - 1), rng)
        traj[t] = (S, I, R)
    return traj


def _forecast_chunk(S0, I0, R0, r, beta, num_steps, seeds):
    return np.stack([
        forecast_particle(S0[j], I0[j], R0[j], r[j], beta[j], num_steps, seeds[j])
        for j in range(len(seeds))
    ])


def particle_channels(ensemble, num_steps):
    """
    Parameter channels of every particle.

    Without mutation trajectories each particle gets `Constant` channels;
    otherwise the baseline is multiplied by the particle's random-walk
    multipliers, with the recovery probability kept inside [0, 1].
    """
    if ensemble.mutation is None:
        return [Constant(v) for v in ensemble.r], [Constant(v) for v in ensemble.beta]

    if ensemble.mutation.shape[2] < num_steps - 1:
        raise ShapeMismatch(
            f"Mutation trajectories cover {ensemble.mutation.shape[2]} steps, "
            f"the forecast horizon needs {num_steps - 1}"
        )
    r_eff = np.clip(ensemble.r[:, None] * ensemble.mutation[0], 0.0, 1.0)
    beta_eff = ensemble.beta[:, None] * ensemble.mutation[1]
    return [TimeVarying(row) for row in r_eff], [TimeVarying(row) for row in beta_eff]


def ensemble_forecast(ensemble, num_steps, seed, n_jobs=1, chunk_size=None):
    """
    Forecast a full ensemble.

    Parameters:
    - ensemble (Ensemble): initial states and parameters of every particle.
    - num_steps (int): horizon NT (rows of each trajectory, initial state included).
    - seed (int or SeedSequence): root seed, split into one stream per particle.
    - n_jobs (int): number of joblib workers.
    - chunk_size (int): particles per joblib task (default: spread evenly over the workers).

    Returns:
    - np.ndarray of shape (num_particles, num_steps, 3).
    """
    if num_steps < 1:
        raise ValueError(f"num_steps must be at least 1, got {num_steps}")
    num_particles = len(ensemble)
    r, beta = particle_channels(ensemble, num_steps)
    seeds = spawn_streams(seed, num_particles)

    if chunk_size is None:
        workers = max(1, n_jobs if n_jobs > 0 else 1)
        chunk_size = max(1, int(np.ceil(num_particles / (4 * workers))))
    bounds = range(0, num_particles, chunk_size)

    logger.debug("Forecasting %d particles over %d steps in %d chunks", num_particles, num_steps, len(bounds))
    chunks = Parallel(n_jobs=n_jobs)(
        delayed(_forecast_chunk)(
            ensemble.S[a:a + chunk_size], ensemble.I[a:a + chunk_size], ensemble.R[a:a + chunk_size],
            r[a:a + chunk_size], beta[a:a + chunk_size], num_steps, seeds[a:a + chunk_size]
        )
        for a in bounds
    )
    if not chunks:
        return np.empty((0, num_steps, 3), dtype=np.int64)
    return np.concatenate(chunks, axis=0)


def point_forecast(S0, I0, R0, r, beta, num_steps, num_particles=1, seed=None, n_jobs=1):
    """Forecast `num_particles` replicates that share the same initial state and parameters."""
    r, beta = as_channel(r), as_channel(beta)
    seeds = spawn_streams(seed, num_particles)
    trajectories = Parallel(n_jobs=n_jobs)(
        delayed(forecast_particle)(S0, I0, R0, r, beta, num_steps, s) for s in seeds
    )
    return np.stack(trajectories)


def forecast_quantiles(trajectories, q=QUANTILES):
    """
    Pointwise quantiles of a trajectory tensor.

    Returns:
    - np.ndarray of shape (len(q), num_steps, 3): quantile x step x state.
    """
    trajectories = np.asarray(trajectories)
    if trajectories.ndim != 3 or trajectories.shape[2] != 3:
        raise ShapeMismatch(f"Expected a (num_particles, num_steps, 3) tensor, got {trajectories.shape}")
    return np.percentile(trajectories, q, axis=0)


def quantile_frame(quantiles, start_time=0):
    """Tidy DataFrame (time, state, lower, median, upper) from a (3, NT, 3) quantile array."""
    lower, median, upper = quantiles
    num_steps = median.shape[0]
    frames = []
    for k, name in enumerate(STATE_NAMES):
        frames.append(pd.DataFrame({
            'time': start_time + np.arange(num_steps),
            'state': name,
            'lower': lower[:, k],
            'median': median[:, k],
            'upper': upper[:, k],
        }))
    return pd.concat(frames, ignore_index=True)
