# Forecast-Analysis Cycle
# ================================
# This script implements the bootstrap particle filter that alternates
# ensemble forecasts of the stochastic SIR model with analysis steps
# (binomial likelihood -> resampling -> kernel smoothing) each time a new
# observation arrives.


import enum
import logging

import numpy as np
import pandas as pd
from tqdm import tqdm

from exceptions import ShapeMismatch
from forecast import ensemble_forecast, forecast_quantiles, quantile_frame
from kernel_smoothing import smooth_ensemble
from models import ENSEMBLE_COLUMNS, Ensemble, extend_multipliers, mutation_trajectories, shift_multipliers
from observation_dist import check_count, is_missing, obs_dist_binomial
from prior_draw import initial_ensemble
from resampling import RESAMPLING_METHODS, bootstrap_resample


logger = logging.getLogger(__name__)

# purposes of the per-cycle random streams
FORECAST, RESAMPLE, SMOOTH, MUTATION, PRIOR, PRIOR_MUTATION, EXTENSION = range(7)


class CycleState(enum.Enum):
    INITIALIZED = 'initialized'
    FORECASTING = 'forecasting'
    ANALYZING = 'analyzing'
    RESAMPLING = 'resampling/smoothing'
    DONE = 'done'
    STOPPED = 'stopped'


class FilterConfig:
    """
    Settings of the forecast-analysis cycle.

    Parameters:
    - N (int): total population.
    - num_particles (int): ensemble size Nmc.
    - num_steps (int): forecast horizon NT (rows per trajectory, initial state included).
    - theta (float): detection probability of an infected individual, in (0, 1).
    - mutation_sd (float): sd-log of the parameter random walk (0 disables the drift).
    - h (float): kernel smoothing shrinkage factor, in (0, 1].
    - resampling_method (str): 'multinomial', 'stratified', 'systematic' or 'residual'.
    - max_cycles (int): stop after this many analysis steps (None: use every observation).
    - n_jobs (int): joblib workers for the ensemble forecast.
    - seed (int): root seed of every random stream.
    - show_progress (bool): display a progress bar over the observations.
    """

    def __init__(self, N, num_particles, num_steps, theta, mutation_sd=0.0, h=0.95,
                 resampling_method='multinomial', max_cycles=None, n_jobs=1, seed=None,
                 show_progress=False):
        self.N = N
        self.num_particles = num_particles
        self.num_steps = num_steps
        self.theta = theta
        self.mutation_sd = mutation_sd
        self.h = h
        self.resampling_method = resampling_method
        self.max_cycles = max_cycles
        self.n_jobs = n_jobs
        self.seed = seed
        self.show_progress = show_progress
        validate_config(self)

    def __repr__(self):
        return f"FilterConfig({', '.join(f'{k}={v!r}' for k, v in vars(self).items())})"


def validate_config(config):
    if int(config.N) != config.N or config.N <= 0:
        raise ValueError(f"Population N must be a positive integer, got {config.N}")
    if int(config.num_particles) != config.num_particles or config.num_particles <= 0:
        raise ValueError(f"num_particles must be a positive integer, got {config.num_particles}")
    if int(config.num_steps) != config.num_steps or config.num_steps < 2:
        raise ValueError(f"num_steps must be an integer >= 2, got {config.num_steps}")
    if not 0 < config.theta < 1:
        raise ValueError(f"Detection probability theta must be in (0, 1), got {config.theta}")
    if config.mutation_sd < 0:
        raise ValueError(f"mutation_sd must be non-negative, got {config.mutation_sd}")
    if not 0 < config.h <= 1:
        raise ValueError(f"Smoothing factor h must be in (0, 1], got {config.h}")
    if config.resampling_method not in RESAMPLING_METHODS:
        raise ValueError(f"Unknown resampling method '{config.resampling_method}'. Use one of {RESAMPLING_METHODS}.")
    if config.max_cycles is not None and config.max_cycles < 0:
        raise ValueError(f"max_cycles must be non-negative, got {config.max_cycles}")


def _frozen(array):
    array = np.array(array, copy=True)
    array.setflags(write=False)
    return array


class CycleRecord:
    """
    Outputs of one forecast-analysis cycle; arrays are read-only.

    Cycle 0 holds the prior ensemble and its first forecast; its analysis
    fields (obs_time, observation, ess, log_evidence) are None.
    """

    def __init__(self, cycle, start_time, trajectories, quantiles, ensemble, obs_time=None,
                 observation=None, ess=None, log_evidence=None, degenerate=False):
        self.cycle = cycle
        self.start_time = start_time
        self.obs_time = obs_time
        self.observation = observation
        self.trajectories = _frozen(trajectories)
        self.quantiles = _frozen(quantiles)
        self.ensemble = _frozen(ensemble)
        self.ess = ess
        self.log_evidence = log_evidence
        self.degenerate = degenerate

    def ensemble_frame(self):
        return pd.DataFrame(self.ensemble, columns=ENSEMBLE_COLUMNS)

    def quantile_frame(self):
        frame = quantile_frame(self.quantiles, start_time=self.start_time)
        frame.insert(0, 'cycle', self.cycle)
        return frame

    @property
    def analysed(self):
        return self.observation is not None

    def __repr__(self):
        if not self.analysed:
            return f"CycleRecord(cycle={self.cycle}, start_time={self.start_time}, forecast only)"
        return (f"CycleRecord(cycle={self.cycle}, obs_time={self.obs_time}, observation={self.observation}, "
                f"ess={self.ess:.1f}, degenerate={self.degenerate})")


class CycleLog:
    """Append-only log of cycle records."""

    def __init__(self):
        self._records = []

    def append(self, record):
        self._records.append(record)

    def __len__(self):
        return len(self._records)

    def __iter__(self):
        return iter(self._records)

    def __getitem__(self, k):
        return self._records[k]

    def analyses(self):
        """Records of the analysis steps, without the cycle 0 forecast."""
        return [rec for rec in self._records if rec.analysed]

    def summary(self):
        """One row per cycle: times, observation, ESS, evidence increment and degeneracy flag."""
        return pd.DataFrame(
            [{'cycle': rec.cycle, 'start_time': rec.start_time, 'obs_time': rec.obs_time,
              'obs': rec.observation, 'ess': rec.ess, 'log_evidence': rec.log_evidence,
              'degenerate': rec.degenerate} for rec in self._records],
            columns=['cycle', 'start_time', 'obs_time', 'obs', 'ess', 'log_evidence', 'degenerate'],
        )

    def quantile_frame(self):
        if not self._records:
            return pd.DataFrame(columns=['cycle', 'time', 'state', 'lower', 'median', 'upper'])
        return pd.concat([rec.quantile_frame() for rec in self._records], ignore_index=True)


def validate_observations(observed_data, start_time, num_steps):
    """
    Check an observation table before anything is simulated.

    `observed_data` needs a 'time' column of strictly increasing integers and
    an 'obs' column of non-negative integer counts (NaN = missing).
    Consecutive analysed times must be less than `num_steps` apart so each one
    falls inside a forecast window.
    """
    for column in ('time', 'obs'):
        if column not in observed_data.columns:
            raise ValueError(f"observed_data needs a '{column}' column")

    times = observed_data['time'].to_numpy()
    if np.any(times != np.floor(times)):
        raise ShapeMismatch("Observation times must be integers")
    if len(times) and times[0] < start_time:
        raise ShapeMismatch(f"First observation time {times[0]} precedes the current time {start_time}")
    if np.any(np.diff(times) <= 0):
        raise ShapeMismatch("Observation times must be strictly increasing")

    obs = observed_data['obs'].to_numpy(dtype=float)
    observed = ~np.isnan(obs)
    bad = observed & (~np.isfinite(obs) | (obs < 0) | (obs != np.floor(obs)))
    if np.any(bad):
        raise ValueError(f"Observed counts must be non-negative integers, got {obs[bad].tolist()}")

    analysed = np.concatenate([[start_time], times[observed]])
    gaps = np.diff(analysed)
    if np.any(gaps >= num_steps):
        raise ShapeMismatch(
            f"Gap of {gaps.max()} steps between observations exceeds the forecast horizon of {num_steps} rows"
        )


class ForecastAnalysisCycle:
    """
    Bootstrap particle filter over repeated forecast-analysis cycles.

    Example:
        >>> config = FilterConfig(N=10000, num_particles=500, num_steps=30, theta=0.75, seed=42)
        >>> pf = ForecastAnalysisCycle(config, prior_info)
        >>> log = pf.run(observed_data)
        >>> log.summary()
    """

    def __init__(self, config, prior_info):
        self.config = config
        self._root = np.random.SeedSequence(config.seed)
        self.log = CycleLog()
        self.cycle = 0
        self._stop_requested = False

        prior_stream, mutation_stream = self._stream(0, PRIOR), self._stream(0, PRIOR_MUTATION)
        ensemble = initial_ensemble(prior_info, config.N, config.num_particles, np.random.default_rng(prior_stream))
        mutation = mutation_trajectories(config.num_particles, config.num_steps, config.mutation_sd,
                                         np.random.default_rng(mutation_stream))
        self.ensemble = Ensemble(ensemble.S, ensemble.I, ensemble.R, ensemble.r, ensemble.beta, mutation=mutation)
        self.start_time = 0
        self.trajectories = None

        trajectories = self.forecast()
        self.log.append(CycleRecord(
            cycle=0,
            start_time=self.start_time,
            trajectories=trajectories,
            quantiles=forecast_quantiles(trajectories),
            ensemble=self.ensemble.matrix(),
        ))
        self.state = CycleState.INITIALIZED
        logger.info("Initialised %d particles (N=%d, horizon=%d)", config.num_particles, config.N, config.num_steps)

    def _stream(self, cycle, purpose):
        # one independent stream per (cycle, purpose) pair of the root seed
        return np.random.SeedSequence(self._root.entropy, spawn_key=self._root.spawn_key + (cycle, purpose))

    def forecast(self, num_steps=None):
        """
        Trajectory tensor (num_particles, num_steps, 3) of the current ensemble from `start_time`.

        The default horizon is cached for the next analysis step. Another
        `num_steps` gives a fresh tensor on the same particle streams, with the
        random walk extended when it is longer than the configured horizon.
        """
        config = self.config
        if num_steps is None or num_steps == config.num_steps:
            if self.trajectories is None:
                self.trajectories = ensemble_forecast(self.ensemble, config.num_steps, self._stream(self.cycle, FORECAST),
                                                      n_jobs=config.n_jobs)
            return self.trajectories

        mutation = extend_multipliers(self.ensemble.mutation, num_steps, config.mutation_sd,
                                      np.random.default_rng(self._stream(self.cycle, EXTENSION)))
        ensemble = Ensemble(self.ensemble.S, self.ensemble.I, self.ensemble.R, self.ensemble.r, self.ensemble.beta,
                            mutation=mutation)
        return ensemble_forecast(ensemble, num_steps, self._stream(self.cycle, FORECAST), n_jobs=config.n_jobs)

    def stop(self):
        """Request a clean stop at the next cycle boundary of the current or next `run`."""
        self._stop_requested = True

    def analyse(self, obs_time, observation):
        """
        One analysis step at `obs_time` against the current forecast.

        Returns the new CycleRecord, or None when the observation is missing.
        """
        if is_missing(observation):
            logger.debug("No data at t=%s, ensemble passes through unchanged", obs_time)
            return None

        check_count(observation)
        config = self.config
        offset = int(obs_time - self.start_time)
        if not 0 <= offset < config.num_steps:
            raise ShapeMismatch(f"Observation at t={obs_time} is outside the forecast window "
                                f"[{self.start_time}, {self.start_time + config.num_steps})")

        self.state = CycleState.FORECASTING
        trajectories = self.forecast()
        resample_stream = self._stream(self.cycle, RESAMPLE)
        smooth_stream = self._stream(self.cycle, SMOOTH)
        mutation_stream = self._stream(self.cycle, MUTATION)

        self.state = CycleState.ANALYZING
        log_likelihoods = obs_dist_binomial(observation, trajectories[:, offset, 1], config.theta)

        self.state = CycleState.RESAMPLING
        at_obs = self.ensemble.with_states(trajectories[:, offset, :])
        resampled, result = bootstrap_resample(at_obs, log_likelihoods, np.random.default_rng(resample_stream),
                                               method=config.resampling_method)
        if result.degenerate:
            logger.warning("Cycle %d: ensemble lost all support for obs=%s at t=%s", self.cycle + 1,
                           observation, obs_time)

        # fold the drift reached at the observation into the baselines
        reached, mutation = shift_multipliers(resampled.mutation, offset, config.mutation_sd,
                                              np.random.default_rng(mutation_stream))
        resampled = Ensemble(resampled.S, resampled.I, resampled.R,
                             np.clip(resampled.r * reached[0], 0.0, 1.0), resampled.beta * reached[1],
                             mutation=mutation)
        smoothed = smooth_ensemble(resampled, config.h, np.random.default_rng(smooth_stream))

        self.cycle += 1
        record = CycleRecord(
            cycle=self.cycle,
            start_time=self.start_time,
            obs_time=obs_time,
            observation=int(observation),
            trajectories=trajectories,
            quantiles=forecast_quantiles(trajectories),
            ensemble=smoothed.matrix(),
            ess=result.ess,
            log_evidence=result.log_evidence,
            degenerate=result.degenerate,
        )
        self.log.append(record)
        logger.info("Cycle %d: t=%s obs=%s ESS=%.1f", self.cycle, obs_time, observation, result.ess)

        self.ensemble = smoothed
        self.start_time = obs_time
        self.trajectories = None
        return record

    def run(self, observed_data, should_stop=None):
        """
        Assimilate an observation table.

        Parameters:
        - observed_data (pd.DataFrame): columns 'time' and 'obs' (NaN = missing).
        - should_stop (callable): optional, checked at every cycle boundary.

        Returns:
        - CycleLog: the cycle 0 forecast followed by one record per analysis step.
        """
        validate_observations(observed_data, self.start_time, self.config.num_steps)
        max_cycles = self.config.max_cycles

        progress_bar = tqdm(total=len(observed_data), desc="Forecast-analysis", disable=not self.config.show_progress)
        final_state = CycleState.DONE
        for obs_time, observation in zip(observed_data['time'].to_numpy(), observed_data['obs'].to_numpy()):
            if self._stop_requested or (should_stop is not None and should_stop()):
                final_state = CycleState.STOPPED
                self._stop_requested = False
                logger.info("Stopped after %d cycles at t=%s", self.cycle, self.start_time)
                break
            if max_cycles is not None and self.cycle >= max_cycles:
                break
            self.analyse(int(obs_time), observation)
            progress_bar.update(1)
        progress_bar.close()

        self.state = final_state
        if final_state is CycleState.DONE:
            logger.info("Done: %d cycles, %d degenerate", self.cycle, sum(rec.degenerate for rec in self.log))
        return self.log
