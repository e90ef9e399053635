###########################################################################
#  This file contains the stochastic SIR model, the random-walk parameter
#  mutator and the ensemble container shared by the forecaster and filter
#######################################################################

import numpy as np

from exceptions import InvalidProbability, ShapeMismatch


STATE_NAMES = ['S', 'I', 'R']
THETA_NAMES = ['r', 'beta']
ENSEMBLE_COLUMNS = STATE_NAMES + THETA_NAMES


######################################################################################################
#####  Parameter channels: one value broadcast over the horizon, or one value per step ##############

class Constant:
    """A parameter that keeps the same value at every step."""

    def __init__(self, value):
        self.value = float(value)

    def at(self, t):
        return self.value

    def check_length(self, num_steps):
        pass

    def __repr__(self):
        return f"Constant({self.value!r})"


class TimeVarying:
    """A parameter with one value per time step."""

    def __init__(self, sequence):
        self.sequence = np.asarray(sequence, dtype=float)
        if self.sequence.ndim != 1:
            raise ShapeMismatch(f"TimeVarying expects a 1-d sequence, got shape {self.sequence.shape}")

    def at(self, t):
        return self.sequence[t]

    def check_length(self, num_steps):
        # the value at the last row is never used, one per transition suffices
        if len(self.sequence) < num_steps - 1:
            raise ShapeMismatch(
                f"TimeVarying trajectory has {len(self.sequence)} values, "
                f"at least {num_steps - 1} are needed for {num_steps} steps"
            )

    def __repr__(self):
        return f"TimeVarying(len={len(self.sequence)})"


def as_channel(value):
    """Wrap scalars as `Constant` and 1-d sequences as `TimeVarying`."""
    if isinstance(value, (Constant, TimeVarying)):
        return value
    if np.ndim(value) == 0:
        return Constant(value)
    return TimeVarying(value)


######################################################################################################
#####  Stochastic SIR transition ######################################################################

def stochastic_sir_model(S, I, R, r, beta, rng):
    """
    One step of the discrete-time stochastic SIR model.

    New cases C ~ Binomial(S, min(1, beta * I)) and recoveries H ~ Binomial(I, r).
    Works on scalars or on equal-length arrays (one entry per particle).

    Parameters:
    ----------
    S, I, R : int or np.ndarray
        Current compartments.
    r : float or np.ndarray
        Recovery probability per step.
    beta : float or np.ndarray
        Infection-rate coefficient.
    rng : np.random.Generator
        Random stream of the particle(s).

    Returns:
    -------
    tuple
        Next (S, I, R).
    """
    S = np.asarray(S, dtype=np.int64)
    I = np.asarray(I, dtype=np.int64)
    R = np.asarray(R, dtype=np.int64)

    # Transition probabilities
    P_SI = np.minimum(1.0, np.asarray(beta, dtype=float) * I)
    P_IR = np.asarray(r, dtype=float)

    for name, p in (('infection', P_SI), ('recovery', P_IR)):
        if not np.all((p >= 0) & (p <= 1)):
            raise InvalidProbability(f"{name} probability outside [0, 1]: {p}")

    # Binomial transitions
    C = rng.binomial(S, P_SI)
    H = rng.binomial(I, P_IR)

    return S - C, I + C - H, R + H


######################################################################################################
#####  Multiplicative log-normal random walk for the parameters #####################################

def random_walk_multipliers(num_particles, num_steps, sd, rng):
    """
    Multiplicative random-walk trajectories, one row per particle.

    m_1 = 1 and m_{t+1} = m_t * X_t with X_t ~ LogNormal(0, sd) iid.
    """
    if sd < 0:
        raise ValueError(f"Mutation sd must be non-negative, got {sd}")
    steps = rng.lognormal(mean=0.0, sigma=sd, size=(num_particles, num_steps - 1))
    ones = np.ones((num_particles, 1))
    return np.cumprod(np.hstack([ones, steps]), axis=1)


def mutation_trajectories(num_particles, num_steps, sd, rng):
    """Random-walk multipliers for (r, beta), shape (2, num_particles, num_steps)."""
    return np.stack([
        random_walk_multipliers(num_particles, num_steps, sd, rng),
        random_walk_multipliers(num_particles, num_steps, sd, rng),
    ])


######################################################################################################
#####  Ensemble container ############################################################################

class Ensemble:
    """
    Ordered collection of particles (S, I, R, r, beta).

    `mutation` optionally holds the random-walk multipliers of (r, beta),
    shape (2, num_particles, num_steps). It is sliced together with the
    states and parameters whenever the ensemble is resampled.
    """

    def __init__(self, S, I, R, r, beta, mutation=None):
        self.S = np.asarray(S, dtype=np.int64)
        self.I = np.asarray(I, dtype=np.int64)
        self.R = np.asarray(R, dtype=np.int64)
        self.r = np.asarray(r, dtype=float)
        self.beta = np.asarray(beta, dtype=float)
        self.mutation = None if mutation is None else np.asarray(mutation, dtype=float)
        self._validate()

    def _validate(self):
        n = self.S.shape
        for name in ('I', 'R', 'r', 'beta'):
            if getattr(self, name).shape != n:
                raise ShapeMismatch(f"Ensemble array '{name}' has shape {getattr(self, name).shape}, expected {n}")
        if len(n) != 1:
            raise ShapeMismatch(f"Ensemble arrays must be 1-d, got shape {n}")
        if self.mutation is not None and (self.mutation.ndim != 3 or self.mutation.shape[:2] != (2, n[0])):
            raise ShapeMismatch(f"Mutation trajectories have shape {self.mutation.shape}, expected (2, {n[0]}, num_steps)")
        if np.any(self.S < 0) or np.any(self.I < 0) or np.any(self.R < 0):
            raise ValueError("Ensemble states must be non-negative")
        totals = self.S + self.I + self.R
        if totals.size and np.any(totals != totals[0]):
            raise ValueError("S + I + R must equal the same population N for every particle")

    def __len__(self):
        return self.S.shape[0]

    @property
    def N(self):
        return int(self.S[0] + self.I[0] + self.R[0])

    def matrix(self):
        """Joint (num_particles, 5) matrix with columns S, I, R, r, beta."""
        return np.column_stack((self.S, self.I, self.R, self.r, self.beta)).astype(float)

    @classmethod
    def from_matrix(cls, X, mutation=None):
        X = np.asarray(X)
        if X.ndim != 2 or X.shape[1] != len(ENSEMBLE_COLUMNS):
            raise ShapeMismatch(f"Ensemble matrix must have shape (num_particles, 5), got {X.shape}")
        S, I, R = (np.rint(X[:, k]).astype(np.int64) for k in range(3))
        return cls(S, I, R, X[:, 3], X[:, 4], mutation=mutation)

    def take(self, indices):
        """Slice every array of the ensemble by the same particle indices."""
        indices = np.asarray(indices)
        mutation = None if self.mutation is None else self.mutation[:, indices]
        return Ensemble(self.S[indices], self.I[indices], self.R[indices],
                        self.r[indices], self.beta[indices], mutation=mutation)

    def with_states(self, states):
        """Copy of the ensemble whose (S, I, R) are replaced by `states` (num_particles x 3)."""
        states = np.asarray(states)
        return Ensemble(states[:, 0], states[:, 1], states[:, 2], self.r, self.beta, mutation=self.mutation)

    def __repr__(self):
        return f"Ensemble(num_particles={len(self)}, N={self.N if len(self) else None})"


def shift_multipliers(mutation, offset, sd, rng):
    """
    Move the random walk forward by `offset` steps.

    Returns the multipliers reached at `offset` (to be folded into the
    baselines) and new trajectories restarting at 1, extended with fresh
    log-normal steps so they keep their original length.
    """
    num_steps = mutation.shape[2]
    reached = mutation[:, :, offset]
    kept = mutation[:, :, offset:] / reached[:, :, None]
    if offset > 0:
        steps = rng.lognormal(mean=0.0, sigma=sd, size=(2, mutation.shape[1], offset))
        extension = kept[:, :, -1:] * np.cumprod(steps, axis=2)
        kept = np.concatenate([kept, extension], axis=2)
    return reached, kept[:, :, :num_steps]


def extend_multipliers(mutation, num_steps, sd, rng):
    """
    Random-walk trajectories covering `num_steps` steps.

    Longer horizons continue each walk with fresh log-normal steps; shorter
    ones are cut. Without trajectories (None) there is nothing to extend.
    """
    if mutation is None:
        return None
    have = mutation.shape[2]
    if have >= num_steps:
        return mutation[:, :, :num_steps]
    steps = rng.lognormal(mean=0.0, sigma=sd, size=(2, mutation.shape[1], num_steps - have))
    return np.concatenate([mutation, mutation[:, :, -1:] * np.cumprod(steps, axis=2)], axis=2)
