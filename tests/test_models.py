"""Unit tests for the SIR transition, parameter channels and ensemble container (models.py).

Key Invariants Tested:
- Population conservation and non-negativity of a single transition
- Infection probability clamped at 1, anything else outside [0, 1] rejected
- Random-walk multipliers start at 1 and follow log-normal steps
"""

import numpy as np
import pytest

from exceptions import InvalidProbability, ShapeMismatch
from models import (
    Constant,
    Ensemble,
    TimeVarying,
    as_channel,
    extend_multipliers,
    mutation_trajectories,
    random_walk_multipliers,
    shift_multipliers,
    stochastic_sir_model,
)


# =============================================================================
# Tests for stochastic_sir_model
# =============================================================================

class TestStochasticSIRModel:
    """Tests for one transition of the stochastic SIR model."""

    def test_conserves_population(self, rng):
        S, I, R = 9995, 5, 0
        for _ in range(200):
            S, I, R = stochastic_sir_model(S, I, R, 1 / 7, 5e-5, rng)
            assert S + I + R == 10000
            assert S >= 0 and I >= 0 and R >= 0

    def test_vectorised_over_particles(self, rng):
        S = np.array([900, 800, 700])
        I = np.array([100, 200, 300])
        R = np.zeros(3, dtype=int)
        S1, I1, R1 = stochastic_sir_model(S, I, R, np.array([0.1, 0.2, 0.3]), np.full(3, 1e-3), rng)
        assert S1.shape == (3,)
        np.testing.assert_array_equal(S1 + I1 + R1, 1000)
        assert np.all(S1 <= S)
        assert np.all(R1 >= R)

    def test_infection_probability_clamped(self, rng):
        """beta * I above one infects every susceptible."""
        S, I, R = stochastic_sir_model(100, 10, 0, 0.0, 1.0, rng)
        assert S == 0
        assert I == 110
        assert R == 0

    def test_no_infected_no_change(self, rng):
        S, I, R = stochastic_sir_model(500, 0, 10, 0.5, 1e-2, rng)
        assert (S, I, R) == (500, 0, 10)

    @pytest.mark.parametrize("r", [-0.1, 1.5, np.nan])
    def test_invalid_recovery_probability(self, rng, r):
        with pytest.raises(InvalidProbability):
            stochastic_sir_model(100, 10, 0, r, 1e-3, rng)

    def test_negative_beta_rejected(self, rng):
        with pytest.raises(InvalidProbability):
            stochastic_sir_model(100, 10, 0, 0.1, -1e-3, rng)

    def test_invalid_probability_is_value_error(self, rng):
        with pytest.raises(ValueError):
            stochastic_sir_model(100, 10, 0, 2.0, 1e-3, rng)

    def test_mean_recoveries(self):
        """Recoveries follow Binomial(I, r)."""
        rng = np.random.default_rng(7)
        I = np.full(20000, 50)
        _, _, R1 = stochastic_sir_model(np.zeros_like(I), I, np.zeros_like(I), 0.2, 0.0, rng)
        assert abs(R1.mean() - 10.0) < 0.1


# =============================================================================
# Tests for parameter channels
# =============================================================================

class TestChannels:
    """Tests for the Constant / TimeVarying parameter variants."""

    def test_constant_broadcasts(self):
        c = Constant(0.3)
        assert c.at(0) == 0.3
        assert c.at(99) == 0.3

    def test_time_varying_indexes(self):
        tv = TimeVarying([0.1, 0.2, 0.3])
        assert tv.at(1) == 0.2

    def test_as_channel(self):
        assert isinstance(as_channel(0.5), Constant)
        assert isinstance(as_channel([0.5, 0.4]), TimeVarying)
        c = Constant(1.0)
        assert as_channel(c) is c

    def test_time_varying_too_short(self):
        with pytest.raises(ShapeMismatch):
            TimeVarying([0.1, 0.2]).check_length(10)

    def test_time_varying_must_be_1d(self):
        with pytest.raises(ShapeMismatch):
            TimeVarying(np.ones((2, 3)))


# =============================================================================
# Tests for the random-walk mutator
# =============================================================================

class TestRandomWalk:
    """Tests for multiplicative log-normal parameter trajectories."""

    def test_starts_at_one(self, rng):
        m = random_walk_multipliers(50, 30, 0.1, rng)
        assert m.shape == (50, 30)
        np.testing.assert_array_equal(m[:, 0], 1.0)

    def test_zero_sd_is_constant(self, rng):
        m = random_walk_multipliers(5, 10, 0.0, rng)
        np.testing.assert_array_equal(m, 1.0)

    def test_log_increments(self):
        rng = np.random.default_rng(3)
        m = random_walk_multipliers(2000, 50, 0.05, rng)
        increments = np.diff(np.log(m), axis=1)
        assert abs(increments.mean()) < 1e-3
        assert abs(increments.std() - 0.05) < 1e-3

    def test_positive(self, rng):
        assert np.all(random_walk_multipliers(10, 100, 0.5, rng) > 0)

    def test_negative_sd_rejected(self, rng):
        with pytest.raises(ValueError):
            random_walk_multipliers(10, 10, -0.1, rng)

    def test_mutation_pair_shape(self, rng):
        mutation = mutation_trajectories(7, 12, 0.1, rng)
        assert mutation.shape == (2, 7, 12)
        assert not np.array_equal(mutation[0], mutation[1])

    def test_shift_by_zero(self, rng):
        mutation = mutation_trajectories(4, 10, 0.1, rng)
        reached, shifted = shift_multipliers(mutation, 0, 0.1, rng)
        np.testing.assert_array_equal(reached, 1.0)
        np.testing.assert_allclose(shifted, mutation)

    def test_shift_restarts_walk(self, rng):
        mutation = mutation_trajectories(4, 10, 0.1, rng)
        reached, shifted = shift_multipliers(mutation, 3, 0.1, rng)
        assert shifted.shape == mutation.shape
        np.testing.assert_allclose(reached, mutation[:, :, 3])
        np.testing.assert_allclose(shifted[:, :, 0], 1.0)
        np.testing.assert_allclose(shifted[:, :, :7], mutation[:, :, 3:] / mutation[:, :, 3:4])

    def test_extend_keeps_prefix(self, rng):
        mutation = mutation_trajectories(4, 10, 0.1, rng)
        extended = extend_multipliers(mutation, 25, 0.1, rng)
        assert extended.shape == (2, 4, 25)
        np.testing.assert_array_equal(extended[:, :, :10], mutation)
        assert np.all(extended > 0)

    def test_extend_cuts_and_passes_none(self, rng):
        mutation = mutation_trajectories(4, 10, 0.1, rng)
        assert extend_multipliers(mutation, 6, 0.1, rng).shape == (2, 4, 6)
        assert extend_multipliers(None, 6, 0.1, rng) is None


# =============================================================================
# Tests for the Ensemble container
# =============================================================================

class TestEnsemble:
    """Tests for ensemble construction, slicing and matrix round trips."""

    def test_matrix_columns(self, small_ensemble):
        X = small_ensemble.matrix()
        assert X.shape == (len(small_ensemble), 5)
        np.testing.assert_array_equal(X[:, 0], small_ensemble.S)
        np.testing.assert_array_equal(X[:, 4], small_ensemble.beta)

    def test_from_matrix(self, small_ensemble):
        rebuilt = Ensemble.from_matrix(small_ensemble.matrix())
        np.testing.assert_array_equal(rebuilt.I, small_ensemble.I)
        np.testing.assert_allclose(rebuilt.r, small_ensemble.r)

    def test_population(self, small_ensemble, population):
        assert small_ensemble.N == population

    def test_take_keeps_joint_structure(self):
        S = np.arange(10) * 10
        I = 1000 - S
        ensemble = Ensemble(S, I, np.zeros(10, dtype=int), S / 1000.0, S + 1.0,
                            mutation=np.broadcast_to(S[None, :, None], (2, 10, 4)).astype(float))
        taken = ensemble.take([3, 3, 9, 0])
        np.testing.assert_array_equal(taken.S, [30, 30, 90, 0])
        np.testing.assert_allclose(taken.r, taken.S / 1000.0)
        np.testing.assert_allclose(taken.beta, taken.S + 1.0)
        np.testing.assert_allclose(taken.mutation[0, :, 0], taken.S)

    def test_length_mismatch(self):
        with pytest.raises(ShapeMismatch):
            Ensemble([1, 2], [1, 2], [0, 0], [0.1], [0.1, 0.1])

    def test_mutation_shape_mismatch(self):
        with pytest.raises(ShapeMismatch):
            Ensemble([1, 2], [1, 2], [0, 0], [0.1, 0.1], [0.1, 0.1], mutation=np.ones((2, 3, 5)))

    def test_population_must_be_constant(self):
        with pytest.raises(ValueError):
            Ensemble([10, 20], [1, 1], [0, 0], [0.1, 0.1], [0.1, 0.1])

    def test_negative_state_rejected(self):
        with pytest.raises(ValueError):
            Ensemble([-1, 0], [11, 10], [0, 0], [0.1, 0.1], [0.1, 0.1])
