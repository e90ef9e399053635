#####################################################################################
# Forecast-analysis cycle on a simulated SIR outbreak
# Note: All functions must be in the same folder.
#####################################################################################

import logging

import numpy as np
import pandas as pd

from forecast import forecast_particle
from observation_dist import obs_dist_binomial
from smc import FilterConfig, ForecastAnalysisCycle


logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")


############  STEP 1: Simulate the true epidemic and the observations ###############
#####################################################################################

N_pop = 10000
true_r, true_beta = 1 / 7, 5 / 100000
theta = 0.75            # detection probability
t_end = 100

truth = forecast_particle(N_pop - 5, 5, 0, true_r, true_beta, t_end, seed=123)
rng = np.random.default_rng(123)
obs_times = np.arange(7, t_end, 7)                       # weekly reports
obs = obs_dist_binomial(None, truth[obs_times, 1], theta, pred=True, rng=rng).astype(float)
obs[[2, 5]] = np.nan                                     # two missed reports
simulated_data = pd.DataFrame({'time': obs_times, 'obs': obs})
print(simulated_data)


############  STEP 2: Priors for the initial state and parameters ###################
#####################################################################################

prior_info = {
    'I0': {'prior': [1, 50, 10, 0, 'poisson']},                        # Initial infected
    'r': {'prior': [0, 1, np.log(1 / 7), 0.3, 'lognormal']},          # Recovery probability
    'beta': {'prior': [1e-7, 1, np.log(5e-5), 0.3, 'lognormal']},     # Infection-rate coefficient
}


############  STEP 3: Run the forecast-analysis cycles #############################
#####################################################################################

config = FilterConfig(
    N=N_pop,
    num_particles=1000,
    num_steps=30,
    theta=theta,
    mutation_sd=0.005,
    h=0.95,
    n_jobs=4,
    seed=42,
    show_progress=True,
)
pf = ForecastAnalysisCycle(config, prior_info)
cycle_log = pf.run(simulated_data)

print(cycle_log.summary())

# Posterior of the parameters after the last observation
posterior = cycle_log[-1].ensemble_frame()
for name in ('r', 'beta'):
    lo, med, hi = np.percentile(posterior[name], [2.5, 50, 97.5])
    print(f"{name} = {med:.3g} (95%CrI: [{lo:.3g}, {hi:.3g}])")

# Forecast beyond the data from the last analysed ensemble
final_forecast = pf.forecast(num_steps=60)
lo, med, hi = np.percentile(final_forecast[:, -1, 1], [2.5, 50, 97.5])
print(f"Forecast of I in 59 steps: {med:.0f} (95%CrI: [{lo:.0f}, {hi:.0f}])")
