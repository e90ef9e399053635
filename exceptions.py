###########################################################################
#  Error kinds raised (or flagged) by the forecast-analysis pipeline
###########################################################################


class SIRForecastError(Exception):
    """Base class for errors of the ensemble forecaster."""


class InvalidProbability(SIRForecastError, ValueError):
    """A transition probability lies outside [0, 1] after clamping."""


class ShapeMismatch(SIRForecastError, ValueError):
    """Ensemble arrays, parameter trajectories or observation times disagree."""


class DegenerateWeights(SIRForecastError, RuntimeWarning):
    """
    All particle weights are zero (every log-likelihood is -inf).

    Issued with `warnings.warn`, never raised: the analysis step falls back
    to uniform weights, sets the `degenerate` flag on the cycle record and
    logs the same message.
    """
