"""Exceptions raised across the estimation workflow"""


class IrrmapError(Exception):
    """Base class for all irrmap errors"""


class DataIntegrityError(IrrmapError, ValueError):
    """Input data does not match its declared schema

    Raised at ingestion for missing columns, malformed labels, duplicated keys
    or small area identifiers that cannot be matched.
    """


class EnsembleTrainingError(IrrmapError, RuntimeError):
    """A learner of the ensemble failed to fit

    Args:
        learner (str): Name of the failing learner
        message (str): Description of the failure
    """
    def __init__(self, learner, message):
        self.learner = learner
        super().__init__(f"Learner '{learner}' failed: {message}")


class ConvergenceError(IrrmapError, RuntimeError):
    """Marginal likelihood optimization did not converge; no model is available"""


class SamplingError(IrrmapError, ValueError):
    """Sampling request cannot be satisfied by the eligible population"""
