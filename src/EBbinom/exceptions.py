"""Exceptions raised by the estimation engine."""


class FitError(RuntimeError):
    """A prior, regression or mixture fit could not be produced."""


class InsufficientDataError(FitError):
    """Too few observations to identify the model parameters."""


class ConvergenceError(FitError):
    """The optimizer returned a non-finite likelihood or hit its iteration cap."""


class RankDeficiencyError(FitError):
    """A design matrix does not have full column rank."""


class ConfigurationError(ValueError):
    """Invalid option or option combination."""
