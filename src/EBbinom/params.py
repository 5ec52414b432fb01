from dataclasses import dataclass
from typing import Optional

from .exceptions import ConfigurationError


_PRIOR_METHODS = ("mle", "mm", "regression")
_DEFAULT_PRIOR_MAX_ITER = 1000
_DEFAULT_MIXTURE_MAX_ITER = 100
_DEFAULT_MIXTURE_TOL = 1e-6


@dataclass
class PriorSpec:
    """
    How to estimate the prior.

    ``method`` is one of "mle" (beta-binomial maximum likelihood),
    "mm" (method of moments on the raw rates) or "regression"
    (beta-binomial regression on ``mu_predictors`` and, optionally,
    ``sigma_predictors``, both patsy formulas).
    """

    method: str = "mle"
    mu_predictors: Optional[str] = None
    sigma_predictors: Optional[str] = None
    max_iter: int = _DEFAULT_PRIOR_MAX_ITER

    def __post_init__(self):
        if self.method not in _PRIOR_METHODS:
            raise ConfigurationError(
                f"method must be one of {_PRIOR_METHODS}, got {self.method!r}"
            )
        if self.method == "regression" and not self.mu_predictors:
            raise ConfigurationError("method='regression' requires mu_predictors")
        if self.method != "regression" and (
            self.mu_predictors is not None or self.sigma_predictors is not None
        ):
            raise ConfigurationError(
                "mu_predictors/sigma_predictors require method='regression'"
            )
        if self.max_iter < 1:
            raise ConfigurationError("max_iter must be >= 1")


@dataclass
class MixtureSpec:
    """
    Specification of a K-component beta-binomial mixture fit.
    Owns the cluster count and all EM loop controls.
    """

    clusters: int = 2
    tol: float = _DEFAULT_MIXTURE_TOL
    max_iter: int = _DEFAULT_MIXTURE_MAX_ITER
    n_restarts: int = 1
    random_state: Optional[int] = 42

    def __post_init__(self):
        if int(self.clusters) != self.clusters or self.clusters < 2:
            raise ConfigurationError("clusters must be an integer >= 2")
        self.clusters = int(self.clusters)
        if not self.tol > 0:
            raise ConfigurationError("tol must be positive")
        if self.max_iter < 1:
            raise ConfigurationError("max_iter must be >= 1")
        if self.n_restarts < 1:
            raise ConfigurationError("n_restarts must be >= 1")
