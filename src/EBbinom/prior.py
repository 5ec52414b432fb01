"""
Constant beta prior estimated from aggregate success/total counts.

The prior is fitted on (optionally) a subset of the observations, typically
the ones with enough trials to carry a reliable raw rate, and can then be
applied to every observation by the posterior updater.

Two estimators are available:
    "mle": beta-binomial maximum likelihood over (log α, log β), started from
           the method-of-moments estimate
    "mm":  the method-of-moments estimate on the raw rates itself
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .exceptions import ConfigurationError, InsufficientDataError
from .utils import (
    beta_binom_logpmf,
    check_counts,
    fit_beta_binomial_mle,
    method_of_moments,
    resolve_subset,
)

logger = logging.getLogger(__name__)

_MIN_OBSERVATIONS = 2


@dataclass(frozen=True)
class ConstantPrior:
    """
    A single Beta(alpha0, beta0) prior shared by all observations.
    """

    alpha0: float
    beta0: float
    loglik: float
    n_obs: int
    method: str = "mle"

    def __post_init__(self):
        if not (self.alpha0 > 0 and self.beta0 > 0):
            raise ValueError("alpha0 and beta0 must be positive")

    @property
    def mean(self) -> float:
        """Prior mean α / (α + β)."""
        return self.alpha0 / (self.alpha0 + self.beta0)

    @property
    def kappa(self) -> float:
        """Prior concentration α + β (pseudo-trial count)."""
        return self.alpha0 + self.beta0

    def alpha_beta(self, total, covariates=None) -> tuple[np.ndarray, np.ndarray]:
        """
        Per-observation (alpha0, beta0) arrays, one entry per ``total``.

        ``covariates`` is accepted so both prior types share a signature;
        a constant prior does not use it.
        """
        size = np.size(total)
        return np.full(size, self.alpha0), np.full(size, self.beta0)

    def to_frame(self) -> pd.DataFrame:
        """One-row summary table."""
        return pd.DataFrame(
            {
                "alpha": [self.alpha0],
                "beta": [self.beta0],
                "mean": [self.mean],
                "loglik": [self.loglik],
                "n_obs": [self.n_obs],
                "method": [self.method],
            }
        )


def fit_beta_prior(
    successes,
    total,
    subset=None,
    method: str = "mle",
    max_iter: int = 1000,
) -> ConstantPrior:
    """
    Fit a constant beta prior to success/total counts.

    Parameters
    ----------
    successes : array-like
        Success counts.
    total : array-like
        Trial counts.
    subset : array-like of bool or callable, optional
        Observations used to estimate the prior, either as a mask or as a
        predicate ``subset(successes, total) -> mask``.
    method : str
        "mle" or "mm".
    max_iter : int
        Iteration cap for the optimizer.

    Returns
    -------
    ConstantPrior

    Raises
    ------
    InsufficientDataError
        Fewer than two observations remain after filtering.
    ConvergenceError
        The likelihood optimization failed.
    """
    if method not in ("mle", "mm"):
        raise ConfigurationError(f"method must be 'mle' or 'mm', got {method!r}")

    successes, total = check_counts(successes, total)
    mask = resolve_subset(subset, successes, total)
    successes, total = successes[mask], total[mask]

    if successes.size < _MIN_OBSERVATIONS:
        raise InsufficientDataError(
            f"need at least {_MIN_OBSERVATIONS} observations to fit a prior, "
            f"got {successes.size}"
        )

    if method == "mm":
        if not np.any(total > 0):
            raise InsufficientDataError("no observation has a positive total")
        alpha0, beta0 = method_of_moments(successes, total)
        loglik = float(np.sum(beta_binom_logpmf(successes, total, alpha0, beta0)))
    else:
        alpha0, beta0, loglik = fit_beta_binomial_mle(
            successes, total, max_iter=max_iter
        )

    logger.debug(
        "constant prior (%s) on %d observations: alpha0=%.4g beta0=%.4g",
        method,
        successes.size,
        alpha0,
        beta0,
    )
    return ConstantPrior(
        alpha0=alpha0,
        beta0=beta0,
        loglik=loglik,
        n_obs=int(successes.size),
        method=method,
    )
