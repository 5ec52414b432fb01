"""
Per-observation posterior under a fitted beta prior (shrinkage).

For each observation with prior Beta(α0, β0):

    α1 = α0 + successes
    β1 = β0 + (total - successes)
    fitted = α1 / (α1 + β1)

and [low, high] is the equal-tailed credible interval of Beta(α1, β1).
Results are returned as a parallel record per input observation, in input
order; inputs are never modified.
"""

import logging
from dataclasses import dataclass, fields
from typing import Optional, Union

import numpy as np
import pandas as pd
from scipy.stats import beta as beta_dist

from .exceptions import ConfigurationError
from .params import PriorSpec
from .prior import ConstantPrior, fit_beta_prior
from .regression import RegressionPrior, fit_beta_regression
from .utils import check_counts

logger = logging.getLogger(__name__)

Prior = Union[ConstantPrior, RegressionPrior]

_DEFAULT_CONFIDENCE_LEVEL = 0.95


@dataclass(frozen=True, eq=False)
class PosteriorEstimates:
    """
    Posterior records, one entry per observation in every array.
    """

    successes: np.ndarray
    total: np.ndarray
    alpha0: np.ndarray
    beta0: np.ndarray
    alpha1: np.ndarray
    beta1: np.ndarray
    raw_rate: np.ndarray
    fitted: np.ndarray
    low: np.ndarray
    high: np.ndarray
    confidence_level: float = _DEFAULT_CONFIDENCE_LEVEL

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, np.ndarray):
                value.setflags(write=False)

    def __len__(self) -> int:
        return self.total.size

    def to_frame(self) -> pd.DataFrame:
        """One row per observation, in input order."""
        return pd.DataFrame(
            {
                f.name: getattr(self, f.name)
                for f in fields(self)
                if f.name != "confidence_level"
            }
        )


def _check_confidence_level(confidence_level: float) -> None:
    if not 0 < confidence_level < 1:
        raise ConfigurationError(
            f"confidence_level must be in (0, 1), got {confidence_level}"
        )


def compute_posterior(
    prior: Prior,
    successes,
    total,
    covariates=None,
    confidence_level: float = _DEFAULT_CONFIDENCE_LEVEL,
) -> PosteriorEstimates:
    """
    Update a fitted prior with each observation's counts.

    Parameters
    ----------
    prior : ConstantPrior or RegressionPrior
        Fitted prior.
    successes : array-like
        Success counts.
    total : array-like
        Trial counts. A zero total leaves the prior unchanged.
    covariates : DataFrame or mapping, optional
        Covariates, required by a regression prior whose formulas use
        columns other than ``total``.
    confidence_level : float
        Credible interval mass, in (0, 1).

    Returns
    -------
    PosteriorEstimates

    Raises
    ------
    ValueError
        Malformed counts, or covariates the regression prior cannot use.
    """
    _check_confidence_level(confidence_level)
    successes, total = check_counts(successes, total)

    alpha0, beta0 = prior.alpha_beta(total, covariates)
    alpha1 = alpha0 + successes
    beta1 = beta0 + (total - successes)

    with np.errstate(invalid="ignore", divide="ignore"):
        raw_rate = np.where(total > 0, successes / total, np.nan)
    fitted = alpha1 / (alpha1 + beta1)

    tail = (1.0 - confidence_level) / 2.0
    low = beta_dist.ppf(tail, alpha1, beta1)
    high = beta_dist.ppf(1.0 - tail, alpha1, beta1)

    return PosteriorEstimates(
        successes=successes,
        total=total,
        alpha0=alpha0,
        beta0=beta0,
        alpha1=alpha1,
        beta1=beta1,
        raw_rate=raw_rate,
        fitted=fitted,
        low=low,
        high=high,
        confidence_level=confidence_level,
    )


def fit_prior(
    successes,
    total,
    spec: Optional[PriorSpec] = None,
    covariates=None,
    subset=None,
) -> Prior:
    """
    Fit the prior described by ``spec`` (default: constant prior by MLE).
    """
    if spec is None:
        spec = PriorSpec()

    if spec.method == "regression":
        return fit_beta_regression(
            successes,
            total,
            mu_predictors=spec.mu_predictors,
            covariates=covariates,
            sigma_predictors=spec.sigma_predictors,
            subset=subset,
            max_iter=spec.max_iter,
        )
    return fit_beta_prior(
        successes, total, subset=subset, method=spec.method, max_iter=spec.max_iter
    )


def add_posterior(
    successes,
    total,
    spec: Optional[PriorSpec] = None,
    covariates=None,
    subset=None,
    confidence_level: float = _DEFAULT_CONFIDENCE_LEVEL,
) -> tuple[Prior, PosteriorEstimates]:
    """
    Fit a prior and update it with every observation.

    The prior is estimated on ``subset`` only (all observations if None)
    and then applied to all observations.

    Returns
    -------
    tuple
        (prior, posterior estimates for every observation)
    """
    _check_confidence_level(confidence_level)
    prior = fit_prior(successes, total, spec=spec, covariates=covariates, subset=subset)
    posterior = compute_posterior(
        prior, successes, total, covariates=covariates, confidence_level=confidence_level
    )
    logger.debug(
        "posterior for %d observations from %s prior fitted on %d",
        len(posterior),
        prior.method,
        prior.n_obs,
    )
    return prior, posterior
