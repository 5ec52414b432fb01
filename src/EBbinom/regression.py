"""
Beta-binomial regression prior.

The prior mean and dispersion of each observation are linear predictors
over its covariates:

    μᵢ = expit(X_μ θ_μ)        (logit link)
    σᵢ = exp(X_σ θ_σ)          (log link)
    α0ᵢ = μᵢ / σᵢ,  β0ᵢ = (1 - μᵢ) / σᵢ

Predictors are patsy formulas evaluated against a covariate table, e.g.
"np.log(total)", "bs(np.log(total), df=3)" or "C(league) * year". The
observation totals are exposed to formulas as ``total`` when the table has
no column of that name. The fitted patsy design information is kept on the
prior so that spline knots, centering and categorical levels learned at fit
time are reproduced on new covariate tables.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd
import patsy
from scipy.optimize import minimize
from scipy.special import expit, logit

from .exceptions import (
    ConfigurationError,
    InsufficientDataError,
    RankDeficiencyError,
)
from .utils import (
    beta_binom_grad,
    beta_binom_logpmf,
    check_counts,
    check_optimizer_result,
    method_of_moments,
    mu_kappa_from_ab,
    resolve_subset,
)

logger = logging.getLogger(__name__)

_INTERCEPT_ONLY = "1"
_MU_CLIP = 1e-10
_LOG_SIGMA_CLIP = 30.0


def _covariate_frame(covariates, total: np.ndarray) -> pd.DataFrame:
    """Fresh DataFrame of covariates with ``total`` filled in if absent."""
    if covariates is None:
        frame = pd.DataFrame(index=pd.RangeIndex(total.size))
    else:
        frame = pd.DataFrame(covariates).reset_index(drop=True)
        if len(frame) != total.size:
            raise ValueError(
                f"covariates have {len(frame)} rows, expected {total.size}"
            )
    if "total" not in frame.columns:
        frame["total"] = total
    return frame


def _check_finite(X: np.ndarray, formula: str) -> np.ndarray:
    """Raise ValueError listing the rows where ``formula`` is not finite."""
    bad = np.flatnonzero(~np.isfinite(X).all(axis=1))
    if bad.size:
        shown = ", ".join(str(i) for i in bad[:10])
        more = f" and {bad.size - 10} more" if bad.size > 10 else ""
        raise ValueError(
            f"{formula!r} is not finite for rows {shown}{more}"
        )
    return X


def _design_matrix(formula: str, frame: pd.DataFrame):
    try:
        matrix = patsy.dmatrix(formula, frame, NA_action="raise")
    except patsy.PatsyError as exc:
        raise ConfigurationError(
            f"cannot build design matrix for {formula!r}: {exc}"
        ) from exc
    X = _check_finite(np.asarray(matrix, dtype=float), formula)
    return X, matrix.design_info


def _rebuild_design(design_info, frame: pd.DataFrame) -> np.ndarray:
    terms = " + ".join(design_info.column_names)
    try:
        (matrix,) = patsy.build_design_matrices(
            [design_info], frame, NA_action="raise"
        )
    except (patsy.PatsyError, NotImplementedError) as exc:
        raise ValueError(
            f"covariates not supported by the fitted prior ({terms}): {exc}"
        ) from exc
    return _check_finite(np.asarray(matrix, dtype=float), terms)


def _mu_sigma(X_mu, X_sigma, theta_mu, theta_sigma):
    mu = np.clip(expit(X_mu @ theta_mu), _MU_CLIP, 1.0 - _MU_CLIP)
    sigma = np.exp(np.clip(X_sigma @ theta_sigma, -_LOG_SIGMA_CLIP, _LOG_SIGMA_CLIP))
    return mu, sigma


@dataclass(frozen=True, eq=False)
class RegressionPrior:
    """
    Beta prior whose (alpha0, beta0) depend on per-observation covariates.
    """

    mu_predictors: str
    sigma_predictors: Optional[str]
    theta_mu: np.ndarray
    theta_sigma: np.ndarray
    loglik: float
    n_obs: int
    mu_design_info: object = None
    sigma_design_info: object = None

    def __post_init__(self):
        self.theta_mu.setflags(write=False)
        self.theta_sigma.setflags(write=False)

    @property
    def method(self) -> str:
        return "regression"

    def _mu_sigma_for(self, covariates, total) -> tuple[np.ndarray, np.ndarray]:
        if total is None:
            if covariates is None:
                raise ValueError("need covariates or totals to evaluate the prior")
            total = np.full(len(pd.DataFrame(covariates)), np.nan)
        total = np.atleast_1d(np.asarray(total, dtype=float))
        frame = _covariate_frame(covariates, total)
        X_mu = _rebuild_design(self.mu_design_info, frame)
        X_sigma = _rebuild_design(self.sigma_design_info, frame)
        return _mu_sigma(X_mu, X_sigma, self.theta_mu, self.theta_sigma)

    def alpha_beta(self, total, covariates=None) -> tuple[np.ndarray, np.ndarray]:
        """Per-observation (alpha0, beta0) for the given totals/covariates."""
        mu, sigma = self._mu_sigma_for(covariates, total)
        return mu / sigma, (1.0 - mu) / sigma

    def predict(self, covariates=None, total=None) -> pd.DataFrame:
        """
        Evaluate the prior on any covariate table, including synthetic or
        extrapolated values never seen during fitting.

        Returns a DataFrame with columns mu, sigma, alpha0, beta0.
        """
        mu, sigma = self._mu_sigma_for(covariates, total)
        return pd.DataFrame(
            {
                "mu": mu,
                "sigma": sigma,
                "alpha0": mu / sigma,
                "beta0": (1.0 - mu) / sigma,
            }
        )

    def coefficients(self) -> pd.DataFrame:
        """Tidy table of fitted coefficients, one row per term."""
        rows = [
            ("mu", term, value)
            for term, value in zip(self.mu_design_info.column_names, self.theta_mu)
        ]
        rows += [
            ("sigma", term, value)
            for term, value in zip(
                self.sigma_design_info.column_names, self.theta_sigma
            )
        ]
        return pd.DataFrame(rows, columns=["parameter", "term", "estimate"])


def fit_beta_regression(
    successes,
    total,
    mu_predictors: str,
    covariates=None,
    sigma_predictors: Optional[str] = None,
    subset=None,
    max_iter: int = 1000,
) -> RegressionPrior:
    """
    Fit a beta-binomial regression prior by maximum likelihood.

    Parameters
    ----------
    successes : array-like
        Success counts.
    total : array-like
        Trial counts.
    mu_predictors : str
        patsy formula for the mean (logit link).
    covariates : DataFrame or mapping, optional
        Covariate table, one row per observation.
    sigma_predictors : str, optional
        patsy formula for the dispersion (log link). Intercept only if None.
    subset : array-like of bool or callable, optional
        Observations used for fitting.
    max_iter : int
        Iteration cap for L-BFGS-B.

    Returns
    -------
    RegressionPrior

    Raises
    ------
    ValueError
        A formula evaluates to a non-finite value, e.g. ``np.log(total)``
        on a zero total.
    RankDeficiencyError
        A design matrix is rank deficient.
    InsufficientDataError
        Fewer observations than parameters.
    ConvergenceError
        The optimizer failed.
    """
    if not mu_predictors:
        raise ConfigurationError("mu_predictors is required")

    successes, total = check_counts(successes, total)
    frame = _covariate_frame(covariates, total)
    mask = resolve_subset(subset, successes, total)
    successes, total = successes[mask], total[mask]
    frame = frame.loc[mask].reset_index(drop=True)

    X_mu, mu_info = _design_matrix(mu_predictors, frame)
    X_sigma, sigma_info = _design_matrix(sigma_predictors or _INTERCEPT_ONLY, frame)
    p_mu, p_sigma = X_mu.shape[1], X_sigma.shape[1]

    n_params = p_mu + p_sigma
    if successes.size < n_params:
        raise InsufficientDataError(
            f"{successes.size} observations for {n_params} parameters"
        )
    for name, X in (("mu", X_mu), ("sigma", X_sigma)):
        rank = np.linalg.matrix_rank(X)
        if rank < X.shape[1]:
            raise RankDeficiencyError(
                f"{name} design matrix has rank {rank} < {X.shape[1]} columns"
            )

    # Start: least squares on the empirical logit and on log(1 / kappa_mm).
    empirical = (successes + 0.5) / (total + 1.0)
    theta_mu0 = np.linalg.lstsq(X_mu, logit(empirical), rcond=None)[0]
    _, kappa0 = mu_kappa_from_ab(*method_of_moments(successes, total))
    theta_sigma0 = np.linalg.lstsq(
        X_sigma, np.full(successes.size, -np.log(kappa0)), rcond=None
    )[0]

    def neg_loglik(theta):
        mu, sigma = _mu_sigma(X_mu, X_sigma, theta[:p_mu], theta[p_mu:])
        alpha, beta = mu / sigma, (1.0 - mu) / sigma
        ll = np.sum(beta_binom_logpmf(successes, total, alpha, beta))
        d_alpha, d_beta = beta_binom_grad(successes, total, alpha, beta)
        d_eta_mu = (d_alpha - d_beta) / sigma * mu * (1.0 - mu)
        d_eta_sigma = -(d_alpha * alpha + d_beta * beta)
        grad = np.concatenate([X_mu.T @ d_eta_mu, X_sigma.T @ d_eta_sigma])
        return -ll, -grad

    result = minimize(
        neg_loglik,
        x0=np.concatenate([theta_mu0, theta_sigma0]),
        jac=True,
        method="L-BFGS-B",
        options={"maxiter": max_iter},
    )
    check_optimizer_result(result, max_iter, "beta-binomial regression")

    prior = RegressionPrior(
        mu_predictors=mu_predictors,
        sigma_predictors=sigma_predictors,
        theta_mu=np.array(result.x[:p_mu]),
        theta_sigma=np.array(result.x[p_mu:]),
        loglik=-float(result.fun),
        n_obs=int(successes.size),
        mu_design_info=mu_info,
        sigma_design_info=sigma_info,
    )
    logger.debug(
        "regression prior on %d observations: mu ~ %s, sigma ~ %s, loglik=%.6g, nit=%d",
        successes.size,
        mu_predictors,
        sigma_predictors or _INTERCEPT_ONLY,
        prior.loglik,
        result.nit,
    )
    return prior
