import logging

import numpy as np
from scipy.special import gammaln, betaln, digamma
from scipy.optimize import minimize

from .exceptions import ConvergenceError

logger = logging.getLogger(__name__)

# Box constraints on (log alpha, log beta) for the constant-prior optimizer.
_LOG_AB_BOUNDS = (np.log(1e-4), np.log(1e8))
_KAPPA_INIT_BOUNDS = (0.5, 1e6)
_MU_INIT_BOUNDS = (1e-3, 1.0 - 1e-3)


def beta_binom_logpmf(
    k: np.ndarray, n: np.ndarray, alpha: float, beta: float
) -> np.ndarray:
    """
    Compute log probability mass function of Beta-Binomial distribution.

    The Beta-Binomial PMF is:
        P(k | n, α, β) = C(n, k) × B(k + α, n - k + β) / B(α, β)

    In log-space (for numerical stability):
        log P = log C(n, k) + log B(k + α, n - k + β) - log B(α, β)

    Parameters
    ----------
    k : np.ndarray
        Number of successes.
    n : np.ndarray
        Number of trials.
    alpha : float or np.ndarray
        First shape parameter of the Beta prior (α > 0).
    beta : float or np.ndarray
        Second shape parameter of the Beta prior (β > 0).

    Returns
    -------
    np.ndarray
        Log-probabilities for each observation.
    """
    alpha = np.maximum(alpha, 1e-9)
    beta = np.maximum(beta, 1e-9)

    return (
        gammaln(n + 1.0)
        - gammaln(k + 1.0)
        - gammaln(n - k + 1.0)
        + betaln(k + alpha, n - k + beta)
        - betaln(alpha, beta)
    )


def beta_binom_grad(
    k: np.ndarray, n: np.ndarray, alpha, beta
) -> tuple[np.ndarray, np.ndarray]:
    """
    Partial derivatives of ``beta_binom_logpmf`` with respect to α and β.

        ∂/∂α = ψ(k + α) - ψ(n + α + β) - ψ(α) + ψ(α + β)
        ∂/∂β = ψ(n - k + β) - ψ(n + α + β) - ψ(β) + ψ(α + β)
    """
    alpha = np.maximum(alpha, 1e-9)
    beta = np.maximum(beta, 1e-9)
    common = digamma(alpha + beta) - digamma(n + alpha + beta)
    d_alpha = digamma(k + alpha) - digamma(alpha) + common
    d_beta = digamma(n - k + beta) - digamma(beta) + common
    return d_alpha, d_beta


def ab_from_mu_kappa(mu: float, kappa: float) -> tuple[float, float]:
    """
    Convert mean-precision parameterization to standard Beta shape parameters.

    Relationships:
        α = μ × κ
        β = (1 - μ) × κ
        Variance = μ(1-μ) / (κ + 1)

    The regression prior's dispersion σ corresponds to κ = 1 / σ.

    Parameters
    ----------
    mu : float or np.ndarray
        Mean of the Beta distribution, in (0, 1).
    kappa : float or np.ndarray
        Concentration/precision parameter (κ > 0).

    Returns
    -------
    tuple
        (alpha, beta) shape parameters.
    """
    mu = np.clip(mu, 1e-6, 1.0 - 1e-6)
    return mu * kappa, (1.0 - mu) * kappa


def mu_kappa_from_ab(alpha, beta) -> tuple:
    """Inverse of ``ab_from_mu_kappa``."""
    kappa = alpha + beta
    return alpha / kappa, kappa


def check_counts(successes, total) -> tuple[np.ndarray, np.ndarray]:
    """
    Validate success/total counts and return them as fresh float arrays.

    Raises
    ------
    ValueError
        On mismatched lengths, non-finite, negative or non-integer counts,
        or any ``successes > total``.
    """
    successes = np.atleast_1d(np.array(successes, dtype=float))
    total = np.atleast_1d(np.array(total, dtype=float))

    if successes.ndim != 1 or total.ndim != 1:
        raise ValueError("successes and total must be one-dimensional")
    if successes.shape != total.shape:
        raise ValueError(
            f"successes and total have different lengths "
            f"({successes.size} vs {total.size})"
        )
    if not (np.all(np.isfinite(successes)) and np.all(np.isfinite(total))):
        raise ValueError("successes and total must be finite")
    if np.any(successes < 0) or np.any(total < 0):
        raise ValueError("successes and total must be non-negative")
    if np.any(successes != np.round(successes)) or np.any(total != np.round(total)):
        raise ValueError("successes and total must be integer counts")

    bad = successes > total
    if np.any(bad):
        first = int(np.flatnonzero(bad)[0])
        raise ValueError(
            f"successes > total for {int(bad.sum())} observation(s) "
            f"(first at position {first})"
        )
    return successes, total


def resolve_subset(subset, successes: np.ndarray, total: np.ndarray) -> np.ndarray:
    """
    Turn a subset specification into a boolean mask.

    ``subset`` may be None (all observations), a boolean array-like, or a
    predicate called as ``subset(successes, total)`` returning one.
    """
    if subset is None:
        return np.ones(successes.size, dtype=bool)
    if callable(subset):
        subset = subset(successes.copy(), total.copy())
    mask = np.asarray(subset)
    if mask.dtype != bool:
        raise ValueError("subset must be a boolean mask or a predicate returning one")
    if mask.shape != successes.shape:
        raise ValueError(
            f"subset mask has shape {mask.shape}, expected {successes.shape}"
        )
    return mask


def method_of_moments(
    successes: np.ndarray,
    total: np.ndarray,
    weights: np.ndarray | None = None,
) -> tuple[float, float]:
    """
    Method-of-moments (α, β) from the raw rates ``successes / total``.

    Observations with zero total carry no rate and are ignored. When the
    raw rates show no usable spread the concentration falls back to the
    edge of ``_KAPPA_INIT_BOUNDS``.
    """
    keep = total > 0
    if weights is None:
        weights = np.ones_like(total)
    w = weights[keep]
    if w.sum() <= 0:
        return ab_from_mu_kappa(0.5, 2.0)

    rate = successes[keep] / total[keep]
    mu = np.sum(w * rate) / w.sum()
    var = np.sum(w * (rate - mu) ** 2) / w.sum()
    mu = float(np.clip(mu, *_MU_INIT_BOUNDS))

    if var <= 0:
        kappa = _KAPPA_INIT_BOUNDS[1]
    elif var >= mu * (1 - mu):
        kappa = _KAPPA_INIT_BOUNDS[0]
    else:
        kappa = np.clip(mu * (1 - mu) / var - 1, *_KAPPA_INIT_BOUNDS)

    alpha, beta = ab_from_mu_kappa(mu, kappa)
    return float(alpha), float(beta)


def check_optimizer_result(result, max_iter: int, label: str) -> None:
    """
    Reject an L-BFGS-B result that is non-finite or stopped at its cap.

    Other early stops (typically a line search that cannot improve a
    finite optimum any further) are accepted with a warning.
    """
    if not np.isfinite(result.fun) or not np.all(np.isfinite(result.x)):
        raise ConvergenceError(f"{label}: non-finite log-likelihood")
    if not result.success:
        if result.status == 1:
            raise ConvergenceError(
                f"{label}: no convergence within {max_iter} iterations "
                f"({result.message})"
            )
        logger.warning(
            "%s: optimizer stopped early (%s), accepting finite optimum",
            label,
            result.message,
        )


def fit_beta_binomial_mle(
    successes: np.ndarray,
    total: np.ndarray,
    weights: np.ndarray | None = None,
    x0: tuple[float, float] | None = None,
    max_iter: int = 1000,
) -> tuple[float, float, float]:
    """
    Fit a single Beta-Binomial distribution via (weighted) MLE.

    Finds (α, β) that maximize:
        Σᵢ wᵢ log P(successesᵢ | totalᵢ, α, β)

    The optimization runs over (log α, log β) so both stay positive, with
    the analytic gradient.

    Parameters
    ----------
    successes : np.ndarray
        Success counts.
    total : np.ndarray
        Trial counts.
    weights : np.ndarray, optional
        Per-observation weights (mixture responsibilities). Defaults to 1.
    x0 : tuple[float, float], optional
        Starting (α, β). Defaults to the method-of-moments estimate.
    max_iter : int
        Iteration cap passed to L-BFGS-B.

    Returns
    -------
    tuple[float, float, float]
        (alpha, beta, loglik) - MLE estimates and weighted log-likelihood.

    Raises
    ------
    ConvergenceError
        Non-finite likelihood or iteration cap reached.
    """
    successes = np.asarray(successes, dtype=float)
    total = np.asarray(total, dtype=float)
    if weights is None:
        weights = np.ones_like(total)
    else:
        weights = np.asarray(weights, dtype=float)

    if x0 is None:
        x0 = method_of_moments(successes, total, weights)
    start = np.clip(np.log(np.asarray(x0, dtype=float)), *_LOG_AB_BOUNDS)

    def neg_loglik(params):
        a, b = np.exp(params)
        ll = np.sum(weights * beta_binom_logpmf(successes, total, a, b))
        d_a, d_b = beta_binom_grad(successes, total, a, b)
        grad = np.array([np.sum(weights * d_a) * a, np.sum(weights * d_b) * b])
        return -ll, -grad

    result = minimize(
        neg_loglik,
        x0=start,
        jac=True,
        method="L-BFGS-B",
        bounds=[_LOG_AB_BOUNDS, _LOG_AB_BOUNDS],
        options={"maxiter": max_iter},
    )
    check_optimizer_result(result, max_iter, "beta-binomial MLE")

    alpha, beta = np.exp(result.x)
    loglik = -float(result.fun)
    logger.debug(
        "beta-binomial MLE: alpha=%.4g beta=%.4g loglik=%.6g nit=%d",
        alpha,
        beta,
        loglik,
        result.nit,
    )
    return float(alpha), float(beta), loglik
