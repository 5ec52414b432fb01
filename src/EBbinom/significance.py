"""
Posterior error probabilities and q-values.

Each observation's posterior Beta(α1, β1) is compared either against a
fixed threshold or against a reference beta distribution (for example
another observation's posterior). The posterior error probability (PEP)
is the posterior mass on the wrong side of the comparison. Q-values are
the cumulative mean of the sorted PEPs, so accepting every observation
with q <= x keeps the expected proportion of false discoveries <= x.

Reference comparisons, exact mode:
    - integer-valued reference α: closed-form sum
          P(p < p_ref) = Σ_{j=0}^{α_ref-1} B(α1 + j, β1 + β_ref)
                         / ((β_ref + j) B(1 + j, β_ref) B(α1, β1))
    - otherwise: adaptive quadrature of F(Q_ref(u)) over u in (0, 1), where
      F is the observation's posterior CDF and Q_ref the reference quantile
      function. QUADPACK stops once its error estimate is below
      max(1e-10, 1.5e-8 × P).
Approximate mode uses a normal approximation to p - p_ref.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy.integrate import quad
from scipy.special import betaln, logsumexp
from scipy.stats import beta as beta_dist
from scipy.stats import norm

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_ALTERNATIVES = ("greater", "less")
_INTEGER_TOL = 1e-8
_CLOSED_FORM_MAX_TERMS = 100_000
_CLOSED_FORM_BLOCK = 1_000_000
_QUAD_EPSABS = 1e-10
_QUAD_LIMIT = 200


@dataclass(frozen=True, eq=False)
class PropTestResult:
    """
    PEP and q-value per observation.

    ``index`` holds each record's position in the input. When ``sorted``
    is True the records are ordered by ascending PEP, otherwise they are in
    input order and ``index`` is simply 0..N-1.
    """

    index: np.ndarray
    pep: np.ndarray
    qvalue: np.ndarray
    sorted: bool = False

    def __post_init__(self):
        for value in (self.index, self.pep, self.qvalue):
            value.setflags(write=False)

    def __len__(self) -> int:
        return self.pep.size

    def in_input_order(self) -> "PropTestResult":
        """The same records, ordered by input position."""
        if not self.sorted:
            return self
        order = np.argsort(self.index)
        return PropTestResult(
            index=self.index[order].copy(),
            pep=self.pep[order].copy(),
            qvalue=self.qvalue[order].copy(),
            sorted=False,
        )

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"index": self.index, "pep": self.pep, "qvalue": self.qvalue})


def _check_alternative(alternative: str) -> None:
    if alternative not in _ALTERNATIVES:
        raise ConfigurationError(
            f"alternative must be one of {_ALTERNATIVES}, got {alternative!r}"
        )


def _posterior_params(posterior) -> tuple[np.ndarray, np.ndarray]:
    try:
        alpha1, beta1 = posterior.alpha1, posterior.beta1
    except AttributeError as exc:
        raise ValueError(
            "observations carry no posterior parameters (alpha1, beta1); "
            "run compute_posterior first"
        ) from exc

    alpha1 = np.atleast_1d(np.asarray(alpha1, dtype=float))
    beta1 = np.atleast_1d(np.asarray(beta1, dtype=float))
    if alpha1.shape != beta1.shape:
        raise ValueError("alpha1 and beta1 have different shapes")
    if not (np.all(np.isfinite(alpha1)) and np.all(np.isfinite(beta1))):
        raise ValueError("posterior parameters must be finite")
    if np.any(alpha1 <= 0) or np.any(beta1 <= 0):
        raise ValueError("posterior parameters must be positive")
    return alpha1, beta1


def qvalues(pep) -> np.ndarray:
    """
    Q-values from posterior error probabilities, in input order.

    Sort ascending by PEP, take the running mean, then a running minimum
    from the end of the sorted sequence so that q-values never decrease
    along it.
    """
    pep = np.atleast_1d(np.asarray(pep, dtype=float))
    if pep.size == 0:
        return np.array([], dtype=float)
    if np.any(~np.isfinite(pep)) or np.any(pep < 0) or np.any(pep > 1):
        raise ValueError("pep values must lie in [0, 1]")

    order = np.argsort(pep, kind="mergesort")
    cummean = np.cumsum(pep[order]) / np.arange(1, pep.size + 1)
    q_sorted = np.minimum.accumulate(cummean[::-1])[::-1]

    q = np.empty_like(pep)
    q[order] = np.clip(q_sorted, 0.0, 1.0)
    return q


def _package(pep: np.ndarray, sort: bool) -> PropTestResult:
    pep = np.clip(pep, 0.0, 1.0)
    q = qvalues(pep)
    index = np.arange(pep.size)
    if sort:
        order = np.argsort(pep, kind="mergesort")
        return PropTestResult(index[order], pep[order], q[order], sorted=True)
    return PropTestResult(index, pep, q, sorted=False)


def _closed_form(alpha1, beta1, alpha_ref, beta_ref) -> np.ndarray:
    j = np.arange(int(round(alpha_ref)), dtype=float)
    const = -np.log(beta_ref + j) - betaln(1.0 + j, beta_ref)
    block = max(1, _CLOSED_FORM_BLOCK // j.size)

    out = np.empty(alpha1.size)
    for start in range(0, alpha1.size, block):
        a = alpha1[start : start + block, None]
        b = beta1[start : start + block, None]
        log_terms = betaln(a + j, b + beta_ref) + const - betaln(a, b)
        out[start : start + block] = np.exp(logsumexp(log_terms, axis=1))
    return out


def _quadrature(alpha1, beta1, alpha_ref, beta_ref) -> np.ndarray:
    def integrand(u, a, b):
        return beta_dist.cdf(beta_dist.ppf(u, alpha_ref, beta_ref), a, b)

    out = np.empty(alpha1.size)
    for i, (a, b) in enumerate(zip(alpha1, beta1)):
        out[i], _ = quad(
            integrand, 0.0, 1.0, args=(a, b), epsabs=_QUAD_EPSABS, limit=_QUAD_LIMIT
        )
    return out


def pairwise_pep(alpha1, beta1, alpha_ref: float, beta_ref: float, approx: bool = False):
    """
    P(p < p_ref) for p ~ Beta(alpha1, beta1), p_ref ~ Beta(alpha_ref, beta_ref),
    the two independent.

    ``alpha1``/``beta1`` may be arrays; the reference is a single
    distribution. See the module docstring for the exact methods.
    """
    if not (np.isfinite(alpha_ref) and np.isfinite(beta_ref)):
        raise ValueError("reference parameters must be finite")
    if alpha_ref <= 0 or beta_ref <= 0:
        raise ValueError(
            f"reference parameters must be positive, got ({alpha_ref}, {beta_ref})"
        )
    alpha1 = np.atleast_1d(np.asarray(alpha1, dtype=float))
    beta1 = np.atleast_1d(np.asarray(beta1, dtype=float))

    if approx:
        mu = alpha1 / (alpha1 + beta1)
        var = alpha1 * beta1 / ((alpha1 + beta1) ** 2 * (alpha1 + beta1 + 1.0))
        mu_ref = alpha_ref / (alpha_ref + beta_ref)
        var_ref = (
            alpha_ref * beta_ref / ((alpha_ref + beta_ref) ** 2 * (alpha_ref + beta_ref + 1.0))
        )
        return norm.cdf(0.0, loc=mu - mu_ref, scale=np.sqrt(var + var_ref))

    n_terms = round(alpha_ref)
    if abs(alpha_ref - n_terms) < _INTEGER_TOL and 1 <= n_terms <= _CLOSED_FORM_MAX_TERMS:
        return np.clip(_closed_form(alpha1, beta1, alpha_ref, beta_ref), 0.0, 1.0)

    logger.debug(
        "reference alpha %.6g not a usable integer, integrating %d observations",
        alpha_ref,
        alpha1.size,
    )
    return np.clip(_quadrature(alpha1, beta1, alpha_ref, beta_ref), 0.0, 1.0)


def threshold_test(
    posterior,
    threshold: float,
    alternative: str = "greater",
    sort: bool = False,
) -> PropTestResult:
    """
    Test each observation's rate against a fixed threshold.

    For alternative="greater" the PEP is P(p < threshold), the
    Beta(α1, β1) CDF at the threshold; for "less" it is P(p > threshold).

    Parameters
    ----------
    posterior : PosteriorEstimates
        Or any object with ``alpha1`` and ``beta1`` arrays.
    threshold : float
        Cutoff in (0, 1).
    alternative : str
        "greater" or "less".
    sort : bool
        Return records sorted by ascending PEP.
    """
    _check_alternative(alternative)
    if not 0 < threshold < 1:
        raise ValueError(f"threshold must be in (0, 1), got {threshold}")
    alpha1, beta1 = _posterior_params(posterior)

    if alternative == "greater":
        pep = beta_dist.cdf(threshold, alpha1, beta1)
    else:
        pep = beta_dist.sf(threshold, alpha1, beta1)
    return _package(np.asarray(pep, dtype=float), sort)


def reference_test(
    posterior,
    alpha: float,
    beta: float,
    approx: bool = False,
    alternative: str = "greater",
    sort: bool = False,
) -> PropTestResult:
    """
    Test each observation's rate against a reference Beta(alpha, beta).

    For alternative="greater" the PEP is P(p < p_ref); for "less" it is
    P(p > p_ref). ``approx`` selects the normal approximation instead of
    the exact computation.
    """
    _check_alternative(alternative)
    alpha1, beta1 = _posterior_params(posterior)

    pep = pairwise_pep(alpha1, beta1, alpha, beta, approx=approx)
    if alternative == "less":
        pep = 1.0 - pep
    return _package(np.asarray(pep, dtype=float), sort)
