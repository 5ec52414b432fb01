"""
K-component Beta-Binomial mixture fitted by Expectation-Maximization.

Each observation's successes are drawn from one of K beta-binomial
components; the fit estimates every component's (α_k, β_k), the mixing
weights w_k and each observation's responsibilities.

Initialization (reproducible):
    restart 0:  observations are split into K equal-size groups by raw-rate
                quantile and given hard responsibilities
    restart r:  responsibilities are drawn from Dirichlet(1, ..., 1) with
                numpy.random.default_rng(random_state)
An initial M-step turns the responsibilities into component parameters.

E-step:   r_ik ∝ w_k × BetaBinomial(s_i | n_i, α_k, β_k)
M-step:   weighted beta-binomial MLE per component, w_k = mean_i r_ik
Stop:     |loglik_t - loglik_{t-1}| < tol ("converged") or max_iter
          E-steps ("max_iter_exceeded").

Every E-step appends an immutable IterationSnapshot to the trace. Final
components are ordered by ascending mean, consistently across the trace.
Components that end up indistinguishable are not merged.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd
from scipy.special import logsumexp

from .exceptions import ConvergenceError, InsufficientDataError
from .params import MixtureSpec
from .utils import beta_binom_logpmf, check_counts, fit_beta_binomial_mle

logger = logging.getLogger(__name__)

CONVERGED = "converged"
MAX_ITER_EXCEEDED = "max_iter_exceeded"

_COLLAPSED_RESPONSIBILITY = 1e-8


def _freeze(*arrays):
    for value in arrays:
        value.setflags(write=False)


@dataclass(frozen=True, eq=False)
class IterationSnapshot:
    """
    Component parameters and the responsibilities they produced at one
    EM iteration.
    """

    iteration: int
    alpha: np.ndarray
    beta: np.ndarray
    weight: np.ndarray
    loglik: float
    responsibilities: np.ndarray = field(repr=False)

    def __post_init__(self):
        _freeze(self.alpha, self.beta, self.weight, self.responsibilities)

    def assignments(self) -> np.ndarray:
        """Hard cluster label (argmax responsibility) per observation."""
        return self.responsibilities.argmax(axis=1).astype(int)

    def relabel(self, order: np.ndarray) -> "IterationSnapshot":
        return IterationSnapshot(
            iteration=self.iteration,
            alpha=self.alpha[order].copy(),
            beta=self.beta[order].copy(),
            weight=self.weight[order].copy(),
            loglik=self.loglik,
            responsibilities=self.responsibilities[:, order].copy(),
        )


@dataclass(frozen=True, eq=False)
class MixtureFitResult:
    """
    Results from fitting a K-component beta-binomial mixture.
    """

    # Component parameters, ordered by ascending mean
    alpha: np.ndarray
    beta: np.ndarray
    weight: np.ndarray

    # Fit diagnostics
    loglik: float
    bic: float
    status: str
    n_iterations: int

    # Responsibilities (N x K array)
    responsibilities: np.ndarray = field(repr=False)

    # One snapshot per E-step
    trace: tuple = field(repr=False, default=())

    def __post_init__(self):
        _freeze(self.alpha, self.beta, self.weight, self.responsibilities)

    @property
    def converged(self) -> bool:
        return self.status == CONVERGED

    @property
    def n_components(self) -> int:
        return self.alpha.size

    @property
    def n_obs(self) -> int:
        return self.responsibilities.shape[0]

    @property
    def mean(self) -> np.ndarray:
        """Component means α / (α + β)."""
        return self.alpha / (self.alpha + self.beta)

    def assignments(self, threshold: float = 0.0) -> np.ndarray:
        """
        Get hard component assignments.

        Parameters
        ----------
        threshold : float
            Minimum responsibility to assign (otherwise -1).

        Returns
        -------
        np.ndarray
            Component index or -1 if uncertain.
        """
        labels = self.responsibilities.argmax(axis=1).astype(int)
        if threshold > 0:
            labels[self.responsibilities.max(axis=1) < threshold] = -1
        return labels

    def get_component_indices(self, component: int) -> np.ndarray:
        """Get indices of observations assigned to a component."""
        return np.where(self.responsibilities.argmax(axis=1) == component)[0]

    def to_frame(self) -> pd.DataFrame:
        """One row per component."""
        return pd.DataFrame(
            {
                "component": np.arange(self.n_components),
                "alpha": self.alpha,
                "beta": self.beta,
                "mean": self.mean,
                "weight": self.weight,
            }
        )

    def trace_frame(self) -> pd.DataFrame:
        """Component parameters at every iteration, one row per (iteration, component)."""
        rows = [
            {
                "iteration": snap.iteration,
                "component": k,
                "alpha": snap.alpha[k],
                "beta": snap.beta[k],
                "weight": snap.weight[k],
                "loglik": snap.loglik,
            }
            for snap in self.trace
            for k in range(snap.alpha.size)
        ]
        return pd.DataFrame(
            rows, columns=["iteration", "component", "alpha", "beta", "weight", "loglik"]
        )


class BetaBinomialMixture:
    """
    K-component Beta-Binomial mixture fitted by EM.

    Parameters
    ----------
    spec : MixtureSpec, optional
        Number of components and EM loop controls.

    Attributes
    ----------
    alpha, beta : np.ndarray
        Fitted shape parameters for each component.
    weight : np.ndarray
        Fitted mixing proportions.
    responsibilities : np.ndarray
        Posterior component probabilities (N x K).
    """

    def __init__(self, spec: Optional[MixtureSpec] = None):
        self.spec = spec if spec is not None else MixtureSpec()

        # Parameters (set after fitting)
        self.alpha: Optional[np.ndarray] = None
        self.beta: Optional[np.ndarray] = None
        self.weight: Optional[np.ndarray] = None
        self.responsibilities: Optional[np.ndarray] = None

        # Diagnostics
        self.loglik: float = -np.inf
        self.bic: float = np.inf
        self.status: Optional[str] = None
        self.n_iterations: int = 0
        self.n_obs: int = 0
        self.trace: tuple = ()

    @property
    def n_components(self) -> int:
        return self.spec.clusters

    def fit(self, successes, total, strict: bool = False) -> "BetaBinomialMixture":
        """
        Fit the mixture, keeping the best of ``spec.n_restarts`` runs.

        Parameters
        ----------
        successes : array-like
            Success counts.
        total : array-like
            Trial counts.
        strict : bool
            Raise ConvergenceError instead of returning a
            "max_iter_exceeded" fit.

        Returns
        -------
        BetaBinomialMixture
            Self, for method chaining.
        """
        successes, total = check_counts(successes, total)
        self.n_obs = successes.size
        if self.n_components > self.n_obs:
            raise InsufficientDataError(
                f"{self.n_components} components for {self.n_obs} observations"
            )

        rng = np.random.default_rng(self.spec.random_state)
        best = None
        for restart in range(self.spec.n_restarts):
            result = self._fit_single_restart(successes, total, rng, restart)
            if best is None or result["loglik"] > best["loglik"]:
                best = result

        if strict and best["status"] != CONVERGED:
            raise ConvergenceError(
                f"EM did not converge within {self.spec.max_iter} iterations"
            )

        # Order components by ascending mean, across the whole trace
        final = best["trace"][-1]
        order = np.argsort(final.alpha / (final.alpha + final.beta), kind="mergesort")
        self.trace = tuple(snap.relabel(order) for snap in best["trace"])
        final = self.trace[-1]

        self.alpha = final.alpha
        self.beta = final.beta
        self.weight = final.weight
        self.responsibilities = final.responsibilities
        self.loglik = final.loglik
        self.status = best["status"]
        self.n_iterations = len(self.trace)

        n_params = 2 * self.n_components + (self.n_components - 1)
        self.bic = -2 * self.loglik + n_params * np.log(self.n_obs)

        if self.status != CONVERGED:
            logger.warning(
                "EM stopped after %d iterations without converging (tol=%g)",
                self.n_iterations,
                self.spec.tol,
            )
        logger.debug(
            "mixture fit: K=%d status=%s iterations=%d loglik=%.6g",
            self.n_components,
            self.status,
            self.n_iterations,
            self.loglik,
        )
        return self

    def _initial_responsibilities(self, successes, total, rng, restart):
        N, K = successes.size, self.n_components
        if restart == 0:
            rate = np.where(total > 0, successes / np.maximum(total, 1.0), 0.5)
            order = np.argsort(rate, kind="mergesort")
            resps = np.zeros((N, K))
            for k, members in enumerate(np.array_split(order, K)):
                resps[members, k] = 1.0
            return resps
        return rng.dirichlet(np.ones(K), size=N)

    def _e_step(self, successes, total, alpha, beta, weight):
        log_resps = np.empty((successes.size, alpha.size))
        for k in range(alpha.size):
            log_resps[:, k] = np.log(weight[k] + 1e-10) + beta_binom_logpmf(
                successes, total, alpha[k], beta[k]
            )
        log_norm = logsumexp(log_resps, axis=1)
        return np.exp(log_resps - log_norm[:, None]), float(log_norm.sum())

    def _m_step(self, successes, total, resps, alpha=None, beta=None):
        new_alpha = np.empty(self.n_components)
        new_beta = np.empty(self.n_components)
        for k in range(self.n_components):
            if alpha is not None and resps[:, k].sum() < _COLLAPSED_RESPONSIBILITY:
                logger.warning("component %d has collapsed, keeping its parameters", k)
                new_alpha[k], new_beta[k] = alpha[k], beta[k]
                continue
            x0 = None if alpha is None else (alpha[k], beta[k])
            new_alpha[k], new_beta[k], _ = fit_beta_binomial_mle(
                successes, total, weights=resps[:, k], x0=x0
            )
        return new_alpha, new_beta, resps.mean(axis=0)

    def _fit_single_restart(self, successes, total, rng, restart) -> dict:
        """Single EM run."""
        resps = self._initial_responsibilities(successes, total, rng, restart)
        alpha, beta, weight = self._m_step(successes, total, resps)

        trace = []
        status = MAX_ITER_EXCEEDED
        prev_ll = -np.inf
        for iteration in range(1, self.spec.max_iter + 1):
            # --- E-step ---
            resps, ll = self._e_step(successes, total, alpha, beta, weight)
            trace.append(
                IterationSnapshot(
                    iteration=iteration,
                    alpha=alpha.copy(),
                    beta=beta.copy(),
                    weight=weight.copy(),
                    loglik=ll,
                    responsibilities=resps,
                )
            )

            if abs(ll - prev_ll) < self.spec.tol:
                status = CONVERGED
                break
            prev_ll = ll

            # --- M-step ---
            alpha, beta, weight = self._m_step(successes, total, resps, alpha, beta)

        logger.debug(
            "EM restart %d: %s after %d iterations, loglik=%.6g",
            restart,
            status,
            len(trace),
            trace[-1].loglik,
        )
        return {"trace": trace, "loglik": trace[-1].loglik, "status": status}

    def get_result(self) -> MixtureFitResult:
        """
        Package results into MixtureFitResult.
        """
        if self.alpha is None:
            raise ValueError("Must call fit() before get_result()")

        return MixtureFitResult(
            alpha=self.alpha.copy(),
            beta=self.beta.copy(),
            weight=self.weight.copy(),
            loglik=self.loglik,
            bic=self.bic,
            status=self.status,
            n_iterations=self.n_iterations,
            responsibilities=self.responsibilities.copy(),
            trace=self.trace,
        )

    def predict_proba(self, successes, total) -> np.ndarray:
        """
        Compute component probabilities for data.

        Returns
        -------
        np.ndarray
            Responsibilities (N x K).
        """
        if self.alpha is None:
            raise ValueError("Must fit before prediction")
        successes, total = check_counts(successes, total)
        resps, _ = self._e_step(successes, total, self.alpha, self.beta, self.weight)
        return resps

    def predict(self, successes, total, threshold: float = 0.0) -> np.ndarray:
        """
        Predict component labels (-1 where the top responsibility is below
        ``threshold``).
        """
        proba = self.predict_proba(successes, total)
        labels = proba.argmax(axis=1).astype(int)
        if threshold > 0:
            labels[proba.max(axis=1) < threshold] = -1
        return labels

    def get_component_summary(self) -> dict:
        """
        Summary statistics per component.
        """
        if self.responsibilities is None:
            raise ValueError("Must fit first")

        labels = self.responsibilities.argmax(axis=1)
        return {
            k: {
                "alpha": self.alpha[k],
                "beta": self.beta[k],
                "mean": self.alpha[k] / (self.alpha[k] + self.beta[k]),
                "weight": self.weight[k],
                "n_assigned": int((labels == k).sum()),
                "mean_responsibility": self.responsibilities[:, k].mean(),
            }
            for k in range(self.n_components)
        }

    def __repr__(self) -> str:
        status = self.status if self.status is not None else "not fitted"
        return (
            f"BetaBinomialMixture(clusters={self.n_components}, "
            f"n_obs={self.n_obs}, status={status})"
        )


def fit_mixture(
    successes,
    total,
    clusters: int = 2,
    tol: float = 1e-6,
    max_iter: int = 100,
    n_restarts: int = 1,
    random_state: Optional[int] = 42,
    strict: bool = False,
) -> MixtureFitResult:
    """
    Convenience function to fit a beta-binomial mixture.

    Returns
    -------
    MixtureFitResult
        Fit results; check ``status`` for convergence unless ``strict``.
    """
    spec = MixtureSpec(
        clusters=clusters,
        tol=tol,
        max_iter=max_iter,
        n_restarts=n_restarts,
        random_state=random_state,
    )
    return BetaBinomialMixture(spec).fit(successes, total, strict=strict).get_result()
