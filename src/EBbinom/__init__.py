"""
Empirical Bayes estimation for binomial (success/total) data.

Fit a beta prior (constant or regressed on covariates), shrink each
observation's rate toward it, test posteriors with PEPs and q-values, and
fit beta-binomial mixtures by EM.
"""

from .exceptions import (
    FitError,
    InsufficientDataError,
    ConvergenceError,
    RankDeficiencyError,
    ConfigurationError,
)

from .params import (
    PriorSpec,
    MixtureSpec,
)

from .utils import (
    # Distribution functions
    beta_binom_logpmf,
    ab_from_mu_kappa,
    fit_beta_binomial_mle,
)

from .prior import (
    ConstantPrior,
    fit_beta_prior,
)

from .regression import (
    RegressionPrior,
    fit_beta_regression,
)

from .posterior import (
    PosteriorEstimates,
    compute_posterior,
    fit_prior,
    add_posterior,
)

from .significance import (
    PropTestResult,
    threshold_test,
    reference_test,
    pairwise_pep,
    qvalues,
)

from .mixture import (
    BetaBinomialMixture,
    IterationSnapshot,
    MixtureFitResult,
    fit_mixture,
)

__all__ = [
    # Classes
    "BetaBinomialMixture",
    # Convenience functions
    "fit_beta_prior",
    "fit_beta_regression",
    "fit_prior",
    "compute_posterior",
    "add_posterior",
    "threshold_test",
    "reference_test",
    "fit_mixture",
    # Data classes
    "PriorSpec",
    "MixtureSpec",
    "ConstantPrior",
    "RegressionPrior",
    "PosteriorEstimates",
    "PropTestResult",
    "IterationSnapshot",
    "MixtureFitResult",
    # Errors
    "FitError",
    "InsufficientDataError",
    "ConvergenceError",
    "RankDeficiencyError",
    "ConfigurationError",
    # Utilities
    "beta_binom_logpmf",
    "ab_from_mu_kappa",
    "fit_beta_binomial_mle",
    "pairwise_pep",
    "qvalues",
]

__version__ = "0.1.0"
