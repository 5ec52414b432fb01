import numpy as np
import pytest

from EBbinom.exceptions import (
    ConfigurationError,
    ConvergenceError,
    FitError,
    InsufficientDataError,
)
from EBbinom.prior import ConstantPrior, fit_beta_prior


def simulate(alpha, beta, n_obs, seed, low=100, high=600):
    """Beta(alpha, beta)-Binomial(total) counts with varying totals."""
    rng = np.random.default_rng(seed)
    total = rng.integers(low, high, size=n_obs)
    successes = rng.binomial(total, rng.beta(alpha, beta, size=n_obs))
    return successes, total


class TestConstantPrior:
    """Tests for the ConstantPrior value object."""

    def test_derived_quantities(self):
        """Test mean and kappa."""
        prior = ConstantPrior(alpha0=80.0, beta0=220.0, loglik=-1.0, n_obs=10)

        assert prior.mean == pytest.approx(80 / 300)
        assert prior.kappa == 300.0

    def test_alpha_beta_arrays(self):
        """Test that alpha_beta broadcasts to one value per total."""
        prior = ConstantPrior(alpha0=2.0, beta0=3.0, loglik=0.0, n_obs=2)
        alpha0, beta0 = prior.alpha_beta(np.array([10, 20, 30]))

        np.testing.assert_array_equal(alpha0, [2.0, 2.0, 2.0])
        np.testing.assert_array_equal(beta0, [3.0, 3.0, 3.0])

    def test_rejects_non_positive(self):
        """Test that non-positive parameters are rejected."""
        with pytest.raises(ValueError, match="positive"):
            ConstantPrior(alpha0=0.0, beta0=3.0, loglik=0.0, n_obs=2)

    def test_immutable(self):
        """Test that the prior is frozen."""
        prior = ConstantPrior(alpha0=2.0, beta0=3.0, loglik=0.0, n_obs=2)
        with pytest.raises(AttributeError):
            prior.alpha0 = 5.0

    def test_to_frame(self):
        """Test the one-row prior table."""
        frame = ConstantPrior(alpha0=2.0, beta0=6.0, loglik=-3.0, n_obs=4).to_frame()

        assert list(frame.columns) == ["alpha", "beta", "mean", "loglik", "n_obs", "method"]
        assert frame.loc[0, "mean"] == pytest.approx(0.25)


class TestFitBetaPrior:
    """Tests for fit_beta_prior."""

    def test_recovers_generating_parameters(self):
        """A large synthetic sample recovers the generating Beta(a, b)."""
        successes, total = simulate(80, 220, n_obs=6000, seed=11)

        prior = fit_beta_prior(successes, total)

        assert prior.alpha0 == pytest.approx(80, rel=0.2)
        assert prior.beta0 == pytest.approx(220, rel=0.2)
        assert prior.mean == pytest.approx(80 / 300, abs=0.005)
        assert prior.method == "mle"
        assert prior.n_obs == 6000

    def test_error_shrinks_with_sample_size(self):
        """Averaged over seeds, the mean estimate tightens as N grows."""

        def mean_error(n_obs):
            errors = []
            for seed in range(5):
                successes, total = simulate(20, 60, n_obs=n_obs, seed=seed)
                errors.append(abs(fit_beta_prior(successes, total).mean - 0.25))
            return np.mean(errors)

        assert mean_error(4000) < mean_error(40)

    def test_subset_restricts_fit(self):
        """Only subset observations estimate the prior."""
        successes, total = simulate(20, 60, n_obs=400, seed=3)
        # Corrupt the low-total rows; they must not influence the fit.
        successes = successes.copy()
        low = total < 300
        successes[low] = total[low]

        full = fit_beta_prior(successes, total)
        sub = fit_beta_prior(successes, total, subset=lambda s, t: t >= 300)

        assert sub.n_obs == int((~low).sum())
        assert sub.mean == pytest.approx(0.25, abs=0.03)
        assert full.mean > 0.35

    def test_subset_mask(self):
        """Test that a boolean mask and a predicate select the same fit."""
        successes, total = simulate(20, 60, n_obs=200, seed=4)
        mask = total >= 300

        by_mask = fit_beta_prior(successes, total, subset=mask)
        by_predicate = fit_beta_prior(successes, total, subset=lambda s, t: t >= 300)

        assert by_mask.alpha0 == pytest.approx(by_predicate.alpha0)
        assert by_mask.beta0 == pytest.approx(by_predicate.beta0)

    def test_method_of_moments(self):
        """Test the method-of-moments estimate."""
        successes, total = simulate(20, 60, n_obs=3000, seed=5)

        prior = fit_beta_prior(successes, total, method="mm")

        assert prior.method == "mm"
        assert prior.mean == pytest.approx(0.25, abs=0.01)
        assert np.isfinite(prior.loglik)

    def test_does_not_mutate_input(self):
        """Test that fitting leaves the input arrays unchanged."""
        successes, total = simulate(20, 60, n_obs=100, seed=6)
        before = successes.copy()

        fit_beta_prior(successes, total)

        np.testing.assert_array_equal(successes, before)

    def test_insufficient_data(self):
        """Fewer than two observations after filtering is an error."""
        with pytest.raises(InsufficientDataError):
            fit_beta_prior([3, 40, 7], [10, 100, 12], subset=lambda s, t: t > 50)

    def test_error_classes_are_distinct(self):
        """Insufficient data and non-convergence are distinct FitErrors."""
        assert issubclass(InsufficientDataError, FitError)
        assert issubclass(ConvergenceError, FitError)
        assert not issubclass(InsufficientDataError, ConvergenceError)
        assert not issubclass(ConvergenceError, InsufficientDataError)

    def test_invalid_method(self):
        """Test that a non-constant method is rejected."""
        with pytest.raises(ConfigurationError):
            fit_beta_prior([1, 2], [10, 10], method="regression")

    def test_malformed_counts(self):
        """Test that successes above total are rejected."""
        with pytest.raises(ValueError, match="successes > total"):
            fit_beta_prior([1, 20], [10, 10])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
