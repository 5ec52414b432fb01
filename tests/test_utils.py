import numpy as np
import pytest
from scipy.stats import betabinom

from EBbinom.exceptions import ConvergenceError
from EBbinom.utils import (
    beta_binom_logpmf,
    beta_binom_grad,
    ab_from_mu_kappa,
    mu_kappa_from_ab,
    check_counts,
    resolve_subset,
    method_of_moments,
    fit_beta_binomial_mle,
)


class TestBetaBinomLogpmf:
    """Tests for beta_binom_logpmf function."""

    def test_matches_scipy(self):
        """Verify implementation matches scipy's beta-binomial."""
        n, k = 100, 30
        alpha, beta = 10.0, 20.0

        result = beta_binom_logpmf(k, n, alpha, beta)
        expected = betabinom.logpmf(k, n, alpha, beta)

        np.testing.assert_allclose(result, expected, rtol=1e-10)

    def test_vectorized(self):
        """Test with array inputs."""
        n = np.array([100, 200, 150])
        k = np.array([30, 60, 75])

        result = beta_binom_logpmf(k, n, 10.0, 20.0)

        assert result.shape == (3,)
        np.testing.assert_allclose(result, betabinom.logpmf(k, n, 10.0, 20.0))

    def test_zero_total_contributes_nothing(self):
        """An observation with no trials has log-probability zero."""
        assert beta_binom_logpmf(0, 0, 3.0, 7.0) == pytest.approx(0.0)

    def test_edge_cases(self):
        """Test boundary cases."""
        assert np.isfinite(beta_binom_logpmf(0, 100, 10.0, 20.0))
        assert np.isfinite(beta_binom_logpmf(100, 100, 10.0, 20.0))
        # Very small alpha/beta (clamped to 1e-9)
        assert np.isfinite(beta_binom_logpmf(50, 100, 1e-12, 1e-12))


class TestBetaBinomGrad:
    """Tests for the analytic gradient."""

    def test_matches_finite_differences(self):
        """Analytic derivatives agree with central differences."""
        k = np.array([3.0, 40.0, 0.0, 12.0])
        n = np.array([10.0, 100.0, 5.0, 12.0])
        alpha, beta, h = 4.0, 9.0, 1e-6

        d_alpha, d_beta = beta_binom_grad(k, n, alpha, beta)
        num_alpha = (
            beta_binom_logpmf(k, n, alpha + h, beta)
            - beta_binom_logpmf(k, n, alpha - h, beta)
        ) / (2 * h)
        num_beta = (
            beta_binom_logpmf(k, n, alpha, beta + h)
            - beta_binom_logpmf(k, n, alpha, beta - h)
        ) / (2 * h)

        np.testing.assert_allclose(d_alpha, num_alpha, rtol=1e-5, atol=1e-8)
        np.testing.assert_allclose(d_beta, num_beta, rtol=1e-5, atol=1e-8)


class TestAbFromMuKappa:
    """Tests for mean/concentration conversions."""

    def test_basic_conversion(self):
        """Test mu/kappa to alpha/beta conversion."""
        alpha, beta = ab_from_mu_kappa(0.5, 100.0)

        assert alpha == 50.0
        assert beta == 50.0

    def test_inverse(self):
        """mu_kappa_from_ab undoes ab_from_mu_kappa."""
        mu, kappa = mu_kappa_from_ab(*ab_from_mu_kappa(0.27, 300.0))

        assert mu == pytest.approx(0.27)
        assert kappa == pytest.approx(300.0)

    def test_always_positive(self):
        """Ensure alpha and beta are always positive."""
        for mu in np.linspace(0, 1, 20):
            alpha, beta = ab_from_mu_kappa(mu, 100.0)
            assert alpha > 0 and beta > 0


class TestCheckCounts:
    """Tests for input validation."""

    def test_returns_float_copies(self):
        """Inputs are converted to new float arrays."""
        successes = np.array([1, 2, 3])
        total = np.array([5, 5, 5])

        s, t = check_counts(successes, total)
        s[0] = 99

        assert s.dtype == np.float64
        assert successes[0] == 1
        np.testing.assert_array_equal(t, [5.0, 5.0, 5.0])

    def test_successes_above_total(self):
        """successes > total is rejected."""
        with pytest.raises(ValueError, match="successes > total"):
            check_counts([3, 6], [5, 5])

    def test_negative_counts(self):
        """Test that negative counts are rejected."""
        with pytest.raises(ValueError, match="non-negative"):
            check_counts([-1, 2], [5, 5])

    def test_non_integer_counts(self):
        """Test that fractional counts are rejected."""
        with pytest.raises(ValueError, match="integer"):
            check_counts([1.5, 2], [5, 5])

    def test_length_mismatch(self):
        """Test that arrays of different lengths are rejected."""
        with pytest.raises(ValueError, match="different lengths"):
            check_counts([1, 2, 3], [5, 5])


class TestResolveSubset:
    """Tests for subset masks and predicates."""

    def test_none_selects_all(self):
        """Test that no subset selects every observation."""
        mask = resolve_subset(None, np.zeros(4), np.ones(4))
        assert mask.all() and mask.size == 4

    def test_predicate(self):
        """A predicate receives (successes, total)."""
        total = np.array([10.0, 500.0, 20.0, 800.0])
        mask = resolve_subset(lambda s, t: t >= 500, np.zeros(4), total)
        np.testing.assert_array_equal(mask, [False, True, False, True])

    def test_rejects_non_boolean(self):
        """Test that a non-boolean mask is rejected."""
        with pytest.raises(ValueError, match="boolean"):
            resolve_subset([0, 1, 2], np.zeros(3), np.ones(3))

    def test_rejects_wrong_shape(self):
        """Test that a mask of the wrong length is rejected."""
        with pytest.raises(ValueError, match="shape"):
            resolve_subset(np.array([True, False]), np.zeros(3), np.ones(3))


class TestMethodOfMoments:
    """Tests for the moment-based starting values."""

    def test_recovers_mean(self):
        """Prior mean matches the mean raw rate."""
        rng = np.random.default_rng(0)
        p = rng.beta(30, 70, size=2000)
        total = np.full(2000, 400.0)
        successes = rng.binomial(400, p).astype(float)

        alpha, beta = method_of_moments(successes, total)

        assert alpha / (alpha + beta) == pytest.approx(0.3, abs=0.01)

    def test_no_spread_gives_large_concentration(self):
        """Identical raw rates imply a very concentrated prior."""
        alpha, beta = method_of_moments(np.full(5, 20.0), np.full(5, 100.0))
        assert alpha + beta > 1e5

    def test_ignores_zero_totals(self):
        """Test that zero totals do not affect the moments."""
        alpha, beta = method_of_moments(
            np.array([0.0, 20.0, 30.0]), np.array([0.0, 100.0, 100.0])
        )
        assert alpha / (alpha + beta) == pytest.approx(0.25)


class TestFitBetaBinomialMle:
    """Tests for the shared MLE core."""

    def test_recovers_parameters(self):
        """MLE recovers generating parameters on a large sample."""
        rng = np.random.default_rng(1)
        total = rng.integers(100, 600, size=3000).astype(float)
        successes = rng.binomial(total.astype(int), rng.beta(20, 60, size=3000))

        alpha, beta, loglik = fit_beta_binomial_mle(successes, total)

        assert alpha == pytest.approx(20, rel=0.2)
        assert beta == pytest.approx(60, rel=0.2)
        assert loglik < 0

    def test_weights_select_observations(self):
        """Zero weights exclude observations from the fit."""
        rng = np.random.default_rng(2)
        total = np.full(1000, 200.0)
        low = rng.binomial(200, rng.beta(5, 95, size=500))
        high = rng.binomial(200, rng.beta(60, 40, size=500))
        successes = np.concatenate([low, high]).astype(float)
        weights = np.concatenate([np.ones(500), np.zeros(500)])

        alpha, beta, _ = fit_beta_binomial_mle(successes, total, weights=weights)

        assert alpha / (alpha + beta) == pytest.approx(0.05, abs=0.01)

    def test_iteration_cap(self):
        """Hitting the iteration cap is a ConvergenceError."""
        rng = np.random.default_rng(3)
        total = np.full(500, 300.0)
        successes = rng.binomial(300, rng.beta(20, 60, size=500)).astype(float)

        with pytest.raises(ConvergenceError):
            fit_beta_binomial_mle(successes, total, x0=(0.01, 5000.0), max_iter=1)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
