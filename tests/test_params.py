import pytest

from EBbinom.exceptions import ConfigurationError
from EBbinom.params import PriorSpec, MixtureSpec


class TestPriorSpec:
    """Tests for PriorSpec dataclass."""

    def test_default_initialization(self):
        """Test default values are set correctly."""
        spec = PriorSpec()

        assert spec.method == "mle"
        assert spec.mu_predictors is None
        assert spec.sigma_predictors is None
        assert spec.max_iter == 1000

    def test_regression_spec(self):
        """Test a regression spec with both formulas."""
        spec = PriorSpec(
            method="regression",
            mu_predictors="np.log(total)",
            sigma_predictors="np.log(total)",
        )
        assert spec.mu_predictors == "np.log(total)"

    def test_unknown_method(self):
        """Test that an unknown method is rejected."""
        with pytest.raises(ConfigurationError, match="method must be one of"):
            PriorSpec(method="bayes")

    def test_regression_requires_mu_predictors(self):
        """Test that the regression method needs a mean formula."""
        with pytest.raises(ConfigurationError, match="requires mu_predictors"):
            PriorSpec(method="regression")

    def test_predictors_require_regression(self):
        """Predictors with a constant-prior method are an invalid combination."""
        with pytest.raises(ConfigurationError, match="require method='regression'"):
            PriorSpec(method="mle", mu_predictors="np.log(total)")

    def test_is_value_error(self):
        """Configuration errors can be caught as ValueError."""
        with pytest.raises(ValueError):
            PriorSpec(max_iter=0)


class TestMixtureSpec:
    """Tests for MixtureSpec dataclass."""

    def test_default_initialization(self):
        """Test default MixtureSpec values."""
        spec = MixtureSpec()

        assert spec.clusters == 2
        assert spec.tol == 1e-6
        assert spec.max_iter == 100
        assert spec.n_restarts == 1
        assert spec.random_state == 42

    @pytest.mark.parametrize("clusters", [0, 1, 2.5])
    def test_invalid_clusters(self, clusters):
        """Test that fewer than two or fractional clusters are rejected."""
        with pytest.raises(ConfigurationError, match="clusters"):
            MixtureSpec(clusters=clusters)

    def test_invalid_tolerance(self):
        """Test that a non-positive tolerance is rejected."""
        with pytest.raises(ConfigurationError, match="tol"):
            MixtureSpec(tol=0.0)

    def test_invalid_max_iter(self):
        """Test that a non-positive max_iter is rejected."""
        with pytest.raises(ConfigurationError, match="max_iter"):
            MixtureSpec(max_iter=0)

    def test_invalid_restarts(self):
        """Test that a non-positive restart count is rejected."""
        with pytest.raises(ConfigurationError, match="n_restarts"):
            MixtureSpec(n_restarts=0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
