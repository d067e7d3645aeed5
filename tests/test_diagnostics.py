"""
Trace Diagnostics Tests

Tests the convergence and goodness-of-fit diagnostics on synthetic traces
with known behaviour:
- Geweke z-scores (stationary vs drifting chains)
- Raftery-Lewis run lengths for a two-state Markov chain
- Autocorrelation of an AR(1) process
- Freeman-Tukey discrepancy and Bayesian p-values
- Gelman-Rubin and nested R-hat
- trace_stats and the acceptance summary

Run with: pytest tests/test_diagnostics.py -v
"""

import numpy as np
import pytest
import jax.numpy as jnp
import jax.random as random
from scipy import stats

from mcstep import (
    MCMC, Metropolis, InsufficientSamplesError, NonConvergentEstimateError,
    geweke, raftery_lewis, autocorrelation, discrepancy, bayesian_p_value,
    nested_rhat, gelman_rubin, trace_stats, print_acceptance_summary,
)
from mcstep import test_models


def _two_state_chain(rng, n, p01, p10):
    """Markov chain on {0, 1} with P(0 -> 1) = p01 and P(1 -> 0) = p10."""
    u = rng.random(n)
    states = np.empty(n, dtype=int)
    state = 0
    for i in range(n):
        if state == 0 and u[i] < p01:
            state = 1
        elif state == 1 and u[i] < p10:
            state = 0
        states[i] = state
    return states


def _ar1(rng, n, phi):
    noise = rng.normal(size=n)
    x = np.empty(n)
    x[0] = noise[0]
    for i in range(1, n):
        x[i] = phi * x[i - 1] + noise[i]
    return x


# ============================================================================
# GEWEKE TESTS
# ============================================================================

class TestGeweke:
    """Test Geweke z-scores."""

    def test_stationary_chain_scores_small(self, rng):
        scores = geweke(rng.normal(size=2000))
        assert scores.shape == (20, 2)
        assert np.all(np.abs(scores[:, 1]) < 2)

    def test_start_offsets(self, rng):
        scores = geweke(rng.normal(size=1001), intervals=5)
        np.testing.assert_array_equal(scores[:, 0], [0, 125, 250, 375, 500])

    def test_drifting_chain_flagged(self, rng):
        trace = np.linspace(0, 1, 2000) + rng.normal(scale=0.01, size=2000)
        scores = geweke(trace)
        assert scores[0, 1] < -2

    def test_column_trace_accepted(self, rng):
        scores = geweke(rng.normal(size=(500, 1)))
        assert scores.shape == (20, 2)

    @pytest.mark.parametrize("first,last", [(0.5, 0.5), (0.6, 0.5), (0.0, 0.5), (0.1, 1.0)])
    def test_invalid_fractions(self, rng, first, last):
        with pytest.raises(ValueError):
            geweke(rng.normal(size=1000), first=first, last=last)

    def test_short_trace(self, rng):
        with pytest.raises(InsufficientSamplesError):
            geweke(rng.normal(size=10))

    def test_constant_trace(self):
        with pytest.raises(ValueError, match="constant"):
            geweke(np.ones(1000))

    def test_multivariate_trace_rejected(self, rng):
        with pytest.raises(ValueError, match="one-dimensional"):
            geweke(rng.normal(size=(500, 2)))

    def test_late_window_follows_start_offset(self, rng):
        x = rng.normal(size=1001)
        scores = geweke(x, intervals=5)
        # end = 1000: at start 0 the late window is x[500:], at start 500 it is x[750:]
        for row, (early, late) in ((0, (x[0:100], x[500:])), (4, (x[500:550], x[750:]))):
            expected = (early.mean() - late.mean()) / np.sqrt(early.var() + late.var())
            assert scores[row, 1] == pytest.approx(expected, rel=1e-6)


# ============================================================================
# RAFTERY-LEWIS TESTS
# ============================================================================

class TestRafteryLewis:
    """Run-length estimates for a two-state chain with known transitions."""

    P01, P10 = 0.01, 0.39

    @pytest.fixture(scope='class')
    def indicator_trace(self):
        # The rare state (stationary probability 0.025) holds the low values
        states = _two_state_chain(np.random.default_rng(2024), 200_000, self.P01, self.P10)
        return -states.astype(float)

    def test_transition_estimates(self, indicator_trace):
        result = raftery_lewis(indicator_trace, q=0.02, r=0.005)
        assert result.thin == 1
        assert result.alpha == pytest.approx(self.P01, rel=0.15)
        assert result.beta == pytest.approx(self.P10, rel=0.1)

    def test_run_lengths(self, indicator_trace):
        q, r, s = 0.02, 0.005, 0.95
        result = raftery_lewis(indicator_trace, q=q, r=r, s=s)

        phi = stats.norm.ppf(0.5 * (1 + s))
        assert result.nmin == int(np.ceil(q * (1 - q) * (phi / r) ** 2))

        a, b = self.P01, self.P10
        m = np.log(0.001 * (a + b) / max(a, b)) / np.log(abs(1 - a - b))
        expected_burn = int(np.floor(m)) + 1
        expected_prec = (2 - a - b) * a * b * phi ** 2 / ((a + b) ** 3 * r ** 2)
        assert abs(result.burn - expected_burn) <= 2
        assert result.total == pytest.approx(expected_burn + expected_prec, rel=0.2)
        assert result.dependence_factor > 1

    def test_as_tuple(self, indicator_trace):
        result = raftery_lewis(indicator_trace, q=0.02, r=0.005)
        assert result.as_tuple() == (result.nmin, result.thin, result.burn, result.total, result.kmind)

    def test_short_trace(self, rng):
        with pytest.raises(InsufficientSamplesError, match="at least"):
            raftery_lewis(rng.normal(size=100), q=0.025, r=0.005)

    def test_constant_trace(self):
        with pytest.raises(NonConvergentEstimateError):
            raftery_lewis(np.ones(1000), q=0.5, r=0.05)

    def test_invalid_quantile(self, rng):
        with pytest.raises(ValueError):
            raftery_lewis(rng.normal(size=1000), q=1.5, r=0.05)


class TestRafteryLewisDefaults:
    """q=0.025, r=0.01, s=0.95 on a chain whose rare state has probability 0.05."""

    P01, P10 = 0.02, 0.38

    @pytest.fixture(scope='class')
    def result(self):
        states = _two_state_chain(np.random.default_rng(7), 200_000, self.P01, self.P10)
        return raftery_lewis(-states.astype(float), q=0.025, r=0.01, s=0.95)

    def test_nmin(self, result):
        assert result.nmin == 937

    def test_closed_forms_from_estimates(self, result):
        a, b = result.alpha, result.beta
        phi = stats.norm.ppf(0.975)
        m = np.log(0.001 * (a + b) / max(a, b)) / np.log(abs(1 - a - b))
        burn = int(np.floor(m)) + 1
        prec = int(np.floor((2 - a - b) * a * b * phi ** 2 / ((a + b) ** 3 * 0.01 ** 2))) + 1
        assert result.thin == 1
        assert result.burn == burn
        assert result.total == burn + prec

    def test_matches_true_transitions(self, result):
        a, b = self.P01, self.P10
        phi = stats.norm.ppf(0.975)
        # burn 14, precision about 7299 iterations
        expected_burn = int(np.floor(np.log(0.001 * (a + b) / b) / np.log(1 - a - b))) + 1
        expected_total = expected_burn + (2 - a - b) * a * b * phi ** 2 / ((a + b) ** 3 * 0.01 ** 2)
        assert result.alpha == pytest.approx(a, rel=0.06)
        assert result.beta == pytest.approx(b, rel=0.05)
        assert abs(result.burn - expected_burn) <= 1
        assert result.total == pytest.approx(expected_total, rel=0.1)


# ============================================================================
# AUTOCORRELATION TESTS
# ============================================================================

class TestAutocorrelation:
    """Test the normalised autocovariance."""

    def test_lag_zero_is_one(self, rng):
        rho = autocorrelation(rng.normal(size=500), maxlag=20)
        assert rho.shape == (21,)
        assert rho[0] == 1.0

    def test_ar1_decay(self, rng):
        rho = autocorrelation(_ar1(rng, 20000, 0.7), maxlag=5)
        assert rho[1] == pytest.approx(0.7, abs=0.03)
        assert rho[2] == pytest.approx(0.49, abs=0.04)

    def test_white_noise_uncorrelated(self, rng):
        rho = autocorrelation(rng.normal(size=5000), maxlag=10)
        assert np.all(np.abs(rho[1:]) < 0.05)

    def test_maxlag_too_large(self, rng):
        with pytest.raises(InsufficientSamplesError):
            autocorrelation(rng.normal(size=10), maxlag=10)

    def test_constant_trace(self):
        with pytest.raises(ValueError):
            autocorrelation(np.zeros(100), maxlag=5)


# ============================================================================
# GOODNESS-OF-FIT TESTS
# ============================================================================

class TestDiscrepancy:
    """Test Freeman-Tukey discrepancies and Bayesian p-values."""

    def test_values(self):
        d_obs, d_sim = discrepancy([4.0, 9.0], [[1.0, 4.0], [4.0, 9.0]], [1.0, 4.0])
        np.testing.assert_allclose(d_obs, [2.0, 2.0])
        np.testing.assert_allclose(d_sim, [0.0, 2.0])

    def test_p_value_of_a_correct_model_is_central(self, rng):
        # Data drawn from the model itself gives p-values spread around 0.5
        expected = np.full(20, 100.0)
        p_values = []
        for _ in range(50):
            observed = rng.poisson(expected)
            simulated = rng.poisson(expected, size=(500, 20))
            d_obs, d_sim = discrepancy(observed, simulated, expected)
            p_values.append(bayesian_p_value(d_obs, d_sim))
        assert np.mean(p_values) == pytest.approx(0.5, abs=0.12)

    def test_bad_model_has_extreme_p_value(self, rng):
        expected = np.full(20, 100.0)
        observed = rng.poisson(150.0, size=20)
        simulated = rng.poisson(expected, size=(500, 20))
        assert bayesian_p_value(*discrepancy(observed, simulated, expected)) < 0.01

    def test_p_value_counts(self):
        assert bayesian_p_value([1.0, 2.0, 3.0], [2.0, 2.0, 4.0]) == pytest.approx(2 / 3)

    def test_shape_mismatch(self):
        with pytest.raises(ValueError, match="observed"):
            discrepancy([1.0, 2.0, 3.0], np.ones((4, 2)), np.ones((4, 2)))
        with pytest.raises(ValueError, match="shapes differ"):
            discrepancy([1.0, 2.0], np.ones((4, 2)), np.ones((3, 2)))

    def test_negative_values(self):
        with pytest.raises(ValueError, match="non-negative"):
            discrepancy([-1.0, 2.0], np.ones((4, 2)), np.ones(2))


# ============================================================================
# CROSS-CHAIN TESTS
# ============================================================================

class TestGelmanRubin:
    """Test R-hat for independent chains."""

    def test_mixed_chains_near_one(self, rng):
        assert gelman_rubin(rng.normal(size=(4, 1000))) == pytest.approx(1.0, abs=0.02)

    def test_separated_chains_flagged(self, rng):
        chains = rng.normal(size=(4, 1000)) + np.array([0.0, 0.0, 5.0, 5.0])[:, None]
        assert gelman_rubin(chains) > 1.5

    def test_vector_traces(self, rng):
        rhat = gelman_rubin(rng.normal(size=(3, 500, 2)))
        assert rhat.shape == (2,)
        assert np.all(np.abs(rhat - 1) < 0.05)

    def test_needs_two_chains(self, rng):
        with pytest.raises(InsufficientSamplesError):
            gelman_rubin(rng.normal(size=(1, 100)))


class TestNestedRhat:
    """Test the nested R-hat kernel with synthetic superchains."""

    def test_converged_superchains(self):
        K, M, n_samples, n_params = 4, 10, 20, 5
        key = random.PRNGKey(42)
        superchain_means = random.normal(key, (K, n_params))

        history_list = []
        for k in range(K):
            key, subkey = random.split(key)
            samples = random.normal(subkey, (n_samples, M, n_params)) * 0.1
            history_list.append(samples + superchain_means[k])
        history = jnp.concatenate(history_list, axis=1)

        nrhat = nested_rhat(history, K, M)
        assert nrhat.shape == (n_params,)
        assert jnp.all(jnp.isfinite(nrhat))

    def test_well_mixed_below_threshold(self):
        K, M = 4, 10
        history = random.normal(random.PRNGKey(42), (100, K * M, 3))
        nrhat = nested_rhat(history, K, M)
        threshold = jnp.sqrt(1 + 1 / M + 1e-4)
        assert jnp.all(nrhat < threshold)

    def test_detects_divergent_superchains(self):
        K, M = 4, 5
        key = random.PRNGKey(42)
        history_list = []
        for k in range(K):
            key, subkey = random.split(key)
            history_list.append(random.normal(subkey, (50, M, 1)) + k * 100)
        nrhat = nested_rhat(jnp.concatenate(history_list, axis=1), K, M)
        assert nrhat[0] > 5.0


# ============================================================================
# SUMMARY TESTS
# ============================================================================

class TestTraceStats:
    """Test summary statistics of a trace."""

    def test_standard_normal(self, rng):
        summary = trace_stats(rng.normal(size=10000))
        assert summary['n'] == 10000
        assert summary['mean'] == pytest.approx(0.0, abs=0.05)
        assert summary['standard deviation'] == pytest.approx(1.0, rel=0.05)
        assert summary['mc error'] == pytest.approx(0.01, rel=0.35)
        assert summary['quantiles'][50] == pytest.approx(0.0, abs=0.05)
        lower, upper = summary['95% HPD interval']
        assert lower == pytest.approx(-1.96, abs=0.1)
        assert upper == pytest.approx(1.96, abs=0.1)

    def test_hpd_of_skewed_trace_is_shorter_than_central(self, rng):
        trace = rng.exponential(size=10000)
        lower, upper = trace_stats(trace)['95% HPD interval']
        q = trace_stats(trace)['quantiles']
        assert upper - lower < q[97.5] - q[2.5]
        assert lower < 0.01

    def test_vector_trace(self, rng):
        summary = trace_stats(rng.normal(size=(1000, 3)), alpha=0.1)
        assert summary['mean'].shape == (3,)
        assert summary['90% HPD interval'][0].shape == (3,)

    def test_too_short(self):
        with pytest.raises(InsufficientSamplesError):
            trace_stats([1.0])


class TestAcceptanceSummary:
    """Test the printed acceptance summary."""

    def test_prints_rates(self, normal_data, capsys):
        M = MCMC(test_models.normal_normal_model(normal_data), seed=0)
        M.sample(iter=100)
        print_acceptance_summary(M)
        out = capsys.readouterr().out
        assert 'MH Acceptance Rates (1 step methods)' in out

    def test_flags_low_rates(self, normal_data, capsys):
        M = MCMC(test_models.normal_normal_model(normal_data), seed=0)
        M.use_step_method(Metropolis, M.model['mu'], proposal_sd=1000.0)
        M.sample(iter=100)
        print_acceptance_summary(M.step_methods)
        out = capsys.readouterr().out
        assert 'Low: Metropolis_mu' in out

    def test_silent_without_rates(self, capsys):
        print_acceptance_summary([])
        assert capsys.readouterr().out == ''
