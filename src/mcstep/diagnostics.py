"""
MCMC Diagnostics.

Pure functions over finished traces; none of them touch a live sampler.

Convergence within one chain:
- geweke: z-scores of early windows against the final part of the chain
- raftery_lewis: run length needed to estimate a quantile to a given accuracy
- autocorrelation: normalised autocovariance for lags 0..maxlag

Goodness of fit:
- discrepancy: Freeman-Tukey statistics for observed and simulated data
- bayesian_p_value: fraction of draws where the simulated discrepancy is larger

Across chains:
- nested_rhat: Unified Nested R-hat (Margossian et al., 2022)
- gelman_rubin: standard R-hat for independent chains

Summaries:
- trace_stats: mean, sd, batch-means MC error, quantiles and HPD interval
- print_acceptance_summary: acceptance rates of a sampler's step methods
"""

from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, Optional, Sequence, Tuple

import jax
import jax.numpy as jnp
import numpy as np
from scipy import stats

from .error_handling import InsufficientSamplesError, NonConvergentEstimateError

import logging
logger = logging.getLogger('mcstep')


def _as_1d(trace, what: str = 'trace') -> np.ndarray:
    x = np.asarray(trace, dtype=float)
    if x.ndim == 2 and x.shape[1] == 1:
        x = x[:, 0]
    if x.ndim != 1:
        raise ValueError(f"{what} must be one-dimensional, got shape {x.shape}; select a component first")
    return x


# =============================================================================
# AUTOCORRELATION
# =============================================================================

@partial(jax.jit, static_argnums=(1, 2))
def _autocorrelation_fft(x: jnp.ndarray, maxlag: int, nfft: int) -> jnp.ndarray:
    centred = x - jnp.mean(x)
    spectrum = jnp.fft.rfft(centred, n=nfft)
    acov = jnp.fft.irfft(spectrum * jnp.conj(spectrum), n=nfft)[:maxlag + 1]
    return acov / acov[0]


def autocorrelation(trace, maxlag: int = 100) -> np.ndarray:
    """
    Normalised autocovariance for lags 0..maxlag.

    Args:
        trace: One-dimensional trace
        maxlag: Largest lag

    Returns:
        (maxlag + 1,) array with rho[0] == 1

    Raises:
        InsufficientSamplesError: If maxlag >= len(trace)
        ValueError: If the trace is constant (autocorrelation undefined)
    """
    x = _as_1d(trace)
    n = x.shape[0]
    if maxlag < 0:
        raise ValueError(f"maxlag must be >= 0, got {maxlag}")
    if maxlag >= n:
        raise InsufficientSamplesError(f"maxlag ({maxlag}) must be smaller than the trace length ({n})")
    if np.var(x) == 0:
        raise ValueError("Autocorrelation of a constant trace is undefined")

    # Zero-padding to >= 2n makes the circular correlation linear
    nfft = int(2 ** np.ceil(np.log2(2 * n)))
    rho = np.array(_autocorrelation_fft(jnp.asarray(x), int(maxlag), nfft))
    rho[0] = 1.0
    return rho


# =============================================================================
# GEWEKE
# =============================================================================

@jax.jit
def _geweke_scores(x: jnp.ndarray, early_mask: jnp.ndarray, late_mask: jnp.ndarray) -> jnp.ndarray:
    def window_moments(mask):
        weights = mask.astype(x.dtype)
        count = jnp.sum(weights, axis=1)
        mean = jnp.sum(weights * x[None, :], axis=1) / count
        var = jnp.sum(weights * (x[None, :] - mean[:, None]) ** 2, axis=1) / count
        return mean, var

    mean_e, var_e = window_moments(early_mask)
    mean_l, var_l = window_moments(late_mask)
    return (mean_e - mean_l) / jnp.sqrt(var_e + var_l)


def geweke(trace, first: float = 0.1, last: float = 0.5, intervals: int = 20) -> np.ndarray:
    """
    Geweke z-scores along the first half of a chain.

    With end = len(trace) - 1, `intervals` start offsets are spaced evenly
    over [0, end // 2]. For each start the early window is
    trace[start : start + first * (end - start)] and the late window is the
    final last * (end - start) samples. Each score is

        z = (mean(early) - mean(late)) / sqrt(var(early) + var(late))

    Both windows are fractions of the span end - start, not of the full
    trace, so the late window shrinks as the start offset moves forward.
    With first + last < 1 the two windows never overlap at any offset.

    Args:
        trace: One-dimensional trace
        first: Fraction of the remaining chain in each early window
        last: Fraction of the remaining chain in each late window
        intervals: Number of start offsets

    Returns:
        (intervals, 2) array of (start index, z-score) rows

    Raises:
        ValueError: If first + last >= 1 or either fraction is outside (0, 1)
        InsufficientSamplesError: If a window would hold fewer than 2 samples
    """
    if not (0 < first < 1 and 0 < last < 1):
        raise ValueError(f"first and last must lie in (0, 1), got first={first}, last={last}")
    if first + last >= 1:
        raise ValueError(f"Invalid intervals for Geweke: first + last = {first + last} >= 1")
    if intervals < 1:
        raise ValueError(f"intervals must be >= 1, got {intervals}")

    x = _as_1d(trace)
    n = x.shape[0]
    end = n - 1
    starts = np.linspace(0, end // 2, intervals).astype(int) if n > 1 else np.zeros(intervals, dtype=int)

    index = np.arange(n)
    spans = end - starts
    early_stop = starts + (first * spans).astype(int)
    late_start = (end - last * spans).astype(int)
    early_mask = (index[None, :] >= starts[:, None]) & (index[None, :] < early_stop[:, None])
    late_mask = index[None, :] >= late_start[:, None]

    shortest = min(early_mask.sum(axis=1).min(), late_mask.sum(axis=1).min())
    if shortest < 2:
        raise InsufficientSamplesError(
            f"Trace of length {n} is too short for Geweke windows (first={first}, last={last})"
        )
    if np.var(x) == 0:
        raise ValueError("Geweke scores of a constant trace are undefined")

    z = np.asarray(_geweke_scores(jnp.asarray(x), jnp.asarray(early_mask), jnp.asarray(late_mask)))
    return np.column_stack([starts, z])


# =============================================================================
# RAFTERY-LEWIS
# =============================================================================

@dataclass
class RafteryLewisResult:
    """
    Run-length estimate for a quantile.

    Fields:
        thin: Thinning interval at which the indicator chain is first-order Markov
        burn: Burn-in iterations
        total: Total iterations (burn-in plus the iterations needed for precision)
        nmin: Iterations needed if samples were independent
        kmind: Thinning interval at which the indicator chain looks independent (None if not found)
        alpha: Estimated P(0 -> 1) of the thinned indicator chain
        beta: Estimated P(1 -> 0) of the thinned indicator chain
    """
    thin: int
    burn: int
    total: int
    nmin: int
    kmind: Optional[int]
    alpha: float
    beta: float

    @property
    def dependence_factor(self) -> float:
        """total / nmin: how much autocorrelation inflates the required run."""
        return self.total / self.nmin

    def as_tuple(self) -> Tuple[int, int, int, int, Optional[int]]:
        return self.nmin, self.thin, self.burn, self.total, self.kmind


def _second_order_bic(z: np.ndarray) -> float:
    """BIC of a second-order against a first-order model; negative favours first order."""
    n = z.shape[0] - 2
    counts = np.zeros((2, 2, 2))
    np.add.at(counts, (z[:-2], z[1:-1], z[2:]), 1)

    # Conditional independence of z[t] and z[t+2] given z[t+1]
    via_first = counts.sum(axis=2, keepdims=True)
    via_last = counts.sum(axis=0, keepdims=True)
    middle = counts.sum(axis=(0, 2), keepdims=True)
    with np.errstate(divide='ignore', invalid='ignore'):
        fitted = via_first * via_last / middle
        terms = np.where(counts > 0, counts * np.log(counts / fitted), 0.0)
    g2 = 2.0 * terms.sum()
    return g2 - 2.0 * np.log(n)


def _independence_bic(z: np.ndarray) -> float:
    """BIC of a first-order against an independence model; negative favours independence."""
    n = z.shape[0] - 1
    counts = np.zeros((2, 2))
    np.add.at(counts, (z[:-1], z[1:]), 1)
    with np.errstate(divide='ignore', invalid='ignore'):
        fitted = counts.sum(axis=1, keepdims=True) * counts.sum(axis=0, keepdims=True) / n
        terms = np.where(counts > 0, counts * np.log(counts / fitted), 0.0)
    g2 = 2.0 * terms.sum()
    return g2 - np.log(n)


def raftery_lewis(trace, q: float, r: float, s: float = 0.95, epsilon: float = 0.001,
                  max_thin: int = 50, verbose: int = 0) -> RafteryLewisResult:
    """
    Raftery-Lewis run-length diagnostic.

    The trace is reduced to the indicator Z[j] = trace[j] <= quantile(trace, q).
    The smallest thinning k (up to max_thin) at which a first-order Markov
    model fits the k-thinned indicator chain at least as well as a
    second-order one, by BIC, is the thinning interval. From that chain's
    transition probabilities alpha = P(0 -> 1) and beta = P(1 -> 0):

        m     = log(epsilon (alpha + beta) / max(alpha, beta)) / log|1 - alpha - beta|
        burn  = (floor(m) + 1) k
        n     = (2 - alpha - beta) alpha beta Phi^2 / ((alpha + beta)^3 r^2)
        total = burn + (floor(n) + 1) k
        nmin  = ceil(q (1 - q) (Phi / r)^2),   Phi = norm.ppf((1 + s) / 2)

    Args:
        trace: One-dimensional trace
        q: Quantile to estimate
        r: Desired accuracy of the quantile estimate
        s: Probability of attaining accuracy r
        epsilon: Tolerance on the distance to the stationary distribution after burn-in
        max_thin: Largest thinning interval searched
        verbose: Log the estimate when > 0

    Raises:
        InsufficientSamplesError: If the trace is shorter than nmin
        NonConvergentEstimateError: If no thinning interval passes the Markov-order
            test, or the thinned indicator chain never changes state
    """
    if not 0 < q < 1:
        raise ValueError(f"q must lie in (0, 1), got {q}")
    if r <= 0 or not 0 < s < 1 or epsilon <= 0:
        raise ValueError(f"Invalid accuracy settings r={r}, s={s}, epsilon={epsilon}")

    x = _as_1d(trace)
    n = x.shape[0]
    phi = stats.norm.ppf(0.5 * (1.0 + s))
    nmin = int(np.ceil(q * (1.0 - q) * (phi / r) ** 2))
    if n < nmin:
        raise InsufficientSamplesError(
            f"Raftery-Lewis needs at least {nmin} samples for q={q}, r={r}, s={s}; trace has {n}"
        )

    z = (x <= np.quantile(x, q)).astype(int)

    kthin = None
    for k in range(1, max_thin + 1):
        thinned = z[::k]
        if thinned.shape[0] < 3:
            break
        if _second_order_bic(thinned) < 0:
            kthin = k
            break
    if kthin is None:
        raise NonConvergentEstimateError(
            f"No thinning interval up to {max_thin} makes the indicator chain first-order Markov"
        )

    kmind = None
    for k in range(kthin, max_thin * kthin + 1, kthin):
        thinned = z[::k]
        if thinned.shape[0] < 2:
            break
        if _independence_bic(thinned) < 0:
            kmind = k
            break

    thinned = z[::kthin]
    transitions = np.zeros((2, 2))
    np.add.at(transitions, (thinned[:-1], thinned[1:]), 1)
    leaving = transitions.sum(axis=1)
    if np.any(leaving == 0) or transitions[0, 1] == 0 or transitions[1, 0] == 0:
        raise NonConvergentEstimateError(
            "Indicator chain never changes state; transition probabilities cannot be estimated"
        )
    alpha = transitions[0, 1] / leaving[0]
    beta = transitions[1, 0] / leaving[1]

    with np.errstate(divide='ignore'):
        m = np.log(epsilon * (alpha + beta) / max(alpha, beta)) / np.log(abs(1.0 - alpha - beta))
    nburn = (int(np.floor(m)) + 1) * kthin if np.isfinite(m) else kthin
    nprec_raw = (2.0 - alpha - beta) * alpha * beta * phi ** 2 / ((alpha + beta) ** 3 * r ** 2)
    nprec = (int(np.floor(nprec_raw)) + 1) * kthin

    result = RafteryLewisResult(
        thin=kthin, burn=nburn, total=nburn + nprec, nmin=nmin,
        kmind=kmind, alpha=float(alpha), beta=float(beta),
    )
    if verbose > 0:
        logger.info(
            f"Raftery-Lewis (q={q}, r={r}, s={s}): thin {result.thin}, burn {result.burn}, "
            f"total {result.total}, nmin {result.nmin}, I = {result.dependence_factor:.2f}"
        )
    return result


# =============================================================================
# GOODNESS OF FIT
# =============================================================================

@jax.jit
def _freeman_tukey(x: jnp.ndarray, expected: jnp.ndarray) -> jnp.ndarray:
    return jnp.sum((jnp.sqrt(x) - jnp.sqrt(expected)) ** 2, axis=-1)


def discrepancy(observed, simulated, expected) -> Tuple[np.ndarray, np.ndarray]:
    """
    Freeman-Tukey discrepancies sum_j (sqrt(x_j) - sqrt(e_j))^2 per posterior draw.

    Args:
        observed: Observed data (n_obs,)
        simulated: Posterior predictive draws (n_draws, n_obs)
        expected: Expected values per draw (n_draws, n_obs), or (n_obs,) shared by all draws

    Returns:
        (D_observed, D_simulated), each (n_draws,)
    """
    observed = np.asarray(observed, dtype=float)
    simulated = np.atleast_2d(np.asarray(simulated, dtype=float))
    expected = np.asarray(expected, dtype=float)
    if expected.ndim == 1:
        expected = np.broadcast_to(expected, simulated.shape)

    if simulated.shape != expected.shape:
        raise ValueError(f"simulated {simulated.shape} and expected {expected.shape} shapes differ")
    if observed.shape != simulated.shape[1:]:
        raise ValueError(f"observed {observed.shape} does not match one draw {simulated.shape[1:]}")
    for label, values in (('observed', observed), ('simulated', simulated), ('expected', expected)):
        if np.any(values < 0):
            raise ValueError(f"Freeman-Tukey discrepancy needs non-negative {label} values")

    obs = np.broadcast_to(observed, simulated.shape)
    d_obs = np.asarray(_freeman_tukey(jnp.asarray(obs), jnp.asarray(expected)))
    d_sim = np.asarray(_freeman_tukey(jnp.asarray(simulated), jnp.asarray(expected)))
    return d_obs, d_sim


def bayesian_p_value(d_observed, d_simulated) -> float:
    """Fraction of draws where the simulated discrepancy exceeds the observed one."""
    d_observed = np.asarray(d_observed, dtype=float)
    d_simulated = np.asarray(d_simulated, dtype=float)
    if d_observed.shape != d_simulated.shape or d_observed.size == 0:
        raise ValueError("Discrepancy arrays must be non-empty and of equal shape")
    return float(np.mean(d_simulated > d_observed))


# =============================================================================
# CROSS-CHAIN
# =============================================================================

@partial(jax.jit, static_argnums=(1, 2))
def nested_rhat(history: jnp.ndarray, K: int, M: int) -> jnp.ndarray:
    """
    Unified Nested R-hat Diagnostic (Margossian et al., 2022).

    Structure:
      - K: Number of superchains (independent starting points).
      - M: Number of subchains per superchain.

    With M = 1 this is the standard Gelman-Rubin R-hat over K chains.

    Args:
        history: Sample history array (n_samples, n_chains, n_params)
        K: Number of superchains
        M: Number of subchains per superchain

    Returns:
        nrhat: (n_params,) array of R-hat values.
    """
    n_samples, n_chains, n_params = history.shape

    # (n_samples, K, M, n_params)
    history_nested = history.reshape(n_samples, K, M, n_params)

    superchain_means_over_time = jnp.mean(history_nested, axis=2)
    superchain_means = jnp.mean(superchain_means_over_time, axis=0)

    # Between-superchain variance
    B = n_samples * jnp.var(superchain_means, axis=0, ddof=1)

    # Within-superchain variance: spread of subchains plus variance over time
    if M > 1:
        subchain_means_t = jnp.mean(history_nested, axis=0)
        B_within = jnp.var(subchain_means_t, axis=1, ddof=1)
    else:
        B_within = jnp.zeros((K, n_params))

    if n_samples > 1:
        W_within = jnp.mean(jnp.var(history_nested, axis=0, ddof=1), axis=1)
    else:
        W_within = jnp.zeros((K, n_params))

    W = jnp.mean(B_within + W_within, axis=0)

    n = n_samples
    V_hat = ((n - 1) / n) * W + B / n + B / (K * n)

    # Stuck parameters show up as NaN/inf
    return jnp.sqrt(V_hat / W)


def gelman_rubin(chains) -> np.ndarray:
    """
    Standard R-hat for independent chains of equal length.

    Args:
        chains: (n_chains, n_samples) or (n_chains, n_samples, ...) array,
            e.g. from chains.stack_chain_traces

    Returns:
        R-hat with the trailing shape of one sample (a float for scalar traces)

    Raises:
        InsufficientSamplesError: With fewer than 2 chains or 2 samples per chain
    """
    x = np.asarray(chains, dtype=float)
    if x.ndim < 2:
        raise ValueError(f"chains must be at least two-dimensional, got shape {x.shape}")
    n_chains, n_samples = x.shape[:2]
    if n_chains < 2 or n_samples < 2:
        raise InsufficientSamplesError(
            f"Gelman-Rubin needs >= 2 chains of >= 2 samples, got {n_chains} x {n_samples}"
        )
    sample_shape = x.shape[2:]
    history = np.moveaxis(x.reshape(n_chains, n_samples, -1), 0, 1)
    rhat = np.asarray(nested_rhat(jnp.asarray(history), n_chains, 1))
    if not sample_shape:
        return float(rhat[0])
    return rhat.reshape(sample_shape)


# =============================================================================
# SUMMARIES
# =============================================================================

def _hpd(column: np.ndarray, alpha: float) -> Tuple[float, float]:
    ordered = np.sort(column)
    n = ordered.shape[0]
    width = int(np.ceil((1.0 - alpha) * n))
    width = min(max(width, 1), n)
    spans = ordered[width - 1:] - ordered[:n - width + 1]
    lo = int(np.argmin(spans))
    return float(ordered[lo]), float(ordered[lo + width - 1])


def _batch_means_error(column: np.ndarray, batches: int) -> float:
    size = column.shape[0] // batches
    means = column[:size * batches].reshape(batches, size).mean(axis=1)
    return float(np.std(means, ddof=1) / np.sqrt(batches))


def trace_stats(trace, alpha: float = 0.05, batches: int = 100,
                quantiles: Sequence[float] = (2.5, 25, 50, 75, 97.5)) -> Dict[str, Any]:
    """
    Summary statistics of a trace.

    Args:
        trace: (n_samples,) or (n_samples, ...) array
        alpha: 1 - credibility of the HPD interval
        batches: Number of batches for the batch-means Monte Carlo error
        quantiles: Percentiles to report

    Returns:
        Dict with n, mean, standard deviation, mc error, quantiles
        (percentile -> value) and hpd (lower, upper), each shaped like one sample
    """
    x = np.asarray(trace, dtype=float)
    n = x.shape[0]
    if n < 2:
        raise InsufficientSamplesError(f"trace_stats needs at least 2 samples, got {n}")
    batches = max(2, min(batches, n // 2))

    sample_shape = x.shape[1:]
    flat = x.reshape(n, -1)
    columns = [flat[:, j] for j in range(flat.shape[1])]

    def shaped(values):
        values = np.asarray(values)
        return float(values[0]) if not sample_shape else values.reshape(sample_shape)

    hpd = [_hpd(c, alpha) for c in columns]
    return {
        'n': n,
        'mean': shaped(flat.mean(axis=0)),
        'standard deviation': shaped(flat.std(axis=0, ddof=1)),
        'mc error': shaped([_batch_means_error(c, batches) for c in columns]),
        'quantiles': {p: shaped(np.percentile(flat, p, axis=0)) for p in quantiles},
        f'{int(round(100 * (1 - alpha)))}% HPD interval': (
            shaped([h[0] for h in hpd]), shaped([h[1] for h in hpd])
        ),
    }


def print_acceptance_summary(step_methods) -> None:
    """
    Print summary statistics for step-method acceptance rates.

    Args:
        step_methods: A sampler (its step_methods are used) or a list of step methods
    """
    step_methods = getattr(step_methods, 'step_methods', step_methods)
    rates = []
    labels = []
    for sm in step_methods:
        if sm.acceptance_rate is not None:
            rates.append(sm.acceptance_rate)
            labels.append(sm.label)

    if not rates:
        return

    rates = np.array(rates)
    print(f"\n--- MH Acceptance Rates ({len(rates)} step methods) ---")
    print(f"  Mean: {np.mean(rates):.1%}  Median: {np.median(rates):.1%}  "
          f"Min: {np.min(rates):.1%}  Max: {np.max(rates):.1%}")

    low_rate_mask = rates < 0.10
    if np.any(low_rate_mask):
        low_count = np.sum(low_rate_mask)
        low_labels = [lbl for lbl, is_low in zip(labels, low_rate_mask) if is_low]
        print(f"  WARNING: {low_count} step method(s) have acceptance rate < 10%")
        if low_count <= 10:
            print(f"    Low: {', '.join(low_labels)}")
