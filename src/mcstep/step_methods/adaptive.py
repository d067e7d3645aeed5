"""
AdaptiveMetropolis - joint update of several continuous nodes with a learned covariance.

The owned nodes are flattened into one vector x of dimension d and proposed
jointly:

    x' = x + L z,   z ~ N(0, I),   L L^T = adaptive_scale_factor * C

Covariance phases (applied by tune(), so only at the sampler's tuning checkpoints):
    1. Warm-up: C is the initial covariance until `delay` iterations have
       elapsed (greedy=False) or `delay` proposals have been accepted
       (greedy=True). The initial covariance is the user's `cov`, or
       diag((scale_i * x0_i)^2) from `scales` (scale_i^2 where x0_i is 0),
       or the identity.
    2. Estimation: at the first tune() after warm-up C is replaced by the
       empirical covariance of every state visited so far:
           C = (2.38^2 / d) * (Cov(x_1..x_n) + eps * I)
    3. Steady state: at every tune() that finds at least `interval` new
       states the running mean and covariance are updated recursively from
       those states only (pooled-covariance update), never from the full
       history. With shrink_if_necessary, a chunk acceptance rate below 5%
       blends C toward its diagonal and scales it down.

step() only records visited states and acceptances. When the sampler stops
tuning it clears `adapting`; from then on no states are buffered and C stays
fixed for the rest of the run.

The kernel depends on the sampling history, so the chain is not Markov;
it still targets the posterior because the updates use ever more samples
and so change C less and less (diminishing adaptation).
"""

from typing import Dict, List, Optional

import numpy as np

from ..error_handling import ProposalDomainError
from ..settings import (
    AM_SCALING,
    AM_EPSILON,
    AM_SHRINK_THRESHOLD,
    AM_SHRINK_FACTOR,
    AM_SHRINK_BLEND,
)
from .base import StepMethod

import logging
logger = logging.getLogger('mcstep')


def recursive_covariance(cov_n: np.ndarray, mean_n: np.ndarray, n: int, chunk: np.ndarray):
    """
    Pool a sample covariance over n points with a new chunk of k points.

    Args:
        cov_n: Sample covariance (ddof=1) of the first n points (d, d)
        mean_n: Mean of the first n points (d,)
        n: Number of points summarised by cov_n / mean_n
        chunk: New points (k, d)

    Returns:
        (cov, mean, n + k) for all n + k points
    """
    k = chunk.shape[0]
    mean_k = chunk.mean(axis=0)
    if k > 1:
        cov_k = np.atleast_2d(np.cov(chunk, rowvar=False))
    else:
        cov_k = np.zeros_like(cov_n)
    total = n + k
    delta = mean_n - mean_k
    pooled = ((n - 1) * cov_n + (k - 1) * cov_k + (n * k / total) * np.outer(delta, delta)) / (total - 1)
    mean = (n * mean_n + k * mean_k) / total
    return pooled, mean, total


class AdaptiveMetropolis(StepMethod):
    """
    Args:
        stochastics: Sequence of float-valued stochastics updated jointly
        cov: Initial covariance (d, d); overrides `scales`
        delay: Warm-up length (iterations, or accepted proposals when greedy)
        interval: New states needed before tune() updates C recursively
        greedy: Count accepted proposals (True) or iterations (False) during warm-up
        shrink_if_necessary: Shrink C when the chunk acceptance rate collapses
        scales: Dict node -> scale (scalar or array) for the initial diagonal covariance
        label, tally, verbose: see StepMethod
    """

    _tuning_info = ['adaptive_scale_factor']
    _state = StepMethod._state + [
        'adaptive_scale_factor', 'C', '_chain', '_mean', '_cov', '_n',
        '_estimated', '_iterations', '_warmup_accepted', '_chunk_accepted',
    ]

    def __init__(self, stochastics, cov=None, delay: int = 1000, interval: int = 200,
                 greedy: bool = True, shrink_if_necessary: bool = False,
                 scales: Optional[Dict] = None, label: Optional[str] = None,
                 tally: bool = True, verbose: int = 0):
        super().__init__(stochastics, label=label, tally=tally, verbose=verbose)

        for node in self.stochastics:
            if node.dtype.kind != 'f':
                raise ValueError(
                    f"AdaptiveMetropolis needs float-valued nodes, '{node.name}' is {node.dtype}"
                )
        if delay < 1:
            raise ValueError(f"delay must be >= 1, got {delay}")
        if interval < 1:
            raise ValueError(f"interval must be >= 1, got {interval}")

        self._slices: List[slice] = []
        offset = 0
        for node in self.stochastics:
            size = int(np.prod(node.shape, dtype=int))
            self._slices.append(slice(offset, offset + size))
            offset += size
        self.dim = offset

        self.delay = int(delay)
        self.interval = int(interval)
        self.greedy = bool(greedy)
        self.shrink_if_necessary = bool(shrink_if_necessary)

        self.C0 = self._initial_covariance(cov, scales)
        self.C = self.C0.copy()
        self.adaptive_scale_factor = 1.0
        self._scaling = AM_SCALING / self.dim

        # States visited since sampling began (warm-up) or since the last update
        self._chain: List[np.ndarray] = []
        self._mean: Optional[np.ndarray] = None
        self._cov: Optional[np.ndarray] = None
        self._n = 0
        self._estimated = False
        self._iterations = 0
        self._warmup_accepted = 0
        self._chunk_accepted = 0

    @staticmethod
    def competence(node) -> int:
        # Only used when assigned explicitly
        return 0

    # ------------------------------------------------------------------
    # Flattening
    # ------------------------------------------------------------------

    def flat_value(self) -> np.ndarray:
        return np.concatenate([np.ravel(node.value).astype(float) for node in self.stochastics])

    def _set_flat(self, vector: np.ndarray) -> None:
        for node, slc in zip(self.stochastics, self._slices):
            node.value = vector[slc].reshape(node.shape)

    def _initial_covariance(self, cov, scales) -> np.ndarray:
        if cov is not None:
            cov = np.atleast_2d(np.asarray(cov, dtype=float))
            if cov.shape != (self.dim, self.dim):
                raise ValueError(f"cov must have shape {(self.dim, self.dim)}, got {cov.shape}")
            return cov.copy()
        if scales is None:
            return np.eye(self.dim)

        diagonal = np.ones(self.dim)
        by_name = {getattr(k, 'name', k): v for k, v in scales.items()}
        for node, slc in zip(self.stochastics, self._slices):
            if node.name not in by_name:
                continue
            scale = np.broadcast_to(np.asarray(by_name[node.name], dtype=float), node.shape).ravel()
            value = np.ravel(node.value).astype(float)
            entry = (scale * value) ** 2
            diagonal[slc] = np.where(entry > 0, entry, scale ** 2)
        return np.diag(diagonal)

    # ------------------------------------------------------------------
    # Proposal
    # ------------------------------------------------------------------

    @property
    def proposal_covariance(self) -> np.ndarray:
        return self.C * self.adaptive_scale_factor

    def _cholesky(self, matrix: np.ndarray) -> np.ndarray:
        jitter = 0.0
        for _ in range(6):
            try:
                return np.linalg.cholesky(matrix + jitter * np.eye(self.dim))
            except np.linalg.LinAlgError:
                jitter = AM_EPSILON if jitter == 0.0 else jitter * 10
        raise ProposalDomainError(f"{self.label}: proposal covariance is not positive definite")

    def propose(self) -> None:
        L = self._cholesky(self.proposal_covariance)
        current = self.flat_value()
        self._set_flat(current + L @ self.rng.standard_normal(self.dim))

    def step(self) -> bool:
        accepted = super().step()
        if not self.adapting:
            self._chain = []
            return accepted
        self._iterations += 1
        if accepted:
            self._warmup_accepted += 1
            self._chunk_accepted += 1
        self._chain.append(self.flat_value())
        return accepted

    def tune(self) -> bool:
        """
        Rescale adaptive_scale_factor, then advance the covariance phases
        from the states buffered since the previous call.

        Returns:
            True if the scale factor or C changed
        """
        changed = super().tune()
        if not self.adapting:
            return changed
        return self._update_covariance() or changed

    # ------------------------------------------------------------------
    # Covariance adaptation
    # ------------------------------------------------------------------

    def _warmup_done(self) -> bool:
        if self.greedy:
            return self._warmup_accepted >= self.delay
        return self._iterations >= self.delay

    def _update_covariance(self) -> bool:
        if not self._estimated:
            if self._warmup_done() and len(self._chain) >= 2:
                self._estimate_from_chain()
                return True
            return False

        if len(self._chain) < self.interval:
            return False
        chunk = np.asarray(self._chain)
        acceptance = self._chunk_accepted / len(self._chain)
        self._cov, self._mean, self._n = recursive_covariance(self._cov, self._mean, self._n, chunk)
        self.C = self._scaling * (self._cov + AM_EPSILON * np.eye(self.dim))
        if self.shrink_if_necessary and acceptance < AM_SHRINK_THRESHOLD:
            self._shrink()
        self._chain = []
        self._chunk_accepted = 0
        return True

    def _estimate_from_chain(self) -> None:
        samples = np.asarray(self._chain)
        self._mean = samples.mean(axis=0)
        self._cov = np.atleast_2d(np.cov(samples, rowvar=False))
        self._n = samples.shape[0]
        self.C = self._scaling * (self._cov + AM_EPSILON * np.eye(self.dim))
        self._estimated = True
        self._chain = []
        self._chunk_accepted = 0
        if self.verbose > 0:
            logger.info(f"{self.label}: covariance estimated from {self._n} states")

    def _shrink(self) -> None:
        diagonal = np.diag(np.diag(self.C))
        self.C = AM_SHRINK_FACTOR * (AM_SHRINK_BLEND * self.C + (1.0 - AM_SHRINK_BLEND) * diagonal)
        if self.verbose > 0:
            logger.info(f"{self.label}: low acceptance, covariance shrunk")
