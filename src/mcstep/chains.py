"""
Independent chains for cross-chain diagnostics.

Each chain is a separate sampler built by a user factory, so chains share
no model, step method or trace store. Seeds are spawned from one
SeedSequence, which makes the set of chains reproducible and the streams
statistically independent.

    def build(seed):
        return MCMC(make_model(), seed=seed)

    samplers = run_independent_chains(build, n_chains=4, iter=5000, burn=1000)
    rhat = gelman_rubin(stack_chain_traces(samplers, 'mu'))
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional

import numpy as np

from .sampler import Sampler
from .settings import SamplerStatus

import logging
logger = logging.getLogger('mcstep')


def run_independent_chains(factory: Callable[[np.random.SeedSequence], Sampler], n_chains: int,
                           iter: int, seed=None, max_workers: Optional[int] = None,
                           **config) -> List[Sampler]:
    """
    Build and run `n_chains` samplers concurrently.

    Args:
        factory: fn(seed_sequence) -> a new Sampler with its own model
        n_chains: Number of chains
        iter: Iterations per chain
        seed: Root seed for the SeedSequence
        max_workers: Thread pool size (default: n_chains)
        **config: Run configuration passed to every sample() call

    Returns:
        Samplers in chain order, each FINISHED (or HALTED if interrupted)

    Raises:
        Whatever a chain raises; the remaining chains still run to completion
    """
    if n_chains < 1:
        raise ValueError(f"n_chains must be >= 1, got {n_chains}")

    seeds = np.random.SeedSequence(seed).spawn(n_chains)
    samplers = []
    for i, child in enumerate(seeds):
        sampler = factory(child)
        if not isinstance(sampler, Sampler):
            raise TypeError(f"Chain factory must return a Sampler, got {type(sampler).__name__}")
        if any(sampler.model is other.model for other in samplers):
            raise ValueError(f"Chain {i} shares its model with another chain; build a new model per chain")
        samplers.append(sampler)

    logger.info(f"Running {n_chains} independent chains ({iter} iterations each)")
    with ThreadPoolExecutor(max_workers=max_workers or n_chains) as executor:
        future_to_idx = {
            executor.submit(sampler.sample, iter, **config): i
            for i, sampler in enumerate(samplers)
        }
        errors = []
        for future in as_completed(future_to_idx):
            idx = future_to_idx[future]
            try:
                future.result()
            except Exception as e:
                logger.error(f"Chain {idx} failed: {e}")
                errors.append(e)
    if errors:
        raise errors[0]

    return samplers


def stack_chain_traces(samplers: List[Sampler], name: str, chain: int = -1) -> np.ndarray:
    """
    Stack one traced quantity from several finished samplers.

    Returns:
        (n_chains, n_samples, ...) array for gelman_rubin / nested_rhat

    Raises:
        RuntimeError: If any sampler has not finished
        ValueError: If trace lengths differ
    """
    unfinished = [i for i, s in enumerate(samplers) if s.status != SamplerStatus.FINISHED]
    if unfinished:
        raise RuntimeError(f"Chains {unfinished} have not finished sampling")

    traces = [np.asarray(s.trace(name, chain)) for s in samplers]
    lengths = {t.shape[0] for t in traces}
    if len(lengths) > 1:
        raise ValueError(f"Trace '{name}' has different lengths across chains: {sorted(lengths)}")
    return np.stack(traces)
