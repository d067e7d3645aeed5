"""
mcstep - Markov Chain Monte Carlo with Self-Tuning Step Methods

Public API:
    Model Building:
        Stochastic - Random variable with a log-density (observed or not)
        Deterministic - Value computed from its parents
        Potential - Extra log-probability term
        Model - Node container with topological generations

    Samplers:
        Sampler - Plain Monte Carlo loop (prior draws)
        MCMC - Metropolis-Hastings sampler built from step methods
        TuningSchedule - Tuning checkpoint schedule (burn-in, diminishing adaptation)

    Step Methods:
        StepMethod - Base class
        Metropolis - Random-walk / prior-redraw update of a float node
        DiscreteMetropolis - Update of an integer node
        BinaryMetropolis - Update of a boolean node
        AdaptiveMetropolis - Joint update with a learned covariance

    Registration:
        register_step_method - Add a step method to automatic assignment
        get_step_method - Retrieve a registered step method
        list_step_methods - List registered step methods
        pick_best_step_method - Most competent registered step method for a node

    Diagnostics:
        geweke, raftery_lewis, autocorrelation - Convergence within a chain
        discrepancy, bayesian_p_value - Goodness of fit
        gelman_rubin, nested_rhat - Convergence across chains
        trace_stats - Posterior summary of a trace

    Storage & Checkpointing:
        RamDatabase - In-memory trace store
        ChainState - Snapshot of a sampler
        save_checkpoint - Save a snapshot to disk
        load_checkpoint - Load a snapshot from disk

    Independent Chains:
        run_independent_chains - Run several samplers concurrently
        stack_chain_traces - Collect one quantity across chains

Example:
    from scipy import stats
    from mcstep import Stochastic, MCMC

    mu = Stochastic('mu', logp=lambda value: stats.norm.logpdf(value, 0, 10), value=0.0)
    y = Stochastic('y', logp=lambda value, mu: stats.norm.logpdf(value, mu, 1),
                   value=data, parents={'mu': mu}, observed=True)

    M = MCMC([mu, y], seed=42)
    M.sample(iter=10000, burn=5000)
    print(M.trace('mu').mean())
"""
# CRITICAL: Import jax_config FIRST to set environment variables before JAX loads
from . import jax_config  # noqa: F401

from .error_handling import (
    MCStepError,
    CyclicGraphError,
    NotRandomError,
    ProposalDomainError,
    InsufficientSamplesError,
    NonConvergentEstimateError,
    diagnose_sampler_issues,
    print_diagnostics,
)
from .settings import ProposalDistribution, SamplerStatus
from .nodes import Stochastic, Deterministic, Potential
from .model import Model
from .database import RamDatabase, ChainState
from .checkpoint_io import save_checkpoint, load_checkpoint
from .step_methods import (
    StepMethod,
    Metropolis,
    DiscreteMetropolis,
    BinaryMetropolis,
    AdaptiveMetropolis,
)
from .registry import (
    register_step_method,
    get_step_method,
    list_step_methods,
    clear_registry,
    reset_registry,
    pick_best_step_method,
)
from .sampler import Sampler, TuningSchedule
from .mcmc import MCMC
from .diagnostics import (
    geweke,
    raftery_lewis,
    RafteryLewisResult,
    autocorrelation,
    discrepancy,
    bayesian_p_value,
    nested_rhat,
    gelman_rubin,
    trace_stats,
    print_acceptance_summary,
)
from .chains import run_independent_chains, stack_chain_traces

__version__ = '0.1.0'
