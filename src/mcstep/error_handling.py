"""
Error Types and Run Validation for mcstep

This module defines the exception taxonomy raised by model construction,
sampling and the trace diagnostics, plus post-run checks that look for
common sampler problems.

Exception hierarchy:
    MCStepError
    ├── CyclicGraphError          - model dependency graph has a cycle
    ├── NotRandomError            - prior draw requested from a node without `random`
    ├── ProposalDomainError       - a proposal produced an undefined log-probability
    ├── InsufficientSamplesError  - a diagnostic was given too short a trace
    └── NonConvergentEstimateError - Raftery-Lewis thinning search failed
"""

from typing import Any, Dict, Iterable, Optional

import numpy as np

import logging
logger = logging.getLogger('mcstep')


class MCStepError(Exception):
    """Base class for all mcstep domain errors."""


class CyclicGraphError(MCStepError):
    """Raised when the parent/child graph of a model contains a cycle."""

    def __init__(self, unresolved):
        self.unresolved = sorted(unresolved)
        super().__init__(
            f"Dependency cycle detected among nodes: {', '.join(self.unresolved)}"
        )


class NotRandomError(MCStepError):
    """Raised when a prior draw is requested from a node that cannot draw."""


class ProposalDomainError(MCStepError):
    """Raised when a step leaves the model with an undefined (NaN) log-probability."""


class InsufficientSamplesError(MCStepError):
    """Raised when a diagnostic needs more samples than the trace holds."""


class NonConvergentEstimateError(MCStepError):
    """Raised when the Raftery-Lewis thinning search finds no adequate interval."""


def check_log_probability(logp: float, context: str) -> float:
    """
    Validate a log-probability computed after a proposal.

    -inf is a legitimate value (zero probability, the proposal is rejected).
    NaN means the model math is undefined at the proposed point.

    Raises:
        ProposalDomainError: If logp is NaN
    """
    logp = float(logp)
    if np.isnan(logp):
        raise ProposalDomainError(f"Log-probability is NaN {context}")
    return logp


def diagnose_sampler_issues(db, step_methods: Iterable = (), chain: int = -1,
                            diagnostics: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Analyzes a finished run to identify common issues.

    Args:
        db: RamDatabase holding the run
        step_methods: Step methods of the sampler (for acceptance rates)
        chain: Chain index to inspect (default: last chain)
        diagnostics: Existing diagnostics dict to extend

    Returns:
        diagnostics: Dictionary with issues, warnings, and info
    """
    diagnostics = (diagnostics or {}) | {
        'issues': [],
        'warnings': [],
        'info': []
    }

    names = db.trace_names(chain)
    n_samples = db.length(chain)

    for name in names:
        values = np.asarray(db.trace(name, chain), dtype=float)
        if values.size == 0:
            continue

        # Check for NaN/Inf in history
        if not np.all(np.isfinite(values)):
            diagnostics['issues'].append(
                f"Trace '{name}' contains NaN or Inf values - sampler became unstable"
            )
            continue

        # Check for stuck traces (variance near zero)
        if n_samples > 1 and np.all(np.var(values, axis=0) < 1e-10):
            diagnostics['warnings'].append(
                f"Trace '{name}' appears stuck (near-zero variance)"
            )

    for sm in step_methods:
        rate = sm.acceptance_rate
        if rate is not None and rate < 0.10:
            diagnostics['warnings'].append(
                f"{sm.label} has acceptance rate {rate:.1%} (< 10%)"
            )

    # Summary info
    diagnostics['info'].append(f"Tallied samples: {n_samples}")
    diagnostics['info'].append(f"Tracked quantities: {len(names)}")

    return diagnostics


def print_diagnostics(diagnostics: Dict[str, Any]) -> None:
    """Pretty-print diagnostics from diagnose_sampler_issues."""
    if diagnostics['issues']:
        logger.error("\n[ERROR] ISSUES:")
        for issue in diagnostics['issues']:
            logger.error(f"  - {issue}")

    if diagnostics['warnings']:
        logger.warning("\n[WARN] WARNINGS:")
        for warning in diagnostics['warnings']:
            logger.warning(f"  - {warning}")

    if diagnostics['info']:
        logger.info("\n[INFO] INFO:")
        for info in diagnostics['info']:
            logger.info(f"  - {info}")

    if not diagnostics['issues'] and not diagnostics['warnings']:
        logger.info("\n[OK] No issues detected")
