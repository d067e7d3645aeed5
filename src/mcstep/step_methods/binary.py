"""
BinaryMetropolis Step Method for boolean nodes.

Scalar node:
    Direct two-point update. The blanket log-probability is evaluated with
    the node set to False and to True, and the new value is drawn from the
    normalised pair:

        P(True) = exp(lp_T) / (exp(lp_F) + exp(lp_T))

    There is no accept/reject step and nothing to tune.

Array node:
    Every element flips independently with probability
    min(1, p_jump * adaptive_scale_factor), or the array is redrawn from the
    prior with proposal_distribution='Prior'. The whole array is then
    accepted or rejected as one block (flips are symmetric, Hastings ratio 0).
"""

from typing import Optional

import numpy as np

from ..error_handling import NotRandomError, ProposalDomainError, check_log_probability
from ..settings import ProposalDistribution
from .base import StepMethod


class BinaryMetropolis(StepMethod):
    """
    Args:
        stochastic: Boolean node to update
        p_jump: Per-element flip probability (array nodes)
        proposal_distribution: None (flip) or 'Prior'
        label, tally, verbose: see StepMethod
    """

    _tuning_info = ['adaptive_scale_factor']
    _state = StepMethod._state + ['adaptive_scale_factor', 'p_jump']

    def __init__(self, stochastic, p_jump: float = 0.1, proposal_distribution=None,
                 label: Optional[str] = None, tally: bool = True, verbose: int = 0):
        super().__init__(stochastic, label=label, tally=tally, verbose=verbose)
        if len(self.stochastics) != 1:
            raise ValueError("BinaryMetropolis updates exactly one stochastic")
        self.stochastic = self.stochastics[0]
        if self.stochastic.dtype.kind != 'b':
            raise ValueError(f"BinaryMetropolis needs a boolean node, '{self.stochastic.name}' is {self.stochastic.dtype}")
        if not 0.0 < p_jump <= 1.0:
            raise ValueError(f"p_jump must be in (0, 1], got {p_jump}")

        self.p_jump = float(p_jump)
        self.proposal_distribution = (
            None if proposal_distribution is None
            else ProposalDistribution.from_name(proposal_distribution)
        )
        if self.proposal_distribution not in (None, ProposalDistribution.PRIOR):
            raise ValueError(f"BinaryMetropolis does not support the {str(self.proposal_distribution)} proposal")
        if self.proposal_distribution == ProposalDistribution.PRIOR and not self.stochastic.has_random:
            raise NotRandomError(f"Prior proposal needs a random function on '{self.stochastic.name}'")

        self.adaptive_scale_factor = 1.0
        self._hastings = 0.0

    @staticmethod
    def competence(node) -> int:
        if node.observed:
            return 0
        if node.dtype.kind == 'b':
            return 2
        return 0

    @property
    def is_scalar(self) -> bool:
        return self.stochastic.shape == ()

    @property
    def tunable(self) -> bool:
        return not self.is_scalar and self.proposal_distribution is None

    def hastings_factor(self) -> float:
        return self._hastings

    def propose(self) -> None:
        node = self.stochastic
        self._hastings = 0.0
        if self.proposal_distribution == ProposalDistribution.PRIOR:
            logp_forward = node.logp
            node.value = node.random(self.rng)
            self._hastings = logp_forward - node.logp
            return
        p = min(1.0, self.p_jump * self.adaptive_scale_factor)
        flips = self.rng.random(size=node.shape) < p
        node.value = np.logical_xor(node.value, flips)

    def _gibbs_step(self) -> bool:
        node = self.stochastic
        original = bool(node.value)

        logps = {}
        for candidate in (False, True):
            node.value = candidate
            try:
                logps[candidate] = check_log_probability(
                    self.logp_plus_loglike, f"for {node.name}={candidate}"
                )
            finally:
                node.revert()

        lp_false, lp_true = logps[False], logps[True]
        if lp_false == -np.inf and lp_true == -np.inf:
            raise ProposalDomainError(f"{self.label}: both values of '{node.name}' have zero probability")

        # P(True) = 1 / (1 + exp(lp_F - lp_T)), computed stably
        p_true = np.exp(lp_true - np.logaddexp(lp_false, lp_true))
        new_value = bool(self.rng.random() < p_true)
        if new_value != original:
            node.value = new_value
        return True

    def step(self) -> bool:
        if self.is_scalar:
            return self._gibbs_step()
        return super().step()
