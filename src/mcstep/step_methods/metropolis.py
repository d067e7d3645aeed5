"""
Metropolis Step Methods for continuous and integer-valued nodes.

Metropolis
    Proposal: x' = x + N(0, (proposal_sd * adaptive_scale_factor)^2)
    Hastings ratio: 0 (symmetric)

    With proposal_distribution='Prior' the node is redrawn from its prior
    instead, which needs the node's random function; the Hastings factor is
    then logp_self(x) - logp_self(x').

DiscreteMetropolis
    Same acceptance and tuning machinery on integer nodes.
    'Poisson' (default): x' = x +/- Poisson(proposal_sd * adaptive_scale_factor),
                         sign chosen by a fair coin (symmetric)
    'Normal':            continuous perturbation rounded to the nearest integer (symmetric)
    'Prior':             redraw from the prior

Settings:
    scale        - multiplies the default proposal_sd (|value|, or 1 where value is 0)
    proposal_sd  - explicit proposal scale (scalar or array shaped like the value)
"""

from typing import Optional

import numpy as np

from ..error_handling import NotRandomError
from ..settings import ProposalDistribution
from .base import StepMethod


def default_proposal_sd(value, scale: float = 1.0) -> np.ndarray:
    """|value| * scale, with 1 * scale wherever the value is 0."""
    magnitude = np.abs(np.asarray(value, dtype=float))
    return np.where(magnitude > 0, magnitude, 1.0) * scale


class Metropolis(StepMethod):
    """
    Random-walk Metropolis for a single continuous stochastic.

    Args:
        stochastic: Node to update (float-valued)
        scale: Multiplier for the default proposal_sd
        proposal_sd: Explicit proposal standard deviation
        proposal_distribution: 'Normal' or 'Prior'
        label, tally, verbose: see StepMethod
    """

    _tuning_info = ['adaptive_scale_factor']
    _state = StepMethod._state + ['adaptive_scale_factor', 'proposal_sd']

    allowed_distributions = (ProposalDistribution.NORMAL, ProposalDistribution.PRIOR)
    default_distribution = ProposalDistribution.NORMAL

    def __init__(self, stochastic, scale: float = 1.0, proposal_sd=None,
                 proposal_distribution=None, label: Optional[str] = None,
                 tally: bool = True, verbose: int = 0):
        super().__init__(stochastic, label=label, tally=tally, verbose=verbose)
        if len(self.stochastics) != 1:
            raise ValueError(f"{type(self).__name__} updates exactly one stochastic")
        self.stochastic = self.stochastics[0]

        if proposal_distribution is None:
            proposal_distribution = self.default_distribution
        self.proposal_distribution = ProposalDistribution.from_name(proposal_distribution)
        if self.proposal_distribution not in self.allowed_distributions:
            raise ValueError(
                f"{type(self).__name__} does not support the {str(self.proposal_distribution)} proposal"
            )
        if self.proposal_distribution == ProposalDistribution.PRIOR and not self.stochastic.has_random:
            raise NotRandomError(
                f"Prior proposal needs a random function on '{self.stochastic.name}'"
            )

        if proposal_sd is None:
            proposal_sd = default_proposal_sd(self.stochastic.value, scale)
        self.proposal_sd = np.broadcast_to(
            np.asarray(proposal_sd, dtype=float), self.stochastic.shape
        ).copy()
        if np.any(self.proposal_sd <= 0):
            raise ValueError(f"proposal_sd must be positive for '{self.stochastic.name}'")

        self.adaptive_scale_factor = 1.0
        self._hastings = 0.0

    @staticmethod
    def competence(node) -> int:
        if node.observed:
            return 0
        if node.dtype.kind == 'f':
            return 1
        return 0

    @property
    def tunable(self) -> bool:
        return self.proposal_distribution != ProposalDistribution.PRIOR

    def hastings_factor(self) -> float:
        return self._hastings

    def _prior_proposal(self) -> None:
        node = self.stochastic
        logp_forward = node.logp
        node.value = node.random(self.rng)
        self._hastings = logp_forward - node.logp

    def propose(self) -> None:
        self._hastings = 0.0
        if self.proposal_distribution == ProposalDistribution.PRIOR:
            self._prior_proposal()
            return
        sd = self.proposal_sd * self.adaptive_scale_factor
        node = self.stochastic
        node.value = node.value + self.rng.normal(0.0, sd, size=node.shape)


class DiscreteMetropolis(Metropolis):
    """
    Metropolis for a single integer-valued stochastic.

    Args:
        stochastic: Node to update (integer-valued)
        proposal_distribution: 'Poisson' (default), 'Normal' or 'Prior'
        scale, proposal_sd, label, tally, verbose: see Metropolis
    """

    allowed_distributions = (
        ProposalDistribution.POISSON,
        ProposalDistribution.NORMAL,
        ProposalDistribution.PRIOR,
    )
    default_distribution = ProposalDistribution.POISSON

    @staticmethod
    def competence(node) -> int:
        if node.observed:
            return 0
        if node.dtype.kind in 'iu':
            return 1
        return 0

    def propose(self) -> None:
        self._hastings = 0.0
        if self.proposal_distribution == ProposalDistribution.PRIOR:
            self._prior_proposal()
            return

        node = self.stochastic
        sd = self.proposal_sd * self.adaptive_scale_factor
        if self.proposal_distribution == ProposalDistribution.POISSON:
            jump = self.rng.poisson(sd, size=node.shape)
            sign = np.where(self.rng.random(size=node.shape) < 0.5, -1, 1)
            node.value = node.value + sign * jump
        else:
            node.value = np.rint(node.value + self.rng.normal(0.0, sd, size=node.shape))
