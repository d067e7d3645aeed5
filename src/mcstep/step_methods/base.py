"""
StepMethod base class.

A step method owns a non-empty set of stochastic nodes and advances them by
one Markov transition per call to `step()`. The Metropolis-Hastings
machinery shared by every variant lives here:

    logp_old = logp_plus_loglike          # Markov blanket before the proposal
    propose()                             # variant-specific, writes node values
    logp_new = logp_plus_loglike          # Markov blanket after the proposal
    accept if log(U) < logp_new - logp_old + hastings_factor()
    otherwise reject()                    # revert every owned node

Tuning:
    Every accept/reject is counted. `tune()` turns the counts gathered since
    the previous call into an acceptance ratio and multiplies
    adaptive_scale_factor by settings.tuning_multiplier(ratio). With no new
    proposals since the last call it changes nothing. Tuning state changes
    only inside tune(); `adapting` is cleared by the sampler when its tuning
    schedule stops, for variants that gather adaptation data in step().

Variants declare:
    competence(node) -> int in [0, 3]   (static; used only for automatic assignment)
    _tuning_info                        (attributes tallied with the trace)
    _state                              (attributes captured by get_state/set_state)
"""

import copy
from typing import Any, Dict, List, Optional

import numpy as np

from ..error_handling import ProposalDomainError, check_log_probability
from ..nodes import Node, STOCHASTIC, extended_children
from ..settings import tuning_multiplier

import logging
logger = logging.getLogger('mcstep')


class StepMethod:
    """
    Base class for all step methods.

    Args:
        stochastics: A stochastic node or a sequence of them
        label: Name used in traces and logs (default: ClassName_node1_node2)
        tally: Whether tuning attributes are tallied with the trace
        verbose: Logging verbosity for this step method
    """

    _tuning_info: List[str] = []
    _state: List[str] = ['accepted', 'rejected', 'total_accepted', 'total_rejected']

    def __init__(self, stochastics, label: Optional[str] = None, tally: bool = True, verbose: int = 0):
        if isinstance(stochastics, Node):
            stochastics = [stochastics]
        stochastics = list(dict.fromkeys(stochastics))
        if not stochastics:
            raise ValueError(f"{type(self).__name__} needs at least one stochastic")
        for node in stochastics:
            if node.kind != STOCHASTIC:
                raise ValueError(f"{type(self).__name__} can only update stochastics, got {node!r}")
            if node.observed:
                raise ValueError(f"{type(self).__name__} cannot update observed stochastic '{node.name}'")

        self.stochastics: List[Node] = stochastics
        self.children: List[Node] = extended_children(stochastics)
        self.label = label or f"{type(self).__name__}_{'_'.join(s.name for s in stochastics)}"
        self.tally = tally
        self.verbose = verbose
        self.rng = np.random.default_rng()

        # Counters since the last tune, and over the whole run
        self.accepted = 0
        self.rejected = 0
        self.total_accepted = 0
        self.total_rejected = 0

        # Cleared by the sampler once its tuning schedule has stopped
        self.adapting = True

    # ------------------------------------------------------------------
    # Competence
    # ------------------------------------------------------------------

    @staticmethod
    def competence(node) -> int:
        """Suitability of this method for `node`, from 0 (unusable) to 3 (ideal)."""
        return 0

    # ------------------------------------------------------------------
    # Log-probabilities
    # ------------------------------------------------------------------

    @property
    def loglike(self) -> float:
        """Sum of the log-probabilities of the extended children."""
        total = 0.0
        for child in self.children:
            total += child.logp
        return total

    @property
    def logp_plus_loglike(self) -> float:
        """Joint log-probability of the Markov blanket of the owned nodes."""
        total = self.loglike
        for node in self.stochastics:
            total += node.logp
        return total

    # ------------------------------------------------------------------
    # Metropolis-Hastings protocol
    # ------------------------------------------------------------------

    def propose(self) -> None:
        raise NotImplementedError

    def reject(self) -> None:
        for node in self.stochastics:
            node.revert()

    def hastings_factor(self) -> float:
        """Log ratio of backward to forward proposal densities (0 for symmetric proposals)."""
        return 0.0

    def step(self) -> bool:
        """
        One Metropolis-Hastings transition of the owned nodes.

        Returns:
            True if the proposal was accepted

        Raises:
            ProposalDomainError: If the blanket log-probability is NaN before or
                after the proposal (the proposal is reverted first)
        """
        logp_old = check_log_probability(self.logp_plus_loglike, f"before {self.label} proposal")

        self.propose()

        try:
            logp_new = check_log_probability(
                self.logp_plus_loglike, f"after {self.label} proposal"
            )
        except ProposalDomainError:
            self.reject()
            raise

        log_ratio = logp_new - logp_old + self.hastings_factor()
        if np.isnan(log_ratio):
            # -inf - -inf: both states impossible
            self.reject()
            raise ProposalDomainError(
                f"{self.label}: current and proposed states both have zero probability"
            )

        if np.log(self.rng.random()) < log_ratio:
            self.accepted += 1
            self.total_accepted += 1
            return True

        self.reject()
        self.rejected += 1
        self.total_rejected += 1
        return False

    # ------------------------------------------------------------------
    # Tuning
    # ------------------------------------------------------------------

    @property
    def tunable(self) -> bool:
        return True

    def tune(self) -> bool:
        """
        Rescale adaptive_scale_factor from the acceptance ratio since the last call.

        Returns:
            True if the scale factor changed
        """
        if not self.tunable:
            return False
        proposals = self.accepted + self.rejected
        if proposals == 0:
            return False

        ratio = self.accepted / proposals
        multiplier = tuning_multiplier(ratio)
        self.accepted = 0
        self.rejected = 0

        if multiplier == 1.0:
            return False

        self.adaptive_scale_factor *= multiplier
        if self.verbose > 0:
            logger.debug(
                f"{self.label}: acceptance {ratio:.3f}, "
                f"adaptive_scale_factor -> {self.adaptive_scale_factor:.4g}"
            )
        return True

    @property
    def acceptance_rate(self) -> Optional[float]:
        total = self.total_accepted + self.total_rejected
        if total == 0:
            return None
        return self.total_accepted / total

    # ------------------------------------------------------------------
    # Tally and state
    # ------------------------------------------------------------------

    def tuning_values(self) -> Dict[str, Any]:
        """Current values of the tallied tuning attributes, keyed by trace name."""
        return {f"{self.label}_{attr}": getattr(self, attr) for attr in self._tuning_info}

    def get_state(self) -> Dict[str, Any]:
        return {attr: copy.deepcopy(getattr(self, attr)) for attr in self._state}

    def set_state(self, state: Dict[str, Any]) -> None:
        for attr, value in state.items():
            if attr not in self._state:
                raise KeyError(f"{self.label} has no state attribute '{attr}'")
            setattr(self, attr, copy.deepcopy(value))

    def __repr__(self):
        return f"<{type(self).__name__} '{self.label}'>"
