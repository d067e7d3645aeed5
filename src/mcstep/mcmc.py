"""
MCMC - Metropolis-Hastings sampler built from step methods.

Each iteration runs every step method's `step()` once, in a fixed order:
explicitly assigned methods first (in the order they were added), then the
automatically assigned ones in generation order. A node may carry several
step methods; they run back to back, each starting from the value the
previous one left.

Automatic assignment asks every registered step method (mcstep.registry)
for its competence on each stochastic that has no explicit method and
instantiates the best one with default settings.

Usage:
    M = MCMC([mu, tau, y], seed=1)
    M.use_step_method(AdaptiveMetropolis, mu, tau, delay=500)
    M.sample(iter=20000, burn=5000, thin=5)
    mu_trace = M.trace('mu')
"""

from typing import Dict, List

import numpy as np

from .error_handling import ProposalDomainError
from .registry import pick_best_step_method
from .sampler import Sampler, TuningSchedule, _ACTIVE

import logging
logger = logging.getLogger('mcstep')


class MCMC(Sampler):
    """
    Args:
        input: Model, or anything Model() accepts
        db: Trace database (default: a new RamDatabase)
        seed: Seed for the shared numpy Generator
        verbose: Logging level passed to automatically assigned step methods
        name: Name used in logs
    """

    def __init__(self, input=None, db=None, seed=None, verbose: int = 0, name: str = 'mcmc'):
        super().__init__(input, db=db, seed=seed, verbose=verbose, name=name)
        self.step_method_dict: Dict = {node: [] for node in self.model.stochastics}
        self.schedule = None

    # ------------------------------------------------------------------
    # Step-method assignment
    # ------------------------------------------------------------------

    def _add_step_method(self, step_method) -> None:
        labels = {sm.label for sm in self.step_methods}
        if step_method.label in labels:
            base, n = step_method.label, 2
            while f"{base}_{n}" in labels:
                n += 1
            step_method.label = f"{base}_{n}"
        step_method.rng = self.rng
        self.step_methods.append(step_method)
        for node in step_method.stochastics:
            self.step_method_dict[node].append(step_method)

    def use_step_method(self, step_method_class, *stochastics, **kwargs):
        """
        Explicitly assign a step method to one or more stochastics.

        Args:
            step_method_class: StepMethod subclass
            *stochastics: Nodes it updates (several for blocked methods)
            **kwargs: Passed to the step method constructor

        Returns:
            The new step method instance
        """
        if self.status in _ACTIVE:
            raise RuntimeError("Cannot assign step methods while sampling")
        for node in stochastics:
            if node not in self.step_method_dict:
                raise ValueError(f"'{getattr(node, 'name', node)}' is not an unobserved stochastic of this model")

        kwargs.setdefault('verbose', self.verbose)
        step_method = step_method_class(list(stochastics), **kwargs)
        self._add_step_method(step_method)
        logger.info(f"Using {type(step_method).__name__} for {[n.name for n in step_method.stochastics]}")
        return step_method

    def assign_step_methods(self) -> List:
        """
        Give every stochastic without a step method the most competent registered one.

        Returns:
            The step methods created by this call

        Raises:
            ValueError: If no registered step method is competent for some node
        """
        created = []
        for node in self.model.generation_order():
            if node not in self.step_method_dict or self.step_method_dict[node]:
                continue
            cls, score = pick_best_step_method(node)
            step_method = cls(node, verbose=self.verbose)
            self._add_step_method(step_method)
            created.append(step_method)
            logger.info(f"Assigned {cls.__name__} to '{node.name}' (competence {score})")
        return created

    def _setup_step_methods(self) -> None:
        self.assign_step_methods()
        for sm in self.step_methods:
            sm.rng = self.rng

    def _init_run(self) -> None:
        self._setup_step_methods()
        for sm in self.step_methods:
            sm.adapting = True

        logp = self.model.logp
        if np.isnan(logp) or logp == -np.inf:
            raise ProposalDomainError(
                f"Initial state of '{self.model.name}' has log-probability {logp}; "
                f"start from a state with positive probability"
            )

        config = self.config
        self.schedule = TuningSchedule(
            burn=config['burn'],
            tune_interval=config['tune_interval'],
            tune_throughout=config['tune_throughout'],
            diminishing_adaptation=config['diminishing_adaptation'],
            stop_tuning_after=config['stop_tuning_after'],
        )

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def draw(self) -> None:
        for sm in self.step_methods:
            sm.step()

    def _after_draw(self, iteration: int) -> None:
        if self.schedule.is_checkpoint(iteration):
            changed = self.tune()
            self.schedule.record(iteration, changed)
        if self.schedule.stopped and any(sm.adapting for sm in self.step_methods):
            for sm in self.step_methods:
                sm.adapting = False
            logger.debug(f"Tuning frozen after iteration {iteration}")

    def tune(self) -> bool:
        """
        Tune every tunable step method.

        Returns:
            True if any step method changed its tuning state
        """
        changed = False
        for sm in self.step_methods:
            if sm.tunable:
                changed = sm.tune() or changed
        logger.debug(f"Tuning at iteration {self._current_iter + 1}: {'changed' if changed else 'no change'}")
        return changed

    def acceptance_rates(self) -> Dict[str, float]:
        """Whole-run acceptance rate of every step method that counts proposals."""
        return {
            sm.label: sm.acceptance_rate
            for sm in self.step_methods
            if sm.acceptance_rate is not None
        }
