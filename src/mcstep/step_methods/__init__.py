"""
Step Methods

Each step method advances a set of stochastic nodes by one Markov
transition per `step()` call.

    Metropolis          - random-walk (or prior-redraw) update of one float node
    DiscreteMetropolis  - signed Poisson / rounded Normal update of one integer node
    BinaryMetropolis    - exact two-point update of a boolean scalar, flips for arrays
    AdaptiveMetropolis  - joint update of several float nodes with a learned covariance

To add a step method:
    1. Subclass StepMethod and implement `propose()` (and `hastings_factor()`
       for asymmetric proposals)
    2. Implement the static `competence(node)` if it should be picked automatically
    3. List tallied tuning attributes in `_tuning_info` and restorable ones in `_state`
    4. Register it with mcstep.registry.register_step_method
"""

from .base import StepMethod
from .metropolis import Metropolis, DiscreteMetropolis, default_proposal_sd
from .binary import BinaryMetropolis
from .adaptive import AdaptiveMetropolis, recursive_covariance

__all__ = [
    'StepMethod',
    'Metropolis',
    'DiscreteMetropolis',
    'BinaryMetropolis',
    'AdaptiveMetropolis',
    'default_proposal_sd',
    'recursive_covariance',
]
