"""
Step Method Registration System

This module keeps the ordered table of step-method classes that automatic
assignment chooses from. MCMC.assign_step_methods() asks every registered
class for its competence on each unassigned stochastic and uses the highest
scorer; ties go to the class registered first.

Example usage:
    from mcstep import register_step_method, StepMethod

    class SliceStep(StepMethod):
        @staticmethod
        def competence(node):
            return 3 if node.dtype.kind == 'f' else 0
        ...

    register_step_method(SliceStep)
"""

from .step_methods import (
    Metropolis,
    DiscreteMetropolis,
    BinaryMetropolis,
    AdaptiveMetropolis,
)

DEFAULT_STEP_METHODS = (Metropolis, DiscreteMetropolis, BinaryMetropolis, AdaptiveMetropolis)

_REGISTRY = {}


def register_step_method(cls, name=None):
    """
    Register a step-method class for automatic assignment.

    Args:
        cls: StepMethod subclass with a static competence(node) -> int
        name: Registry key (default: the class name)

    Raises:
        ValueError: If the name is already registered or cls has no competence
    """
    name = name or cls.__name__
    if name in _REGISTRY:
        raise ValueError(f"Step method '{name}' is already registered")
    if not callable(getattr(cls, 'competence', None)):
        raise ValueError(f"Step method '{name}' has no competence function")
    _REGISTRY[name] = cls


def get_step_method(name):
    """
    Get a registered step-method class by name.

    Raises:
        KeyError: If the step method is not registered
    """
    if name not in _REGISTRY:
        available = list(_REGISTRY.keys())
        raise KeyError(f"Unknown step method '{name}'. Available: {available}")
    return _REGISTRY[name]


def list_step_methods():
    """
    List all registered step-method names, in registration order.
    """
    return list(_REGISTRY.keys())


def clear_registry():
    """
    Clear all registered step methods. Primarily for testing.
    """
    _REGISTRY.clear()


def reset_registry():
    """
    Restore the built-in step methods in their default order.
    """
    _REGISTRY.clear()
    for cls in DEFAULT_STEP_METHODS:
        register_step_method(cls)


def pick_best_step_method(node):
    """
    Choose the registered class with the highest competence for `node`.

    Returns:
        (cls, competence)

    Raises:
        ValueError: If no registered class is competent (best score 0)
    """
    best_cls, best_score = None, 0
    for cls in _REGISTRY.values():
        score = int(cls.competence(node))
        if score > best_score:
            best_cls, best_score = cls, score
    if best_cls is None:
        raise ValueError(
            f"No registered step method is competent for '{node.name}' "
            f"(dtype {node.dtype}). Registered: {list_step_methods()}"
        )
    return best_cls, best_score


reset_registry()
