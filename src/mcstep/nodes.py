"""
Model Nodes

Concrete implementations of the node contract used by Model and the step
methods. A node exposes its current value, its log-probability given that
value, its parents and children, and (optionally) a way to draw from its prior.

Node kinds:
    Stochastic    - a random quantity with a log-density; observed stochastics are fixed data
    Deterministic - a value computed from its parents, cached on parent stamps
    Potential     - an arbitrary log-probability term with no value of its own

Parents are given as a dict mapping argument names to nodes or constants.
The log-density / evaluation functions receive the parents' current values
as keyword arguments:

    mu = Stochastic('mu', logp=lambda value, sigma: norm.logpdf(value, 0, sigma),
                    value=0.0, parents={'sigma': 10.0},
                    random=lambda rng, sigma: rng.normal(0, sigma))
    y = Stochastic('y', logp=lambda value, mu: norm.logpdf(value, mu, 1).sum(),
                   value=data, parents={'mu': mu}, observed=True)

Every assignment to a stochastic's value gets a fresh stamp. Deterministics
key a two-entry cache on their parents' stamps, so reverting a rejected
proposal restores the exact previous deterministic values without
re-evaluating them.
"""

import itertools
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .error_handling import NotRandomError

_stamp_counter = itertools.count(1)

STOCHASTIC = 'stochastic'
DETERMINISTIC = 'deterministic'
POTENTIAL = 'potential'


class Node:
    """Base class holding identity and the parent/child links."""

    kind = None

    def __init__(self, name: str, parents: Optional[Dict[str, Any]] = None, doc: str = ''):
        if not isinstance(name, str) or not name:
            raise ValueError(f"Node name must be a non-empty string, got {name!r}")
        self.name = name
        self.doc = doc
        # dict used as an insertion-ordered set
        self.children: Dict['Node', None] = {}
        self._parents: Dict[str, Any] = {}
        self.parents = parents or {}

    @property
    def parents(self) -> Dict[str, Any]:
        return self._parents

    @parents.setter
    def parents(self, new_parents: Dict[str, Any]):
        for parent in self.node_parents():
            parent.children.pop(self, None)

        for key, parent in new_parents.items():
            if isinstance(parent, Potential):
                raise ValueError(
                    f"Potential '{parent.name}' cannot be a parent (parameter '{key}' of '{self.name}')"
                )

        self._parents = dict(new_parents)
        for parent in self.node_parents():
            parent.children[self] = None
        self._parents_changed()

    def _parents_changed(self):
        pass

    def node_parents(self) -> List['Node']:
        """Parents that are nodes (constants excluded), without duplicates."""
        seen = {}
        for parent in self._parents.values():
            if isinstance(parent, Node):
                seen[parent] = None
        return list(seen)

    def parent_values(self) -> Dict[str, Any]:
        return {
            key: (parent.value if isinstance(parent, Node) else parent)
            for key, parent in self._parents.items()
        }

    def __repr__(self):
        return f"<{type(self).__name__} '{self.name}'>"


class Stochastic(Node):
    """
    A random variable.

    Args:
        name: Unique name within a model
        logp: fn(value, **parent_values) -> log-density
        value: Initial value (scalar or array); its dtype and shape are fixed
        parents: Dict of parent nodes / constants
        random: Optional fn(rng, **parent_values) -> draw from the prior
        observed: Fixed data; step methods never update it
        dtype: Override the dtype inferred from value
        trace: Whether the sampler tallies this node (default: not observed)
    """

    kind = STOCHASTIC

    def __init__(self, name: str, logp: Callable, value, parents: Optional[Dict[str, Any]] = None,
                 random: Optional[Callable] = None, observed: bool = False, dtype=None,
                 trace: Optional[bool] = None, doc: str = ''):
        super().__init__(name, parents, doc)
        self._logp_fn = logp
        self._random_fn = random
        self.observed = bool(observed)
        self.trace = (not self.observed) if trace is None else bool(trace)

        initial = np.asarray(value) if dtype is None else np.asarray(value, dtype=dtype)
        self.dtype = initial.dtype
        self.shape = initial.shape
        self._value = np.array(initial)
        self._stamp = next(_stamp_counter)
        self._last_value = None
        self._last_stamp = None

    def _coerce(self, value) -> np.ndarray:
        new_value = np.array(value, dtype=self.dtype)
        if new_value.shape != self.shape:
            raise ValueError(
                f"Stochastic '{self.name}' has fixed shape {self.shape}, got {new_value.shape}"
            )
        return new_value

    @property
    def value(self) -> np.ndarray:
        return self._value

    @value.setter
    def value(self, new_value):
        if self.observed:
            raise AttributeError(f"Observed stochastic '{self.name}' cannot be updated")
        self._last_value, self._last_stamp = self._value, self._stamp
        self._value = self._coerce(new_value)
        self._stamp = next(_stamp_counter)

    def revert(self):
        """Restore the value held before the last assignment."""
        if self._last_value is None:
            raise RuntimeError(f"Stochastic '{self.name}' has no previous value to revert to")
        self._value, self._stamp = self._last_value, self._last_stamp
        self._last_value, self._last_stamp = None, None

    @property
    def stamp(self):
        return self._stamp

    @property
    def logp(self) -> float:
        return float(np.sum(self._logp_fn(self._value, **self.parent_values())))

    @property
    def has_random(self) -> bool:
        return self._random_fn is not None

    def random(self, rng: np.random.Generator) -> np.ndarray:
        """Draw a new value from the prior given the current parent values (not assigned)."""
        if self._random_fn is None:
            raise NotRandomError(f"Stochastic '{self.name}' has no random function")
        return self._coerce(self._random_fn(rng, **self.parent_values()))

    def draw_from_prior(self, rng: np.random.Generator) -> np.ndarray:
        self.value = self.random(rng)
        return self._value


class Deterministic(Node):
    """
    A quantity computed from its parents.

    Args:
        name: Unique name within a model
        eval: fn(**parent_values) -> value
        parents: Dict of parent nodes / constants
        dtype: Optional dtype the evaluated value is cast to
        trace: Whether the sampler tallies this node
    """

    kind = DETERMINISTIC
    CACHE_DEPTH = 2

    def __init__(self, name: str, eval: Callable, parents: Dict[str, Any], dtype=None,
                 trace: bool = True, doc: str = ''):
        self._eval = eval
        self._cache = OrderedDict()
        self.dtype = None if dtype is None else np.dtype(dtype)
        self.trace = bool(trace)
        super().__init__(name, parents, doc)

    def _parents_changed(self):
        self._cache.clear()

    @property
    def stamp(self):
        return tuple(parent.stamp for parent in self.node_parents())

    @property
    def value(self) -> np.ndarray:
        key = self.stamp
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached
        result = np.asarray(self._eval(**self.parent_values()), dtype=self.dtype)
        self._cache[key] = result
        if len(self._cache) > self.CACHE_DEPTH:
            self._cache.popitem(last=False)
        return result

    @value.setter
    def value(self, new_value):
        raise AttributeError(f"Deterministic '{self.name}' is computed from its parents")


class Potential(Node):
    """
    An additional log-probability term.

    Args:
        name: Unique name within a model
        logp: fn(**parent_values) -> log-probability
        parents: Dict of parent nodes / constants
    """

    kind = POTENTIAL

    def __init__(self, name: str, logp: Callable, parents: Dict[str, Any], doc: str = ''):
        self._logp_fn = logp
        self.trace = False
        super().__init__(name, parents, doc)

    @property
    def logp(self) -> float:
        return float(np.sum(self._logp_fn(**self.parent_values())))


def extended_children(nodes) -> List[Node]:
    """
    Stochastic and potential descendants reachable through deterministics.

    These are the children whose log-probabilities change when any of `nodes`
    changes value. The nodes themselves are excluded. Order is deterministic
    (depth-first, insertion order).
    """
    own = set(nodes)
    found = {}
    stack = []
    for node in nodes:
        stack.extend(reversed(list(node.children)))
    visited = set()
    while stack:
        child = stack.pop()
        if child in visited:
            continue
        visited.add(child)
        if child.kind == DETERMINISTIC:
            stack.extend(reversed(list(child.children)))
        elif child not in own:
            found[child] = None
    return list(found)
