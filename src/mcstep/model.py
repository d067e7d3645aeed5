"""
Model Container

A Model owns a set of nodes, partitions them by kind, and derives the
topological `generations` used to evaluate them in dependency order.

Nodes are addressed by name. The parent/child structure is held as explicit
name -> [names] adjacency lists built once in `build`, so ordering and cycle
detection never walk object references.

Example:
    model = Model([mu, y])                 # flat list
    model = Model({'mu': mu, 'y': y})      # mapping
    model = Model(my_module)               # any object whose attributes hold nodes
"""

import copy
from types import MappingProxyType, ModuleType
from typing import Any, Dict, List, Mapping, Optional

import numpy as np

from .error_handling import CyclicGraphError, NotRandomError
from .nodes import Node, STOCHASTIC, DETERMINISTIC, POTENTIAL, extended_children

import logging
logger = logging.getLogger('mcstep')


def flatten_nodes(container) -> List[Node]:
    """
    Collect every Node reachable in a heterogeneous container.

    Accepts single nodes, mappings, lists/tuples/sets (nested to any depth),
    and objects exposing attributes via __dict__ (modules, instances).
    Order of first appearance is preserved; the same object is kept once.
    """
    found: Dict[Node, None] = {}
    seen_containers = set()

    def visit(obj):
        if isinstance(obj, Node):
            found[obj] = None
        elif isinstance(obj, Model):
            for node in obj.nodes:
                found[node] = None
        elif isinstance(obj, (str, bytes, np.ndarray)) or obj is None:
            return
        elif isinstance(obj, Mapping):
            if id(obj) in seen_containers:
                return
            seen_containers.add(id(obj))
            for value in obj.values():
                visit(value)
        elif isinstance(obj, (list, tuple, set, frozenset)):
            if id(obj) in seen_containers:
                return
            seen_containers.add(id(obj))
            items = sorted(obj, key=_sort_key) if isinstance(obj, (set, frozenset)) else obj
            for value in items:
                visit(value)
        elif hasattr(obj, "__dict__") and not callable(obj):
            # nested modules (e.g. numpy imported by a model module) are never walked
            if id(obj) in seen_containers or (isinstance(obj, ModuleType) and seen_containers):
                return
            seen_containers.add(id(obj))
            for value in list(vars(obj).values()):
                visit(value)

    visit(container)
    return list(found)


def _sort_key(obj):
    return obj.name if isinstance(obj, Node) else repr(obj)


def compute_generations(names: List[str], parents_of: Dict[str, List[str]]) -> List[List[str]]:
    """
    Layer a DAG by repeated extraction of resolved nodes.

    A generation is the set of unresolved nodes whose in-model parents have
    all been resolved in earlier generations. Parents outside `names` count
    as resolved.

    Raises:
        CyclicGraphError: If a pass resolves nothing while nodes remain
    """
    unresolved = list(names)
    resolved = set()
    members = set(names)
    generations = []

    while unresolved:
        layer = [
            name for name in unresolved
            if all(p in resolved or p not in members for p in parents_of[name])
        ]
        if not layer:
            raise CyclicGraphError(unresolved)
        generations.append(layer)
        resolved.update(layer)
        layer_set = set(layer)
        unresolved = [name for name in unresolved if name not in layer_set]

    return generations


class Model:
    """
    Container for a probability model's nodes.

    Attributes:
        nodes: All nodes, in first-appearance order
        stochastics: Unobserved stochastic nodes
        observed_stochastics: Observed stochastic nodes
        deterministics: Deterministic nodes
        potentials: Potential nodes
        generations: Topological layers of node names
    """

    def __init__(self, nodes=None, name: str = 'model'):
        self.name = name
        self.nodes: List[Node] = []
        self.generations: List[List[str]] = []
        self._by_name: Dict[str, Node] = {}
        self._parents_of: Dict[str, List[str]] = {}
        self._children_of: Dict[str, List[str]] = {}
        if nodes is not None:
            self.build(nodes)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def build(self, nodes) -> 'Model':
        """
        Flatten, validate and partition `nodes`, then compute generations.

        The model is only updated if every check passes.

        Raises:
            ValueError: If two distinct nodes share a name
            CyclicGraphError: If the dependency graph has a cycle
        """
        flat = flatten_nodes(nodes)

        by_name = {}
        duplicates = []
        for node in flat:
            if node.name in by_name:
                duplicates.append(node.name)
            by_name[node.name] = node
        if duplicates:
            raise ValueError(f"Duplicate node names in model: {sorted(set(duplicates))}")

        parents_of = {
            node.name: [p.name for p in node.node_parents() if p.name in by_name and by_name[p.name] is p]
            for node in flat
        }
        children_of = {node.name: [] for node in flat}
        for name, parent_names in parents_of.items():
            for parent_name in parent_names:
                children_of[parent_name].append(name)

        generations = compute_generations([n.name for n in flat], parents_of)

        self.nodes = flat
        self._by_name = by_name
        self._parents_of = parents_of
        self._children_of = children_of
        self.generations = generations

        logger.debug(
            f"Model '{self.name}': {len(self.stochastics)} stochastic, "
            f"{len(self.observed_stochastics)} observed, {len(self.deterministics)} deterministic, "
            f"{len(self.potentials)} potential nodes in {len(generations)} generations"
        )
        return self

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def _of_kind(self, kind) -> List[Node]:
        return [node for node in self.nodes if node.kind == kind]

    @property
    def stochastics(self) -> List[Node]:
        return [node for node in self._of_kind(STOCHASTIC) if not node.observed]

    @property
    def observed_stochastics(self) -> List[Node]:
        return [node for node in self._of_kind(STOCHASTIC) if node.observed]

    @property
    def deterministics(self) -> List[Node]:
        return self._of_kind(DETERMINISTIC)

    @property
    def potentials(self) -> List[Node]:
        return self._of_kind(POTENTIAL)

    @property
    def node_names(self) -> List[str]:
        return [node.name for node in self.nodes]

    def get_node(self, name: str) -> Node:
        if name not in self._by_name:
            raise KeyError(f"Unknown node '{name}'. Available: {self.node_names}")
        return self._by_name[name]

    def __getitem__(self, name: str) -> Node:
        return self.get_node(name)

    def __contains__(self, item) -> bool:
        if isinstance(item, Node):
            return self._by_name.get(item.name) is item
        return item in self._by_name

    def parents_of(self, name: str) -> List[str]:
        return list(self._parents_of[name])

    def children_of(self, name: str) -> List[str]:
        return list(self._children_of[name])

    def generation_order(self) -> List[Node]:
        """All nodes flattened in topological order."""
        return [self._by_name[name] for layer in self.generations for name in layer]

    def extended_children(self, node: Node) -> List[Node]:
        return extended_children([node])

    def markov_blanket(self, node: Node) -> List[Node]:
        """The node plus every stochastic/potential whose logp depends on it."""
        return [node] + extended_children([node])

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    @property
    def logp(self) -> float:
        """Joint log-probability of all stochastics (observed included) and potentials."""
        total = 0.0
        for node in self._of_kind(STOCHASTIC) + self.potentials:
            total += node.logp
        return total

    def draw_from_prior(self, rng: Optional[np.random.Generator] = None) -> None:
        """
        Replace every unobserved stochastic by a draw from its prior, in generation order.

        Deterministic values follow automatically: each is re-evaluated from
        its parents' new values the next time it is read.

        Raises:
            NotRandomError: If an unobserved stochastic has no random function.
                Checked before any value is changed.
        """
        rng = np.random.default_rng() if rng is None else rng
        ordered = [n for n in self.generation_order() if n.kind == STOCHASTIC and not n.observed]

        missing = [n.name for n in ordered if not n.has_random]
        if missing:
            raise NotRandomError(f"Cannot draw from prior: no random function for {missing}")

        for node in ordered:
            node.draw_from_prior(rng)

    def value(self) -> Mapping[str, Any]:
        """Read-only snapshot of every valued node: name -> copy of its current value."""
        snapshot = {}
        for node in self.nodes:
            if node.kind == POTENTIAL:
                continue
            frozen = np.array(node.value)
            frozen.flags.writeable = False
            snapshot[node.name] = frozen
        return MappingProxyType(snapshot)

    def copy(self) -> 'Model':
        """Independent deep copy (for running another chain)."""
        return copy.deepcopy(self)

    def __repr__(self):
        return f"<Model '{self.name}' with {len(self.nodes)} nodes>"
