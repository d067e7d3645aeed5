"""
In-memory trace storage.

RamDatabase holds one dict of Trace objects per chain (each call to
`sample()` opens a new chain). Traces are append-only numpy buffers with
preallocated capacity that doubles when full; the save index of a trace is
its length, which is independent of the raw iteration counter because of
burn-in and thinning.

Chain-state snapshots (see ChainState) are stored by save index so a run
can be restored to the point a given tally was written.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

import logging
logger = logging.getLogger('mcstep')

DEFAULT_CAPACITY = 1024


@dataclass
class ChainState:
    """
    Deep snapshot of a sampler.

    Fields:
        iteration: Iterations completed when the snapshot was taken
        save_index: Trace length at that point (restore index into the trace)
        values: Node name -> value of every unobserved stochastic
        step_methods: Step method label -> tuning state dict
        rng_state: numpy bit generator state
        node_names: Names of every node in the model, for compatibility checks
        metadata: Free-form run information stored with checkpoints
    """
    iteration: int
    save_index: int
    values: Dict[str, np.ndarray]
    step_methods: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    rng_state: Optional[Dict[str, Any]] = None
    node_names: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


class Trace:
    """Append-only buffer of samples for one tracked quantity."""

    def __init__(self, name: str, capacity: int = DEFAULT_CAPACITY):
        self.name = name
        self._capacity = max(1, int(capacity))
        self._data: Optional[np.ndarray] = None
        self._length = 0
        self._frozen = False

    def __len__(self):
        return self._length

    def _allocate(self, sample: np.ndarray):
        self._data = np.empty((self._capacity,) + sample.shape, dtype=sample.dtype)

    def append(self, value) -> None:
        if self._frozen:
            raise RuntimeError(f"Trace '{self.name}' is finalized and read-only")
        sample = np.asarray(value)
        if self._data is None:
            self._allocate(sample)
        elif sample.shape != self._data.shape[1:]:
            raise ValueError(
                f"Trace '{self.name}' holds shape {self._data.shape[1:]}, got {sample.shape}"
            )
        if self._length == self._data.shape[0]:
            grown = np.empty((2 * self._data.shape[0],) + self._data.shape[1:], dtype=self._data.dtype)
            grown[:self._length] = self._data[:self._length]
            self._data = grown
        self._data[self._length] = sample
        self._length += 1

    def truncate(self, length: int) -> None:
        if self._frozen:
            raise RuntimeError(f"Trace '{self.name}' is finalized and read-only")
        self._length = min(self._length, max(0, int(length)))

    def finalize(self) -> None:
        """Trim the buffer to its length and make it read-only."""
        if self._data is not None:
            self._data = self._data[:self._length].copy()
            self._data.flags.writeable = False
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def gettrace(self, slicing=slice(None)) -> np.ndarray:
        if self._data is None:
            return np.empty((0,))
        view = self._data[:self._length][slicing]
        view = view.view()
        view.flags.writeable = False
        return view


class RamDatabase:
    """
    Trace storage for a sampler.

    Contract:
        write(name, value)         - append at the current save index
        read(name, slicing, chain) - read back a sequence
        truncate(save_index)       - drop everything at or after save_index
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        self.capacity = capacity
        self._chains: List[Dict[str, Trace]] = []
        self._states: List[Dict[int, ChainState]] = []

    # ------------------------------------------------------------------
    # Chain management
    # ------------------------------------------------------------------

    @property
    def chains(self) -> int:
        return len(self._chains)

    def new_chain(self, names: List[str], capacity: Optional[int] = None) -> int:
        """Open a new chain tracking `names`; returns its index."""
        capacity = self.capacity if capacity is None else capacity
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate tracked quantity names: {names}")
        self._chains.append({name: Trace(name, capacity) for name in names})
        self._states.append({})
        logger.debug(f"Opened chain {len(self._chains) - 1} tracking {len(names)} quantities")
        return len(self._chains) - 1

    def _chain(self, chain: int) -> Dict[str, Trace]:
        if not self._chains:
            raise IndexError("Database has no chains")
        return self._chains[chain]

    def finalize_chain(self, chain: int = -1) -> None:
        for trace in self._chain(chain).values():
            trace.finalize()

    # ------------------------------------------------------------------
    # Trace access
    # ------------------------------------------------------------------

    def write(self, name: str, value) -> None:
        self._chain(-1)[name].append(value)

    def read(self, name: str, slicing=slice(None), chain: int = -1) -> np.ndarray:
        traces = self._chain(chain)
        if name not in traces:
            raise KeyError(f"Unknown trace '{name}'. Available: {list(traces)}")
        return traces[name].gettrace(slicing)

    def trace(self, name: str, chain: int = -1) -> np.ndarray:
        return self.read(name, slice(None), chain)

    def truncate(self, save_index: int, chain: int = -1) -> None:
        for trace in self._chain(chain).values():
            trace.truncate(save_index)
        states = self._states[chain]
        for index in [i for i in states if i > save_index]:
            del states[index]

    def trace_names(self, chain: int = -1) -> List[str]:
        return list(self._chain(chain))

    def length(self, chain: int = -1) -> int:
        """Common trace length of a chain (0 for a chain tracking nothing)."""
        lengths = {len(trace) for trace in self._chain(chain).values()}
        if len(lengths) > 1:
            raise RuntimeError(f"Inconsistent trace lengths in chain {chain}: {sorted(lengths)}")
        return lengths.pop() if lengths else 0

    # ------------------------------------------------------------------
    # Chain-state snapshots
    # ------------------------------------------------------------------

    def save_state(self, state: ChainState, chain: int = -1) -> None:
        self._chain(chain)
        self._states[chain][state.save_index] = state

    def get_state(self, save_index: Optional[int] = None, chain: int = -1) -> Optional[ChainState]:
        """Snapshot stored at save_index (default: most recent), or None."""
        self._chain(chain)
        states = self._states[chain]
        if not states:
            return None
        if save_index is None:
            return states[max(states)]
        return states.get(save_index)
