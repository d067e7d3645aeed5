"""
Generic Monte Carlo sampling loop.

Sampler owns a Model, a trace database and the iteration loop shared by
every fitting method: burn-in, thinning, snapshots and the lifecycle

    READY -> INITIALIZED -> SAMPLING <-> PAUSED -> FINISHED
                                 \\----------------> HALTED

Each iteration:
    1. draw()                         - advance the model (prior draws here, MCMC sweeps in MCMC)
    2. _after_draw(i)                 - tuning hook
    3. tally()                        - if i >= burn and (i - burn) % thin == 0
    4. save_state()                   - if save_interval divides i + 1

The loop is a generator. `sample()` drains it; `isample()` hands it to the
caller, who resumes with next() and stops with send('halt') or close().
A run that stops early (halt, KeyboardInterrupt, exception) truncates the
trace to the last complete tally, so every tracked quantity has the same
length.
"""

import copy
import time
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional

import numpy as np

from .checkpoint_io import save_checkpoint, load_checkpoint, validate_checkpoint_compatibility
from .config import clean_config, validate_sampler_config
from .database import ChainState, RamDatabase
from .model import Model
from .settings import SamplerStatus

import logging
logger = logging.getLogger('mcstep')

_ACTIVE = (SamplerStatus.SAMPLING, SamplerStatus.PAUSED)


def tally_count(iterations: int, burn: int, thin: int) -> int:
    """Number of tallies a run of `iterations` writes: floor((iter - burn - 1) / thin) + 1."""
    if iterations <= burn:
        return 0
    return (iterations - burn - 1) // thin + 1


class TuningSchedule:
    """
    Decides which iterations are tuning checkpoints.

    During burn-in a checkpoint falls every `tune_interval` iterations. After
    burn-in, tuning continues only with `tune_throughout`; with
    `diminishing_adaptation` the gap doubles after every post-burn
    checkpoint, and tuning stops for good once `stop_tuning_after`
    consecutive post-burn checkpoints change nothing.
    """

    def __init__(self, burn: int, tune_interval: int, tune_throughout: bool = True,
                 diminishing_adaptation: bool = True, stop_tuning_after: Optional[int] = 5):
        self.burn = burn
        self.tune_interval = tune_interval
        self.tune_throughout = tune_throughout
        self.diminishing_adaptation = diminishing_adaptation
        self.stop_tuning_after = stop_tuning_after

        self.gap = tune_interval
        self.next_tune = tune_interval
        self.idle_checkpoints = 0
        self.stopped = False
        self.checkpoints: List[int] = []

    def is_checkpoint(self, iteration: int) -> bool:
        """Whether tuning runs after iteration `iteration` (0-based)."""
        if self.stopped:
            return False
        if iteration >= self.burn and not self.tune_throughout:
            self.stopped = True
            return False
        return iteration + 1 >= self.next_tune

    def record(self, iteration: int, changed: bool) -> None:
        """Register the outcome of the checkpoint at `iteration` and schedule the next one."""
        self.checkpoints.append(iteration)
        if iteration >= self.burn:
            self.idle_checkpoints = 0 if changed else self.idle_checkpoints + 1
            if self.stop_tuning_after is not None and self.idle_checkpoints >= self.stop_tuning_after:
                self.stopped = True
                logger.debug(f"Tuning stopped after iteration {iteration}: "
                             f"{self.idle_checkpoints} checkpoints without change")
            if self.diminishing_adaptation:
                self.gap *= 2
        self.next_tune = iteration + 1 + self.gap


class Sampler:
    """
    Monte Carlo sampler over a Model.

    The base class draws every unobserved stochastic from its prior at each
    iteration (plain Monte Carlo). MCMC replaces `draw()` with a sweep of
    step methods.

    Args:
        input: Model, or anything Model() accepts (nodes, list, dict, module)
        db: Trace database (default: a new RamDatabase)
        seed: Seed for the sampler's numpy Generator (int, SeedSequence or Generator)
        verbose: Progress logging level
        name: Name used in logs
    """

    def __init__(self, input=None, db: Optional[RamDatabase] = None, seed=None,
                 verbose: int = 0, name: str = 'sampler'):
        self.model = input if isinstance(input, Model) else Model(input, name=name)
        self.db = db if db is not None else RamDatabase()
        self.rng = np.random.default_rng(seed)
        self.verbose = verbose
        self.name = name

        self.status = SamplerStatus.READY
        self.config: Optional[Dict[str, Any]] = None
        self.step_methods: List = []
        self._trace_functions: Dict[str, Callable[[], Any]] = {}
        self._current_iter = 0
        self._save_index = 0
        self._halt_requested = False
        self._start_time = None

    # ------------------------------------------------------------------
    # Model shortcuts
    # ------------------------------------------------------------------

    @property
    def stochastics(self):
        return self.model.stochastics

    @property
    def deterministics(self):
        return self.model.deterministics

    @property
    def current_iteration(self) -> int:
        return self._current_iter

    @property
    def save_index(self) -> int:
        return self._save_index

    def trace(self, name: str, chain: int = -1) -> np.ndarray:
        return self.db.trace(name, chain)

    # ------------------------------------------------------------------
    # Tracked quantities
    # ------------------------------------------------------------------

    def add_trace_function(self, name: str, fn: Callable[[], Any]) -> None:
        """
        Tally the return value of a zero-argument function with every sample.

        Raises:
            ValueError: If `name` is already used by a node or another trace function
        """
        if self.status in _ACTIVE:
            raise RuntimeError("Cannot add trace functions while sampling")
        if name in self.model or name in self._trace_functions:
            raise ValueError(f"Tracked quantity '{name}' already exists")
        if not callable(fn):
            raise ValueError(f"Trace function '{name}' is not callable")
        self._trace_functions[name] = fn

    def _traced_nodes(self):
        return [node for node in self.model.nodes if getattr(node, 'trace', False)]

    def _tracked_values(self) -> Dict[str, Any]:
        values = {node.name: np.array(node.value) for node in self._traced_nodes()}
        for sm in self.step_methods:
            if sm.tally:
                values.update(sm.tuning_values())
        for name, fn in self._trace_functions.items():
            values[name] = fn()
        return values

    def tracked_names(self) -> List[str]:
        names = [node.name for node in self._traced_nodes()]
        for sm in self.step_methods:
            if sm.tally:
                names.extend(sm.tuning_values())
        names.extend(self._trace_functions)
        return names

    def tally(self) -> None:
        """
        Append the current value of every tracked quantity to the trace.

        All values are computed before anything is written; if a write fails
        the chain is truncated back to the previous save index.
        """
        values = self._tracked_values()
        try:
            for name, value in values.items():
                self.db.write(name, value)
        except Exception:
            self.db.truncate(self._save_index)
            raise
        self._save_index += 1

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def draw(self) -> None:
        self.model.draw_from_prior(self.rng)

    def _after_draw(self, iteration: int) -> None:
        pass

    def _setup_step_methods(self) -> None:
        pass

    def _init_run(self) -> None:
        self._setup_step_methods()

    def _prepare(self, iter, kwargs) -> None:
        if self.status in _ACTIVE:
            raise RuntimeError(f"Sampler '{self.name}' is already {str(self.status)}; halt it first")
        self._close_unstarted()

        config = dict(kwargs)
        if iter is not None:
            config['iter'] = iter
        config = clean_config(config)
        validate_sampler_config(config)
        if config['verbose'] == 0:
            config['verbose'] = self.verbose
        self.config = config

        self._init_run()

        self._current_iter = 0
        self._save_index = 0
        self._halt_requested = False
        self.db.new_chain(self.tracked_names())
        self.status = SamplerStatus.INITIALIZED

        expected = tally_count(config['iter'], config['burn'], config['thin'])
        logger.info(
            f"Sampler '{self.name}': {config['iter']} iterations, burn {config['burn']}, "
            f"thin {config['thin']} -> {expected} samples (chain {self.db.chains - 1})"
        )

    def sample(self, iter: Optional[int] = None, **kwargs) -> 'Sampler':
        """
        Run the sampling loop to completion.

        Args:
            iter: Total iterations
            **kwargs: Run configuration (burn, thin, tune_interval, ...; see mcstep.config)

        Returns:
            self

        A KeyboardInterrupt halts the run and returns normally; any other
        exception halts the run and propagates.
        """
        self._prepare(iter, kwargs)
        try:
            for _ in self._loop(interactive=False):
                pass
        except KeyboardInterrupt:
            logger.warning(
                f"Sampling interrupted at iteration {self._current_iter}; "
                f"{self._save_index} samples kept"
            )
        return self

    def isample(self, iter: Optional[int] = None, **kwargs) -> Generator[int, Optional[str], None]:
        """
        Interactive sampling: a generator yielding after every iteration.

        The sampler is PAUSED while the generator is suspended. Resume with
        next(gen). To stop early, call gen.close(), or gen.send('halt');
        both halt the run with a consistent trace. Like any generator that
        returns, send('halt') then raises StopIteration at the caller, so
        wrap it in try/except StopIteration or prefer close().

        A generator closed before its first iteration never runs, so its
        chain stays open and the sampler INITIALIZED; the next sample(),
        isample() or restore_state() call halts that empty chain first.

            gen = sampler.isample(iter=1000, burn=100)
            for i in gen:
                if looks_bad(sampler):
                    break
            gen.close()
        """
        self._prepare(iter, kwargs)
        return self._loop(interactive=True)

    def _close_unstarted(self) -> None:
        # isample() opened a chain whose generator never ran an iteration
        if self.status == SamplerStatus.INITIALIZED:
            self._halt("interactive run closed before its first iteration")

    def halt(self) -> None:
        """Request a halt at the next iteration boundary."""
        self._halt_requested = True

    def _loop(self, interactive: bool):
        config = self.config
        burn, thin = config['burn'], config['thin']
        save_interval = config['save_interval']
        self._start_time = time.time()
        progress_every = max(1, config['iter'] // 10)

        try:
            while self._current_iter < config['iter']:
                if self._halt_requested:
                    break
                self.status = SamplerStatus.SAMPLING
                i = self._current_iter

                self.draw()
                self._after_draw(i)
                if i >= burn and (i - burn) % thin == 0:
                    self.tally()
                self._current_iter += 1
                if save_interval is not None and self._current_iter % save_interval == 0:
                    self.save_state()

                if config['verbose'] > 0 and self._current_iter % progress_every == 0:
                    pct = 100 * self._current_iter / config['iter']
                    logger.info(f"  Iteration {self._current_iter}/{config['iter']} ({pct:.0f}%)")

                if interactive:
                    self.status = SamplerStatus.PAUSED
                command = yield i
                if command == 'halt':
                    self._halt_requested = True
        except GeneratorExit:
            self._halt("generator closed")
            return
        except BaseException as e:
            self._halt(f"{type(e).__name__}: {e}")
            raise

        if self._halt_requested:
            self._halt("halt requested")
            return
        self._finish()

    def _halt(self, reason: str) -> None:
        self.db.truncate(self._save_index)
        self.db.finalize_chain()
        self.status = SamplerStatus.HALTED
        logger.warning(
            f"Sampler '{self.name}' halted at iteration {self._current_iter} ({reason}); "
            f"trace holds {self._save_index} samples"
        )

    def _finish(self) -> None:
        self.db.finalize_chain()
        self.status = SamplerStatus.FINISHED
        wall_time = time.time() - self._start_time
        logger.info(
            f"Sampler '{self.name}' finished: {self._current_iter} iterations, "
            f"{self._save_index} samples in {timedelta(seconds=int(wall_time))} ({wall_time:.2f}s)"
        )

    # ------------------------------------------------------------------
    # Chain state
    # ------------------------------------------------------------------

    def get_state(self) -> ChainState:
        """Deep snapshot of node values, step-method tuning state and the RNG."""
        return ChainState(
            iteration=self._current_iter,
            save_index=self._save_index,
            values={node.name: np.array(node.value) for node in self.model.stochastics},
            step_methods={sm.label: sm.get_state() for sm in self.step_methods},
            rng_state=copy.deepcopy(self.rng.bit_generator.state),
            node_names=self.model.node_names,
            metadata={'sampler': self.name},
        )

    def save_state(self) -> ChainState:
        """Store a snapshot in the database (and on disk if checkpoint_path is set)."""
        state = self.get_state()
        self.db.save_state(state)
        path = (self.config or {}).get('checkpoint_path')
        if path is not None:
            save_checkpoint(path, state, metadata={'config': dict(self.config)})
        return state

    def restore_state(self, state) -> None:
        """
        Restore node values, step-method tuning state and the RNG from a snapshot.

        Args:
            state: ChainState, or a path to a checkpoint written by save_checkpoint

        Raises:
            ValueError: If the snapshot's nodes or step methods don't match this sampler
        """
        if self.status in _ACTIVE:
            raise RuntimeError("Cannot restore state while sampling")
        self._close_unstarted()
        if isinstance(state, (str, Path)):
            state = load_checkpoint(state)

        self._setup_step_methods()
        validate_checkpoint_compatibility(state, self.model, [sm.label for sm in self.step_methods])

        for node in self.model.stochastics:
            node.value = state.values[node.name]
        for sm in self.step_methods:
            if sm.label in state.step_methods:
                sm.set_state(state.step_methods[sm.label])
        if state.rng_state is not None:
            self.rng.bit_generator.state = copy.deepcopy(state.rng_state)

        logger.info(f"Restored state from iteration {state.iteration} (save index {state.save_index})")

    def __repr__(self):
        return f"<{type(self).__name__} '{self.name}' {self.status}>"
