"""
Checkpoint I/O utilities for saving and loading chain state.

This module provides functions for:
- Saving a ChainState snapshot to disk for resumable runs
- Loading a snapshot back
- Checking a snapshot against the model it is restored into
"""

from typing import Any, Dict, Optional

import numpy as np
from pathlib import Path

from .database import ChainState

import logging
logger = logging.getLogger('mcstep')


def save_checkpoint(filepath: str, state: ChainState, metadata: Optional[Dict[str, Any]] = None) -> None:
    """
    Save a chain-state snapshot to disk.

    Args:
        filepath: Path to save checkpoint (.npz file)
        state: ChainState from MCMC.get_state()
        metadata: Optional dict of additional metadata

    Saves:
        - Iteration count and save index
        - Every unobserved stochastic's value
        - Every step method's tuning state
        - RNG state
        - Node names for validation on restore
    """
    checkpoint = {
        'iteration': int(state.iteration),
        'save_index': int(state.save_index),
        'values': state.values,
        'step_methods': state.step_methods,
        'rng_state': state.rng_state,
        'node_names': np.array(state.node_names, dtype=object),
    }

    metadata = {**state.metadata, **(metadata or {})}
    if metadata:
        checkpoint['metadata'] = metadata

    filepath = Path(filepath)
    np.savez_compressed(filepath, **checkpoint)
    logger.info(f"Checkpoint saved to {filepath} (iteration {state.iteration})")


def load_checkpoint(filepath: str) -> ChainState:
    """
    Load a chain-state snapshot from disk.

    Args:
        filepath: Path to checkpoint file (.npz)

    Returns:
        ChainState (metadata, if any, is attached as `state.metadata`)
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Checkpoint not found: {filepath}")

    # Use context manager to ensure NpzFile is closed after loading
    with np.load(filepath, allow_pickle=True) as data:
        state = ChainState(
            iteration=int(data['iteration']),
            save_index=int(data['save_index']),
            values=data['values'].item(),
            step_methods=data['step_methods'].item(),
            rng_state=data['rng_state'].item(),
            node_names=[str(name) for name in data['node_names']],
        )
        if 'metadata' in data:
            state.metadata = data['metadata'].item()

    return state


def validate_checkpoint_compatibility(state: ChainState, model, step_method_labels) -> None:
    """
    Check that a snapshot can be restored into a model and its step methods.

    Raises:
        ValueError: If node names or step methods do not match
    """
    if state.node_names and sorted(state.node_names) != sorted(model.node_names):
        raise ValueError(
            f"Checkpoint nodes {sorted(state.node_names)} don't match "
            f"model nodes {sorted(model.node_names)}"
        )

    missing_values = [node.name for node in model.stochastics if node.name not in state.values]
    if missing_values:
        raise ValueError(f"Checkpoint has no values for stochastics: {missing_values}")

    labels = set(step_method_labels)
    unknown = sorted(set(state.step_methods) - labels)
    if unknown:
        raise ValueError(
            f"Checkpoint step methods {unknown} don't match current step methods {sorted(labels)}"
        )
