"""
Sampling Run Configuration.

A sampling run is described by a plain dict with lowercase keys:

    iter                    - total iterations (required)
    burn                    - iterations discarded before tallying
    thin                    - keep every thin-th post-burn iteration
    tune_interval           - iterations between tuning checkpoints
    tune_throughout         - keep tuning after burn-in
    diminishing_adaptation  - double the gap between tuning checkpoints after burn-in
    stop_tuning_after       - stop post-burn tuning after this many idle checkpoints
    save_interval           - iterations between chain-state snapshots (None = never)
    checkpoint_path         - .npz path each snapshot is also written to (None = memory only)
    verbose                 - progress logging level

The dict is serializable, so it can be stored alongside checkpoints.
"""

from typing import Any, Dict

import logging
logger = logging.getLogger('mcstep')


CONFIG_DEFAULTS = {
    'burn': 0,
    'thin': 1,
    'tune_interval': 1000,
    'tune_throughout': True,
    'diminishing_adaptation': True,
    'stop_tuning_after': 5,
    'save_interval': None,
    'checkpoint_path': None,
    'verbose': 0,
}


def clean_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Cleans the config and sets defaults.
    All config keys use lowercase with underscores.
    Returns a new dict; the input is not modified.
    """
    config = {k.lower(): v for k, v in config.items()}
    for key, default in CONFIG_DEFAULTS.items():
        config.setdefault(key, default)
    return config


def validate_sampler_config(config: Dict[str, Any]) -> None:
    """
    Validates that a sampling configuration is sensible.

    Args:
        config: Configuration dictionary (after clean_config)

    Raises:
        ValueError: If configuration is invalid
    """
    errors = []

    unknown = set(config) - set(CONFIG_DEFAULTS) - {'iter'}
    if unknown:
        errors.append(f"Unknown config keys: {sorted(unknown)}")

    if 'iter' not in config:
        errors.append("Missing required config key: 'iter'")
    elif config['iter'] < 0:
        errors.append("iter must be >= 0")

    if config.get('burn', 0) < 0:
        errors.append("burn must be >= 0")

    if config.get('thin', 1) < 1:
        errors.append("thin must be >= 1")

    if config.get('tune_interval', 1) < 1:
        errors.append("tune_interval must be >= 1")

    if config.get('stop_tuning_after') is not None and config['stop_tuning_after'] < 1:
        errors.append("stop_tuning_after must be >= 1 or None")

    save_interval = config.get('save_interval')
    if save_interval is not None and save_interval < 1:
        errors.append("save_interval must be >= 1 or None")

    if config.get('checkpoint_path') is not None and save_interval is None:
        errors.append("checkpoint_path requires save_interval")

    if errors:
        raise ValueError("Invalid sampler configuration:\n  " + "\n  ".join(errors))

    if config['burn'] >= config['iter'] > 0:
        logger.warning(
            f"burn ({config['burn']}) >= iter ({config['iter']}): no samples will be tallied"
        )

    if config['tune_throughout'] and not config['diminishing_adaptation']:
        logger.warning(
            "Tuning throughout at a fixed interval: the chain is not guaranteed "
            "to target the posterior. Set diminishing_adaptation=True or "
            "tune_throughout=False."
        )
