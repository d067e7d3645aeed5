"""
Step-method settings and tuning constants.

This module defines the enumerations shared by the step methods and the
sampler, and the bracketed acceptance-ratio rule used to tune proposal scales.

Tuning rule:
    Each entry of LOW_ACCEPTANCE_RULE / HIGH_ACCEPTANCE_RULE is a
    (threshold, multiplier) pair. The first matching bracket wins; an
    acceptance ratio inside the target band leaves the scale unchanged.

    ratio < 0.001  -> x 0.1
    ratio < 0.05   -> x 0.5
    ratio < 0.2    -> x 0.9
    ratio > 0.95   -> x 10
    ratio > 0.75   -> x 2
    ratio > 0.5    -> x 1.1
"""

from enum import IntEnum


class ProposalDistribution(IntEnum):
    """
    Proposal strategies for the Metropolis family.

    NORMAL  - symmetric Gaussian perturbation (rounded for integer nodes)
    POISSON - signed Poisson-distributed jump (integer nodes only)
    PRIOR   - independent redraw from the node's own prior
    """
    NORMAL = 0
    POISSON = 1
    PRIOR = 2

    def __str__(self):
        return self.name.title()

    @classmethod
    def from_name(cls, value):
        """Accept an enum member, its int value, or a case-insensitive name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).upper()]
        except KeyError:
            valid = ', '.join(str(m) for m in cls)
            raise ValueError(f"Unknown proposal distribution '{value}'. Valid: {valid}")


class SamplerStatus(IntEnum):
    """Lifecycle states of a sampler."""
    READY = 0         # Constructed, nothing allocated yet
    INITIALIZED = 1   # Step methods assigned, trace storage allocated
    SAMPLING = 2      # Inside an iteration
    PAUSED = 3        # Interactive run suspended at an iteration boundary
    HALTED = 4        # Stopped early by the user or an error
    FINISHED = 5      # All iterations complete

    def __str__(self):
        return self.name.lower()


# Target acceptance band: tuning leaves the scale alone inside it
TARGET_ACCEPTANCE = (0.2, 0.5)

LOW_ACCEPTANCE_RULE = (
    (0.001, 0.1),
    (0.05, 0.5),
    (0.2, 0.9),
)

HIGH_ACCEPTANCE_RULE = (
    (0.95, 10.0),
    (0.75, 2.0),
    (0.5, 1.1),
)


def tuning_multiplier(acceptance_ratio: float) -> float:
    """
    Multiplier applied to adaptive_scale_factor for a given acceptance ratio.

    Returns 1.0 when the ratio falls inside TARGET_ACCEPTANCE.
    """
    for threshold, multiplier in LOW_ACCEPTANCE_RULE:
        if acceptance_ratio < threshold:
            return multiplier
    for threshold, multiplier in HIGH_ACCEPTANCE_RULE:
        if acceptance_ratio > threshold:
            return multiplier
    return 1.0


# AdaptiveMetropolis constants
AM_SCALING = 2.38 ** 2        # Divided by dimension: optimal RW scaling for Gaussian targets
AM_EPSILON = 1.0e-5           # Diagonal regularisation of the empirical covariance
AM_SHRINK_THRESHOLD = 0.05    # Chunk acceptance rate below which C is shrunk
AM_SHRINK_FACTOR = 0.25       # Overall scale applied when shrinking
AM_SHRINK_BLEND = 0.5         # Weight kept on the full covariance (rest goes to its diagonal)
