"""
Error taxonomy for poisson_recon

- ConfigurationError: invalid reconstruction settings (raised before any work)
- DegenerateInputError: empty, non-finite or zero-extent point clouds
- SingularSystemWarning: non-fatal ill-conditioning of the FEM system
"""

# Tables, trees and the extraction lattice grow as 2^(k*depth); deeper runs
# do not fit in memory. MAX_DEPTH bounds 2-D runs, MAX_DEPTH_3D volumes.
MAX_DEPTH = 10
MAX_DEPTH_3D = 8


def depth_ceiling(dim: int) -> int:
    """Largest admissible max_depth for a k-dimensional reconstruction."""
    return MAX_DEPTH_3D if dim == 3 else MAX_DEPTH


class ConfigurationError(ValueError):
    """Invalid reconstruction configuration, e.g. max_depth < min_depth."""


class DegenerateInputError(ValueError):
    """Point cloud cannot be normalized (empty, non-finite or zero extent)."""


class SingularSystemWarning(RuntimeWarning):
    """
    The Poisson system is singular or badly conditioned.

    Issued for isolated tree nodes, disconnected point clouds, solver
    non-convergence and solver fallbacks. The run still completes.
    """


def check_depth_range(min_depth: int, max_depth: int, ceiling: int = MAX_DEPTH):
    """
    Validate a [min_depth, max_depth] pair.

    Parameters
    ----------
    min_depth, max_depth : int
        Tree depth bounds. Depth d corresponds to cell width 2^-d.
    ceiling : int, optional
        Largest admissible max_depth (default: MAX_DEPTH)

    Raises
    ------
    ConfigurationError
        If the depths are not integers, negative, reversed or too deep.
    """
    for name, value in (('min_depth', min_depth), ('max_depth', max_depth)):
        if isinstance(value, bool) or int(value) != value:
            raise ConfigurationError(f"{name} must be an integer, got {value!r}")
        if value < 0:
            raise ConfigurationError(f"{name} must be non-negative, got {value}")

    if max_depth < min_depth:
        raise ConfigurationError(
            f"max_depth ({max_depth}) must be >= min_depth ({min_depth})"
        )
    if max_depth > ceiling:
        raise ConfigurationError(
            f"max_depth ({max_depth}) exceeds the supported ceiling ({ceiling})"
        )
