"""
Core components for poisson_recon

- basis: B-spline basis functions and per-depth lookup tables
- solver: Sparse linear solvers and system diagnostics
- derivatives: Derivative and table consistency checks
"""

from .basis import (
    BasisTable,
    bspline,
    bspline_derivative,
    get_basis_table
)
from .solver import (
    solve_linear_system,
    solve_cg,
    solve_direct,
    solve_ridge,
    condition_number,
    compute_residual,
    diagnose_system
)
from .derivatives import (
    verify_derivatives_finite_diff,
    verify_table_symmetry
)

__all__ = [
    'BasisTable',
    'bspline',
    'bspline_derivative',
    'get_basis_table',
    'solve_linear_system',
    'solve_cg',
    'solve_direct',
    'solve_ridge',
    'condition_number',
    'compute_residual',
    'diagnose_system',
    'verify_derivatives_finite_diff',
    'verify_table_symmetry',
]
