"""
Derivative and table consistency checks

Helpers used to validate the analytic B-spline derivatives and the
symmetries the assembled system relies on.
"""

import torch

from .basis import BasisTable, bspline, bspline_derivative


def verify_derivatives_finite_diff(degree: int,
                                   u: torch.Tensor,
                                   h: float = 1e-5) -> dict:
    """
    Verify analytical B-spline derivatives against central finite differences.

    Parameters
    ----------
    degree : int
        Spline degree
    u : torch.Tensor, shape (N,)
        Test points; keep them away from the knots (half-integers for even
        degree, integers for odd degree) where the highest derivative jumps
    h : float, optional
        Finite difference step size (default: 1e-5)

    Returns
    -------
    results : dict
        - 'derivative_error': Max error in the first derivative
        - 'second_derivative_error': Max error in the second derivative
        - 'derivative_rel_error': Relative error
        - 'second_derivative_rel_error': Relative error

    Examples
    --------
    >>> u = torch.linspace(-1.3, 1.3, 27, dtype=torch.float64)
    >>> results = verify_derivatives_finite_diff(3, u)
    >>> print(f"Derivative error: {results['derivative_error']:.2e}")
    """
    u = torch.as_tensor(u, dtype=torch.float64)

    d1_analytical = bspline_derivative(u, degree, 1)
    d2_analytical = bspline_derivative(u, degree, 2)

    f_plus = bspline(u + h, degree)
    f_minus = bspline(u - h, degree)
    f_center = bspline(u, degree)

    # Central differences
    d1_fd = (f_plus - f_minus) / (2 * h)
    d2_fd = (f_plus - 2 * f_center + f_minus) / h ** 2

    d1_error = torch.abs(d1_analytical - d1_fd).max().item()
    d2_error = torch.abs(d2_analytical - d2_fd).max().item()

    d1_scale = torch.abs(d1_analytical).max().item()
    d2_scale = torch.abs(d2_analytical).max().item()

    return {
        'derivative_error': d1_error,
        'second_derivative_error': d2_error,
        'derivative_rel_error': d1_error / d1_scale if d1_scale > 0 else 0,
        'second_derivative_rel_error': d2_error / d2_scale if d2_scale > 0 else 0,
    }


def verify_table_symmetry(table: BasisTable) -> dict:
    """
    Measure parity violations of the tabulated functions.

    Values and second derivatives are even in the offset, first derivatives
    odd. Product tables satisfy P_ab(t) = P_ba(-t) for value·value and
    derivative·derivative, which is what makes the stiffness matrix symmetric.

    Returns
    -------
    results : dict
        - 'value_error': max |g(t) - g(-t)| over all depths
        - 'derivative_error': max |g'(t) + g'(-t)|
        - 'product_error': max |P_ab(t) - P_ba(-t)| over all depth pairs
    """
    value_error = 0.0
    derivative_error = 0.0
    for depth in table.depths:
        values = table.value_tables[depth]
        flipped = torch.flip(values, dims=[0])
        value_error = max(value_error, torch.abs(values[:, 1] - flipped[:, 1]).max().item())
        derivative_error = max(derivative_error, torch.abs(values[:, 2] + flipped[:, 2]).max().item())

    product_error = 0.0
    for (da, db), forward in table.product_tables.items():
        backward = torch.flip(table.product_tables[(db, da)], dims=[0])
        for column in (1, 3):
            product_error = max(product_error,
                                torch.abs(forward[:, column] - backward[:, column]).max().item())

    return {
        'value_error': value_error,
        'derivative_error': derivative_error,
        'product_error': product_error,
    }
