"""
B-spline Basis Tables for Poisson Reconstruction

Every tree node at depth d carries the tensor-product basis function

    F(q) = 2^(k d) * Π_a g_d(q_a - c_a),    g_d(t) = M_n(t / w),   w = 2^-d

where M_n is the centered cardinal B-spline of degree n and k the spatial
dimension. The factor 2^(k d) makes every basis integrate to one.

Mathematical Foundation:
-----------------------
Centered cardinal B-spline (truncated power form):
    M_n(u) = 1/n! * Σ_{j=0}^{n+1} (-1)^j C(n+1,j) (u + (n+1)/2 - j)_+^n

with support |u| < (n+1)/2. Derivatives follow from

    d^r/du^r M_n(u) = Σ_{j=0}^{r} (-1)^j C(r,j) M_{n-r}(u + r/2 - j)

Tables:
    value table (per depth)        [offset, g, g', g'']
    product table (per depth pair) [offset, ∫g_a g_b, ∫g_a g_b', ∫g_a' g_b']

Offsets span [-1, 1] at 2^(d+2) samples per unit; the product table of a
depth pair uses the finer depth's resolution. Products are integrated exactly
with Gauss-Legendre quadrature on knot-aligned sub-intervals.
"""

import math
from functools import lru_cache
from typing import Dict, Optional, Tuple

import numpy as np
import torch

from ..exceptions import ConfigurationError, check_depth_range


VALUE_COLUMNS = {'value': 1, 'derivative': 2, 'second_derivative': 3}
PRODUCT_COLUMNS = {'value_value': 1, 'value_derivative': 2, 'derivative_derivative': 3}


def bspline(u: torch.Tensor, degree: int) -> torch.Tensor:
    """
    Evaluate the centered cardinal B-spline M_n at u.

    Parameters
    ----------
    u : torch.Tensor
        Evaluation points (any shape)
    degree : int
        Spline degree n >= 0

    Returns
    -------
    values : torch.Tensor
        M_n(u), same shape as u; exactly zero outside |u| < (n+1)/2

    Examples
    --------
    >>> bspline(torch.tensor([0.0, 0.5, 1.0]), 2)
    tensor([0.7500, 0.5000, 0.1250])
    """
    half = 0.5 * (degree + 1)
    inside = torch.abs(u) < half
    if degree == 0:
        return torch.where(inside, torch.ones_like(u), torch.zeros_like(u))

    result = torch.zeros_like(u)
    for j in range(degree + 2):
        shifted = torch.clamp(u + half - j, min=0.0)
        result = result + (-1) ** j * math.comb(degree + 1, j) * shifted ** degree
    result = result / math.factorial(degree)

    # Truncated powers cancel only approximately far from the origin
    return torch.where(inside, result, torch.zeros_like(u))


def bspline_derivative(u: torch.Tensor, degree: int, order: int = 1) -> torch.Tensor:
    """
    Evaluate the order-th derivative of M_n at u.

    Parameters
    ----------
    u : torch.Tensor
        Evaluation points
    degree : int
        Spline degree n
    order : int, optional
        Derivative order r (default: 1). Returns zeros for r > n.

    Returns
    -------
    values : torch.Tensor
        d^r M_n / du^r evaluated at u
    """
    if order == 0:
        return bspline(u, degree)
    if order > degree:
        return torch.zeros_like(u)

    result = torch.zeros_like(u)
    for j in range(order + 1):
        result = result + (-1) ** j * math.comb(order, j) * bspline(u + 0.5 * order - j, degree - order)
    return result


class BasisTable:
    """
    Precomputed value and overlap tables for depths min_depth..max_depth.

    The table is immutable after construction and shared by reference
    between the tree, the weight field, the assembler and the evaluator.
    All lookups go through one nearest-sample rule:

        index = round((offset - origin) * 2^(depth+2))

    and an index outside the table means "no overlap" (zero contribution).
    Offsets are tabulated symmetrically over [-1, 1], so origin = -1 and
    row 2^(depth+2) holds offset 0; every offset between two points of the
    unit cube lands on the table.

    Parameters
    ----------
    degree : int, optional
        B-spline degree (default: 2). Must be >= 1 for the stiffness matrix.
    min_depth, max_depth : int
        Depth range to tabulate
    dtype : torch.dtype, optional
        Floating point type of the tables (default: torch.float64)
    verbose : bool, optional
        Print table sizes (default: False)

    Attributes
    ----------
    value_tables : dict
        depth -> tensor (M_d, 4) [offset, value, derivative, second derivative]
    product_tables : dict
        (depth_a, depth_b) -> tensor (M, 4) [offset, vv, vd, dd]

    Examples
    --------
    >>> table = BasisTable(degree=2, min_depth=3, max_depth=5)
    >>> table.overlap(3, 0.0)
    0.75
    >>> table.overlap(3, 2.5) is None
    True
    """

    def __init__(self,
                 degree: int = 2,
                 min_depth: int = 4,
                 max_depth: int = 6,
                 dtype: torch.dtype = torch.float64,
                 verbose: bool = False):
        check_depth_range(min_depth, max_depth)
        if isinstance(degree, bool) or int(degree) != degree or degree < 1:
            raise ConfigurationError(f"degree must be an integer >= 1, got {degree!r}")

        self.degree = int(degree)
        self.min_depth = int(min_depth)
        self.max_depth = int(max_depth)
        self.depths = tuple(range(self.min_depth, self.max_depth + 1))
        self.dtype = dtype

        self.value_tables: Dict[int, torch.Tensor] = {
            d: self._value_table(d) for d in self.depths
        }
        self.product_tables: Dict[Tuple[int, int], torch.Tensor] = {
            (da, db): self._product_table(da, db)
            for da in self.depths for db in self.depths
        }

        if verbose:
            print(f"BasisTable initialized:")
            print(f"  Degree: {self.degree}")
            print(f"  Depths: {self.min_depth}..{self.max_depth}")
            for d in self.depths:
                print(f"  depth {d}: {self.value_tables[d].shape[0]} samples, "
                      f"support radius {self.support_radius(d):.4f}")

    # ------------------------------------------------------------------
    # Geometry of a depth
    # ------------------------------------------------------------------

    @staticmethod
    def resolution(depth: int) -> int:
        """Samples per unit offset at a depth: 2^(depth+2)."""
        return 2 ** (depth + 2)

    @staticmethod
    def width(depth: int) -> float:
        """Cell width 2^-depth."""
        return 2.0 ** -depth

    @staticmethod
    def volume_factor(depth: int, dim: int) -> float:
        """Compact-support normalization 2^(dim*depth): 4^d in 2-D, 8^d in 3-D."""
        return 2.0 ** (dim * depth)

    def support_radius(self, depth: int) -> float:
        """Half-width of a basis support along one axis; values vanish beyond it."""
        return 0.5 * (self.degree + 1) * self.width(depth)

    def covers(self, min_depth: int, max_depth: int) -> bool:
        return self.min_depth <= min_depth and max_depth <= self.max_depth

    def _check_depth(self, depth: int):
        if depth not in self.value_tables:
            raise ValueError(f"Depth {depth} is outside the tabulated range "
                             f"{self.min_depth}..{self.max_depth}")

    # ------------------------------------------------------------------
    # Table construction
    # ------------------------------------------------------------------

    def _physical(self, depth: int, t: torch.Tensor, order: int) -> torch.Tensor:
        """g_d^(order)(t) with respect to the physical offset t."""
        w = self.width(depth)
        return bspline_derivative(t / w, self.degree, order) / w ** order

    def _offsets(self, depth: int) -> torch.Tensor:
        res = self.resolution(depth)
        return torch.arange(-res, res + 1, dtype=self.dtype) / res

    def _value_table(self, depth: int) -> torch.Tensor:
        offsets = self._offsets(depth)
        table = torch.empty(offsets.numel(), 4, dtype=self.dtype)
        table[:, 0] = offsets
        for order in range(3):
            table[:, order + 1] = self._physical(depth, offsets, order)
        return table

    def _product_table(self, depth_a: int, depth_b: int) -> torch.Tensor:
        fine = max(depth_a, depth_b)
        step = 1.0 / self.resolution(fine)
        offsets = self._offsets(fine)

        table = torch.zeros(offsets.numel(), 4, dtype=self.dtype)
        table[:, 0] = offsets

        reach = self.support_radius(depth_a) + self.support_radius(depth_b)
        window = torch.abs(offsets) < reach
        t = offsets[window].unsqueeze(1)

        # Integrate over the narrower support; knots fall on multiples of step
        anchor = depth_a if depth_a >= depth_b else depth_b
        radius = self.support_radius(anchor)
        n_cells = int(round(2 * radius / step))
        nodes, weights = np.polynomial.legendre.leggauss(self.degree + 1)
        left = -radius + step * np.arange(n_cells)
        z = (left[:, None] + 0.5 * step * (nodes[None, :] + 1.0)).ravel()
        dz = np.tile(0.5 * step * weights, n_cells)

        z = torch.as_tensor(z, dtype=self.dtype).unsqueeze(0)
        dz = torch.as_tensor(dz, dtype=self.dtype)

        if anchor == depth_a:
            ya, yb = z, z + t
        else:
            ya, yb = z - t, z

        va = self._physical(depth_a, ya, 0)
        da = self._physical(depth_a, ya, 1)
        vb = self._physical(depth_b, yb, 0)
        db = self._physical(depth_b, yb, 1)

        table[window, 1] = (va * vb) @ dz
        table[window, 2] = (va * db) @ dz
        table[window, 3] = (da * db) @ dz
        return table

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @staticmethod
    def _nearest(table: torch.Tensor,
                 offsets: torch.Tensor,
                 resolution: int,
                 column: int) -> Tuple[torch.Tensor, torch.Tensor]:
        offsets = torch.as_tensor(offsets, dtype=table.dtype)
        index = torch.round((offsets - table[0, 0]) * resolution).long()
        valid = (index >= 0) & (index < table.shape[0])
        values = table[index.clamp(0, table.shape[0] - 1), column]
        return torch.where(valid, values, torch.zeros_like(values)), valid

    def lookup(self,
               depth: int,
               offsets: torch.Tensor,
               kind: str = 'value') -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Nearest-sample lookup in the value table of a depth.

        Parameters
        ----------
        depth : int
            Depth of the basis function
        offsets : torch.Tensor, shape (P,)
            Offsets from the basis center along one axis
        kind : str, optional
            'value', 'derivative' or 'second_derivative'

        Returns
        -------
        values : torch.Tensor, shape (P,)
            Tabulated values, exactly zero where the offset is off the table
        valid : torch.Tensor of bool, shape (P,)
            False where the offset fell outside the tabulated range
        """
        self._check_depth(depth)
        if kind not in VALUE_COLUMNS:
            raise ValueError(f"Unknown table kind: {kind}. "
                             f"Choose from: {', '.join(VALUE_COLUMNS)}")
        return self._nearest(self.value_tables[depth], offsets,
                             self.resolution(depth), VALUE_COLUMNS[kind])

    def overlap(self, depth: int, offset: float, kind: str = 'value') -> Optional[float]:
        """Scalar lookup; None means the offset lies off the table (no overlap)."""
        values, valid = self.lookup(depth, torch.tensor([float(offset)], dtype=self.dtype), kind)
        return values.item() if valid.item() else None

    def lookup_product(self,
                       depth_i: int,
                       depth_j: int,
                       offsets: torch.Tensor,
                       kind: str = 'value_value') -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Nearest-sample lookup of a 1-D overlap integral.

        For t = c_i - c_j the 'value_value' entry is ∫ g_i(y) g_j(y + t) dy,
        'value_derivative' is ∫ g_i(y) g_j'(y + t) dy and
        'derivative_derivative' is ∫ g_i'(y) g_j'(y + t) dy.
        """
        self._check_depth(depth_i)
        self._check_depth(depth_j)
        if kind not in PRODUCT_COLUMNS:
            raise ValueError(f"Unknown product kind: {kind}. "
                             f"Choose from: {', '.join(PRODUCT_COLUMNS)}")
        return self._nearest(self.product_tables[(depth_i, depth_j)], offsets,
                             self.resolution(max(depth_i, depth_j)), PRODUCT_COLUMNS[kind])

    def evaluate(self,
                 depth: int,
                 offsets: torch.Tensor,
                 derivative_axis: Optional[int] = None,
                 exact: bool = False) -> torch.Tensor:
        """
        Evaluate normalized basis functions of one depth at given offsets.

        Parameters
        ----------
        depth : int
            Depth of the basis functions
        offsets : torch.Tensor, shape (P, k)
            Query point minus basis center
        derivative_axis : int, optional
            If given, return the partial derivative along this axis
        exact : bool, optional
            Evaluate the B-spline directly instead of the nearest table row
            (default: False). Both agree at offsets on the table grid.

        Returns
        -------
        values : torch.Tensor, shape (P,)
            2^(k depth) * Π_a g_d(offset_a) (or its partial derivative)
        """
        self._check_depth(depth)
        offsets = torch.as_tensor(offsets, dtype=self.dtype)
        n_points, dim = offsets.shape
        result = torch.full((n_points,), self.volume_factor(depth, dim), dtype=self.dtype)
        for axis in range(dim):
            if exact:
                order = 1 if axis == derivative_axis else 0
                values = self._physical(depth, offsets[:, axis], order)
            else:
                kind = 'derivative' if axis == derivative_axis else 'value'
                values, _ = self.lookup(depth, offsets[:, axis], kind)
            result = result * values
        return result

    def __repr__(self) -> str:
        return (f"BasisTable(degree={self.degree}, "
                f"depths={self.min_depth}..{self.max_depth})")


@lru_cache(maxsize=8)
def get_basis_table(degree: int = 2, min_depth: int = 4, max_depth: int = 6) -> BasisTable:
    """Process-wide cached BasisTable for a (degree, min_depth, max_depth) triple."""
    return BasisTable(degree=degree, min_depth=min_depth, max_depth=max_depth)
