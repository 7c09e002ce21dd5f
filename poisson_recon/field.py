"""
Field evaluation and isovalue selection

The reconstructed indicator function is

    χ(q) = Σ_j x_j F_j(q)

with F_j the normalized basis of node j. `FieldEvaluator.basis_sum` samples
χ at every node center using the neighbor lists; `FieldEvaluator.evaluate`
samples it at arbitrary points. Both use `BasisTable.evaluate`, the same
lookup rule the assembler uses; `evaluate(..., exact=True)` skips the table
for query points off the table grid.
"""

import numpy as np
import torch

from .core.basis import BasisTable
from .tree import SpatialTree
from .utils import to_numpy


class FieldEvaluator:
    """
    Evaluate χ = Σ_j x_j F_j on a tree.

    Parameters
    ----------
    tree : SpatialTree
        Tree whose nodes carry the basis functions
    table : BasisTable, optional
        Lookup tables (default: the tree's table)
    """

    def __init__(self, tree: SpatialTree, table: BasisTable = None):
        self.tree = tree
        self.table = table if table is not None else tree.table
        self.centers = tree.centers_tensor(self.table.dtype)

    def _coefficients(self, x) -> torch.Tensor:
        x = torch.as_tensor(x, dtype=self.table.dtype).reshape(-1)
        if x.numel() != len(self.tree):
            raise ValueError(f"Expected {len(self.tree)} coefficients, got {x.numel()}")
        return x

    def basis_sum(self, x, coefficient: str = 'source') -> torch.Tensor:
        """
        Basis sums at every node center.

        'source' (χ at the centers):  X_i = Σ_{j ∈ N(i) ∪ {i}} x_j F_j(c_i)
        'node'   (reference form):    X_i = x_i Σ_{j ∈ N(i) ∪ {i}} F_j(c_i)

        Parameters
        ----------
        x : torch.Tensor, shape (n_nodes,)
            Basis coefficients
        coefficient : str, optional
            Which coefficient multiplies F_j(c_i): the contributing node's
            x_j ('source', default) or the evaluated node's x_i ('node')

        Returns
        -------
        X : torch.Tensor, shape (n_nodes,)
            Values in node order. Linear in x.
        """
        if coefficient not in ('source', 'node'):
            raise ValueError(f"Unknown coefficient mode: {coefficient}. "
                             f"Choose from: 'source', 'node'")
        x = self._coefficients(x)
        n = len(self.tree)

        rows, cols = self.tree.neighbor_pairs()
        rows = np.concatenate([rows, np.arange(n)])
        cols = np.concatenate([cols, np.arange(n)])
        depth_of_source = self.tree.depth[cols]

        X = torch.zeros(n, dtype=self.table.dtype)
        for d in self.tree.depths:
            mask = depth_of_source == d
            if not mask.any():
                continue
            i = torch.from_numpy(rows[mask])
            j = torch.from_numpy(cols[mask])
            values = self.table.evaluate(d, self.centers[i] - self.centers[j])
            weight = x[j] if coefficient == 'source' else x[i]
            X.index_add_(0, i, weight * values)
        return X

    def evaluate(self, points, x, exact: bool = False) -> torch.Tensor:
        """
        Field value at arbitrary points.

        Parameters
        ----------
        points : array-like, shape (P, k)
            Query locations in the normalized frame
        x : torch.Tensor, shape (n_nodes,)
            Basis coefficients
        exact : bool, optional
            Evaluate the B-splines directly rather than through the nearest
            table row (default: False). Off-grid offsets such as extraction
            lattice nodes fall between rows of the coarser tables.

        Returns
        -------
        values : torch.Tensor, shape (P,)
            χ at the query points (zero away from every support)
        """
        x = self._coefficients(x)
        pts_np = to_numpy(points)
        if pts_np.ndim != 2 or pts_np.shape[1] != self.tree.dim:
            raise ValueError(f"Expected points of shape (P, {self.tree.dim}), got {pts_np.shape}")
        pts = torch.from_numpy(pts_np).to(self.table.dtype)

        values = torch.zeros(pts.shape[0], dtype=self.table.dtype)
        for d in self.tree.depths:
            p, o = self.tree.support_pairs(pts_np, d)
            if p.size == 0:
                continue
            p = torch.from_numpy(p)
            o = torch.from_numpy(o)
            contrib = self.table.evaluate(d, pts[p] - self.centers[o], exact=exact)
            values.index_add_(0, p, x[o] * contrib)
        return values


def select_isovalue(evaluator: FieldEvaluator, points, x, statistic: str = 'mean') -> float:
    """
    Isovalue separating inside from outside.

    Parameters
    ----------
    evaluator : FieldEvaluator
        Evaluator bound to the solved tree
    points : array-like, shape (N, k)
        Sample locations (normalized frame)
    x : torch.Tensor
        Solved coefficients
    statistic : str, optional
        'mean' (default) or 'median' of the field at the samples

    Returns
    -------
    isovalue : float
    """
    values = evaluator.evaluate(points, x)
    if statistic == 'mean':
        return values.mean().item()
    elif statistic == 'median':
        return values.median().item()
    else:
        raise ValueError(f"Unknown isovalue statistic: {statistic}. "
                         f"Choose from: 'mean', 'median'")
