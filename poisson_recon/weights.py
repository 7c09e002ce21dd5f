"""
Kernel-density sample weights

Dense regions would otherwise dominate the right-hand side. Each sample is
weighted by the inverse of a kernel density estimate evaluated with the same
tree and basis machinery, on a coarser depth range than the FEM tree.
"""

import numpy as np
import torch

from .core.basis import get_basis_table
from .exceptions import check_depth_range
from .field import FieldEvaluator
from .tree import SpatialTree
from .utils import to_numpy


class WeightField:
    """
    Per-sample inverse-density weights.

    Parameters
    ----------
    min_depth, max_depth : int
        Depth range of the density tree; negative values clamp to 0
    degree : int, optional
        B-spline degree of the density kernel (default: 2)
    verbose : bool, optional
        Print density statistics (default: False)

    Attributes
    ----------
    density : torch.Tensor or None
        Density estimate at the samples after compute()
    tree : SpatialTree or None
        Density tree after compute()
    """

    def __init__(self, min_depth: int, max_depth: int, degree: int = 2, verbose: bool = False):
        self.min_depth = max(int(min_depth), 0)
        self.max_depth = max(int(max_depth), 0)
        check_depth_range(self.min_depth, self.max_depth)
        self.degree = degree
        self.verbose = verbose
        self.density = None
        self.tree = None

    @classmethod
    def from_fem_depths(cls, min_depth: int, max_depth: int, offset: int = 2, **kwargs):
        """Weight field `offset` levels coarser than the FEM depth range."""
        return cls(min_depth - offset, max_depth - offset, **kwargs)

    def compute(self, points) -> torch.Tensor:
        """
        Compute normalized inverse-density weights.

        Every sample splats unit mass into the node containing it at each
        depth; the density is the resulting basis sum evaluated at the sample.

        Parameters
        ----------
        points : array-like, shape (N, k)
            Normalized sample locations

        Returns
        -------
        weights : torch.Tensor, shape (N,)
            Positive weights with mean 1
        """
        pts = to_numpy(points)
        table = get_basis_table(self.degree, self.min_depth, self.max_depth)
        tree = SpatialTree(pts, self.min_depth, self.max_depth, table)

        mass = np.bincount(tree.sample_nodes.ravel(), minlength=len(tree)).astype(np.float64)
        density = FieldEvaluator(tree, table).evaluate(pts, torch.from_numpy(mass))

        weights = 1.0 / density
        weights = weights / weights.mean()

        self.tree = tree
        self.density = density

        if self.verbose:
            print(f"WeightField computed:")
            print(f"  Depths: {self.min_depth}..{self.max_depth} ({len(tree)} nodes)")
            print(f"  Density range: [{density.min().item():.4e}, {density.max().item():.4e}]")
            print(f"  Weight range: [{weights.min().item():.4f}, {weights.max().item():.4f}]")

        return weights
