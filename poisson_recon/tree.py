"""
Adaptive Spatial Tree

Quadtree (2-D) / octree (3-D) over the unit cube with one node per occupied
cell at every depth in [min_depth, max_depth]. Nodes live in flat arrays
(depth-major, then cell order) and are addressed by stable integer indices;
the neighbor relation is a symmetric sparse adjacency matrix.

Neighbor relation:
    i ~ j  <=>  i != j  and  |c_i - c_j|_a < r(d_i) + r(d_j)  on every axis

where r(d) is the tabulated support radius of a depth-d basis. This is the
exact condition for two tensor-product supports to overlap, for any pair of
depths.
"""

from typing import Dict, Tuple

import numpy as np
import torch
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components
from scipy.spatial import cKDTree

from .core.basis import BasisTable
from .exceptions import DegenerateInputError, check_depth_range
from .utils import to_numpy


class SpatialTree:
    """
    Sample-driven multi-resolution tree with basis-overlap neighbor lists.

    Parameters
    ----------
    points : array-like, shape (N, k)
        Normalized sample locations in [0, 1]^k, k in {2, 3}
    min_depth, max_depth : int
        Depth range of the nodes
    table : BasisTable
        Basis tables covering the depth range (provides support radii)
    dilation : int, optional
        Also create nodes for cells within this many cells (Chebyshev
        distance) of an occupied cell (default: 0, occupied cells only)
    verbose : bool, optional
        Print node and neighbor statistics (default: False)

    Attributes
    ----------
    points : np.ndarray, shape (N, k)
        The samples the tree was built from
    depth : np.ndarray of int, shape (n,)
        Node depths
    cell : np.ndarray of int, shape (n, k)
        Integer cell coordinates at the node's depth
    center : np.ndarray, shape (n, k)
        Cell centers (cell + 0.5) / 2^depth
    sample_nodes : np.ndarray of int, shape (N, n_levels)
        For every sample, the node containing it at each depth
    adjacency : scipy.sparse.csr_matrix, shape (n, n)
        Symmetric neighbor pattern (no self loops)
    neighbor_ptr, neighbor_index : np.ndarray
        CSR view of the neighbor lists: neighbors of i are
        neighbor_index[neighbor_ptr[i]:neighbor_ptr[i+1]]

    Examples
    --------
    >>> table = get_basis_table(2, 3, 5)
    >>> tree = SpatialTree(points, 3, 5, table)
    >>> len(tree), tree.neighbors(0)[:5]
    """

    def __init__(self,
                 points,
                 min_depth: int,
                 max_depth: int,
                 table: BasisTable,
                 dilation: int = 0,
                 verbose: bool = False):
        check_depth_range(min_depth, max_depth)

        pts = to_numpy(points)
        if pts.ndim != 2 or pts.shape[1] not in (2, 3):
            raise ValueError(f"Expected points of shape (N, 2) or (N, 3), got {pts.shape}")
        if pts.shape[0] == 0:
            raise DegenerateInputError("Cannot build a tree from an empty point set")
        if not np.all(np.isfinite(pts)):
            raise ValueError("Points contain NaN or infinite coordinates")
        if pts.min() < 0.0 or pts.max() > 1.0:
            raise ValueError("Points must lie in the unit cube; normalize them first")
        if not table.covers(min_depth, max_depth):
            raise ValueError(f"{table!r} does not cover depths {min_depth}..{max_depth}")
        if dilation < 0:
            raise ValueError(f"dilation must be non-negative, got {dilation}")

        self.points = pts
        self.dim = pts.shape[1]
        self.min_depth = int(min_depth)
        self.max_depth = int(max_depth)
        self.depths = tuple(range(self.min_depth, self.max_depth + 1))
        self.table = table
        self.dilation = int(dilation)
        self.verbose = verbose

        self._build_nodes()
        self._build_neighbors()

        if verbose:
            print(f"SpatialTree built:")
            print(f"  Samples: {pts.shape[0]} in {self.dim}-D")
            for d in self.depths:
                start, stop = self._levels[d]
                print(f"  depth {d}: {stop - start} nodes")
            print(f"  Total nodes: {len(self)}")
            print(f"  Neighbor pairs: {self.adjacency.nnz // 2}")

    def __len__(self) -> int:
        return self.depth.shape[0]

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def _encode(self, cells: np.ndarray, resolution: int) -> np.ndarray:
        """Row-major integer key of cell coordinates (sorts lexicographically)."""
        keys = np.zeros(cells.shape[0], dtype=np.int64)
        for axis in range(self.dim):
            keys = keys * resolution + cells[:, axis]
        return keys

    def _dilate(self, cells: np.ndarray, resolution: int) -> np.ndarray:
        r = self.dilation
        shifts = np.stack(np.meshgrid(*[np.arange(-r, r + 1)] * self.dim, indexing='ij'),
                          axis=-1).reshape(-1, self.dim)
        grown = (cells[:, None, :] + shifts[None, :, :]).reshape(-1, self.dim)
        inside = np.all((grown >= 0) & (grown < resolution), axis=1)
        return grown[inside]

    def _build_nodes(self):
        depths, cells, sample_nodes = [], [], []
        self._levels: Dict[int, Tuple[int, int]] = {}
        start = 0

        for d in self.depths:
            resolution = 2 ** d
            occupied = np.clip(np.floor(self.points * resolution).astype(np.int64),
                               0, resolution - 1)

            level_cells = np.unique(occupied, axis=0)
            if self.dilation > 0:
                level_cells = self._dilate(level_cells, resolution)

            keys = self._encode(level_cells, resolution)
            keys, first = np.unique(keys, return_index=True)
            level_cells = level_cells[first]

            sample_nodes.append(start + np.searchsorted(keys, self._encode(occupied, resolution)))
            depths.append(np.full(keys.size, d, dtype=np.int64))
            cells.append(level_cells)

            self._levels[d] = (start, start + keys.size)
            start += keys.size

        self.depth = np.concatenate(depths)
        self.cell = np.concatenate(cells)
        self.center = (self.cell + 0.5) / (2.0 ** self.depth)[:, None]
        self.sample_nodes = np.stack(sample_nodes, axis=1)

    def _build_neighbors(self):
        self._kdtrees = {d: cKDTree(self.center[self.nodes_at_depth(d)]) for d in self.depths}

        rows, cols = [], []
        for i, da in enumerate(self.depths):
            for db in self.depths[i:]:
                reach = self.table.support_radius(da) + self.table.support_radius(db)
                # Center offsets are multiples of 2^-(finer+1); shrinking the
                # radius below that spacing turns <= into the strict <
                radius = reach - 0.25 * 2.0 ** -(max(da, db) + 1)
                index_a = self.nodes_at_depth(da)
                index_b = self.nodes_at_depth(db)

                if da == db:
                    pairs = self._kdtrees[da].query_pairs(radius, p=np.inf, output_type='ndarray')
                    rows.append(index_a[pairs[:, 0]])
                    cols.append(index_a[pairs[:, 1]])
                else:
                    hits = self._kdtrees[da].query_ball_tree(self._kdtrees[db], radius, p=np.inf)
                    counts = np.fromiter((len(h) for h in hits), dtype=np.int64, count=len(hits))
                    if counts.sum() == 0:
                        continue
                    rows.append(np.repeat(index_a, counts))
                    cols.append(index_b[np.concatenate([h for h in hits if h]).astype(np.int64)])

        n = len(self)
        rows = np.concatenate(rows) if rows else np.zeros(0, dtype=np.int64)
        cols = np.concatenate(cols) if cols else np.zeros(0, dtype=np.int64)

        adjacency = coo_matrix((np.ones(2 * rows.size, dtype=np.int8),
                                (np.concatenate([rows, cols]), np.concatenate([cols, rows]))),
                               shape=(n, n)).tocsr()
        adjacency.sort_indices()

        self.adjacency = adjacency
        self.neighbor_ptr = adjacency.indptr
        self.neighbor_index = adjacency.indices

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def nodes_at_depth(self, depth: int) -> np.ndarray:
        """Indices of the nodes at a depth (contiguous, cell-ordered)."""
        start, stop = self._levels[depth]
        return np.arange(start, stop)

    def neighbors(self, i: int) -> np.ndarray:
        """Neighbor indices of node i (excluding i itself), sorted."""
        return self.neighbor_index[self.neighbor_ptr[i]:self.neighbor_ptr[i + 1]]

    def neighbor_pairs(self, upper: bool = False) -> Tuple[np.ndarray, np.ndarray]:
        """
        All neighbor pairs (i, j).

        Parameters
        ----------
        upper : bool, optional
            Only return pairs with i < j (default: both orientations)
        """
        rows = np.repeat(np.arange(len(self)), np.diff(self.neighbor_ptr))
        cols = self.neighbor_index.astype(np.int64)
        if upper:
            keep = rows < cols
            return rows[keep], cols[keep]
        return rows, cols

    def isolated_nodes(self) -> np.ndarray:
        """Nodes with an empty neighbor list."""
        return np.flatnonzero(np.diff(self.neighbor_ptr) == 0)

    def connected_components(self) -> Tuple[int, np.ndarray]:
        """Number of connected components of the neighbor graph and node labels."""
        return connected_components(self.adjacency, directed=False)

    def support_pairs(self, points, depth: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        (point, node) pairs whose depth-`depth` basis support contains the point.

        Parameters
        ----------
        points : array-like, shape (P, k)
            Query locations
        depth : int
            Node depth to search

        Returns
        -------
        point_index, node_index : np.ndarray of int
            Matching pairs; node indices are global tree indices
        """
        pts = to_numpy(points)
        radius = self.table.support_radius(depth)
        hits = cKDTree(pts).query_ball_tree(self._kdtrees[depth], radius, p=np.inf)
        counts = np.fromiter((len(h) for h in hits), dtype=np.int64, count=len(hits))
        if counts.sum() == 0:
            empty = np.zeros(0, dtype=np.int64)
            return empty, empty
        point_index = np.repeat(np.arange(pts.shape[0]), counts)
        local = np.concatenate([h for h in hits if h]).astype(np.int64)
        return point_index, self.nodes_at_depth(depth)[local]

    def centers_tensor(self, dtype: torch.dtype = torch.float64) -> torch.Tensor:
        return torch.as_tensor(self.center, dtype=dtype)

    def __repr__(self) -> str:
        return (f"SpatialTree(dim={self.dim}, depths={self.min_depth}..{self.max_depth}, "
                f"nodes={len(self)}, samples={self.points.shape[0]})")
