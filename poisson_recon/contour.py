"""
Iso-contour / iso-surface extraction

Samples the reconstructed field on a regular lattice with step 2^-max_depth
(nodes at w/2, 3w/2, ..., 1 - w/2 per axis) and runs marching squares (2-D)
or marching cubes (3-D) at the isovalue.

Two ways to fill the lattice:
    field     evaluate χ = Σ_j x_j F_j directly at every lattice node
    griddata  interpolate the node-center values X_i; lattice nodes outside
              the convex hull of the centers are masked out of extraction
"""

import warnings
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from .utils import Normalization, to_numpy


SAMPLING_MODES = ('field', 'griddata')


@dataclass
class Geometry:
    """
    Extracted level set.

    Attributes
    ----------
    vertices : np.ndarray, shape (V, k)
        Vertex positions in the normalized frame
    cells : np.ndarray of int
        (E, 2) edges for 2-D contours, (F, 3) triangles for 3-D surfaces
    isovalue : float
        Level that was extracted
    dim : int
        Spatial dimension
    components : list of np.ndarray
        2-D only: one vertex polyline per contour piece
    closed : list of bool
        2-D only: whether each polyline is a closed loop
    normalization : Normalization, optional
        Map back to world coordinates
    """
    vertices: np.ndarray
    cells: np.ndarray
    isovalue: float
    dim: int
    components: List[np.ndarray] = field(default_factory=list)
    closed: List[bool] = field(default_factory=list)
    normalization: Optional[Normalization] = None

    @property
    def n_vertices(self) -> int:
        return self.vertices.shape[0]

    @property
    def is_empty(self) -> bool:
        return self.vertices.shape[0] == 0

    def to_world(self) -> 'Geometry':
        """Copy of the geometry in world coordinates."""
        if self.normalization is None:
            return self
        return Geometry(vertices=self.normalization.invert(self.vertices),
                        cells=self.cells.copy(),
                        isovalue=self.isovalue,
                        dim=self.dim,
                        components=[self.normalization.invert(c) for c in self.components],
                        closed=list(self.closed),
                        normalization=None)


def empty_geometry(dim: int, isovalue: float) -> Geometry:
    return Geometry(vertices=np.zeros((0, dim)),
                    cells=np.zeros((0, dim), dtype=np.int64),
                    isovalue=isovalue,
                    dim=dim)


class ContourExtractor:
    """
    Lattice sampling plus marching squares / cubes.

    Parameters
    ----------
    max_depth : int
        Finest tree depth; the lattice step is 2^-max_depth
    method : str, optional
        scipy.interpolate.griddata method for resample() (default: 'linear')
    verbose : bool, optional
        Print extraction statistics (default: False)

    Examples
    --------
    >>> extractor = ContourExtractor(max_depth=5)
    >>> geometry = extractor.extract_field(FieldEvaluator(tree), x, isovalue)
    """

    def __init__(self, max_depth: int, method: str = 'linear', verbose: bool = False):
        self.max_depth = int(max_depth)
        self.width = 2.0 ** -self.max_depth
        self.method = method
        self.verbose = verbose

    def grid_axis(self) -> np.ndarray:
        """Lattice coordinates along one axis: w/2, 3w/2, ..., 1 - w/2."""
        return (np.arange(2 ** self.max_depth) + 0.5) * self.width

    def lattice(self, dim: int) -> np.ndarray:
        """All lattice nodes, shape (2^(k max_depth), k), in 'ij' order."""
        axis = self.grid_axis()
        mesh = np.meshgrid(*[axis] * dim, indexing='ij')
        return np.stack([m.ravel() for m in mesh], axis=1)

    def sample_field(self, evaluator, x) -> np.ndarray:
        """
        Evaluate χ at every lattice node.

        Parameters
        ----------
        evaluator : FieldEvaluator
            Evaluator bound to the solved tree
        x : torch.Tensor, shape (n_nodes,)
            Solved coefficients

        Returns
        -------
        grid : np.ndarray, shape (2^max_depth,) * k
            Indexed as grid[i, j(, l)] with axis 0 = x. Zero away from every
            basis support.
        """
        dim = evaluator.tree.dim
        values = evaluator.evaluate(self.lattice(dim), x, exact=True).numpy()
        return values.reshape((2 ** self.max_depth,) * dim)

    def resample(self, centers, values) -> np.ndarray:
        """
        Interpolate scattered node values onto the lattice.

        Returns
        -------
        grid : np.ndarray, shape (2^max_depth,) * k
            Indexed as grid[i, j(, l)] with axis 0 = x. NaN outside the
            convex hull of the centers.
        """
        from scipy.interpolate import griddata
        from scipy.spatial import QhullError

        centers = to_numpy(centers)
        values = to_numpy(values).reshape(-1)
        dim = centers.shape[1]
        query = self.lattice(dim)

        method = self.method
        if centers.shape[0] <= dim:
            warnings.warn(f"Only {centers.shape[0]} node centers; using nearest-neighbor resampling")
            method = 'nearest'

        try:
            grid = griddata(centers, values, query, method=method)
        except QhullError as e:
            warnings.warn(f"Triangulation of node centers failed ({e}); "
                          f"using nearest-neighbor resampling")
            grid = griddata(centers, values, query, method='nearest')

        return grid.reshape((2 ** self.max_depth,) * dim)

    def extract(self, centers, values, isovalue: float) -> Geometry:
        """
        Extract the isovalue level set from node-center values.

        Parameters
        ----------
        centers : array-like, shape (n, k)
            Node centers (normalized frame)
        values : array-like, shape (n,)
            Field values at the centers
        isovalue : float
            Level to extract

        Returns
        -------
        geometry : Geometry
            Lattice nodes outside the hull of the centers take no part.
        """
        return self.extract_grid(self.resample(centers, values), isovalue)

    def extract_field(self, evaluator, x, isovalue: float) -> Geometry:
        """Extract the isovalue level set of χ sampled on the lattice."""
        return self.extract_grid(self.sample_field(evaluator, x), isovalue)

    def extract_grid(self, grid: np.ndarray, isovalue: float) -> Geometry:
        """
        Run marching squares / cubes on a lattice of field values.

        Parameters
        ----------
        grid : np.ndarray, shape (2^max_depth,) * k
            Field values; NaN entries are excluded from extraction
        isovalue : float
            Level to extract

        Returns
        -------
        geometry : Geometry
            Empty (with a warning) when the isovalue lies outside the range
            of the defined grid values
        """
        from skimage import measure

        dim = grid.ndim
        valid = ~np.isnan(grid)
        if not valid.any():
            warnings.warn("No defined lattice values; returning empty geometry")
            return empty_geometry(dim, isovalue)

        lo, hi = float(grid[valid].min()), float(grid[valid].max())
        if not lo < isovalue < hi:
            warnings.warn(f"Isovalue {isovalue:.4e} outside the sampled range "
                          f"[{lo:.4e}, {hi:.4e}]; returning empty geometry")
            return empty_geometry(dim, isovalue)

        mask = None if valid.all() else valid
        # Masked cells are skipped, but marching cubes still needs finite input
        filled = np.where(valid, grid, lo)

        w = self.width
        if dim == 2:
            contours = measure.find_contours(filled, level=isovalue, mask=mask)
            geometry = self._extract_contours(contours, isovalue)
        else:
            vertices, faces, _, _ = measure.marching_cubes(filled, level=isovalue,
                                                           spacing=(w, w, w), mask=mask)
            geometry = Geometry(vertices=vertices.astype(np.float64) + w / 2,
                                cells=faces.astype(np.int64),
                                isovalue=isovalue,
                                dim=3)

        if self.verbose:
            print(f"Level set extracted:")
            print(f"  Grid: {grid.shape}, values in [{lo:.4e}, {hi:.4e}]")
            if mask is not None:
                print(f"  Masked lattice nodes: {int((~valid).sum())}")
            print(f"  Isovalue: {isovalue:.4e}")
            print(f"  Vertices: {geometry.n_vertices}, cells: {geometry.cells.shape[0]}")
            if dim == 2:
                print(f"  Components: {len(geometry.components)} "
                      f"({sum(geometry.closed)} closed)")

        return geometry

    def _extract_contours(self, contours, isovalue: float) -> Geometry:
        w = self.width
        vertices, edges, components, closed = [], [], [], []
        offset = 0
        for contour in contours:
            points = w / 2 + contour * w
            is_closed = len(points) > 2 and np.allclose(points[0], points[-1])
            if is_closed:
                points = points[:-1]
            m = len(points)

            index = offset + np.arange(m)
            segments = np.stack([index[:-1], index[1:]], axis=1)
            if is_closed:
                segments = np.vstack([segments, [[index[-1], index[0]]]])

            vertices.append(points)
            edges.append(segments)
            components.append(points)
            closed.append(bool(is_closed))
            offset += m

        if not vertices:
            return empty_geometry(2, isovalue)

        return Geometry(vertices=np.vstack(vertices),
                        cells=np.vstack(edges).astype(np.int64),
                        isovalue=isovalue,
                        dim=2,
                        components=components,
                        closed=closed)
