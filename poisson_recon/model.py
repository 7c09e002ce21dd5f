"""
PoissonReconstructor: end-to-end Poisson surface reconstruction

Pipeline:
    normalize -> downsample -> SpatialTree -> WeightField ->
    PoissonSystemAssembler -> solver -> FieldEvaluator + isovalue ->
    ContourExtractor
"""

import time
import warnings
from typing import Dict, Optional

from .contour import SAMPLING_MODES, ContourExtractor, Geometry
from .core import diagnose_system, get_basis_table, solve_linear_system
from .exceptions import (
    ConfigurationError,
    DegenerateInputError,
    SingularSystemWarning,
    check_depth_range,
    depth_ceiling
)
from .fem import SPLAT_MODES, PoissonSystemAssembler
from .field import FieldEvaluator, select_isovalue
from .tree import SpatialTree
from .utils import grid_downsample, normalize_points, to_numpy, unit_normals
from .weights import WeightField


SOLVERS = ('cg', 'direct', 'ridge')
ISOVALUE_STATISTICS = ('mean', 'median')


class PoissonReconstructor:
    """
    Reconstruct a contour (2-D) or surface (3-D) from oriented points.

    Parameters
    ----------
    min_depth : int, optional
        Coarsest tree depth (default: 4)
    max_depth : int, optional
        Finest tree depth; also sets the extraction grid step 2^-max_depth
        (default: 6)
    degree : int, optional
        B-spline degree of the basis (default: 2)
    scale_factor : float, optional
        Padding of the bounding box inside the unit cube, >= 1 (default: 1.5)
    normalize : bool, optional
        Map the input into the unit cube first (default: True). If False the
        points must already lie in [0, 1]^k.
    downsample : bool, optional
        Average samples on a 2^-(max_depth+1) grid (default: True)
    weight_depth_offset : int, optional
        The density tree is this many levels coarser than the FEM tree
        (default: 2)
    dilation : int, optional
        Extra rings of nodes around occupied cells (default: 0)
    splat : str, optional
        Right-hand side mode, 'point' or 'basis' (default: 'point')
    solver : str, optional
        'cg', 'direct' or 'ridge' (default: 'cg')
    solver_options : dict, optional
        Extra keyword arguments for the solver (e.g. {'rtol': 1e-12})
    isovalue_statistic : str, optional
        'mean' or 'median' of the field at the samples (default: 'mean')
    contour_sampling : str, optional
        'field' evaluates χ on the extraction lattice; 'griddata'
        interpolates the node-center values X (default: 'field')
    verbose : bool, optional
        Print progress and per-stage timings (default: False)

    Attributes
    ----------
    tree : SpatialTree
    A : scipy.sparse.csr_matrix
    b, x, X : torch.Tensor
        Right-hand side, coefficients and field values at node centers
    isovalue : float
    diagnostics : dict
        Output of diagnose_system
    timings : dict
        Seconds spent per stage

    Examples
    --------
    >>> points, normals = sample_circle(200)
    >>> recon = PoissonReconstructor(min_depth=3, max_depth=5)
    >>> geometry = recon.reconstruct(points, normals)
    >>> world = geometry.to_world()
    """

    def __init__(self,
                 min_depth: int = 4,
                 max_depth: int = 6,
                 degree: int = 2,
                 scale_factor: float = 1.5,
                 normalize: bool = True,
                 downsample: bool = True,
                 weight_depth_offset: int = 2,
                 dilation: int = 0,
                 splat: str = 'point',
                 solver: str = 'cg',
                 solver_options: Optional[Dict] = None,
                 isovalue_statistic: str = 'mean',
                 contour_sampling: str = 'field',
                 verbose: bool = False):
        check_depth_range(min_depth, max_depth)
        if isinstance(degree, bool) or int(degree) != degree or degree < 1:
            raise ConfigurationError(f"degree must be an integer >= 1, got {degree!r}")
        if not scale_factor >= 1.0:
            raise ConfigurationError(f"scale_factor must be >= 1, got {scale_factor}")
        if int(weight_depth_offset) != weight_depth_offset or weight_depth_offset < 0:
            raise ConfigurationError(f"weight_depth_offset must be a non-negative integer, "
                                     f"got {weight_depth_offset}")
        if int(dilation) != dilation or dilation < 0:
            raise ConfigurationError(f"dilation must be a non-negative integer, got {dilation}")
        if splat not in SPLAT_MODES:
            raise ConfigurationError(f"Unknown splat mode: {splat}. "
                                     f"Choose from: {', '.join(SPLAT_MODES)}")
        if solver not in SOLVERS:
            raise ConfigurationError(f"Unknown solver: {solver}. "
                                     f"Choose from: {', '.join(SOLVERS)}")
        if isovalue_statistic not in ISOVALUE_STATISTICS:
            raise ConfigurationError(f"Unknown isovalue statistic: {isovalue_statistic}. "
                                     f"Choose from: {', '.join(ISOVALUE_STATISTICS)}")
        if contour_sampling not in SAMPLING_MODES:
            raise ConfigurationError(f"Unknown contour sampling: {contour_sampling}. "
                                     f"Choose from: {', '.join(SAMPLING_MODES)}")

        self.min_depth = int(min_depth)
        self.max_depth = int(max_depth)
        self.degree = int(degree)
        self.scale_factor = float(scale_factor)
        self.normalize = normalize
        self.downsample = downsample
        self.weight_depth_offset = int(weight_depth_offset)
        self.dilation = int(dilation)
        self.splat = splat
        self.solver = solver
        self.solver_options = dict(solver_options or {})
        self.isovalue_statistic = isovalue_statistic
        self.contour_sampling = contour_sampling
        self.verbose = verbose

        # Set by fit()
        self.normalization = None
        self.points = None
        self.normals = None
        self.table = None
        self.tree = None
        self.weights = None
        self.A = None
        self.b = None
        self.x = None
        self.X = None
        self.evaluator = None
        self.isovalue = None
        self.diagnostics = {}
        self.timings = {}

    def _prepare(self, points, normals):
        pts = to_numpy(points)
        nrm = to_numpy(normals)
        if pts.size == 0:
            raise DegenerateInputError("Cannot reconstruct from an empty point cloud")
        if pts.ndim != 2 or pts.shape[1] not in (2, 3):
            raise ValueError(f"Expected points of shape (N, 2) or (N, 3), got {pts.shape}")
        if nrm.shape != pts.shape:
            raise ValueError(f"Normals shape {nrm.shape} does not match points shape {pts.shape}")
        check_depth_range(self.min_depth, self.max_depth, ceiling=depth_ceiling(pts.shape[1]))

        if self.normalize:
            pts, self.normalization = normalize_points(pts, self.scale_factor)
        else:
            self.normalization = None
        nrm = unit_normals(nrm)

        if self.downsample:
            pts, nrm = grid_downsample(pts, nrm, 2.0 ** -(self.max_depth + 1))
        return pts, nrm

    def fit(self, points, normals) -> 'PoissonReconstructor':
        """
        Build the tree, assemble and solve the system, and pick the isovalue.

        Parameters
        ----------
        points : array-like, shape (N, k)
            Sample locations (world frame if normalize=True)
        normals : array-like, shape (N, k)
            Oriented sample normals (need not be unit length)

        Returns
        -------
        self : PoissonReconstructor

        Raises
        ------
        ConfigurationError
            If max_depth exceeds the ceiling for the input dimension
            (MAX_DEPTH_3D for 3-D points)
        DegenerateInputError
            For empty, non-finite or zero-extent point clouds

        Warns
        -----
        SingularSystemWarning
            If the tree has isolated nodes or disconnected components, or the
            solver does not converge
        """
        if self.verbose:
            print("\n" + "="*70)
            print("Poisson Reconstruction")
            print("="*70)

        self.timings = {}
        clock = time.perf_counter()

        def lap(stage):
            nonlocal clock
            now = time.perf_counter()
            self.timings[stage] = now - clock
            clock = now

        self.points, self.normals = self._prepare(points, normals)
        lap('prepare')

        self.table = get_basis_table(self.degree, self.min_depth, self.max_depth)
        self.tree = SpatialTree(self.points, self.min_depth, self.max_depth, self.table,
                                dilation=self.dilation, verbose=self.verbose)
        lap('tree')

        weight_field = WeightField.from_fem_depths(self.min_depth, self.max_depth,
                                                   offset=self.weight_depth_offset,
                                                   degree=self.degree, verbose=self.verbose)
        self.weights = weight_field.compute(self.points)
        lap('weights')

        assembler = PoissonSystemAssembler(self.tree, self.table, verbose=self.verbose)
        self.A, self.b = assembler.assemble(self.normals, self.weights, splat=self.splat)
        lap('system')

        self.diagnostics = diagnose_system(self.A, self.b, compute_condition=self.verbose)
        n_isolated = self.diagnostics['isolated_nodes'].size
        n_components = self.diagnostics['n_components']
        if n_isolated > 0 or n_components > 1:
            warnings.warn(f"Poisson system may be singular: {n_isolated} isolated nodes, "
                          f"{n_components} connected components", SingularSystemWarning)

        self.x = solve_linear_system(self.A, self.b, method=self.solver,
                                     verbose=self.verbose, **self.solver_options)
        lap('solve')

        evaluator = FieldEvaluator(self.tree, self.table)
        self.evaluator = evaluator
        self.X = evaluator.basis_sum(self.x)
        self.isovalue = select_isovalue(evaluator, self.points, self.x, self.isovalue_statistic)
        lap('field')

        if self.verbose:
            print(f"\nSummary:")
            print(f"  Samples: {self.points.shape[0]} ({self.tree.dim}-D)")
            print(f"  Nodes: {len(self.tree)}, nnz(A) = {self.A.nnz}")
            print(f"  Connected components: {n_components}, isolated nodes: {n_isolated}")
            if 'condition_number' in self.diagnostics:
                print(f"  Condition number: {self.diagnostics['condition_number']:.2e}")
            print(f"  Isovalue: {self.isovalue:.6e}")
            self._print_timings()
            print("="*70 + "\n")

        return self

    def extract(self) -> Geometry:
        """
        Extract the level set of the fitted field (normalized frame).

        Use Geometry.to_world() for world coordinates.
        """
        if self.X is None:
            raise RuntimeError("Reconstructor not fitted. Call fit() first.")

        start = time.perf_counter()
        extractor = ContourExtractor(self.max_depth, verbose=self.verbose)
        if self.contour_sampling == 'field':
            geometry = extractor.extract_field(self.evaluator, self.x, self.isovalue)
        else:
            geometry = extractor.extract(self.tree.center, self.X.numpy(), self.isovalue)
        geometry.normalization = self.normalization
        self.timings['contour'] = time.perf_counter() - start

        if self.verbose:
            print(f"  {'Got level set':<28s}{self.timings['contour']:8.3f} s")
        return geometry

    def reconstruct(self, points, normals) -> Geometry:
        """fit() followed by extract()."""
        return self.fit(points, normals).extract()

    def _print_timings(self):
        labels = {
            'prepare': 'Normalized input',
            'tree': 'Set tree',
            'weights': 'Got kernel density',
            'system': 'Set FEM constraints',
            'solve': 'Linear system solved',
            'field': 'Evaluated field',
        }
        print(f"\nTimings:")
        for stage, label in labels.items():
            if stage in self.timings:
                print(f"  {label:<28s}{self.timings[stage]:8.3f} s")

    def __repr__(self) -> str:
        fitted = self.tree is not None
        return (
            f"PoissonReconstructor(\n"
            f"  depths: {self.min_depth}..{self.max_depth}, degree: {self.degree},\n"
            f"  solver: {self.solver}, splat: {self.splat}, "
            f"isovalue: {self.isovalue_statistic},\n"
            f"  nodes: {len(self.tree) if fitted else 'not fitted'}\n"
            f")"
        )


def poisson_recon(points,
                  normals,
                  min_depth: int = 4,
                  max_depth: int = 6,
                  verbose: bool = False,
                  **kwargs) -> Geometry:
    """
    One-call Poisson reconstruction.

    Parameters
    ----------
    points, normals : array-like, shape (N, k)
        Oriented samples in world coordinates
    min_depth, max_depth : int, optional
        Tree depth range (default: 4, 6)
    verbose : bool, optional
        Print progress and timings
    **kwargs
        Further PoissonReconstructor options

    Returns
    -------
    geometry : Geometry
        Level set in the normalized frame (geometry.to_world() for world)

    Raises
    ------
    ConfigurationError
        For invalid settings, before any tree is built
    """
    reconstructor = PoissonReconstructor(min_depth=min_depth, max_depth=max_depth,
                                         verbose=verbose, **kwargs)
    return reconstructor.reconstruct(points, normals)
