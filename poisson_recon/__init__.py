"""
poisson_recon: Poisson Surface Reconstruction on adaptive B-spline trees

Reconstructs a closed contour (2-D) or surface (3-D) from an oriented point
cloud by solving a Poisson equation for an indicator function.

Main components:
- BasisTable: per-depth B-spline value and overlap tables
- SpatialTree: adaptive quadtree/octree with basis-overlap neighbor lists
- WeightField: inverse kernel-density sample weights
- PoissonSystemAssembler: stiffness matrix and right-hand side
- FieldEvaluator: indicator field at node centers and query points
- ContourExtractor: grid resampling and marching squares/cubes
- PoissonReconstructor: the full pipeline
"""

__version__ = "0.1.0"
__author__ = "poisson_recon developers"

from .exceptions import (
    ConfigurationError,
    DegenerateInputError,
    SingularSystemWarning
)
from .core import BasisTable, get_basis_table
from .tree import SpatialTree
from .weights import WeightField
from .fem import PoissonSystemAssembler
from .field import FieldEvaluator, select_isovalue
from .contour import ContourExtractor, Geometry
from .model import PoissonReconstructor, poisson_recon
from . import core
from . import utils

__all__ = [
    'ConfigurationError',
    'DegenerateInputError',
    'SingularSystemWarning',
    'BasisTable',
    'get_basis_table',
    'SpatialTree',
    'WeightField',
    'PoissonSystemAssembler',
    'FieldEvaluator',
    'select_isovalue',
    'ContourExtractor',
    'Geometry',
    'PoissonReconstructor',
    'poisson_recon',
    'core',
    'utils',
]
