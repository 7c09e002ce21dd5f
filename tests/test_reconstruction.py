"""
Test Suite: End-to-end Poisson reconstruction

Scenarios:
- Circle: single closed contour within one grid cell of the true circle
- Reversed depth range: ConfigurationError before any tree is built
- Two separated clusters: SingularSystemWarning, finite output
- Sphere: 3-D surface close to the true sphere
- Degenerate inputs and utilities

Run with: python -m pytest tests/test_reconstruction.py -v
"""

import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import warnings

import numpy as np
import pytest

import poisson_recon.model as model_module
from poisson_recon import (
    ConfigurationError,
    ContourExtractor,
    DegenerateInputError,
    PoissonReconstructor,
    SingularSystemWarning,
    poisson_recon
)
from poisson_recon.exceptions import MAX_DEPTH, MAX_DEPTH_3D, depth_ceiling
from poisson_recon.utils import grid_downsample, normalize_points, sample_circle, sample_sphere


def distance_to_segments(queries, vertices, edges):
    """Distance from each query point to the nearest edge of a polyline set."""
    a = vertices[edges[:, 0]]
    b = vertices[edges[:, 1]]
    ab = b - a
    length2 = np.maximum((ab ** 2).sum(axis=1), 1e-300)
    t = ((queries[:, None, :] - a[None]) * ab[None]).sum(axis=2) / length2[None]
    t = np.clip(t, 0.0, 1.0)
    closest = a[None] + t[..., None] * ab[None]
    return np.sqrt(((queries[:, None, :] - closest) ** 2).sum(axis=2)).min(axis=1)


class TestCircle:
    """Unit circle, 200 samples, depths 3..5."""

    @pytest.fixture(scope='class')
    def result(self):
        points, normals = sample_circle(200)
        reconstructor = PoissonReconstructor(min_depth=3, max_depth=5, degree=2)
        geometry = reconstructor.reconstruct(points, normals)
        return reconstructor, geometry

    def test_single_closed_curve(self, result):
        _, geometry = result
        print(f"Components: {len(geometry.components)}, closed: {geometry.closed}")
        assert geometry.dim == 2
        assert len(geometry.components) == 1
        assert geometry.closed == [True]
        assert geometry.cells.shape[0] == geometry.n_vertices

    def test_hausdorff_below_cell_width(self, result):
        """Distance to the true circle in both directions is below 2^-5."""
        _, geometry = result
        center = np.array([0.5, 0.5])
        radius = 1.0 / 3.0  # unit circle scaled by 1 / (2 * 1.5)

        to_circle = np.abs(np.linalg.norm(geometry.vertices - center, axis=1) - radius)

        theta = np.linspace(0, 2 * np.pi, 720, endpoint=False)
        truth = center + radius * np.stack([np.cos(theta), np.sin(theta)], axis=1)
        to_contour = distance_to_segments(truth, geometry.vertices, geometry.cells)

        hausdorff = max(to_circle.max(), to_contour.max())
        print(f"Hausdorff distance: {hausdorff:.4e} (cell width {2.0 ** -5:.4e})")
        assert hausdorff < 2.0 ** -5

    def test_world_coordinates(self, result):
        _, geometry = result
        world = geometry.to_world()
        radii = np.linalg.norm(world.vertices, axis=1)
        assert np.abs(radii - 1.0).max() < 3 * 2.0 ** -5
        assert world.normalization is None

    def test_no_singularity_diagnostics(self, result):
        reconstructor, _ = result
        assert reconstructor.diagnostics['n_components'] == 1
        assert reconstructor.diagnostics['isolated_nodes'].size == 0
        assert reconstructor.diagnostics['symmetry_error'] == 0.0
        assert set(reconstructor.timings) >= {'tree', 'weights', 'system', 'solve', 'field', 'contour'}

    def test_solvers_agree(self):
        """Direct and iterative solves give the same field."""
        points, normals = sample_circle(200)
        fields = []
        for solver in ('cg', 'direct'):
            recon = PoissonReconstructor(min_depth=3, max_depth=5, solver=solver).fit(points, normals)
            fields.append(recon.X.numpy() - recon.isovalue)
        scale = np.abs(fields[1]).max()
        assert np.allclose(fields[0], fields[1], atol=1e-4 * scale)

    def test_basis_splat_reconstructs(self):
        points, normals = sample_circle(200)
        geometry = poisson_recon(points, normals, min_depth=3, max_depth=5, splat='basis')
        radii = np.linalg.norm(geometry.vertices - 0.5, axis=1)
        assert np.abs(radii - 1.0 / 3.0).max() < 2 * 2.0 ** -5


class TestConfiguration:
    """Reversed depths and other invalid settings."""

    def test_reversed_depths_fail_before_tree(self, monkeypatch):
        def forbidden(*args, **kwargs):
            raise AssertionError("tree construction started")

        monkeypatch.setattr(model_module, 'SpatialTree', forbidden)
        points, normals = sample_circle(200)
        with pytest.raises(ConfigurationError):
            poisson_recon(points, normals, min_depth=5, max_depth=3)

    @pytest.mark.parametrize('kwargs', [
        {'max_depth': 11},
        {'degree': 0},
        {'solver': 'multigrid'},
        {'splat': 'volume'},
        {'isovalue_statistic': 'mode'},
        {'scale_factor': 0.5},
        {'dilation': -1},
        {'contour_sampling': 'nearest'},
    ])
    def test_invalid_options(self, kwargs):
        with pytest.raises(ConfigurationError):
            PoissonReconstructor(**kwargs)

    def test_volume_depth_ceiling_before_tree(self, monkeypatch):
        """3-D input deeper than MAX_DEPTH_3D fails before tree construction."""
        def forbidden(*args, **kwargs):
            raise AssertionError("tree construction started")

        monkeypatch.setattr(model_module, 'SpatialTree', forbidden)
        points, normals = sample_sphere(200)
        reconstructor = PoissonReconstructor(min_depth=3, max_depth=MAX_DEPTH_3D + 1)
        with pytest.raises(ConfigurationError):
            reconstructor.fit(points, normals)

    def test_depth_ceiling_per_dimension(self):
        assert depth_ceiling(2) == MAX_DEPTH
        assert depth_ceiling(3) == MAX_DEPTH_3D < MAX_DEPTH

    def test_extract_before_fit(self):
        with pytest.raises(RuntimeError):
            PoissonReconstructor().extract()


class TestDisconnectedInput:
    """Two well-separated circles."""

    def test_warns_and_stays_finite(self):
        left, left_normals = sample_circle(100, center=(-4.0, 0.0))
        right, right_normals = sample_circle(100, center=(4.0, 0.0))
        points = np.vstack([left, right])
        normals = np.vstack([left_normals, right_normals])

        reconstructor = PoissonReconstructor(min_depth=4, max_depth=6)
        with pytest.warns(SingularSystemWarning):
            reconstructor.fit(points, normals)
        with warnings.catch_warnings():
            warnings.simplefilter('ignore')
            geometry = reconstructor.extract()

        print(f"Components: {reconstructor.diagnostics['n_components']}, "
              f"vertices: {geometry.n_vertices}")
        assert reconstructor.diagnostics['n_components'] >= 2
        assert np.all(np.isfinite(reconstructor.x.numpy()))
        assert np.all(np.isfinite(geometry.vertices))

    def test_contours_stay_on_circles(self):
        """Circles at x = ±2 give two closed loops and nothing in the empty space."""
        left, left_normals = sample_circle(150, center=(-2.0, 0.0))
        right, right_normals = sample_circle(150, center=(2.0, 0.0))
        points = np.vstack([left, right])
        normals = np.vstack([left_normals, right_normals])

        reconstructor = PoissonReconstructor(min_depth=3, max_depth=5)
        with warnings.catch_warnings():
            warnings.simplefilter('ignore')
            world = reconstructor.reconstruct(points, normals).to_world()

        centers = np.array([[-2.0, 0.0], [2.0, 0.0]])
        error = np.abs(np.linalg.norm(world.vertices[:, None, :] - centers[None], axis=2) - 1.0)
        cell = 2.0 ** -5 * reconstructor.normalization.scale
        print(f"Components: {len(world.components)}, closed: {world.closed}, "
              f"max error: {error.min(axis=1).max():.4f} (cell {cell:.4f})")
        assert len(world.components) == 2
        assert all(world.closed)
        assert error.min(axis=1).max() < 2 * cell


class TestSphere:
    """3-D smoke test."""

    def test_surface_near_sphere(self):
        points, normals = sample_sphere(1500)
        geometry = poisson_recon(points, normals, min_depth=3, max_depth=4)

        assert geometry.dim == 3
        assert geometry.cells.shape[1] == 3
        assert not geometry.is_empty
        radii = np.linalg.norm(geometry.vertices - 0.5, axis=1)
        error = np.abs(radii - 1.0 / 3.0)
        print(f"Mean radial error: {error.mean():.4e}, max: {error.max():.4e}")
        assert error.mean() < 2.0 ** -4


class TestInputs:
    """Degenerate inputs and preprocessing utilities."""

    def test_coincident_points(self):
        points = np.ones((10, 2))
        normals = np.tile([1.0, 0.0], (10, 1))
        with pytest.raises(DegenerateInputError):
            poisson_recon(points, normals, min_depth=3, max_depth=5)

    def test_empty_and_nan_points(self):
        with pytest.raises(DegenerateInputError):
            poisson_recon(np.zeros((0, 2)), np.zeros((0, 2)), min_depth=3, max_depth=4)
        points, normals = sample_circle(20)
        points[3, 0] = np.nan
        with pytest.raises(DegenerateInputError):
            poisson_recon(points, normals, min_depth=3, max_depth=4)

    def test_normalization_round_trip(self):
        points, _ = sample_circle(50, radius=2.0, center=(10.0, -3.0))
        normalized, normalization = normalize_points(points)
        assert normalized.min() >= 0.0 and normalized.max() <= 1.0
        assert np.allclose(normalization.invert(normalized), points)

    def test_grid_downsample(self):
        points = np.array([[0.1, 0.1], [0.11, 0.12], [0.6, 0.6]])
        normals = np.array([[1.0, 0.0], [0.0, 1.0], [0.0, 2.0]])
        merged, merged_normals = grid_downsample(points, normals, 0.25)
        assert merged.shape == (2, 2)
        assert np.allclose(merged[0], [0.105, 0.11])
        assert np.allclose(np.linalg.norm(merged_normals, axis=1), 1.0)

    def test_isovalue_outside_range(self):
        centers = np.array([[0.2, 0.2], [0.8, 0.2], [0.5, 0.8]])
        with pytest.warns(UserWarning):
            geometry = ContourExtractor(3).extract(centers, np.ones(3), isovalue=5.0)
        assert geometry.is_empty

    def test_griddata_masks_outside_hull(self):
        """Lattice nodes outside the hull of the centers are left undefined."""
        axis = np.linspace(0.3, 0.7, 9)
        centers = np.stack([m.ravel() for m in np.meshgrid(axis, axis, indexing='ij')], axis=1)
        values = np.linalg.norm(centers - 0.5, axis=1)

        extractor = ContourExtractor(5)
        grid = extractor.resample(centers, values)
        assert np.isnan(grid).any()
        assert np.isfinite(grid).any()

        geometry = extractor.extract(centers, values, isovalue=0.1)
        assert geometry.closed == [True]
        assert geometry.vertices.min() > 0.3 and geometry.vertices.max() < 0.7
        radii = np.linalg.norm(geometry.vertices - 0.5, axis=1)
        assert np.abs(radii - 0.1).max() < 0.02

    def test_griddata_sampling_reconstructs(self):
        points, normals = sample_circle(200)
        geometry = poisson_recon(points, normals, min_depth=3, max_depth=5,
                                 contour_sampling='griddata')
        radii = np.linalg.norm(geometry.vertices - 0.5, axis=1)
        assert np.abs(radii - 1.0 / 3.0).max() < 2 * 2.0 ** -5

    def test_verbose_timings(self, capsys):
        points, normals = sample_circle(100)
        poisson_recon(points, normals, min_depth=2, max_depth=4, verbose=True)
        output = capsys.readouterr().out
        assert 'Set tree' in output
        assert 'Linear system solved' in output


if __name__ == '__main__':
    pytest.main([__file__, '-v', '--tb=short'])
