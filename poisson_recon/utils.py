"""
Utility functions for poisson_recon

Point-cloud normalization into the unit cube, grid-average downsampling,
normal handling and synthetic test shapes.
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np
import torch

from .exceptions import DegenerateInputError


def to_numpy(x) -> np.ndarray:
    """Convert a tensor or array-like to a float64 numpy array."""
    if isinstance(x, torch.Tensor):
        x = x.detach().cpu().numpy()
    return np.asarray(x, dtype=np.float64)


@dataclass
class Normalization:
    """
    Affine map from world coordinates into [0, 1]^k.

        q = (p + translation) / scale + 0.5

    Attributes
    ----------
    translation : np.ndarray, shape (k,)
        Negated bounding-box center
    scale : float
        Largest bounding-box extent times the padding factor
    """
    translation: np.ndarray
    scale: float

    def apply(self, points) -> np.ndarray:
        return (to_numpy(points) + self.translation) / self.scale + 0.5

    def invert(self, points) -> np.ndarray:
        return (to_numpy(points) - 0.5) * self.scale - self.translation


def normalize_points(points, scale_factor: float = 1.5) -> Tuple[np.ndarray, Normalization]:
    """
    Center a point cloud and scale it into the unit cube.

    The bounding box is centered at 0.5 and its largest extent is mapped to
    1 / scale_factor, leaving a margin for the basis supports.

    Parameters
    ----------
    points : array-like, shape (N, k)
        World-space sample locations
    scale_factor : float, optional
        Padding factor >= 1 (default: 1.5)

    Returns
    -------
    normalized : np.ndarray, shape (N, k)
        Points in [0, 1]^k
    normalization : Normalization
        The applied map, for converting results back to world space

    Raises
    ------
    DegenerateInputError
        If the cloud is empty, non-finite or has (near) zero extent.

    Examples
    --------
    >>> points, normals = sample_circle(200)
    >>> normalized, norm = normalize_points(points)
    >>> normalized.min(), normalized.max()
    (0.1666..., 0.8333...)
    """
    pts = to_numpy(points)
    if pts.ndim != 2 or pts.shape[0] == 0:
        raise DegenerateInputError(f"Expected a non-empty (N, k) point array, got shape {pts.shape}")
    if not np.all(np.isfinite(pts)):
        raise DegenerateInputError("Point cloud contains NaN or infinite coordinates")

    lower = pts.min(axis=0)
    upper = pts.max(axis=0)
    extent = float((upper - lower).max())

    magnitude = max(1.0, float(np.abs(pts).max()))
    if extent <= 1e-12 * magnitude:
        raise DegenerateInputError(
            f"Point cloud has near-zero extent ({extent:.3e}); cannot normalize"
        )

    normalization = Normalization(translation=-(lower + upper) / 2,
                                  scale=extent * scale_factor)
    return normalization.apply(pts), normalization


def unit_normals(normals) -> np.ndarray:
    """Scale normals to unit length; zero-length rows stay zero."""
    n = to_numpy(normals)
    norms = np.linalg.norm(n, axis=1, keepdims=True)
    return np.divide(n, norms, out=np.zeros_like(n), where=norms > 0)


def grid_downsample(points, normals, width: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Average samples falling into the same grid cell.

    Parameters
    ----------
    points : array-like, shape (N, k)
        Normalized sample locations
    normals : array-like, shape (N, k)
        Sample normals
    width : float
        Grid cell width (the reconstruction uses 2^-(max_depth+1))

    Returns
    -------
    points : np.ndarray, shape (M, k)
        Cell-averaged locations, M <= N, in cell order
    normals : np.ndarray, shape (M, k)
        Cell-averaged normals, renormalized to unit length
    """
    pts = to_numpy(points)
    nrm = to_numpy(normals)

    cells = np.floor(pts / width).astype(np.int64)
    _, inverse, counts = np.unique(cells, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.reshape(-1)

    summed_points = np.zeros((counts.size, pts.shape[1]))
    summed_normals = np.zeros((counts.size, pts.shape[1]))
    np.add.at(summed_points, inverse, pts)
    np.add.at(summed_normals, inverse, nrm)

    return summed_points / counts[:, None], unit_normals(summed_normals)


def sample_circle(n_points: int = 200,
                  radius: float = 1.0,
                  center: Tuple[float, float] = (0.0, 0.0)) -> Tuple[np.ndarray, np.ndarray]:
    """
    Uniform samples on a circle with outward normals.

    Returns
    -------
    points : np.ndarray, shape (n_points, 2)
    normals : np.ndarray, shape (n_points, 2)
    """
    theta = 2 * np.pi * np.arange(n_points) / n_points
    normals = np.stack([np.cos(theta), np.sin(theta)], axis=1)
    points = np.asarray(center, dtype=np.float64) + radius * normals
    return points, normals


def sample_sphere(n_points: int = 2000,
                  radius: float = 1.0,
                  center: Tuple[float, float, float] = (0.0, 0.0, 0.0)) -> Tuple[np.ndarray, np.ndarray]:
    """
    Near-uniform samples on a sphere (Fibonacci lattice) with outward normals.

    Returns
    -------
    points : np.ndarray, shape (n_points, 3)
    normals : np.ndarray, shape (n_points, 3)
    """
    i = np.arange(n_points) + 0.5
    z = 1 - 2 * i / n_points
    r = np.sqrt(1 - z ** 2)
    phi = np.pi * (1 + 5 ** 0.5) * i
    normals = np.stack([r * np.cos(phi), r * np.sin(phi), z], axis=1)
    points = np.asarray(center, dtype=np.float64) + radius * normals
    return points, normals
