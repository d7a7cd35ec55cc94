"""
Point normalization for numerical conditioning (Hartley normalization).

A normalization matrix T maps homogeneous points x -> T x so that the point set
is centred at the origin and its mean distance from the origin is sqrt(d)
(sqrt(2) on the image plane, sqrt(3) in real space).
"""

from __future__ import annotations

import numpy as np

from projcalib.errors import DegenerateInputError


def _as_points(points: np.ndarray, dim: int | None, homogeneous: bool) -> np.ndarray:
    pts = np.asarray(points, dtype=np.float64)
    if pts.ndim == 1:
        pts = pts.reshape(1, -1)
    if pts.ndim != 2:
        raise ValueError("points must be a (N,d) array")
    if homogeneous:
        w = pts[:, -1:]
        if np.any(np.abs(w) < 1e-300):
            raise DegenerateInputError("points at infinity cannot be normalized")
        pts = pts[:, :-1] / w
    if dim is not None and pts.shape[1] != dim:
        raise ValueError(f"expected {dim}D points, got {pts.shape[1]}D")
    if pts.shape[1] not in (2, 3):
        raise ValueError("only 2D and 3D points are supported")
    if pts.shape[0] < 1:
        raise DegenerateInputError("cannot normalize an empty point set")
    if not np.all(np.isfinite(pts)):
        raise DegenerateInputError("non-finite point coordinates")
    return pts


def normalization_matrix(
    points: np.ndarray,
    *,
    isotropic: bool = True,
    homogeneous: bool = False,
) -> np.ndarray:
    """
    Similarity (or per-axis scaling when `isotropic=False`) that centres
    `points` and scales their spread to sqrt(d).

    `points` is (N,d) with d in {2,3}, or (N,d+1) homogeneous rows when
    `homogeneous=True`. Returns a (d+1,d+1) matrix.

    The non-isotropic variant scales each axis so the mean absolute deviation
    along that axis equals sqrt(d).
    """
    pts = _as_points(points, None, homogeneous)
    d = pts.shape[1]
    target = float(np.sqrt(d))

    center = np.mean(pts, axis=0)
    centred = pts - center[None, :]
    if isotropic:
        dist = float(np.mean(np.linalg.norm(centred, axis=1)))
        if not dist > 0.0:
            raise DegenerateInputError("all points coincide; normalization is singular")
        scale = np.full((d,), target / dist, dtype=np.float64)
    else:
        dist_axes = np.mean(np.abs(centred), axis=0)
        if not np.all(dist_axes > 0.0):
            raise DegenerateInputError("zero spread along an axis; normalization is singular")
        scale = target / dist_axes

    T = np.eye(d + 1, dtype=np.float64)
    T[:d, :d] = np.diag(scale)
    T[:d, d] = -scale * center
    return T


def normalization_matrix_2d(points: np.ndarray, *, isotropic: bool = True) -> np.ndarray:
    return normalization_matrix(_as_points(points, 2, False), isotropic=isotropic)


def normalization_matrix_3d(points: np.ndarray, *, isotropic: bool = True) -> np.ndarray:
    return normalization_matrix(_as_points(points, 3, False), isotropic=isotropic)


def apply_transform(points: np.ndarray, T: np.ndarray) -> np.ndarray:
    """
    Apply a homogeneous (d+1,d+1) transform to (N,d) points, returns (N,d).
    """
    T = np.asarray(T, dtype=np.float64)
    d = T.shape[0] - 1
    pts = np.asarray(points, dtype=np.float64).reshape(-1, d)
    ph = np.concatenate([pts, np.ones((pts.shape[0], 1), dtype=np.float64)], axis=1) @ T.T
    return ph[:, :d] / ph[:, d:]


def normalize_points(points: np.ndarray, T: np.ndarray) -> np.ndarray:
    return apply_transform(points, T)


def denormalize_points(points: np.ndarray, T: np.ndarray) -> np.ndarray:
    return apply_transform(points, np.linalg.inv(np.asarray(T, dtype=np.float64)))


def normalization_scale(T: np.ndarray) -> float:
    """Scale factor of an isotropic normalization matrix (T[0,0])."""
    return float(np.asarray(T, dtype=np.float64)[0, 0])
