"""
Synthetic calibration scenes: a known camera, calibration grids in front of
it and the exact (optionally noisy) correspondences between them.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from projcalib.core.calibration_data import CalibrationPoint, RealGridData
from projcalib.core.camera import Camera, euler_to_rotation, project_points


def make_test_camera(
    *,
    fx: float = 520.0,
    fy: float = 520.0,
    skew: float = 0.0,
    principal_point: tuple[float, float] = (300.0, 250.0),
    euler: tuple[float, float, float] = (np.pi / 30, -np.pi / 30, np.pi / 180),
    center: tuple[float, float, float] = (50.0, 50.0, 50.0),
    image_size: tuple[int, int] = (640, 480),
) -> Camera:
    K = np.array(
        [[fx, skew, principal_point[0]], [0.0, fy, principal_point[1]], [0.0, 0.0, 1.0]],
        dtype=np.float64,
    )
    cam = Camera.from_decomposition(K, euler_to_rotation(np.asarray(euler)), np.asarray(center))
    cam.image_width, cam.image_height = int(image_size[0]), int(image_size[1])
    return cam


@dataclass(frozen=True)
class GridRange:
    """Extent of a pair of calibration grids; `angle` is the tilt about Y (radians)."""

    min_x: float
    max_x: float
    min_y: float
    max_y: float
    z: float
    angle: float = np.pi / 6


GRID_RANGE_STANDARD = GridRange(min_x=-150.0, max_x=250.0, min_y=-100.0, max_y=250.0, z=650.0)
GRID_RANGE_SIDE = GridRange(min_x=350.0, max_x=550.0, min_y=-100.0, max_y=250.0, z=600.0)
GRID_RANGE_FAR = GridRange(min_x=-550.0, max_x=650.0, min_y=-400.0, max_y=650.0, z=3050.0)


def make_calibration_grids(
    rows: int = 7,
    columns: int = 7,
    grid_range: GridRange | None = None,
) -> list[RealGridData]:
    """
    Two grids spanning the same X/Y range, tilted about Y in opposite
    directions so that together they are not coplanar.
    """
    r = GRID_RANGE_STANDARD if grid_range is None else grid_range
    dz = 0.5 * (r.max_x - r.min_x) * float(np.tan(r.angle))

    def grid(z_left: float, z_right: float) -> RealGridData:
        return RealGridData(
            top_left=(r.min_x, r.max_y, z_left),
            top_right=(r.max_x, r.max_y, z_right),
            bot_left=(r.min_x, r.min_y, z_left),
            bot_right=(r.max_x, r.min_y, z_right),
            rows=int(rows),
            columns=int(columns),
        )

    return [grid(r.z + dz, r.z - dz), grid(r.z - dz, r.z + dz)]


def make_calibration_points(camera: Camera, grids: list[RealGridData]) -> list[CalibrationPoint]:
    """Every cell of every grid, projected exactly through `camera`."""
    points: list[CalibrationPoint] = []
    for g, grid in enumerate(grids):
        rr, cc = np.meshgrid(np.arange(grid.rows), np.arange(grid.columns), indexing="ij")
        rr = rr.reshape(-1)
        cc = cc.reshape(-1)
        real = np.stack([grid.real_from_cell(r, c) for r, c in zip(rr, cc)], axis=0)
        img = project_points(camera.matrix, real)
        for i in range(real.shape[0]):
            points.append(CalibrationPoint.from_arrays(img[i], real[i], grid=g, row=rr[i], col=cc[i]))
    return points


def add_point_noise(
    points: list[CalibrationPoint],
    sigma_img: float,
    sigma_real: float = 0.0,
    seed: int = 0,
) -> list[CalibrationPoint]:
    """Gaussian noise on image and/or real coordinates; grid cells are kept."""
    rng = np.random.default_rng(seed)
    out: list[CalibrationPoint] = []
    for p in points:
        q = p
        if sigma_img > 0.0:
            q = q.with_img(np.asarray(p.img) + rng.normal(0.0, sigma_img, size=2))
        if sigma_real > 0.0:
            q = q.with_real(np.asarray(p.real) + rng.normal(0.0, sigma_real, size=3))
        out.append(q)
    return out


def add_grid_noise(grids: list[RealGridData], sigma: float, seed: int = 0) -> list[RealGridData]:
    rng = np.random.default_rng(seed)
    if sigma <= 0.0:
        return list(grids)
    return [g.with_corners(g.corners() + rng.normal(0.0, sigma, size=(4, 3))) for g in grids]
