from __future__ import annotations

from enum import Enum

import numpy as np

from projcalib.core.calibration_data import CalibrationPoint, RealGridData, real_from_cells
from projcalib.core.camera import (
    compose_camera_matrix,
    decompose_camera_matrix,
    euler_to_rotation,
    rotation_to_euler,
)
from projcalib.errors import DegenerateInputError
from projcalib.optim.engine import LeastSquaresProblem, MinimizationEngine

_TINY = float(np.finfo(np.float64).tiny)


class CameraParametrization(Enum):
    MATRIX = "matrix"  # 12 entries of P, row-major
    EXPLICIT = "explicit"  # fx, fy, skew, px, py, rx, ry, rz, Cx, Cy, Cz

    @property
    def size(self) -> int:
        return 12 if self is CameraParametrization.MATRIX else 11


def camera_to_parameters(P: np.ndarray, parametrization: CameraParametrization) -> np.ndarray:
    P = np.asarray(P, dtype=np.float64).reshape(3, 4)
    if parametrization is CameraParametrization.MATRIX:
        return P.reshape(-1).copy()

    _, K, R, C = decompose_camera_matrix(P)
    rx, ry, rz = rotation_to_euler(R)
    return np.array(
        [K[0, 0], K[1, 1], K[0, 1], K[0, 2], K[1, 2], rx, ry, rz, C[0], C[1], C[2]],
        dtype=np.float64,
    )


def parameters_to_camera(params: np.ndarray, parametrization: CameraParametrization) -> np.ndarray:
    p = np.asarray(params, dtype=np.float64).reshape(-1)
    if parametrization is CameraParametrization.MATRIX:
        return p[:12].reshape(3, 4).copy()

    fx, fy, s, px, py = (float(v) for v in p[:5])
    K = np.array([[fx, s, px], [0.0, fy, py], [0.0, 0.0, 1.0]], dtype=np.float64)
    R = euler_to_rotation(p[5:8])
    return compose_camera_matrix(K, R, p[8:11])


def skew_and_fy(params: np.ndarray, parametrization: CameraParametrization) -> tuple[float, float]:
    """Skew and fy of the camera described by `params` (K normalized to K[2,2] = 1)."""
    p = np.asarray(params, dtype=np.float64).reshape(-1)
    if parametrization is CameraParametrization.EXPLICIT:
        return float(p[2]), float(p[1])
    _, K, _, _ = decompose_camera_matrix(p[:12].reshape(3, 4))
    return float(K[0, 1]), float(K[1, 1])


def point_cells(points: list[CalibrationPoint]) -> np.ndarray:
    """(N,3) int array of (grid, row, col); grid is -1 for points without a grid."""
    return np.asarray(
        [(-1 if p.grid is None else int(p.grid), int(p.row), int(p.col)) for p in points],
        dtype=np.int64,
    ).reshape(-1, 3)


class CameraGridProblem(LeastSquaresProblem):
    """
    Reprojection of real points through a camera, optionally with the grid
    corners as extra unknowns.

    Parameters: camera parameters, then 12 corner coordinates per grid
    (TL, TR, BL, BR).
    Measurements: x1, y1, ..., xn, yn, then the measured grid corners.

    A point attached to a grid takes its real coordinate from the current
    corner estimate of that grid; other points keep their fixed real
    coordinate. Grid residuals are scaled by sqrt(2N / (12G)) so that both
    blocks have a comparable weight.
    """

    def __init__(
        self,
        image_points: np.ndarray,
        real_points: np.ndarray,
        *,
        parametrization: CameraParametrization = CameraParametrization.MATRIX,
        grids: list[RealGridData] | None = None,
        cells: np.ndarray | None = None,
    ) -> None:
        self.image_points = np.asarray(image_points, dtype=np.float64).reshape(-1, 2)
        self.fixed_real_points = np.asarray(real_points, dtype=np.float64).reshape(-1, 3)
        if self.image_points.shape[0] != self.fixed_real_points.shape[0]:
            raise ValueError("image_points and real_points must have the same length")

        self.parametrization = CameraParametrization(parametrization)
        self.grids = list(grids) if grids else []
        n = self.image_points.shape[0]

        if self.grids:
            if cells is None:
                raise ValueError("cells are required when grids are refined")
            self.cells = np.asarray(cells, dtype=np.int64).reshape(n, 3)
            grid_idx = self.cells[:, 0]
            bad = (grid_idx >= len(self.grids)) | (grid_idx < -1)
            if np.any(bad):
                raise DegenerateInputError(f"point references unknown grid {int(grid_idx[bad][0])}")
            self.grid_error_coefficient = float(np.sqrt(2.0 * n / (12.0 * len(self.grids))))
        else:
            self.cells = np.full((n, 3), -1, dtype=np.int64) if cells is None else np.asarray(cells).reshape(n, 3)
            self.grid_error_coefficient = 1.0

    @property
    def n_points(self) -> int:
        return int(self.image_points.shape[0])

    @property
    def n_camera_parameters(self) -> int:
        return self.parametrization.size

    @property
    def refines_grids(self) -> bool:
        return bool(self.grids)

    def initial_parameters(self, P: np.ndarray) -> np.ndarray:
        parts = [camera_to_parameters(P, self.parametrization)]
        parts.extend(g.corners().reshape(-1) for g in self.grids)
        return np.concatenate(parts)

    def measurements(self) -> np.ndarray:
        parts = [self.image_points.reshape(-1)]
        parts.extend(g.corners().reshape(-1) for g in self.grids)
        return np.concatenate(parts)

    def inverse_variances(
        self,
        image_variances: tuple[float, float],
        real_variances: tuple[float, float, float],
    ) -> np.ndarray:
        w_img = np.tile(1.0 / np.asarray(image_variances, dtype=np.float64), self.n_points)
        w_real = np.tile(1.0 / np.asarray(real_variances, dtype=np.float64), 4 * len(self.grids))
        return np.concatenate([w_img, w_real])

    def grid_corners(self, params: np.ndarray) -> np.ndarray:
        """(G,4,3) corner estimates stored in `params`."""
        p = np.asarray(params, dtype=np.float64).reshape(-1)
        return p[self.n_camera_parameters :].reshape(-1, 4, 3)

    def refined_grids(self, params: np.ndarray) -> list[RealGridData]:
        corners = self.grid_corners(params)
        return [g.with_corners(c) for g, c in zip(self.grids, corners)]

    def real_points(self, params: np.ndarray) -> np.ndarray:
        if not self.grids:
            return self.fixed_real_points
        real = self.fixed_real_points.copy()
        corners = self.grid_corners(params)
        for gi, grid in enumerate(self.grids):
            sel = self.cells[:, 0] == gi
            if np.any(sel):
                real[sel] = real_from_cells(
                    corners[gi], grid.rows, grid.columns, self.cells[sel, 1], self.cells[sel, 2]
                )
        return real

    def project(self, params: np.ndarray) -> np.ndarray:
        P = parameters_to_camera(params[: self.n_camera_parameters], self.parametrization)
        real = self.real_points(params)
        x = real @ P[:, :3].T + P[:, 3][None, :]
        return x[:, :2] / x[:, 2:3]

    def compute_mapping(self, params: np.ndarray) -> np.ndarray:
        p = np.asarray(params, dtype=np.float64).reshape(-1)
        return np.concatenate([self.project(p).reshape(-1), p[self.n_camera_parameters :]])

    def compute_error(self, params: np.ndarray, measurements: np.ndarray) -> np.ndarray:
        e = self.compute_mapping(params) - measurements
        e[2 * self.n_points :] *= self.grid_error_coefficient
        return e

    def compute_jacobian(self, params: np.ndarray) -> np.ndarray | None:
        if self.grids or self.parametrization is not CameraParametrization.MATRIX:
            return None

        P = np.asarray(params, dtype=np.float64).reshape(3, 4)
        n = self.n_points
        Xh = np.concatenate([self.fixed_real_points, np.ones((n, 1), dtype=np.float64)], axis=1)
        h = Xh @ P.T
        m = h[:, 2:3]
        x = h[:, 0:1] / m
        y = h[:, 1:2] / m

        J = np.zeros((2 * n, 12), dtype=np.float64)
        J[0::2, 0:4] = Xh / m
        J[0::2, 8:12] = -x * Xh / m
        J[1::2, 4:8] = Xh / m
        J[1::2, 8:12] = -y * Xh / m
        return J

    def reprojection_errors(self, params: np.ndarray) -> np.ndarray:
        return np.linalg.norm(self.project(params) - self.image_points, axis=1)


class ZeroSkewProblem(LeastSquaresProblem):
    """
    Reprojection residual plus a penalty w*|s| pulling the camera skew to zero.

    The weight starts at sqrt(r0)/|fy|, r0 being the reprojection residual of
    the starting camera, and grows by `weight_growth` every iteration. Real
    points are held fixed.
    """

    def __init__(
        self,
        image_points: np.ndarray,
        real_points: np.ndarray,
        *,
        parametrization: CameraParametrization = CameraParametrization.MATRIX,
        weight_growth: float = 1.2,
    ) -> None:
        self.reprojection = CameraGridProblem(image_points, real_points, parametrization=parametrization)
        self.parametrization = self.reprojection.parametrization
        self.weight_growth = float(weight_growth)
        self.weight = 0.0

    @property
    def n_points(self) -> int:
        return self.reprojection.n_points

    def measurements(self) -> np.ndarray:
        return np.concatenate([self.reprojection.measurements(), np.zeros((1,), dtype=np.float64)])

    def inverse_variances(self, image_variances: tuple[float, float]) -> np.ndarray:
        w_img = self.reprojection.inverse_variances(image_variances, (1.0, 1.0, 1.0))
        return np.concatenate([w_img, np.ones((1,), dtype=np.float64)])

    def compute_mapping(self, params: np.ndarray) -> np.ndarray:
        s, _fy = skew_and_fy(params, self.parametrization)
        return np.concatenate([self.reprojection.compute_mapping(params), [abs(s)]])

    def compute_error(self, params: np.ndarray, measurements: np.ndarray) -> np.ndarray:
        e = self.compute_mapping(params) - measurements
        e[-1] *= self.weight
        return e

    def on_iteration_start(self, engine: MinimizationEngine) -> None:
        if engine.current_iteration == 0:
            _s, fy = skew_and_fy(engine.best_results, self.parametrization)
            self.weight = float(np.sqrt(engine.minimum_residual)) / max(abs(fy), _TINY)
        else:
            self.weight *= self.weight_growth
        engine.rebase_residual()

    def sub_residuals(self, params: np.ndarray, inverse_variances: np.ndarray | None = None) -> dict[str, float]:
        e_img = self.reprojection.compute_error(params, self.reprojection.measurements())
        if inverse_variances is None:
            reprojection = float(e_img @ e_img)
        else:
            w = np.asarray(inverse_variances, dtype=np.float64).reshape(-1)[: e_img.shape[0]]
            reprojection = float(e_img @ (w * e_img))
        s, _fy = skew_and_fy(params, self.parametrization)
        return {
            "reprojection": reprojection,
            "skew": float((self.weight * s) ** 2),
            "skew_value": float(s),
            "skew_weight": float(self.weight),
        }
